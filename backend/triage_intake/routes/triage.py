from fastapi import APIRouter, Depends
from sqlalchemy import select
from sqlalchemy.orm import Session

from ..auth import require_doctor
from ..db import get_session
from ..models import UrgentCase
from ..schemas import TriageRequest, TriageResponse, UrgentCaseOut
from ..services.normalizer import normalize
from ..services.priority import classify_priority

router = APIRouter()


@router.post("/triage", response_model=TriageResponse)
def triage(payload: TriageRequest) -> TriageResponse:
    priority = classify_priority(normalize(payload.message, redact_intents=False), payload.hints)
    return TriageResponse(priority=priority, is_emergency=priority == "URGENT")


@router.get("/urgent_cases", response_model=list[UrgentCaseOut])
def list_urgent_cases(
    db: Session = Depends(get_session), _doctor: dict = Depends(require_doctor)
) -> list[UrgentCaseOut]:
    stmt = select(UrgentCase).order_by(UrgentCase.created_at.desc())
    return db.scalars(stmt).all()

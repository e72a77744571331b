import logging
from collections import Counter
from datetime import datetime, timedelta, timezone

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.orm import Session

from ..auth import require_doctor
from ..db import get_session
from ..models import Appointment, SymptomRuleRecord
from ..schemas import (
    BulkImportRequest,
    BulkImportResult,
    SymptomAnalytics,
    SymptomCoverage,
    SymptomFrequency,
    SymptomQuestionsOut,
    SymptomRule,
    SymptomRuleCreate,
    SymptomRuleOut,
    SymptomRuleUpdate,
)
from ..services.sequencer import DEFAULT_FOLLOW_UP_QUESTIONS
from ..services.store import CatalogUnavailableError, SqlSymptomCatalog

router = APIRouter()
logger = logging.getLogger(__name__)


def _escape_like(term: str) -> str:
    return term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _rule_by_symptom(db: Session, symptom: str) -> SymptomRuleRecord | None:
    return db.scalars(select(SymptomRuleRecord).where(SymptomRuleRecord.symptom == symptom)).first()


@router.get("/symptoms", response_model=list[SymptomRule])
def list_symptoms(db: Session = Depends(get_session)) -> list[SymptomRule]:
    try:
        return SqlSymptomCatalog(db).list_rules()
    except CatalogUnavailableError as exc:
        raise HTTPException(status_code=503, detail="Symptom catalog unavailable") from exc


@router.get("/symptoms/search", response_model=list[SymptomRule])
def search_symptoms(q: str = "", db: Session = Depends(get_session)) -> list[SymptomRule]:
    if len(q.strip()) < 2:
        raise HTTPException(
            status_code=400, detail="Search query must be at least 2 characters"
        )
    pattern = f"%{_escape_like(q.strip())}%"
    stmt = (
        select(SymptomRuleRecord)
        .where(SymptomRuleRecord.symptom.ilike(pattern, escape="\\"))
        .order_by(SymptomRuleRecord.symptom)
        .limit(10)
    )
    return [SymptomRule.model_validate(record) for record in db.scalars(stmt).all()]


@router.get("/symptoms/analytics", response_model=SymptomAnalytics)
def symptom_analytics(
    days: int = Query(default=30, ge=1, le=365),
    db: Session = Depends(get_session),
    _doctor: dict = Depends(require_doctor),
) -> SymptomAnalytics:
    since = datetime.now(timezone.utc) - timedelta(days=days)
    stmt = select(Appointment.symptoms).where(
        Appointment.created_at >= since, Appointment.symptoms.is_not(None)
    )
    reported = Counter(
        text.strip().lower() for text in db.scalars(stmt).all() if text and text.strip()
    )
    known = db.scalars(select(SymptomRuleRecord.symptom)).all()
    with_rules = sum(1 for text in reported if any(symptom in text for symptom in known))

    return SymptomAnalytics(
        period_days=days,
        frequency=[
            SymptomFrequency(symptom=symptom, count=count)
            for symptom, count in reported.most_common(20)
        ],
        coverage=SymptomCoverage(
            reported=len(reported),
            with_rules=with_rules,
            percentage=round(with_rules / len(reported) * 100, 1) if reported else 0.0,
        ),
    )


@router.get("/symptoms/{symptom}/questions", response_model=SymptomQuestionsOut)
def symptom_questions(symptom: str, db: Session = Depends(get_session)) -> SymptomQuestionsOut:
    try:
        rule = SqlSymptomCatalog(db).find_rule(symptom)
    except CatalogUnavailableError:
        rule = None
    questions = list(rule.follow_up_questions) if rule else DEFAULT_FOLLOW_UP_QUESTIONS
    return SymptomQuestionsOut(symptom=symptom.lower(), questions=questions)


@router.post("/symptoms", response_model=SymptomRuleOut, status_code=201)
def create_symptom_rule(
    payload: SymptomRuleCreate,
    db: Session = Depends(get_session),
    _doctor: dict = Depends(require_doctor),
) -> SymptomRuleOut:
    if _rule_by_symptom(db, payload.symptom):
        raise HTTPException(status_code=409, detail="Symptom rule already exists")
    record = SymptomRuleRecord(**payload.model_dump())
    db.add(record)
    db.commit()
    db.refresh(record)
    logger.info("symptom_rule_created rule_id=%s symptom=%s", record.id, record.symptom)
    return record


@router.put("/symptoms/{rule_id}", response_model=SymptomRuleOut)
def update_symptom_rule(
    rule_id: str,
    payload: SymptomRuleUpdate,
    db: Session = Depends(get_session),
    _doctor: dict = Depends(require_doctor),
) -> SymptomRuleOut:
    record = db.get(SymptomRuleRecord, rule_id)
    if not record:
        raise HTTPException(status_code=404, detail="Symptom rule not found")
    changes = payload.model_dump(exclude_none=True)
    if not changes:
        raise HTTPException(status_code=400, detail="No valid fields to update")
    if "symptom" in changes and changes["symptom"] != record.symptom:
        if _rule_by_symptom(db, changes["symptom"]):
            raise HTTPException(status_code=409, detail="Symptom rule already exists")

    for field, value in changes.items():
        setattr(record, field, value)
    db.commit()
    db.refresh(record)
    logger.info("symptom_rule_updated rule_id=%s fields=%s", record.id, ",".join(changes))
    return record


@router.delete("/symptoms/{rule_id}")
def delete_symptom_rule(
    rule_id: str,
    db: Session = Depends(get_session),
    _doctor: dict = Depends(require_doctor),
) -> dict:
    record = db.get(SymptomRuleRecord, rule_id)
    if not record:
        raise HTTPException(status_code=404, detail="Symptom rule not found")
    db.delete(record)
    db.commit()
    logger.info("symptom_rule_deleted rule_id=%s", rule_id)
    return {"status": "deleted"}


@router.post("/symptoms/bulk-import", response_model=BulkImportResult)
def bulk_import_symptom_rules(
    payload: BulkImportRequest,
    db: Session = Depends(get_session),
    _doctor: dict = Depends(require_doctor),
) -> BulkImportResult:
    result = BulkImportResult()
    for item in payload.symptoms:
        try:
            rule = SymptomRuleCreate.model_validate(item)
        except ValidationError as exc:
            label = item.get("symptom") or "unknown"
            result.errors.append(f"Invalid rule for {label}: {exc.error_count()} error(s)")
            continue

        record = _rule_by_symptom(db, rule.symptom)
        if record:
            record.follow_up_questions = rule.follow_up_questions
            record.severity_indicators = rule.severity_indicators
            record.emergency_flags = rule.emergency_flags
            result.updated += 1
        else:
            db.add(SymptomRuleRecord(**rule.model_dump()))
            result.created += 1
        # Flush so a repeated symptom later in the batch is seen as existing.
        db.flush()

    db.commit()
    logger.info(
        "symptom_rules_imported created=%s updated=%s errors=%s",
        result.created,
        result.updated,
        len(result.errors),
    )
    return result

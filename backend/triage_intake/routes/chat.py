import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import select, update
from sqlalchemy.orm import Session

from ..config import settings
from ..db import get_session
from ..models import ChatInteraction, ChatSession, Patient, UrgentCase
from ..schemas import (
    SESSION_STATE_ADAPTER,
    ChatCompleteRequest,
    ChatCompleteResponse,
    ChatMessageRequest,
    ChatMessageResponse,
    ChatStartRequest,
    ChatStartResponse,
    PatientContext,
    PreviousSession,
)
from ..services.availability import GoogleCalendarAvailability
from ..services.llm import AnthropicClient
from ..services.orchestrator import ResponseOrchestrator, new_session_state
from ..services.store import (
    CatalogUnavailableError,
    SessionNotFoundError,
    SqlBookedAvailability,
    SqlDoctorDirectory,
    SqlSessionStore,
    SqlSymptomCatalog,
)

router = APIRouter()
logger = logging.getLogger(__name__)

TRY_AGAIN_MESSAGE = "I'm having trouble processing your request. Please try again."

# One in-flight turn per session. An entry lives only while a turn holds or
# waits for it.
_session_locks: dict[str, asyncio.Lock] = {}
_session_waiters: dict[str, int] = {}


@asynccontextmanager
async def _session_turn(session_id: str):
    lock = _session_locks.setdefault(session_id, asyncio.Lock())
    _session_waiters[session_id] = _session_waiters.get(session_id, 0) + 1
    try:
        async with lock:
            yield
    finally:
        _session_waiters[session_id] -= 1
        if not _session_waiters[session_id]:
            del _session_waiters[session_id]
            _session_locks.pop(session_id, None)


def get_orchestrator(db: Session = Depends(get_session)) -> ResponseOrchestrator:
    return ResponseOrchestrator(
        catalog=SqlSymptomCatalog(db),
        inference=AnthropicClient(),
        availability=SqlBookedAvailability(db, GoogleCalendarAvailability()),
        doctors=SqlDoctorDirectory(db),
    )


def _previous_sessions(db: Session, patient_id: str) -> list[PreviousSession]:
    stmt = (
        select(ChatSession)
        .where(
            ChatSession.patient_id == patient_id,
            ChatSession.status == "completed",
            ChatSession.summary.is_not(None),
        )
        .order_by(ChatSession.created_at.desc())
        .limit(3)
    )
    return [
        PreviousSession(
            session_id=record.id,
            summary=record.summary,
            diagnosis_hints=record.ai_diagnosis_hints,
            created_at=record.created_at,
        )
        for record in db.scalars(stmt).all()
    ]


def _patient_context(db: Session, record: ChatSession) -> PatientContext:
    patient = db.get(Patient, record.patient_id) if record.patient_id else None
    if not patient:
        return PatientContext(chat_type=record.chat_type)
    previous_sessions = _previous_sessions(db, patient.id)
    return PatientContext(
        name=patient.name,
        age=patient.age,
        chat_type=record.chat_type,
        is_existing_patient=bool(previous_sessions),
        previous_sessions=previous_sessions,
    )


@router.post("/chat/start", response_model=ChatStartResponse)
def start_chat(
    payload: ChatStartRequest, db: Session = Depends(get_session)
) -> ChatStartResponse:
    patient = None
    if payload.patient_id:
        patient = db.get(Patient, payload.patient_id)
        if not patient:
            raise HTTPException(status_code=404, detail="Patient not found")
        db.execute(
            update(ChatSession)
            .where(ChatSession.patient_id == patient.id, ChatSession.status == "active")
            .values(status="completed", completed_at=datetime.now(timezone.utc))
        )

    previous_sessions = _previous_sessions(db, patient.id) if patient else []
    # Only completed sessions with a summary count as history.
    is_existing_patient = bool(previous_sessions)
    language = payload.language or (patient.language if patient else None) or "en"
    state = new_session_state(language)

    record = ChatSession(
        patient_id=patient.id if patient else None,
        chat_type=payload.chat_type,
        session_data=SESSION_STATE_ADAPTER.dump_python(state, mode="json"),
        status="active",
    )
    db.add(record)
    db.commit()
    db.refresh(record)
    logger.info("chat_started session_id=%s language=%s", record.id, language)

    return ChatStartResponse(
        session_id=record.id,
        language=language,
        is_existing_patient=is_existing_patient,
        previous_sessions=previous_sessions,
        state=state,
        message="Chat session started",
    )


@router.post("/chat/message", response_model=ChatMessageResponse)
async def chat_message(
    payload: ChatMessageRequest,
    db: Session = Depends(get_session),
    orchestrator: ResponseOrchestrator = Depends(get_orchestrator),
) -> ChatMessageResponse:
    message = payload.message.strip()
    if not message:
        raise HTTPException(status_code=400, detail="Message is required")
    if len(message) > settings.max_message_length:
        raise HTTPException(
            status_code=400,
            detail=f"Message too long. Maximum {settings.max_message_length} characters allowed.",
        )

    async with _session_turn(payload.session_id):
        store = SqlSessionStore(db)
        try:
            record = store.record(payload.session_id)
            state = store.load(payload.session_id)
        except SessionNotFoundError:
            raise HTTPException(status_code=404, detail="Chat session not found")
        if record.status != "active":
            raise HTTPException(status_code=409, detail="Chat session is closed")

        try:
            result = await orchestrator.handle(message, state, _patient_context(db, record))
        except CatalogUnavailableError as exc:
            logger.error("catalog_unavailable session_id=%s error=%s", record.id, exc)
            raise HTTPException(status_code=503, detail=TRY_AGAIN_MESSAGE) from exc

        db.add(
            ChatInteraction(
                session_id=record.id,
                question=result.answer.question,
                answer=result.answer.answer,
                question_type=state.current_step,
            )
        )
        record.total_questions_asked = (record.total_questions_asked or 0) + 1

        new_state = result.state
        if new_state.is_emergency and not state.is_emergency:
            transcript = "\n".join(
                f"{item.question}: {item.answer}" for item in new_state.all_patient_answers
            )
            db.add(
                UrgentCase(
                    patient_id=record.patient_id,
                    session_id=record.id,
                    severity=new_state.priority,
                    summary=f"Emergency indicators during intake ({new_state.current_symptom or 'symptom not identified'}).",
                    transcript=transcript[:5000],
                    status="received",
                )
            )
            logger.warning(
                "urgent_case_recorded session_id=%s priority=%s", record.id, new_state.priority
            )

        store.save(record.id, new_state)

    return ChatMessageResponse(session_id=record.id, reply=result.reply, state=new_state)


@router.post("/chat/complete", response_model=ChatCompleteResponse)
def complete_chat(
    payload: ChatCompleteRequest, db: Session = Depends(get_session)
) -> ChatCompleteResponse:
    store = SqlSessionStore(db)
    try:
        record = store.record(payload.session_id)
        state = store.load(payload.session_id)
    except SessionNotFoundError:
        raise HTTPException(status_code=404, detail="Chat session not found")

    record.status = "completed"
    record.completed_at = datetime.now(timezone.utc)
    record.summary = payload.summary or state.session_summary
    record.ai_diagnosis_hints = state.diagnosis_suggestions
    db.commit()
    return ChatCompleteResponse(session_id=record.id, status=record.status)

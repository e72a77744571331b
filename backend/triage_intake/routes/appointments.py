import logging
from datetime import timedelta

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from ..config import settings
from ..db import get_session
from ..models import Appointment, Doctor, Patient
from ..schemas import AppointmentBookRequest, AppointmentOut, DoctorRef
from ..services.availability import GoogleCalendarAvailability
from ..services.slots import clinic_now, generate_slots, to_clinic_time
from ..services.store import SessionNotFoundError, SqlSessionStore, booked_intervals
from .slots import get_availability

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post("/appointments/book", response_model=AppointmentOut)
async def book_appointment(
    payload: AppointmentBookRequest,
    db: Session = Depends(get_session),
    availability: GoogleCalendarAvailability = Depends(get_availability),
) -> AppointmentOut:
    patient = db.get(Patient, payload.patient_id)
    if not patient:
        raise HTTPException(status_code=404, detail="Patient not found")

    state = None
    if payload.session_id:
        try:
            state = SqlSessionStore(db).load(payload.session_id)
        except SessionNotFoundError:
            raise HTTPException(status_code=404, detail="Chat session not found")

    suggested = getattr(state, "suggested_doctor", None)
    doctor_id = payload.doctor_id or (suggested.id if suggested else None)
    if not doctor_id:
        raise HTTPException(status_code=400, detail="doctor_id is required")
    record = db.get(Doctor, doctor_id)
    if not record:
        raise HTTPException(status_code=404, detail="Doctor not found")
    doctor = DoctorRef.model_validate(record)

    slot_start = to_clinic_time(payload.slot_start)
    slot_end = to_clinic_time(payload.slot_end)
    if slot_end - slot_start != timedelta(minutes=settings.slot_minutes):
        raise HTTPException(
            status_code=400,
            detail=f"Slots are {settings.slot_minutes} minutes long",
        )
    if slot_start <= clinic_now():
        raise HTTPException(status_code=400, detail="Slot is in the past")

    try:
        busy = await availability.free_busy(doctor.identity, slot_start, slot_end)
    except Exception as exc:
        logger.warning("freebusy_failed doctor_id=%s error=%s", doctor.id, exc)
        busy = []
    busy = [*busy, *booked_intervals(db, doctor.identity, slot_start, slot_end)]

    # The requested slot must be exactly what the slot walk would offer now.
    candidates = generate_slots(slot_start, slot_end, busy, max_candidates=1, limit=1)
    if not candidates or candidates[0].start != slot_start:
        raise HTTPException(status_code=409, detail="Slot is not available")

    appointment = Appointment(
        doctor_id=doctor.id,
        patient_id=patient.id,
        session_id=payload.session_id,
        appointment_time=slot_start,
        end_time=slot_end,
        status="scheduled",
        chat_summary=payload.chat_summary or (state.session_summary if state else None),
        symptoms=payload.symptoms or (state.current_symptom if state else None),
        ai_diagnosis_hints=payload.ai_diagnosis_hints
        or (state.diagnosis_suggestions if state else None),
    )
    db.add(appointment)
    db.commit()
    db.refresh(appointment)
    logger.info(
        "appointment_booked appointment_id=%s doctor_id=%s start=%s",
        appointment.id,
        doctor.id,
        slot_start.isoformat(),
    )
    return appointment

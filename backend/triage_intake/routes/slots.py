from datetime import timedelta

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from ..db import get_session
from ..schemas import SlotsResponse, SuggestedDoctor
from ..services.availability import GoogleCalendarAvailability, find_booking_slots
from ..services.slots import clinic_now
from ..services.store import SqlBookedAvailability, SqlDoctorDirectory

router = APIRouter()


def get_availability() -> GoogleCalendarAvailability:
    return GoogleCalendarAvailability()


@router.get("/appointments/slots", response_model=SlotsResponse)
async def list_slots(
    doctor_id: str | None = None,
    days: int = Query(default=3, ge=1, le=14),
    db: Session = Depends(get_session),
    availability: GoogleCalendarAvailability = Depends(get_availability),
) -> SlotsResponse:
    doctors = SqlDoctorDirectory(db).list_doctors()
    if doctor_id:
        doctors = [doctor for doctor in doctors if doctor.id == doctor_id]
        if not doctors:
            raise HTTPException(status_code=404, detail="Doctor not found")

    start_date = clinic_now()
    offer = await find_booking_slots(
        doctors,
        SqlBookedAvailability(db, availability),
        start_date,
        start_date + timedelta(days=days),
    )
    return SlotsResponse(
        slots=offer.slots,
        suggested_doctor=(
            SuggestedDoctor(id=offer.doctor.id, name=offer.doctor.name) if offer.doctor else None
        ),
        used_default=offer.used_default,
    )

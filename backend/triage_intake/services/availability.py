import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime

import httpx

from ..config import settings
from ..schemas import BusyInterval, CandidateSlot, DoctorRef
from .slots import default_slots, generate_slots

logger = logging.getLogger(__name__)

GOOGLE_FREEBUSY_URL = "https://www.googleapis.com/calendar/v3/freeBusy"


class GoogleCalendarAvailability:
    """Availability collaborator backed by the Google Calendar freeBusy API."""

    def __init__(
        self,
        access_token: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.access_token = (
            settings.google_calendar_access_token if access_token is None else access_token
        )
        self.transport = transport

    async def free_busy(
        self, identity: str, start_date: datetime, end_date: datetime
    ) -> list[BusyInterval]:
        if not self.access_token:
            raise RuntimeError("GOOGLE_CALENDAR_ACCESS_TOKEN is not configured")

        request_id = uuid.uuid4().hex
        start = time.perf_counter()
        try:
            payload = {
                "timeMin": start_date.isoformat(),
                "timeMax": end_date.isoformat(),
                "items": [{"id": identity}],
            }
            headers = {"authorization": f"Bearer {self.access_token}"}
            async with httpx.AsyncClient(timeout=10, transport=self.transport) as client:
                response = await client.post(GOOGLE_FREEBUSY_URL, json=payload, headers=headers)
                response.raise_for_status()
                data = response.json()
        finally:
            latency_ms = int((time.perf_counter() - start) * 1000)
            logger.info(
                "google_freebusy request_id=%s identity=%s latency_ms=%s",
                request_id,
                identity,
                latency_ms,
            )

        calendar = (data.get("calendars") or {}).get(identity) or {}
        if calendar.get("errors"):
            raise RuntimeError(f"freeBusy returned errors for {identity}: {calendar['errors']}")
        return [
            BusyInterval(start=item["start"], end=item["end"])
            for item in calendar.get("busy", []) or []
        ]


@dataclass
class BookingOffer:
    slots: list[CandidateSlot] = field(default_factory=list)
    doctor: DoctorRef | None = None
    used_default: bool = False


async def find_booking_slots(
    doctors: list[DoctorRef],
    availability,
    start_date: datetime,
    end_date: datetime,
) -> BookingOffer:
    """Offer the slots of whichever doctor has the most free candidates.

    A doctor whose calendar lookup fails is skipped. When no doctor yields a
    slot, the deterministic default set is offered with the first doctor.
    """
    best = BookingOffer()
    for doctor in doctors:
        try:
            busy = await availability.free_busy(doctor.identity, start_date, end_date)
        except Exception as exc:
            logger.warning("freebusy_failed doctor_id=%s error=%s", doctor.id, exc)
            continue
        slots = generate_slots(start_date, end_date, busy)
        if len(slots) > len(best.slots):
            best = BookingOffer(slots=slots, doctor=doctor)

    if best.slots:
        return best

    logger.info("booking_default_slots doctors=%s", len(doctors))
    return BookingOffer(
        slots=default_slots(start_date),
        doctor=doctors[0] if doctors else None,
        used_default=True,
    )

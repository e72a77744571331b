import logging
from datetime import datetime

from pydantic import ValidationError
from sqlalchemy import or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..models import Appointment, ChatSession, Doctor, SymptomRuleRecord
from ..schemas import SESSION_STATE_ADAPTER, BusyInterval, DoctorRef, SessionState, SymptomRule
from .slots import to_clinic_time

logger = logging.getLogger(__name__)


class CatalogUnavailableError(RuntimeError):
    pass


class SessionNotFoundError(LookupError):
    pass


class SqlSymptomCatalog:
    def __init__(self, db: Session) -> None:
        self.db = db
        self._rules: list[SymptomRule] | None = None

    def list_rules(self) -> list[SymptomRule]:
        if self._rules is not None:
            return self._rules
        try:
            records = self.db.scalars(
                select(SymptomRuleRecord).order_by(SymptomRuleRecord.symptom)
            ).all()
        except SQLAlchemyError as exc:
            raise CatalogUnavailableError("symptom catalog query failed") from exc

        rules = []
        for record in records:
            try:
                rules.append(SymptomRule.model_validate(record))
            except ValidationError:
                logger.warning("symptom_rule_invalid symptom=%s", record.symptom)
        if not rules:
            raise CatalogUnavailableError("no symptom rules available")
        self._rules = rules
        return rules

    def find_rule(self, key: str) -> SymptomRule | None:
        wanted = key.strip().lower()
        for rule in self.list_rules():
            if rule.symptom == wanted:
                return rule
        return None


class SqlSessionStore:
    def __init__(self, db: Session) -> None:
        self.db = db

    def record(self, session_id: str) -> ChatSession:
        record = self.db.get(ChatSession, session_id)
        if record is None:
            raise SessionNotFoundError(session_id)
        return record

    def load(self, session_id: str) -> SessionState:
        data = dict(self.record(session_id).session_data or {})
        data.setdefault("current_step", "symptom_identification")
        return SESSION_STATE_ADAPTER.validate_python(data)

    def save(self, session_id: str, state: SessionState) -> None:
        """Persist the state and commit whatever else is pending on the session."""
        record = self.record(session_id)
        record.session_data = SESSION_STATE_ADAPTER.dump_python(state, mode="json")
        self.db.commit()


class SqlDoctorDirectory:
    def __init__(self, db: Session) -> None:
        self.db = db

    def list_doctors(self) -> list[DoctorRef]:
        doctors = self.db.scalars(select(Doctor).order_by(Doctor.name)).all()
        return [DoctorRef.model_validate(doctor) for doctor in doctors]


def booked_intervals(
    db: Session, identity: str, start_date: datetime, end_date: datetime
) -> list[BusyInterval]:
    """Scheduled appointments of the doctor behind ``identity`` in the range."""
    # SQLite keeps wall-clock values, so compare in clinic time.
    start_date, end_date = to_clinic_time(start_date), to_clinic_time(end_date)
    stmt = (
        select(Appointment)
        .join(Doctor, Doctor.id == Appointment.doctor_id)
        .where(
            or_(Doctor.calendar_id == identity, Doctor.email == identity),
            Appointment.status == "scheduled",
            Appointment.appointment_time < end_date,
            Appointment.end_time > start_date,
        )
    )
    return [
        BusyInterval(start=item.appointment_time, end=item.end_time)
        for item in db.scalars(stmt).all()
    ]


class SqlBookedAvailability:
    """Adds the clinic's own bookings to a calendar's busy intervals."""

    def __init__(self, db: Session, calendar) -> None:
        self.db = db
        self.calendar = calendar

    async def free_busy(
        self, identity: str, start_date: datetime, end_date: datetime
    ) -> list[BusyInterval]:
        busy = await self.calendar.free_busy(identity, start_date, end_date)
        return [*busy, *booked_intervals(self.db, identity, start_date, end_date)]

from collections.abc import Iterable
from datetime import date, datetime, time, timedelta, tzinfo
from zoneinfo import ZoneInfo

from ..config import settings
from ..schemas import BusyInterval, CandidateSlot

SLOT_LABEL_FORMAT = "%a, %d %b, %I:%M %p"


def format_slot_label(start_time: datetime) -> str:
    return start_time.strftime(SLOT_LABEL_FORMAT)


def clinic_now() -> datetime:
    return datetime.now(ZoneInfo(settings.clinic_timezone))


def to_clinic_time(value: datetime) -> datetime:
    return _localize(value, ZoneInfo(settings.clinic_timezone))


def _localize(value: datetime, zone: tzinfo | None) -> datetime:
    # Naive busy times are read as clinic-local.
    if zone is None:
        return value.astimezone().replace(tzinfo=None) if value.tzinfo else value
    if value.tzinfo is None:
        return value.replace(tzinfo=zone)
    return value.astimezone(zone)


def _round_up(cursor: datetime, minutes: int) -> datetime:
    floored = cursor.replace(
        minute=cursor.minute - cursor.minute % minutes, second=0, microsecond=0
    )
    if floored < cursor:
        floored += timedelta(minutes=minutes)
    return floored


def _opening(day: date, hour: int, zone: tzinfo | None) -> datetime:
    return datetime.combine(day, time(hour), tzinfo=zone)


def generate_slots(
    start_date: datetime,
    end_date: datetime,
    busy_intervals: Iterable[BusyInterval],
    *,
    open_hour: int | None = None,
    close_hour: int | None = None,
    slot_minutes: int | None = None,
    max_candidates: int | None = None,
    limit: int | None = None,
) -> list[CandidateSlot]:
    """Walk the range in fixed steps and collect free weekday slots.

    Weekends are skipped, only [open_hour, close_hour) is considered, and a
    candidate is dropped when it overlaps any busy interval (half-open test).
    The walk stops after ``max_candidates`` free slots or at ``end_date``;
    the first ``limit`` of them are returned in chronological order.
    """
    open_hour = settings.working_day_start_hour if open_hour is None else open_hour
    close_hour = settings.working_day_end_hour if close_hour is None else close_hour
    slot_minutes = settings.slot_minutes if slot_minutes is None else slot_minutes
    max_candidates = settings.max_slot_candidates if max_candidates is None else max_candidates
    limit = settings.slots_offered if limit is None else limit

    zone = start_date.tzinfo
    step = timedelta(minutes=slot_minutes)
    end = _localize(end_date, zone)
    busy = [
        (_localize(interval.start, zone), _localize(interval.end, zone))
        for interval in busy_intervals
    ]

    accepted: list[CandidateSlot] = []
    cursor = _round_up(start_date, slot_minutes)
    while cursor < end and len(accepted) < max_candidates:
        if cursor.weekday() >= 5:
            cursor = _opening(cursor.date() + timedelta(days=1), open_hour, zone)
            continue
        if cursor.hour < open_hour:
            cursor = _opening(cursor.date(), open_hour, zone)
            continue

        if cursor.hour < close_hour:
            slot_end = cursor + step
            conflict = any(
                cursor < busy_end and slot_end > busy_start
                for busy_start, busy_end in busy
            )
            if not conflict:
                accepted.append(
                    CandidateSlot(
                        start=cursor, end=slot_end, display=format_slot_label(cursor)
                    )
                )

        cursor += step
        if cursor.hour >= close_hour:
            cursor = _opening(cursor.date() + timedelta(days=1), open_hour, zone)

    return accepted[:limit]


def next_business_day(day: date) -> date:
    candidate = day + timedelta(days=1)
    while candidate.weekday() >= 5:
        candidate += timedelta(days=1)
    return candidate


def default_slots(
    now: datetime | None = None,
    *,
    count: int | None = None,
    first_hour: int = 10,
    spacing_hours: int = 2,
    slot_minutes: int | None = None,
) -> list[CandidateSlot]:
    now = now or clinic_now()
    count = settings.slots_offered if count is None else count
    slot_minutes = settings.slot_minutes if slot_minutes is None else slot_minutes
    day = next_business_day(now.date())
    slots = []
    for index in range(count):
        start = _opening(day, first_hour + index * spacing_hours, now.tzinfo)
        slots.append(
            CandidateSlot(
                start=start,
                end=start + timedelta(minutes=slot_minutes),
                display=format_slot_label(start),
            )
        )
    return slots

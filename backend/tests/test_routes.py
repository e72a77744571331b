from __future__ import annotations

import asyncio
from datetime import datetime, time, timedelta

import httpx
import pytest
from jose import jwt
from sqlalchemy import select

from fakes import FakeAvailability, FakeCatalog, FakeDoctors, FakeInference, clinic_time
from triage_intake.auth import issue_doctor_token, main as doctor_token_command
from triage_intake.config import settings
from triage_intake.db import SessionLocal, init_db
from triage_intake.models import Appointment, ChatInteraction, Doctor, Patient, SymptomRuleRecord
from triage_intake.routes.chat import (
    TRY_AGAIN_MESSAGE,
    _session_locks,
    _session_waiters,
    get_orchestrator,
)
from triage_intake.routes.slots import get_availability
from triage_intake.seed import seed_data
from triage_intake.services.orchestrator import ResponseOrchestrator
from triage_intake.services.slots import clinic_now
from triage_intake.services.store import SqlSessionStore


def _start(client, **payload) -> str:
    response = client.post("/api/chat/start", json=payload)
    assert response.status_code == 200
    return response.json()["session_id"]


def _send(client, session_id: str, message: str):
    return client.post("/api/chat/message", json={"session_id": session_id, "message": message})


def _any_patient_id() -> str:
    with SessionLocal() as db:
        return db.scalars(select(Patient.id)).first()


@pytest.fixture
def doctor_secret(monkeypatch):
    monkeypatch.setattr(settings, "doctor_token_secret", "test-doctor-secret")
    return "test-doctor-secret"


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


def test_start_chat_for_known_patient(client):
    patient_id = _any_patient_id()
    response = client.post("/api/chat/start", json={"patient_id": patient_id, "language": "te"})

    body = response.json()
    assert response.status_code == 200
    assert body["language"] == "te"
    assert body["state"]["current_step"] == "symptom_identification"
    assert body["state"]["questions_asked_for_current_symptom"] == 0


def test_start_chat_for_unknown_patient(client):
    response = client.post("/api/chat/start", json={"patient_id": "missing"})
    assert response.status_code == 404


def test_message_advances_and_records_the_turn(client):
    session_id = _start(client)

    first = _send(client, session_id, "I have chest pane since morning").json()
    assert first["state"]["current_step"] == "symptom_questions"
    assert first["state"]["current_symptom"] == "chest pain"
    assert first["reply"]["question_number"] == 1
    assert first["reply"]["message"].startswith("When did the chest pain start?")

    second = _send(client, session_id, "two hours ago").json()
    assert second["state"]["questions_asked_for_current_symptom"] == 2

    with SessionLocal() as db:
        interactions = db.scalars(
            select(ChatInteraction).where(ChatInteraction.session_id == session_id)
        ).all()
    assert sorted(item.answer for item in interactions) == [
        "I have chest pain since morning",
        "two hours ago",
    ]


def test_booking_offer_falls_back_to_default_slots(client):
    session_id = _start(client)
    for message in ["chest pain", "an hour ago", "5", "no"]:
        body = _send(client, session_id, message).json()

    assert body["state"]["current_step"] == "booking_offer"
    assert len(body["reply"]["options"]) == 3
    assert body["reply"]["suggested_doctor"]["name"]


@pytest.mark.parametrize("message", ["   ", "x" * 1001])
def test_invalid_messages_are_rejected(client, message):
    session_id = _start(client)
    assert _send(client, session_id, message).status_code == 400


def test_unknown_session(client):
    assert _send(client, "no-such-session", "chest pain").status_code == 404


def test_completed_session_rejects_messages(client):
    session_id = _start(client)
    _send(client, session_id, "chest pain")

    response = client.post(
        "/api/chat/complete", json={"session_id": session_id, "summary": "Chest pain, stable."}
    )
    assert response.json() == {"session_id": session_id, "status": "completed"}
    assert _send(client, session_id, "one more thing").status_code == 409


def test_empty_catalog_asks_patient_to_try_again(client, doctors):
    from triage_intake.main import app

    app.dependency_overrides[get_orchestrator] = lambda: ResponseOrchestrator(
        FakeCatalog([]), FakeInference(), FakeAvailability(), FakeDoctors(doctors)
    )
    session_id = _start(client)
    response = _send(client, session_id, "chest pain")

    assert response.status_code == 503
    assert response.json()["detail"] == TRY_AGAIN_MESSAGE


def test_symptom_catalog_endpoints(client):
    symptoms = client.get("/api/symptoms").json()
    assert "chest pain" in [item["symptom"] for item in symptoms]

    found = client.get("/api/symptoms/search", params={"q": "breath"}).json()
    assert [item["symptom"] for item in found] == ["shortness of breath"]
    assert client.get("/api/symptoms/search", params={"q": "c"}).status_code == 400

    questions = client.get("/api/symptoms/Headache/questions").json()
    assert questions["symptom"] == "headache"
    assert len(questions["questions"]) == 3


def test_slots_endpoint(client):
    from triage_intake.main import app

    default = client.get("/api/appointments/slots").json()
    assert default["used_default"] is True
    assert len(default["slots"]) == 3

    app.dependency_overrides[get_availability] = lambda: FakeAvailability()
    live = client.get("/api/appointments/slots", params={"days": 7}).json()
    assert live["used_default"] is False
    assert len(live["slots"]) == 3

    assert client.get("/api/appointments/slots", params={"doctor_id": "nobody"}).status_code == 404
    assert client.get("/api/appointments/slots", params={"days": 30}).status_code == 422


def test_triage_endpoint(client):
    urgent = client.post("/api/triage", json={"message": "crushing pain in my chest"}).json()
    assert urgent == {"priority": "URGENT", "is_emergency": True}

    high = client.post("/api/triage", json={"message": "mild ache", "hints": "palpitations"}).json()
    assert high["priority"] == "HIGH"


def test_emergency_creates_urgent_case_for_doctors(client, doctor_secret):
    session_id = _start(client)
    reply = _send(client, session_id, "crushing pain in my chest").json()["reply"]
    assert reply["is_emergency"] is True
    assert reply["priority"] == "URGENT"

    token = issue_doctor_token("doc-1")
    response = client.get("/api/urgent_cases", headers={"Authorization": f"Bearer {token}"})

    assert response.status_code == 200
    cases = [case for case in response.json() if case["session_id"] == session_id]
    assert len(cases) == 1
    assert cases[0]["severity"] == "URGENT"
    assert "crushing pain in my chest" in cases[0]["transcript"]


def test_urgent_cases_require_a_doctor_token(client, doctor_secret):
    assert client.get("/api/urgent_cases").status_code == 401

    patient_token = jwt.encode(
        {"sub": "patient-1", "aud": settings.doctor_token_audience, "role": "patient"},
        doctor_secret,
        algorithm="HS256",
    )
    response = client.get(
        "/api/urgent_cases", headers={"Authorization": f"Bearer {patient_token}"}
    )
    assert response.status_code == 403

    forged = jwt.encode(
        {"sub": "doc-1", "aud": settings.doctor_token_audience, "role": "doctor"},
        "wrong-secret",
        algorithm="HS256",
    )
    response = client.get("/api/urgent_cases", headers={"Authorization": f"Bearer {forged}"})
    assert response.status_code == 403


def test_urgent_cases_unavailable_without_secret(client):
    assert client.get("/api/urgent_cases").status_code == 500


def _new_patient_id(name: str) -> str:
    with SessionLocal() as db:
        patient = Patient(name=name, age=61, phone="+91 90000 00000", email="patient@example.com")
        db.add(patient)
        db.commit()
        return patient.id


def _doctor_headers() -> dict[str, str]:
    return {"Authorization": f"Bearer {issue_doctor_token('doc-1')}"}


def test_restarting_without_history_is_not_an_existing_patient(client):
    patient_id = _new_patient_id("Meera Rao")

    first = client.post("/api/chat/start", json={"patient_id": patient_id}).json()
    second = client.post("/api/chat/start", json={"patient_id": patient_id}).json()

    assert first["is_existing_patient"] is False
    assert second["is_existing_patient"] is False
    assert second["previous_sessions"] == []


def test_completed_session_with_summary_makes_an_existing_patient(client):
    patient_id = _new_patient_id("Kiran Das")
    session_id = _start(client, patient_id=patient_id)
    client.post("/api/chat/complete", json={"session_id": session_id, "summary": "Palpitations."})

    body = client.post("/api/chat/start", json={"patient_id": patient_id}).json()

    assert body["is_existing_patient"] is True
    assert [item["summary"] for item in body["previous_sessions"]] == ["Palpitations."]


def test_session_locks_are_released_after_each_turn(client):
    session_id = _start(client)
    _send(client, session_id, "chest pain")
    _send(client, session_id, "an hour ago")

    assert session_id not in _session_locks
    assert session_id not in _session_waiters


class _OverlapTrackingInference:
    def __init__(self) -> None:
        self.active = 0
        self.max_active = 0

    async def complete(self, prompt: str) -> str:
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        await asyncio.sleep(0.05)
        self.active -= 1
        return '{"message": "Could you describe it another way?"}'


@pytest.mark.asyncio
async def test_concurrent_messages_for_one_session_run_one_at_a_time(rules, doctors):
    from triage_intake.main import app

    init_db()
    seed_data()
    inference = _OverlapTrackingInference()
    app.dependency_overrides[get_orchestrator] = lambda: ResponseOrchestrator(
        FakeCatalog(rules), inference, FakeAvailability(), FakeDoctors(doctors)
    )
    transport = httpx.ASGITransport(app=app)
    try:
        async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
            session_id = (await client.post("/api/chat/start", json={})).json()["session_id"]
            responses = await asyncio.gather(
                *(
                    client.post(
                        "/api/chat/message", json={"session_id": session_id, "message": message}
                    )
                    for message in ("something is off", "still feeling odd")
                )
            )
    finally:
        app.dependency_overrides.clear()

    assert [response.status_code for response in responses] == [200, 200]
    assert inference.max_active == 1
    with SessionLocal() as db:
        state = SqlSessionStore(db).load(session_id)
    assert sorted(answer.answer for answer in state.all_patient_answers) == [
        "something is off",
        "still feeling odd",
    ]
    assert session_id not in _session_locks
    assert session_id not in _session_waiters


def _next_saturday_at_ten() -> datetime:
    now = clinic_now()
    day = now.date() + timedelta(days=(5 - now.weekday()) % 7 or 7)
    return datetime.combine(day, time(10), tzinfo=now.tzinfo)


def test_booking_rechecks_and_persists_the_slot(client):
    from triage_intake.main import app

    app.dependency_overrides[get_availability] = lambda: FakeAvailability()
    offer = client.get("/api/appointments/slots", params={"days": 7}).json()
    slot = offer["slots"][0]
    doctor_id = offer["suggested_doctor"]["id"]
    payload = {
        "patient_id": _any_patient_id(),
        "doctor_id": doctor_id,
        "slot_start": slot["start"],
        "slot_end": slot["end"],
        "symptoms": "chest pain",
    }

    booked = client.post("/api/appointments/book", json=payload)

    assert booked.status_code == 200
    body = booked.json()
    assert body["status"] == "scheduled"
    assert body["doctor_id"] == doctor_id
    with SessionLocal() as db:
        assert db.get(Appointment, body["id"]).symptoms == "chest pain"

    assert client.post("/api/appointments/book", json=payload).status_code == 409
    again = client.get(
        "/api/appointments/slots", params={"days": 7, "doctor_id": doctor_id}
    ).json()
    assert slot["start"] not in [item["start"] for item in again["slots"]]


def test_booking_rejects_slots_outside_the_schedule(client):
    from triage_intake.main import app

    app.dependency_overrides[get_availability] = lambda: FakeAvailability()
    patient_id = _any_patient_id()
    saturday = _next_saturday_at_ten()

    unknown_doctor = client.post(
        "/api/appointments/book",
        json={
            "patient_id": patient_id,
            "doctor_id": "doc-unknown",
            "slot_start": saturday.isoformat(),
            "slot_end": (saturday + timedelta(minutes=30)).isoformat(),
        },
    )
    assert unknown_doctor.status_code == 404

    with SessionLocal() as db:
        doctor_id = db.scalars(select(Doctor.id)).first()
    base = {"patient_id": patient_id, "doctor_id": doctor_id}
    weekend = client.post(
        "/api/appointments/book",
        json={
            **base,
            "slot_start": saturday.isoformat(),
            "slot_end": (saturday + timedelta(minutes=30)).isoformat(),
        },
    )
    assert weekend.status_code == 409

    too_long = client.post(
        "/api/appointments/book",
        json={
            **base,
            "slot_start": saturday.isoformat(),
            "slot_end": (saturday + timedelta(hours=1)).isoformat(),
        },
    )
    assert too_long.status_code == 400

    unknown_patient = client.post(
        "/api/appointments/book",
        json={
            **base,
            "patient_id": "missing",
            "slot_start": saturday.isoformat(),
            "slot_end": (saturday + timedelta(minutes=30)).isoformat(),
        },
    )
    assert unknown_patient.status_code == 404


@pytest.mark.parametrize("query", ["%%", "__", "\\\\"])
def test_symptom_search_treats_wildcards_literally(client, query):
    response = client.get("/api/symptoms/search", params={"q": query})
    assert response.status_code == 200
    assert response.json() == []


def test_doctor_token_command_prints_a_verifiable_token(client, doctor_secret, capsys):
    with SessionLocal() as db:
        doctor_id = db.scalars(select(Doctor.id)).first()

    doctor_token_command([doctor_id])

    token = capsys.readouterr().out.strip()
    claims = jwt.decode(
        token, doctor_secret, algorithms=["HS256"], audience=settings.doctor_token_audience
    )
    assert claims["sub"] == doctor_id
    assert claims["role"] == "doctor"

    with pytest.raises(SystemExit):
        doctor_token_command(["no-such-doctor"])


def test_symptom_rules_are_managed_by_doctors(client, doctor_secret):
    rule = {"symptom": " Ankle Swelling ", "follow_up_questions": ["Which ankle is swollen?"]}
    assert client.post("/api/symptoms", json=rule).status_code == 401

    created = client.post("/api/symptoms", json=rule, headers=_doctor_headers())
    assert created.status_code == 201
    assert created.json()["symptom"] == "ankle swelling"
    rule_id = created.json()["id"]
    assert client.post("/api/symptoms", json=rule, headers=_doctor_headers()).status_code == 409

    questions = ["Which ankle is swollen?", "Is it worse in the evening?"]
    updated = client.put(
        f"/api/symptoms/{rule_id}",
        json={"follow_up_questions": questions},
        headers=_doctor_headers(),
    )
    assert updated.status_code == 200
    assert client.get("/api/symptoms/Ankle Swelling/questions").json()["questions"] == questions

    empty = client.put(f"/api/symptoms/{rule_id}", json={}, headers=_doctor_headers())
    assert empty.status_code == 400
    rename = client.put(
        f"/api/symptoms/{rule_id}", json={"symptom": "Chest Pain"}, headers=_doctor_headers()
    )
    assert rename.status_code == 409

    deleted = client.delete(f"/api/symptoms/{rule_id}", headers=_doctor_headers())
    assert deleted.json() == {"status": "deleted"}
    assert client.delete(f"/api/symptoms/{rule_id}", headers=_doctor_headers()).status_code == 404
    assert (
        client.put(
            f"/api/symptoms/{rule_id}", json={"symptom": "ankle"}, headers=_doctor_headers()
        ).status_code
        == 404
    )


def test_bulk_import_creates_updates_and_reports_errors(client, doctor_secret):
    items = [
        {"symptom": "Night Sweats", "follow_up_questions": ["How many nights a week?"]},
        {"symptom": "night sweats", "follow_up_questions": ["Do you also have a fever?"]},
        {"symptom": "", "follow_up_questions": ["Anything else?"]},
        {"follow_up_questions": []},
    ]

    response = client.post(
        "/api/symptoms/bulk-import", json={"symptoms": items}, headers=_doctor_headers()
    )

    body = response.json()
    assert response.status_code == 200
    assert (body["created"], body["updated"], len(body["errors"])) == (1, 1, 2)
    with SessionLocal() as db:
        record = db.scalars(
            select(SymptomRuleRecord).where(SymptomRuleRecord.symptom == "night sweats")
        ).one()
    assert record.follow_up_questions == ["Do you also have a fever?"]
    client.delete(f"/api/symptoms/{record.id}", headers=_doctor_headers())


def test_symptom_analytics_groups_reported_symptoms(client, doctor_secret):
    patient_id = _any_patient_id()
    start = clinic_time(2024, 1, 8, 10, 0)
    with SessionLocal() as db:
        doctor_id = db.scalars(select(Doctor.id)).first()
        for text in ["Wheezing ", "wheezing", "chest pain and wheezing"]:
            db.add(
                Appointment(
                    doctor_id=doctor_id,
                    patient_id=patient_id,
                    appointment_time=start,
                    end_time=start + timedelta(minutes=30),
                    status="completed",
                    symptoms=text,
                )
            )
        db.commit()

    assert client.get("/api/symptoms/analytics").status_code == 401
    body = client.get(
        "/api/symptoms/analytics", params={"days": 7}, headers=_doctor_headers()
    ).json()

    frequency = {item["symptom"]: item["count"] for item in body["frequency"]}
    assert body["period_days"] == 7
    assert frequency["wheezing"] == 2
    assert frequency["chest pain and wheezing"] == 1
    coverage = body["coverage"]
    assert 1 <= coverage["with_rules"] <= coverage["reported"]
    assert 0 < coverage["percentage"] <= 100

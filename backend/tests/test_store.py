import pytest

from triage_intake.db import SessionLocal, init_db
from triage_intake.models import ChatSession
from triage_intake.seed import SYMPTOM_RULES, seed_data
from triage_intake.services.orchestrator import new_session_state
from triage_intake.services.store import (
    SessionNotFoundError,
    SqlDoctorDirectory,
    SqlSessionStore,
    SqlSymptomCatalog,
)


@pytest.fixture
def db():
    init_db()
    seed_data()
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


def test_seeding_is_idempotent(db):
    seed_data()
    rules = SqlSymptomCatalog(db).list_rules()
    assert len(rules) == len(SYMPTOM_RULES)


def test_catalog_lists_rules_in_key_order(db):
    keys = [rule.symptom for rule in SqlSymptomCatalog(db).list_rules()]
    assert keys == sorted(keys)
    assert "chest pain" in keys


def test_find_rule_normalizes_the_key(db):
    rule = SqlSymptomCatalog(db).find_rule("  Chest Pain ")
    assert rule.symptom == "chest pain"
    assert len(rule.follow_up_questions) == 8
    assert SqlSymptomCatalog(db).find_rule("headache") is None


def test_doctor_directory_lists_seeded_doctors(db):
    doctors = SqlDoctorDirectory(db).list_doctors()
    assert [doctor.name for doctor in doctors] == ["Dr. Priya Sharma", "Dr. Rajesh Kumar"]
    assert doctors[0].identity == "priya.sharma@clinic.example"


def test_session_state_round_trip(db):
    record = ChatSession(chat_type="text", session_data={}, status="active")
    db.add(record)
    db.commit()
    store = SqlSessionStore(db)

    assert store.load(record.id).current_step == "symptom_identification"

    state = new_session_state("hi").model_copy(update={"last_question": "What brings you in?"})
    store.save(record.id, state)
    loaded = store.load(record.id)
    assert loaded.language == "hi"
    assert loaded.last_question == "What brings you in?"


def test_missing_session_raises(db):
    with pytest.raises(SessionNotFoundError):
        SqlSessionStore(db).load("no-such-session")

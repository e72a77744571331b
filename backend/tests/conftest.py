from __future__ import annotations

import os
import tempfile
from datetime import datetime
from pathlib import Path

# Settings are read at import time, so the environment has to be in place first.
_DB_DIR = Path(tempfile.mkdtemp(prefix="triage-intake-tests-"))
os.environ["DATABASE_URL"] = f"sqlite:///{_DB_DIR / 'triage-intake-test.sqlite'}"
os.environ["ANTHROPIC_API_KEY"] = ""
os.environ["GOOGLE_CALENDAR_ACCESS_TOKEN"] = ""
os.environ["DOCTOR_TOKEN_SECRET"] = ""

import pytest
from fastapi.testclient import TestClient

from fakes import clinic_time
from triage_intake.schemas import DoctorRef, SymptomRule

CHEST_PAIN_QUESTIONS = [
    "When did the chest pain start? (minutes, hours, days ago)",
    "On a scale of 1-10, how severe is the pain?",
    "Does the pain radiate to your arm, jaw, neck or back?",
    "Do you have shortness of breath along with chest pain?",
    "Any family history of heart problems?",
]


@pytest.fixture
def rules() -> list[SymptomRule]:
    return [
        SymptomRule(
            symptom="chest pain",
            follow_up_questions=CHEST_PAIN_QUESTIONS,
            severity_indicators=["radiation to arm/jaw"],
            emergency_flags=["crushing chest pain"],
        ),
        SymptomRule(
            symptom="shortness of breath",
            follow_up_questions=[
                "When do you experience shortness of breath?",
                "Do you have swelling in your legs?",
            ],
            emergency_flags=["cannot speak in sentences"],
        ),
        SymptomRule(
            symptom="palpitations",
            follow_up_questions=["How often do you feel your heart racing?"],
        ),
    ]


@pytest.fixture
def doctors() -> list[DoctorRef]:
    return [
        DoctorRef(id="doc-1", name="Dr. Rajesh Kumar", email="rajesh.kumar@clinic.example"),
        DoctorRef(
            id="doc-2",
            name="Dr. Priya Sharma",
            email="priya.sharma@clinic.example",
            calendar_id="priya-calendar",
        ),
    ]


@pytest.fixture
def monday_morning() -> datetime:
    return clinic_time(2024, 6, 3, 8, 0)


@pytest.fixture
def client():
    from triage_intake.main import app

    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()

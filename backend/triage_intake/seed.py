import uuid

from faker import Faker
from sqlalchemy import func, select

from .db import SessionLocal
from .models import Doctor, Patient, SymptomRuleRecord


DOCTORS = [
    ("Dr. Rajesh Kumar", "rajesh.kumar@clinic.example", "Cardiology"),
    ("Dr. Priya Sharma", "priya.sharma@clinic.example", "Cardiology"),
]

SYMPTOM_RULES = [
    {
        "symptom": "chest pain",
        "follow_up_questions": [
            "When did the chest pain start? (minutes, hours, days ago)",
            "On a scale of 1-10, how severe is the pain?",
            "Does the pain radiate to your arm, jaw, neck or back?",
            "Do you have shortness of breath along with chest pain?",
            "Any family history of heart problems?",
            "Are you experiencing sweating or nausea?",
            "Does the pain worsen with physical activity?",
            "Have you taken any medication for this pain?",
        ],
        "severity_indicators": ["severe pain >7/10", "radiation to arm/jaw", "associated sweating"],
        "emergency_flags": ["pain >8/10 with sweating", "crushing chest pain", "pain with unconsciousness"],
    },
    {
        "symptom": "shortness of breath",
        "follow_up_questions": [
            "When do you experience shortness of breath? (rest, activity, lying down)",
            "How long have you been experiencing this?",
            "Do you have swelling in your legs, ankles or feet?",
            "Any chest pain along with breathing difficulty?",
            "Do you have a cough? If yes, any blood in sputum?",
            "Do you feel your heart racing?",
            "Any recent travel or prolonged bed rest?",
            "Are you taking any heart medications?",
        ],
        "severity_indicators": ["shortness at rest", "leg swelling", "blood in sputum"],
        "emergency_flags": ["severe breathing difficulty", "blue lips/fingers", "cannot speak in sentences"],
    },
    {
        "symptom": "palpitations",
        "follow_up_questions": [
            "How often do you feel your heart racing or pounding?",
            "Do you feel dizzy or lightheaded with palpitations?",
            "Any chest pain during these episodes?",
            "How long do these episodes last?",
            "Any triggers you have noticed? (caffeine, stress, exercise)",
            "Are you taking any medications or supplements?",
            "Any family history of heart rhythm problems?",
            "Do you experience fainting spells?",
        ],
        "severity_indicators": ["frequent episodes", "associated dizziness", "fainting"],
        "emergency_flags": ["palpitations with fainting", "chest pain with rapid heart rate", "severe dizziness"],
    },
    {
        "symptom": "dizziness",
        "follow_up_questions": [
            "When do you experience dizziness? (standing up, lying down, any time)",
            "Do you feel like the room is spinning or you might faint?",
            "Any chest pain or palpitations with dizziness?",
            "Are you taking blood pressure medications?",
            "Have you had any recent changes in medications?",
            "Any recent illness or dehydration?",
            "Do you have diabetes or blood sugar issues?",
            "Any recent head injury?",
        ],
        "severity_indicators": ["fainting spells", "with chest pain", "frequent episodes"],
        "emergency_flags": ["loss of consciousness", "severe headache with dizziness", "slurred speech"],
    },
    {
        "symptom": "fatigue",
        "follow_up_questions": [
            "How long have you been experiencing unusual fatigue?",
            "Is the fatigue worse with physical activity?",
            "Do you get short of breath with minimal activity?",
            "Any swelling in legs or weight gain recently?",
            "How is your sleep quality?",
            "Any chest discomfort with fatigue?",
            "Are you taking any heart medications?",
            "Any recent changes in your exercise tolerance?",
        ],
        "severity_indicators": ["fatigue with minimal activity", "associated shortness of breath", "leg swelling"],
        "emergency_flags": ["extreme fatigue with chest pain", "inability to perform daily activities", "fatigue with fainting"],
    },
]


def seed_data() -> None:
    db = SessionLocal()
    try:
        existing_symptoms = set(db.scalars(select(SymptomRuleRecord.symptom)).all())
        missing_rules = [
            rule for rule in SYMPTOM_RULES if rule["symptom"] not in existing_symptoms
        ]
        db.add_all(SymptomRuleRecord(id=str(uuid.uuid4()), **rule) for rule in missing_rules)

        doctor_count = db.scalar(select(func.count()).select_from(Doctor))
        if not doctor_count:
            db.add_all(
                Doctor(id=str(uuid.uuid4()), name=name, email=email, specialization=specialization)
                for name, email, specialization in DOCTORS
            )

        patient_count = db.scalar(select(func.count()).select_from(Patient))
        if not patient_count:
            fake = Faker()
            patients = []
            for _ in range(10):
                patients.append(
                    Patient(
                        id=str(uuid.uuid4()),
                        name=fake.name(),
                        age=fake.random_int(min=25, max=80),
                        phone=fake.phone_number(),
                        email=fake.email(),
                        language=fake.random_element(elements=("en", "te", "hi")),
                    )
                )
            db.add_all(patients)

        db.commit()
    finally:
        db.close()

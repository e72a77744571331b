from datetime import datetime
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator

Step = Literal[
    "symptom_identification",
    "symptom_questions",
    "booking_offer",
    "session_summary",
    "completed",
]
STEP_ORDER: tuple[str, ...] = (
    "symptom_identification",
    "symptom_questions",
    "booking_offer",
    "session_summary",
    "completed",
)

Priority = Literal["URGENT", "HIGH", "NORMAL"]
PRIORITY_RANK: dict[str, int] = {"NORMAL": 0, "HIGH": 1, "URGENT": 2}


class SymptomRule(BaseModel):
    symptom: str
    follow_up_questions: list[str] = Field(min_length=1)
    severity_indicators: list[str] = []
    emergency_flags: list[str] = []

    model_config = ConfigDict(from_attributes=True, frozen=True)

    @field_validator("symptom")
    @classmethod
    def _canonical_key(cls, value: str) -> str:
        return value.strip().lower()


class BusyInterval(BaseModel):
    start: datetime
    end: datetime


class CandidateSlot(BaseModel):
    start: datetime
    end: datetime
    display: str


class DoctorRef(BaseModel):
    id: str
    name: str
    email: str
    calendar_id: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)

    @property
    def identity(self) -> str:
        return self.calendar_id or self.email


class SuggestedDoctor(BaseModel):
    id: str
    name: str


class PatientAnswer(BaseModel):
    question: str
    answer: str
    symptom: Optional[str] = None
    timestamp: datetime


class _SessionBase(BaseModel):
    language: str = "en"
    questions_asked_for_current_symptom: int = Field(default=0, ge=0)
    all_patient_answers: list[PatientAnswer] = []
    last_question: Optional[str] = None
    is_emergency: bool = False
    priority: Priority = "NORMAL"
    session_summary: Optional[str] = None
    diagnosis_suggestions: Optional[str] = None


class IdentificationState(_SessionBase):
    current_step: Literal["symptom_identification"] = "symptom_identification"
    current_symptom: None = None


class QuestionsState(_SessionBase):
    current_step: Literal["symptom_questions"] = "symptom_questions"
    current_symptom: str


class BookingOfferState(_SessionBase):
    current_step: Literal["booking_offer"] = "booking_offer"
    current_symptom: str
    offered_slots: list[CandidateSlot] = []
    suggested_doctor: Optional[SuggestedDoctor] = None


class SummaryState(_SessionBase):
    current_step: Literal["session_summary"] = "session_summary"
    current_symptom: str
    selected_slot: Optional[CandidateSlot] = None
    suggested_doctor: Optional[SuggestedDoctor] = None


class CompletedState(_SessionBase):
    current_step: Literal["completed"] = "completed"
    current_symptom: Optional[str] = None
    selected_slot: Optional[CandidateSlot] = None
    suggested_doctor: Optional[SuggestedDoctor] = None


SessionState = Annotated[
    Union[
        IdentificationState,
        QuestionsState,
        BookingOfferState,
        SummaryState,
        CompletedState,
    ],
    Field(discriminator="current_step"),
]
SESSION_STATE_ADAPTER: TypeAdapter = TypeAdapter(SessionState)


class ModelReply(BaseModel):
    """Structured reply expected from the inference collaborator.

    The wire format is camelCase because that is what the consultation prompt
    asks the model to emit; attribute names stay snake_case.
    """

    message: str = Field(min_length=1)
    type: str = "symptom_questions"
    next_step: Optional[str] = Field(default=None, alias="nextStep")
    current_symptom: Optional[str] = Field(default=None, alias="currentSymptom")
    question_number: Optional[int] = Field(default=None, alias="questionNumber")
    all_questions_completed: bool = Field(default=False, alias="allQuestionsCompleted")
    session_summary: Optional[str] = Field(default=None, alias="sessionSummary")
    diagnosis_suggestions: Optional[str] = None
    is_emergency: Optional[bool] = Field(default=None, alias="isEmergency")

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("message", mode="before")
    @classmethod
    def _strip_message(cls, value):
        return value.strip() if isinstance(value, str) else value

    @field_validator("question_number", mode="before")
    @classmethod
    def _lenient_number(cls, value):
        if isinstance(value, bool):
            return None
        if isinstance(value, int):
            return value
        if isinstance(value, str) and value.strip().isdigit():
            return int(value.strip())
        return None

    @field_validator("all_questions_completed", mode="before")
    @classmethod
    def _completed_flag(cls, value):
        return value if isinstance(value, bool) else False

    @field_validator("is_emergency", mode="before")
    @classmethod
    def _emergency_flag(cls, value):
        return value if isinstance(value, bool) else None

    @field_validator("session_summary", "diagnosis_suggestions", mode="before")
    @classmethod
    def _flatten_text(cls, value):
        if value is None or isinstance(value, str):
            return value or None
        if isinstance(value, list):
            return "; ".join(str(item) for item in value if item) or None
        return str(value)

    @field_validator("next_step", "current_symptom", mode="before")
    @classmethod
    def _optional_text(cls, value):
        return value if isinstance(value, str) else None

    @field_validator("type", mode="before")
    @classmethod
    def _reply_type(cls, value):
        return value if isinstance(value, str) and value else "symptom_questions"


class BotReply(BaseModel):
    message: str
    type: str
    current_step: Step
    options: list[CandidateSlot] = []
    summary: Optional[str] = None
    is_emergency: bool = False
    priority: Priority = "NORMAL"
    question_number: Optional[int] = None
    all_questions_completed: bool = False
    suggested_doctor: Optional[SuggestedDoctor] = None
    diagnosis_suggestions: Optional[str] = None


class ChatStartRequest(BaseModel):
    patient_id: Optional[str] = None
    chat_type: str = "text"
    language: Optional[str] = None


class PreviousSession(BaseModel):
    session_id: str
    summary: Optional[str] = None
    diagnosis_hints: Optional[str] = None
    created_at: datetime | None = None


class PatientContext(BaseModel):
    name: str = "Unknown"
    age: Optional[int] = None
    chat_type: str = "text"
    is_existing_patient: bool = False
    previous_sessions: list[PreviousSession] = []


class ChatStartResponse(BaseModel):
    session_id: str
    language: str
    is_existing_patient: bool
    previous_sessions: list[PreviousSession] = []
    state: SessionState
    message: str


class ChatMessageRequest(BaseModel):
    session_id: str
    message: str


class ChatMessageResponse(BaseModel):
    session_id: str
    reply: BotReply
    state: SessionState


class ChatCompleteRequest(BaseModel):
    session_id: str
    summary: Optional[str] = None


class ChatCompleteResponse(BaseModel):
    session_id: str
    status: str


class SymptomQuestionsOut(BaseModel):
    symptom: str
    questions: list[str]


class SlotsResponse(BaseModel):
    slots: list[CandidateSlot]
    suggested_doctor: Optional[SuggestedDoctor] = None
    used_default: bool = False


class TriageRequest(BaseModel):
    message: str
    hints: str = ""


class TriageResponse(BaseModel):
    priority: Priority
    is_emergency: bool


class UrgentCaseOut(BaseModel):
    id: str
    patient_id: str | None
    session_id: str | None
    severity: str
    summary: str
    transcript: str
    status: str
    created_at: datetime | None = None

    model_config = ConfigDict(from_attributes=True)


class AppointmentBookRequest(BaseModel):
    patient_id: str
    slot_start: datetime
    slot_end: datetime
    doctor_id: Optional[str] = None
    session_id: Optional[str] = None
    chat_summary: Optional[str] = None
    symptoms: Optional[str] = None
    ai_diagnosis_hints: Optional[str] = None


class AppointmentOut(BaseModel):
    id: str
    doctor_id: str
    patient_id: str
    session_id: Optional[str] = None
    appointment_time: datetime
    end_time: datetime
    status: str
    chat_summary: Optional[str] = None
    symptoms: Optional[str] = None
    ai_diagnosis_hints: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class SymptomRuleCreate(BaseModel):
    symptom: str = Field(min_length=1)
    follow_up_questions: list[str] = Field(min_length=1)
    severity_indicators: list[str] = []
    emergency_flags: list[str] = []

    @field_validator("symptom")
    @classmethod
    def _canonical_key(cls, value: str) -> str:
        value = value.strip().lower()
        if not value:
            raise ValueError("symptom must not be blank")
        return value


class SymptomRuleUpdate(BaseModel):
    symptom: Optional[str] = None
    follow_up_questions: Optional[list[str]] = Field(default=None, min_length=1)
    severity_indicators: Optional[list[str]] = None
    emergency_flags: Optional[list[str]] = None

    @field_validator("symptom")
    @classmethod
    def _canonical_key(cls, value: Optional[str]) -> Optional[str]:
        return value.strip().lower() if value and value.strip() else None


class SymptomRuleOut(BaseModel):
    id: str
    symptom: str
    follow_up_questions: list[str]
    severity_indicators: list[str] = []
    emergency_flags: list[str] = []

    model_config = ConfigDict(from_attributes=True)


class BulkImportRequest(BaseModel):
    symptoms: list[dict[str, Any]]


class BulkImportResult(BaseModel):
    created: int = 0
    updated: int = 0
    errors: list[str] = []


class SymptomFrequency(BaseModel):
    symptom: str
    count: int


class SymptomCoverage(BaseModel):
    reported: int
    with_rules: int
    percentage: float


class SymptomAnalytics(BaseModel):
    period_days: int
    frequency: list[SymptomFrequency]
    coverage: SymptomCoverage

import json
import logging
import time
import uuid

import httpx

from ..config import settings
from ..schemas import PatientContext

logger = logging.getLogger(__name__)

ANTHROPIC_MESSAGES_URL = "https://api.anthropic.com/v1/messages"

SYSTEM_PROMPT = (
    "You are a cardiology clinic intake assistant talking to a patient. Ask one "
    "question at a time, never diagnose, never suggest medicines. Return JSON only."
)

REPLY_FORMAT = (
    '{"message": "<text for the patient>", "type": "<reply type>", '
    '"nextStep": "<session step>", "currentSymptom": "<symptom or null>", '
    '"questionNumber": "<number>", "allQuestionsCompleted": false, '
    '"sessionSummary": "<optional>", "diagnosis_suggestions": "<optional, for the doctor>", '
    '"isEmergency": false}'
)

PURPOSE_INSTRUCTIONS = {
    "clarification": (
        "The patient's main symptom could not be matched to the clinic's symptom list. "
        "Ask one short question that helps them name their main symptom. "
        "Do not change the session step."
    ),
    "summary": (
        "All follow-up questions are answered. Write a concise clinical summary of the "
        "answers in sessionSummary and possible conditions for the doctor in "
        "diagnosis_suggestions. In message, thank the patient and tell them the "
        "doctor will review the summary."
    ),
}


def build_consultation_prompt(
    *,
    purpose: str,
    message: str,
    patient: PatientContext,
    language: str,
    current_step: str,
    current_symptom: str | None,
    questions_asked: int,
    answers: list[dict],
    symptom_questions: list[str],
    next_symptom_question: str,
    known_symptoms: list[str],
) -> str:
    previous = [
        {"date": str(item.created_at), "summary": item.summary, "diagnosis": item.diagnosis_hints}
        for item in patient.previous_sessions
    ]
    lines = [
        PURPOSE_INSTRUCTIONS.get(purpose, PURPOSE_INSTRUCTIONS["clarification"]),
        "",
        f"Patient name: {patient.name}",
        f"Patient age: {patient.age if patient.age is not None else 'Unknown'}",
        f"Reply language: {language}",
        f"Chat type: {patient.chat_type}",
        f"Existing patient: {'Yes' if patient.is_existing_patient else 'No'}",
        f"Previous sessions: {json.dumps(previous) if previous else 'No previous sessions'}",
        f"Known symptoms: {', '.join(known_symptoms)}",
        f"Current step: {current_step}",
        f"Current symptom: {current_symptom or 'None'}",
        f"Questions asked for current symptom: {questions_asked}",
        f"All patient answers: {json.dumps(answers, default=str)}",
        f"Symptom questions: {json.dumps(symptom_questions)}",
        f"Next symptom question: {next_symptom_question}",
        f"Patient message: {message}",
        "",
        f"Respond with a single JSON object shaped like: {REPLY_FORMAT}",
    ]
    return "\n".join(lines)


class AnthropicClient:
    """Inference collaborator backed by the Anthropic Messages API."""

    def __init__(
        self,
        api_key: str | None = None,
        model: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.api_key = settings.anthropic_api_key if api_key is None else api_key
        self.model = model or settings.llm_model
        self.transport = transport

    async def complete(self, prompt: str) -> str:
        if not self.api_key:
            raise RuntimeError("ANTHROPIC_API_KEY is not configured")

        request_id = uuid.uuid4().hex
        start = time.perf_counter()
        try:
            payload = {
                "model": self.model,
                "max_tokens": settings.llm_max_tokens,
                "temperature": settings.llm_temperature,
                "system": SYSTEM_PROMPT,
                "messages": [{"role": "user", "content": prompt}],
            }
            headers = {
                "x-api-key": self.api_key,
                "anthropic-version": "2023-06-01",
                "content-type": "application/json",
            }

            async with httpx.AsyncClient(
                timeout=settings.llm_timeout_seconds, transport=self.transport
            ) as client:
                response = await client.post(ANTHROPIC_MESSAGES_URL, json=payload, headers=headers)
                response.raise_for_status()
                data = response.json()

            content = data.get("content", [])
            return "".join(
                part.get("text", "") for part in content if part.get("type") == "text"
            )
        finally:
            latency_ms = int((time.perf_counter() - start) * 1000)
            logger.info(
                "anthropic_complete request_id=%s latency_ms=%s",
                request_id,
                latency_ms,
            )

"""Per-turn state machine for the symptom intake dialogue.

Steps only move forward::

    symptom_identification -> symptom_questions -> booking_offer
        -> session_summary -> completed

Identification and follow-up questions are answered deterministically from
the symptom catalog. The inference collaborator is consulted only when the
main symptom cannot be matched, and to write the end-of-intake summary; its
output goes through the parse-repair chain so every turn yields a valid
state.
"""

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Protocol

from ..config import settings
from ..schemas import (
    BookingOfferState,
    BotReply,
    BusyInterval,
    CandidateSlot,
    CompletedState,
    DoctorRef,
    IdentificationState,
    ModelReply,
    PatientAnswer,
    PatientContext,
    QuestionsState,
    SessionState,
    SuggestedDoctor,
    SummaryState,
    SymptomRule,
)
from .availability import find_booking_slots
from .llm import build_consultation_prompt
from .matcher import detect_symptom
from .normalizer import normalize
from .priority import classify_priority, escalate
from .repair import parse_model_output
from .sequencer import DEFAULT_FOLLOW_UP_QUESTIONS, effective_cap, next_question
from .slots import clinic_now

logger = logging.getLogger(__name__)

GENERIC_QUESTION = "Can you tell me more about your main symptom?"
INITIAL_QUESTION_LABEL = "Initial symptom description"
CLOSING_MESSAGE = (
    "Thank you. I will summarize your information now and share a few appointment slots."
)
SUMMARY_MESSAGE = (
    "Thank you. I have noted your answers and the doctor will review them before "
    "your appointment."
)
COMPLETED_MESSAGE = "Your consultation is complete. Take care, and see you at your appointment."
ALREADY_COMPLETED_MESSAGE = (
    "This consultation is already complete. Please start a new session if you have "
    "another concern."
)
EMERGENCY_ADVISORY = (
    "Some of what you described may need urgent care. If you are in immediate danger "
    "or your symptoms are severe, please call emergency services right now."
)


class SymptomCatalog(Protocol):
    def list_rules(self) -> list[SymptomRule]: ...

    def find_rule(self, key: str) -> SymptomRule | None: ...


class SessionStore(Protocol):
    def load(self, session_id: str) -> SessionState: ...

    def save(self, session_id: str, state: SessionState) -> None: ...


class InferenceClient(Protocol):
    async def complete(self, prompt: str) -> str: ...


class AvailabilityProvider(Protocol):
    async def free_busy(
        self, identity: str, start_date: datetime, end_date: datetime
    ) -> list[BusyInterval]: ...


class DoctorDirectory(Protocol):
    def list_doctors(self) -> list[DoctorRef]: ...


@dataclass
class TurnResult:
    reply: BotReply
    state: SessionState
    answer: PatientAnswer
    repair_stage: str | None = None


def new_session_state(language: str | None = None) -> IdentificationState:
    return IdentificationState(language=language or "en")


class ResponseOrchestrator:
    def __init__(
        self,
        catalog: SymptomCatalog,
        inference: InferenceClient,
        availability: AvailabilityProvider,
        doctors: DoctorDirectory,
        *,
        max_questions: int | None = None,
        llm_timeout: float | None = None,
        content_filter: bool | None = None,
        lookahead_days: int | None = None,
        now: Callable[[], datetime] = clinic_now,
    ) -> None:
        self.catalog = catalog
        self.inference = inference
        self.availability = availability
        self.doctors = doctors
        self.max_questions = (
            settings.max_questions_per_symptom if max_questions is None else max_questions
        )
        self.llm_timeout = settings.llm_timeout_seconds if llm_timeout is None else llm_timeout
        self.content_filter = (
            settings.content_filter_enabled if content_filter is None else content_filter
        )
        self.lookahead_days = (
            settings.booking_lookahead_days if lookahead_days is None else lookahead_days
        )
        self.now = now

    async def handle(
        self,
        utterance: str,
        state: SessionState,
        patient: PatientContext | None = None,
    ) -> TurnResult:
        patient = patient or PatientContext()
        text = normalize(utterance, redact_intents=self.content_filter)
        rules = self.catalog.list_rules()

        if state.current_step == "symptom_identification":
            return await self._identify(text, state, rules, patient)
        if state.current_step == "symptom_questions":
            return await self._ask_follow_up(text, state)
        if state.current_step == "booking_offer":
            return await self._summarize(text, state, rules, patient)
        if state.current_step == "session_summary":
            return self._complete(text, state)
        return self._finalize(
            state,
            CompletedState,
            {
                "current_symptom": state.current_symptom,
                "selected_slot": state.selected_slot,
                "suggested_doctor": state.suggested_doctor,
            },
            text,
            BotReply(
                message=ALREADY_COMPLETED_MESSAGE,
                type="completed",
                current_step="completed",
                summary=state.session_summary,
                all_questions_completed=True,
            ),
        )

    # -- steps ---------------------------------------------------------------

    async def _identify(
        self,
        text: str,
        state: IdentificationState,
        rules: list[SymptomRule],
        patient: PatientContext,
    ) -> TurnResult:
        detected = detect_symptom(text, rules)
        rule = self._rule_for(detected) if detected else None

        if rule is None:
            model_reply, stage = await self._consult(
                "clarification", text, state, rules, patient, None
            )
            reply = BotReply(
                message=model_reply.message,
                type="clarification",
                current_step="symptom_identification",
                question_number=None,
            )
            return self._finalize(
                state,
                IdentificationState,
                {"last_question": model_reply.message},
                text,
                reply,
                model_reply=model_reply,
                repair_stage=stage,
            )

        logger.info("symptom_identified symptom=%s", rule.symptom)
        step = next_question(rule, 0, self.max_questions)
        if step is None:
            return await self._offer_booking(text, state, rule, questions_asked=0)

        reply = BotReply(
            message=step.question,
            type="symptom_questions",
            current_step="symptom_questions",
            question_number=step.number,
        )
        return self._finalize(
            state,
            QuestionsState,
            {
                "current_symptom": rule.symptom,
                "questions_asked_for_current_symptom": step.number,
                "last_question": step.question,
            },
            text,
            reply,
            rule=rule,
        )

    async def _ask_follow_up(self, text: str, state: QuestionsState) -> TurnResult:
        rule = self._rule_for(state.current_symptom)
        asked = state.questions_asked_for_current_symptom
        step = next_question(rule, asked, self.max_questions)
        if step is None:
            return await self._offer_booking(text, state, rule, questions_asked=asked)

        reply = BotReply(
            message=step.question,
            type="symptom_questions",
            current_step="symptom_questions",
            question_number=step.number,
        )
        return self._finalize(
            state,
            QuestionsState,
            {
                "current_symptom": state.current_symptom,
                "questions_asked_for_current_symptom": asked + 1,
                "last_question": step.question,
            },
            text,
            reply,
            rule=rule,
        )

    async def _offer_booking(
        self,
        text: str,
        state: SessionState,
        rule: SymptomRule,
        *,
        questions_asked: int,
    ) -> TurnResult:
        start_date = self.now()
        end_date = start_date + timedelta(days=self.lookahead_days)
        try:
            doctors = self.doctors.list_doctors()
        except Exception as exc:
            logger.warning("doctor_directory_unavailable error=%s", exc)
            doctors = []
        offer = await find_booking_slots(doctors, self.availability, start_date, end_date)

        suggested = (
            SuggestedDoctor(id=offer.doctor.id, name=offer.doctor.name) if offer.doctor else None
        )
        lines = [f"{idx}) {slot.display}" for idx, slot in enumerate(offer.slots, start=1)]
        message = f"{CLOSING_MESSAGE} Reply with the number of the slot that suits you: " + " ".join(lines)
        if suggested:
            message += f" (with {suggested.name})"

        reply = BotReply(
            message=message,
            type="booking_offer",
            current_step="booking_offer",
            options=offer.slots,
            all_questions_completed=True,
            question_number=questions_asked or None,
            suggested_doctor=suggested,
        )
        return self._finalize(
            state,
            BookingOfferState,
            {
                "current_symptom": rule.symptom,
                "questions_asked_for_current_symptom": questions_asked,
                "last_question": message,
                "offered_slots": offer.slots,
                "suggested_doctor": suggested,
            },
            text,
            reply,
            rule=rule,
        )

    async def _summarize(
        self,
        text: str,
        state: BookingOfferState,
        rules: list[SymptomRule],
        patient: PatientContext,
    ) -> TurnResult:
        selected = self._selected_slot(text, state.offered_slots)
        rule = self._rule_for(state.current_symptom)
        model_reply, stage = await self._consult("summary", text, state, rules, patient, rule)

        summary = model_reply.session_summary or self._answers_summary(state)
        message = model_reply.message
        if selected:
            message = f"{message} Preferred appointment: {selected.display}."

        reply = BotReply(
            message=message,
            type="session_summary",
            current_step="session_summary",
            summary=summary,
            all_questions_completed=True,
            suggested_doctor=state.suggested_doctor,
            diagnosis_suggestions=model_reply.diagnosis_suggestions,
        )
        return self._finalize(
            state,
            SummaryState,
            {
                "current_symptom": state.current_symptom,
                "last_question": message,
                "selected_slot": selected,
                "suggested_doctor": state.suggested_doctor,
                "session_summary": summary,
                "diagnosis_suggestions": model_reply.diagnosis_suggestions
                or state.diagnosis_suggestions,
            },
            text,
            reply,
            rule=rule,
            model_reply=model_reply,
            repair_stage=stage,
        )

    def _complete(self, text: str, state: SummaryState) -> TurnResult:
        reply = BotReply(
            message=COMPLETED_MESSAGE,
            type="completed",
            current_step="completed",
            summary=state.session_summary,
            all_questions_completed=True,
            suggested_doctor=state.suggested_doctor,
        )
        return self._finalize(
            state,
            CompletedState,
            {
                "current_symptom": state.current_symptom,
                "last_question": COMPLETED_MESSAGE,
                "selected_slot": state.selected_slot,
                "suggested_doctor": state.suggested_doctor,
            },
            text,
            reply,
            rule=self._rule_for(state.current_symptom),
        )

    # -- model-assisted path ---------------------------------------------------

    async def _consult(
        self,
        purpose: str,
        text: str,
        state: SessionState,
        rules: list[SymptomRule],
        patient: PatientContext,
        rule: SymptomRule | None,
    ) -> tuple[ModelReply, str]:
        asked = state.questions_asked_for_current_symptom
        hint = next_question(rule, asked, self.max_questions) if rule else None
        prompt = build_consultation_prompt(
            purpose=purpose,
            message=text,
            patient=patient,
            language=state.language,
            current_step=state.current_step,
            current_symptom=state.current_symptom,
            questions_asked=asked,
            answers=[answer.model_dump(mode="json") for answer in state.all_patient_answers],
            symptom_questions=list(rule.follow_up_questions) if rule else [],
            next_symptom_question=hint.question if hint else GENERIC_QUESTION,
            known_symptoms=[item.symptom for item in rules],
        )

        raw = ""
        try:
            raw = await asyncio.wait_for(self.inference.complete(prompt), timeout=self.llm_timeout)
        except Exception as exc:
            logger.warning(
                "inference_unavailable purpose=%s error=%s", purpose, repr(exc)
            )

        reply, stage = parse_model_output(
            raw, lambda: self._fallback_reply(purpose, state, rules, rule)
        )
        logger.info("model_assisted purpose=%s stage=%s", purpose, stage)
        return reply, stage

    def _fallback_reply(
        self,
        purpose: str,
        state: SessionState,
        rules: list[SymptomRule],
        rule: SymptomRule | None,
    ) -> ModelReply:
        asked = state.questions_asked_for_current_symptom
        completed = rule is not None and asked >= effective_cap(rule, self.max_questions)

        if purpose == "summary":
            return ModelReply(
                message=SUMMARY_MESSAGE,
                type="session_summary",
                next_step="session_summary",
                current_symptom=state.current_symptom,
                question_number=asked or None,
                all_questions_completed=completed,
                session_summary=self._answers_summary(state),
            )

        step = next_question(rule, asked, self.max_questions) if rule else None
        if step is not None:
            message = step.question
        else:
            examples = ", ".join(item.symptom for item in rules[:3])
            message = (
                f"{GENERIC_QUESTION} For example: {examples}."
                if examples
                else GENERIC_QUESTION
            )
        return ModelReply(
            message=message,
            type="clarification",
            next_step=state.current_step,
            current_symptom=state.current_symptom,
            question_number=step.number if step else None,
            all_questions_completed=completed,
        )

    # -- helpers ---------------------------------------------------------------

    def _rule_for(self, symptom: str | None) -> SymptomRule | None:
        if not symptom:
            return None
        rule = self.catalog.find_rule(symptom)
        if rule is None:
            logger.warning("symptom_rule_missing symptom=%s", symptom)
            rule = SymptomRule(symptom=symptom, follow_up_questions=DEFAULT_FOLLOW_UP_QUESTIONS)
        return rule

    @staticmethod
    def _selected_slot(text: str, offered: list[CandidateSlot]) -> CandidateSlot | None:
        selection = text.strip().rstrip(").")
        if selection.isdigit():
            index = int(selection) - 1
            if 0 <= index < len(offered):
                return offered[index]
        return None

    @staticmethod
    def _answers_summary(state: SessionState) -> str:
        lines = [f"Main symptom: {state.current_symptom or 'not identified'}."]
        for answer in state.all_patient_answers:
            if answer.question == INITIAL_QUESTION_LABEL:
                lines.append(f"Patient reported: {answer.answer}")
            else:
                lines.append(f"{answer.question} -> {answer.answer}")
        return "\n".join(lines)

    def _finalize(
        self,
        previous: SessionState,
        target: type,
        updates: dict[str, Any],
        text: str,
        reply: BotReply,
        *,
        rule: SymptomRule | None = None,
        model_reply: ModelReply | None = None,
        repair_stage: str | None = None,
    ) -> TurnResult:
        symptom = updates.get("current_symptom", previous.current_symptom)
        answer = PatientAnswer(
            question=previous.last_question or INITIAL_QUESTION_LABEL,
            answer=text,
            symptom=symptom,
            timestamp=self.now(),
        )
        answers = [*previous.all_patient_answers, answer]

        symptom_text = " ".join([symptom or "", *(item.answer for item in answers)])
        hints = ""
        if model_reply is not None:
            hints = " ".join(
                part
                for part in (model_reply.session_summary, model_reply.diagnosis_suggestions)
                if part
            )
        tier = classify_priority(
            symptom_text,
            hints,
            emergency_keywords=rule.emergency_flags if rule else None,
            high_keywords=rule.severity_indicators if rule else None,
        )
        priority = escalate(previous.priority, tier)
        is_emergency = (
            previous.is_emergency
            or priority == "URGENT"
            or bool(model_reply is not None and model_reply.is_emergency)
        )
        if is_emergency:
            priority = escalate(priority, "URGENT")
        if is_emergency and not previous.is_emergency:
            logger.warning("emergency_flagged symptom=%s priority=%s", symptom, priority)
            reply.message = f"{reply.message} {EMERGENCY_ADVISORY}"

        common = {
            "language": previous.language,
            "questions_asked_for_current_symptom": previous.questions_asked_for_current_symptom,
            "last_question": previous.last_question,
            "session_summary": previous.session_summary,
            "diagnosis_suggestions": previous.diagnosis_suggestions,
        }
        state = target(
            **{
                **common,
                **updates,
                "all_patient_answers": answers,
                "is_emergency": is_emergency,
                "priority": priority,
            }
        )
        reply.is_emergency = is_emergency
        reply.priority = priority
        return TurnResult(reply=reply, state=state, answer=answer, repair_stage=repair_stage)

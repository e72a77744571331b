from dataclasses import dataclass

from ..schemas import SymptomRule

DEFAULT_FOLLOW_UP_QUESTIONS = [
    "When did this symptom start?",
    "How severe is it on a scale of 1-10?",
    "Does anything make it better or worse?",
]


@dataclass(frozen=True)
class NextQuestion:
    question: str
    number: int
    is_last: bool


def effective_cap(rule: SymptomRule, configured_max: int) -> int:
    return max(0, min(configured_max, len(rule.follow_up_questions)))


def next_question(rule: SymptomRule, asked_count: int, configured_max: int) -> NextQuestion | None:
    """Pick the follow-up to ask after ``asked_count`` questions.

    Returns ``None`` once the symptom's question budget is spent. An
    out-of-range cursor degrades to the last available question.
    """
    cap = effective_cap(rule, configured_max)
    asked = max(0, asked_count)
    if asked >= cap:
        return None
    questions = rule.follow_up_questions
    index = min(asked, len(questions) - 1)
    return NextQuestion(
        question=questions[index],
        number=asked + 1,
        is_last=asked + 1 >= cap,
    )

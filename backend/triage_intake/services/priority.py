from collections.abc import Iterable

from ..config import settings
from ..schemas import PRIORITY_RANK, Priority


def classify_priority(
    symptom_text: str | None,
    model_hints: str | None = "",
    *,
    emergency_keywords: Iterable[str] | None = None,
    high_keywords: Iterable[str] | None = None,
) -> Priority:
    """Map free text to a severity tier, checking the emergency tier first.

    Extra keywords extend the configured lists; they never replace them.
    """
    combined = f"{symptom_text or ''} {model_hints or ''}".lower()
    emergency = [*settings.emergency_keywords, *(emergency_keywords or [])]
    high = [*settings.high_priority_keywords, *(high_keywords or [])]

    if any(keyword.lower() in combined for keyword in emergency if keyword):
        return "URGENT"
    if any(keyword.lower() in combined for keyword in high if keyword):
        return "HIGH"
    return "NORMAL"


def escalate(current: Priority, candidate: Priority) -> Priority:
    if PRIORITY_RANK[candidate] > PRIORITY_RANK[current]:
        return candidate
    return current

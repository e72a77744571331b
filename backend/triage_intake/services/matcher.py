import re
from collections.abc import Iterable

from ..schemas import SymptomRule

_NON_ALPHA = re.compile(r"[^a-z]+")


def _tokens(text: str) -> set[str]:
    return {token for token in _NON_ALPHA.split(text.lower()) if token}


def detect_symptom(text: str, catalog: Iterable[SymptomRule]) -> str | None:
    """Return the canonical key of the main symptom mentioned in ``text``.

    Exact phrase containment wins first, in catalog order. Otherwise the
    catalog key sharing the most words with the text is chosen, earlier keys
    winning ties; no shared word at all means nothing was identified.
    """
    lowered = (text or "").lower()
    keys = [rule.symptom.lower() for rule in catalog]

    for key in keys:
        if key and key in lowered:
            return key

    tokens = _tokens(lowered)
    best_score = 0
    choice = None
    for key in keys:
        overlap = len(set(key.split()) & tokens)
        if overlap > best_score:
            best_score = overlap
            choice = key
    return choice

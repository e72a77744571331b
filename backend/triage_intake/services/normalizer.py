import re

REDACTION_MARKER = "[FILTERED]"

DISALLOWED_PATTERNS = [
    re.compile(r"hack|crack|exploit|virus|malware|phishing", re.IGNORECASE),
    re.compile(r"prescription|give.*medicine|recommend.*drug", re.IGNORECASE),
    re.compile(r"diagnose|what.*disease|tell.*treatment", re.IGNORECASE),
]

# Colloquial and Telugu-English phrasings mapped to the catalog's canonical terms.
CANONICAL_TERMS: dict[str, list[str]] = {
    "chest pain": ["chest pane", "cheast pain", "chest lo pain"],
    "headache": ["head ache", "hedache", "head lo pain"],
    "shortness of breath": ["short breath", "breathing problem", "cant breathe", "can't breathe"],
    "palpitations": ["heart beating fast", "heart racing", "gunde baga fast"],
    "dizziness": ["dizzy", "light headed", "lightheaded", "chakkar"],
    "fatigue": ["tired", "weakness", "weak feeling"],
    "sweating": ["perspiration", "sweats", "chimmata"],
    "nausea": ["feeling sick", "vomiting sensation", "vomit feel"],
}

_CORRECTIONS = [
    (re.compile(rf"\b{re.escape(variant)}\b", re.IGNORECASE), canonical)
    for canonical, variants in CANONICAL_TERMS.items()
    for variant in variants
]


def redact(text: str) -> str:
    for pattern in DISALLOWED_PATTERNS:
        text = pattern.sub(REDACTION_MARKER, text)
    return text


def canonicalize(text: str) -> str:
    for pattern, canonical in _CORRECTIONS:
        text = pattern.sub(canonical, text)
    return text


def normalize(raw: str | None, *, redact_intents: bool = True) -> str:
    text = raw or ""
    if redact_intents:
        text = redact(text)
    return canonicalize(text)

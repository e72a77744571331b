import json
import logging
import re
from collections.abc import Callable
from typing import Any

from pydantic import ValidationError

from ..schemas import ModelReply

logger = logging.getLogger(__name__)

_FENCED_JSON = re.compile(r"```json\s*([\s\S]*?)```", re.IGNORECASE)
_FENCED_ANY = re.compile(r"```\s*([\s\S]*?)```")


def _load_object(candidate: str | None) -> dict[str, Any] | None:
    if not candidate or not candidate.strip():
        return None
    try:
        payload = json.loads(candidate)
    except json.JSONDecodeError:
        return None
    return payload if isinstance(payload, dict) else None


def parse_direct(raw: str) -> dict[str, Any] | None:
    return _load_object(raw)


def parse_fenced_block(raw: str) -> dict[str, Any] | None:
    match = _FENCED_JSON.search(raw) or _FENCED_ANY.search(raw)
    if not match:
        return None
    return _load_object(match.group(1))


def parse_brace_span(raw: str) -> dict[str, Any] | None:
    first = raw.find("{")
    last = raw.rfind("}")
    if first == -1 or last <= first:
        return None
    return _load_object(raw[first : last + 1])


# Tried in order; the first strategy yielding a valid reply wins.
REPAIR_STRATEGIES: list[tuple[str, Callable[[str], dict[str, Any] | None]]] = [
    ("direct", parse_direct),
    ("fenced_block", parse_fenced_block),
    ("brace_span", parse_brace_span),
]


def _to_reply(payload: dict[str, Any]) -> ModelReply | None:
    try:
        return ModelReply.model_validate(payload)
    except ValidationError:
        return None


def parse_model_output(
    raw: str | None, fallback: Callable[[], ModelReply]
) -> tuple[ModelReply, str]:
    """Turn raw model text into a ``ModelReply``.

    Returns the reply together with the name of the stage that produced it:
    one of the ``REPAIR_STRATEGIES`` names, or ``"fallback"`` when every
    strategy failed and ``fallback()`` had to synthesize the reply.
    """
    text = raw or ""
    for stage, strategy in REPAIR_STRATEGIES:
        payload = strategy(text)
        if payload is None:
            continue
        reply = _to_reply(payload)
        if reply is None:
            continue
        if stage != "direct":
            logger.info("model_reply_repaired stage=%s", stage)
        return reply, stage

    logger.warning("model_reply_unparseable length=%s", len(text))
    return fallback(), "fallback"

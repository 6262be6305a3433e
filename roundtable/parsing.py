"""Strict parsing of model output into tagged results.

Models wrap JSON in code fences, add preamble text, or leak reasoning
blocks. ``extract_json`` copes with the formatting; the ``parse_*``
functions then check required fields and normalize out-of-range values
at this boundary so business logic only ever sees clean values.
Structural problems (no JSON, missing field) come back as ``ParseFailure``.
"""

import json
import logging
import math
import re
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

from roundtable.models import INTENT_KINDS, TONES, VOTE_CHOICES, IntentOutput, SpeechOutput

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_SPEECH_CHARS = 2000

_THOUGHT_BLOCK = re.compile(r"<(think|thinking|reasoning)>.*?</\1>", re.DOTALL | re.IGNORECASE)
_THOUGHT_TAG = re.compile(r"</?(think|thinking|reasoning)>", re.IGNORECASE)
_FENCE = re.compile(r"```(?:json)?\s*\n?(.*?)\n?\s*```", re.DOTALL)


class OutputParseError(Exception):
    """Raised when model output is structurally unusable."""

    def __init__(self, kind: str, reason: str, raw: str = "") -> None:
        self.kind = kind
        self.reason = reason
        self.raw = raw
        super().__init__(f"Invalid {kind} output: {reason}")


@dataclass(frozen=True)
class Parsed(Generic[T]):
    value: T


@dataclass(frozen=True)
class ParseFailure:
    kind: str
    reason: str
    raw: str = ""

    def to_error(self) -> OutputParseError:
        return OutputParseError(self.kind, self.reason, self.raw)


def strip_thoughts(text: str) -> str:
    """Remove internal-thought blocks such as ``<think>...</think>``."""
    cleaned = _THOUGHT_BLOCK.sub("", text)
    return _THOUGHT_TAG.sub("", cleaned).strip()


def extract_json(text: str) -> dict | list | None:
    """Extract JSON from model output.

    Tries in order: direct parse, a fenced code block, then the span from
    the first ``{`` to the last ``}``. Returns None if all fail.
    """
    if not text or not text.strip():
        return None

    text = strip_thoughts(text)

    try:
        return json.loads(text)
    except json.JSONDecodeError:
        pass

    fence_match = _FENCE.search(text)
    if fence_match:
        try:
            return json.loads(fence_match.group(1).strip())
        except json.JSONDecodeError:
            pass

    for start_char, end_char in [("{", "}"), ("[", "]")]:
        start_idx = text.find(start_char)
        if start_idx == -1:
            continue
        end_idx = text.rfind(end_char)
        if end_idx <= start_idx:
            continue
        try:
            return json.loads(text[start_idx:end_idx + 1])
        except json.JSONDecodeError:
            pass

    logger.debug("Failed to extract JSON from model output (%d chars)", len(text))
    return None


def parse_object(text: str, kind: str, required: tuple[str, ...]) -> Parsed[dict[str, Any]] | ParseFailure:
    """Extract a JSON object and check that every ``required`` key is present and non-null."""
    data = extract_json(text)
    if data is None:
        return ParseFailure(kind, "no JSON object found", text[:200])
    if not isinstance(data, dict):
        return ParseFailure(kind, f"expected a JSON object, got {type(data).__name__}", text[:200])
    missing = [key for key in required if data.get(key) is None]
    if missing:
        return ParseFailure(kind, f"missing required field(s): {', '.join(missing)}", text[:200])
    return Parsed(data)


def _optional_str(value: Any) -> str | None:
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def clamp_urgency(value: Any) -> int:
    """Round and clamp to 1..5. Non-numeric values become 1."""
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 1
    if math.isnan(number):
        return 1
    if math.isinf(number):
        return 5 if number > 0 else 1
    return max(1, min(5, int(round(number))))


def normalize_choice(value: Any, allowed: tuple[str, ...], default: str) -> str:
    choice = str(value).strip().lower() if value is not None else ""
    return choice if choice in allowed else default


def parse_intent(text: str) -> Parsed[IntentOutput] | ParseFailure:
    result = parse_object(text, "intent", ("intent", "urgency"))
    if isinstance(result, ParseFailure):
        return result
    data = result.value
    vote = _optional_str(data.get("vote"))
    if vote is not None:
        vote = vote.lower()
        if vote not in VOTE_CHOICES:
            vote = None
    return Parsed(IntentOutput(
        intent=normalize_choice(data["intent"], INTENT_KINDS, "pass"),
        urgency=clamp_urgency(data["urgency"]),
        target=_optional_str(data.get("target")),
        topic=_optional_str(data.get("topic")),
        vote=vote,
    ))


def truncate(text: str, max_chars: int) -> str:
    if len(text) <= max_chars:
        return text
    return text[:max_chars] + "..."


def parse_speech(text: str, max_chars: int = DEFAULT_MAX_SPEECH_CHARS) -> Parsed[SpeechOutput] | ParseFailure:
    result = parse_object(text, "speech", ("content",))
    if isinstance(result, ParseFailure):
        return result
    data = result.value
    content = data["content"]
    if not isinstance(content, str):
        return ParseFailure("speech", "field 'content' must be a string", text[:200])
    content = strip_thoughts(content)
    if not content:
        return ParseFailure("speech", "field 'content' is empty", text[:200])
    return Parsed(SpeechOutput(
        content=truncate(content, max_chars),
        tone=normalize_choice(data.get("tone"), TONES, "calm"),
        reply_to=_optional_str(data.get("reply_to")),
    ))


def unwrap(result: Parsed[T] | ParseFailure) -> T:
    """Return the parsed value or raise ``OutputParseError``."""
    if isinstance(result, ParseFailure):
        raise result.to_error()
    return result.value

# recovery.py
# Defensive extraction of one JSON value from raw model text.
#
# Models wrap output in <think> blocks and markdown fences, leave trailing
# commas, and get cut off by token limits. recover() tries progressively
# harder repairs and never raises: failures come back as a RecoveredValue.

import json
import re
from typing import Any, Literal

from pydantic import BaseModel

_THINK_BLOCK = re.compile(r"<think>.*?</think>", re.DOTALL)
_FENCE = re.compile(r"```[a-zA-Z]*\s*")
_TRAILING_COMMA = re.compile(r",\s*([\]}])")
_OPENER = re.compile(r"[\[{]")

_CLOSERS = {"[": "]", "{": "}"}
_PREVIEW_CHARS = 200

_decoder = json.JSONDecoder(strict=False)
_DECODE_ERRORS = (ValueError, RecursionError)


class RecoveryError(ValueError):
    """Raised by RecoveredValue.unwrap() when nothing could be recovered."""


class RecoveredValue(BaseModel):
    """Outcome of a recovery attempt: a decoded value or a typed failure."""

    ok: bool
    value: Any = None
    failure: Literal["no_match", "unrecoverable"] | None = None
    detail: str = ""

    @classmethod
    def success(cls, value: Any) -> "RecoveredValue":
        return cls(ok=True, value=value)

    @classmethod
    def fail(cls, failure: Literal["no_match", "unrecoverable"], detail: str) -> "RecoveredValue":
        return cls(ok=False, failure=failure, detail=detail)

    def unwrap(self) -> Any:
        if not self.ok:
            raise RecoveryError(self.detail)
        return self.value


# ---------------------------------------------------------------------------
# Wrapper stripping
# ---------------------------------------------------------------------------


def _strip_once(text: str) -> str:
    result = _THINK_BLOCK.sub("", text)
    result = _FENCE.sub("", result)

    # An unclosed <think> means the model ran out of tokens while reasoning.
    # Anything structured after it is still worth keeping.
    while (idx := result.find("<think>")) != -1:
        tail = result[idx + len("<think>"):]
        match = _OPENER.search(tail)
        result = result[:idx] + (tail[match.start():] if match else "")

    return result.strip()


def strip_wrapper(text: str) -> str:
    """Remove reasoning blocks and code fences. Idempotent."""
    result = text
    while True:
        stripped = _strip_once(result)
        if stripped == result:
            return stripped
        result = stripped


def strip_trailing_commas(text: str) -> str:
    return _TRAILING_COMMA.sub(r"\1", text)


# ---------------------------------------------------------------------------
# Decoding
# ---------------------------------------------------------------------------


def _decode(text: str) -> Any:
    return _decoder.decode(text)


def _decode_leading(text: str) -> Any:
    """Decode the first complete value, ignoring whatever trails it."""
    value, _ = _decoder.raw_decode(text)
    return value


def _recover_truncated(candidate: str, opener: str) -> tuple[Any, int]:
    """
    Walk backwards over closing braces, close the container and retry.

    Returns (value, -1) on success or (None, last_failed_position).
    """
    closer = _CLOSERS[opener]
    last_failed = -1
    for i in range(len(candidate) - 1, -1, -1):
        if candidate[i] != "}":
            continue
        attempt = strip_trailing_commas(candidate[: i + 1] + closer)
        try:
            value = _decode(attempt)
        except _DECODE_ERRORS:
            last_failed = i
            continue
        if isinstance(value, list) and not value:
            continue
        return value, -1
    return None, last_failed


def recover(text: str, opener: str | None = None) -> RecoveredValue:
    """
    Extract one JSON object or array from model output.

    Effort increases step by step: direct decode of the whole text, wrapper
    stripping, first-opener-to-last-closer decode, trailing-comma repair,
    then truncation recovery. Never raises.

    `opener` ("{" or "[") anchors the search on that bracket; by default the
    first bracket of either kind is used.
    """
    if not isinstance(text, str):
        return RecoveredValue.fail("no_match", f"Expected text, got {type(text).__name__}")

    raw = text.strip()
    if raw[:1] in _CLOSERS:
        try:
            return RecoveredValue.success(_decode(raw))
        except _DECODE_ERRORS:
            pass

    cleaned = strip_wrapper(text)
    if opener is None:
        match = _OPENER.search(cleaned)
        start = match.start() if match else -1
    else:
        start = cleaned.find(opener)
    if start == -1:
        return RecoveredValue.fail(
            "no_match", f"No JSON found in response: {cleaned[:_PREVIEW_CHARS]}"
        )

    opener = cleaned[start]
    tail = cleaned[start:]
    end = cleaned.rfind(_CLOSERS[opener])
    candidate = cleaned[start : end + 1] if end > start else tail

    for attempt in (candidate, strip_trailing_commas(candidate)):
        try:
            return RecoveredValue.success(_decode(attempt))
        except _DECODE_ERRORS:
            pass
    try:
        return RecoveredValue.success(_decode_leading(tail))
    except _DECODE_ERRORS:
        pass

    # The last closer may belong to a nested value, so scan the whole tail.
    value, position = _recover_truncated(tail, opener)
    if position == -1 and value is not None:
        return RecoveredValue.success(value)

    return RecoveredValue.fail(
        "unrecoverable",
        f"Failed to parse JSON (truncated at position {position}): {text[:_PREVIEW_CHARS]}",
    )


def extract_object(text: str) -> RecoveredValue:
    """recover() anchored on "{", additionally requiring a JSON object at the top level."""
    result = recover(text, opener="{")
    if result.ok and not isinstance(result.value, dict):
        return RecoveredValue.fail(
            "no_match", f"Expected a JSON object, got {type(result.value).__name__}: {text[:_PREVIEW_CHARS]}"
        )
    return result


def extract_array(text: str) -> RecoveredValue:
    """recover() anchored on "[", additionally requiring a JSON array at the top level."""
    result = recover(text, opener="[")
    if result.ok and not isinstance(result.value, list):
        return RecoveredValue.fail(
            "no_match", f"Expected a JSON array, got {type(result.value).__name__}: {text[:_PREVIEW_CHARS]}"
        )
    return result

from __future__ import annotations

import math
import unicodedata

from common.errors import EncodingError, RecognizerError
from consolidator.models import Hypothesis, RecognizerResult


def normalize(result: RecognizerResult, arrival_time: float) -> Hypothesis:
    """Map a recognizer result onto a uniform Hypothesis.

    Raises RecognizerError when the recognizer reported a failure and
    EncodingError when the payload is not text. Both are recoverable:
    the caller skips the result and keeps the session going.
    """
    if result.error:
        raise RecognizerError(result.error, segment_id=result.segment_id)

    text = _decode(result.text, result.segment_id)
    return Hypothesis(
        words=tuple(text.split()),
        confidence=_clamp_confidence(result.confidence),
        is_final=bool(result.is_final),
        arrival_time=arrival_time,
        source_segment_id=result.segment_id,
    )


def _decode(text: str | bytes, segment_id: int | None) -> str:
    if isinstance(text, (bytes, bytearray)):
        try:
            text = bytes(text).decode("utf-8")
        except UnicodeDecodeError as exc:
            raise EncodingError(f"Hypothesis is not valid UTF-8: {exc}", segment_id=segment_id) from exc
    elif not isinstance(text, str):
        raise EncodingError(f"Hypothesis text has type {type(text).__name__}", segment_id=segment_id)

    for ch in text:
        if unicodedata.category(ch) == "Cc" and not ch.isspace():
            raise EncodingError(
                f"Hypothesis contains control character U+{ord(ch):04X}", segment_id=segment_id
            )
    return text


def _clamp_confidence(value: float | None) -> float:
    if value is None or math.isnan(value):
        return 0.0
    return min(1.0, max(0.0, float(value)))

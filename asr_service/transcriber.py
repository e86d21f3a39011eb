from __future__ import annotations

import logging
import math

from common.config import ASRSettings
from consolidator.models import AudioSegment, RecognizerResult

logger = logging.getLogger(__name__)

_model = None


def get_model(settings: ASRSettings | None = None):
    """Lazily load the faster-whisper model."""
    global _model
    if _model is None:
        from faster_whisper import WhisperModel

        settings = settings or ASRSettings()
        logger.info("Loading faster-whisper model: %s", settings.model_size)
        _model = WhisperModel(
            settings.model_size,
            device=settings.device,
            compute_type=settings.compute_type,
        )
        logger.info("Model loaded")
    return _model


def transcribe_segment(
    segment: AudioSegment,
    language: str | None = None,
    beam_size: int = 5,
) -> RecognizerResult:
    """Recognize one audio segment as a single final hypothesis.

    Whisper sees each overlapping segment independently, so its text is a
    complete reading of the segment, not an increment. Failures are returned
    as an errored result rather than raised.
    """
    try:
        model = get_model()
        pieces, _info = model.transcribe(
            segment.samples(),
            language=language,
            vad_filter=True,
            vad_parameters={"min_silence_duration_ms": 300},
            beam_size=beam_size,
        )
        pieces = list(pieces)
    except Exception as exc:
        logger.exception("Recognition failed for segment %d", segment.segment_id)
        return RecognizerResult(is_final=True, error=str(exc), segment_id=segment.segment_id)

    text = " ".join(p.text.strip() for p in pieces if p.text.strip())
    confidences = [math.exp(p.avg_logprob) for p in pieces if p.avg_logprob is not None]
    confidence = round(sum(confidences) / len(confidences), 4) if confidences else 0.0
    return RecognizerResult(
        text=text,
        confidence=confidence,
        is_final=True,
        segment_id=segment.segment_id,
    )

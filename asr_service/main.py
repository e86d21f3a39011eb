from __future__ import annotations

import json
import logging

from fastapi import FastAPI, WebSocket, WebSocketDisconnect

from common.config import ASRSettings, ConsolidationSettings
from common.errors import ConfigError, ConsolidationError, EncodingError
from common.schemas import (
    ClientMessageType,
    EmissionMessage,
    ErrorMessage,
    StartMessage,
    TranscriptCompleteMessage,
)
from asr_service.audio_utils import normalize_audio
from asr_service.transcriber import get_model, transcribe_segment
from consolidator.models import AudioSegment, Emission
from consolidator.segmenter import Segmenter
from consolidator.session import SEGMENTED, ConsolidationSession

logger = logging.getLogger(__name__)

settings = ASRSettings()
consolidation_settings = ConsolidationSettings()
app = FastAPI(title="ASR Consolidation Service")


@app.on_event("startup")
async def startup():
    get_model(settings)


@app.get("/health")
async def health():
    return {"status": "ok"}


def session_settings(start: StartMessage) -> ConsolidationSettings:
    """Apply the per-stream overrides of a start message."""
    overrides = {
        name: getattr(start, name)
        for name in ("segment_duration_s", "overlap_duration_s", "stability_threshold_s")
        if getattr(start, name) is not None
    }
    return consolidation_settings.model_copy(update=overrides)


@app.websocket("/stream")
async def stream_endpoint(ws: WebSocket):
    await ws.accept()
    stream_id = ""
    session: ConsolidationSession | None = None
    errors: list[ConsolidationError] = []

    async def send_emissions(emissions: list[Emission]) -> None:
        for emission in emissions:
            await ws.send_text(
                EmissionMessage(stream_id=stream_id, record=emission.to_record()).model_dump_json()
            )

    async def send_errors() -> None:
        while errors:
            exc = errors.pop(0)
            await ws.send_text(
                ErrorMessage(stream_id=stream_id, detail=str(exc), recoverable=exc.recoverable).model_dump_json()
            )

    async def consolidate(segment: AudioSegment) -> None:
        logger.info(
            "Transcribing segment %d at offset=%.1fs (%.1fs)",
            segment.segment_id, segment.start_time, segment.duration_s,
        )
        result = transcribe_segment(segment, language, settings.beam_size)
        await send_emissions(session.handle(result))
        await send_errors()

    try:
        # Expect start message
        raw = await ws.receive_text()
        msg = json.loads(raw)
        if msg.get("type") != ClientMessageType.start:
            await ws.send_text(ErrorMessage(stream_id="", detail="Expected start message").model_dump_json())
            await ws.close()
            return

        start = StartMessage(**msg)
        stream_id = start.stream_id
        language = start.language or settings.language
        cfg = session_settings(start)
        try:
            segmenter = Segmenter(
                cfg.segment_duration_s,
                cfg.overlap_duration_s,
                sample_rate=cfg.sample_rate,
            )
            session = ConsolidationSession(
                cfg, mode=SEGMENTED, stream_id=stream_id, on_error=errors.append,
            )
        except ConfigError as exc:
            logger.warning("Rejected stream %s: %s", stream_id, exc)
            await ws.send_text(ErrorMessage(stream_id=stream_id, detail=str(exc)).model_dump_json())
            await ws.close()
            return
        logger.info(
            "ASR session started: %s (segment=%.2fs, overlap=%.2fs)",
            stream_id, cfg.segment_duration_s, cfg.overlap_duration_s,
        )

        while True:
            message = await ws.receive()
            if message.get("type") == "websocket.disconnect":
                logger.info("ASR client disconnected: %s", stream_id)
                return

            if message.get("bytes") is not None:
                try:
                    audio = normalize_audio(
                        message["bytes"],
                        input_sample_rate=start.sample_rate,
                        input_channels=start.channels,
                        input_encoding=start.encoding,
                        target_sample_rate=cfg.sample_rate,
                    )
                except EncodingError as exc:
                    session.report_error(exc)
                    await send_errors()
                    continue
                for segment in segmenter.add_audio(audio):
                    await consolidate(segment)

            elif message.get("text") is not None:
                data = json.loads(message["text"])
                if data.get("type") == ClientMessageType.end:
                    break

        # Flush the remaining audio and finish the transcript once
        remainder = segmenter.flush()
        if remainder is not None:
            await consolidate(remainder)
        await send_emissions(session.close())

        complete = TranscriptCompleteMessage(
            stream_id=stream_id,
            transcript=session.transcript,
            fragments=session.fragments,
            errors=len(session.errors),
        )
        await ws.send_text(complete.model_dump_json())

    except WebSocketDisconnect:
        logger.info("ASR client disconnected: %s", stream_id or "unknown")
    except Exception as exc:
        logger.exception("ASR stream error: %s", exc)
        try:
            await ws.send_text(
                ErrorMessage(stream_id=stream_id, detail="Internal ASR error").model_dump_json()
            )
        except Exception:
            logger.debug("Could not report error to client %s", stream_id)
    finally:
        if session is not None and not session.closed:
            session.close()
        logger.info("ASR session ended: %s", stream_id or "unknown")


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=settings.host, port=settings.port)

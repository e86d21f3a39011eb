from __future__ import annotations

import asyncio
import json
import logging

from fastapi import FastAPI, WebSocket, WebSocketDisconnect

from common.config import ConsolidationSettings, GatewaySettings
from common.errors import ConfigError, ConsolidationError
from common.schemas import (
    ClientMessageType,
    EmissionMessage,
    ErrorMessage,
    HypothesisMessage,
    StartMessage,
    TranscriptCompleteMessage,
)
from consolidator.models import Emission, RecognizerResult
from consolidator.sink import CallbackSink
from gateway.session import SessionManager

logger = logging.getLogger(__name__)

settings = GatewaySettings()
app = FastAPI(title="Transcript Consolidation Gateway")
manager = SessionManager(max_sessions=settings.max_sessions, settings=ConsolidationSettings())


@app.get("/health")
async def health():
    return {"status": "ok", "active_sessions": manager.active_count}


@app.websocket("/hypotheses")
async def hypotheses_endpoint(ws: WebSocket):
    await ws.accept()
    stream_id: str | None = None
    registered = False
    try:
        # Expect a start message first (text frame)
        raw = await ws.receive_text()
        msg = json.loads(raw)
        if msg.get("type") != ClientMessageType.start:
            await ws.send_text(ErrorMessage(stream_id="", detail="Expected start message").model_dump_json())
            await ws.close()
            return

        start = StartMessage(**msg)
        stream_id = start.stream_id

        async def send_emission(emission: Emission) -> None:
            await ws.send_text(
                EmissionMessage(stream_id=start.stream_id, record=emission.to_record()).model_dump_json()
            )

        async def send_error(exc: ConsolidationError) -> None:
            await ws.send_text(
                ErrorMessage(
                    stream_id=start.stream_id, detail=str(exc), recoverable=exc.recoverable
                ).model_dump_json()
            )

        overrides = {}
        if start.stability_threshold_s is not None:
            overrides["stability_threshold_s"] = start.stability_threshold_s
        try:
            session = await manager.create(
                stream_id=stream_id,
                client_ws=ws,
                sinks=[CallbackSink(send_emission)],
                overrides=overrides,
                on_error=send_error,
            )
            registered = True
        except ConfigError as exc:
            logger.warning("Rejected stream %s: %s", stream_id, exc)
            await ws.send_text(ErrorMessage(stream_id=stream_id, detail=str(exc)).model_dump_json())
            await ws.close()
            return

        # Single consumer: the only task that touches the consolidation state
        session.consumer = asyncio.create_task(session.pipeline.run())

        while not session.consumer.done():
            message = await ws.receive()
            if message.get("type") == "websocket.disconnect":
                logger.info("Client disconnected: %s", stream_id)
                return

            if session.consumer.done():
                # idle timeout already finalized the session
                logger.warning("Stream %s already finalized; dropping late input", stream_id)
                await ws.send_text(ErrorMessage(
                    stream_id=stream_id, detail="Stream already finalized", recoverable=False,
                ).model_dump_json())
                break

            if message.get("text") is not None:
                data = json.loads(message["text"])
                if data.get("type") == ClientMessageType.end:
                    break
                if data.get("type") == ClientMessageType.hypothesis:
                    hyp = HypothesisMessage(**data)
                    await session.pipeline.submit(RecognizerResult(
                        text=hyp.text,
                        confidence=hyp.confidence,
                        is_final=hyp.is_final,
                        error=hyp.error,
                        segment_id=hyp.segment_id,
                    ))
            elif message.get("bytes") is not None:
                # Raw bytes in place of hypothesis text; the normalizer decides
                await session.pipeline.submit(RecognizerResult(text=message["bytes"]))

        await session.pipeline.end()
        await session.consumer

        consolidation = session.consolidation
        complete = TranscriptCompleteMessage(
            stream_id=stream_id,
            transcript=consolidation.transcript,
            fragments=consolidation.fragments,
            errors=len(consolidation.errors),
        )
        await ws.send_text(complete.model_dump_json())

    except WebSocketDisconnect:
        logger.info("Client disconnected: %s", stream_id)
    except RuntimeError as exc:
        logger.warning("Session error: %s", exc)
        await ws.send_text(ErrorMessage(stream_id=stream_id or "", detail=str(exc)).model_dump_json())
    except Exception:
        logger.exception("Unexpected error in hypotheses endpoint")
    finally:
        if registered:
            await manager.remove(stream_id)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=settings.host, port=settings.port)

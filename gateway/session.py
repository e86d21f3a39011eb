from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Iterable

from fastapi import WebSocket

from common.config import ConsolidationSettings
from consolidator.pipeline import ConsolidationPipeline
from consolidator.session import STREAMING, ConsolidationSession
from consolidator.sink import Sink

logger = logging.getLogger(__name__)


@dataclass
class Session:
    stream_id: str
    client_ws: WebSocket | None
    pipeline: ConsolidationPipeline
    consumer: asyncio.Task | None = None

    @property
    def consolidation(self) -> ConsolidationSession:
        return self.pipeline.session


class SessionManager:
    def __init__(self, max_sessions: int = 10, settings: ConsolidationSettings | None = None) -> None:
        self._max = max_sessions
        self._settings = settings or ConsolidationSettings()
        self._sessions: dict[str, Session] = {}
        self._lock = asyncio.Lock()

    async def create(
        self,
        stream_id: str,
        client_ws: WebSocket | None,
        sinks: Iterable[Sink] = (),
        overrides: dict[str, Any] | None = None,
        **pipeline_kwargs,
    ) -> Session:
        """Register a streaming consolidation session; ConfigError propagates."""
        async with self._lock:
            if len(self._sessions) >= self._max:
                raise RuntimeError(f"Max sessions ({self._max}) reached")
            if stream_id in self._sessions:
                raise RuntimeError(f"Session {stream_id} already exists")

            cfg = self._settings.model_copy(update=overrides or {})
            consolidation = ConsolidationSession(cfg, mode=STREAMING, stream_id=stream_id)
            pipeline = ConsolidationPipeline(
                consolidation,
                sinks,
                idle_timeout_s=cfg.idle_timeout_s,
                **pipeline_kwargs,
            )
            session = Session(stream_id=stream_id, client_ws=client_ws, pipeline=pipeline)
            self._sessions[stream_id] = session
            logger.info("Session created: %s (%d active)", stream_id, len(self._sessions))
            return session

    async def remove(self, stream_id: str) -> None:
        async with self._lock:
            session = self._sessions.pop(stream_id, None)
            if session is not None and session.consumer is not None and not session.consumer.done():
                session.consumer.cancel()
            logger.info("Session removed: %s (%d active)", stream_id, len(self._sessions))

    def get(self, stream_id: str) -> Session | None:
        return self._sessions.get(stream_id)

    @property
    def active_count(self) -> int:
        return len(self._sessions)

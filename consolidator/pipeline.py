from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable, Iterable, Optional

from common.errors import ConsolidationError
from consolidator.models import Emission, Hypothesis, RecognizerResult
from consolidator.normalizer import normalize
from consolidator.session import ConsolidationSession
from consolidator.sink import Sink

logger = logging.getLogger(__name__)


class _EndOfStream:
    def __init__(self, final: Optional[RecognizerResult] = None):
        self.final = final


class ConsolidationPipeline:
    """Ordered channel between the recognizer boundary and a session.

    Producers push recognizer results from any task or thread; ``run`` is
    the only consumer and the only code that touches the session, so
    hypotheses are handled strictly one at a time in arrival order.
    """

    def __init__(
        self,
        session: ConsolidationSession,
        sinks: Iterable[Sink] = (),
        idle_timeout_s: float | None = None,
        queue_maxsize: int = 0,
        clock: Callable[[], float] = time.monotonic,
        on_error: Optional[Callable[[ConsolidationError], Awaitable[None]]] = None,
    ):
        self.session = session
        self._sinks = list(sinks)
        self._idle_timeout_s = idle_timeout_s
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=queue_maxsize)
        self._clock = clock
        self._on_error = on_error
        self._errors_seen = 0

    async def submit(self, result: RecognizerResult) -> None:
        await self._queue.put((self._clock(), result))

    def submit_nowait(self, result: RecognizerResult) -> None:
        self._queue.put_nowait((self._clock(), result))

    def submit_threadsafe(self, loop: asyncio.AbstractEventLoop, result: RecognizerResult) -> None:
        """Push from a recognizer callback running outside the event loop."""
        item = (self._clock(), result)
        loop.call_soon_threadsafe(self._queue.put_nowait, item)

    async def end(self, final: Optional[RecognizerResult] = None) -> None:
        await self._queue.put(_EndOfStream(final))

    def end_threadsafe(self, loop: asyncio.AbstractEventLoop, final: Optional[RecognizerResult] = None) -> None:
        loop.call_soon_threadsafe(self._queue.put_nowait, _EndOfStream(final))

    async def run(self) -> list[Emission]:
        """Consume until end of stream or idle timeout, then close the session once."""
        emissions: list[Emission] = []
        final: Optional[Hypothesis] = None
        try:
            while True:
                try:
                    item = await self._next()
                except asyncio.TimeoutError:
                    logger.info(
                        "No hypotheses received in %.1fs; finalizing session %s",
                        self._idle_timeout_s, self.session.stream_id,
                    )
                    break

                if isinstance(item, _EndOfStream):
                    final = self._normalize_final(item.final)
                    break

                arrival_time, result = item
                for emission in self.session.handle(result, arrival_time):
                    await self._dispatch(emission)
                    emissions.append(emission)
                await self._drain_errors()
        except asyncio.CancelledError:
            self.session.close()
            raise

        for emission in self.session.close(final):
            await self._dispatch(emission)
            emissions.append(emission)
        await self._drain_errors()
        for sink in self._sinks:
            await sink.close()
        return emissions

    async def _next(self):
        if self._idle_timeout_s is None:
            return await self._queue.get()
        return await asyncio.wait_for(self._queue.get(), timeout=self._idle_timeout_s)

    def _normalize_final(self, result: Optional[RecognizerResult]) -> Optional[Hypothesis]:
        if result is None:
            return None
        try:
            return normalize(result, self._clock())
        except ConsolidationError as exc:
            self.session.report_error(exc)
            return None

    async def _dispatch(self, emission: Emission) -> None:
        for sink in self._sinks:
            await sink.write(emission)

    async def _drain_errors(self) -> None:
        errors = self.session.errors
        while self._errors_seen < len(errors):
            exc = errors[self._errors_seen]
            self._errors_seen += 1
            if self._on_error:
                await self._on_error(exc)

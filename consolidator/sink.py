"""Append-only destinations for emissions."""

from __future__ import annotations

import json
import sys
from typing import Awaitable, Callable, Protocol, TextIO

from common.schemas import EmissionKind
from consolidator.models import Emission


class Sink(Protocol):
    async def write(self, emission: Emission) -> None: ...

    async def close(self) -> None: ...


class TextSink:
    """Writes partial/confirmed fragments as plain text, e.g. to stdout."""

    def __init__(self, stream: TextIO | None = None, add_newlines: bool = False):
        self._stream = stream or sys.stdout
        self._add_newlines = add_newlines

    async def write(self, emission: Emission) -> None:
        if emission.kind == EmissionKind.final or not emission.text:
            return
        self._stream.write(emission.text + "\n" if self._add_newlines else emission.text)
        self._stream.flush()

    async def close(self) -> None:
        self._stream.write("\n")
        self._stream.flush()


class RecordSink:
    """Writes one JSON record per emission, final included."""

    def __init__(self, stream: TextIO | None = None):
        self._stream = stream or sys.stdout

    async def write(self, emission: Emission) -> None:
        record = emission.to_record().model_dump(mode="json")
        self._stream.write(json.dumps(record, sort_keys=True, ensure_ascii=False) + "\n")
        self._stream.flush()

    async def close(self) -> None:
        self._stream.flush()


class CallbackSink:
    """Forwards emissions to an async callback (used by the WebSocket services)."""

    def __init__(self, callback: Callable[[Emission], Awaitable[None]]):
        self._callback = callback

    async def write(self, emission: Emission) -> None:
        await self._callback(emission)

    async def close(self) -> None:
        pass

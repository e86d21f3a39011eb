"""Consolidate JSON-lines hypotheses from stdin into a transcript on stdout.

Each input line is a hypothesis message, e.g.
``{"type": "hypothesis", "stream_id": "cli", "text": "hello", "is_final": true}``.
Settings come from ``CONSOLIDATION_*`` environment variables; diagnostics go
to stderr so stdout carries only the transcript.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
import threading
from typing import BinaryIO, TextIO

from pydantic import ValidationError

from common.config import ConsolidationSettings
from common.schemas import HypothesisMessage
from consolidator.models import RecognizerResult
from consolidator.pipeline import ConsolidationPipeline
from consolidator.session import ConsolidationSession
from consolidator.sink import RecordSink, TextSink

logger = logging.getLogger(__name__)


def parse_line(line: str) -> RecognizerResult | None:
    try:
        msg = HypothesisMessage(**json.loads(line))
    except (json.JSONDecodeError, TypeError, ValidationError) as exc:
        logger.warning("Ignoring malformed input line: %s", exc)
        return None
    return RecognizerResult(
        text=msg.text,
        confidence=msg.confidence,
        is_final=msg.is_final,
        error=msg.error,
        segment_id=msg.segment_id,
    )


async def run_stdio(
    stdin: BinaryIO,
    stdout: TextIO,
    settings: ConsolidationSettings | None = None,
) -> str:
    """Pump stdin into a streaming session until EOF or idle timeout; return the transcript."""
    settings = settings or ConsolidationSettings()
    session = ConsolidationSession(settings, stream_id="stdio")
    sink = RecordSink(stdout) if settings.output_format == "records" else TextSink(stdout, settings.add_newlines)
    pipeline = ConsolidationPipeline(session, [sink], idle_timeout_s=settings.idle_timeout_s)
    loop = asyncio.get_running_loop()

    def reader() -> None:
        try:
            for raw in stdin:
                try:
                    line = raw.decode("utf-8")
                except UnicodeDecodeError:
                    # the normalizer rejects undecodable bytes with a recoverable EncodingError
                    pipeline.submit_threadsafe(loop, RecognizerResult(text=raw))
                    continue
                if not line.strip():
                    continue
                result = parse_line(line)
                if result is not None:
                    pipeline.submit_threadsafe(loop, result)
        finally:
            pipeline.end_threadsafe(loop)

    threading.Thread(target=reader, name="stdin-reader", daemon=True).start()
    await pipeline.run()
    return session.transcript


def main() -> None:
    logging.basicConfig(
        stream=sys.stderr,
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    asyncio.run(run_stdio(sys.stdin.buffer, sys.stdout))


if __name__ == "__main__":
    main()

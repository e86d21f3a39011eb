from __future__ import annotations

import logging
import time
from typing import Callable, Optional

from common.config import ConsolidationSettings
from common.errors import ConfigError, ConsolidationError, OrderingError
from common.schemas import EmissionKind
from consolidator.dedup import OverlapDeduplicator
from consolidator.diff import DiffEngine
from consolidator.models import ConsolidationState, Emission, Hypothesis, RecognizerResult
from consolidator.normalizer import normalize
from consolidator.stability import StabilityGate

logger = logging.getLogger(__name__)

STREAMING = "streaming"
SEGMENTED = "segmented"

ErrorCallback = Callable[[ConsolidationError], None]


class ConsolidationSession:
    """Per-stream consolidation: owns the only mutable state and processes
    hypotheses one at a time, in arrival order.

    In streaming mode hypotheses are successive revisions of one growing
    transcript. In segmented mode each final hypothesis covers an
    independently recognized, overlapping audio segment, so repeated
    boundary words are removed and the remainder is appended to the
    running transcript before diffing.
    """

    def __init__(
        self,
        settings: ConsolidationSettings | None = None,
        mode: str = STREAMING,
        stream_id: str = "",
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], float] = time.time,
        on_error: Optional[ErrorCallback] = None,
    ):
        if mode not in (STREAMING, SEGMENTED):
            raise ConfigError(f"Unknown consolidation mode: {mode!r}")

        self.settings = settings or ConsolidationSettings()
        self.mode = mode
        self.stream_id = stream_id
        self._clock = clock
        self._wall_clock = wall_clock
        self._on_error = on_error

        self.gate = StabilityGate(self.settings.stability_threshold_s)
        self.dedup = OverlapDeduplicator(
            max_window=self.settings.dedup_max_window,
            match_ratio=self.settings.dedup_match_ratio,
        )
        self.diff = DiffEngine()

        self._state = ConsolidationState(last_stable_time=clock())
        self._closed = False
        self.errors: list[ConsolidationError] = []

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def pending_text(self) -> str:
        return " ".join(self._state.pending_text)

    @property
    def fragments(self) -> list[str]:
        return list(self._state.fragments)

    @property
    def transcript(self) -> str:
        return "".join(self._state.fragments)

    def handle(self, result: RecognizerResult, arrival_time: float | None = None) -> list[Emission]:
        """Normalize a recognizer result and process it; recoverable errors skip it."""
        if arrival_time is None:
            arrival_time = self._clock()
        try:
            hypothesis = normalize(result, arrival_time)
        except ConsolidationError as exc:
            self.report_error(exc)
            return []
        return self.process(hypothesis)

    def process(self, hypothesis: Hypothesis) -> list[Emission]:
        if self._closed:
            raise RuntimeError(f"Session {self.stream_id or '<anonymous>'} is closed")

        state = self._state
        if state.last_arrival_time is not None and hypothesis.arrival_time < state.last_arrival_time:
            self.report_error(OrderingError(
                f"Hypothesis at {hypothesis.arrival_time:.3f} arrived after {state.last_arrival_time:.3f}",
                segment_id=hypothesis.source_segment_id,
            ))
            return []
        state.last_arrival_time = hypothesis.arrival_time

        if self.mode == SEGMENTED:
            return self._process_segmented(hypothesis)
        return self._process_streaming(hypothesis)

    def close(self, final: Hypothesis | None = None) -> list[Emission]:
        """Finish the session. Only the first call has any effect."""
        if self._closed:
            logger.debug("Session %s already closed", self.stream_id)
            return []

        emissions: list[Emission] = []
        if final is not None:
            if not final.is_final:
                final = Hypothesis(
                    words=final.words,
                    confidence=final.confidence,
                    is_final=True,
                    arrival_time=final.arrival_time,
                    source_segment_id=final.source_segment_id,
                )
            emissions.extend(self.process(final))

        if self._state.pending_text:
            logger.debug("Discarding unflushed partial: %s", self.pending_text)
            self._state.pending_text = ()

        self._closed = True
        emissions.append(Emission(
            kind=EmissionKind.final,
            text=self.transcript,
            confidence=final.confidence if final is not None else 0.0,
            timestamp=self._wall_clock(),
        ))
        logger.info(
            "Session %s closed: %d fragment(s), %d error(s)",
            self.stream_id, len(self._state.fragments), len(self.errors),
        )
        return emissions

    def _process_streaming(self, hypothesis: Hypothesis) -> list[Emission]:
        if not self.gate.admit(hypothesis, self._state):
            return []
        kind = EmissionKind.confirmed if hypothesis.is_final else EmissionKind.partial
        return self._emit(hypothesis.text, hypothesis, kind)

    def _process_segmented(self, hypothesis: Hypothesis) -> list[Emission]:
        state = self._state
        raw = hypothesis.text

        if not hypothesis.is_final:
            preview = self.dedup.deduplicate(raw, commit=False)
            if not self.gate.admit(hypothesis, state):
                return []
            return self._emit(_join(state.accumulated_text, preview), hypothesis, EmissionKind.partial)

        new_text = self.dedup.deduplicate(raw)
        if not new_text.strip():
            logger.debug("Skipped duplicate confirmed text (segment %s)", hypothesis.source_segment_id)
            return []

        state.accumulated_text = _join(state.accumulated_text, new_text)
        return self._emit(
            state.accumulated_text, hypothesis, EmissionKind.confirmed,
            deduplicated=new_text != raw,
        )

    def _emit(
        self,
        current: str,
        hypothesis: Hypothesis,
        kind: EmissionKind,
        deduplicated: bool = False,
    ) -> list[Emission]:
        fragment = self.diff.compute(current, self._state)
        if not fragment:
            return []

        self._state.fragments.append(fragment)
        emission = Emission(
            kind=kind,
            text=fragment,
            confidence=hypothesis.confidence,
            timestamp=self._wall_clock(),
            source_segment_id=hypothesis.source_segment_id,
            deduplicated=deduplicated,
        )
        logger.info(
            "%s: %s (confidence: %.2f)%s",
            kind.value.capitalize(), fragment, emission.confidence,
            " [deduplicated]" if deduplicated else "",
        )
        return [emission]

    def report_error(self, exc: ConsolidationError) -> None:
        logger.warning("Session %s skipped hypothesis: %s", self.stream_id, exc)
        self.errors.append(exc)
        if self._on_error:
            self._on_error(exc)


def _join(head: str, tail: str) -> str:
    if not head:
        return tail
    if not tail:
        return head
    return f"{head} {tail}"

from __future__ import annotations

from common.errors import ConfigError
from consolidator.models import ConsolidationState, Hypothesis


class StabilityGate:
    """Rate-limits partial hypotheses; finals always pass."""

    def __init__(self, threshold_s: float = 5.0):
        if threshold_s < 0:
            raise ConfigError(f"stability_threshold_s must be >= 0, got {threshold_s}")
        self.threshold_s = threshold_s

    def admit(self, hypothesis: Hypothesis, state: ConsolidationState) -> bool:
        if hypothesis.is_final:
            return True

        now = hypothesis.arrival_time
        if now - state.last_stable_time >= self.threshold_s:
            state.last_stable_time = now
            state.pending_text = ()
            return True

        state.pending_text = hypothesis.words
        return False

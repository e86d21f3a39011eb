from __future__ import annotations

from typing import Optional

from consolidator.models import ConsolidationState


class DiffEngine:
    """Computes the fragment a full hypothesis adds to the previously emitted text."""

    def compute(self, current: str, state: ConsolidationState) -> Optional[str]:
        """Return the new fragment for ``current``, or None when there is nothing to emit.

        A hypothesis no longer than the remembered text that differs from it is
        a correction: it is emitted whole and the remembered text is cleared,
        so the next hypothesis is compared against no prior context. Otherwise
        the hypothesis is taken as an extension and only the characters past
        the remembered length are emitted.
        """
        previous = state.last_emitted_text

        if len(current) <= len(previous) and current != previous:
            state.last_emitted_text = ""
            return current

        if current == previous:
            return None

        fragment = current[len(previous):]
        state.last_emitted_text = current
        return fragment or None

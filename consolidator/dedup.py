from __future__ import annotations

import logging
import unicodedata

from common.errors import ConfigError

logger = logging.getLogger(__name__)


def normalize_word(word: str) -> str:
    """Lowercase and strip leading/trailing punctuation."""
    word = word.strip().lower()
    start, end = 0, len(word)
    while start < end and unicodedata.category(word[start]).startswith("P"):
        start += 1
    while end > start and unicodedata.category(word[end - 1]).startswith("P"):
        end -= 1
    return word[start:end]


class OverlapDeduplicator:
    """Drops words repeated across independently recognized, overlapping segments.

    The last words of the previous raw hypothesis are compared with the first
    words of the new one; the longest window whose word pairs match at least
    ``match_ratio`` of the time is removed from the head of the new text.
    """

    def __init__(self, max_window: int = 10, match_ratio: float = 0.8):
        if max_window < 1:
            raise ConfigError(f"dedup_max_window must be >= 1, got {max_window}")
        if not 0.0 < match_ratio <= 1.0:
            raise ConfigError(f"dedup_match_ratio must be in (0, 1], got {match_ratio}")
        self.max_window = max_window
        self.match_ratio = match_ratio
        self._last_raw_text = ""

    @property
    def last_raw_text(self) -> str:
        return self._last_raw_text

    def reset(self) -> None:
        self._last_raw_text = ""

    def overlap_length(self, previous_words: list[str], new_words: list[str]) -> int:
        """Number of leading words of ``new_words`` that repeat the tail of ``previous_words``."""
        if not previous_words or not new_words:
            return 0

        prev_norm = [normalize_word(w) for w in previous_words]
        new_norm = [normalize_word(w) for w in new_words]
        if prev_norm == new_norm:
            return len(new_words)

        best = 0
        limit = min(self.max_window, len(prev_norm), len(new_norm))
        for k in range(1, limit + 1):
            pairs = zip(prev_norm[-k:], new_norm[:k])
            matches = sum(1 for a, b in pairs if a == b)
            if matches / k >= self.match_ratio:
                best = k
        return best

    def deduplicate(self, text: str, commit: bool = True) -> str:
        """Return ``text`` without the words it shares with the previous raw text.

        With ``commit`` the raw ``text`` becomes the basis for the next call,
        even when it is empty.
        """
        previous = self._last_raw_text
        if commit:
            self._last_raw_text = text
        if not previous:
            return text

        new_words = text.split()
        best = self.overlap_length(previous.split(), new_words)
        if best:
            logger.debug("Dropping %d overlapping word(s)", best)
        return " ".join(new_words[best:])

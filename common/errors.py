"""Error taxonomy shared by the consolidation core and the services."""

from __future__ import annotations


class ConsolidationError(Exception):
    recoverable = True

    def __init__(self, message: str, segment_id: int | None = None) -> None:
        super().__init__(message)
        self.segment_id = segment_id


class ConfigError(ConsolidationError):
    """Invalid configuration. Raised at construction time, before streaming."""

    recoverable = False


class RecognizerError(ConsolidationError):
    """The recognizer reported a failure for one segment or hypothesis."""


class EncodingError(ConsolidationError):
    """Non-text bytes where hypothesis text was expected."""


class OrderingError(ConsolidationError):
    """A hypothesis arrived earlier than one already processed."""

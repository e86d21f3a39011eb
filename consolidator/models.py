"""Internal models for transcript consolidation."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional, Union

import numpy as np

from common.schemas import EmissionKind, EmissionRecord


@dataclass(frozen=True)
class AudioSegment:
    segment_id: int
    pcm: bytes
    start_offset: int  # frames since stream start
    duration: int  # frames
    overlap_with_previous: int  # frames
    sample_rate: int = 16000
    channels: int = 1
    is_last: bool = False

    @property
    def start_time(self) -> float:
        return self.start_offset / self.sample_rate

    @property
    def duration_s(self) -> float:
        return self.duration / self.sample_rate

    def samples(self) -> np.ndarray:
        """Return the segment as float32 samples in [-1, 1], channels interleaved."""
        return np.frombuffer(self.pcm, dtype="<i2").astype(np.float32) / 32768.0


@dataclass
class RecognizerResult:
    text: Union[str, bytes] = ""
    confidence: Optional[float] = None
    is_final: bool = False
    error: Optional[str] = None
    segment_id: Optional[int] = None


@dataclass(frozen=True)
class Hypothesis:
    words: tuple[str, ...]
    confidence: float = 0.0
    is_final: bool = False
    arrival_time: float = 0.0
    source_segment_id: Optional[int] = None

    @property
    def text(self) -> str:
        return " ".join(self.words)

    @classmethod
    def from_text(cls, text: str, **kwargs) -> Hypothesis:
        return cls(words=tuple(text.split()), **kwargs)


@dataclass
class ConsolidationState:
    last_emitted_text: str = ""
    last_stable_time: float = 0.0
    pending_text: tuple[str, ...] = ()
    accumulated_text: str = ""
    last_arrival_time: Optional[float] = None
    fragments: list[str] = field(default_factory=list)


@dataclass
class Emission:
    kind: EmissionKind
    text: str
    confidence: float = 0.0
    timestamp: float = 0.0
    source_segment_id: Optional[int] = None
    deduplicated: bool = False

    def to_record(self) -> EmissionRecord:
        return EmissionRecord(
            type=self.kind,
            text=self.text,
            confidence=self.confidence,
            timestamp=self.timestamp,
        )

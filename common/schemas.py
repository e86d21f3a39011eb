from __future__ import annotations

from enum import Enum
from typing import Optional

from pydantic import BaseModel


# --- WebSocket messages: client ↔ services ---

class ClientMessageType(str, Enum):
    start = "start"
    hypothesis = "hypothesis"
    end = "end"


class StartMessage(BaseModel):
    type: ClientMessageType = ClientMessageType.start
    stream_id: str
    sample_rate: int = 16000
    encoding: str = "pcm_s16le"
    channels: int = 1
    language: Optional[str] = None
    # per-stream overrides of ConsolidationSettings
    segment_duration_s: Optional[float] = None
    overlap_duration_s: Optional[float] = None
    stability_threshold_s: Optional[float] = None


class HypothesisMessage(BaseModel):
    type: ClientMessageType = ClientMessageType.hypothesis
    stream_id: str
    text: str = ""
    confidence: Optional[float] = None
    is_final: bool = False
    segment_id: Optional[int] = None
    error: Optional[str] = None


class EndMessage(BaseModel):
    type: ClientMessageType = ClientMessageType.end
    stream_id: str


class EmissionKind(str, Enum):
    partial = "partial"
    confirmed = "confirmed"
    final = "final"


class EmissionRecord(BaseModel):
    type: EmissionKind
    text: str
    confidence: float = 0.0
    timestamp: float


class ServerMessageType(str, Enum):
    emission = "emission"
    transcript_complete = "transcript_complete"
    error = "error"


class EmissionMessage(BaseModel):
    type: ServerMessageType = ServerMessageType.emission
    stream_id: str
    record: EmissionRecord


class TranscriptCompleteMessage(BaseModel):
    type: ServerMessageType = ServerMessageType.transcript_complete
    stream_id: str
    transcript: str
    fragments: list[str] = []
    errors: int = 0


class ErrorMessage(BaseModel):
    type: ServerMessageType = ServerMessageType.error
    stream_id: str
    detail: str
    recoverable: bool = False

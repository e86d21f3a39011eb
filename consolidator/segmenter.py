from __future__ import annotations

import logging

import numpy as np

from common.errors import ConfigError
from consolidator.models import AudioSegment

logger = logging.getLogger(__name__)

SAMPLE_WIDTH = 2  # 16-bit PCM


class Segmenter:
    """Cuts a continuous 16-bit PCM stream into fixed-length, overlapping segments.

    Segment k+1 starts ``segment - overlap`` frames after segment k, so the
    last ``overlap`` frames of every segment are repeated at the head of the
    next one.
    """

    def __init__(
        self,
        segment_duration_s: float,
        overlap_duration_s: float,
        sample_rate: int = 16000,
        channels: int = 1,
    ):
        if sample_rate <= 0 or channels <= 0:
            raise ConfigError(f"Invalid audio format: {sample_rate} Hz, {channels} channel(s)")
        if segment_duration_s <= 0:
            raise ConfigError(f"Segment duration must be positive, got {segment_duration_s}")
        if overlap_duration_s < 0 or overlap_duration_s >= segment_duration_s:
            raise ConfigError(
                f"Overlap ({overlap_duration_s}s) must be >= 0 and shorter than "
                f"the segment ({segment_duration_s}s)"
            )

        self.sample_rate = sample_rate
        self.channels = channels
        self.segment_frames = int(round(segment_duration_s * sample_rate))
        self.overlap_frames = int(round(overlap_duration_s * sample_rate))
        if self.segment_frames < 1 or self.overlap_frames >= self.segment_frames:
            raise ConfigError(
                f"Segment of {self.segment_frames} frames cannot overlap by {self.overlap_frames}"
            )
        self.step_frames = self.segment_frames - self.overlap_frames

        self._frame_bytes = SAMPLE_WIDTH * channels
        self._buffer = np.array([], dtype="<i2")
        self._carry = b""
        self._buffer_offset = 0  # stream frame index of _buffer[0]
        self._emitted_until = 0  # stream frame index just past the last emitted segment
        self._segment_counter = 0
        self._closed = False

    @property
    def buffered_frames(self) -> int:
        return len(self._buffer) // self.channels

    @property
    def closed(self) -> bool:
        return self._closed

    def add_audio(self, pcm_bytes: bytes) -> list[AudioSegment]:
        """Append raw PCM and return every segment that became complete."""
        if self._closed:
            raise RuntimeError("Segmenter already flushed")

        data = self._carry + pcm_bytes
        usable = len(data) - len(data) % self._frame_bytes
        self._carry = data[usable:]
        if usable:
            audio = np.frombuffer(data[:usable], dtype="<i2")
            self._buffer = np.concatenate([self._buffer, audio])

        segments: list[AudioSegment] = []
        while self.has_segment():
            segments.append(self.pop_segment())
        return segments

    def has_segment(self) -> bool:
        return self.buffered_frames >= self.segment_frames

    def pop_segment(self) -> AudioSegment:
        """Pop one full segment, keeping its overlap tail buffered for the next."""
        chunk = self._buffer[: self.segment_frames * self.channels]
        segment = self._make_segment(chunk, is_last=False)
        self._buffer = self._buffer[self.step_frames * self.channels:]
        self._buffer_offset += self.step_frames
        return segment

    def flush(self) -> AudioSegment | None:
        """End of stream: return the remainder if it is long enough to transcribe."""
        if self._closed:
            return None
        self._closed = True

        if self._carry:
            logger.debug("Dropping %d byte(s) of incomplete frame", len(self._carry))
            self._carry = b""

        frames = self.buffered_frames
        fresh = self._buffer_offset + frames - self._emitted_until
        if frames == 0 or fresh <= 0:
            return None
        if frames * 2 < self.segment_frames:
            logger.debug(
                "Discarding %d trailing frames (< half of %d-frame segment)",
                frames, self.segment_frames,
            )
            self._buffer = np.array([], dtype="<i2")
            return None

        segment = self._make_segment(self._buffer, is_last=True)
        self._buffer = np.array([], dtype="<i2")
        return segment

    def _make_segment(self, chunk: np.ndarray, is_last: bool) -> AudioSegment:
        frames = len(chunk) // self.channels
        segment = AudioSegment(
            segment_id=self._segment_counter,
            pcm=chunk.tobytes(),
            start_offset=self._buffer_offset,
            duration=frames,
            overlap_with_previous=max(0, self._emitted_until - self._buffer_offset),
            sample_rate=self.sample_rate,
            channels=self.channels,
            is_last=is_last,
        )
        self._segment_counter += 1
        self._emitted_until = self._buffer_offset + frames
        return segment

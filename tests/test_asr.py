import json
import math
import subprocess

import numpy as np
import pytest
from fastapi.testclient import TestClient

import asr_service.main as asr_main
from asr_service import transcriber
from asr_service.audio_utils import _ffmpeg_format, normalize_audio
from common.errors import EncodingError
from common.schemas import StartMessage
from consolidator.models import RecognizerResult
from consolidator.segmenter import Segmenter


class TestAudioUtils:
    def test_passthrough_when_already_correct_format(self):
        pcm = b"\x00\x01" * 100
        result = normalize_audio(pcm, input_sample_rate=16000, input_channels=1, input_encoding="pcm_s16le")
        assert result == pcm

    def test_ffmpeg_format_mapping(self):
        assert _ffmpeg_format("pcm_s16le") == "s16le"
        assert _ffmpeg_format("wav") == "wav"
        assert _ffmpeg_format("unknown") == "s16le"

    def test_conversion_failure_is_encoding_error(self, monkeypatch):
        def fail(*args, **kwargs):
            raise subprocess.CalledProcessError(1, "ffmpeg")

        monkeypatch.setattr(subprocess, "run", fail)
        with pytest.raises(EncodingError):
            normalize_audio(b"\x00" * 10, input_sample_rate=44100, input_channels=2)


class FakePiece:
    def __init__(self, text, avg_logprob):
        self.text = text
        self.avg_logprob = avg_logprob


class FakeWhisper:
    def __init__(self, pieces=None, fail=False):
        self.pieces = pieces or []
        self.fail = fail
        self.calls = []

    def transcribe(self, audio, **kwargs):
        if self.fail:
            raise RuntimeError("CUDA out of memory")
        self.calls.append((audio, kwargs))
        return iter(self.pieces), None


class TestTranscriber:
    @pytest.fixture
    def segment(self):
        return Segmenter(0.5, 0.1, sample_rate=16000).add_audio(np.zeros(8000, dtype=np.int16).tobytes())[0]

    def test_pieces_joined_into_one_final_result(self, monkeypatch, segment):
        model = FakeWhisper([FakePiece(" see you ", math.log(0.8)), FakePiece("later", math.log(0.6))])
        monkeypatch.setattr(transcriber, "_model", model)

        result = transcriber.transcribe_segment(segment, language="en", beam_size=3)
        assert result.text == "see you later"
        assert result.is_final
        assert result.segment_id == segment.segment_id
        assert result.confidence == pytest.approx(0.7)
        audio, kwargs = model.calls[0]
        assert audio.dtype == np.float32
        assert kwargs["language"] == "en"
        assert kwargs["beam_size"] == 3

    def test_failure_returned_as_error_result(self, monkeypatch, segment):
        monkeypatch.setattr(transcriber, "_model", FakeWhisper(fail=True))
        result = transcriber.transcribe_segment(segment)
        assert result.error == "CUDA out of memory"
        assert result.text == ""


class TestSessionSettings:
    def test_overrides_applied(self):
        start = StartMessage(stream_id="a", segment_duration_s=1.0, overlap_duration_s=0.25)
        cfg = asr_main.session_settings(start)
        assert cfg.segment_duration_s == 1.0
        assert cfg.overlap_duration_s == 0.25
        assert cfg.dedup_max_window == asr_main.consolidation_settings.dedup_max_window

    def test_defaults_kept(self):
        cfg = asr_main.session_settings(StartMessage(stream_id="a"))
        assert cfg.segment_duration_s == asr_main.consolidation_settings.segment_duration_s


class TestStreamEndpoint:
    @pytest.fixture
    def recognized(self, monkeypatch):
        """Replace the recognizer with a scripted one; returns the segments it saw."""
        script = ["see you later today", "later today we will meet"]
        seen = []

        def fake_transcribe(segment, language=None, beam_size=5):
            seen.append(segment)
            if segment.segment_id >= len(script):
                return RecognizerResult(error="no speech", is_final=True, segment_id=segment.segment_id)
            return RecognizerResult(script[segment.segment_id], 0.9, True, segment_id=segment.segment_id)

        monkeypatch.setattr(asr_main, "transcribe_segment", fake_transcribe)
        monkeypatch.setattr(asr_main, "get_model", lambda settings=None: None)
        return seen

    @pytest.fixture
    def client(self):
        return TestClient(asr_main.app)

    def start(self, stream_id: str, **overrides) -> str:
        msg = {"type": "start", "stream_id": stream_id, "segment_duration_s": 0.1, "overlap_duration_s": 0.03}
        msg.update(overrides)
        return json.dumps(msg)

    def test_overlapping_segments_consolidated(self, client, recognized):
        # 0.1s segments with 0.03s overlap at 16 kHz: 1600 frames, step 1120
        audio = np.zeros(1600 + 1120, dtype=np.int16).tobytes()
        with client.websocket_connect("/stream") as ws:
            ws.send_text(self.start("asr-1"))
            ws.send_bytes(audio[:2000])
            ws.send_bytes(audio[2000:])
            ws.send_text(json.dumps({"type": "end", "stream_id": "asr-1"}))
            messages = []
            while True:
                data = ws.receive_json()
                messages.append(data)
                if data["type"] == "transcript_complete":
                    break

        assert [s.start_offset for s in recognized] == [0, 1120]
        assert recognized[1].overlap_with_previous == 480
        records = [m["record"] for m in messages if m["type"] == "emission"]
        assert [(r["type"], r["text"]) for r in records] == [
            ("confirmed", "see you later today"),
            ("confirmed", " we will meet"),
            ("final", "see you later today we will meet"),
        ]
        assert messages[-1]["transcript"] == "see you later today we will meet"

    def test_recognizer_failure_is_recoverable(self, client, recognized):
        # three full segments; the third fails in the scripted recognizer
        audio = np.zeros(1600 + 2 * 1120, dtype=np.int16).tobytes()
        with client.websocket_connect("/stream") as ws:
            ws.send_text(self.start("asr-2"))
            ws.send_bytes(audio)
            ws.send_text(json.dumps({"type": "end", "stream_id": "asr-2"}))
            messages = []
            while True:
                data = ws.receive_json()
                messages.append(data)
                if data["type"] == "transcript_complete":
                    break

        errors = [m for m in messages if m["type"] == "error"]
        assert len(errors) == 1
        assert errors[0]["recoverable"]
        assert messages[-1]["errors"] == 1
        assert messages[-1]["transcript"] == "see you later today we will meet"

    def test_invalid_overlap_rejected(self, client, recognized):
        with client.websocket_connect("/stream") as ws:
            ws.send_text(self.start("asr-3", overlap_duration_s=0.2))
            data = ws.receive_json()
        assert data["type"] == "error"
        assert not data["recoverable"]
        assert recognized == []

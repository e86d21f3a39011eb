import json
import time

import pytest
from fastapi.testclient import TestClient

from common.config import ConsolidationSettings
from common.errors import ConfigError
from gateway.main import app
from gateway.session import SessionManager


class TestSessionManager:
    @pytest.fixture
    def manager(self):
        return SessionManager(max_sessions=2)

    @pytest.mark.asyncio
    async def test_create_and_remove(self, manager):
        # Use a mock websocket
        session = await manager.create("s1", client_ws=None)
        assert session.stream_id == "s1"
        assert session.consolidation.stream_id == "s1"
        assert manager.active_count == 1
        await manager.remove("s1")
        assert manager.active_count == 0

    @pytest.mark.asyncio
    async def test_max_sessions_enforced(self, manager):
        await manager.create("s1", client_ws=None)
        await manager.create("s2", client_ws=None)
        with pytest.raises(RuntimeError, match="Max sessions"):
            await manager.create("s3", client_ws=None)

    @pytest.mark.asyncio
    async def test_duplicate_stream_id_rejected(self, manager):
        await manager.create("s1", client_ws=None)
        with pytest.raises(RuntimeError, match="already exists"):
            await manager.create("s1", client_ws=None)

    @pytest.mark.asyncio
    async def test_invalid_override_rejected(self, manager):
        with pytest.raises(ConfigError):
            await manager.create("s1", client_ws=None, overrides={"stability_threshold_s": -1.0})
        assert manager.active_count == 0

    @pytest.mark.asyncio
    async def test_overrides_apply_per_session(self):
        manager = SessionManager(settings=ConsolidationSettings(idle_timeout_s=30.0))
        session = await manager.create("s1", client_ws=None, overrides={"stability_threshold_s": 1.5})
        assert session.consolidation.gate.threshold_s == 1.5
        assert session.consolidation.settings.idle_timeout_s == 30.0


def receive_until_complete(ws) -> list[dict]:
    messages = []
    while True:
        data = ws.receive_json()
        messages.append(data)
        if data["type"] == "transcript_complete":
            return messages


class TestHypothesesEndpoint:
    @pytest.fixture
    def client(self):
        return TestClient(app)

    def test_health(self, client):
        resp = client.get("/health")
        assert resp.status_code == 200
        assert resp.json()["status"] == "ok"

    def test_growing_hypotheses_stream(self, client):
        with client.websocket_connect("/hypotheses") as ws:
            ws.send_text(json.dumps({"type": "start", "stream_id": "gw-1", "stability_threshold_s": 0}))
            for text, final in [("the quick brown", False), ("the quick brown fox jumps", True)]:
                ws.send_text(json.dumps({
                    "type": "hypothesis", "stream_id": "gw-1",
                    "text": text, "confidence": 0.9, "is_final": final,
                }))
            ws.send_text(json.dumps({"type": "end", "stream_id": "gw-1"}))
            messages = receive_until_complete(ws)

        records = [m["record"] for m in messages if m["type"] == "emission"]
        assert [(r["type"], r["text"]) for r in records] == [
            ("partial", "the quick brown"),
            ("confirmed", " fox jumps"),
            ("final", "the quick brown fox jumps"),
        ]
        assert messages[-1]["transcript"] == "the quick brown fox jumps"
        assert messages[-1]["fragments"] == ["the quick brown", " fox jumps"]

    def test_recoverable_errors_keep_stream_alive(self, client):
        with client.websocket_connect("/hypotheses") as ws:
            ws.send_text(json.dumps({"type": "start", "stream_id": "gw-2"}))
            ws.send_bytes(b"\xff\xfe\xfd")
            ws.send_text(json.dumps({
                "type": "hypothesis", "stream_id": "gw-2", "error": "recognizer timed out",
            }))
            ws.send_text(json.dumps({
                "type": "hypothesis", "stream_id": "gw-2", "text": "hello", "is_final": True,
            }))
            ws.send_text(json.dumps({"type": "end", "stream_id": "gw-2"}))
            messages = receive_until_complete(ws)

        errors = [m for m in messages if m["type"] == "error"]
        assert len(errors) == 2
        assert all(e["recoverable"] for e in errors)
        assert messages[-1]["transcript"] == "hello"
        assert messages[-1]["errors"] == 2

    def test_invalid_config_rejected(self, client):
        with client.websocket_connect("/hypotheses") as ws:
            ws.send_text(json.dumps({"type": "start", "stream_id": "gw-3", "stability_threshold_s": -2}))
            data = ws.receive_json()
        assert data["type"] == "error"
        assert not data["recoverable"]

    def test_start_message_required(self, client):
        with client.websocket_connect("/hypotheses") as ws:
            ws.send_text(json.dumps({"type": "end", "stream_id": "x"}))
            data = ws.receive_json()
        assert data["detail"] == "Expected start message"

    def test_input_after_idle_timeout_reported(self, client, monkeypatch):
        import gateway.main

        monkeypatch.setattr(
            gateway.main, "manager",
            SessionManager(settings=ConsolidationSettings(idle_timeout_s=0.05)),
        )
        with client.websocket_connect("/hypotheses") as ws:
            ws.send_text(json.dumps({"type": "start", "stream_id": "gw-4"}))
            final = ws.receive_json()
            time.sleep(0.1)
            ws.send_text(json.dumps({
                "type": "hypothesis", "stream_id": "gw-4", "text": "too late", "is_final": True,
            }))
            messages = receive_until_complete(ws)

        assert final["type"] == "emission"
        assert final["record"]["type"] == "final"
        assert messages[0]["type"] == "error"
        assert messages[0]["detail"] == "Stream already finalized"
        assert not messages[0]["recoverable"]
        assert messages[-1]["transcript"] == ""

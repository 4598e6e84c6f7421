"""End-to-end tests of the WebSocket server with FastAPI's TestClient."""

from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from taskrelay.application.rpc.envelope import Direction, Envelope, decode_envelope, encode_envelope
from taskrelay.application.websocket.connection_manager import SessionManager
from taskrelay.application.websocket.ws_server import create_app
from taskrelay.config.settings import StateSettings
from taskrelay.domain.orchestration.driver import ScriptedDriver
from taskrelay.domain.state.state_store import JsonFileStateStore

pytestmark = pytest.mark.integration


def _call(ws, call_id, method, payload=None):
    ws.send_text(encode_envelope(Envelope.request(call_id, method, payload)))
    return decode_envelope(ws.receive_text())


class TestWebSocketSession:
    """RPC over a real WebSocket endpoint"""

    def test_unary_calls(self, settings, registry, make_script):
        app = create_app(settings, registry)

        with TestClient(app) as client:
            with client.websocket_connect("/ws/session/sess-1") as ws:
                described = _call(ws, "c1", "session.describe")
                assert described.direction == Direction.UNARY_RESPONSE
                assert described.call_id == "c1"
                assert described.payload["session_id"] == "sess-1"

                started = _call(ws, "c2", "task.start", {
                    "prompt": "hello",
                    "metadata": make_script({"action": "finish", "summary": "done"}),
                })
                assert started.direction == Direction.UNARY_RESPONSE
                assert started.payload["prompt"] == "hello"

                failed = _call(ws, "c3", "task.approve", {"approved": True})
                assert failed.direction == Direction.ERROR
                assert failed.error.code == "conflict"

            health = client.get("/health").json()
            assert health["status"] == "healthy"
            assert health["sessions"] == 1
            assert health["active_connections"] == 0

    def test_state_subscription(self, settings, registry):
        app = create_app(settings, registry)

        with TestClient(app) as client:
            with client.websocket_connect("/ws/session/sess-2") as ws:
                ws.send_text(encode_envelope(Envelope.request("sub", "state.subscribe")))
                initial = decode_envelope(ws.receive_text())
                assert initial.direction == Direction.STREAM_ITEM
                assert initial.seq == 0

                ws.send_text(encode_envelope(Envelope.request("set", "state.set", {
                    "key": "theme", "value": "dark", "visibility": "durable_workspace",
                })))
                frames = {}
                for _ in range(2):
                    frame = decode_envelope(ws.receive_text())
                    frames[frame.call_id] = frame

                assert frames["set"].direction == Direction.UNARY_RESPONSE
                assert frames["sub"].seq == 1
                assert frames["sub"].payload["state"]["durable_workspace"] == {"theme": "dark"}

                ws.send_text(encode_envelope(Envelope.cancel("sub")))
                cancelled = decode_envelope(ws.receive_text())
                assert cancelled.call_id == "sub"
                assert cancelled.direction == Direction.ERROR
                assert cancelled.error.code == "cancelled"

    def test_malformed_frame(self, settings, registry):
        app = create_app(settings, registry)

        with TestClient(app) as client:
            with client.websocket_connect("/ws/session/sess-3") as ws:
                ws.send_text('{"call_id": "bad", "direction": "request"}')
                reply = decode_envelope(ws.receive_text())

                assert reply.call_id == "bad"
                assert reply.error.code == "invalid_request"

    def test_invalid_session_id_is_refused(self, settings, registry):
        app = create_app(settings, registry)

        with TestClient(app) as client:
            with pytest.raises(WebSocketDisconnect):
                with client.websocket_connect("/ws/session/not.valid"):
                    pass

    def test_durable_state_survives_a_restart(self, settings, registry, tmp_path):
        persisted = settings.model_copy(update={"state": StateSettings(state_dir=str(tmp_path))})

        with TestClient(create_app(persisted, registry)) as client:
            with client.websocket_connect("/ws/session/sess-4") as ws:
                _call(ws, "c1", "state.set", {"key": "layout", "value": "grid", "visibility": "durable_workspace"})

        with TestClient(create_app(persisted, registry)) as client:
            with client.websocket_connect("/ws/session/sess-4") as ws:
                got = _call(ws, "c1", "state.get", {"key": "layout", "visibility": "durable_workspace"})

        assert got.payload["value"] == "grid"
        assert (tmp_path / "sess-4" / "workspace.json").exists()


class TestSessionManager:
    """Session bookkeeping without a server"""

    @pytest.mark.asyncio
    async def test_stale_sessions_are_swept(self, settings, registry):
        manager = SessionManager(settings, registry, ScriptedDriver.from_request)
        await manager.get_or_create("idle")
        await manager.get_or_create("busy")
        manager.touch("busy")

        later = datetime.now(timezone.utc) + timedelta(seconds=settings.server.session_idle_timeout - 5)
        assert await manager.sweep_stale_sessions(now=later) == []

        manager.session_metadata["idle"]["last_activity"] -= timedelta(seconds=10)
        swept = await manager.sweep_stale_sessions(now=later)

        assert swept == ["idle"]
        assert manager.get_active_sessions() == {"busy"}
        await manager.shutdown()
        assert manager.get_active_sessions() == set()

    @pytest.mark.asyncio
    async def test_default_store_follows_settings(self, settings, registry, tmp_path):
        persisted = settings.model_copy(update={"state": StateSettings(state_dir=str(tmp_path))})
        manager = SessionManager(persisted, registry, ScriptedDriver.from_request)

        controller = await manager.get_or_create("sess")

        assert isinstance(controller.state_store, JsonFileStateStore)
        assert await manager.get_or_create("sess") is controller
        assert manager.get_session_metadata("sess")["connections"] == 0
        await manager.shutdown()

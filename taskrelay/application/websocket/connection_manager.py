from typing import Callable, Dict, List, Optional, Set
from fastapi import WebSocket
from datetime import datetime, timezone
from pathlib import Path
import asyncio
import structlog

from taskrelay.application.controller.session_controller import SessionController
from taskrelay.application.rpc.bridge import RpcBridge, RpcConnection
from taskrelay.config.settings import Settings
from taskrelay.domain.orchestration.driver import DriverFactory
from taskrelay.domain.state.state_store import InMemoryStateStore, JsonFileStateStore, StateStore
from taskrelay.domain.tool.tool_registry import ToolRegistry

logger = structlog.get_logger(__name__)

StoreFactory = Callable[[str], StateStore]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SessionManager:
    """Manages session controllers and their WebSocket connections"""

    def __init__(
        self,
        settings: Settings,
        tool_registry: ToolRegistry,
        driver_factory: DriverFactory,
        store_factory: Optional[StoreFactory] = None
    ):
        self.settings = settings
        self.tool_registry = tool_registry
        self.driver_factory = driver_factory
        self.store_factory = store_factory or self.default_store
        self.sessions: Dict[str, SessionController] = {}
        self.session_metadata: Dict[str, Dict] = {}
        self.websockets: Dict[str, Dict[str, WebSocket]] = {}
        self._lock = asyncio.Lock()

    def default_store(self, session_id: str) -> StateStore:
        """JSON files under ``state_dir/<session_id>`` when configured, memory otherwise"""

        state = self.settings.state
        if state.state_dir:
            return JsonFileStateStore(
                str(Path(state.state_dir) / session_id),
                ephemeral_ttl=state.ephemeral_ttl,
                session_id=session_id,
                global_dir=state.state_dir
            )
        return InMemoryStateStore(ephemeral_ttl=state.ephemeral_ttl, session_id=session_id)

    async def get_or_create(self, session_id: str) -> SessionController:
        """Return the session's controller, creating it on first use"""

        async with self._lock:
            controller = self.sessions.get(session_id)
            if controller is None:
                controller = SessionController(
                    session_id=session_id,
                    state_store=self.store_factory(session_id),
                    tool_registry=self.tool_registry,
                    bridge=RpcBridge(self.settings.rpc),
                    driver_factory=self.driver_factory,
                    settings=self.settings
                )
                self.sessions[session_id] = controller
                self.session_metadata[session_id] = {
                    "created_at": _utcnow(),
                    "last_activity": _utcnow()
                }
                self.websockets[session_id] = {}
                logger.info("Session created", session_id=session_id)
            return controller

    async def connect(self, websocket: WebSocket, session_id: str) -> RpcConnection:
        """Accept a WebSocket and attach it to the session's bridge"""

        await websocket.accept()
        controller = await self.get_or_create(session_id)
        connection = controller.bridge.open_connection(websocket)

        async with self._lock:
            self.websockets.setdefault(session_id, {})[connection.connection_id] = websocket
        self.touch(session_id)

        logger.info("WebSocket connected", session_id=session_id, connection_id=connection.connection_id)
        return connection

    async def receive(self, session_id: str, connection: RpcConnection, raw: str) -> None:
        """Relay one inbound text frame to the bridge"""
        self.touch(session_id)
        await connection.receive(raw)

    async def disconnect(self, session_id: str, connection_id: str) -> None:
        """Detach a WebSocket. Its outstanding streams are abandoned; the session stays."""

        controller = self.sessions.get(session_id)
        if controller is not None:
            await controller.bridge.close_connection(connection_id, notify=False)

        async with self._lock:
            self.websockets.get(session_id, {}).pop(connection_id, None)

        logger.info("WebSocket disconnected", session_id=session_id, connection_id=connection_id)

    def touch(self, session_id: str) -> None:
        if session_id in self.session_metadata:
            self.session_metadata[session_id]["last_activity"] = _utcnow()

    async def close_session(self, session_id: str) -> None:
        """Close every connection of a session and shut its controller down"""

        async with self._lock:
            controller = self.sessions.pop(session_id, None)
            self.session_metadata.pop(session_id, None)
            sockets = self.websockets.pop(session_id, {})

        if controller is None:
            return

        await controller.bridge.close()
        await controller.close()

        for ws in sockets.values():
            try:
                await ws.close()
            except Exception as e:
                logger.error("Error closing WebSocket", session_id=session_id, error=str(e))

        logger.info("Session closed", session_id=session_id)

    def get_session_metadata(self, session_id: str) -> Optional[Dict]:
        """Get metadata for a session"""
        metadata = self.session_metadata.get(session_id)
        if metadata is None:
            return None
        return {**metadata, "connections": len(self.websockets.get(session_id, {}))}

    def get_active_sessions(self) -> Set[str]:
        """Get session IDs with a live controller"""
        return set(self.sessions.keys())

    @property
    def connection_count(self) -> int:
        return sum(len(sockets) for sockets in self.websockets.values())

    async def sweep_stale_sessions(self, now: Optional[datetime] = None) -> List[str]:
        """Close sessions idle for longer than ``session_idle_timeout``"""

        current_time = now or _utcnow()
        idle_timeout = self.settings.server.session_idle_timeout
        stale_sessions = [
            session_id
            for session_id, metadata in list(self.session_metadata.items())
            if (current_time - metadata["last_activity"]).total_seconds() > idle_timeout
        ]

        for session_id in stale_sessions:
            logger.warning("Closing stale session", session_id=session_id)
            await self.close_session(session_id)
        return stale_sessions

    async def health_check(self) -> None:
        """Periodic sweep of stale sessions"""
        while True:
            try:
                await self.sweep_stale_sessions()
            except Exception as e:
                logger.error("Health check error", error=str(e))

            await asyncio.sleep(self.settings.server.sweep_interval)

    async def shutdown(self) -> None:
        for session_id in list(self.sessions):
            await self.close_session(session_id)

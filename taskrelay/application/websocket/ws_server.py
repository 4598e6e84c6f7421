from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
from typing import Optional
from datetime import datetime, timezone
import asyncio
import re
import structlog

from taskrelay.config.settings import Settings, get_settings
from taskrelay.domain.orchestration.driver import DriverFactory, ScriptedDriver
from taskrelay.domain.tool.tool_registry import ToolRegistry
from taskrelay.infrastructure.observability.logging import setup_logging
from .connection_manager import SessionManager, StoreFactory

logger = structlog.get_logger(__name__)

SESSION_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{1,64}$")


def create_app(
    settings: Optional[Settings] = None,
    registry: Optional[ToolRegistry] = None,
    driver_factory: Optional[DriverFactory] = None,
    store_factory: Optional[StoreFactory] = None
) -> FastAPI:
    """Build the WebSocket server around a session manager"""

    settings = settings or get_settings()
    session_manager = SessionManager(
        settings,
        registry or ToolRegistry(),
        driver_factory or ScriptedDriver.from_request,
        store_factory
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        sweeper = asyncio.create_task(session_manager.health_check())
        logger.info("WebSocket server started")
        try:
            yield
        finally:
            sweeper.cancel()
            await asyncio.gather(sweeper, return_exceptions=True)
            await session_manager.shutdown()
            logger.info("WebSocket server shutdown")

    app = FastAPI(title="taskrelay", lifespan=lifespan)
    app.state.session_manager = session_manager

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.websocket("/ws/session/{session_id}")
    async def session_websocket(websocket: WebSocket, session_id: str):
        """RPC channel of one session: every text frame is an envelope"""

        if not SESSION_ID_PATTERN.match(session_id):
            await websocket.close(code=1008, reason="Invalid session ID format")
            return

        connection = await session_manager.connect(websocket, session_id)

        try:
            while True:
                raw = await websocket.receive_text()
                await session_manager.receive(session_id, connection, raw)

        except WebSocketDisconnect:
            logger.info("Client disconnected", session_id=session_id)
        except Exception as e:
            logger.error("WebSocket error", error=str(e), session_id=session_id)
        finally:
            await session_manager.disconnect(session_id, connection.connection_id)

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "sessions": len(session_manager.sessions),
            "active_connections": session_manager.connection_count,
            "timestamp": datetime.now(timezone.utc).isoformat()
        }

    return app


def main() -> None:
    import uvicorn

    settings = get_settings()
    setup_logging(settings.logging)
    uvicorn.run(create_app(settings), host=settings.server.host, port=settings.server.port)


if __name__ == "__main__":
    main()

from typing import Any, Dict, List, Optional, Protocol, Callable, Awaitable
from dataclasses import dataclass
from datetime import datetime, timezone
import asyncio
import json
import uuid

from pydantic import BaseModel
import structlog

from taskrelay.config.settings import RpcSettings
from taskrelay.domain.errors import ConflictError, InvalidRequestError, RpcTimeoutError, TaskRelayError
from .envelope import Direction, Envelope, RpcErrorBody, decode_envelope, encode_envelope

logger = structlog.get_logger(__name__)


class Transport(Protocol):
    """Anything that can carry text frames, e.g. a FastAPI WebSocket"""

    async def send_text(self, data: str) -> None:
        ...


class RequestHandler(Protocol):
    """Routes decoded requests. Returns a payload, or an async iterator for streams."""

    async def handle_request(self, envelope: Envelope) -> Any:
        ...

    async def on_stream_abandoned(self, envelope: Envelope) -> None:
        ...


class LoopbackTransport:
    """In-process transport delivering frames straight to a receiver"""

    def __init__(self, deliver: Optional[Callable[[str], Awaitable[None]]] = None):
        self.sent: List[str] = []
        self._deliver = deliver

    def connect(self, deliver: Callable[[str], Awaitable[None]]) -> None:
        self._deliver = deliver

    async def send_text(self, data: str) -> None:
        self.sent.append(data)
        if self._deliver is not None:
            await self._deliver(data)


def to_payload(value: Any) -> Any:
    """Convert handler output into JSON-compatible data"""
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, (list, tuple)):
        return [to_payload(item) for item in value]
    if isinstance(value, dict):
        return {key: to_payload(item) for key, item in value.items()}
    return value


@dataclass
class _OutstandingCall:
    envelope: Envelope
    worker: Optional[asyncio.Task] = None
    streaming: bool = False
    abandoned: bool = False


class RpcConnection:
    """One transport attached to the bridge.

    Pairs every request with exactly one terminal frame and writes all
    frames under one lock, so delivery on this connection is ordered.
    """

    def __init__(self, bridge: "RpcBridge", transport: Transport, connection_id: str):
        self.bridge = bridge
        self.transport = transport
        self.connection_id = connection_id
        self.outstanding: Dict[str, _OutstandingCall] = {}
        self.connected_at = datetime.now(timezone.utc)
        self.last_activity = self.connected_at
        self.closed = False
        self._send_lock = asyncio.Lock()
        self._detached: set = set()

    async def receive(self, raw: str) -> None:
        """Handle one inbound text frame"""

        self.last_activity = datetime.now(timezone.utc)
        try:
            envelope = decode_envelope(raw)
        except InvalidRequestError as e:
            await self._reject_malformed(raw, e)
            return

        if envelope.direction == Direction.REQUEST:
            self._accept(envelope)
        elif envelope.direction == Direction.CANCEL:
            await self.abandon(envelope.call_id)
        else:
            logger.warning(
                "Unexpected envelope direction from consumer",
                connection_id=self.connection_id,
                call_id=envelope.call_id,
                direction=envelope.direction.value
            )

    def _accept(self, envelope: Envelope) -> None:
        if self.closed:
            return
        if envelope.call_id in self.outstanding:
            logger.warning("Duplicate call id while outstanding, dropped",
                           connection_id=self.connection_id, call_id=envelope.call_id)
            return

        call = _OutstandingCall(envelope=envelope)
        self.outstanding[envelope.call_id] = call
        call.worker = asyncio.create_task(self._serve(call), name=f"rpc-{envelope.call_id}")

    async def _serve(self, call: _OutstandingCall) -> None:
        envelope = call.envelope
        call_id = envelope.call_id
        deadline = self.bridge.settings.unary_deadline

        try:
            handling = asyncio.ensure_future(self.bridge.handler.handle_request(envelope))
            # the deadline or a consumer cancel ends the call, never the handler
            try:
                done, _ = await asyncio.wait({handling}, timeout=deadline)
            except asyncio.CancelledError:
                self._detach(envelope, handling)
                raise
            if not done:
                self._detach(envelope, handling)
                raise asyncio.TimeoutError()
            result = handling.result()
            if hasattr(result, "__aiter__"):
                call.streaming = True
                await self._pump(call, result)
            else:
                await self._finish(call_id, Envelope.unary_response(call_id, to_payload(result)))

        except TaskRelayError as e:
            await self._finish(call_id, Envelope.failure(call_id, RpcErrorBody.from_exception(e)))
        except asyncio.TimeoutError:
            await self._finish(call_id, Envelope.failure(call_id, RpcErrorBody.from_exception(
                RpcTimeoutError(f"'{envelope.method}' did not complete within {deadline}s")
            )))
        except asyncio.CancelledError:
            await self._finish(call_id, Envelope.failure(call_id, RpcErrorBody(
                code="cancelled", message="Call abandoned by consumer"
            )))
            raise
        except Exception as e:
            logger.exception("RPC handler fault", method=envelope.method, call_id=call_id)
            await self._finish(call_id, Envelope.failure(call_id, RpcErrorBody.from_exception(e)))
        finally:
            if call_id in self.outstanding and self.outstanding[call_id] is call:
                await self._finish(call_id, Envelope.failure(call_id, RpcErrorBody(
                    code="internal", message="Call ended without a response"
                )))

    def _detach(self, envelope: Envelope, handling: asyncio.Future) -> None:
        """Let a handler outlive its call. Whatever it returns later is dropped."""

        late = asyncio.ensure_future(self._drop_late(envelope, handling))
        self._detached.add(late)
        late.add_done_callback(self._detached.discard)

    async def _drop_late(self, envelope: Envelope, handling: asyncio.Future) -> None:
        try:
            result = await handling
        except Exception as e:
            logger.warning("Handler failed after its call ended", connection_id=self.connection_id,
                           call_id=envelope.call_id, method=envelope.method, error=str(e))
            return

        if hasattr(result, "__aiter__"):
            try:
                await self.bridge.handler.on_stream_abandoned(envelope)
            except Exception as e:
                logger.error("Error handling abandoned stream", call_id=envelope.call_id, error=str(e))
            aclose = getattr(result, "aclose", None)
            if aclose is not None:
                await aclose()

        logger.debug("Late handler result discarded", connection_id=self.connection_id,
                     call_id=envelope.call_id, method=envelope.method)

    async def _pump(self, call: _OutstandingCall, stream: Any) -> None:
        call_id = call.envelope.call_id
        seq = 0
        try:
            async for item in stream:
                await self._send(Envelope.stream_item(call_id, seq, to_payload(item)))
                seq += 1
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()
        await self._finish(call_id, Envelope.stream_end(call_id, seq))

    async def abandon(self, call_id: str) -> None:
        """Consumer gave up on a call: stop it and notify the handler"""

        call = self.outstanding.get(call_id)
        if call is None or call.abandoned:
            return
        call.abandoned = True
        logger.info("Call abandoned", connection_id=self.connection_id, call_id=call_id,
                    method=call.envelope.method)

        if call.worker is not None and not call.worker.done():
            call.worker.cancel()
            await asyncio.gather(call.worker, return_exceptions=True)

        if call.streaming:
            try:
                await self.bridge.handler.on_stream_abandoned(call.envelope)
            except Exception as e:
                logger.error("Error handling abandoned stream", call_id=call_id, error=str(e))

    async def _finish(self, call_id: str, envelope: Envelope) -> None:
        if self.outstanding.pop(call_id, None) is None:
            return
        await self._send(envelope)

    async def _send(self, envelope: Envelope) -> bool:
        async with self._send_lock:
            if self.closed:
                return False
            try:
                await self.transport.send_text(encode_envelope(envelope))
                self.last_activity = datetime.now(timezone.utc)
                return True
            except Exception as e:
                logger.error("Failed to send frame", connection_id=self.connection_id,
                             call_id=envelope.call_id, error=str(e))
                self.closed = True
                return False

    async def _reject_malformed(self, raw: str, error: InvalidRequestError) -> None:
        call_id = None
        try:
            candidate = json.loads(raw).get("call_id")
            if isinstance(candidate, str) and candidate and candidate not in self.outstanding:
                call_id = candidate
        except (ValueError, AttributeError):
            pass

        logger.warning("Malformed frame", connection_id=self.connection_id, call_id=call_id, error=error.message)
        if call_id is not None:
            await self._send(Envelope.failure(call_id, RpcErrorBody.from_exception(error)))

    async def close(self, notify: bool = True) -> None:
        """Abandon every outstanding call and stop sending.

        With `notify` each abandoned call still gets its terminal frame; pass
        False when the transport is already gone.
        """

        if not notify:
            self.closed = True
        for call_id in list(self.outstanding):
            await self.abandon(call_id)
        self.closed = True


class RpcBridge:
    """Server side of the RPC channel for one session"""

    def __init__(self, settings: Optional[RpcSettings] = None):
        self.settings = settings or RpcSettings()
        self.connections: Dict[str, RpcConnection] = {}
        self._handler: Optional[RequestHandler] = None

    def bind(self, handler: RequestHandler) -> None:
        if self._handler is not None and self._handler is not handler:
            raise ConflictError("Bridge is already bound to a request handler")
        self._handler = handler

    @property
    def handler(self) -> RequestHandler:
        if self._handler is None:
            raise ConflictError("Bridge has no request handler")
        return self._handler

    def open_connection(self, transport: Transport, connection_id: Optional[str] = None) -> RpcConnection:
        connection_id = connection_id or uuid.uuid4().hex
        if connection_id in self.connections:
            raise ConflictError(f"Connection already open: {connection_id}")
        connection = RpcConnection(self, transport, connection_id)
        self.connections[connection_id] = connection
        logger.info("RPC connection opened", connection_id=connection_id)
        return connection

    async def close_connection(self, connection_id: str, notify: bool = True) -> None:
        connection = self.connections.pop(connection_id, None)
        if connection is None:
            return
        await connection.close(notify=notify)
        logger.info("RPC connection closed", connection_id=connection_id)

    async def close(self) -> None:
        for connection_id in list(self.connections):
            await self.close_connection(connection_id)

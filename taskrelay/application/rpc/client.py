from typing import Any, AsyncIterator, Dict, Optional, Tuple
import asyncio
import itertools
import uuid

import structlog

from taskrelay.domain.errors import RpcTimeoutError, TaskRelayError
from .bridge import LoopbackTransport, RpcBridge, RpcConnection, Transport
from .envelope import Direction, Envelope, RpcErrorBody, decode_envelope, encode_envelope

logger = structlog.get_logger(__name__)


class RpcRemoteError(TaskRelayError):
    """Error frame received for a call"""

    def __init__(self, body: RpcErrorBody):
        super().__init__(body.message, body.data)
        self.code = body.code


class RpcClient:
    """Consumer side of the RPC channel.

    Inbound frames are pushed through ``feed``. Call ids are never reused
    within a client, so a response arriving after its caller timed out is
    discarded.
    """

    def __init__(self, transport: Transport, default_timeout: float = 30.0):
        self.transport = transport
        self.default_timeout = default_timeout
        self.closed = False
        self._prefix = uuid.uuid4().hex[:8]
        self._counter = itertools.count(1)
        self._pending: Dict[str, asyncio.Future] = {}
        self._streams: Dict[str, asyncio.Queue] = {}

    def _next_call_id(self) -> str:
        return f"{self._prefix}-{next(self._counter)}"

    async def call(self, method: str, payload: Optional[Dict[str, Any]] = None,
                   timeout: Optional[float] = None) -> Any:
        """Unary call. Raises RpcTimeoutError or RpcRemoteError."""

        if self.closed:
            raise ConnectionError("RPC client is closed")

        timeout = timeout if timeout is not None else self.default_timeout
        call_id = self._next_call_id()
        future = asyncio.get_running_loop().create_future()
        self._pending[call_id] = future

        try:
            await self.transport.send_text(encode_envelope(Envelope.request(call_id, method, payload)))
            return await asyncio.wait_for(future, timeout=timeout)
        except asyncio.TimeoutError:
            raise RpcTimeoutError(
                f"No response to '{method}' within {timeout}s",
                {"call_id": call_id, "method": method}
            ) from None
        finally:
            self._pending.pop(call_id, None)

    async def stream(self, method: str, payload: Optional[Dict[str, Any]] = None) -> AsyncIterator[Any]:
        """Streaming call yielding item payloads in order.

        Leaving the iteration early sends a cancel frame for the call.
        """

        if self.closed:
            raise ConnectionError("RPC client is closed")

        call_id = self._next_call_id()
        queue: asyncio.Queue = asyncio.Queue()
        self._streams[call_id] = queue
        finished = False

        try:
            await self.transport.send_text(encode_envelope(Envelope.request(call_id, method, payload)))
            while True:
                envelope = await queue.get()
                if envelope.direction == Direction.STREAM_ITEM:
                    yield envelope.payload
                elif envelope.direction == Direction.STREAM_END:
                    finished = True
                    return
                elif envelope.direction == Direction.ERROR:
                    finished = True
                    raise RpcRemoteError(envelope.error)
                else:
                    finished = True
                    raise RpcRemoteError(RpcErrorBody(
                        code="invalid_request",
                        message=f"Unexpected '{envelope.direction.value}' frame on a stream"
                    ))
        finally:
            self._streams.pop(call_id, None)
            if not finished and not self.closed:
                await self.transport.send_text(encode_envelope(Envelope.cancel(call_id)))

    async def feed(self, raw: str) -> None:
        """Deliver one inbound frame"""

        try:
            envelope = decode_envelope(raw)
        except TaskRelayError as e:
            logger.warning("Discarding malformed frame", error=e.message)
            return

        call_id = envelope.call_id
        future = self._pending.get(call_id)
        if future is not None:
            if future.done():
                return
            if envelope.direction == Direction.UNARY_RESPONSE:
                future.set_result(envelope.payload)
            elif envelope.direction == Direction.ERROR:
                future.set_exception(RpcRemoteError(envelope.error))
            else:
                logger.warning("Stream frame for unary call", call_id=call_id,
                               direction=envelope.direction.value)
            return

        queue = self._streams.get(call_id)
        if queue is not None:
            queue.put_nowait(envelope)
            return

        logger.debug("Discarding frame for unknown call", call_id=call_id, direction=envelope.direction.value)

    async def close(self) -> None:
        self.closed = True
        for future in self._pending.values():
            if not future.done():
                future.set_exception(ConnectionError("RPC client closed"))
        for call_id, queue in self._streams.items():
            queue.put_nowait(Envelope.failure(call_id, RpcErrorBody(code="closed", message="RPC client closed")))


def connect_loopback(bridge: RpcBridge, default_timeout: float = 30.0) -> Tuple[RpcClient, RpcConnection]:
    """Wire an in-process client to a bridge"""

    client_side = LoopbackTransport()
    server_side = LoopbackTransport()
    client = RpcClient(client_side, default_timeout=default_timeout)
    connection = bridge.open_connection(server_side)
    client_side.connect(connection.receive)
    server_side.connect(client.feed)
    return client, connection

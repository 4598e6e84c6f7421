"""Typed unit of RPC transport.

Every request gets exactly one terminal frame: ``unary_response``, or
``stream_end``/``error`` after zero or more ``stream_item`` frames. The
``cancel`` direction travels from consumer to producer when a stream is
abandoned.
"""

from typing import Any, Dict, Optional
from enum import Enum

from pydantic import BaseModel, Field, ValidationError

from taskrelay.domain.errors import InvalidRequestError, TaskRelayError

SCHEMA_VERSION = 1


class Direction(str, Enum):
    """Envelope directions"""
    REQUEST = "request"
    UNARY_RESPONSE = "unary_response"
    STREAM_ITEM = "stream_item"
    STREAM_END = "stream_end"
    ERROR = "error"
    CANCEL = "cancel"

    @property
    def is_terminal(self) -> bool:
        return self in (Direction.UNARY_RESPONSE, Direction.STREAM_END, Direction.ERROR)


class RpcErrorBody(BaseModel):
    """Error carried by an ``error`` envelope"""
    code: str
    message: str
    data: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_exception(cls, exc: BaseException) -> "RpcErrorBody":
        if isinstance(exc, TaskRelayError):
            return cls(code=exc.code, message=exc.message, data=exc.data)
        return cls(code="internal", message=f"{type(exc).__name__}: {exc}")


class Envelope(BaseModel):
    """RPC frame"""
    version: int = SCHEMA_VERSION
    call_id: str = Field(min_length=1)
    direction: Direction
    method: Optional[str] = None
    payload: Any = None
    error: Optional[RpcErrorBody] = None
    seq: Optional[int] = Field(None, ge=0, description="Position of a stream item within its call")

    @classmethod
    def request(cls, call_id: str, method: str, payload: Any = None) -> "Envelope":
        return cls(call_id=call_id, direction=Direction.REQUEST, method=method, payload=payload or {})

    @classmethod
    def unary_response(cls, call_id: str, payload: Any) -> "Envelope":
        return cls(call_id=call_id, direction=Direction.UNARY_RESPONSE, payload=payload)

    @classmethod
    def stream_item(cls, call_id: str, seq: int, payload: Any) -> "Envelope":
        return cls(call_id=call_id, direction=Direction.STREAM_ITEM, seq=seq, payload=payload)

    @classmethod
    def stream_end(cls, call_id: str, count: int) -> "Envelope":
        return cls(call_id=call_id, direction=Direction.STREAM_END, payload={"count": count})

    @classmethod
    def failure(cls, call_id: str, error: RpcErrorBody) -> "Envelope":
        return cls(call_id=call_id, direction=Direction.ERROR, error=error)

    @classmethod
    def cancel(cls, call_id: str) -> "Envelope":
        return cls(call_id=call_id, direction=Direction.CANCEL)


def encode_envelope(envelope: Envelope) -> str:
    """Serialize an envelope to a JSON text frame"""
    return envelope.model_dump_json()


def decode_envelope(raw: str) -> Envelope:
    """Parse a JSON text frame, raising InvalidRequestError on malformed input"""
    try:
        envelope = Envelope.model_validate_json(raw)
    except ValidationError as e:
        raise InvalidRequestError(f"Malformed envelope: {e.errors(include_url=False)}") from e

    if envelope.version != SCHEMA_VERSION:
        raise InvalidRequestError(
            f"Unsupported envelope version {envelope.version}",
            {"supported": SCHEMA_VERSION, "call_id": envelope.call_id}
        )
    if envelope.direction == Direction.REQUEST and not envelope.method:
        raise InvalidRequestError("Request envelope without method", {"call_id": envelope.call_id})
    return envelope

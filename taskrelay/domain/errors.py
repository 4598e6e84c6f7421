"""Error taxonomy shared by the task engine, tool executor and RPC layer.

Every error carries a stable ``code`` that the RPC bridge puts on the wire.
``ConflictError`` and ``UnknownToolError`` are returned to the caller as-is
and never retried. ``ToolInvocationError`` is expected-failure data: it is
converted into a failed tool invocation step by the executor and never
crosses the executor boundary as an exception.
"""

from typing import Any, Dict, Optional


class TaskRelayError(Exception):
    """Base class for all taskrelay errors"""

    code = "internal"

    def __init__(self, message: str, data: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.data = data or {}

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"code": self.code, "message": self.message}
        if self.data:
            body["data"] = self.data
        return body


class ConflictError(TaskRelayError):
    """A mutating operation was attempted while the current state disallows it"""

    code = "conflict"


class UnknownToolError(TaskRelayError):
    """Dispatch to a tool id that is not registered"""

    code = "unknown_tool"

    def __init__(self, tool_id: str):
        super().__init__(f"Unknown tool: {tool_id}", {"tool_id": tool_id})
        self.tool_id = tool_id


class RpcTimeoutError(TaskRelayError, TimeoutError):
    """No terminal RPC response arrived within the deadline"""

    code = "timeout"


class ToolInvocationError(TaskRelayError):
    """Handler-reported tool failure.

    Handlers may raise this instead of returning an error outcome; the
    executor turns it into ``{"error": {"kind": ..., "message": ...}}``.
    """

    code = "tool_failed"

    def __init__(self, message: str, kind: str = "tool_failed", data: Optional[Dict[str, Any]] = None):
        super().__init__(message, data)
        self.kind = kind


class ToolAborted(TaskRelayError):
    """Raised by a cancellable handler to acknowledge an abort request"""

    code = "cancelled"

    def __init__(self, message: str = "Tool invocation aborted"):
        super().__init__(message)


class FatalTaskError(TaskRelayError):
    """Driving-logic fault unrelated to a specific tool. Terminal for the task."""

    code = "fatal"

    def __init__(self, message: str, tag: str = "fatal", data: Optional[Dict[str, Any]] = None):
        super().__init__(message, data)
        self.tag = tag


class UnknownMethodError(TaskRelayError):
    """RPC request for a method with no registered handler"""

    code = "unknown_method"


class InvalidRequestError(TaskRelayError):
    """RPC frame or payload failed to decode or validate"""

    code = "invalid_request"

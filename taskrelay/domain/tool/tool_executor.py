from typing import Dict, Any, Optional
from dataclasses import dataclass
import asyncio
import time

from pydantic import BaseModel, model_validator
import structlog

from taskrelay.domain.errors import ToolAborted, ToolInvocationError
from taskrelay.domain.models.task_state import ToolErrorDescriptor
from taskrelay.domain.state.state_store import ScopedStateAccessor
from taskrelay.domain.tool.tool_registry import ToolRegistry
from taskrelay.domain.tool.tool_validator import ToolParameterValidator
from taskrelay.infrastructure.observability.logging import task_logger

logger = structlog.get_logger(__name__)


class ToolOutcome(BaseModel):
    """Uniform result envelope: exactly one of ``ok`` or ``error`` is set"""
    ok: Optional[Dict[str, Any]] = None
    error: Optional[ToolErrorDescriptor] = None

    @model_validator(mode="after")
    def _exactly_one(self) -> "ToolOutcome":
        if (self.ok is None) == (self.error is None):
            raise ValueError("ToolOutcome needs exactly one of 'ok' or 'error'")
        return self

    @property
    def succeeded(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, payload: Optional[Dict[str, Any]] = None) -> "ToolOutcome":
        return cls(ok=payload if payload is not None else {})

    @classmethod
    def failure(cls, kind: str, message: str) -> "ToolOutcome":
        return cls(error=ToolErrorDescriptor(kind=kind, message=message))

    @classmethod
    def normalize(cls, raw: Any) -> "ToolOutcome":
        """Coerce whatever a handler returned into an outcome"""
        if isinstance(raw, ToolOutcome):
            return raw
        if raw is None:
            return cls.success()
        if not isinstance(raw, dict):
            raise TypeError(f"Tool handlers must return a dict or ToolOutcome, got {type(raw).__name__}")
        if set(raw) == {"ok"}:
            if raw["ok"] is not None and not isinstance(raw["ok"], dict):
                raise TypeError("'ok' payload must be an object")
            return cls.success(raw["ok"])
        if set(raw) == {"error"}:
            error = raw["error"] or {}
            if isinstance(error, str):
                return cls.failure("tool_failed", error)
            return cls.failure(str(error.get("kind", "tool_failed")), str(error.get("message", "")))
        return cls.success(raw)


class CancellationSignal:
    """Abort request shared between the engine and a running handler"""

    def __init__(self):
        self._event = asyncio.Event()

    def set(self) -> None:
        self._event.set()

    def is_set(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_set(self) -> None:
        if self._event.is_set():
            raise ToolAborted()


@dataclass
class ToolContext:
    """Bounded execution context handed to a handler"""
    tool_id: str
    invocation_id: str
    task_id: Optional[str] = None
    cancellation: Optional[CancellationSignal] = None
    state: Optional[ScopedStateAccessor] = None

    def __post_init__(self):
        if self.cancellation is None:
            self.cancellation = CancellationSignal()


class ToolExecutor:
    """Resolves, validates and runs tool handlers.

    Produces exactly one ``ToolOutcome`` per invocation. Handler faults are
    converted to error outcomes and never propagate past ``invoke``;
    ``UnknownToolError`` is raised to the caller.
    """

    def __init__(self, registry: ToolRegistry, default_timeout: float = 120.0):
        self.registry = registry
        self.default_timeout = default_timeout
        self.validator = ToolParameterValidator()

    def is_cancellable(self, tool_id: str) -> bool:
        return self.registry.resolve(tool_id).spec.cancellable

    def check_arguments(self, tool_id: str, arguments: Dict[str, Any]) -> Optional[ToolOutcome]:
        """Validate arguments up front. Returns a failure outcome or None."""

        registered = self.registry.resolve(tool_id)
        validation = self.validator.validate_tool_call(registered.spec, arguments)
        if not validation.is_valid:
            return ToolOutcome.failure("invalid_arguments", "; ".join(validation.errors))
        return None

    async def invoke(self, tool_id: str, arguments: Dict[str, Any], context: ToolContext) -> ToolOutcome:
        registered = self.registry.resolve(tool_id)
        spec = registered.spec

        rejected = self.check_arguments(tool_id, arguments)
        if rejected is not None:
            self._log(context, rejected, None)
            return rejected

        timeout = spec.timeout or self.default_timeout
        started = time.perf_counter()

        try:
            raw = await asyncio.wait_for(registered.handler(arguments, context), timeout=timeout)
        except asyncio.TimeoutError:
            outcome = ToolOutcome.failure("timeout", f"Tool '{tool_id}' exceeded {timeout}s")
        except ToolAborted as e:
            outcome = ToolOutcome.failure("cancelled", e.message)
        except ToolInvocationError as e:
            outcome = ToolOutcome.failure(e.kind, e.message)
        except Exception as e:
            logger.exception("Tool handler fault", tool_id=tool_id, invocation_id=context.invocation_id)
            outcome = ToolOutcome.failure("handler_fault", f"{type(e).__name__}: {e}")
        else:
            outcome = self._normalize_result(spec, raw)

        self._log(context, outcome, (time.perf_counter() - started) * 1000)
        return outcome

    def _normalize_result(self, spec, raw: Any) -> ToolOutcome:
        try:
            outcome = ToolOutcome.normalize(raw)
        except (TypeError, ValueError) as e:
            return ToolOutcome.failure("invalid_result", str(e))

        if outcome.succeeded:
            validation = self.validator.validate_tool_result(spec, outcome.ok)
            if not validation.is_valid:
                return ToolOutcome.failure("invalid_result", "; ".join(validation.errors))
        return outcome

    def _log(self, context: ToolContext, outcome: ToolOutcome, duration_ms: Optional[float]) -> None:
        task_logger.log_tool_execution(
            tool_id=context.tool_id,
            task_id=context.task_id,
            invocation_id=context.invocation_id,
            duration_ms=duration_ms,
            success=outcome.succeeded,
            error_kind=outcome.error.kind if outcome.error else None,
            error=outcome.error.message if outcome.error else None
        )

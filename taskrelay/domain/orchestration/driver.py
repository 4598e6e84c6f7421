from abc import ABC, abstractmethod
from typing import Dict, Any, Optional, List, AsyncIterator, Callable, Union
from dataclasses import dataclass, field

from taskrelay.domain.errors import FatalTaskError
from taskrelay.domain.models.task_state import Task, TaskRequest, ToolInvocation


@dataclass(frozen=True)
class TextChunk:
    """Partial streamed output"""
    delta: str


@dataclass(frozen=True)
class Reply:
    """A complete message; the driver is asked for its next turn afterwards"""
    text: str


@dataclass(frozen=True)
class CallTool:
    """Request a tool invocation"""
    tool_id: str
    arguments: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Finish:
    """The task is done"""
    summary: str = ""
    data: Dict[str, Any] = field(default_factory=dict)


DriverAction = Union[Reply, CallTool, Finish]
DriverEvent = Union[TextChunk, Reply, CallTool, Finish]


class TaskDriver(ABC):
    """Driving logic of a task.

    ``respond`` is called once per turn. It may yield any number of
    ``TextChunk`` events followed by at most one action. ``feedback`` is the
    tool invocation produced by the previous ``CallTool`` (succeeded, failed
    or rejected) and ``None`` otherwise. Raising anything other than
    cancellation fails the task.
    """

    @abstractmethod
    def respond(self, task: Task, feedback: Optional[ToolInvocation]) -> AsyncIterator[DriverEvent]:
        pass


DriverFactory = Callable[[TaskRequest], TaskDriver]


@dataclass(frozen=True)
class _Fail:
    message: str


def _parse_action(raw: Dict[str, Any]) -> Union[DriverEvent, _Fail]:
    kind = raw.get("action")
    if kind == "reply":
        return Reply(text=str(raw.get("text", "")))
    if kind == "chunk":
        return TextChunk(delta=str(raw.get("text", "")))
    if kind == "call_tool":
        return CallTool(tool_id=str(raw["tool_id"]), arguments=dict(raw.get("arguments") or {}))
    if kind == "finish":
        return Finish(summary=str(raw.get("summary", "")), data=dict(raw.get("data") or {}))
    if kind == "fail":
        return _Fail(message=str(raw.get("message", "Scripted failure")))
    raise ValueError(f"Unknown scripted action: {kind!r}")


class ScriptedDriver(TaskDriver):
    """Deterministic driver replaying a fixed list of actions.

    Each entry of ``script`` is one turn. ``TextChunk`` entries are streamed
    within the turn of the action that follows them. With
    ``stop_on_tool_failure`` a failed or rejected tool call is fatal.
    When the script runs out the task finishes.
    """

    def __init__(self, script: List[Any], stop_on_tool_failure: bool = False):
        self.script = list(script)
        self.stop_on_tool_failure = stop_on_tool_failure
        self.feedback_log: List[Optional[ToolInvocation]] = []
        self._position = 0

    @classmethod
    def from_request(cls, request: TaskRequest) -> "ScriptedDriver":
        """Build from ``request.metadata['script']`` (a list of action dicts)"""
        raw_script = request.metadata.get("script") or []
        script = [_parse_action(item) for item in raw_script]
        return cls(script, stop_on_tool_failure=bool(request.metadata.get("stop_on_tool_failure")))

    async def respond(self, task: Task, feedback: Optional[ToolInvocation]) -> AsyncIterator[DriverEvent]:
        self.feedback_log.append(feedback)

        if feedback is not None and self.stop_on_tool_failure and not feedback.ok:
            raise FatalTaskError(f"Tool '{feedback.tool_id}' did not succeed: {feedback.status.value}")

        while self._position < len(self.script):
            item = self.script[self._position]
            self._position += 1
            if isinstance(item, _Fail):
                raise FatalTaskError(item.message)
            yield item
            if not isinstance(item, TextChunk):
                return

        yield Finish(summary="Script complete")

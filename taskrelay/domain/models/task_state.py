from typing import Dict, Any, List, Optional, FrozenSet
from pydantic import BaseModel, ConfigDict, Field
from datetime import datetime, timezone
from enum import Enum
import uuid

from taskrelay.domain.errors import ConflictError


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


class TaskStatus(str, Enum):
    """Task lifecycle status"""
    IDLE = "idle"
    RUNNING = "running"
    AWAITING_TOOL_APPROVAL = "awaiting_tool_approval"
    AWAITING_TOOL_EXECUTION = "awaiting_tool_execution"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES: FrozenSet[TaskStatus] = frozenset(
    {TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED}
)

ALLOWED_TRANSITIONS: Dict[TaskStatus, FrozenSet[TaskStatus]] = {
    TaskStatus.IDLE: frozenset({TaskStatus.RUNNING}),
    TaskStatus.RUNNING: frozenset({
        TaskStatus.AWAITING_TOOL_APPROVAL,
        TaskStatus.AWAITING_TOOL_EXECUTION,
        TaskStatus.COMPLETED,
        TaskStatus.FAILED,
        TaskStatus.CANCELLED,
    }),
    TaskStatus.AWAITING_TOOL_APPROVAL: frozenset({
        TaskStatus.AWAITING_TOOL_EXECUTION,
        TaskStatus.RUNNING,
        TaskStatus.CANCELLED,
        TaskStatus.FAILED,
    }),
    TaskStatus.AWAITING_TOOL_EXECUTION: frozenset({
        TaskStatus.RUNNING,
        TaskStatus.CANCELLED,
        TaskStatus.FAILED,
    }),
    TaskStatus.COMPLETED: frozenset(),
    TaskStatus.FAILED: frozenset(),
    TaskStatus.CANCELLED: frozenset(),
}


class StepKind(str, Enum):
    """Kinds of history entries"""
    START = "start"
    MESSAGE = "message"
    TOOL_INVOCATION = "tool_invocation"
    COMPLETION = "completion"
    ERROR = "error"


class InvocationStatus(str, Enum):
    """Outcome of a tool invocation"""
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


class ToolErrorDescriptor(BaseModel):
    """Failure descriptor carried as data"""
    model_config = ConfigDict(frozen=True)

    kind: str
    message: str


class ToolInvocation(BaseModel):
    """A tool call and its outcome. The handler itself is never stored."""
    model_config = ConfigDict(frozen=True)

    invocation_id: str
    tool_id: str
    arguments: Dict[str, Any] = Field(default_factory=dict)
    status: InvocationStatus
    result: Optional[Dict[str, Any]] = None
    error: Optional[ToolErrorDescriptor] = None

    @property
    def ok(self) -> bool:
        return self.status == InvocationStatus.SUCCEEDED


class Step(BaseModel):
    """Immutable, ordered history entry within a task"""
    model_config = ConfigDict(frozen=True)

    seq: int = Field(ge=0, description="Gap-free position assigned at append time")
    kind: StepKind
    content: Optional[str] = None
    invocation: Optional[ToolInvocation] = None
    tag: Optional[str] = Field(None, description="Terminal reason for error steps")
    data: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=_utcnow)


class PendingToolCall(BaseModel):
    """Tool call waiting for approval or for its outcome"""
    invocation_id: str = Field(default_factory=lambda: new_id("inv"))
    tool_id: str
    arguments: Dict[str, Any] = Field(default_factory=dict)
    requires_approval: bool = True
    requested_at: datetime = Field(default_factory=_utcnow)
    deadline: Optional[datetime] = None


class TaskRequest(BaseModel):
    """Originating request metadata"""
    prompt: str = ""
    metadata: Dict[str, Any] = Field(default_factory=dict)
    requested_by: Optional[str] = None


class Task(BaseModel):
    """One end-to-end unit of driven work"""
    task_id: str = Field(default_factory=lambda: new_id("task"))
    session_id: Optional[str] = None
    request: TaskRequest = Field(default_factory=TaskRequest)
    status: TaskStatus = Field(default=TaskStatus.IDLE)
    steps: List[Step] = Field(default_factory=list)
    cancel_requested: bool = False
    pending_call: Optional[PendingToolCall] = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)
    finished_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def next_seq(self) -> int:
        return len(self.steps)

    def transition(self, status: TaskStatus) -> TaskStatus:
        """Move to ``status``, returning the previous one"""
        previous = self.status
        if status == previous:
            return previous
        if status not in ALLOWED_TRANSITIONS[previous]:
            raise ConflictError(
                f"Illegal task transition {previous.value} -> {status.value}",
                {"task_id": self.task_id, "from": previous.value, "to": status.value}
            )
        self.status = status
        self.updated_at = _utcnow()
        if status.is_terminal:
            self.finished_at = self.updated_at
            self.pending_call = None
        return previous

    def append_step(
        self,
        kind: StepKind,
        content: Optional[str] = None,
        invocation: Optional[ToolInvocation] = None,
        tag: Optional[str] = None,
        data: Optional[Dict[str, Any]] = None
    ) -> Step:
        """Append a step. History is never reordered or truncated."""
        if self.is_terminal:
            raise ConflictError(
                "Cannot append to a finished task",
                {"task_id": self.task_id, "status": self.status.value}
            )
        step = Step(
            seq=self.next_seq,
            kind=kind,
            content=content,
            invocation=invocation,
            tag=tag,
            data=data or {}
        )
        self.steps.append(step)
        self.updated_at = step.created_at
        return step

    def tool_invocations(self) -> List[ToolInvocation]:
        return [step.invocation for step in self.steps if step.invocation is not None]

    def summary(self) -> Dict[str, Any]:
        """Archival record written when the task finishes"""
        last = self.steps[-1] if self.steps else None
        return {
            "task_id": self.task_id,
            "session_id": self.session_id,
            "prompt": self.request.prompt,
            "status": self.status.value,
            "step_count": len(self.steps),
            "tool_invocations": len(self.tool_invocations()),
            "outcome": last.content if last else None,
            "tag": last.tag if last else None,
            "created_at": self.created_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }


class ApprovalDecision(BaseModel):
    """Response to a pending tool approval"""
    approved: bool
    invocation_id: Optional[str] = Field(None, description="Guards against approving a stale call")
    reason: Optional[str] = None
    responded_at: datetime = Field(default_factory=_utcnow)


class TaskEventKind(str, Enum):
    """Notifications emitted by the task engine"""
    STEP_APPENDED = "step_appended"
    STATUS_CHANGED = "status_changed"
    PARTIAL_OUTPUT = "partial_output"


class TaskEvent(BaseModel):
    """Engine notification forwarded to the controller"""
    task_id: str
    kind: TaskEventKind
    status: TaskStatus
    step: Optional[Step] = None
    delta: Optional[str] = None
    pending_call: Optional[PendingToolCall] = None
    created_at: datetime = Field(default_factory=_utcnow)

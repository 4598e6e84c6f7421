from typing import Dict, Any, Optional, List
from pydantic import BaseModel, Field
from datetime import datetime, timezone
from enum import Enum

from taskrelay.domain.models.task_state import (
    PendingToolCall, Step, TaskEvent, TaskRequest, TaskStatus
)
from taskrelay.domain.state.state_store import VisibilityClass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Method(str, Enum):
    """RPC method names"""
    SESSION_DESCRIBE = "session.describe"
    TASK_START = "task.start"
    TASK_GET = "task.get"
    TASK_APPROVE = "task.approve"
    TASK_CANCEL = "task.cancel"
    TASK_HISTORY = "task.history"
    TASK_FOLLOW = "task.follow"
    STATE_GET = "state.get"
    STATE_SET = "state.set"
    STATE_DELETE = "state.delete"
    STATE_SUBSCRIBE = "state.subscribe"
    TOOLS_LIST = "tools.list"


STREAMING_METHODS = frozenset({Method.TASK_FOLLOW, Method.STATE_SUBSCRIBE})


class EmptyRequest(BaseModel):
    """Request without parameters"""
    pass


class StartTaskRequest(BaseModel):
    """Start a new task"""
    prompt: str = ""
    metadata: Dict[str, Any] = Field(default_factory=dict)
    requested_by: Optional[str] = None

    def to_task_request(self) -> TaskRequest:
        return TaskRequest(prompt=self.prompt, metadata=self.metadata, requested_by=self.requested_by)


class ApprovalRequest(BaseModel):
    """Approve or reject the pending tool call"""
    approved: bool
    invocation_id: Optional[str] = None
    reason: Optional[str] = None


class CancelRequest(BaseModel):
    """Cancel the active task"""
    reason: Optional[str] = None


class HistoryRequest(BaseModel):
    """Archived task summaries, newest last"""
    limit: int = Field(default=20, ge=1, le=1000)


class StateGetRequest(BaseModel):
    key: str = Field(min_length=1)
    visibility: VisibilityClass = VisibilityClass.EPHEMERAL


class StateSetRequest(BaseModel):
    key: str = Field(min_length=1)
    value: Any = None
    visibility: VisibilityClass = VisibilityClass.EPHEMERAL
    ttl: Optional[float] = Field(None, gt=0)


class StateDeleteRequest(BaseModel):
    key: str = Field(min_length=1)
    visibility: VisibilityClass = VisibilityClass.EPHEMERAL


class ToolsListRequest(BaseModel):
    category: Optional[str] = None
    query: Optional[str] = None


class TaskView(BaseModel):
    """Presentation view of a task"""
    task_id: str
    status: TaskStatus
    prompt: str
    cancel_requested: bool = False
    pending_call: Optional[PendingToolCall] = None
    steps: List[Step] = Field(default_factory=list)
    created_at: datetime
    finished_at: Optional[datetime] = None


class StateBroadcast(BaseModel):
    """Full state pushed to the presentation layer after every mutation"""
    session_id: str
    revision: int = Field(ge=0, description="Monotonic per controller")
    state: Dict[str, Dict[str, Any]] = Field(default_factory=dict)
    task: Optional[TaskView] = None
    emitted_at: datetime = Field(default_factory=_utcnow)


class TaskEventMessage(BaseModel):
    """Task event streamed to ``task.follow`` consumers"""
    task_id: str
    kind: str
    status: TaskStatus
    step: Optional[Step] = None
    delta: Optional[str] = None
    pending_call: Optional[PendingToolCall] = None

    @classmethod
    def from_event(cls, event: TaskEvent) -> "TaskEventMessage":
        return cls(
            task_id=event.task_id,
            kind=event.kind.value,
            status=event.status,
            step=event.step,
            delta=event.delta,
            pending_call=event.pending_call
        )

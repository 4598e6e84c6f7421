from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Type
import asyncio

from pydantic import BaseModel, ValidationError
import structlog

from taskrelay.application.rpc.bridge import RpcBridge
from taskrelay.application.rpc.envelope import Envelope
from taskrelay.application.rpc.schema.messages import (
    ApprovalRequest, CancelRequest, EmptyRequest, HistoryRequest, Method, StartTaskRequest,
    StateBroadcast, StateDeleteRequest, StateGetRequest, StateSetRequest, TaskEventMessage,
    TaskView, ToolsListRequest
)
from taskrelay.config.settings import Settings
from taskrelay.domain.errors import ConflictError, InvalidRequestError, UnknownMethodError
from taskrelay.domain.models.task_state import ApprovalDecision, Task, TaskEvent, TaskEventKind
from taskrelay.domain.orchestration.core.task_engine import TaskEngine
from taskrelay.domain.orchestration.driver import DriverFactory
from taskrelay.domain.state.state_store import (
    BROADCASTABLE_CLASSES, ScopedStateAccessor, StateChange, StateStore, VisibilityClass
)
from taskrelay.domain.streaming.broadcaster import StateBroadcaster, Subscription
from taskrelay.domain.tool.tool_executor import ToolExecutor
from taskrelay.domain.tool.tool_registry import ToolRegistry

logger = structlog.get_logger(__name__)

STATE_TOPIC = "state"
TASK_TOPIC = "task"

MethodHandler = Callable[[Envelope], Awaitable[Any]]


def task_view(task: Task) -> TaskView:
    """Point-in-time view of a task for the presentation layer"""
    return TaskView(
        task_id=task.task_id,
        status=task.status,
        prompt=task.request.prompt,
        cancel_requested=task.cancel_requested,
        pending_call=task.pending_call.model_copy() if task.pending_call else None,
        steps=list(task.steps),
        created_at=task.created_at,
        finished_at=task.finished_at
    )


class SessionController:
    """Mediates between the task engine, the state store and the RPC bridge.

    One controller per session. It is the only component that emits full
    state broadcasts: after every state mutation and after every task event.
    Secret entries never leave it.
    """

    HISTORY_KEY = "task_history"

    def __init__(
        self,
        session_id: str,
        state_store: StateStore,
        tool_registry: ToolRegistry,
        bridge: RpcBridge,
        driver_factory: DriverFactory,
        settings: Optional[Settings] = None
    ):
        self.session_id = session_id
        self.settings = settings or Settings()
        self.state_store = state_store
        self.tool_registry = tool_registry
        self.bridge = bridge

        self.executor = ToolExecutor(tool_registry, default_timeout=self.settings.engine.tool_timeout)
        self.engine = TaskEngine(
            self.executor,
            driver_factory,
            settings=self.settings.engine,
            notify=self._on_task_event,
            session_id=session_id,
            state_accessor_factory=self.state_accessor
        )
        self.broadcaster = StateBroadcaster()

        self.revision = 0
        self.last_broadcast: Optional[StateBroadcast] = None
        self.closed = False
        self._broadcast_lock = asyncio.Lock()
        self._followers: Dict[str, str] = {}
        self._subscriptions: Dict[str, Subscription] = {}
        self._archived: set = set()

        self._methods: Dict[str, MethodHandler] = {
            Method.SESSION_DESCRIBE.value: self._describe,
            Method.TASK_START.value: self._start_task,
            Method.TASK_GET.value: self._get_task,
            Method.TASK_APPROVE.value: self._approve,
            Method.TASK_CANCEL.value: self._cancel,
            Method.TASK_HISTORY.value: self._history,
            Method.TASK_FOLLOW.value: self._follow_task,
            Method.STATE_GET.value: self._state_get,
            Method.STATE_SET.value: self._state_set,
            Method.STATE_DELETE.value: self._state_delete,
            Method.STATE_SUBSCRIBE.value: self._state_subscribe,
            Method.TOOLS_LIST.value: self._list_tools,
        }

        bridge.bind(self)

    # ------------------------------------------------------------------
    # RequestHandler
    # ------------------------------------------------------------------

    async def handle_request(self, envelope: Envelope) -> Any:
        """Route a request to its method handler"""

        handler = self._methods.get(envelope.method)
        if handler is None:
            raise UnknownMethodError(f"Unknown method: {envelope.method}", {"method": envelope.method})
        if self.closed:
            raise ConflictError("Session is closed", {"session_id": self.session_id})

        structlog.contextvars.bind_contextvars(session_id=self.session_id)
        logger.debug("Handling request", method=envelope.method, call_id=envelope.call_id)
        return await handler(envelope)

    async def on_stream_abandoned(self, envelope: Envelope) -> None:
        """A consumer stopped listening. Abandoning ``task.follow`` cancels the task."""

        subscription = self._subscriptions.pop(envelope.call_id, None)
        if subscription is not None:
            subscription.close()

        if envelope.method != Method.TASK_FOLLOW.value:
            return

        task_id = self._followers.pop(envelope.call_id, None)
        task = self.engine.active_task
        if task is None or task.task_id != task_id:
            return

        logger.info("Task follower abandoned the stream", task_id=task_id, call_id=envelope.call_id)
        try:
            await self.engine.cancel("Follower abandoned the stream")
        except ConflictError:
            pass

    # ------------------------------------------------------------------
    # Task methods
    # ------------------------------------------------------------------

    async def _describe(self, envelope: Envelope) -> Dict[str, Any]:
        self._parse(EmptyRequest, envelope)
        task = self.engine.current_task
        return {
            "session_id": self.session_id,
            "status": self.engine.status.value,
            "task_id": task.task_id if task else None,
            "revision": self.revision,
            "tools": len(self.tool_registry),
            "methods": sorted(self._methods),
        }

    async def _start_task(self, envelope: Envelope) -> TaskView:
        request = self._parse(StartTaskRequest, envelope)
        task = await self.engine.start_task(request.to_task_request())
        return task_view(task)

    async def _get_task(self, envelope: Envelope) -> Dict[str, Any]:
        self._parse(EmptyRequest, envelope)
        task = self.engine.current_task
        return {"task": task_view(task) if task else None}

    async def _approve(self, envelope: Envelope) -> Dict[str, Any]:
        request = self._parse(ApprovalRequest, envelope)
        pending = self.engine.submit_tool_approval(ApprovalDecision(
            approved=request.approved,
            invocation_id=request.invocation_id,
            reason=request.reason
        ))
        return {"invocation_id": pending.invocation_id, "tool_id": pending.tool_id, "approved": request.approved}

    async def _cancel(self, envelope: Envelope) -> TaskView:
        request = self._parse(CancelRequest, envelope)
        task = await self.engine.cancel(request.reason)
        return task_view(task)

    async def _history(self, envelope: Envelope) -> Dict[str, Any]:
        request = self._parse(HistoryRequest, envelope)
        history = await self.state_store.get(self.HISTORY_KEY, VisibilityClass.DURABLE_WORKSPACE) or []
        return {"tasks": history[-request.limit:]}

    async def _follow_task(self, envelope: Envelope) -> AsyncIterator[TaskEventMessage]:
        self._parse(EmptyRequest, envelope)
        task = self.engine.active_task
        if task is None:
            raise ConflictError("No active task to follow")

        subscription = self.broadcaster.subscribe(TASK_TOPIC)
        self._subscriptions[envelope.call_id] = subscription
        self._followers[envelope.call_id] = task.task_id
        return self._stream_task_events(envelope.call_id, task.task_id, subscription)

    async def _stream_task_events(
        self,
        call_id: str,
        task_id: str,
        subscription: Subscription
    ) -> AsyncIterator[TaskEventMessage]:
        try:
            async for message in subscription:
                if message.task_id != task_id:
                    continue
                yield message
                if message.kind == TaskEventKind.STATUS_CHANGED.value and message.status.is_terminal:
                    break
        finally:
            subscription.close()
            self._subscriptions.pop(call_id, None)
            # kept while the task runs so an abandoned stream can still cancel it
            active = self.engine.active_task
            if active is None or active.task_id != task_id:
                self._followers.pop(call_id, None)

    # ------------------------------------------------------------------
    # State methods
    # ------------------------------------------------------------------

    async def _state_get(self, envelope: Envelope) -> Dict[str, Any]:
        request = self._parse(StateGetRequest, envelope)
        if request.visibility == VisibilityClass.SECRET:
            raise InvalidRequestError("Secret entries cannot be read over RPC", {"key": request.key})
        value = await self.state_store.get(request.key, request.visibility)
        return {"key": request.key, "visibility": request.visibility.value, "value": value}

    async def _state_set(self, envelope: Envelope) -> StateChange:
        request = self._parse(StateSetRequest, envelope)
        change = await self.state_store.set(request.key, request.value, request.visibility, ttl=request.ttl)
        await self._on_state_change(change)
        return change

    async def _state_delete(self, envelope: Envelope) -> Dict[str, Any]:
        request = self._parse(StateDeleteRequest, envelope)
        change = await self.state_store.delete(request.key, request.visibility)
        if change is not None:
            await self._on_state_change(change)
        return {"key": request.key, "deleted": change is not None}

    async def _state_subscribe(self, envelope: Envelope) -> AsyncIterator[StateBroadcast]:
        self._parse(EmptyRequest, envelope)
        async with self._broadcast_lock:
            initial = await self._build_broadcast(self.revision)
            subscription = self.broadcaster.subscribe(STATE_TOPIC)
        self._subscriptions[envelope.call_id] = subscription
        return self._stream_broadcasts(envelope.call_id, initial, subscription)

    async def _stream_broadcasts(
        self,
        call_id: str,
        initial: StateBroadcast,
        subscription: Subscription
    ) -> AsyncIterator[StateBroadcast]:
        try:
            yield initial
            async for broadcast in subscription:
                yield broadcast
        finally:
            subscription.close()
            self._subscriptions.pop(call_id, None)

    async def _list_tools(self, envelope: Envelope) -> Dict[str, Any]:
        request = self._parse(ToolsListRequest, envelope)
        if request.category:
            specs = self.tool_registry.get_tools_by_category(request.category)
        else:
            specs = self.tool_registry.get_available_tools()
        if request.query:
            matching = {spec.id for spec in self.tool_registry.search_tools(request.query)}
            specs = [spec for spec in specs if spec.id in matching]
        return {"tools": specs}

    # ------------------------------------------------------------------
    # Broadcasts
    # ------------------------------------------------------------------

    def state_accessor(self, tool_id: str) -> ScopedStateAccessor:
        """State access for one tool invocation"""
        return ScopedStateAccessor(self.state_store, f"tool:{tool_id}", on_change=self._on_state_change)

    async def broadcast_state(self) -> StateBroadcast:
        """Publish the full broadcastable state and the current task"""

        async with self._broadcast_lock:
            self.revision += 1
            broadcast = await self._build_broadcast(self.revision)
            self.last_broadcast = broadcast
            delivered = self.broadcaster.publish(broadcast, topic=STATE_TOPIC)

        logger.debug("State broadcast", session_id=self.session_id, revision=broadcast.revision,
                     subscribers=delivered)
        return broadcast

    async def _build_broadcast(self, revision: int) -> StateBroadcast:
        state = await self.state_store.snapshot(BROADCASTABLE_CLASSES)
        task = self.engine.current_task
        return StateBroadcast(
            session_id=self.session_id,
            revision=revision,
            state=state,
            task=task_view(task) if task else None
        )

    async def _on_state_change(self, change: StateChange) -> None:
        await self.broadcast_state()

    async def _on_task_event(self, event: TaskEvent) -> None:
        self.broadcaster.publish(TaskEventMessage.from_event(event), topic=TASK_TOPIC)

        task = self.engine.current_task
        if (
            event.kind == TaskEventKind.STATUS_CHANGED
            and event.status.is_terminal
            and task is not None
            and task.task_id == event.task_id
        ):
            await self._archive(task)

        await self.broadcast_state()

    async def _archive(self, task: Task) -> None:
        """Append the task summary to the workspace history"""

        if task.task_id in self._archived:
            return
        self._archived.add(task.task_id)

        history: List[Dict[str, Any]] = list(
            await self.state_store.get(self.HISTORY_KEY, VisibilityClass.DURABLE_WORKSPACE) or []
        )
        history.append(task.summary())
        history = history[-self.settings.state.history_limit:]
        await self.state_store.set(self.HISTORY_KEY, history, VisibilityClass.DURABLE_WORKSPACE)
        logger.info("Task archived", task_id=task.task_id, status=task.status.value)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def close(self) -> None:
        """Shut the engine down and end every subscription"""

        if self.closed:
            return
        self.closed = True
        await self.engine.shutdown()
        self.broadcaster.close()
        self._followers.clear()
        self._subscriptions.clear()
        logger.info("Session controller closed", session_id=self.session_id)

    def _parse(self, model: Type[BaseModel], envelope: Envelope) -> Any:
        try:
            return model.model_validate(envelope.payload or {})
        except ValidationError as e:
            errors = [
                f"{'.'.join(str(part) for part in error['loc']) or 'payload'}: {error['msg']}"
                for error in e.errors()
            ]
            raise InvalidRequestError(f"Invalid payload for '{envelope.method}'", {"errors": errors}) from e

from typing import Any, AsyncIterator, Awaitable, Callable, Iterable, List, Optional, Tuple
from datetime import datetime, timedelta, timezone
import asyncio

import structlog

from taskrelay.config.settings import EngineSettings
from taskrelay.domain.errors import ConflictError, FatalTaskError, InvalidRequestError, UnknownToolError
from taskrelay.domain.models.task_state import (
    ApprovalDecision, InvocationStatus, PendingToolCall, Step, StepKind, Task,
    TaskEvent, TaskEventKind, TaskRequest, TaskStatus, ToolErrorDescriptor, ToolInvocation
)
from taskrelay.domain.orchestration.driver import (
    CallTool, DriverAction, DriverFactory, Finish, Reply, TaskDriver, TextChunk
)
from taskrelay.domain.state.state_store import ScopedStateAccessor
from taskrelay.domain.tool.tool_executor import CancellationSignal, ToolContext, ToolExecutor, ToolOutcome
from taskrelay.domain.tool.tool_registry import ToolSpec
from taskrelay.infrastructure.observability.logging import task_logger

logger = structlog.get_logger(__name__)

TaskEventCallback = Callable[[TaskEvent], Awaitable[None]]
StateAccessorFactory = Callable[[str], ScopedStateAccessor]


class _TaskCancelled(Exception):
    """Internal signal: the task must finish as cancelled"""

    def __init__(self, message: str, tag: str = "cancelled"):
        super().__init__(message)
        self.message = message
        self.tag = tag


class ApprovalPolicy:
    """Decides which tool calls need an explicit approval"""

    def __init__(self, auto_approve: Iterable[str] = ()):
        self.auto_approve = set(auto_approve)

    def requires_approval(self, spec: ToolSpec) -> bool:
        return spec.requires_approval and spec.id not in self.auto_approve


async def _pull(iterator: AsyncIterator[Any]) -> Tuple[bool, Any]:
    try:
        return True, await iterator.__anext__()
    except StopAsyncIteration:
        return False, None


class TaskEngine:
    """State machine driving the single active task of a session.

    Idle -> Running -> {AwaitingToolApproval, AwaitingToolExecution} -> Running
    (loop) -> {Completed, Failed, Cancelled}. Suspension points are the
    approval wait, the tool execution wait and each chunk of the driver's
    streamed output; cancellation is honoured at the next one.
    """

    def __init__(
        self,
        executor: ToolExecutor,
        driver_factory: DriverFactory,
        settings: Optional[EngineSettings] = None,
        notify: Optional[TaskEventCallback] = None,
        session_id: Optional[str] = None,
        state_accessor_factory: Optional[StateAccessorFactory] = None,
        policy: Optional[ApprovalPolicy] = None
    ):
        self.executor = executor
        self.driver_factory = driver_factory
        self.settings = settings or EngineSettings()
        self.session_id = session_id
        self.policy = policy or ApprovalPolicy(self.settings.auto_approve_tools)
        self._notify = notify
        self._state_accessor_factory = state_accessor_factory

        self._task: Optional[Task] = None
        self._runner: Optional[asyncio.Task] = None
        self._cancel_event = asyncio.Event()
        self._cancel_reason: Optional[str] = None
        self._approval_waiter: Optional[asyncio.Future] = None
        self._detached: set = set()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @property
    def current_task(self) -> Optional[Task]:
        """The active task, or the last finished one"""
        return self._task

    @property
    def active_task(self) -> Optional[Task]:
        if self._task is not None and not self._task.is_terminal:
            return self._task
        return None

    @property
    def has_active_task(self) -> bool:
        return self.active_task is not None

    @property
    def status(self) -> TaskStatus:
        return self._task.status if self._task is not None else TaskStatus.IDLE

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def start_task(self, request: TaskRequest) -> Task:
        """Create and start a task. Returns once the start step is appended."""

        if self.has_active_task:
            raise ConflictError(
                "A task is already running",
                {"task_id": self._task.task_id, "status": self._task.status.value}
            )

        try:
            driver = self.driver_factory(request)
        except (ValueError, KeyError, TypeError) as e:
            raise InvalidRequestError(f"Cannot build driving logic for request: {e}") from e

        task = Task(session_id=self.session_id, request=request)
        task.transition(TaskStatus.RUNNING)
        start = task.append_step(StepKind.START, content=request.prompt, data=dict(request.metadata))

        self._task = task
        self._cancel_event = asyncio.Event()
        self._cancel_reason = None
        self._approval_waiter = None

        # the drive loop exists before the first await and holds until the start is announced
        announced = asyncio.Event()
        self._runner = asyncio.create_task(self._run(task, driver, announced), name=f"task-{task.task_id}")

        task_logger.log_task_event("task_started", task.task_id, self.session_id, {"prompt": request.prompt})
        task_logger.log_state_transition(task.task_id, TaskStatus.IDLE.value, TaskStatus.RUNNING.value)
        try:
            await self._emit(task, TaskEventKind.STATUS_CHANGED)
            await self._emit(task, TaskEventKind.STEP_APPENDED, step=start)
        finally:
            announced.set()
        return task

    def submit_tool_approval(self, decision: ApprovalDecision) -> PendingToolCall:
        """Resolve the pending approval. Raises ConflictError when none is pending."""

        task = self._task
        waiter = self._approval_waiter
        if (
            task is None
            or task.status != TaskStatus.AWAITING_TOOL_APPROVAL
            or task.pending_call is None
            or waiter is None
            or waiter.done()
        ):
            raise ConflictError("No tool call is awaiting approval")

        pending = task.pending_call
        if decision.invocation_id and decision.invocation_id != pending.invocation_id:
            raise ConflictError(
                "Approval does not match the pending tool call",
                {"pending": pending.invocation_id, "received": decision.invocation_id}
            )

        task_logger.log_task_event(
            "tool_approval", task.task_id, self.session_id,
            {"invocation_id": pending.invocation_id, "approved": decision.approved}
        )
        waiter.set_result(decision)
        return pending

    async def cancel(self, reason: Optional[str] = None, wait: bool = False) -> Task:
        """Request cancellation of the active task.

        The task reaches ``cancelled`` at its next suspension point; an
        in-flight tool gets ``cancel_grace_period`` to acknowledge the abort.
        With ``wait`` the call returns after the task is terminal.
        """

        task = self._task
        if task is None or task.is_terminal:
            raise ConflictError("No active task to cancel")

        if not task.cancel_requested:
            task.cancel_requested = True
            self._cancel_reason = reason
            self._cancel_event.set()
            if self._approval_waiter is not None and not self._approval_waiter.done():
                self._approval_waiter.set_result(None)
            task_logger.log_task_event("cancel_requested", task.task_id, self.session_id, {"reason": reason})
            await self._emit(task, TaskEventKind.STATUS_CHANGED)

        if wait:
            await self.wait()
        return task

    async def wait(self, timeout: Optional[float] = None) -> Optional[Task]:
        """Wait until the current task's drive loop has finished"""

        runner = self._runner
        if runner is not None and not runner.done():
            await asyncio.wait_for(asyncio.shield(runner), timeout=timeout)
        return self._task

    async def shutdown(self) -> None:
        """Cancel the active task and stop the drive loop"""

        if self.has_active_task:
            await self.cancel("Engine shutdown")

        runner = self._runner
        if runner is None or runner.done():
            return
        try:
            await asyncio.wait_for(asyncio.shield(runner), timeout=self.settings.cancel_grace_period + 1.0)
        except asyncio.TimeoutError:
            runner.cancel()
            await asyncio.gather(runner, return_exceptions=True)

    # ------------------------------------------------------------------
    # Drive loop
    # ------------------------------------------------------------------

    async def _run(self, task: Task, driver: TaskDriver, announced: asyncio.Event) -> None:
        structlog.contextvars.bind_contextvars(task_id=task.task_id)
        feedback: Optional[ToolInvocation] = None

        try:
            await announced.wait()
            while True:
                self._check_cancelled(task)
                self._check_step_budget(task)

                streamed_text, action = await self._advance(task, driver, feedback)
                feedback = None

                if isinstance(action, Reply):
                    await self._append(task, StepKind.MESSAGE, content=action.text or streamed_text)
                    continue

                if streamed_text:
                    await self._append(task, StepKind.MESSAGE, content=streamed_text)

                if isinstance(action, Finish):
                    await self._finish(task, TaskStatus.COMPLETED, StepKind.COMPLETION, action.summary, data=action.data)
                    return

                feedback = await self._dispatch_tool(task, action)

        except _TaskCancelled as e:
            await self._finish(task, TaskStatus.CANCELLED, StepKind.ERROR, e.message, tag=e.tag)
        except FatalTaskError as e:
            logger.warning("Task failed", task_id=task.task_id, error=e.message, tag=e.tag)
            await self._finish(task, TaskStatus.FAILED, StepKind.ERROR, e.message, tag=e.tag)
        except asyncio.CancelledError:
            await self._finish(task, TaskStatus.CANCELLED, StepKind.ERROR, "Task aborted", tag="cancelled")
            raise
        except Exception as e:
            logger.exception("Driving logic fault", task_id=task.task_id)
            await self._finish(task, TaskStatus.FAILED, StepKind.ERROR, f"{type(e).__name__}: {e}", tag="fatal")

    async def _advance(
        self,
        task: Task,
        driver: TaskDriver,
        feedback: Optional[ToolInvocation]
    ) -> Tuple[str, DriverAction]:
        """Run one driver turn, streaming chunks, and return its action"""

        chunks: List[str] = []
        action: Optional[DriverAction] = None
        stream = driver.respond(task.model_copy(deep=True), feedback)

        try:
            while True:
                has_item, event = await self._next_event(task, stream)
                if not has_item:
                    break
                if isinstance(event, TextChunk):
                    if action is not None:
                        raise FatalTaskError("Driver streamed output after its action")
                    chunks.append(event.delta)
                    await self._emit(task, TaskEventKind.PARTIAL_OUTPUT, delta=event.delta)
                elif isinstance(event, (Reply, CallTool, Finish)):
                    if action is not None:
                        raise FatalTaskError("Driver produced more than one action in a turn")
                    action = event
                else:
                    raise FatalTaskError(f"Unsupported driver event: {type(event).__name__}")
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()

        self._check_cancelled(task)
        streamed_text = "".join(chunks)
        if action is None:
            if not chunks:
                raise FatalTaskError("Driver turn produced no output")
            action = Reply(text=streamed_text)
        return streamed_text, action

    async def _next_event(self, task: Task, stream: AsyncIterator[Any]) -> Tuple[bool, Any]:
        """Wait for the next driver event or a cancellation, whichever is first"""

        self._check_cancelled(task)
        pull = asyncio.ensure_future(_pull(stream))
        cancelled = asyncio.ensure_future(self._cancel_event.wait())
        try:
            await asyncio.wait({pull, cancelled}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            pull.cancel()
            await asyncio.gather(pull, return_exceptions=True)
            raise
        finally:
            cancelled.cancel()

        if pull.done():
            return pull.result()

        pull.cancel()
        await asyncio.gather(pull, return_exceptions=True)
        self._check_cancelled(task)
        return pull.result()

    async def _dispatch_tool(self, task: Task, call: CallTool) -> ToolInvocation:
        """Approve (if needed) and execute one tool call"""

        self._check_step_budget(task)
        pending = PendingToolCall(tool_id=call.tool_id, arguments=dict(call.arguments))

        try:
            spec = self.executor.registry.resolve(call.tool_id).spec
            rejected = self.executor.check_arguments(call.tool_id, pending.arguments)
        except UnknownToolError as e:
            return await self._record(task, pending, InvocationStatus.FAILED, error=ToolErrorDescriptor(
                kind=e.code, message=e.message
            ))
        if rejected is not None:
            return await self._record(task, pending, InvocationStatus.FAILED, error=rejected.error)

        pending.requires_approval = self.policy.requires_approval(spec)
        task.pending_call = pending

        if pending.requires_approval:
            pending.deadline = datetime.now(timezone.utc) + timedelta(seconds=self.settings.approval_timeout)
            decision = await self._await_approval(task, pending)
            if not decision.approved:
                await self._set_status(task, TaskStatus.RUNNING)
                return await self._record(task, pending, InvocationStatus.REJECTED, error=ToolErrorDescriptor(
                    kind="rejected", message=decision.reason or "Rejected by user"
                ))

        await self._set_status(task, TaskStatus.AWAITING_TOOL_EXECUTION)
        outcome = await self._execute(task, pending, spec)
        await self._set_status(task, TaskStatus.RUNNING)
        status = InvocationStatus.SUCCEEDED if outcome.succeeded else InvocationStatus.FAILED
        return await self._record(task, pending, status, result=outcome.ok, error=outcome.error)

    async def _await_approval(self, task: Task, pending: PendingToolCall) -> ApprovalDecision:
        self._check_cancelled(task)
        waiter = asyncio.get_running_loop().create_future()
        self._approval_waiter = waiter

        try:
            await self._set_status(task, TaskStatus.AWAITING_TOOL_APPROVAL)
            decision = await asyncio.wait_for(waiter, timeout=self.settings.approval_timeout)
        except asyncio.TimeoutError:
            raise _TaskCancelled(
                f"Approval for tool '{pending.tool_id}' timed out after {self.settings.approval_timeout}s",
                tag="approval_timeout"
            )
        finally:
            self._approval_waiter = None

        self._check_cancelled(task)
        return decision

    async def _execute(self, task: Task, pending: PendingToolCall, spec: ToolSpec) -> ToolOutcome:
        """Run the executor, racing it against cancellation"""

        self._check_cancelled(task)
        signal = CancellationSignal()
        context = ToolContext(
            tool_id=pending.tool_id,
            invocation_id=pending.invocation_id,
            task_id=task.task_id,
            cancellation=signal,
            state=self._state_accessor_factory(pending.tool_id) if self._state_accessor_factory else None
        )
        inflight = asyncio.ensure_future(self.executor.invoke(pending.tool_id, pending.arguments, context))
        cancelled = asyncio.ensure_future(self._cancel_event.wait())
        try:
            await asyncio.wait({inflight, cancelled}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            signal.set()
            inflight.cancel()
            await asyncio.gather(inflight, return_exceptions=True)
            raise
        finally:
            cancelled.cancel()

        if inflight.done() and not task.cancel_requested:
            try:
                return inflight.result()
            except UnknownToolError as e:
                return ToolOutcome.failure(e.code, e.message)

        acknowledged = await self._abort_inflight(inflight, signal, spec)
        await self._record(task, pending, InvocationStatus.CANCELLED, error=ToolErrorDescriptor(
            kind="cancelled",
            message="Abort acknowledged" if acknowledged else "Abort grace period elapsed"
        ))
        raise _TaskCancelled(self._cancel_reason or "Task cancelled during tool execution")

    async def _abort_inflight(self, inflight: asyncio.Future, signal: CancellationSignal, spec: ToolSpec) -> bool:
        """Signal abort and wait for the invocation to finish, up to the grace period"""

        if inflight.done():
            return True

        if spec.cancellable:
            signal.set()

        try:
            await asyncio.wait_for(asyncio.shield(inflight), timeout=self.settings.cancel_grace_period)
            return True
        except asyncio.TimeoutError:
            if spec.cancellable:
                inflight.cancel()
                await asyncio.gather(inflight, return_exceptions=True)
            else:
                # runs to completion in the background; its result is discarded
                self._detached.add(inflight)
                inflight.add_done_callback(self._discard_result)
            logger.warning(
                "Tool did not acknowledge abort within grace period",
                tool_id=spec.id,
                grace_period=self.settings.cancel_grace_period
            )
            return False

    def _discard_result(self, future: asyncio.Future) -> None:
        self._detached.discard(future)
        if not future.cancelled() and future.exception() is not None:
            logger.warning("Discarded tool invocation failed", error=str(future.exception()))

    # ------------------------------------------------------------------
    # History and notifications
    # ------------------------------------------------------------------

    def _check_cancelled(self, task: Task) -> None:
        if task.cancel_requested:
            raise _TaskCancelled(self._cancel_reason or "Task cancelled")

    async def _record(
        self,
        task: Task,
        pending: PendingToolCall,
        status: InvocationStatus,
        result: Optional[dict] = None,
        error: Optional[ToolErrorDescriptor] = None
    ) -> ToolInvocation:
        invocation = ToolInvocation(
            invocation_id=pending.invocation_id,
            tool_id=pending.tool_id,
            arguments=pending.arguments,
            status=status,
            result=result,
            error=error
        )
        task.pending_call = None
        await self._append(task, StepKind.TOOL_INVOCATION, invocation=invocation)
        return invocation

    def _check_step_budget(self, task: Task) -> None:
        """Keep the last slot of `max_steps` for the terminal step"""
        if task.next_seq >= self.settings.max_steps - 1:
            raise FatalTaskError(f"Step limit of {self.settings.max_steps} reached", tag="step_limit")

    async def _append(self, task: Task, kind: StepKind, terminal: bool = False, **fields: Any) -> Step:
        if not terminal:
            self._check_step_budget(task)
        step = task.append_step(kind, **fields)
        await self._emit(task, TaskEventKind.STEP_APPENDED, step=step)
        return step

    async def _set_status(self, task: Task, status: TaskStatus, reason: Optional[str] = None) -> None:
        previous = task.transition(status)
        if previous == status:
            return
        task_logger.log_state_transition(task.task_id, previous.value, status.value, reason)
        await self._emit(task, TaskEventKind.STATUS_CHANGED)

    async def _finish(
        self,
        task: Task,
        status: TaskStatus,
        kind: StepKind,
        content: str,
        tag: Optional[str] = None,
        data: Optional[dict] = None
    ) -> None:
        """Append the terminal step and enter the terminal status"""

        if task.is_terminal:
            return
        await self._append(task, kind, terminal=True, content=content, tag=tag, data=data)
        await self._set_status(task, status, reason=tag)
        task_logger.log_task_event(
            "task_finished", task.task_id, self.session_id,
            {"status": status.value, "steps": len(task.steps), "tag": tag}
        )

    async def _emit(self, task: Task, kind: TaskEventKind, step: Optional[Step] = None, delta: Optional[str] = None) -> None:
        if self._notify is None:
            return
        event = TaskEvent(
            task_id=task.task_id,
            kind=kind,
            status=task.status,
            step=step,
            delta=delta,
            pending_call=task.pending_call.model_copy() if task.pending_call else None
        )
        try:
            await self._notify(event)
        except Exception as e:
            logger.error("Error in task event handler", task_id=task.task_id, kind=kind.value, error=str(e))

"""
Scheduler: the central control loop of the orchestrator.

Pulls ready tasks from the dependency resolver, picks an agent (or hands
collaborative tasks to the coordinator), reserves capacity and dispatches.
Agent outcomes come back as asyncio tasks and re-enter the same
lock-serialized mutation path, so scheduling never blocks on agent work.
"""

import asyncio
from datetime import datetime
from typing import TYPE_CHECKING, Any, Dict, Iterable, List, Optional, Set, Tuple

from ..agents.base import AgentRequest, AgentResponse
from ..models.core import Task, TaskSpec, TaskStatus
from ..models.errors import (
    AgentUnavailable, CapacityExceeded, InvalidTransition, RetryLimitExceeded, TaskNotFound
)
from ..storage.task_store import TaskStore
from ..utils.config import SchedulerConfig
from ..utils.error_handler import RetryConfig
from ..utils.logging import LoggerMixin
from ..utils.monitoring import MetricsCollector
from .capacity import CapacityTracker, TaskOutcome
from .dependencies import DependencyResolver
from .dispatcher import TaskDispatcher
from .events import EventBus, EventType
from .registry import AgentRegistry
from .selection import AgentSelector

if TYPE_CHECKING:
    from ..agents.base import BaseAgent
    from ..models.capacity import AgentCapacitySnapshot
    from ..models.collaboration import CollaborationSession
    from .collaboration import CollaborationCoordinator
    from .registry import AgentInstance

CANCELLED_ERROR_CODE = "Cancelled"


class Scheduler(LoggerMixin):
    """
    Owns task lifecycle transitions for single-agent and collaborative tasks.

    Every mutation runs under ``lock``. ``tick`` may be called directly
    (tests do) or driven by ``start``'s background loop, which wakes on
    submissions, outcomes, capacity changes and a periodic timer.
    """

    def __init__(
        self,
        store: TaskStore,
        resolver: DependencyResolver,
        registry: AgentRegistry,
        tracker: CapacityTracker,
        selector: AgentSelector,
        dispatcher: TaskDispatcher,
        event_bus: EventBus,
        config: Optional[SchedulerConfig] = None,
        metrics: Optional[MetricsCollector] = None
    ):
        self.store = store
        self.resolver = resolver
        self.registry = registry
        self.tracker = tracker
        self.selector = selector
        self.dispatcher = dispatcher
        self.event_bus = event_bus
        self.config = config or SchedulerConfig()
        self.metrics = metrics or MetricsCollector()
        self.retry_config = RetryConfig(
            max_retries=self.config.max_retries,
            base_delay=self.config.retry_base_delay_seconds,
            max_delay=self.config.retry_max_delay_seconds,
            backoff_factor=self.config.retry_backoff_factor
        )
        self.coordinator: Optional['CollaborationCoordinator'] = None
        self.registry.running_count = self._running_count

        self._lock = asyncio.Lock()
        self._wake = asyncio.Event()
        self._executions: Dict[str, asyncio.Task] = {}
        self._inflight: Dict[str, str] = {}
        self._invoking: Set[str] = set()
        self._cancel_requests: Dict[str, str] = {}
        self._retry_timers: Dict[str, asyncio.TimerHandle] = {}
        self._waiters: Dict[str, asyncio.Event] = {}
        self._background: Set[asyncio.Task] = set()
        self._loop_task: Optional[asyncio.Task] = None
        self._running = False
        self._stopping = False

    @property
    def lock(self) -> asyncio.Lock:
        """Serializes every task-status and capacity mutation."""
        return self._lock

    def attach_coordinator(self, coordinator: 'CollaborationCoordinator'):
        self.coordinator = coordinator

    # Lifecycle

    async def start(self):
        """Start the background scheduling loop."""
        if self._running:
            return
        self._running = True
        self._stopping = False
        self._loop_task = asyncio.create_task(self._run_loop())
        self.logger.info("Scheduler started", tick_interval_seconds=self.config.tick_interval_seconds)

    async def stop(self, drain: bool = False, drain_timeout: Optional[float] = None) -> List[str]:
        """
        Stop scheduling.

        Args:
            drain: Wait for in-flight executions to finish before stopping
            drain_timeout: Upper bound on the drain wait in seconds

        Returns:
            IDs of in-flight tasks that were abandoned and reset to pending
        """
        self._running = False
        if self._loop_task:
            self._loop_task.cancel()
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass
            self._loop_task = None

        with self.logged_operation("scheduler_stop", drain=drain):
            if drain:
                pending = self._active_runs()
                if pending:
                    self.logger.info("Draining in-flight tasks", count=len(pending))
                    await asyncio.wait(pending, timeout=drain_timeout)

            self._stopping = True
            for handle in self._retry_timers.values():
                handle.cancel()
            self._retry_timers.clear()

            runs = self._active_runs()
            for run in runs:
                run.cancel()
            if runs:
                await asyncio.gather(*runs, return_exceptions=True)
            if self._background:
                await asyncio.gather(*list(self._background), return_exceptions=True)

            abandoned = []
            async with self._lock:
                for task_id, agent_id in list(self._inflight.items()):
                    self.tracker.release(agent_id, task_id, TaskOutcome.CANCELLED)
                    abandoned.append(task_id)
                self._inflight.clear()
                self._executions.clear()
                self._invoking.clear()
                if self.coordinator is not None:
                    abandoned.extend(self.coordinator.abandon_all())
                for task_id in abandoned:
                    self._reset_to_pending(task_id)

        if abandoned:
            self.logger.warning("Abandoned in-flight tasks at shutdown", task_ids=abandoned)
        self.logger.info("Scheduler stopped")
        return abandoned

    def _active_runs(self) -> List[asyncio.Task]:
        runs = [t for t in self._executions.values() if not t.done()]
        if self.coordinator is not None:
            runs.extend(self.coordinator.active_runs())
        return runs

    def wake(self):
        """Request a scheduling tick."""
        self._wake.set()

    @property
    def is_running(self) -> bool:
        return self._running

    async def _run_loop(self):
        """Tick, then sleep until woken or the periodic timer fires."""
        while self._running:
            try:
                await self.tick()
                try:
                    await asyncio.wait_for(self._wake.wait(), timeout=self.config.tick_interval_seconds)
                except asyncio.TimeoutError:
                    pass
                self._wake.clear()
            except asyncio.CancelledError:
                break
            except Exception as e:
                self.log_operation_error("scheduling_tick", e)
                await asyncio.sleep(self.config.tick_interval_seconds)

    # Submission

    async def submit(self, spec: TaskSpec) -> Task:
        """
        Create and register a task.

        Raises:
            CycleDetected: If the dependencies would form a cycle
            UnknownDependency: If a dependency ID is not registered
        """
        async with self._lock:
            task, root = self._register(spec)
            self._announce(task, root)
        self.wake()
        return task

    async def submit_batch(self, specs: Iterable[TaskSpec]) -> List[Task]:
        """
        Register an ordered list of specs atomically.

        Later specs may depend on earlier ones. Any structural error rolls
        back every task created by the batch.
        """
        created: List[Tuple[Task, Optional[str]]] = []
        async with self._lock:
            try:
                for spec in specs:
                    created.append(self._register(spec))
            except Exception:
                for task, _ in reversed(created):
                    self.resolver.unregister(task.task_id)
                    self.store.delete(task.task_id)
                self.logger.warning("Batch submission rolled back", rolled_back=len(created))
                raise
            for task, root in created:
                self._announce(task, root)
        self.wake()
        return [task for task, _ in created]

    def _register(self, spec: TaskSpec) -> Tuple[Task, Optional[str]]:
        task = Task.from_spec(spec)
        if task.task_id in self.store:
            raise ValueError(f"Task {task.task_id} already exists")
        self.resolver.validate(task.task_id, task.dependencies)
        self.store.add(task)
        try:
            root = self.resolver.register(task)
        except Exception:
            self.store.delete(task.task_id)
            raise
        return task, root

    def _announce(self, task: Task, root: Optional[str]):
        self.metrics.increment_counter("tasks.submitted")
        self.logger.info("Task created", task_id=task.task_id, priority=task.priority.value,
                         dependencies=len(task.dependencies))
        self._publish(EventType.TASK_CREATED, task)
        if root is not None:
            self._block(task, root)

    async def add_dependencies(self, task_id: str, dependencies: Iterable[str]) -> Task:
        """Add prerequisites to a pending task, with the same cycle check as submission."""
        async with self._lock:
            task = self.store.require(task_id)
            if task.status != TaskStatus.PENDING:
                raise InvalidTransition(task_id, task.status.value, "pending")
            all_deps = self.resolver.add_dependencies(task_id, dependencies)
            ordered = list(task.dependencies) + sorted(d for d in all_deps if d not in task.dependencies)
            self.store.update(task_id, dependencies=ordered)
            root = self.resolver.failed_root(task)
            if root is not None:
                self._block(task, root)
            elif not self.resolver.is_ready(task):
                self.tracker.dequeue(task_id)
        return task

    # Scheduling tick

    async def tick(self) -> int:
        """
        Dispatch every ready task that can get capacity.

        Returns:
            Number of tasks dispatched
        """
        async with self._lock:
            if self._stopping:
                return 0
            dispatched = 0
            for task_id in self.resolver.ready_tasks():
                task = self.store.get(task_id)
                if task is None or task.status != TaskStatus.PENDING:
                    self.resolver.discard(task_id)
                    continue
                if task.is_collaborative:
                    started = self._start_collaboration(task)
                else:
                    started = self._dispatch_single(task)
                if started:
                    dispatched += 1

        if dispatched:
            self.logger.debug("Scheduling tick dispatched tasks", dispatched=dispatched)
        return dispatched

    def _dispatch_single(self, task: Task) -> bool:
        candidates = self.selector.rank(task)
        preferred = self.tracker.queued_agent(task.task_id)
        if preferred is not None:
            candidates.sort(key=lambda c: c.agent_id != preferred)

        for candidate in candidates:
            try:
                self.tracker.reserve(candidate.agent_id, task.task_id)
            except CapacityExceeded:
                self.metrics.increment_counter("scheduler.capacity_races")
                continue
            self.resolver.take(task.task_id)
            self._launch(task, candidate.agent_id)
            return True

        self._park(task)
        return False

    def _park(self, task: Task):
        """No capable agent has a slot: leave the task pending, queued on its best agent."""
        unavailable = self._report_unavailable(task)
        if self.tracker.queued_agent(task.task_id) is not None:
            return
        ranked = self.selector.rank(task, require_capacity=False)
        if not ranked:
            self.logger.debug("No capable agent for task", task_id=task.task_id)
            return
        agent_id = ranked[0].agent_id
        if self.tracker.enqueue(agent_id, task.task_id):
            self.logger.info("Task queued awaiting capacity", task_id=task.task_id, agent_id=agent_id)
            self._publish(EventType.TASK_QUEUED, task, agent_id=agent_id, reason=unavailable.message)

    def _report_unavailable(self, task: Task) -> AgentUnavailable:
        unavailable = AgentUnavailable(task.task_id)
        self.metrics.increment_counter("scheduler.agent_unavailable")
        self.logger.debug(unavailable.message, task_id=task.task_id, error_code=unavailable.error_code)
        return unavailable

    def _launch(self, task: Task, agent_id: str):
        self.store.update(task.task_id, status=TaskStatus.ASSIGNED, assigned_agent_id=agent_id,
                          output=None, error=None, error_code=None)
        self._publish(EventType.TASK_ASSIGNED, task, agent_id=agent_id)
        self._refresh_agent(agent_id)

        self.store.update(task.task_id, status=TaskStatus.IN_PROGRESS, started_at=datetime.now())
        self._publish(EventType.TASK_STARTED, task, agent_id=agent_id)
        self.metrics.increment_counter("tasks.dispatched")
        self.logger.info("Task dispatched", task_id=task.task_id, agent_id=agent_id,
                         attempt=task.retry_count + 1)

        self._inflight[task.task_id] = agent_id
        self._invoking.add(task.task_id)
        execution = asyncio.create_task(self._execute(task.task_id, agent_id), name=f"task-{task.task_id}")
        execution.add_done_callback(lambda t: self._on_execution_done(task.task_id, agent_id, t))
        self._executions[task.task_id] = execution

    def build_request(self, task: Task, extra_context: Optional[Dict[str, Any]] = None) -> AgentRequest:
        """Agent request for a task, including outputs of its dependencies."""
        context = dict(task.context)
        context.update(
            project_id=task.project_id,
            attempt=task.retry_count + 1,
            dependency_outputs={
                dep: self.store.get(dep).output for dep in task.dependencies if self.store.get(dep)
            },
        )
        if extra_context:
            context.update(extra_context)
        return AgentRequest(
            task_id=task.task_id,
            prompt=task.description,
            task_type=task.task_type,
            priority=task.priority,
            context=context,
            timeout_ms=task.timeout_ms
        )

    async def _execute(self, task_id: str, agent_id: str):
        task = self.store.require(task_id)
        request = self.build_request(task)
        try:
            response = await self.dispatcher.invoke(agent_id, request)
        except asyncio.CancelledError:
            self._invoking.discard(task_id)
            if task_id not in self._cancel_requests:
                raise
            response = self._cancelled_response(task_id, agent_id)
        self._invoking.discard(task_id)
        await self._complete(task_id, agent_id, response)

    def _on_execution_done(self, task_id: str, agent_id: str, execution: asyncio.Task):
        # Cancelled before its first step, so _execute never saw the CancelledError
        if execution.cancelled() and not self._stopping and task_id in self._inflight:
            followup = asyncio.create_task(
                self._complete(task_id, agent_id, self._cancelled_response(task_id, agent_id))
            )
            self._background.add(followup)
            followup.add_done_callback(self._background.discard)

    def _cancelled_response(self, task_id: str, agent_id: str) -> AgentResponse:
        return AgentResponse(
            task_id=task_id,
            agent_id=agent_id,
            success=False,
            error=f"Cancelled: {self._cancel_requests.get(task_id, 'cancelled')}",
            error_code=CANCELLED_ERROR_CODE
        )

    async def _complete(self, task_id: str, agent_id: str, response: AgentResponse):
        """Apply an agent-reported outcome."""
        async with self._lock:
            self._executions.pop(task_id, None)
            self._inflight.pop(task_id, None)
            self._invoking.discard(task_id)
            cancel_reason = self._cancel_requests.pop(task_id, None)
            task = self.store.get(task_id)

            if cancel_reason is not None:
                outcome = TaskOutcome.CANCELLED
            elif response.success:
                outcome = TaskOutcome.COMPLETED
            elif response.error_code == "DispatchTimeout":
                outcome = TaskOutcome.TIMED_OUT
            else:
                outcome = TaskOutcome.FAILED

            self.tracker.release(
                agent_id, task_id, outcome, response.duration_ms,
                task.task_type.value if task else None
            )
            self.after_release(agent_id)

            if task is None or task.status != TaskStatus.IN_PROGRESS:
                return

            if cancel_reason is not None:
                self._mark_cancelled(task, cancel_reason)
            elif response.success:
                self._mark_completed(task, response.result, response.duration_ms)
            else:
                self._handle_failure(task, response.error, response.error_code)
        self.wake()

    async def finish_collaboration(
        self,
        task_id: str,
        session: 'CollaborationSession',
        success: bool,
        output: Any = None,
        error: Optional[str] = None,
        error_code: Optional[str] = None,
        cancel_reason: Optional[str] = None,
        retryable: bool = True
    ):
        """Apply the termination of a collaboration session to its task."""
        async with self._lock:
            if self.coordinator is not None:
                self.coordinator.release_all(session, success)
            for agent_id in session.agent_ids:
                self.after_release(agent_id)

            task = self.store.get(task_id)
            if task is None or task.status != TaskStatus.IN_PROGRESS:
                return

            duration_ms = None
            if task.started_at is not None:
                duration_ms = (datetime.now() - task.started_at).total_seconds() * 1000

            if cancel_reason is not None:
                self._mark_cancelled(task, cancel_reason)
            elif success:
                self._mark_completed(task, output, duration_ms)
            else:
                self._handle_failure(task, error, error_code, retryable=retryable)
        self.wake()

    def _start_collaboration(self, task: Task) -> bool:
        if self.coordinator is None:
            self.logger.error("Collaborative task without a coordinator", task_id=task.task_id)
            self.resolver.take(task.task_id)
            self._mark_failed(task, "No collaboration coordinator configured", "ConfigurationError")
            return False

        session = self.coordinator.try_start(task)
        if session is None:
            self._report_unavailable(task)
            return False

        self.resolver.take(task.task_id)
        lead = session.lead_agent_id
        self.store.update(task.task_id, status=TaskStatus.ASSIGNED, assigned_agent_id=lead,
                          collaboration_session_id=session.session_id,
                          output=None, error=None, error_code=None)
        self._publish(EventType.TASK_ASSIGNED, task, agent_id=lead,
                      participants=session.agent_ids, session_id=session.session_id)
        for agent_id in session.agent_ids:
            self._refresh_agent(agent_id)

        self.store.update(task.task_id, status=TaskStatus.IN_PROGRESS, started_at=datetime.now())
        self._publish(EventType.TASK_STARTED, task, agent_id=lead, session_id=session.session_id)
        self.metrics.increment_counter("tasks.dispatched")
        self.logger.info("Collaborative task dispatched", task_id=task.task_id,
                         strategy=session.strategy.value, participants=session.agent_ids)
        self.coordinator.launch(task, session)
        return True

    # Outcome handling (caller holds the lock)

    def _mark_completed(self, task: Task, output: Any, duration_ms: Optional[float]):
        self.store.update(task.task_id, status=TaskStatus.COMPLETED, output=output, error=None,
                          error_code=None, completed_at=datetime.now(), duration_ms=duration_ms)
        self.metrics.increment_counter("tasks.completed")
        self.logger.info("Task completed", task_id=task.task_id, agent_id=task.assigned_agent_id,
                         duration_ms=round(duration_ms or 0.0, 2))
        self._publish(EventType.TASK_COMPLETED, task, result=output, duration_ms=duration_ms,
                      agent_id=task.assigned_agent_id)
        self._notify_terminal(task.task_id)
        self.resolver.on_completed(task.task_id)

    def _handle_failure(self, task: Task, error: Optional[str], error_code: Optional[str],
                        retryable: bool = True):
        error = error or "Task failed"
        if retryable and task.retry_count < self.config.max_retries:
            attempt = task.retry_count + 1
            self.store.update(task.task_id, status=TaskStatus.PENDING, retry_count=attempt,
                              assigned_agent_id=None, collaboration_session_id=None,
                              started_at=None, error=error, error_code=error_code)
            self.metrics.increment_counter("tasks.retried")
            self.logger.warning("Task failed, retrying", task_id=task.task_id, error=error,
                                retry=attempt, max_retries=self.config.max_retries)
            self._publish(EventType.TASK_FAILED, task, error=error, error_code=error_code,
                          will_retry=True, retry=attempt)
            self._schedule_retry(task.task_id, attempt)
            return

        if retryable and self.config.max_retries > 0:
            limit = RetryLimitExceeded(task.task_id, task.retry_count + 1, error)
            error, error_code = limit.message, limit.error_code
        self._mark_failed(task, error, error_code)

    def _schedule_retry(self, task_id: str, attempt: int):
        delay = self.retry_config.compute_delay(attempt)
        task = self.store.get(task_id)
        if delay <= 0:
            self.resolver.requeue(task_id)
        else:
            self._retry_timers[task_id] = asyncio.get_running_loop().call_later(
                delay, self._retry_due, task_id
            )
        self._publish(EventType.TASK_REQUEUED, task, reason="retry", retry=attempt,
                      delay_seconds=round(delay, 3))

    def _retry_due(self, task_id: str):
        self._retry_timers.pop(task_id, None)
        if self._stopping:
            return
        if self.resolver.requeue(task_id):
            self.wake()

    def _cancel_retry_timer(self, task_id: str):
        handle = self._retry_timers.pop(task_id, None)
        if handle is not None:
            handle.cancel()

    def _mark_failed(self, task: Task, error: str, error_code: Optional[str]):
        self.store.update(task.task_id, status=TaskStatus.FAILED, error=error,
                          error_code=error_code, completed_at=datetime.now())
        self.metrics.increment_counter("tasks.failed")
        self.logger.error("Task failed", task_id=task.task_id, error=error, error_code=error_code)
        self._publish(EventType.TASK_FAILED, task, error=error, error_code=error_code, will_retry=False)
        self._notify_terminal(task.task_id)

        for dependent_id in self.resolver.on_failed(task.task_id):
            self._block(self.store.get(dependent_id), task.task_id)

    def _mark_cancelled(self, task: Task, reason: str):
        self._publish(EventType.TASK_CANCELLED, task, reason=reason)
        self._mark_failed(task, f"Cancelled: {reason}", CANCELLED_ERROR_CODE)

    def _block(self, task: Task, root: str):
        self.resolver.discard(task.task_id)
        self.tracker.dequeue(task.task_id)
        self._cancel_retry_timer(task.task_id)
        self.store.update(task.task_id, status=TaskStatus.BLOCKED, blocked_by=root)
        self.logger.warning("Task blocked by failed dependency", task_id=task.task_id, blocked_by=root)
        self._publish(EventType.TASK_BLOCKED, task, blocked_by=root)
        self._notify_terminal(task.task_id)

    def _reset_to_pending(self, task_id: str):
        task = self.store.get(task_id)
        if task is None or task.status not in (TaskStatus.ASSIGNED, TaskStatus.IN_PROGRESS):
            return
        self.store.update(task_id, status=TaskStatus.PENDING, assigned_agent_id=None,
                          collaboration_session_id=None, started_at=None)
        self.resolver.requeue(task_id)

    def after_release(self, agent_id: str):
        """Refresh an agent after a slot was freed and finish a deferred removal."""
        instance = self.registry.find(agent_id)
        if instance is None or not self.tracker.has_agent(agent_id):
            return
        running = len(self.tracker.running_tasks(agent_id))
        if instance.pending_removal:
            if running == 0:
                removal = asyncio.create_task(self._remove_agent(agent_id))
                self._background.add(removal)
                removal.add_done_callback(self._background.discard)
            return
        self.registry.refresh_state(agent_id, running)

    def _refresh_agent(self, agent_id: str):
        self.registry.refresh_state(agent_id, len(self.tracker.running_tasks(agent_id)))

    def _running_count(self, agent_id: str) -> int:
        if not self.tracker.has_agent(agent_id):
            return 0
        return len(self.tracker.running_tasks(agent_id))

    # Commands

    async def cancel(self, task_id: str, reason: str = "cancelled by request") -> Task:
        """
        Cancel a task.

        Pending tasks fail immediately. Running tasks are asked to stop and
        fail once the agent acknowledges or times out.

        Raises:
            TaskNotFound: If the task does not exist
            InvalidTransition: If the task already reached a terminal status
        """
        async with self._lock:
            task = self.store.require(task_id)
            if task.is_terminal:
                raise InvalidTransition(task_id, task.status.value, "cancelled")

            if task.status == TaskStatus.PENDING:
                self.resolver.discard(task_id)
                self.tracker.dequeue(task_id)
                self._cancel_retry_timer(task_id)
                self._mark_cancelled(task, reason)
            elif task.is_collaborative and self.coordinator is not None and self.coordinator.is_active(task_id):
                self.coordinator.request_cancel(task_id, reason)
            elif task_id in self._invoking:
                self._cancel_requests[task_id] = reason
                self._executions[task_id].cancel()
                self.logger.info("Cancellation requested", task_id=task_id, reason=reason)
            else:
                self.logger.info("Outcome already in flight, cancellation ignored", task_id=task_id)
        return task

    async def retry(self, task_id: str) -> Task:
        """
        Manually retry a failed task.

        Resets its retry count and returns dependents it blocked to pending.

        Raises:
            InvalidTransition: If the task is not failed
        """
        async with self._lock:
            task = self.store.require(task_id)
            if task.status != TaskStatus.FAILED:
                raise InvalidTransition(task_id, task.status.value, "pending")

            self.store.update(task_id, status=TaskStatus.PENDING, retry_count=0, assigned_agent_id=None,
                              collaboration_session_id=None, output=None, error=None, error_code=None,
                              started_at=None, completed_at=None, duration_ms=None)

            # A prerequisite may have failed while this task was not pending
            root = self.resolver.failed_root(task)
            if root is not None:
                self._block(task, root)
                for dependent_id in self.resolver.on_retry(task_id):
                    self.store.update(dependent_id, blocked_by=root)
                return task

            self.resolver.requeue(task_id)
            self.logger.info("Task retried", task_id=task_id)
            self._publish(EventType.TASK_REQUEUED, task, reason="manual retry")

            for dependent_id in self.resolver.on_retry(task_id):
                dependent = self.store.get(dependent_id)
                self.store.update(dependent_id, status=TaskStatus.PENDING, blocked_by=None)
                other_root = self.resolver.failed_root(dependent)
                if other_root is not None:
                    self.store.update(dependent_id, status=TaskStatus.BLOCKED, blocked_by=other_root)
                    continue
                self.resolver.requeue(dependent_id)
                self._publish(EventType.TASK_REQUEUED, dependent, reason="dependency retried",
                              retried_task_id=task_id)
        self.wake()
        return task

    async def wait_for(self, task_id: str, timeout: Optional[float] = None) -> Task:
        """Wait until a task reaches a terminal status."""
        task = self.store.require(task_id)
        if task.is_terminal:
            return task
        event = self._waiters.setdefault(task_id, asyncio.Event())
        await asyncio.wait_for(event.wait(), timeout=timeout)
        return self.store.require(task_id)

    def _notify_terminal(self, task_id: str):
        event = self._waiters.pop(task_id, None)
        if event is not None:
            event.set()

    # Agents

    async def register_agent(self, agent: 'BaseAgent') -> 'AgentInstance':
        """Register an agent and start tracking its capacity."""
        if agent.agent_id in self.registry:
            raise ValueError(f"Agent {agent.agent_id} is already registered")
        self.tracker.register_agent(agent.agent_id, agent.config.max_concurrent_tasks)
        try:
            instance = await self.registry.register(agent)
        except Exception:
            self.tracker.unregister_agent(agent.agent_id)
            raise
        self.wake()
        return instance

    async def unregister_agent(self, agent_id: str) -> bool:
        """
        Unregister an agent.

        Queued tasks go back to the global ready sequence. If tasks are still
        running the agent goes offline and is removed when the last one finishes.

        Returns:
            True if removed now, False if removal is deferred
        """
        async with self._lock:
            self.registry.get(agent_id)
            for task_id in self.tracker.queued_tasks(agent_id):
                self.tracker.dequeue(task_id)
                task = self.store.get(task_id)
                if task is not None:
                    self._publish(EventType.TASK_REQUEUED, task, reason="agent unregistered",
                                  agent_id=agent_id)

            if self.tracker.running_tasks(agent_id):
                self.registry.mark_pending_removal(agent_id)
                self.logger.info("Agent removal deferred until running tasks finish", agent_id=agent_id)
                return False
            self.tracker.unregister_agent(agent_id)

        await self.registry.unregister(agent_id)
        self.wake()
        return True

    async def _remove_agent(self, agent_id: str):
        async with self._lock:
            if not self.tracker.has_agent(agent_id) or self.tracker.running_tasks(agent_id):
                return
            self.tracker.unregister_agent(agent_id)
        await self.registry.unregister(agent_id)

    async def update_capacity(self, agent_id: str, max_concurrent_tasks: int) -> 'AgentCapacitySnapshot':
        """Administrative change of an agent's concurrency limit."""
        async with self._lock:
            self.registry.get(agent_id)
            previous = self.tracker.update_capacity(agent_id, max_concurrent_tasks)
            self.registry.update_max_concurrent_tasks(agent_id, max_concurrent_tasks)
            snapshot = self.tracker.snapshot(agent_id)
            self.event_bus.publish(
                EventType.CAPACITY_UPDATED,
                agent_id=agent_id,
                previous_max_concurrent_tasks=previous,
                max_concurrent_tasks=max_concurrent_tasks,
                snapshot=snapshot
            )
        self.wake()
        return snapshot

    # Queries

    def running_tasks(self) -> List[Task]:
        return self.store.query(status=TaskStatus.IN_PROGRESS)

    def get_task(self, task_id: str) -> Task:
        task = self.store.get(task_id)
        if task is None:
            raise TaskNotFound(task_id)
        return task

    def status(self) -> Dict[str, Any]:
        return {
            "running": self._running,
            "ready_tasks": self.resolver.ready_count,
            "in_flight": len(self._inflight),
            "pending_retries": len(self._retry_timers),
            "tasks_by_status": self.store.count_by_status(),
        }

    def _publish(self, event_type: EventType, task: Optional[Task], **payload: Any):
        if task is None:
            return
        self.event_bus.publish(event_type, task_id=task.task_id, task=task.model_copy(), **payload)

"""
Main orchestrator: wires the registry, capacity tracker, dependency
resolver, scheduler, collaboration coordinator, load balancer and event bus
into one service object.
"""

import asyncio
from typing import Any, Dict, Iterable, List, Optional, Union

from ..agents.base import BaseAgent
from ..models.capacity import (
    AgentCapacitySnapshot, CapacityMetrics, LoadBalancingRecommendations, RebalanceMove
)
from ..models.collaboration import CollaborationSession, SessionStatus
from ..models.core import Task, TaskPriority, TaskSpec, TaskStatus, TaskType
from ..storage.persistence import TaskPersistence
from ..storage.task_store import TaskStore
from ..utils.config import SystemConfig, get_config
from ..utils.error_handler import CircuitBreakerConfig, ErrorHandler
from ..utils.logging import get_logger
from ..utils.monitoring import MetricsCollector
from .capacity import CapacityTracker
from .collaboration import AgreementPolicy, CollaborationCoordinator
from .dependencies import DependencyResolver, topological_order
from .dispatcher import TaskDispatcher
from .events import EventBus, EventHandler, EventType
from .load_balancer import LoadBalancer
from .registry import AgentInstance, AgentRegistry
from .scheduler import Scheduler
from .selection import AgentSelector

SpecLike = Union[TaskSpec, Dict[str, Any]]


class AgentOrchestrator:
    """
    Orchestrates tasks across a pool of agents.

    Use as an async context manager, or call ``start`` and ``shutdown``
    explicitly. Submission, cancellation and capacity changes are safe to
    call from any coroutine on the orchestrator's event loop.
    """

    def __init__(
        self,
        config: Optional[SystemConfig] = None,
        event_bus: Optional[EventBus] = None,
        metrics: Optional[MetricsCollector] = None
    ):
        self.config = config or get_config()
        self.logger = get_logger(__name__)

        self.event_bus = event_bus or EventBus()
        self.metrics = metrics or MetricsCollector()
        scheduler_config = self.config.scheduler
        self.error_handler = ErrorHandler(CircuitBreakerConfig(
            failure_threshold=scheduler_config.agent_failure_threshold,
            recovery_timeout=scheduler_config.agent_recovery_timeout_seconds
        ))

        # Core components
        self.store = TaskStore()
        self.resolver = DependencyResolver(self.store)
        self.tracker = CapacityTracker(self.config.capacity.duration_smoothing)
        self.registry = AgentRegistry(
            self.event_bus, self.error_handler,
            health_check_interval_seconds=self.config.registry.health_check_interval_seconds
        )
        self.selector = AgentSelector(self.registry, self.tracker)
        self.dispatcher = TaskDispatcher(
            self.registry, self.error_handler, self.metrics,
            default_timeout_ms=scheduler_config.default_timeout_ms
        )
        self.scheduler = Scheduler(
            self.store, self.resolver, self.registry, self.tracker, self.selector,
            self.dispatcher, self.event_bus, scheduler_config, self.metrics
        )
        self.coordinator = CollaborationCoordinator(self.scheduler, self.config.collaboration)
        self.load_balancer = LoadBalancer(self.scheduler, self.config.load_balancer)

        self.persistence: Optional[TaskPersistence] = None
        if self.config.persistence.enabled:
            self.persistence = TaskPersistence(self.config.persistence.storage_path)

        self._started = False

    # Lifecycle

    async def start(self):
        """Restore persisted tasks and start the background loops."""
        if self._started:
            return

        if self.persistence is not None:
            await self.persistence.initialize()
            await self._restore_tasks()

        await self.registry.start()
        await self.scheduler.start()
        await self.load_balancer.start()
        self._started = True
        self.logger.info(f"Agent orchestrator started with {len(self.registry)} agents")

    async def shutdown(self, drain: bool = False, drain_timeout: Optional[float] = None) -> List[str]:
        """
        Stop the orchestrator.

        Args:
            drain: Let in-flight tasks finish first
            drain_timeout: Upper bound on the drain wait in seconds

        Returns:
            IDs of in-flight tasks abandoned and reset to pending
        """
        await self.load_balancer.stop()
        abandoned = await self.scheduler.stop(drain=drain, drain_timeout=drain_timeout)
        await self.registry.stop()

        if self.persistence is not None:
            await self.persistence.save_tasks(self.store.all())

        await self.event_bus.drain()
        self._started = False
        self.logger.info("Agent orchestrator shut down")
        return abandoned

    async def __aenter__(self) -> 'AgentOrchestrator':
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.shutdown()

    @property
    def is_running(self) -> bool:
        return self._started

    async def _restore_tasks(self) -> int:
        tasks = await self.persistence.load_tasks()
        if not tasks or len(self.store):
            return 0

        by_id = {task.task_id: task for task in sorted(tasks, key=lambda t: t.sequence)}
        order = topological_order({task_id: task.dependencies for task_id, task in by_id.items()})
        async with self.scheduler.lock:
            self.store.restore(by_id[task_id] for task_id in order)
            for task_id in order:
                self.resolver.restore(by_id[task_id])
            for task_id in order:
                if by_id[task_id].status == TaskStatus.PENDING:
                    self.resolver.requeue(task_id)

        self.logger.info(f"Restored {len(order)} tasks from snapshot")
        return len(order)

    # Agents

    async def register_agent(self, agent: BaseAgent) -> AgentInstance:
        return await self.scheduler.register_agent(agent)

    async def unregister_agent(self, agent_id: str) -> bool:
        """Unregister an agent; False when removal waits for running tasks."""
        return await self.scheduler.unregister_agent(agent_id)

    async def update_agent_capacity(self, agent_id: str, max_concurrent_tasks: int) -> AgentCapacitySnapshot:
        return await self.scheduler.update_capacity(agent_id, max_concurrent_tasks)

    def get_agent(self, agent_id: str) -> AgentInstance:
        return self.registry.get(agent_id)

    def list_agents(self) -> List[AgentInstance]:
        return self.registry.list_agents()

    # Tasks

    async def submit_task(self, spec: SpecLike, dispatch: bool = False) -> Task:
        """
        Submit one task.

        Args:
            spec: Task spec, or a dict with the same fields
            dispatch: Run a scheduling tick before returning

        Raises:
            CycleDetected: If the dependencies would form a cycle
            UnknownDependency: If a dependency ID is not registered
        """
        task = await self.scheduler.submit(self._coerce(spec))
        if dispatch:
            await self.scheduler.tick()
        return task

    async def submit_tasks(self, specs: Iterable[SpecLike], dispatch: bool = False) -> List[Task]:
        """Submit an ordered batch atomically; later specs may depend on earlier ones."""
        tasks = await self.scheduler.submit_batch([self._coerce(spec) for spec in specs])
        if dispatch:
            await self.scheduler.tick()
        return tasks

    def _coerce(self, spec: SpecLike) -> TaskSpec:
        return spec if isinstance(spec, TaskSpec) else TaskSpec(**spec)

    def get_task(self, task_id: str) -> Task:
        return self.scheduler.get_task(task_id)

    def list_tasks(
        self,
        status: Optional[TaskStatus] = None,
        project_id: Optional[str] = None,
        agent_id: Optional[str] = None,
        task_type: Optional[TaskType] = None,
        priority: Optional[TaskPriority] = None
    ) -> List[Task]:
        return self.store.query(status=status, project_id=project_id, agent_id=agent_id,
                                task_type=task_type, priority=priority)

    def tasks_for_project(self, project_id: str) -> List[Task]:
        return self.store.query(project_id=project_id)

    def running_tasks(self) -> List[Task]:
        return self.scheduler.running_tasks()

    async def cancel_task(self, task_id: str, reason: str = "cancelled by request") -> Task:
        return await self.scheduler.cancel(task_id, reason)

    async def retry_task(self, task_id: str) -> Task:
        return await self.scheduler.retry(task_id)

    async def add_dependencies(self, task_id: str, dependencies: Iterable[str]) -> Task:
        return await self.scheduler.add_dependencies(task_id, dependencies)

    def get_dependency_chain(self, task_id: str) -> List[Task]:
        """Transitive prerequisites of a task, in the order they must run."""
        return [self.store.require(dep) for dep in self.resolver.dependency_chain(task_id)]

    async def wait_for_task(self, task_id: str, timeout: Optional[float] = None) -> Task:
        return await self.scheduler.wait_for(task_id, timeout=timeout)

    async def wait_for_tasks(self, task_ids: Iterable[str], timeout: Optional[float] = None) -> List[Task]:
        return await asyncio.wait_for(
            asyncio.gather(*(self.scheduler.wait_for(task_id) for task_id in task_ids)),
            timeout=timeout
        )

    # Capacity

    def get_capacity_snapshot(self, agent_id: Optional[str] = None):
        """One agent's snapshot, or every agent's keyed by ID."""
        if agent_id is not None:
            self.registry.get(agent_id)
            return self.tracker.snapshot(agent_id)
        return self.tracker.snapshot_all()

    def get_capacity_metrics(self) -> CapacityMetrics:
        return self.load_balancer.capacity_metrics()

    def get_recommendations(self) -> LoadBalancingRecommendations:
        return self.load_balancer.recommend()

    async def rebalance(self) -> List[RebalanceMove]:
        return await self.load_balancer.rebalance()

    # Collaboration

    def get_session(self, session_id: str) -> Optional[CollaborationSession]:
        return self.coordinator.get_session(session_id)

    def list_sessions(self, status: Optional[SessionStatus] = None) -> List[CollaborationSession]:
        return self.coordinator.list_sessions(status)

    def register_agreement_policy(self, name: str, policy: AgreementPolicy):
        self.coordinator.register_policy(name, policy)

    # Events

    def subscribe(self, handler: EventHandler, event_types: Optional[Iterable[EventType]] = None) -> int:
        return self.event_bus.subscribe(handler, event_types)

    def unsubscribe(self, subscription_id: int) -> bool:
        return self.event_bus.unsubscribe(subscription_id)

    def open_event_stream(self, event_types: Optional[Iterable[EventType]] = None) -> asyncio.Queue:
        return self.event_bus.open_stream(event_types)

    def close_event_stream(self, queue: asyncio.Queue) -> bool:
        return self.event_bus.close_stream(queue)

    # Status

    def get_status(self) -> Dict[str, Any]:
        """Health and summary figures for the whole orchestrator."""
        capacity = self.load_balancer.capacity_metrics()
        return {
            "running": self._started,
            "scheduler": self.scheduler.status(),
            "registry": self.registry.get_registry_status(),
            "capacity": capacity.model_dump(mode='json'),
            "sessions": {
                status.value: len(self.coordinator.list_sessions(status)) for status in SessionStatus
            },
            "metrics": self.metrics.get_all_metrics(),
            "error_stats": self.error_handler.get_error_stats(),
        }

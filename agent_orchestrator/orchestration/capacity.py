"""
Per-agent capacity accounting.

Tracks running and queued task sets against each agent's concurrency limit
and keeps rolling performance statistics. ``reserve`` is a single
check-and-insert under a mutex, so concurrent scheduling attempts can never
double-book a slot.
"""

import threading
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional, Set, Tuple

from ..models.capacity import AgentCapacitySnapshot
from ..models.errors import CapacityExceeded, UnknownAgent
from ..utils.logging import get_logger

logger = get_logger(__name__)

NEUTRAL_SUCCESS_RATE = 0.5


class TaskOutcome(str, Enum):
    """Why a reservation is being released."""
    COMPLETED = "completed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"

    @property
    def counts_toward_stats(self) -> bool:
        return self != TaskOutcome.CANCELLED

    @property
    def is_success(self) -> bool:
        return self == TaskOutcome.COMPLETED


@dataclass
class AgentCapacity:
    """Capacity state and performance statistics for one agent."""
    agent_id: str
    max_concurrent_tasks: int
    running_tasks: Set[str] = field(default_factory=set)
    queued_tasks: List[str] = field(default_factory=list)
    total_processed: int = 0
    successful_tasks: int = 0
    failed_tasks: int = 0
    average_duration_ms: float = 0.0
    last_task_completed_at: Optional[datetime] = None
    type_stats: Dict[str, List[int]] = field(default_factory=dict)

    @property
    def available_slots(self) -> int:
        return max(0, self.max_concurrent_tasks - len(self.running_tasks))

    @property
    def utilization(self) -> float:
        return len(self.running_tasks) / self.max_concurrent_tasks * 100.0

    def success_rate(self, task_type: Optional[str] = None) -> float:
        """Fraction of successful outcomes, overall or for one task type."""
        if task_type is not None:
            successes, total = self.type_stats.get(task_type, (0, 0))
        else:
            successes, total = self.successful_tasks, self.total_processed
        if total == 0:
            return NEUTRAL_SUCCESS_RATE
        return successes / total

    def record_outcome(self, success: bool, duration_ms: Optional[float],
                       task_type: Optional[str], smoothing: float):
        """
        Fold one finished task into the statistics.

        The average duration is an exponential moving average: the first
        sample seeds it, each later sample contributes ``smoothing`` of its value.
        """
        self.total_processed += 1
        if success:
            self.successful_tasks += 1
        else:
            self.failed_tasks += 1
        self.last_task_completed_at = datetime.now()

        if duration_ms is not None:
            if self.total_processed == 1 or self.average_duration_ms == 0.0:
                self.average_duration_ms = duration_ms
            else:
                self.average_duration_ms = smoothing * duration_ms + (1 - smoothing) * self.average_duration_ms

        if task_type is not None:
            stats = self.type_stats.setdefault(task_type, [0, 0])
            stats[1] += 1
            if success:
                stats[0] += 1


class CapacityTracker:
    """Owns every agent's capacity counters."""

    def __init__(self, duration_smoothing: float = 0.3):
        if not 0.0 < duration_smoothing <= 1.0:
            raise ValueError("duration_smoothing must be in (0, 1]")
        self.duration_smoothing = duration_smoothing
        self._agents: Dict[str, AgentCapacity] = {}
        self._lock = threading.RLock()

    # Agent lifecycle

    def register_agent(self, agent_id: str, max_concurrent_tasks: int) -> AgentCapacity:
        if max_concurrent_tasks < 1:
            raise ValueError("max_concurrent_tasks must be a positive integer")
        with self._lock:
            if agent_id in self._agents:
                raise ValueError(f"Agent {agent_id} already tracked")
            capacity = AgentCapacity(agent_id=agent_id, max_concurrent_tasks=max_concurrent_tasks)
            self._agents[agent_id] = capacity
        logger.debug(f"Tracking capacity for {agent_id} ({max_concurrent_tasks} slots)")
        return capacity

    def unregister_agent(self, agent_id: str) -> Tuple[List[str], List[str]]:
        """
        Stop tracking an agent.

        Returns:
            (queued task IDs, running task IDs) the agent still held
        """
        with self._lock:
            capacity = self._agents.pop(agent_id, None)
            if capacity is None:
                return [], []
            return list(capacity.queued_tasks), sorted(capacity.running_tasks)

    def has_agent(self, agent_id: str) -> bool:
        return agent_id in self._agents

    def agent_ids(self) -> List[str]:
        return sorted(self._agents)

    def _get(self, agent_id: str) -> AgentCapacity:
        capacity = self._agents.get(agent_id)
        if capacity is None:
            raise UnknownAgent(agent_id)
        return capacity

    def update_capacity(self, agent_id: str, max_concurrent_tasks: int) -> int:
        """
        Change an agent's concurrency limit.

        Lowering the limit below the running count never preempts work; the
        agent simply has no free slots until enough tasks finish.

        Returns:
            The previous limit
        """
        if max_concurrent_tasks < 1:
            raise ValueError("max_concurrent_tasks must be a positive integer")
        with self._lock:
            capacity = self._get(agent_id)
            previous = capacity.max_concurrent_tasks
            capacity.max_concurrent_tasks = max_concurrent_tasks
        logger.info(f"Capacity of {agent_id} changed from {previous} to {max_concurrent_tasks}")
        return previous

    # Slots

    def available_slots(self, agent_id: str) -> int:
        with self._lock:
            return self._get(agent_id).available_slots

    def reserve(self, agent_id: str, task_id: str) -> None:
        """
        Atomically take a slot on an agent for a task.

        A successful reservation also removes the task from any agent queue.

        Raises:
            CapacityExceeded: If the agent has no free slot
            UnknownAgent: If the agent is not tracked
        """
        with self._lock:
            capacity = self._get(agent_id)
            if task_id in capacity.running_tasks:
                raise CapacityExceeded(agent_id, task_id, reason="already running")
            if capacity.available_slots <= 0:
                raise CapacityExceeded(agent_id, task_id)
            capacity.running_tasks.add(task_id)
            self._remove_from_queues(task_id)

    def release(self, agent_id: str, task_id: str, outcome: TaskOutcome,
                duration_ms: Optional[float] = None, task_type: Optional[str] = None) -> bool:
        """
        Free a task's slot and record its outcome.

        Releasing a task that is not running on the agent is a no-op.

        Returns:
            True if a slot was freed, False for a repeated or unknown release
        """
        with self._lock:
            capacity = self._agents.get(agent_id)
            if capacity is None or task_id not in capacity.running_tasks:
                logger.debug(f"Ignoring release of {task_id} on {agent_id}: not running")
                return False
            capacity.running_tasks.discard(task_id)
            if outcome.counts_toward_stats:
                capacity.record_outcome(outcome.is_success, duration_ms, task_type, self.duration_smoothing)
            return True

    def running_tasks(self, agent_id: str) -> Set[str]:
        with self._lock:
            return set(self._get(agent_id).running_tasks)

    def is_running(self, agent_id: str, task_id: str) -> bool:
        with self._lock:
            capacity = self._agents.get(agent_id)
            return capacity is not None and task_id in capacity.running_tasks

    # Agent-specific queues

    def enqueue(self, agent_id: str, task_id: str) -> bool:
        """Park a task on an agent's queue. A task sits on at most one queue."""
        with self._lock:
            capacity = self._get(agent_id)
            if task_id in capacity.queued_tasks:
                return False
            self._remove_from_queues(task_id)
            capacity.queued_tasks.append(task_id)
            return True

    def dequeue(self, task_id: str) -> Optional[str]:
        """Remove a task from whichever queue holds it. Returns that agent's ID."""
        with self._lock:
            return self._remove_from_queues(task_id)

    def move_queued(self, task_id: str, from_agent: str, to_agent: str) -> bool:
        """Move a queued task between agents in one step."""
        with self._lock:
            source = self._get(from_agent)
            target = self._get(to_agent)
            if task_id not in source.queued_tasks:
                return False
            source.queued_tasks.remove(task_id)
            target.queued_tasks.append(task_id)
            return True

    def queued_agent(self, task_id: str) -> Optional[str]:
        with self._lock:
            for capacity in self._agents.values():
                if task_id in capacity.queued_tasks:
                    return capacity.agent_id
        return None

    def queued_tasks(self, agent_id: str) -> List[str]:
        with self._lock:
            return list(self._get(agent_id).queued_tasks)

    def _remove_from_queues(self, task_id: str) -> Optional[str]:
        for capacity in self._agents.values():
            if task_id in capacity.queued_tasks:
                capacity.queued_tasks.remove(task_id)
                return capacity.agent_id
        return None

    # Reporting

    def utilization(self, agent_id: str) -> float:
        with self._lock:
            return self._get(agent_id).utilization

    def success_rate(self, agent_id: str, task_type: Optional[str] = None) -> float:
        with self._lock:
            return self._get(agent_id).success_rate(task_type)

    def snapshot(self, agent_id: str) -> AgentCapacitySnapshot:
        with self._lock:
            return self._snapshot(self._get(agent_id))

    def snapshot_all(self) -> Dict[str, AgentCapacitySnapshot]:
        """Best-effort snapshot of every agent."""
        with self._lock:
            return {agent_id: self._snapshot(c) for agent_id, c in sorted(self._agents.items())}

    def _snapshot(self, capacity: AgentCapacity) -> AgentCapacitySnapshot:
        return AgentCapacitySnapshot(
            agent_id=capacity.agent_id,
            max_concurrent_tasks=capacity.max_concurrent_tasks,
            running_tasks=sorted(capacity.running_tasks),
            queued_tasks=list(capacity.queued_tasks),
            available_slots=capacity.available_slots,
            utilization_percentage=round(capacity.utilization, 2),
            total_processed=capacity.total_processed,
            successful_tasks=capacity.successful_tasks,
            failed_tasks=capacity.failed_tasks,
            success_rate=capacity.success_rate() if capacity.total_processed else 0.0,
            average_duration_ms=round(capacity.average_duration_ms, 2),
            last_task_completed_at=capacity.last_task_completed_at,
        )

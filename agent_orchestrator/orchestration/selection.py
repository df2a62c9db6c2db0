"""
Agent selection primitives shared by the scheduler and the collaboration coordinator.
"""

from dataclasses import dataclass
from typing import Iterable, List, Optional

from ..models.core import Task
from .capacity import CapacityTracker
from .matching import capability_match_score
from .registry import AgentRegistry


@dataclass(frozen=True)
class AgentCandidate:
    """A compatible agent with the figures used to rank it."""
    agent_id: str
    match_score: float
    utilization: float
    success_rate: float
    available_slots: int

    @property
    def sort_key(self):
        return (-self.match_score, self.utilization, -self.success_rate, self.agent_id)


class AgentSelector:
    """
    Ranks agents for a task.

    Order: highest capability match, lowest utilization, highest success
    rate for the task type, then agent ID.
    """

    def __init__(self, registry: AgentRegistry, tracker: CapacityTracker):
        self.registry = registry
        self.tracker = tracker

    def rank(
        self,
        task: Task,
        require_capacity: bool = True,
        restrict_to: Optional[Iterable[str]] = None,
        exclude: Iterable[str] = ()
    ) -> List[AgentCandidate]:
        """
        Compatible, schedulable agents for a task, best first.

        Args:
            task: Task to place
            require_capacity: Drop agents with no free slot
            restrict_to: Only consider these agent IDs
            exclude: Never consider these agent IDs
        """
        allowed = set(restrict_to) if restrict_to is not None else None
        excluded = set(exclude)
        candidates = []

        for instance in self.registry.list_agents():
            agent_id = instance.agent_id
            if agent_id in excluded or (allowed is not None and agent_id not in allowed):
                continue
            if not self.tracker.has_agent(agent_id) or not instance.is_schedulable():
                continue

            score = capability_match_score(instance.config.capabilities, task)
            if score <= 0:
                continue

            slots = self.tracker.available_slots(agent_id)
            if require_capacity and slots <= 0:
                continue

            candidates.append(AgentCandidate(
                agent_id=agent_id,
                match_score=score,
                utilization=self.tracker.utilization(agent_id),
                success_rate=self.tracker.success_rate(agent_id, task.task_type.value),
                available_slots=slots,
            ))

        candidates.sort(key=lambda c: c.sort_key)
        return candidates

    def select(self, task: Task, **kwargs) -> Optional[str]:
        """Best agent ID for a task, or None."""
        ranked = self.rank(task, **kwargs)
        return ranked[0].agent_id if ranked else None

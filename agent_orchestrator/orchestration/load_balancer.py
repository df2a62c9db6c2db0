"""
Load balancing: utilization sampling, classification, recommendations and
migration of queued work from overloaded agents to idle ones.
"""

import asyncio
from collections import deque
from typing import Deque, Dict, List, Optional, Tuple

from ..models.capacity import (
    AgentClassification, CapacityMetrics, LoadBalancingRecommendations, Redistribution, RebalanceMove
)
from ..models.core import TaskStatus
from ..utils.config import LoadBalancerConfig
from ..utils.logging import LoggerMixin
from .events import EventType
from .scheduler import Scheduler


class LoadBalancer(LoggerMixin):
    """
    Reads capacity state, classifies agents and rebalances queued tasks.

    Only tasks parked on an agent queue (still ``pending``) are ever moved;
    running work stays where it is.
    """

    def __init__(self, scheduler: Scheduler, config: Optional[LoadBalancerConfig] = None):
        self.scheduler = scheduler
        self.tracker = scheduler.tracker
        self.registry = scheduler.registry
        self.selector = scheduler.selector
        self.store = scheduler.store
        self.event_bus = scheduler.event_bus
        self.metrics = scheduler.metrics
        self.config = config or LoadBalancerConfig()

        self._samples: Dict[str, Deque[float]] = {}
        self._running = False
        self._balance_task: Optional[asyncio.Task] = None

    # Sampling and classification

    def observe(self) -> Dict[str, float]:
        """Record one utilization sample per agent."""
        utilization = {}
        for agent_id, snapshot in self.tracker.snapshot_all().items():
            window = self._samples.setdefault(agent_id, deque(maxlen=self.config.window_size))
            window.append(snapshot.utilization_percentage)
            utilization[agent_id] = snapshot.utilization_percentage
            self.metrics.set_gauge("capacity.utilization", snapshot.utilization_percentage,
                                   tags={"agent_id": agent_id})

        for agent_id in list(self._samples):
            if agent_id not in utilization:
                del self._samples[agent_id]
        return utilization

    def classify(self, sample: bool = True) -> AgentClassification:
        """
        Split agents into bottlenecked and underutilized.

        An agent is classified only when every sample in its window is past
        the corresponding watermark. Until the window fills, the samples
        taken so far make up the window. An agent with no samples yet is
        judged on its current utilization without recording it.
        """
        if sample:
            self.observe()

        snapshots = self.tracker.snapshot_all()
        classification = AgentClassification()
        for agent_id in sorted(snapshots):
            window = self._samples.get(agent_id) or [snapshots[agent_id].utilization_percentage]
            if all(u >= self.config.high_water_percentage for u in window):
                classification.bottleneck.append(agent_id)
            elif all(u <= self.config.low_water_percentage for u in window):
                instance = self.registry.find(agent_id)
                if instance is not None and instance.is_schedulable():
                    classification.underutilized.append(agent_id)
        return classification

    def capacity_metrics(self, sample: bool = False) -> CapacityMetrics:
        """Aggregate capacity over every tracked agent."""
        snapshots = self.tracker.snapshot_all()
        classification = self.classify(sample=sample)

        total = sum(s.max_concurrent_tasks for s in snapshots.values())
        used = sum(len(s.running_tasks) for s in snapshots.values())
        return CapacityMetrics(
            total_capacity=total,
            used_capacity=used,
            available_capacity=sum(s.available_slots for s in snapshots.values()),
            queued_tasks=sum(len(s.queued_tasks) for s in snapshots.values()),
            agent_utilization={agent_id: s.utilization_percentage for agent_id, s in snapshots.items()},
            bottleneck_agents=classification.bottleneck,
            underutilized_agents=classification.underutilized,
        )

    # Recommendations

    def recommend(self) -> LoadBalancingRecommendations:
        """Scale-up, scale-down and redistribution advice."""
        classification = self.classify(sample=False)
        snapshots = self.tracker.snapshot_all()
        recommendations = LoadBalancingRecommendations()

        for agent_id in classification.bottleneck:
            snapshot = snapshots.get(agent_id)
            if snapshot is not None and snapshot.queued_tasks:
                recommendations.scale_up.append(agent_id)

        for agent_id in classification.underutilized:
            snapshot = snapshots.get(agent_id)
            if (snapshot is not None and snapshot.max_concurrent_tasks > 1
                    and snapshot.total_processed < self.config.scale_down_min_processed):
                recommendations.scale_down.append(agent_id)

        recommendations.redistribute = self._plan(classification)
        return recommendations

    def _plan(self, classification: AgentClassification) -> List[Redistribution]:
        """
        Match queued tasks on bottlenecked agents to free slots on
        underutilized, capability-compatible agents.
        """
        free_slots = {
            agent_id: self.tracker.available_slots(agent_id)
            for agent_id in classification.underutilized
            if self.tracker.has_agent(agent_id)
        }
        pairs: Dict[Tuple[str, str], List[str]] = {}

        for source in classification.bottleneck:
            if not self.tracker.has_agent(source):
                continue
            for task_id in self.tracker.queued_tasks(source):
                task = self.store.get(task_id)
                if task is None or task.status != TaskStatus.PENDING or task.is_collaborative:
                    continue
                for target, slots in free_slots.items():
                    if slots <= 0 or target == source:
                        continue
                    if not self.selector.rank(task, restrict_to=[target]):
                        continue
                    pairs.setdefault((source, target), []).append(task_id)
                    free_slots[target] -= 1
                    break

        return [
            Redistribution(from_agent=source, to_agent=target, task_count=len(task_ids), task_ids=task_ids)
            for (source, target), task_ids in pairs.items()
        ]

    # Rebalancing

    async def rebalance(self, sample: bool = True) -> List[RebalanceMove]:
        """
        Move queued tasks off bottlenecked agents.

        Each task keeps its ``pending`` status; only the agent queue holding
        it changes.

        Returns:
            The moves performed
        """
        moves: List[RebalanceMove] = []
        with self.logged_operation("rebalance"):
            async with self.scheduler.lock:
                plan = self._plan(self.classify(sample=sample))
                for redistribution in plan:
                    for task_id in redistribution.task_ids:
                        task = self.store.get(task_id)
                        if task is None or task.status != TaskStatus.PENDING:
                            continue
                        if not self.selector.rank(task, restrict_to=[redistribution.to_agent]):
                            continue
                        if not self.tracker.move_queued(task_id, redistribution.from_agent,
                                                        redistribution.to_agent):
                            continue

                        moves.append(RebalanceMove(
                            task_id=task_id,
                            from_agent=redistribution.from_agent,
                            to_agent=redistribution.to_agent
                        ))
                        self.event_bus.publish(
                            EventType.TASK_REBALANCED,
                            task_id=task_id,
                            task=task.model_copy(),
                            from_agent=redistribution.from_agent,
                            to_agent=redistribution.to_agent
                        )

        if moves:
            self.logger.info("Rebalanced queued tasks", moved=len(moves),
                             moves=[m.model_dump() for m in moves])
            self.scheduler.wake()
        return moves

    # Periodic balancing

    async def start(self):
        """Start the periodic balancing loop."""
        if self._running:
            return
        self._running = True
        self._balance_task = asyncio.create_task(self._balance_loop())
        self.logger.info("Load balancer started", interval_seconds=self.config.interval_seconds)

    async def stop(self):
        self._running = False
        if self._balance_task:
            self._balance_task.cancel()
            try:
                await self._balance_task
            except asyncio.CancelledError:
                pass
            self._balance_task = None
        self.logger.info("Load balancer stopped")

    @property
    def is_running(self) -> bool:
        return self._running

    async def _balance_loop(self):
        while self._running:
            try:
                await self.run_cycle()
                await asyncio.sleep(self.config.interval_seconds)
            except asyncio.CancelledError:
                break
            except Exception as e:
                self.log_operation_error("balance_cycle", e)
                await asyncio.sleep(self.config.interval_seconds)

    async def run_cycle(self) -> CapacityMetrics:
        """One sampling pass: publish metrics, warn on bottlenecks, rebalance when queues back up."""
        metrics = self.capacity_metrics(sample=True)
        self.event_bus.publish(EventType.METRICS_UPDATED, metrics=metrics)

        if metrics.bottleneck_agents:
            self.logger.warning("Agent bottlenecks detected", agents=metrics.bottleneck_agents,
                                queued_tasks=metrics.queued_tasks)
            self.event_bus.publish(
                EventType.CAPACITY_BOTTLENECK,
                agents=metrics.bottleneck_agents,
                queued_tasks=metrics.queued_tasks
            )

        if (self.config.auto_rebalance
                and metrics.queued_tasks > self.config.auto_rebalance_queue_threshold
                and metrics.available_capacity > 0):
            await self.rebalance(sample=False)
        return metrics

"""
Agent Registry with lifecycle management for Agent Orchestrator.

This module tracks registered agents, their declared capabilities and
live status, and runs background health checks.
"""

import asyncio
import time
from typing import Callable, Dict, List, Optional, Any
from datetime import datetime
from dataclasses import dataclass, field

from ..agents.base import BaseAgent
from ..models.core import AgentConfig, AgentState, CapabilityCategory, Task
from ..models.errors import UnknownAgent
from ..utils.error_handler import CircuitBreaker, ErrorHandler
from ..utils.logging import get_logger
from .events import EventBus, EventType
from .matching import capability_match_score

logger = get_logger(__name__)

SCHEDULABLE_STATES = frozenset({AgentState.IDLE, AgentState.BUSY})


@dataclass
class AgentInstance:
    """Represents a registered agent with its live status."""
    agent: BaseAgent
    circuit_breaker: CircuitBreaker
    state: AgentState = AgentState.IDLE
    registered_at: datetime = field(default_factory=datetime.now)
    last_health_check: Optional[datetime] = None
    last_activity: Optional[datetime] = None
    last_error: Optional[str] = None
    pending_removal: bool = False
    tripped: bool = False

    @property
    def config(self) -> AgentConfig:
        return self.agent.config

    @property
    def agent_id(self) -> str:
        return self.agent.agent_id

    def is_schedulable(self) -> bool:
        """Whether the agent may be handed new work."""
        if self.pending_removal:
            return False
        if self.state in SCHEDULABLE_STATES:
            return self.circuit_breaker.allows_requests()
        if self.state == AgentState.ERROR and self.tripped:
            # Half-open trial after the breaker's recovery timeout
            return self.circuit_breaker.allows_requests()
        return False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "agent_id": self.agent_id,
            "name": self.config.name,
            "provider": self.config.provider,
            "state": self.state.value,
            "capabilities": [c.model_dump(mode='json') for c in self.config.capabilities],
            "max_concurrent_tasks": self.config.max_concurrent_tasks,
            "timeout_ms": self.config.timeout_ms,
            "circuit_state": self.circuit_breaker.state.value,
            "registered_at": self.registered_at.isoformat(),
            "last_activity": self.last_activity.isoformat() if self.last_activity else None,
            "last_error": self.last_error,
            "pending_removal": self.pending_removal,
        }


class HealthChecker:
    """Monitors agent health and availability."""

    def __init__(self, check_interval_seconds: float = 30):
        self.check_interval_seconds = check_interval_seconds
        self.logger = get_logger(f"{__name__}.HealthChecker")
        self._running = False
        self._health_check_task: Optional[asyncio.Task] = None

    async def start(self, registry: 'AgentRegistry'):
        """Start the health checking background task."""
        if self._running:
            return

        self._running = True
        self._health_check_task = asyncio.create_task(self._health_check_loop(registry))
        self.logger.info("Health checker started")

    async def stop(self):
        """Stop the health checking background task."""
        self._running = False
        if self._health_check_task:
            self._health_check_task.cancel()
            try:
                await self._health_check_task
            except asyncio.CancelledError:
                pass
            self._health_check_task = None
        self.logger.info("Health checker stopped")

    async def _health_check_loop(self, registry: 'AgentRegistry'):
        """Main health checking loop."""
        while self._running:
            try:
                await self.check_all(registry)
                await asyncio.sleep(self.check_interval_seconds)
            except asyncio.CancelledError:
                break
            except Exception as e:
                self.logger.error(f"Health check error: {e}")
                await asyncio.sleep(self.check_interval_seconds)

    async def check_all(self, registry: 'AgentRegistry'):
        """Perform health checks on all registered agents."""
        for instance in registry.list_agents():
            await self.check_agent(registry, instance)

    async def check_agent(self, registry: 'AgentRegistry', instance: AgentInstance):
        """Check health of a single agent and update its state."""
        # Agents awaiting removal stay offline until their last task finishes
        if instance.pending_removal:
            return

        start_time = time.perf_counter()
        try:
            healthy = await instance.agent.health_check()
        except Exception as e:
            instance.last_error = str(e)
            registry.set_state(instance.agent_id, AgentState.ERROR)
            self.logger.warning(f"Health check failed for {instance.agent_id}: {e}")
            return

        instance.last_health_check = datetime.now()

        if not healthy:
            registry.set_state(instance.agent_id, AgentState.OFFLINE)
            self.logger.warning(f"Agent {instance.agent_id} reported itself unavailable")
            return

        # Recover agents whose error did not come from the circuit breaker
        if instance.state == AgentState.OFFLINE or (instance.state == AgentState.ERROR and not instance.tripped):
            registry.recover(instance.agent_id)

        check_time_ms = (time.perf_counter() - start_time) * 1000
        self.logger.debug(f"Health check passed for {instance.agent_id} in {check_time_ms:.2f}ms")


class AgentRegistry:
    """
    Registry of agents with capability indexing, live status and health monitoring.

    Capacity accounting is not kept here; ``refresh_state`` is told the
    running count by the caller, and ``running_count`` is wired by the
    scheduler for recoveries.
    """

    def __init__(self, event_bus: Optional[EventBus] = None, error_handler: Optional[ErrorHandler] = None,
                 health_check_interval_seconds: float = 30):
        self._agents: Dict[str, AgentInstance] = {}
        self._by_category: Dict[CapabilityCategory, set] = {}
        self.event_bus = event_bus or EventBus()
        self.error_handler = error_handler or ErrorHandler()
        self.health_checker = HealthChecker(health_check_interval_seconds)
        self.running_count: Callable[[str], int] = lambda agent_id: 0
        self.logger = get_logger(f"{__name__}.AgentRegistry")
        self._started = False

    async def start(self):
        """Start background services."""
        if self._started:
            return

        await self.health_checker.start(self)
        self._started = True
        self.logger.info("Agent registry started")

    async def stop(self):
        """Stop background services and shut every agent down."""
        if self._started:
            await self.health_checker.stop()
            self._started = False

        for agent_id in list(self._agents):
            await self._shutdown_agent(self._agents[agent_id])
        self.logger.info("Agent registry stopped")

    async def register(self, agent: BaseAgent) -> AgentInstance:
        """
        Register and initialize an agent.

        Args:
            agent: Agent to register

        Returns:
            AgentInstance: The registry entry

        Raises:
            ValueError: If an agent with the same ID is already registered
        """
        agent_id = agent.agent_id
        if agent_id in self._agents:
            raise ValueError(f"Agent {agent_id} is already registered")

        instance = AgentInstance(
            agent=agent,
            circuit_breaker=self.error_handler.get_circuit_breaker(agent_id)
        )

        try:
            await agent.initialize()
            instance.last_health_check = datetime.now()
        except Exception as e:
            instance.state = AgentState.ERROR
            instance.last_error = str(e)
            self.logger.error(f"Failed to initialize agent {agent_id}: {e}")

        self._agents[agent_id] = instance
        for capability in agent.config.capabilities:
            self._by_category.setdefault(capability.category, set()).add(agent_id)

        self.logger.info(f"Registered agent {agent_id} with {agent.config.max_concurrent_tasks} slots")
        self.event_bus.publish(
            EventType.AGENT_REGISTERED,
            agent_id=agent_id,
            agent=instance.to_dict()
        )
        return instance

    async def unregister(self, agent_id: str) -> AgentInstance:
        """
        Remove an agent and shut it down. Callers must ensure nothing is running on it.
        """
        instance = self.get(agent_id)
        del self._agents[agent_id]
        for members in self._by_category.values():
            members.discard(agent_id)
        self.error_handler.remove_circuit_breaker(agent_id)

        await self._shutdown_agent(instance)
        instance.state = AgentState.OFFLINE

        self.logger.info(f"Unregistered agent {agent_id}")
        self.event_bus.publish(EventType.AGENT_UNREGISTERED, agent_id=agent_id)
        return instance

    async def _shutdown_agent(self, instance: AgentInstance):
        try:
            await instance.agent.shutdown()
        except Exception as e:
            self.logger.error(f"Error shutting down agent {instance.agent_id}: {e}")

    def get(self, agent_id: str) -> AgentInstance:
        """Get an agent or raise UnknownAgent."""
        instance = self._agents.get(agent_id)
        if instance is None:
            raise UnknownAgent(agent_id)
        return instance

    def find(self, agent_id: str) -> Optional[AgentInstance]:
        return self._agents.get(agent_id)

    def list_agents(self) -> List[AgentInstance]:
        """All agents ordered by ID."""
        return [self._agents[agent_id] for agent_id in sorted(self._agents)]

    def agents_by_category(self, category: CapabilityCategory) -> List[str]:
        return sorted(self._by_category.get(category, ()))

    def __contains__(self, agent_id: str) -> bool:
        return agent_id in self._agents

    def __len__(self) -> int:
        return len(self._agents)

    # Status

    def set_state(self, agent_id: str, state: AgentState):
        instance = self.get(agent_id)
        if instance.state == state:
            return
        previous = instance.state
        instance.state = state
        self.logger.info(f"Agent {agent_id} state {previous.value} -> {state.value}")
        self.event_bus.publish(
            EventType.AGENT_STATUS_CHANGED,
            agent_id=agent_id,
            previous=previous.value,
            state=state.value
        )

    def recover(self, agent_id: str):
        """Return an agent to service, busy if it still has tasks running."""
        running = self.running_count(agent_id)
        self.set_state(agent_id, AgentState.BUSY if running > 0 else AgentState.IDLE)

    def refresh_state(self, agent_id: str, running: int = 0):
        """Flip a healthy agent between idle and busy based on its running count."""
        instance = self.find(agent_id)
        if instance is None or instance.state not in SCHEDULABLE_STATES:
            return
        self.set_state(agent_id, AgentState.BUSY if running > 0 else AgentState.IDLE)

    def mark_pending_removal(self, agent_id: str):
        instance = self.get(agent_id)
        instance.pending_removal = True
        self.set_state(agent_id, AgentState.OFFLINE)

    def update_max_concurrent_tasks(self, agent_id: str, max_concurrent_tasks: int):
        instance = self.get(agent_id)
        instance.agent.config = instance.config.model_copy(update={"max_concurrent_tasks": max_concurrent_tasks})

    def record_result(self, agent_id: str, success: bool, error: Optional[str] = None):
        """
        Feed an invocation outcome into the agent's circuit breaker.

        An opening breaker moves the agent to ``error``; a success after a
        trip returns it to service.
        """
        instance = self.find(agent_id)
        if instance is None:
            return
        instance.last_activity = datetime.now()
        breaker = instance.circuit_breaker

        if success:
            breaker.record_success()
            if instance.tripped:
                instance.tripped = False
                self.recover(agent_id)
            return

        instance.last_error = error
        breaker.record_failure()
        if breaker.is_open and not instance.pending_removal and instance.state != AgentState.OFFLINE:
            if not instance.tripped:
                self.logger.warning(
                    f"Circuit breaker opened for agent {agent_id} after {breaker.failure_count} failures"
                )
            instance.tripped = True
            self.set_state(agent_id, AgentState.ERROR)

    # Matching

    def match_score(self, agent_id: str, task: Task) -> float:
        return capability_match_score(self.get(agent_id).config.capabilities, task)

    def get_registry_status(self) -> Dict[str, Any]:
        """Summary of registered agents."""
        states: Dict[str, int] = {state.value: 0 for state in AgentState}
        for instance in self._agents.values():
            states[instance.state.value] += 1
        return {
            "started": self._started,
            "total_agents": len(self._agents),
            "agents_by_state": states,
            "agents": {agent_id: self._agents[agent_id].to_dict() for agent_id in sorted(self._agents)},
        }

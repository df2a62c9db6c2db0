"""
Orchestration engine for Agent Orchestrator.

This package provides:
- Agent registry with health checks and circuit breakers
- Per-agent capacity tracking and agent selection
- Dependency resolution and the scheduling loop
- Multi-agent collaboration strategies
- Load balancing and rebalancing of queued work
- The in-process event bus
"""

from .capacity import AgentCapacity, CapacityTracker, TaskOutcome
from .collaboration import (
    AGREEMENT_POLICIES,
    CollaborationCoordinator,
    highest_confidence,
    majority_vote
)
from .dependencies import DependencyResolver, topological_order
from .dispatcher import TaskDispatcher
from .events import EventBus, EventType, OrchestratorEvent
from .load_balancer import LoadBalancer
from .matching import capability_match_score, is_compatible
from .orchestrator import AgentOrchestrator
from .registry import AgentInstance, AgentRegistry, HealthChecker
from .scheduler import Scheduler
from .selection import AgentCandidate, AgentSelector

__all__ = [
    # Capacity
    'AgentCapacity',
    'CapacityTracker',
    'TaskOutcome',

    # Collaboration
    'AGREEMENT_POLICIES',
    'CollaborationCoordinator',
    'highest_confidence',
    'majority_vote',

    # Scheduling
    'DependencyResolver',
    'topological_order',
    'TaskDispatcher',
    'Scheduler',
    'AgentCandidate',
    'AgentSelector',
    'capability_match_score',
    'is_compatible',

    # Registry
    'AgentInstance',
    'AgentRegistry',
    'HealthChecker',

    # Events
    'EventBus',
    'EventType',
    'OrchestratorEvent',

    # Facade
    'AgentOrchestrator',
    'LoadBalancer',
]

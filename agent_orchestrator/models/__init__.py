"""
Data models for Agent Orchestrator.
"""

from .core import (
    TaskStatus, TaskPriority, TaskType, AgentState, CapabilityCategory,
    ComplexityTier, CollaborationStrategy, AgentCapability, AgentConfig,
    CollaborationSpec, TaskSpec, Task, TERMINAL_STATUSES, ACTIVE_STATUSES
)
from .capacity import (
    AgentCapacitySnapshot, CapacityMetrics, AgentClassification,
    Redistribution, LoadBalancingRecommendations, RebalanceMove
)
from .collaboration import (
    CollaborationSession, Participant, ParticipantRole, ParticipantStatus, SessionStatus
)
from .errors import (
    ErrorSeverity, ErrorCategory, ErrorDetails, ErrorResponse, OrchestratorError,
    CycleDetected, UnknownDependency, UnknownAgent, TaskNotFound, InvalidTransition,
    CapacityExceeded, DispatchTimeout, AgentUnavailable, CollaborationQuorumFailure,
    CollaborationAborted, RetryLimitExceeded
)

__all__ = [
    'TaskStatus', 'TaskPriority', 'TaskType', 'AgentState', 'CapabilityCategory',
    'ComplexityTier', 'CollaborationStrategy', 'AgentCapability', 'AgentConfig',
    'CollaborationSpec', 'TaskSpec', 'Task', 'TERMINAL_STATUSES', 'ACTIVE_STATUSES',
    'AgentCapacitySnapshot', 'CapacityMetrics', 'AgentClassification',
    'Redistribution', 'LoadBalancingRecommendations', 'RebalanceMove',
    'CollaborationSession', 'Participant', 'ParticipantRole', 'ParticipantStatus', 'SessionStatus',
    'ErrorSeverity', 'ErrorCategory', 'ErrorDetails', 'ErrorResponse', 'OrchestratorError',
    'CycleDetected', 'UnknownDependency', 'UnknownAgent', 'TaskNotFound', 'InvalidTransition',
    'CapacityExceeded', 'DispatchTimeout', 'AgentUnavailable', 'CollaborationQuorumFailure',
    'CollaborationAborted', 'RetryLimitExceeded',
]

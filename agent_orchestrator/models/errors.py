"""
Error handling models and exceptions for Agent Orchestrator.
"""

import uuid
from pydantic import BaseModel, Field
from typing import Optional, Dict, Any, List
from datetime import datetime
from enum import Enum


class ErrorSeverity(str, Enum):
    """Error severity levels."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ErrorCategory(str, Enum):
    """Categories of errors."""
    VALIDATION = "validation"
    DEPENDENCY = "dependency"
    CAPACITY = "capacity"
    DISPATCH = "dispatch"
    COLLABORATION = "collaboration"
    SCHEDULING = "scheduling"
    SYSTEM = "system"


class ErrorDetails(BaseModel):
    """Detailed error information."""
    error_id: str = Field(..., min_length=1)
    error_code: str = Field(default="OrchestratorError")
    category: ErrorCategory
    severity: ErrorSeverity
    message: str = Field(..., min_length=1)
    details: Optional[str] = None
    context: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=datetime.now)
    agent_id: Optional[str] = None
    task_id: Optional[str] = None
    retry_count: int = Field(default=0, ge=0)
    recoverable: bool = True


class ErrorResponse(BaseModel):
    """Standardized error response."""
    success: bool = False
    error: ErrorDetails
    suggested_actions: List[str] = Field(default_factory=list)


# Custom exceptions
class OrchestratorError(Exception):
    """Base exception for Agent Orchestrator."""

    def __init__(self, message: str, category: ErrorCategory = ErrorCategory.SYSTEM,
                 severity: ErrorSeverity = ErrorSeverity.MEDIUM, **kwargs):
        super().__init__(message)
        self.message = message
        self.category = category
        self.severity = severity
        self.context = kwargs

    @property
    def error_code(self) -> str:
        return type(self).__name__

    def to_details(self) -> ErrorDetails:
        """Convert the exception into an ErrorDetails record."""
        return ErrorDetails(
            error_id=str(uuid.uuid4()),
            error_code=self.error_code,
            category=self.category,
            severity=self.severity,
            message=self.message,
            context=dict(self.context),
            agent_id=self.context.get("agent_id"),
            task_id=self.context.get("task_id"),
            recoverable=self.severity != ErrorSeverity.CRITICAL
        )


class CycleDetected(OrchestratorError):
    """Dependency graph would contain a cycle."""

    def __init__(self, cycle: List[str], **kwargs):
        self.cycle = list(cycle)
        super().__init__(
            f"Dependency cycle detected: {' -> '.join(self.cycle)}",
            ErrorCategory.DEPENDENCY, ErrorSeverity.HIGH, cycle=self.cycle, **kwargs
        )


class UnknownDependency(OrchestratorError):
    """Task references dependency IDs that do not exist."""

    def __init__(self, task_id: str, missing: List[str], **kwargs):
        self.task_id = task_id
        self.missing = sorted(missing)
        super().__init__(
            f"Task {task_id} references unknown dependencies: {', '.join(self.missing)}",
            ErrorCategory.DEPENDENCY, ErrorSeverity.HIGH,
            task_id=task_id, missing=self.missing, **kwargs
        )


class UnknownAgent(OrchestratorError):
    """Agent is not registered."""

    def __init__(self, agent_id: str, **kwargs):
        self.agent_id = agent_id
        super().__init__(
            f"Agent {agent_id} is not registered",
            ErrorCategory.VALIDATION, ErrorSeverity.HIGH, agent_id=agent_id, **kwargs
        )


class TaskNotFound(OrchestratorError):
    """Task does not exist in the store."""

    def __init__(self, task_id: str, **kwargs):
        self.task_id = task_id
        super().__init__(
            f"Task {task_id} not found",
            ErrorCategory.VALIDATION, ErrorSeverity.MEDIUM, task_id=task_id, **kwargs
        )


class InvalidTransition(OrchestratorError):
    """Requested status change is not allowed from the task's current status."""

    def __init__(self, task_id: str, current: str, requested: str, **kwargs):
        self.task_id = task_id
        self.current = current
        self.requested = requested
        super().__init__(
            f"Task {task_id} cannot move from {current} to {requested}",
            ErrorCategory.SCHEDULING, ErrorSeverity.MEDIUM,
            task_id=task_id, current=current, requested=requested, **kwargs
        )


class CapacityExceeded(OrchestratorError):
    """Agent has no free slot at the instant of reservation."""

    def __init__(self, agent_id: str, task_id: Optional[str] = None, **kwargs):
        self.agent_id = agent_id
        self.task_id = task_id
        super().__init__(
            f"Agent {agent_id} has no free capacity",
            ErrorCategory.CAPACITY, ErrorSeverity.LOW,
            agent_id=agent_id, task_id=task_id, **kwargs
        )


class DispatchTimeout(OrchestratorError):
    """Agent did not finish within its timeout."""

    def __init__(self, task_id: str, agent_id: str, timeout_ms: int, **kwargs):
        self.task_id = task_id
        self.agent_id = agent_id
        self.timeout_ms = timeout_ms
        super().__init__(
            f"Agent {agent_id} did not complete task {task_id} within {timeout_ms}ms",
            ErrorCategory.DISPATCH, ErrorSeverity.MEDIUM,
            task_id=task_id, agent_id=agent_id, timeout_ms=timeout_ms, **kwargs
        )


class AgentUnavailable(OrchestratorError):
    """No capable agent has free capacity. Handled internally by requeueing."""

    def __init__(self, task_id: str, **kwargs):
        self.task_id = task_id
        super().__init__(
            f"No capable agent with free capacity for task {task_id}",
            ErrorCategory.CAPACITY, ErrorSeverity.LOW, task_id=task_id, **kwargs
        )


class CollaborationQuorumFailure(OrchestratorError):
    """Parallel or consensus strategy could not reach the required agreement."""

    def __init__(self, task_id: str, strategy: str, detail: str, **kwargs):
        self.task_id = task_id
        self.strategy = strategy
        super().__init__(
            f"Collaboration for task {task_id} ({strategy}) failed: {detail}",
            ErrorCategory.COLLABORATION, ErrorSeverity.HIGH,
            task_id=task_id, strategy=strategy, **kwargs
        )


class CollaborationAborted(OrchestratorError):
    """A participant failure aborted the collaboration."""

    def __init__(self, task_id: str, agent_id: str, detail: str, **kwargs):
        self.task_id = task_id
        self.agent_id = agent_id
        super().__init__(
            f"Collaboration for task {task_id} aborted by agent {agent_id}: {detail}",
            ErrorCategory.COLLABORATION, ErrorSeverity.MEDIUM,
            task_id=task_id, agent_id=agent_id, **kwargs
        )


class RetryLimitExceeded(OrchestratorError):
    """Task failed permanently after exhausting its retries."""

    def __init__(self, task_id: str, attempts: int, last_error: Optional[str] = None, **kwargs):
        self.task_id = task_id
        self.attempts = attempts
        message = f"Task {task_id} failed after {attempts} attempts"
        if last_error:
            message += f": {last_error}"
        super().__init__(
            message, ErrorCategory.SCHEDULING, ErrorSeverity.HIGH,
            task_id=task_id, attempts=attempts, **kwargs
        )

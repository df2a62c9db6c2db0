"""
Centralized error handling with retry backoff and per-agent circuit breakers.
"""

import logging
import random
import time
import uuid
from typing import Any, Dict, List, Optional
from enum import Enum

from ..models.errors import (
    ErrorDetails, ErrorResponse, ErrorCategory, ErrorSeverity, OrchestratorError
)


class CircuitBreakerState(str, Enum):
    """Circuit breaker states."""
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class RetryConfig:
    """Configuration for retry logic."""

    def __init__(
        self,
        max_retries: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
        backoff_factor: float = 2.0,
        jitter: bool = True
    ):
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.backoff_factor = backoff_factor
        self.jitter = jitter

    def compute_delay(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (1-based), with exponential backoff."""
        if self.base_delay <= 0:
            return 0.0
        delay = min(self.base_delay * (self.backoff_factor ** max(0, attempt - 1)), self.max_delay)
        if self.jitter:
            delay *= (0.5 + random.random() * 0.5)
        return delay


class CircuitBreakerConfig:
    """Configuration for circuit breaker."""

    def __init__(self, failure_threshold: int = 5, recovery_timeout: float = 60.0):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout


class CircuitBreaker:
    """
    Consecutive-failure circuit breaker for one agent.

    Callers check ``allows_requests()`` before dispatching and report every
    outcome through ``record_success``/``record_failure``.
    """

    def __init__(self, config: CircuitBreakerConfig):
        self.config = config
        self.failure_count = 0
        self.last_failure_time: Optional[float] = None
        self.state = CircuitBreakerState.CLOSED

    def allows_requests(self) -> bool:
        """Whether a request may go through. Moves OPEN to HALF_OPEN after the recovery timeout."""
        if self.state == CircuitBreakerState.OPEN:
            if self._should_attempt_reset():
                self.state = CircuitBreakerState.HALF_OPEN
            else:
                return False
        return True

    def _should_attempt_reset(self) -> bool:
        if self.last_failure_time is None:
            return True
        return (time.monotonic() - self.last_failure_time) >= self.config.recovery_timeout

    def record_success(self):
        """Handle successful operation."""
        self.failure_count = 0
        self.state = CircuitBreakerState.CLOSED

    def record_failure(self):
        """Handle failed operation."""
        self.failure_count += 1
        self.last_failure_time = time.monotonic()

        if self.state == CircuitBreakerState.HALF_OPEN or self.failure_count >= self.config.failure_threshold:
            self.state = CircuitBreakerState.OPEN

    @property
    def is_open(self) -> bool:
        return self.state == CircuitBreakerState.OPEN


class ErrorHandler:
    """Centralized error handling system."""

    def __init__(self, circuit_config: Optional[CircuitBreakerConfig] = None):
        self.logger = logging.getLogger(__name__)
        self.circuit_config = circuit_config or CircuitBreakerConfig()
        self.circuit_breakers: Dict[str, CircuitBreaker] = {}
        self.error_stats: Dict[str, Dict[str, int]] = {}

    def get_circuit_breaker(self, agent_id: str) -> CircuitBreaker:
        """Get or create the circuit breaker for an agent."""
        if agent_id not in self.circuit_breakers:
            self.circuit_breakers[agent_id] = CircuitBreaker(self.circuit_config)
        return self.circuit_breakers[agent_id]

    def remove_circuit_breaker(self, agent_id: str):
        self.circuit_breakers.pop(agent_id, None)

    def handle_agent_error(
        self,
        agent_id: str,
        error: Exception,
        task_id: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None
    ) -> ErrorResponse:
        """Handle errors from agents with standardized response."""
        context = dict(context or {})
        context.update({
            "agent_id": agent_id,
            "task_id": task_id
        })

        error_details = self._create_error_details(error, context, agent_id=agent_id, task_id=task_id)
        self._log_error(error_details)
        self._update_error_stats(agent_id, error_details.category.value)

        return ErrorResponse(
            error=error_details,
            suggested_actions=self._get_recovery_strategies(error_details)
        )

    def _create_error_details(
        self,
        error: Exception,
        context: Dict[str, Any],
        agent_id: Optional[str] = None,
        task_id: Optional[str] = None,
        retry_count: int = 0
    ) -> ErrorDetails:
        """Create standardized error details."""
        if isinstance(error, OrchestratorError):
            category = error.category
            severity = error.severity
            message = error.message
            error_code = error.error_code
            context = {**error.context, **context}
        else:
            category = self._classify_error(error)
            severity = self._determine_severity(category)
            message = str(error) or type(error).__name__
            error_code = type(error).__name__

        return ErrorDetails(
            error_id=str(uuid.uuid4()),
            error_code=error_code,
            category=category,
            severity=severity,
            message=message,
            details=f"{type(error).__name__}: {error}",
            context=context,
            agent_id=agent_id,
            task_id=task_id,
            retry_count=retry_count,
            recoverable=category != ErrorCategory.VALIDATION
        )

    def _classify_error(self, error: Exception) -> ErrorCategory:
        """Classify error into appropriate category."""
        error_type = type(error).__name__.lower()

        if any(keyword in error_type for keyword in ["timeout", "connection", "network"]):
            return ErrorCategory.DISPATCH
        elif any(keyword in error_type for keyword in ["validation", "value", "type", "key"]):
            return ErrorCategory.VALIDATION
        else:
            return ErrorCategory.SYSTEM

    def _determine_severity(self, category: ErrorCategory) -> ErrorSeverity:
        """Determine error severity based on category."""
        if category == ErrorCategory.VALIDATION:
            return ErrorSeverity.HIGH
        elif category == ErrorCategory.DISPATCH:
            return ErrorSeverity.MEDIUM
        else:
            return ErrorSeverity.LOW

    def _get_recovery_strategies(self, error_details: ErrorDetails) -> List[str]:
        """Get suggested recovery strategies for error."""
        if error_details.category == ErrorCategory.DISPATCH:
            return [
                "Check agent connectivity",
                "Increase the agent timeout",
            ]
        elif error_details.category == ErrorCategory.VALIDATION:
            return [
                "Validate the task prompt and context",
                "Check agent input requirements",
            ]
        elif error_details.category == ErrorCategory.COLLABORATION:
            return [
                "Lower the quorum or agreement threshold",
                "Add more capable agents",
            ]
        return []

    def _log_error(self, error_details: ErrorDetails):
        """Log error with appropriate level."""
        log_message = (
            f"Error {error_details.error_id}: {error_details.message} "
            f"[{error_details.category.value}/{error_details.severity.value}]"
        )

        if error_details.agent_id:
            log_message += f" Agent: {error_details.agent_id}"

        if error_details.severity == ErrorSeverity.CRITICAL:
            self.logger.critical(log_message)
        elif error_details.severity == ErrorSeverity.HIGH:
            self.logger.error(log_message)
        elif error_details.severity == ErrorSeverity.MEDIUM:
            self.logger.warning(log_message)
        else:
            self.logger.info(log_message)

    def _update_error_stats(self, agent_id: str, category: str):
        """Update error statistics."""
        agent_stats = self.error_stats.setdefault(agent_id, {})
        agent_stats[category] = agent_stats.get(category, 0) + 1

    def get_error_stats(self) -> Dict[str, Dict[str, int]]:
        """Get current error statistics."""
        return {agent_id: dict(stats) for agent_id, stats in self.error_stats.items()}

    def reset_error_stats(self):
        """Reset error statistics."""
        self.error_stats.clear()

"""
Base agent interface and common utilities for Agent Orchestrator.
"""

from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Optional
from pydantic import BaseModel, Field
import inspect
import logging
import time
from datetime import datetime

from ..models.core import AgentConfig, TaskPriority, TaskType

logger = logging.getLogger(__name__)


class AgentRequest(BaseModel):
    """Work handed to an agent for one invocation."""
    task_id: str
    prompt: str
    task_type: TaskType = TaskType.IMPLEMENTATION
    priority: TaskPriority = TaskPriority.MEDIUM
    context: Dict[str, Any] = Field(default_factory=dict)
    timeout_ms: Optional[int] = None


class AgentResponse(BaseModel):
    """Standard result format for all agents."""
    task_id: str
    agent_id: str
    success: bool
    result: Optional[Any] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    duration_ms: float = Field(default=0.0, ge=0.0)
    confidence: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    tokens_used: Optional[int] = None
    cost: Optional[float] = None
    timestamp: datetime = Field(default_factory=datetime.now)


class BaseAgent(ABC):
    """
    Abstract base class for all orchestrated agents.

    Subclasses implement ``execute``. The orchestrator owns scheduling,
    timeouts and capacity; an agent only performs the work it is handed.
    """

    def __init__(self, config: AgentConfig):
        self.config = config
        self.logger = logging.getLogger(f"agent_orchestrator.agents.{config.agent_id}")

    @property
    def agent_id(self) -> str:
        return self.config.agent_id

    @property
    def name(self) -> str:
        return self.config.name

    @abstractmethod
    async def execute(self, request: AgentRequest) -> AgentResponse:
        """
        Execute one unit of work.

        Args:
            request: Task prompt and context

        Returns:
            AgentResponse: Standardized result object
        """
        pass

    async def initialize(self) -> None:
        """Prepare resources before the agent receives work."""

    async def shutdown(self) -> None:
        """Release resources when the agent is unregistered."""

    async def health_check(self) -> bool:
        """Report whether the agent can take work."""
        return True

    async def _execute_with_timing(self, request: AgentRequest, operation, **kwargs) -> AgentResponse:
        """
        Execute an operation with timing and error handling.

        Args:
            request: Request being served
            operation: Async function to execute
            **kwargs: Parameters for the operation

        Returns:
            AgentResponse: Result with timing information
        """
        start_time = time.perf_counter()

        try:
            self.logger.info(f"Starting {self.agent_id} execution of task {request.task_id}")
            result = await operation(**kwargs)
            execution_time = (time.perf_counter() - start_time) * 1000

            self.logger.info(f"{self.agent_id} completed task {request.task_id} in {execution_time:.0f}ms")

            return AgentResponse(
                task_id=request.task_id,
                agent_id=self.agent_id,
                success=True,
                result=result,
                duration_ms=execution_time
            )

        except Exception as e:
            execution_time = (time.perf_counter() - start_time) * 1000

            self.logger.error(f"{self.agent_id} failed task {request.task_id} after {execution_time:.0f}ms: {e}")

            return AgentResponse(
                task_id=request.task_id,
                agent_id=self.agent_id,
                success=False,
                error=str(e) or type(e).__name__,
                error_code=type(e).__name__,
                duration_ms=execution_time
            )


class FunctionAgent(BaseAgent):
    """
    Agent backed by a plain callable.

    The handler receives the ``AgentRequest`` and may be sync or async. An
    ``AgentResponse`` return value is passed through unchanged; anything else
    becomes the successful result.
    """

    def __init__(self, config: AgentConfig, handler: Callable[[AgentRequest], Any]):
        super().__init__(config)
        self.handler = handler

    async def execute(self, request: AgentRequest) -> AgentResponse:
        async def run():
            value = self.handler(request)
            if inspect.isawaitable(value):
                value = await value
            return value

        response = await self._execute_with_timing(request, run)
        if response.success and isinstance(response.result, AgentResponse):
            return response.result
        return response

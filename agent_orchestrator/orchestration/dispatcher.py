"""
Agent invocation with timeout, error capture and circuit breaking.
"""

import asyncio
import time
from typing import Optional

from ..agents.base import AgentRequest, AgentResponse
from ..models.errors import DispatchTimeout
from ..utils.error_handler import ErrorHandler
from ..utils.logging import get_logger
from ..utils.monitoring import MetricsCollector
from .registry import AgentRegistry

logger = get_logger(__name__)


class TaskDispatcher:
    """
    Invokes agents and normalizes every outcome into an ``AgentResponse``.

    Timeouts and agent exceptions become failed responses; only
    cancellation propagates to the caller.
    """

    def __init__(self, registry: AgentRegistry, error_handler: Optional[ErrorHandler] = None,
                 metrics: Optional[MetricsCollector] = None, default_timeout_ms: int = 300000):
        self.registry = registry
        self.error_handler = error_handler or registry.error_handler
        self.metrics = metrics or MetricsCollector()
        self.default_timeout_ms = default_timeout_ms
        self.logger = get_logger(f"{__name__}.TaskDispatcher")

    def resolve_timeout_ms(self, agent_id: str, request: AgentRequest) -> int:
        """The tighter of the request's and the agent's timeout."""
        instance = self.registry.find(agent_id)
        limits = [t for t in (request.timeout_ms, instance.config.timeout_ms if instance else None) if t]
        return min(limits) if limits else self.default_timeout_ms

    async def invoke(self, agent_id: str, request: AgentRequest) -> AgentResponse:
        """
        Run one request on one agent.

        Args:
            agent_id: Agent to invoke
            request: Work to perform

        Returns:
            AgentResponse: Successful or failed outcome; never raises for agent errors
        """
        instance = self.registry.get(agent_id)
        timeout_ms = self.resolve_timeout_ms(agent_id, request)
        start_time = time.perf_counter()

        try:
            response = await asyncio.wait_for(instance.agent.execute(request), timeout=timeout_ms / 1000)
            if not isinstance(response, AgentResponse):
                response = AgentResponse(task_id=request.task_id, agent_id=agent_id,
                                         success=True, result=response)
        except asyncio.TimeoutError:
            error = DispatchTimeout(request.task_id, agent_id, timeout_ms)
            self.error_handler.handle_agent_error(agent_id, error, task_id=request.task_id)
            response = AgentResponse(
                task_id=request.task_id,
                agent_id=agent_id,
                success=False,
                error=error.message,
                error_code=error.error_code
            )
        except Exception as e:
            self.error_handler.handle_agent_error(agent_id, e, task_id=request.task_id)
            response = AgentResponse(
                task_id=request.task_id,
                agent_id=agent_id,
                success=False,
                error=str(e) or type(e).__name__,
                error_code=type(e).__name__
            )

        elapsed_ms = (time.perf_counter() - start_time) * 1000
        if not response.duration_ms:
            response.duration_ms = elapsed_ms
        if not response.success and not response.error:
            response.error = "Agent reported failure"

        self.registry.record_result(agent_id, response.success, response.error)
        self.metrics.record_timer("agent.execution_ms", elapsed_ms, tags={"agent_id": agent_id})
        self.metrics.increment_counter(
            "agent.invocations",
            tags={"agent_id": agent_id, "outcome": "success" if response.success else "failure"}
        )

        if response.success:
            self.logger.debug(f"Agent {agent_id} finished {request.task_id} in {elapsed_ms:.0f}ms")
        else:
            self.logger.warning(f"Agent {agent_id} failed {request.task_id}: {response.error}")
        return response

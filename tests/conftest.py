"""
Pytest configuration and fixtures for Agent Orchestrator tests.
"""

import asyncio
import inspect
import pytest
from typing import Any, Callable, Dict, Iterable, List, Optional

from agent_orchestrator.agents.base import AgentRequest, AgentResponse, BaseAgent
from agent_orchestrator.models.core import AgentCapability, AgentConfig, CapabilityCategory
from agent_orchestrator.orchestration.orchestrator import AgentOrchestrator
from agent_orchestrator.utils.config import (
    LoadBalancerConfig, RegistryConfig, SchedulerConfig, SystemConfig
)


class ControlledAgent(BaseAgent):
    """
    Agent whose invocations finish when the test says so.

    With ``auto_complete`` every request succeeds immediately (or fails when
    ``fail`` is set). Otherwise each request waits until ``finish`` is called
    for its task ID. A ``handler`` overrides both modes.
    """

    def __init__(self, config: AgentConfig, auto_complete: bool = False, result: Any = None,
                 fail: bool = False, confidence: Optional[float] = None,
                 handler: Optional[Callable[[AgentRequest], Any]] = None):
        super().__init__(config)
        self.auto_complete = auto_complete
        self.result = result
        self.fail = fail
        self.confidence = confidence
        self.handler = handler
        self.requests: List[AgentRequest] = []
        self.cancelled: List[str] = []
        self.healthy = True
        self._gates: Dict[str, asyncio.Event] = {}
        self._outcomes: Dict[str, AgentResponse] = {}

    async def execute(self, request: AgentRequest) -> AgentResponse:
        self.requests.append(request)
        try:
            if self.handler is not None:
                value = self.handler(request)
                if inspect.isawaitable(value):
                    value = await value
                if isinstance(value, AgentResponse):
                    return value
                return self._response(request, True, result=value)

            if not self.auto_complete:
                gate = self._gates.setdefault(request.task_id, asyncio.Event())
                await gate.wait()
                self._gates.pop(request.task_id, None)
                outcome = self._outcomes.pop(request.task_id, None)
                if outcome is not None:
                    return outcome
        except asyncio.CancelledError:
            self.cancelled.append(request.task_id)
            raise

        if self.fail:
            return self._response(request, False, error="agent failure")
        result = self.result if self.result is not None else {"agent": self.agent_id, "task": request.task_id}
        return self._response(request, True, result=result)

    def _response(self, request: AgentRequest, success: bool, result: Any = None,
                  error: Optional[str] = None) -> AgentResponse:
        return AgentResponse(
            task_id=request.task_id,
            agent_id=self.agent_id,
            success=success,
            result=result,
            error=error,
            confidence=self.confidence,
            duration_ms=5.0
        )

    def finish(self, task_id: str, success: bool = True, result: Any = None, error: Optional[str] = None):
        """Release a waiting invocation with the given outcome."""
        self._outcomes[task_id] = AgentResponse(
            task_id=task_id,
            agent_id=self.agent_id,
            success=success,
            result=result if result is not None else {"agent": self.agent_id, "task": task_id},
            error=error,
            confidence=self.confidence,
            duration_ms=5.0
        )
        self._gates.setdefault(task_id, asyncio.Event()).set()

    def is_waiting(self, task_id: str) -> bool:
        gate = self._gates.get(task_id)
        return gate is not None and not gate.is_set()

    async def health_check(self) -> bool:
        return self.healthy


def build_agent_config(
    agent_id: str,
    max_concurrent_tasks: int = 1,
    categories: Iterable[CapabilityCategory] = (CapabilityCategory.DEVELOPMENT,),
    languages: Iterable[str] = (),
    timeout_ms: int = 300000
) -> AgentConfig:
    return AgentConfig(
        agent_id=agent_id,
        name=agent_id.title(),
        capabilities=[
            AgentCapability(name=f"{agent_id}-{category.value}", category=category, languages=list(languages))
            for category in categories
        ],
        max_concurrent_tasks=max_concurrent_tasks,
        timeout_ms=timeout_ms
    )


@pytest.fixture
def agent_config_factory() -> Callable[..., AgentConfig]:
    """Build agent configs with sensible defaults."""
    return build_agent_config


@pytest.fixture
def agent_factory() -> Callable[..., ControlledAgent]:
    """Build controllable agents: agent_factory("a", max_concurrent_tasks=2, auto_complete=True)."""
    def make(agent_id: str, max_concurrent_tasks: int = 1,
             categories: Iterable[CapabilityCategory] = (CapabilityCategory.DEVELOPMENT,),
             languages: Iterable[str] = (), timeout_ms: int = 300000, **kwargs) -> ControlledAgent:
        config = build_agent_config(agent_id, max_concurrent_tasks, categories, languages, timeout_ms)
        return ControlledAgent(config, **kwargs)
    return make


@pytest.fixture
def system_config() -> SystemConfig:
    """Configuration for tests: no retries, no persistence, slow background timers."""
    return SystemConfig(
        scheduler=SchedulerConfig(max_retries=0, tick_interval_seconds=0.05),
        load_balancer=LoadBalancerConfig(interval_seconds=60.0, window_size=1),
        registry=RegistryConfig(health_check_interval_seconds=60.0),
    )


@pytest.fixture
def orchestrator(system_config: SystemConfig) -> AgentOrchestrator:
    """An orchestrator that is not started; tests drive ticks explicitly."""
    return AgentOrchestrator(system_config)


@pytest.fixture
def wait_until() -> Callable:
    """Poll a predicate on the running loop until it holds."""
    async def wait(predicate: Callable[[], bool], timeout: float = 2.0, interval: float = 0.005):
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("condition not met before timeout")
            await asyncio.sleep(interval)
    return wait

"""
API routes for Agent Orchestrator.
"""

import time
from typing import List, Optional
from fastapi import APIRouter, Depends, HTTPException, Query, Request

from .models import (
    AgentList, BatchSubmission, CancelRequest, CapacityUpdate, DependencyUpdate,
    EventRecord, HealthCheck, RebalanceResult, TaskList, TaskSubmission
)
from .. import __version__
from ..models.capacity import AgentCapacitySnapshot, CapacityMetrics, LoadBalancingRecommendations
from ..models.collaboration import CollaborationSession
from ..models.core import Task, TaskPriority, TaskStatus, TaskType
from ..orchestration.events import EventType
from ..orchestration.orchestrator import AgentOrchestrator
from ..utils.logging import get_logger

logger = get_logger(__name__)

# Create router
router = APIRouter()

# Service start time for uptime calculation
_service_start_time = time.time()


def get_orchestrator(request: Request) -> AgentOrchestrator:
    """The orchestrator attached to the running application."""
    return request.app.state.orchestrator


@router.get("/health", response_model=HealthCheck, tags=["Health"])
async def health_check(orchestrator: AgentOrchestrator = Depends(get_orchestrator)):
    """Health check endpoint."""
    return HealthCheck(
        status="healthy" if orchestrator.is_running else "stopped",
        version=__version__,
        uptime_seconds=time.time() - _service_start_time,
        agents=len(orchestrator.registry),
        tasks_by_status=orchestrator.store.count_by_status()
    )


# Tasks

@router.post("/tasks", response_model=Task, status_code=201, tags=["Tasks"])
async def submit_task(
    submission: TaskSubmission,
    orchestrator: AgentOrchestrator = Depends(get_orchestrator)
):
    """Submit a task."""
    try:
        task = await orchestrator.submit_task(submission, dispatch=submission.dispatch)
    except ValueError as e:
        raise HTTPException(status_code=409, detail=str(e))
    logger.info(f"Submitted task {task.task_id} ({task.priority.value})")
    return task


@router.post("/tasks/batch", response_model=List[Task], status_code=201, tags=["Tasks"])
async def submit_tasks(
    batch: BatchSubmission,
    orchestrator: AgentOrchestrator = Depends(get_orchestrator)
):
    """Submit an ordered batch of tasks atomically."""
    try:
        return await orchestrator.submit_tasks(batch.tasks, dispatch=batch.dispatch)
    except ValueError as e:
        raise HTTPException(status_code=409, detail=str(e))


@router.get("/tasks", response_model=TaskList, tags=["Tasks"])
async def list_tasks(
    status: Optional[TaskStatus] = Query(None, description="Filter by status"),
    project_id: Optional[str] = Query(None, description="Filter by project"),
    agent_id: Optional[str] = Query(None, description="Filter by assigned agent"),
    task_type: Optional[TaskType] = Query(None, description="Filter by task type"),
    priority: Optional[TaskPriority] = Query(None, description="Filter by priority"),
    orchestrator: AgentOrchestrator = Depends(get_orchestrator)
):
    """List tasks matching the given filters."""
    tasks = orchestrator.list_tasks(status=status, project_id=project_id, agent_id=agent_id,
                                    task_type=task_type, priority=priority)
    return TaskList(tasks=tasks, total_count=len(tasks))


@router.get("/tasks/{task_id}", response_model=Task, tags=["Tasks"])
async def get_task(task_id: str, orchestrator: AgentOrchestrator = Depends(get_orchestrator)):
    """Get one task."""
    return orchestrator.get_task(task_id)


@router.post("/tasks/{task_id}/cancel", response_model=Task, tags=["Tasks"])
async def cancel_task(
    task_id: str,
    request: Optional[CancelRequest] = None,
    orchestrator: AgentOrchestrator = Depends(get_orchestrator)
):
    """Cancel a pending or running task."""
    reason = request.reason if request and request.reason else "cancelled via API"
    return await orchestrator.cancel_task(task_id, reason)


@router.post("/tasks/{task_id}/retry", response_model=Task, tags=["Tasks"])
async def retry_task(task_id: str, orchestrator: AgentOrchestrator = Depends(get_orchestrator)):
    """Retry a failed task."""
    return await orchestrator.retry_task(task_id)


@router.get("/tasks/{task_id}/dependencies", response_model=List[Task], tags=["Tasks"])
async def get_dependency_chain(task_id: str, orchestrator: AgentOrchestrator = Depends(get_orchestrator)):
    """Transitive prerequisites of a task in execution order."""
    return orchestrator.get_dependency_chain(task_id)


@router.post("/tasks/{task_id}/dependencies", response_model=Task, tags=["Tasks"])
async def add_dependencies(
    task_id: str,
    update: DependencyUpdate,
    orchestrator: AgentOrchestrator = Depends(get_orchestrator)
):
    """Add prerequisites to a pending task."""
    return await orchestrator.add_dependencies(task_id, update.dependencies)


# Agents

@router.get("/agents", response_model=AgentList, tags=["Agents"])
async def list_agents(orchestrator: AgentOrchestrator = Depends(get_orchestrator)):
    """List registered agents."""
    agents = [instance.to_dict() for instance in orchestrator.list_agents()]
    return AgentList(agents=agents, total_count=len(agents))


@router.put("/agents/{agent_id}/capacity", response_model=AgentCapacitySnapshot, tags=["Agents"])
async def update_agent_capacity(
    agent_id: str,
    update: CapacityUpdate,
    orchestrator: AgentOrchestrator = Depends(get_orchestrator)
):
    """Change an agent's concurrency limit."""
    return await orchestrator.update_agent_capacity(agent_id, update.max_concurrent_tasks)


# Capacity

@router.get("/capacity", response_model=CapacityMetrics, tags=["Capacity"])
async def get_capacity(orchestrator: AgentOrchestrator = Depends(get_orchestrator)):
    """Aggregate capacity across agents."""
    return orchestrator.get_capacity_metrics()


@router.get("/capacity/recommendations", response_model=LoadBalancingRecommendations, tags=["Capacity"])
async def get_recommendations(orchestrator: AgentOrchestrator = Depends(get_orchestrator)):
    """Scaling and redistribution advice."""
    return orchestrator.get_recommendations()


@router.post("/capacity/rebalance", response_model=RebalanceResult, tags=["Capacity"])
async def rebalance(orchestrator: AgentOrchestrator = Depends(get_orchestrator)):
    """Move queued tasks off bottlenecked agents."""
    moves = await orchestrator.rebalance()
    return RebalanceResult(moves=moves, moved_count=len(moves))


@router.get("/capacity/{agent_id}", response_model=AgentCapacitySnapshot, tags=["Capacity"])
async def get_agent_capacity(agent_id: str, orchestrator: AgentOrchestrator = Depends(get_orchestrator)):
    """Capacity snapshot of one agent."""
    return orchestrator.get_capacity_snapshot(agent_id)


# Collaboration and events

@router.get("/collaborations/{session_id}", response_model=CollaborationSession, tags=["Collaboration"])
async def get_collaboration(session_id: str, orchestrator: AgentOrchestrator = Depends(get_orchestrator)):
    """Details of a collaboration session."""
    session = orchestrator.get_session(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail="Session not found")
    return session


@router.get("/events", response_model=List[EventRecord], tags=["Events"])
async def list_events(
    event_type: Optional[EventType] = Query(None, alias="type", description="Filter by event type"),
    limit: int = Query(100, ge=1, le=1000, description="Most recent events to return"),
    orchestrator: AgentOrchestrator = Depends(get_orchestrator)
):
    """Recent events from the bus history."""
    return [
        EventRecord(
            event_id=event.event_id,
            type=event.type.value,
            payload=event.payload,
            timestamp=event.timestamp
        )
        for event in orchestrator.event_bus.history(event_type, limit=limit)
    ]

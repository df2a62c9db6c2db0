"""
API request and response models for Agent Orchestrator.
"""

from pydantic import BaseModel, Field
from typing import List, Optional, Dict, Any
from datetime import datetime

from ..models.capacity import RebalanceMove
from ..models.core import Task, TaskSpec


class TaskSubmission(TaskSpec):
    """Request model for submitting a task."""
    dispatch: bool = Field(default=False, description="Run a scheduling pass before responding")


class BatchSubmission(BaseModel):
    """Request model for submitting an ordered batch of tasks."""
    tasks: List[TaskSpec] = Field(..., min_length=1, description="Specs in submission order")
    dispatch: bool = Field(default=False, description="Run a scheduling pass before responding")


class TaskList(BaseModel):
    """Model for listing tasks."""
    tasks: List[Task] = Field(..., description="Matching tasks in submission order")
    total_count: int = Field(..., description="Number of matching tasks")


class CancelRequest(BaseModel):
    """Request model for cancelling a task."""
    reason: Optional[str] = Field(None, max_length=500, description="Reason for cancellation")


class DependencyUpdate(BaseModel):
    """Request model for adding prerequisites to a pending task."""
    dependencies: List[str] = Field(..., min_length=1, description="Task IDs to depend on")


class CapacityUpdate(BaseModel):
    """Request model for changing an agent's concurrency limit."""
    max_concurrent_tasks: int = Field(..., ge=1, description="New concurrency limit")


class AgentList(BaseModel):
    """Model for listing agents."""
    agents: List[Dict[str, Any]] = Field(..., description="Registered agents")
    total_count: int = Field(..., description="Number of registered agents")


class RebalanceResult(BaseModel):
    """Outcome of an on-demand rebalance."""
    moves: List[RebalanceMove] = Field(default_factory=list, description="Queued tasks that moved")
    moved_count: int = Field(..., description="Number of tasks moved")


class EventRecord(BaseModel):
    """A published event as exposed over HTTP."""
    event_id: str
    type: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime


class HealthCheck(BaseModel):
    """Health check response model."""
    status: str = Field(..., description="Service status")
    timestamp: datetime = Field(default_factory=datetime.now, description="Health check timestamp")
    version: str = Field(..., description="API version")
    uptime_seconds: float = Field(..., description="Service uptime in seconds")
    agents: int = Field(default=0, description="Registered agents")
    tasks_by_status: Dict[str, int] = Field(default_factory=dict, description="Task counts per status")

"""
Capacity reporting models.
"""

from pydantic import BaseModel, Field
from typing import List, Optional, Dict
from datetime import datetime


class AgentCapacitySnapshot(BaseModel):
    """Point-in-time capacity view of one agent."""
    agent_id: str
    max_concurrent_tasks: int = Field(..., ge=1)
    running_tasks: List[str] = Field(default_factory=list)
    queued_tasks: List[str] = Field(default_factory=list)
    available_slots: int = Field(default=0, ge=0)
    utilization_percentage: float = Field(default=0.0, ge=0.0)
    total_processed: int = Field(default=0, ge=0)
    successful_tasks: int = Field(default=0, ge=0)
    failed_tasks: int = Field(default=0, ge=0)
    success_rate: float = Field(default=0.0, ge=0.0, le=1.0)
    average_duration_ms: float = Field(default=0.0, ge=0.0)
    last_task_completed_at: Optional[datetime] = None


class CapacityMetrics(BaseModel):
    """Aggregate capacity across all agents."""
    total_capacity: int = 0
    used_capacity: int = 0
    available_capacity: int = 0
    queued_tasks: int = 0
    agent_utilization: Dict[str, float] = Field(default_factory=dict)
    bottleneck_agents: List[str] = Field(default_factory=list)
    underutilized_agents: List[str] = Field(default_factory=list)
    timestamp: datetime = Field(default_factory=datetime.now)


class AgentClassification(BaseModel):
    """Result of classifying agents against the utilization watermarks."""
    bottleneck: List[str] = Field(default_factory=list)
    underutilized: List[str] = Field(default_factory=list)


class Redistribution(BaseModel):
    """Suggested move of queued work between two agents."""
    from_agent: str
    to_agent: str
    task_count: int = Field(..., ge=1)
    task_ids: List[str] = Field(default_factory=list)


class LoadBalancingRecommendations(BaseModel):
    """Scaling and redistribution advice."""
    scale_up: List[str] = Field(default_factory=list)
    scale_down: List[str] = Field(default_factory=list)
    redistribute: List[Redistribution] = Field(default_factory=list)


class RebalanceMove(BaseModel):
    """A queued task actually moved by a rebalance."""
    task_id: str
    from_agent: str
    to_agent: str

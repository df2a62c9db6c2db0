"""
Core Pydantic data models for Agent Orchestrator.
"""

import uuid
from pydantic import BaseModel, Field, field_validator, model_validator, ConfigDict
from typing import List, Optional, Dict, Any
from datetime import datetime
from enum import Enum


TITLE_MAX_LENGTH = 100


class TaskStatus(str, Enum):
    """Lifecycle status of a task."""
    PENDING = "pending"
    ASSIGNED = "assigned"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    BLOCKED = "blocked"


TERMINAL_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.BLOCKED})
ACTIVE_STATUSES = frozenset({TaskStatus.ASSIGNED, TaskStatus.IN_PROGRESS})


class TaskPriority(str, Enum):
    """Scheduling priority bands, most urgent first."""
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def rank(self) -> int:
        """Lower rank is scheduled first."""
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {
    TaskPriority.CRITICAL: 0,
    TaskPriority.HIGH: 1,
    TaskPriority.MEDIUM: 2,
    TaskPriority.LOW: 3,
}


class TaskType(str, Enum):
    """Kind of work a task represents. Only used for capability matching."""
    REQUIREMENT = "requirement"
    DESIGN = "design"
    IMPLEMENTATION = "implementation"
    TEST = "test"
    DEPLOYMENT = "deployment"
    REVIEW = "review"


class AgentState(str, Enum):
    """Live status of a registered agent."""
    IDLE = "idle"
    BUSY = "busy"
    ERROR = "error"
    OFFLINE = "offline"


class CapabilityCategory(str, Enum):
    """Broad area an agent capability covers."""
    PLANNING = "planning"
    DESIGN = "design"
    DEVELOPMENT = "development"
    TESTING = "testing"
    DEPLOYMENT = "deployment"
    SECURITY = "security"
    GENERAL = "general"


class ComplexityTier(str, Enum):
    """How demanding the work a capability can take on is."""
    SIMPLE = "simple"
    MODERATE = "moderate"
    COMPLEX = "complex"


class CollaborationStrategy(str, Enum):
    """Multi-agent execution strategies."""
    SEQUENTIAL = "sequential"
    PARALLEL = "parallel"
    HIERARCHICAL = "hierarchical"
    CONSENSUS = "consensus"


class AgentCapability(BaseModel):
    """A declared capability of an agent."""
    name: str = Field(..., min_length=1)
    description: str = ""
    category: CapabilityCategory
    complexity: ComplexityTier = ComplexityTier.MODERATE
    languages: List[str] = Field(default_factory=list)
    frameworks: List[str] = Field(default_factory=list)


class AgentConfig(BaseModel):
    """Static configuration of an agent."""
    agent_id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    provider: str = Field(default="custom")
    version: str = Field(default="1.0.0")
    capabilities: List[AgentCapability] = Field(default_factory=list)
    max_concurrent_tasks: int = Field(default=1, ge=1)
    timeout_ms: int = Field(default=300000, ge=1)
    cost_per_task: float = Field(default=0.0, ge=0.0)

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "agent_id": "claude-dev-1",
                "name": "Claude developer",
                "provider": "anthropic",
                "capabilities": [
                    {
                        "name": "python-backend",
                        "category": "development",
                        "complexity": "complex",
                        "languages": ["python"],
                        "frameworks": ["fastapi"]
                    }
                ],
                "max_concurrent_tasks": 3,
                "timeout_ms": 120000
            }
        }
    )


class CollaborationSpec(BaseModel):
    """Request for multi-agent execution of a task."""
    strategy: CollaborationStrategy
    min_agents: int = Field(default=2, ge=1)
    max_agents: Optional[int] = Field(default=None, ge=1)
    quorum: Optional[float] = Field(default=None, gt=0.0, le=1.0)
    agreement_threshold: Optional[float] = Field(default=None, gt=0.0, le=1.0)
    max_rounds: Optional[int] = Field(default=None, ge=1)
    agreement_policy: Optional[str] = None

    @model_validator(mode='after')
    def check_group_bounds(self):
        if self.max_agents is not None and self.max_agents < self.min_agents:
            raise ValueError("max_agents must be greater than or equal to min_agents")
        return self

    @property
    def group_size(self) -> int:
        return self.max_agents or self.min_agents


class TaskSpec(BaseModel):
    """Task submission as accepted from callers."""
    prompt: str = Field(..., min_length=1)
    task_id: Optional[str] = Field(default=None, min_length=1)
    title: Optional[str] = None
    task_type: TaskType = TaskType.IMPLEMENTATION
    priority: TaskPriority = TaskPriority.MEDIUM
    dependencies: List[str] = Field(default_factory=list)
    collaboration: Optional[CollaborationSpec] = None
    project_id: Optional[str] = None
    languages: List[str] = Field(default_factory=list)
    frameworks: List[str] = Field(default_factory=list)
    context: Dict[str, Any] = Field(default_factory=dict)
    timeout_ms: Optional[int] = Field(default=None, ge=1)

    @field_validator('dependencies')
    @classmethod
    def dedupe_dependencies(cls, v):
        return list(dict.fromkeys(v))


def generate_title(prompt: str) -> str:
    """Derive a task title from the first line of its prompt."""
    first_line = prompt.strip().split('\n', 1)[0].strip()
    if len(first_line) > TITLE_MAX_LENGTH:
        return first_line[:TITLE_MAX_LENGTH] + "..."
    return first_line


class Task(BaseModel):
    """A unit of work tracked through its lifecycle."""
    task_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    project_id: Optional[str] = None
    task_type: TaskType = TaskType.IMPLEMENTATION
    title: str = ""
    description: str = Field(..., min_length=1)
    priority: TaskPriority = TaskPriority.MEDIUM
    status: TaskStatus = TaskStatus.PENDING
    dependencies: List[str] = Field(default_factory=list)
    assigned_agent_id: Optional[str] = None
    collaboration: Optional[CollaborationSpec] = None
    collaboration_session_id: Optional[str] = None
    languages: List[str] = Field(default_factory=list)
    frameworks: List[str] = Field(default_factory=list)
    context: Dict[str, Any] = Field(default_factory=dict)
    timeout_ms: Optional[int] = None
    retry_count: int = Field(default=0, ge=0)
    sequence: int = Field(default=0, ge=0)
    blocked_by: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.now)
    updated_at: datetime = Field(default_factory=datetime.now)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    duration_ms: Optional[float] = None
    output: Optional[Any] = None
    error: Optional[str] = None
    error_code: Optional[str] = None

    def model_post_init(self, __context):
        """Fill the title from the description when none was given."""
        if not self.title:
            self.title = generate_title(self.description)

    @classmethod
    def from_spec(cls, spec: TaskSpec) -> 'Task':
        """Build a pending task from a submission spec."""
        data = dict(
            project_id=spec.project_id,
            task_type=spec.task_type,
            title=spec.title or "",
            description=spec.prompt,
            priority=spec.priority,
            dependencies=list(spec.dependencies),
            collaboration=spec.collaboration,
            languages=list(spec.languages),
            frameworks=list(spec.frameworks),
            context=dict(spec.context),
            timeout_ms=spec.timeout_ms,
        )
        if spec.task_id:
            data["task_id"] = spec.task_id
        return cls(**data)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def is_collaborative(self) -> bool:
        return self.collaboration is not None

"""
Collaboration session models.
"""

import uuid
from pydantic import BaseModel, Field
from typing import List, Optional, Any
from datetime import datetime
from enum import Enum

from .core import CollaborationStrategy


class ParticipantRole(str, Enum):
    """Role of an agent within a session."""
    LEAD = "lead"
    WORKER = "worker"
    MEMBER = "member"


class ParticipantStatus(str, Enum):
    """Progress of one participant."""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class SessionStatus(str, Enum):
    """Aggregation status of a session."""
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"
    ABANDONED = "abandoned"


class Participant(BaseModel):
    """An agent taking part in a collaboration session."""
    agent_id: str
    role: ParticipantRole = ParticipantRole.MEMBER
    status: ParticipantStatus = ParticipantStatus.PENDING
    output: Optional[Any] = None
    error: Optional[str] = None
    confidence: Optional[float] = None
    duration_ms: float = 0.0
    released: bool = False

    def record(self, success: bool, output: Any = None, error: Optional[str] = None,
               confidence: Optional[float] = None, duration_ms: float = 0.0):
        """Store the outcome of the participant's latest invocation."""
        self.status = ParticipantStatus.COMPLETED if success else ParticipantStatus.FAILED
        self.output = output if success else None
        self.error = None if success else error
        self.confidence = confidence
        self.duration_ms += duration_ms


class CollaborationSession(BaseModel):
    """Grouped multi-agent execution of a single task."""
    session_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    task_id: str
    strategy: CollaborationStrategy
    participants: List[Participant] = Field(default_factory=list)
    status: SessionStatus = SessionStatus.EXECUTING
    rounds: int = Field(default=0, ge=0)
    result: Optional[Any] = None
    error: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.now)
    completed_at: Optional[datetime] = None

    @property
    def lead_agent_id(self) -> str:
        return self.participants[0].agent_id

    @property
    def agent_ids(self) -> List[str]:
        return [p.agent_id for p in self.participants]

    def get_participant(self, agent_id: str) -> Optional[Participant]:
        """Get a participant by agent ID."""
        return next((p for p in self.participants if p.agent_id == agent_id), None)

    def succeeded(self) -> List[Participant]:
        return [p for p in self.participants if p.status == ParticipantStatus.COMPLETED]

    def failed(self) -> List[Participant]:
        return [p for p in self.participants if p.status == ParticipantStatus.FAILED]

    def finish(self, status: SessionStatus, result: Any = None, error: Optional[str] = None):
        """Close the session with its final outcome."""
        self.status = status
        self.result = result
        self.error = error
        self.completed_at = datetime.now()

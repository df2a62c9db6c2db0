"""
In-memory, key-addressable task store.

Supports point lookups, filtered scans and atomic single-entity updates.
Returned tasks are the live objects; callers other than the scheduling
components should treat them as read-only and use ``update``.
"""

import itertools
import threading
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from ..models.core import Task, TaskStatus, TaskType, TaskPriority
from ..models.errors import TaskNotFound
from ..utils.logging import get_logger

logger = get_logger(__name__)


class TaskStore:
    """Thread-safe task table keyed by task ID."""

    def __init__(self):
        self._tasks: Dict[str, Task] = {}
        self._lock = threading.RLock()
        self._sequence = itertools.count(1)

    def add(self, task: Task) -> Task:
        """
        Insert a new task, stamping its insertion sequence.

        Raises:
            ValueError: If a task with the same ID already exists
        """
        with self._lock:
            if task.task_id in self._tasks:
                raise ValueError(f"Task {task.task_id} already exists")
            task.sequence = next(self._sequence)
            self._tasks[task.task_id] = task
        return task

    def restore(self, tasks: Iterable[Task]) -> int:
        """Load previously persisted tasks, keeping their sequence numbers."""
        count = 0
        with self._lock:
            for task in tasks:
                self._tasks[task.task_id] = task
                count += 1
            highest = max((t.sequence for t in self._tasks.values()), default=0)
            self._sequence = itertools.count(highest + 1)
        return count

    def get(self, task_id: str) -> Optional[Task]:
        return self._tasks.get(task_id)

    def require(self, task_id: str) -> Task:
        """Get a task or raise TaskNotFound."""
        task = self._tasks.get(task_id)
        if task is None:
            raise TaskNotFound(task_id)
        return task

    def update(self, task_id: str, **fields: Any) -> Task:
        """
        Atomically apply field changes to one task.

        Args:
            task_id: Task to update
            **fields: Field names and new values

        Returns:
            Task: The updated task
        """
        with self._lock:
            task = self.require(task_id)
            for name, value in fields.items():
                if name not in Task.model_fields:
                    raise AttributeError(f"Task has no field {name}")
                setattr(task, name, value)
            task.updated_at = datetime.now()
        return task

    def delete(self, task_id: str) -> bool:
        with self._lock:
            return self._tasks.pop(task_id, None) is not None

    def query(
        self,
        status: Optional[TaskStatus] = None,
        project_id: Optional[str] = None,
        agent_id: Optional[str] = None,
        task_type: Optional[TaskType] = None,
        priority: Optional[TaskPriority] = None
    ) -> List[Task]:
        """Filtered scan in insertion order. None filters are ignored."""
        with self._lock:
            tasks = list(self._tasks.values())

        results = [
            t for t in tasks
            if (status is None or t.status == status)
            and (project_id is None or t.project_id == project_id)
            and (agent_id is None or t.assigned_agent_id == agent_id)
            and (task_type is None or t.task_type == task_type)
            and (priority is None or t.priority == priority)
        ]
        results.sort(key=lambda t: t.sequence)
        return results

    def all(self) -> List[Task]:
        return self.query()

    def count_by_status(self) -> Dict[str, int]:
        counts = {status.value: 0 for status in TaskStatus}
        for task in self.all():
            counts[task.status.value] += 1
        return counts

    def __contains__(self, task_id: str) -> bool:
        return task_id in self._tasks

    def __len__(self) -> int:
        return len(self._tasks)

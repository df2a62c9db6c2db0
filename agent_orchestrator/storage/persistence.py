"""
Task snapshot persistence for Agent Orchestrator.

Writes the whole task table to a single JSON document so a restarted
orchestrator can resume where it stopped.
"""

import asyncio
import json
from datetime import datetime
from pathlib import Path
from typing import List, Optional

import aiofiles

from ..models.core import Task, TaskStatus, ACTIVE_STATUSES
from ..utils.logging import LoggerMixin, get_logger

logger = get_logger(__name__)

SNAPSHOT_VERSION = "1.0"


class TaskPersistence(LoggerMixin):
    """
    Persists task snapshots to local storage.

    Provides async file-based storage with JSON serialization and
    atomic replacement of the previous snapshot.
    """

    def __init__(self, storage_path: Optional[str] = None, filename: str = "tasks.json"):
        """
        Initialize task persistence.

        Args:
            storage_path: Path to storage directory. Defaults to ./data/orchestrator
            filename: Snapshot file name inside the storage directory
        """
        self.storage_path = Path(storage_path or "./data/orchestrator")
        self.snapshot_file = self.storage_path / filename
        self._lock = asyncio.Lock()

    async def initialize(self):
        """Create the storage directory if needed."""
        self.storage_path.mkdir(parents=True, exist_ok=True)
        logger.info(f"Initialized task persistence at {self.storage_path}")

    async def save_tasks(self, tasks: List[Task]) -> int:
        """
        Save a snapshot of all tasks.

        In-flight tasks are stored as pending so they are dispatched again
        after a restart.

        Args:
            tasks: Tasks to persist

        Returns:
            Number of tasks written
        """
        records = []
        for task in tasks:
            data = task.model_dump(mode='json')
            if task.status in ACTIVE_STATUSES:
                data.update(
                    status=TaskStatus.PENDING.value,
                    assigned_agent_id=None,
                    collaboration_session_id=None,
                    started_at=None,
                )
            records.append(data)

        document = {
            '_metadata': {
                'saved_at': datetime.now().isoformat(),
                'version': SNAPSHOT_VERSION,
                'task_count': len(records),
            },
            'tasks': records,
        }

        with self.logged_operation("save_tasks", task_count=len(records)):
            async with self._lock:
                self.storage_path.mkdir(parents=True, exist_ok=True)
                temp_file = self.snapshot_file.with_suffix('.tmp')
                async with aiofiles.open(temp_file, 'w', encoding='utf-8') as f:
                    await f.write(json.dumps(document, indent=2, ensure_ascii=False))

                # Atomic rename
                temp_file.replace(self.snapshot_file)

        logger.info(f"Saved {len(records)} tasks to {self.snapshot_file}")
        return len(records)

    async def load_tasks(self) -> List[Task]:
        """
        Load the last snapshot.

        Returns:
            Persisted tasks, empty if no snapshot exists
        """
        if not self.snapshot_file.exists():
            return []

        with self.logged_operation("load_tasks", path=str(self.snapshot_file)):
            async with self._lock:
                async with aiofiles.open(self.snapshot_file, 'r', encoding='utf-8') as f:
                    content = await f.read()

            document = json.loads(content)
            tasks = [Task.model_validate(record) for record in document.get('tasks', [])]
        logger.info(f"Loaded {len(tasks)} tasks from {self.snapshot_file}")
        return tasks

    async def clear(self) -> bool:
        """Delete the snapshot file."""
        async with self._lock:
            if self.snapshot_file.exists():
                self.snapshot_file.unlink()
                return True
        return False

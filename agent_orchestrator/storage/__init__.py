"""
Task storage and snapshot persistence.
"""

from .task_store import TaskStore
from .persistence import TaskPersistence

__all__ = ['TaskStore', 'TaskPersistence']

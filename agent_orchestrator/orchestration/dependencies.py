"""
Dependency resolution for tasks.

Keeps the task dependency DAG, rejects edges that would close a cycle,
and maintains the ready set: pending tasks whose prerequisites have all
completed, ordered by priority band then insertion order.
"""

from collections import deque
from typing import Dict, Iterable, Iterator, List, Optional, Set

from ..models.core import Task, TaskStatus
from ..models.errors import CycleDetected, UnknownDependency, TaskNotFound
from ..storage.task_store import TaskStore
from ..utils.logging import get_logger

logger = get_logger(__name__)


def topological_order(graph: Dict[str, Iterable[str]]) -> List[str]:
    """
    Order node IDs so every node follows its dependencies (Kahn's algorithm).

    Dependencies outside ``graph`` are ignored. Ties resolve by the order the
    nodes appear in ``graph``.

    Raises:
        CycleDetected: If the graph is not acyclic
    """
    nodes = list(graph)
    known = set(nodes)
    indegree = {node: 0 for node in nodes}
    dependents: Dict[str, List[str]] = {node: [] for node in nodes}
    for node in nodes:
        for dep in graph[node]:
            if dep in known:
                indegree[node] += 1
                dependents[dep].append(node)

    queue = deque(node for node in nodes if indegree[node] == 0)
    order = []
    while queue:
        node = queue.popleft()
        order.append(node)
        for dependent in dependents[node]:
            indegree[dependent] -= 1
            if indegree[dependent] == 0:
                queue.append(dependent)

    if len(order) != len(nodes):
        remaining = [node for node in nodes if indegree[node] > 0]
        raise CycleDetected(remaining)
    return order


class DependencyResolver:
    """Dependency graph and ready set over a task store."""

    def __init__(self, store: TaskStore):
        self.store = store
        self._dependencies: Dict[str, Set[str]] = {}
        self._dependents: Dict[str, Set[str]] = {}
        self._ready: Set[str] = set()
        self.logger = get_logger(f"{__name__}.DependencyResolver")

    # Registration

    def validate(self, task_id: str, dependencies: Iterable[str]) -> None:
        """
        Check that adding ``task_id -> dependencies`` edges keeps the graph valid.

        Raises:
            UnknownDependency: If a dependency is not registered
            CycleDetected: If an edge would close a cycle
        """
        deps = list(dict.fromkeys(dependencies))
        if task_id in deps:
            raise CycleDetected([task_id, task_id])

        missing = [dep for dep in deps if dep not in self._dependencies]
        if missing:
            raise UnknownDependency(task_id, missing)

        for dep in deps:
            path = self._find_path(dep, task_id)
            if path is not None:
                raise CycleDetected([task_id] + path)

    def _find_path(self, start: str, target: str) -> Optional[List[str]]:
        """Dependency path from start to target, if one exists."""
        stack = [(start, [start])]
        seen = set()
        while stack:
            node, path = stack.pop()
            if node == target:
                return path
            if node in seen:
                continue
            seen.add(node)
            for dep in sorted(self._dependencies.get(node, ())):
                stack.append((dep, path + [dep]))
        return None

    def register(self, task: Task) -> Optional[str]:
        """
        Add a task and its edges to the graph.

        Returns:
            The ID of the failed root task if the task can never run
            (a prerequisite already failed or is blocked), else None
        """
        self.validate(task.task_id, task.dependencies)
        self._dependencies[task.task_id] = set(task.dependencies)
        self._dependents.setdefault(task.task_id, set())
        for dep in task.dependencies:
            self._dependents[dep].add(task.task_id)

        root = self.failed_root(task)
        if root is None:
            self.requeue(task.task_id)
        return root

    def restore(self, task: Task) -> None:
        """Re-add a persisted task without validation or readiness changes."""
        self._dependencies[task.task_id] = set(task.dependencies)
        self._dependents.setdefault(task.task_id, set())
        for dep in task.dependencies:
            self._dependents.setdefault(dep, set()).add(task.task_id)

    def add_dependencies(self, task_id: str, dependencies: Iterable[str]) -> Set[str]:
        """Add edges to an already registered task, keeping the graph acyclic."""
        if task_id not in self._dependencies:
            raise TaskNotFound(task_id)
        new = [dep for dep in dict.fromkeys(dependencies) if dep not in self._dependencies[task_id]]
        self.validate(task_id, new)
        for dep in new:
            self._dependencies[task_id].add(dep)
            self._dependents[dep].add(task_id)
        task = self.store.get(task_id)
        if task is not None and not self.is_ready(task):
            self._ready.discard(task_id)
        return set(self._dependencies[task_id])

    def unregister(self, task_id: str) -> bool:
        """Remove a task that nothing depends on (used to roll back submissions)."""
        if task_id not in self._dependencies:
            return False
        if self._dependents.get(task_id):
            raise ValueError(f"Task {task_id} still has dependents")
        for dep in self._dependencies.pop(task_id):
            self._dependents.get(dep, set()).discard(task_id)
        self._dependents.pop(task_id, None)
        self._ready.discard(task_id)
        return True

    def __contains__(self, task_id: str) -> bool:
        return task_id in self._dependencies

    # Readiness

    def dependencies_of(self, task_id: str) -> Set[str]:
        return set(self._dependencies.get(task_id, ()))

    def dependents_of(self, task_id: str) -> Set[str]:
        return set(self._dependents.get(task_id, ()))

    def is_ready(self, task: Task) -> bool:
        """True iff every dependency has completed."""
        for dep in self._dependencies.get(task.task_id, task.dependencies):
            dep_task = self.store.get(dep)
            if dep_task is None or dep_task.status != TaskStatus.COMPLETED:
                return False
        return True

    def failed_root(self, task: Task) -> Optional[str]:
        """The failed task that makes this one unrunnable, if any."""
        for dep in sorted(self._dependencies.get(task.task_id, ())):
            dep_task = self.store.get(dep)
            if dep_task is None:
                continue
            if dep_task.status == TaskStatus.FAILED:
                return dep
            if dep_task.status == TaskStatus.BLOCKED:
                return dep_task.blocked_by or dep
        return None

    def requeue(self, task_id: str) -> bool:
        """Put a pending task into the ready set if its prerequisites are met."""
        task = self.store.get(task_id)
        if task is None or task.status != TaskStatus.PENDING or not self.is_ready(task):
            return False
        self._ready.add(task_id)
        return True

    def ready_tasks(self) -> Iterator[str]:
        """
        Lazily yield ready task IDs by priority band, then insertion order.

        Each call starts a fresh pass. Tasks taken or invalidated while the
        iterator is live are skipped.
        """
        ordered = sorted(
            (self.store.get(task_id) for task_id in self._ready),
            key=lambda t: (t.priority.rank, t.sequence) if t is not None else (99, 0)
        )
        for task in ordered:
            if task is not None and task.task_id in self._ready:
                yield task.task_id

    def take(self, task_id: str) -> bool:
        """Remove a task from the ready set. False if it was not there."""
        if task_id not in self._ready:
            return False
        self._ready.discard(task_id)
        return True

    def discard(self, task_id: str):
        self._ready.discard(task_id)

    @property
    def ready_count(self) -> int:
        return len(self._ready)

    # Outcome propagation

    def on_completed(self, task_id: str) -> List[str]:
        """Make dependents whose prerequisites are now met ready. Returns their IDs."""
        newly_ready = []
        for dependent in sorted(self._dependents.get(task_id, ())):
            if self.requeue(dependent):
                newly_ready.append(dependent)
        return newly_ready

    def on_failed(self, task_id: str) -> List[str]:
        """
        Transitive dependents that must become blocked because ``task_id`` failed.

        Only tasks that have not started are returned; already-terminal
        tasks are left alone. The caller applies the status change.
        """
        to_block = []
        seen = {task_id}
        queue = deque(sorted(self._dependents.get(task_id, ())))
        while queue:
            current = queue.popleft()
            if current in seen:
                continue
            seen.add(current)
            task = self.store.get(current)
            if task is None or task.status != TaskStatus.PENDING:
                continue
            self._ready.discard(current)
            to_block.append(current)
            queue.extend(sorted(self._dependents.get(current, ())))
        return to_block

    def on_retry(self, task_id: str) -> List[str]:
        """Transitive dependents blocked by ``task_id`` that should return to pending."""
        to_unblock = []
        seen = {task_id}
        queue = deque(sorted(self._dependents.get(task_id, ())))
        while queue:
            current = queue.popleft()
            if current in seen:
                continue
            seen.add(current)
            task = self.store.get(current)
            if task is None or task.status != TaskStatus.BLOCKED or task.blocked_by != task_id:
                continue
            to_unblock.append(current)
            queue.extend(sorted(self._dependents.get(current, ())))
        return to_unblock

    def dependency_chain(self, task_id: str) -> List[str]:
        """Transitive prerequisites of a task in topological order."""
        if task_id not in self._dependencies:
            raise TaskNotFound(task_id)
        ancestors: Set[str] = set()
        queue = deque(self._dependencies[task_id])
        while queue:
            current = queue.popleft()
            if current in ancestors:
                continue
            ancestors.add(current)
            queue.extend(self._dependencies.get(current, ()))
        ordered_nodes = sorted(
            ancestors,
            key=lambda tid: self.store.get(tid).sequence if self.store.get(tid) else 0
        )
        return topological_order({tid: self._dependencies.get(tid, ()) for tid in ordered_nodes})

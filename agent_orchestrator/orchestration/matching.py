"""
Capability matching between tasks and agents.

Task types never drive control flow; they only feed this score.
"""

from typing import Dict, FrozenSet, Iterable

from ..models.core import (
    AgentCapability, CapabilityCategory, ComplexityTier, Task, TaskPriority, TaskType
)

CATEGORY_MATCH_SCORE = 20.0
GENERAL_MATCH_SCORE = 5.0
AFFINITY_MATCH_SCORE = 10.0
CRITICAL_COMPLEXITY_BONUS = 15.0

TASK_CATEGORIES: Dict[TaskType, FrozenSet[CapabilityCategory]] = {
    TaskType.REQUIREMENT: frozenset({CapabilityCategory.PLANNING}),
    TaskType.DESIGN: frozenset({CapabilityCategory.DESIGN}),
    TaskType.IMPLEMENTATION: frozenset({CapabilityCategory.DEVELOPMENT}),
    TaskType.TEST: frozenset({CapabilityCategory.TESTING}),
    TaskType.DEPLOYMENT: frozenset({CapabilityCategory.DEPLOYMENT}),
    TaskType.REVIEW: frozenset({CapabilityCategory.TESTING, CapabilityCategory.SECURITY}),
}


def _lower(values: Iterable[str]) -> set:
    return {v.lower() for v in values}


def capability_match_score(capabilities: Iterable[AgentCapability], task: Task) -> float:
    """
    Score how well a capability set fits a task.

    Only capabilities whose category serves the task type (or general
    capabilities) contribute. A score of 0 means the agent cannot take the task.

    Args:
        capabilities: Declared agent capabilities
        task: Task to match

    Returns:
        float: Match score, higher is better
    """
    wanted = TASK_CATEGORIES.get(task.task_type, frozenset())
    languages = _lower(task.languages)
    frameworks = _lower(task.frameworks)
    score = 0.0

    for capability in capabilities:
        if capability.category in wanted:
            score += CATEGORY_MATCH_SCORE
        elif capability.category == CapabilityCategory.GENERAL:
            score += GENERAL_MATCH_SCORE
        else:
            continue

        score += AFFINITY_MATCH_SCORE * len(languages & _lower(capability.languages))
        score += AFFINITY_MATCH_SCORE * len(frameworks & _lower(capability.frameworks))

        if task.priority == TaskPriority.CRITICAL and capability.complexity == ComplexityTier.COMPLEX:
            score += CRITICAL_COMPLEXITY_BONUS

    return score


def is_compatible(capabilities: Iterable[AgentCapability], task: Task) -> bool:
    return capability_match_score(capabilities, task) > 0

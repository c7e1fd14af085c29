"""
Task catalog: maps application task types to routing and caching hints.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict


class TaskComplexity(str, Enum):
    """Coarse cost/quality class of a request."""
    SIMPLE = "simple"
    MEDIUM = "medium"
    COMPLEX = "complex"

    def downgraded(self) -> "TaskComplexity":
        """Next cheaper class (simple stays simple)."""
        order = [TaskComplexity.COMPLEX, TaskComplexity.MEDIUM, TaskComplexity.SIMPLE]
        return order[min(order.index(self) + 1, len(order) - 1)]


class SubjectTier(str, Enum):
    FREE = "free"
    PREMIUM = "premium"


@dataclass(frozen=True)
class TaskProfile:
    complexity: TaskComplexity
    cache_category: str


TASK_PROFILES: Dict[str, TaskProfile] = {
    "analysis": TaskProfile(TaskComplexity.COMPLEX, "assessment_insight"),
    "therapy": TaskProfile(TaskComplexity.COMPLEX, "ai_response"),
    "deep-insight": TaskProfile(TaskComplexity.COMPLEX, "assessment_insight"),
    "relationship-advice": TaskProfile(TaskComplexity.COMPLEX, "ai_response"),
    "recommendations": TaskProfile(TaskComplexity.MEDIUM, "recommendation"),
    "goal-setting": TaskProfile(TaskComplexity.MEDIUM, "recommendation"),
    "progress-analysis": TaskProfile(TaskComplexity.MEDIUM, "ai_response"),
    "daily-tip": TaskProfile(TaskComplexity.MEDIUM, "daily_tip"),
    "greetings": TaskProfile(TaskComplexity.SIMPLE, "ai_response"),
    "confirmations": TaskProfile(TaskComplexity.SIMPLE, "ai_response"),
    "simple-responses": TaskProfile(TaskComplexity.SIMPLE, "ai_response"),
}

GENERAL_TASK = TaskProfile(TaskComplexity.MEDIUM, "ai_response")


def task_profile(task_type: str) -> TaskProfile:
    """Routing hints for a task type; unknown types are treated as general."""
    return TASK_PROFILES.get(task_type, GENERAL_TASK)

"""Core modules for the exploration engine."""

from explorer.core.errors import (
    ExplorationError,
    ExplorationNotFoundError,
    PartialFailureError,
    ValidationError,
)
from explorer.core.models import (
    ExecutionMode,
    Exploration,
    ExplorationConfig,
    ExplorationStatus,
    ExplorationSummary,
    WorktreeExploration,
    WorktreeStatus,
)
from explorer.core.state import ExplorationStateManager

__all__ = [
    "ExecutionMode",
    "Exploration",
    "ExplorationConfig",
    "ExplorationError",
    "ExplorationNotFoundError",
    "ExplorationStateManager",
    "ExplorationStatus",
    "ExplorationSummary",
    "PartialFailureError",
    "ValidationError",
    "WorktreeExploration",
    "WorktreeStatus",
]

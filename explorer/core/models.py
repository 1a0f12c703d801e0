"""Pydantic models for explorations and their shared-volume documents.

Records are treated as values: updates go through ``model_copy(update=...)``
and the full record is written back, never patched in place on disk.
"""

from __future__ import annotations

import secrets
import string
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator, model_validator

from explorer.core.errors import ValidationError as ExplorationValidationError
from explorer.core.resources import ResourceAllocation, validate_cpu_limit, validate_memory_limit

_ID_ALPHABET = string.ascii_letters + string.digits + "_-"


def _utc_now() -> datetime:
    """Get current UTC time (timezone-aware)."""
    return datetime.now(UTC)


def generate_id(prefix: str, length: int = 10) -> str:
    """Random url-safe id with a greppable prefix, e.g. ``exp-4fK2_a9Qz1``."""
    return f"{prefix}-" + "".join(secrets.choice(_ID_ALPHABET) for _ in range(length))


class ExplorationStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    STOPPED = "stopped"

    @property
    def is_terminal(self) -> bool:
        return self in (
            ExplorationStatus.COMPLETED,
            ExplorationStatus.FAILED,
            ExplorationStatus.STOPPED,
        )


class WorktreeStatus(str, Enum):
    CREATED = "created"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class ExecutionMode(str, Enum):
    PARALLEL = "parallel"
    SEQUENTIAL = "sequential"


class InsightType(str, Enum):
    APPROACH = "approach"
    DECISION = "decision"
    FINDING = "finding"
    ISSUE = "issue"


# --- Configuration ---


class ExplorationConfig(BaseModel):
    """Per-exploration configuration.

    Invalid values raise ``pydantic.ValidationError`` on construction; use
    ``explorer.core.config.build_exploration_config`` to get the engine's
    own ``ValidationError`` instead.
    """

    branches: int = Field(default=3, ge=1, le=10)
    strategies: list[str] = Field(default_factory=list)
    timeout_minutes: int = Field(default=30, gt=0)
    docker_image: str = "node:20"
    cpu_limit: str = "2"
    memory_limit: str = "4g"
    auto_merge: bool = False
    no_cleanup: bool = False
    port_range_start: int = Field(default=3000, gt=0, le=65535)
    port_range_end: int = Field(default=3100, gt=0, le=65535)
    mode: ExecutionMode = ExecutionMode.PARALLEL

    @field_validator("cpu_limit", mode="before")
    @classmethod
    def _check_cpu(cls, v: Any) -> str:
        try:
            return validate_cpu_limit(str(v))
        except ExplorationValidationError as e:
            raise ValueError(str(e)) from e

    @field_validator("memory_limit")
    @classmethod
    def _check_memory(cls, v: str) -> str:
        try:
            return validate_memory_limit(v)
        except ExplorationValidationError as e:
            raise ValueError(str(e)) from e

    @field_validator("docker_image")
    @classmethod
    def _check_image(cls, v: str) -> str:
        if not v or v.startswith("-") or any(c.isspace() for c in v):
            raise ValueError(f"Invalid docker image: {v!r}")
        return v

    @model_validator(mode="after")
    def _check_ports(self) -> ExplorationConfig:
        if self.port_range_start >= self.port_range_end:
            raise ValueError(
                f"port_range_start ({self.port_range_start}) must be below "
                f"port_range_end ({self.port_range_end})"
            )
        if len(self.strategies) > self.branches:
            raise ValueError(
                f"{len(self.strategies)} strategies given for {self.branches} branches"
            )
        return self

    def strategy_for(self, index: int) -> str | None:
        """Strategy label for a 1-based worktree index, if any."""
        if 1 <= index <= len(self.strategies):
            return self.strategies[index - 1]
        return None


# --- Exploration Records ---


class WorktreeProgress(BaseModel):
    current_stage: str = "initializing"
    percentage: int = 0
    stages_completed: list[str] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)
    insights_published: int = 0
    last_update: datetime = Field(default_factory=_utc_now)


class WorktreeExploration(BaseModel):
    """One branch/attempt inside an exploration, identified by its 1-based index."""

    index: int = Field(ge=1)
    branch_name: str
    worktree_path: str
    status: WorktreeStatus = WorktreeStatus.CREATED
    strategy: str | None = None
    allocated_resources: ResourceAllocation | None = None
    container_id: str | None = None
    progress: WorktreeProgress = Field(default_factory=WorktreeProgress)
    started_at: datetime | None = None
    completed_at: datetime | None = None


class ExplorationResults(BaseModel):
    insights_collected: int = 0
    decisions_made: int = 0
    winner: int | None = None
    comparison_report: str | None = None
    merged_branch: str | None = None
    merge_commit: str | None = None
    merge_backup_branch: str | None = None
    merge_conflicts: list[str] = Field(default_factory=list)
    merge_error: str | None = None


class Exploration(BaseModel):
    """Root aggregate: one invocation of the engine."""

    id: str = Field(default_factory=lambda: generate_id("exp"))
    task: str
    config: ExplorationConfig
    status: ExplorationStatus = ExplorationStatus.PENDING
    worktrees: list[WorktreeExploration] = Field(default_factory=list)
    completed_branches: int = 0
    results: ExplorationResults | None = None
    created_at: datetime = Field(default_factory=_utc_now)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    duration_ms: int | None = None

    @property
    def branches(self) -> int:
        return self.config.branches

    @property
    def mode(self) -> ExecutionMode:
        return self.config.mode

    def get_worktree(self, index: int) -> WorktreeExploration | None:
        for worktree in self.worktrees:
            if worktree.index == index:
                return worktree
        return None

    def with_worktree(self, index: int, **changes: Any) -> Exploration:
        """Copy of this exploration with worktree ``index`` replaced.

        Raises:
            KeyError: No worktree carries that index.
        """
        replaced = False
        worktrees = []
        for worktree in self.worktrees:
            if worktree.index == index:
                worktrees.append(
                    WorktreeExploration.model_validate({**worktree.model_dump(), **changes})
                )
                replaced = True
            else:
                worktrees.append(worktree)
        if not replaced:
            raise KeyError(index)
        return self.model_copy(update={"worktrees": worktrees})


class ExplorationSummary(BaseModel):
    id: str
    task: str
    status: ExplorationStatus
    mode: ExecutionMode
    branches: int
    completed_branches: int
    created_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None
    duration_ms: int | None = None

    @classmethod
    def from_exploration(cls, exploration: Exploration) -> ExplorationSummary:
        duration = exploration.duration_ms
        if duration is None and exploration.started_at and exploration.completed_at:
            delta = exploration.completed_at - exploration.started_at
            duration = int(delta.total_seconds() * 1000)
        return cls(
            id=exploration.id,
            task=exploration.task,
            status=exploration.status,
            mode=exploration.mode,
            branches=exploration.branches,
            completed_branches=exploration.completed_branches,
            created_at=exploration.created_at,
            started_at=exploration.started_at,
            completed_at=exploration.completed_at,
            duration_ms=duration,
        )


class ExplorationState(BaseModel):
    """Runtime checkpoint written next to the metadata record."""

    exploration_id: str
    status: ExplorationStatus
    last_saved: datetime = Field(default_factory=_utc_now)
    allocated_ports: list[int] = Field(default_factory=list)
    container_ids: list[str] = Field(default_factory=list)
    worktree_paths: list[str] = Field(default_factory=list)
    shared_volume_path: str | None = None


# --- Shared Volume Documents ---


class Insight(BaseModel):
    id: str = Field(default_factory=lambda: generate_id("insight"))
    worktree_id: str
    type: InsightType
    title: str
    content: str
    tags: list[str] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)
    chosen_option: int | None = None
    timestamp: datetime = Field(default_factory=_utc_now)


class DecisionOption(BaseModel):
    index: int
    label: str
    description: str = ""
    pros: list[str] = Field(default_factory=list)
    cons: list[str] = Field(default_factory=list)


class Decision(BaseModel):
    id: str = Field(default_factory=lambda: generate_id("decision"))
    proposed_by: str
    topic: str
    options: list[DecisionOption]
    votes: dict[str, int] = Field(default_factory=dict)
    chosen_option: int | None = None
    rationale: str | None = None
    timestamp: datetime = Field(default_factory=_utc_now)

    @property
    def resolved(self) -> bool:
        return self.chosen_option is not None


class InsightsPool(BaseModel):
    exploration_id: str
    insights: list[Insight] = Field(default_factory=list)
    total_count: int = 0
    last_updated: datetime = Field(default_factory=_utc_now)


class DecisionsPool(BaseModel):
    exploration_id: str
    decisions: list[Decision] = Field(default_factory=list)
    total_count: int = 0
    last_updated: datetime = Field(default_factory=_utc_now)


class ProgressDocument(BaseModel):
    worktree_index: int
    current_stage: str = "initializing"
    percentage: int = 0
    stages_completed: list[str] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)
    last_updated: datetime = Field(default_factory=_utc_now)


class MetricsDocument(BaseModel):
    worktree_index: int
    insights_published: int = 0
    decisions_participated: int = 0
    last_updated: datetime = Field(default_factory=_utc_now)


class LatestInsightDocument(BaseModel):
    worktree_index: int
    insight: Insight | None = None
    last_updated: datetime = Field(default_factory=_utc_now)

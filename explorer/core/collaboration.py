"""Insight and decision exchange between the worktrees of one exploration.

All pool access goes through the FileLockManager; each agent passes its own
worktree id (``worktree-<N>``) so lock metadata shows who holds a pool.
"""

from __future__ import annotations

import logging
import math
from collections import Counter
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field

from explorer.core.errors import ValidationError
from explorer.core.file_lock import Document, FileLockManager
from explorer.core.models import (
    Decision,
    DecisionOption,
    DecisionsPool,
    Insight,
    InsightsPool,
    InsightType,
    LatestInsightDocument,
    MetricsDocument,
)
from explorer.core.shared_volume import LATEST_INSIGHT_FILE, METRICS_FILE, SharedVolumeManager

logger = logging.getLogger(__name__)

_READER = "coordinator"


class CollaborationStats(BaseModel):
    total_insights: int = 0
    total_decisions: int = 0
    pending_decisions: int = 0
    resolved_decisions: int = 0
    insights_by_type: dict[str, int] = Field(default_factory=dict)
    insights_by_worktree: dict[str, int] = Field(default_factory=dict)
    participating_worktrees: int = 0


def _worktree_index(worktree_id: str) -> int | None:
    suffix = worktree_id.removeprefix("worktree-")
    return int(suffix) if suffix != worktree_id and suffix.isdigit() else None


class CollaborationCoordinator:
    """Publish, query and vote on the shared pools of an exploration."""

    def __init__(
        self,
        volume: SharedVolumeManager,
        lock_manager: FileLockManager | None = None,
    ):
        self.volume = volume
        self.exploration_id = volume.exploration_id
        self.lock_manager = lock_manager or volume.lock_manager

    # --- insights ---

    def publish_insight(
        self,
        worktree_id: str,
        type: InsightType | str,
        title: str,
        content: str,
        tags: list[str] | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Insight:
        """Append an insight to the pool and record it as the worktree's latest."""
        if not title.strip():
            raise ValidationError("Insight title cannot be empty")
        try:
            insight_type = InsightType(type)
        except ValueError as e:
            raise ValidationError(f"Unknown insight type: {type!r}") from e

        insight = Insight(
            worktree_id=worktree_id,
            type=insight_type,
            title=title,
            content=content,
            tags=tags or [],
            metadata=metadata or {},
        )

        def _append(pool: Document | None) -> InsightsPool:
            current = InsightsPool.model_validate(pool) if pool else InsightsPool(exploration_id=self.exploration_id)
            insights = [*current.insights, insight]
            return current.model_copy(
                update={"insights": insights, "total_count": len(insights), "last_updated": datetime.now(UTC)}
            )

        self.lock_manager.update_with_lock(self.volume.insights_pool_path, worktree_id, _append)
        self._record_publication(worktree_id, insight)
        logger.info(f"Insight published: {insight.title} by {worktree_id}")
        return insight

    def _record_publication(self, worktree_id: str, insight: Insight) -> None:
        index = _worktree_index(worktree_id)
        if index is None:
            return
        data_dir = self.volume.worktree_data_dir(index)
        if not data_dir.is_dir():
            return
        self.lock_manager.write_with_lock(
            data_dir / LATEST_INSIGHT_FILE,
            LatestInsightDocument(worktree_index=index, insight=insight),
            worktree_id,
        )
        self._bump_metric(data_dir / METRICS_FILE, index, worktree_id, "insights_published")

    def _bump_metric(self, path: Path, index: int, owner: str, field: str) -> None:
        def _increment(document: Document | None) -> MetricsDocument:
            metrics = MetricsDocument.model_validate(document) if document else MetricsDocument(worktree_index=index)
            return metrics.model_copy(
                update={field: getattr(metrics, field) + 1, "last_updated": datetime.now(UTC)}
            )

        self.lock_manager.update_with_lock(path, owner, _increment)

    def get_all_insights(self) -> list[Insight]:
        pool = self.lock_manager.read_with_lock(self.volume.insights_pool_path, _READER)
        if not pool:
            return []
        return InsightsPool.model_validate(pool).insights

    def get_insights_by_type(self, type: InsightType | str) -> list[Insight]:
        wanted = InsightType(type)
        return [i for i in self.get_all_insights() if i.type == wanted]

    def get_insights_by_tags(self, tags: list[str]) -> list[Insight]:
        """Insights carrying at least one of ``tags``."""
        wanted = set(tags)
        return [i for i in self.get_all_insights() if wanted.intersection(i.tags)]

    def get_insights_from_others(self, worktree_id: str) -> list[Insight]:
        return [i for i in self.get_all_insights() if i.worktree_id != worktree_id]

    def get_recent_insights(self, limit: int = 10) -> list[Insight]:
        if limit <= 0:
            return []
        return self.get_all_insights()[-limit:]

    def search_insights(self, query: str) -> list[Insight]:
        """Case-insensitive match on title, content or tags."""
        needle = query.lower()
        return [
            i
            for i in self.get_all_insights()
            if needle in i.title.lower()
            or needle in i.content.lower()
            or any(needle in tag.lower() for tag in i.tags)
        ]

    # --- decisions ---

    def propose_decision(
        self,
        worktree_id: str,
        topic: str,
        options: list[DecisionOption | dict[str, Any]],
        rationale: str | None = None,
    ) -> Decision:
        if not topic.strip():
            raise ValidationError("Decision topic cannot be empty")
        if len(options) < 2:
            raise ValidationError(f"A decision needs at least two options, got {len(options)}")

        normalized = []
        for index, option in enumerate(options):
            data = option.model_dump() if isinstance(option, DecisionOption) else dict(option)
            data["index"] = index
            normalized.append(DecisionOption.model_validate(data))
        decision = Decision(proposed_by=worktree_id, topic=topic, options=normalized, rationale=rationale)

        def _append(pool: Document | None) -> DecisionsPool:
            current = DecisionsPool.model_validate(pool) if pool else DecisionsPool(exploration_id=self.exploration_id)
            decisions = [*current.decisions, decision]
            return current.model_copy(
                update={"decisions": decisions, "total_count": len(decisions), "last_updated": datetime.now(UTC)}
            )

        self.lock_manager.update_with_lock(self.volume.decisions_pool_path, worktree_id, _append)
        logger.info(f"Decision proposed: {topic} by {worktree_id}")
        return decision

    def vote_on_decision(
        self,
        decision_id: str,
        worktree_id: str,
        option_index: int,
        total_voters: int | None = None,
    ) -> Decision | None:
        """Record a vote. Returns the updated decision, None if unknown.

        The decision resolves once an option holds ``ceil(total / 2)`` votes,
        where total is ``total_voters`` if given, else the votes cast so far.
        A worktree voting again replaces its previous vote.

        Raises:
            ValidationError: Decision already resolved, or option out of range.
        """
        updated: list[Decision] = []

        def _vote(pool: Document | None) -> DecisionsPool:
            current = DecisionsPool.model_validate(pool) if pool else DecisionsPool(exploration_id=self.exploration_id)
            decisions = []
            for decision in current.decisions:
                if decision.id == decision_id:
                    decision = self._apply_vote(decision, worktree_id, option_index, total_voters)
                    updated.append(decision)
                decisions.append(decision)
            return current.model_copy(update={"decisions": decisions, "last_updated": datetime.now(UTC)})

        self.lock_manager.update_with_lock(self.volume.decisions_pool_path, worktree_id, _vote)
        if not updated:
            logger.warning(f"Vote by {worktree_id} for unknown decision {decision_id}")
            return None

        decision = updated[0]
        index = _worktree_index(worktree_id)
        if index is not None and self.volume.worktree_data_dir(index).is_dir():
            self._bump_metric(
                self.volume.worktree_data_dir(index) / METRICS_FILE, index, worktree_id, "decisions_participated"
            )
        logger.info(f"Vote recorded: {worktree_id} voted for option {option_index} on {decision.topic}")
        return decision

    @staticmethod
    def _apply_vote(
        decision: Decision, worktree_id: str, option_index: int, total_voters: int | None
    ) -> Decision:
        if decision.resolved:
            raise ValidationError(f"Decision {decision.id} is already resolved")
        if not 0 <= option_index < len(decision.options):
            raise ValidationError(
                f"Option {option_index} out of range for decision {decision.id} "
                f"({len(decision.options)} options)"
            )
        votes = {**decision.votes, worktree_id: option_index}
        total = total_voters if total_voters else len(votes)
        threshold = math.ceil(total / 2)
        (leader, count), = Counter(votes.values()).most_common(1)
        chosen = leader if count >= threshold else None
        return decision.model_copy(update={"votes": votes, "chosen_option": chosen})

    def get_all_decisions(self) -> list[Decision]:
        pool = self.lock_manager.read_with_lock(self.volume.decisions_pool_path, _READER)
        if not pool:
            return []
        return DecisionsPool.model_validate(pool).decisions

    def get_pending_decisions(self) -> list[Decision]:
        return [d for d in self.get_all_decisions() if not d.resolved]

    def get_resolved_decisions(self) -> list[Decision]:
        return [d for d in self.get_all_decisions() if d.resolved]

    def get_decision(self, decision_id: str) -> Decision | None:
        for decision in self.get_all_decisions():
            if decision.id == decision_id:
                return decision
        return None

    # --- reporting ---

    def get_stats(self) -> CollaborationStats:
        insights = self.get_all_insights()
        decisions = self.get_all_decisions()
        resolved = sum(1 for d in decisions if d.resolved)
        return CollaborationStats(
            total_insights=len(insights),
            total_decisions=len(decisions),
            pending_decisions=len(decisions) - resolved,
            resolved_decisions=resolved,
            insights_by_type=dict(Counter(i.type.value for i in insights)),
            insights_by_worktree=dict(Counter(i.worktree_id for i in insights)),
            participating_worktrees=len({i.worktree_id for i in insights}),
        )

    def get_insights_summary(self, recent: int = 5) -> str:
        """Markdown summary of the insights pool."""
        stats = self.get_stats()
        lines = ["# Insights Summary", "", f"Total Insights: {stats.total_insights}", "", "## By Type"]
        lines.extend(f"- {kind}: {count}" for kind, count in sorted(stats.insights_by_type.items()))
        lines.extend(["", "## By Worktree"])
        lines.extend(f"- {wt}: {count}" for wt, count in sorted(stats.insights_by_worktree.items()))
        lines.extend(["", f"## Recent Insights (Last {recent})"])
        lines.extend(
            f"- [{i.type.value}] {i.title} ({i.worktree_id})" for i in self.get_recent_insights(recent)
        )
        return "\n".join(lines) + "\n"

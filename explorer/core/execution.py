"""Execution modes: run one sandbox per worktree and collect the outcome.

``parallel`` starts every worktree at once on a thread pool; ``sequential``
tries worktrees one at a time in index order and stops at the first success.
The mode is resolved through ``EXECUTION_STRATEGIES``.
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import ClassVar

from pydantic import BaseModel, Field

from explorer.core.errors import ContainerError, ExplorationError
from explorer.core.models import ExecutionMode, Exploration, ExplorationResults, WorktreeExploration, WorktreeStatus
from explorer.core.resources import container_name_for
from explorer.core.state import ExplorationStateManager
from explorer.core.worktrees import MergeResult
from explorer.sandbox.containers import SHARED_MOUNT, ContainerManager, ContainerSpec, ContainerStatus

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 5.0


@dataclass
class ExecutionContext:
    """Collaborators and settings one execution needs."""

    exploration: Exploration
    state_manager: ExplorationStateManager
    containers: ContainerManager
    shared_volume_path: Path
    # Command run in every sandbox; empty keeps the image's default
    command: list[str] = field(default_factory=list)
    poll_interval: float = DEFAULT_POLL_INTERVAL
    stop_timeout: int = 30


class WorktreeOutcome(BaseModel):
    index: int
    container_name: str
    container_id: str | None = None
    status: WorktreeStatus
    exit_code: int | None = None
    timed_out: bool = False
    error: str | None = None


class ExecutionResult(BaseModel):
    exploration_id: str
    mode: ExecutionMode
    total_branches: int
    completed_branches: int
    duration_ms: int
    winner: int | None = None
    insights_collected: int = 0
    decisions_made: int = 0
    outcomes: list[WorktreeOutcome] = Field(default_factory=list)
    report: str = ""
    merge: MergeResult | None = None

    @property
    def success(self) -> bool:
        return self.completed_branches > 0


def _utc_now() -> datetime:
    return datetime.now(UTC)


class ExecutionStrategy:
    """Shared machinery for running worktree sandboxes.

    Subclasses implement ``run`` to decide which worktrees run and when.
    """

    mode: ClassVar[ExecutionMode]

    def __init__(self, context: ExecutionContext):
        self.context = context

    @property
    def exploration(self) -> Exploration:
        return self.context.exploration

    def execute(self) -> ExecutionResult:
        started = time.monotonic()
        worktrees = sorted(self.exploration.worktrees, key=lambda w: w.index)
        logger.info(
            f"Starting {self.mode.value} execution of {self.exploration.id} "
            f"({len(worktrees)} worktrees)"
        )
        outcomes = sorted(self.run(worktrees), key=lambda o: o.index)
        result = self.collect_results(outcomes, started)
        logger.info(
            f"{self.mode.value.capitalize()} execution finished: "
            f"{result.completed_branches}/{result.total_branches} succeeded"
        )
        return result

    def run(self, worktrees: list[WorktreeExploration]) -> list[WorktreeOutcome]:
        raise NotImplementedError

    def build_container_spec(self, worktree: WorktreeExploration) -> ContainerSpec:
        exploration = self.exploration
        resources = worktree.allocated_resources
        return ContainerSpec(
            container_name=container_name_for(exploration.id, worktree.index),
            image=exploration.config.docker_image,
            worktree_path=worktree.worktree_path,
            shared_volume_path=str(self.context.shared_volume_path),
            cpu_limit=resources.cpu_limit if resources else exploration.config.cpu_limit,
            memory_limit=resources.memory_limit if resources else exploration.config.memory_limit,
            port=resources.port if resources else None,
            environment={
                "EXPLORATION_ID": exploration.id,
                "WORKTREE_ID": f"worktree-{worktree.index}",
                "WORKTREE_INDEX": str(worktree.index),
                "STRATEGY": worktree.strategy or "default",
                "TASK": exploration.task,
                "SHARED_VOLUME": SHARED_MOUNT,
            },
            command=list(self.context.command),
        )

    def run_worktree(self, worktree: WorktreeExploration) -> WorktreeOutcome:
        """Start the worktree's sandbox, wait for it to exit, then stop it."""
        state = self.context.state_manager
        spec = self.build_container_spec(worktree)
        name = spec.container_name
        deadline = time.monotonic() + self.exploration.config.timeout_minutes * 60

        container_id = self.context.containers.create_container(spec)
        state.update_worktree(
            self.exploration.id,
            worktree.index,
            status=WorktreeStatus.RUNNING,
            container_id=container_id,
            started_at=_utc_now(),
        )
        try:
            final = self._wait_for_exit(name, deadline)
        finally:
            try:
                self.context.containers.stop_container(name, timeout=self.context.stop_timeout)
            except ExplorationError as e:
                logger.warning(f"Failed to stop container {name}: {e}")

        outcome = self._outcome(worktree.index, name, container_id, final)
        state.update_worktree(
            self.exploration.id,
            worktree.index,
            status=outcome.status,
            completed_at=_utc_now(),
        )
        return outcome

    def _wait_for_exit(self, name: str, deadline: float) -> ContainerStatus | None:
        """Poll until the container exits. None means the deadline passed.

        Raises:
            ContainerError: The container no longer exists.
        """
        while True:
            status = self.context.containers.get_container_status(name)
            if status is None:
                raise ContainerError(f"Container {name} disappeared before exiting")
            if status.exited:
                return status
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                logger.warning(f"Container {name} still running at timeout")
                return None
            time.sleep(min(self.context.poll_interval, remaining))

    @staticmethod
    def _outcome(
        index: int, name: str, container_id: str, final: ContainerStatus | None
    ) -> WorktreeOutcome:
        if final is None:
            return WorktreeOutcome(
                index=index,
                container_name=name,
                container_id=container_id,
                status=WorktreeStatus.FAILED,
                timed_out=True,
                error="Timed out",
            )
        status = WorktreeStatus.COMPLETED if final.exit_code == 0 else WorktreeStatus.FAILED
        return WorktreeOutcome(
            index=index,
            container_name=name,
            container_id=container_id,
            status=status,
            exit_code=final.exit_code,
        )

    def _failed_outcome(self, worktree: WorktreeExploration, error: Exception) -> WorktreeOutcome:
        logger.error(f"Worktree {worktree.index} of {self.exploration.id} failed: {error}")
        self.context.state_manager.update_worktree(
            self.exploration.id, worktree.index, status=WorktreeStatus.FAILED, completed_at=_utc_now()
        )
        return WorktreeOutcome(
            index=worktree.index,
            container_name=container_name_for(self.exploration.id, worktree.index),
            status=WorktreeStatus.FAILED,
            error=str(error),
        )

    def collect_results(self, outcomes: list[WorktreeOutcome], started: float) -> ExecutionResult:
        exploration_id = self.exploration.id
        state = self.context.state_manager
        insights = state.get_insights_for_exploration(exploration_id)
        decisions = state.get_decisions_for_exploration(exploration_id)

        completed = [o for o in outcomes if o.status == WorktreeStatus.COMPLETED]
        winner = completed[0].index if completed else None
        resolved = sum(1 for d in decisions if d.resolved)
        report = self.generate_report(outcomes, winner)

        result = ExecutionResult(
            exploration_id=exploration_id,
            mode=self.mode,
            total_branches=self.exploration.branches,
            completed_branches=len(completed),
            duration_ms=int((time.monotonic() - started) * 1000),
            winner=winner,
            insights_collected=len(insights),
            decisions_made=resolved,
            outcomes=outcomes,
            report=report,
        )
        state.update_exploration(
            exploration_id,
            completed_branches=result.completed_branches,
            results=ExplorationResults(
                insights_collected=result.insights_collected,
                decisions_made=result.decisions_made,
                winner=winner,
                comparison_report=report,
            ),
        )
        return result

    def generate_report(self, outcomes: list[WorktreeOutcome], winner: int | None) -> str:
        """Markdown comparison of the worktree outcomes."""
        exploration = self.exploration
        lines = [
            f"# Exploration Results: {exploration.id}",
            "",
            f"Task: {exploration.task}",
            f"Mode: {self.mode.value}",
            f"Winner: {f'worktree {winner}' if winner else 'none'}",
            "",
            "## Worktree Results",
            "",
        ]
        for outcome in outcomes:
            worktree = exploration.get_worktree(outcome.index)
            strategy = (worktree.strategy if worktree else None) or "default"
            lines.append(f"### Worktree {outcome.index}: {strategy}")
            lines.append(f"- Status: {outcome.status.value}")
            if outcome.exit_code is not None:
                lines.append(f"- Exit code: {outcome.exit_code}")
            if outcome.timed_out:
                lines.append("- Timed out")
            if outcome.error and not outcome.timed_out:
                lines.append(f"- Error: {outcome.error}")
            lines.append("")
        return "\n".join(lines)


class ParallelExecution(ExecutionStrategy):
    """Run every worktree at the same time."""

    mode = ExecutionMode.PARALLEL

    def run(self, worktrees: list[WorktreeExploration]) -> list[WorktreeOutcome]:
        if not worktrees:
            return []
        outcomes: list[WorktreeOutcome] = []
        with ThreadPoolExecutor(max_workers=len(worktrees)) as pool:
            futures: dict[Future, WorktreeExploration] = {
                pool.submit(self.run_worktree, worktree): worktree for worktree in worktrees
            }
            for future in as_completed(futures):
                worktree = futures[future]
                try:
                    outcomes.append(future.result())
                except Exception as e:
                    outcomes.append(self._failed_outcome(worktree, e))
        return outcomes


class SequentialExecution(ExecutionStrategy):
    """Try worktrees in index order until one succeeds."""

    mode = ExecutionMode.SEQUENTIAL

    def run(self, worktrees: list[WorktreeExploration]) -> list[WorktreeOutcome]:
        outcomes: list[WorktreeOutcome] = []
        for worktree in worktrees:
            logger.info(f"Trying worktree {worktree.index}: {worktree.strategy or 'default'}")
            try:
                outcome = self.run_worktree(worktree)
            except Exception as e:
                outcome = self._failed_outcome(worktree, e)
            outcomes.append(outcome)
            if outcome.status == WorktreeStatus.COMPLETED:
                logger.info(f"Worktree {worktree.index} succeeded, skipping the rest")
                break
            logger.warning(f"Worktree {worktree.index} failed, trying next approach")
        return outcomes


EXECUTION_STRATEGIES: dict[ExecutionMode, type[ExecutionStrategy]] = {
    ExecutionMode.PARALLEL: ParallelExecution,
    ExecutionMode.SEQUENTIAL: SequentialExecution,
}


def create_execution_strategy(mode: ExecutionMode | str, context: ExecutionContext) -> ExecutionStrategy:
    return EXECUTION_STRATEGIES[ExecutionMode(mode)](context)

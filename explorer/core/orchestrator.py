"""Exploration lifecycle driver and composition root.

``ExplorationOrchestrator.from_config`` wires one instance of every
component for a repository. Tests build the orchestrator directly with
their own collaborators.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from explorer.core.config import EngineConfig
from explorer.core.errors import (
    ExplorationError,
    ExplorationNotFoundError,
    InvalidStateTransitionError,
    SafetyCheckError,
    ValidationError,
)
from explorer.core.execution import ExecutionContext, ExecutionResult, create_execution_strategy
from explorer.core.file_lock import FileLockManager
from explorer.core.models import (
    Exploration,
    ExplorationConfig,
    ExplorationResults,
    ExplorationState,
    ExplorationStatus,
    ExplorationSummary,
    WorktreeExploration,
    WorktreeStatus,
)
from explorer.core.process import SafeExecutor
from explorer.core.resources import AllocationRequest, ResourceAllocator, container_name_for
from explorer.core.safety import SafetyValidation, SafetyValidator
from explorer.core.shared_volume import LOCKS_DIR, SharedVolumeManager
from explorer.core.state import ExplorationStateManager
from explorer.core.validation import InputValidator
from explorer.core.worktrees import EXPLORATION_BRANCH_PREFIX, CreateWorktreeOptions, MergeResult, WorktreeManager
from explorer.sandbox.containers import ContainerManager, SandboxConfig

logger = logging.getLogger(__name__)

ENGINE_DIR_EXCLUDE = "/.explorer/"


class ExplorationOrchestrator:
    """Run explorations end to end: validate, provision, execute, clean up."""

    def __init__(
        self,
        repo_path: Path,
        config: EngineConfig,
        state_manager: ExplorationStateManager,
        worktrees: WorktreeManager,
        allocator: ResourceAllocator,
        containers: ContainerManager,
        safety: SafetyValidator,
        validator: InputValidator | None = None,
    ):
        self.repo_path = Path(repo_path)
        self.config = config
        self.state_manager = state_manager
        self.worktrees = worktrees
        self.allocator = allocator
        self.containers = containers
        self.safety = safety
        self.validator = validator or InputValidator()

    @classmethod
    def from_config(cls, repo_path: Path, config: EngineConfig | None = None) -> ExplorationOrchestrator:
        config = config or EngineConfig()
        repo_path = Path(repo_path).resolve()
        explorations_dir = config.resolve_explorations_dir(repo_path)
        validator = InputValidator()
        executor = SafeExecutor(
            default_timeout=config.git_timeout,
            max_output_bytes=config.max_output_bytes,
        )
        return cls(
            repo_path=repo_path,
            config=config,
            state_manager=ExplorationStateManager(explorations_dir, validator=validator),
            worktrees=WorktreeManager(
                repo_path, executor=executor, validator=validator, git_timeout=config.git_timeout
            ),
            allocator=ResourceAllocator(config.port_range_start, config.port_range_end),
            containers=ContainerManager(
                SandboxConfig(
                    allowed_mount_roots=[str(explorations_dir)],
                    docker_timeout=config.docker_timeout,
                    max_output_bytes=config.max_output_bytes,
                )
            ),
            safety=SafetyValidator(repo_path, executor=executor, config=config.safety),
            validator=validator,
        )

    # --- start ---

    def validate(self, branches: int) -> SafetyValidation:
        return self.safety.validate(branches)

    def start_exploration(self, task: str, config: ExplorationConfig) -> ExecutionResult:
        """Run a complete exploration and return its execution result.

        Worktrees are kept for review after a run; containers and ports are
        released. On any failure the exploration is marked failed, every
        resource it acquired is released and the error is re-raised.

        Raises:
            SafetyCheckError: Pre-flight validation failed; nothing was created.
        """
        logger.info(f"Starting exploration: {task} ({config.mode.value}, {config.branches} branches)")
        validation = self.safety.validate(config.branches)
        if not validation.passed:
            raise SafetyCheckError(validation.errors)
        for warning in validation.warnings:
            logger.warning(warning)

        self.worktrees.ensure_excluded(ENGINE_DIR_EXCLUDE)
        exploration = self.state_manager.create_exploration(task, config)
        try:
            return self._run(exploration)
        except Exception as e:
            logger.error(f"Exploration {exploration.id} failed: {e}")
            try:
                self.state_manager.update_status(exploration.id, ExplorationStatus.FAILED)
            except ExplorationError as status_error:
                logger.warning(f"Could not mark {exploration.id} failed: {status_error}")
            self._release(exploration.id, force=True)
            raise

    def _run(self, exploration: Exploration) -> ExecutionResult:
        config = exploration.config
        if self.containers.pull_image_if_needed(config.docker_image):
            logger.info(f"Docker image pulled: {config.docker_image}")

        exploration = self._create_worktrees(exploration)
        exploration = self._allocate_resources(exploration)

        shared_path = self.state_manager.get_shared_volume_path(exploration.id)
        lock_manager = FileLockManager(
            shared_path / LOCKS_DIR, timeout=self.config.lock_timeout, validator=self.validator
        )
        SharedVolumeManager(shared_path, exploration.id, lock_manager).initialize(config.branches)

        self.state_manager.save_state(
            ExplorationState(
                exploration_id=exploration.id,
                status=ExplorationStatus.RUNNING,
                allocated_ports=[w.allocated_resources.port for w in exploration.worktrees if w.allocated_resources],
                worktree_paths=[w.worktree_path for w in exploration.worktrees],
                shared_volume_path=str(shared_path),
            )
        )
        exploration = self.state_manager.update_status(exploration.id, ExplorationStatus.RUNNING)

        strategy = create_execution_strategy(
            config.mode,
            ExecutionContext(
                exploration=exploration,
                state_manager=self.state_manager,
                containers=self.containers,
                shared_volume_path=shared_path,
                command=list(self.config.agent_command),
                poll_interval=self.config.poll_interval,
            ),
        )
        result = strategy.execute()

        self._remove_containers(exploration)
        self.allocator.release_all(exploration.id)

        current = self.state_manager.load_exploration(exploration.id)
        if current.status == ExplorationStatus.STOPPED:
            logger.info(f"Exploration {exploration.id} was stopped during execution")
            return result
        final = ExplorationStatus.COMPLETED if result.success else ExplorationStatus.FAILED
        self.state_manager.update_status(exploration.id, final, duration_ms=result.duration_ms)
        logger.info(
            f"Exploration {exploration.id} {final.value}: "
            f"{result.completed_branches}/{result.total_branches} succeeded, "
            f"winner: {result.winner or 'none'}"
        )
        if final == ExplorationStatus.COMPLETED and config.auto_merge and result.winner is not None:
            result = result.model_copy(update={"merge": self._auto_merge(exploration.id)})
        return result

    def _create_worktrees(self, exploration: Exploration) -> Exploration:
        config = exploration.config
        base_dir = self.state_manager.get_exploration_dir(exploration.id)
        options = []
        for index in range(1, config.branches + 1):
            suffix = config.strategy_for(index) or str(index)
            options.append(
                CreateWorktreeOptions(
                    branch=f"{EXPLORATION_BRANCH_PREFIX}{exploration.id}-{suffix}",
                    path=str(base_dir / f"worktree-{index}"),
                )
            )
        infos = self.worktrees.create_multiple_worktrees(options, max_worktrees=self.config.max_worktrees)
        worktrees = [
            WorktreeExploration(
                index=index,
                branch_name=option.branch,
                worktree_path=info.path,
                strategy=config.strategy_for(index),
            )
            for index, (option, info) in enumerate(zip(options, infos), start=1)
        ]
        logger.info(f"Created {len(worktrees)} worktrees for {exploration.id}")
        return self.state_manager.update_exploration(exploration.id, worktrees=worktrees)

    def _allocate_resources(self, exploration: Exploration) -> Exploration:
        config = exploration.config
        allocations = self.allocator.allocate_multiple(
            [
                AllocationRequest(
                    exploration_id=exploration.id,
                    worktree_index=worktree.index,
                    cpu_limit=config.cpu_limit,
                    memory_limit=config.memory_limit,
                    port_range_start=config.port_range_start,
                    port_range_end=config.port_range_end,
                )
                for worktree in exploration.worktrees
            ]
        )
        for allocation in allocations:
            exploration = exploration.with_worktree(allocation.worktree_index, allocated_resources=allocation)
        return self.state_manager.update_exploration(exploration.id, worktrees=exploration.worktrees)

    # --- merge ---

    def merge_exploration(
        self,
        exploration_id: str,
        worktree_index: int | None = None,
        squash: bool = False,
    ) -> MergeResult:
        """Merge a finished worktree's branch into the main tree's branch.

        ``worktree_index`` defaults to the exploration's winner. The outcome,
        including conflicts, is recorded in the exploration's results.

        Raises:
            ValidationError: No index given and the exploration has no winner.
            ExplorationNotFoundError: Unknown exploration or worktree index.
            InvalidStateTransitionError: The worktree did not complete.
            GitOperationError: The merge could not be attempted.
        """
        exploration = self.state_manager.load_exploration(exploration_id)
        results = exploration.results or ExplorationResults()
        index = worktree_index if worktree_index is not None else results.winner
        if index is None:
            raise ValidationError(f"Exploration {exploration_id} has no winner to merge")
        worktree = exploration.get_worktree(index)
        if worktree is None:
            raise ExplorationNotFoundError(f"Worktree {index} not found in exploration {exploration_id}")
        if worktree.status != WorktreeStatus.COMPLETED:
            raise InvalidStateTransitionError(
                f"Cannot merge worktree {index} of {exploration_id} with status: {worktree.status.value}"
            )

        logger.info(f"Merging {worktree.branch_name} for exploration {exploration_id}")
        merge = self.worktrees.merge_branch(
            worktree.branch_name,
            squash=squash,
            message=f"Merge exploration {exploration_id} worktree {index}",
        )
        self._record_merge(
            exploration_id,
            merged_branch=worktree.branch_name if merge.merged else None,
            merge_commit=merge.commit,
            merge_backup_branch=merge.backup_branch,
            merge_conflicts=merge.conflicts,
            merge_error=None,
        )
        return merge

    def _auto_merge(self, exploration_id: str) -> MergeResult | None:
        """Merge the winner after a run; a failed merge never fails the run."""
        try:
            return self.merge_exploration(exploration_id)
        except ExplorationError as e:
            logger.warning(f"Auto-merge of {exploration_id} failed: {e}")
            self._record_merge(exploration_id, merge_error=str(e))
            return None

    def _record_merge(self, exploration_id: str, **fields: Any) -> None:
        exploration = self.state_manager.load_exploration(exploration_id)
        results = (exploration.results or ExplorationResults()).model_copy(update=fields)
        self.state_manager.update_exploration(exploration_id, results=results)

    # --- stop / cleanup ---

    def stop_exploration(self, exploration_id: str) -> Exploration:
        """Stop the containers of a running exploration and mark it stopped.

        Raises:
            InvalidStateTransitionError: Exploration is not running.
        """
        exploration = self.state_manager.load_exploration(exploration_id)
        if exploration.status != ExplorationStatus.RUNNING:
            raise InvalidStateTransitionError(
                f"Cannot stop exploration {exploration_id} with status: {exploration.status.value}"
            )
        logger.info(f"Stopping exploration {exploration_id}")
        self._remove_containers(exploration)
        self.allocator.release_all(exploration_id)
        return self.state_manager.update_status(exploration_id, ExplorationStatus.STOPPED)

    def cleanup(self, exploration_id: str, force: bool = False) -> list[str]:
        """Remove containers, ports, worktrees and branches of an exploration.

        The record itself is deleted unless the exploration asked to keep it
        (``no_cleanup``) and ``force`` is not set.

        Returns:
            Messages for the resources that could not be removed.
        """
        exploration = self.state_manager.load_exploration(exploration_id)
        if exploration.status == ExplorationStatus.RUNNING and not force:
            raise InvalidStateTransitionError(
                f"Exploration {exploration_id} is running; stop it first or use force"
            )
        errors = self._release(exploration_id, force=force)
        if force or not exploration.config.no_cleanup:
            self.state_manager.delete_exploration(exploration_id)
        logger.info(f"Cleanup of {exploration_id} completed")
        return errors

    def _release(self, exploration_id: str, force: bool) -> list[str]:
        """Release everything an exploration holds, collecting failures."""
        try:
            exploration = self.state_manager.load_exploration(exploration_id)
        except ExplorationError as e:
            logger.warning(f"Cannot load {exploration_id} for cleanup: {e}")
            return [str(e)]

        errors = self._remove_containers(exploration)
        self.allocator.release_all(exploration_id)
        for worktree in exploration.worktrees:
            try:
                self.worktrees.remove_worktree(worktree.worktree_path, force=force)
                self.worktrees.delete_branch(worktree.branch_name, force=force)
            except ExplorationError as e:
                logger.warning(f"Failed to remove worktree {worktree.index} of {exploration_id}: {e}")
                errors.append(f"worktree {worktree.index}: {e}")
        if exploration.worktrees:
            try:
                self.worktrees.prune_worktrees()
            except ExplorationError as e:
                logger.warning(f"git worktree prune failed: {e}")
        return errors

    def _remove_containers(self, exploration: Exploration) -> list[str]:
        errors = []
        for worktree in exploration.worktrees:
            name = container_name_for(exploration.id, worktree.index)
            try:
                self.containers.stop_container(name)
                self.containers.remove_container(name, force=True)
            except ExplorationError as e:
                logger.warning(f"Failed to clean up container {name}: {e}")
                errors.append(f"{name}: {e}")
        return errors

    # --- queries ---

    def get_exploration_status(self, exploration_id: str) -> Exploration:
        return self.state_manager.load_exploration(exploration_id)

    def list_explorations(
        self,
        active_only: bool = False,
        status: ExplorationStatus | str | None = None,
    ) -> list[ExplorationSummary]:
        if active_only:
            summaries = self.state_manager.get_active_explorations()
        else:
            summaries = self.state_manager.list_explorations()
        if status is not None:
            wanted = ExplorationStatus(status)
            summaries = [s for s in summaries if s.status == wanted]
        return summaries

    def delete_exploration(self, exploration_id: str) -> None:
        """Delete the record only; use ``cleanup`` to release resources first."""
        self.state_manager.load_exploration(exploration_id)
        self.state_manager.delete_exploration(exploration_id)

"""Durable exploration records.

Each exploration is a directory under the explorations root::

    <explorations-root>/<exploration-id>/
        metadata.json   the Exploration record
        state.json      runtime checkpoint with last_saved
        shared/         collaboration volume (see shared_volume.py)

Updates read the full record, apply an immutable copy-with-changes and write
it back atomically, so a crash leaves either the old or the new record.
"""

from __future__ import annotations

import json
import logging
import shutil
import threading
from collections.abc import Generator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import pydantic
from filelock import FileLock
from filelock import Timeout as FileLockTimeout

from explorer.core.errors import ExplorationNotFoundError, LockTimeoutError, ValidationError
from explorer.core.file_lock import FileLockManager, atomic_write_json, read_json
from explorer.core.models import (
    Decision,
    DecisionsPool,
    Exploration,
    ExplorationConfig,
    ExplorationState,
    ExplorationStatus,
    ExplorationSummary,
    Insight,
    InsightsPool,
)
from explorer.core.shared_volume import (
    DECISIONS_POOL_FILE,
    INSIGHTS_POOL_FILE,
    LOCKS_DIR,
    SharedVolumeManager,
)
from explorer.core.validation import InputValidator

logger = logging.getLogger(__name__)

METADATA_FILE = "metadata.json"
STATE_FILE = "state.json"
SHARED_DIR = "shared"
EXPLORATION_DIR_PREFIX = "exp-"

_ACTIVE_STATUSES = (ExplorationStatus.PENDING, ExplorationStatus.RUNNING)
_FIRST_STAMP_FIELDS = frozenset({"started_at", "completed_at"})


def _utc_now() -> datetime:
    return datetime.now(UTC)


class ExplorationStateManager:
    """Create, load, update and list exploration records on disk.

    Args:
        explorations_dir: Root holding one directory per exploration.
        validator: Validates exploration ids before they become paths.
        lock_timeout: Seconds to wait for another process updating the
            same record.
    """

    def __init__(
        self,
        explorations_dir: Path,
        validator: InputValidator | None = None,
        lock_timeout: float = 10.0,
    ):
        self.explorations_dir = Path(explorations_dir)
        self.validator = validator or InputValidator()
        self.lock_timeout = lock_timeout
        # In-process writers (parallel worktree threads) serialize here,
        # other processes through the record's file lock
        self._mutex = threading.RLock()

    # --- paths ---

    def get_explorations_dir(self) -> Path:
        return self.explorations_dir

    def get_exploration_dir(self, exploration_id: str) -> Path:
        self.validator.validate_exploration_id(exploration_id)
        return self.explorations_dir / exploration_id

    def _metadata_path(self, exploration_id: str) -> Path:
        return self.get_exploration_dir(exploration_id) / METADATA_FILE

    def _state_path(self, exploration_id: str) -> Path:
        return self.get_exploration_dir(exploration_id) / STATE_FILE

    def get_shared_volume_path(self, exploration_id: str) -> Path:
        return self.get_exploration_dir(exploration_id) / SHARED_DIR

    def get_worktree_data_path(self, exploration_id: str, worktree_index: int) -> Path:
        if worktree_index < 1:
            raise ValidationError(f"Worktree index must be >= 1: {worktree_index}")
        return self.get_shared_volume_path(exploration_id) / f"worktree-{worktree_index}"

    @contextmanager
    def _record_lock(self, exploration_id: str) -> Generator[None, None, None]:
        exploration_dir = self.get_exploration_dir(exploration_id)
        if not exploration_dir.is_dir():
            raise ExplorationNotFoundError(f"Exploration {exploration_id} not found")
        lock_path = exploration_dir / ".metadata.lock"
        with self._mutex:
            try:
                with FileLock(str(lock_path), timeout=self.lock_timeout):
                    yield
            except FileLockTimeout:
                raise LockTimeoutError(str(lock_path), "state-manager", self.lock_timeout)

    # --- lifecycle ---

    def create_exploration(self, task: str, config: ExplorationConfig) -> Exploration:
        """Create a pending exploration and its directory skeleton."""
        if not task or not task.strip():
            raise ValidationError("Task description cannot be empty")
        exploration = Exploration(task=task, config=config)
        shared = self.get_shared_volume_path(exploration.id)
        (shared / LOCKS_DIR).mkdir(parents=True, exist_ok=True)
        self.save_exploration(exploration)
        logger.info(f"Created exploration {exploration.id} ({config.branches} branches, {config.mode.value})")
        return exploration

    def load_exploration(self, exploration_id: str) -> Exploration:
        """Load an exploration record.

        Raises:
            ExplorationNotFoundError: No record for ``exploration_id``.
            pydantic.ValidationError: Record exists but is corrupted.
        """
        path = self._metadata_path(exploration_id)
        data = read_json(path)
        if data is None:
            raise ExplorationNotFoundError(f"Exploration {exploration_id} not found")
        return Exploration.model_validate(data)

    def save_exploration(self, exploration: Exploration) -> None:
        atomic_write_json(self._metadata_path(exploration.id), exploration.model_dump(mode="json"))

    def save_state(self, state: ExplorationState) -> ExplorationState:
        """Write the runtime checkpoint, stamping ``last_saved``."""
        stamped = state.model_copy(update={"last_saved": _utc_now()})
        atomic_write_json(self._state_path(state.exploration_id), stamped.model_dump(mode="json"))
        return stamped

    def load_state(self, exploration_id: str) -> ExplorationState | None:
        data = read_json(self._state_path(exploration_id))
        if data is None:
            return None
        return ExplorationState.model_validate(data)

    def update_status(
        self,
        exploration_id: str,
        status: ExplorationStatus | str,
        **changes: Any,
    ) -> Exploration:
        """Set the status, stamping started/completed times the first time only.

        ``changes`` are extra record fields applied in the same write.
        """
        new_status = ExplorationStatus(status)
        with self._record_lock(exploration_id):
            exploration = self.load_exploration(exploration_id)
            updates: dict[str, Any] = {}
            now = _utc_now()
            if new_status == ExplorationStatus.RUNNING and exploration.started_at is None:
                updates["started_at"] = now
            elif new_status.is_terminal and exploration.completed_at is None:
                updates["completed_at"] = now
            # first stamps are final; callers cannot rewrite them
            updates.update(
                {
                    key: value
                    for key, value in changes.items()
                    if key not in _FIRST_STAMP_FIELDS or getattr(exploration, key) is None
                }
            )
            updates["status"] = new_status

            started = updates.get("started_at", exploration.started_at)
            completed = updates.get("completed_at", exploration.completed_at)
            if "duration_ms" not in changes and started and completed and exploration.duration_ms is None:
                updates["duration_ms"] = int((completed - started).total_seconds() * 1000)

            updated = Exploration.model_validate({**exploration.model_dump(), **updates})
            self.save_exploration(updated)
        logger.debug(f"Exploration {exploration_id} status -> {new_status.value}")
        return updated

    def update_worktree(self, exploration_id: str, worktree_index: int, **changes: Any) -> Exploration:
        """Replace worktree ``worktree_index`` with a copy carrying ``changes``.

        Raises:
            ExplorationNotFoundError: Unknown exploration or worktree index.
        """
        with self._record_lock(exploration_id):
            exploration = self.load_exploration(exploration_id)
            try:
                updated = exploration.with_worktree(worktree_index, **changes)
            except KeyError:
                raise ExplorationNotFoundError(
                    f"Worktree {worktree_index} not found in exploration {exploration_id}"
                )
            self.save_exploration(updated)
        return updated

    def update_exploration(self, exploration_id: str, **changes: Any) -> Exploration:
        """Apply arbitrary field changes under the record lock."""
        with self._record_lock(exploration_id):
            exploration = self.load_exploration(exploration_id)
            updated = Exploration.model_validate({**exploration.model_dump(), **changes})
            self.save_exploration(updated)
        return updated

    def delete_exploration(self, exploration_id: str) -> None:
        exploration_dir = self.get_exploration_dir(exploration_id)
        if exploration_dir.is_symlink():
            raise ValidationError(f"SECURITY: exploration directory is a symlink: {exploration_dir}")
        if exploration_dir.exists():
            shutil.rmtree(exploration_dir)
            logger.info(f"Deleted exploration {exploration_id}")

    def exploration_exists(self, exploration_id: str) -> bool:
        try:
            self.load_exploration(exploration_id)
        except (ExplorationNotFoundError, ValidationError, pydantic.ValidationError, json.JSONDecodeError):
            return False
        return True

    # --- queries ---

    def list_explorations(self) -> list[ExplorationSummary]:
        """Summaries of every readable exploration, newest first."""
        if not self.explorations_dir.is_dir():
            return []
        summaries = []
        for entry in self.explorations_dir.iterdir():
            if not entry.is_dir() or not entry.name.startswith(EXPLORATION_DIR_PREFIX):
                continue
            try:
                exploration = self.load_exploration(entry.name)
            except (
                ExplorationNotFoundError,
                ValidationError,
                pydantic.ValidationError,
                json.JSONDecodeError,
                OSError,
            ) as e:
                logger.warning(f"Skipping corrupted exploration {entry.name}: {e}")
                continue
            summaries.append(ExplorationSummary.from_exploration(exploration))
        return sorted(summaries, key=lambda s: s.created_at, reverse=True)

    def get_active_explorations(self) -> list[ExplorationSummary]:
        return [s for s in self.list_explorations() if s.status in _ACTIVE_STATUSES]

    def get_summary(self, exploration_id: str) -> ExplorationSummary:
        return ExplorationSummary.from_exploration(self.load_exploration(exploration_id))

    def initialize_worktree_data(self, exploration_id: str, worktree_index: int) -> Path:
        volume = SharedVolumeManager(self.get_shared_volume_path(exploration_id), exploration_id)
        return volume.initialize_worktree_data(worktree_index)

    def _read_pool(self, exploration_id: str, filename: str) -> dict[str, Any] | None:
        shared = self.get_shared_volume_path(exploration_id)
        path = shared / filename
        if not path.exists():
            return None
        locks = FileLockManager(shared / LOCKS_DIR, timeout=self.lock_timeout, validator=self.validator)
        return locks.read_with_lock(path, owner="state-manager")

    def get_insights_for_exploration(self, exploration_id: str) -> list[Insight]:
        """Insights pool contents, or [] if it is missing, locked or unreadable."""
        try:
            data = self._read_pool(exploration_id, INSIGHTS_POOL_FILE)
            return InsightsPool.model_validate(data).insights if data else []
        except (LockTimeoutError, json.JSONDecodeError, pydantic.ValidationError, OSError) as e:
            logger.warning(f"Could not read insights pool of {exploration_id}: {e}")
            return []

    def get_decisions_for_exploration(self, exploration_id: str) -> list[Decision]:
        """Decisions pool contents, or [] if it is missing, locked or unreadable."""
        try:
            data = self._read_pool(exploration_id, DECISIONS_POOL_FILE)
            return DecisionsPool.model_validate(data).decisions if data else []
        except (LockTimeoutError, json.JSONDecodeError, pydantic.ValidationError, OSError) as e:
            logger.warning(f"Could not read decisions pool of {exploration_id}: {e}")
            return []

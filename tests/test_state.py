"""Tests for durable exploration records.

Tests cover:
- Creating, loading and deleting records
- Status transitions and their timestamps
- Worktree updates from many threads
- Listing, including corrupted records
- Runtime checkpoints
"""

from __future__ import annotations

import threading
import time
from datetime import UTC, datetime

import pytest

from explorer.core.errors import ExplorationNotFoundError, ValidationError
from explorer.core.file_lock import FileLockManager
from explorer.core.models import (
    ExplorationState,
    ExplorationStatus,
    Insight,
    InsightsPool,
    InsightType,
    WorktreeExploration,
    WorktreeStatus,
)
from explorer.core.shared_volume import INSIGHTS_POOL_FILE, LOCKS_DIR
from explorer.core.state import METADATA_FILE, ExplorationStateManager


class TestCreateAndLoad:
    """Tests for the record lifecycle."""

    def test_create_writes_record_and_skeleton(self, state_manager, exploration_config):
        exploration = state_manager.create_exploration("Add rate limiting", exploration_config)

        exploration_dir = state_manager.get_exploration_dir(exploration.id)
        assert (exploration_dir / METADATA_FILE).exists()
        assert (exploration_dir / "shared" / "locks").is_dir()
        assert exploration.status == ExplorationStatus.PENDING
        assert state_manager.load_exploration(exploration.id) == exploration
        assert state_manager.exploration_exists(exploration.id)

    def test_empty_task_rejected(self, state_manager, exploration_config):
        with pytest.raises(ValidationError):
            state_manager.create_exploration("   ", exploration_config)

    def test_load_missing(self, state_manager):
        with pytest.raises(ExplorationNotFoundError):
            state_manager.load_exploration("exp-missing")
        assert not state_manager.exploration_exists("exp-missing")

    def test_invalid_id_never_becomes_a_path(self, state_manager):
        with pytest.raises(ValidationError):
            state_manager.load_exploration("../../etc")

    def test_delete(self, state_manager, exploration_config):
        exploration = state_manager.create_exploration("task", exploration_config)
        state_manager.delete_exploration(exploration.id)
        assert not state_manager.get_exploration_dir(exploration.id).exists()
        state_manager.delete_exploration(exploration.id)

    def test_worktree_data_path(self, state_manager):
        path = state_manager.get_worktree_data_path("exp-abc", 2)
        assert path.parts[-3:] == ("exp-abc", "shared", "worktree-2")
        with pytest.raises(ValidationError):
            state_manager.get_worktree_data_path("exp-abc", 0)


class TestStatusTransitions:
    """update_status stamps timestamps once."""

    def test_running_sets_started_at(self, state_manager, exploration_config):
        exploration = state_manager.create_exploration("task", exploration_config)
        running = state_manager.update_status(exploration.id, ExplorationStatus.RUNNING)
        assert running.started_at is not None
        assert running.completed_at is None

        again = state_manager.update_status(exploration.id, "running")
        assert again.started_at == running.started_at

    def test_terminal_sets_completed_at_and_duration(self, state_manager, exploration_config):
        exploration = state_manager.create_exploration("task", exploration_config)
        state_manager.update_status(exploration.id, ExplorationStatus.RUNNING)
        time.sleep(0.01)
        done = state_manager.update_status(exploration.id, ExplorationStatus.COMPLETED)

        assert done.completed_at >= done.started_at
        assert done.duration_ms is not None
        assert done.duration_ms >= 0

        stopped = state_manager.update_status(exploration.id, ExplorationStatus.STOPPED)
        assert stopped.completed_at == done.completed_at
        assert stopped.duration_ms == done.duration_ms

    def test_first_stamps_not_overwritten(self, state_manager, exploration_config):
        exploration = state_manager.create_exploration("task", exploration_config)
        running = state_manager.update_status(exploration.id, ExplorationStatus.RUNNING)
        done = state_manager.update_status(exploration.id, ExplorationStatus.COMPLETED)

        stale = datetime(2000, 1, 1, tzinfo=UTC)
        again = state_manager.update_status(
            exploration.id, ExplorationStatus.STOPPED, started_at=stale, completed_at=stale, duration_ms=5
        )

        assert again.started_at == running.started_at
        assert again.completed_at == done.completed_at
        assert again.duration_ms == 5

    def test_explicit_duration_wins(self, state_manager, exploration_config):
        exploration = state_manager.create_exploration("task", exploration_config)
        state_manager.update_status(exploration.id, ExplorationStatus.RUNNING)
        done = state_manager.update_status(exploration.id, ExplorationStatus.FAILED, duration_ms=1234)
        assert done.duration_ms == 1234

    def test_unknown_exploration(self, state_manager):
        with pytest.raises(ExplorationNotFoundError):
            state_manager.update_status("exp-nope", ExplorationStatus.RUNNING)


class TestWorktreeUpdates:
    def _with_worktrees(self, state_manager, exploration_config, count: int = 2):
        exploration = state_manager.create_exploration("task", exploration_config)
        worktrees = [
            WorktreeExploration(index=i, branch_name=f"exploration/{exploration.id}-{i}", worktree_path=f"/w/{i}")
            for i in range(1, count + 1)
        ]
        return state_manager.update_exploration(exploration.id, worktrees=worktrees)

    def test_update_worktree(self, state_manager, exploration_config):
        exploration = self._with_worktrees(state_manager, exploration_config)
        updated = state_manager.update_worktree(exploration.id, 2, status=WorktreeStatus.RUNNING, container_id="c2")

        worktree = state_manager.load_exploration(exploration.id).get_worktree(2)
        assert worktree.status == WorktreeStatus.RUNNING
        assert worktree.container_id == "c2"
        assert updated.get_worktree(1).status == WorktreeStatus.CREATED

    def test_unknown_worktree(self, state_manager, exploration_config):
        exploration = self._with_worktrees(state_manager, exploration_config)
        with pytest.raises(ExplorationNotFoundError, match="Worktree 9"):
            state_manager.update_worktree(exploration.id, 9, status=WorktreeStatus.FAILED)

    def test_concurrent_updates_keep_every_change(self, state_manager, exploration_config):
        exploration = self._with_worktrees(state_manager, exploration_config, count=6)
        errors: list[Exception] = []

        def finish(index: int) -> None:
            try:
                state_manager.update_worktree(exploration.id, index, status=WorktreeStatus.COMPLETED)
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=finish, args=(i,)) for i in range(1, 7)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert not errors
        loaded = state_manager.load_exploration(exploration.id)
        assert all(w.status == WorktreeStatus.COMPLETED for w in loaded.worktrees)


class TestListing:
    def test_newest_first(self, state_manager, exploration_config):
        first = state_manager.create_exploration("first", exploration_config)
        time.sleep(0.01)
        second = state_manager.create_exploration("second", exploration_config)
        assert [s.id for s in state_manager.list_explorations()] == [second.id, first.id]

    def test_corrupted_record_skipped(self, state_manager, exploration_config):
        good = state_manager.create_exploration("good", exploration_config)
        broken_dir = state_manager.get_explorations_dir() / "exp-broken"
        broken_dir.mkdir()
        (broken_dir / METADATA_FILE).write_text("{not json")
        (state_manager.get_explorations_dir() / "notes.txt").write_text("ignored")

        assert [s.id for s in state_manager.list_explorations()] == [good.id]

    def test_active_explorations(self, state_manager, exploration_config):
        pending = state_manager.create_exploration("pending", exploration_config)
        done = state_manager.create_exploration("done", exploration_config)
        state_manager.update_status(done.id, ExplorationStatus.COMPLETED)
        assert [s.id for s in state_manager.get_active_explorations()] == [pending.id]

    def test_missing_root(self, tmp_path):
        assert ExplorationStateManager(tmp_path / "none").list_explorations() == []


class TestCheckpointsAndPools:
    def test_save_and_load_state(self, state_manager, exploration_config):
        exploration = state_manager.create_exploration("task", exploration_config)
        assert state_manager.load_state(exploration.id) is None

        saved = state_manager.save_state(
            ExplorationState(exploration_id=exploration.id, status=ExplorationStatus.RUNNING, allocated_ports=[3000])
        )
        loaded = state_manager.load_state(exploration.id)
        assert loaded.allocated_ports == [3000]
        assert loaded.last_saved == saved.last_saved

    def test_pools_read_after_initialization(self, state_manager, exploration_config):
        exploration = state_manager.create_exploration("task", exploration_config)
        assert state_manager.get_insights_for_exploration(exploration.id) == []

        state_manager.initialize_worktree_data(exploration.id, 1)
        assert state_manager.get_worktree_data_path(exploration.id, 1).is_dir()

        pool = state_manager.get_shared_volume_path(exploration.id) / "decisions-pool.json"
        pool.write_text("garbage")
        assert state_manager.get_decisions_for_exploration(exploration.id) == []

    def test_pool_read_goes_through_lock(self, state_manager, exploration_config, mocker):
        exploration = state_manager.create_exploration("task", exploration_config)
        pool_path = state_manager.get_shared_volume_path(exploration.id) / INSIGHTS_POOL_FILE
        pool_path.write_text(
            InsightsPool(
                exploration_id=exploration.id,
                insights=[
                    Insight(id="i-1", worktree_id="worktree-1", type=InsightType.FINDING, title="Misses", content="c")
                ],
            ).model_dump_json()
        )
        spy = mocker.spy(FileLockManager, "read_with_lock")

        insights = state_manager.get_insights_for_exploration(exploration.id)

        assert [i.id for i in insights] == ["i-1"]
        spy.assert_called_once()
        assert spy.call_args.args[1] == pool_path

    def test_locked_pool_reads_as_empty(self, tmp_path, exploration_config):
        manager = ExplorationStateManager(tmp_path / "explorations", lock_timeout=0.1)
        exploration = manager.create_exploration("task", exploration_config)
        shared = manager.get_shared_volume_path(exploration.id)
        pool_path = shared / INSIGHTS_POOL_FILE
        pool_path.write_text(InsightsPool(exploration_id=exploration.id).model_dump_json())

        holder = FileLockManager(shared / LOCKS_DIR, timeout=1.0)
        with holder.lock(pool_path, owner="worktree-1"):
            assert manager.get_insights_for_exploration(exploration.id) == []

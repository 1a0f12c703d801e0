"""Tests for git worktree management.

Most tests run real git against a throwaway repository (``@pytest.mark.git``).
Porcelain parsing and error mapping are tested with a scripted executor.
"""

from __future__ import annotations

import subprocess
from pathlib import Path

import pytest

from explorer.core.errors import (
    CommandTimeoutError,
    GitOperationError,
    GitTimeoutError,
    PartialFailureError,
    ResourceExhaustionError,
    ValidationError,
)
from explorer.core.worktrees import CreateWorktreeOptions, WorktreeManager, _parse_porcelain


def _git(repo: Path, *args: str) -> str:
    return subprocess.run(["git", *args], cwd=repo, check=True, capture_output=True, text=True).stdout


def _options(repo: Path, name: str) -> CreateWorktreeOptions:
    return CreateWorktreeOptions(branch=f"exploration/{name}", path=str(repo / ".worktrees" / name))


class TestParsePorcelain:
    def test_parses_entries(self):
        output = (
            "worktree /repo\nHEAD abc123\nbranch refs/heads/main\n\n"
            "worktree /repo/.worktrees/a\nHEAD def456\nbranch refs/heads/exploration/a\n"
            "locked reason here\n\n"
            "worktree /repo/.worktrees/b\nHEAD 789\ndetached\nprunable gitdir file missing\n"
        )
        entries = _parse_porcelain(output)
        assert [e.path for e in entries] == ["/repo", "/repo/.worktrees/a", "/repo/.worktrees/b"]
        assert entries[0].branch == "main"
        assert entries[1].locked and entries[1].lock_reason == "reason here"
        assert entries[2].detached and entries[2].prunable
        assert entries[2].branch is None

    def test_empty(self):
        assert _parse_porcelain("") == []


class TestGitErrorMapping:
    def test_timeout_becomes_git_timeout(self, tmp_path, scripted_executor):
        def handler(args):
            raise CommandTimeoutError("timed out")

        scripted_executor.handler = handler
        manager = WorktreeManager(tmp_path, executor=scripted_executor)
        with pytest.raises(GitTimeoutError):
            manager.list_worktrees()

    def test_validation_runs_before_git(self, tmp_path, scripted_executor):
        manager = WorktreeManager(tmp_path, executor=scripted_executor)
        with pytest.raises(ValidationError):
            manager.create_worktree(CreateWorktreeOptions(branch="bad;name", path=str(tmp_path / "w")))
        assert scripted_executor.calls == []


@pytest.mark.git
class TestWorktreeLifecycle:
    """Create, inspect and remove worktrees in a real repository."""

    def test_create_and_list(self, repo_with_git):
        manager = WorktreeManager(repo_with_git)
        info = manager.create_worktree(_options(repo_with_git, "one"))

        assert Path(info.path).is_dir()
        assert info.branch == "exploration/one"
        assert info.commit
        assert manager.worktree_exists(info.path)
        assert [w.branch for w in manager.get_exploration_worktrees()] == ["exploration/one"]

    def test_existing_branch_refused(self, repo_with_git):
        _git(repo_with_git, "branch", "exploration/taken")
        manager = WorktreeManager(repo_with_git)
        with pytest.raises(GitOperationError, match="already exists"):
            manager.create_worktree(_options(repo_with_git, "taken"))

    def test_path_outside_repo_refused(self, repo_with_git, tmp_path):
        manager = WorktreeManager(repo_with_git)
        with pytest.raises(ValidationError):
            manager.create_worktree(CreateWorktreeOptions(branch="exploration/x", path=str(tmp_path / "outside")))

    def test_symlinked_ancestor_refused(self, repo_with_git, tmp_path):
        target = tmp_path / "target"
        target.mkdir()
        (repo_with_git / "link").symlink_to(target)
        manager = WorktreeManager(repo_with_git)
        with pytest.raises(ValidationError):
            manager.create_worktree(
                CreateWorktreeOptions(branch="exploration/x", path=str(repo_with_git / "link" / "w"))
            )

    def test_status_reports_changes(self, repo_with_git):
        manager = WorktreeManager(repo_with_git)
        info = manager.create_worktree(_options(repo_with_git, "dirty"))
        assert manager.get_worktree_status(info.path).is_clean

        (Path(info.path) / "new.txt").write_text("change")
        state = manager.get_worktree_status(info.path)
        assert not state.is_clean
        assert state.changed_files == 1
        assert state.branch == "exploration/dirty"

    def test_remove_and_delete_branch(self, repo_with_git):
        manager = WorktreeManager(repo_with_git)
        info = manager.create_worktree(_options(repo_with_git, "gone"))

        manager.remove_worktree(info.path, force=True)
        manager.delete_branch("exploration/gone", force=True)

        assert not Path(info.path).exists()
        assert not manager.branch_exists("exploration/gone")
        # Both are idempotent
        manager.remove_worktree(info.path, force=True)
        manager.delete_branch("exploration/gone", force=True)

    def test_refuses_to_remove_main_worktree(self, repo_with_git):
        with pytest.raises(ValidationError):
            WorktreeManager(repo_with_git).remove_worktree(repo_with_git)

    def test_force_remove_leaves_ordinary_directories(self, repo_with_git):
        manager = WorktreeManager(repo_with_git)
        manager.remove_worktree("src", force=True)
        assert (repo_with_git / "src" / "main.py").exists()

    @pytest.mark.parametrize("path", [".git", ".git/hooks"])
    def test_refuses_git_metadata(self, repo_with_git, path):
        with pytest.raises(ValidationError, match="git metadata"):
            WorktreeManager(repo_with_git).remove_worktree(path, force=True)
        assert (repo_with_git / ".git" / "HEAD").exists()

    def test_remove_multiple_collects_errors(self, repo_with_git):
        manager = WorktreeManager(repo_with_git)
        info = manager.create_worktree(_options(repo_with_git, "m1"))
        errors = manager.remove_multiple_worktrees([info.path, "bad;path"], force=True)
        assert len(errors) == 1
        assert "bad;path" in errors[0]
        assert not Path(info.path).exists()

    def test_branch_name_availability(self, repo_with_git):
        manager = WorktreeManager(repo_with_git)
        assert manager.is_branch_name_available("exploration/free")
        assert not manager.is_branch_name_available("bad name")
        _git(repo_with_git, "branch", "exploration/used")
        assert not manager.is_branch_name_available("exploration/used")


@pytest.mark.git
class TestBatchCreation:
    """create_multiple_worktrees is all-or-nothing."""

    def test_creates_all_in_order(self, repo_with_git):
        manager = WorktreeManager(repo_with_git)
        infos = manager.create_multiple_worktrees([_options(repo_with_git, n) for n in ("a", "b", "c")])
        assert [i.branch for i in infos] == ["exploration/a", "exploration/b", "exploration/c"]

    def test_duplicate_rolls_back_earlier_worktrees(self, repo_with_git):
        manager = WorktreeManager(repo_with_git)
        a = _options(repo_with_git, "a")
        b = _options(repo_with_git, "b")
        c = CreateWorktreeOptions(branch="exploration/a", path=str(repo_with_git / ".worktrees" / "c"))

        with pytest.raises(PartialFailureError) as exc_info:
            manager.create_multiple_worktrees([a, b, c])

        assert exc_info.value.rolled_back == 2
        assert isinstance(exc_info.value.__cause__, GitOperationError)
        assert exc_info.value.original is exc_info.value.__cause__
        assert not Path(a.path).exists()
        assert not Path(b.path).exists()
        assert not manager.branch_exists("exploration/a")
        assert not manager.branch_exists("exploration/b")
        assert manager.get_exploration_worktrees() == []

    def test_preexisting_branch_survives_rollback(self, repo_with_git):
        _git(repo_with_git, "branch", "exploration/keep")
        manager = WorktreeManager(repo_with_git)

        with pytest.raises(PartialFailureError):
            manager.create_multiple_worktrees([_options(repo_with_git, "new"), _options(repo_with_git, "keep")])

        assert manager.branch_exists("exploration/keep")
        assert not manager.branch_exists("exploration/new")

    def test_first_failure_raises_original_error(self, repo_with_git):
        _git(repo_with_git, "branch", "exploration/first")
        manager = WorktreeManager(repo_with_git)
        with pytest.raises(GitOperationError, match="already exists"):
            manager.create_multiple_worktrees([_options(repo_with_git, "first"), _options(repo_with_git, "second")])
        assert not manager.branch_exists("exploration/second")

    def test_invalid_input_creates_nothing(self, repo_with_git):
        manager = WorktreeManager(repo_with_git)
        bad = CreateWorktreeOptions(branch="exploration/$(id)", path=str(repo_with_git / ".worktrees" / "z"))
        with pytest.raises(ValidationError):
            manager.create_multiple_worktrees([_options(repo_with_git, "ok"), bad])
        assert not manager.branch_exists("exploration/ok")

    def test_worktree_limit(self, repo_with_git):
        manager = WorktreeManager(repo_with_git)
        with pytest.raises(ResourceExhaustionError):
            manager.create_multiple_worktrees([_options(repo_with_git, "x")], max_worktrees=0)
        with pytest.raises(ResourceExhaustionError):
            manager.create_multiple_worktrees([_options(repo_with_git, "x")], max_worktrees=2)
        assert len(manager.create_multiple_worktrees([_options(repo_with_git, "x")], max_worktrees=100)) == 1


@pytest.mark.git
class TestLockingAndExclude:
    def test_lock_with_malicious_reason(self, repo_with_git):
        manager = WorktreeManager(repo_with_git)
        info = manager.create_worktree(_options(repo_with_git, "locked"))

        manager.lock_worktree(info.path, reason="testing; rm -rf / && echo $HOME")
        locked = manager.get_worktree_info(info.path)
        assert locked.locked
        assert ";" not in (locked.lock_reason or "")
        assert "$" not in (locked.lock_reason or "")

        # Locking twice is fine; unlocking twice is fine
        manager.lock_worktree(info.path)
        manager.unlock_worktree(info.path)
        manager.unlock_worktree(info.path)
        assert not manager.get_worktree_info(info.path).locked

    def test_force_removes_locked_worktree(self, repo_with_git):
        manager = WorktreeManager(repo_with_git)
        info = manager.create_worktree(_options(repo_with_git, "locked2"))
        manager.lock_worktree(info.path, reason="busy")
        manager.remove_worktree(info.path, force=True)
        assert not Path(info.path).exists()

    def test_ensure_excluded(self, repo_with_git):
        manager = WorktreeManager(repo_with_git)
        assert manager.ensure_excluded("/.explorer/") is True
        assert manager.ensure_excluded("/.explorer/") is False

        (repo_with_git / ".explorer").mkdir()
        (repo_with_git / ".explorer" / "state.json").write_text("{}")
        assert _git(repo_with_git, "status", "--porcelain").strip() == ""

    def test_ensure_excluded_rejects_multiline(self, repo_with_git):
        with pytest.raises(ValidationError):
            WorktreeManager(repo_with_git).ensure_excluded("a\nb")


def _commit_in(worktree: Path, name: str, content: str) -> None:
    (worktree / name).write_text(content)
    _git(worktree, "add", name)
    _git(worktree, "commit", "-m", f"Update {name}")


@pytest.mark.git
class TestMergeBranch:
    """Merging a finished exploration branch back into the main tree."""

    def test_merge_creates_backup(self, repo_with_git):
        manager = WorktreeManager(repo_with_git)
        target = _git(repo_with_git, "branch", "--show-current").strip()
        info = manager.create_worktree(_options(repo_with_git, "win"))
        _commit_in(Path(info.path), "feature.py", "print('hi')\n")

        result = manager.merge_branch("exploration/win")

        assert result.merged
        assert result.target_branch == target
        assert result.commit == _git(repo_with_git, "rev-parse", "HEAD").strip()
        assert (repo_with_git / "feature.py").exists()
        assert result.backup_branch.startswith(f"backup/{target}-")
        assert manager.branch_exists(result.backup_branch)

    def test_squash_merge_uses_message(self, repo_with_git):
        manager = WorktreeManager(repo_with_git)
        info = manager.create_worktree(_options(repo_with_git, "squashed"))
        _commit_in(Path(info.path), "a.txt", "a\n")
        _commit_in(Path(info.path), "b.txt", "b\n")

        result = manager.merge_branch("exploration/squashed", squash=True, message="Adopt squashed", create_backup=False)

        assert result.merged
        assert result.backup_branch is None
        assert _git(repo_with_git, "log", "-1", "--format=%s").strip() == "Adopt squashed"
        assert (repo_with_git / "b.txt").exists()

    def test_conflict_is_aborted(self, repo_with_git):
        manager = WorktreeManager(repo_with_git)
        info = manager.create_worktree(_options(repo_with_git, "clash"))
        _commit_in(Path(info.path), "README.md", "# From the branch\n")
        _commit_in(repo_with_git, "README.md", "# From main\n")

        result = manager.merge_branch("exploration/clash")

        assert not result.merged
        assert result.conflicts == ["README.md"]
        assert (repo_with_git / "README.md").read_text() == "# From main\n"
        assert _git(repo_with_git, "status", "--porcelain", "--untracked-files=no").strip() == ""

    def test_dirty_tree_refused(self, repo_with_git):
        manager = WorktreeManager(repo_with_git)
        manager.create_worktree(_options(repo_with_git, "pending"))
        (repo_with_git / "README.md").write_text("local edit\n")
        with pytest.raises(GitOperationError, match="uncommitted"):
            manager.merge_branch("exploration/pending")

    def test_missing_branch(self, repo_with_git):
        with pytest.raises(GitOperationError, match="does not exist"):
            WorktreeManager(repo_with_git).merge_branch("exploration/nope")

    def test_invalid_branch_name(self, repo_with_git):
        with pytest.raises(ValidationError):
            WorktreeManager(repo_with_git).merge_branch("-rf")

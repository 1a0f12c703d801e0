"""Git worktree management for parallel explorations.

Each exploration branch gets its own worktree so agents never share a
working copy. All inputs pass through the InputValidator before git sees
them, and every git call goes through the SafeExecutor (argument vector,
timeout, output cap).

Batch creation is all-or-nothing from the caller's point of view: if any
worktree in the batch fails, the ones created earlier in the same call are
removed again and their branches deleted before the error propagates.
"""

from __future__ import annotations

import logging
import shutil
from datetime import UTC, datetime
from pathlib import Path

from pydantic import BaseModel, Field

from explorer.core.errors import (
    CommandExecutionError,
    CommandTimeoutError,
    ExplorationError,
    GitOperationError,
    GitTimeoutError,
    PartialFailureError,
    ResourceExhaustionError,
    ValidationError,
)
from explorer.core.process import CommandResult, SafeExecutor
from explorer.core.validation import InputValidator

logger = logging.getLogger(__name__)

EXPLORATION_BRANCH_PREFIX = "exploration/"
DEFAULT_LOCK_REASON = "Locked by exploration system"
BACKUP_BRANCH_PREFIX = "backup/"


class CreateWorktreeOptions(BaseModel):
    branch: str
    path: str
    base_ref: str = "HEAD"
    force: bool = False


class WorktreeInfo(BaseModel):
    """One entry of ``git worktree list --porcelain``."""

    path: str
    commit: str | None = None
    branch: str | None = None
    bare: bool = False
    detached: bool = False
    locked: bool = False
    lock_reason: str | None = None
    prunable: bool = False


class WorktreeState(BaseModel):
    path: str
    branch: str | None
    is_clean: bool
    changed_files: int


class MergeResult(BaseModel):
    """Outcome of merging an exploration branch into the main tree's branch."""

    source_branch: str
    target_branch: str
    merged: bool
    commit: str | None = None
    backup_branch: str | None = None
    conflicts: list[str] = Field(default_factory=list)


def _parse_porcelain(output: str) -> list[WorktreeInfo]:
    """Parse ``git worktree list --porcelain`` into WorktreeInfo records."""
    worktrees: list[WorktreeInfo] = []
    current: dict | None = None
    for line in output.split("\n"):
        if not line.strip():
            if current:
                worktrees.append(WorktreeInfo(**current))
            current = None
            continue
        key, _, value = line.partition(" ")
        if key == "worktree":
            if current:
                worktrees.append(WorktreeInfo(**current))
            current = {"path": value.strip()}
        elif current is None:
            continue
        elif key == "HEAD":
            current["commit"] = value.strip()
        elif key == "branch":
            current["branch"] = value.strip().removeprefix("refs/heads/")
        elif key == "bare":
            current["bare"] = True
        elif key == "detached":
            current["detached"] = True
        elif key == "locked":
            current["locked"] = True
            current["lock_reason"] = value.strip() or None
        elif key == "prunable":
            current["prunable"] = True
    if current:
        worktrees.append(WorktreeInfo(**current))
    return worktrees


class WorktreeManager:
    """Create, inspect, lock and remove git worktrees inside one repository.

    Args:
        repo_path: Repository root. Worktree paths must resolve under it.
        executor: Runs git. Defaults to a SafeExecutor with ``git_timeout``.
        validator: Validates branch names, paths and refs.
        git_timeout: Seconds allowed per git command.
    """

    # Local git operations should complete quickly, but can hang on
    # corrupted repos or busy filesystems
    GIT_TIMEOUT = 30
    DEFAULT_MAX_WORKTREES = 50

    def __init__(
        self,
        repo_path: Path,
        executor: SafeExecutor | None = None,
        validator: InputValidator | None = None,
        git_timeout: float = GIT_TIMEOUT,
    ):
        self.repo_path = Path(repo_path).absolute()
        self.git_timeout = git_timeout
        self.executor = executor or SafeExecutor(default_timeout=git_timeout)
        self.validator = validator or InputValidator()

    # --- git plumbing ---

    def _git(self, *args: str, cwd: Path | None = None) -> CommandResult:
        """Run one git command, mapping executor errors to git errors."""
        try:
            return self.executor.run(
                ["git", *args],
                cwd=cwd or self.repo_path,
                timeout=self.git_timeout,
            )
        except CommandTimeoutError as e:
            raise GitTimeoutError(f"git {args[0]} timed out after {self.git_timeout}s") from e
        except CommandExecutionError as e:
            raise GitOperationError(f"git {args[0]} could not run: {e}") from e

    def validate_git_repo(self) -> None:
        """Ensure ``repo_path`` is inside a git repository."""
        result = self._git("rev-parse", "--git-dir")
        if not result.ok:
            raise GitOperationError(f"Not a git repository: {self.repo_path}")

    def _validate_worktree_path(self, path: str | Path) -> Path:
        """Validate a worktree path and refuse symlinked paths or ancestors.

        SECURITY: a symlinked ancestor could redirect git (or the rmtree
        fallback) to a directory outside the repository.
        """
        resolved = self.validator.validate_path(path, self.repo_path)
        candidate = Path(path) if Path(path).is_absolute() else self.repo_path / path
        if candidate.is_symlink():
            raise ValidationError(f"SECURITY: worktree path is a symlink: {candidate}")
        current = candidate.parent
        repo_root = self.repo_path
        while current != repo_root and current != current.parent:
            if current.is_symlink():
                raise ValidationError(f"SECURITY: worktree path ancestor is a symlink: {current}")
            current = current.parent
        return resolved

    # --- queries ---

    def list_worktrees(self) -> list[WorktreeInfo]:
        result = self._git("worktree", "list", "--porcelain")
        if not result.ok:
            raise GitOperationError(f"Failed to list worktrees: {result.stderr.strip()}")
        return _parse_porcelain(result.stdout)

    def get_worktree_info(self, path: str | Path) -> WorktreeInfo | None:
        resolved = Path(path).resolve()
        for info in self.list_worktrees():
            if Path(info.path).resolve() == resolved:
                return info
        return None

    def worktree_exists(self, path: str | Path) -> bool:
        return self.get_worktree_info(path) is not None

    def get_exploration_worktrees(self) -> list[WorktreeInfo]:
        """Worktrees whose branch lives under ``exploration/``."""
        return [
            info
            for info in self.list_worktrees()
            if info.branch and info.branch.startswith(EXPLORATION_BRANCH_PREFIX)
        ]

    def branch_exists(self, name: str) -> bool:
        self.validator.validate_branch_name(name)
        result = self._git("show-ref", "--verify", "--quiet", f"refs/heads/{name}")
        return result.ok

    def is_branch_name_available(self, name: str) -> bool:
        """True if ``name`` is a valid branch name not yet taken."""
        try:
            return not self.branch_exists(name)
        except ValidationError:
            return False

    def check_worktree_limit(self, max_worktrees: int = DEFAULT_MAX_WORKTREES, additional: int = 0) -> None:
        """Fail if the worktree count would reach or exceed ``max_worktrees``.

        The main working tree counts too, so ``max_worktrees=0`` always fails.

        Raises:
            ResourceExhaustionError: Limit reached.
        """
        count = len(self.list_worktrees())
        if count + additional >= max_worktrees:
            raise ResourceExhaustionError(
                f"Too many worktrees ({count + additional}/{max_worktrees}). "
                "Run 'git worktree prune' or remove unused explorations."
            )

    def get_worktree_status(self, path: str | Path) -> WorktreeState:
        resolved = self._validate_worktree_path(path)
        result = self._git("status", "--porcelain", cwd=resolved)
        if not result.ok:
            raise GitOperationError(f"Failed to get status of {resolved}: {result.stderr.strip()}")
        changed = [line for line in result.stdout.split("\n") if line.strip()]
        branch = self._git("rev-parse", "--abbrev-ref", "HEAD", cwd=resolved)
        return WorktreeState(
            path=str(resolved),
            branch=branch.stdout.strip() if branch.ok else None,
            is_clean=not changed,
            changed_files=len(changed),
        )

    # --- creation ---

    def create_worktree(self, options: CreateWorktreeOptions) -> WorktreeInfo:
        """Create a worktree on a new branch.

        Raises:
            ValidationError: Bad branch, path or ref. Nothing was touched.
            GitOperationError: Branch already exists, path occupied, or git failed.
        """
        branch = self.validator.validate_branch_name(options.branch)
        base_ref = self.validator.validate_git_ref(options.base_ref)
        worktree_path = self._validate_worktree_path(options.path)

        if self.branch_exists(branch):
            raise GitOperationError(f"Branch '{branch}' already exists")
        if worktree_path.exists() and any(worktree_path.iterdir()):
            raise GitOperationError(f"Worktree path already exists and is not empty: {worktree_path}")

        worktree_path.parent.mkdir(parents=True, exist_ok=True)

        args = ["worktree", "add"]
        if options.force:
            args.append("--force")
        args.extend(["-b", branch, str(worktree_path), base_ref])

        try:
            result = self._git(*args)
        except GitTimeoutError:
            self._discard_partial(branch, worktree_path)
            raise
        if not result.ok:
            self._discard_partial(branch, worktree_path)
            raise GitOperationError(
                f"Failed to create worktree for branch '{branch}' at {worktree_path}: "
                f"{result.stderr.strip()}"
            )

        head = self._git("rev-parse", "HEAD", cwd=worktree_path)
        logger.info(f"Created worktree {worktree_path} on branch {branch}")
        return WorktreeInfo(
            path=str(worktree_path),
            branch=branch,
            commit=head.stdout.strip() if head.ok else None,
        )

    def _discard_partial(self, branch: str, worktree_path: Path) -> None:
        """Undo what a failed ``worktree add -b`` may have left behind."""
        try:
            if self.branch_exists(branch):
                self._git("branch", "-D", branch)
            self._git("worktree", "prune")
        except ExplorationError as e:
            logger.warning(f"Could not clean up after failed worktree add for {branch}: {e}")
        if worktree_path.exists() and not any(worktree_path.iterdir()):
            worktree_path.rmdir()

    def create_multiple_worktrees(
        self,
        options_list: list[CreateWorktreeOptions],
        max_worktrees: int = DEFAULT_MAX_WORKTREES,
    ) -> list[WorktreeInfo]:
        """Create worktrees strictly in order, rolling back on first failure.

        Every input is validated before anything is created. If creating any
        worktree fails, the worktrees created earlier in this call are removed
        in reverse order and their branches force-deleted. Branches that
        existed before the call are never touched.

        Raises:
            ValidationError: Some input is malformed. Nothing was created.
            ResourceExhaustionError: The batch would exceed ``max_worktrees``.
            PartialFailureError: A later worktree failed after earlier ones were
                created; they have been rolled back. The original error is
                chained as ``__cause__``.
            GitOperationError: The first worktree failed; nothing to roll back.
        """
        for options in options_list:
            self.validator.validate_branch_name(options.branch)
            self.validator.validate_git_ref(options.base_ref)
            self._validate_worktree_path(options.path)
        self.check_worktree_limit(max_worktrees, additional=len(options_list))

        created: list[WorktreeInfo] = []
        for options in options_list:
            try:
                created.append(self.create_worktree(options))
            except Exception as e:
                if not created:
                    raise
                rolled_back, rollback_errors = self._rollback(created)
                raise PartialFailureError(
                    f"Failed to create worktree for branch '{options.branch}' "
                    f"after {len(created)} succeeded",
                    rolled_back=rolled_back,
                    original=e,
                    rollback_errors=rollback_errors,
                ) from e
        return created

    def _rollback(self, created: list[WorktreeInfo]) -> tuple[int, list[str]]:
        """Remove worktrees created by a failed batch, newest first.

        Failures are logged and collected, never raised; the batch error is
        what the caller needs to see.
        """
        rolled_back = 0
        errors: list[str] = []
        for info in reversed(created):
            ok = True
            try:
                self.remove_worktree(info.path, force=True)
            except Exception as e:
                ok = False
                errors.append(f"remove {info.path}: {e}")
                logger.warning(f"Rollback: failed to remove worktree {info.path}: {e}")
            if info.branch:
                try:
                    self.delete_branch(info.branch, force=True)
                except Exception as e:
                    ok = False
                    errors.append(f"delete branch {info.branch}: {e}")
                    logger.warning(f"Rollback: failed to delete branch {info.branch}: {e}")
            if ok:
                rolled_back += 1
        logger.info(f"Rolled back {rolled_back}/{len(created)} worktree(s)")
        return rolled_back, errors

    # --- removal ---

    def remove_worktree(self, path: str | Path, force: bool = False) -> None:
        """Remove a linked worktree. A path git does not list is not an error.

        Only paths ``git worktree list`` reports as linked worktrees are
        touched. The main working tree and anything inside a ``.git``
        directory are refused outright.

        Raises:
            ValidationError: Path is unsafe, the main tree or git metadata.
            GitOperationError: git refused to remove a registered worktree.
        """
        worktree_path = self._validate_worktree_path(path)
        repo_root = self.repo_path.resolve()
        if worktree_path == repo_root:
            raise ValidationError(f"Refusing to remove the main working tree: {worktree_path}")
        if ".git" in worktree_path.relative_to(repo_root).parts:
            raise ValidationError(f"Refusing to remove git metadata: {worktree_path}")

        info = self.get_worktree_info(worktree_path)
        if info is None or info.bare:
            logger.debug(f"{worktree_path} is not a registered worktree, leaving it alone")
            return

        args = ["worktree", "remove"]
        if force:
            # Given twice, --force also removes locked worktrees
            args.extend(["--force", "--force"])
        args.append(str(worktree_path))
        result = self._git(*args)
        if not result.ok:
            raise GitOperationError(f"Failed to remove worktree {worktree_path}: {result.stderr.strip()}")

        # git keeps ignored files behind; the directory was a confirmed worktree
        if force and worktree_path.exists():
            shutil.rmtree(worktree_path, ignore_errors=True)
        logger.info(f"Removed worktree {worktree_path}")

    def remove_multiple_worktrees(self, paths: list[str | Path], force: bool = False) -> list[str]:
        """Remove several worktrees, continuing past failures.

        Returns:
            Error messages for the paths that could not be removed.
        """
        errors: list[str] = []
        for path in paths:
            try:
                self.remove_worktree(path, force=force)
            except ExplorationError as e:
                logger.warning(f"Failed to remove worktree {path}: {e}")
                errors.append(f"{path}: {e}")
        return errors

    def delete_branch(self, name: str, force: bool = False) -> None:
        """Delete a local branch. A missing branch is not an error."""
        branch = self.validator.validate_branch_name(name)
        result = self._git("branch", "-D" if force else "-d", branch)
        if not result.ok:
            stderr = result.stderr.strip()
            if "not found" in stderr:
                return
            raise GitOperationError(f"Failed to delete branch '{branch}': {stderr}")

    def prune_worktrees(self) -> None:
        result = self._git("worktree", "prune")
        if not result.ok:
            raise GitOperationError(f"Failed to prune worktrees: {result.stderr.strip()}")

    def ensure_excluded(self, pattern: str) -> bool:
        """Add ``pattern`` to the repository's ``info/exclude``.

        Keeps engine directories inside the repository from showing up as
        untracked changes. Returns True if the pattern was added.
        """
        if not pattern or "\n" in pattern or "\r" in pattern:
            raise ValidationError(f"Invalid exclude pattern: {pattern!r}")
        result = self._git("rev-parse", "--git-path", "info/exclude")
        if not result.ok:
            raise GitOperationError(f"Failed to locate info/exclude: {result.stderr.strip()}")
        exclude_path = Path(result.stdout.strip())
        if not exclude_path.is_absolute():
            exclude_path = self.repo_path / exclude_path
        existing = exclude_path.read_text(encoding="utf-8") if exclude_path.exists() else ""
        if pattern in existing.splitlines():
            return False
        exclude_path.parent.mkdir(parents=True, exist_ok=True)
        prefix = "" if not existing or existing.endswith("\n") else "\n"
        with open(exclude_path, "a", encoding="utf-8") as f:
            f.write(f"{prefix}{pattern}\n")
        return True

    # --- merging ---

    def _current_branch(self) -> str:
        result = self._git("branch", "--show-current")
        branch = result.stdout.strip() if result.ok else ""
        if not branch:
            raise GitOperationError("Cannot merge onto a detached HEAD")
        return branch

    def _conflicted_files(self) -> list[str]:
        result = self._git("diff", "--name-only", "--diff-filter=U")
        return [line.strip() for line in result.stdout.split("\n") if line.strip()]

    def merge_branch(
        self,
        source_branch: str,
        squash: bool = False,
        message: str | None = None,
        create_backup: bool = True,
    ) -> MergeResult:
        """Merge ``source_branch`` into the branch checked out in the main tree.

        The main tree must have no uncommitted changes to tracked files. With
        ``create_backup`` the target's current commit is kept on
        ``backup/<target>-<timestamp>`` first. On conflicts the merge is
        aborted, the tree is left as it was and the conflicted paths are
        returned with ``merged=False``.

        Raises:
            ValidationError: Malformed branch name.
            GitOperationError: Missing branch, dirty tree, detached HEAD or
                a git failure other than a conflict.
        """
        source = self.validator.validate_branch_name(source_branch)
        if not self.branch_exists(source):
            raise GitOperationError(f"Branch does not exist: {source}")
        status = self._git("status", "--porcelain", "--untracked-files=no")
        if not status.ok:
            raise GitOperationError(f"Failed to check working tree: {status.stderr.strip()}")
        if status.stdout.strip():
            raise GitOperationError("Working tree has uncommitted changes. Commit or stash before merging.")
        target = self._current_branch()
        commit_message = message or f"Merge {source} into {target}"
        if "\x00" in commit_message:
            raise ValidationError("Commit message contains a null byte")

        backup = None
        if create_backup:
            backup = self.validator.validate_branch_name(
                f"{BACKUP_BRANCH_PREFIX}{target}-{datetime.now(UTC).strftime('%Y%m%d%H%M%S')}"
            )
            created = self._git("branch", backup, target)
            if not created.ok:
                raise GitOperationError(f"Failed to create backup branch {backup}: {created.stderr.strip()}")

        if squash:
            result = self._git("merge", "--squash", source)
            if result.ok:
                result = self._git("commit", "-m", commit_message)
        else:
            result = self._git("merge", "--no-ff", "-m", commit_message, source)

        if not result.ok:
            conflicts = self._conflicted_files()
            # --squash leaves no MERGE_HEAD, so --abort would not apply
            if squash:
                self._git("reset", "--merge")
            else:
                self._git("merge", "--abort")
            if not conflicts:
                raise GitOperationError(f"Failed to merge {source} into {target}: {result.stderr.strip()}")
            logger.warning(f"Merge of {source} into {target} aborted: {len(conflicts)} conflicted file(s)")
            return MergeResult(
                source_branch=source,
                target_branch=target,
                merged=False,
                backup_branch=backup,
                conflicts=conflicts,
            )

        head = self._git("rev-parse", "HEAD")
        logger.info(f"Merged {source} into {target}")
        return MergeResult(
            source_branch=source,
            target_branch=target,
            merged=True,
            commit=head.stdout.strip() if head.ok else None,
            backup_branch=backup,
        )

    # --- locking ---

    def lock_worktree(self, path: str | Path, reason: str | None = None) -> None:
        """Lock a worktree with a sanitized reason.

        The reason is sanitized, never rejected; an already locked
        worktree is left as is.
        """
        worktree_path = self._validate_worktree_path(path)
        safe_reason = self.validator.validate_reason_text(reason or DEFAULT_LOCK_REASON)
        result = self._git("worktree", "lock", "--reason", safe_reason, str(worktree_path))
        if not result.ok:
            stderr = result.stderr.strip()
            if "already locked" in stderr:
                logger.info(f"Worktree {worktree_path} is already locked")
                return
            raise GitOperationError(f"Failed to lock worktree {worktree_path}: {stderr}")

    def unlock_worktree(self, path: str | Path) -> None:
        worktree_path = self._validate_worktree_path(path)
        result = self._git("worktree", "unlock", str(worktree_path))
        if not result.ok:
            stderr = result.stderr.strip()
            if "not locked" in stderr:
                return
            raise GitOperationError(f"Failed to unlock worktree {worktree_path}: {stderr}")

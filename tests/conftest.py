# conftest.py - Shared pytest fixtures for all tests
"""Shared pytest fixtures for the exploration engine test suite.

This module provides foundational fixtures used across all test modules:
- Temporary repositories (plain directories and real git repos)
- State managers and shared volumes rooted in tmp_path
- A scripted command executor standing in for git and docker

Usage:
    Import fixtures implicitly via pytest's fixture discovery.
    All fixtures in this file are automatically available in test modules.
"""

from __future__ import annotations

import shutil
import subprocess
from collections.abc import Callable, Sequence
from pathlib import Path
from typing import Any

import pytest

from explorer.core.file_lock import FileLockManager
from explorer.core.models import ExplorationConfig
from explorer.core.process import CommandResult
from explorer.core.shared_volume import LOCKS_DIR, SharedVolumeManager
from explorer.core.state import ExplorationStateManager


# =============================================================================
# Repository and File System Fixtures
# =============================================================================


@pytest.fixture
def temp_repo(tmp_path: Path) -> Path:
    """Create a temporary directory laid out like a small project.

    Creates:
        - src/ directory with a sample Python file
        - README.md

    Returns:
        Path to the temporary repository root.
    """
    repo = tmp_path / "repo"
    src_dir = repo / "src"
    src_dir.mkdir(parents=True)
    (src_dir / "main.py").write_text('"""Main module."""\n\ndef main():\n    pass\n')
    (repo / "README.md").write_text("# Test Project\n")
    return repo


@pytest.fixture
def repo_with_git(temp_repo: Path) -> Path:
    """Create a temporary repository with actual git initialization.

    WARNING: Runs actual git commands. Slower than temp_repo.
    Only use when you need real git operations (worktrees, branches, etc.).
    """
    if shutil.which("git") is None:
        pytest.skip("Git not available")

    try:
        for args in (
            ["git", "init"],
            ["git", "config", "user.email", "test@example.com"],
            ["git", "config", "user.name", "Test User"],
            ["git", "add", "."],
            ["git", "commit", "-m", "Initial commit"],
        ):
            subprocess.run(args, cwd=temp_repo, check=True, capture_output=True)
    except subprocess.CalledProcessError:
        pytest.skip("Git not available")
    return temp_repo


# =============================================================================
# State and Shared Volume Fixtures
# =============================================================================


@pytest.fixture
def state_manager(tmp_path: Path) -> ExplorationStateManager:
    """State manager persisting under a fresh explorations directory."""
    return ExplorationStateManager(tmp_path / "explorations")


@pytest.fixture
def exploration_config() -> ExplorationConfig:
    return ExplorationConfig(branches=2, strategies=["redis", "memory"], timeout_minutes=1)


@pytest.fixture
def shared_volume(tmp_path: Path) -> SharedVolumeManager:
    """Shared volume for a two-worktree exploration, already initialized."""
    root = tmp_path / "shared"
    lock_manager = FileLockManager(root / LOCKS_DIR, timeout=2.0)
    volume = SharedVolumeManager(root, "exp-test123", lock_manager)
    volume.initialize(2)
    return volume


# =============================================================================
# Mock Fixtures for External Commands
# =============================================================================


class ScriptedExecutor:
    """Stand-in for SafeExecutor that answers commands from a handler.

    The handler receives the argument vector and returns either a
    CommandResult, a (returncode, stdout, stderr) tuple, or raises.
    Unhandled commands succeed with empty output. Every call is recorded.

    Example:
        def test_docker(scripted_executor):
            scripted_executor.handler = lambda args: (0, "abc123\\n", "")
    """

    def __init__(self) -> None:
        self.calls: list[list[str]] = []
        self.handler: Callable[[list[str]], Any] | None = None

    def run(
        self,
        args: Sequence[str],
        cwd: Any = None,
        timeout: float | None = None,
        env: Any = None,
        check: bool = False,
    ) -> CommandResult:
        argv = list(args)
        self.calls.append(argv)
        response = self.handler(argv) if self.handler else None
        if isinstance(response, CommandResult):
            return response
        returncode, stdout, stderr = response or (0, "", "")
        return CommandResult(args=argv, returncode=returncode, stdout=stdout, stderr=stderr)

    def called_with(self, *prefix: str) -> list[list[str]]:
        """Recorded calls whose argument vector starts with ``prefix``."""
        return [call for call in self.calls if call[: len(prefix)] == list(prefix)]


@pytest.fixture
def scripted_executor() -> ScriptedExecutor:
    return ScriptedExecutor()

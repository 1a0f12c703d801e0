"""Pre-flight safety checks before an exploration starts.

The verdict is advisory. ``validate`` never raises for a failing probe; the
probe becomes a failed check and the caller decides whether to proceed.
"""

from __future__ import annotations

import logging
import shutil
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import psutil
from pydantic import BaseModel, Field

from explorer.core.errors import CommandExecutionError, GitOperationError
from explorer.core.process import CommandResult, SafeExecutor
from explorer.sandbox.containers import MIN_DOCKER_VERSION, parse_docker_version

logger = logging.getLogger(__name__)

_GB = 1024**3
# Headroom on top of the per-branch memory minimum
MEMORY_SAFETY_FACTOR = 1.2


class SafetyCheck(BaseModel):
    name: str
    passed: bool
    message: str
    warning: str | None = None
    details: dict[str, Any] = Field(default_factory=dict)


class SafetyValidation(BaseModel):
    passed: bool
    checks: list[SafetyCheck]
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)


class GitState(BaseModel):
    current_branch: str | None
    is_clean: bool
    uncommitted_changes: int
    existing_worktrees: int


class ResourceAvailability(BaseModel):
    available_memory_gb: float
    available_cpu_cores: int
    available_disk_gb: float
    docker_running: bool
    docker_version: str | None = None


@dataclass
class SafetyConfig:
    check_docker: bool = True
    require_clean_tree: bool = False
    min_memory_gb_per_branch: float = 2.0
    min_disk_space_gb: float = 5.0


class SafetyValidator:
    """Combine git state and host resources into a pass/fail verdict.

    Args:
        repo_path: Repository the exploration will branch from.
        executor: Runs git and docker probes.
        config: Thresholds and which checks are enforced.
        disk_path: Filesystem whose free space is checked. Defaults to
            ``repo_path``, where worktrees are created.
    """

    def __init__(
        self,
        repo_path: Path,
        executor: SafeExecutor | None = None,
        config: SafetyConfig | None = None,
        disk_path: Path | None = None,
    ):
        self.repo_path = Path(repo_path)
        self.executor = executor or SafeExecutor()
        self.config = config or SafetyConfig()
        self.disk_path = Path(disk_path) if disk_path else self.repo_path

    def validate(self, branches: int) -> SafetyValidation:
        """Run every enabled check for ``branches`` planned worktrees."""
        probes: list[tuple[str, Callable[[], SafetyCheck]]] = [
            ("Git Working Tree", self._check_git),
        ]
        if self.config.check_docker:
            probes.append(("Docker Availability", self._check_docker))
        probes.append(("Resource Availability", lambda: self._check_resources(branches)))
        probes.append(("Disk Space", self._check_disk))

        checks = [self._run_check(name, probe) for name, probe in probes]
        errors = [f"{c.name}: {c.message}" for c in checks if not c.passed]
        warnings = [f"{c.name}: {c.warning}" for c in checks if c.warning]
        if errors:
            logger.warning(f"Safety validation failed: {'; '.join(errors)}")
        return SafetyValidation(
            passed=not errors,
            checks=checks,
            errors=errors,
            warnings=warnings,
        )

    @staticmethod
    def _run_check(name: str, probe: Callable[[], SafetyCheck]) -> SafetyCheck:
        try:
            return probe()
        except Exception as e:
            logger.warning(f"Safety check '{name}' raised: {e}")
            return SafetyCheck(name=name, passed=False, message=f"Check failed: {e}")

    # --- probes ---

    def _run(self, args: list[str], timeout: float | None = None) -> CommandResult:
        return self.executor.run(args, cwd=self.repo_path, timeout=timeout)

    def get_git_state(self) -> GitState:
        """Current branch (None if detached), cleanliness and worktree count.

        Raises:
            GitOperationError: ``repo_path`` is not a usable git repository.
        """
        try:
            status = self._run(["git", "status", "--porcelain"])
            branch = self._run(["git", "branch", "--show-current"])
            worktrees = self._run(["git", "worktree", "list", "--porcelain"])
        except CommandExecutionError as e:
            raise GitOperationError(f"git probe failed: {e}") from e
        if not status.ok:
            raise GitOperationError(f"Not a git repository: {status.stderr.strip()}")

        changed = [line for line in status.stdout.split("\n") if line.strip()]
        current_branch = branch.stdout.strip() if branch.ok else ""
        worktree_count = sum(
            1 for line in worktrees.stdout.split("\n") if line.startswith("worktree ")
        )
        return GitState(
            current_branch=current_branch or None,
            is_clean=not changed,
            uncommitted_changes=len(changed),
            existing_worktrees=worktree_count,
        )

    def _docker_version(self) -> str | None:
        try:
            result = self._run(
                ["docker", "version", "--format", "{{.Server.Version}}"], timeout=10
            )
        except CommandExecutionError as e:
            logger.debug(f"Docker probe failed: {e}")
            return None
        version = result.stdout.strip()
        return version if result.ok and version else None

    def get_resource_availability(self) -> ResourceAvailability:
        memory = psutil.virtual_memory()
        disk = shutil.disk_usage(self.disk_path)
        docker_version = self._docker_version() if self.config.check_docker else None
        return ResourceAvailability(
            available_memory_gb=round(memory.available / _GB, 2),
            available_cpu_cores=psutil.cpu_count() or 1,
            available_disk_gb=round(disk.free / _GB, 2),
            docker_running=docker_version is not None,
            docker_version=docker_version,
        )

    # --- checks ---

    def _check_git(self) -> SafetyCheck:
        name = "Git Working Tree"
        state = self.get_git_state()
        details = state.model_dump()
        if state.current_branch is None:
            return SafetyCheck(
                name=name,
                passed=False,
                message="HEAD is detached; check out a branch before exploring",
                details=details,
            )
        if not state.is_clean:
            message = f"{state.uncommitted_changes} uncommitted change(s) on {state.current_branch}"
            if self.config.require_clean_tree:
                return SafetyCheck(name=name, passed=False, message=message, details=details)
            return SafetyCheck(
                name=name,
                passed=True,
                message=f"On branch {state.current_branch}",
                warning=f"{message}; worktrees branch from the last commit",
                details=details,
            )
        return SafetyCheck(
            name=name,
            passed=True,
            message=f"Working tree clean on {state.current_branch}",
            details=details,
        )

    def _check_docker(self) -> SafetyCheck:
        name = "Docker Availability"
        version = self._docker_version()
        if version is None:
            return SafetyCheck(name=name, passed=False, message="Docker is not running or not accessible")
        parsed = parse_docker_version(version)
        minimum = ".".join(str(part) for part in MIN_DOCKER_VERSION)
        if parsed is not None and parsed < MIN_DOCKER_VERSION:
            return SafetyCheck(
                name=name,
                passed=False,
                message=f"Docker {version} is too old (require >= {minimum})",
                details={"version": version},
            )
        return SafetyCheck(name=name, passed=True, message=f"Docker {version}", details={"version": version})

    def _check_resources(self, branches: int) -> SafetyCheck:
        name = "Resource Availability"
        memory_gb = psutil.virtual_memory().available / _GB
        cores = psutil.cpu_count() or 1
        required_gb = branches * self.config.min_memory_gb_per_branch * MEMORY_SAFETY_FACTOR
        details = {
            "available_memory_gb": round(memory_gb, 2),
            "required_memory_gb": round(required_gb, 2),
            "available_cpu_cores": cores,
            "required_cpu_cores": branches,
        }
        problems = []
        if memory_gb < required_gb:
            problems.append(
                f"insufficient memory: {memory_gb:.1f}GB available, {required_gb:.1f}GB required"
            )
        if cores < branches:
            problems.append(f"insufficient CPU cores: {cores} available, {branches} required")
        if problems:
            return SafetyCheck(name=name, passed=False, message="; ".join(problems), details=details)
        return SafetyCheck(
            name=name,
            passed=True,
            message=f"{memory_gb:.1f}GB memory and {cores} cores available",
            details=details,
        )

    def _check_disk(self) -> SafetyCheck:
        name = "Disk Space"
        free_gb = shutil.disk_usage(self.disk_path).free / _GB
        details = {"available_disk_gb": round(free_gb, 2), "required_disk_gb": self.config.min_disk_space_gb}
        if free_gb < self.config.min_disk_space_gb:
            return SafetyCheck(
                name=name,
                passed=False,
                message=f"insufficient disk space: {free_gb:.1f}GB free, "
                f"{self.config.min_disk_space_gb}GB required",
                details=details,
            )
        return SafetyCheck(name=name, passed=True, message=f"{free_gb:.1f}GB free", details=details)

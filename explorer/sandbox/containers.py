"""Docker container lifecycle for exploration sandboxes.

One long-lived container per worktree. The worktree is bind-mounted at
/workspace and the exploration's shared volume at /shared, so the agent can
edit source and publish insights for its peers.

SECURITY: only directories under the configured mount roots may be mounted,
and neither the mount path nor any of its ancestors may be a symlink.
"""

from __future__ import annotations

import logging
import os
import re
import shutil
import threading
from dataclasses import dataclass, field
from pathlib import Path

from pydantic import BaseModel, Field

from explorer.core.errors import (
    CommandExecutionError,
    CommandTimeoutError,
    ContainerError,
    ContainerTimeoutError,
    DockerNotAvailableError,
    ExplorationError,
    PartialFailureError,
    ValidationError,
)
from explorer.core.process import CommandResult, SafeExecutor
from explorer.core.resources import validate_cpu_limit, validate_memory_limit
from explorer.core.validation import sanitize_command_output

logger = logging.getLogger(__name__)

WORKSPACE_MOUNT = "/workspace"
SHARED_MOUNT = "/shared"
MANAGED_LABEL = "explorer.managed=true"
MIN_DOCKER_VERSION = (20, 10)

_ENV_KEY = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_IMAGE_NAME = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._/:@-]*$")
_NO_SUCH_CONTAINER = "No such container"
_CONTAINER_REF = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")


class ContainerSpec(BaseModel):
    """Everything the engine supplies to start one sandbox."""

    container_name: str
    image: str
    worktree_path: str
    shared_volume_path: str
    cpu_limit: str
    memory_limit: str
    port: int | None = None
    environment: dict[str, str] = Field(default_factory=dict)
    command: list[str] = Field(default_factory=list)


class ContainerStatus(BaseModel):
    name: str
    status: str
    exit_code: int | None = None
    started_at: str | None = None
    finished_at: str | None = None

    @property
    def running(self) -> bool:
        return self.status == "running"

    @property
    def exited(self) -> bool:
        return self.status in ("exited", "dead")


class ContainerStats(BaseModel):
    name: str
    cpu_percent: float
    memory_usage_mb: float


@dataclass
class SandboxConfig:
    """Configuration for sandbox containers."""

    # Directories that may be bind-mounted (worktrees, shared volumes)
    allowed_mount_roots: list[str] = field(default_factory=list)

    # Timeouts
    docker_timeout: int = 120
    pull_timeout: int = 600
    stop_timeout: int = 30

    # Output limits (prevent OOM from unbounded output)
    max_output_bytes: int = 10 * 1024 * 1024

    # Process limits (prevent fork-bomb DoS)
    pids_limit: int = 512


class ContainerRegistry:
    """Track containers started by one manager so they can be cleaned up.

    Uses RLock so cleanup can run while the same thread holds the lock.
    """

    def __init__(self) -> None:
        self._containers: dict[str, str] = {}
        self._lock = threading.RLock()

    def add(self, name: str, container_id: str) -> None:
        with self._lock:
            self._containers[name] = container_id

    def remove(self, name: str) -> None:
        with self._lock:
            self._containers.pop(name, None)

    def names(self) -> list[str]:
        with self._lock:
            return list(self._containers)

    def get(self, name: str) -> str | None:
        with self._lock:
            return self._containers.get(name)


def _sanitize_container_name_component(name: str) -> str:
    """Sanitize a string for use in Docker container names.

    Docker container names must match: [a-zA-Z0-9][a-zA-Z0-9_.-]*
    """
    sanitized = re.sub(r"[^a-zA-Z0-9_.-]", "-", name)
    sanitized = sanitized.lstrip("_.-")
    sanitized = re.sub(r"-+", "-", sanitized)
    sanitized = sanitized[:128]
    if not sanitized:
        raise ValidationError(f"Container name is empty after sanitization: {name!r}")
    return sanitized


def _validate_container_ref(ref: str) -> str:
    """Reject names or ids docker would read as something else, e.g. "--rm"."""
    if not isinstance(ref, str) or not _CONTAINER_REF.match(ref):
        raise ValidationError(f"Invalid container name or id: {ref!r}")
    return ref


def _get_docker_user() -> str | None:
    """Get the current user's UID:GID for Docker --user flag.

    Files the agent writes into the mounted worktree stay owned by the host
    user. Override via EXPLORER_DOCKER_USER; None on Windows.
    """
    env_override = os.environ.get("EXPLORER_DOCKER_USER")
    if env_override:
        return env_override
    if os.name == "nt":
        return None
    return f"{os.getuid()}:{os.getgid()}"


def _validate_mount(path: str | Path, allowed_roots: list[str]) -> Path:
    """Validate a host directory is safe to bind-mount.

    Returns the resolved path; callers must mount that, not the original,
    to keep the window between check and mount small.
    """
    if not allowed_roots:
        raise ContainerError(
            "allowed_mount_roots is empty. "
            "SECURITY: You must specify allowed roots to prevent mounting arbitrary host paths."
        )
    mount = Path(path).absolute()
    if mount.is_symlink():
        raise ValidationError(f"SECURITY: Mount path is a symlink: {mount}")
    current = mount.parent
    while current != current.parent:
        if current.is_symlink():
            raise ValidationError(f"SECURITY: Mount path ancestor is a symlink: {current}")
        current = current.parent

    resolved = mount.resolve()
    if not resolved.is_dir():
        raise ContainerError(f"Mount path is not an existing directory: {resolved}")
    for root in allowed_roots:
        try:
            resolved.relative_to(Path(root).resolve())
            return resolved
        except ValueError:
            continue
    raise ValidationError(f"Mount path '{mount}' is not under any allowed root: {allowed_roots}")


def parse_docker_version(version: str) -> tuple[int, int] | None:
    match = re.match(r"^(\d+)\.(\d+)", version.strip())
    if not match:
        return None
    return int(match.group(1)), int(match.group(2))


def _parse_memory_mb(text: str) -> float:
    """Parse docker stats memory such as '512MiB' or '1.5GiB' into MB."""
    match = re.match(r"^\s*([\d.]+)\s*([KMGT]?i?B)", text)
    if not match:
        return 0.0
    value = float(match.group(1))
    unit = match.group(2).upper().replace("I", "")
    factor = {"B": 1 / (1024 * 1024), "KB": 1 / 1024, "MB": 1, "GB": 1024, "TB": 1024 * 1024}
    return value * factor.get(unit, 1)


class ContainerManager:
    """Create, stop, remove and exec into exploration containers."""

    def __init__(
        self,
        config: SandboxConfig | None = None,
        executor: SafeExecutor | None = None,
    ):
        self.config = config or SandboxConfig()
        self.executor = executor or SafeExecutor(
            default_timeout=self.config.docker_timeout,
            max_output_bytes=self.config.max_output_bytes,
        )
        self.registry = ContainerRegistry()

    def _docker(self, *args: str, timeout: float | None = None) -> CommandResult:
        effective_timeout = timeout or self.config.docker_timeout
        try:
            return self.executor.run(["docker", *args], timeout=effective_timeout)
        except CommandTimeoutError as e:
            raise ContainerTimeoutError(
                f"docker {args[0]} timed out after {effective_timeout}s"
            ) from e
        except CommandExecutionError as e:
            if e.returncode == 127:
                raise DockerNotAvailableError("Docker binary not found in PATH") from e
            raise ContainerError(f"docker {args[0]} could not run: {e}") from e

    # --- engine ---

    def ensure_docker(self) -> str:
        """Validate Docker is reachable and recent enough. Returns the server version."""
        if not shutil.which("docker"):
            raise DockerNotAvailableError("Docker binary not found in PATH")
        result = self._docker("version", "--format", "{{.Server.Version}}", timeout=10)
        if not result.ok:
            raise DockerNotAvailableError(
                f"Docker is not running or not accessible: {result.stderr.strip()}"
            )
        version = result.stdout.strip()
        parsed = parse_docker_version(version)
        if parsed is not None and parsed < MIN_DOCKER_VERSION:
            raise DockerNotAvailableError(
                f"Docker version {version} is too old. Require >= "
                f"{MIN_DOCKER_VERSION[0]}.{MIN_DOCKER_VERSION[1]}"
            )
        return version

    def pull_image_if_needed(self, image: str) -> bool:
        """Pull ``image`` unless it is present locally.

        Returns:
            True if the image was pulled, False if it was already there.
        """
        if not _IMAGE_NAME.match(image):
            raise ValidationError(f"Invalid image name: {image!r}")
        if self._docker("image", "inspect", image).ok:
            return False
        logger.info(f"Pulling image {image}")
        result = self._docker("pull", image, timeout=self.config.pull_timeout)
        if not result.ok:
            raise ContainerError(f"Failed to pull image {image}: {result.stderr.strip()}")
        return True

    # --- lifecycle ---

    def _build_run_args(self, spec: ContainerSpec, name: str) -> list[str]:
        if not _IMAGE_NAME.match(spec.image):
            raise ValidationError(f"Invalid image name: {spec.image!r}")
        validate_cpu_limit(spec.cpu_limit)
        validate_memory_limit(spec.memory_limit)
        worktree = _validate_mount(spec.worktree_path, self.config.allowed_mount_roots)
        shared = _validate_mount(spec.shared_volume_path, self.config.allowed_mount_roots)

        args = [
            "run", "-d",
            "--name", name,
            "--label", MANAGED_LABEL,
            f"--cpus={spec.cpu_limit}",
            f"--memory={spec.memory_limit}",
            f"--pids-limit={self.config.pids_limit}",
            "--security-opt=no-new-privileges:true",
            f"--volume={worktree}:{WORKSPACE_MOUNT}:rw",
            f"--volume={shared}:{SHARED_MOUNT}:rw",
            f"--workdir={WORKSPACE_MOUNT}",
        ]
        if spec.port is not None:
            if not 0 < spec.port <= 65535:
                raise ValidationError(f"Invalid port: {spec.port}")
            args.extend(["-p", f"{spec.port}:{spec.port}"])

        docker_user = _get_docker_user()
        if docker_user:
            args.append(f"--user={docker_user}")

        for key, value in spec.environment.items():
            if not _ENV_KEY.match(key):
                raise ValidationError(f"Invalid environment variable name: {key!r}")
            args.extend(["--env", f"{key}={value}"])

        args.append(spec.image)
        args.extend(spec.command)
        return args

    def create_container(self, spec: ContainerSpec) -> str:
        """Create and start a container. Returns its id.

        Raises:
            ValidationError: Bad name, image, limits, mounts or env.
            ContainerError: Docker refused to start it.
        """
        name = _sanitize_container_name_component(spec.container_name)
        args = self._build_run_args(spec, name)
        result = self._docker(*args)
        if not result.ok:
            raise ContainerError(f"Failed to create container {name}: {result.stderr.strip()}")
        container_id = result.stdout.strip().splitlines()[-1] if result.stdout.strip() else name
        self.registry.add(name, container_id)
        logger.info(f"Started container {name} ({container_id[:12]})")
        return container_id

    def create_multiple_containers(self, specs: list[ContainerSpec]) -> list[str]:
        """Start containers in order; remove the started ones if any fails."""
        started: list[str] = []
        for spec in specs:
            try:
                self.create_container(spec)
                started.append(_sanitize_container_name_component(spec.container_name))
            except Exception as e:
                if not started:
                    raise
                errors = []
                for name in reversed(started):
                    try:
                        self.remove_container(name, force=True)
                    except ExplorationError as cleanup_error:
                        logger.warning(f"Rollback: failed to remove container {name}: {cleanup_error}")
                        errors.append(f"{name}: {cleanup_error}")
                raise PartialFailureError(
                    f"Failed to start container {spec.container_name}",
                    rolled_back=len(started) - len(errors),
                    original=e,
                    rollback_errors=errors,
                ) from e
        return [self.registry.get(name) or name for name in started]

    def stop_container(self, name: str, timeout: int | None = None) -> None:
        """Stop a container. Missing or already stopped is not an error."""
        _validate_container_ref(name)
        stop_timeout = self.config.stop_timeout if timeout is None else timeout
        result = self._docker(
            "stop", "-t", str(stop_timeout), name,
            timeout=stop_timeout + self.config.docker_timeout,
        )
        if not result.ok:
            stderr = result.stderr.strip()
            if _NO_SUCH_CONTAINER in stderr or "is not running" in stderr:
                return
            raise ContainerError(f"Failed to stop container {name}: {stderr}")
        logger.info(f"Stopped container {name}")

    def remove_container(self, name: str, force: bool = False) -> None:
        """Remove a container. Missing is not an error."""
        _validate_container_ref(name)
        args = ["rm", "-f", name] if force else ["rm", name]
        result = self._docker(*args)
        if not result.ok:
            stderr = result.stderr.strip()
            if _NO_SUCH_CONTAINER not in stderr:
                raise ContainerError(f"Failed to remove container {name}: {stderr}")
        self.registry.remove(name)

    def kill_container(self, name: str) -> None:
        _validate_container_ref(name)
        result = self._docker("kill", name)
        if not result.ok and _NO_SUCH_CONTAINER not in result.stderr:
            raise ContainerError(f"Failed to kill container {name}: {result.stderr.strip()}")

    def stop_all(self, remove: bool = True) -> list[str]:
        """Stop (and remove) every container this manager started.

        Returns:
            Error messages for containers that could not be cleaned up.
        """
        errors: list[str] = []
        for name in self.registry.names():
            try:
                self.stop_container(name)
                if remove:
                    self.remove_container(name, force=True)
            except ExplorationError as e:
                logger.warning(f"Failed to clean up container {name}: {e}")
                errors.append(f"{name}: {e}")
        return errors

    def tracked_containers(self) -> list[str]:
        return self.registry.names()

    # --- inspection ---

    def get_container_status(self, name: str) -> ContainerStatus | None:
        """State of a container, or None if it does not exist."""
        _validate_container_ref(name)
        result = self._docker(
            "inspect",
            "--format",
            "{{.State.Status}}|{{.State.ExitCode}}|{{.State.StartedAt}}|{{.State.FinishedAt}}",
            name,
        )
        if not result.ok:
            if _NO_SUCH_CONTAINER in result.stderr or "No such object" in result.stderr:
                return None
            raise ContainerError(f"Failed to inspect container {name}: {result.stderr.strip()}")
        parts = result.stdout.strip().split("|")
        status = parts[0] if parts else "unknown"
        exit_code = int(parts[1]) if len(parts) > 1 and parts[1].lstrip("-").isdigit() else None
        return ContainerStatus(
            name=name,
            status=status,
            exit_code=exit_code,
            started_at=parts[2] if len(parts) > 2 else None,
            finished_at=parts[3] if len(parts) > 3 else None,
        )

    def container_exists(self, name: str) -> bool:
        return self.get_container_status(name) is not None

    def get_container_stats(self, name: str) -> ContainerStats | None:
        _validate_container_ref(name)
        result = self._docker("stats", name, "--no-stream", "--format", "{{.CPUPerc}}|{{.MemUsage}}")
        if not result.ok:
            return None
        cpu, _, mem = result.stdout.strip().partition("|")
        try:
            cpu_percent = float(cpu.strip().rstrip("%") or 0)
        except ValueError:
            cpu_percent = 0.0
        return ContainerStats(name=name, cpu_percent=cpu_percent, memory_usage_mb=_parse_memory_mb(mem))

    def get_container_logs(self, name: str, tail: int = 100) -> str:
        _validate_container_ref(name)
        result = self._docker("logs", "--tail", str(tail), name)
        if not result.ok:
            raise ContainerError(f"Failed to read logs of {name}: {result.stderr.strip()}")
        return sanitize_command_output(result.stdout + result.stderr)

    def exec_in_container(
        self,
        container_id: str,
        command: list[str],
        timeout: float | None = None,
        workdir: str | None = None,
        env: dict[str, str] | None = None,
    ) -> CommandResult:
        """Run ``command`` inside a running container.

        Raises:
            ValidationError: Invalid container id or arguments.
            ContainerTimeoutError: Command exceeded ``timeout``.
        """
        _validate_container_ref(container_id)
        if not command:
            raise ValidationError("exec command cannot be empty")
        args = ["exec"]
        if workdir:
            args.extend(["--workdir", workdir])
        for key, value in (env or {}).items():
            if not _ENV_KEY.match(key):
                raise ValidationError(f"Invalid environment variable name: {key!r}")
            args.extend(["--env", f"{key}={value}"])
        args.append(container_id)
        args.extend(command)
        return self._docker(*args, timeout=timeout)

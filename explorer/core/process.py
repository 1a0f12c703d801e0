"""Safe execution of external commands.

Every git and docker call in the engine goes through ``SafeExecutor.run``:
arguments are passed as a vector (never through a shell), each call is bounded
by a timeout, and captured output is capped. Exceeding either bound kills the
process and raises a distinct error so callers can tell it apart from an
ordinary non-zero exit.
"""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
import threading
from collections.abc import Mapping, Sequence
from pathlib import Path
from typing import IO

from pydantic import BaseModel

from explorer.core.errors import (
    CommandExecutionError,
    CommandTimeoutError,
    OutputLimitExceededError,
    ValidationError,
)

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30
DEFAULT_MAX_OUTPUT_BYTES = 10 * 1024 * 1024  # 10MB across stdout + stderr
_KILL_GRACE_SECONDS = 5
_READ_CHUNK = 8192


class CommandResult(BaseModel):
    """Captured result of a finished command."""

    args: list[str]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class SafeExecutor:
    """Run commands without a shell, with a timeout and an output cap."""

    def __init__(
        self,
        default_timeout: float = DEFAULT_TIMEOUT,
        max_output_bytes: int = DEFAULT_MAX_OUTPUT_BYTES,
    ):
        self.default_timeout = default_timeout
        self.max_output_bytes = max_output_bytes

    def run(
        self,
        args: Sequence[str],
        cwd: str | Path | None = None,
        timeout: float | None = None,
        env: Mapping[str, str] | None = None,
        check: bool = False,
    ) -> CommandResult:
        """Run ``args`` and return its captured output.

        Args:
            args: Program and arguments. Never interpreted by a shell.
            cwd: Working directory.
            timeout: Seconds before the process is killed. Defaults to
                ``default_timeout``.
            env: Extra environment variables layered over ``os.environ``.
            check: Raise ``CommandExecutionError`` on a non-zero exit.

        Raises:
            ValidationError: If ``args`` is empty or holds non-strings.
            CommandTimeoutError: Process exceeded ``timeout``.
            OutputLimitExceededError: Process wrote more than ``max_output_bytes``.
            CommandExecutionError: Program not found, or non-zero exit with ``check``.
        """
        argv = list(args)
        if not argv or not all(isinstance(arg, str) for arg in argv):
            raise ValidationError(f"Command must be a non-empty list of strings: {argv!r}")

        effective_timeout = self.default_timeout if timeout is None else timeout
        full_env = None
        if env:
            full_env = {**os.environ, **env}

        try:
            proc = subprocess.Popen(
                argv,
                cwd=str(cwd) if cwd is not None else None,
                env=full_env,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
            )
        except FileNotFoundError as e:
            raise CommandExecutionError(
                f"Command not found: {argv[0]}", returncode=127, stderr=str(e)
            ) from e
        except OSError as e:
            raise CommandExecutionError(f"Failed to start {argv[0]}: {e}", stderr=str(e)) from e

        stdout_buf = bytearray()
        stderr_buf = bytearray()
        overflow = threading.Event()
        budget_lock = threading.Lock()

        def _pump(stream: IO[bytes], buf: bytearray) -> None:
            for chunk in iter(lambda: stream.read(_READ_CHUNK), b""):
                with budget_lock:
                    if overflow.is_set():
                        continue
                    if len(stdout_buf) + len(stderr_buf) + len(chunk) > self.max_output_bytes:
                        overflow.set()
                        proc.kill()
                        continue
                    buf.extend(chunk)
            stream.close()

        pumps = [
            threading.Thread(target=_pump, args=(proc.stdout, stdout_buf), daemon=True),
            threading.Thread(target=_pump, args=(proc.stderr, stderr_buf), daemon=True),
        ]
        for pump in pumps:
            pump.start()

        try:
            returncode = proc.wait(timeout=effective_timeout)
        except subprocess.TimeoutExpired:
            self._terminate(proc)
            for pump in pumps:
                pump.join(timeout=_KILL_GRACE_SECONDS)
            raise CommandTimeoutError(
                f"Command timed out after {effective_timeout}s: {argv[0]} {' '.join(argv[1:3])}",
                returncode=-1,
                stdout=_decode(stdout_buf),
                stderr=_decode(stderr_buf),
            )

        for pump in pumps:
            pump.join()

        stdout = _decode(stdout_buf)
        stderr = _decode(stderr_buf)

        if overflow.is_set():
            raise OutputLimitExceededError(
                f"Command output exceeded {self.max_output_bytes} bytes: {argv[0]}",
                returncode=returncode,
                stdout=stdout,
                stderr=stderr,
            )

        result = CommandResult(args=argv, returncode=returncode, stdout=stdout, stderr=stderr)
        if check and not result.ok:
            raise CommandExecutionError(
                f"Command failed with exit code {returncode}: {argv[0]}: {stderr.strip()}",
                returncode=returncode,
                stdout=stdout,
                stderr=stderr,
            )
        return result

    @staticmethod
    def _terminate(proc: subprocess.Popen) -> None:
        """SIGTERM, then SIGKILL if the process ignores it."""
        proc.terminate()
        try:
            proc.wait(timeout=_KILL_GRACE_SECONDS)
        except subprocess.TimeoutExpired:
            logger.warning(f"Process {proc.pid} ignored SIGTERM, killing")
            proc.kill()
            proc.wait()


def command_exists(name: str) -> bool:
    """Check whether ``name`` is an executable on PATH."""
    return shutil.which(name) is not None


def _decode(data: bytearray) -> str:
    return bytes(data).decode("utf-8", errors="replace")

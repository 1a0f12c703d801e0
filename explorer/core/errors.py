"""Exception taxonomy for the exploration engine.

Validation and resource errors are deterministic and should not be retried.
Timeout subclasses mark transient failures a caller may retry with backoff.
"""

from __future__ import annotations


class ExplorationError(Exception):
    """Base class for all exploration engine errors."""

    pass


class ValidationError(ExplorationError):
    """Malformed branch name, path, ref or configuration value.

    Always raised before any side effect.
    """

    pass


class ResourceExhaustionError(ExplorationError):
    """Worktree limit reached or no port left in the configured range."""

    pass


class GitOperationError(ExplorationError):
    """Underlying git command failed."""

    pass


class GitTimeoutError(GitOperationError):
    """Git command exceeded its timeout."""

    pass


class ContainerError(ExplorationError):
    """Image pull, container create/start/stop or exec failure."""

    pass


class ContainerTimeoutError(ContainerError):
    """Container engine command exceeded its timeout."""

    pass


class DockerNotAvailableError(ContainerError):
    """Docker binary missing or daemon unreachable."""

    pass


class LockTimeoutError(ExplorationError):
    """A shared file lock could not be acquired within its wait bound."""

    def __init__(self, path: str, owner: str, timeout: float):
        self.path = path
        self.owner = owner
        self.timeout = timeout
        super().__init__(f"Timed out after {timeout}s waiting for lock on {path} (owner: {owner})")


class ConcurrentModificationError(ExplorationError):
    """A locked document changed on disk between read and write."""

    pass


class PartialFailureError(ExplorationError):
    """A batch operation failed after partially succeeding.

    Raised only after the compensating rollback has run. The original error
    is chained as ``__cause__`` and kept in ``original``.
    """

    def __init__(
        self,
        message: str,
        rolled_back: int,
        original: BaseException,
        rollback_errors: list[str] | None = None,
    ):
        self.rolled_back = rolled_back
        self.original = original
        self.rollback_errors = rollback_errors or []
        super().__init__(f"{message} (rolled back {rolled_back} unit(s)): {original}")


class ExplorationNotFoundError(ExplorationError):
    """No exploration record exists for the given id."""

    pass


class InvalidStateTransitionError(ExplorationError):
    """Lifecycle operation not allowed in the exploration's current status."""

    pass


class CommandExecutionError(ExplorationError):
    """External command exited non-zero."""

    def __init__(self, message: str, returncode: int = -1, stdout: str = "", stderr: str = ""):
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        super().__init__(message)


class CommandTimeoutError(CommandExecutionError):
    """External command was killed after exceeding its timeout."""

    pass


class OutputLimitExceededError(CommandExecutionError):
    """External command produced more output than the configured cap."""

    pass


class SafetyCheckError(ExplorationError):
    """Pre-flight safety validation failed; carries the failed checks."""

    def __init__(self, errors: list[str]):
        self.errors = errors
        super().__init__("Safety validation failed:\n" + "\n".join(f"  - {e}" for e in errors))

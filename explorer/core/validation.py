"""Input validation for every externally supplied string.

Branch names, paths and git refs are validated and rejected outright.
Free-text reasons are sanitized instead: they only end up as lock
annotations, so a bad reason is cleaned up rather than refused.
"""

from __future__ import annotations

import re
from pathlib import Path

from explorer.core.errors import ValidationError

MAX_BRANCH_LENGTH = 255
MAX_PATH_LENGTH = 4096
MAX_REASON_LENGTH = 500
MAX_EXPLORATION_ID_LENGTH = 50

DEFAULT_REASON = "No reason provided"

# Characters a shell would interpret; none of them belong in a ref.
_SHELL_METACHARS = re.compile(r"[;&|`$()<>{}\[\]\\'\"!\n\r\t\x00]")
_PATH_METACHARS = re.compile(r"[;&|`$\n\r]")
# Characters git itself refuses in ref names (see git-check-ref-format).
_GIT_FORBIDDEN = re.compile(r"[ ~^:?*]")
_BRANCH_CHARSET = re.compile(r"^[A-Za-z0-9/_.-]+$")
_GIT_REF_CHARSET = re.compile(r"^[A-Za-z0-9/_.~^-]+$")
_REASON_DISALLOWED = re.compile(r"[^\w\s.,!?:()-]")
_EXPLORATION_ID = re.compile(r"^exp-[A-Za-z0-9_-]+$")
_ANSI_ESCAPE = re.compile(r"\x1B(?:[@-Z\\-_]|\[[0-?]*[ -/]*[@-~])")
_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")


class InputValidator:
    """Validate and normalize branch names, paths, refs and reason text.

    Stateless apart from its length limits; components receive an instance
    through their constructor so tests can swap in tighter limits.
    """

    def __init__(
        self,
        max_branch_length: int = MAX_BRANCH_LENGTH,
        max_path_length: int = MAX_PATH_LENGTH,
        max_reason_length: int = MAX_REASON_LENGTH,
    ):
        self.max_branch_length = max_branch_length
        self.max_path_length = max_path_length
        self.max_reason_length = max_reason_length

    def validate_branch_name(self, name: str) -> str:
        """Return ``name`` unchanged if it is a safe git branch name.

        Raises:
            ValidationError: naming the offending branch and the rule it broke.
        """
        if not isinstance(name, str) or not name:
            raise ValidationError("Branch name cannot be empty")
        if len(name) > self.max_branch_length:
            raise ValidationError(
                f"Branch name too long ({len(name)} > {self.max_branch_length}): {name[:40]}..."
            )
        if ".." in name:
            raise ValidationError(f"Branch name contains path traversal '..': {name!r}")
        if _SHELL_METACHARS.search(name):
            raise ValidationError(f"Branch name contains shell metacharacters: {name!r}")
        if _GIT_FORBIDDEN.search(name):
            raise ValidationError(f"Branch name contains characters git rejects: {name!r}")
        if name.startswith((".", "/", "-")):
            raise ValidationError(f"Branch name cannot start with '.', '/' or '-': {name!r}")
        if name.endswith((".lock", "/", ".")):
            raise ValidationError(f"Branch name cannot end with '.lock', '/' or '.': {name!r}")
        if "//" in name or "@{" in name or "/." in name:
            raise ValidationError(f"Branch name has an invalid sequence: {name!r}")
        if not _BRANCH_CHARSET.match(name):
            raise ValidationError(f"Branch name contains invalid characters: {name!r}")
        return name

    def validate_path(self, path: str | Path, allowed_root: str | Path) -> Path:
        """Resolve ``path`` and require it to stay under ``allowed_root``.

        Relative paths are taken relative to the root. Absolute paths are
        accepted only when they already point inside it.

        Returns:
            The resolved absolute path.
        """
        raw = str(path)
        if not raw:
            raise ValidationError("Path cannot be empty")
        if len(raw) > self.max_path_length:
            raise ValidationError(f"Path too long ({len(raw)} > {self.max_path_length})")
        if "\x00" in raw:
            raise ValidationError(f"Path contains null byte: {raw!r}")
        if _PATH_METACHARS.search(raw):
            raise ValidationError(f"Path contains shell metacharacters: {raw!r}")

        candidate = Path(raw)
        if ".." in candidate.parts:
            raise ValidationError(f"Path traversal not allowed: {raw}")

        root = Path(allowed_root).resolve()
        resolved = candidate.resolve() if candidate.is_absolute() else (root / candidate).resolve()
        try:
            resolved.relative_to(root)
        except ValueError:
            raise ValidationError(f"Path escapes allowed root {root}: {raw}")
        return resolved

    def validate_git_ref(self, ref: str) -> str:
        """Accept symbolic refs, ``refs/...`` paths and hex object ids."""
        if not isinstance(ref, str) or not ref:
            raise ValidationError("Git ref cannot be empty")
        if len(ref) > self.max_branch_length:
            raise ValidationError(f"Git ref too long: {ref[:40]}...")
        if _SHELL_METACHARS.search(ref):
            raise ValidationError(f"Git ref contains shell metacharacters: {ref!r}")
        if ".." in ref:
            raise ValidationError(f"Git ref contains '..': {ref!r}")
        if ref.startswith("-"):
            raise ValidationError(f"Git ref cannot start with '-': {ref!r}")
        if not _GIT_REF_CHARSET.match(ref):
            raise ValidationError(f"Git ref contains invalid characters: {ref!r}")
        return ref

    def validate_reason_text(self, text: str | None) -> str:
        """Sanitize free-form text for lock metadata. Never raises."""
        if not text or not isinstance(text, str):
            return DEFAULT_REASON
        cleaned = _REASON_DISALLOWED.sub("", text[: self.max_reason_length * 2])
        cleaned = re.sub(r"\s+", " ", cleaned).strip()
        cleaned = cleaned[: self.max_reason_length].strip()
        return cleaned or DEFAULT_REASON

    def validate_exploration_id(self, exploration_id: str) -> str:
        if not isinstance(exploration_id, str) or not exploration_id:
            raise ValidationError("Exploration id cannot be empty")
        if len(exploration_id) > MAX_EXPLORATION_ID_LENGTH:
            raise ValidationError(f"Exploration id too long: {exploration_id[:20]}...")
        if not _EXPLORATION_ID.match(exploration_id):
            raise ValidationError(f"Invalid exploration id: {exploration_id!r}")
        return exploration_id


def sanitize_command_output(output: str, max_length: int = 10_000) -> str:
    """Strip ANSI escapes and control characters, then cap the length.

    Keeps the tail when truncating; failures are usually reported last.
    """
    cleaned = _CONTROL_CHARS.sub("", _ANSI_ESCAPE.sub("", output))
    if len(cleaned) <= max_length:
        return cleaned
    dropped = len(cleaned) - max_length
    return f"[... {dropped} chars truncated ...]\n" + cleaned[-max_length:]

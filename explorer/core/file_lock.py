"""Advisory file locking for shared JSON documents.

Every read, write and read-modify-write of a shared document (insights pool,
decisions pool, per-worktree progress) happens under an exclusive lock held
through the filelock package. Locks are per document path and work across
processes, so sandboxes that mount the same shared volume serialize too.

Lock sentinel files live in a dedicated locks directory, never next to the
document, so agents listing the shared volume do not trip over them.
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import tempfile
import time
from collections.abc import Callable, Generator
from contextlib import contextmanager
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

from filelock import FileLock
from filelock import Timeout as FileLockTimeout
from pydantic import BaseModel

from explorer.core.errors import (
    ConcurrentModificationError,
    LockTimeoutError,
    ValidationError,
)
from explorer.core.validation import InputValidator

logger = logging.getLogger(__name__)

Document = dict[str, Any]


class _SafeJSONEncoder(json.JSONEncoder):
    """JSON encoder that handles datetime, Pydantic models and paths."""

    def default(self, obj: Any) -> Any:
        if isinstance(obj, datetime):
            return obj.isoformat()
        if isinstance(obj, BaseModel):
            return obj.model_dump(mode="json")
        if isinstance(obj, Path):
            return str(obj)
        return super().default(obj)


def atomic_write_json(path: Path, document: Any) -> None:
    """Write ``document`` as JSON via temp file + ``os.replace``.

    Readers see either the previous file or the new one, never a mix.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, temp_path = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(document, f, cls=_SafeJSONEncoder, indent=2)
            f.flush()
            os.fsync(f.fileno())
        os.replace(temp_path, path)
    except BaseException:
        try:
            os.unlink(temp_path)
        except OSError:
            pass
        raise


def read_json(path: Path) -> Any:
    """Read a JSON document. Returns None if the file does not exist."""
    try:
        with open(path, encoding="utf-8") as f:
            return json.load(f)
    except FileNotFoundError:
        return None


def _fingerprint(path: Path) -> tuple[int, int] | None:
    try:
        st = path.stat()
    except FileNotFoundError:
        return None
    return (st.st_mtime_ns, st.st_size)


class FileLockManager:
    """Serialize access to JSON documents through per-path file locks.

    Args:
        locks_dir: Directory for lock sentinel files (``shared/locks``).
        timeout: Seconds to wait for a lock before ``LockTimeoutError``.
        validator: Sanitizes owner labels before they are recorded.
    """

    LOCK_TIMEOUT: float = 5.0
    STALE_LOCK_SECONDS: float = 3600.0

    def __init__(
        self,
        locks_dir: Path,
        timeout: float = LOCK_TIMEOUT,
        validator: InputValidator | None = None,
    ):
        self.locks_dir = Path(locks_dir)
        self.timeout = timeout
        self.validator = validator or InputValidator()

    def _lock_path(self, path: Path) -> Path:
        resolved = Path(path).resolve()
        digest = hashlib.sha1(str(resolved).encode("utf-8")).hexdigest()[:16]
        return self.locks_dir / f"{resolved.name}-{digest}.lock"

    def _ensure_locks_dir(self) -> None:
        # SECURITY: a symlinked locks dir would let locks land outside the volume
        if self.locks_dir.is_symlink():
            raise ValidationError(f"SECURITY: lock directory is a symlink: {self.locks_dir}")
        self.locks_dir.mkdir(parents=True, exist_ok=True)

    @contextmanager
    def lock(self, path: Path, owner: str) -> Generator[None, None, None]:
        """Hold the exclusive lock for ``path``.

        Released unconditionally when the block exits, on success or error.

        Raises:
            LockTimeoutError: Lock not acquired within ``timeout``.
        """
        self._ensure_locks_dir()
        lock_file = self._lock_path(path)
        owner_label = self.validator.validate_reason_text(owner)
        filelock = FileLock(str(lock_file), timeout=self.timeout)
        try:
            filelock.acquire()
        except FileLockTimeout:
            holder = self.get_lock_info(path)
            held_by = holder.get("acquired_by") if holder else "unknown"
            logger.warning(f"Lock timeout on {path} for {owner_label} (held by {held_by})")
            raise LockTimeoutError(str(path), owner_label, self.timeout)
        try:
            self._write_info(lock_file, owner_label)
            yield
        finally:
            self._info_path(lock_file).unlink(missing_ok=True)
            filelock.release()

    def read_with_lock(self, path: Path, owner: str) -> Document | None:
        """Read a document under lock. Returns None if it does not exist."""
        path = Path(path)
        with self.lock(path, owner):
            return read_json(path)

    def write_with_lock(self, path: Path, document: Document | BaseModel, owner: str) -> None:
        path = Path(path)
        with self.lock(path, owner):
            atomic_write_json(path, document)

    def update_with_lock(
        self,
        path: Path,
        owner: str,
        mutate: Callable[[Document | None], Document | BaseModel],
    ) -> Document:
        """Read, mutate and write a document under one held lock.

        ``mutate`` receives the current document (None if missing) and
        returns the new one. If ``mutate`` raises, nothing is written.

        Raises:
            ConcurrentModificationError: The file changed while the lock was
                held, meaning some writer bypassed the lock.
        """
        path = Path(path)
        with self.lock(path, owner):
            before = _fingerprint(path)
            current = read_json(path)
            updated = mutate(current)
            if isinstance(updated, BaseModel):
                updated = updated.model_dump(mode="json")
            if _fingerprint(path) != before:
                raise ConcurrentModificationError(
                    f"{path} was modified outside the lock while {owner} held it"
                )
            atomic_write_json(path, updated)
            return updated

    def append_to_array(self, path: Path, key: str, item: Any, owner: str) -> Document:
        """Append ``item`` to ``document[key]`` and refresh the pool counters."""

        def _append(current: Document | None) -> Document:
            if current is None:
                raise FileNotFoundError(f"Cannot append to missing document: {path}")
            items = list(current.get(key, []))
            if isinstance(item, BaseModel):
                items.append(item.model_dump(mode="json"))
            else:
                items.append(item)
            return {
                **current,
                key: items,
                "total_count": len(items),
                "last_updated": datetime.now(UTC).isoformat(),
            }

        return self.update_with_lock(path, owner, _append)

    def is_locked(self, path: Path) -> bool:
        """True if another holder currently owns the lock for ``path``."""
        lock_file = self._lock_path(Path(path))
        if not lock_file.exists():
            return False
        probe = FileLock(str(lock_file), timeout=0)
        try:
            probe.acquire()
        except FileLockTimeout:
            return True
        probe.release()
        return False

    def get_lock_info(self, path: Path) -> Document | None:
        """Owner metadata of the current holder, if any."""
        info = read_json(self._info_path(self._lock_path(Path(path))))
        return info if isinstance(info, dict) else None

    def cleanup_stale_lock_files(self, max_age_seconds: float | None = None) -> int:
        """Remove owner sidecars left behind by holders that died.

        ``.lock`` sentinels stay in place: another process may already have
        one open, and unlinking it would let two callers hold "the" lock on
        different inodes. Sentinels go away with the locks directory when the
        exploration is cleaned up.

        Returns:
            Number of sidecar files removed.
        """
        if not self.locks_dir.is_dir() or self.locks_dir.is_symlink():
            return 0
        max_age = self.STALE_LOCK_SECONDS if max_age_seconds is None else max_age_seconds
        removed = 0
        now = time.time()
        for info_file in self.locks_dir.glob("*.info"):
            try:
                if now - info_file.stat().st_mtime < max_age:
                    continue
            except FileNotFoundError:
                continue
            held = FileLock(str(info_file.with_suffix(".lock")), timeout=0)
            try:
                held.acquire()
            except FileLockTimeout:
                continue
            try:
                info_file.unlink(missing_ok=True)
                removed += 1
            finally:
                held.release()
        if removed:
            logger.info(f"Removed {removed} stale lock sidecar(s) from {self.locks_dir}")
        return removed

    @staticmethod
    def _info_path(lock_file: Path) -> Path:
        return lock_file.with_suffix(".info")

    def _write_info(self, lock_file: Path, owner: str) -> None:
        acquired_at = datetime.now(UTC)
        atomic_write_json(
            self._info_path(lock_file),
            {
                "lock_id": lock_file.stem,
                "acquired_by": owner,
                "acquired_at": acquired_at,
                "expires_at": acquired_at + timedelta(seconds=self.timeout),
                "pid": os.getpid(),
            },
        )

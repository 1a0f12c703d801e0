"""Per-exploration collaboration directory.

Layout under the shared root::

    README.md
    insights-pool.json
    decisions-pool.json
    locks/
    worktree-<N>/
        latest-insight.json
        metrics.json
        progress.json

Every document is written through the FileLockManager so readers never see
a partially written file.
"""

from __future__ import annotations

import json
import logging
import shutil
from datetime import UTC, datetime
from pathlib import Path

from pydantic import BaseModel, Field

from explorer.core.errors import ValidationError
from explorer.core.file_lock import FileLockManager, atomic_write_json, read_json
from explorer.core.models import (
    DecisionsPool,
    InsightsPool,
    LatestInsightDocument,
    MetricsDocument,
    ProgressDocument,
)

logger = logging.getLogger(__name__)

INSIGHTS_POOL_FILE = "insights-pool.json"
DECISIONS_POOL_FILE = "decisions-pool.json"
LOCKS_DIR = "locks"
LATEST_INSIGHT_FILE = "latest-insight.json"
METRICS_FILE = "metrics.json"
PROGRESS_FILE = "progress.json"

_OWNER = "shared-volume-manager"

README_TEMPLATE = """# Shared Exploration Volume

Shared data for parallel exploration {exploration_id}.

## Structure

```
shared/
  README.md               this file
  insights-pool.json      insights published by every agent
  decisions-pool.json     proposed decisions and their votes
  locks/                  lock files, do not edit
  worktree-<N>/
    latest-insight.json   most recent insight of worktree N
    metrics.json          counters of worktree N
    progress.json         progress of worktree N
```

## Rules

Read and write these files only while holding the file lock for the
document. Writing them directly races with the other agents and can lose
their updates. Locks time out after a few seconds; retry on contention.

Created: {created_at}
"""


def _worktree_index(data_dir: Path) -> int:
    """Index N of a `worktree-<N>` directory, 0 if the name does not parse."""
    suffix = data_dir.name.removeprefix("worktree-")
    return int(suffix) if suffix.isdigit() else 0


class SharedVolumeStructure(BaseModel):
    root_path: str
    insights_pool_path: str
    decisions_pool_path: str
    locks_dir: str
    worktree_data_dirs: list[str] = Field(default_factory=list)


class SharedVolumeValidation(BaseModel):
    valid: bool
    missing_files: list[str] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)


class SharedVolumeManager:
    """Create and inspect the shared volume of one exploration."""

    def __init__(
        self,
        root_path: Path,
        exploration_id: str,
        lock_manager: FileLockManager | None = None,
    ):
        self.root_path = Path(root_path)
        self.exploration_id = exploration_id
        self.lock_manager = lock_manager or FileLockManager(self.root_path / LOCKS_DIR)

    @property
    def insights_pool_path(self) -> Path:
        return self.root_path / INSIGHTS_POOL_FILE

    @property
    def decisions_pool_path(self) -> Path:
        return self.root_path / DECISIONS_POOL_FILE

    @property
    def locks_dir(self) -> Path:
        return self.root_path / LOCKS_DIR

    def worktree_data_dir(self, index: int) -> Path:
        if index < 1:
            raise ValidationError(f"Worktree index must be >= 1: {index}")
        return self.root_path / f"worktree-{index}"

    def initialize(self, worktree_count: int) -> SharedVolumeStructure:
        """Create the layout for ``worktree_count`` worktrees.

        Safe to call on an existing root. Pools that already hold entries
        are left untouched.
        """
        if worktree_count < 1:
            raise ValidationError(f"worktree_count must be >= 1: {worktree_count}")
        if self.root_path.is_symlink():
            raise ValidationError(f"SECURITY: shared volume root is a symlink: {self.root_path}")

        logger.info(f"Initializing shared volume for exploration {self.exploration_id}")
        self.root_path.mkdir(parents=True, exist_ok=True)
        self.locks_dir.mkdir(exist_ok=True)

        self._init_pool(
            self.insights_pool_path, "insights", InsightsPool(exploration_id=self.exploration_id)
        )
        self._init_pool(
            self.decisions_pool_path, "decisions", DecisionsPool(exploration_id=self.exploration_id)
        )
        data_dirs = [self.initialize_worktree_data(i) for i in range(1, worktree_count + 1)]
        self._write_readme()

        logger.info(f"Shared volume initialized at {self.root_path}")
        return SharedVolumeStructure(
            root_path=str(self.root_path),
            insights_pool_path=str(self.insights_pool_path),
            decisions_pool_path=str(self.decisions_pool_path),
            locks_dir=str(self.locks_dir),
            worktree_data_dirs=[str(d) for d in data_dirs],
        )

    def _init_pool(self, path: Path, key: str, empty: BaseModel) -> None:
        with self.lock_manager.lock(path, _OWNER):
            try:
                existing = read_json(path)
            except json.JSONDecodeError:
                logger.warning(f"Leaving unreadable pool in place: {path}")
                return
            if isinstance(existing, dict) and existing.get(key):
                logger.debug(f"Pool already populated, not overwriting: {path}")
                return
            atomic_write_json(path, empty.model_dump(mode="json"))

    def initialize_worktree_data(self, index: int) -> Path:
        """Create ``worktree-<index>`` with its three documents, keeping existing ones."""
        data_dir = self.worktree_data_dir(index)
        data_dir.mkdir(parents=True, exist_ok=True)
        documents: dict[str, BaseModel] = {
            LATEST_INSIGHT_FILE: LatestInsightDocument(worktree_index=index),
            METRICS_FILE: MetricsDocument(worktree_index=index),
            PROGRESS_FILE: ProgressDocument(worktree_index=index),
        }
        for filename, document in documents.items():
            path = data_dir / filename
            if not path.exists():
                self.lock_manager.write_with_lock(path, document.model_dump(mode="json"), _OWNER)
        logger.debug(f"Worktree data initialized: {data_dir}")
        return data_dir

    def _write_readme(self) -> None:
        readme = self.root_path / "README.md"
        if readme.exists():
            return
        readme.write_text(
            README_TEMPLATE.format(
                exploration_id=self.exploration_id,
                created_at=datetime.now(UTC).isoformat(),
            ),
            encoding="utf-8",
        )

    def get_paths(self) -> SharedVolumeStructure:
        """Paths of the layout, including worktree dirs that exist on disk."""
        data_dirs = []
        if self.root_path.is_dir():
            data_dirs = sorted(
                (d for d in self.root_path.glob("worktree-*") if d.is_dir() and _worktree_index(d)),
                key=_worktree_index,
            )
        return SharedVolumeStructure(
            root_path=str(self.root_path),
            insights_pool_path=str(self.insights_pool_path),
            decisions_pool_path=str(self.decisions_pool_path),
            locks_dir=str(self.locks_dir),
            worktree_data_dirs=[str(d) for d in data_dirs],
        )

    def validate(self, worktree_count: int | None = None) -> SharedVolumeValidation:
        """Report missing or unreadable files of the layout."""
        missing: list[str] = []
        errors: list[str] = []
        if not self.root_path.is_dir():
            return SharedVolumeValidation(valid=False, missing_files=[str(self.root_path)])

        for path, model in (
            (self.insights_pool_path, InsightsPool),
            (self.decisions_pool_path, DecisionsPool),
        ):
            if not path.exists():
                missing.append(str(path))
                continue
            try:
                model.model_validate(read_json(path))
            except (json.JSONDecodeError, ValueError) as e:
                errors.append(f"{path.name} is invalid: {e}")

        if not self.locks_dir.is_dir():
            missing.append(str(self.locks_dir))

        if worktree_count is None:
            indices = [_worktree_index(Path(d)) for d in self.get_paths().worktree_data_dirs]
        else:
            indices = list(range(1, worktree_count + 1))
        for index in indices:
            data_dir = self.worktree_data_dir(index)
            for filename in (LATEST_INSIGHT_FILE, METRICS_FILE, PROGRESS_FILE):
                if not (data_dir / filename).exists():
                    missing.append(str(data_dir / filename))

        return SharedVolumeValidation(
            valid=not missing and not errors,
            missing_files=missing,
            errors=errors,
        )

    def get_size(self) -> int:
        """Total bytes of regular files under the root."""
        if not self.root_path.is_dir():
            return 0
        return sum(p.stat().st_size for p in self.root_path.rglob("*") if p.is_file() and not p.is_symlink())

    def cleanup(self) -> None:
        """Remove the whole shared volume."""
        if self.root_path.is_symlink():
            raise ValidationError(f"SECURITY: shared volume root is a symlink: {self.root_path}")
        if not self.root_path.exists():
            return
        logger.info(f"Cleaning up shared volume: {self.root_path}")
        shutil.rmtree(self.root_path)

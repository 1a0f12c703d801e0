"""Tests for the shared volume layout."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from explorer.core.errors import ValidationError
from explorer.core.file_lock import read_json
from explorer.core.shared_volume import (
    LATEST_INSIGHT_FILE,
    METRICS_FILE,
    PROGRESS_FILE,
    SharedVolumeManager,
)


class TestInitialize:
    """Tests for SharedVolumeManager.initialize."""

    def test_creates_layout_for_each_worktree(self, tmp_path):
        volume = SharedVolumeManager(tmp_path / "shared", "exp-abc")
        structure = volume.initialize(2)

        root = tmp_path / "shared"
        assert (root / "README.md").exists()
        assert (root / "locks").is_dir()
        assert len(structure.worktree_data_dirs) == 2
        for index in (1, 2):
            data_dir = root / f"worktree-{index}"
            assert sorted(p.name for p in data_dir.iterdir()) == sorted(
                [LATEST_INSIGHT_FILE, METRICS_FILE, PROGRESS_FILE]
            )
            assert read_json(data_dir / METRICS_FILE)["worktree_index"] == index

    def test_pools_tagged_with_exploration_id(self, shared_volume):
        insights = read_json(shared_volume.insights_pool_path)
        decisions = read_json(shared_volume.decisions_pool_path)
        assert insights["exploration_id"] == "exp-test123"
        assert insights["insights"] == []
        assert insights["total_count"] == 0
        assert decisions["exploration_id"] == "exp-test123"
        assert decisions["decisions"] == []

    def test_readme_mentions_exploration(self, shared_volume):
        readme = (shared_volume.root_path / "README.md").read_text()
        assert "exp-test123" in readme
        assert "locks/" in readme

    def test_reinitialize_keeps_populated_pools(self, shared_volume):
        pool = read_json(shared_volume.insights_pool_path)
        pool["insights"] = [{"id": "insight-1"}]
        shared_volume.insights_pool_path.write_text(json.dumps(pool))

        shared_volume.initialize(3)

        assert read_json(shared_volume.insights_pool_path)["insights"] == [{"id": "insight-1"}]
        assert (shared_volume.root_path / "worktree-3" / PROGRESS_FILE).exists()

    def test_reinitialize_keeps_worktree_documents(self, shared_volume):
        metrics = shared_volume.worktree_data_dir(1) / METRICS_FILE
        metrics.write_text(json.dumps({"worktree_index": 1, "insights_published": 7}))
        shared_volume.initialize(2)
        assert read_json(metrics)["insights_published"] == 7

    @pytest.mark.parametrize("count", [0, -1])
    def test_invalid_count(self, tmp_path, count):
        with pytest.raises(ValidationError):
            SharedVolumeManager(tmp_path / "shared", "exp-abc").initialize(count)

    def test_symlinked_root_refused(self, tmp_path):
        target = tmp_path / "target"
        target.mkdir()
        link = tmp_path / "link"
        link.symlink_to(target)
        with pytest.raises(ValidationError, match="symlink"):
            SharedVolumeManager(link, "exp-abc").initialize(1)

    def test_worktree_data_dir_index(self, shared_volume):
        assert shared_volume.worktree_data_dir(4).name == "worktree-4"
        with pytest.raises(ValidationError):
            shared_volume.worktree_data_dir(0)


class TestInspection:
    def test_get_paths_sorted_numerically(self, tmp_path):
        volume = SharedVolumeManager(tmp_path / "shared", "exp-abc")
        volume.initialize(10)
        names = [Path(d).name for d in volume.get_paths().worktree_data_dirs]
        assert names[:3] == ["worktree-1", "worktree-2", "worktree-3"]
        assert names[-1] == "worktree-10"

    def test_validate_ok(self, shared_volume):
        result = shared_volume.validate(2)
        assert result.valid
        assert result.missing_files == []

    def test_validate_reports_missing_and_corrupt(self, shared_volume):
        (shared_volume.worktree_data_dir(2) / PROGRESS_FILE).unlink()
        shared_volume.decisions_pool_path.write_text("{not json")

        result = shared_volume.validate()
        assert not result.valid
        assert any(f.endswith(f"worktree-2/{PROGRESS_FILE}") for f in result.missing_files)
        assert any("decisions-pool.json" in e for e in result.errors)

    def test_validate_missing_root(self, tmp_path):
        assert not SharedVolumeManager(tmp_path / "nope", "exp-abc").validate().valid

    def test_size_and_cleanup(self, shared_volume):
        assert shared_volume.get_size() > 0
        shared_volume.cleanup()
        assert not shared_volume.root_path.exists()
        assert shared_volume.get_size() == 0
        shared_volume.cleanup()

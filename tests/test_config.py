"""Tests for engine and exploration configuration loading."""

from __future__ import annotations

from pathlib import Path

import pytest
import yaml

from explorer.core.config import (
    EngineConfig,
    build_exploration_config,
    load_engine_config,
    load_exploration_config_file,
)
from explorer.core.errors import ValidationError
from explorer.core.models import ExecutionMode


def _write_engine_config(repo: Path, data) -> None:
    config_dir = repo / ".explorer"
    config_dir.mkdir(parents=True, exist_ok=True)
    text = data if isinstance(data, str) else yaml.safe_dump(data)
    (config_dir / "config.yaml").write_text(text)


class TestEngineConfig:
    """Tests for load_engine_config."""

    def test_defaults_without_file(self, tmp_path):
        config = load_engine_config(tmp_path)
        assert config == EngineConfig()
        assert config.resolve_explorations_dir(tmp_path) == tmp_path / ".explorer" / "explorations"

    def test_values_and_nested_safety(self, tmp_path):
        _write_engine_config(
            tmp_path,
            {
                "explorations_dir": "/var/explorations",
                "git_timeout": 60,
                "agent_command": ["claude", "-p", "$TASK"],
                "safety": {"require_clean_tree": True, "min_disk_space_gb": 1.0},
            },
        )
        config = load_engine_config(tmp_path)
        assert config.git_timeout == 60
        assert config.agent_command == ["claude", "-p", "$TASK"]
        assert config.safety.require_clean_tree is True
        assert config.safety.check_docker is True
        assert config.resolve_explorations_dir(tmp_path) == Path("/var/explorations")

    def test_empty_file(self, tmp_path):
        _write_engine_config(tmp_path, "")
        assert load_engine_config(tmp_path) == EngineConfig()

    @pytest.mark.parametrize(
        "data,match",
        [
            ({"unknown_key": 1}, "Unknown config keys"),
            ({"safety": {"bogus": True}}, "Unknown config keys"),
            ({"safety": ["not", "a", "mapping"]}, "safety"),
            ({"port_range_start": 5000, "port_range_end": 4000}, "port range"),
            ("- just\n- a list\n", "expected a mapping"),
            ("key: [unclosed", "Invalid YAML"),
        ],
    )
    def test_invalid_files(self, tmp_path, data, match):
        _write_engine_config(tmp_path, data)
        with pytest.raises(ValidationError, match=match):
            load_engine_config(tmp_path)


class TestExplorationConfig:
    def test_none_values_fall_back_to_defaults(self):
        config = build_exploration_config({"branches": 4, "mode": "sequential", "docker_image": None})
        assert config.branches == 4
        assert config.mode == ExecutionMode.SEQUENTIAL
        assert config.docker_image == "node:20"

    def test_invalid_values_raise_engine_error(self):
        with pytest.raises(ValidationError, match="branches"):
            build_exploration_config({"branches": 20})

    def test_file_with_overrides(self, tmp_path):
        path = tmp_path / "exploration.yaml"
        path.write_text(yaml.safe_dump({"branches": 2, "strategies": ["a", "b"], "memory_limit": "2g"}))
        config = load_exploration_config_file(path, {"memory_limit": "8g", "branches": None})
        assert config.branches == 2
        assert config.strategies == ["a", "b"]
        assert config.memory_limit == "8g"

    def test_file_with_invalid_values(self, tmp_path):
        path = tmp_path / "exploration.yaml"
        path.write_text(yaml.safe_dump({"cpu_limit": "1000"}))
        with pytest.raises(ValidationError, match="cpu_limit"):
            load_exploration_config_file(path)

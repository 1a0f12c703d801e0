"""Configuration loading.

Engine settings come from ``<repo>/.explorer/config.yaml``; a missing file
means defaults. Per-exploration settings are an ``ExplorationConfig``, built
from CLI options or read from a YAML file given with ``--config``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

import pydantic
import yaml

from explorer.core.errors import ValidationError
from explorer.core.models import ExplorationConfig
from explorer.core.safety import SafetyConfig

logger = logging.getLogger(__name__)

CONFIG_DIR = ".explorer"
CONFIG_FILE = "config.yaml"


@dataclass
class EngineConfig:
    """Engine-wide settings shared by every exploration in a repository."""

    explorations_dir: str = ".explorer/explorations"
    git_timeout: int = 30
    docker_timeout: int = 120
    max_output_bytes: int = 10 * 1024 * 1024
    max_worktrees: int = 50
    lock_timeout: float = 5.0
    port_range_start: int = 3000
    port_range_end: int = 3100
    # Command each sandbox runs; empty keeps the image default
    agent_command: list[str] = field(default_factory=list)
    poll_interval: float = 5.0
    safety: SafetyConfig = field(default_factory=SafetyConfig)

    def resolve_explorations_dir(self, repo_path: Path) -> Path:
        path = Path(self.explorations_dir)
        return path if path.is_absolute() else Path(repo_path) / path


def _read_yaml_mapping(path: Path) -> dict[str, Any]:
    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ValidationError(f"Invalid YAML in {path}: {e}")
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError(f"Invalid config in {path}: expected a mapping, got {type(data).__name__}")
    return data


def _build_dataclass(cls: type, data: dict[str, Any], source: Path) -> Any:
    known = {f.name for f in fields(cls)}
    unknown = set(data) - known
    if unknown:
        raise ValidationError(f"Unknown config keys in {source}: {sorted(unknown)}")
    try:
        return cls(**data)
    except TypeError as e:
        raise ValidationError(f"Invalid config in {source}: {e}")


def load_engine_config(repo_path: Path) -> EngineConfig:
    """Load ``.explorer/config.yaml`` under ``repo_path``, or defaults."""
    config_path = Path(repo_path) / CONFIG_DIR / CONFIG_FILE
    if not config_path.exists():
        return EngineConfig()

    data = _read_yaml_mapping(config_path)
    safety_data = data.pop("safety", None) or {}
    if not isinstance(safety_data, dict):
        raise ValidationError(f"Invalid 'safety' in {config_path}: expected a mapping")

    config = _build_dataclass(EngineConfig, data, config_path)
    config.safety = _build_dataclass(SafetyConfig, safety_data, config_path)
    if not 0 < config.port_range_start < config.port_range_end <= 65535:
        raise ValidationError(
            f"Invalid port range in {config_path}: {config.port_range_start}-{config.port_range_end}"
        )
    logger.debug(f"Loaded engine config from {config_path}")
    return config


def build_exploration_config(data: dict[str, Any]) -> ExplorationConfig:
    """Build an ``ExplorationConfig``, raising the engine's ``ValidationError``.

    None values are dropped so unset CLI options fall back to defaults.
    """
    cleaned = {k: v for k, v in data.items() if v is not None}
    try:
        return ExplorationConfig.model_validate(cleaned)
    except pydantic.ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'config'}: {err['msg']}" for err in e.errors()
        )
        raise ValidationError(f"Invalid exploration config: {problems}") from e


def load_exploration_config_file(path: Path, overrides: dict[str, Any] | None = None) -> ExplorationConfig:
    """Read an ``ExplorationConfig`` from YAML, with ``overrides`` on top."""
    data = _read_yaml_mapping(Path(path))
    data.update({k: v for k, v in (overrides or {}).items() if v is not None})
    return build_exploration_config(data)

"""Project configuration: ``<kata_dir>/config.yaml`` plus environment overrides."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from kataflow.errors import ConfigError

logger = logging.getLogger(__name__)

CONFIG_FILENAME = "config.yaml"
DEFAULT_KATA_DIR = ".kata"

ENV_KATA_DIR = "KATAFLOW_DIR"
ENV_ADAPTER = "KATAFLOW_ADAPTER"
ENV_YOLO = "KATAFLOW_YOLO"

_TRUTHY = {"1", "true", "yes", "on"}
_FALSY = {"0", "false", "no", "off"}


class ClaudeSettings(BaseModel):
    binary: str = "claude"
    timeout_seconds: int = Field(default=300, ge=1)
    extra_args: list[str] = Field(default_factory=list)


class ExecutionSettings(BaseModel):
    adapter: str = "manual"
    claude: ClaudeSettings = Field(default_factory=ClaudeSettings)


class OrchestrationSettings(BaseModel):
    max_parallel_flavors: int = Field(default=3, ge=1)
    confidence_threshold: float = Field(default=0.7, ge=0.0, le=1.0)
    yolo: bool = False


class PathSettings(BaseModel):
    runs_dir: str = "runs"


class KataConfig(BaseModel):
    """Everything read from ``config.yaml``. Every section is optional."""

    execution: ExecutionSettings = Field(default_factory=ExecutionSettings)
    orchestration: OrchestrationSettings = Field(default_factory=OrchestrationSettings)
    paths: PathSettings = Field(default_factory=PathSettings)

    def runs_dir(self, kata_dir: str | Path) -> Path:
        runs = Path(self.paths.runs_dir)
        return runs if runs.is_absolute() else Path(kata_dir) / runs


def load_env_files() -> None:
    """Load ``.env`` from cwd, its parent, or the project root, whichever exists first."""
    project_root = Path(__file__).resolve().parent.parent.parent
    for dir_ in (Path.cwd(), Path.cwd().parent, project_root):
        env_file = dir_ / ".env"
        if env_file.is_file():
            load_dotenv(env_file)
            return
    load_dotenv()


def _env_flag(name: str) -> bool | None:
    raw = os.getenv(name, "").strip().lower()
    if raw in _TRUTHY:
        return True
    if raw in _FALSY:
        return False
    if raw:
        logger.warning("Ignoring unrecognized %s value %r", name, raw)
    return None


def resolve_kata_dir(explicit: str | Path | None = None) -> Path:
    if explicit:
        return Path(explicit)
    return Path(os.getenv(ENV_KATA_DIR, "").strip() or DEFAULT_KATA_DIR)


def load_config(kata_dir: str | Path) -> KataConfig:
    """Read ``config.yaml`` under *kata_dir* and apply environment overrides.

    A missing file yields the defaults; an unreadable or invalid one raises
    :class:`ConfigError`.
    """
    path = Path(kata_dir) / CONFIG_FILENAME
    raw: Any = {}
    if path.is_file():
        try:
            raw = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
        except (OSError, yaml.YAMLError) as exc:
            raise ConfigError(f"Could not read {path}: {exc}") from exc
        if not isinstance(raw, dict):
            raise ConfigError(f"{path} must contain a mapping, got {type(raw).__name__}")
    try:
        config = KataConfig.model_validate(raw)
    except PydanticValidationError as exc:
        raise ConfigError(f"Invalid configuration in {path}: {exc}") from exc

    adapter = os.getenv(ENV_ADAPTER, "").strip()
    if adapter:
        config.execution.adapter = adapter
    yolo = _env_flag(ENV_YOLO)
    if yolo is not None:
        config.orchestration.yolo = yolo
    return config


def write_default_config(kata_dir: str | Path) -> Path:
    """Create *kata_dir* with a default ``config.yaml``; existing files are kept."""
    kata_dir = Path(kata_dir)
    kata_dir.mkdir(parents=True, exist_ok=True)
    path = kata_dir / CONFIG_FILENAME
    if path.exists():
        logger.info("Config already exists at %s", path)
        return path
    payload = KataConfig().model_dump(mode="json")
    path.write_text(yaml.safe_dump(payload, sort_keys=False), encoding="utf-8")
    return path

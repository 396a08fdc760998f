"""
Configuration loader for CMDFORGE.
Merges built-in defaults with user-level and explicit config.yaml overrides.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml
from loguru import logger
from pydantic import BaseModel, Field, field_validator

from cmdforge.providers import Provider


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

class GenerationConfig(BaseModel):
    timeout_seconds: float = 120.0


class ExecutionConfig(BaseModel):
    timeout_seconds: float = 120.0
    working_dir: str = "~"
    scratch_dir: str | None = None
    interpreter: str | None = None
    interpreter_candidates: list[str] = Field(default_factory=lambda: ["python", "python3", "py"])

    @property
    def working_path(self) -> Path:
        return Path(self.working_dir).expanduser()

    @property
    def scratch_path(self) -> Path | None:
        return Path(self.scratch_dir).expanduser() if self.scratch_dir else None


class SafetyConfig(BaseModel):
    enforce: bool = True


class OllamaConfig(BaseModel):
    host: str = "http://localhost:11434"

    @property
    def generate_url(self) -> str:
        return f"{self.host.rstrip('/')}/api/generate"

    @property
    def tags_url(self) -> str:
        return f"{self.host.rstrip('/')}/api/tags"


class LoggingConfig(BaseModel):
    log_dir: str = "~/.cmdforge/logs"
    file_logging: bool = False


class CmdForgeConfig(BaseModel):
    default_provider: Provider = Provider.DEEPSEEK
    generation: GenerationConfig = Field(default_factory=GenerationConfig)
    execution: ExecutionConfig = Field(default_factory=ExecutionConfig)
    safety: SafetyConfig = Field(default_factory=SafetyConfig)
    ollama: OllamaConfig = Field(default_factory=OllamaConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @field_validator("default_provider", mode="before")
    @classmethod
    def _parse_provider(cls, value: Any) -> Provider:
        return Provider.parse(value)


# ---------------------------------------------------------------------------
# Loader
# ---------------------------------------------------------------------------

_DEFAULT_CONFIG_PATH = Path(__file__).parent / "config.yaml"
USER_CONFIG_PATH = Path.home() / ".cmdforge" / "config.yaml"


def _deep_merge(base: dict, override: dict) -> dict:
    """Recursively merge override into base."""
    merged = base.copy()
    for key, value in override.items():
        if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _read_yaml(path: Path) -> dict[str, Any]:
    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Config file must contain a mapping: {path}")
    return data


def _env_overrides() -> dict[str, Any]:
    overrides: dict[str, Any] = {}
    provider = os.environ.get("CMDFORGE_PROVIDER")
    if provider:
        overrides["default_provider"] = provider

    working_dir = os.environ.get("CMDFORGE_WORKING_DIR")
    if working_dir:
        overrides.setdefault("execution", {})["working_dir"] = working_dir

    timeout = os.environ.get("CMDFORGE_EXEC_TIMEOUT")
    if timeout:
        overrides.setdefault("execution", {})["timeout_seconds"] = timeout
    return overrides


def load_config(
    config_path: Path | None = None,
    user_config_path: Path | None = USER_CONFIG_PATH,
) -> CmdForgeConfig:
    """
    Load config by merging:
      1. Built-in defaults (cmdforge/config.yaml)
      2. User overrides (~/.cmdforge/config.yaml)
      3. An explicit config file
      4. Environment variable overrides
    """
    # 1. Built-in defaults
    base = _read_yaml(_DEFAULT_CONFIG_PATH)

    # 2. User overrides
    if user_config_path and user_config_path.exists():
        base = _deep_merge(base, _read_yaml(user_config_path))
        logger.debug(f"[CONFIG] Merged user config {user_config_path}")

    # 3. Explicit file
    if config_path:
        if not config_path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")
        base = _deep_merge(base, _read_yaml(config_path))
        logger.debug(f"[CONFIG] Merged {config_path}")

    # 4. Env
    base = _deep_merge(base, _env_overrides())

    return CmdForgeConfig(**base)

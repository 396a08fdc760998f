"""
Persistent user settings: selected provider, per-provider model, API keys.

Backed by ~/.cmdforge/settings.yaml. Environment variables win over the
file for credentials, so keys can stay out of disk entirely.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml
from loguru import logger

from cmdforge.providers import Provider

DEFAULT_SETTINGS_PATH = Path.home() / ".cmdforge" / "settings.yaml"

_DEFAULT_MODELS = {
    Provider.GROQ: "openai/gpt-oss-120b",
    Provider.OLLAMA: "llama3.2:3b",
}


class SettingsStore:
    """Credential + selection store used by the Router and Controller."""

    def __init__(
        self,
        path: Path | None = DEFAULT_SETTINGS_PATH,
        default_provider: Provider = Provider.DEEPSEEK,
    ):
        self.path = path
        self.default_provider = default_provider
        self._data: dict[str, Any] = self._load()

    # -- credentials --------------------------------------------------------

    def get_credential(self, provider: Provider | str) -> str:
        """Return the API key for a provider, or '' when none is set."""
        provider = Provider.parse(provider)
        env_name = provider.info.api_key_env
        if env_name and os.environ.get(env_name, "").strip():
            return os.environ[env_name].strip()
        return str(self._section("api_keys").get(provider.value, "") or "")

    def set_credential(self, provider: Provider | str, value: str) -> None:
        provider = Provider.parse(provider)
        self._data["api_keys"] = {**self._section("api_keys"), provider.value: value.strip()}
        self._save()

    # -- provider / model selection -----------------------------------------

    def get_selected_provider(self) -> Provider:
        value = self._data.get("selected_provider")
        if value:
            try:
                return Provider.parse(value)
            except ValueError:
                logger.warning(f"[SETTINGS] Ignoring unknown provider '{value}'")
        return self.default_provider

    def set_selected_provider(self, provider: Provider | str) -> None:
        self._data["selected_provider"] = Provider.parse(provider).value
        self._save()

    def get_selected_model(self, provider: Provider | str) -> str:
        provider = Provider.parse(provider)
        stored = self._section("models").get(provider.value)
        if stored:
            return str(stored)
        return _DEFAULT_MODELS.get(provider, provider.info.default_model)

    def set_selected_model(self, provider: Provider | str, model: str) -> None:
        provider = Provider.parse(provider)
        self._data["models"] = {**self._section("models"), provider.value: model}
        self._save()

    # -- persistence --------------------------------------------------------

    def _section(self, name: str) -> dict[str, Any]:
        """A mapping section of the file; an empty or malformed one reads as {}."""
        value = self._data.get(name)
        return value if isinstance(value, dict) else {}

    def _load(self) -> dict[str, Any]:
        if not self.path or not self.path.exists():
            return {}
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            logger.warning(f"[SETTINGS] Could not read {self.path}: {e}")
            return {}
        return data if isinstance(data, dict) else {}

    def _save(self) -> None:
        if not self.path:
            return
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            # Holds API keys: owner read/write only, including files created earlier
            fd = os.open(self.path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                yaml.safe_dump(self._data, f, sort_keys=True)
            os.chmod(self.path, 0o600)
        except OSError as e:
            logger.warning(f"[SETTINGS] Could not save {self.path}: {e}")

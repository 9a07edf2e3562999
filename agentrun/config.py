import os
from pathlib import Path
from typing import Dict, Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError

# Load .env from current directory so API keys and base URLs are set automatically.
load_dotenv()

APP_NAME = "agentrun"

_KNOWN_API_KEY_ENV_VARS = {
    "anthropic": "ANTHROPIC_API_KEY",
    "openai": "OPENAI_API_KEY",
}


class ConfigError(RuntimeError):
    """Raised when the global config file cannot be read or parsed."""


class Settings(BaseModel):
    """Runtime configuration loaded from environment variables."""

    config_dir: Path
    data_dir: Path
    default_timeout: int = 120
    log_level: str = "WARNING"


def _xdg_dir(env_name: str, fallback: Path) -> Path:
    base = os.getenv(env_name) or ""
    if base:
        return Path(base) / APP_NAME
    return fallback / APP_NAME


def get_settings() -> Settings:
    """
    Return Settings built from the *current* environment.

    Tests point XDG_CONFIG_HOME / XDG_DATA_HOME at temporary directories via
    monkeypatch, so we read the environment on each call instead of caching.
    """
    home = Path.home()
    timeout_raw = os.getenv("AGENTRUN_TIMEOUT") or ""
    try:
        default_timeout = int(timeout_raw) if timeout_raw else 120
    except ValueError:
        default_timeout = 120

    return Settings(
        config_dir=_xdg_dir("XDG_CONFIG_HOME", home / ".config"),
        data_dir=_xdg_dir("XDG_DATA_HOME", home / ".local" / "share"),
        default_timeout=default_timeout,
        log_level=(os.getenv("AGENTRUN_LOG_LEVEL") or "WARNING").upper(),
    )


class ProviderConfig(BaseModel):
    """Per-provider settings from config.yaml."""

    api_key: str = ""
    base_url: str = ""


class GlobalConfig(BaseModel):
    """Parsed <config_dir>/config.yaml."""

    providers: Dict[str, ProviderConfig] = Field(default_factory=dict)

    def resolve_api_key(self, provider_name: str) -> str:
        """Resolution order: env var > config file > empty string."""
        value = os.getenv(api_key_env_var(provider_name)) or ""
        if value:
            return value
        pc = self.providers.get(provider_name)
        return pc.api_key if pc else ""

    def resolve_base_url(self, provider_name: str) -> str:
        """Resolution order: AGENTRUN_<NAME>_BASE_URL > config file > empty string."""
        value = os.getenv(f"AGENTRUN_{provider_name.upper()}_BASE_URL") or ""
        if value:
            return value
        pc = self.providers.get(provider_name)
        return pc.base_url if pc else ""


def api_key_env_var(provider_name: str) -> str:
    return _KNOWN_API_KEY_ENV_VARS.get(provider_name, f"{provider_name.upper()}_API_KEY")


def global_config_path(settings: Optional[Settings] = None) -> Path:
    settings = settings or get_settings()
    return settings.config_dir / "config.yaml"


def load_global_config() -> GlobalConfig:
    """
    Read config.yaml from the config directory.

    A missing file is not an error: it yields an empty GlobalConfig.
    """
    path = global_config_path()
    if not path.exists():
        return GlobalConfig()

    try:
        with path.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as exc:
        raise ConfigError(f"failed to read config file: {exc}") from exc

    if data is None:
        return GlobalConfig()
    if not isinstance(data, dict):
        raise ConfigError("failed to parse config file: top level must be a mapping")

    try:
        return GlobalConfig(providers=data.get("providers") or {})
    except ValidationError as exc:
        raise ConfigError(f"failed to parse config file: {exc}") from exc


GLOBAL_CONFIG_TEMPLATE = """\
# agentrun global configuration
# API keys and base URL overrides for LLM providers.
# Environment variables take precedence over values set here.
#
#   API key:  <PROVIDER_UPPER>_API_KEY            (e.g. ANTHROPIC_API_KEY)
#   Base URL: AGENTRUN_<PROVIDER_UPPER>_BASE_URL  (e.g. AGENTRUN_OLLAMA_BASE_URL)

providers: {}
#  anthropic:
#    api_key: ""
#    base_url: ""
#  openai:
#    api_key: ""
#  ollama:
#    base_url: "http://localhost:11434"
"""

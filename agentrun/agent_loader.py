from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List

import yaml
from pydantic import ValidationError

from .config import get_settings
from .models import AgentConfig

logger = logging.getLogger("agentrun")


class AgentLoadError(RuntimeError):
    """Raised when an agent definition cannot be found, parsed or validated."""


def agents_dir() -> Path:
    """Agent YAML files live in <config_dir>/agents/<name>.yaml."""
    return get_settings().config_dir / "agents"


def agent_path(name: str) -> Path:
    return agents_dir() / f"{name}.yaml"


def _read_agent_yaml(name: str) -> Dict[str, Any]:
    path = agent_path(name)
    if not path.exists():
        raise AgentLoadError(f"agent config not found: {name}")

    try:
        with path.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except OSError as exc:
        raise AgentLoadError(f"failed to read agent config {name!r}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise AgentLoadError(f"failed to parse agent config {name!r}: {exc}") from exc

    if not isinstance(data, dict):
        raise AgentLoadError(f"failed to parse agent config {name!r}: YAML must deserialize to a mapping")

    return data


def _format_validation_error(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()))
        parts.append(f"{loc}: {err.get('msg')}" if loc else str(err.get("msg")))
    return "; ".join(parts)


def parse_agent(raw: Dict[str, Any]) -> AgentConfig:
    """Validate a raw mapping into an AgentConfig.

    Required fields are checked name first, then model, before any other
    constraint so the error names the first missing field.
    """
    for key in ("name", "model"):
        if not str(raw.get(key) or "").strip():
            raise AgentLoadError(f"agent config missing required field: {key}")

    try:
        return AgentConfig.model_validate(raw)
    except ValidationError as exc:
        raise AgentLoadError(f"invalid agent config: {_format_validation_error(exc)}") from exc


def load_agent(name: str) -> AgentConfig:
    """Load and validate an agent definition by name (file stem)."""
    return parse_agent(_read_agent_yaml(name))


def list_agents() -> List[AgentConfig]:
    """
    Return every valid agent definition, sorted by name.

    Invalid files are skipped with a warning; a missing agents directory
    yields an empty list.
    """
    directory = agents_dir()
    if not directory.exists():
        return []

    agents: List[AgentConfig] = []
    for path in sorted(directory.glob("*.yaml")):
        if not path.is_file():
            continue
        try:
            agents.append(load_agent(path.stem))
        except AgentLoadError as exc:
            logger.warning("skipping agent file=%s: %s", path, exc)
    return sorted(agents, key=lambda a: a.name)


def scaffold(name: str) -> str:
    """Return a commented YAML template for a new agent definition."""
    return f"""\
name: {name}
description: ""

# Full provider/model, e.g. anthropic/claude-sonnet-4-20250514
model: provider/model-name

# Agent persona (optional)
# system_prompt: ""

# Default skill file, relative to the config directory (optional)
# skill: ""

# Context files: glob patterns resolved from workdir or cwd (optional)
# files: []

# Working directory (optional)
# workdir: ""

# Agents this agent may delegate to (optional)
# sub_agents: []

# sub_agents_config:
#   max_depth: 3
#   parallel: true
#   timeout: 120

# memory:
#   enabled: false
#   path: ""
#   last_n: 0
#   max_entries: 0

# params:
#   temperature: 0.3
#   max_tokens: 4096
"""

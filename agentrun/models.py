"""
Data models for agent definitions.

Defines MemoryPolicy, SubAgentsPolicy, ModelParams and AgentConfig.
Agent YAML files are coerced into these by `agentrun.agent_loader`.
"""

from __future__ import annotations

from typing import List

from pydantic import BaseModel, Field


class MemoryPolicy(BaseModel):
    """Per-agent memory log policy."""

    enabled: bool = False
    path: str = ""
    # Entries preloaded into the system prompt; 0 means the whole log.
    last_n: int = Field(default=0, ge=0)
    # Soft warning threshold at run time, and the GC trim target when last_n is 0.
    max_entries: int = Field(default=0, ge=0)


class SubAgentsPolicy(BaseModel):
    """Delegation policy: recursion bound, execution mode, per-call timeout (seconds)."""

    max_depth: int = Field(default=3, ge=0, le=5)
    parallel: bool = True
    timeout: int = Field(default=0, ge=0)


class ModelParams(BaseModel):
    """Sampling overrides; zero values mean provider defaults."""

    temperature: float = 0.0
    max_tokens: int = Field(default=0, ge=0)


class AgentConfig(BaseModel):
    """A parsed agent definition."""

    name: str
    model: str
    description: str = ""
    system_prompt: str = ""
    skill: str = ""
    files: List[str] = Field(default_factory=list)
    workdir: str = ""
    sub_agents: List[str] = Field(default_factory=list)
    sub_agents_config: SubAgentsPolicy = Field(default_factory=SubAgentsPolicy)
    memory: MemoryPolicy = Field(default_factory=MemoryPolicy)
    params: ModelParams = Field(default_factory=ModelParams)

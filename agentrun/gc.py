"""
Memory garbage collection: analyze an agent's memory log with a model, then
trim it to the configured retention target.

GC never appends to the log it analyzes. Unlike a normal run, memory I/O
failures here are fatal.
"""

from __future__ import annotations

import asyncio
import logging
import sys
from typing import List, Optional, TextIO

from . import memory
from .agent_loader import AgentLoadError, list_agents, load_agent
from .config import ConfigError, api_key_env_var, load_global_config
from .engine import ExitError, map_provider_error
from .models import AgentConfig
from .providers import (
    ErrorCategory,
    Message,
    ProviderError,
    Request,
    build_provider,
    parse_model,
    requires_api_key,
)

logger = logging.getLogger("agentrun")

GC_TEMPERATURE = 0.3
GC_MAX_TOKENS = 4096
GC_TIMEOUT_SECONDS = 120

GC_PATTERN_PROMPT = """\
You are a memory analyst for an AI agent. You will receive a log of the agent's past tasks and results. \
Analyze the entries and provide a structured report.

Your report MUST contain exactly these three sections with these exact headings:

## Patterns Found
Identify recurring themes, common task types, or behavioral patterns across the entries. \
If no patterns exist, state "No clear patterns detected."

## Repeated Work
Identify any tasks that appear to be duplicated or that the agent has done multiple times with the same \
or similar inputs. If no repetition is found, state "No repeated work detected."

## Recommendations
Based on the patterns and repetitions found, suggest concrete actions the user could take to improve \
the agent's configuration, skill, or workflow. If no recommendations apply, state "No specific recommendations."

Be concise. Reference specific entries by their timestamps when relevant."""


def trim_target(agent: AgentConfig) -> int:
    """last_n if set, else max_entries if set, else 0 (no target)."""
    if agent.memory.last_n > 0:
        return agent.memory.last_n
    if agent.memory.max_entries > 0:
        return agent.memory.max_entries
    return 0


async def run_gc(
    agent_name: str,
    dry_run: bool = False,
    model_override: str = "",
    stdout: Optional[TextIO] = None,
    stderr: Optional[TextIO] = None,
) -> int:
    stdout = stdout or sys.stdout
    stderr = stderr or sys.stderr

    try:
        agent = load_agent(agent_name)
    except AgentLoadError as exc:
        raise ExitError(2, str(exc)) from exc

    if not agent.memory.enabled:
        print(f'Warning: agent "{agent_name}" does not have memory enabled. Skipping.', file=stderr)
        return 0

    path = memory.file_path(agent_name, agent.memory.path)
    try:
        entries = memory.load_entries(path, 0)
        count = memory.count_entries(path) if entries else 0
    except (OSError, ValueError) as exc:
        raise ExitError(1, f"failed to read memory: {exc}") from exc

    if not entries:
        print(f'No memory entries for agent "{agent_name}". Nothing to do.', file=stdout)
        return 0

    print(f"Agent: {agent_name}\nEntries: {count}", file=stdout)

    try:
        provider_name, model_name = parse_model(model_override or agent.model)
    except ValueError as exc:
        raise ExitError(1, str(exc)) from exc

    try:
        global_config = load_global_config()
    except ConfigError as exc:
        raise ExitError(2, str(exc)) from exc

    api_key = global_config.resolve_api_key(provider_name)
    if requires_api_key(provider_name) and not api_key:
        raise ExitError(
            3,
            f'API key for provider "{provider_name}" is not configured '
            f"(set {api_key_env_var(provider_name)} or add to config)",
        )

    try:
        provider = build_provider(provider_name, api_key, global_config.resolve_base_url(provider_name))
    except ValueError as exc:
        raise ExitError(1, str(exc)) from exc

    request = Request(
        model=model_name,
        system=GC_PATTERN_PROMPT,
        messages=[Message(role="user", content=entries)],
        temperature=GC_TEMPERATURE,
        max_tokens=GC_MAX_TOKENS,
    )

    logger.info("gc analyze agent=%s entries=%d provider=%s", agent_name, count, provider_name)
    try:
        response = await asyncio.wait_for(provider.send(request), timeout=GC_TIMEOUT_SECONDS)
    except asyncio.TimeoutError as exc:
        err = ProviderError(ErrorCategory.TIMEOUT, f"request timed out after {GC_TIMEOUT_SECONDS}s")
        raise map_provider_error(err) from exc
    except ProviderError as exc:
        raise map_provider_error(exc) from exc

    print(f"--- Analysis ---\n{response.content}", file=stdout)

    keep = trim_target(agent)
    if keep == 0:
        return 0

    if dry_run:
        print(f"Dry run: would trim to {keep} entries", file=stdout)
        return 0

    try:
        removed = memory.trim_entries(path, keep)
    except (OSError, ValueError) as exc:
        raise ExitError(1, f"failed to trim memory: {exc}") from exc

    logger.info("gc trim agent=%s removed=%d kept=%d", agent_name, removed, count - removed)
    if removed > 0:
        print(f"Trimmed {removed} entries (kept {count - removed}).", file=stdout)
    else:
        print(f"Memory is within limit ({count} entries, keep {keep}).", file=stdout)
    return 0


async def run_gc_all(
    dry_run: bool = False,
    model_override: str = "",
    stdout: Optional[TextIO] = None,
    stderr: Optional[TextIO] = None,
) -> int:
    """GC every memory-enabled agent in turn; one failure does not stop the rest."""
    stdout = stdout or sys.stdout
    stderr = stderr or sys.stderr

    eligible = [a for a in list_agents() if a.memory.enabled]
    if not eligible:
        print("No agents with memory enabled.", file=stdout)
        return 0

    failed: List[str] = []
    for i, agent in enumerate(eligible):
        if i > 0:
            print(file=stdout)
        print(f"=== {agent.name} ===", file=stdout)
        try:
            await run_gc(agent.name, dry_run=dry_run, model_override=model_override, stdout=stdout, stderr=stderr)
        except ExitError as exc:
            print(f'Error: gc failed for agent "{agent.name}": {exc.message}', file=stderr)
            failed.append(agent.name)

    if failed:
        raise ExitError(1, f"gc failed for {len(failed)} agent(s): {', '.join(failed)}")
    return 0

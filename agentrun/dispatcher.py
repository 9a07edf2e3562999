"""
Sub-agent dispatcher: executes the `call_agent` tool calls emitted by a model turn.

Every outcome, success or failure, becomes a ToolResult the parent model can
read. A failing sub-agent never aborts its parent conversation.
"""

from __future__ import annotations

import asyncio
import copy
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, TextIO

from jsonschema import Draft7Validator

from . import memory, resolve
from .agent_loader import AgentLoadError, load_agent
from .config import GlobalConfig, api_key_env_var, get_settings
from .providers import (
    Message,
    Request,
    ToolCall,
    ToolResult,
    ToolSpec,
    build_provider,
    parse_model,
    requires_api_key,
)

logger = logging.getLogger("agentrun")

CALL_AGENT_TOOL = "call_agent"
DEFAULT_MAX_DEPTH = 3
TASK_PREVIEW_CHARS = 80

_ARGUMENT_FIELDS = ("agent", "task", "context")

_ARGUMENTS_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "agent": {
            "type": "string",
            "minLength": 1,
            "description": "Name of the sub-agent to invoke",
        },
        "task": {
            "type": "string",
            "minLength": 1,
            "description": "What you need the sub-agent to do",
        },
        "context": {
            "type": "string",
            "description": "Additional context from your conversation to pass along",
        },
    },
    "required": ["agent", "task"],
}

_ARGUMENTS_VALIDATOR = Draft7Validator(_ARGUMENTS_SCHEMA)


def call_agent_tool(allowed_agents: Sequence[str]) -> ToolSpec:
    """The delegation tool offered to a model, restricted to `allowed_agents`."""
    agent_list = ", ".join(allowed_agents)
    schema = copy.deepcopy(_ARGUMENTS_SCHEMA)
    schema["properties"]["agent"]["enum"] = list(allowed_agents)
    schema["properties"]["agent"]["description"] = f"Name of the sub-agent to invoke (must be one of: {agent_list})"
    return ToolSpec(
        name=CALL_AGENT_TOOL,
        description=(
            "Delegate a task to a sub-agent. The sub-agent runs independently with its own "
            "context and returns only its final result. Available agents: " + agent_list
        ),
        parameters=schema,
    )


@dataclass
class DispatchOptions:
    """Delegation policy and recursion context for one conversation."""

    allowed_agents: List[str] = field(default_factory=list)
    depth: int = 0
    max_depth: int = DEFAULT_MAX_DEPTH
    timeout: int = 0  # seconds per sub-call; 0 means bounded only by the caller
    parallel: bool = True
    global_config: Optional[GlobalConfig] = None
    verbose: bool = False
    stderr: Optional[TextIO] = None

    def say(self, line: str) -> None:
        if self.verbose and self.stderr is not None:
            print(line, file=self.stderr)


class _SubAgentFailure(Exception):
    """Internal: a sub-agent could not be prepared or run."""


def _argument_error(arguments: Dict[str, Any]) -> Optional[str]:
    problems: Dict[str, str] = {}
    for err in _ARGUMENTS_VALIDATOR.iter_errors(arguments):
        if err.validator == "required":
            for name in err.validator_value:
                if name not in arguments:
                    problems.setdefault(name, f'"{name}" argument is required')
        elif err.path:
            name = str(err.path[0])
            if err.validator == "minLength":
                problems.setdefault(name, f'"{name}" argument is required')
            else:
                problems.setdefault(name, f'"{name}" argument must be a string')
    for name in _ARGUMENT_FIELDS:
        if name in problems:
            return problems[name]
    return None


def _error_result(call: ToolCall, message: str) -> ToolResult:
    return ToolResult(call_id=call.id, content=f"call_agent error: {message}", is_error=True)


def _failure_result(call: ToolCall, agent_name: str, reason: str, options: DispatchOptions) -> ToolResult:
    options.say(f'[sub-agent] "{agent_name}" failed: {reason}')
    logger.info("sub-agent failed agent=%s depth=%d reason=%s", agent_name, options.depth + 1, reason)
    return ToolResult(
        call_id=call.id,
        content=f'Error: sub-agent "{agent_name}" failed - {reason}. You may retry or proceed without this result.',
        is_error=True,
    )


def _prepare(agent_name: str, task: str, task_context: str, options: DispatchOptions):
    """Load the target agent and build its provider, request and nested options."""
    try:
        agent = load_agent(agent_name)
    except AgentLoadError as exc:
        raise _SubAgentFailure(f'failed to load agent "{agent_name}": {exc}') from exc

    try:
        provider_name, model_name = parse_model(agent.model)
    except ValueError as exc:
        raise _SubAgentFailure(f'invalid model for agent "{agent_name}": {exc}') from exc

    workdir = resolve.workdir("", agent.workdir)
    files = resolve.resolve_files(agent.files, workdir)
    try:
        skill = resolve.load_skill(agent.skill, get_settings().config_dir)
    except resolve.ResolveError as exc:
        raise _SubAgentFailure(f'failed to load skill for agent "{agent_name}": {exc}') from exc

    system_prompt = resolve.build_system_prompt(agent.system_prompt, skill, files)

    if agent.memory.enabled:
        try:
            entries = memory.load_entries(memory.file_path(agent_name, agent.memory.path), agent.memory.last_n)
        except Exception as exc:
            options.say(f'[sub-agent] Warning: failed to load memory for "{agent_name}": {exc}')
            logger.warning("memory load failed agent=%s: %s", agent_name, exc)
        else:
            system_prompt = resolve.with_memory(system_prompt, entries)

    global_config = options.global_config or GlobalConfig()
    api_key = global_config.resolve_api_key(provider_name)
    if requires_api_key(provider_name) and not api_key:
        raise _SubAgentFailure(
            f'API key for provider "{provider_name}" is not configured '
            f"(set {api_key_env_var(provider_name)} or add to config)"
        )

    try:
        provider = build_provider(provider_name, api_key, global_config.resolve_base_url(provider_name))
    except ValueError as exc:
        raise _SubAgentFailure(f'failed to create provider for agent "{agent_name}": {exc}') from exc

    user_message = f"Task: {task}"
    if task_context.strip():
        user_message += f"\n\nContext:\n{task_context}"

    request = Request(
        model=model_name,
        system=system_prompt,
        messages=[Message(role="user", content=user_message)],
        temperature=agent.params.temperature,
        max_tokens=agent.params.max_tokens,
    )

    nested = DispatchOptions(
        allowed_agents=list(agent.sub_agents),
        depth=options.depth + 1,
        max_depth=options.max_depth,
        timeout=agent.sub_agents_config.timeout or options.timeout,
        parallel=agent.sub_agents_config.parallel,
        global_config=options.global_config,
        verbose=options.verbose,
        stderr=options.stderr,
    )
    if agent.sub_agents and nested.depth < nested.max_depth:
        request.tools = [call_agent_tool(agent.sub_agents)]

    return agent, provider, request, nested, user_message


async def execute_call_agent(call: ToolCall, options: DispatchOptions) -> ToolResult:
    """
    Run one delegation and return its result.

    Never raises for sub-agent problems; only cancellation of the caller
    propagates.
    """
    # Imported here: engine imports this module at load time.
    from .engine import run_conversation

    problem = _argument_error(call.arguments)
    if problem:
        return _error_result(call, problem)

    agent_name = call.arguments["agent"]
    task = call.arguments["task"]
    task_context = call.arguments.get("context") or ""

    if agent_name not in options.allowed_agents:
        return _error_result(call, f'agent "{agent_name}" is not in this agent\'s sub_agents list')
    if options.depth >= options.max_depth:
        return _error_result(call, f"maximum sub-agent depth ({options.max_depth}) reached")

    preview = task if len(task) <= TASK_PREVIEW_CHARS else task[:TASK_PREVIEW_CHARS] + "..."
    options.say(f'[sub-agent] Calling "{agent_name}" (depth {options.depth + 1}) with task: {preview}')
    logger.info("sub-agent call agent=%s depth=%d", agent_name, options.depth + 1)
    start = time.monotonic()

    try:
        agent, provider, request, nested, user_message = await asyncio.to_thread(
            _prepare, agent_name, task, task_context, options
        )
    except Exception as exc:
        return _failure_result(call, agent_name, str(exc), options)

    try:
        if options.timeout > 0:
            result = await asyncio.wait_for(run_conversation(provider, request, nested), timeout=options.timeout)
        else:
            result = await run_conversation(provider, request, nested)
    except asyncio.TimeoutError:
        return _failure_result(call, agent_name, f"timed out after {options.timeout}s", options)
    except Exception as exc:
        return _failure_result(call, agent_name, str(exc), options)

    content = result.response.content

    if agent.memory.enabled:
        try:
            memory.append_entry(memory.file_path(agent_name, agent.memory.path), user_message, content)
        except Exception as exc:
            options.say(f'[sub-agent] Warning: failed to save memory for "{agent_name}": {exc}')
            logger.warning("memory append failed agent=%s: %s", agent_name, exc)

    duration_ms = int((time.monotonic() - start) * 1000)
    options.say(f'[sub-agent] "{agent_name}" completed in {duration_ms}ms ({len(content)} chars returned)')
    logger.info("sub-agent done agent=%s duration_ms=%d chars=%d", agent_name, duration_ms, len(content))
    return ToolResult(call_id=call.id, content=content, is_error=False)


async def _execute_one(call: ToolCall, options: DispatchOptions) -> ToolResult:
    if call.name != CALL_AGENT_TOOL:
        return ToolResult(call_id=call.id, content=f'Unknown tool: "{call.name}"', is_error=True)
    return await execute_call_agent(call, options)


async def execute_tool_calls(calls: Sequence[ToolCall], options: DispatchOptions) -> List[ToolResult]:
    """
    Execute all tool calls of one turn.

    Results are returned in invocation order regardless of completion order.
    """
    if len(calls) <= 1 or not options.parallel:
        return [await _execute_one(call, options) for call in calls]
    return list(await asyncio.gather(*(_execute_one(call, options) for call in calls)))

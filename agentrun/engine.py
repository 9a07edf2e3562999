"""
Conversation engine.

`run_conversation` drives the turn loop for one agent at any depth;
`run_agent` is the full top-level run flow behind `agentrun run`.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
import time
from dataclasses import dataclass
from typing import List, Optional, TextIO

from . import memory, resolve
from .agent_loader import AgentLoadError, load_agent
from .config import ConfigError, api_key_env_var, get_settings, load_global_config
from .dispatcher import DEFAULT_MAX_DEPTH, DispatchOptions, call_agent_tool, execute_tool_calls
from .models import AgentConfig
from .providers import (
    BaseProvider,
    ErrorCategory,
    Message,
    ProviderError,
    Request,
    Response,
    build_provider,
    parse_model,
    requires_api_key,
)

logger = logging.getLogger("agentrun")

MAX_CONVERSATION_TURNS = 50
DEFAULT_USER_MESSAGE = "Execute the task described in your instructions."


class MaxTurnsExceeded(RuntimeError):
    def __init__(self, turns: int = MAX_CONVERSATION_TURNS):
        self.turns = turns
        super().__init__(f"agent exceeded maximum conversation turns ({turns})")


class ExitError(Exception):
    """An error carrying the process exit status."""

    def __init__(self, code: int, message: str):
        self.code = code
        self.message = message
        super().__init__(message)


def map_provider_error(exc: ProviderError) -> ExitError:
    """Operational failures exit 3, provider-rejected requests exit 1."""
    if exc.category.transient:
        return ExitError(3, str(exc))
    return ExitError(1, str(exc))


def effective_max_depth(agent: AgentConfig) -> int:
    depth = agent.sub_agents_config.max_depth
    if 1 <= depth <= 5:
        return depth
    return DEFAULT_MAX_DEPTH


@dataclass
class ConversationResult:
    response: Response
    input_tokens: int = 0
    output_tokens: int = 0
    tool_calls: int = 0
    turns: int = 0


async def run_conversation(provider: BaseProvider, request: Request, options: DispatchOptions) -> ConversationResult:
    """
    Send, inspect, dispatch, repeat.

    A response without tool calls is final, as is any response to a request
    that offered no tools. Every tool call of turn k gets exactly one result,
    in invocation order, before turn k+1 is sent. Provider errors propagate.
    """
    result = ConversationResult(response=Response(content=""))
    top_level = options.depth == 0

    for turn in range(1, MAX_CONVERSATION_TURNS + 1):
        if top_level and request.tools:
            pending = sum(len(m.tool_results) for m in request.messages if m.role == "tool")
            options.say(
                f"[turn {turn}] Sending request ({len(request.messages)} messages, {pending} tool calls pending)"
            )

        response = await provider.send(request)
        result.response = response
        result.turns = turn
        result.input_tokens += response.input_tokens
        result.output_tokens += response.output_tokens

        if top_level and request.tools:
            options.say(f"[turn {turn}] Received response: {response.stop_reason} ({len(response.tool_calls)} tool calls)")
        logger.debug(
            "turn=%d depth=%d stop=%s tool_calls=%d", turn, options.depth, response.stop_reason, len(response.tool_calls)
        )

        if not response.tool_calls or not request.tools:
            return result

        request.messages.append(Message(role="assistant", content=response.content, tool_calls=list(response.tool_calls)))
        results = await execute_tool_calls(response.tool_calls, options)
        result.tool_calls += len(response.tool_calls)
        request.messages.append(Message(role="tool", tool_results=results))

    raise MaxTurnsExceeded(MAX_CONVERSATION_TURNS)


@dataclass
class RunOptions:
    """Per-invocation overrides for `run_agent`."""

    model: str = ""
    skill: str = ""
    workdir: str = ""
    timeout: int = 0  # 0 means Settings.default_timeout
    dry_run: bool = False
    verbose: bool = False
    json_output: bool = False
    stdin: Optional[str] = None  # None means read piped stdin


def _print_dry_run(
    out: TextIO,
    agent: AgentConfig,
    provider_name: str,
    model_name: str,
    workdir: str,
    timeout: int,
    system_prompt: str,
    skill: str,
    files: List[resolve.FileContent],
    stdin_content: str,
    memory_entries: str,
) -> None:
    def section(title: str, body: str) -> None:
        out.write(f"\n--- {title} ---\n{body or '(none)'}\n")

    out.write("=== Dry Run ===\n\n")
    out.write(f"Model:    {provider_name}/{model_name}\n")
    out.write(f"Workdir:  {workdir}\n")
    out.write(f"Timeout:  {timeout}s\n")
    out.write(f"Params:   temperature={agent.params.temperature:g}, max_tokens={agent.params.max_tokens}\n")

    out.write(f"\n--- System Prompt ---\n{system_prompt}\n")
    section("Skill", skill)
    section(f"Files ({len(files)})", "\n".join(f.path for f in files))
    section("Stdin", stdin_content if stdin_content.strip() else "")
    if agent.memory.enabled:
        section("Memory", memory_entries)

    if agent.sub_agents:
        policy = agent.sub_agents_config
        body = "\n".join(
            [
                ", ".join(agent.sub_agents),
                f"Max Depth: {effective_max_depth(agent)}",
                f"Parallel:  {'yes' if policy.parallel else 'no'}",
                f"Timeout:   {policy.timeout}s",
            ]
        )
        section("Sub-Agents", body)
    else:
        section("Sub-Agents", "")


def _load_memory(agent: AgentConfig, stderr: TextIO) -> str:
    """Preload memory for the system prompt. Best-effort: failures only warn."""
    try:
        path = memory.file_path(agent.name, agent.memory.path)
        entries = memory.load_entries(path, agent.memory.last_n)
        if agent.memory.max_entries > 0:
            count = memory.count_entries(path)
            if count >= agent.memory.max_entries:
                print(
                    f'Warning: agent "{agent.name}" memory has {count} entries '
                    f"(max_entries: {agent.memory.max_entries}). Run 'agentrun gc {agent.name}' to trim.",
                    file=stderr,
                )
        return entries
    except Exception as exc:
        logger.warning("memory load failed agent=%s: %s", agent.name, exc)
        return ""


async def run_agent(
    name: str,
    options: Optional[RunOptions] = None,
    stdout: Optional[TextIO] = None,
    stderr: Optional[TextIO] = None,
) -> int:
    """
    Resolve an agent's full context, run its conversation and print the answer.

    Returns 0 on success; every failure raises ExitError with the exit status.
    """
    options = options or RunOptions()
    stdout = stdout or sys.stdout
    stderr = stderr or sys.stderr
    settings = get_settings()

    try:
        agent = load_agent(name)
    except AgentLoadError as exc:
        raise ExitError(2, str(exc)) from exc

    if options.model:
        agent.model = options.model
    if options.skill:
        agent.skill = options.skill

    try:
        provider_name, model_name = parse_model(agent.model)
    except ValueError as exc:
        raise ExitError(1, str(exc)) from exc

    try:
        global_config = load_global_config()
    except ConfigError as exc:
        raise ExitError(2, str(exc)) from exc

    workdir = resolve.workdir(options.workdir, agent.workdir)
    files = resolve.resolve_files(agent.files, workdir)
    try:
        skill = resolve.load_skill(agent.skill, settings.config_dir)
    except resolve.ResolveError as exc:
        raise ExitError(2, str(exc)) from exc

    stdin_content = options.stdin if options.stdin is not None else resolve.read_stdin()

    system_prompt = resolve.build_system_prompt(agent.system_prompt, skill, files)
    memory_entries = _load_memory(agent, stderr) if agent.memory.enabled else ""
    system_prompt = resolve.with_memory(system_prompt, memory_entries)

    timeout = options.timeout or settings.default_timeout

    if options.dry_run:
        _print_dry_run(
            stdout, agent, provider_name, model_name, workdir, timeout,
            system_prompt, skill, files, stdin_content, memory_entries,
        )
        return 0

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

    user_message = stdin_content if stdin_content.strip() else DEFAULT_USER_MESSAGE
    request = Request(
        model=model_name,
        system=system_prompt,
        messages=[Message(role="user", content=user_message)],
        temperature=agent.params.temperature,
        max_tokens=agent.params.max_tokens,
    )

    dispatch = DispatchOptions(
        allowed_agents=list(agent.sub_agents),
        depth=0,
        max_depth=effective_max_depth(agent),
        timeout=agent.sub_agents_config.timeout,
        parallel=agent.sub_agents_config.parallel,
        global_config=global_config,
        verbose=options.verbose,
        stderr=stderr,
    )
    if agent.sub_agents and dispatch.depth < dispatch.max_depth:
        request.tools = [call_agent_tool(agent.sub_agents)]

    if options.verbose:
        print(f"Model:    {provider_name}/{model_name}", file=stderr)
        print(f"Workdir:  {workdir}", file=stderr)
        print(f"Skill:    {agent.skill or '(none)'}", file=stderr)
        print(f"Files:    {len(files)} file(s)", file=stderr)
        print(f"Stdin:    {'yes' if stdin_content.strip() else 'no'}", file=stderr)
        print(f"Timeout:  {timeout}s", file=stderr)
        print(
            f"Params:   temperature={agent.params.temperature:g}, max_tokens={agent.params.max_tokens}",
            file=stderr,
        )

    logger.info("run agent=%s provider=%s model=%s tools=%d", agent.name, provider_name, model_name, len(request.tools))
    start = time.monotonic()

    try:
        outcome = await asyncio.wait_for(run_conversation(provider, request, dispatch), timeout=timeout)
    except asyncio.TimeoutError as exc:
        err = ProviderError(ErrorCategory.TIMEOUT, f"request timed out after {timeout}s")
        raise map_provider_error(err) from exc
    except ProviderError as exc:
        if options.verbose:
            print(f"Duration: {int((time.monotonic() - start) * 1000)}ms", file=stderr)
        raise map_provider_error(exc) from exc
    except MaxTurnsExceeded as exc:
        raise ExitError(1, str(exc)) from exc

    duration_ms = int((time.monotonic() - start) * 1000)
    response = outcome.response

    if options.verbose:
        suffix = " (cumulative)" if request.tools else ""
        print(f"Duration: {duration_ms}ms", file=stderr)
        print(f"Tokens:   {outcome.input_tokens} input, {outcome.output_tokens} output{suffix}", file=stderr)
        print(f"Stop:     {response.stop_reason}", file=stderr)

    if agent.memory.enabled:
        try:
            memory.append_entry(memory.file_path(agent.name, agent.memory.path), user_message, response.content)
        except Exception as exc:
            print(f'Warning: failed to save memory for agent "{agent.name}": {exc}', file=stderr)
            logger.warning("memory append failed agent=%s: %s", agent.name, exc)

    logger.info(
        "run done agent=%s turns=%d tool_calls=%d duration_ms=%d",
        agent.name, outcome.turns, outcome.tool_calls, duration_ms,
    )

    if options.json_output:
        record = {
            "model": response.model,
            "content": response.content,
            "input_tokens": outcome.input_tokens,
            "output_tokens": outcome.output_tokens,
            "stop_reason": response.stop_reason,
            "duration_ms": duration_ms,
            "tool_calls": outcome.tool_calls,
        }
        stdout.write(json.dumps(record) + "\n")
    else:
        stdout.write(response.content)
    return 0

from __future__ import annotations

import asyncio
import io
import threading
from types import SimpleNamespace

import pytest

from agentrun import dispatcher, memory
from agentrun.dispatcher import (
    CALL_AGENT_TOOL,
    DispatchOptions,
    call_agent_tool,
    execute_call_agent,
    execute_tool_calls,
)
from agentrun.providers import Response, ToolCall


def _reply(text: str, *tool_calls: ToolCall) -> Response:
    return Response(content=text, stop_reason="end_turn", input_tokens=1, output_tokens=1, tool_calls=list(tool_calls))


def _delegate(call_id: str, agent: str, task: str, context: str = "") -> ToolCall:
    args = {"agent": agent, "task": task}
    if context:
        args["context"] = context
    return ToolCall(id=call_id, name=CALL_AGENT_TOOL, arguments=args)


def test_call_agent_tool_schema() -> None:
    spec = call_agent_tool(["researcher", "writer"])
    assert spec.name == "call_agent"
    assert "researcher, writer" in spec.description
    props = spec.parameters["properties"]
    assert props["agent"]["enum"] == ["researcher", "writer"]
    assert spec.parameters["required"] == ["agent", "task"]
    assert "context" in props
    # The shared schema is not mutated.
    assert "enum" not in call_agent_tool(["x"]).parameters["properties"]["task"]
    assert call_agent_tool(["x"]).parameters["properties"]["agent"]["enum"] == ["x"]


@pytest.mark.asyncio
async def test_agent_outside_allow_list_never_builds_a_provider(write_agent, fake_llm) -> None:
    write_agent("rogue")
    result = await execute_call_agent(
        _delegate("c1", "rogue", "do things"), DispatchOptions(allowed_agents=["helper"], max_depth=3)
    )

    assert result.is_error
    assert result.call_id == "c1"
    assert result.content == "call_agent error: agent \"rogue\" is not in this agent's sub_agents list"
    assert fake_llm.built == []
    assert fake_llm.calls == []


@pytest.mark.asyncio
async def test_depth_limit_and_argument_validation(write_agent, fake_llm) -> None:
    write_agent("helper")
    at_limit = DispatchOptions(allowed_agents=["helper"], depth=2, max_depth=2)
    result = await execute_call_agent(_delegate("c1", "helper", "t"), at_limit)
    assert result.is_error
    assert result.content == "call_agent error: maximum sub-agent depth (2) reached"

    opts = DispatchOptions(allowed_agents=["helper"])
    missing_task = await execute_call_agent(ToolCall(id="c2", name=CALL_AGENT_TOOL, arguments={"agent": "helper"}), opts)
    assert missing_task.content == 'call_agent error: "task" argument is required'

    empty_agent = await execute_call_agent(
        ToolCall(id="c3", name=CALL_AGENT_TOOL, arguments={"agent": "", "task": "t"}), opts
    )
    assert empty_agent.content == 'call_agent error: "agent" argument is required'

    bad_type = await execute_call_agent(
        ToolCall(id="c4", name=CALL_AGENT_TOOL, arguments={"agent": "helper", "task": 42}), opts
    )
    assert bad_type.content == 'call_agent error: "task" argument must be a string'
    assert fake_llm.calls == []


@pytest.mark.asyncio
async def test_successful_delegation_builds_task_message(write_agent, fake_llm) -> None:
    write_agent("helper", system_prompt="You help.")
    fake_llm.script("helper-model", _reply("helped"))

    result = await execute_call_agent(
        _delegate("c1", "helper", "summarize", context="notes here"), DispatchOptions(allowed_agents=["helper"])
    )

    assert not result.is_error
    assert result.content == "helped"
    req = fake_llm.requests_for("helper-model")[0]
    assert req.system == "You help."
    assert req.messages[0].content == "Task: summarize\n\nContext:\nnotes here"
    assert req.tools == []


@pytest.mark.asyncio
async def test_nested_tool_attached_only_below_max_depth(write_agent, fake_llm) -> None:
    write_agent("middle", sub_agents=["leaf"])
    fake_llm.script("middle-model", _reply("m1"), _reply("m2"))

    await execute_call_agent(_delegate("c1", "middle", "t"), DispatchOptions(allowed_agents=["middle"], max_depth=3))
    await execute_call_agent(
        _delegate("c2", "middle", "t"), DispatchOptions(allowed_agents=["middle"], depth=1, max_depth=2)
    )

    first, second = fake_llm.requests_for("middle-model")
    assert [t.name for t in first.tools] == ["call_agent"]
    assert second.tools == []


@pytest.mark.asyncio
async def test_sub_agent_provider_failure_becomes_error_result(write_agent, fake_llm) -> None:
    from agentrun.providers import ErrorCategory, ProviderError

    write_agent("flaky")
    fake_llm.script("flaky-model", ProviderError(ErrorCategory.RATE_LIMIT, "slow down"))
    stderr = io.StringIO()

    result = await execute_call_agent(
        _delegate("c1", "flaky", "t"), DispatchOptions(allowed_agents=["flaky"], verbose=True, stderr=stderr)
    )

    assert result.is_error
    assert result.content == (
        'Error: sub-agent "flaky" failed - rate_limit: slow down. You may retry or proceed without this result.'
    )
    assert '[sub-agent] Calling "flaky" (depth 1) with task: t' in stderr.getvalue()
    assert '[sub-agent] "flaky" failed' in stderr.getvalue()


@pytest.mark.asyncio
async def test_missing_agent_and_missing_api_key_become_error_results(write_agent, fake_llm) -> None:
    write_agent("paid", model="anthropic/claude-x")
    opts = DispatchOptions(allowed_agents=["ghost", "paid"])

    ghost = await execute_call_agent(_delegate("c1", "ghost", "t"), opts)
    assert ghost.is_error
    assert ghost.content.startswith('Error: sub-agent "ghost" failed - failed to load agent "ghost"')

    paid = await execute_call_agent(_delegate("c2", "paid", "t"), opts)
    assert paid.is_error
    assert 'API key for provider "anthropic" is not configured (set ANTHROPIC_API_KEY' in paid.content
    assert fake_llm.built == []


@pytest.mark.asyncio
async def test_sub_call_timeout_becomes_error_result(write_agent, fake_llm) -> None:
    write_agent("sleepy")

    async def never_finishes(request):
        await asyncio.sleep(30)

    fake_llm.script("sleepy-model", never_finishes)

    result = await execute_call_agent(_delegate("c1", "sleepy", "t"), DispatchOptions(allowed_agents=["sleepy"], timeout=1))

    assert result.is_error
    assert "timed out after 1s" in result.content


@pytest.mark.asyncio
async def test_parallel_results_keep_invocation_order(write_agent, fake_llm) -> None:
    write_agent("slow")
    write_agent("fast")
    active = {"now": 0, "peak": 0}

    def delayed(text: str, delay: float):
        async def step(request):
            active["now"] += 1
            active["peak"] = max(active["peak"], active["now"])
            await asyncio.sleep(delay)
            active["now"] -= 1
            return _reply(text)

        return step

    fake_llm.script("slow-model", delayed("slow done", 0.2))
    fake_llm.script("fast-model", delayed("fast done", 0.01))

    calls = [
        _delegate("c1", "slow", "a"),
        ToolCall(id="c2", name="web_search", arguments={}),
        _delegate("c3", "fast", "b"),
    ]
    results = await execute_tool_calls(calls, DispatchOptions(allowed_agents=["slow", "fast"], parallel=True))

    assert [r.call_id for r in results] == ["c1", "c2", "c3"]
    assert [r.content for r in results] == ["slow done", 'Unknown tool: "web_search"', "fast done"]
    assert [r.is_error for r in results] == [False, True, False]
    assert active["peak"] == 2


@pytest.mark.asyncio
async def test_sequential_mode_runs_one_at_a_time(write_agent, fake_llm) -> None:
    write_agent("a")
    write_agent("b")
    order = []

    def tracked(name: str):
        async def step(request):
            order.append(f"start {name}")
            await asyncio.sleep(0.01)
            order.append(f"end {name}")
            return _reply(name)

        return step

    fake_llm.script("a-model", tracked("a"))
    fake_llm.script("b-model", tracked("b"))

    results = await execute_tool_calls(
        [_delegate("c1", "a", "x"), _delegate("c2", "b", "y")], DispatchOptions(allowed_agents=["a", "b"], parallel=False)
    )

    assert [r.content for r in results] == ["a", "b"]
    assert order == ["start a", "end a", "start b", "end b"]


@pytest.mark.asyncio
async def test_parallel_setup_runs_off_the_event_loop(write_agent, fake_llm, monkeypatch: pytest.MonkeyPatch) -> None:
    write_agent("left")
    write_agent("right")
    fake_llm.script("left-model", _reply("l"))
    fake_llm.script("right-model", _reply("r"))
    loop_thread = threading.get_ident()
    setup_threads = []
    both_loading = threading.Barrier(2, timeout=5)
    original = dispatcher.load_agent

    def loading(name: str):
        setup_threads.append(threading.get_ident())
        both_loading.wait()
        return original(name)

    monkeypatch.setattr(dispatcher, "load_agent", loading)

    results = await execute_tool_calls(
        [_delegate("c1", "left", "a"), _delegate("c2", "right", "b")],
        DispatchOptions(allowed_agents=["left", "right"], parallel=True),
    )

    assert [r.content for r in results] == ["l", "r"]
    assert len(setup_threads) == 2
    assert loop_thread not in setup_threads


@pytest.mark.asyncio
async def test_failing_sibling_does_not_affect_the_other(write_agent, fake_llm) -> None:
    from agentrun.providers import ErrorCategory, ProviderError

    write_agent("good")
    write_agent("bad")
    fake_llm.script("good-model", _reply("fine"))
    fake_llm.script("bad-model", ProviderError(ErrorCategory.SERVER, "down"))

    results = await execute_tool_calls(
        [_delegate("c1", "bad", "x"), _delegate("c2", "good", "y")], DispatchOptions(allowed_agents=["good", "bad"])
    )

    assert results[0].is_error and "server: down" in results[0].content
    assert not results[1].is_error and results[1].content == "fine"


@pytest.mark.asyncio
async def test_sub_agent_memory_is_preloaded_and_appended(
    write_agent, fake_llm, agentrun_home: SimpleNamespace
) -> None:
    write_agent("archivist", system_prompt="Base.", memory={"enabled": True, "last_n": 1})
    mem_path = memory.file_path("archivist")
    memory.append_entry(mem_path, "old task", "old result")
    memory.append_entry(mem_path, "recent task", "recent result")
    fake_llm.script("archivist-model", _reply("new result"))

    result = await execute_call_agent(_delegate("c1", "archivist", "file it"), DispatchOptions(allowed_agents=["archivist"]))

    assert result.content == "new result"
    system = fake_llm.requests_for("archivist-model")[0].system
    assert system.startswith("Base.\n\n---\n\n## Memory\n\n## ")
    assert "recent task" in system and "old task" not in system
    assert memory.count_entries(mem_path) == 3
    assert "**Task:** Task: file it\n**Result:** new result" in mem_path.read_text(encoding="utf-8")


@pytest.mark.asyncio
async def test_failed_sub_agent_writes_no_memory(write_agent, fake_llm, agentrun_home: SimpleNamespace) -> None:
    from agentrun.providers import ErrorCategory, ProviderError

    write_agent("archivist", memory={"enabled": True})
    fake_llm.script("archivist-model", ProviderError(ErrorCategory.AUTH, "denied"))

    result = await execute_call_agent(_delegate("c1", "archivist", "t"), DispatchOptions(allowed_agents=["archivist"]))

    assert result.is_error
    assert not memory.file_path("archivist").exists()

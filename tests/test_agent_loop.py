"""Tests for the agent loop state machine, session serialization and bus handling."""

import asyncio

import pytest

from crabgate.agent.loop import AgentLoop
from crabgate.bus.events import Envelope
from crabgate.bus.queue import OUTBOUND_TOPIC, WILDCARD, MessageBus
from crabgate.errors import DuplicateToolError, IterationLimitExceeded, ProviderError
from crabgate.providers.base import LLMResponse
from fakes import (
    EchoTool, FailingTool, ScalarSchemaTool, ScriptedProvider, SlowTool, final, last_user_text, tool_call,
)


def _make_loop(bus: MessageBus, provider: ScriptedProvider, **kwargs) -> AgentLoop:
    loop = AgentLoop(bus=bus, provider=provider, **kwargs)
    loop.register_tool(EchoTool())
    return loop


@pytest.mark.asyncio
async def test_final_answer_without_tools(bus):
    provider = ScriptedProvider([final("Hello there")])
    agent = _make_loop(bus, provider)

    reply = await agent.process_direct("hi", session_key="cli:a")

    assert reply == "Hello there"
    session = agent.sessions.get("cli:a")
    assert [(t.role, t.content) for t in session.turns] == [("user", "hi"), ("assistant", "Hello there")]
    # System prompt first, then the user turn; tool schemas are offered
    assert provider.calls[0][0]["role"] == "system"
    assert provider.calls[0][-1] == {"role": "user", "content": "hi"}
    assert provider.tools_seen[0][0]["function"]["name"] == "echo"


@pytest.mark.asyncio
async def test_tool_call_then_final_answer(bus):
    provider = ScriptedProvider([
        tool_call("echo", {"text": "ping"}),
        final("The tool said ping"),
    ])
    agent = _make_loop(bus, provider)

    reply = await agent.process_direct("use the tool", session_key="cli:a")

    assert reply == "The tool said ping"
    turns = agent.sessions.get("cli:a").turns
    assert [t.role for t in turns] == ["user", "assistant", "tool", "assistant"]
    assert turns[1].tool_calls[0].name == "echo"
    assert turns[2].content == "echo: ping"
    assert turns[2].tool_call_id == "call_1"
    assert not turns[2].is_error

    # The second provider round sees the tool result
    second_round = provider.calls[1]
    assert second_round[-1]["role"] == "tool"
    assert second_round[-1]["content"] == "echo: ping"


@pytest.mark.asyncio
async def test_think_blocks_are_stripped(bus):
    provider = ScriptedProvider([final("<think>hmm</think>Answer")])
    agent = _make_loop(bus, provider)
    assert await agent.process_direct("q") == "Answer"


@pytest.mark.asyncio
async def test_iteration_cap_makes_exactly_max_provider_calls(bus):
    provider = ScriptedProvider(lambda messages: tool_call("echo", {"text": "again"}))
    agent = _make_loop(bus, provider, max_iterations=3)

    with pytest.raises(IterationLimitExceeded) as exc_info:
        await agent.process_direct("loop forever", session_key="cli:a")

    assert exc_info.value.iterations == 3
    assert exc_info.value.partial is None
    assert len(provider.calls) == 3
    turns = agent.sessions.get("cli:a").turns
    assert [t.role for t in turns] == ["user"] + ["assistant", "tool"] * 3


@pytest.mark.asyncio
async def test_iteration_cap_carries_partial_text(bus):
    provider = ScriptedProvider(lambda messages: tool_call("echo", {"text": "x"}, content="Still working"))
    agent = _make_loop(bus, provider, max_iterations=2)

    with pytest.raises(IterationLimitExceeded) as exc_info:
        await agent.process_direct("go")
    assert exc_info.value.partial == "Still working"


def test_max_iterations_must_be_positive(bus):
    with pytest.raises(ValueError):
        AgentLoop(bus=bus, provider=ScriptedProvider([]), max_iterations=0)


@pytest.mark.asyncio
async def test_tool_failure_is_folded_into_conversation(bus):
    provider = ScriptedProvider([
        tool_call("broken", {}),
        final("The tool failed, sorry"),
    ])
    agent = _make_loop(bus, provider)
    agent.register_tool(FailingTool())

    reply = await agent.process_direct("try it", session_key="cli:a")

    assert reply == "The tool failed, sorry"
    tool_turn = agent.sessions.get("cli:a").turns[2]
    assert tool_turn.is_error
    assert tool_turn.content.startswith("Error:")
    assert "boom" in tool_turn.content
    assert provider.calls[1][-1]["content"] == tool_turn.content


@pytest.mark.asyncio
async def test_unknown_tool_and_bad_arguments_are_folded(bus):
    provider = ScriptedProvider([
        LLMResponse(content=None, tool_calls=[
            tool_call("missing_tool", {}, call_id="a").tool_calls[0],
            tool_call("echo", {"wrong": 1}, call_id="b").tool_calls[0],
        ]),
        final("done"),
    ])
    agent = _make_loop(bus, provider)

    assert await agent.process_direct("go", session_key="cli:a") == "done"
    turns = agent.sessions.get("cli:a").turns
    assert turns[2].is_error and "not found" in turns[2].content
    assert turns[3].is_error and "missing required text" in turns[3].content


@pytest.mark.asyncio
async def test_non_object_tool_schema_is_folded(bus):
    provider = ScriptedProvider([tool_call("scalar", {}), final("carried on")])
    agent = _make_loop(bus, provider)
    agent.register_tool(ScalarSchemaTool())

    assert await agent.process_direct("go", session_key="cli:a") == "carried on"
    tool_turn = agent.sessions.get("cli:a").turns[2]
    assert tool_turn.is_error
    assert "must be object type" in tool_turn.content


@pytest.mark.asyncio
async def test_tool_timeout_is_folded(bus):
    provider = ScriptedProvider([tool_call("slow", {"tag": "t"}), final("gave up")])
    agent = _make_loop(bus, provider, tool_timeout_s=0.01)
    agent.register_tool(SlowTool(delay=1.0))

    assert await agent.process_direct("go", session_key="cli:a") == "gave up"
    tool_turn = agent.sessions.get("cli:a").turns[2]
    assert tool_turn.is_error and "timed out" in tool_turn.content


@pytest.mark.asyncio
async def test_provider_error_response_discards_the_pass(bus):
    provider = ScriptedProvider([
        tool_call("echo", {"text": "x"}),
        LLMResponse(content="Error calling LLM: rate limited", finish_reason="error"),
    ])
    agent = _make_loop(bus, provider)

    with pytest.raises(ProviderError, match="rate limited"):
        await agent.process_direct("go", session_key="cli:a")
    assert agent.sessions.get("cli:a").turns == []


@pytest.mark.asyncio
async def test_provider_exception_becomes_provider_error(bus):
    def explode(messages):
        raise RuntimeError("connection reset")

    agent = _make_loop(bus, ScriptedProvider(explode))
    with pytest.raises(ProviderError, match="connection reset"):
        await agent.process_direct("go")


@pytest.mark.asyncio
async def test_provider_timeout(bus):
    agent = _make_loop(bus, ScriptedProvider([final("late")], delay=1.0), provider_timeout_s=0.01)
    with pytest.raises(ProviderError, match="timed out"):
        await agent.process_direct("go")


@pytest.mark.asyncio
async def test_same_session_passes_do_not_interleave(bus):
    slow = SlowTool(delay=0.05)

    def script(messages):
        text = last_user_text(messages)
        if messages[-1]["role"] == "tool":
            return final(f"done:{text}")
        return tool_call("slow", {"tag": text})

    agent = _make_loop(bus, ScriptedProvider(script))
    agent.register_tool(slow)

    replies = await asyncio.gather(
        agent.process_direct("first", session_key="s"),
        agent.process_direct("second", session_key="s"),
    )

    assert replies == ["done:first", "done:second"]
    assert slow.events == ["start:first", "end:first", "start:second", "end:second"]
    turns = agent.sessions.get("s").turns
    assert [t.role for t in turns] == ["user", "assistant", "tool", "assistant"] * 2
    for block in (turns[:4], turns[4:]):
        assert block[3].content == f"done:{block[0].content}"


@pytest.mark.asyncio
async def test_different_sessions_run_concurrently(bus):
    slow = SlowTool(delay=0.05)

    def script(messages):
        if messages[-1]["role"] == "tool":
            return final("ok")
        return tool_call("slow", {"tag": last_user_text(messages)})

    agent = _make_loop(bus, ScriptedProvider(script))
    agent.register_tool(slow)

    await asyncio.gather(
        agent.process_direct("a", session_key="s1"),
        agent.process_direct("b", session_key="s2"),
    )
    # Both tools started before either finished
    assert slow.events[:2] == ["start:a", "start:b"]


@pytest.mark.asyncio
async def test_cancellation_releases_session_lock(bus):
    agent = _make_loop(bus, ScriptedProvider([final("never")], delay=10))

    task = asyncio.create_task(agent.process_direct("go", session_key="s"))
    await asyncio.sleep(0.01)
    session = agent.sessions.get("s")
    assert session.lock.locked()

    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    assert not session.lock.locked()
    assert session.turns == []


@pytest.mark.asyncio
async def test_new_command_clears_session(bus):
    provider = ScriptedProvider([final("first answer")])
    agent = _make_loop(bus, provider)

    await agent.process_direct("hello", session_key="s")
    assert len(agent.sessions.get("s").turns) == 2

    assert await agent.process_direct("/new", session_key="s") == "New session started."
    assert agent.sessions.get("s").turns == []
    assert "/help" in await agent.process_direct("/help", session_key="s")
    assert len(provider.calls) == 1


@pytest.mark.asyncio
async def test_history_is_sent_on_the_next_pass(bus):
    provider = ScriptedProvider([final("one"), final("two")])
    agent = _make_loop(bus, provider)

    await agent.process_direct("first", session_key="s")
    await agent.process_direct("second", session_key="s")

    contents = [m["content"] for m in provider.calls[1][1:]]
    assert contents == ["first", "one", "second"]


def test_register_duplicate_tool_fails(bus):
    agent = _make_loop(bus, ScriptedProvider([]))
    with pytest.raises(DuplicateToolError):
        agent.register_tool(EchoTool())


def test_startup_info_counts_tools_and_skills(bus, tmp_path):
    skills = tmp_path / "skills"
    (skills / "weather").mkdir(parents=True)
    (skills / "weather" / "SKILL.md").write_text(
        "---\nname: weather\ndescription: Look up forecasts\n---\n\n# Weather\n"
    )
    (skills / "notes").mkdir()
    (skills / "notes" / "SKILL.md").write_text("# Notes without a header\n")
    (skills / "draft").mkdir()

    agent = _make_loop(bus, ScriptedProvider([]), workspace=tmp_path, max_iterations=7)
    info = agent.get_startup_info()

    assert info["tools"] == {"count": 1, "names": ["echo"]}
    assert info["skills"] == {"total": 3, "available": 2, "names": ["notes", "weather"]}
    assert info["model"] == "test-model"
    assert info["max_iterations"] == 7


@pytest.mark.asyncio
async def test_skills_are_listed_in_system_prompt(bus, tmp_path):
    skill = tmp_path / "skills" / "weather"
    skill.mkdir(parents=True)
    (skill / "SKILL.md").write_text("---\nname: weather\ndescription: Look up forecasts\n---\nbody\n")

    provider = ScriptedProvider([final("ok")])
    agent = _make_loop(bus, provider, workspace=tmp_path, system_prompt="Be brief.")
    await agent.process_direct("hi")

    system = provider.calls[0][0]["content"]
    assert system.startswith("Be brief.")
    assert "- weather: Look up forecasts" in system
    assert "Current time:" in system


def test_startup_info_without_workspace(bus):
    info = _make_loop(bus, ScriptedProvider([])).get_startup_info()
    assert info["skills"] == {"total": 0, "available": 0, "names": []}


class TestBusProcessing:
    """The loop consuming inbound envelopes and publishing replies."""

    @staticmethod
    async def _start(agent: AgentLoop) -> asyncio.Task:
        task = asyncio.create_task(agent.run())
        await asyncio.sleep(0)
        return task

    @pytest.mark.asyncio
    async def test_inbound_envelope_gets_a_reply(self, bus):
        agent = _make_loop(bus, ScriptedProvider(lambda m: final(f"hello {last_user_text(m)}")))
        outbound = bus.subscribe(OUTBOUND_TOPIC)
        run_task = await self._start(agent)
        assert agent.is_running

        await bus.publish_inbound(Envelope.inbound(channel="telegram", chat_id="42", text="bob"))
        reply = await asyncio.wait_for(outbound.get(), timeout=1.0)

        assert reply.text == "hello bob"
        assert reply.channel == "telegram"
        assert reply.chat_id == "42"
        assert reply.session_key == "telegram:42"
        assert not reply.is_inbound

        await agent.stop()
        await asyncio.wait_for(run_task, timeout=1.0)
        assert not agent.is_running

    @pytest.mark.asyncio
    async def test_progress_and_tool_hints_are_published(self, bus):
        provider = ScriptedProvider([
            tool_call("echo", {"text": "x"}, content="Let me check"),
            final("done"),
        ])
        agent = _make_loop(bus, provider)
        outbound = bus.subscribe(OUTBOUND_TOPIC)
        run_task = await self._start(agent)

        await bus.publish_inbound(Envelope.inbound(channel="cli", chat_id="d", text="go"))
        messages = [await asyncio.wait_for(outbound.get(), timeout=1.0) for _ in range(3)]

        assert [m.text for m in messages] == ["Let me check", 'echo("x")', "done"]
        assert messages[0].metadata["_progress"] and not messages[0].metadata["_tool_hint"]
        assert messages[1].metadata["_tool_hint"]
        assert "_progress" not in messages[2].metadata

        await agent.stop()
        await run_task

    @pytest.mark.asyncio
    async def test_provider_error_is_reported_to_the_user(self, bus):
        provider = ScriptedProvider([LLMResponse(content="Error calling LLM: down", finish_reason="error")])
        agent = _make_loop(bus, provider)
        outbound = bus.subscribe(OUTBOUND_TOPIC)
        run_task = await self._start(agent)

        await bus.publish_inbound(Envelope.inbound(channel="cli", chat_id="d", text="go"))
        reply = await asyncio.wait_for(outbound.get(), timeout=1.0)
        assert reply.text.startswith("Sorry, I encountered an error:")

        await agent.stop()
        await run_task

    @pytest.mark.asyncio
    async def test_iteration_limit_is_reported_with_partial_text(self, bus):
        provider = ScriptedProvider(lambda m: tool_call("echo", {"text": "x"}, content="Halfway"))
        agent = _make_loop(bus, provider, max_iterations=2)
        outbound = bus.subscribe(OUTBOUND_TOPIC)
        run_task = await self._start(agent)

        await bus.publish_inbound(Envelope.inbound(channel="cli", chat_id="d", text="go"))
        replies = []
        while True:
            env = await asyncio.wait_for(outbound.get(), timeout=1.0)
            if not env.metadata.get("_progress"):
                replies.append(env)
                break

        assert replies[0].text.startswith("Halfway")
        assert "maximum number of tool call iterations (2)" in replies[0].text

        await agent.stop()
        await run_task

    @pytest.mark.asyncio
    async def test_stop_waits_for_in_flight_messages(self, bus):
        agent = _make_loop(bus, ScriptedProvider([final("finished")], delay=0.05))
        outbound = bus.subscribe(OUTBOUND_TOPIC)
        run_task = await self._start(agent)

        await bus.publish_inbound(Envelope.inbound(channel="cli", chat_id="d", text="go"))
        await asyncio.sleep(0.01)
        await agent.stop()

        assert run_task.done()
        assert outbound.pending == 1
        assert (await outbound.get()).text == "finished"

    @pytest.mark.asyncio
    async def test_stop_cancels_after_grace_period(self, bus):
        agent = _make_loop(bus, ScriptedProvider([final("never")], delay=10), shutdown_grace_s=0.05)
        outbound = bus.subscribe(OUTBOUND_TOPIC)
        run_task = await self._start(agent)

        await bus.publish_inbound(Envelope.inbound(channel="cli", chat_id="d", text="go"))
        await asyncio.sleep(0.01)
        await agent.stop()

        assert run_task.done()
        assert outbound.pending == 0
        assert not agent.sessions.get("cli:d").lock.locked()

    @pytest.mark.asyncio
    async def test_register_tool_after_start_fails(self, bus):
        agent = _make_loop(bus, ScriptedProvider([]))
        run_task = await self._start(agent)
        with pytest.raises(RuntimeError):
            agent.register_tool(FailingTool())
        await agent.stop()
        await run_task

    @pytest.mark.asyncio
    async def test_stop_before_run_is_scheduled(self, bus):
        agent = _make_loop(bus, ScriptedProvider(lambda m: final("hi")))
        run_task = asyncio.create_task(agent.run())
        await agent.stop()

        await asyncio.wait_for(run_task, timeout=1.0)
        assert not agent.is_running
        assert bus.subscriber_count(WILDCARD) == 0

        # The request is consumed; a later run serves messages again
        outbound = bus.subscribe(OUTBOUND_TOPIC)
        run_task = await self._start(agent)
        assert agent.is_running
        await bus.publish_inbound(Envelope.inbound(channel="cli", chat_id="d", text="go"))
        assert (await asyncio.wait_for(outbound.get(), timeout=1.0)).text == "hi"
        await agent.stop()
        await asyncio.wait_for(run_task, timeout=1.0)

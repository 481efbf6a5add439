"""Tests for the agent loop. The LLM is a scripted fake transport.

Tests cover:
- calculator end-to-end: tool request, tool result, final answer
- structured output decoding (dict schema and pydantic model)
- max_turns bound: exactly max_turns model calls, then NonConvergenceError
- transport failures surface as TransportError with the conversation attached
- tool failures are reported to the model and never abort the run
- cancel_event, run_timeout and outer task cancellation
- registry precedence (local < builtin < MCP) and freezing during runs
- MCP ping tool reached through the agent (mocked session)
"""

# mock-ok: provider and MCP calls are replaced by scripted fakes

from __future__ import annotations

import asyncio
import json
from typing import Any
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from pydantic import BaseModel

from agentai import (
    Agent,
    AgentCancelledError,
    AgentConfig,
    AgentConfigurationError,
    AgentState,
    AuthError,
    McpConnectionError,
    McpServerConfig,
    ModelResponse,
    NonConvergenceError,
    OutputDecodeError,
    ToolCallRequest,
    TransportError,
    tool,
)
from agentai.tools import ToolDescriptor


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


class ScriptedTransport:
    """Replays a fixed list of responses; records what it was sent."""

    def __init__(self, *responses: ModelResponse | Exception) -> None:
        self.responses = list(responses)
        self.calls: list[dict[str, Any]] = []

    async def complete(
        self,
        model: str,
        messages: list[dict[str, Any]],
        tools: list[ToolDescriptor] | None = None,
        output_schema: Any = None,
    ) -> ModelResponse:
        self.calls.append({
            "model": model,
            "messages": messages,
            "tools": list(tools or []),
            "output_schema": output_schema,
        })
        if not self.responses:
            raise AssertionError("ScriptedTransport ran out of responses")
        nxt = self.responses.pop(0)
        if isinstance(nxt, Exception):
            raise nxt
        return nxt


class LoopingTransport:
    """Always requests the same tool; never answers."""

    def __init__(self, name: str = "add", arguments: str = '{"a": 1, "b": 1}') -> None:
        self.name = name
        self.arguments = arguments
        self.count = 0

    async def complete(self, model: str, messages: list[dict[str, Any]], tools: Any = None, output_schema: Any = None) -> ModelResponse:
        self.count += 1
        return _tool_turn((f"c{self.count}", self.name, self.arguments))


class HangingTransport:
    async def complete(self, *args: Any, **kwargs: Any) -> ModelResponse:
        await asyncio.sleep(10)
        raise AssertionError("unreachable")


def _tool_turn(*calls: tuple[str, str, str]) -> ModelResponse:
    return ModelResponse(
        content="",
        tool_calls=[ToolCallRequest(id=i, name=n, arguments=a) for i, n, a in calls],
        usage={"prompt_tokens": 10, "completion_tokens": 5, "total_tokens": 15},
        cost=0.001,
        finish_reason="tool_calls",
    )


def _answer(content: str) -> ModelResponse:
    return ModelResponse(
        content=content,
        usage={"prompt_tokens": 20, "completion_tokens": 3, "total_tokens": 23},
        cost=0.002,
        finish_reason="stop",
    )


@tool
def add(a: int, b: int) -> int:
    """Add two integers."""
    return a + b


def explode() -> str:
    """Always fails."""
    raise RuntimeError("kaboom")


class Person(BaseModel):
    name: str
    age: int


PERSON_SCHEMA = {
    "type": "object",
    "properties": {"name": {"type": "string"}, "age": {"type": "integer"}},
    "required": ["name", "age"],
}


# ---------------------------------------------------------------------------
# Happy path
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
class TestAgentRun:
    async def test_calculator(self) -> None:
        transport = ScriptedTransport(
            _tool_turn(("c1", "add", '{"a": 2, "b": 2}')),
            _answer("4"),
        )
        agent = Agent("You are a calculator agent", tools=[add], transport=transport)
        result = await agent.run("test-model", "what is 2+2?")

        assert result.output == "4"
        assert result.state is AgentState.DONE
        assert result.turns == 2
        assert len(transport.calls) == 2
        assert [d.name for d in transport.calls[0]["tools"]] == ["add"]

        roles = [m.role for m in result.conversation]
        assert roles == ["system", "user", "assistant", "tool", "assistant"]
        tool_msg = result.conversation.messages[3]
        assert tool_msg.tool_call_id == "c1"
        assert tool_msg.content == "4"

        assert result.tool_calls[0].tool == "add"
        assert result.tool_calls[0].result == "4"
        assert result.usage["total_tokens"] == 38
        assert result.cost == pytest.approx(0.003)
        assert result.states == [
            AgentState.AWAITING_MODEL,
            AgentState.EXECUTING_TOOLS,
            AgentState.AWAITING_MODEL,
            AgentState.FINALIZING,
            AgentState.DONE,
        ]

    async def test_second_call_sees_tool_result(self) -> None:
        transport = ScriptedTransport(
            _tool_turn(("c1", "add", '{"a": 2, "b": 2}')),
            _answer("4"),
        )
        await Agent("sys", tools=[add], transport=transport).run("m", "2+2?")
        sent = transport.calls[1]["messages"]
        assert sent[-1] == {"role": "tool", "content": "4", "tool_call_id": "c1", "name": "add"}
        assert sent[-2]["tool_calls"][0]["id"] == "c1"

    async def test_direct_answer(self) -> None:
        transport = ScriptedTransport(_answer("Paris"))
        result = await Agent("sys", transport=transport).run("m", "Capital of France?")
        assert result.output == "Paris"
        assert result.turns == 1
        assert result.tool_calls == []
        assert transport.calls[0]["tools"] == []

    async def test_parallel_tool_calls(self) -> None:
        transport = ScriptedTransport(
            _tool_turn(("c1", "add", '{"a": 1, "b": 1}'), ("c2", "add", '{"a": 2, "b": 2}')),
            _answer("2 and 4"),
        )
        result = await Agent("sys", tools=[add], transport=transport).run("m", "q")
        tool_msgs = {m.tool_call_id: m.content for m in result.conversation if m.role == "tool"}
        assert tool_msgs == {"c1": "2", "c2": "4"}

    async def test_dict_output_schema(self) -> None:
        transport = ScriptedTransport(_answer('{"name":"Ann","age":30}'))
        result = await Agent("sys", transport=transport).run("m", "Who?", output_schema=PERSON_SCHEMA)
        assert result.output == {"name": "Ann", "age": 30}
        assert transport.calls[0]["output_schema"] is PERSON_SCHEMA

    async def test_pydantic_output_schema(self) -> None:
        transport = ScriptedTransport(_answer('{"name":"Ann","age":30}'))
        result = await Agent("sys", transport=transport).run("m", "Who?", output_schema=Person)
        assert result.output == Person(name="Ann", age=30)

    async def test_run_sync(self) -> None:
        transport = ScriptedTransport(_answer("hi"))
        # asyncio.run inside a running loop is not allowed; use a worker thread
        result = await asyncio.to_thread(Agent("sys", transport=transport).run_sync, "m", "q")
        assert result.output == "hi"


# ---------------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
class TestAgentFailures:
    async def test_decode_failure(self) -> None:
        transport = ScriptedTransport(_answer('{"name":"Ann","age":"thirty"}'))
        with pytest.raises(OutputDecodeError) as exc_info:
            await Agent("sys", transport=transport).run("m", "Who?", output_schema=PERSON_SCHEMA)
        assert exc_info.value.raw_output == '{"name":"Ann","age":"thirty"}'
        assert exc_info.value.conversation is not None
        assert exc_info.value.conversation.messages[-1].role == "assistant"

    @pytest.mark.parametrize("max_turns", [1, 3])
    async def test_non_convergence(self, max_turns: int) -> None:
        transport = LoopingTransport()
        agent = Agent("sys", tools=[add], transport=transport)
        with pytest.raises(NonConvergenceError) as exc_info:
            await agent.run("m", "loop forever", max_turns=max_turns)
        assert transport.count == max_turns
        assert exc_info.value.max_turns == max_turns
        conv = exc_info.value.conversation
        assert conv is not None
        assert conv.pending_call_ids == []
        assert sum(1 for m in conv if m.role == "tool") == max_turns

    async def test_max_turns_from_config(self) -> None:
        transport = LoopingTransport()
        agent = Agent("sys", tools=[add], transport=transport, config=AgentConfig(max_turns=2))
        with pytest.raises(NonConvergenceError):
            await agent.run("m", "q")
        assert transport.count == 2

    async def test_invalid_max_turns(self) -> None:
        agent = Agent("sys", transport=ScriptedTransport())
        with pytest.raises(AgentConfigurationError):
            await agent.run("m", "q", max_turns=0)

    async def test_transport_error(self) -> None:
        transport = ScriptedTransport(
            _tool_turn(("c1", "add", '{"a": 2, "b": 2}')),
            AuthError("Invalid API key"),
        )
        with pytest.raises(AuthError) as exc_info:
            await Agent("sys", tools=[add], transport=transport).run("m", "q")
        conv = exc_info.value.conversation
        assert conv is not None
        assert [m.role for m in conv][-1] == "tool"

    async def test_raw_exception_wrapped(self) -> None:
        transport = ScriptedTransport(RuntimeError("503 server error"))
        with pytest.raises(TransportError) as exc_info:
            await Agent("sys", transport=transport).run("m", "q")
        assert isinstance(exc_info.value.original, RuntimeError)
        assert len(transport.calls) == 1

    async def test_tool_failures_reported_to_model(self) -> None:
        transport = ScriptedTransport(
            _tool_turn(
                ("c1", "explode", "{}"),
                ("c2", "missing_tool", "{}"),
                ("c3", "add", '{"a": "x"}'),
            ),
            _answer("sorry"),
        )
        result = await Agent("sys", tools=[add, explode], transport=transport).run("m", "q")
        assert result.output == "sorry"
        errors = {
            m.tool_call_id: json.loads(m.content)["error"]
            for m in result.conversation if m.role == "tool"
        }
        assert "kaboom" in errors["c1"]
        assert "Unknown tool" in errors["c2"]
        assert "Validation error" in errors["c3"]
        assert not any(r.ok for r in result.tool_calls)

    async def test_tool_timeout(self) -> None:
        async def sleepy() -> str:
            """Sleep a long time."""
            await asyncio.sleep(10)
            return "late"

        transport = ScriptedTransport(_tool_turn(("c1", "sleepy", "{}")), _answer("gave up"))
        result = await Agent("sys", tools=[sleepy], transport=transport).run("m", "q", tool_timeout=0.05)
        assert result.output == "gave up"
        assert result.tool_calls[0].error_type == "ToolTimeoutError"


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
class TestCancellation:
    async def test_cancel_event(self) -> None:
        cancel = asyncio.Event()
        agent = Agent("sys", transport=HangingTransport())
        task = asyncio.create_task(agent.run("m", "q", cancel_event=cancel))
        await asyncio.sleep(0.02)
        cancel.set()
        with pytest.raises(AgentCancelledError, match="cancelled") as exc_info:
            await task
        assert exc_info.value.conversation is not None

    async def test_run_timeout(self) -> None:
        agent = Agent("sys", transport=HangingTransport())
        with pytest.raises(AgentCancelledError, match="timed out"):
            await agent.run("m", "q", run_timeout=0.05)

    async def test_cancel_during_tools(self) -> None:
        started = asyncio.Event()

        async def wait_forever() -> str:
            """Block until cancelled."""
            started.set()
            await asyncio.sleep(10)
            return "never"

        cancel = asyncio.Event()
        transport = ScriptedTransport(_tool_turn(("c1", "wait_forever", "{}")))
        agent = Agent("sys", tools=[wait_forever], transport=transport)
        task = asyncio.create_task(agent.run("m", "q", cancel_event=cancel))
        await started.wait()
        cancel.set()
        with pytest.raises(AgentCancelledError):
            await task
        assert len(transport.calls) == 1

    async def test_outer_task_cancel(self) -> None:
        agent = Agent("sys", transport=HangingTransport())
        task = asyncio.create_task(agent.run("m", "q"))
        await asyncio.sleep(0.02)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    async def test_set_event_before_run(self) -> None:
        cancel = asyncio.Event()
        cancel.set()
        with pytest.raises(AgentCancelledError):
            await Agent("sys", transport=HangingTransport()).run("m", "q", cancel_event=cancel)


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


def get_today_date() -> str:
    """Local override."""
    return "local"


def _mcp_mocks(tools: list[str], reply: str = "pong") -> tuple[AsyncMock, tuple[Any, ...]]:
    session = AsyncMock()
    session.initialize = AsyncMock()
    remote = []
    for name in tools:
        t = MagicMock()
        t.name = name
        t.description = f"remote {name}"
        t.inputSchema = {"type": "object", "properties": {}}
        remote.append(t)
    session.list_tools = AsyncMock(return_value=MagicMock(tools=remote))
    item = MagicMock()
    item.text = reply
    session.call_tool = AsyncMock(return_value=MagicMock(content=[item], isError=False))
    session.__aenter__ = AsyncMock(return_value=session)
    session.__aexit__ = AsyncMock(return_value=False)

    stdio_cm = AsyncMock()
    stdio_cm.__aenter__ = AsyncMock(return_value=("read", "write"))
    stdio_cm.__aexit__ = AsyncMock(return_value=False)
    return session, (
        MagicMock(return_value=stdio_cm),
        MagicMock,
        MagicMock(return_value=session),
        MagicMock(),
    )


PING = McpServerConfig(name="pinger", command="python", args=["ping.py"])


@pytest.mark.asyncio
class TestRegistry:
    async def test_builtin_overrides_local(self) -> None:
        async with Agent("sys", tools=[get_today_date], builtin_tools=["datetime"],
                         transport=ScriptedTransport()) as agent:
            assert agent.registry.resolve("get_today_date").source == "builtin"

    async def test_mcp_overrides_builtin(self) -> None:
        session, mocked = _mcp_mocks(["get_today_date"])
        with patch("agentai.mcp._import_mcp", return_value=mocked):
            async with Agent("sys", builtin_tools=True, mcp_servers=[PING],
                             transport=ScriptedTransport()) as agent:
                assert agent.registry.resolve("get_today_date").source == "mcp:pinger"
                # position kept from the first registration
                assert agent.registry.names()[0] == "get_today_date"

    async def test_snapshot_stable_across_turns(self) -> None:
        transport = ScriptedTransport(
            _tool_turn(("c1", "add", '{"a": 1, "b": 1}')),
            _answer("2"),
        )
        await Agent("sys", tools=[add], builtin_tools=True, transport=transport).run("m", "q")
        first = [d.name for d in transport.calls[0]["tools"]]
        second = [d.name for d in transport.calls[1]["tools"]]
        assert first == second
        assert first[0] == "add"

    async def test_registry_frozen_during_run(self) -> None:
        class FreezeSpy(ScriptedTransport):
            seen: list[bool] = []

            async def complete(self, *args: Any, **kwargs: Any) -> ModelResponse:
                self.seen.append(agent.registry.frozen)
                return await super().complete(*args, **kwargs)

        transport = FreezeSpy(_answer("ok"))
        agent = Agent("sys", transport=transport)
        async with agent:
            await agent.run("m", "q")
            assert not agent.registry.frozen
        assert transport.seen == [True]

    async def test_registry_requires_start(self) -> None:
        with pytest.raises(AgentConfigurationError, match="not started"):
            Agent("sys").registry

    async def test_unknown_builtin_group(self) -> None:
        with pytest.raises(AgentConfigurationError, match="Unknown built-in"):
            async with Agent("sys", builtin_tools=["nope"], transport=ScriptedTransport()):
                pass


# ---------------------------------------------------------------------------
# MCP through the agent
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
class TestAgentWithMcp:
    async def test_ping(self) -> None:
        session, mocked = _mcp_mocks(["ping"])
        transport = ScriptedTransport(_tool_turn(("c1", "ping", "{}")), _answer("pong"))
        with patch("agentai.mcp._import_mcp", return_value=mocked):
            result = await Agent("sys", mcp_servers=[PING], transport=transport).run("m", "ping it")
        assert result.output == "pong"
        assert result.tool_calls[0].source == "mcp:pinger"
        session.call_tool.assert_called_once_with("ping", {})
        # run outside a context opens and closes its own scope
        session.__aexit__.assert_awaited_once()

    async def test_connection_closed_once_across_runs(self) -> None:
        session, mocked = _mcp_mocks(["ping"])
        transport = ScriptedTransport(_answer("a"), _answer("b"))
        with patch("agentai.mcp._import_mcp", return_value=mocked):
            async with Agent("sys", mcp_servers=[PING], transport=transport) as agent:
                await agent.run("m", "1")
                await agent.run("m", "2")
                session.__aexit__.assert_not_awaited()
        session.__aexit__.assert_awaited_once()
        session.initialize.assert_awaited_once()

    async def test_connect_failure(self) -> None:
        session, mocked = _mcp_mocks([])
        session.initialize = AsyncMock(side_effect=OSError("spawn failed"))
        with patch("agentai.mcp._import_mcp", return_value=mocked):
            with pytest.raises(McpConnectionError) as exc_info:
                await Agent("sys", mcp_servers=[PING], transport=ScriptedTransport()).run("m", "q")
        assert exc_info.value.server == "pinger"

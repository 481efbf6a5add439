"""Agent loop for agentai.

An Agent holds a system prompt and a tool configuration (local functions,
built-in tools, MCP servers). Each ``run`` turns one user request into zero or
more model↔tool round trips and a final answer:

    AWAITING_MODEL → EXECUTING_TOOLS → AWAITING_MODEL → ... → FINALIZING → DONE
                                                        ↘ FAILED

Usage:
    @tool
    def add(a: int, b: int) -> int:
        '''Add two integers.'''
        return a + b

    async with Agent("You are a calculator agent", tools=[add]) as agent:
        result = await agent.run("gpt-4o", "what is 2+2?")
        print(result.output)

    # Structured output
    result = await agent.run("gpt-4o", "Who is Ann?", output_schema=Person)

The loop:
    1. Send conversation + tool descriptors (+ output schema) to the transport
    2. If the model requested tools → execute them concurrently → append results
    3. Repeat until the model answers or max_turns model calls were made
    4. Decode the answer against the output schema, if one was given
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import AsyncExitStack
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable

from agentai.builtin import DEFAULT_GROUPS, builtin_tools as _builtin_tools
from agentai.config import AgentConfig
from agentai.conversation import Conversation
from agentai.errors import (
    AgentCancelledError,
    AgentConfigurationError,
    AgentError,
    NonConvergenceError,
    wrap_error,
)
from agentai.executor import ToolCallRecord, execute_tool_calls
from agentai.mcp import McpServerConfig, bridge_servers
from agentai.tools import BUILTIN_SOURCE, ToolRegistry
from agentai.transport import ChatTransport, LiteLLMTransport, ModelResponse
from agentai.validation import OutputSchema, decode_final_answer

logger = logging.getLogger(__name__)


class AgentState(str, Enum):
    AWAITING_MODEL = "awaiting_model"
    EXECUTING_TOOLS = "executing_tools"
    FINALIZING = "finalizing"
    DONE = "done"
    FAILED = "failed"


@dataclass
class AgentRunResult:
    """Outcome of one successful run.

    ``output`` is the raw text answer, or the decoded value when an output
    schema was given (a plain JSON value for dict schemas, a model instance
    for pydantic schemas).
    """

    output: Any
    conversation: Conversation
    model: str
    tool_calls: list[ToolCallRecord] = field(default_factory=list)
    turns: int = 0
    usage: dict[str, int] = field(default_factory=dict)
    cost: float = 0.0
    states: list[AgentState] = field(default_factory=list)

    @property
    def state(self) -> AgentState:
        return self.states[-1] if self.states else AgentState.DONE


@dataclass
class _RunState:
    conversation: Conversation
    model: str
    records: list[ToolCallRecord] = field(default_factory=list)
    turns: int = 0
    usage: dict[str, int] = field(default_factory=dict)
    cost: float = 0.0
    states: list[AgentState] = field(default_factory=list)

    def transition(self, state: AgentState) -> None:
        logger.debug("Agent run: %s (turn %d)", state.value, self.turns)
        self.states.append(state)

    def account(self, response: ModelResponse) -> None:
        self.turns += 1
        self.cost += response.cost or 0.0
        for key, value in (response.usage or {}).items():
            if isinstance(value, int):
                self.usage[key] = self.usage.get(key, 0) + value

    def fail(self, error: AgentError) -> AgentError:
        if not self.states or self.states[-1] is not AgentState.FAILED:
            self.transition(AgentState.FAILED)
        if error.conversation is None:
            error.conversation = self.conversation
        return error


def _builtin_groups(builtin_tools: bool | Iterable[str]) -> list[str]:
    if builtin_tools is True:
        return list(DEFAULT_GROUPS)
    if builtin_tools is False or builtin_tools is None:
        return []
    return list(builtin_tools)


class Agent:
    """A system prompt plus a tool configuration, able to run requests.

    Use as an async context manager: entering connects MCP servers and builds
    the tool registry, exiting closes every connection exactly once. ``run``
    called outside the context opens and closes a scope for that run alone.
    """

    def __init__(
        self,
        system_prompt: str,
        *,
        tools: Iterable[Any] | None = None,
        builtin_tools: bool | Iterable[str] = False,
        mcp_servers: Iterable[McpServerConfig] | None = None,
        transport: ChatTransport | None = None,
        config: AgentConfig | None = None,
        brave_api_key: str | None = None,
    ) -> None:
        self.system_prompt = system_prompt
        self.transport: ChatTransport = transport or LiteLLMTransport()
        self.config = config or AgentConfig()
        self._local_tools = list(tools or [])
        self._builtin_groups = _builtin_groups(builtin_tools)
        self._brave_api_key = brave_api_key
        self._mcp_servers = list(mcp_servers or [])
        self._registry: ToolRegistry | None = None
        self._stack: AsyncExitStack | None = None
        self._active_runs = 0

    # -- lifecycle ---------------------------------------------------------

    @property
    def registry(self) -> ToolRegistry:
        if self._registry is None:
            raise AgentConfigurationError("Agent is not started; use 'async with Agent(...)'")
        return self._registry

    @property
    def started(self) -> bool:
        return self._registry is not None

    async def start(self) -> "Agent":
        """Build the registry: local tools, then built-ins, then MCP servers in order."""
        if self._registry is not None:
            return self
        registry = ToolRegistry()
        for t in self._local_tools:
            registry.add(t)
        if self._builtin_groups:
            for handler in _builtin_tools(self._builtin_groups, brave_api_key=self._brave_api_key):
                registry.add(handler, source=BUILTIN_SOURCE)

        stack = AsyncExitStack()
        await stack.__aenter__()
        try:
            for handler in await bridge_servers(self._mcp_servers, stack):
                registry.add(handler)
        except BaseException:
            await stack.aclose()
            raise
        self._stack = stack
        self._registry = registry
        logger.info(
            "Agent started with %d tools (%d MCP servers)",
            len(registry), len(self._mcp_servers),
        )
        return self

    async def close(self) -> None:
        stack, self._stack = self._stack, None
        self._registry = None
        if stack is not None:
            await stack.aclose()

    async def __aenter__(self) -> "Agent":
        return await self.start()

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()

    # -- running -----------------------------------------------------------

    async def run(
        self,
        model: str,
        user_input: str,
        *,
        output_schema: OutputSchema | None = None,
        max_turns: int | None = None,
        tool_timeout: float | None = None,
        run_timeout: float | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> AgentRunResult:
        """Run one request to completion.

        Args:
            model: Any model string the transport accepts.
            user_input: The user's request.
            output_schema: JSON Schema dict or pydantic model for the answer.
            max_turns: Model round trips allowed (default from config).
            tool_timeout: Per-tool deadline in seconds (default from config).
            run_timeout: Whole-run deadline in seconds (default from config).
            cancel_event: Setting this event aborts the run.

        Raises:
            TransportError: the model call failed.
            OutputDecodeError: the answer does not match output_schema.
            NonConvergenceError: no answer within max_turns model calls.
            AgentCancelledError: cancel_event was set or run_timeout expired.
        """
        if not self.started:
            async with self:
                return await self.run(
                    model,
                    user_input,
                    output_schema=output_schema,
                    max_turns=max_turns,
                    tool_timeout=tool_timeout,
                    run_timeout=run_timeout,
                    cancel_event=cancel_event,
                )

        max_turns = max_turns if max_turns is not None else self.config.max_turns
        if max_turns < 1:
            raise AgentConfigurationError(f"max_turns must be >= 1, got {max_turns}")
        tool_timeout = tool_timeout if tool_timeout is not None else self.config.tool_timeout
        run_timeout = run_timeout if run_timeout is not None else self.config.run_timeout

        rs = _RunState(
            conversation=Conversation.start(self.system_prompt, user_input),
            model=model,
        )
        logger.debug("Agent question: %s", user_input)

        registry = self.registry
        self._active_runs += 1
        registry.freeze()
        try:
            return await self._supervise(
                rs, output_schema, max_turns, tool_timeout, run_timeout, cancel_event,
            )
        finally:
            self._active_runs -= 1
            if self._active_runs == 0 and self._registry is registry:
                registry.unfreeze()

    def run_sync(self, model: str, user_input: str, **kwargs: Any) -> AgentRunResult:
        """Sync wrapper around ``run`` (opens and closes its own scope)."""
        return asyncio.run(self.run(model, user_input, **kwargs))

    async def _supervise(
        self,
        rs: _RunState,
        output_schema: OutputSchema | None,
        max_turns: int,
        tool_timeout: float | None,
        run_timeout: float | None,
        cancel_event: asyncio.Event | None,
    ) -> AgentRunResult:
        loop_task = asyncio.ensure_future(
            self._loop(rs, output_schema, max_turns, tool_timeout)
        )
        waiters: set[asyncio.Future[Any]] = {loop_task}
        cancel_task: asyncio.Future[Any] | None = None
        if cancel_event is not None:
            cancel_task = asyncio.ensure_future(cancel_event.wait())
            waiters.add(cancel_task)
        try:
            done, _ = await asyncio.wait(
                waiters, timeout=run_timeout, return_when=asyncio.FIRST_COMPLETED,
            )
        except asyncio.CancelledError:
            loop_task.cancel()
            await asyncio.gather(loop_task, return_exceptions=True)
            rs.fail(AgentCancelledError("Run cancelled"))
            logger.warning("Agent run cancelled after %d turns", rs.turns)
            raise
        finally:
            if cancel_task is not None:
                cancel_task.cancel()

        if loop_task in done:
            return loop_task.result()

        loop_task.cancel()
        await asyncio.gather(loop_task, return_exceptions=True)
        if cancel_task is not None and cancel_task in done:
            reason = "Run cancelled"
        else:
            reason = f"Run timed out after {run_timeout}s"
        logger.warning("%s (turn %d)", reason, rs.turns)
        raise rs.fail(AgentCancelledError(reason))

    async def _loop(
        self,
        rs: _RunState,
        output_schema: OutputSchema | None,
        max_turns: int,
        tool_timeout: float | None,
    ) -> AgentRunResult:
        registry = self.registry
        conversation = rs.conversation

        for _ in range(max_turns):
            rs.transition(AgentState.AWAITING_MODEL)
            conversation.ensure_ready_for_model()
            try:
                response = await self.transport.complete(
                    rs.model,
                    conversation.to_openai(),
                    registry.snapshot(),
                    output_schema,
                )
            except AgentError as exc:
                raise rs.fail(exc)
            except Exception as exc:
                raise rs.fail(wrap_error(exc)) from exc
            rs.account(response)

            if response.tool_calls:
                try:
                    conversation.append_assistant(response.content, response.tool_calls)
                except AgentError as exc:
                    raise rs.fail(exc)
                rs.transition(AgentState.EXECUTING_TOOLS)
                logger.debug(
                    "Turn %d: executing %d tool calls: %s",
                    rs.turns, len(response.tool_calls), [tc.name for tc in response.tool_calls],
                )
                records, tool_messages = await execute_tool_calls(
                    response.tool_calls,
                    registry,
                    tool_timeout=tool_timeout,
                    max_result_length=self.config.tool_result_max_length,
                )
                rs.records.extend(records)
                conversation.append_tool_results(tool_messages)
                continue

            rs.transition(AgentState.FINALIZING)
            conversation.append_assistant(response.content)
            logger.debug("Agent answer: %s", response.content)
            if output_schema is not None:
                try:
                    output = decode_final_answer(response.content, output_schema)
                except AgentError as exc:
                    raise rs.fail(exc)
            else:
                output = response.content
            rs.transition(AgentState.DONE)
            logger.info(
                "Agent run done: model=%s turns=%d tool_calls=%d cost=$%.6f",
                rs.model, rs.turns, len(rs.records), rs.cost,
            )
            return AgentRunResult(
                output=output,
                conversation=conversation,
                model=rs.model,
                tool_calls=rs.records,
                turns=rs.turns,
                usage=rs.usage,
                cost=rs.cost,
                states=rs.states,
            )

        logger.warning(
            "Agent loop exhausted max_turns=%d (%d tool calls) without a final answer",
            max_turns, len(rs.records),
        )
        raise rs.fail(NonConvergenceError(
            f"Model did not converge: no final answer after {max_turns} model calls",
            max_turns=max_turns,
        ))

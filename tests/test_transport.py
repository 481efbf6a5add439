"""Tests for the litellm transport. litellm.acompletion is always mocked."""

# mock-ok: provider calls cost money; unit tests must mock litellm

from __future__ import annotations

from typing import Any
from unittest.mock import AsyncMock, MagicMock, patch

import litellm
import pytest
from pydantic import BaseModel

from agentai.errors import AuthError, RateLimitError, TransientTransportError, TransportError
from agentai.tools import ToolDescriptor
from agentai.transport import (
    ChatTransport,
    Hooks,
    LiteLLMTransport,
    RetryPolicy,
    build_response,
    exponential_backoff,
)

MESSAGES = [{"role": "user", "content": "hi"}]
ADD = ToolDescriptor(
    name="add",
    description="Add two numbers.",
    parameters={"type": "object", "properties": {"a": {"type": "integer"}}},
)


class Person(BaseModel):
    name: str
    age: int


def _tool_call(call_id: str | None, name: str, arguments: str) -> MagicMock:
    tc = MagicMock()
    tc.id = call_id
    tc.function.name = name
    tc.function.arguments = arguments
    return tc


def _mock_response(
    content: str | None = "Hello!",
    tool_calls: list[Any] | None = None,
    finish_reason: str = "stop",
) -> MagicMock:
    mock = MagicMock()
    mock.choices = [MagicMock()]
    mock.choices[0].message.content = content
    mock.choices[0].message.tool_calls = tool_calls
    mock.choices[0].finish_reason = finish_reason
    mock.usage.prompt_tokens = 10
    mock.usage.completion_tokens = 5
    mock.usage.total_tokens = 15
    return mock


class TestBuildResponse:
    @patch("agentai.transport.litellm.completion_cost", return_value=0.001)
    def test_text(self, _cost: MagicMock) -> None:
        result = build_response(_mock_response(), "gpt-4o")
        assert result.content == "Hello!"
        assert result.is_final
        assert result.usage == {"prompt_tokens": 10, "completion_tokens": 5, "total_tokens": 15}
        assert result.cost == 0.001
        assert result.model == "gpt-4o"

    @patch("agentai.transport.litellm.completion_cost", return_value=0.0)
    def test_tool_calls(self, _cost: MagicMock) -> None:
        raw = _mock_response(
            content=None,
            tool_calls=[_tool_call("c1", "add", '{"a": 1}'), _tool_call(None, "add", "{}")],
            finish_reason="tool_calls",
        )
        result = build_response(raw, "gpt-4o")
        assert result.content == ""
        assert not result.is_final
        assert [(tc.id, tc.name) for tc in result.tool_calls] == [("c1", "add"), ("call_1", "add")]
        assert result.tool_calls[0].arguments == '{"a": 1}'

    @patch("agentai.transport.litellm.completion_cost", side_effect=Exception("unpriced"))
    def test_unpriced_model(self, _cost: MagicMock) -> None:
        assert build_response(_mock_response(), "ollama/llama3").cost == 0.0

    def test_truncated_answer(self) -> None:
        with pytest.raises(TransportError, match="truncated"):
            build_response(_mock_response(finish_reason="length"), "gpt-4o")


class TestBackoff:
    def test_capped(self) -> None:
        assert exponential_backoff(10, base_delay=1.0, max_delay=5.0) <= 5.0

    def test_grows(self) -> None:
        assert exponential_backoff(0, base_delay=1.0) <= 1.5
        assert exponential_backoff(3, base_delay=1.0, max_delay=100.0) >= 4.0


@pytest.mark.asyncio
class TestLiteLLMTransport:
    async def test_is_chat_transport(self) -> None:
        assert isinstance(LiteLLMTransport(), ChatTransport)

    @patch("agentai.transport.litellm.completion_cost", return_value=0.0)
    @patch("agentai.transport.litellm.acompletion", new_callable=AsyncMock)
    async def test_call_kwargs(self, mock_acomp: AsyncMock, _cost: MagicMock) -> None:
        mock_acomp.return_value = _mock_response(content='{"name":"Ann","age":30}')
        transport = LiteLLMTransport(timeout=30, api_base="http://localhost:4000", temperature=0.0, seed=7)
        await transport.complete("gpt-4o", MESSAGES, [ADD], Person)

        kwargs = mock_acomp.call_args.kwargs
        assert kwargs["model"] == "gpt-4o"
        assert kwargs["messages"] == MESSAGES
        assert kwargs["timeout"] == 30
        assert kwargs["api_base"] == "http://localhost:4000"
        assert kwargs["temperature"] == 0.0
        assert kwargs["seed"] == 7
        assert kwargs["tools"] == [ADD.to_openai()]
        assert kwargs["response_format"]["json_schema"]["name"] == "Person"

    @patch("agentai.transport.litellm.completion_cost", return_value=0.0)
    @patch("agentai.transport.litellm.acompletion", new_callable=AsyncMock)
    async def test_no_tools_no_schema(self, mock_acomp: AsyncMock, _cost: MagicMock) -> None:
        mock_acomp.return_value = _mock_response()
        await LiteLLMTransport().complete("gpt-4o", MESSAGES)
        kwargs = mock_acomp.call_args.kwargs
        assert "tools" not in kwargs
        assert "response_format" not in kwargs

    @patch("agentai.transport.litellm.acompletion", new_callable=AsyncMock)
    async def test_errors_wrapped_without_retry(self, mock_acomp: AsyncMock) -> None:
        mock_acomp.side_effect = litellm.AuthenticationError(
            message="Invalid API key", model="gpt-4o", llm_provider="openai"
        )
        with pytest.raises(AuthError) as exc_info:
            await LiteLLMTransport(retry=RetryPolicy(max_retries=3)).complete("gpt-4o", MESSAGES)
        assert mock_acomp.call_count == 1
        assert exc_info.value.original is mock_acomp.side_effect

    @patch("agentai.transport.litellm.acompletion", new_callable=AsyncMock)
    async def test_default_policy_never_retries(self, mock_acomp: AsyncMock) -> None:
        mock_acomp.side_effect = Exception("503 server error")
        with pytest.raises(TransientTransportError):
            await LiteLLMTransport().complete("gpt-4o", MESSAGES)
        assert mock_acomp.call_count == 1

    @patch("agentai.transport.asyncio.sleep", new_callable=AsyncMock)
    @patch("agentai.transport.litellm.completion_cost", return_value=0.0)
    @patch("agentai.transport.litellm.acompletion", new_callable=AsyncMock)
    async def test_retries_transient(
        self, mock_acomp: AsyncMock, _cost: MagicMock, mock_sleep: AsyncMock,
    ) -> None:
        mock_acomp.side_effect = [
            litellm.RateLimitError(message="Rate limit, retry", model="gpt-4o", llm_provider="openai"),
            _mock_response(content="ok"),
        ]
        on_retry = MagicMock()
        transport = LiteLLMTransport(retry=RetryPolicy(max_retries=2, on_retry=on_retry))
        result = await transport.complete("gpt-4o", MESSAGES)
        assert result.content == "ok"
        assert mock_acomp.call_count == 2
        mock_sleep.assert_awaited_once()
        attempt, error, _delay = on_retry.call_args.args
        assert attempt == 0
        assert isinstance(error, RateLimitError)

    @patch("agentai.transport.asyncio.sleep", new_callable=AsyncMock)
    @patch("agentai.transport.litellm.acompletion", new_callable=AsyncMock)
    async def test_retries_exhausted(self, mock_acomp: AsyncMock, _sleep: AsyncMock) -> None:
        mock_acomp.side_effect = Exception("connection reset")
        with pytest.raises(TransientTransportError):
            await LiteLLMTransport(retry=RetryPolicy(max_retries=2)).complete("gpt-4o", MESSAGES)
        assert mock_acomp.call_count == 3

    @patch("agentai.transport.litellm.completion_cost", return_value=0.0)
    @patch("agentai.transport.litellm.acompletion", new_callable=AsyncMock)
    async def test_hooks(self, mock_acomp: AsyncMock, _cost: MagicMock) -> None:
        mock_acomp.return_value = _mock_response()
        hooks = Hooks(before_call=MagicMock(), after_call=MagicMock(), on_error=MagicMock())
        result = await LiteLLMTransport(hooks=hooks).complete("gpt-4o", MESSAGES)
        hooks.before_call.assert_called_once()
        hooks.after_call.assert_called_once_with(result)
        hooks.on_error.assert_not_called()

    @patch("agentai.transport.litellm.acompletion", new_callable=AsyncMock)
    async def test_on_error_hook(self, mock_acomp: AsyncMock) -> None:
        mock_acomp.side_effect = Exception("something unexpected")
        hooks = Hooks(on_error=MagicMock())
        with pytest.raises(TransportError):
            await LiteLLMTransport(hooks=hooks).complete("gpt-4o", MESSAGES)
        error, attempt = hooks.on_error.call_args.args
        assert isinstance(error, TransportError)
        assert attempt == 0

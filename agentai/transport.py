"""LLM transport wrapping litellm.

The agent loop talks to the model only through a ``ChatTransport``: send the
conversation, the tool descriptors and an optional output schema, get back
either final content or a list of tool-call requests. ``LiteLLMTransport`` is
the default implementation; tests and callers can inject any object with the
same ``complete`` coroutine.

Supported providers (just change the model string):
    await transport.complete("gpt-4o", messages)                          # OpenAI
    await transport.complete("anthropic/claude-sonnet-4-5-20250929", ...)  # Anthropic
    await transport.complete("gemini/gemini-2.0-flash", ...)               # Google
    await transport.complete("ollama/llama3", ...)                         # Local Ollama

Full provider list: https://docs.litellm.ai/docs/providers
"""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass, field
from typing import Any, Callable, Protocol, runtime_checkable

import litellm

from agentai.conversation import ToolCallRequest
from agentai.errors import TransientTransportError, RateLimitError, TransportError, wrap_error
from agentai.tools import ToolDescriptor
from agentai.validation import OutputSchema, response_format_for

logger = logging.getLogger(__name__)

# Silence litellm's noisy default logging
litellm.suppress_debug_info = True


# ---------------------------------------------------------------------------
# Data
# ---------------------------------------------------------------------------


@dataclass
class ModelResponse:
    """One model turn: final content, or tool calls to execute.

    Attributes:
        content: The text response from the model (may be empty on tool turns)
        tool_calls: Requested tool calls; empty for a final answer
        usage: Token counts (prompt_tokens, completion_tokens, total_tokens)
        cost: Cost in USD for this call
        model: The model string that was used
        finish_reason: Why the model stopped: "stop", "length", "tool_calls", ...
        raw_response: The full litellm response object. Excluded from repr.
    """

    content: str = ""
    tool_calls: list[ToolCallRequest] = field(default_factory=list)
    usage: dict[str, Any] = field(default_factory=dict)
    cost: float = 0.0
    model: str = ""
    finish_reason: str = ""
    raw_response: Any = field(default=None, repr=False)

    @property
    def is_final(self) -> bool:
        return not self.tool_calls


@runtime_checkable
class ChatTransport(Protocol):
    """Boundary to the LLM provider."""

    async def complete(
        self,
        model: str,
        messages: list[dict[str, Any]],
        tools: list[ToolDescriptor] | None = None,
        output_schema: OutputSchema | None = None,
    ) -> ModelResponse: ...


# ---------------------------------------------------------------------------
# Retry / hooks
# ---------------------------------------------------------------------------


def exponential_backoff(attempt: int, base_delay: float = 1.0, max_delay: float = 30.0) -> float:
    """Exponential backoff with jitter, capped at *max_delay*."""
    delay = base_delay * (2 ** attempt)
    jitter = random.uniform(0.5, 1.5)
    return min(delay * jitter, max_delay)


@dataclass
class RetryPolicy:
    """Transport-level retry configuration.

    The agent loop never retries a failed model call; retries, when wanted,
    happen here, inside one ``complete`` call.

    Attributes:
        max_retries: How many times to retry on transient failure (0 disables).
        base_delay: Starting delay for backoff (seconds).
        max_delay: Cap on backoff delay (seconds).
        on_retry: ``(attempt, error, delay)`` callback fired before each sleep.
    """

    max_retries: int = 0
    base_delay: float = 1.0
    max_delay: float = 30.0
    on_retry: Callable[[int, Exception, float], None] | None = None


@dataclass
class Hooks:
    """Observability hooks fired around each model call.

    Attributes:
        before_call: ``(model, messages, kwargs) → None``.
        after_call: ``(ModelResponse) → None``. Fired after a successful call.
        on_error: ``(error, attempt) → None``. Fired on each failed attempt.
    """

    before_call: Callable[[str, list[dict[str, Any]], dict[str, Any]], None] | None = None
    after_call: Callable[[ModelResponse], None] | None = None
    on_error: Callable[[Exception, int], None] | None = None


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _extract_usage(response: Any) -> dict[str, Any]:
    """Extract token usage dict from litellm response."""
    usage = getattr(response, "usage", None)
    if usage is None:
        return {}
    return {
        "prompt_tokens": getattr(usage, "prompt_tokens", 0) or 0,
        "completion_tokens": getattr(usage, "completion_tokens", 0) or 0,
        "total_tokens": getattr(usage, "total_tokens", 0) or 0,
    }


def _compute_cost(response: Any) -> float:
    """Compute cost via litellm.completion_cost; 0.0 when the model is unpriced."""
    try:
        return float(litellm.completion_cost(completion_response=response))
    except Exception as exc:
        logger.debug("completion_cost unavailable: %s", exc)
        return 0.0


def _extract_tool_calls(message: Any) -> list[ToolCallRequest]:
    """Extract tool calls from response message."""
    if not getattr(message, "tool_calls", None):
        return []
    result: list[ToolCallRequest] = []
    for idx, tc in enumerate(message.tool_calls):
        result.append(ToolCallRequest(
            id=tc.id or f"call_{idx}",
            name=tc.function.name,
            arguments=tc.function.arguments,
        ))
    return result


def build_response(response: Any, model: str) -> ModelResponse:
    """Extract all fields from a litellm response into a ModelResponse."""
    choice = response.choices[0]
    content: str = choice.message.content or ""
    finish_reason: str = choice.finish_reason or ""
    tool_calls = _extract_tool_calls(choice.message)

    # Truncated final answers cannot be decoded; tool turns are left to the loop.
    if finish_reason == "length" and not tool_calls:
        raise TransportError(
            f"LLM response truncated ({len(content)} chars). "
            "Increase max_tokens or simplify the prompt."
        )

    usage = _extract_usage(response)
    cost = _compute_cost(response)
    logger.debug(
        "LLM call: model=%s tokens=%s cost=$%.6f finish=%s tool_calls=%d",
        model,
        usage.get("total_tokens"),
        cost,
        finish_reason,
        len(tool_calls),
    )
    return ModelResponse(
        content=content,
        tool_calls=tool_calls,
        usage=usage,
        cost=cost,
        model=model,
        finish_reason=finish_reason,
        raw_response=response,
    )


# ---------------------------------------------------------------------------
# litellm transport
# ---------------------------------------------------------------------------


class LiteLLMTransport:
    """ChatTransport backed by ``litellm.acompletion``.

    Holds provider settings (api base, timeout, extra litellm kwargs) as
    explicit state so several agents with different settings can coexist.
    """

    def __init__(
        self,
        *,
        timeout: float = 60,
        api_base: str | None = None,
        temperature: float | None = None,
        retry: RetryPolicy | None = None,
        hooks: Hooks | None = None,
        **litellm_kwargs: Any,
    ) -> None:
        self.timeout = timeout
        self.api_base = api_base
        self.temperature = temperature
        self.retry = retry or RetryPolicy()
        self.hooks = hooks
        self.litellm_kwargs = litellm_kwargs

    def _call_kwargs(
        self,
        model: str,
        messages: list[dict[str, Any]],
        tools: list[ToolDescriptor] | None,
        output_schema: OutputSchema | None,
    ) -> dict[str, Any]:
        call_kwargs: dict[str, Any] = {
            "model": model,
            "messages": messages,
            "timeout": self.timeout,
            **self.litellm_kwargs,
        }
        if self.api_base is not None:
            call_kwargs["api_base"] = self.api_base
        if self.temperature is not None:
            call_kwargs["temperature"] = self.temperature
        if tools:
            call_kwargs["tools"] = [t.to_openai() for t in tools]
        if output_schema is not None:
            call_kwargs["response_format"] = response_format_for(output_schema)
        return call_kwargs

    async def complete(
        self,
        model: str,
        messages: list[dict[str, Any]],
        tools: list[ToolDescriptor] | None = None,
        output_schema: OutputSchema | None = None,
    ) -> ModelResponse:
        call_kwargs = self._call_kwargs(model, messages, tools, output_schema)
        if self.hooks and self.hooks.before_call:
            self.hooks.before_call(model, messages, call_kwargs)

        policy = self.retry
        attempt = 0
        while True:
            try:
                response = await litellm.acompletion(**call_kwargs)
                result = build_response(response, model)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                error = wrap_error(e)
                if self.hooks and self.hooks.on_error:
                    self.hooks.on_error(error, attempt)
                retryable = isinstance(error, (TransientTransportError, RateLimitError))
                if not retryable or attempt >= policy.max_retries:
                    if error is e:
                        raise
                    raise error from e
                delay = exponential_backoff(attempt, policy.base_delay, policy.max_delay)
                if policy.on_retry is not None:
                    policy.on_retry(attempt, error, delay)
                logger.warning(
                    "LLM call attempt %d/%d failed (retrying in %.1fs): %s",
                    attempt + 1,
                    policy.max_retries + 1,
                    delay,
                    error,
                )
                attempt += 1
                await asyncio.sleep(delay)
                continue
            if attempt > 0:
                logger.info("LLM call succeeded after %d retries", attempt)
            if self.hooks and self.hooks.after_call:
                self.hooks.after_call(result)
            return result

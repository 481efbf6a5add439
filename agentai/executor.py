"""Concurrent execution of one turn's tool calls.

Every request yields exactly one tool-result message. Unknown tools, invalid
arguments, handler exceptions and timeouts become error results the model can
react to; none of them abort sibling calls or the run.
"""

from __future__ import annotations

import asyncio
import json as _json
import logging
import time
from dataclasses import dataclass
from typing import Any

from agentai.conversation import Message, ToolCallRequest, tool_result_message
from agentai.errors import (
    ToolArgumentsError,
    ToolError,
    ToolExecutionError,
    ToolNotFoundError,
    ToolTimeoutError,
)
from agentai.tools import ToolRegistry
from agentai.validation import validate_arguments

logger = logging.getLogger(__name__)

DEFAULT_TOOL_RESULT_MAX_LENGTH: int = 50_000
"""Maximum character length for a single tool result. Longer results are truncated."""


@dataclass
class ToolCallRecord:
    """Record of a single tool call during a run."""

    tool: str
    call_id: str
    arguments: Any
    source: str = "unknown"
    result: str | None = None
    error: str | None = None
    error_type: str | None = None
    latency_s: float = 0.0

    @property
    def ok(self) -> bool:
        return self.error is None


def _truncate(text: str, max_length: int) -> str:
    """Truncate text if it exceeds max_length, appending a notice."""
    if max_length <= 0 or len(text) <= max_length:
        return text
    return text[:max_length] + f"\n... [truncated at {max_length} chars]"


def _serialize_result(raw_result: Any) -> str:
    # str passed through, anything else json.dumps
    if isinstance(raw_result, str):
        return raw_result
    if hasattr(raw_result, "model_dump_json"):
        return raw_result.model_dump_json()
    return _json.dumps(raw_result, default=str)


async def _run_one(
    request: ToolCallRequest,
    registry: ToolRegistry,
    tool_timeout: float | None,
    max_result_length: int,
) -> tuple[ToolCallRecord, Message]:
    record = ToolCallRecord(tool=request.name, call_id=request.id, arguments=request.arguments)
    t0 = time.monotonic()
    try:
        handler = registry.resolve(request.name)
        record.source = handler.source
        try:
            arguments = validate_arguments(handler.descriptor, request.arguments)
        except ToolError:
            raise
        except Exception as exc:
            raise ToolArgumentsError(
                f"Validation error: {type(exc).__name__}: {exc}",
                tool_name=request.name,
                original=exc,
            ) from exc
        record.arguments = arguments
        try:
            if tool_timeout is None:
                raw_result = await handler.invoke(arguments)
            else:
                try:
                    raw_result = await asyncio.wait_for(handler.invoke(arguments), timeout=tool_timeout)
                except asyncio.TimeoutError as exc:
                    raise ToolTimeoutError(
                        f"Tool {request.name!r} timed out after {tool_timeout}s",
                        tool_name=request.name,
                    ) from exc
            content = _truncate(_serialize_result(raw_result), max_result_length)
        except ToolError:
            raise
        except Exception as exc:
            raise ToolExecutionError(
                f"{type(exc).__name__}: {exc}", tool_name=request.name, original=exc,
            ) from exc
        record.result = content
    except ToolError as exc:
        exc.tool_name = exc.tool_name or request.name
        exc.call_id = request.id
        record.error = str(exc)
        record.error_type = type(exc).__name__
        content = _json.dumps({"error": record.error})
        if isinstance(exc, ToolNotFoundError):
            logger.warning("Model requested unknown tool %r (call %s)", request.name, request.id)
        else:
            logger.warning(
                "Tool %r failed (call %s): %s", request.name, request.id, record.error,
            )

    record.latency_s = round(time.monotonic() - t0, 3)
    logger.debug(
        "Tool %r call %s finished in %.3fs ok=%s",
        request.name, request.id, record.latency_s, record.ok,
    )
    return record, tool_result_message(request.id, content, name=request.name)


async def execute_tool_calls(
    requests: list[ToolCallRequest],
    registry: ToolRegistry,
    *,
    tool_timeout: float | None = None,
    max_result_length: int = DEFAULT_TOOL_RESULT_MAX_LENGTH,
) -> tuple[list[ToolCallRecord], list[Message]]:
    """Execute all tool calls of one assistant turn concurrently.

    Args:
        requests: Tool calls from the model response.
        registry: Registry resolving tool names to handlers.
        tool_timeout: Per-call deadline in seconds, None for no bound.
        max_result_length: Max chars per tool result (truncated if longer).

    Returns:
        (records, tool_messages), one pair per request, in completion order.
        The correlation id on each message is authoritative, not its position.
    """
    if not requests:
        return [], []
    completed: list[tuple[ToolCallRecord, Message]] = []

    async def _collect(request: ToolCallRequest) -> None:
        completed.append(await _run_one(request, registry, tool_timeout, max_result_length))

    await asyncio.gather(*(_collect(r) for r in requests))
    records = [rec for rec, _ in completed]
    messages = [msg for _, msg in completed]
    return records, messages

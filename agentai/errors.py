"""Structured error types for agentai.

Callers catch the terminal error categories of a run instead of parsing raw
provider or protocol exceptions:

    from agentai.errors import NonConvergenceError, OutputDecodeError, TransportError

    try:
        result = await agent.run("gpt-4o", "What is 2+2?")
    except NonConvergenceError as exc:
        # Model kept requesting tools; inspect exc.conversation
        ...
    except TransportError:
        # Provider failed; retry policy belongs to the caller
        ...

Tool-level errors (``ToolError`` and subclasses) never escape a run: the tool
executor converts them into error tool-results the model can react to.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from agentai.conversation import Conversation


class AgentError(Exception):
    """Base for all agentai errors."""

    def __init__(
        self,
        message: str,
        *,
        original: BaseException | None = None,
        conversation: Conversation | None = None,
    ) -> None:
        super().__init__(message)
        self.original = original
        self.conversation = conversation


class AgentConfigurationError(AgentError):
    """Invalid agent, tool or server configuration."""


class ConversationStateError(AgentError):
    """An append would break the request/result pairing of a conversation."""


# ---------------------------------------------------------------------------
# LLM transport
# ---------------------------------------------------------------------------


class TransportError(AgentError):
    """The LLM round trip failed. Fatal to the run, never retried here."""


class RateLimitError(TransportError):
    """Transient rate limit (429)."""


class QuotaExhaustedError(TransportError):
    """Permanent quota/billing exhaustion."""


class AuthError(TransportError):
    """Authentication failed (401/403)."""


class ContentFilterError(TransportError):
    """Content policy violation, request was blocked."""


class ModelNotFoundError(TransportError):
    """Model doesn't exist (404)."""


class TransientTransportError(TransportError):
    """Server error (500/502/503), timeout or connection failure."""


# ---------------------------------------------------------------------------
# Tools (recovered locally by the executor)
# ---------------------------------------------------------------------------


class ToolError(AgentError):
    """A single tool call failed. Reported back to the model as a tool-result."""

    def __init__(
        self,
        message: str,
        *,
        tool_name: str = "",
        call_id: str = "",
        original: BaseException | None = None,
    ) -> None:
        super().__init__(message, original=original)
        self.tool_name = tool_name
        self.call_id = call_id


class ToolNotFoundError(ToolError):
    """The model requested a tool that is not registered."""


class ToolArgumentsError(ToolError):
    """Tool-call arguments failed validation against the tool's schema."""


class ToolExecutionError(ToolError):
    """The tool handler raised."""


class ToolTimeoutError(ToolError):
    """The tool handler did not finish within the per-tool deadline."""


class RemoteToolError(ToolError):
    """An MCP server reported an error for a tool call."""


# ---------------------------------------------------------------------------
# Run termination
# ---------------------------------------------------------------------------


class OutputDecodeError(AgentError):
    """The final answer does not conform to the requested output schema."""

    def __init__(self, message: str, *, raw_output: str = "", **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.raw_output = raw_output


class NonConvergenceError(AgentError):
    """The model never produced a final answer within max_turns round trips."""

    def __init__(self, message: str, *, max_turns: int, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.max_turns = max_turns


class AgentCancelledError(AgentError):
    """The run was cancelled or exceeded its run deadline."""


class McpConnectionError(AgentError):
    """An MCP server could not be reached or failed its handshake."""

    def __init__(self, message: str, *, server: str, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.server = server


# Patterns that indicate permanent quota exhaustion (not transient rate limit).
_QUOTA_PATTERNS = [
    "quota",
    "billing",
    "insufficient",
    "exceeded your current",
    "plan and billing",
    "account deactivated",
    "account suspended",
]


def _litellm_error_types(module: Any, names: tuple[str, ...]) -> tuple[type[BaseException], ...]:
    """Resolve optional litellm exception classes without static attribute coupling."""
    out: list[type[BaseException]] = []
    for name in names:
        candidate = getattr(module, name, None)
        if isinstance(candidate, type) and issubclass(candidate, BaseException):
            out.append(candidate)
    return tuple(out)


def classify_error(error: BaseException) -> type[TransportError]:
    """Classify a provider exception into a TransportError subtype.

    Uses litellm exception types when available, falls back to string matching.
    """
    import litellm as _lt

    auth_types = _litellm_error_types(_lt, ("AuthenticationError", "PermissionDeniedError"))
    if auth_types and isinstance(error, auth_types):
        return AuthError

    not_found_types = _litellm_error_types(_lt, ("NotFoundError",))
    if not_found_types and isinstance(error, not_found_types):
        return ModelNotFoundError

    content_types = _litellm_error_types(_lt, ("ContentPolicyViolationError",))
    if content_types and isinstance(error, content_types):
        return ContentFilterError

    budget_types = _litellm_error_types(_lt, ("BudgetExceededError",))
    if budget_types and isinstance(error, budget_types):
        return QuotaExhaustedError

    rate_types = _litellm_error_types(_lt, ("RateLimitError",))
    if rate_types and isinstance(error, rate_types):
        error_str = str(error).lower()
        if any(p in error_str for p in _QUOTA_PATTERNS):
            return QuotaExhaustedError
        return RateLimitError

    transient_types = _litellm_error_types(
        _lt,
        (
            "InternalServerError",
            "ServiceUnavailableError",
            "APIConnectionError",
            "BadGatewayError",
            "Timeout",
        ),
    )
    if transient_types and isinstance(error, transient_types):
        return TransientTransportError
    if isinstance(error, (TimeoutError, ConnectionError)):
        return TransientTransportError

    # Fallback: string pattern matching
    error_str = str(error).lower()

    if any(p in error_str for p in _QUOTA_PATTERNS):
        return QuotaExhaustedError
    if "401" in error_str or "authentication" in error_str or "unauthorized" in error_str:
        return AuthError
    if "403" in error_str or "forbidden" in error_str or "permission" in error_str:
        return AuthError
    if "404" in error_str or "not found" in error_str or "does not exist" in error_str:
        return ModelNotFoundError
    if "content" in error_str and ("policy" in error_str or "filter" in error_str):
        return ContentFilterError
    if "rate" in error_str and "limit" in error_str:
        return RateLimitError
    if any(p in error_str for p in ("timeout", "timed out", "connection", "500", "502", "503", "server error")):
        return TransientTransportError

    return TransportError


def wrap_error(error: BaseException) -> TransportError:
    """Wrap a provider exception in the appropriate TransportError subclass.

    If the error is already a TransportError, returns it unchanged.
    """
    if isinstance(error, TransportError):
        return error
    cls = classify_error(error)
    return cls(str(error) or type(error).__name__, original=error)

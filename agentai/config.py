"""Typed runtime configuration for agentai."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, TypeVar

from pydantic import ValidationError

from agentai.errors import AgentConfigurationError
from agentai.executor import DEFAULT_TOOL_RESULT_MAX_LENGTH
from agentai.mcp import McpServerConfig

logger = logging.getLogger(__name__)

DEFAULT_MAX_TURNS: int = 20
"""Maximum model round trips per run before failing with NonConvergenceError."""

MAX_TURNS_ENV = "AGENTAI_MAX_TURNS"
TOOL_TIMEOUT_ENV = "AGENTAI_TOOL_TIMEOUT"
RUN_TIMEOUT_ENV = "AGENTAI_RUN_TIMEOUT"
TOOL_RESULT_MAX_LENGTH_ENV = "AGENTAI_TOOL_RESULT_MAX_LENGTH"

T = TypeVar("T")


@dataclass(frozen=True)
class AgentConfig:
    """Run policy resolved once and passed explicitly to the agent.

    Attributes:
        max_turns: Model round trips allowed per run.
        tool_timeout: Per-tool deadline in seconds (None = unbounded).
        run_timeout: Whole-run deadline in seconds (None = unbounded).
        tool_result_max_length: Max chars of a tool result fed back to the model.
    """

    max_turns: int = DEFAULT_MAX_TURNS
    tool_timeout: float | None = None
    run_timeout: float | None = None
    tool_result_max_length: int = DEFAULT_TOOL_RESULT_MAX_LENGTH

    def __post_init__(self) -> None:
        if self.max_turns < 1:
            raise AgentConfigurationError(f"max_turns must be >= 1, got {self.max_turns}")
        for label, value in (("tool_timeout", self.tool_timeout), ("run_timeout", self.run_timeout)):
            if value is not None and value <= 0:
                raise AgentConfigurationError(f"{label} must be > 0, got {value}")

    @classmethod
    def from_env(cls) -> "AgentConfig":
        """Build typed config from environment variables, warning on bad values."""
        return cls(
            max_turns=_env_value(MAX_TURNS_ENV, int, DEFAULT_MAX_TURNS, lambda v: v >= 1),
            tool_timeout=_env_value(TOOL_TIMEOUT_ENV, float, None, lambda v: v > 0),
            run_timeout=_env_value(RUN_TIMEOUT_ENV, float, None, lambda v: v > 0),
            tool_result_max_length=_env_value(
                TOOL_RESULT_MAX_LENGTH_ENV, int, DEFAULT_TOOL_RESULT_MAX_LENGTH, lambda v: v > 0,
            ),
        )


def _env_value(
    name: str,
    parse: Callable[[str], T],
    default: T | None,
    valid: Callable[[T], bool],
) -> Any:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        value = parse(raw)
    except ValueError:
        value = None
    if value is None or not valid(value):
        logger.warning("Invalid %s=%r. Defaulting to %r.", name, raw, default)
        return default
    return value


def _load_mapping(path: Path) -> dict[str, Any]:
    if not path.exists():
        raise AgentConfigurationError(f"MCP config file not found: {path}")
    text = path.read_text()
    suffix = path.suffix.lower()
    if suffix == ".json":
        data = json.loads(text)
    elif suffix in {".yaml", ".yml"}:
        import yaml  # type: ignore[import-untyped]

        data = yaml.safe_load(text)
    else:
        raise AgentConfigurationError(
            f"Unsupported MCP config extension {suffix!r} for {path}. "
            "Use .json, .yaml, or .yml."
        )
    if not isinstance(data, dict):
        raise AgentConfigurationError(f"MCP config root must be a mapping. Got: {type(data).__name__}")
    return data


def parse_mcp_servers(data: dict[str, Any]) -> list[McpServerConfig]:
    """Parse ``{"mcpServers": {name: {...}}}`` (or a bare name → config map)."""
    servers = data.get("mcpServers", data)
    if not isinstance(servers, dict):
        raise AgentConfigurationError("'mcpServers' must be a mapping of name -> server config")
    configs: list[McpServerConfig] = []
    for name, raw in servers.items():
        if not isinstance(raw, dict):
            raise AgentConfigurationError(f"MCP server {name!r} config must be a mapping")
        try:
            configs.append(McpServerConfig(**{"name": name, **raw}))
        except ValidationError as exc:
            raise AgentConfigurationError(f"Invalid MCP server {name!r}: {exc}") from exc
    return configs


def load_mcp_servers(path: str | Path) -> list[McpServerConfig]:
    """Load MCP server configs from a JSON or YAML file, in file order."""
    return parse_mcp_servers(_load_mapping(Path(path)))

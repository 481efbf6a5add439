"""Command-line entry point for agentai.

Usage:
    python -m agentai run gpt-4o "What time is it in Tokyo?" --builtin
    python -m agentai run gpt-4o "Who is Ann?" --schema person.json --format json
    python -m agentai run gpt-4o "Convert 10:00 NY to Tokyo" --mcp-config mcp.yaml
    python -m agentai tools --builtin --mcp-config mcp.json
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from dataclasses import asdict
from pathlib import Path
from typing import Any

from agentai.agent import Agent
from agentai.config import AgentConfig, load_mcp_servers
from agentai.errors import AgentConfigurationError, AgentError

DEFAULT_SYSTEM_PROMPT = "You are a helpful assistant. Use the available tools when they help."


def _builtin_arg(values: list[str] | None) -> Any:
    if values is None:
        return False
    return values or True


def _build_agent(args: argparse.Namespace) -> Agent:
    servers = load_mcp_servers(args.mcp_config) if args.mcp_config else []
    config = AgentConfig.from_env()
    if getattr(args, "max_turns", None) is not None:
        config = AgentConfig(
            max_turns=args.max_turns,
            tool_timeout=config.tool_timeout,
            run_timeout=config.run_timeout,
            tool_result_max_length=config.tool_result_max_length,
        )
    return Agent(
        getattr(args, "system", DEFAULT_SYSTEM_PROMPT),
        builtin_tools=_builtin_arg(args.builtin),
        mcp_servers=servers,
        config=config,
    )


# ---------------------------------------------------------------------------
# run subcommand
# ---------------------------------------------------------------------------


def _load_schema(path: str) -> dict[str, Any]:
    try:
        return json.loads(Path(path).read_text())
    except OSError as exc:
        raise AgentConfigurationError(f"Cannot read schema file {path}: {exc}") from exc
    except json.JSONDecodeError as exc:
        raise AgentConfigurationError(f"Schema file {path} is not valid JSON: {exc}") from exc


async def _run(args: argparse.Namespace) -> int:
    schema = _load_schema(args.schema) if args.schema else None
    agent = _build_agent(args)
    try:
        result = await agent.run(args.model, args.prompt, output_schema=schema)
    except AgentError as exc:
        print(f"{type(exc).__name__}: {exc}", file=sys.stderr)
        return 1

    if args.format == "json":
        print(json.dumps({
            "output": result.output,
            "model": result.model,
            "turns": result.turns,
            "cost": result.cost,
            "usage": result.usage,
            "tool_calls": [asdict(r) for r in result.tool_calls],
        }, indent=2, default=str))
    elif isinstance(result.output, str):
        print(result.output)
    else:
        print(json.dumps(result.output, indent=2, default=str))
    return 0


# ---------------------------------------------------------------------------
# tools subcommand
# ---------------------------------------------------------------------------


async def _tools(args: argparse.Namespace) -> int:
    async with _build_agent(args) as agent:
        descriptors = agent.registry.snapshot()
        if args.format == "json":
            print(json.dumps([d.to_openai() for d in descriptors], indent=2))
            return 0
        if not descriptors:
            print("No tools registered.")
            return 0
        width = max(len(d.name) for d in descriptors)
        for d in descriptors:
            source = agent.registry.resolve(d.name).source
            summary = d.description.splitlines()[0] if d.description else ""
            print(f"{d.name:<{width}}  [{source}]  {summary}")
    return 0


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        prog="agentai",
        description="Run LLM agents with local, built-in and MCP tools",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    sub = parser.add_subparsers(dest="command", help="Available commands")

    def add_tool_args(p: argparse.ArgumentParser) -> None:
        p.add_argument("--mcp-config", help="JSON/YAML file with an mcpServers mapping")
        p.add_argument(
            "--builtin", nargs="*", metavar="GROUP",
            help="Enable built-in tools (default groups, or the named ones: datetime, location, web)",
        )
        p.add_argument("--format", choices=["text", "json"], default="text", help="Output format")

    run_p = sub.add_parser("run", help="Run one request through an agent")
    run_p.add_argument("model", help="Model string, e.g. gpt-4o or gemini/gemini-2.0-flash")
    run_p.add_argument("prompt", help="User input")
    run_p.add_argument("--system", default=DEFAULT_SYSTEM_PROMPT, help="System prompt")
    run_p.add_argument("--schema", help="JSON Schema file for structured output")
    run_p.add_argument("--max-turns", type=int, help="Maximum model round trips")
    add_tool_args(run_p)

    tools_p = sub.add_parser("tools", help="List the tools an agent would expose")
    add_tool_args(tools_p)

    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    try:
        if args.command == "run":
            code = asyncio.run(_run(args))
        else:
            code = asyncio.run(_tools(args))
    except AgentError as exc:
        print(f"{type(exc).__name__}: {exc}", file=sys.stderr)
        code = 1
    sys.exit(code)


if __name__ == "__main__":
    main()

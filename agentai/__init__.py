"""Conversational LLM agents with local, built-in and MCP tools.

Swap any model by changing the model string. Everything else stays the same.

Usage:
    from agentai import Agent, tool

    @tool
    def add(a: int, b: int) -> int:
        '''Add two integers.'''
        return a + b

    async with Agent("You are a calculator agent", tools=[add]) as agent:
        result = await agent.run("gpt-4o", "what is 2+2?")
        print(result.output)

    # Sync
    result = Agent("You are helpful.", builtin_tools=True).run_sync(
        "gemini/gemini-2.0-flash", "What day of the week was 2024-01-01?",
    )

    # MCP servers
    servers = load_mcp_servers("mcp.json")
    async with Agent("You are helpful.", mcp_servers=servers) as agent:
        ...
"""

from agentai.agent import Agent, AgentRunResult, AgentState
from agentai.builtin import builtin_tools
from agentai.config import DEFAULT_MAX_TURNS, AgentConfig, load_mcp_servers, parse_mcp_servers
from agentai.conversation import Conversation, Message, ToolCallRequest
from agentai.errors import (
    AgentCancelledError,
    AgentConfigurationError,
    AgentError,
    AuthError,
    ContentFilterError,
    ConversationStateError,
    McpConnectionError,
    ModelNotFoundError,
    NonConvergenceError,
    OutputDecodeError,
    QuotaExhaustedError,
    RateLimitError,
    RemoteToolError,
    ToolArgumentsError,
    ToolError,
    ToolExecutionError,
    ToolNotFoundError,
    ToolTimeoutError,
    TransientTransportError,
    TransportError,
)
from agentai.executor import DEFAULT_TOOL_RESULT_MAX_LENGTH, ToolCallRecord, execute_tool_calls
from agentai.mcp import McpServerConfig, McpServerConnection, McpTool
from agentai.tools import FunctionTool, ToolDescriptor, ToolHandler, ToolRegistry, tool
from agentai.transport import ChatTransport, Hooks, LiteLLMTransport, ModelResponse, RetryPolicy
from agentai.validation import decode_final_answer, validate_arguments

__all__ = [
    # Agent
    "Agent",
    "AgentConfig",
    "AgentRunResult",
    "AgentState",
    "DEFAULT_MAX_TURNS",
    # Tools
    "FunctionTool",
    "ToolDescriptor",
    "ToolHandler",
    "ToolRegistry",
    "tool",
    "builtin_tools",
    "ToolCallRecord",
    "execute_tool_calls",
    "DEFAULT_TOOL_RESULT_MAX_LENGTH",
    # MCP
    "McpServerConfig",
    "McpServerConnection",
    "McpTool",
    "load_mcp_servers",
    "parse_mcp_servers",
    # Conversation
    "Conversation",
    "Message",
    "ToolCallRequest",
    # Transport
    "ChatTransport",
    "Hooks",
    "LiteLLMTransport",
    "ModelResponse",
    "RetryPolicy",
    # Validation
    "decode_final_answer",
    "validate_arguments",
    # Errors
    "AgentCancelledError",
    "AgentConfigurationError",
    "AgentError",
    "AuthError",
    "ContentFilterError",
    "ConversationStateError",
    "McpConnectionError",
    "ModelNotFoundError",
    "NonConvergenceError",
    "OutputDecodeError",
    "QuotaExhaustedError",
    "RateLimitError",
    "RemoteToolError",
    "ToolArgumentsError",
    "ToolError",
    "ToolExecutionError",
    "ToolNotFoundError",
    "ToolTimeoutError",
    "TransientTransportError",
    "TransportError",
]

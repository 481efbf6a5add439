"""Append-only conversation history for one agent run."""

from __future__ import annotations

import json as _json
import logging
from dataclasses import dataclass, field
from typing import Any, Iterator, Literal

from agentai.errors import ConversationStateError

logger = logging.getLogger(__name__)

Role = Literal["system", "user", "assistant", "tool"]


@dataclass(frozen=True)
class ToolCallRequest:
    """One tool invocation requested by the model."""

    id: str
    name: str
    arguments: Any = None

    def to_openai(self) -> dict[str, Any]:
        args = self.arguments
        if not isinstance(args, str):
            args = _json.dumps(args if args is not None else {})
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": args},
        }

    @classmethod
    def from_openai(cls, tc: dict[str, Any]) -> "ToolCallRequest":
        fn = tc.get("function", {}) or {}
        return cls(
            id=str(tc.get("id") or ""),
            name=str(fn.get("name") or ""),
            arguments=fn.get("arguments", "{}"),
        )


@dataclass(frozen=True)
class Message:
    """A single conversation entry in OpenAI chat shape."""

    role: Role
    content: Any = ""
    tool_calls: tuple[ToolCallRequest, ...] = ()
    tool_call_id: str | None = None
    name: str | None = None

    def to_openai(self) -> dict[str, Any]:
        content = self.content
        if content is not None and not isinstance(content, str):
            content = _json.dumps(content, default=str)
        msg: dict[str, Any] = {"role": self.role, "content": content}
        if self.tool_calls:
            msg["tool_calls"] = [tc.to_openai() for tc in self.tool_calls]
        if self.tool_call_id is not None:
            msg["tool_call_id"] = self.tool_call_id
        if self.name is not None and self.role == "tool":
            msg["name"] = self.name
        return msg


def tool_result_message(call_id: str, content: str, name: str | None = None) -> Message:
    return Message(role="tool", content=content, tool_call_id=call_id, name=name)


@dataclass
class Conversation:
    """Ordered message history.

    A new model call may only be issued once every tool call requested by the
    last assistant turn has a matching tool-result appended.
    """

    messages: list[Message] = field(default_factory=list)
    _pending: dict[str, str] = field(default_factory=dict, repr=False)

    @classmethod
    def start(cls, system_prompt: str, user_input: str | None = None) -> "Conversation":
        conv = cls()
        if system_prompt.strip():
            conv.messages.append(Message(role="system", content=system_prompt.strip()))
        if user_input is not None:
            conv.append_user(user_input)
        return conv

    @property
    def pending_call_ids(self) -> list[str]:
        return list(self._pending)

    def _require_no_pending(self, action: str) -> None:
        if self._pending:
            raise ConversationStateError(
                f"Cannot {action}: unanswered tool calls {sorted(self._pending)}",
                conversation=self,
            )

    def append_user(self, content: Any) -> Message:
        self._require_no_pending("append a user message")
        msg = Message(role="user", content=content)
        self.messages.append(msg)
        return msg

    def append_assistant(
        self,
        content: Any,
        tool_calls: list[ToolCallRequest] | tuple[ToolCallRequest, ...] = (),
    ) -> Message:
        self._require_no_pending("append an assistant message")
        ids = [tc.id for tc in tool_calls]
        if len(set(ids)) != len(ids):
            raise ConversationStateError(
                f"Duplicate tool call ids in one assistant turn: {ids}",
                conversation=self,
            )
        msg = Message(role="assistant", content=content, tool_calls=tuple(tool_calls))
        self.messages.append(msg)
        for tc in tool_calls:
            self._pending[tc.id] = tc.name
        return msg

    def append_tool_results(self, results: list[Message]) -> None:
        """Append the tool-results of one batch; each must answer a pending call."""
        seen: set[str] = set()
        for msg in results:
            if msg.role != "tool" or msg.tool_call_id is None:
                raise ConversationStateError(
                    f"Not a tool result: {msg!r}", conversation=self,
                )
            if msg.tool_call_id not in self._pending or msg.tool_call_id in seen:
                raise ConversationStateError(
                    f"Tool result {msg.tool_call_id!r} does not answer a pending tool call",
                    conversation=self,
                )
            seen.add(msg.tool_call_id)
        for msg in results:
            self.messages.append(msg)
            self._pending.pop(msg.tool_call_id or "", None)

    def ensure_ready_for_model(self) -> None:
        self._require_no_pending("call the model")

    def to_openai(self) -> list[dict[str, Any]]:
        return [m.to_openai() for m in self.messages]

    def __iter__(self) -> Iterator[Message]:
        return iter(self.messages)

    def __len__(self) -> int:
        return len(self.messages)

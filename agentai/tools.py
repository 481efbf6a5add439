"""Tool descriptors, handlers and the tool registry.

Generate OpenAI-compatible tool schemas from plain Python functions and keep
every tool an agent can call (local, built-in, MCP-bridged) behind one
invocation capability.

Usage:
    from agentai.tools import ToolRegistry, tool

    @tool
    async def search(query: str, limit: int = 10) -> str:
        '''Search for entities.'''
        ...

    registry = ToolRegistry()
    registry.add(search)
    registry.openai_tools()  # ready for litellm tools= parameter
"""

from __future__ import annotations

import asyncio
import copy
import inspect
import logging
from dataclasses import dataclass, field
from typing import (
    Any,
    Callable,
    Literal,
    Protocol,
    Union,
    get_args,
    get_origin,
    get_type_hints,
    runtime_checkable,
)

from pydantic import BaseModel, TypeAdapter, ValidationError

from agentai.errors import AgentConfigurationError, ToolArgumentsError, ToolNotFoundError

logger = logging.getLogger(__name__)

# Python type → JSON Schema type
_TYPE_MAP: dict[type, str] = {
    str: "string",
    int: "integer",
    float: "number",
    bool: "boolean",
}

LOCAL_SOURCE = "local"
BUILTIN_SOURCE = "builtin"


# ---------------------------------------------------------------------------
# Data
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ToolDescriptor:
    """Static metadata the model sees for one tool."""

    name: str
    description: str = ""
    parameters: dict[str, Any] = field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )

    def to_openai(self) -> dict[str, Any]:
        """Render as an OpenAI function-calling tool schema."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }


@runtime_checkable
class ToolHandler(Protocol):
    """Anything the registry can invoke: local functions, built-ins, MCP proxies."""

    descriptor: ToolDescriptor
    source: str

    async def invoke(self, arguments: dict[str, Any]) -> Any: ...


# ---------------------------------------------------------------------------
# Schema derivation
# ---------------------------------------------------------------------------


def _is_model_type(tp: Any) -> bool:
    return isinstance(tp, type) and issubclass(tp, BaseModel)


def _contains_model(tp: Any) -> bool:
    if _is_model_type(tp):
        return True
    return any(_contains_model(a) for a in get_args(tp))


def _hoist_defs(node: Any, defs: dict[str, Any]) -> None:
    """Move nested `$defs` up to *defs*; pydantic refs point at `#/$defs/...` from the root."""
    if isinstance(node, dict):
        nested = node.pop("$defs", None)
        if isinstance(nested, dict):
            for def_name, sub in nested.items():
                _hoist_defs(sub, defs)
                defs.setdefault(def_name, sub)
        for value in node.values():
            _hoist_defs(value, defs)
    elif isinstance(node, list):
        for item in node:
            _hoist_defs(item, defs)


def _type_to_json_schema(tp: Any) -> dict[str, Any]:
    """Convert a Python type annotation to a JSON Schema fragment.

    Supports: str, int, float, bool, list[X], dict, Optional[X], Literal[...],
    pydantic models. Raises ValueError for unsupported types.
    """
    origin = get_origin(tp)
    args = get_args(tp)

    # Optional[X] → unwrap to X (nullable not needed for OpenAI function calling)
    if origin is Union:
        non_none = [a for a in args if a is not type(None)]
        if len(non_none) == 1:
            return _type_to_json_schema(non_none[0])

    if origin is Literal:
        values = list(args)
        schema: dict[str, Any] = {"enum": values}
        value_types = {type(v) for v in values}
        if len(value_types) == 1 and value_types.issubset(_TYPE_MAP):
            schema["type"] = _TYPE_MAP[value_types.pop()]
        return schema

    # list[X]
    if origin is list or tp is list:
        schema = {"type": "array"}
        if args:
            schema["items"] = _type_to_json_schema(args[0])
        return schema

    # dict (any dict)
    if origin is dict or tp is dict:
        return {"type": "object"}

    if _is_model_type(tp):
        return copy.deepcopy(tp.model_json_schema())

    # Basic types
    if tp in _TYPE_MAP:
        return {"type": _TYPE_MAP[tp]}

    raise ValueError(
        f"Unsupported type annotation: {tp!r}. "
        f"Supported: str, int, float, bool, list[X], dict, Optional[X], Literal, pydantic models."
    )


def _description_from_doc(fn: Callable[..., Any]) -> str:
    override_desc = getattr(fn, "__tool_description__", None)
    if isinstance(override_desc, str) and override_desc.strip():
        return override_desc.strip()
    doc = inspect.getdoc(fn)
    if not doc:
        return ""
    # Paragraph before the Args:/Returns: sections
    lines: list[str] = []
    for line in doc.splitlines():
        if line.strip().rstrip(":") in {"Args", "Arguments", "Returns", "Raises"}:
            break
        lines.append(line)
    return "\n".join(lines).strip()


def callable_to_descriptor(
    fn: Callable[..., Any],
    *,
    name: str | None = None,
    description: str | None = None,
) -> ToolDescriptor:
    """Derive a ToolDescriptor from a Python callable.

    Inspects the function's name, type hints, and docstring.
    Every parameter must have a type annotation (raises AgentConfigurationError otherwise).
    """
    sig = inspect.signature(fn)
    try:
        hints = get_type_hints(fn)
    except Exception:
        hints = {}

    tool_name = name or getattr(fn, "__name__", "")
    if not tool_name:
        raise AgentConfigurationError(f"Cannot derive a tool name from {fn!r}")

    properties: dict[str, Any] = {}
    required: list[str] = []

    for param_name, param in sig.parameters.items():
        if param_name in ("self", "cls"):
            continue
        if param.kind in (inspect.Parameter.VAR_POSITIONAL, inspect.Parameter.VAR_KEYWORD):
            continue

        if param_name not in hints:
            raise AgentConfigurationError(
                f"Parameter {param_name!r} of {tool_name!r} has no type annotation. "
                f"All parameters must be typed for schema generation."
            )

        try:
            prop = _type_to_json_schema(hints[param_name])
        except ValueError as exc:
            raise AgentConfigurationError(f"Tool {tool_name!r}: {exc}") from exc

        if param.default is not inspect.Parameter.empty:
            if not isinstance(param.default, BaseModel):
                prop["default"] = param.default
        else:
            required.append(param_name)

        properties[param_name] = prop

    parameters: dict[str, Any] = {
        "type": "object",
        "properties": properties,
    }
    if required:
        parameters["required"] = required
    defs: dict[str, Any] = {}
    _hoist_defs(properties, defs)
    if defs:
        parameters["$defs"] = defs

    return ToolDescriptor(
        name=tool_name,
        description=description if description is not None else _description_from_doc(fn),
        parameters=parameters,
    )


# ---------------------------------------------------------------------------
# Handlers
# ---------------------------------------------------------------------------


class FunctionTool:
    """In-process tool backed by a sync or async Python callable.

    Sync callables run in a worker thread so a slow local tool does not block
    sibling tool calls of the same turn.
    """

    def __init__(
        self,
        fn: Callable[..., Any],
        descriptor: ToolDescriptor,
        *,
        source: str = LOCAL_SOURCE,
    ) -> None:
        self.fn = fn
        self.descriptor = descriptor
        self.source = source
        try:
            hints = get_type_hints(fn)
        except Exception:
            hints = {}
        # Annotations carrying pydantic models anywhere (Model, Optional[Model], list[Model])
        self._adapters: dict[str, TypeAdapter[Any]] = {
            k: TypeAdapter(v) for k, v in hints.items() if k != "return" and _contains_model(v)
        }

    @classmethod
    def from_callable(
        cls,
        fn: Callable[..., Any],
        *,
        name: str | None = None,
        description: str | None = None,
        source: str = LOCAL_SOURCE,
    ) -> "FunctionTool":
        return cls(fn, callable_to_descriptor(fn, name=name, description=description), source=source)

    @classmethod
    def from_schema(
        cls,
        name: str,
        description: str,
        parameters: dict[str, Any],
        fn: Callable[..., Any],
    ) -> "FunctionTool":
        """Explicit builder: caller provides name, schema and handler directly."""
        return cls(fn, ToolDescriptor(name=name, description=description, parameters=parameters))

    @property
    def name(self) -> str:
        return self.descriptor.name

    async def invoke(self, arguments: dict[str, Any]) -> Any:
        kwargs = dict(arguments)
        for key, adapter in self._adapters.items():
            if key not in kwargs:
                continue
            try:
                kwargs[key] = adapter.validate_python(kwargs[key])
            except ValidationError as exc:
                raise ToolArgumentsError(
                    f"Validation error: {key}: {exc}", tool_name=self.name, original=exc,
                ) from exc
        if inspect.iscoroutinefunction(self.fn):
            return await self.fn(**kwargs)
        result = await asyncio.to_thread(self.fn, **kwargs)
        if inspect.isawaitable(result):
            result = await result
        return result

    def __call__(self, *args: Any, **kwargs: Any) -> Any:
        return self.fn(*args, **kwargs)

    def __repr__(self) -> str:
        return f"FunctionTool(name={self.name!r}, source={self.source!r})"


def tool(
    fn: Callable[..., Any] | None = None,
    *,
    name: str | None = None,
    description: str | None = None,
) -> Any:
    """Decorator turning a typed function into a FunctionTool.

    Usable bare (``@tool``) or with overrides (``@tool(name="add")``). The
    decorated object stays directly callable.
    """

    def wrap(f: Callable[..., Any]) -> FunctionTool:
        return FunctionTool.from_callable(f, name=name, description=description)

    if fn is not None:
        return wrap(fn)
    return wrap


def as_tool(obj: Any, *, source: str = LOCAL_SOURCE) -> ToolHandler:
    """Normalize a callable or handler into a ToolHandler."""
    if isinstance(obj, ToolHandler):
        return obj
    if callable(obj):
        return FunctionTool.from_callable(obj, source=source)
    raise AgentConfigurationError(f"Not a tool: {obj!r}")


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class ToolRegistry:
    """Name → handler mapping merged from local, built-in and MCP sources.

    Registering an existing name replaces the previous handler (last write
    wins) and keeps the name's original position in ``snapshot()``.
    """

    def __init__(self) -> None:
        self._handlers: dict[str, ToolHandler] = {}
        self._frozen = False

    def register(self, descriptor: ToolDescriptor, handler: ToolHandler) -> None:
        if self._frozen:
            raise AgentConfigurationError(
                f"Cannot register {descriptor.name!r}: registry is frozen during a run"
            )
        previous = self._handlers.get(descriptor.name)
        if previous is not None:
            logger.warning(
                "Duplicate tool %r from %s replaces the one from %s",
                descriptor.name, handler.source, previous.source,
            )
        if handler.descriptor != descriptor:
            handler = _DescribedHandler(descriptor, handler)
        self._handlers[descriptor.name] = handler

    def add(self, handler: Any, *, source: str = LOCAL_SOURCE) -> ToolHandler:
        """Register a handler (or plain callable) under its own descriptor."""
        h = as_tool(handler, source=source)
        self.register(h.descriptor, h)
        return h

    def resolve(self, name: str) -> ToolHandler:
        handler = self._handlers.get(name)
        if handler is None:
            raise ToolNotFoundError(f"Unknown tool: {name}", tool_name=name)
        return handler

    def descriptor(self, name: str) -> ToolDescriptor:
        return self.resolve(name).descriptor

    def snapshot(self) -> list[ToolDescriptor]:
        return [h.descriptor for h in self._handlers.values()]

    def openai_tools(self) -> list[dict[str, Any]]:
        return [d.to_openai() for d in self.snapshot()]

    def freeze(self) -> None:
        self._frozen = True

    def unfreeze(self) -> None:
        self._frozen = False

    @property
    def frozen(self) -> bool:
        return self._frozen

    def names(self) -> list[str]:
        return list(self._handlers)

    def __contains__(self, name: object) -> bool:
        return name in self._handlers

    def __len__(self) -> int:
        return len(self._handlers)


class _DescribedHandler:
    """Pairs a handler with a caller-supplied descriptor."""

    def __init__(self, descriptor: ToolDescriptor, inner: ToolHandler) -> None:
        self.descriptor = descriptor
        self.source = inner.source
        self._inner = inner

    async def invoke(self, arguments: dict[str, Any]) -> Any:
        return await self._inner.invoke(arguments)

"""Argument validation and final-answer decoding.

Tool-call arguments are checked against the tool's JSON Schema before the
handler runs; the model's final answer is decoded against the caller's output
schema (a JSON Schema dict or a pydantic model class).
"""

from __future__ import annotations

import copy
import json
import re
from typing import Any, Union

import jsonschema
from pydantic import BaseModel, ValidationError

from agentai.errors import AgentConfigurationError, OutputDecodeError, ToolArgumentsError
from agentai.tools import ToolDescriptor

OutputSchema = Union[dict[str, Any], type[BaseModel]]

# Keys some providers (Gemini) reject inside response_format schemas.
_PROVIDER_UNSAFE_KEYS = ("$schema", "title")


def strip_fences(content: str) -> str:
    """Strip markdown code fences from LLM response content."""
    content = content.strip()
    content = re.sub(r"^```(?:json|python|xml|text)?\s*\n?", "", content)
    content = re.sub(r"\n?\s*```\s*$", "", content)
    return content.strip()


def _format_error(error: jsonschema.ValidationError) -> str:
    path = "/".join(str(p) for p in error.absolute_path)
    if path:
        return f"{path}: {error.message}"
    return error.message


def _schema_errors(instance: Any, schema: dict[str, Any]) -> list[str]:
    try:
        cls = jsonschema.validators.validator_for(schema)
        cls.check_schema(schema)
    except jsonschema.SchemaError as exc:
        raise AgentConfigurationError(f"Invalid JSON Schema: {exc.message}") from exc
    validator = cls(schema)
    errors = sorted(validator.iter_errors(instance), key=lambda e: list(e.absolute_path))
    return [_format_error(e) for e in errors]


def validate_arguments(descriptor: ToolDescriptor, raw_arguments: Any) -> dict[str, Any]:
    """Validate raw tool-call arguments against a descriptor's schema.

    Args:
        descriptor: The tool being called.
        raw_arguments: JSON string, dict, or None as emitted by the model.

    Returns:
        The arguments as a fresh dict.

    Raises:
        ToolArgumentsError: unparseable JSON, non-object payload, or schema mismatch.
    """
    if raw_arguments is None or raw_arguments == "":
        arguments: Any = {}
    elif isinstance(raw_arguments, str):
        try:
            arguments = json.loads(raw_arguments)
        except json.JSONDecodeError as exc:
            raise ToolArgumentsError(
                f"Invalid JSON arguments: {exc}", tool_name=descriptor.name,
            ) from exc
    else:
        arguments = copy.deepcopy(raw_arguments)

    if not isinstance(arguments, dict):
        raise ToolArgumentsError(
            f"Arguments must be a JSON object, got {type(arguments).__name__}",
            tool_name=descriptor.name,
        )

    try:
        errors = _schema_errors(arguments, descriptor.parameters or {})
    except AgentConfigurationError as exc:
        raise ToolArgumentsError(
            f"Tool {descriptor.name!r} has an invalid schema: {exc}",
            tool_name=descriptor.name,
        ) from exc
    if errors:
        raise ToolArgumentsError(
            "Validation error: " + "; ".join(errors), tool_name=descriptor.name,
        )
    return arguments


def output_schema_to_json(output_schema: OutputSchema) -> dict[str, Any]:
    """Return the JSON Schema for an output schema, minus provider-unsafe keys."""
    if isinstance(output_schema, type) and issubclass(output_schema, BaseModel):
        schema = output_schema.model_json_schema()
    elif isinstance(output_schema, dict):
        schema = copy.deepcopy(output_schema)
    else:
        raise AgentConfigurationError(
            f"output_schema must be a JSON Schema dict or a pydantic model, got {output_schema!r}"
        )
    for key in _PROVIDER_UNSAFE_KEYS:
        schema.pop(key, None)
    return schema


def response_format_for(output_schema: OutputSchema, name: str = "ResponseFormat") -> dict[str, Any]:
    """Build the litellm/OpenAI ``response_format`` payload for an output schema."""
    if isinstance(output_schema, type) and issubclass(output_schema, BaseModel):
        name = output_schema.__name__
    return {
        "type": "json_schema",
        "json_schema": {
            "name": name,
            "schema": output_schema_to_json(output_schema),
        },
    }


def decode_final_answer(raw_output: Any, output_schema: OutputSchema) -> Any:
    """Parse and check the model's final answer against the output schema.

    Returns a plain JSON value for dict schemas and a model instance for
    pydantic schemas. Raises OutputDecodeError on any mismatch.
    """
    raw_text = raw_output if isinstance(raw_output, str) else ""
    if isinstance(raw_output, str):
        try:
            value = json.loads(strip_fences(raw_output))
        except json.JSONDecodeError as exc:
            raise OutputDecodeError(
                f"Final answer is not valid JSON: {exc}", raw_output=raw_text,
            ) from exc
    else:
        value = raw_output
        raw_text = json.dumps(raw_output, default=str)

    if isinstance(output_schema, type) and issubclass(output_schema, BaseModel):
        try:
            return output_schema.model_validate(value)
        except ValidationError as exc:
            raise OutputDecodeError(
                f"Final answer does not match {output_schema.__name__}: {exc}",
                raw_output=raw_text,
            ) from exc

    errors = _schema_errors(value, output_schema_to_json(output_schema))
    if errors:
        raise OutputDecodeError(
            "Final answer does not match output schema: " + "; ".join(errors),
            raw_output=raw_text,
        )
    return value

"""Conversation data model: messages, tool calls, tool definitions, confirmations."""

import json
from dataclasses import dataclass, field
from typing import Any

from .report import ToolArgumentError

ROLES = ("system", "user", "assistant", "tool")

# JSON-schema type name -> accepted Python types
_JSON_TYPES: dict[str, type | tuple[type, ...]] = {
    "string": str,
    "integer": int,
    "number": (int, float),
    "boolean": bool,
    "array": list,
    "object": dict,
}


@dataclass(frozen=True)
class ToolCall:
    """A tool invocation emitted by the model inside an assistant message."""

    id: str
    name: str
    arguments: str = ""

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments},
        }


@dataclass
class Message:
    """One turn in the conversation."""

    role: str
    content: str | None = None
    tool_calls: list[ToolCall] | None = None
    tool_call_id: str | None = None

    def __post_init__(self):
        if self.role not in ROLES:
            raise ValueError(f"unknown message role {self.role!r}")
        if self.role == "tool" and not self.tool_call_id:
            raise ValueError("tool messages need a tool_call_id")

    @classmethod
    def system(cls, content: str) -> "Message":
        return cls("system", content)

    @classmethod
    def user(cls, content: str) -> "Message":
        return cls("user", content)

    @classmethod
    def tool_result(cls, tool_call_id: str, content: str) -> "Message":
        return cls("tool", content, tool_call_id=tool_call_id)

    def to_dict(self) -> dict:
        d: dict[str, Any] = {"role": self.role, "content": self.content}
        if self.tool_calls:
            d["tool_calls"] = [tc.to_dict() for tc in self.tool_calls]
        if self.tool_call_id is not None:
            d["tool_call_id"] = self.tool_call_id
        return d


@dataclass(frozen=True)
class ToolDefinition:
    """Name, description and argument schema of a tool offered to the model.

    ``side_effecting`` tools need human confirmation before they run.
    """

    name: str
    description: str
    parameters: dict = field(
        default_factory=lambda: {"type": "object", "properties": {}, "required": []}
    )
    side_effecting: bool = False

    def to_dict(self) -> dict:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }


@dataclass(frozen=True)
class ConfirmationRequest:
    """What the human is asked to approve."""

    operation: str
    target: str
    content: str | None = None
    show_editor_open: bool = False
    tool_name: str | None = None


@dataclass(frozen=True)
class ConfirmationResult:
    approved: bool
    dont_ask_again: bool = False
    feedback: str | None = None


def check_unique_names(tools: list[ToolDefinition]) -> None:
    """Raise ValueError if two tool definitions share a name."""
    seen: set[str] = set()
    for tool in tools:
        if not tool.name:
            raise ValueError("tool definition without a name")
        if tool.name in seen:
            raise ValueError(f"duplicate tool definition {tool.name!r}")
        seen.add(tool.name)


def _type_matches(value, expected: str) -> bool:
    py_type = _JSON_TYPES.get(expected)
    if py_type is None:
        return True  # unknown or composite schema types are not checked
    # bool is a subclass of int; reject it for numeric fields.
    if isinstance(value, bool) and expected != "boolean":
        return False
    return isinstance(value, py_type)


def parse_arguments(call: ToolCall, definition: ToolDefinition | None) -> dict:
    """Deserialize a tool call's arguments and check them against its schema.

    Raises ToolArgumentError when the payload is not a JSON object, a
    required property is missing, or a property has the wrong type.
    """
    if definition is None:
        raise ToolArgumentError(f"unknown tool {call.name!r}")

    raw = call.arguments or "{}"
    try:
        args = json.loads(raw)
    except (json.JSONDecodeError, TypeError) as e:
        raise ToolArgumentError(f"invalid JSON in tool arguments: {e}") from e
    if not isinstance(args, dict):
        raise ToolArgumentError(
            f"tool arguments must be a JSON object, got {type(args).__name__}"
        )

    schema = definition.parameters or {}
    properties = schema.get("properties", {})
    for name in schema.get("required", []):
        if name not in args:
            raise ToolArgumentError(f"missing required argument {name!r}")
    for name, value in args.items():
        prop = properties.get(name)
        if prop is None:
            continue
        expected = prop.get("type")
        if isinstance(expected, str) and not _type_matches(value, expected):
            raise ToolArgumentError(
                f"argument {name!r} expected {expected}, got {type(value).__name__}"
            )
    return args

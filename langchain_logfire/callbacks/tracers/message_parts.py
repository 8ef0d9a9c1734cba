"""Canonical GenAI message model and its JSON projection.

The types in this module mirror the OpenTelemetry GenAI input/output message
schemas, with the deviations Logfire expects when it renders message previews:

* tool call results are serialised under ``result`` (not ``response``), and
* messages carrying tool call results use the ``user`` role (not ``tool``).

Both deviations are part of the wire contract and must not be "fixed".
Optional fields are omitted from the projection rather than emitted as null.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

LOGGER = logging.getLogger(__name__)

UNSERIALIZABLE = "unserializable"


class Role(str, Enum):
    """Role of the entity that created a message."""

    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"

    @classmethod
    def from_string(cls, value: Any) -> "Role":
        """Map a role string onto a ``Role``, defaulting to ``user``."""
        if isinstance(value, Role):
            return value
        key = str(value or "").strip().lower()
        return _ROLE_ALIASES.get(key, cls.USER)


_ROLE_ALIASES: Dict[str, Role] = {
    "system": Role.SYSTEM,
    "developer": Role.SYSTEM,
    "user": Role.USER,
    "human": Role.USER,
    "assistant": Role.ASSISTANT,
    "ai": Role.ASSISTANT,
    "model": Role.ASSISTANT,
    "tool": Role.TOOL,
    "function": Role.TOOL,
}


class FinishReason(str, Enum):
    """Reason the model stopped generating."""

    STOP = "stop"
    LENGTH = "length"
    CONTENT_FILTER = "content_filter"
    TOOL_CALL = "tool_call"
    ERROR = "error"

    @classmethod
    def from_string(cls, value: Any) -> "FinishReason":
        if isinstance(value, FinishReason):
            return value
        try:
            return cls(str(value or "").strip().lower())
        except ValueError:
            return cls.STOP


class Modality(str, Enum):
    """General modality of binary or referenced content."""

    IMAGE = "image"
    VIDEO = "video"
    AUDIO = "audio"

    @classmethod
    def from_string(cls, value: Any) -> "Modality":
        if isinstance(value, Modality):
            return value
        try:
            return cls(str(value or "").strip().lower())
        except ValueError:
            return cls.IMAGE


class OperationName(str, Enum):
    """Well-known ``gen_ai.operation.name`` values."""

    CHAT = "chat"
    CREATE_AGENT = "create_agent"
    EMBEDDINGS = "embeddings"
    EXECUTE_TOOL = "execute_tool"
    GENERATE_CONTENT = "generate_content"
    INVOKE_AGENT = "invoke_agent"
    TEXT_COMPLETION = "text_completion"


class OutputType(str, Enum):
    """Well-known ``gen_ai.output.type`` values."""

    TEXT = "text"
    JSON = "json"
    IMAGE = "image"
    SPEECH = "speech"

    @classmethod
    def from_string(cls, value: Any) -> "OutputType":
        if isinstance(value, OutputType):
            return value
        try:
            return cls(str(value or "").strip().lower())
        except ValueError:
            return cls.TEXT


# ---------------------------------------------------------------------------
# Message parts
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TextPart:
    """Text sent to or received from the model."""

    content: str

    def to_dict(self) -> Dict[str, Any]:
        return {"type": "text", "content": self.content}


@dataclass(frozen=True)
class ToolCallRequestPart:
    """A tool call requested by the model.

    ``arguments`` is an opaque structured value (usually a dict) or the raw
    argument string when it could not be parsed as JSON.
    """

    name: str
    id: Optional[str] = None
    arguments: Any = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"type": "tool_call", "name": self.name}
        if self.id is not None:
            data["id"] = self.id
        if self.arguments is not None:
            data["arguments"] = self.arguments
        return data


@dataclass(frozen=True)
class ToolCallResponsePart:
    """The result of a tool call, sent back to the model."""

    response: Any
    id: Optional[str] = None
    name: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        # Logfire reads tool results from ``result``.
        data: Dict[str, Any] = {"type": "tool_call_response", "result": self.response}
        if self.id is not None:
            data["id"] = self.id
        if self.name is not None:
            data["name"] = self.name
        return data


@dataclass(frozen=True)
class BlobPart:
    """Binary data sent inline (base64 or a ``data:`` URI)."""

    modality: Modality
    content: str
    mime_type: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "type": "blob",
            "modality": Modality.from_string(self.modality).value,
            "content": self.content,
        }
        if self.mime_type is not None:
            data["mime_type"] = self.mime_type
        return data


@dataclass(frozen=True)
class UriPart:
    """Content referenced by URI."""

    modality: Modality
    uri: str
    mime_type: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "type": "uri",
            "modality": Modality.from_string(self.modality).value,
            "uri": self.uri,
        }
        if self.mime_type is not None:
            data["mime_type"] = self.mime_type
        return data


@dataclass(frozen=True)
class FilePart:
    """Content referenced by a pre-uploaded file identifier."""

    modality: Modality
    file_id: str
    mime_type: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "type": "file",
            "modality": Modality.from_string(self.modality).value,
            "file_id": self.file_id,
        }
        if self.mime_type is not None:
            data["mime_type"] = self.mime_type
        return data


@dataclass(frozen=True)
class ReasoningPart:
    """Reasoning or thinking content produced by the model."""

    content: str

    def to_dict(self) -> Dict[str, Any]:
        return {"type": "reasoning", "content": self.content}


@dataclass(frozen=True)
class GenericPart:
    """Any other part; ``properties`` are merged next to ``type``."""

    type: str
    properties: Mapping[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"type": self.type}
        data.update(self.properties)
        return data


MessagePart = Union[
    TextPart,
    ToolCallRequestPart,
    ToolCallResponsePart,
    BlobPart,
    UriPart,
    FilePart,
    ReasoningPart,
    GenericPart,
]


def part_from_dict(data: Mapping[str, Any]) -> MessagePart:
    """Rebuild a part from its JSON object form.

    Unknown ``type`` values come back as ``GenericPart``.
    """
    part_type = str(data.get("type") or "")
    if part_type == "text":
        return TextPart(str(data.get("content", "")))
    if part_type == "tool_call":
        return ToolCallRequestPart(
            str(data.get("name", "")),
            id=data.get("id"),
            arguments=data.get("arguments"),
        )
    if part_type == "tool_call_response":
        return ToolCallResponsePart(
            data.get("result"), id=data.get("id"), name=data.get("name")
        )
    if part_type == "blob":
        return BlobPart(
            Modality.from_string(data.get("modality")),
            str(data.get("content", "")),
            mime_type=data.get("mime_type"),
        )
    if part_type == "uri":
        return UriPart(
            Modality.from_string(data.get("modality")),
            str(data.get("uri", "")),
            mime_type=data.get("mime_type"),
        )
    if part_type == "file":
        return FilePart(
            Modality.from_string(data.get("modality")),
            str(data.get("file_id", "")),
            mime_type=data.get("mime_type"),
        )
    if part_type == "reasoning":
        return ReasoningPart(str(data.get("content", "")))
    properties = {k: v for k, v in data.items() if k != "type"}
    return GenericPart(part_type, properties=properties)


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class InputMessage:
    """A message sent to the model: a role plus an ordered list of parts."""

    role: Role
    parts: Tuple[MessagePart, ...]
    name: Optional[str] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "role", Role.from_string(self.role))
        object.__setattr__(self, "parts", tuple(self.parts))

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "role": self.role.value,
            "parts": [part.to_dict() for part in self.parts],
        }
        if self.name is not None:
            data["name"] = self.name
        return data


@dataclass(frozen=True)
class OutputMessage:
    """A message generated by the model, with the reason generation stopped."""

    role: Role
    parts: Tuple[MessagePart, ...]
    finish_reason: FinishReason = FinishReason.STOP
    name: Optional[str] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "role", Role.from_string(self.role))
        object.__setattr__(self, "parts", tuple(self.parts))
        object.__setattr__(
            self, "finish_reason", FinishReason.from_string(self.finish_reason)
        )

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "role": self.role.value,
            "parts": [part.to_dict() for part in self.parts],
            "finish_reason": self.finish_reason.value,
        }
        if self.name is not None:
            data["name"] = self.name
        return data


def message_from_dict(data: Mapping[str, Any]) -> InputMessage:
    return InputMessage(
        Role.from_string(data.get("role")),
        [part_from_dict(p) for p in data.get("parts") or []],
        name=data.get("name"),
    )


def output_message_from_dict(data: Mapping[str, Any]) -> OutputMessage:
    return OutputMessage(
        Role.from_string(data.get("role")),
        [part_from_dict(p) for p in data.get("parts") or []],
        FinishReason.from_string(data.get("finish_reason")),
        name=data.get("name"),
    )


@dataclass(frozen=True)
class ToolDefinition:
    """A tool made available to the model, in OpenAI function format."""

    name: str
    description: str = ""
    parameters: Mapping[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": "function",
            "name": self.name,
            "description": self.description,
            "parameters": dict(self.parameters),
        }


@dataclass
class ConversionResult:
    """Canonical split of one conversation."""

    system_instructions: Optional[List[MessagePart]] = None
    input_messages: List[InputMessage] = field(default_factory=list)
    output_messages: List[OutputMessage] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Serialisation
# ---------------------------------------------------------------------------


def safe_json(value: Any) -> str:
    """Return a JSON string for ``value``.

    Falls back to the JSON encoding of ``str(value)`` and finally to the
    ``"unserializable"`` sentinel.
    """
    try:
        return json.dumps(value, default=str, ensure_ascii=False)
    except Exception:
        LOGGER.debug("JSON encoding failed, retrying with str()", exc_info=True)
    try:
        return json.dumps(str(value), ensure_ascii=False)
    except Exception:
        LOGGER.debug("JSON encoding of str() failed", exc_info=True)
        return UNSERIALIZABLE


def messages_to_json(
    messages: Iterable[Union[InputMessage, OutputMessage]],
) -> str:
    """Serialise messages for ``gen_ai.input.messages``/``gen_ai.output.messages``."""
    return safe_json([message.to_dict() for message in messages])


def system_instructions_to_json(parts: Sequence[MessagePart]) -> str:
    """Serialise system instruction parts for ``gen_ai.system_instructions``."""
    return safe_json([part.to_dict() for part in parts])


def tool_definitions_to_json(definitions: Iterable[ToolDefinition]) -> str:
    """Serialise tool definitions for ``gen_ai.tool.definitions``."""
    return safe_json([definition.to_dict() for definition in definitions])

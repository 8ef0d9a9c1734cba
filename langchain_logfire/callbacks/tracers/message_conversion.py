"""Conversion of LangChain conversations into canonical GenAI messages.

Upstream messages arrive in several shapes: LangChain ``BaseMessage``
instances, OpenAI-style ``{"role": ..., "content": ...}`` dicts, plain strings
and arbitrary objects that merely look like messages. Each one is classified
into a role and a coarse kind and then turned into an ``InputMessage``.
Classification never raises; anything unrecognised is treated as ``user``.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterable, List, Mapping, Optional, Sequence

from langchain_core.messages import (
    AIMessage,
    BaseMessage,
    HumanMessage,
    SystemMessage,
    ToolMessage,
    convert_to_messages,
    convert_to_openai_messages,
)
from langchain_core.utils.function_calling import convert_to_openai_tool

from langchain_logfire.callbacks.tracers.message_parts import (
    BlobPart,
    ConversionResult,
    FilePart,
    FinishReason,
    GenericPart,
    InputMessage,
    MessagePart,
    Modality,
    OutputMessage,
    ReasoningPart,
    Role,
    TextPart,
    ToolCallRequestPart,
    ToolCallResponsePart,
    ToolDefinition,
    UriPart,
)

LOGGER = logging.getLogger(__name__)

_MEDIA_BLOCK_TYPES = {"image_url", "image", "audio", "video", "file", "input_audio"}
_SKIPPED_BLOCK_TYPES = {"tool_use", "tool_call", "function_call", "server_tool_use"}


class MessageKind(str, Enum):
    """Coarse shape of an upstream message."""

    SYSTEM = "system"
    USER_WITH_IMAGES = "user_with_images"
    USER = "user"
    TOOL_REQUEST = "tool_request"
    TOOL_RESULT = "tool_result"
    ASSISTANT = "assistant"
    DATA = "data"
    UNRECOGNIZED = "unrecognized"


@dataclass(frozen=True)
class Classification:
    role: Role
    kind: MessageKind


_KIND_BY_ROLE = {
    Role.SYSTEM: MessageKind.SYSTEM,
    Role.USER: MessageKind.USER,
    Role.ASSISTANT: MessageKind.ASSISTANT,
    Role.TOOL: MessageKind.TOOL_RESULT,
}


# ---------------------------------------------------------------------------
# Accessors
# ---------------------------------------------------------------------------


def _field(message: Any, key: str, default: Any = None) -> Any:
    if isinstance(message, Mapping):
        return message.get(key, default)
    try:
        return getattr(message, key, default)
    except Exception:
        return default


def message_content(message: Any) -> Any:
    """Return the raw ``content`` of a message of any supported shape."""
    if isinstance(message, str):
        return message
    return _field(message, "content")


def message_tool_calls(message: Any) -> List[Any]:
    """Return the pending tool calls carried by a message (possibly empty)."""
    if isinstance(message, str):
        return []
    tool_calls = _field(message, "tool_calls")
    if isinstance(tool_calls, (list, tuple)):
        return list(tool_calls)
    return []


def _type_name(message: Any) -> str:
    return type(message).__name__.lower()


def _has_image_blocks(content: Any) -> bool:
    if not isinstance(content, (list, tuple)):
        return False
    for block in content:
        if isinstance(block, Mapping) and block.get("type") in {"image_url", "image"}:
            return True
    return False


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------


def message_role(message: Any) -> Role:
    """Resolve the role of ``message``.

    Resolution order: mapping ``role``/``type`` field, LangChain's own OpenAI
    role rendering, type-name substrings, a ``role`` attribute, then ``user``.
    """
    if isinstance(message, Mapping):
        return Role.from_string(message.get("role") or message.get("type"))

    if isinstance(message, BaseMessage):
        try:
            rendered = convert_to_openai_messages(message)
            if isinstance(rendered, Mapping) and rendered.get("role"):
                return Role.from_string(rendered["role"])
        except Exception:
            LOGGER.debug("Unable to render role for %r", type(message), exc_info=True)

    name = _type_name(message)
    if "system" in name:
        return Role.SYSTEM
    if "user" in name or "human" in name:
        return Role.USER
    if "ai" in name or "assistant" in name:
        return Role.ASSISTANT
    if "tool" in name:
        return Role.TOOL

    role = _field(message, "role")
    if role:
        return Role.from_string(role)
    return Role.USER


def _classify_mapping(message: Mapping[str, Any]) -> Classification:
    role = message_role(message)
    if message_tool_calls(message):
        return Classification(Role.ASSISTANT, MessageKind.TOOL_REQUEST)
    if message.get("tool_call_id") or role is Role.TOOL:
        return Classification(Role.TOOL, MessageKind.TOOL_RESULT)
    if role is Role.USER and _has_image_blocks(message.get("content")):
        return Classification(role, MessageKind.USER_WITH_IMAGES)
    return Classification(role, _KIND_BY_ROLE[role])


def _classify(message: Any) -> Classification:
    if isinstance(message, Mapping):
        return _classify_mapping(message)
    if isinstance(message, str):
        return Classification(Role.USER, MessageKind.USER)
    if isinstance(message, SystemMessage):
        return Classification(Role.SYSTEM, MessageKind.SYSTEM)
    if isinstance(message, HumanMessage):
        if _has_image_blocks(message.content):
            return Classification(Role.USER, MessageKind.USER_WITH_IMAGES)
        return Classification(Role.USER, MessageKind.USER)
    if isinstance(message, AIMessage):
        if message.tool_calls:
            return Classification(Role.ASSISTANT, MessageKind.TOOL_REQUEST)
        return Classification(Role.ASSISTANT, MessageKind.ASSISTANT)
    if isinstance(message, ToolMessage):
        return Classification(Role.TOOL, MessageKind.TOOL_RESULT)

    name = _type_name(message)
    if "system" in name:
        return Classification(Role.SYSTEM, MessageKind.SYSTEM)
    if "image" in name and "user" in name:
        return Classification(Role.USER, MessageKind.USER_WITH_IMAGES)
    if "user" in name or "human" in name:
        return Classification(Role.USER, MessageKind.USER)
    if "toolrequest" in name:
        return Classification(Role.ASSISTANT, MessageKind.TOOL_REQUEST)
    if "tool" in name or "function" in name:
        return Classification(Role.TOOL, MessageKind.TOOL_RESULT)
    if "ai" in name or "assistant" in name:
        if message_tool_calls(message):
            return Classification(Role.ASSISTANT, MessageKind.TOOL_REQUEST)
        return Classification(Role.ASSISTANT, MessageKind.ASSISTANT)
    if "data" in name:
        return Classification(Role.ASSISTANT, MessageKind.DATA)

    role = message_role(message)
    if _field(message, "role") is None and _field(message, "content") is None:
        return Classification(role, MessageKind.UNRECOGNIZED)
    if message_tool_calls(message):
        return Classification(Role.ASSISTANT, MessageKind.TOOL_REQUEST)
    return Classification(role, _KIND_BY_ROLE[role])


def classify_message(message: Any) -> Classification:
    """Classify ``message`` into a role and a ``MessageKind``. Never raises."""
    try:
        return _classify(message)
    except Exception:
        LOGGER.debug("Failed to classify %r", type(message), exc_info=True)
        return Classification(Role.USER, MessageKind.UNRECOGNIZED)


# ---------------------------------------------------------------------------
# Content blocks
# ---------------------------------------------------------------------------


def _parse_json_lenient(value: Any) -> Any:
    """Parse ``value`` as JSON when it is a string, keeping it raw otherwise."""
    if not isinstance(value, str):
        return value
    try:
        return json.loads(value)
    except (TypeError, ValueError):
        return value


def _data_uri_mime_type(uri: str) -> Optional[str]:
    header = uri[len("data:") :].split(",", 1)[0]
    mime_type = header.split(";", 1)[0]
    return mime_type or None


def _modality_from_mime(
    mime_type: Optional[str], default: Modality = Modality.IMAGE
) -> Modality:
    if mime_type:
        prefix = mime_type.split("/", 1)[0].lower()
        for modality in Modality:
            if modality.value == prefix:
                return modality
    return default


def media_part_from_locator(
    locator: str, modality: Modality = Modality.IMAGE, mime_type: Optional[str] = None
) -> MessagePart:
    """Return a ``BlobPart`` for inline ``data:`` URIs, otherwise a ``UriPart``."""
    if locator.startswith("data:"):
        mime_type = mime_type or _data_uri_mime_type(locator)
        return BlobPart(_modality_from_mime(mime_type, modality), locator, mime_type)
    return UriPart(modality, locator, mime_type)


def _media_block_to_part(block: Mapping[str, Any]) -> Optional[MessagePart]:
    block_type = block.get("type")
    mime_type = block.get("mime_type")

    if block_type == "image_url":
        image_url = block.get("image_url")
        url = image_url.get("url") if isinstance(image_url, Mapping) else image_url
        if not url:
            return None
        return media_part_from_locator(str(url), Modality.IMAGE, mime_type)

    if block_type == "input_audio":
        audio = block.get("input_audio") or {}
        data = audio.get("data") if isinstance(audio, Mapping) else None
        if not data:
            return None
        audio_format = audio.get("format")
        return BlobPart(
            Modality.AUDIO, str(data), f"audio/{audio_format}" if audio_format else None
        )

    default = Modality.IMAGE
    if block_type in {"audio", "video"}:
        default = Modality(block_type)
    modality = _modality_from_mime(mime_type, default)
    source_type = block.get("source_type")

    file_id = block.get("file_id")
    if source_type == "id":
        file_id = file_id or block.get("id")
    if file_id:
        return FilePart(modality, str(file_id), mime_type)
    data = block.get("base64") or (block.get("data") if source_type == "base64" else None)
    if data:
        return BlobPart(modality, str(data), mime_type)
    url = block.get("url") or (block.get("data") if source_type == "url" else None)
    if url:
        return media_part_from_locator(str(url), modality, mime_type)
    return None


def _reasoning_text(block: Mapping[str, Any]) -> str:
    for key in ("reasoning", "thinking", "text"):
        value = block.get(key)
        if isinstance(value, str):
            return value
    summary = block.get("summary")
    if isinstance(summary, (list, tuple)):
        texts = [
            item.get("text", "") for item in summary if isinstance(item, Mapping)
        ]
        return "\n".join(text for text in texts if text)
    return ""


def _block_to_part(block: Any) -> Optional[MessagePart]:
    if block is None:
        return None
    if isinstance(block, str):
        return TextPart(block)
    if not isinstance(block, Mapping):
        return TextPart(str(block))

    block_type = block.get("type")
    if block_type == "text":
        text = block.get("text")
        if text is None:
            text = block.get("content", "")
        return TextPart(str(text))
    if block_type in _MEDIA_BLOCK_TYPES:
        part = _media_block_to_part(block)
        if part is not None:
            return part
    if block_type in {"thinking", "reasoning"}:
        return ReasoningPart(_reasoning_text(block))
    if block_type in _SKIPPED_BLOCK_TYPES:
        return None
    properties = {k: v for k, v in block.items() if k != "type"}
    return GenericPart(str(block_type or "unknown"), properties)


def content_to_parts(content: Any) -> List[MessagePart]:
    """Turn message content (string or list of blocks) into message parts."""
    if content is None:
        return []
    if isinstance(content, str):
        return [TextPart(content)]
    if isinstance(content, (list, tuple)):
        parts: List[MessagePart] = []
        for block in content:
            part = _block_to_part(block)
            if part is not None:
                parts.append(part)
        return parts
    return [TextPart(str(content))]


# ---------------------------------------------------------------------------
# Message conversion
# ---------------------------------------------------------------------------


def tool_call_to_part(tool_call: Any) -> ToolCallRequestPart:
    """Build a request part from a LangChain or OpenAI shaped tool call."""
    if isinstance(tool_call, Mapping):
        function = tool_call.get("function")
        if isinstance(function, Mapping):
            name = function.get("name")
            arguments = function.get("arguments")
        else:
            name = tool_call.get("name")
            arguments = tool_call.get("args", tool_call.get("arguments"))
        call_id = tool_call.get("id")
    else:
        name = getattr(tool_call, "name", None)
        arguments = getattr(tool_call, "args", None)
        if arguments is None:
            arguments = getattr(tool_call, "arguments", None)
        call_id = getattr(tool_call, "id", None)
    return ToolCallRequestPart(
        str(name or ""),
        id=str(call_id) if call_id is not None else None,
        arguments=_parse_json_lenient(arguments),
    )


def _tool_result_part(message: Any) -> ToolCallResponsePart:
    call_id = _field(message, "tool_call_id")
    name = _field(message, "name")
    return ToolCallResponsePart(
        _parse_json_lenient(message_content(message)),
        id=str(call_id) if call_id is not None else None,
        name=str(name) if name else None,
    )


def _message_name(message: Any) -> Optional[str]:
    if isinstance(message, str):
        return None
    name = _field(message, "name")
    if isinstance(name, str) and name:
        return name
    return None


def message_to_input(message: Any) -> InputMessage:
    """Convert one upstream message into a canonical ``InputMessage``.

    Tool results always come back with role ``user`` and a single
    ``ToolCallResponsePart``.
    """
    classification = classify_message(message)
    kind = classification.kind

    if kind is MessageKind.TOOL_RESULT:
        return InputMessage(Role.USER, [_tool_result_part(message)])

    if kind is MessageKind.TOOL_REQUEST:
        parts = [
            part
            for part in content_to_parts(message_content(message))
            if not (isinstance(part, TextPart) and not part.content)
        ]
        parts.extend(tool_call_to_part(tc) for tc in message_tool_calls(message))
        return InputMessage(
            Role.ASSISTANT, parts or [TextPart("")], name=_message_name(message)
        )

    if kind is MessageKind.UNRECOGNIZED:
        content = message_content(message)
        text = str(message) if content is None else content
        return InputMessage(Role.USER, content_to_parts(text) or [TextPart("")])

    parts = content_to_parts(message_content(message))
    if kind is MessageKind.USER_WITH_IMAGES:
        images = _field(message, "images")
        if isinstance(images, (list, tuple)):
            parts.extend(
                media_part_from_locator(str(url)) for url in images if url
            )
    role = Role.ASSISTANT if kind is MessageKind.DATA else classification.role
    return InputMessage(role, parts or [TextPart("")], name=_message_name(message))


def infer_finish_reason(message: Any) -> FinishReason:
    """``tool_call`` if the message requests a tool, ``stop`` otherwise."""
    if not isinstance(message, (InputMessage, OutputMessage)):
        message = message_to_input(message)
    for part in message.parts:
        if isinstance(part, ToolCallRequestPart):
            return FinishReason.TOOL_CALL
    return FinishReason.STOP


def message_to_output(
    message: Any, finish_reason: Optional[FinishReason] = None
) -> OutputMessage:
    converted = (
        message if isinstance(message, InputMessage) else message_to_input(message)
    )
    reason = finish_reason or infer_finish_reason(converted)
    return OutputMessage(converted.role, converted.parts, reason, name=converted.name)


def _is_role_tuple(value: Any) -> bool:
    return (
        isinstance(value, tuple)
        and len(value) == 2
        and isinstance(value[0], str)
    )


def _from_role_tuple(value: Any) -> Any:
    """Turn a LangChain ``(role, content)`` pair into a message."""
    if not _is_role_tuple(value):
        return value
    try:
        return convert_to_messages([value])[0]
    except (ValueError, NotImplementedError):
        LOGGER.debug("Unsupported (role, content) pair %r", value[0], exc_info=True)
        return {"role": value[0], "content": value[1]}


def iter_conversation(conversation: Any) -> Iterable[Any]:
    """Flatten a conversation into individual messages.

    Accepts a ``{"messages": ...}`` mapping, a single message, a flat list of
    messages or ``(role, content)`` pairs, and a list of threads (lists).
    """
    if conversation is None:
        return []
    if isinstance(conversation, Mapping) and "messages" in conversation:
        return iter_conversation(conversation.get("messages"))
    if isinstance(conversation, (str, BaseMessage, Mapping)) or _is_role_tuple(
        conversation
    ):
        return [_from_role_tuple(conversation)]
    if isinstance(conversation, (list, tuple)):
        if conversation and isinstance(conversation[0], list):
            return [
                _from_role_tuple(msg) for thread in conversation for msg in thread
            ]
        return [_from_role_tuple(msg) for msg in conversation]
    return [conversation]


def convert_conversation(
    conversation: Any, separate_system: bool = True
) -> ConversionResult:
    """Split a conversation into system instructions, inputs and the output.

    With ``separate_system`` the parts of system messages go to
    ``system_instructions`` instead of ``input_messages``. A trailing assistant
    message is moved to ``output_messages`` with an inferred finish reason.
    """
    result = ConversionResult()
    system_parts: List[MessagePart] = []

    for message in iter_conversation(conversation):
        converted = message_to_input(message)
        if separate_system and converted.role is Role.SYSTEM:
            system_parts.extend(converted.parts)
            continue
        result.input_messages.append(converted)

    if result.input_messages and result.input_messages[-1].role is Role.ASSISTANT:
        result.output_messages.append(message_to_output(result.input_messages.pop()))
    if system_parts:
        result.system_instructions = system_parts
    return result


# ---------------------------------------------------------------------------
# Tool definitions
# ---------------------------------------------------------------------------


def _fallback_tool_name(tool: Any) -> str:
    if isinstance(tool, Mapping):
        function = tool.get("function")
        if isinstance(function, Mapping) and function.get("name"):
            return str(function["name"])
        if tool.get("name"):
            return str(tool["name"])
    for attr in ("name", "__name__"):
        value = getattr(tool, attr, None)
        if isinstance(value, str) and value:
            return value
    return str(tool)


def tool_definitions_from_tools(tools: Optional[Iterable[Any]]) -> List[ToolDefinition]:
    """Build tool definitions from LangChain tools, callables or tool dicts."""
    definitions: List[ToolDefinition] = []
    for tool in tools or []:
        if isinstance(tool, ToolDefinition):
            definitions.append(tool)
            continue
        try:
            if isinstance(tool, Mapping) and isinstance(tool.get("function"), Mapping):
                function = tool["function"]
            else:
                converted = convert_to_openai_tool(tool)
                function = converted.get("function", converted)
            definitions.append(
                ToolDefinition(
                    str(function["name"]),
                    function.get("description") or "",
                    function.get("parameters") or {},
                )
            )
        except Exception:
            LOGGER.debug("Unable to convert tool %r", tool, exc_info=True)
            definitions.append(ToolDefinition(_fallback_tool_name(tool)))
    return definitions


def tool_definitions_from_mapping(
    tool_map: Optional[Mapping[str, Any]],
) -> List[ToolDefinition]:
    """Build tool definitions from a ``name -> tool schema`` registry."""
    definitions: List[ToolDefinition] = []
    for name, schema in (tool_map or {}).items():
        description = _field(schema, "description") or ""
        parameters = _field(schema, "parameters") or {}
        if not isinstance(parameters, Mapping):
            parameters = {}
        definitions.append(ToolDefinition(str(name), str(description), parameters))
    return definitions


__all__: Sequence[str] = [
    "Classification",
    "MessageKind",
    "classify_message",
    "content_to_parts",
    "convert_conversation",
    "infer_finish_reason",
    "media_part_from_locator",
    "message_content",
    "message_role",
    "message_to_input",
    "message_to_output",
    "message_tool_calls",
    "tool_call_to_part",
    "tool_definitions_from_mapping",
    "tool_definitions_from_tools",
]

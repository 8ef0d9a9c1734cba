"""Populate a GenAI span from request parameters and a finished conversation.

``GenAISpanAssembler`` has two entry points per traced call:

* ``record_request_start`` sets the request attributes (operation, provider,
  resolved model, whitelisted parameters, tool definitions).
* ``record_request_end`` converts the conversation, records usage and
  response metadata from the primary assistant message, serialises messages
  and tool calls, and ends the span. Failures are recorded on the span and
  never propagated; the span is ended on every path.

The span only needs ``set_attribute``, ``set_status`` and ``end``.
Structured log events are not emitted: messages are embedded as span
attributes, which is what Logfire renders.
"""

from __future__ import annotations

import logging
import traceback
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from opentelemetry.trace import Span, Status, StatusCode

from langchain_logfire.callbacks.tracers.message_conversion import (
    convert_conversation,
    iter_conversation,
    message_role,
    message_tool_calls,
    tool_definitions_from_tools,
)
from langchain_logfire.callbacks.tracers.message_parts import (
    ConversionResult,
    OperationName,
    OutputType,
    Role,
    ToolDefinition,
    messages_to_json,
    safe_json,
    system_instructions_to_json,
    tool_definitions_to_json,
)
from langchain_logfire.callbacks.tracers.semconv import Attrs
from langchain_logfire.callbacks.tracers.usage_extraction import (
    extract_cache_attributes,
    extract_response_attributes,
    extract_streaming_attributes,
    extract_token_counts,
    extract_usage,
    is_present,
    message_extras,
)

LOGGER = logging.getLogger(__name__)

MAX_STACKTRACE_CHARS = 50_000
TRUNCATION_SUFFIX = "... [truncated]"

MESSAGES_JSON_SCHEMA = safe_json(
    {
        "type": "object",
        "properties": {
            Attrs.INPUT_MESSAGES: {"type": "array"},
            Attrs.OUTPUT_MESSAGES: {"type": "array"},
            Attrs.SYSTEM_INSTRUCTIONS: {"type": "array"},
        },
    }
)

REQUEST_PARAM_ATTRIBUTES = (
    ("temperature", Attrs.REQUEST_TEMPERATURE),
    ("top_p", Attrs.REQUEST_TOP_P),
    ("max_tokens", Attrs.REQUEST_MAX_TOKENS),
    ("stop", Attrs.REQUEST_STOP),
    ("presence_penalty", Attrs.REQUEST_PRES_PENALTY),
    ("frequency_penalty", Attrs.REQUEST_FREQ_PENALTY),
)

_PRIMITIVES = (bool, int, float, str)


def _coerce_attribute(value: Any) -> Any:
    """Return ``value`` in a form OpenTelemetry accepts as an attribute."""
    if isinstance(value, Enum):
        value = value.value
    if isinstance(value, _PRIMITIVES):
        return value
    if isinstance(value, (list, tuple)) and value:
        first_type = type(value[0])
        if first_type in _PRIMITIVES and all(type(item) is first_type for item in value):
            return list(value)
    return safe_json(value)


def set_if_some(span: Span, key: str, value: Any) -> None:
    """Set ``key`` unless ``value`` is ``None`` or an empty string."""
    if not is_present(value):
        return
    span.set_attribute(key, _coerce_attribute(value))


def _set_all(span: Span, attributes: Mapping[str, Any]) -> None:
    for key, value in attributes.items():
        set_if_some(span, key, value)


def _param(params: Any, name: str) -> Any:
    if isinstance(params, Mapping):
        return params.get(name)
    return getattr(params, name, None)


def output_type_from_response_format(
    response_format: Any,
) -> Optional[OutputType]:
    """``gen_ai.output.type`` for an OpenAI-style ``response_format``."""
    if response_format is None:
        return None
    if isinstance(response_format, Mapping):
        kind = str(response_format.get("type") or "")
    elif isinstance(response_format, str):
        kind = response_format
    else:
        # Pydantic models and JSON schemas passed as structured output.
        return OutputType.JSON
    if kind.startswith("json"):
        return OutputType.JSON
    return OutputType.from_string(kind)


def record_request_params(span: Span, params: Any) -> None:
    """Record the whitelisted request parameters present in ``params``."""
    if params is None:
        return
    for name, attribute in REQUEST_PARAM_ATTRIBUTES:
        set_if_some(span, attribute, _param(params, name))
    set_if_some(
        span,
        Attrs.OUTPUT_TYPE,
        output_type_from_response_format(_param(params, "response_format")),
    )


_SYSTEM_MARKERS = (
    ("openai", ("openai", "azure")),
    ("anthropic", ("anthropic", "claude")),
    ("google", ("google", "vertex", "gemini")),
    ("ollama", ("ollama",)),
)


def _hint_text(hint: Any) -> str:
    if hint is None:
        return ""
    if isinstance(hint, str):
        return hint
    if isinstance(hint, Mapping):
        pieces: List[str] = []
        for key in ("ls_provider", "name", "_type", "provider"):
            if isinstance(hint.get(key), str):
                pieces.append(hint[key])
        identifier = hint.get("id")
        if isinstance(identifier, (list, tuple)):
            pieces.extend(str(item) for item in identifier)
        kwargs = hint.get("kwargs")
        if isinstance(kwargs, Mapping):
            pieces.append(_hint_text(kwargs))
        return " ".join(pieces)
    return type(hint).__name__


def detect_system(*hints: Any) -> str:
    """Map provider hints to ``openai``/``anthropic``/``google``/``ollama``.

    Hints may be provider strings, LangChain serialized dicts, run metadata
    (``ls_provider``) or chat model instances. Returns ``unknown`` when
    nothing matches.
    """
    for hint in hints:
        lowered = _hint_text(hint).lower()
        if not lowered:
            continue
        for system, markers in _SYSTEM_MARKERS:
            if any(marker in lowered for marker in markers):
                return system
    return "unknown"


def resolve_model_id(
    model: Optional[str], aliases: Optional[Mapping[str, str]] = None
) -> Optional[str]:
    """Resolve a model alias; unknown aliases are returned unchanged."""
    if model is None or not aliases:
        return model
    return aliases.get(model, model)


def find_primary_assistant_message(conversation: Any) -> Any:
    """Return the last assistant message, else the last message, else ``None``."""
    messages = list(iter_conversation(conversation))
    for message in reversed(messages):
        if message_role(message) is Role.ASSISTANT:
            return message
    return messages[-1] if messages else None


def record_token_usage(
    span: Span,
    input_tokens: Optional[int],
    output_tokens: Optional[int],
    total_tokens: Optional[int] = None,
) -> None:
    set_if_some(span, Attrs.USAGE_INPUT_TOKENS, input_tokens)
    set_if_some(span, Attrs.USAGE_OUTPUT_TOKENS, output_tokens)
    if total_tokens is None and (input_tokens is not None or output_tokens is not None):
        total_tokens = (input_tokens or 0) + (output_tokens or 0)
    set_if_some(span, Attrs.USAGE_TOTAL_TOKENS, total_tokens)


def record_usage(span: Span, message: Any) -> None:
    """Token counts plus the detailed usage resolved by precedence."""
    if message is None:
        return
    record_token_usage(span, *extract_token_counts(message))
    _set_all(span, extract_usage(message))


def record_response_attributes(
    span: Span, message: Any, requested_model: Optional[str] = None
) -> None:
    _set_all(span, extract_response_attributes(message, requested_model))


def record_cache_attributes(span: Span, message: Any) -> None:
    if message is None:
        return
    _set_all(span, extract_cache_attributes(message))


def record_streaming_attributes(span: Span, message: Any) -> None:
    if message is None:
        return
    _set_all(span, extract_streaming_attributes(message))


def _stringify_arguments(arguments: Any) -> str:
    if isinstance(arguments, str):
        return arguments
    return safe_json(arguments if arguments is not None else {})


def _tool_call_entry(tool_call: Any) -> Dict[str, Any]:
    if isinstance(tool_call, Mapping):
        function = tool_call.get("function")
        if isinstance(function, Mapping):
            name = function.get("name")
            arguments = function.get("arguments")
        else:
            name = tool_call.get("name")
            arguments = tool_call.get("args", tool_call.get("arguments"))
        return {
            "id": str(tool_call.get("id") or ""),
            "name": str(name or "unknown"),
            "arguments": _stringify_arguments(arguments),
        }
    if hasattr(tool_call, "tool_call_id"):
        return {
            "id": str(tool_call.tool_call_id),
            "name": str(getattr(tool_call, "name", None) or "unknown"),
            "result": getattr(tool_call, "content", None),
        }
    for attr in ("args", "arguments", "raw"):
        if hasattr(tool_call, attr):
            return {
                "id": str(getattr(tool_call, "id", None) or ""),
                "name": str(getattr(tool_call, "name", None) or "unknown"),
                "arguments": _stringify_arguments(getattr(tool_call, attr)),
            }
    raise TypeError(f"Unsupported tool call record: {type(tool_call).__name__}")


def tool_call_entries(tool_calls: Iterable[Any]) -> List[Dict[str, Any]]:
    """Structured tool call list; unreadable entries become ``{"raw": ...}``."""
    entries: List[Dict[str, Any]] = []
    for tool_call in tool_calls:
        try:
            entries.append(_tool_call_entry(tool_call))
        except Exception:
            LOGGER.debug("Falling back to raw tool call serialisation", exc_info=True)
            entries.append({"raw": safe_json(tool_call)})
    return entries


def record_tool_calls(span: Span, message: Any) -> None:
    """Tool call count and structured list from the assistant message."""
    if message is None:
        return
    tool_calls: Any = message_tool_calls(message)
    if not tool_calls:
        extras = message_extras(message)
        tool_calls = extras.get("tool_calls") or extras.get("function_calls")
    if not tool_calls or not isinstance(tool_calls, (list, tuple)):
        return
    set_if_some(span, Attrs.TOOL_CALLS_COUNT, len(tool_calls))
    entries = tool_call_entries(tool_calls)
    if entries:
        span.set_attribute(Attrs.TOOL_CALLS, safe_json(entries))


def record_tool_definitions(
    span: Span, definitions: Optional[Sequence[ToolDefinition]]
) -> None:
    if definitions:
        span.set_attribute(Attrs.TOOL_DEFINITIONS, tool_definitions_to_json(definitions))


def record_messages(span: Span, result: ConversionResult) -> None:
    """Serialise the converted messages plus the Logfire JSON schema hint."""
    if result.input_messages:
        span.set_attribute(Attrs.INPUT_MESSAGES, messages_to_json(result.input_messages))
    if result.output_messages:
        span.set_attribute(
            Attrs.OUTPUT_MESSAGES, messages_to_json(result.output_messages)
        )
    if result.system_instructions:
        span.set_attribute(
            Attrs.SYSTEM_INSTRUCTIONS,
            system_instructions_to_json(result.system_instructions),
        )
    span.set_attribute(Attrs.JSON_SCHEMA, MESSAGES_JSON_SCHEMA)


def record_exception(span: Span, exc: BaseException) -> None:
    """Record ``exc`` with the attributes Logfire's exception view reads."""
    stacktrace = "".join(
        traceback.format_exception(type(exc), exc, exc.__traceback__)
    )
    if len(stacktrace) > MAX_STACKTRACE_CHARS:
        stacktrace = stacktrace[:MAX_STACKTRACE_CHARS] + TRUNCATION_SUFFIX
    span.set_attribute(Attrs.EXCEPTION_TYPE, type(exc).__name__)
    span.set_attribute(Attrs.EXCEPTION_MESSAGE, str(exc))
    span.set_attribute(Attrs.EXCEPTION_STACKTRACE, stacktrace)
    span.set_attribute(Attrs.ERROR_TYPE, type(exc).__name__)
    span.set_attribute(Attrs.LOG_LEVEL, "error")
    span.set_status(Status(StatusCode.ERROR, str(exc)))


class GenAISpanAssembler:
    """Writes the GenAI attribute set onto spans owned by the caller.

    ``model_aliases`` is a read-only alias table used to resolve requested
    model names. With ``separate_system`` system messages are recorded as
    ``gen_ai.system_instructions`` rather than as input messages.
    """

    def __init__(
        self,
        model_aliases: Optional[Mapping[str, str]] = None,
        *,
        separate_system: bool = True,
    ) -> None:
        self._model_aliases: Mapping[str, str] = MappingProxyType(
            dict(model_aliases or {})
        )
        self._separate_system = separate_system

    @property
    def model_aliases(self) -> Mapping[str, str]:
        return self._model_aliases

    @property
    def separate_system(self) -> bool:
        return self._separate_system

    def resolve_model(self, model: Optional[str]) -> Optional[str]:
        return resolve_model_id(model, self._model_aliases)

    def record_request_start(
        self,
        span: Span,
        *,
        operation_name: Any = OperationName.CHAT,
        model: Optional[str] = None,
        system: Optional[str] = None,
        request_params: Any = None,
        tools: Optional[Iterable[Any]] = None,
    ) -> Optional[str]:
        """Set request attributes and return the resolved model id."""
        resolved = self.resolve_model(model)
        operation = getattr(operation_name, "value", operation_name)
        span.set_attribute(
            Attrs.OPERATION_NAME, str(operation or OperationName.CHAT.value)
        )
        set_if_some(span, Attrs.SYSTEM, system or "unknown")
        set_if_some(span, Attrs.REQUEST_MODEL, resolved)
        record_request_params(span, request_params)
        if tools:
            record_tool_definitions(span, tool_definitions_from_tools(tools))
        return resolved

    def record_response(
        self, span: Span, conversation: Any, *, model: Optional[str] = None
    ) -> ConversionResult:
        """Record every end-of-call attribute without ending the span."""
        primary = find_primary_assistant_message(conversation)
        result = convert_conversation(
            conversation, separate_system=self._separate_system
        )
        record_usage(span, primary)
        record_response_attributes(span, primary, self.resolve_model(model))
        record_cache_attributes(span, primary)
        record_streaming_attributes(span, primary)
        record_tool_calls(span, primary)
        record_messages(span, result)
        return result

    def record_request_end(
        self, span: Span, conversation: Any, *, model: Optional[str] = None
    ) -> Optional[ConversionResult]:
        """Record the response, capture any failure, and always end the span."""
        try:
            return self.record_response(span, conversation, model=model)
        except Exception as exc:
            LOGGER.debug("Failed to record GenAI response attributes", exc_info=True)
            try:
                record_exception(span, exc)
            except Exception:
                LOGGER.debug("Failed to record exception on span", exc_info=True)
            return None
        finally:
            span.end()

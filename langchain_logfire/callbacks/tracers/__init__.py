"""GenAI tracing for LangChain model calls, shaped for Logfire."""

from langchain_logfire.callbacks.tracers.inference_tracing import (
    DEFAULT_CONFIG,
    LogfireGenAITracer,
)
from langchain_logfire.callbacks.tracers.message_conversion import (
    Classification,
    MessageKind,
    classify_message,
    convert_conversation,
    infer_finish_reason,
    message_role,
    message_to_input,
    message_to_output,
    tool_definitions_from_mapping,
    tool_definitions_from_tools,
)
from langchain_logfire.callbacks.tracers.message_parts import (
    BlobPart,
    ConversionResult,
    FilePart,
    FinishReason,
    GenericPart,
    InputMessage,
    Modality,
    OperationName,
    OutputMessage,
    OutputType,
    ReasoningPart,
    Role,
    TextPart,
    ToolCallRequestPart,
    ToolCallResponsePart,
    ToolDefinition,
    UriPart,
    messages_to_json,
    safe_json,
)
from langchain_logfire.callbacks.tracers.semconv import Attrs
from langchain_logfire.callbacks.tracers.span_attributes import (
    GenAISpanAssembler,
    record_exception,
)
from langchain_logfire.callbacks.tracers.usage_extraction import (
    USAGE_PRECEDENCE,
    extract_usage,
    extract_usage_attributes,
    message_extras,
)

__all__ = [
    "Attrs",
    "BlobPart",
    "Classification",
    "ConversionResult",
    "DEFAULT_CONFIG",
    "FilePart",
    "FinishReason",
    "GenAISpanAssembler",
    "GenericPart",
    "InputMessage",
    "LogfireGenAITracer",
    "MessageKind",
    "Modality",
    "OperationName",
    "OutputMessage",
    "OutputType",
    "ReasoningPart",
    "Role",
    "TextPart",
    "ToolCallRequestPart",
    "ToolCallResponsePart",
    "ToolDefinition",
    "USAGE_PRECEDENCE",
    "UriPart",
    "classify_message",
    "convert_conversation",
    "extract_usage",
    "extract_usage_attributes",
    "infer_finish_reason",
    "message_extras",
    "message_role",
    "message_to_input",
    "message_to_output",
    "messages_to_json",
    "record_exception",
    "safe_json",
    "tool_definitions_from_mapping",
    "tool_definitions_from_tools",
]

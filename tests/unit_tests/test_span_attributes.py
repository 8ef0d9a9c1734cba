import json
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import pytest
from langchain_core.messages import AIMessage, HumanMessage, SystemMessage, ToolMessage
from opentelemetry.trace.status import StatusCode
from pydantic import BaseModel

import langchain_logfire.callbacks.tracers.span_attributes as assembly
from langchain_logfire.callbacks.tracers.semconv import Attrs


class WeatherAnswer(BaseModel):
    city: str
    forecast: str


def test_set_if_some_skips_none_and_empty_strings(span: Any) -> None:
    assembly.set_if_some(span, "a", None)
    assembly.set_if_some(span, "b", "")
    assembly.set_if_some(span, "c", 0)
    assembly.set_if_some(span, "d", False)
    assembly.set_if_some(span, "e", ["x", "y"])
    assembly.set_if_some(span, "f", {"k": 1})
    assembly.set_if_some(span, "g", [1, "mixed"])
    assert span.attributes == {
        "c": 0,
        "d": False,
        "e": ["x", "y"],
        "f": '{"k": 1}',
        "g": '[1, "mixed"]',
    }


def test_record_request_params_whitelist(span: Any) -> None:
    assembly.record_request_params(
        span,
        {
            "temperature": 0.2,
            "top_p": 1.0,
            "max_tokens": 256,
            "stop": ["\n"],
            "presence_penalty": 0,
            "frequency_penalty": None,
            "seed": 7,
        },
    )
    assert span.attributes == {
        Attrs.REQUEST_TEMPERATURE: 0.2,
        Attrs.REQUEST_TOP_P: 1.0,
        Attrs.REQUEST_MAX_TOKENS: 256,
        Attrs.REQUEST_STOP: ["\n"],
        Attrs.REQUEST_PRES_PENALTY: 0,
    }


def test_record_request_params_reads_attributes(span: Any) -> None:
    @dataclass
    class Params:
        temperature: float = 0.5

    assembly.record_request_params(span, Params())
    assembly.record_request_params(span, None)
    assert span.attributes == {Attrs.REQUEST_TEMPERATURE: 0.5}


@pytest.mark.parametrize(
    "hints, expected",
    [
        (("openai",), "openai"),
        (({"id": ["langchain", "chat_models", "azure_openai", "AzureChatOpenAI"]},), "openai"),
        ((None, "anthropic-chat"), "anthropic"),
        (({"ls_provider": "google_vertexai"},), "google"),
        (("ChatOllama",), "ollama"),
        (("mystery", None, {}), "unknown"),
        ((), "unknown"),
    ],
)
def test_detect_system(hints: Any, expected: str) -> None:
    assert assembly.detect_system(*hints) == expected


def test_resolve_model_id_passes_unknown_aliases_through() -> None:
    aliases = {"gpt4o": "gpt-4o-2024-08-06"}
    assert assembly.resolve_model_id("gpt4o", aliases) == "gpt-4o-2024-08-06"
    assert assembly.resolve_model_id("claude", aliases) == "claude"
    assert assembly.resolve_model_id(None, aliases) is None
    assert assembly.resolve_model_id("gpt4o", None) == "gpt4o"


def test_find_primary_assistant_message() -> None:
    first = AIMessage(content="first")
    last = AIMessage(content="last")
    conversation = [HumanMessage(content="u"), first, HumanMessage(content="u2"), last, ToolMessage(content="t", tool_call_id="c")]
    assert assembly.find_primary_assistant_message(conversation) is last
    only_user = [HumanMessage(content="a"), HumanMessage(content="b")]
    assert assembly.find_primary_assistant_message(only_user) is only_user[-1]
    assert assembly.find_primary_assistant_message([]) is None


def test_record_token_usage_infers_total(span: Any) -> None:
    assembly.record_token_usage(span, 10, 5)
    assert span.attributes == {
        Attrs.USAGE_INPUT_TOKENS: 10,
        Attrs.USAGE_OUTPUT_TOKENS: 5,
        Attrs.USAGE_TOTAL_TOKENS: 15,
    }


def test_tool_call_entries_handle_each_shape() -> None:
    @dataclass
    class ToolResult:
        tool_call_id: str
        name: Optional[str]
        content: Any

    @dataclass
    class RawCall:
        raw: str
        name: str = "f"

    class Broken:
        def __getattr__(self, item: str) -> Any:
            raise RuntimeError("boom")

    entries = assembly.tool_call_entries(
        [
            {"id": "c1", "function": {"name": "f", "arguments": '{"a": 1}'}},
            {"id": "c2", "name": "g", "args": {"b": 2}},
            {"name": "h"},
            ToolResult("c3", None, "ok"),
            RawCall('{"z": 0}'),
            Broken(),
        ]
    )
    assert entries[0] == {"id": "c1", "name": "f", "arguments": '{"a": 1}'}
    assert entries[1] == {"id": "c2", "name": "g", "arguments": '{"b": 2}'}
    assert entries[2] == {"id": "", "name": "h", "arguments": "{}"}
    assert entries[3] == {"id": "c3", "name": "unknown", "result": "ok"}
    assert entries[4] == {"id": "", "name": "f", "arguments": '{"z": 0}'}
    assert list(entries[5]) == ["raw"]
    assert isinstance(entries[5]["raw"], str)


def test_record_tool_calls_from_message_and_extras(span: Any) -> None:
    message = AIMessage(
        content="",
        tool_calls=[{"name": "weather", "args": {"city": "Oslo"}, "id": "c1"}],
    )
    assembly.record_tool_calls(span, message)
    assert span.attributes[Attrs.TOOL_CALLS_COUNT] == 1
    assert json.loads(span.attributes[Attrs.TOOL_CALLS]) == [
        {"id": "c1", "name": "weather", "arguments": '{"city": "Oslo"}'}
    ]

    @dataclass
    class WithExtras:
        content: str
        extras: Dict[str, Any]

    other: Any = type(span)()
    assembly.record_tool_calls(
        other, WithExtras("", {"function_calls": [{"name": "f", "arguments": "{}"}]})
    )
    assert other.attributes[Attrs.TOOL_CALLS_COUNT] == 1

    untouched: Any = type(span)()
    assembly.record_tool_calls(untouched, AIMessage(content="no tools"))
    assembly.record_tool_calls(untouched, None)
    assert untouched.attributes == {}


def test_record_exception_sets_logfire_attributes(span: Any) -> None:
    try:
        raise ValueError("bad input")
    except ValueError as exc:
        assembly.record_exception(span, exc)
    assert span.attributes[Attrs.EXCEPTION_TYPE] == "ValueError"
    assert span.attributes[Attrs.EXCEPTION_MESSAGE] == "bad input"
    assert "bad input" in span.attributes[Attrs.EXCEPTION_STACKTRACE]
    assert span.attributes[Attrs.ERROR_TYPE] == "ValueError"
    assert span.attributes[Attrs.LOG_LEVEL] == "error"
    assert span.status.status_code == StatusCode.ERROR


def test_record_exception_truncates_long_stacktraces(span: Any) -> None:
    assembly.record_exception(span, RuntimeError("x" * 60_000))
    stacktrace = span.attributes[Attrs.EXCEPTION_STACKTRACE]
    assert len(stacktrace) == assembly.MAX_STACKTRACE_CHARS + len("... [truncated]")
    assert stacktrace.endswith("... [truncated]")


def test_assembler_model_aliases_are_read_only() -> None:
    aliases = {"fast": "gpt-4o-mini"}
    assembler = assembly.GenAISpanAssembler(aliases)
    aliases["fast"] = "changed"
    assert assembler.resolve_model("fast") == "gpt-4o-mini"
    with pytest.raises(TypeError):
        assembler.model_aliases["fast"] = "x"  # type: ignore[index]


def test_record_request_start(span: Any) -> None:
    assembler = assembly.GenAISpanAssembler({"fast": "gpt-4o-mini"})

    def lookup(query: str) -> str:
        """Look something up."""
        return query

    resolved = assembler.record_request_start(
        span,
        operation_name="chat",
        model="fast",
        system="openai",
        request_params={"temperature": 0.1, "n": 2},
        tools=[lookup],
    )
    assert resolved == "gpt-4o-mini"
    assert span.attributes[Attrs.OPERATION_NAME] == "chat"
    assert span.attributes[Attrs.SYSTEM] == "openai"
    assert span.attributes[Attrs.REQUEST_MODEL] == "gpt-4o-mini"
    assert span.attributes[Attrs.REQUEST_TEMPERATURE] == 0.1
    definitions = json.loads(span.attributes[Attrs.TOOL_DEFINITIONS])
    assert definitions[0]["name"] == "lookup"
    assert definitions[0]["type"] == "function"
    assert not span.ended


@pytest.mark.parametrize(
    "operation, expected",
    [
        ("embed", "embed"),
        ("completion", "completion"),
        (assembly.OperationName.TEXT_COMPLETION, "text_completion"),
        ("", "chat"),
    ],
)
def test_record_request_start_writes_operation_name_as_given(
    span: Any, operation: Any, expected: str
) -> None:
    assembly.GenAISpanAssembler().record_request_start(
        span, operation_name=operation, model="m"
    )
    assert span.attributes[Attrs.OPERATION_NAME] == expected


@pytest.mark.parametrize(
    "response_format, expected",
    [
        ({"type": "json_object"}, "json"),
        ({"type": "json_schema", "json_schema": {"name": "x"}}, "json"),
        ({"type": "text"}, "text"),
        ("json", "json"),
        (WeatherAnswer, "json"),
    ],
)
def test_record_request_params_output_type(
    span: Any, response_format: Any, expected: str
) -> None:
    assembly.record_request_params(span, {"response_format": response_format})
    assert span.attributes == {Attrs.OUTPUT_TYPE: expected}


def test_record_request_start_without_optional_inputs(span: Any) -> None:
    assembly.GenAISpanAssembler().record_request_start(span)
    assert span.attributes == {
        Attrs.OPERATION_NAME: "chat",
        Attrs.SYSTEM: "unknown",
    }


def _conversation() -> List[Any]:
    return [
        SystemMessage(content="Be brief."),
        HumanMessage(content="Weather in Oslo?"),
        AIMessage(
            content="",
            tool_calls=[{"name": "weather", "args": {"city": "Oslo"}, "id": "c1"}],
        ),
        ToolMessage(content='{"temp": -3}', tool_call_id="c1", name="weather"),
        AIMessage(
            content="It is -3C.",
            response_metadata={
                "model_name": "gpt-4o-2024-08-06",
                "finish_reason": "stop",
                "id": "chatcmpl-9",
                "token_usage": {
                    "prompt_tokens": 50,
                    "completion_tokens": 6,
                    "total_tokens": 56,
                    "prompt_tokens_details": {"cached_tokens": 32},
                },
            },
            usage_metadata={"input_tokens": 50, "output_tokens": 6, "total_tokens": 56},
        ),
    ]


def test_record_request_end_populates_span_and_ends_it(span: Any) -> None:
    assembler = assembly.GenAISpanAssembler()
    assembler.record_request_start(span, model="gpt-4o", system="openai")
    result = assembler.record_request_end(span, _conversation(), model="gpt-4o")

    assert span.ended
    assert result is not None
    attrs = span.attributes
    assert attrs[Attrs.USAGE_INPUT_TOKENS] == 50
    assert attrs[Attrs.USAGE_OUTPUT_TOKENS] == 6
    assert attrs[Attrs.USAGE_TOTAL_TOKENS] == 56
    assert attrs[Attrs.USAGE_CACHE_READ_TOKENS] == 32
    assert attrs[Attrs.RESPONSE_MODEL] == "gpt-4o-2024-08-06"
    assert attrs[Attrs.RESPONSE_ID] == "chatcmpl-9"
    assert json.loads(attrs[Attrs.RESPONSE_FINISH_REASONS]) == ["stop"]
    assert Attrs.TOOL_CALLS not in attrs

    assert json.loads(attrs[Attrs.SYSTEM_INSTRUCTIONS]) == [{"type": "text", "content": "Be brief."}]
    inputs = json.loads(attrs[Attrs.INPUT_MESSAGES])
    assert [m["role"] for m in inputs] == ["user", "assistant", "user"]
    assert inputs[1]["parts"] == [
        {"type": "tool_call", "name": "weather", "id": "c1", "arguments": {"city": "Oslo"}}
    ]
    assert inputs[2]["parts"] == [
        {"type": "tool_call_response", "result": {"temp": -3}, "id": "c1", "name": "weather"}
    ]
    outputs = json.loads(attrs[Attrs.OUTPUT_MESSAGES])
    assert outputs == [
        {
            "role": "assistant",
            "parts": [{"type": "text", "content": "It is -3C."}],
            "finish_reason": "stop",
        }
    ]
    schema = json.loads(attrs[Attrs.JSON_SCHEMA])
    assert set(schema["properties"]) == {
        Attrs.INPUT_MESSAGES,
        Attrs.OUTPUT_MESSAGES,
        Attrs.SYSTEM_INSTRUCTIONS,
    }
    assert span.status is None


def test_request_start_attributes_precede_end_attributes(span: Any) -> None:
    assembler = assembly.GenAISpanAssembler()
    assembler.record_request_start(span, model="m", system="openai", request_params={"temperature": 0})
    assembler.record_request_end(span, _conversation(), model="m")
    order = span.set_order
    assert order.index(Attrs.REQUEST_TEMPERATURE) < order.index(Attrs.USAGE_INPUT_TOKENS)
    assert order[-1] == Attrs.JSON_SCHEMA


def test_record_request_end_with_pending_tool_call(span: Any) -> None:
    conversation = [
        HumanMessage(content="Weather?"),
        AIMessage(content="", tool_calls=[{"name": "weather", "args": {}, "id": "c7"}]),
    ]
    assembly.GenAISpanAssembler().record_request_end(span, conversation)
    outputs = json.loads(span.attributes[Attrs.OUTPUT_MESSAGES])
    assert outputs[0]["finish_reason"] == "tool_call"
    assert span.attributes[Attrs.TOOL_CALLS_COUNT] == 1
    assert json.loads(span.attributes[Attrs.TOOL_CALLS])[0]["id"] == "c7"


def test_record_request_end_keeps_system_inline_when_configured(span: Any) -> None:
    assembler = assembly.GenAISpanAssembler(separate_system=False)
    assembler.record_request_end(span, _conversation())
    inputs = json.loads(span.attributes[Attrs.INPUT_MESSAGES])
    assert inputs[0] == {"role": "system", "parts": [{"type": "text", "content": "Be brief."}]}
    assert Attrs.SYSTEM_INSTRUCTIONS not in span.attributes


def test_record_request_end_on_empty_conversation(span: Any) -> None:
    assembly.GenAISpanAssembler().record_request_end(span, [], model="m")
    assert span.ended
    assert span.attributes == {
        Attrs.RESPONSE_MODEL: "m",
        Attrs.JSON_SCHEMA: assembly.MESSAGES_JSON_SCHEMA,
    }


def test_record_request_end_records_failures_and_still_ends(
    span: Any, monkeypatch: pytest.MonkeyPatch
) -> None:
    def _explode(*_: Any, **__: Any) -> None:
        raise RuntimeError("conversion failed")

    monkeypatch.setattr(assembly, "convert_conversation", _explode)
    result = assembly.GenAISpanAssembler().record_request_end(span, _conversation())
    assert result is None
    assert span.ended
    assert span.attributes[Attrs.EXCEPTION_TYPE] == "RuntimeError"
    assert span.attributes[Attrs.EXCEPTION_MESSAGE] == "conversion failed"
    assert span.attributes[Attrs.LOG_LEVEL] == "error"
    assert span.status.status_code == StatusCode.ERROR
    assert span.events == []

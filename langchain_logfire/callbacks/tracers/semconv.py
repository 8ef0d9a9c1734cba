"""Span attribute names written by the tracer.

Most names follow the OpenTelemetry GenAI semantic conventions; the rest are
the extensions Logfire understands (usage details, cache, streaming, cost).
"""


class Attrs:
    """Semantic convention attribute names used throughout the tracer."""

    OPERATION_NAME = "gen_ai.operation.name"
    OUTPUT_TYPE = "gen_ai.output.type"
    SYSTEM = "gen_ai.system"
    REQUEST_MODEL = "gen_ai.request.model"
    REQUEST_TEMPERATURE = "gen_ai.request.temperature"
    REQUEST_TOP_P = "gen_ai.request.top_p"
    REQUEST_MAX_TOKENS = "gen_ai.request.max_tokens"
    REQUEST_STOP = "gen_ai.request.stop"
    REQUEST_PRES_PENALTY = "gen_ai.request.presence_penalty"
    REQUEST_FREQ_PENALTY = "gen_ai.request.frequency_penalty"

    RESPONSE_MODEL = "gen_ai.response.model"
    RESPONSE_ID = "gen_ai.response.id"
    RESPONSE_FINISH_REASONS = "gen_ai.response.finish_reasons"
    RESPONSE_STATUS = "gen_ai.response.status"
    RESPONSE_RUN_ID = "gen_ai.response.run_id"
    SYSTEM_FINGERPRINT = "gen_ai.system.fingerprint"
    LATENCY_MS = "gen_ai.latency_ms"
    COST = "gen_ai.cost"

    USAGE_INPUT_TOKENS = "gen_ai.usage.input_tokens"
    USAGE_OUTPUT_TOKENS = "gen_ai.usage.output_tokens"
    USAGE_TOTAL_TOKENS = "gen_ai.usage.total_tokens"
    USAGE_CACHE_READ_TOKENS = "gen_ai.usage.cache_read_tokens"
    USAGE_CACHE_WRITE_TOKENS = "gen_ai.usage.cache_write_tokens"
    USAGE_CACHE_WRITE_1H_TOKENS = "gen_ai.usage.cache_write_1h_tokens"
    USAGE_CACHE_WRITE_5M_TOKENS = "gen_ai.usage.cache_write_5m_tokens"
    USAGE_REASONING_TOKENS = "gen_ai.usage.reasoning_tokens"
    USAGE_AUDIO_INPUT_TOKENS = "gen_ai.usage.audio_input_tokens"
    USAGE_AUDIO_OUTPUT_TOKENS = "gen_ai.usage.audio_output_tokens"
    USAGE_ACCEPTED_PREDICTION_TOKENS = "gen_ai.usage.accepted_prediction_tokens"
    USAGE_REJECTED_PREDICTION_TOKENS = "gen_ai.usage.rejected_prediction_tokens"
    USAGE_WEB_SEARCH_REQUESTS = "gen_ai.usage.web_search_requests"
    SERVICE_TIER = "gen_ai.service_tier"

    CACHE_STATUS = "gen_ai.cache.status"
    CACHE_KEY = "gen_ai.cache.key"
    RESPONSE_STREAMED = "gen_ai.response.streamed"
    RESPONSE_NUM_CHUNKS = "gen_ai.response.num_chunks"

    INPUT_MESSAGES = "gen_ai.input.messages"
    OUTPUT_MESSAGES = "gen_ai.output.messages"
    SYSTEM_INSTRUCTIONS = "gen_ai.system_instructions"
    TOOL_DEFINITIONS = "gen_ai.tool.definitions"
    TOOL_CALLS = "gen_ai.tool_calls"
    TOOL_CALLS_COUNT = "gen_ai.response.tool_calls.count"

    JSON_SCHEMA = "logfire.json_schema"
    LOG_LEVEL = "log.level"
    ERROR_TYPE = "error.type"
    EXCEPTION_TYPE = "exception.type"
    EXCEPTION_MESSAGE = "exception.message"
    EXCEPTION_STACKTRACE = "exception.stacktrace"

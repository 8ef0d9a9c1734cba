"""Usage and response metadata extraction for model responses.

LangChain spreads provider metadata over ``AIMessage.response_metadata`` (raw
provider payloads such as OpenAI's ``token_usage`` or Anthropic's ``usage``)
and ``AIMessage.usage_metadata`` (LangChain's provider-agnostic schema). Both
are folded into a flat "extras" bag which is then read through an explicit
precedence table: unified keys first, raw provider fields only when the
unified key is missing.

All functions here are pure and never raise; a missing message or bag yields
an empty result.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, is_dataclass
from typing import Any, Dict, Mapping, Optional, Sequence, Tuple

from langchain_logfire.callbacks.tracers.message_parts import safe_json
from langchain_logfire.callbacks.tracers.semconv import Attrs

LOGGER = logging.getLogger(__name__)

_RAW_USAGE_KEYS = ("token_usage", "usage")

# LangChain ``usage_metadata`` detail fields -> unified extras keys.
_INPUT_DETAIL_KEYS = {
    "cache_read": "cache_read_tokens",
    "cache_creation": "cache_write_tokens",
    "ephemeral_1h_input_tokens": "cache_write_1h_tokens",
    "ephemeral_5m_input_tokens": "cache_write_5m_tokens",
    "audio": "audio_input_tokens",
}
_OUTPUT_DETAIL_KEYS = {
    "reasoning": "reasoning_tokens",
    "audio": "audio_output_tokens",
}


def is_present(value: Any) -> bool:
    """``None`` and empty strings are absent; ``0`` and ``False`` are not."""
    if value is None:
        return False
    if isinstance(value, str) and not value:
        return False
    return True


def _to_mapping(value: Any) -> Optional[Mapping[str, Any]]:
    if isinstance(value, Mapping):
        return value
    if is_dataclass(value) and not isinstance(value, type):
        try:
            return asdict(value)
        except Exception:
            return None
    model_dump = getattr(value, "model_dump", None)
    if callable(model_dump):
        try:
            dumped = model_dump(exclude_none=True)
        except TypeError:
            dumped = model_dump()
        if isinstance(dumped, Mapping):
            return dumped
    return None


def _field(message: Any, key: str) -> Any:
    if isinstance(message, Mapping):
        return message.get(key)
    try:
        return getattr(message, key, None)
    except Exception:
        return None


def _coerce_int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _unified_from_usage_metadata(usage_metadata: Any) -> Dict[str, Any]:
    usage = _to_mapping(usage_metadata)
    if not usage:
        return {}
    unified: Dict[str, Any] = {}
    for details_key, mapping in (
        ("input_token_details", _INPUT_DETAIL_KEYS),
        ("output_token_details", _OUTPUT_DETAIL_KEYS),
    ):
        details = _to_mapping(usage.get(details_key))
        if not details:
            continue
        for source, target in mapping.items():
            if details.get(source) is not None:
                unified[target] = details[source]
    return unified


def message_extras(message: Any) -> Dict[str, Any]:
    """Build the flat metadata bag for ``message``.

    Sources, lowest to highest priority: ``response_metadata`` with its raw
    usage payload flattened in, unified keys derived from ``usage_metadata``,
    and an explicit ``extras`` mapping.
    """
    if message is None or isinstance(message, str):
        return {}
    extras: Dict[str, Any] = {}
    try:
        response_metadata = _to_mapping(_field(message, "response_metadata"))
        if response_metadata:
            extras.update(response_metadata)
            for key in _RAW_USAGE_KEYS:
                raw_usage = _to_mapping(response_metadata.get(key))
                if raw_usage:
                    extras.update(raw_usage)
        extras.update(_unified_from_usage_metadata(_field(message, "usage_metadata")))
        explicit = _to_mapping(_field(message, "extras"))
        if explicit:
            extras.update(explicit)
    except Exception:
        LOGGER.debug("Failed to collect extras from %r", type(message), exc_info=True)
    return extras


# ---------------------------------------------------------------------------
# Usage precedence
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class UsageRule:
    """How one usage attribute is resolved from the extras bag.

    ``unified_key`` always wins when present, even if its value is ``None``.
    Otherwise each ``(gate, path)`` fallback is tried in order, skipping those
    whose ``gate`` key is present in the bag.
    """

    attribute: str
    unified_key: str
    fallbacks: Tuple[Tuple[str, Tuple[str, ...]], ...] = ()


USAGE_PRECEDENCE: Tuple[UsageRule, ...] = (
    UsageRule(
        Attrs.USAGE_CACHE_READ_TOKENS,
        "cache_read_tokens",
        (
            ("cache_read_tokens", ("cache_read_input_tokens",)),
            ("cache_read_tokens", ("prompt_tokens_details", "cached_tokens")),
        ),
    ),
    UsageRule(
        Attrs.USAGE_CACHE_WRITE_TOKENS,
        "cache_write_tokens",
        (("cache_write_tokens", ("cache_creation_input_tokens",)),),
    ),
    UsageRule(Attrs.USAGE_CACHE_WRITE_1H_TOKENS, "cache_write_1h_tokens"),
    UsageRule(Attrs.USAGE_CACHE_WRITE_5M_TOKENS, "cache_write_5m_tokens"),
    UsageRule(
        Attrs.USAGE_REASONING_TOKENS,
        "reasoning_tokens",
        (("reasoning_tokens", ("completion_tokens_details", "reasoning_tokens")),),
    ),
    UsageRule(
        Attrs.USAGE_AUDIO_INPUT_TOKENS,
        "audio_input_tokens",
        (("cache_read_tokens", ("prompt_tokens_details", "audio_tokens")),),
    ),
    UsageRule(
        Attrs.USAGE_AUDIO_OUTPUT_TOKENS,
        "audio_output_tokens",
        (("reasoning_tokens", ("completion_tokens_details", "audio_tokens")),),
    ),
    UsageRule(
        Attrs.USAGE_ACCEPTED_PREDICTION_TOKENS,
        "accepted_prediction_tokens",
        (
            (
                "reasoning_tokens",
                ("completion_tokens_details", "accepted_prediction_tokens"),
            ),
        ),
    ),
    UsageRule(
        Attrs.USAGE_REJECTED_PREDICTION_TOKENS,
        "rejected_prediction_tokens",
        (
            (
                "reasoning_tokens",
                ("completion_tokens_details", "rejected_prediction_tokens"),
            ),
        ),
    ),
    UsageRule(Attrs.SERVICE_TIER, "service_tier"),
    UsageRule(
        Attrs.USAGE_WEB_SEARCH_REQUESTS,
        "web_search_requests",
        (("web_search_requests", ("server_tool_use", "web_search_requests")),),
    ),
)


def _lookup_path(extras: Mapping[str, Any], path: Sequence[str]) -> Any:
    current: Any = extras
    for key in path:
        mapping = _to_mapping(current)
        if mapping is None or key not in mapping:
            return None
        current = mapping[key]
    return current


def extract_usage_attributes(extras: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    """Resolve every ``USAGE_PRECEDENCE`` rule against an extras bag."""
    attributes: Dict[str, Any] = {}
    if not extras or not isinstance(extras, Mapping):
        return attributes
    for rule in USAGE_PRECEDENCE:
        try:
            if rule.unified_key in extras:
                value = extras[rule.unified_key]
                if is_present(value):
                    attributes[rule.attribute] = value
                continue
            for gate, path in rule.fallbacks:
                if gate in extras:
                    continue
                value = _lookup_path(extras, path)
                if is_present(value):
                    attributes[rule.attribute] = value
                    break
        except Exception:
            LOGGER.debug("Failed to resolve %s", rule.attribute, exc_info=True)
    return attributes


def extract_usage(message: Any) -> Dict[str, Any]:
    """Detailed usage attributes for ``message`` (empty when absent)."""
    if message is None:
        return {}
    return extract_usage_attributes(message_extras(message))


def _extract_usage_tokens(
    token_usage: Any,
) -> Tuple[Optional[int], Optional[int], Optional[int]]:
    """Return (input_tokens, output_tokens, total_tokens) from usage payloads."""

    def _lookup(keys: Sequence[str]) -> Optional[int]:
        mapping = _to_mapping(token_usage) or {}
        for key in keys:
            if key in mapping:
                return _coerce_int(mapping[key])
        return None

    return (
        _lookup(("input_tokens", "prompt_tokens", "prompt_eval_count")),
        _lookup(("output_tokens", "completion_tokens", "eval_count")),
        _lookup(("total_tokens",)),
    )


def extract_token_counts(
    message: Any,
) -> Tuple[Optional[int], Optional[int], Optional[int]]:
    """Return (input, output, total) token counts for ``message``.

    ``usage_metadata`` is preferred, then the raw provider usage payload, then
    a ``tokens`` pair. The total is inferred when only the parts are known.
    """
    if message is None or isinstance(message, str):
        return None, None, None
    try:
        candidates = [_field(message, "usage_metadata")]
        response_metadata = _to_mapping(_field(message, "response_metadata")) or {}
        candidates.extend(response_metadata.get(key) for key in _RAW_USAGE_KEYS)
        input_tokens = output_tokens = total_tokens = None
        for candidate in candidates:
            if candidate is None:
                continue
            input_tokens, output_tokens, total_tokens = _extract_usage_tokens(candidate)
            if input_tokens is not None or output_tokens is not None:
                break
        if input_tokens is None and output_tokens is None:
            tokens = _field(message, "tokens")
            if isinstance(tokens, (list, tuple)) and len(tokens) == 2:
                input_tokens, output_tokens = _coerce_int(tokens[0]), _coerce_int(
                    tokens[1]
                )
                total_tokens = None
        if total_tokens is None and (
            input_tokens is not None or output_tokens is not None
        ):
            total_tokens = (input_tokens or 0) + (output_tokens or 0)
        return input_tokens, output_tokens, total_tokens
    except Exception:
        LOGGER.debug("Failed to extract token counts", exc_info=True)
        return None, None, None


# ---------------------------------------------------------------------------
# Response metadata
# ---------------------------------------------------------------------------


def _first_present(*values: Any) -> Any:
    for value in values:
        if is_present(value):
            return value
    return None


def _finish_reason(message: Any, extras: Mapping[str, Any]) -> Any:
    return _first_present(
        _field(message, "finish_reason"),
        extras.get("finish_reason"),
        extras.get("stop_reason"),
        extras.get("done_reason"),
    )


def extract_response_attributes(
    message: Any, requested_model: Optional[str] = None
) -> Dict[str, Any]:
    """Response model, id, finish reasons, latency, cost, status and run id."""
    attributes: Dict[str, Any] = {}
    model = requested_model
    if message is not None and not isinstance(message, str):
        extras = message_extras(message)
        model = _first_present(extras.get("model"), extras.get("model_name"), model)

        finish_reason = _finish_reason(message, extras)
        if is_present(finish_reason):
            value = getattr(finish_reason, "value", finish_reason)
            attributes[Attrs.RESPONSE_FINISH_REASONS] = safe_json([str(value)])

        elapsed = _first_present(_field(message, "elapsed"), extras.get("elapsed"))
        if elapsed is not None:
            try:
                attributes[Attrs.LATENCY_MS] = float(elapsed) * 1000
            except (TypeError, ValueError):
                LOGGER.debug("Ignoring non-numeric elapsed value %r", elapsed)

        candidates = {
            Attrs.COST: _first_present(_field(message, "cost"), extras.get("cost")),
            Attrs.RESPONSE_ID: _first_present(
                extras.get("response_id"), extras.get("id")
            ),
            Attrs.SYSTEM_FINGERPRINT: extras.get("system_fingerprint"),
            Attrs.RESPONSE_STATUS: _first_present(
                _field(message, "status"), extras.get("status")
            ),
            Attrs.RESPONSE_RUN_ID: _first_present(
                _field(message, "run_id"), extras.get("run_id")
            ),
        }
        for key, value in candidates.items():
            if is_present(value):
                attributes[key] = value
    if is_present(model):
        attributes[Attrs.RESPONSE_MODEL] = model
    return attributes


def extract_cache_attributes(message: Any) -> Dict[str, Any]:
    """``gen_ai.cache.status`` (from ``cache_status`` or ``cache_hit``) and key."""
    extras = message_extras(message)
    attributes: Dict[str, Any] = {}
    status = extras.get("cache_status")
    if status is None:
        status = extras.get("cache_hit")
    if is_present(status):
        attributes[Attrs.CACHE_STATUS] = status
    if is_present(extras.get("cache_key")):
        attributes[Attrs.CACHE_KEY] = extras["cache_key"]
    return attributes


def extract_streaming_attributes(message: Any) -> Dict[str, Any]:
    extras = message_extras(message)
    attributes: Dict[str, Any] = {}
    if is_present(extras.get("streamed")):
        attributes[Attrs.RESPONSE_STREAMED] = extras["streamed"]
    if is_present(extras.get("num_chunks")):
        attributes[Attrs.RESPONSE_NUM_CHUNKS] = extras["num_chunks"]
    return attributes

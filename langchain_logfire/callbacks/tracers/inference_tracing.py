"""OpenTelemetry tracer for LangChain model calls, shaped for Logfire.

Each chat model or LLM invocation becomes one ``CLIENT`` span named
``chat {model}`` (or ``text_completion {model}``). When the run starts, the
request attributes are recorded. When it ends, the whole conversation
(prompt messages plus the generated reply) is converted into the GenAI
message format Logfire renders, together with usage, response metadata and
tool calls. Spans are exported by whatever tracer provider is configured,
for example with ``logfire.configure()``.

Attach an instance to a run config (``config["callbacks"]``) or call
``LogfireGenAITracer.autolog()`` to instrument every LangChain run.
"""

from __future__ import annotations

import logging
import os
from contextvars import ContextVar
from dataclasses import dataclass, field
from threading import Lock
from typing import Any, Dict, List, Mapping, Optional, Sequence
from uuid import UUID

from langchain_core.callbacks import BaseCallbackHandler
from langchain_core.messages import BaseMessage
from langchain_core.outputs import ChatGeneration, LLMResult

from langchain_logfire.callbacks.tracers.message_parts import OperationName
from langchain_logfire.callbacks.tracers.semconv import Attrs
from langchain_logfire.callbacks.tracers.span_attributes import (
    GenAISpanAssembler,
    detect_system,
    record_exception,
    set_if_some,
)

try:  # pragma: no cover - imported lazily in production environments
    from opentelemetry import trace as otel_trace
    from opentelemetry.semconv.schemas import Schemas
    from opentelemetry.trace import (
        Span,
        SpanKind,
        get_current_span,
        set_span_in_context,
    )
except ImportError as exc:  # pragma: no cover
    raise ImportError(
        "Logfire GenAI tracing requires 'opentelemetry-api' and "
        "'opentelemetry-semantic-conventions'. Install them via:\n"
        "    pip install opentelemetry-sdk opentelemetry-semantic-conventions"
    ) from exc

LOGGER = logging.getLogger(__name__)

_LANGCHAIN_TRACER_CONTEXT_VAR: ContextVar[Optional[BaseCallbackHandler]] = ContextVar(
    "logfire_genai_tracer_callback",
    default=None,
)

# ---------------------------------------------------------------------------
# Default configuration for static autolog() API
# ---------------------------------------------------------------------------
DEFAULT_CONFIG: Dict[str, Any] = {
    "provider_name": None,  # Auto-detect if None
    "tracer_name": "langchain_logfire",
    "separate_system": True,
    "capture_tool_definitions": True,
    "model_aliases": {},
}


def _env_flag(value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in ("1", "true", "yes", "on"):
        return True
    if lowered in ("0", "false", "no", "off"):
        return False
    raise ValueError(f"not a boolean: {value!r}")


_ENV_MAPPINGS = {
    "LOGFIRE_GENAI_PROVIDER_NAME": ("provider_name", str),
    "LOGFIRE_GENAI_SEPARATE_SYSTEM": ("separate_system", _env_flag),
    "LOGFIRE_GENAI_CAPTURE_TOOL_DEFINITIONS": ("capture_tool_definitions", _env_flag),
    "LOGFIRE_GENAI_TRACER_NAME": ("tracer_name", str),
}


def _first_non_empty(*values: Any) -> Optional[Any]:
    for value in values:
        if value:
            return value
    return None


@dataclass
class _SpanRecord:
    run_id: str
    span: Span
    operation: str
    model: Optional[str]
    conversation: List[Any] = field(default_factory=list)
    num_chunks: int = 0


class LogfireGenAITracer(BaseCallbackHandler):
    """LangChain callback handler that emits Logfire-compatible GenAI spans.

    Usage, instance-based::

        tracer = LogfireGenAITracer(model_aliases={"gpt4o": "gpt-4o"})
        model.invoke("Hello", config={"callbacks": [tracer]})

    or process-wide::

        LogfireGenAITracer.set_config({"provider_name": "openai"})
        LogfireGenAITracer.autolog()
    """

    # -------------------------------------------------------------------------
    # Class-level state for static autolog() API
    # -------------------------------------------------------------------------
    _GLOBAL_TRACER_INSTANCE: Optional["LogfireGenAITracer"] = None
    _ACTIVE: bool = False
    _GLOBAL_CONFIG: Dict[str, Any] = {}
    _STATIC_LOCK: Lock = Lock()

    _schema_url: str = Schemas.V1_28_0.value

    def __init__(
        self,
        *,
        name: str = "langchain_logfire",
        provider_name: Optional[str] = None,
        separate_system: bool = True,
        capture_tool_definitions: bool = True,
        model_aliases: Optional[Mapping[str, str]] = None,
        tracer_provider: Optional[Any] = None,
    ) -> None:
        """Initialize tracer state.

        Args:
            name: Instrumentation scope name of the OpenTelemetry tracer.
            provider_name: Value for ``gen_ai.system``; detected per run if None.
            separate_system: Record system messages as system instructions.
            capture_tool_definitions: Record ``gen_ai.tool.definitions``.
            model_aliases: Read-only alias table used to resolve model names.
            tracer_provider: Provider to obtain the tracer from instead of the
                global one.
        """
        super().__init__()
        self._name = name
        self._default_provider_name = provider_name
        self._capture_tool_definitions = capture_tool_definitions
        if tracer_provider is not None:
            self._tracer = tracer_provider.get_tracer(name, schema_url=self._schema_url)
        else:
            self._tracer = otel_trace.get_tracer(name, schema_url=self._schema_url)
        self._assembler = GenAISpanAssembler(
            model_aliases, separate_system=separate_system
        )
        self._spans: Dict[str, _SpanRecord] = {}
        self._lock = Lock()

    @property
    def assembler(self) -> GenAISpanAssembler:
        return self._assembler

    # -------------------------------------------------------------------------
    # LangChain callbacks
    # -------------------------------------------------------------------------

    def on_chat_model_start(
        self,
        serialized: dict[str, Any],
        messages: list[list[BaseMessage]],
        *,
        run_id: UUID,
        parent_run_id: Optional[UUID] = None,
        tags: Optional[List[str]] = None,
        metadata: Optional[dict[str, Any]] = None,
        **kwargs: Any,
    ) -> Any:
        """Open a chat span and record request attributes."""
        conversation = [msg for thread in messages or [] for msg in thread]
        self._handle_model_start(
            serialized=serialized,
            conversation=conversation,
            run_id=run_id,
            parent_run_id=parent_run_id,
            metadata=metadata,
            invocation_kwargs=kwargs,
            operation=OperationName.CHAT,
        )

    def on_llm_start(
        self,
        serialized: dict[str, Any],
        prompts: Sequence[Any],
        *,
        run_id: UUID,
        parent_run_id: Optional[UUID] = None,
        tags: Optional[List[str]] = None,
        metadata: Optional[dict[str, Any]] = None,
        **kwargs: Any,
    ) -> Any:
        """Open a text completion span and record request attributes."""
        self._handle_model_start(
            serialized=serialized,
            conversation=list(prompts or []),
            run_id=run_id,
            parent_run_id=parent_run_id,
            metadata=metadata,
            invocation_kwargs=kwargs,
            operation=OperationName.TEXT_COMPLETION,
        )

    def on_llm_new_token(
        self,
        token: str,
        *,
        run_id: UUID,
        parent_run_id: Optional[UUID] = None,
        **kwargs: Any,
    ) -> Any:
        record = self._spans.get(str(run_id))
        if record:
            record.num_chunks += 1

    def on_llm_end(
        self,
        response: LLMResult,
        *,
        run_id: UUID,
        parent_run_id: Optional[UUID] = None,
        **kwargs: Any,
    ) -> Any:
        """Record the response and end the span."""
        with self._lock:
            record = self._spans.pop(str(run_id), None)
        if not record:
            return

        llm_output_raw = getattr(response, "llm_output", None) or {}
        llm_output = llm_output_raw if isinstance(llm_output_raw, Mapping) else {}
        generated: List[Any] = []
        for thread in response.generations or []:
            for gen in thread:
                generated.append(self._generation_message(gen, llm_output))

        if record.num_chunks:
            set_if_some(record.span, Attrs.RESPONSE_STREAMED, True)
            set_if_some(record.span, Attrs.RESPONSE_NUM_CHUNKS, record.num_chunks)
        self._assembler.record_request_end(
            record.span, record.conversation + generated, model=record.model
        )

    def on_llm_error(
        self,
        error: BaseException,
        *,
        run_id: UUID,
        parent_run_id: Optional[UUID] = None,
        **kwargs: Any,
    ) -> Any:
        """Record the error on the span and end it."""
        with self._lock:
            record = self._spans.pop(str(run_id), None)
        if not record:
            return
        try:
            record_exception(record.span, error)
        except Exception:
            LOGGER.debug("Failed to record LLM error on span", exc_info=True)
        finally:
            record.span.end()

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    @staticmethod
    def _generation_message(gen: Any, llm_output: Mapping[str, Any]) -> Any:
        if isinstance(gen, ChatGeneration) and gen.message is not None:
            return gen.message
        info = getattr(gen, "generation_info", None) or {}
        return {
            "role": "assistant",
            "content": getattr(gen, "text", ""),
            "finish_reason": info.get("finish_reason"),
            "response_metadata": dict(llm_output),
        }

    def _resolve_parent_context(self, parent_run_id: Optional[UUID]) -> Any:
        if parent_run_id is not None:
            parent = self._spans.get(str(parent_run_id))
            if parent:
                return set_span_in_context(parent.span)
        current_span = get_current_span()
        if current_span and current_span.get_span_context().is_valid:
            return set_span_in_context(current_span)
        return None

    def _handle_model_start(
        self,
        *,
        serialized: Optional[dict[str, Any]],
        conversation: List[Any],
        run_id: UUID,
        parent_run_id: Optional[UUID],
        metadata: Optional[dict[str, Any]],
        invocation_kwargs: dict[str, Any],
        operation: OperationName,
    ) -> None:
        serialized = serialized or {}
        invocation_params = invocation_kwargs.get("invocation_params") or {}
        metadata = metadata or {}
        serialized_kwargs = serialized.get("kwargs") or {}
        if not isinstance(serialized_kwargs, dict):
            serialized_kwargs = {}

        model_name = _first_non_empty(
            invocation_params.get("model"),
            invocation_params.get("model_name"),
            serialized_kwargs.get("model"),
            serialized_kwargs.get("model_name"),
            metadata.get("ls_model_name"),
        )
        system = self._default_provider_name or detect_system(
            metadata.get("ls_provider"),
            invocation_params.get("_type"),
            serialized,
        )
        tools = None
        if self._capture_tool_definitions:
            tools = _first_non_empty(
                invocation_params.get("tools"),
                invocation_params.get("functions"),
                invocation_kwargs.get("tools"),
                serialized_kwargs.get("tools"),
            )

        resolved_model = self._assembler.resolve_model(model_name)
        span_name = (
            f"{operation.value} {resolved_model}" if resolved_model else operation.value
        )
        span = self._tracer.start_span(
            name=span_name,
            context=self._resolve_parent_context(parent_run_id),
            kind=SpanKind.CLIENT,
        )
        try:
            self._assembler.record_request_start(
                span,
                operation_name=operation,
                model=model_name,
                system=system,
                request_params=invocation_params,
                tools=tools,
            )
        except Exception:
            LOGGER.debug("Failed to record request attributes", exc_info=True)
        with self._lock:
            self._spans[str(run_id)] = _SpanRecord(
                run_id=str(run_id),
                span=span,
                operation=operation.value,
                model=model_name,
                conversation=list(conversation),
            )

    # -------------------------------------------------------------------------
    # Static autolog() API
    # -------------------------------------------------------------------------

    @classmethod
    def set_config(cls, cfg: Dict[str, Any]) -> None:
        """Merge user configuration into the global config store.

        Configuration precedence (highest to lowest):
        1. Per-call overrides passed to autolog()
        2. Values from set_config()
        3. Environment variables
        4. DEFAULT_CONFIG

        Args:
            cfg: Dictionary of configuration options to merge.
                See DEFAULT_CONFIG for available keys.
        """
        with cls._STATIC_LOCK:
            cls._merge_config(cfg)

    @classmethod
    def _merge_config(cls, cfg: Optional[Dict[str, Any]]) -> None:
        if not cfg:
            return
        unknown_keys = set(cfg.keys()) - set(DEFAULT_CONFIG.keys())
        if unknown_keys:
            LOGGER.warning(
                "Unknown configuration keys will be ignored: %s",
                sorted(unknown_keys),
            )
        cls._GLOBAL_CONFIG.update(
            {k: v for k, v in cfg.items() if k in DEFAULT_CONFIG}
        )

    @classmethod
    def get_config(cls) -> Dict[str, Any]:
        """Return the effective merged configuration."""
        effective = dict(DEFAULT_CONFIG)
        for env_var, (config_key, converter) in _ENV_MAPPINGS.items():
            env_value = os.getenv(env_var)
            if env_value is not None:
                try:
                    effective[config_key] = converter(env_value)
                except (ValueError, TypeError):
                    LOGGER.warning(
                        "Invalid value for environment variable %s: %s",
                        env_var,
                        env_value,
                    )
        effective.update(
            {k: v for k, v in cls._GLOBAL_CONFIG.items() if k in DEFAULT_CONFIG}
        )
        return effective

    @classmethod
    def autolog(cls, **overrides: Any) -> None:
        """Instrument every LangChain run in this process.

        Idempotent: a second call only merges ``overrides`` into the config
        (they apply to tracers created afterwards).

        Example:
            >>> LogfireGenAITracer.autolog(provider_name="openai")
        """
        with cls._STATIC_LOCK:
            cls._merge_config(overrides)
            if cls._ACTIVE:
                LOGGER.info(
                    "LogfireGenAITracer.autolog() already active; "
                    "merged overrides if provided."
                )
                return

            effective = cls.get_config()
            instance = cls(
                name=effective["tracer_name"],
                provider_name=effective["provider_name"],
                separate_system=effective["separate_system"],
                capture_tool_definitions=effective["capture_tool_definitions"],
                model_aliases=effective["model_aliases"],
            )
            cls._GLOBAL_TRACER_INSTANCE = instance
            cls._ACTIVE = True
            cls._register_global_callback(instance)

            LOGGER.info(
                "LogfireGenAITracer.autolog() activated with config: %s", effective
            )

    @classmethod
    def _register_global_callback(cls, instance: "LogfireGenAITracer") -> None:
        """Include ``instance`` in every LangChain callback manager."""
        try:
            from langchain_core.tracers.context import register_configure_hook

            ctx_token = _LANGCHAIN_TRACER_CONTEXT_VAR.set(instance)
            register_configure_hook(_LANGCHAIN_TRACER_CONTEXT_VAR, inheritable=True)
            cls._GLOBAL_CONFIG["_registered_hook_token"] = ctx_token
            LOGGER.debug("Registered tracer via context-var configure hook")
        except Exception:
            LOGGER.exception("Failed to register global callback handler")

    @classmethod
    def _unregister_global_callback(cls) -> None:
        ctx_token = cls._GLOBAL_CONFIG.pop("_registered_hook_token", None)
        try:
            from langchain_core.tracers.context import _configure_hooks

            _configure_hooks[:] = [
                hook
                for hook in _configure_hooks
                if not (hook and hook[0] is _LANGCHAIN_TRACER_CONTEXT_VAR)
            ]
        except Exception:
            LOGGER.debug("Failed to unregister configure hook", exc_info=True)
        if ctx_token is not None:
            try:
                _LANGCHAIN_TRACER_CONTEXT_VAR.reset(ctx_token)
            except ValueError:
                # Token created in another context.
                _LANGCHAIN_TRACER_CONTEXT_VAR.set(None)

    @classmethod
    def is_active(cls) -> bool:
        """Whether autolog() instrumentation is currently active."""
        return cls._ACTIVE

    @classmethod
    def shutdown(cls) -> None:
        """Flush pending spans, end dangling ones and remove the global hook.

        It's safe to call autolog() again after shutdown().
        """
        with cls._STATIC_LOCK:
            if not cls._ACTIVE:
                LOGGER.debug("shutdown() called but autolog() was not active")
                return

            cls.force_flush()

            instance = cls._GLOBAL_TRACER_INSTANCE
            if instance:
                with instance._lock:
                    dangling = list(instance._spans.items())
                    instance._spans.clear()
                for run_key, record in dangling:
                    try:
                        record.span.end()
                    except Exception:
                        LOGGER.debug("Failed to end span %s", run_key, exc_info=True)

            cls._unregister_global_callback()
            cls._GLOBAL_TRACER_INSTANCE = None
            cls._ACTIVE = False
            LOGGER.info("LogfireGenAITracer.shutdown() completed")

    @classmethod
    def force_flush(cls, timeout_millis: int = 5000) -> bool:
        """Flush pending spans on the global tracer provider."""
        try:
            provider = otel_trace.get_tracer_provider()
            if hasattr(provider, "force_flush"):
                return bool(provider.force_flush(timeout_millis=timeout_millis))
            return True
        except Exception:
            LOGGER.debug("force_flush() failed", exc_info=True)
            return False

    @classmethod
    def get_tracer_instance(cls) -> Optional["LogfireGenAITracer"]:
        """The global tracer instance if autolog() is active."""
        return cls._GLOBAL_TRACER_INSTANCE if cls._ACTIVE else None

"""LangChain integration that emits Logfire-compatible GenAI spans."""

from langchain_logfire.callbacks.tracers import GenAISpanAssembler, LogfireGenAITracer

__version__ = "0.1.0"

__all__ = ["GenAISpanAssembler", "LogfireGenAITracer", "__version__"]

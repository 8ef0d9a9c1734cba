"""LangChain callback handlers."""

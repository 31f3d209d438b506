"""Execution of resolved intents against in-memory rows."""

from insightvault.execution.execute import execute_intent

__all__ = ["execute_intent"]

"""Orchestrator module: per-request control flow for the query engine.

Dataset kind -> rows -> schema -> route -> execute | history | retrieval
"""

from insightvault.orchestrator.runtime import QueryEngine, build_engine

__all__ = ["QueryEngine", "build_engine"]

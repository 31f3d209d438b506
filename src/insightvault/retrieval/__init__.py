"""Retrieval fallback for questions the structural router declines."""

"""HTTP API for InsightVault.

This module provides the FastAPI app factory (JSON and server-sent events).
"""

from insightvault.api.server import create_app

__all__ = ["create_app"]

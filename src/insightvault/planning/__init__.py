"""Question planning: schema inference, field resolution and intent detection."""

from insightvault.planning.dispatch import route_question
from insightvault.planning.schema import DatasetSchema, build_schema

__all__ = ["DatasetSchema", "build_schema", "route_question"]

"""Shared test fixtures for the insightvault test suite.

Provides:

* ``movie_rows``   -- six hand-counted movie records
* ``movie_schema`` -- schema inferred from ``movie_rows``
* ``store``        -- InMemoryRowStore holding ``movies`` (tabular) and
                      ``manual`` (document, no rows)
* ``engine``       -- QueryEngine over ``store`` with no LLM collaborators
* ``client``       -- FastAPI TestClient backed by ``engine``
"""

from __future__ import annotations

from typing import Any, Optional, Sequence

import pytest
from fastapi.testclient import TestClient

from insightvault.api.server import create_app
from insightvault.config import EngineConfig
from insightvault.contracts import Snippet
from insightvault.io.store import InMemoryRowStore
from insightvault.orchestrator.runtime import QueryEngine
from insightvault.planning.schema import build_schema

# ---------------------------------------------------------------------------
# Data
# ---------------------------------------------------------------------------

MOVIES = [
    {"title": "Jaws", "year": "1975", "genre": "Thriller", "rating": "8.1", "box_office": "470700000"},
    {"title": "Star Wars", "year": "1977", "genre": "Sci-Fi", "rating": "8.6", "box_office": "775400000"},
    {"title": "Alien", "year": "1979", "genre": "Sci-Fi", "rating": "8.5", "box_office": "104900000"},
    {"title": "Rocky", "year": "1976", "genre": "Drama", "rating": "8.1", "box_office": "225000000"},
    {"title": "Grease", "year": "1978", "genre": "Musical", "rating": "7.2", "box_office": "396300000"},
    {"title": "Halloween", "year": "1978", "genre": "Horror", "rating": "7.7", "box_office": "70000000"},
]


# ---------------------------------------------------------------------------
# Collaborator fakes
# ---------------------------------------------------------------------------


class FakeRetriever:
    """Returns fixed snippets and records every search."""

    def __init__(self, snippets: Sequence[Snippet] = ()):
        self.snippets = list(snippets)
        self.searches: list[dict[str, Any]] = []

    async def embed(self, text: str) -> list[float]:
        return [1.0, 0.0]

    async def similarity_search(self, vector, dataset_id, threshold, limit):
        self.searches.append(
            {"vector": list(vector), "dataset_id": dataset_id, "threshold": threshold, "limit": limit}
        )
        return list(self.snippets)


class FakeGenerator:
    """Returns a canned reply and records every call."""

    def __init__(self, reply: str = "Generated answer.", fragments: Sequence[str] = ("Generated ", "answer.")):
        self.reply = reply
        self.fragments = list(fragments)
        self.calls: list[dict[str, Any]] = []

    async def generate(self, prompt, context_snippets, history=(), instructions: Optional[str] = None):
        self.calls.append(
            {
                "prompt": prompt,
                "context_snippets": list(context_snippets),
                "history": list(history),
                "instructions": instructions,
            }
        )
        return self.reply

    async def stream(self, prompt, context_snippets, history=(), instructions: Optional[str] = None):
        self.calls.append(
            {
                "prompt": prompt,
                "context_snippets": list(context_snippets),
                "history": list(history),
                "instructions": instructions,
            }
        )
        for fragment in self.fragments:
            yield fragment


class FailingGenerator(FakeGenerator):
    async def generate(self, prompt, context_snippets, history=(), instructions=None):
        raise ConnectionError("Cannot connect to Ollama")

    async def stream(self, prompt, context_snippets, history=(), instructions=None):
        yield "partial "
        raise ConnectionError("Cannot connect to Ollama")


class BrokenStore(InMemoryRowStore):
    async def get_rows(self, dataset_id):
        raise RuntimeError("database is locked")


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def movie_rows() -> list[dict[str, str]]:
    return [dict(r) for r in MOVIES]


@pytest.fixture
def movie_schema(movie_rows):
    return build_schema(movie_rows)


@pytest.fixture
def store(movie_rows) -> InMemoryRowStore:
    store = InMemoryRowStore()
    store.add_dataset("movies", movie_rows)
    store.add_dataset("manual", kind="document")
    return store


@pytest.fixture
def engine(store) -> QueryEngine:
    return QueryEngine(store, config=EngineConfig())


@pytest.fixture
def client(engine) -> TestClient:
    return TestClient(create_app(engine=engine))

"""Tests for the DuckDB row store."""

import asyncio
import json
from types import SimpleNamespace

import pytest

from insightvault.io import store as store_module
from insightvault.io.store import DuckDBRowStore


@pytest.fixture
def duck(tmp_path) -> DuckDBRowStore:
    return DuckDBRowStore(tmp_path / "iv.duckdb")


# ============================================================================
# Rows
# ============================================================================


def test_rows_round_trip_in_order(duck, movie_rows):
    """Rows come back in insertion order with string values."""
    assert duck.save_dataset("movies", movie_rows, name="movies.csv") == 6
    rows = duck.fetch_rows("movies")
    assert [r["title"] for r in rows] == ["Jaws", "Star Wars", "Alien", "Rocky", "Grease", "Halloween"]
    assert rows[0]["rating"] == "8.1"


def test_save_replaces_previous_rows(duck, movie_rows):
    """Saving a dataset again replaces its rows instead of appending."""
    duck.save_dataset("movies", movie_rows)
    duck.save_dataset("movies", movie_rows[:2])
    assert len(duck.fetch_rows("movies")) == 2
    assert duck.list_datasets() == [
        {"dataset_id": "movies", "kind": "tabular", "name": "movies", "row_count": 2}
    ]


def test_failed_save_keeps_previous_rows(duck, movie_rows, monkeypatch):
    """A failure in a later insert batch rolls the whole replacement back."""
    duck.save_dataset("movies", movie_rows, name="movies.csv")

    calls = []

    def flaky_dumps(row):
        calls.append(row)
        if len(calls) > 2:
            raise RuntimeError("disk full")
        return json.dumps(row)

    monkeypatch.setattr(store_module, "BATCH_SIZE", 2)
    monkeypatch.setattr(store_module, "json", SimpleNamespace(dumps=flaky_dumps, loads=json.loads))
    with pytest.raises(RuntimeError, match="disk full"):
        duck.save_dataset("movies", movie_rows[:4], name="partial.csv")

    assert [r["title"] for r in duck.fetch_rows("movies")] == [r["title"] for r in movie_rows]
    assert duck.list_datasets() == [
        {"dataset_id": "movies", "kind": "tabular", "name": "movies.csv", "row_count": 6}
    ]


def test_missing_database_reads_empty(tmp_path):
    """Reading before anything was ingested is not an error."""
    duck = DuckDBRowStore(tmp_path / "absent.duckdb")
    assert duck.fetch_rows("movies") == []
    assert duck.fetch_kind("movies") == "tabular"
    assert duck.list_datasets() == []
    assert duck.search_chunks([1.0, 0.0], "movies", 0.1, 5) == []


def test_async_protocol(duck, movie_rows):
    """The async RowStore methods wrap the sync reads."""
    duck.save_dataset("movies", movie_rows)
    rows = asyncio.run(duck.get_rows("movies"))
    assert len(rows) == 6
    assert asyncio.run(duck.get_dataset_kind("movies")) == "tabular"


# ============================================================================
# Chunks
# ============================================================================


def test_document_chunks_register_kind(duck):
    """Chunks saved with kind=document make the dataset a document."""
    duck.save_chunks("manual", [("refund policy", [1.0, 0.0], 1)], kind="document")
    assert duck.fetch_kind("manual") == "document"


def test_search_orders_by_similarity(duck):
    """Results are ranked by cosine similarity and filtered by threshold."""
    duck.save_chunks(
        "manual",
        [
            ("refunds", [1.0, 0.0], 1),
            ("shipping", [0.0, 1.0], 2),
            ("returns and refunds", [0.8, 0.6], 3),
        ],
        kind="document",
    )
    snippets = duck.search_chunks([1.0, 0.0], "manual", threshold=0.5, limit=10)
    assert [s.content for s in snippets] == ["refunds", "returns and refunds"]
    assert snippets[0].page_number == 1
    assert snippets[0].similarity == pytest.approx(1.0)
    assert snippets[1].similarity == pytest.approx(0.8)


def test_search_respects_limit_and_dataset(duck):
    """Only the requested dataset is searched and the limit holds."""
    duck.save_chunks("a", [("one", [1.0, 0.0], None), ("two", [1.0, 0.1], None)], kind="document")
    duck.save_chunks("b", [("other", [1.0, 0.0], None)], kind="document")
    snippets = duck.search_chunks([1.0, 0.0], "a", threshold=0.0, limit=1)
    assert [s.content for s in snippets] == ["one"]


def test_save_chunks_appends(duck):
    """Chunks from later batches continue the chunk index."""
    duck.save_chunks("a", [("one", [1.0, 0.0], None)], kind="document")
    assert duck.save_chunks("a", [("two", [0.0, 1.0], None)]) == 1
    assert len(duck.search_chunks([1.0, 1.0], "a", threshold=0.0, limit=10)) == 2

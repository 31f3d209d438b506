"""Tests for CSV and document ingestion."""

import pytest

from insightvault.io.ingest import (
    EMBED_BATCH_SIZE,
    chunk_text,
    extract_document_pages,
    ingest_csv,
    ingest_path,
    read_csv_rows,
    row_to_text,
)
from insightvault.io.store import DuckDBRowStore

CSV_TEXT = """Title,Year,Genre,Rating
Jaws,1975,Thriller,8.1
Alien,1979,Sci-Fi,
Rocky,1976,Drama,8.1
"""


class CountingEmbedder:
    """Fake embedder: one 2-d vector per text, recording batch sizes."""

    def __init__(self):
        self.batches: list[int] = []

    def __call__(self, texts):
        self.batches.append(len(texts))
        return [[1.0, float(i % 3)] for i, _ in enumerate(texts)]


@pytest.fixture
def csv_path(tmp_path):
    path = tmp_path / "Movies 1970s.csv"
    path.write_text(CSV_TEXT)
    return path


# ============================================================================
# Text helpers
# ============================================================================


def test_row_to_text_skips_empty_values():
    """Rows render as 'key: value' pairs; blanks are dropped."""
    assert row_to_text({"title": "Alien", "rating": "", "genre": "Sci-Fi"}) == "title: Alien, genre: Sci-Fi"


def test_short_text_is_one_chunk():
    """Text under the max size stays whole."""
    assert chunk_text("Short text.") == ["Short text."]


def test_chunks_break_at_sentence_end():
    """Chunks end after the last period past the minimum size."""
    sentence = "x" * 99 + "."
    text = sentence * 15
    chunks = chunk_text(text)
    assert chunks[0] == sentence * 10
    assert chunks[1] == sentence * 5


def test_chunks_hard_cut_without_breaks():
    """Text with no period or newline is cut at the max size."""
    chunks = chunk_text("a" * 2500)
    assert [len(c) for c in chunks] == [1000, 1000, 500]


# ============================================================================
# CSV
# ============================================================================


def test_read_csv_rows_keeps_text(csv_path):
    """Headers are lower-cased and empty cells stay empty strings."""
    rows = read_csv_rows(csv_path)
    assert rows[0] == {"title": "Jaws", "year": "1975", "genre": "Thriller", "rating": "8.1"}
    assert rows[1]["rating"] == ""


def test_ingest_csv_without_embeddings(tmp_path, csv_path):
    """Rows are stored and no chunks are written without an embedder."""
    store = DuckDBRowStore(tmp_path / "iv.duckdb")
    result = ingest_csv(store, csv_path, "movies")
    assert result == {"status": "success", "dataset_id": "movies", "rows": 3, "chunks": 0}
    assert store.list_datasets()[0]["name"] == "Movies 1970s.csv"


def test_ingest_csv_with_embeddings(tmp_path, csv_path):
    """One schema chunk plus one chunk per row are embedded."""
    store = DuckDBRowStore(tmp_path / "iv.duckdb")
    embedder = CountingEmbedder()
    result = ingest_csv(store, csv_path, "movies", embedder=embedder)

    assert result["chunks"] == 4
    snippets = store.search_chunks([1.0, 0.0], "movies", threshold=0.99, limit=10)
    assert snippets[0].content.startswith("This dataset has 3 rows and 4 columns.")


def test_embedding_batches(tmp_path):
    """Embedding calls never exceed the batch size."""
    path = tmp_path / "big.csv"
    path.write_text("id,value\n" + "\n".join(f"{i},{i * 2}" for i in range(150)) + "\n")
    embedder = CountingEmbedder()
    ingest_csv(DuckDBRowStore(tmp_path / "iv.duckdb"), path, "big", embedder=embedder)
    assert embedder.batches == [EMBED_BATCH_SIZE, 51]


def test_mismatched_embedder_is_an_error(tmp_path, csv_path):
    """An embedder returning the wrong number of vectors is rejected."""
    with pytest.raises(ValueError, match="vectors"):
        ingest_csv(DuckDBRowStore(tmp_path / "iv.duckdb"), csv_path, "movies", embedder=lambda texts: [[1.0]])


# ============================================================================
# Documents
# ============================================================================


def test_text_document_ingested_as_document(tmp_path):
    """Text files are chunked, embedded and registered as documents."""
    doc = tmp_path / "policy.md"
    doc.write_text("Refunds are issued within 30 days.\n\nShipping is free.")
    store = DuckDBRowStore(tmp_path / "iv.duckdb")

    result = ingest_path(store, doc, "policy", embedder=CountingEmbedder())
    assert result["chunks"] == 1
    assert store.fetch_kind("policy") == "document"


def test_document_requires_embedder(tmp_path):
    """Documents cannot be ingested without an embedding model."""
    doc = tmp_path / "notes.txt"
    doc.write_text("Some notes.")
    with pytest.raises(ValueError, match="embedding"):
        ingest_path(DuckDBRowStore(tmp_path / "iv.duckdb"), doc, "notes")


def test_unsupported_document_type(tmp_path):
    """Only text and PDF documents are extracted."""
    path = tmp_path / "slides.pptx"
    path.write_bytes(b"")
    with pytest.raises(ValueError, match="Unsupported"):
        extract_document_pages(path)

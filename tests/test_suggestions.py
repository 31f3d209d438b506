"""Tests for starter questions and dataset summaries."""

import asyncio

import pytest

from conftest import BrokenStore, FailingGenerator, FakeGenerator, FakeRetriever
from insightvault.config import EngineConfig
from insightvault.contracts import Snippet, UpstreamError
from insightvault.explain.suggestions import (
    FALLBACK_DOCUMENT,
    FALLBACK_TABULAR,
    fallback_suggestions,
    offline_summary,
    parse_suggestions,
    suggest_questions,
    summarize_dataset,
)
from insightvault.orchestrator.runtime import QueryEngine


# ============================================================================
# Parsing
# ============================================================================


def test_parse_fenced_array():
    """Markdown fences around the JSON array are tolerated."""
    assert parse_suggestions('```json\n["Which genre earns most?", "Top 3 by rating"]\n```') == [
        "Which genre earns most?",
        "Top 3 by rating",
    ]


@pytest.mark.parametrize("reply", [None, "", "Here are some ideas", '{"q": 1}', "[]", '["", "  "]'])
def test_parse_rejects_non_arrays(reply):
    """Anything but a non-empty JSON array of text is unusable."""
    assert parse_suggestions(reply) is None


def test_parse_keeps_at_most_four():
    assert parse_suggestions('["a", "b", "c", "d", "e"]') == ["a", "b", "c", "d"]


# ============================================================================
# Suggestions
# ============================================================================


def test_fixed_lists_without_generator(movie_schema):
    """No generator means the fixed list for the dataset kind."""
    assert asyncio.run(suggest_questions(None, "tabular", schema=movie_schema)) == FALLBACK_TABULAR
    assert asyncio.run(suggest_questions(None, "document")) == FALLBACK_DOCUMENT


def test_fallback_skips_asked_questions():
    """Questions already asked are dropped from the fixed list."""
    assert fallback_suggestions("tabular", exclude=["find any outliers or anomalies"]) == FALLBACK_TABULAR[:3]


def test_tabular_prompt_uses_schema(movie_schema):
    """The prompt carries column names and the already-asked questions."""
    generator = FakeGenerator(reply='["Which genre has the highest box office?", "Top 3 by rating"]')
    questions = asyncio.run(
        suggest_questions(generator, "tabular", schema=movie_schema, exclude=["average rating"])
    )

    assert questions == ["Which genre has the highest box office?", "Top 3 by rating"]
    prompt = generator.calls[0]["prompt"]
    assert "box_office" in prompt
    assert 'already-asked questions: "average rating"' in prompt


def test_excluded_questions_removed_from_reply(movie_schema):
    """A suggestion repeating an asked question is filtered out."""
    generator = FakeGenerator(reply='["Average rating", "Top 3 by rating"]')
    questions = asyncio.run(
        suggest_questions(generator, "tabular", schema=movie_schema, exclude=["average rating"])
    )
    assert questions == ["Top 3 by rating"]


def test_unusable_reply_falls_back(movie_schema):
    """Prose instead of JSON yields the fixed list."""
    generator = FakeGenerator(reply="Sure! Try asking about genres.")
    assert asyncio.run(suggest_questions(generator, "tabular", schema=movie_schema)) == FALLBACK_TABULAR


def test_generator_failure_falls_back(movie_schema):
    """A failing generator never breaks suggestions."""
    questions = asyncio.run(suggest_questions(FailingGenerator(), "tabular", schema=movie_schema))
    assert questions == FALLBACK_TABULAR


# ============================================================================
# Summaries
# ============================================================================


def test_offline_summary(movie_schema):
    """Without a generator the description comes from the schema."""
    assert offline_summary(movie_schema) == (
        "This dataset has 6 rows and 5 columns: title, year, genre, rating, box_office. "
        "Numeric columns are year, rating, box_office."
    )


def test_summary_prompt_has_sample_row(movie_schema, movie_rows):
    """The first row is shown to the generator as key/value pairs."""
    generator = FakeGenerator(reply="  Six classic films. Ratings and box office included.  ")
    text = asyncio.run(
        summarize_dataset(generator, "tabular", schema=movie_schema, sample_row=movie_rows[0])
    )
    assert text == "Six classic films. Ratings and box office included."
    assert "Sample row: title: Jaws, year: 1975, genre: Thriller" in generator.calls[0]["prompt"]


def test_document_summary_needs_excerpts():
    """A document with no excerpts has nothing to summarize."""
    assert asyncio.run(summarize_dataset(FakeGenerator(), "document")) == ""


# ============================================================================
# Engine
# ============================================================================


def test_engine_offline_suggestions(engine):
    """The offline engine returns the fixed list for each dataset kind."""
    assert asyncio.run(engine.suggestions("movies")) == FALLBACK_TABULAR
    assert asyncio.run(engine.suggestions("manual")) == FALLBACK_DOCUMENT


def test_engine_document_suggestions_search_excerpts(store):
    """Document suggestions are grounded on a broad similarity search."""
    retriever = FakeRetriever([Snippet(content="Refunds are issued within 30 days.")])
    generator = FakeGenerator(reply='["How long do refunds take?"]')
    engine = QueryEngine(store, retriever=retriever, generator=generator, config=EngineConfig())

    assert asyncio.run(engine.suggestions("manual")) == ["How long do refunds take?"]
    assert retriever.searches[0]["threshold"] == 0.0
    assert retriever.searches[0]["limit"] == 6
    assert "Refunds are issued within 30 days." in generator.calls[0]["prompt"]


def test_engine_offline_summary(engine):
    assert asyncio.run(engine.summary("movies")).startswith("This dataset has 6 rows")
    assert asyncio.run(engine.summary("nope")) == ""


def test_engine_store_failure_is_upstream_error(movie_rows):
    """Row store failures still surface as UpstreamError."""
    broken = BrokenStore()
    broken.add_dataset("movies", movie_rows)
    engine = QueryEngine(broken, config=EngineConfig())
    with pytest.raises(UpstreamError):
        asyncio.run(engine.suggestions("movies"))

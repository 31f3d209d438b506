"""Tests for the query engine request flow.

Collaborators are in-memory fakes; the engine is driven with asyncio.run so
no async test plugin is needed.
"""

import asyncio

import pytest

from conftest import BrokenStore, FailingGenerator, FakeGenerator, FakeRetriever
from insightvault.config import EngineConfig
from insightvault.contracts import AskRequest, Snippet, UpstreamError
from insightvault.io.store import InMemoryRowStore
from insightvault.orchestrator.runtime import QueryEngine


def _ask(engine, question, dataset_id="movies", history=()):
    request = AskRequest(question=question, dataset_id=dataset_id, history=list(history))
    return asyncio.run(engine.ask(request))


def _collect(engine, question, dataset_id="movies", history=()):
    request = AskRequest(question=question, dataset_id=dataset_id, history=list(history))

    async def run():
        return [event async for event in engine.ask_stream(request)]

    return asyncio.run(run())


HISTORY = [
    {"role": "user", "content": "top 3 by rating"},
    {"role": "assistant", "content": "1. Star Wars (rating: 8.6)"},
]


# ============================================================================
# Structural answers
# ============================================================================


def test_structural_answer_has_chart(engine):
    """Structural questions are answered from rows with a chart."""
    response = _ask(engine, "top 3 by rating")
    assert response.answer.startswith("1. Star Wars (rating: 8.6)")
    assert response.chart_data.type == "bar"
    assert response.sources == []


def test_structural_answer_skips_generator(store):
    """No generator call is made when synthesis is off."""
    generator = FakeGenerator()
    engine = QueryEngine(store, FakeRetriever(), generator, config=EngineConfig())
    _ask(engine, "average rating")
    assert generator.calls == []


def test_answer_structural_sync(engine, movie_rows):
    """The synchronous entry point returns None for non-structural questions."""
    assert engine.answer_structural("average rating", movie_rows).answer == "8.03"
    assert engine.answer_structural("hello there", movie_rows) is None


def test_synthesis_keeps_computed_answer(store):
    """With synthesis on, prose replaces the answer and the figures move to context."""
    generator = FakeGenerator(reply="  Star Wars leads the pack.  ")
    engine = QueryEngine(store, None, generator, config=EngineConfig(synthesize=True))
    response = _ask(engine, "top 3 by rating")

    assert response.answer == "Star Wars leads the pack."
    assert response.context.startswith("1. Star Wars (rating: 8.6)")
    assert "[meta: topN:3" in response.context
    assert response.chart_data is not None
    assert "1. Star Wars" in generator.calls[0]["context_snippets"][0]


# ============================================================================
# Follow-ups and retrieval
# ============================================================================


def test_followup_without_generator_repeats_last_answer(engine):
    """Offline follow-ups echo the previous assistant turn."""
    response = _ask(engine, "why?", history=HISTORY)
    assert response.answer == "1. Star Wars (rating: 8.6)"
    assert response.context == "followup:no_generator"


def test_followup_uses_history_only(store):
    """Follow-ups never retrieve; the generator sees prior turns."""
    retriever, generator = FakeRetriever(), FakeGenerator(reply="Because it has the top rating.")
    engine = QueryEngine(store, retriever, generator, config=EngineConfig())
    response = _ask(engine, "why?", history=HISTORY)

    assert response.answer == "Because it has the top rating."
    assert response.context == "followup:explanation"
    assert retriever.searches == []
    assert generator.calls[0]["history"][-1]["role"] == "assistant"


def test_unmatched_question_falls_back_to_retrieval(store):
    """Declined questions go through embed, search and generate."""
    retriever = FakeRetriever([Snippet(content="title: Alien, genre: Sci-Fi", similarity=0.8)])
    generator = FakeGenerator(reply="Alien is a sci-fi horror film.")
    engine = QueryEngine(store, retriever, generator, config=EngineConfig())
    response = _ask(engine, "is alien scary")

    assert response.answer == "Alien is a sci-fi horror film."
    assert response.context == "retrieval"
    assert response.sources == ["title: Alien, genre: Sci-Fi"]
    assert retriever.searches[0]["threshold"] == 0.15
    assert retriever.searches[0]["limit"] == 12
    assert "Dataset: 6 rows" in generator.calls[0]["instructions"]


def test_document_dataset_always_retrieves(store):
    """Document datasets skip structural routing entirely."""
    retriever = FakeRetriever([Snippet(content="Section 2 covers refunds.", page_number=3)])
    generator = FakeGenerator()
    engine = QueryEngine(store, retriever, generator, config=EngineConfig())
    _ask(engine, "top 3 by rating", dataset_id="manual")

    assert generator.calls[0]["context_snippets"] == ["Section 2 covers refunds. [p. 3]"]
    assert "document excerpts" in generator.calls[0]["instructions"]


def test_empty_dataset_falls_back_offline(engine):
    """Unknown datasets have no rows; without collaborators the answer says so."""
    response = _ask(engine, "top 3 by rating", dataset_id="missing")
    assert response.answer == "No relevant context found."
    assert response.context == "retrieval:no_generator"


# ============================================================================
# Failures
# ============================================================================


def test_row_store_failure_is_upstream_error():
    """Store exceptions surface as UpstreamError with the cause chained."""
    engine = QueryEngine(BrokenStore(), config=EngineConfig())
    with pytest.raises(UpstreamError) as exc_info:
        _ask(engine, "top 3 by rating")
    assert exc_info.value.collaborator == "row_store"
    assert isinstance(exc_info.value.__cause__, RuntimeError)


def test_generator_failure_is_upstream_error(store):
    """Generator failures during retrieval surface as UpstreamError."""
    engine = QueryEngine(store, FakeRetriever(), FailingGenerator(), config=EngineConfig())
    with pytest.raises(UpstreamError) as exc_info:
        _ask(engine, "is alien scary")
    assert isinstance(exc_info.value.__cause__, ConnectionError)


# ============================================================================
# Streaming
# ============================================================================


def test_stream_structural(engine):
    """A structural answer streams as one chunk then a done event."""
    events = _collect(engine, "top 3 by rating")
    assert events[0]["chunk"].startswith("1. Star Wars")
    assert events[-1]["done"] is True
    assert events[-1]["chartData"]["xKey"] == "label"
    assert events[-1]["sources"] == []


def test_stream_retrieval(store):
    """Retrieval streams generator fragments, then the sources."""
    retriever = FakeRetriever([Snippet(content="title: Alien")])
    engine = QueryEngine(store, retriever, FakeGenerator(fragments=("Ali", "en")), config=EngineConfig())
    events = _collect(engine, "is alien scary")
    assert [e["chunk"] for e in events if "chunk" in e] == ["Ali", "en"]
    assert events[-1] == {"done": True, "sources": ["title: Alien"]}


def test_stream_failure_mid_way(store):
    """A generator that dies mid-stream raises UpstreamError after the first chunk."""
    engine = QueryEngine(store, FakeRetriever(), FailingGenerator(), config=EngineConfig())
    request = AskRequest(question="is alien scary", dataset_id="movies")
    seen = []

    async def run():
        async for event in engine.ask_stream(request):
            seen.append(event)

    with pytest.raises(UpstreamError):
        asyncio.run(run())
    assert seen == [{"chunk": "partial "}]


# ============================================================================
# Routing modes
# ============================================================================


def test_hybrid_mode_asks_selector_when_heuristics_decline(store, monkeypatch):
    """hybrid mode consults the LLM selector only after the detectors decline."""
    from insightvault.planning.intent import Aggregate

    calls = []

    def fake_select(question, schema, history):
        calls.append(question)
        return Aggregate(agg="count")

    monkeypatch.setattr("insightvault.orchestrator.runtime.select_intent", fake_select)
    engine = QueryEngine(store, config=EngineConfig(router_mode="hybrid"))

    assert _ask(engine, "top 3 by rating").answer.startswith("1. Star Wars")
    assert calls == []
    assert _ask(engine, "is alien scary").answer == "6"
    assert calls == ["is alien scary"]


def test_in_memory_store_normalizes_columns():
    """Mixed-case headers and missing cells are normalized on the way in."""
    store = InMemoryRowStore()
    store.add_dataset("d", [{"Title": "A", "Score": 1}, {"Title": "B"}])
    rows = asyncio.run(store.get_rows("d"))
    assert rows == [{"title": "A", "score": "1"}, {"title": "B", "score": ""}]

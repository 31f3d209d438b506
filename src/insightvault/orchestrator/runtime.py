"""Query engine runtime: per-request control flow.

Flow for one request:
    dataset kind -> rows -> schema -> route -> execute | history | retrieval
    -> (optional synthesis)

Key features:
- Rows are loaded once per request and the schema is rebuilt from the full
  row set every time (never cached)
- Detection and execution are synchronous and deterministic
- Collaborators (row store, retriever, generator) are injected
- Any collaborator failure surfaces as UpstreamError with the cause chained
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Optional, Sequence, TypeVar

import structlog

from insightvault.config import EngineConfig, load_config
from insightvault.contracts import AskRequest, AskResponse, QueryResult, UpstreamError
from insightvault.execution.execute import execute_intent
from insightvault.explain.narrator import stream_synthesis, synthesize, tool_message
from insightvault.explain.suggestions import (
    SUGGESTION_EXCERPTS,
    SUGGESTION_SEARCH_QUERY,
    SUMMARY_EXCERPTS,
    SUMMARY_SEARCH_QUERY,
    suggest_questions,
    summarize_dataset,
)
from insightvault.io.store import DuckDBRowStore, RowStore
from insightvault.planning.dispatch import route_question
from insightvault.planning.followups import detect_followup
from insightvault.planning.intent import NoIntent, is_structural
from insightvault.planning.llm_selector import IntentParseError, select_intent
from insightvault.planning.schema import DatasetSchema, build_schema
from insightvault.retrieval.fallback import (
    Generator,
    LLMGenerator,
    RetrievalFallback,
    Retriever,
    VectorRetriever,
    answer_from_history,
)

logger = structlog.get_logger(__name__)

T = TypeVar("T")


@dataclass
class RequestState:
    """Everything decided about one request before it is answered."""

    request: AskRequest
    dataset_kind: str = "tabular"
    rows: list[dict[str, str]] = field(default_factory=list)
    schema: Optional[DatasetSchema] = None
    intent: Any = None
    route: str = "retrieval"  # structural | followup | retrieval


class QueryEngine:
    """Answers questions about stored datasets.

    Args:
        store: Row store collaborator
        retriever: Embedding + similarity search collaborator (optional)
        generator: Text generation collaborator (optional)
        config: Engine configuration (default: from IV_* environment)
    """

    def __init__(
        self,
        store: RowStore,
        retriever: Optional[Retriever] = None,
        generator: Optional[Generator] = None,
        config: Optional[EngineConfig] = None,
    ):
        self.store = store
        self.retriever = retriever
        self.generator = generator
        self.config = config or load_config()
        self.fallback = RetrievalFallback(
            retriever,
            generator,
            threshold=self.config.retrieval_threshold,
            limit=self.config.retrieval_limit,
            history_turns=self.config.history_turns,
        )

    # ------------------------------------------------------------------
    # Synchronous core
    # ------------------------------------------------------------------

    def answer_structural(
        self,
        question: str,
        rows: Sequence[dict[str, str]],
        history: Sequence[Any] = (),
    ) -> Optional[QueryResult]:
        """Route and execute against in-memory rows.

        Returns:
            QueryResult for a structural question, None when the question is a
            follow-up or no detector claims it
        """
        schema = build_schema(list(rows))
        intent = route_question(question, schema, history)
        if not is_structural(intent):
            return None
        return execute_intent(intent, rows, schema)

    async def dataset_schema(self, dataset_id: str) -> DatasetSchema:
        """Schema summary for display, built from a per-field value sample."""
        rows = await self._guard("row_store", self.store.get_rows(dataset_id))
        return build_schema(rows, sample_size=self.config.schema_sample_size)

    async def _sample_excerpts(self, dataset_id: str, query: str, limit: int) -> list[str]:
        """Representative chunk texts for a document; empty when retrieval is unavailable."""
        if self.retriever is None:
            return []
        try:
            vector = await self.retriever.embed(query)
            snippets = await self.retriever.similarity_search(vector, dataset_id, 0.0, limit)
        except Exception as e:
            logger.warning("excerpt_sample_failed", dataset_id=dataset_id, error=str(e))
            return []
        return [s.content for s in snippets]

    async def suggestions(self, dataset_id: str, exclude: Sequence[str] = ()) -> list[str]:
        """Starter questions for a dataset, skipping those in ``exclude``.

        Raises:
            UpstreamError: If the row store fails
        """
        kind = await self._guard("row_store", self.store.get_dataset_kind(dataset_id))
        if kind == "document":
            excerpts = await self._sample_excerpts(dataset_id, SUGGESTION_SEARCH_QUERY, SUGGESTION_EXCERPTS)
            return await suggest_questions(self.generator, kind, excerpts=excerpts, exclude=exclude)
        schema = await self.dataset_schema(dataset_id)
        return await suggest_questions(self.generator, kind, schema=schema, exclude=exclude)

    async def summary(self, dataset_id: str) -> str:
        """Two-sentence description of a dataset (empty for an unknown or empty one)."""
        kind = await self._guard("row_store", self.store.get_dataset_kind(dataset_id))
        if kind == "document":
            excerpts = await self._sample_excerpts(dataset_id, SUMMARY_SEARCH_QUERY, SUMMARY_EXCERPTS)
            return await summarize_dataset(self.generator, kind, excerpts=excerpts)
        rows = await self._guard("row_store", self.store.get_rows(dataset_id))
        schema = build_schema(rows, sample_size=self.config.schema_sample_size)
        return await summarize_dataset(
            self.generator, kind, schema=schema, sample_row=rows[0] if rows else None
        )

    # ------------------------------------------------------------------
    # Async request flow
    # ------------------------------------------------------------------

    async def _guard(self, collaborator: str, awaitable: Awaitable[T]) -> T:
        try:
            return await awaitable
        except UpstreamError:
            raise
        except Exception as e:
            logger.error("upstream_failed", collaborator=collaborator, error=str(e), exc_info=True)
            raise UpstreamError(f"{collaborator} failed: {e}", collaborator) from e

    async def _select(self, state: RequestState) -> None:
        """Ask the LLM selector when heuristics found nothing."""
        request = state.request
        try:
            intent = await self._guard(
                "selector",
                asyncio.to_thread(select_intent, request.question, state.schema, request.history),
            )
        except UpstreamError as e:
            if isinstance(e.__cause__, IntentParseError):
                logger.warning("selector_gave_up", error=str(e.__cause__))
                return
            raise
        if is_structural(intent):
            state.intent = intent
            state.route = "structural"

    async def plan(self, request: AskRequest) -> RequestState:
        """Load the dataset and decide how to answer."""
        state = RequestState(request=request)
        state.dataset_kind = await self._guard(
            "row_store", self.store.get_dataset_kind(request.dataset_id)
        )
        if state.dataset_kind == "document":
            logger.info("route_selected", route="retrieval", reason="document")
            return state

        state.rows = await self._guard("row_store", self.store.get_rows(request.dataset_id))
        state.schema = build_schema(state.rows)
        mode = self.config.router_mode

        if mode == "llm":
            followup = detect_followup(request.question, request.history)
            state.intent = followup or NoIntent(reason="llm_mode")
        else:
            state.intent = route_question(request.question, state.schema, request.history)

        if state.intent.kind == "follow_up":
            state.route = "followup"
        elif is_structural(state.intent):
            state.route = "structural"
        elif mode in ("hybrid", "llm") and not state.schema.is_empty:
            await self._select(state)

        logger.info(
            "route_selected",
            route=state.route,
            kind=state.intent.kind,
            rows=len(state.rows),
            dataset_id=request.dataset_id,
        )
        return state

    async def ask(self, request: AskRequest) -> AskResponse:
        """Answer one request.

        Raises:
            UpstreamError: If the row store, retriever or generator fails
        """
        state = await self.plan(request)
        result = await self._answer(state)
        return AskResponse.from_result(result)

    async def _answer(self, state: RequestState) -> QueryResult:
        request = state.request

        if state.route == "followup":
            return await self._guard(
                "generator",
                answer_from_history(
                    request.question,
                    request.history,
                    self.generator,
                    followup_type=state.intent.followup_type,
                    turns=self.config.history_turns,
                ),
            )

        if state.route == "structural":
            result = execute_intent(state.intent, state.rows, state.schema)
            if self.config.synthesize and self.generator is not None:
                result = await self._guard(
                    "generator",
                    synthesize(request.question, result, self.generator, state.schema, request.history),
                )
            return result

        return await self._guard(
            "retrieval",
            self.fallback.answer(
                request.question,
                request.dataset_id,
                request.history,
                schema=state.schema if state.dataset_kind == "tabular" else None,
            ),
        )

    async def ask_stream(self, request: AskRequest) -> AsyncIterator[dict[str, Any]]:
        """Answer one request as a stream of events.

        Yields ``{"chunk": text}`` events, then one ``{"done": True, ...}``
        event carrying context, chartData and sources.

        Raises:
            UpstreamError: If a collaborator fails (possibly mid-stream)
        """
        state = await self.plan(request)

        if state.route == "structural" and self.config.synthesize and self.generator is not None:
            result = execute_intent(state.intent, state.rows, state.schema)
            fragments = stream_synthesis(
                request.question, result, self.generator, state.schema, request.history
            )
            async for fragment in self._guard_stream("generator", fragments):
                yield {"chunk": fragment}
            yield _done(result, context=tool_message(result))
            return

        if state.route in ("structural", "followup"):
            result = await self._answer(state)
            yield {"chunk": result.answer}
            yield _done(result)
            return

        snippets = await self._guard(
            "retrieval", self.fallback.retrieve(request.question, request.dataset_id)
        )
        fragments = self.fallback.stream(
            request.question,
            request.dataset_id,
            request.history,
            schema=state.schema if state.dataset_kind == "tabular" else None,
            snippets=snippets,
        )
        async for fragment in self._guard_stream("generator", fragments):
            yield {"chunk": fragment}
        yield {"done": True, "sources": [s.content for s in snippets]}

    async def _guard_stream(self, collaborator: str, fragments: AsyncIterator[str]) -> AsyncIterator[str]:
        try:
            async for fragment in fragments:
                yield fragment
        except Exception as e:
            logger.error("upstream_failed", collaborator=collaborator, error=str(e), exc_info=True)
            raise UpstreamError(f"{collaborator} failed: {e}", collaborator) from e


def _done(result: QueryResult, context: Optional[str] = None) -> dict[str, Any]:
    event: dict[str, Any] = {"done": True, "sources": list(result.sources)}
    if context or result.context:
        event["context"] = context or result.context
    if result.chart_data is not None:
        event["chartData"] = result.chart_data.model_dump(by_alias=True)
    return event


def build_engine(config: Optional[EngineConfig] = None, offline: bool = False) -> QueryEngine:
    """Engine over the DuckDB store with LLM-backed retrieval and generation.

    Args:
        config: Engine configuration (default: from IV_* environment)
        offline: Skip the retriever and generator (structural answers only)
    """
    config = config or load_config()
    store = DuckDBRowStore(config.db_path)
    if offline:
        return QueryEngine(store, config=config)
    return QueryEngine(
        store,
        retriever=VectorRetriever(store),
        generator=LLMGenerator(history_turns=config.history_turns),
        config=config,
    )

"""Retrieval fallback and history-only follow-up answers.

Questions the structural router declines are answered from the dataset's
embedded chunks: embed the question, search for similar chunks, and generate
an answer constrained to those excerpts. Follow-up questions are answered from
prior conversation turns only, without touching the dataset.
"""

import asyncio
from typing import Any, AsyncIterator, Callable, Optional, Protocol, Sequence

import structlog

from insightvault.contracts import QueryResult, Snippet
from insightvault.llm.router import call_llm, embed_texts, stream_llm
from insightvault.planning.schema import DatasetSchema, describe_schema

logger = structlog.get_logger(__name__)

DOCUMENT_INSTRUCTIONS = """You are InsightVault, an expert document analyst. Answer questions using ONLY the provided document excerpts.

Guidelines:
- Give a thorough answer using specific details, figures and quotes from the excerpts.
- Use bullet points for multi-part answers; use short paragraphs for single-topic answers.
- If the excerpts are insufficient, state what IS available and what is missing. Never guess.
- No intro phrases. Start with the direct answer.
- Never fabricate information not present in the excerpts.
- Cite the page number using [p. N] format when referencing specific information."""

TABULAR_INSTRUCTIONS = """You are InsightVault, an expert data analyst. Answer the user's question about their CSV dataset using the dataset description and the matching records below.

{schema}

Rules:
- No intro phrases. Start directly with the answer.
- Plain text only, no markdown.
- Never fabricate numbers not in the dataset description or the records."""

FOLLOWUP_INSTRUCTIONS = """You are InsightVault, an expert data analyst. The user is asking a follow-up about your previous answers in this conversation.

Rules:
- Answer ONLY from the conversation so far.
- Do not introduce numbers, rankings or breakdowns that do not already appear in the conversation.
- If the conversation does not contain what is needed, say so and suggest a question that would compute it.
- No intro phrases. Start directly with the answer."""

NO_CONTEXT = "No relevant context found."


class Retriever(Protocol):
    """Embedding and similarity search collaborator."""

    async def embed(self, text: str) -> list[float]:
        ...

    async def similarity_search(
        self, vector: Sequence[float], dataset_id: str, threshold: float, limit: int
    ) -> list[Snippet]:
        ...


class Generator(Protocol):
    """Text generation collaborator."""

    async def generate(
        self,
        prompt: str,
        context_snippets: Sequence[str],
        history: Sequence[Any] = (),
        instructions: Optional[str] = None,
    ) -> str:
        ...

    def stream(
        self,
        prompt: str,
        context_snippets: Sequence[str],
        history: Sequence[Any] = (),
        instructions: Optional[str] = None,
    ) -> AsyncIterator[str]:
        ...


def history_messages(history: Sequence[Any], turns: int = 8) -> list[dict[str, str]]:
    """Last ``turns`` user/assistant turns as role/content dicts."""
    messages = []
    for message in history or ():
        if isinstance(message, dict):
            role, content = message.get("role"), message.get("content", "")
        else:
            role, content = getattr(message, "role", None), getattr(message, "content", "")
        if role in ("user", "assistant"):
            messages.append({"role": role, "content": content})
    return messages[-turns:] if turns > 0 else []


def build_messages(
    prompt: str,
    context_snippets: Sequence[str],
    history: Sequence[Any] = (),
    instructions: Optional[str] = None,
    turns: int = 8,
) -> list[dict[str, str]]:
    """System message (instructions + excerpts), prior turns, then the question."""
    system = instructions or DOCUMENT_INSTRUCTIONS
    if context_snippets:
        system += (
            f"\n\nEXCERPTS - {len(context_snippets)} relevant sections:\n"
            + "\n---\n".join(context_snippets)
        )
    return (
        [{"role": "system", "content": system}]
        + history_messages(history, turns)
        + [{"role": "user", "content": prompt}]
    )


class LLMGenerator:
    """Generator backed by the configured LLM provider (see llm.router)."""

    def __init__(self, history_turns: int = 8, role: str = "generator"):
        self.history_turns = history_turns
        self.role = role

    async def generate(
        self,
        prompt: str,
        context_snippets: Sequence[str],
        history: Sequence[Any] = (),
        instructions: Optional[str] = None,
    ) -> str:
        messages = build_messages(prompt, context_snippets, history, instructions, self.history_turns)
        return await asyncio.to_thread(call_llm, messages, role=self.role)

    async def stream(
        self,
        prompt: str,
        context_snippets: Sequence[str],
        history: Sequence[Any] = (),
        instructions: Optional[str] = None,
    ) -> AsyncIterator[str]:
        messages = build_messages(prompt, context_snippets, history, instructions, self.history_turns)
        fragments = stream_llm(messages, role=self.role)
        done = object()
        try:
            while True:
                fragment = await asyncio.to_thread(next, fragments, done)
                if fragment is done:
                    break
                yield fragment
        finally:
            fragments.close()


class VectorRetriever:
    """Retriever over a store that implements ``similarity_search``."""

    def __init__(self, store: Any, embedder: Callable[[list[str]], list[list[float]]] = embed_texts):
        self.store = store
        self.embedder = embedder

    async def embed(self, text: str) -> list[float]:
        vectors = await asyncio.to_thread(self.embedder, [text])
        return vectors[0]

    async def similarity_search(
        self, vector: Sequence[float], dataset_id: str, threshold: float, limit: int
    ) -> list[Snippet]:
        return await self.store.similarity_search(vector, dataset_id, threshold, limit)


def _last_assistant_answer(history: Sequence[Any]) -> Optional[str]:
    for message in reversed(history_messages(history, turns=len(history or ()))):
        if message["role"] == "assistant":
            return message["content"]
    return None


async def answer_from_history(
    question: str,
    history: Sequence[Any],
    generator: Optional[Generator],
    followup_type: Optional[str] = None,
    turns: int = 8,
) -> QueryResult:
    """
    Answer a follow-up from prior turns only.

    Args:
        question: Follow-up question
        history: Prior turns; only the last ``turns`` are sent
        generator: Text generator, or None
        followup_type: Classification from the follow-up detector
        turns: History window

    Returns:
        QueryResult; without a generator the last assistant answer is repeated
    """
    if generator is None:
        previous = _last_assistant_answer(history)
        return QueryResult(
            answer=previous or "There is no previous answer to follow up on yet.",
            context="followup:no_generator",
        )

    recent = history_messages(history, turns)
    answer = await generator.generate(question, [], recent, instructions=FOLLOWUP_INSTRUCTIONS)
    logger.info("followup_answered", followup_type=followup_type, turns=len(recent))
    return QueryResult(answer=answer.strip(), context=f"followup:{followup_type or 'history'}")


def _snippet_text(snippet: Snippet) -> str:
    page_ref = f" [p. {snippet.page_number}]" if snippet.page_number else ""
    return f"{snippet.content}{page_ref}"


class RetrievalFallback:
    """Embed -> similarity search -> constrained generation."""

    def __init__(
        self,
        retriever: Optional[Retriever],
        generator: Optional[Generator],
        threshold: float = 0.15,
        limit: int = 12,
        history_turns: int = 8,
    ):
        self.retriever = retriever
        self.generator = generator
        self.threshold = threshold
        self.limit = limit
        self.history_turns = history_turns

    async def retrieve(self, question: str, dataset_id: str) -> list[Snippet]:
        """Snippets for a question, best first. Empty without a retriever."""
        if self.retriever is None:
            return []
        vector = await self.retriever.embed(question)
        snippets = await self.retriever.similarity_search(
            vector, dataset_id, self.threshold, self.limit
        )
        logger.info("retrieval_fallback", dataset_id=dataset_id, snippets=len(snippets))
        return snippets

    def instructions(self, schema: Optional[DatasetSchema]) -> str:
        if schema is None:
            return DOCUMENT_INSTRUCTIONS
        return TABULAR_INSTRUCTIONS.format(schema=describe_schema(schema))

    def _offline_answer(self, snippets: Sequence[Snippet]) -> str:
        if not snippets:
            return NO_CONTEXT
        return "Closest matching excerpts:\n\n" + "\n---\n".join(_snippet_text(s) for s in snippets[:3])

    async def answer(
        self,
        question: str,
        dataset_id: str,
        history: Sequence[Any] = (),
        schema: Optional[DatasetSchema] = None,
    ) -> QueryResult:
        """
        Answer a question from retrieved context.

        Args:
            question: User question
            dataset_id: Dataset to search
            history: Prior turns
            schema: Dataset schema for tabular datasets (None for documents)

        Returns:
            QueryResult with sources set to the retrieved snippet texts
        """
        snippets = await self.retrieve(question, dataset_id)
        sources = [s.content for s in snippets]
        if self.generator is None:
            return QueryResult(
                answer=self._offline_answer(snippets),
                context="retrieval:no_generator",
                sources=sources,
            )
        answer = await self.generator.generate(
            question,
            [_snippet_text(s) for s in snippets] or [NO_CONTEXT],
            history_messages(history, self.history_turns),
            instructions=self.instructions(schema),
        )
        return QueryResult(answer=answer.strip(), context="retrieval", sources=sources)

    async def stream(
        self,
        question: str,
        dataset_id: str,
        history: Sequence[Any] = (),
        schema: Optional[DatasetSchema] = None,
        snippets: Optional[Sequence[Snippet]] = None,
    ) -> AsyncIterator[str]:
        """Yield answer fragments. Pass ``snippets`` to reuse an earlier retrieve()."""
        if snippets is None:
            snippets = await self.retrieve(question, dataset_id)
        if self.generator is None:
            yield self._offline_answer(snippets)
            return
        async for fragment in self.generator.stream(
            question,
            [_snippet_text(s) for s in snippets] or [NO_CONTEXT],
            history_messages(history, self.history_turns),
            instructions=self.instructions(schema),
        ):
            yield fragment

"""Narrator: optional prose synthesis over a structural result.

The computed answer is always kept. When synthesis runs, the prose becomes
the answer and the computed answer moves into ``context`` so downstream
callers can still show the exact figures. The chart payload is unchanged.
"""

from typing import Any, AsyncIterator, Sequence

import structlog

from insightvault.contracts import QueryResult
from insightvault.planning.schema import DatasetSchema, describe_schema

logger = structlog.get_logger(__name__)

SYNTHESIS_INSTRUCTIONS = """You are InsightVault, an expert data analyst. A tool result has been computed for the user's question. Synthesize it into a clear, insightful response.

Dataset context (use to compare results):
{schema}

Guidelines:
- Lead with the single most important finding.
- Put results in context: compare against dataset ranges, averages or totals where relevant.
- For lists of items use bullet points. For a single stat, use a short paragraph.
- If a chart is displayed, reference it briefly.
- No intro phrases like "Sure!" or "Great question!". Be direct and analytical.
- Never invent data not present in the tool result."""

def tool_message(result: QueryResult) -> str:
    """Render a result the way it is handed to the generator."""
    if result.context:
        return f"{result.answer}\n[meta: {result.context}]"
    return result.answer

async def synthesize(
    question: str,
    result: QueryResult,
    generator: Any,
    schema: DatasetSchema,
    history: Sequence[Any] = (),
) -> QueryResult:
    """
    Rewrite a structural result as prose.

    Args:
        question: Original question
        result: Structural result
        generator: Generator collaborator (see retrieval.fallback.Generator)
        schema: Schema of the dataset the result was computed on
        history: Prior turns

    Returns:
        New QueryResult; context holds the computed answer
    """
    prose = await generator.generate(
        question,
        [tool_message(result)],
        history,
        instructions=SYNTHESIS_INSTRUCTIONS.format(schema=describe_schema(schema)),
    )
    prose = prose.strip()
    if not prose:
        logger.warning("synthesis_empty", context=result.context)
        return result
    return QueryResult(
        answer=prose,
        context=tool_message(result),
        chart_data=result.chart_data,
        sources=list(result.sources),
    )

async def stream_synthesis(
    question: str,
    result: QueryResult,
    generator: Any,
    schema: DatasetSchema,
    history: Sequence[Any] = (),
) -> AsyncIterator[str]:
    """Streaming form of synthesize(); yields prose fragments."""
    async for fragment in generator.stream(
        question,
        [tool_message(result)],
        history,
        instructions=SYNTHESIS_INSTRUCTIONS.format(schema=describe_schema(schema)),
    ):
        yield fragment

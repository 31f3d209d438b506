"""Starter questions and a short description for a dataset.

Both are convenience features for a client opening a dataset: they never
compute figures themselves and fall back to fixed text when no generator is
configured or the generator fails.
"""

import json
import re
from typing import Any, Mapping, Optional, Sequence

import structlog

from insightvault.planning.schema import DatasetSchema, describe_schema

logger = structlog.get_logger(__name__)

SUGGESTION_COUNT = 4
DOCUMENT_SAMPLE_CHARS = 2500
SUMMARY_SAMPLE_CHARS = 2000
SAMPLE_ROW_FIELDS = 5

# Retrieval queries used to pull representative document excerpts
SUGGESTION_SEARCH_QUERY = "overview main topics summary key points"
SUMMARY_SEARCH_QUERY = "overview summary introduction what is this about"
SUGGESTION_EXCERPTS = 6
SUMMARY_EXCERPTS = 4

FALLBACK_TABULAR = [
    "What are the top 5 rows by value?",
    "Show me a chart of totals by category",
    "What is the average across all records?",
    "Find any outliers or anomalies",
]

FALLBACK_DOCUMENT = [
    "What is this document about?",
    "Summarise the key points",
    "What are the main conclusions?",
    "Find any specific numbers or statistics",
]

SUGGEST_TABULAR_PROMPT = """You are helping a user explore a CSV dataset. Here is the dataset schema:

{schema}

Generate exactly 4 specific, interesting questions the user might ask. Requirements:
- Reference actual column names and example values from the schema
- Cover different analysis types: one ranking question, one aggregation or average, one breakdown by category, and one trend or outlier question
- Make each question feel natural and specific (not generic)
{exclude}
Return ONLY a JSON array of 4 strings. No markdown, no explanation."""

SUGGEST_DOCUMENT_PROMPT = """You are helping a user explore an uploaded document. Here is a sample of the document content:

{sample}

Generate exactly 4 specific questions a reader would naturally want to ask about this document. Requirements:
- Make them specific to the actual content shown, not generic
- Cover: what the document is about, a key claim or finding, a specific detail or number, and a broader takeaway or implication
- Phrase them naturally as a curious reader would
{exclude}
Return ONLY a JSON array of 4 strings. No markdown, no explanation."""

SUMMARY_TABULAR_PROMPT = """Describe this CSV dataset in exactly 2 sentences. Be specific about what it contains.

{schema}
Sample row: {sample_row}

Return only the 2 sentences, no preamble."""

SUMMARY_DOCUMENT_PROMPT = """Describe this document in exactly 2 sentences based on this excerpt. Be specific.

{sample}

Return only the 2 sentences, no preamble."""

OUTPUT_INSTRUCTIONS = "You are InsightVault, an expert data analyst. Follow the requested output format exactly."

_FENCE_RE = re.compile(r"```(?:json)?")


def parse_suggestions(text: Optional[str]) -> Optional[list[str]]:
    """Parse a JSON array of questions, tolerating markdown code fences.

    Returns:
        Up to SUGGESTION_COUNT non-blank strings, or None if the text is not a
        non-empty JSON array
    """
    if not text:
        return None
    try:
        parsed = json.loads(_FENCE_RE.sub("", text).strip())
    except json.JSONDecodeError:
        return None
    if not isinstance(parsed, list):
        return None
    questions = [str(item).strip() for item in parsed if str(item).strip()]
    return questions[:SUGGESTION_COUNT] or None


def _exclude_clause(exclude: Sequence[str]) -> str:
    if not exclude:
        return ""
    quoted = ", ".join(f'"{q}"' for q in exclude)
    return f"- Do NOT repeat or rephrase any of these already-asked questions: {quoted}\n"


def _without_excluded(questions: Sequence[str], exclude: Sequence[str]) -> list[str]:
    asked = {q.strip().lower() for q in exclude}
    return [q for q in questions if q.strip().lower() not in asked]


def fallback_suggestions(dataset_kind: str, exclude: Sequence[str] = ()) -> list[str]:
    """Fixed starter questions for a dataset kind, minus those already asked."""
    fixed = FALLBACK_DOCUMENT if dataset_kind == "document" else FALLBACK_TABULAR
    return _without_excluded(fixed, exclude) or list(fixed)


def sample_row_text(row: Mapping[str, Any], limit: int = SAMPLE_ROW_FIELDS) -> str:
    """'key: value' pairs for the first ``limit`` fields of a row."""
    return ", ".join(f"{k}: {v}" for k, v in list(row.items())[:limit])


async def suggest_questions(
    generator: Any,
    dataset_kind: str,
    schema: Optional[DatasetSchema] = None,
    excerpts: Sequence[str] = (),
    exclude: Sequence[str] = (),
) -> list[str]:
    """
    Suggest starter questions for a dataset.

    Args:
        generator: Generator collaborator, or None for the fixed list
        dataset_kind: "tabular" or "document"
        schema: Sampled schema (tabular datasets)
        excerpts: Representative chunk texts (document datasets)
        exclude: Questions already asked in this session

    Returns:
        Up to four questions, or the fixed list for the dataset kind when no
        usable reply comes back
    """
    fallback = fallback_suggestions(dataset_kind, exclude)
    if generator is None:
        return fallback

    if dataset_kind == "document":
        sample = "\n---\n".join(excerpts)[:DOCUMENT_SAMPLE_CHARS]
        prompt = SUGGEST_DOCUMENT_PROMPT.format(
            sample=sample or "No content available.", exclude=_exclude_clause(exclude)
        )
    else:
        if schema is None or schema.is_empty:
            return fallback
        prompt = SUGGEST_TABULAR_PROMPT.format(
            schema=describe_schema(schema), exclude=_exclude_clause(exclude)
        )

    try:
        reply = await generator.generate(prompt, [], (), instructions=OUTPUT_INSTRUCTIONS)
    except Exception as e:
        logger.warning("suggestions_failed", kind=dataset_kind, error=str(e))
        return fallback

    parsed = parse_suggestions(reply)
    questions = _without_excluded(parsed or [], exclude)
    if not questions:
        logger.info("suggestions_fallback", kind=dataset_kind, reply_chars=len(reply or ""))
        return fallback
    return questions


def offline_summary(schema: DatasetSchema) -> str:
    """Two-sentence description built from the schema alone."""
    first = (
        f"This dataset has {schema.row_count} rows and {len(schema.all_fields)} columns: "
        f"{', '.join(schema.all_fields)}."
    )
    if schema.numeric_fields:
        second = f"Numeric columns are {', '.join(schema.numeric_fields)}."
    elif schema.categorical_fields:
        second = f"Categorical columns are {', '.join(schema.categorical_fields)}."
    else:
        second = "No column has a numeric or categorical profile."
    return f"{first} {second}"


async def summarize_dataset(
    generator: Any,
    dataset_kind: str,
    schema: Optional[DatasetSchema] = None,
    sample_row: Optional[Mapping[str, Any]] = None,
    excerpts: Sequence[str] = (),
) -> str:
    """
    Describe a dataset in two sentences.

    Tabular datasets without a generator get a schema-only description;
    documents without excerpts or a generator get an empty string.
    """
    if dataset_kind == "document":
        sample = "\n".join(excerpts)[:SUMMARY_SAMPLE_CHARS]
        if not sample or generator is None:
            return ""
        prompt = SUMMARY_DOCUMENT_PROMPT.format(sample=sample)
        fallback = ""
    else:
        if schema is None or schema.is_empty:
            return ""
        fallback = offline_summary(schema)
        if generator is None:
            return fallback
        prompt = SUMMARY_TABULAR_PROMPT.format(
            schema=describe_schema(schema),
            sample_row=sample_row_text(sample_row or {}) or "n/a",
        )

    try:
        reply = await generator.generate(prompt, [], (), instructions=OUTPUT_INSTRUCTIONS)
    except Exception as e:
        logger.warning("summary_failed", kind=dataset_kind, error=str(e))
        return fallback
    return (reply or "").strip() or fallback

"""LLM tool selection: ask a model to pick the operation and its parameters.

This is the opt-in router (IV_ROUTER_MODE=hybrid or llm). The model answers
with a JSON intent; the reply is validated against the intent union and every
field name is passed back through the field resolver, so an intent produced
here carries the same guarantees as one produced by the heuristic detectors.
Invalid output gets a repair prompt before the selector gives up.
"""

import json
import os
from typing import Any, Sequence

import structlog
from pydantic import ValidationError

from insightvault.llm.router import call_llm
from insightvault.planning.intent import NoIntent, intent_adapter
from insightvault.planning.resolver import resolve_field
from insightvault.planning.schema import DatasetSchema, describe_schema

logger = structlog.get_logger(__name__)

# Intent attributes that hold column names
FIELD_ATTRS = ("field", "group_field", "metric_field", "filter_field", "time_field")
NUMERIC_ATTRS = {
    "top_n": ("field",),
    "filter": ("field",),
    "outlier": ("field",),
    "group_by": ("metric_field",),
    "group_rank": ("metric_field",),
    "trend": ("metric_field",),
}

SELECTOR_SYSTEM_PROMPT = """You are InsightVault, an expert data analyst. The user uploaded a CSV dataset. Pick the single most appropriate operation for the question and output its parameters as JSON.

You MUST:
- Output ONLY valid JSON, one object, no markdown
- Use only column names listed in the dataset description
- Use {"kind": "none"} for conversational questions or questions no operation can answer
- Never invent columns or values"""

SELECTOR_USER_PROMPT_TEMPLATE = """{schema}

Operations (JSON shapes):
- Ranking / "top N" / "best" / "worst":
  {{"kind": "top_n", "field": NUMERIC, "n": 10, "order": "desc|asc", "filter_field": CATEGORY|null, "filter_value": VALUE|null}}
- Breakdown per category:
  {{"kind": "group_by", "group_field": CATEGORY, "metric_field": NUMERIC|null, "agg": "sum|avg|count|min|max"}}
- Best/worst/most common category:
  {{"kind": "group_rank", "group_field": CATEGORY, "metric_field": NUMERIC|null, "by": "mean|count", "order": "desc|asc"}}
- How many rows satisfy a condition:
  {{"kind": "conditional_count", "field": COLUMN, "op": "nonempty|>|<|>=|<=|=|truthy|falsy", "value": NUMBER|null}}
- Statistic within one category value:
  {{"kind": "filtered_aggregate", "agg": "sum|avg|count|min|max", "field": NUMERIC|null, "filter_field": CATEGORY, "filter_value": VALUE}}
- Single statistic or single record:
  {{"kind": "aggregate", "agg": "count|count_distinct|avg|sum|min|max|earliest|latest|extremal_max|extremal_min", "field": COLUMN|null}}
- Numeric threshold filter:
  {{"kind": "filter", "field": NUMERIC, "op": ">|<|>=|<=|=", "value": NUMBER}}
- Time series:
  {{"kind": "trend", "time_field": COLUMN, "metric_field": NUMERIC|null, "period": "year|month|decade", "agg": "sum|avg|count", "superlative": "max|min"|null}}
- Distinct values: {{"kind": "list_all", "field": COLUMN}}
- Anomalies: {{"kind": "outlier", "field": NUMERIC}}
- "tell me about X", "find X": {{"kind": "lookup", "query": TEXT}}
- Columns / describe the dataset: {{"kind": "dataset_info"}}
- Anything else: {{"kind": "none"}}

Question: {question}

Output ONLY the JSON object."""

SELECTOR_REPAIR_PROMPT_TEMPLATE = """The previous JSON output had errors. Fix the JSON.

Previous output:
{previous_output}

Errors:
{errors}

Rules:
- Output ONLY valid JSON (no markdown)
- "kind" must be one of the listed operations
- Column names must come from: {columns}
- No extra fields

Return ONLY the corrected JSON."""


class IntentParseError(ValueError):
    """The selector could not produce a valid intent after repair."""


def _parse_json_strict(response: str) -> dict[str, Any]:
    """Parse a JSON object from an LLM reply, tolerating markdown fences.

    Raises:
        json.JSONDecodeError: If the reply is not valid JSON
        ValueError: If the JSON is not an object
    """
    text = response.strip()
    if text.startswith("```"):
        lines = text.split("\n")[1:]
        if lines and lines[-1].strip() == "```":
            lines = lines[:-1]
        text = "\n".join(lines).strip()
    parsed = json.loads(text)
    if not isinstance(parsed, dict):
        raise ValueError(f"Expected a JSON object, got {type(parsed).__name__}")
    return parsed


def resolve_intent_fields(payload: dict[str, Any], schema: DatasetSchema) -> dict[str, Any]:
    """
    Replace column names in an intent payload with resolved field names.

    Raises:
        ValueError: If a column name does not resolve, or a numeric slot
            names a non-numeric column
    """
    resolved = dict(payload)
    errors = []
    for attr in FIELD_ATTRS:
        value = resolved.get(attr)
        if value is None:
            continue
        field = resolve_field(str(value), schema)
        if field is None:
            errors.append(f"{attr}: unknown column '{value}'")
            continue
        resolved[attr] = field
    for attr in NUMERIC_ATTRS.get(str(resolved.get("kind")), ()):
        field = resolved.get(attr)
        if field is not None and field in schema.all_fields and not schema.is_numeric(field):
            errors.append(f"{attr}: column '{field}' is not numeric")
    if errors:
        raise ValueError("; ".join(errors))
    return resolved


def select_intent(
    question: str,
    schema: DatasetSchema,
    history: Sequence[Any] = (),
    *,
    max_retries: int = 1,
):
    """Ask the LLM for an intent.

    1. Calls the selector model with the dataset description
    2. Parses the JSON reply
    3. Resolves column names and validates against the intent union
    4. On failure, sends a repair prompt

    Args:
        question: User question
        schema: Dataset schema
        history: Prior turns (the last few are included for context)
        max_retries: Repair attempts (IV_SELECTOR_MAX_RETRIES overrides)

    Returns:
        A validated intent (possibly NoIntent)

    Raises:
        IntentParseError: If no valid intent is produced after repair attempts
    """
    max_retries = int(os.environ.get("IV_SELECTOR_MAX_RETRIES", str(max_retries)))

    user_prompt = SELECTOR_USER_PROMPT_TEMPLATE.format(
        schema=describe_schema(schema), question=question
    )
    prior = [
        {"role": m.get("role"), "content": m.get("content", "")} if isinstance(m, dict)
        else {"role": m.role, "content": m.content}
        for m in list(history or ())[-4:]
    ]
    messages = [{"role": "system", "content": SELECTOR_SYSTEM_PROMPT}] + prior + [
        {"role": "user", "content": user_prompt}
    ]
    columns = ", ".join(schema.all_fields)

    last_error: Exception | None = None
    for attempt in range(max_retries + 1):
        response = call_llm(messages, role="selector")
        previous_output = response
        try:
            payload = _parse_json_strict(response)
            previous_output = json.dumps(payload, indent=2)
            intent = intent_adapter.validate_python(resolve_intent_fields(payload, schema))
        except (ValueError, ValidationError) as e:
            # json.JSONDecodeError is a ValueError
            last_error = e
            logger.info("selector_repair", attempt=attempt, error=str(e))
            repair_prompt = SELECTOR_REPAIR_PROMPT_TEMPLATE.format(
                previous_output=previous_output, errors=str(e), columns=columns
            )
            messages = [
                {"role": "system", "content": SELECTOR_SYSTEM_PROMPT},
                {"role": "user", "content": user_prompt},
                {"role": "assistant", "content": response},
                {"role": "user", "content": repair_prompt},
            ]
            continue

        if intent.kind == "follow_up":
            intent = NoIntent(reason="selector_follow_up")
        logger.info("intent_selected", kind=intent.kind, attempts=attempt + 1)
        return intent

    raise IntentParseError(
        f"Intent selection failed after {max_retries} retries. Last error: {last_error}"
    ) from last_error

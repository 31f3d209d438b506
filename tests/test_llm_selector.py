"""Tests for LLM intent selection.

Validates that the selector:
- Parses fenced or bare JSON
- Passes every column through the field resolver
- Sends a repair prompt for invalid output
- Gives up with IntentParseError after the retry budget
"""

import json
from unittest.mock import patch

import pytest

from insightvault.planning.intent import GroupBy, NoIntent, TopN
from insightvault.planning.llm_selector import (
    IntentParseError,
    _parse_json_strict,
    resolve_intent_fields,
    select_intent,
)


# ============================================================================
# Helper Functions
# ============================================================================


def _fake_selector_return(**payload) -> str:
    """Serialize an intent payload the way the model would reply."""
    return json.dumps(payload)


# ============================================================================
# Parsing
# ============================================================================


def test_parse_strips_markdown_fences():
    """```json fences around the reply are tolerated."""
    reply = '```json\n{"kind": "dataset_info"}\n```'
    assert _parse_json_strict(reply) == {"kind": "dataset_info"}


def test_parse_rejects_non_object():
    """A JSON array is not an intent."""
    with pytest.raises(ValueError):
        _parse_json_strict("[1, 2]")


def test_resolve_fields_maps_synonyms(movie_schema):
    """Column names from the model are resolved like user words."""
    payload = resolve_intent_fields({"kind": "group_by", "group_field": "Genres", "metric_field": "revenue"}, movie_schema)
    assert payload["group_field"] == "genre"
    assert payload["metric_field"] == "box_office"


def test_resolve_fields_rejects_unknown_column(movie_schema):
    """Unknown columns are an error, not a guess."""
    with pytest.raises(ValueError, match="unknown column 'director'"):
        resolve_intent_fields({"kind": "top_n", "field": "director"}, movie_schema)


def test_resolve_fields_rejects_non_numeric_rank(movie_schema):
    """Ranking by a categorical column is rejected."""
    with pytest.raises(ValueError, match="not numeric"):
        resolve_intent_fields({"kind": "top_n", "field": "genre"}, movie_schema)


# ============================================================================
# Selection
# ============================================================================


def test_select_valid_intent(movie_schema):
    """A valid reply becomes a validated intent in one call."""
    with patch("insightvault.planning.llm_selector.call_llm") as mock_llm:
        mock_llm.return_value = _fake_selector_return(kind="top_n", field="Rating", n=3)
        intent = select_intent("which three films rate best", movie_schema)

        assert intent == TopN(field="rating", n=3)
        assert mock_llm.call_count == 1
        assert mock_llm.call_args.kwargs["role"] == "selector"


def test_select_repairs_invalid_json(movie_schema):
    """Invalid JSON triggers one repair round."""
    with patch("insightvault.planning.llm_selector.call_llm") as mock_llm:
        mock_llm.side_effect = [
            "not json at all",
            _fake_selector_return(kind="group_by", group_field="genre", agg="count"),
        ]
        intent = select_intent("breakdown of films across genres", movie_schema, max_retries=1)

        assert intent == GroupBy(group_field="genre", agg="count")
        assert mock_llm.call_count == 2
        repair_messages = mock_llm.call_args_list[1].args[0]
        assert "The previous JSON output had errors" in repair_messages[-1]["content"]


def test_select_gives_up_after_retries(movie_schema):
    """Persistently invalid output raises IntentParseError."""
    with patch("insightvault.planning.llm_selector.call_llm") as mock_llm:
        mock_llm.return_value = _fake_selector_return(kind="teleport")
        with pytest.raises(IntentParseError):
            select_intent("anything", movie_schema, max_retries=1)
        assert mock_llm.call_count == 2


def test_select_never_returns_follow_up(movie_schema):
    """Follow-ups are decided by the heuristic, not the model."""
    with patch("insightvault.planning.llm_selector.call_llm") as mock_llm:
        mock_llm.return_value = _fake_selector_return(kind="follow_up")
        intent = select_intent("and then?", movie_schema)
        assert intent == NoIntent(reason="selector_follow_up")

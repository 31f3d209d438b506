"""Tests for the LLM router and the Ollama client.

All HTTP traffic is mocked at ``requests.post``.
"""

import json
from unittest.mock import MagicMock, patch

import pytest
import requests

from insightvault.llm.ollama_client import ollama_chat, ollama_chat_stream, ollama_embed
from insightvault.llm.router import call_llm, describe_provider, embed_texts
from insightvault.retrieval.fallback import build_messages, history_messages


# ============================================================================
# Helper Functions
# ============================================================================


def _response(status: int = 200, payload=None, lines=()):
    response = MagicMock()
    response.status_code = status
    response.text = json.dumps(payload) if payload is not None else ""
    response.json.return_value = payload
    response.iter_lines.return_value = [json.dumps(line).encode() for line in lines]
    response.__enter__.return_value = response
    return response


@pytest.fixture(autouse=True)
def _ollama_env(monkeypatch):
    monkeypatch.setenv("IV_LLM_PROVIDER", "ollama")
    monkeypatch.delenv("IV_EMBEDDING_PROVIDER", raising=False)
    monkeypatch.delenv("IV_GENERATION_MODEL", raising=False)
    monkeypatch.delenv("IV_SELECTOR_MODEL", raising=False)
    monkeypatch.delenv("IV_EMBEDDING_MODEL", raising=False)
    monkeypatch.setenv("IV_MAX_RETRIES", "2")


# ============================================================================
# Ollama client
# ============================================================================


def test_chat_returns_message_content():
    """The reply text is taken from message.content."""
    with patch("insightvault.llm.ollama_client.requests.post") as mock_post:
        mock_post.return_value = _response(payload={"message": {"content": "8.00"}})
        assert ollama_chat([{"role": "user", "content": "hi"}], model="llama3.1:8b") == "8.00"

        sent = mock_post.call_args.kwargs["json"]
        assert sent["stream"] is False
        assert sent["options"]["num_ctx"] == 8192


def test_chat_retries_server_errors():
    """5xx responses are retried with backoff."""
    with patch("insightvault.llm.ollama_client.requests.post") as mock_post, patch(
        "insightvault.llm.ollama_client.time.sleep"
    ) as mock_sleep:
        mock_post.side_effect = [
            _response(status=503, payload={"error": "busy"}),
            _response(payload={"message": {"content": "ok"}}),
        ]
        assert ollama_chat([{"role": "user", "content": "hi"}], model="m") == "ok"
        assert mock_post.call_count == 2
        mock_sleep.assert_called_once_with(0.5)


def test_chat_client_error_not_retried():
    """4xx responses fail immediately."""
    with patch("insightvault.llm.ollama_client.requests.post") as mock_post:
        mock_post.return_value = _response(status=404, payload={"error": "model not found"})
        with pytest.raises(ValueError, match="404"):
            ollama_chat([{"role": "user", "content": "hi"}], model="missing")
        assert mock_post.call_count == 1


def test_connection_failure_after_retries():
    """An unreachable server raises ConnectionError once retries are spent."""
    with patch("insightvault.llm.ollama_client.requests.post") as mock_post, patch(
        "insightvault.llm.ollama_client.time.sleep"
    ):
        mock_post.side_effect = requests.exceptions.ConnectionError("refused")
        with pytest.raises(ConnectionError, match="Cannot connect to Ollama"):
            ollama_chat([{"role": "user", "content": "hi"}], model="m")
        assert mock_post.call_count == 3


def test_stream_yields_fragments_until_done():
    """Streaming stops at the done event."""
    lines = [
        {"message": {"content": "Star "}, "done": False},
        {"message": {"content": "Wars"}, "done": False},
        {"message": {"content": ""}, "done": True},
        {"message": {"content": "ignored"}, "done": False},
    ]
    with patch("insightvault.llm.ollama_client.requests.post") as mock_post:
        mock_post.return_value = _response(lines=lines)
        assert list(ollama_chat_stream([{"role": "user", "content": "hi"}], model="m")) == ["Star ", "Wars"]


def test_embed_checks_vector_count():
    """The embed endpoint must return one vector per input."""
    with patch("insightvault.llm.ollama_client.requests.post") as mock_post:
        mock_post.return_value = _response(payload={"embeddings": [[0.1, 0.2]]})
        assert ollama_embed(["a"], model="nomic-embed-text") == [[0.1, 0.2]]
        with pytest.raises(ValueError):
            ollama_embed(["a", "b"], model="nomic-embed-text")


# ============================================================================
# Router
# ============================================================================


def test_call_llm_uses_role_model_and_temperature():
    """The selector role runs on its own model at temperature 0."""
    with patch("insightvault.llm.router.ollama_chat") as mock_chat:
        mock_chat.return_value = "{}"
        call_llm([{"role": "user", "content": "hi"}], role="selector")
        kwargs = mock_chat.call_args.kwargs
        assert kwargs["model"] == "qwen2.5:7b-instruct"
        assert kwargs["temperature"] == 0.0


def test_call_llm_rejects_unknown_role():
    with pytest.raises(ValueError, match="Invalid role"):
        call_llm([{"role": "user", "content": "hi"}], role="poet")


def test_unknown_provider(monkeypatch):
    """Unsupported providers are rejected before any call."""
    monkeypatch.setenv("IV_LLM_PROVIDER", "bard")
    with pytest.raises(ValueError, match="Unsupported LLM provider"):
        call_llm([{"role": "user", "content": "hi"}])


def test_anthropic_has_no_embeddings(monkeypatch):
    """Embedding through anthropic is a configuration error."""
    monkeypatch.setenv("IV_EMBEDDING_PROVIDER", "anthropic")
    with pytest.raises(ValueError, match="no embedding API"):
        embed_texts(["hello"])


def test_describe_provider_defaults():
    """Default models are reported for the active provider."""
    info = describe_provider()
    assert info == {
        "provider": "ollama",
        "generation_model": "llama3.1:8b",
        "selector_model": "qwen2.5:7b-instruct",
        "embedding_model": "nomic-embed-text",
    }


# ============================================================================
# Prompt assembly
# ============================================================================


def test_history_window_keeps_last_turns():
    """Only user/assistant turns are kept, newest last."""
    history = [{"role": "system", "content": "x"}] + [
        {"role": "user" if i % 2 == 0 else "assistant", "content": str(i)} for i in range(10)
    ]
    window = history_messages(history, turns=8)
    assert [m["content"] for m in window] == [str(i) for i in range(2, 10)]


def test_build_messages_lists_excerpts():
    """Excerpts are appended to the system message with a count."""
    messages = build_messages("q", ["one", "two"], instructions="Be brief.")
    assert messages[0]["content"] == "Be brief.\n\nEXCERPTS - 2 relevant sections:\none\n---\ntwo"
    assert messages[-1] == {"role": "user", "content": "q"}

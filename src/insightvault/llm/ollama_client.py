"""Ollama HTTP client: chat, streaming chat and embeddings.

Connection errors, timeouts and 5xx responses are retried with exponential
backoff up to IV_MAX_RETRIES times. Other failures raise immediately.
"""

import json
import os
import time
from typing import Any, Iterator

import requests


def _base_url() -> str:
    return os.environ.get("IV_OLLAMA_BASE_URL", "http://localhost:11434").rstrip("/")


def _post(endpoint: str, payload: dict[str, Any], *, timeout: int, stream: bool = False) -> requests.Response:
    """POST with retries. Returns a response with a 2xx status."""
    max_retries = int(os.environ.get("IV_MAX_RETRIES", "2"))
    url = f"{_base_url()}{endpoint}"

    for attempt in range(max_retries + 1):
        last_attempt = attempt >= max_retries
        try:
            response = requests.post(url, json=payload, timeout=timeout, stream=stream)
        except requests.exceptions.ConnectionError as e:
            if last_attempt:
                raise ConnectionError(
                    f"Cannot connect to Ollama at {_base_url()}. "
                    "Ensure Ollama is running (ollama serve or Ollama app)."
                ) from e
        except requests.exceptions.Timeout as e:
            if last_attempt:
                raise ValueError(
                    f"Ollama request timed out after {timeout}s (model: {payload.get('model')})"
                ) from e
        else:
            if response.status_code < 400:
                return response
            # 5xx errors are transient
            if response.status_code < 500 or last_attempt:
                raise ValueError(f"Ollama API error ({response.status_code}): {response.text}")
        # Exponential backoff: 0.5s, 1s, 2s
        time.sleep(0.5 * (2 ** attempt))

    raise ValueError(f"Ollama request to {endpoint} failed after {max_retries} retries")


def _chat_payload(
    messages: list[dict[str, str]],
    model: str,
    temperature: float,
    max_tokens: int | None,
    stream: bool,
) -> dict[str, Any]:
    options: dict[str, Any] = {
        "temperature": temperature,
        "num_ctx": int(os.environ.get("IV_OLLAMA_NUM_CTX", "8192")),
    }
    if max_tokens is not None:
        options["num_predict"] = max_tokens
    return {"model": model, "messages": messages, "stream": stream, "options": options}


def ollama_chat(
    messages: list[dict[str, str]],
    *,
    model: str,
    temperature: float = 0.0,
    max_tokens: int | None = None,
    timeout: int = 60,
) -> str:
    """Call the Ollama chat API and return the full reply.

    Raises:
        ValueError: If the API call fails after retries or the reply is malformed
        ConnectionError: If Ollama cannot be reached
    """
    response = _post(
        "/api/chat",
        _chat_payload(messages, model, temperature, max_tokens, stream=False),
        timeout=timeout,
    )
    result = response.json()
    if "message" not in result or "content" not in result["message"]:
        raise ValueError(f"Unexpected Ollama response format: {result}")
    return result["message"]["content"]


def ollama_chat_stream(
    messages: list[dict[str, str]],
    *,
    model: str,
    temperature: float = 0.0,
    max_tokens: int | None = None,
    timeout: int = 60,
) -> Iterator[str]:
    """Stream a chat reply from Ollama as text fragments.

    Ollama streams one JSON object per line; the last one has ``done: true``.
    """
    response = _post(
        "/api/chat",
        _chat_payload(messages, model, temperature, max_tokens, stream=True),
        timeout=timeout,
        stream=True,
    )
    with response:
        for line in response.iter_lines():
            if not line:
                continue
            event = json.loads(line)
            if event.get("error"):
                raise ValueError(f"Ollama stream error: {event['error']}")
            fragment = event.get("message", {}).get("content", "")
            if fragment:
                yield fragment
            if event.get("done"):
                break


def ollama_embed(texts: list[str], *, model: str, timeout: int = 60) -> list[list[float]]:
    """Embed texts with an Ollama embedding model."""
    if not texts:
        return []
    response = _post("/api/embed", {"model": model, "input": texts}, timeout=timeout)
    result = response.json()
    embeddings = result.get("embeddings")
    if not isinstance(embeddings, list) or len(embeddings) != len(texts):
        raise ValueError(f"Unexpected Ollama embedding response for {len(texts)} inputs")
    return embeddings

"""LLM router: dispatch chat, streaming and embedding calls to a provider.

Supported providers:
- ollama: Local models via Ollama (default)
- openai: GPT models via the OpenAI API
- anthropic: Claude models via the Anthropic API (no embeddings)

Environment variables:
- IV_LLM_PROVIDER: Provider to use (ollama, openai, anthropic)
- IV_OPENAI_API_KEY / IV_ANTHROPIC_API_KEY: API keys (fall back to the
  providers' own variable names)
- IV_GENERATION_MODEL: Model for answers, follow-ups and synthesis
- IV_SELECTOR_MODEL: Model for LLM tool selection
- IV_EMBEDDING_MODEL: Model for embeddings
- IV_EMBEDDING_PROVIDER: Embedding provider when it differs from IV_LLM_PROVIDER
"""

import importlib
import os
from typing import Any, Iterator

from insightvault.llm.ollama_client import ollama_chat, ollama_chat_stream, ollama_embed

ROLES = ("generator", "selector", "narrator")

DEFAULT_MODELS = {
    "ollama": {
        "generator": "llama3.1:8b",
        "selector": "qwen2.5:7b-instruct",
        "narrator": "llama3.1:8b",
        "embedding": "nomic-embed-text",
    },
    "openai": {
        "generator": "gpt-4o-mini",
        "selector": "gpt-4o-mini",
        "narrator": "gpt-4o-mini",
        "embedding": "text-embedding-3-small",
    },
    "anthropic": {
        "generator": "claude-3-5-haiku-20241022",
        "selector": "claude-3-5-haiku-20241022",
        "narrator": "claude-3-5-haiku-20241022",
    },
}

ROLE_TEMPERATURES = {"generator": 0.2, "selector": 0.0, "narrator": 0.3}


def _provider(provider: str | None = None) -> str:
    resolved = (provider or os.environ.get("IV_LLM_PROVIDER", "ollama")).strip().lower()
    if resolved not in DEFAULT_MODELS:
        raise ValueError(
            f"Unsupported LLM provider: {resolved}. Supported: ollama, openai, anthropic"
        )
    return resolved


def _role_model(provider: str, role: str) -> str:
    if role not in ROLES:
        raise ValueError(f"Invalid role: {role}. Must be one of {ROLES}")
    env_name = "IV_SELECTOR_MODEL" if role == "selector" else "IV_GENERATION_MODEL"
    return os.environ.get(env_name) or DEFAULT_MODELS[provider][role]


def _import_provider(module_name: str):
    try:
        return importlib.import_module(module_name)
    except ImportError as e:
        raise ImportError(
            f"{module_name} package not installed. "
            f"Install with: pip install 'insightvault[{module_name}]'"
        ) from e


def _api_key(provider: str) -> str:
    env_names = {
        "openai": ("IV_OPENAI_API_KEY", "OPENAI_API_KEY"),
        "anthropic": ("IV_ANTHROPIC_API_KEY", "ANTHROPIC_API_KEY"),
    }[provider]
    for name in env_names:
        if os.environ.get(name):
            return os.environ[name]
    raise ValueError(f"{provider} API key not found. Set {' or '.join(env_names)}.")


def _openai_client(timeout: int):
    openai_module = _import_provider("openai")
    return openai_module.OpenAI(api_key=_api_key("openai"), timeout=timeout)


def _anthropic_client(timeout: int):
    anthropic_module = _import_provider("anthropic")
    return anthropic_module.Anthropic(api_key=_api_key("anthropic"), timeout=timeout)


def _split_system(messages: list[dict[str, str]]) -> tuple[str, list[dict[str, str]]]:
    system_parts = [m["content"] for m in messages if m["role"] == "system"]
    rest = [m for m in messages if m["role"] != "system"]
    return "\n\n".join(system_parts) or "You are a helpful data assistant.", rest


def call_llm(
    messages: list[dict[str, str]],
    *,
    role: str = "generator",
    max_tokens: int | None = None,
    timeout: int = 60,
    provider: str | None = None,
    model: str | None = None,
    temperature: float | None = None,
) -> str:
    """Send a chat request to the configured provider and return the reply.

    Args:
        messages: List of message dicts with 'role' and 'content'
        role: 'generator', 'selector' or 'narrator'; selects model and temperature
        max_tokens: Maximum tokens in response (optional)
        timeout: Request timeout in seconds
        provider: Override IV_LLM_PROVIDER
        model: Override the role's model
        temperature: Override the role's temperature

    Returns:
        Response text content

    Raises:
        ValueError: If the role or provider is invalid, or the call fails
        ImportError: If the provider's SDK is not installed
    """
    resolved = _provider(provider)
    role_model = model or _role_model(resolved, role)
    temp = ROLE_TEMPERATURES[role] if temperature is None else temperature

    if resolved == "ollama":
        return ollama_chat(
            messages, model=role_model, temperature=temp, max_tokens=max_tokens, timeout=timeout
        )
    if resolved == "openai":
        response = _openai_client(timeout).chat.completions.create(
            model=role_model,
            messages=messages,
            temperature=temp,
            max_tokens=max_tokens or 4096,
        )
        return response.choices[0].message.content or ""

    system, rest = _split_system(messages)
    response = _anthropic_client(timeout).messages.create(
        model=role_model,
        max_tokens=max_tokens or 4096,
        temperature=temp,
        system=system,
        messages=rest,
    )
    return response.content[0].text


def stream_llm(
    messages: list[dict[str, str]],
    *,
    role: str = "generator",
    max_tokens: int | None = None,
    timeout: int = 60,
    provider: str | None = None,
    model: str | None = None,
) -> Iterator[str]:
    """Stream a chat reply as text fragments. Same routing as call_llm."""
    resolved = _provider(provider)
    role_model = model or _role_model(resolved, role)
    temp = ROLE_TEMPERATURES[role]

    if resolved == "ollama":
        yield from ollama_chat_stream(
            messages, model=role_model, temperature=temp, max_tokens=max_tokens, timeout=timeout
        )
        return

    if resolved == "openai":
        stream = _openai_client(timeout).chat.completions.create(
            model=role_model,
            messages=messages,
            temperature=temp,
            max_tokens=max_tokens or 4096,
            stream=True,
        )
        for event in stream:
            if event.choices and event.choices[0].delta.content:
                yield event.choices[0].delta.content
        return

    system, rest = _split_system(messages)
    with _anthropic_client(timeout).messages.stream(
        model=role_model,
        max_tokens=max_tokens or 4096,
        temperature=temp,
        system=system,
        messages=rest,
    ) as stream:
        yield from stream.text_stream


def embed_texts(
    texts: list[str],
    *,
    timeout: int = 60,
    provider: str | None = None,
    model: str | None = None,
) -> list[list[float]]:
    """Embed texts with the configured embedding provider.

    Raises:
        ValueError: If the provider has no embedding API
    """
    resolved = _provider(provider or os.environ.get("IV_EMBEDDING_PROVIDER"))
    if resolved == "anthropic":
        raise ValueError(
            "anthropic has no embedding API. Set IV_EMBEDDING_PROVIDER to ollama or openai."
        )
    embed_model = model or os.environ.get("IV_EMBEDDING_MODEL") or DEFAULT_MODELS[resolved]["embedding"]
    if not texts:
        return []

    if resolved == "ollama":
        return ollama_embed(texts, model=embed_model, timeout=timeout)

    response = _openai_client(timeout).embeddings.create(model=embed_model, input=texts)
    return [list(item.embedding) for item in response.data]


def describe_provider() -> dict[str, Any]:
    """Provider and model names in effect, for /health and the CLI."""
    resolved = _provider()
    return {
        "provider": resolved,
        "generation_model": _role_model(resolved, "generator"),
        "selector_model": _role_model(resolved, "selector"),
        "embedding_model": os.environ.get("IV_EMBEDDING_MODEL")
        or DEFAULT_MODELS.get(resolved, {}).get("embedding"),
    }

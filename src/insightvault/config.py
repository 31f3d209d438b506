"""Runtime configuration for InsightVault.

All settings come from environment variables with the ``IV_`` prefix so the
engine, the API server and the CLI share one source of truth.

Environment variables:
- IV_DB_PATH: DuckDB file backing the row store
- IV_LLM_PROVIDER: Provider for generation/embeddings (ollama, openai, anthropic)
- IV_GENERATION_MODEL: Model used for prose generation
- IV_EMBEDDING_MODEL: Model used for query embeddings
- IV_RETRIEVAL_THRESHOLD / IV_RETRIEVAL_LIMIT: similarity search parameters
- IV_HISTORY_TURNS: How many prior turns are sent to the generator
- IV_ROUTER_MODE: heuristic (default), hybrid or llm
- IV_SYNTHESIZE: Set to 1 to rewrite structural answers as prose
- IV_SCHEMA_SAMPLE_SIZE: Values per field considered in summary contexts
- IV_LOG_LEVEL / IV_LOG_JSON: Logging output
"""

import os
from dataclasses import dataclass
from pathlib import Path

ROUTER_MODES = ("heuristic", "hybrid", "llm")


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class EngineConfig:
    """Configuration for the query engine and its collaborators."""

    db_path: Path = Path("./data/insightvault.duckdb")

    # Retrieval fallback
    retrieval_threshold: float = 0.15
    retrieval_limit: int = 12
    history_turns: int = 8

    # Routing
    router_mode: str = "heuristic"
    synthesize: bool = False

    # Schema inference in summary contexts (structural execution uses all rows)
    schema_sample_size: int = 200

    def __post_init__(self):
        if self.router_mode not in ROUTER_MODES:
            raise ValueError(
                f"Invalid router mode: {self.router_mode}. Must be one of {ROUTER_MODES}"
            )
        self.db_path = Path(self.db_path)


def load_config() -> EngineConfig:
    """Build an EngineConfig from IV_* environment variables."""
    return EngineConfig(
        db_path=Path(os.environ.get("IV_DB_PATH", "./data/insightvault.duckdb")),
        retrieval_threshold=float(os.environ.get("IV_RETRIEVAL_THRESHOLD", "0.15")),
        retrieval_limit=int(os.environ.get("IV_RETRIEVAL_LIMIT", "12")),
        history_turns=int(os.environ.get("IV_HISTORY_TURNS", "8")),
        router_mode=os.environ.get("IV_ROUTER_MODE", "heuristic").strip().lower(),
        synthesize=_env_bool("IV_SYNTHESIZE"),
        schema_sample_size=int(os.environ.get("IV_SCHEMA_SAMPLE_SIZE", "200")),
    )

"""CLI entrypoint for insightvault."""

import asyncio
import json
import os
import re
from pathlib import Path

import click

from insightvault import __version__
from insightvault.config import load_config
from insightvault.contracts import AskRequest, UpstreamError
from insightvault.io.ingest import ingest_path
from insightvault.io.store import DuckDBRowStore
from insightvault.llm.router import embed_texts
from insightvault.logging_config import configure_logging
from insightvault.orchestrator.runtime import build_engine


def _default_db_path() -> str:
    return str(load_config().db_path)


def _dataset_id_from(path: Path) -> str:
    """Dataset id from a file name: lower-case, non-alphanumerics -> underscore."""
    name = re.sub(r"[^a-z0-9]+", "_", path.stem.lower()).strip("_")
    return name or "dataset"


def _engine(db_path: str, offline: bool):
    config = load_config()
    config.db_path = Path(db_path)
    return build_engine(config, offline=offline)


db_path_option = click.option(
    "--db-path",
    default=_default_db_path,
    type=click.Path(dir_okay=False),
    help="Path to DuckDB database file (default: IV_DB_PATH or ./data/insightvault.duckdb)",
)


@click.group()
@click.version_option(__version__)
@click.option("--verbose", "-v", is_flag=True, help="Log at INFO level")
def main(verbose: bool):
    """insightvault - Ask questions about tabular datasets."""
    configure_logging(level="INFO" if verbose else os.environ.get("IV_LOG_LEVEL", "WARNING"))


@main.command()
@click.argument("path", type=click.Path(exists=True, dir_okay=False))
@click.option("--dataset-id", default=None, help="Dataset identifier (default: derived from file name)")
@db_path_option
@click.option(
    "--embed/--no-embed",
    default=False,
    help="Embed rows for retrieval (documents are always embedded)",
)
def ingest(path: str, dataset_id: str | None, db_path: str, embed: bool):
    """Ingest a CSV file (or a .txt/.md/.pdf document) into DuckDB."""
    source = Path(path)
    dataset_id = dataset_id or _dataset_id_from(source)
    store = DuckDBRowStore(db_path)
    is_document = source.suffix.lower() in {".txt", ".md", ".markdown", ".rst", ".pdf"}
    try:
        result = ingest_path(
            store, source, dataset_id, embedder=embed_texts if (embed or is_document) else None
        )
    except (ValueError, ImportError, ConnectionError) as e:
        click.echo(f"❌ {e}", err=True)
        raise click.Abort()

    if result["status"] == "empty":
        click.echo(f"❌ {source.name} has no rows", err=True)
        raise click.Abort()
    click.echo(
        f"✅ Ingested {source.name} as '{dataset_id}': "
        f"{result['rows']} rows, {result['chunks']} chunks"
    )


@main.command()
@click.argument("question")
@click.option("--dataset-id", required=True, help="Dataset identifier")
@db_path_option
@click.option("--json", "as_json", is_flag=True, help="Print the full response as JSON")
@click.option("--offline", is_flag=True, help="Structural answers only (no LLM calls)")
def ask(question: str, dataset_id: str, db_path: str, as_json: bool, offline: bool):
    """Ask a question about a dataset."""
    engine = _engine(db_path, offline)
    try:
        request = AskRequest(question=question, dataset_id=dataset_id)
        response = asyncio.run(engine.ask(request))
    except UpstreamError as e:
        click.echo(f"❌ {e}", err=True)
        raise click.Abort()

    if as_json:
        click.echo(json.dumps(response.model_dump(by_alias=True, exclude_none=True), indent=2))
        return
    click.echo(response.answer)
    if response.sources:
        click.echo(f"\n({len(response.sources)} sources)")


@main.command()
@click.option("--dataset-id", required=True, help="Dataset identifier")
@db_path_option
def schema(dataset_id: str, db_path: str):
    """Print the inferred schema of a dataset as JSON."""
    engine = _engine(db_path, offline=True)
    inferred = asyncio.run(engine.dataset_schema(dataset_id))
    if inferred.is_empty:
        click.echo(f"❌ No rows found for dataset '{dataset_id}'", err=True)
        raise click.Abort()
    click.echo(json.dumps({"dataset_id": dataset_id, **inferred.to_dict()}, indent=2))


@main.command()
@click.option("--dataset-id", required=True, help="Dataset identifier")
@db_path_option
@click.option("--exclude", multiple=True, help="Question already asked (repeatable)")
@click.option("--offline", is_flag=True, help="Fixed starter questions (no LLM calls)")
def suggest(dataset_id: str, db_path: str, exclude: tuple[str, ...], offline: bool):
    """Suggest starter questions for a dataset."""
    engine = _engine(db_path, offline)
    try:
        questions = asyncio.run(engine.suggestions(dataset_id, exclude=list(exclude)))
    except UpstreamError as e:
        click.echo(f"❌ {e}", err=True)
        raise click.Abort()
    for i, question in enumerate(questions, start=1):
        click.echo(f"{i}. {question}")


@main.command()
@click.option("--dataset-id", required=True, help="Dataset identifier")
@db_path_option
@click.option("--offline", is_flag=True, help="Describe from the schema only (no LLM calls)")
def summary(dataset_id: str, db_path: str, offline: bool):
    """Describe a dataset in two sentences."""
    engine = _engine(db_path, offline)
    try:
        text = asyncio.run(engine.summary(dataset_id))
    except UpstreamError as e:
        click.echo(f"❌ {e}", err=True)
        raise click.Abort()
    if not text:
        click.echo(f"❌ Nothing to summarize for dataset '{dataset_id}'", err=True)
        raise click.Abort()
    click.echo(text)


@main.command()
@db_path_option
def datasets(db_path: str):
    """List ingested datasets."""
    entries = DuckDBRowStore(db_path).list_datasets()
    if not entries:
        click.echo("No datasets ingested yet.")
        return
    for entry in entries:
        click.echo(f"{entry['dataset_id']}\t{entry['kind']}\t{entry['row_count']} rows\t{entry['name']}")


@main.command()
@click.option("--host", default="127.0.0.1", help="Bind address")
@click.option("--port", default=8000, type=int, help="Port")
@click.option("--reload", is_flag=True, help="Auto-reload on code changes")
def serve(host: str, port: int, reload: bool):
    """Run the HTTP API server."""
    import uvicorn

    uvicorn.run(
        "insightvault.api.server:create_app",
        factory=True,
        host=host,
        port=port,
        reload=reload,
        log_level="info",
    )


if __name__ == "__main__":
    main()

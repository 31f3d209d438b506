"""Dataset ingestion: CSV files become rows, documents become embedded chunks."""

from pathlib import Path
from typing import Any, Callable, Mapping, Optional, Sequence

import pandas as pd
import structlog

from insightvault.io.store import DuckDBRowStore, normalize_rows

logger = structlog.get_logger(__name__)

TEXT_EXTENSIONS = {".txt", ".md", ".markdown", ".rst"}
DOCUMENT_EXTENSIONS = TEXT_EXTENSIONS | {".pdf"}
EMBED_BATCH_SIZE = 100

Embedder = Callable[[list[str]], list[list[float]]]


def read_csv_rows(path: Path | str) -> list[dict[str, str]]:
    """
    Read a CSV file into normalized rows.

    Every cell is read as text; empty cells stay "" rather than NaN.
    """
    df = pd.read_csv(path, dtype=str, keep_default_na=False, skip_blank_lines=True)
    df.columns = [str(c).strip().lower() for c in df.columns]
    return normalize_rows(df.to_dict(orient="records"))


def row_to_text(row: Mapping[str, Any]) -> str:
    """Render a row as "key: value" pairs, skipping empty values."""
    return ", ".join(
        f"{key}: {value}" for key, value in row.items() if value is not None and value != ""
    )


def chunk_text(text: str, min_size: int = 500, max_size: int = 1000) -> list[str]:
    """
    Split text into chunks of roughly min_size..max_size characters.

    A chunk ends at the last period or newline before max_size when that
    point lies beyond min_size; otherwise it is cut at max_size.
    """
    chunks = []
    start = 0
    n = len(text)
    while start < n:
        end = start + max_size
        if end < n:
            window = text[start:start + max_size + 200]
            # rfind end bound is exclusive, so +1 keeps a break exactly at max_size
            brk = max(window.rfind(".", 0, max_size + 1), window.rfind("\n", 0, max_size + 1))
            if brk > min_size:
                end = start + brk + 1
        chunks.append(text[start:end].strip())
        start = end
    return [c for c in chunks if c]


def _embed_in_batches(texts: Sequence[str], embedder: Embedder) -> list[list[float]]:
    vectors: list[list[float]] = []
    for start in range(0, len(texts), EMBED_BATCH_SIZE):
        vectors.extend(embedder(list(texts[start:start + EMBED_BATCH_SIZE])))
    if len(vectors) != len(texts):
        raise ValueError(f"Embedder returned {len(vectors)} vectors for {len(texts)} texts")
    return vectors


def ingest_csv(
    store: DuckDBRowStore,
    path: Path | str,
    dataset_id: str,
    embedder: Optional[Embedder] = None,
) -> dict:
    """
    Load a CSV file as a tabular dataset.

    With an embedder, each row (plus a schema summary chunk) is also embedded
    so retrieval can answer questions the structural router declines.

    Returns:
        Dictionary with ingestion results
    """
    path = Path(path)
    rows = read_csv_rows(path)
    if not rows:
        return {"status": "empty", "dataset_id": dataset_id, "rows": 0, "chunks": 0}

    stored = store.save_dataset(dataset_id, rows, kind="tabular", name=path.name)

    chunk_count = 0
    if embedder is not None:
        columns = list(rows[0].keys())
        schema_chunk = (
            f"This dataset has {len(rows)} rows and {len(columns)} columns. "
            f"The column names (headers) are: {', '.join(columns)}."
        )
        texts = [schema_chunk] + [t for t in (row_to_text(r) for r in rows) if t]
        vectors = _embed_in_batches(texts, embedder)
        chunk_count = store.save_chunks(
            dataset_id, [(t, v, None) for t, v in zip(texts, vectors)]
        )

    logger.info("csv_ingested", dataset_id=dataset_id, file=path.name, rows=stored, chunks=chunk_count)
    return {"status": "success", "dataset_id": dataset_id, "rows": stored, "chunks": chunk_count}


def _read_pdf_pages(path: Path) -> list[str]:
    try:
        import pypdf
    except ImportError as e:
        raise ImportError(
            "PDF ingestion requires pypdf. Install it with: pip install 'insightvault[pdf]'"
        ) from e
    reader = pypdf.PdfReader(str(path))
    return [page.extract_text() or "" for page in reader.pages]


def extract_document_pages(path: Path | str) -> list[tuple[str, Optional[int]]]:
    """Return (text, page_number) pairs; plain-text files are a single unnumbered page."""
    path = Path(path)
    ext = path.suffix.lower()
    if ext == ".pdf":
        return [(text, i + 1) for i, text in enumerate(_read_pdf_pages(path))]
    if ext in TEXT_EXTENSIONS:
        return [(path.read_text(encoding="utf-8", errors="ignore"), None)]
    raise ValueError(f"Unsupported document type: {ext}")


def ingest_document(
    store: DuckDBRowStore,
    path: Path | str,
    dataset_id: str,
    embedder: Embedder,
) -> dict:
    """
    Chunk, embed and store a text or PDF document.

    Raises:
        ValueError: If the file type is unsupported or no text could be extracted
    """
    path = Path(path)
    pieces: list[tuple[str, Optional[int]]] = []
    for text, page in extract_document_pages(path):
        pieces.extend((chunk, page) for chunk in chunk_text(text))
    if not pieces:
        raise ValueError(
            f"Could not extract text from {path.name}. The file may be scanned or image-only."
        )

    vectors = _embed_in_batches([c for c, _ in pieces], embedder)
    count = store.save_chunks(
        dataset_id,
        [(content, vector, page) for (content, page), vector in zip(pieces, vectors)],
        kind="document",
    )
    logger.info("document_ingested", dataset_id=dataset_id, file=path.name, chunks=count)
    return {"status": "success", "dataset_id": dataset_id, "rows": 0, "chunks": count}


def ingest_path(
    store: DuckDBRowStore,
    path: Path | str,
    dataset_id: str,
    embedder: Optional[Embedder] = None,
) -> dict:
    """Ingest by file type; anything that is not a known document type is read as CSV."""
    path = Path(path)
    if path.suffix.lower() in DOCUMENT_EXTENSIONS:
        if embedder is None:
            raise ValueError("Document ingestion needs an embedding model")
        return ingest_document(store, path, dataset_id, embedder)
    return ingest_csv(store, path, dataset_id, embedder)

"""Row storage for uploaded datasets.

The query engine only depends on the async ``RowStore`` protocol. Two
implementations ship here: ``InMemoryRowStore`` for tests and embedding in
other programs, and ``DuckDBRowStore`` which persists rows and embedded
chunks in a local DuckDB file.

Rows always come back with lower-cased column names, string values, and the
full column set of the dataset (missing cells become "").
"""

import asyncio
import json
from datetime import datetime
from pathlib import Path
from typing import Any, Iterable, Literal, Mapping, Optional, Protocol, Sequence

import duckdb
import structlog

from insightvault.contracts import Snippet

logger = structlog.get_logger(__name__)

DatasetKind = Literal["tabular", "document"]

BATCH_SIZE = 500


class RowStore(Protocol):
    """Collaborator interface for loading a dataset's rows."""

    async def get_rows(self, dataset_id: str) -> list[dict[str, str]]:
        ...

    async def get_dataset_kind(self, dataset_id: str) -> DatasetKind:
        ...


def normalize_rows(raw_rows: Iterable[Mapping[str, Any]]) -> list[dict[str, str]]:
    """
    Lower-case keys, stringify values, and give every row the same columns.

    Column order is first-seen order across rows; None becomes "".
    """
    lowered = []
    columns: dict[str, None] = {}
    for raw in raw_rows:
        row = {}
        for key, value in raw.items():
            name = str(key).strip().lower()
            row[name] = "" if value is None else str(value)
            columns.setdefault(name, None)
        lowered.append(row)
    return [{col: row.get(col, "") for col in columns} for row in lowered]


class InMemoryRowStore:
    """Dict-backed store. Rows are kept in insertion order per dataset."""

    def __init__(self):
        self._rows: dict[str, list[dict[str, str]]] = {}
        self._kinds: dict[str, DatasetKind] = {}

    def add_dataset(
        self,
        dataset_id: str,
        rows: Sequence[Mapping[str, Any]] = (),
        kind: DatasetKind = "tabular",
    ) -> None:
        self._rows[dataset_id] = normalize_rows(rows)
        self._kinds[dataset_id] = kind

    async def get_rows(self, dataset_id: str) -> list[dict[str, str]]:
        return [dict(r) for r in self._rows.get(dataset_id, [])]

    async def get_dataset_kind(self, dataset_id: str) -> DatasetKind:
        return self._kinds.get(dataset_id, "tabular")


class DuckDBRowStore:
    """
    DuckDB-backed store for dataset rows and embedded text chunks.

    Tables:
        iv_datasets(dataset_id, kind, name, row_count, ingested_at)
        iv_rows(dataset_id, row_index, data)  -- data is a JSON object
        iv_chunks(dataset_id, chunk_index, content, page_number, embedding)

    Blocking DuckDB calls run in a worker thread from the async methods.
    """

    def __init__(self, db_path: Path | str):
        self.db_path = Path(db_path).expanduser()

    def _connect(self, read_only: bool = False) -> duckdb.DuckDBPyConnection:
        if not read_only:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        return duckdb.connect(str(self.db_path), read_only=read_only)

    def init_schema(self) -> None:
        """Create tables if they do not exist."""
        conn = self._connect()
        try:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS iv_datasets (
                    dataset_id VARCHAR PRIMARY KEY,
                    kind VARCHAR,
                    name VARCHAR,
                    row_count BIGINT,
                    ingested_at TIMESTAMP
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS iv_rows (
                    dataset_id VARCHAR,
                    row_index BIGINT,
                    data VARCHAR
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS iv_chunks (
                    dataset_id VARCHAR,
                    chunk_index BIGINT,
                    content VARCHAR,
                    page_number INTEGER,
                    embedding DOUBLE[]
                )
                """
            )
        finally:
            conn.close()

    # -- writes -------------------------------------------------------------

    def save_dataset(
        self,
        dataset_id: str,
        rows: Sequence[Mapping[str, Any]],
        kind: DatasetKind = "tabular",
        name: Optional[str] = None,
    ) -> int:
        """
        Replace a dataset's rows in one transaction.

        A failure part way through leaves the previous rows and row count intact.

        Returns:
            Number of rows stored
        """
        self.init_schema()
        normalized = normalize_rows(rows)
        conn = self._connect()
        try:
            conn.begin()
            conn.execute("DELETE FROM iv_rows WHERE dataset_id = ?", [dataset_id])
            conn.execute("DELETE FROM iv_chunks WHERE dataset_id = ?", [dataset_id])
            # A primary key cannot be deleted and re-inserted within one transaction
            known = conn.execute(
                "SELECT 1 FROM iv_datasets WHERE dataset_id = ?", [dataset_id]
            ).fetchone()
            if known:
                conn.execute(
                    "UPDATE iv_datasets SET kind = ?, name = ?, row_count = ?, ingested_at = ? "
                    "WHERE dataset_id = ?",
                    [kind, name or dataset_id, len(normalized), datetime.now(), dataset_id],
                )
            else:
                conn.execute(
                    "INSERT INTO iv_datasets VALUES (?, ?, ?, ?, ?)",
                    [dataset_id, kind, name or dataset_id, len(normalized), datetime.now()],
                )
            for start in range(0, len(normalized), BATCH_SIZE):
                batch = normalized[start:start + BATCH_SIZE]
                conn.executemany(
                    "INSERT INTO iv_rows VALUES (?, ?, ?)",
                    [[dataset_id, start + i, json.dumps(row)] for i, row in enumerate(batch)],
                )
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()
        logger.info("dataset_saved", dataset_id=dataset_id, kind=kind, rows=len(normalized))
        return len(normalized)

    def save_chunks(
        self,
        dataset_id: str,
        chunks: Sequence[tuple[str, Sequence[float], Optional[int]]],
        kind: Optional[DatasetKind] = None,
    ) -> int:
        """
        Append embedded chunks for a dataset.

        Args:
            dataset_id: Dataset identifier
            chunks: (content, embedding, page_number) triples
            kind: Register the dataset with this kind if it is not known yet

        Returns:
            Number of chunks stored
        """
        self.init_schema()
        conn = self._connect()
        try:
            if kind is not None:
                known = conn.execute(
                    "SELECT 1 FROM iv_datasets WHERE dataset_id = ?", [dataset_id]
                ).fetchone()
                if not known:
                    conn.execute(
                        "INSERT INTO iv_datasets VALUES (?, ?, ?, ?, ?)",
                        [dataset_id, kind, dataset_id, 0, datetime.now()],
                    )
            if not chunks:
                return 0
            offset = conn.execute(
                "SELECT COUNT(*) FROM iv_chunks WHERE dataset_id = ?", [dataset_id]
            ).fetchone()[0]
            conn.executemany(
                "INSERT INTO iv_chunks VALUES (?, ?, ?, ?, ?)",
                [
                    [dataset_id, offset + i, content, page, [float(x) for x in embedding]]
                    for i, (content, embedding, page) in enumerate(chunks)
                ],
            )
        finally:
            conn.close()
        logger.info("chunks_saved", dataset_id=dataset_id, chunks=len(chunks))
        return len(chunks)

    # -- sync reads ---------------------------------------------------------

    def fetch_rows(self, dataset_id: str) -> list[dict[str, str]]:
        if not self.db_path.exists():
            return []
        conn = self._connect(read_only=True)
        try:
            if not _has_table(conn, "iv_rows"):
                return []
            records = conn.execute(
                "SELECT data FROM iv_rows WHERE dataset_id = ? ORDER BY row_index",
                [dataset_id],
            ).fetchall()
        finally:
            conn.close()
        return normalize_rows(json.loads(data) for (data,) in records)

    def fetch_kind(self, dataset_id: str) -> DatasetKind:
        if not self.db_path.exists():
            return "tabular"
        conn = self._connect(read_only=True)
        try:
            if not _has_table(conn, "iv_datasets"):
                return "tabular"
            row = conn.execute(
                "SELECT kind FROM iv_datasets WHERE dataset_id = ?", [dataset_id]
            ).fetchone()
        finally:
            conn.close()
        # Unknown datasets are treated as tabular
        return "document" if row and row[0] == "document" else "tabular"

    def list_datasets(self) -> list[dict[str, Any]]:
        if not self.db_path.exists():
            return []
        conn = self._connect(read_only=True)
        try:
            if not _has_table(conn, "iv_datasets"):
                return []
            records = conn.execute(
                "SELECT dataset_id, kind, name, row_count FROM iv_datasets ORDER BY ingested_at"
            ).fetchall()
        finally:
            conn.close()
        return [
            {"dataset_id": d, "kind": k, "name": n, "row_count": c}
            for d, k, n, c in records
        ]

    def search_chunks(
        self,
        vector: Sequence[float],
        dataset_id: str,
        threshold: float,
        limit: int,
    ) -> list[Snippet]:
        """Cosine-similarity search over a dataset's chunks, best first."""
        if not self.db_path.exists():
            return []
        conn = self._connect(read_only=True)
        try:
            if not _has_table(conn, "iv_chunks"):
                return []
            records = conn.execute(
                """
                SELECT content, page_number, similarity FROM (
                    SELECT content, page_number, chunk_index,
                           list_cosine_similarity(embedding, ?::DOUBLE[]) AS similarity
                    FROM iv_chunks
                    WHERE dataset_id = ?
                )
                WHERE similarity >= ?
                ORDER BY similarity DESC, chunk_index
                LIMIT ?
                """,
                [[float(x) for x in vector], dataset_id, threshold, limit],
            ).fetchall()
        finally:
            conn.close()
        return [
            Snippet(content=content, page_number=page, similarity=float(sim))
            for content, page, sim in records
        ]

    # -- RowStore protocol --------------------------------------------------

    async def get_rows(self, dataset_id: str) -> list[dict[str, str]]:
        return await asyncio.to_thread(self.fetch_rows, dataset_id)

    async def get_dataset_kind(self, dataset_id: str) -> DatasetKind:
        return await asyncio.to_thread(self.fetch_kind, dataset_id)

    async def similarity_search(
        self, vector: Sequence[float], dataset_id: str, threshold: float, limit: int
    ) -> list[Snippet]:
        return await asyncio.to_thread(self.search_chunks, vector, dataset_id, threshold, limit)


def _has_table(conn: duckdb.DuckDBPyConnection, table: str) -> bool:
    row = conn.execute(
        "SELECT COUNT(*) FROM information_schema.tables WHERE table_name = ?", [table]
    ).fetchone()
    return bool(row and row[0])

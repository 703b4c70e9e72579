"""Shared document schema and ranking for SQLite-backed vector stores."""

from __future__ import annotations

import datetime
import json
import sqlite3
import threading
from pathlib import Path
from typing import TYPE_CHECKING

from chatbase.config import config
from chatbase.errors import ConfigurationError
from chatbase.models import Document, SearchResult

if TYPE_CHECKING:
    from collections.abc import Iterable

    import numpy as np

logger = config.get_logger(__name__)

DOCUMENT_COLUMNS = "seq, id, content, metadata, dimension, vector_file, created_at"


class BaseSQLiteStore:
    """Document metadata in SQLite; subclasses own the vectors.

    Rows keep an autoincrement ``seq`` which doubles as insertion order (for
    stable tie-breaking) and as the vector id handed to the index.
    """

    backend = "base"

    def __init__(self, db_path: Path) -> None:
        """Initialize metadata store and ensure schema exists."""
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(exist_ok=True, parents=True)
        self._lock = threading.RLock()
        self._create_tables()

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(str(self.db_path))

    def _create_tables(self) -> None:
        """Create the documents table and its indexes if they don't exist."""
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS documents (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    id TEXT NOT NULL UNIQUE,
                    source TEXT,
                    content TEXT NOT NULL,
                    metadata TEXT NOT NULL DEFAULT '{}',
                    dimension INTEGER,
                    vector_file TEXT,
                    created_at TEXT NOT NULL
                )
            """)
            cursor.execute(
                "CREATE INDEX IF NOT EXISTS idx_documents_source ON documents(source)"
            )
            cursor.execute(
                "CREATE INDEX IF NOT EXISTS idx_documents_created_at "
                "ON documents(created_at DESC)"
            )
            conn.commit()

    # Subclass hooks

    def _vector_file_for(self, document: Document) -> str | None:  # noqa: ARG002, PLR6301
        """Name of the file holding a document's vector, if the backend uses files."""  # noqa: DOC201
        return None

    def _write_vectors(self, entries: list[tuple[int, Document, bool]]) -> None:
        """Persist vectors for (seq, document, replaced) entries."""
        raise NotImplementedError

    def _remove_vectors(self, entries: list[tuple[int, str | None]]) -> None:
        """Drop vectors for (seq, vector_file) entries."""
        raise NotImplementedError

    def _score(self, query_embedding: np.ndarray) -> list[tuple[int, float]]:
        """Cosine similarity of the query against every indexed vector.

        Returns:
            (seq, similarity) pairs.
        """
        raise NotImplementedError

    def save(self) -> None:
        raise NotImplementedError

    def load(self) -> None:
        raise NotImplementedError

    # Dimension bookkeeping

    @staticmethod
    def _distinct_dimensions(cursor: sqlite3.Cursor) -> list[int]:
        cursor.execute(
            "SELECT DISTINCT dimension FROM documents WHERE dimension IS NOT NULL"
        )
        return [int(row[0]) for row in cursor.fetchall()]

    def _require_single_dimension(self, cursor: sqlite3.Cursor) -> int | None:
        """Return the collection's dimension.

        Raises:
            ConfigurationError: If stored vectors have mixed dimensions.
        """
        dimensions = self._distinct_dimensions(cursor)
        if len(dimensions) > 1:
            msg = (
                f"Vector store {self.db_path} holds mixed embedding dimensions "
                f"{sorted(dimensions)}; rebuild the index with a single model"
            )
            raise ConfigurationError(msg)
        return dimensions[0] if dimensions else None

    def stored_dimension(self) -> int | None:
        """Dimension of the vectors already stored, None for an empty collection."""  # noqa: DOC201
        with self._lock, self._connect() as conn:
            return self._require_single_dimension(conn.cursor())

    def check_dimension(self, dimension: int) -> None:
        """Ensure vectors of ``dimension`` can live in this collection.

        Raises:
            ConfigurationError: If the collection uses another dimension.
        """
        stored = self.stored_dimension()
        if stored is not None and stored != dimension:
            msg = (
                f"Embedding dimension {dimension} does not match the "
                f"{stored}-dimensional vectors already stored in {self.db_path}"
            )
            raise ConfigurationError(msg)

    # Row helpers

    @staticmethod
    def _now() -> str:
        return datetime.datetime.now(tz=datetime.UTC).isoformat()

    @staticmethod
    def _build_document(row: tuple) -> Document:
        _seq, doc_id, content, metadata, _dimension, _vector_file, created_at = row
        return Document(
            id=doc_id,
            content=content,
            metadata=json.loads(metadata) if metadata else {},
            embedding=None,
            created_at=created_at,
        )

    def _fetch_rows_by_seq(
        self,
        cursor: sqlite3.Cursor,
        seqs: list[int],
    ) -> dict[int, tuple]:
        if not seqs:
            return {}
        placeholders = ", ".join("?" for _ in seqs)
        cursor.execute(
            f"SELECT {DOCUMENT_COLUMNS} FROM documents WHERE seq IN ({placeholders})",  # noqa: S608
            seqs,
        )
        return {int(row[0]): row for row in cursor.fetchall()}

    # Public operations

    def add_documents(self, documents: list[Document]) -> list[Document]:
        """Upsert documents and their vectors in a single transaction.

        Documents are keyed by id, so writing the same batch twice leaves one
        row per id. An id repeated within the batch is stored once, the last
        occurrence winning.

        Returns:
            The stored documents with ``created_at`` filled in.

        Raises:
            ConfigurationError: If vector dimensions are inconsistent.
        """
        if not documents:
            return []

        documents = list({document.id: document for document in documents}.values())
        stored: list[Document] = []
        with self._lock, self._connect() as conn:
            cursor = conn.cursor()
            dimension = self._require_single_dimension(cursor)
            entries: list[tuple[int, Document, bool]] = []

            for document in documents:
                doc_dimension = None
                if document.embedding is not None:
                    doc_dimension = int(document.embedding.shape[0])
                    if dimension is None:
                        dimension = doc_dimension
                    elif doc_dimension != dimension:
                        msg = (
                            f"Embedding dimension {doc_dimension} does not match "
                            f"collection dimension {dimension}"
                        )
                        raise ConfigurationError(msg)

                cursor.execute(
                    "SELECT seq, vector_file FROM documents WHERE id = ?",
                    (document.id,),
                )
                existing = cursor.fetchone()
                created_at = document.created_at or self._now()
                cursor.execute(
                    """
                    INSERT INTO documents (
                        id, source, content, metadata, dimension, vector_file, created_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                        source = excluded.source,
                        content = excluded.content,
                        metadata = excluded.metadata,
                        dimension = excluded.dimension,
                        vector_file = excluded.vector_file
                    """,
                    (
                        document.id,
                        document.metadata.get("source"),
                        document.content,
                        json.dumps(document.metadata, default=str),
                        doc_dimension,
                        self._vector_file_for(document)
                        if document.embedding is not None
                        else None,
                        created_at,
                    ),
                )
                cursor.execute(
                    "SELECT seq, created_at FROM documents WHERE id = ?",
                    (document.id,),
                )
                seq, stored_created_at = cursor.fetchone()
                if document.embedding is not None:
                    entries.append((int(seq), document, existing is not None))
                elif existing is not None:
                    self._remove_vectors([(int(seq), existing[1])])

                stored.append(
                    Document(
                        id=document.id,
                        content=document.content,
                        metadata=document.metadata,
                        embedding=document.embedding,
                        created_at=stored_created_at,
                    )
                )

            self._write_vectors(entries)
            conn.commit()

        logger.info("Stored %d documents in %s vector store", len(stored), self.backend)
        return stored

    def search(
        self,
        query_embedding: np.ndarray,
        threshold: float,
        top_k: int,
    ) -> list[SearchResult]:
        """Rank indexed documents by cosine similarity to the query.

        Returns:
            At most top_k results with ``similarity >= threshold``, best first,
            ties in insertion order.
        """
        if top_k <= 0:
            return []

        with self._lock:
            dimension = self.stored_dimension()
            if dimension is None:
                return []
            if query_embedding.shape[0] != dimension:
                msg = (
                    f"Query embedding has {query_embedding.shape[0]} dimensions, "
                    f"collection uses {dimension}"
                )
                raise ConfigurationError(msg)

            scored = [
                (seq, score)
                for seq, score in self._score(query_embedding)
                if score >= threshold
            ]
            ranked = sorted(scored, key=lambda pair: (-pair[1], pair[0]))[:top_k]

            with self._connect() as conn:
                rows = self._fetch_rows_by_seq(conn.cursor(), [seq for seq, _ in ranked])

        results: list[SearchResult] = []
        for seq, score in ranked:
            row = rows.get(seq)
            if row is None:
                logger.warning("Vector %d has no metadata row; skipping", seq)
                continue
            document = self._build_document(row)
            results.append(
                SearchResult(
                    id=document.id,
                    content=document.content,
                    metadata=document.metadata,
                    similarity=float(score),
                )
            )
        return results

    def get(self, document_id: str) -> Document | None:
        with self._lock, self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute(
                f"SELECT {DOCUMENT_COLUMNS} FROM documents WHERE id = ?",  # noqa: S608
                (document_id,),
            )
            row = cursor.fetchone()
        return self._build_document(row) if row else None

    def list_all(self) -> list[Document]:
        """All documents, newest first, without embeddings."""  # noqa: DOC201
        with self._lock, self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute(
                f"SELECT {DOCUMENT_COLUMNS} FROM documents "  # noqa: S608
                "ORDER BY created_at DESC, seq DESC"
            )
            rows = cursor.fetchall()
        return [self._build_document(row) for row in rows]

    def list_by_source(self, source: str) -> list[Document]:
        """Documents of one source in insertion order."""  # noqa: DOC201
        with self._lock, self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute(
                f"SELECT {DOCUMENT_COLUMNS} FROM documents "  # noqa: S608
                "WHERE source = ? ORDER BY seq",
                (source,),
            )
            rows = cursor.fetchall()
        return [self._build_document(row) for row in rows]

    def count(self) -> int:
        with self._lock, self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT COUNT(*) FROM documents")
            return int(cursor.fetchone()[0])

    def delete(self, document_id: str) -> None:
        """Delete a document; unknown ids are ignored."""
        self.delete_many([document_id])

    def delete_many(self, document_ids: Iterable[str]) -> int:
        """Delete documents in bulk.

        Returns:
            Number of documents actually removed.
        """
        ids = list(dict.fromkeys(document_ids))
        if not ids:
            return 0

        placeholders = ", ".join("?" for _ in ids)
        with self._lock, self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute(
                f"SELECT seq, vector_file FROM documents WHERE id IN ({placeholders})",  # noqa: S608
                ids,
            )
            entries: list[tuple[int, str | None]] = [
                (int(seq), vector_file) for seq, vector_file in cursor.fetchall()
            ]
            cursor.execute(
                f"DELETE FROM documents WHERE id IN ({placeholders})",  # noqa: S608
                ids,
            )
            self._remove_vectors(entries)
            conn.commit()

        if entries:
            logger.info("Deleted %d documents from %s vector store", len(entries), self.backend)
        return len(entries)

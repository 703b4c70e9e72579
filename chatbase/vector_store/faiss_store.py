"""FAISS-backed vector storage with SQLite metadata."""

from __future__ import annotations

import sqlite3
from pathlib import Path
from typing import TYPE_CHECKING

import faiss
import numpy as np

from chatbase.config import config
from chatbase.errors import ConfigurationError
from chatbase.vector_store.base import BaseSQLiteStore

if TYPE_CHECKING:
    from chatbase.models import Document

logger = config.get_logger(__name__)


class FaissVectorStore(BaseSQLiteStore):
    """Vector storage using FAISS for embeddings and SQLite for metadata.

    Vectors are L2-normalized so the inner-product index scores cosine
    similarity. FAISS ids are the metadata row ``seq`` values.
    """

    backend = "faiss"

    def __init__(
        self,
        db_path: Path = Path("data/vector_store.db"),
        index_path: Path = Path("data/faiss/index.faiss"),
    ) -> None:
        """Configure FAISS-backed vector store."""
        self.index_path = Path(index_path)
        self.index_path.parent.mkdir(exist_ok=True, parents=True)

        self.index: faiss.IndexIDMap | None = None

        super().__init__(db_path)

    @staticmethod
    def _normalize_embedding(embedding: np.ndarray) -> np.ndarray:
        """Normalize embedding for cosine similarity using inner product search.

        Returns:
            Normalized embedding vector.
        """
        vector = np.array(embedding, dtype="float32").reshape(1, -1)
        norm = np.linalg.norm(vector)
        if norm == 0:
            return vector[0]
        faiss.normalize_L2(vector)
        return vector[0]

    def _init_index(self, dimension: int) -> None:
        """Initialize FAISS index if missing."""
        base_index = faiss.IndexFlatIP(dimension)
        self.index = faiss.IndexIDMap(base_index)
        logger.info("Initialized FAISS IndexIDMap with dimension %d", dimension)

    def _ensure_index_loaded(self) -> None:
        if self.index is None and self.index_path.exists():
            self._read_index()

    def _write_vectors(self, entries: list[tuple[int, Document, bool]]) -> None:
        """Add vectors to the index, replacing those of upserted documents.

        Raises:
            ConfigurationError: If embedding dimension mismatches the index.
            RuntimeError: If the FAISS index cannot store provided ids.
        """
        if not entries:
            return

        self._ensure_index_loaded()
        vectors = np.vstack([
            self._normalize_embedding(document.embedding) for _, document, _ in entries
        ]).astype("float32")

        if self.index is None:
            self._init_index(vectors.shape[1])
        elif vectors.shape[1] != self.index.d:
            msg = (
                f"Embedding dimension {vectors.shape[1]} does not match "
                f"FAISS index dimension {self.index.d}"
            )
            raise ConfigurationError(msg)

        replaced = [seq for seq, _, was_replaced in entries if was_replaced]
        if replaced:
            self.index.remove_ids(np.asarray(replaced, dtype="int64"))

        ids_array = np.asarray([seq for seq, _, _ in entries], dtype="int64")
        try:
            self.index.add_with_ids(vectors, ids_array)  # pyright: ignore[reportCallIssue]
        except RuntimeError:
            logger.exception(
                "FAISS index does not support add_with_ids; ensure IndexIDMap is used."
            )
            raise
        logger.info("Added %d vectors to FAISS index", len(entries))

    def _remove_vectors(self, entries: list[tuple[int, str | None]]) -> None:
        if not entries:
            return
        self._ensure_index_loaded()
        if self.index is None:
            return
        removed = self.index.remove_ids(
            np.asarray([seq for seq, _ in entries], dtype="int64")
        )
        logger.info("Removed %d vectors from FAISS index", removed)

    def _score(self, query_embedding: np.ndarray) -> list[tuple[int, float]]:
        self._ensure_index_loaded()
        index = self.index
        if index is None:
            logger.warning("FAISS index not initialized; returning no results")
            return []
        if index.ntotal == 0:
            return []

        normalized_query = self._normalize_embedding(query_embedding)
        scores, vector_ids = index.search(
            normalized_query.reshape(1, -1),
            index.ntotal,
        )  # pyright: ignore[reportCallIssue]

        return [
            (int(vector_id), float(score))
            for score, vector_id in zip(scores[0], vector_ids[0], strict=True)
            if int(vector_id) != -1  # faiss returns -1 for empty results
        ]

    def save(self) -> None:
        """Persist FAISS index to disk."""
        with self._lock:
            index = self.index
            if index is None:
                logger.warning("No FAISS index to save")
                return

            self.index_path.parent.mkdir(exist_ok=True, parents=True)
            faiss.write_index(index, str(self.index_path))
        logger.info("Saved FAISS index to %s", self.index_path)

    def _read_index(self) -> None:
        loaded_index = faiss.read_index(str(self.index_path))
        if not isinstance(loaded_index, (faiss.IndexIDMap, faiss.IndexIDMap2)):
            logger.warning(
                "Loaded FAISS index is %s; wrapping with IndexIDMap to enable IDs",
                type(loaded_index).__name__,
            )
            loaded_index = faiss.IndexIDMap(loaded_index)
        self.index = loaded_index
        logger.info(
            "Loaded FAISS index from %s with %d vectors",
            self.index_path,
            loaded_index.ntotal,
        )

    def load(self) -> None:
        """Load the FAISS index from disk and check it against the metadata.

        Raises:
            sqlite3.Error: If metadata read fails.
        """
        with self._lock:
            if self.index_path.exists():
                self._read_index()
            else:
                logger.warning(
                    "FAISS index not found at %s. Start with an empty index.",
                    self.index_path,
                )
                self.index = None

            try:
                with self._connect() as conn:
                    cursor = conn.cursor()
                    cursor.execute(
                        "SELECT COUNT(*) FROM documents WHERE dimension IS NOT NULL"
                    )
                    indexed = int(cursor.fetchone()[0])
            except sqlite3.Error:
                logger.exception("Error loading metadata for FAISS vector store")
                raise

        vectors = self.index.ntotal if self.index is not None else 0
        if vectors != indexed:
            logger.warning(
                "FAISS index holds %d vectors but metadata lists %d indexed documents",
                vectors,
                indexed,
            )

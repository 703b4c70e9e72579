"""SQLite-based vector storage with numpy file backend."""

from __future__ import annotations

import sqlite3
from pathlib import Path
from typing import TYPE_CHECKING

import numpy as np

from chatbase.config import config
from chatbase.vector_store.base import BaseSQLiteStore

if TYPE_CHECKING:
    from chatbase.models import Document

logger = config.get_logger(__name__)


class SQLiteVectorStore(BaseSQLiteStore):
    """Vector storage using SQLite for metadata and numpy files for embeddings."""

    backend = "sqlite"

    def __init__(
        self,
        db_path: Path = Path("data/vector_store.db"),
        vectors_dir: Path = Path("data/vectors"),
    ) -> None:
        """Initialize the SQLiteVectorStore with database and vector directory paths.

        Args:
            db_path: Path to the SQLite database file.
            vectors_dir: Directory to store numpy vector files.
        """
        self.vectors_dir = Path(vectors_dir)
        self.vectors_dir.mkdir(exist_ok=True, parents=True)

        self.embeddings: np.ndarray | None = None
        self._matrix_seqs: list[int] = []
        self._matrix_stale = True

        super().__init__(db_path)

    def _vector_file_for(self, document: Document) -> str:
        return f"{document.id}.npy"

    def _write_vectors(self, entries: list[tuple[int, Document, bool]]) -> None:
        for _seq, document, _replaced in entries:
            np.save(
                self.vectors_dir / self._vector_file_for(document),
                np.asarray(document.embedding, dtype=np.float32),
            )
        if entries:
            self._matrix_stale = True

    def _remove_vectors(self, entries: list[tuple[int, str | None]]) -> None:
        for _seq, vector_file in entries:
            if vector_file:
                (self.vectors_dir / vector_file).unlink(missing_ok=True)
        if entries:
            self._matrix_stale = True

    def _rebuild_embeddings_matrix(self) -> None:
        """Rebuild the embeddings matrix from individual vector files."""
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                SELECT seq, vector_file FROM documents
                WHERE vector_file IS NOT NULL
                ORDER BY seq
                """
            )
            rows = cursor.fetchall()

        embeddings_list = []
        seqs: list[int] = []
        for seq, vector_file in rows:
            vector_path = self.vectors_dir / vector_file
            if vector_path.exists():
                embeddings_list.append(np.load(vector_path))
                seqs.append(int(seq))
            else:
                logger.warning("Vector file not found: %s", vector_path)

        self.embeddings = np.vstack(embeddings_list) if embeddings_list else None
        self._matrix_seqs = seqs
        self._matrix_stale = False

        logger.info("Rebuilt embeddings matrix with %d vectors", len(embeddings_list))

    @staticmethod
    def cosine_similarity(
        query_embedding: np.ndarray,
        embeddings: np.ndarray,
    ) -> np.ndarray:
        """Calculate cosine similarity between query and document embeddings.

        Zero vectors score 0 against everything.

        Returns:
            np.ndarray: Array of cosine similarity scores
                    between the query and each document embedding.
        """
        query = np.asarray(query_embedding, dtype=np.float64)
        matrix = np.asarray(embeddings, dtype=np.float64)
        query_norm = np.linalg.norm(query)
        doc_norms = np.linalg.norm(matrix, axis=1)
        denominators = doc_norms * query_norm
        dots = matrix @ query
        similarities = np.divide(
            dots,
            denominators,
            out=np.zeros_like(dots),
            where=denominators != 0,
        )
        return np.clip(similarities, -1.0, 1.0)

    def _score(self, query_embedding: np.ndarray) -> list[tuple[int, float]]:
        if self._matrix_stale:
            self._rebuild_embeddings_matrix()
        if self.embeddings is None:
            return []

        similarities = self.cosine_similarity(query_embedding, self.embeddings)
        return [
            (seq, float(score))
            for seq, score in zip(self._matrix_seqs, similarities, strict=True)
        ]

    def save(self) -> None:
        """Save operation - data is already persisted in SQLite and files."""
        logger.info("Data already persisted in SQLite database and vector files")

    def load(self) -> None:
        """Load the embeddings matrix from the vector files.

        Raises:
            sqlite3.Error: If an error occurs while reading the metadata store.
        """
        try:
            with self._lock:
                self._rebuild_embeddings_matrix()
        except sqlite3.Error:
            logger.exception("Error loading from SQLite vector store")
            raise
        logger.info("Loaded SQLite vector store with %d documents", self.count())

"""RAG pipeline orchestrating Load -> Split -> Embed -> Store, and retrieval."""

from __future__ import annotations

import asyncio
import sqlite3
import uuid
from pathlib import Path
from typing import TYPE_CHECKING, Any

from .config import config
from .document_processing import (
    DocumentLoader,
    TextChunker,
    clean_pdf_text,
    is_markdown,
)
from .embeddings import EmbeddingService
from .errors import IngestionError, RetrievalError
from .models import Chunk, Document, SearchResult
from .vector_store import get_vector_store

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence

    from .vector_store import BaseSQLiteStore

logger = config.get_logger(__name__)

STORE_ERRORS = (sqlite3.Error, OSError, RuntimeError)
POSITION_KEYS = ("chunk_index", "total_chunks")


def make_document_id(chunk: Chunk) -> str:
    """Deterministic id for a chunk, so re-adding it overwrites the same row.

    Returns:
        A uuid5 string derived from source, position and content.
    """
    source = chunk.metadata.get("source", "")
    name = f"{source}\x1f{chunk.chunk_index}\x1f{chunk.content}"
    return str(uuid.uuid5(uuid.NAMESPACE_URL, name))


class RAGPipeline:
    """Embeds and stores chunks, and answers similarity queries over them."""

    def __init__(  # noqa: PLR0913
        self,
        embedding_service: EmbeddingService | None = None,
        vector_store: BaseSQLiteStore | None = None,
        chunker: TextChunker | None = None,
        *,
        batch_size: int | None = None,
        vector_backend: str | None = None,
        sqlite_db_path: Path | None = None,
        vectors_dir: Path | None = None,
        faiss_index_path: Path | None = None,
    ) -> None:
        """Initialize RAG pipeline with configurable vector storage.

        Args:
            embedding_service: Embedding provider adapter. If None, an
                OpenAI-backed service is created.
            vector_store: Vector store backend. If None, one is built from
                vector_backend and the path arguments.
            chunker: Text chunker. If None, uses config chunk settings.
            batch_size: Chunks embedded and written per transaction.
                If None, uses config.INSERT_BATCH_SIZE.
            vector_backend: Which vector store backend to use ("faiss" | "sqlite").
                Defaults to config.VECTOR_BACKEND.
            sqlite_db_path: Path for SQLite metadata. If None, uses
                config.VECTOR_STORE_DB_PATH.
            vectors_dir: Directory for numpy vector files (SQLite backend).
                If None, uses config.VECTOR_STORE_DIR.
            faiss_index_path: Path to FAISS index file. If None, uses
                config.FAISS_INDEX_PATH.
        """
        self.chunker = chunker or TextChunker()
        self.embedding_service = embedding_service or EmbeddingService()
        self.batch_size = max(1, batch_size or config.INSERT_BATCH_SIZE)

        if vector_store is None:
            vector_store = get_vector_store(
                vector_backend or config.VECTOR_BACKEND,
                db_path=sqlite_db_path,
                vectors_dir=vectors_dir,
                index_path=faiss_index_path,
            )
        self.vector_store = vector_store
        self.vector_backend = getattr(self.vector_store, "backend", "custom")
        logger.info("Using %s vector storage", self.vector_backend)

        self.vector_store.load()

    async def add(self, chunks: Sequence[Chunk]) -> list[Document]:
        """Embed chunks and persist them in batches.

        Each batch is written in one transaction. Batches committed before a
        failure stay stored; retrying the same chunks overwrites them. Chunks
        that map to the same document id are stored once, the last one winning.

        Returns:
            The stored documents, in chunk order.

        Raises:
            IngestionError: If the vector store fails to write a batch.
        """
        if not chunks:
            return []
        chunks = list({make_document_id(chunk): chunk for chunk in chunks}.values())

        dimension = self.embedding_service.get_embedding_dimension()
        if dimension is not None:
            await asyncio.to_thread(self.vector_store.check_dimension, dimension)

        stored: list[Document] = []
        try:
            for start in range(0, len(chunks), self.batch_size):
                batch = list(chunks[start : start + self.batch_size])
                embeddings = await self.embedding_service.embed_batch(
                    [chunk.content for chunk in batch]
                )
                documents = [
                    Document(
                        id=make_document_id(chunk),
                        content=chunk.content,
                        metadata=dict(chunk.metadata),
                        embedding=embedding,
                    )
                    for chunk, embedding in zip(batch, embeddings, strict=True)
                ]
                try:
                    written = await asyncio.to_thread(
                        self.vector_store.add_documents, documents
                    )
                except STORE_ERRORS as exc:
                    logger.exception(
                        "Failed to store batch %d", start // self.batch_size + 1
                    )
                    msg = f"Failed to store {len(documents)} documents: {exc}"
                    raise IngestionError(msg) from exc
                stored.extend(written)
        finally:
            if stored:
                await asyncio.to_thread(self.vector_store.save)

        logger.info("Added %d documents", len(stored))
        return stored

    async def search(
        self,
        query: str,
        threshold: float | None = None,
        top_k: int | None = None,
    ) -> list[SearchResult]:
        """Retrieve the documents most similar to the query.

        Args:
            query: Natural-language query.
            threshold: Minimum cosine similarity. If None, uses
                config.MATCH_THRESHOLD.
            top_k: Maximum number of results. If None, uses config.MATCH_COUNT.

        Returns:
            Results with similarity >= threshold, best first.

        Raises:
            RetrievalError: If the vector store fails.
        """
        threshold = config.MATCH_THRESHOLD if threshold is None else threshold
        top_k = config.MATCH_COUNT if top_k is None else top_k
        logger.info("Processing query: %s", query)

        query_embedding = await self.embedding_service.embed(query)
        try:
            results = await asyncio.to_thread(
                self.vector_store.search, query_embedding, threshold, top_k
            )
        except STORE_ERRORS as exc:
            logger.exception("Vector search failed")
            msg = f"Vector search failed: {exc}"
            raise RetrievalError(msg) from exc

        logger.info("Retrieved %d documents above %.2f", len(results), threshold)
        return results

    async def delete(self, document_id: str) -> None:
        await asyncio.to_thread(self.vector_store.delete, document_id)
        await asyncio.to_thread(self.vector_store.save)

    async def delete_many(self, document_ids: Iterable[str]) -> int:
        """Delete documents in bulk.

        Returns:
            Number of documents removed.
        """
        removed = await asyncio.to_thread(
            self.vector_store.delete_many, list(document_ids)
        )
        if removed:
            await asyncio.to_thread(self.vector_store.save)
        return removed

    async def list_all(self) -> list[Document]:
        return await asyncio.to_thread(self.vector_store.list_all)

    async def count(self) -> int:
        return await asyncio.to_thread(self.vector_store.count)

    async def process_text(
        self,
        content: str,
        metadata: dict[str, Any] | None = None,
    ) -> list[Document]:
        """Chunk raw text and add the chunks.

        Returns:
            The stored documents.
        """
        chunks = self.chunker.process(content, metadata)
        return await self.add(chunks)

    async def process_document(self, file_path: Path) -> list[Document]:
        """Process a document through the complete RAG pipeline.

        Returns:
            The stored documents.
        """
        file_path = Path(file_path)
        logger.info("Starting RAG pipeline for document: %s", file_path)

        text = await asyncio.to_thread(DocumentLoader.load_document, file_path)
        metadata: dict[str, Any] = {"source": file_path.name}
        if is_markdown(metadata):
            metadata["type"] = "markdown"
        elif file_path.suffix.lower() == ".pdf":
            metadata["type"] = "pdf"
        else:
            metadata["type"] = "text"

        documents = await self.process_text(text, metadata)
        logger.info("Document processing completed successfully")
        return documents

    async def reprocess_source(self, source: str) -> list[Document]:
        """Re-chunk and re-embed every stored chunk of one source.

        The chunks are joined back in order, cleaned of PDF artifacts where
        needed, deleted, and the reassembled text is processed again with the
        current chunk settings.

        Returns:
            The newly stored documents; empty if the source is unknown.
        """
        existing = await asyncio.to_thread(self.vector_store.list_by_source, source)
        if not existing:
            logger.warning("No documents found for source %s", source)
            return []

        ordered = sorted(
            enumerate(existing),
            key=lambda pair: (pair[1].metadata.get("chunk_index", pair[0]), pair[0]),
        )
        content = "\n\n".join(document.content for _, document in ordered)
        if source.lower().endswith(".pdf"):
            content = clean_pdf_text(content)

        metadata = {
            key: value
            for key, value in existing[0].metadata.items()
            if key not in POSITION_KEYS
        }
        await self.delete_many(document.id for document in existing)
        logger.info("Reprocessing %s (%d old chunks)", source, len(existing))
        return await self.process_text(content, metadata)

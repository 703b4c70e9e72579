"""Test configuration and fixtures for chatbase tests.

This module provides reusable test fixtures organized by functionality:
- Constants and test data
- Mock services and API responses
- EmbeddingService fixtures
- Text processing fixtures
- Vector and conversation store fixtures
- Pipeline and conversation manager factories
"""

import hashlib
from collections.abc import AsyncIterator
from unittest.mock import AsyncMock, Mock, patch

import numpy as np
import pytest

from chatbase import (
    Chunk,
    ConversationManager,
    Document,
    EmbeddingCache,
    EmbeddingService,
    FaissVectorStore,
    RAGPipeline,
    SQLiteConversationStore,
    SQLiteVectorStore,
    TextChunker,
)
from chatbase.cache import normalize_text
from chatbase.errors import EmptyInputError


class TestConstants:
    """Centralized test constants to avoid repetition across test files.

    All test constants are defined here to maintain consistency across
    the test suite and make it easy to update values globally.
    """

    # API Configuration
    TEST_API_KEY = "test-key"
    TEST_OPENAI_MODEL = "text-embedding-3-small"
    DEFAULT_EMBEDDING_DIMENSION = 384

    # Text Chunking Configuration (overlap counted in paragraphs)
    SMALL_CHUNK_SIZE = 100
    SMALL_CHUNK_OVERLAP = 1
    DEFAULT_CHUNK_SIZE = 500
    DEFAULT_CHUNK_OVERLAP = 2
    LARGE_CHUNK_SIZE = 10000
    LARGE_CHUNK_OVERLAP = 2

    # Conversation
    TEST_SESSION_ID = "session-1"


class MockEmbeddingService:
    """Mock embedding service for testing without API calls.

    Generates deterministic embeddings based on the normalized text hash,
    so identical texts always get identical vectors.
    """

    def __init__(
        self, dimension: int = TestConstants.DEFAULT_EMBEDDING_DIMENSION
    ) -> None:
        """Initialize mock embedding service.

        Args:
            dimension: Dimensionality of generated embeddings.
        """
        self.dimension = dimension
        self.calls: list[str] = []

    def get_embedding_dimension(self) -> int:
        return self.dimension

    def vector_for(self, text: str) -> np.ndarray:
        """Generate deterministic mock embedding based on text hash."""
        seed = int.from_bytes(
            hashlib.sha256(normalize_text(text).encode("utf-8")).digest()[:8],
            byteorder="big",
            signed=False,
        )
        rng = np.random.default_rng(seed)
        embedding = rng.normal(0, 1, self.dimension)
        return (embedding / np.linalg.norm(embedding)).astype(np.float32)

    async def embed(self, text: str) -> np.ndarray:
        if not normalize_text(text):
            msg = "Cannot generate embedding for empty text"
            raise EmptyInputError(msg)
        self.calls.append(text)
        return self.vector_for(text)

    async def embed_batch(
        self, texts: list[str], batch_size: int | None = None
    ) -> list[np.ndarray]:
        return [await self.embed(text) for text in texts]


class FakeChatService:
    """Chat service double returning canned answers and token streams."""

    def __init__(
        self,
        answer: str = "Test response",
        tokens: list[str] | None = None,
        error: Exception | None = None,
        fail_after: int | None = None,
    ) -> None:
        self.answer = answer
        self.tokens = tokens if tokens is not None else ["Test", " ", "response"]
        self.error = error
        self.fail_after = fail_after
        self.calls: list[list[dict]] = []
        self.stream_closed = False
        self.tokens_sent = 0

    async def complete(self, messages, max_tokens=None, temperature=None) -> str:
        self.calls.append(messages)
        if self.error is not None:
            raise self.error
        return self.answer

    async def stream(
        self, messages, max_tokens=None, temperature=None
    ) -> AsyncIterator[str]:
        self.calls.append(messages)
        try:
            if self.error is not None and self.fail_after is None:
                raise self.error
            for index, token in enumerate(self.tokens):
                if self.fail_after is not None and index == self.fail_after:
                    raise self.error
                self.tokens_sent += 1
                yield token
        finally:
            self.stream_closed = True


class FakeAsyncStream:
    """Stand-in for openai.AsyncStream over chat completion chunks."""

    def __init__(self, contents: list[str | None], error: Exception | None = None):
        self._chunks = [create_mock_stream_chunk(content) for content in contents]
        self._error = error
        self.close = AsyncMock()

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for chunk in self._chunks:
            yield chunk
        if self._error is not None:
            raise self._error


def create_mock_openai_response(embeddings: list[list[float]]) -> Mock:
    """Create a mock OpenAI embeddings API response.

    Args:
        embeddings: List of embedding vectors to return.

    Returns:
        Mock object representing OpenAI embeddings API response.
    """
    mock_response = Mock()
    mock_response.data = [Mock(embedding=emb) for emb in embeddings]
    return mock_response


def create_mock_chat_response(content: str | None) -> Mock:
    """Create a mock OpenAI chat completion response.

    Args:
        content: The content for the chat completion response.

    Returns:
        Mock object representing OpenAI chat completion response.
    """
    mock_response = Mock()
    mock_response.choices = [Mock(message=Mock(content=content))]
    return mock_response


def create_mock_stream_chunk(content: str | None) -> Mock:
    chunk = Mock()
    chunk.choices = [Mock(delta=Mock(content=content))]
    return chunk


@pytest.fixture
def openai_embeddings_api_mock():
    """Base fixture that patches the async OpenAI embeddings.create method.

    Returns the mock object directly without any pre-configuration.
    """
    with patch(
        "openai.resources.embeddings.AsyncEmbeddings.create",
        new_callable=AsyncMock,
    ) as mock_create:
        yield mock_create


@pytest.fixture
def openai_embeddings_factory(openai_embeddings_api_mock):
    """Factory for creating OpenAI embeddings API mocks with different scenarios."""

    def _create_mock(  # noqa: ANN202
        scenario="single_success",
        embeddings=None,
        error_message="API Error",
    ):
        """Create a mock based on scenario type.

        Args:
            scenario: Type of mock ('single_success', 'per_text', 'error')
            embeddings: Custom embeddings to return, or None for defaults
            error_message: Custom error message for error scenarios
        """
        openai_embeddings_api_mock.reset_mock()
        openai_embeddings_api_mock.side_effect = None
        openai_embeddings_api_mock.return_value = None

        if scenario == "single_success":
            mock_embedding = embeddings or [0.1, 0.2, 0.3, 0.4, 0.5]
            openai_embeddings_api_mock.return_value = create_mock_openai_response(
                [mock_embedding]
            )
        elif scenario == "per_text":
            # One deterministic 3-d vector per input text
            def _respond(*, model, input):  # noqa: A002, ARG001
                seed = sum(input.encode("utf-8"))
                return create_mock_openai_response(
                    [[float(seed % 7 + 1), float(seed % 5 + 1), float(seed % 3 + 1)]]
                )

            openai_embeddings_api_mock.side_effect = _respond
        elif scenario == "error":
            openai_embeddings_api_mock.side_effect = Exception(error_message)

        return openai_embeddings_api_mock

    return _create_mock


@pytest.fixture
def embedding_service_factory():
    """Factory for creating EmbeddingService instances with different configurations."""

    def _create_service(  # noqa: ANN202
        api_key=None, model=None, cache=None, dimension=None, batch_size=None
    ):
        """Create an EmbeddingService instance.

        Args:
            api_key: API key to use, defaults to TestConstants.TEST_API_KEY
            model: Model to use, defaults to config default
            cache: Cache to use, defaults to a fresh EmbeddingCache
            dimension: Expected vector length
            batch_size: Provider sub-batch size
        """
        return EmbeddingService(
            api_key=api_key or TestConstants.TEST_API_KEY,
            model=model,
            cache=cache if cache is not None else EmbeddingCache(),
            dimension=dimension,
            batch_size=batch_size,
        )

    return _create_service


@pytest.fixture
def embedding_service(embedding_service_factory):
    """Default EmbeddingService with test API key for most tests.

    The dimension is left open so small mocked vectors are accepted.
    """
    return embedding_service_factory(model="test-embedding-model")


@pytest.fixture
def text_chunker_factory():
    """Factory fixture that creates ``TextChunker`` instances on demand."""
    presets: dict[str, tuple[int, int]] = {
        "small": (
            TestConstants.SMALL_CHUNK_SIZE,
            TestConstants.SMALL_CHUNK_OVERLAP,
        ),
        "default": (
            TestConstants.DEFAULT_CHUNK_SIZE,
            TestConstants.DEFAULT_CHUNK_OVERLAP,
        ),
        "large": (
            TestConstants.LARGE_CHUNK_SIZE,
            TestConstants.LARGE_CHUNK_OVERLAP,
        ),
    }

    def _create_chunker(
        name: str = "default",
        *,
        chunk_size: int | None = None,
        overlap: int | None = None,
    ) -> TextChunker:
        if chunk_size is None or overlap is None:
            try:
                preset_chunk_size, preset_overlap = presets[name]
            except KeyError as exc:
                msg = f"Unknown text chunker preset: {name}"
                raise ValueError(msg) from exc
            chunk_size = preset_chunk_size if chunk_size is None else chunk_size
            overlap = preset_overlap if overlap is None else overlap

        return TextChunker(chunk_size=chunk_size, overlap=overlap)

    return _create_chunker


@pytest.fixture
def text_chunker_small(text_chunker_factory):
    """Text chunker configured for small chunks (100/1)."""
    return text_chunker_factory("small")


@pytest.fixture
def text_chunker_default(text_chunker_factory):
    """Text chunker configured with default settings (500/2)."""
    return text_chunker_factory("default")


@pytest.fixture
def mock_embedding_service():
    """Pre-configured MockEmbeddingService for consistent test embeddings."""
    return MockEmbeddingService()


@pytest.fixture
def mock_embeddings(mock_embedding_service):
    """Factory function to create mock embeddings using the service."""

    def _create_mock_embedding(
        text: str, dimension: int = TestConstants.DEFAULT_EMBEDDING_DIMENSION
    ) -> np.ndarray:
        if dimension != TestConstants.DEFAULT_EMBEDDING_DIMENSION:
            return MockEmbeddingService(dimension).vector_for(text)
        return mock_embedding_service.vector_for(text)

    return _create_mock_embedding


@pytest.fixture
def temp_vector_store(tmp_path) -> SQLiteVectorStore:
    """Create temporary SQLite vector store for testing."""
    return SQLiteVectorStore(tmp_path / "test_store.db", tmp_path / "vectors")


@pytest.fixture
def temp_faiss_store(tmp_path) -> FaissVectorStore:
    """Create temporary FAISS vector store for testing."""
    return FaissVectorStore(
        db_path=tmp_path / "faiss_store.db",
        index_path=tmp_path / "faiss" / "index.faiss",
    )


@pytest.fixture(params=["sqlite", "faiss"])
def any_vector_store(request, temp_vector_store, temp_faiss_store):
    """Each vector store backend in turn."""
    if request.param == "sqlite":
        return temp_vector_store
    return temp_faiss_store


@pytest.fixture
def sample_texts() -> list[str]:
    return [
        "Machine learning is a subset of artificial intelligence.",
        "Neural networks are computational models inspired by the brain.",
        "Deep learning uses multiple layers to learn complex patterns.",
        "Supervised learning uses labeled training data.",
        "Unsupervised learning finds patterns in unlabeled data.",
    ]


@pytest.fixture
def sample_chunks(sample_texts) -> list[Chunk]:
    """Chunks as produced by the chunker, without embeddings."""
    return [
        Chunk(
            content=text,
            metadata={
                "source": f"test_doc_{i // 3}.txt",
                "chunk_index": i % 3,
                "total_chunks": 3,
            },
            chunk_index=i % 3,
            total_chunks=3,
        )
        for i, text in enumerate(sample_texts)
    ]


@pytest.fixture
def sample_documents(sample_texts, mock_embeddings) -> list[Document]:
    """Documents with mock embeddings, ready for a vector store."""
    return [
        Document(
            id=f"doc-{i}",
            content=text,
            metadata={"source": f"test_doc_{i // 3}.txt", "chunk_index": i % 3},
            embedding=mock_embeddings(text),
        )
        for i, text in enumerate(sample_texts)
    ]


@pytest.fixture
def conversation_store(tmp_path) -> SQLiteConversationStore:
    return SQLiteConversationStore(tmp_path / "conversations.db")


@pytest.fixture
def rag_pipeline_factory(tmp_path, mock_embedding_service, text_chunker_factory):
    """Factory for creating RAGPipeline instances over temporary stores."""

    def _create_pipeline(
        backend: str = "sqlite",
        *,
        embedding_service=None,
        batch_size: int | None = None,
        chunk_size: int = 200,
        overlap: int = 1,
    ) -> RAGPipeline:
        return RAGPipeline(
            embedding_service=embedding_service or mock_embedding_service,
            chunker=text_chunker_factory(chunk_size=chunk_size, overlap=overlap),
            batch_size=batch_size,
            vector_backend=backend,
            sqlite_db_path=tmp_path / f"{backend}_store.db",
            vectors_dir=tmp_path / "vectors",
            faiss_index_path=tmp_path / "faiss" / "index.faiss",
        )

    return _create_pipeline


@pytest.fixture
def rag_pipeline(rag_pipeline_factory) -> RAGPipeline:
    return rag_pipeline_factory()


@pytest.fixture
def conversation_manager_factory(rag_pipeline, conversation_store):
    """Factory fixture for creating ConversationManager instances."""

    def _create_conversation_manager(
        chat_service=None,
        *,
        pipeline=None,
        store=None,
        **kwargs,
    ) -> ConversationManager:
        return ConversationManager(
            rag_pipeline=pipeline or rag_pipeline,
            conversation_store=store or conversation_store,
            chat_service=chat_service or FakeChatService(),
            **kwargs,
        )

    return _create_conversation_manager

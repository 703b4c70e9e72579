"""chatbase - retrieval-augmented question answering over a document corpus."""

from .cache import EmbeddingCache
from .conversation import ConversationManager
from .conversation_store import SQLiteConversationStore
from .document_processing import DocumentLoader, TextChunker
from .embeddings import EmbeddingService
from .errors import (
    ChatbaseError,
    ConfigurationError,
    EmbeddingError,
    EmptyInputError,
    GenerationError,
    IngestionError,
    PersistenceWarning,
    RetrievalError,
    ValidationError,
)
from .llm import ChatService
from .models import (
    AskOptions,
    ChatResponse,
    Chunk,
    Conversation,
    Document,
    Message,
    SearchResult,
    StreamEvent,
)
from .pipeline import RAGPipeline
from .vector_store import FaissVectorStore, SQLiteVectorStore, get_vector_store

__all__ = [
    "AskOptions",
    "ChatResponse",
    "ChatService",
    "ChatbaseError",
    "Chunk",
    "ConfigurationError",
    "Conversation",
    "ConversationManager",
    "Document",
    "DocumentLoader",
    "EmbeddingCache",
    "EmbeddingError",
    "EmbeddingService",
    "EmptyInputError",
    "FaissVectorStore",
    "GenerationError",
    "IngestionError",
    "Message",
    "PersistenceWarning",
    "RAGPipeline",
    "RetrievalError",
    "SQLiteConversationStore",
    "SQLiteVectorStore",
    "SearchResult",
    "StreamEvent",
    "TextChunker",
    "ValidationError",
    "get_vector_store",
]

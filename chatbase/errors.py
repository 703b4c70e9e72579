"""Error taxonomy for the retrieval and generation pipeline.

Every error carries a ``retryable`` flag so callers can tell "no answer is
possible for this input" apart from "a collaborator failed, try again".
"""

from __future__ import annotations


class ChatbaseError(Exception):
    """Base class for all pipeline errors."""

    retryable: bool = False

    def to_dict(self) -> dict[str, object]:
        """Serialize the error for stream events and API payloads.

        Returns:
            Mapping with the error kind, message and retryable flag.
        """
        return {
            "error": type(self).__name__,
            "message": str(self),
            "retryable": self.retryable,
        }


class ValidationError(ChatbaseError):
    """Request rejected before any external call was made."""


class ConfigurationError(ChatbaseError):
    """Incompatible setup, such as mixed embedding dimensions in one collection."""


class EmbeddingError(ChatbaseError):
    """The embedding provider failed to produce a vector."""

    retryable = True


class EmptyInputError(EmbeddingError):
    """Blank or whitespace-only text has no embedding."""

    retryable = False


class RetrievalError(ChatbaseError):
    """The vector store failed while answering a similarity query."""

    retryable = True


class IngestionError(ChatbaseError):
    """A batch of documents could not be written to the vector store."""

    retryable = True


class GenerationError(ChatbaseError):
    """The generation provider failed before or during a completion."""

    retryable = True


class PersistenceWarning(ChatbaseError):
    """History or audit write failed; logged and reported, never raised to callers."""

    retryable = True

"""Conversation orchestration: retrieval, prompt assembly, generation, history."""

from __future__ import annotations

import asyncio
import enum
import sqlite3
import uuid
from collections.abc import AsyncIterator, Callable
from typing import TYPE_CHECKING, Any

from .config import config
from .conversation_store import SQLiteConversationStore
from .errors import ChatbaseError, PersistenceWarning, RetrievalError, ValidationError
from .llm import ChatService
from .models import AskOptions, ChatResponse, Message, SearchResult, StreamEvent

if TYPE_CHECKING:
    from .pipeline import RAGPipeline

logger = config.get_logger(__name__)

STORE_ERRORS = (sqlite3.Error, OSError)

SYSTEM_PROMPT = (
    "You are a helpful knowledge base assistant. Answer questions using only the "
    "context retrieved from the knowledge base.\n\n"
    "GUIDELINES:\n"
    "1. Base every statement on the provided documents\n"
    "2. Cite the document that supports each claim by its number "
    '(e.g., "According to Document 1...")\n'
    "3. If the documents only partly answer the question, share what you found "
    "and point out what is missing\n"
    "4. If the context contains nothing relevant, say: "
    "\"I couldn't find information about this in the knowledge base.\"\n"
    "5. When information spans several documents, combine it into one coherent "
    "answer\n"
    "6. Stay conversational and consider earlier turns of the conversation"
)
NO_CONTEXT_MARKER = "No relevant context found in the knowledge base."
FALLBACK_ANSWER = "Sorry, I could not generate a response."
CONTEXT_SEPARATOR = "\n\n---\n\n"


class PipelineState(enum.Enum):
    INIT = "init"
    RETRIEVING = "retrieving"
    GENERATING = "generating"
    PERSISTING = "persisting"
    DONE = "done"
    ERROR = "error"


class RequestTrace:
    """Tracks one request through the pipeline states."""

    def __init__(self) -> None:
        self.request_id = uuid.uuid4().hex[:12]
        self.state = PipelineState.INIT
        logger.debug("Request %s: %s", self.request_id, self.state.value)

    def advance(self, state: PipelineState) -> None:
        logger.debug(
            "Request %s: %s -> %s", self.request_id, self.state.value, state.value
        )
        self.state = state


def format_context(results: list[SearchResult]) -> str:
    """Render retrieved documents as numbered, source-labelled blocks.

    Returns:
        The context block, or NO_CONTEXT_MARKER when nothing was retrieved.
    """
    if not results:
        return NO_CONTEXT_MARKER

    blocks = []
    for index, result in enumerate(results, start=1):
        source = result.metadata.get("source") or "Unknown"
        blocks.append(
            f"[Document {index}] (Source: {source}, "
            f"Relevance: {result.similarity * 100:.1f}%)\n{result.content}"
        )
    return CONTEXT_SEPARATOR.join(blocks)


def build_user_turn(query: str, context: str) -> str:
    return (
        "Context from knowledge base:\n"
        "---\n"
        f"{context}\n"
        "---\n\n"
        "Based on the above context, please answer the following question:\n"
        f"{query}"
    )


def build_messages(
    query: str,
    context: str,
    history: list[Message] | None = None,
) -> list[dict[str, Any]]:
    """Assemble the chat messages sent to the model.

    Returns:
        System prompt, prior turns oldest first, then the context and query.
    """
    messages: list[dict[str, Any]] = [{"role": "system", "content": SYSTEM_PROMPT}]
    messages.extend(
        {"role": message.role, "content": message.content}
        for message in history or []
        if message.role != "system"
    )
    messages.append({"role": "user", "content": build_user_turn(query, context)})
    return messages


class ConversationManager:
    """Answers questions over the knowledge base within a conversation."""

    def __init__(  # noqa: PLR0913
        self,
        rag_pipeline: RAGPipeline,
        conversation_store: SQLiteConversationStore | None = None,
        chat_service: ChatService | None = None,
        *,
        history_limit: int | None = None,
        persist_partial_answers: bool | None = None,
        on_persistence_error: Callable[[PersistenceWarning], None] | None = None,
    ) -> None:
        """Initialize ConversationManager.

        Args:
            rag_pipeline: RAG pipeline used for retrieval.
            conversation_store: History storage. If None, a SQLite store at
                config.CONVERSATION_DB_PATH is opened.
            chat_service: Generation provider. If None, an OpenAI-backed
                service is created.
            history_limit: Prior messages included in the prompt.
                If None, uses config.HISTORY_LIMIT.
            persist_partial_answers: Store the partial answer of a stream the
                caller closed early. If None, uses config.PERSIST_PARTIAL_ANSWERS.
            on_persistence_error: Called with every PersistenceWarning.
        """
        self.rag_pipeline = rag_pipeline
        self.conversation_store = (
            conversation_store
            if conversation_store is not None
            else SQLiteConversationStore()
        )
        self.chat_service = chat_service or ChatService()
        self.history_limit = (
            config.HISTORY_LIMIT if history_limit is None else history_limit
        )
        self.persist_partial_answers = (
            config.PERSIST_PARTIAL_ANSWERS
            if persist_partial_answers is None
            else persist_partial_answers
        )
        self.on_persistence_error = on_persistence_error
        self._pending: set[asyncio.Task[None]] = set()

    # Validation

    @staticmethod
    def _resolve_options(options: AskOptions | None) -> AskOptions:
        options = options or AskOptions()
        threshold = (
            config.MATCH_THRESHOLD
            if options.match_threshold is None
            else options.match_threshold
        )
        count = config.MATCH_COUNT if options.match_count is None else options.match_count
        if not -1.0 <= threshold <= 1.0:
            msg = f"match_threshold must be between -1 and 1, got {threshold}"
            raise ValidationError(msg)
        if count < 1:
            msg = f"match_count must be at least 1, got {count}"
            raise ValidationError(msg)
        return AskOptions(
            match_threshold=threshold,
            match_count=count,
            include_history=options.include_history,
        )

    def _validate(
        self,
        query: str,
        session_id: str,
        options: AskOptions | None,
    ) -> AskOptions:
        if not query or not query.strip():
            msg = "Query must not be empty"
            raise ValidationError(msg)
        if len(query) > config.MAX_QUERY_LENGTH:
            msg = f"Query exceeds {config.MAX_QUERY_LENGTH} characters"
            raise ValidationError(msg)
        if not session_id or not session_id.strip():
            msg = "session_id is required"
            raise ValidationError(msg)
        return self._resolve_options(options)

    # Persistence side channel

    def _report_persistence_failure(
        self,
        action: str,
        exc: Exception,
        trace: RequestTrace,
    ) -> PersistenceWarning:
        warning = PersistenceWarning(f"Failed to {action}: {exc}")
        warning.__cause__ = exc
        logger.warning(
            "Request %s: failed to %s", trace.request_id, action, exc_info=exc
        )
        if self.on_persistence_error is not None:
            self.on_persistence_error(warning)
        return warning

    async def _resolve_conversation(
        self,
        session_id: str,
        conversation_id: str | None,
        trace: RequestTrace,
    ) -> str | None:
        """Find the conversation to answer in.

        Store failures leave the request without a conversation, so it is
        answered without history and not persisted.

        Raises:
            ValidationError: If conversation_id is unknown or owned by another session.
        """  # noqa: DOC201
        store = self.conversation_store
        try:
            if conversation_id is None:
                conversation = await asyncio.to_thread(
                    store.get_or_create_conversation, session_id
                )
            else:
                conversation = await asyncio.to_thread(
                    store.get_conversation, conversation_id
                )
        except STORE_ERRORS as exc:
            self._report_persistence_failure("resolve conversation", exc, trace)
            return None

        if conversation is None:
            msg = f"Conversation not found: {conversation_id}"
            raise ValidationError(msg)
        if conversation.session_id != session_id:
            msg = f"Conversation {conversation.id} does not belong to this session"
            raise ValidationError(msg)
        return conversation.id

    async def _load_history(
        self,
        conversation_id: str,
        trace: RequestTrace,
    ) -> list[Message]:
        try:
            return await asyncio.to_thread(
                self.conversation_store.load_history,
                conversation_id,
                self.history_limit,
            )
        except STORE_ERRORS as exc:
            self._report_persistence_failure("load history", exc, trace)
            return []

    def _schedule_persistence(  # noqa: PLR0913, PLR0917
        self,
        conversation_id: str | None,
        query: str,
        answer: str,
        results: list[SearchResult],
        message_id: str,
        trace: RequestTrace,
    ) -> None:
        if conversation_id is None:
            return
        trace.advance(PipelineState.PERSISTING)
        task = asyncio.get_running_loop().create_task(
            self._persist_turn(conversation_id, query, answer, results, message_id, trace)
        )
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _persist_turn(  # noqa: PLR0913, PLR0917
        self,
        conversation_id: str,
        query: str,
        answer: str,
        results: list[SearchResult],
        message_id: str,
        trace: RequestTrace,
    ) -> None:
        store = self.conversation_store
        try:
            await asyncio.to_thread(store.append_message, conversation_id, "user", query)
            await asyncio.to_thread(
                store.append_message,
                conversation_id,
                "assistant",
                answer,
                [result.to_source() for result in results],
                message_id=message_id,
            )
            await asyncio.to_thread(store.update_conversation_timestamp, conversation_id)
        except Exception as exc:  # noqa: BLE001
            self._report_persistence_failure("save conversation turn", exc, trace)
        else:
            logger.debug("Request %s: turn saved", trace.request_id)

    async def wait_for_persistence(self) -> None:
        """Wait until every scheduled history write has finished."""
        while self._pending:
            await asyncio.gather(*list(self._pending))

    # Retrieval

    async def _gather_context(
        self,
        query: str,
        conversation_id: str | None,
        options: AskOptions,
        trace: RequestTrace,
    ) -> tuple[list[SearchResult], list[Message]]:
        """Run retrieval and history load concurrently and join on both."""  # noqa: DOC201
        trace.advance(PipelineState.RETRIEVING)
        retrieval = asyncio.ensure_future(
            self.rag_pipeline.search(
                query,
                threshold=options.match_threshold,
                top_k=options.match_count,
            )
        )
        tasks: list[asyncio.Future[Any]] = [retrieval]
        history_task = None
        if options.include_history and conversation_id is not None:
            history_task = asyncio.ensure_future(
                self._load_history(conversation_id, trace)
            )
            tasks.append(history_task)

        try:
            await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            raise

        results = retrieval.result()
        history = history_task.result() if history_task is not None else []
        logger.info(
            "Request %s: retrieved %d documents, %d history messages",
            trace.request_id,
            len(results),
            len(history),
        )
        return results, history

    # Public API

    async def ask(
        self,
        query: str,
        session_id: str,
        conversation_id: str | None = None,
        options: AskOptions | None = None,
    ) -> ChatResponse:
        """Answer a question in one blocking call.

        The turn is saved in the background; see wait_for_persistence.

        Returns:
            ChatResponse: The answer with the documents it was grounded on.
        """
        trace = RequestTrace()
        logger.info("Request %s: processing question: %s", trace.request_id, query)
        try:
            resolved = self._validate(query, session_id, options)
            conversation_id = await self._resolve_conversation(
                session_id, conversation_id, trace
            )
            results, history = await self._gather_context(
                query, conversation_id, resolved, trace
            )
            trace.advance(PipelineState.GENERATING)
            messages = build_messages(query, format_context(results), history)
            answer = await self.chat_service.complete(messages) or FALLBACK_ANSWER
        except Exception:
            trace.advance(PipelineState.ERROR)
            raise

        message_id = str(uuid.uuid4())
        self._schedule_persistence(
            conversation_id, query, answer, results, message_id, trace
        )
        trace.advance(PipelineState.DONE)
        return ChatResponse(
            answer=answer,
            sources=results,
            session_id=session_id,
            conversation_id=conversation_id,
            message_id=message_id if conversation_id is not None else None,
        )

    async def stream(
        self,
        query: str,
        session_id: str,
        conversation_id: str | None = None,
        options: AskOptions | None = None,
    ) -> AsyncIterator[StreamEvent]:
        """Answer a question as a stream of events.

        Emits one ``sources`` event, a ``token`` event per model fragment and a
        final ``done`` event. A failure ends the stream with a single ``error``
        event; tokens already sent are not retracted. Closing the generator
        early stops generation and skips saving the turn unless partial
        answers are persisted.

        Yields:
            StreamEvent: Events in delivery order.
        """
        trace = RequestTrace()
        logger.info("Request %s: streaming question: %s", trace.request_id, query)
        parts: list[str] = []
        results: list[SearchResult] = []
        message_id = str(uuid.uuid4())

        try:
            try:
                resolved = self._validate(query, session_id, options)
                conversation_id = await self._resolve_conversation(
                    session_id, conversation_id, trace
                )
                results, history = await self._gather_context(
                    query, conversation_id, resolved, trace
                )
            except ChatbaseError as exc:
                trace.advance(PipelineState.ERROR)
                yield StreamEvent(type="error", data=exc.to_dict())
                return

            yield StreamEvent(type="sources", data=results)

            trace.advance(PipelineState.GENERATING)
            messages = build_messages(query, format_context(results), history)
            tokens = self.chat_service.stream(messages)
            try:
                async for token in tokens:
                    parts.append(token)
                    yield StreamEvent(type="token", data=token)
            except ChatbaseError as exc:
                trace.advance(PipelineState.ERROR)
                yield StreamEvent(type="error", data=exc.to_dict())
                return
            finally:
                await tokens.aclose()

            answer = "".join(parts) or FALLBACK_ANSWER
            self._schedule_persistence(
                conversation_id, query, answer, results, message_id, trace
            )
            trace.advance(PipelineState.DONE)
            yield StreamEvent(
                type="done",
                data={
                    "answer": answer,
                    "session_id": session_id,
                    "conversation_id": conversation_id,
                    "message_id": message_id if conversation_id is not None else None,
                },
            )
        except GeneratorExit:
            if trace.state is PipelineState.GENERATING:
                logger.info(
                    "Request %s: stream closed by caller after %d tokens",
                    trace.request_id,
                    len(parts),
                )
                if self.persist_partial_answers and parts:
                    self._schedule_persistence(
                        conversation_id, query, "".join(parts), results, message_id, trace
                    )
                trace.advance(PipelineState.DONE)
            raise
        except Exception:
            trace.advance(PipelineState.ERROR)
            logger.exception(
                "Request %s: stream failed after %d tokens", trace.request_id, len(parts)
            )
            raise

    async def regenerate(
        self,
        message_id: str,
        conversation_id: str,
        session_id: str,
        options: AskOptions | None = None,
    ) -> ChatResponse:
        """Produce a new answer for an earlier assistant message.

        The question is the user message preceding the target; it is answered
        again without history and the target is overwritten in place with an
        audit record appended. A failed write is reported as a
        PersistenceWarning and the new answer is still returned.

        Returns:
            ChatResponse: The regenerated answer.

        Raises:
            ValidationError: If the identifiers are missing or do not point at
                an assistant message with a preceding question.
            RetrievalError: If the conversation cannot be read.
        """
        trace = RequestTrace()
        if not message_id or not conversation_id or not session_id:
            msg = "message_id, conversation_id and session_id are required"
            raise ValidationError(msg)
        resolved = self._resolve_options(options)
        store = self.conversation_store

        try:
            conversation = await asyncio.to_thread(store.get_conversation, conversation_id)
            messages = await asyncio.to_thread(store.list_messages, conversation_id)
        except STORE_ERRORS as exc:
            trace.advance(PipelineState.ERROR)
            logger.exception("Request %s: failed to read conversation", trace.request_id)
            msg = f"Failed to read conversation {conversation_id}: {exc}"
            raise RetrievalError(msg) from exc

        if conversation is None or conversation.session_id != session_id:
            msg = f"Conversation not found: {conversation_id}"
            raise ValidationError(msg)

        position = next(
            (index for index, message in enumerate(messages) if message.id == message_id),
            None,
        )
        if position is None or messages[position].role != "assistant":
            msg = f"Assistant message not found: {message_id}"
            raise ValidationError(msg)
        question = next(
            (message for message in reversed(messages[:position]) if message.role == "user"),
            None,
        )
        if question is None:
            msg = f"No user message precedes {message_id}"
            raise ValidationError(msg)

        try:
            resolved.include_history = False
            results, _ = await self._gather_context(
                question.content, conversation_id, resolved, trace
            )
            trace.advance(PipelineState.GENERATING)
            prompt = build_messages(question.content, format_context(results))
            answer = await self.chat_service.complete(prompt) or FALLBACK_ANSWER
        except Exception:
            trace.advance(PipelineState.ERROR)
            raise

        trace.advance(PipelineState.PERSISTING)
        try:
            await asyncio.to_thread(
                store.regenerate_message,
                message_id,
                answer,
                [result.to_source() for result in results],
            )
        except Exception as exc:  # noqa: BLE001
            self._report_persistence_failure("save regenerated answer", exc, trace)

        trace.advance(PipelineState.DONE)
        return ChatResponse(
            answer=answer,
            sources=results,
            session_id=session_id,
            conversation_id=conversation_id,
            message_id=message_id,
        )

"""Integration tests for chatbase end-to-end workflows.

The OpenAI API is patched at the SDK level, so the real EmbeddingService and
ChatService adapters run against canned responses.
"""

from pathlib import Path
from unittest.mock import AsyncMock, patch

import pytest

from chatbase import (
    AskOptions,
    ChatService,
    ConversationManager,
    EmbeddingService,
    SearchResult,
)
from chatbase.errors import GenerationError

from conftest import FakeAsyncStream, TestConstants, create_mock_chat_response

EVERYTHING = AskOptions(match_threshold=-1.0, match_count=5)


def assert_valid_search_results(results: list, min_results: int = 1) -> None:
    """Helper function to validate retrieval results."""
    assert isinstance(results, list), "Search should return a list of results"
    assert len(results) >= min_results, (
        f"Search should return at least {min_results} result(s)"
    )

    for result in results:
        assert isinstance(result, SearchResult)
        assert -1.0 <= result.similarity <= 1.0, (
            f"Cosine similarity should be between -1.0 and 1.0, got {result.similarity}"
        )
        assert len(result.content.strip()) > 0, "Result content should not be empty"
        assert "source" in result.metadata, "Result metadata should contain source"

    similarities = [result.similarity for result in results]
    assert similarities == sorted(similarities, reverse=True)


def create_test_documents(tmp_path: Path, documents: dict[str, str]) -> dict[str, Path]:
    """Helper function to create multiple test documents."""
    doc_paths = {}
    for filename, content in documents.items():
        doc_path = tmp_path / filename
        doc_path.write_text(content, encoding="utf-8")
        doc_paths[filename] = doc_path
    return doc_paths


TEST_DOCUMENTS = {
    "ml.txt": "Machine learning is a powerful AI technique.",
    "dl.md": "# Deep learning\n\nDeep learning uses neural networks with many layers.",
    "nlp.txt": "Natural language processing helps machines understand text.",
}


@pytest.fixture
def openai_chat_api_mock():
    """Patch the async OpenAI chat completions create method."""
    with patch(
        "openai.resources.chat.completions.AsyncCompletions.create",
        new_callable=AsyncMock,
    ) as mock_create:
        yield mock_create


@pytest.fixture
def live_adapters(openai_embeddings_factory, openai_chat_api_mock):
    """Real OpenAI adapters over the patched SDK."""
    openai_embeddings_factory("per_text")
    embedding_service = EmbeddingService(
        api_key=TestConstants.TEST_API_KEY, model="test-embedding-model"
    )
    chat_service = ChatService(api_key=TestConstants.TEST_API_KEY, model="gpt-test")
    return embedding_service, chat_service


@pytest.fixture
def workflow(rag_pipeline_factory, conversation_store, live_adapters, tmp_path):
    def _create(backend: str = "sqlite"):
        embedding_service, chat_service = live_adapters
        pipeline = rag_pipeline_factory(backend, embedding_service=embedding_service)
        manager = ConversationManager(
            pipeline,
            conversation_store=conversation_store,
            chat_service=chat_service,
        )
        return pipeline, manager, create_test_documents(tmp_path, TEST_DOCUMENTS)

    return _create


@pytest.mark.asyncio
@pytest.mark.parametrize("backend", ["sqlite", "faiss"])
async def test_complete_rag_workflow(
    workflow, openai_chat_api_mock, conversation_store, backend
):
    """Test complete workflow: documents -> storage -> query -> answer -> history."""
    pipeline, manager, doc_paths = workflow(backend)
    openai_chat_api_mock.return_value = create_mock_chat_response(
        "Machine learning is a powerful AI technique."
    )

    for doc_path in doc_paths.values():
        documents = await pipeline.process_document(doc_path)
        assert len(documents) == 1

    results = await pipeline.search("What is machine learning?", -1.0, 5)
    assert_valid_search_results(results, min_results=3)

    response = await manager.ask("What is machine learning?", "s-1", options=EVERYTHING)
    await manager.wait_for_persistence()

    assert response.answer == "Machine learning is a powerful AI technique."
    assert len(response.sources) == 3
    messages = openai_chat_api_mock.await_args.kwargs["messages"]
    assert messages[0]["role"] == "system"
    assert "Machine learning is a powerful AI technique." in messages[-1]["content"]
    assert "[Document 1]" in messages[-1]["content"]

    stored = conversation_store.list_messages(response.conversation_id)
    assert [message.role for message in stored] == ["user", "assistant"]
    assert {source["metadata"]["source"] for source in stored[1].sources} == set(
        TEST_DOCUMENTS
    )


@pytest.mark.asyncio
async def test_streaming_workflow(workflow, openai_chat_api_mock):
    pipeline, manager, doc_paths = workflow()
    await pipeline.process_document(doc_paths["dl.md"])
    stream = FakeAsyncStream(["Deep", None, " learning", " uses layers."])
    openai_chat_api_mock.return_value = stream

    events = [
        event
        async for event in manager.stream("What is deep learning?", "s-1", options=EVERYTHING)
    ]
    await manager.wait_for_persistence()

    assert [event.type for event in events] == [
        "sources",
        "token",
        "token",
        "token",
        "done",
    ]
    assert events[0].data[0].metadata["type"] == "markdown"
    assert events[-1].data["answer"] == "Deep learning uses layers."
    assert openai_chat_api_mock.await_args.kwargs["stream"] is True
    stream.close.assert_awaited_once()


@pytest.mark.asyncio
async def test_rag_pipeline_with_empty_document(workflow, tmp_path):
    """Test RAG pipeline behavior with empty document input."""
    pipeline, _, _ = workflow()
    docs = create_test_documents(tmp_path, {"empty_doc.txt": ""})

    assert await pipeline.process_document(docs["empty_doc.txt"]) == []
    assert await pipeline.search("What is this about?", -1.0, 5) == []


@pytest.mark.asyncio
async def test_conversation_manager_with_api_error(workflow, openai_chat_api_mock):
    """Test provider errors surface as retryable GenerationError."""
    pipeline, manager, doc_paths = workflow()
    await pipeline.process_document(doc_paths["ml.txt"])
    openai_chat_api_mock.side_effect = Exception("OpenAI API Error")

    with pytest.raises(GenerationError, match="OpenAI API Error") as exc_info:
        await manager.ask("What is machine learning?", "s-1")

    assert exc_info.value.retryable


@pytest.mark.asyncio
async def test_conversation_history_persistence(workflow, openai_chat_api_mock):
    """Test conversation history is maintained across multiple questions."""
    _, manager, _ = workflow()

    openai_chat_api_mock.return_value = create_mock_chat_response("First response")
    first = await manager.ask("What is machine learning?", "s-1")
    await manager.wait_for_persistence()

    openai_chat_api_mock.return_value = create_mock_chat_response("Follow-up response")
    second = await manager.ask(
        "Can you elaborate?", "s-1", conversation_id=first.conversation_id
    )

    assert second.answer == "Follow-up response"
    messages = openai_chat_api_mock.await_args.kwargs["messages"]
    assert [message["role"] for message in messages] == [
        "system",
        "user",
        "assistant",
        "user",
    ]
    assert messages[1]["content"] == "What is machine learning?"
    assert messages[2]["content"] == "First response"


@pytest.mark.asyncio
async def test_embeddings_are_cached_across_ingest_and_query(
    workflow, openai_embeddings_api_mock
):
    pipeline, _, doc_paths = workflow()
    await pipeline.process_document(doc_paths["ml.txt"])
    calls_after_ingest = openai_embeddings_api_mock.await_count

    await pipeline.search("Machine learning is a powerful AI technique.", 0.0, 5)

    assert openai_embeddings_api_mock.await_count == calls_after_ingest


@pytest.mark.asyncio
async def test_ask_leaves_embedding_cache_sweep_running(workflow, openai_chat_api_mock):
    pipeline, manager, _ = workflow()
    openai_chat_api_mock.return_value = create_mock_chat_response("Answer")

    await manager.ask("hello", "s-1")
    await manager.wait_for_persistence()

    cache = pipeline.embedding_service.cache
    assert cache.sweeping
    await cache.stop()

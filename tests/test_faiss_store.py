"""Unit tests for FaissVectorStore."""

import logging

import faiss
import numpy as np

from chatbase import Document, FaissVectorStore


def test_faiss_add_and_search(temp_faiss_store, sample_documents):
    store = temp_faiss_store
    store.add_documents(sample_documents)

    assert store.index is not None
    assert store.index.ntotal == len(sample_documents)

    results = store.search(sample_documents[0].embedding, threshold=-1.0, top_k=2)

    assert len(results) == 2
    assert results[0].id == "doc-0"
    assert isinstance(results[0].similarity, float)
    assert "source" in results[0].metadata


def test_faiss_persistence_roundtrip(temp_faiss_store, sample_documents):
    store = temp_faiss_store
    store.add_documents(sample_documents)
    store.save()

    assert store.index_path.exists()

    reloaded_store = FaissVectorStore(
        db_path=store.db_path,
        index_path=store.index_path,
    )
    reloaded_store.load()

    assert reloaded_store.index is not None
    assert reloaded_store.index.ntotal == len(sample_documents)

    results = reloaded_store.search(sample_documents[0].embedding, -1.0, top_k=2)
    assert len(results) == 2
    assert results[0].id == "doc-0"


def test_faiss_index_is_loaded_lazily(temp_faiss_store, sample_documents):
    temp_faiss_store.add_documents(sample_documents)
    temp_faiss_store.save()

    reloaded_store = FaissVectorStore(
        db_path=temp_faiss_store.db_path,
        index_path=temp_faiss_store.index_path,
    )
    assert reloaded_store.index is None

    results = reloaded_store.search(sample_documents[4].embedding, 0.5, top_k=5)

    assert [result.id for result in results] == ["doc-4"]


def test_faiss_upsert_keeps_one_vector_per_document(temp_faiss_store, mock_embeddings):
    store = temp_faiss_store
    first = Document(
        id="doc",
        content="first",
        metadata={"source": "a.txt"},
        embedding=mock_embeddings("first"),
    )
    second = Document(
        id="doc",
        content="second",
        metadata={"source": "a.txt"},
        embedding=mock_embeddings("second"),
    )

    store.add_documents([first])
    store.add_documents([second])

    assert store.index.ntotal == 1
    results = store.search(mock_embeddings("second"), 0.9, top_k=5)
    assert [result.content for result in results] == ["second"]
    assert store.search(mock_embeddings("first"), 0.9, top_k=5) == []


def test_faiss_repeated_id_in_one_batch_adds_one_vector(temp_faiss_store, mock_embeddings):
    store = temp_faiss_store
    document = Document(
        id="dup",
        content="same",
        metadata={"source": "a.txt"},
        embedding=mock_embeddings("same"),
    )

    store.add_documents([document, document])

    assert store.index.ntotal == 1
    results = store.search(mock_embeddings("same"), -1.0, top_k=5)
    assert [result.id for result in results] == ["dup"]


def test_faiss_delete_removes_vectors(temp_faiss_store, sample_documents):
    store = temp_faiss_store
    store.add_documents(sample_documents)

    removed = store.delete_many(["doc-0", "doc-1"])

    assert removed == 2
    assert store.index.ntotal == 3
    results = store.search(sample_documents[0].embedding, -1.0, top_k=10)
    assert {result.id for result in results} == {"doc-2", "doc-3", "doc-4"}


def test_faiss_vector_ids_match_metadata_rows(temp_faiss_store, sample_documents):
    store = temp_faiss_store
    store.add_documents(sample_documents)

    _, vector_ids = store.index.search(
        store._normalize_embedding(sample_documents[0].embedding).reshape(1, -1), 1
    )

    assert int(vector_ids[0][0]) == 1


def test_faiss_zero_vector_is_not_normalized():
    normalized = FaissVectorStore._normalize_embedding(np.zeros(4))

    np.testing.assert_array_equal(normalized, np.zeros(4, dtype=np.float32))


def test_faiss_load_without_index_file(temp_faiss_store, sample_documents, caplog):
    store = temp_faiss_store
    store.add_documents(sample_documents)

    fresh_store = FaissVectorStore(
        db_path=store.db_path,
        index_path=store.index_path.parent / "missing.faiss",
    )
    with caplog.at_level(logging.WARNING):
        fresh_store.load()

    assert fresh_store.index is None
    assert "FAISS index not found" in caplog.text
    assert "holds 0 vectors but metadata lists 5" in caplog.text
    assert fresh_store.search(sample_documents[0].embedding, -1.0, 5) == []


def test_faiss_load_wraps_plain_index(temp_faiss_store):
    store = temp_faiss_store
    faiss.write_index(faiss.IndexFlatIP(4), str(store.index_path))

    store.load()

    assert isinstance(store.index, faiss.IndexIDMap)
    assert store.index.d == 4


def test_faiss_save_without_index(temp_faiss_store, caplog):
    with caplog.at_level(logging.WARNING):
        temp_faiss_store.save()

    assert "No FAISS index to save" in caplog.text
    assert not temp_faiss_store.index_path.exists()

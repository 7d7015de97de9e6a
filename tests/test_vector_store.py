"""Behavior shared by both vector store backends."""

import numpy as np
import pytest

from tutorrag import SearchFilter, SourceType, ValidationError
from tutorrag.vector_store import get_vector_store

DIM = 8


def _unit(index: int) -> np.ndarray:
    vector = np.zeros(DIM, dtype=np.float32)
    vector[index] = 1.0
    return vector


def test_upsert_and_search_orders_by_similarity(any_vector_store, chunk_factory):
    any_vector_store.upsert([
        chunk_factory("limits", _unit(0), chunk_index=0),
        chunk_factory("derivatives", _unit(1), chunk_index=1),
        chunk_factory("integrals", _unit(2), chunk_index=2),
    ])

    query = np.asarray([0.1, 0.9, 0.2, 0, 0, 0, 0, 0], dtype=np.float32)
    results = any_vector_store.search("calc-101", query, top_k=2)

    assert [chunk.text for chunk, _ in results] == ["derivatives", "integrals"]
    scores = [score for _, score in results]
    assert scores == sorted(scores, reverse=True)
    assert scores[0] == pytest.approx(0.9 / np.linalg.norm(query), rel=1e-5)


def test_search_hydrates_chunk_metadata(any_vector_store, chunk_factory):
    any_vector_store.upsert([
        chunk_factory(
            "Chain rule",
            _unit(3),
            source_type=SourceType.TEXTBOOK,
            source_id="book-1",
            chunk_index=4,
            page_number=17,
        ),
    ])

    (chunk, _score), = any_vector_store.search("calc-101", _unit(3), top_k=1)

    assert chunk.source_type is SourceType.TEXTBOOK
    assert chunk.source_id == "book-1"
    assert chunk.class_id == "calc-101"
    assert chunk.chunk_index == 4
    assert chunk.page_number == 17


def test_partitions_are_isolated(any_vector_store, chunk_factory):
    any_vector_store.upsert([chunk_factory("calculus", _unit(0))])
    any_vector_store.upsert([
        chunk_factory("biology", _unit(0), class_id="bio-200", source_id="bio-1")
    ])

    results = any_vector_store.search("calc-101", _unit(0), top_k=5)

    assert [chunk.text for chunk, _ in results] == ["calculus"]
    assert any_vector_store.count("bio-200") == 1


def test_search_filter_by_type_and_sources(any_vector_store, chunk_factory):
    any_vector_store.upsert([
        chunk_factory("lecture", _unit(0), source_id="lec-1"),
        chunk_factory(
            "photo", _unit(0), source_type=SourceType.PHOTO, source_id="photo-1"
        ),
        chunk_factory("other lecture", _unit(0), source_id="lec-2"),
    ])

    by_type = any_vector_store.search(
        "calc-101",
        _unit(0),
        top_k=5,
        search_filter=SearchFilter(source_type=SourceType.PHOTO),
    )
    by_sources = any_vector_store.search(
        "calc-101",
        _unit(0),
        top_k=5,
        search_filter=SearchFilter(
            source_type=SourceType.AUDIO, source_ids=frozenset({"lec-2"})
        ),
    )
    nothing = any_vector_store.search(
        "calc-101",
        _unit(0),
        top_k=5,
        search_filter=SearchFilter(source_ids=frozenset()),
    )

    assert [chunk.source_id for chunk, _ in by_type] == ["photo-1"]
    assert [chunk.source_id for chunk, _ in by_sources] == ["lec-2"]
    assert nothing == []


def test_upsert_replaces_same_identity(any_vector_store, chunk_factory):
    any_vector_store.upsert([chunk_factory("old text", _unit(0), chunk_index=0)])
    any_vector_store.upsert([chunk_factory("new text", _unit(1), chunk_index=0)])

    results = any_vector_store.search("calc-101", _unit(1), top_k=5)

    assert any_vector_store.count("calc-101") == 1
    assert [chunk.text for chunk, _ in results] == ["new text"]


def test_delete_by_source(any_vector_store, chunk_factory):
    any_vector_store.upsert([
        chunk_factory("keep", _unit(0), source_id="keep-me"),
        chunk_factory("drop 0", _unit(0), source_id="drop-me", chunk_index=0),
        chunk_factory("drop 1", _unit(1), source_id="drop-me", chunk_index=1),
    ])

    deleted = any_vector_store.delete_by_source("calc-101", "drop-me")
    results = any_vector_store.search("calc-101", _unit(0), top_k=5)

    assert deleted == 2
    assert {chunk.source_id for chunk, _ in results} == {"keep-me"}
    assert any_vector_store.delete_by_source("calc-101", "drop-me") == 0


def test_delete_by_source_from_index(any_vector_store, chunk_factory):
    any_vector_store.upsert([
        chunk_factory(f"part {i}", _unit(i), chunk_index=i) for i in range(4)
    ])

    deleted = any_vector_store.delete_by_source(
        "calc-101", "lecture-1", min_chunk_index=2
    )

    assert deleted == 2
    remaining = any_vector_store.list_chunks("calc-101")
    assert [chunk.chunk_index for chunk in remaining] == [0, 1]


def test_delete_partition_is_idempotent(any_vector_store, chunk_factory):
    any_vector_store.upsert([chunk_factory("gone soon", _unit(0))])

    any_vector_store.delete_partition("calc-101")
    any_vector_store.delete_partition("calc-101")

    assert any_vector_store.count("calc-101") == 0
    assert any_vector_store.search("calc-101", _unit(0), top_k=5) == []


def test_zero_vectors_are_searchable(any_vector_store, chunk_factory):
    any_vector_store.upsert([chunk_factory("degraded", np.zeros(DIM))])

    results = any_vector_store.search("calc-101", _unit(0), top_k=5)

    assert len(results) == 1
    assert results[0][1] == pytest.approx(0.0)


def test_search_empty_partition(any_vector_store):
    assert any_vector_store.search("calc-101", _unit(0), top_k=3) == []


def test_upsert_rejects_mixed_classes(any_vector_store, chunk_factory):
    with pytest.raises(ValidationError, match="share a class id"):
        any_vector_store.upsert([
            chunk_factory("a", _unit(0)),
            chunk_factory("b", _unit(1), class_id="bio-200"),
        ])


def test_upsert_rejects_missing_embedding(any_vector_store, chunk_factory):
    chunk = chunk_factory("a", _unit(0))
    object.__setattr__(chunk, "embedding", None)

    with pytest.raises(ValidationError, match="has no embedding"):
        any_vector_store.upsert([chunk])


def test_upsert_rejects_dimension_change(any_vector_store, chunk_factory):
    any_vector_store.upsert([chunk_factory("a", _unit(0))])

    with pytest.raises(ValidationError, match="does not match partition"):
        any_vector_store.upsert([
            chunk_factory("b", np.ones(DIM * 2), source_id="other")
        ])


def test_invalid_class_id_is_rejected(any_vector_store, chunk_factory):
    with pytest.raises(ValidationError, match="Invalid class id"):
        any_vector_store.upsert([chunk_factory("a", _unit(0), class_id="../etc")])


@pytest.mark.parametrize("class_id", ["..", "../..", "calc 101", ""])
def test_partition_operations_reject_malformed_class_ids(
    any_vector_store, chunk_factory, tmp_path, class_id
):
    any_vector_store.upsert([chunk_factory("kept", _unit(0))])
    operations = [
        lambda: any_vector_store.search(class_id, _unit(0)),
        lambda: any_vector_store.delete_by_source(class_id, "lecture-1"),
        lambda: any_vector_store.delete_partition(class_id),
        lambda: any_vector_store.count(class_id),
        lambda: any_vector_store.list_chunks(class_id),
    ]

    for operation in operations:
        with pytest.raises(ValidationError, match="Invalid class id"):
            operation()

    assert any(tmp_path.iterdir())
    assert any_vector_store.count("calc-101") == 1


def test_get_vector_store_factory(tmp_path):
    store = get_vector_store(
        "sqlite", db_path=tmp_path / "store.db", vectors_dir=tmp_path / "vectors"
    )
    assert store.backend == "sqlite"

    with pytest.raises(ValueError, match="Unsupported vector store backend"):
        get_vector_store("chroma", db_path=tmp_path / "store.db")  # type: ignore[arg-type]

import pytest

from corpus_agent.errors import StoreError
from corpus_agent.retrieval.store import (
    InMemoryRetrievalStore,
    SqliteRetrievalStore,
    cosine_similarity,
)


@pytest.fixture(params=["memory", "sqlite"])
def store(request, tmp_path):
    if request.param == "memory":
        return InMemoryRetrievalStore()
    return SqliteRetrievalStore(tmp_path / "corpus.db")


async def test_search_with_non_positive_k_returns_nothing(store) -> None:
    document = await store.create_document("c1", "a.pdf", "/docs/a.pdf")
    await store.replace_chunks(document.doc_id, ["alpha"], [[1.0, 0.0]])

    assert await store.search("c1", [1.0, 0.0], 0) == []
    assert await store.search("c1", [1.0, 0.0], -3) == []


async def test_ties_keep_insertion_order(store) -> None:
    document = await store.create_document("c1", "a.pdf", "/docs/a.pdf")
    await store.replace_chunks(
        document.doc_id,
        ["a", "b", "c"],
        [[1.0, 0.0], [0.0, 1.0], [1.0, 0.0]],
    )

    hits = await store.search("c1", [1.0, 0.0], 3)

    assert [hit.chunk.text for hit in hits] == ["a", "c", "b"]
    assert hits[0].similarity == pytest.approx(1.0)
    assert hits[2].similarity == pytest.approx(0.0)
    assert hits[0].document.name == "a.pdf"


async def test_search_is_scoped_to_collection(store) -> None:
    mine = await store.create_document("c1", "mine.pdf", "/docs/mine.pdf")
    theirs = await store.create_document("c2", "theirs.pdf", "/docs/theirs.pdf")
    await store.replace_chunks(mine.doc_id, ["mine"], [[0.0, 1.0]])
    await store.replace_chunks(theirs.doc_id, ["theirs"], [[1.0, 0.0]])

    hits = await store.search("c1", [1.0, 0.0], 10)

    assert [hit.chunk.text for hit in hits] == ["mine"]
    assert await store.search("unknown", [1.0, 0.0], 10) == []


async def test_replace_swaps_whole_chunk_set_and_bumps_generation(store) -> None:
    document = await store.create_document("c1", "a.pdf", "/docs/a.pdf")
    assert await store.generation(document.doc_id) == 0

    await store.replace_chunks(document.doc_id, ["one", "two", "three"], [[1.0], [1.0], [1.0]])
    replaced = await store.replace_chunks(document.doc_id, ["fresh"], [[0.5]])

    chunks = await store.get_chunks(document.doc_id)
    assert [chunk.text for chunk in chunks] == ["fresh"]
    assert [chunk.chunk_index for chunk in chunks] == [0]
    assert replaced[0].generation == 2
    assert await store.generation(document.doc_id) == 2
    assert await store.chunk_count(document.doc_id) == 1


async def test_replace_with_stale_generation_is_rejected(store) -> None:
    document = await store.create_document("c1", "a.pdf", "/docs/a.pdf")
    await store.replace_chunks(document.doc_id, ["first"], [[1.0]], expected_generation=0)

    with pytest.raises(StoreError):
        await store.replace_chunks(document.doc_id, ["stale"], [[1.0]], expected_generation=0)

    assert [chunk.text for chunk in await store.get_chunks(document.doc_id)] == ["first"]


async def test_replace_for_missing_document_fails(store) -> None:
    with pytest.raises(StoreError):
        await store.replace_chunks("missing", ["x"], [[1.0]])


async def test_replace_rejects_mismatched_batch(store) -> None:
    document = await store.create_document("c1", "a.pdf", "/docs/a.pdf")

    with pytest.raises(ValueError):
        await store.replace_chunks(document.doc_id, ["x", "y"], [[1.0]])


async def test_delete_document_removes_its_chunks(store) -> None:
    document = await store.create_document("c1", "a.pdf", "/docs/a.pdf")
    await store.replace_chunks(document.doc_id, ["x", "y"], [[1.0], [0.5]])

    await store.delete_document(document.doc_id)

    assert await store.get_document(document.doc_id) is None
    assert await store.chunk_count(document.doc_id) == 0
    assert await store.search("c1", [1.0], 5) == []


async def test_delete_chunks_keeps_document(store) -> None:
    document = await store.create_document("c1", "a.pdf", "/docs/a.pdf", {"size": 12})
    await store.replace_chunks(document.doc_id, ["x"], [[1.0]])

    await store.delete_chunks(document.doc_id)

    assert await store.has_chunks(document.doc_id) is False
    kept = await store.find_document("c1", "a.pdf")
    assert kept is not None
    assert kept.metadata == {"size": 12}
    assert await store.generation(document.doc_id) == 2


async def test_list_documents_filters_by_collection(store) -> None:
    await store.create_document("c1", "a.pdf", "/docs/a.pdf")
    await store.create_document("c1", "b.pdf", "/docs/b.pdf")
    await store.create_document("c2", "c.pdf", "/docs/c.pdf")

    names = [document.name for document in await store.list_documents("c1")]

    assert names == ["a.pdf", "b.pdf"]


def test_cosine_similarity_edge_cases() -> None:
    assert cosine_similarity([1.0, 0.0], [1.0, 0.0]) == pytest.approx(1.0)
    assert cosine_similarity([1.0, 0.0], [-1.0, 0.0]) == pytest.approx(-1.0)
    assert cosine_similarity([0.0, 0.0], [1.0, 0.0]) == 0.0
    assert cosine_similarity([], []) == 0.0
    assert cosine_similarity([1.0], [1.0, 0.0]) == 0.0

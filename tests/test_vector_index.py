"""
向量索引单元测试

测试 app/infra/vector_index.py 的 InMemoryVectorIndex：
- 阈值过滤与排序
- 相同分数时的稳定顺序
- 文档停用过滤
- 维度校验
"""

import pytest

from app.exceptions import EmbeddingDimensionMismatch
from app.infra.vector_index import IndexEntry, InMemoryVectorIndex, SearchHit, build_vector_index, sort_hits


def _entry(chunk_id, vector, document_id="doc-1", chunk_index=0, active=True):
    return IndexEntry(
        chunk_id=chunk_id,
        document_id=document_id,
        chunk_index=chunk_index,
        vector=vector,
        text=f"text of {chunk_id}",
        title="Income Tax Act",
        document_active=active,
    )


@pytest.mark.asyncio
async def test_empty_index_returns_no_hits():
    index = InMemoryVectorIndex()
    assert await index.search([1.0, 0.0], top_k=5, threshold=0.0) == []
    assert await index.get_dimension() is None


@pytest.mark.asyncio
async def test_search_orders_by_score_and_applies_threshold():
    index = InMemoryVectorIndex()
    await index.upsert([
        _entry("c-far", [0.0, 1.0]),
        _entry("c-exact", [1.0, 0.0]),
        _entry("c-near", [0.9, 0.1]),
    ])

    hits = await index.search([1.0, 0.0], top_k=5, threshold=0.7)

    assert [h.chunk_id for h in hits] == ["c-exact", "c-near"]
    assert hits[0].score == pytest.approx(1.0)
    assert all(h.score >= 0.7 for h in hits)
    assert hits[0].title == "Income Tax Act"


@pytest.mark.asyncio
async def test_top_k_limits_results():
    index = InMemoryVectorIndex()
    await index.upsert([_entry(f"c-{i}", [1.0, i / 10]) for i in range(6)])
    hits = await index.search([1.0, 0.0], top_k=3, threshold=0.0)
    assert [h.chunk_id for h in hits] == ["c-0", "c-1", "c-2"]
    assert await index.search([1.0, 0.0], top_k=0, threshold=0.0) == []


@pytest.mark.asyncio
async def test_ties_are_ordered_by_chunk_id():
    """相同分数按 chunk_id 排序，重复查询结果顺序一致"""
    index = InMemoryVectorIndex()
    await index.upsert([_entry(cid, [2.0, 2.0]) for cid in ("c-b", "c-c", "c-a")])

    first = await index.search([1.0, 1.0], top_k=3, threshold=0.5)
    second = await index.search([1.0, 1.0], top_k=3, threshold=0.5)

    assert [h.chunk_id for h in first] == ["c-a", "c-b", "c-c"]
    assert first == second


@pytest.mark.asyncio
async def test_inactive_documents_are_excluded():
    index = InMemoryVectorIndex()
    await index.upsert([
        _entry("c-1", [1.0, 0.0], document_id="doc-1"),
        _entry("c-2", [1.0, 0.0], document_id="doc-2"),
    ])

    await index.set_document_active("doc-1", False)
    hits = await index.search([1.0, 0.0], top_k=5, threshold=0.0)
    assert [h.document_id for h in hits] == ["doc-2"]

    await index.set_document_active("doc-1", True)
    hits = await index.search([1.0, 0.0], top_k=5, threshold=0.0)
    assert {h.document_id for h in hits} == {"doc-1", "doc-2"}


@pytest.mark.asyncio
async def test_upsert_replaces_existing_entry():
    index = InMemoryVectorIndex()
    await index.upsert([_entry("c-1", [1.0, 0.0])])
    await index.upsert([_entry("c-1", [0.0, 1.0])])
    assert await index.count() == 1
    hits = await index.search([0.0, 1.0], top_k=1, threshold=0.9)
    assert [h.chunk_id for h in hits] == ["c-1"]


@pytest.mark.asyncio
async def test_delete_document_removes_its_chunks():
    index = InMemoryVectorIndex()
    await index.upsert([
        _entry("c-1", [1.0, 0.0], document_id="doc-1"),
        _entry("c-2", [1.0, 0.0], document_id="doc-1", chunk_index=1),
        _entry("c-3", [1.0, 0.0], document_id="doc-2"),
    ])
    await index.delete_document("doc-1")
    assert await index.count() == 1
    await index.delete(["c-3", "missing"])
    assert await index.count() == 0


@pytest.mark.asyncio
async def test_dimension_is_fixed_by_first_vector():
    index = InMemoryVectorIndex()
    await index.upsert([_entry("c-1", [1.0, 0.0, 0.0])])
    assert index.dimension == 3

    with pytest.raises(EmbeddingDimensionMismatch):
        await index.upsert([_entry("c-2", [1.0, 0.0])])
    with pytest.raises(EmbeddingDimensionMismatch):
        await index.search([1.0, 0.0], top_k=1, threshold=0.0)
    assert await index.count() == 1


@pytest.mark.asyncio
async def test_mixed_dimensions_in_one_batch_write_nothing():
    index = InMemoryVectorIndex()
    with pytest.raises(EmbeddingDimensionMismatch):
        await index.upsert([_entry("c-1", [1.0, 0.0]), _entry("c-2", [1.0, 0.0, 0.0])])
    assert await index.count() == 0
    assert index.dimension is None


@pytest.mark.asyncio
async def test_zero_query_vector_returns_no_hits():
    index = InMemoryVectorIndex()
    await index.upsert([_entry("c-1", [1.0, 0.0])])
    assert await index.search([0.0, 0.0], top_k=5, threshold=-1.0) == []


def test_sort_hits():
    hits = [
        SearchHit("c-2", "d", 0, 0.8, "", ""),
        SearchHit("c-1", "d", 1, 0.8, "", ""),
        SearchHit("c-3", "d", 2, 0.9, "", ""),
    ]
    assert [h.chunk_id for h in sort_hits(hits, 2)] == ["c-3", "c-1"]


def test_build_vector_index():
    assert isinstance(build_vector_index("memory"), InMemoryVectorIndex)
    with pytest.raises(ValueError):
        build_vector_index("faiss")

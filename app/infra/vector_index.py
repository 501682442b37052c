"""
向量相似度索引 (Vector Index)

存储片段向量，提供 Top-K 余弦相似度检索：
- 只返回相似度 >= threshold 的片段，按相似度降序
- 只返回启用文档的片段（document_active 过滤）
- 相似度相同时按 chunk_id 升序，保证相同查询结果顺序一致
- 无命中返回空列表，不抛错

索引在生命周期内只对应一个 Embedding 提供商：第一个写入的向量决定维度，
之后维度不一致的写入或查询抛出 EmbeddingDimensionMismatch。

实现：
- InMemoryVectorIndex: numpy 平铺索引（小语料），启动时从数据库重建
- QdrantVectorIndex: Qdrant 集合（见 app.infra.vector_index_qdrant）

使用示例：
    from app.infra.vector_index import get_vector_index

    index = get_vector_index()
    await index.upsert([IndexEntry(chunk_id=..., document_id=..., chunk_index=0, vector=[...], text="...")])
    hits = await index.search(query_vector, top_k=5, threshold=0.7)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import Protocol

import numpy as np

from app.config import get_settings
from app.exceptions import EmbeddingDimensionMismatch

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IndexEntry:
    """索引中的一条记录"""
    chunk_id: str
    document_id: str
    chunk_index: int
    vector: list[float]
    text: str = ""
    title: str = ""
    document_active: bool = True


@dataclass(frozen=True)
class SearchHit:
    """检索命中结果"""
    chunk_id: str
    document_id: str
    chunk_index: int
    score: float
    text: str
    title: str


def sort_hits(hits: list[SearchHit], top_k: int) -> list[SearchHit]:
    """按相似度降序、chunk_id 升序排序并截断"""
    return sorted(hits, key=lambda h: (-h.score, h.chunk_id))[:top_k]


class VectorIndex(Protocol):
    """向量索引能力接口"""

    # 持久化索引（如 Qdrant）启动时无需从数据库重建
    persistent: bool

    async def get_dimension(self) -> int | None: ...

    async def upsert(self, entries: list[IndexEntry]) -> None: ...

    async def delete(self, chunk_ids: list[str]) -> None: ...

    async def delete_document(self, document_id: str) -> None: ...

    async def set_document_active(self, document_id: str, active: bool) -> None: ...

    async def search(self, vector: list[float], top_k: int, threshold: float) -> list[SearchHit]: ...

    async def count(self) -> int: ...


@dataclass(frozen=True)
class _StoredEntry:
    entry: IndexEntry
    unit: np.ndarray  # L2 归一化后的向量


class InMemoryVectorIndex:
    """
    进程内 numpy 平铺索引

    写入以整条记录替换（字典赋值），读者只会看到完整的旧记录或新记录。
    检索时对当前记录快照做一次矩阵乘法。
    """

    persistent = False

    def __init__(self):
        self._entries: dict[str, _StoredEntry] = {}
        self._dimension: int | None = None

    @property
    def dimension(self) -> int | None:
        return self._dimension

    async def get_dimension(self) -> int | None:
        return self._dimension

    def _check_dimension(self, size: int) -> None:
        if self._dimension is not None and size != self._dimension:
            raise EmbeddingDimensionMismatch(
                f"向量维度 {size} 与索引维度 {self._dimension} 不一致"
            )

    @staticmethod
    def _normalize(vector: list[float]) -> np.ndarray:
        arr = np.asarray(vector, dtype=np.float32)
        norm = float(np.linalg.norm(arr))
        if norm == 0.0:
            return arr
        return arr / norm

    async def upsert(self, entries: list[IndexEntry]) -> None:
        if not entries:
            return
        # 先整体校验维度，避免一批中部分写入
        first_dim = len(entries[0].vector)
        self._check_dimension(first_dim)
        for entry in entries:
            if len(entry.vector) != first_dim:
                raise EmbeddingDimensionMismatch(
                    f"同一批向量维度不一致: {len(entry.vector)} != {first_dim}"
                )
        if self._dimension is None:
            self._dimension = first_dim
            logger.info(f"向量索引维度确定为 {first_dim}")
        for entry in entries:
            self._entries[entry.chunk_id] = _StoredEntry(entry=entry, unit=self._normalize(entry.vector))

    async def delete(self, chunk_ids: list[str]) -> None:
        for chunk_id in chunk_ids:
            self._entries.pop(chunk_id, None)

    async def delete_document(self, document_id: str) -> None:
        stale = [cid for cid, s in self._entries.items() if s.entry.document_id == document_id]
        await self.delete(stale)

    async def set_document_active(self, document_id: str, active: bool) -> None:
        for chunk_id, stored in list(self._entries.items()):
            if stored.entry.document_id == document_id:
                self._entries[chunk_id] = replace(stored, entry=replace(stored.entry, document_active=active))

    async def search(self, vector: list[float], top_k: int, threshold: float) -> list[SearchHit]:
        if top_k <= 0 or self._dimension is None:
            return []
        self._check_dimension(len(vector))

        snapshot = [s for s in self._entries.values() if s.entry.document_active]
        if not snapshot:
            return []

        query = self._normalize(vector)
        if not np.any(query):
            return []
        matrix = np.stack([s.unit for s in snapshot])
        scores = matrix @ query

        hits = [
            SearchHit(
                chunk_id=s.entry.chunk_id,
                document_id=s.entry.document_id,
                chunk_index=s.entry.chunk_index,
                score=float(score),
                text=s.entry.text,
                title=s.entry.title,
            )
            for s, score in zip(snapshot, scores)
            if float(score) >= threshold
        ]
        return sort_hits(hits, top_k)

    async def count(self) -> int:
        return len(self._entries)


_vector_index: VectorIndex | None = None


def build_vector_index(backend: str | None = None) -> VectorIndex:
    """
    根据配置创建向量索引

    配置项: VECTOR_INDEX_BACKEND
    - memory: 进程内索引（默认）
    - qdrant: Qdrant 向量数据库
    """
    backend = (backend or get_settings().vector_index_backend).lower()
    if backend == "qdrant":
        from app.infra.vector_index_qdrant import QdrantVectorIndex
        logger.info("使用 Qdrant 向量索引")
        return QdrantVectorIndex()
    if backend == "memory":
        logger.info("使用进程内向量索引")
        return InMemoryVectorIndex()
    raise ValueError(f"未知的向量索引类型: {backend}")


def get_vector_index() -> VectorIndex:
    """获取向量索引实例（单例）"""
    global _vector_index
    if _vector_index is None:
        _vector_index = build_vector_index()
    return _vector_index

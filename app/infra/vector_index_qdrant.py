"""
Qdrant 向量索引

所有片段存放在一个 Collection 中（余弦距离），payload 包含
document_id / chunk_index / text / title / document_active，
检索时按 document_active 过滤。

Qdrant 对相同分数的返回顺序不保证稳定，因此检索时多取一些结果
（边界处有同分结果时继续扩大），再按 (相似度降序, chunk_id 升序) 重新排序截断。
"""

from __future__ import annotations

import logging
from functools import lru_cache

from qdrant_client import AsyncQdrantClient
from qdrant_client.http import models

from app.config import get_settings
from app.exceptions import EmbeddingDimensionMismatch
from app.infra.vector_index import IndexEntry, SearchHit, sort_hits

logger = logging.getLogger(__name__)

# 检索时额外多取的结果数量
OVERFETCH = 10


@lru_cache(maxsize=1)
def _get_async_client() -> AsyncQdrantClient:
    """获取异步 Qdrant 客户端（单例）"""
    settings = get_settings()
    return AsyncQdrantClient(
        url=settings.qdrant_url,
        api_key=settings.qdrant_api_key,
        timeout=10.0,
        prefer_grpc=False,
    )


def _document_filter(document_id: str) -> models.Filter:
    return models.Filter(
        must=[models.FieldCondition(key="document_id", match=models.MatchValue(value=document_id))]
    )


class QdrantVectorIndex:
    """基于 AsyncQdrantClient 的向量索引"""

    persistent = True

    def __init__(self, client: AsyncQdrantClient | None = None, collection: str | None = None):
        self._client = client
        self.collection = collection or get_settings().qdrant_collection
        self._dimension: int | None = None
        self._dimension_loaded = False

    @property
    def client(self) -> AsyncQdrantClient:
        if self._client is None:
            self._client = _get_async_client()
        return self._client

    async def get_dimension(self) -> int | None:
        """读取 Collection 的向量维度（Collection 不存在时为 None）"""
        if not self._dimension_loaded:
            if await self.client.collection_exists(self.collection):
                info = await self.client.get_collection(self.collection)
                self._dimension = info.config.params.vectors.size
            self._dimension_loaded = True
        return self._dimension

    async def _ensure_collection(self, dim: int) -> None:
        current = await self.get_dimension()
        if current is None:
            await self.client.create_collection(
                collection_name=self.collection,
                vectors_config=models.VectorParams(size=dim, distance=models.Distance.COSINE),
            )
            await self.client.create_payload_index(
                collection_name=self.collection,
                field_name="document_id",
                field_schema=models.PayloadSchemaType.KEYWORD,
            )
            self._dimension = dim
            logger.info(f"创建 Collection: {self.collection} (维度: {dim})")
        elif current != dim:
            raise EmbeddingDimensionMismatch(f"向量维度 {dim} 与索引维度 {current} 不一致")

    async def upsert(self, entries: list[IndexEntry]) -> None:
        if not entries:
            return
        dim = len(entries[0].vector)
        if any(len(e.vector) != dim for e in entries):
            raise EmbeddingDimensionMismatch("同一批向量维度不一致")
        await self._ensure_collection(dim)
        await self.client.upsert(
            collection_name=self.collection,
            points=[
                models.PointStruct(
                    id=entry.chunk_id,
                    vector=entry.vector,
                    payload={
                        "document_id": entry.document_id,
                        "chunk_index": entry.chunk_index,
                        "text": entry.text,
                        "title": entry.title,
                        "document_active": entry.document_active,
                    },
                )
                for entry in entries
            ],
        )

    async def delete(self, chunk_ids: list[str]) -> None:
        if not chunk_ids or await self.get_dimension() is None:
            return
        await self.client.delete(
            collection_name=self.collection,
            points_selector=models.PointIdsList(points=chunk_ids),
        )

    async def delete_document(self, document_id: str) -> None:
        if await self.get_dimension() is None:
            return
        await self.client.delete(
            collection_name=self.collection,
            points_selector=models.FilterSelector(filter=_document_filter(document_id)),
        )

    async def set_document_active(self, document_id: str, active: bool) -> None:
        if await self.get_dimension() is None:
            return
        await self.client.set_payload(
            collection_name=self.collection,
            payload={"document_active": active},
            points=models.FilterSelector(filter=_document_filter(document_id)),
        )

    async def _query(self, vector: list[float], limit: int, threshold: float) -> list[SearchHit]:
        response = await self.client.query_points(
            collection_name=self.collection,
            query=vector,
            query_filter=models.Filter(
                must=[models.FieldCondition(key="document_active", match=models.MatchValue(value=True))]
            ),
            limit=limit,
            with_payload=True,
            score_threshold=threshold,
        )

        hits = []
        for point in response.points:
            payload = point.payload or {}
            hits.append(
                SearchHit(
                    chunk_id=str(point.id),
                    document_id=payload.get("document_id", ""),
                    chunk_index=payload.get("chunk_index", 0),
                    score=float(point.score or 0.0),
                    text=payload.get("text", ""),
                    title=payload.get("title", ""),
                )
            )
        return hits

    async def search(self, vector: list[float], top_k: int, threshold: float) -> list[SearchHit]:
        """
        相似度检索

        第 top_k 名的分数与本次取回的最后一名相同时，可能还有同分结果没取回，
        扩大 limit 重新查询，直到最后一名的分数低于第 top_k 名或结果取尽。
        """
        dim = await self.get_dimension()
        if top_k <= 0 or dim is None:
            return []
        if len(vector) != dim:
            raise EmbeddingDimensionMismatch(f"查询向量维度 {len(vector)} 与索引维度 {dim} 不一致")

        limit = top_k + OVERFETCH
        while True:
            hits = await self._query(vector, limit, threshold)
            if len(hits) < limit:
                break
            scores = sorted((h.score for h in hits), reverse=True)
            if scores[-1] < scores[top_k - 1]:
                break
            limit *= 2
        return sort_hits(hits, top_k)

    async def count(self) -> int:
        if await self.get_dimension() is None:
            return 0
        result = await self.client.count(collection_name=self.collection, exact=True)
        return result.count

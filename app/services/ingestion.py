"""
文档摄取服务

负责知识库文档的完整处理流程：
1. 上传：同步切分文档，写入片段记录，创建向量化任务后立即返回
2. 向量化：后台任务分批调用 Embedding，写入向量索引并持久化进度
3. 管理：重新处理、软删除、取消任务、卡住检测、启动时中断标记

任务状态机（EmbeddingJob）：
    pending -> processing -> completed
                        \\-> failed (error / cancelled / stalled / interrupted)

失败语义：
- 某批次向量化失败时任务标记为 failed，已向量化的片段保留
- 重新处理只针对尚未向量化的片段
- 同一文档同时只允许一个活动任务，重复提交抛出 JobConflictError
- 被取消的任务在批次边界停下之前，同一文档不能重新处理

状态迁移都使用带状态条件的 UPDATE，取消/卡住标记与后台任务并发时不会被覆盖。
"""

import asyncio
import logging
from collections.abc import Coroutine
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import case, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config import get_settings
from app.exceptions import EmbeddingDimensionMismatch, JobConflictError, NotFoundError
from app.infra.locks import KeyedLocks
from app.infra.logging import RequestTimer
from app.infra.vector_index import IndexEntry, VectorIndex, get_vector_index
from app.models import DocumentChunk, EmbeddingJob, JobFailureReason, JobStatus, KnowledgeDocument
from app.models.mixins import as_utc, utcnow
from app.pipeline import operator_registry
from app.schemas.knowledge import DocumentUploadRequest
from app.services.provider_registry import ProviderRegistry, provider_registry

logger = logging.getLogger(__name__)


class JobRunner:
    """
    后台任务管理

    以 asyncio.Task 运行向量化任务并按 job_id 跟踪，
    服务关闭时取消未完成的任务（重启后由 mark_interrupted_jobs 标记）。
    """

    def __init__(self):
        self._tasks: dict[str, asyncio.Task] = {}
        self._documents: dict[str, str] = {}

    def start(
        self,
        job_id: str,
        coro: Coroutine[Any, Any, Any],
        document_id: str | None = None,
    ) -> asyncio.Task:
        task = asyncio.create_task(coro, name=f"embedding-job-{job_id}")
        self._tasks[job_id] = task
        if document_id is not None:
            self._documents[job_id] = document_id
        task.add_done_callback(lambda _: self._forget(job_id))
        return task

    def _forget(self, job_id: str) -> None:
        self._tasks.pop(job_id, None)
        self._documents.pop(job_id, None)

    def is_running(self, job_id: str) -> bool:
        return job_id in self._tasks

    def is_document_running(self, document_id: str) -> bool:
        """文档是否还有未结束的后台任务（包括已取消但尚未停下的任务）"""
        return document_id in self._documents.values()

    async def wait(self, job_id: str) -> None:
        task = self._tasks.get(job_id)
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)

    async def wait_all(self) -> None:
        if self._tasks:
            await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)

    async def shutdown(self) -> None:
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.info(f"已取消 {len(tasks)} 个未完成的向量化任务")


class IngestionService:
    """
    文档摄取服务

    Args:
        session_factory: 后台任务使用的会话工厂（每个任务独立会话）
        registry: 提供商注册表
        index: 向量索引（默认使用全局索引）
        chunker_name: 切分器名称（operator_registry 中注册的名称）
        auto_start: 是否在上传/重新处理后自动启动后台任务
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        registry: ProviderRegistry = provider_registry,
        index: VectorIndex | None = None,
        chunker_name: str = "token_window",
        auto_start: bool = True,
    ):
        self.session_factory = session_factory
        self.registry = registry
        self._index = index
        self.chunker_name = chunker_name
        self.auto_start = auto_start
        self.runner = JobRunner()
        self._document_locks = KeyedLocks()
        # 同一文档的后台向量化串行执行
        self._worker_locks = KeyedLocks()

    @property
    def index(self) -> VectorIndex:
        if self._index is None:
            self._index = get_vector_index()
        return self._index

    # ==================== 上传 / 重新处理 ====================

    def _chunk_document(self, document: KnowledgeDocument) -> list[DocumentChunk]:
        chunker = operator_registry.create("chunker", self.chunker_name)
        pieces = chunker.chunk(document.content or "")
        return [
            DocumentChunk(
                document_id=document.id,
                chunk_index=idx,
                text=piece.text,
                token_count=piece.metadata.get("token_count", 0),
                extra_metadata={
                    "start_char": piece.metadata["start_char"],
                    "end_char": piece.metadata["end_char"],
                    "overlap_chars": piece.metadata["overlap_chars"],
                    "total_chunks": len(pieces),
                },
            )
            for idx, piece in enumerate(pieces)
        ]

    def _new_job(self, document_id: str, total: int, processed: int) -> EmbeddingJob:
        """创建任务记录，没有待处理片段时直接完成"""
        now = utcnow()
        job = EmbeddingJob(
            document_id=document_id,
            total_chunks=total,
            processed_chunks=processed,
            status=JobStatus.PENDING,
        )
        if processed >= total:
            job.status = JobStatus.COMPLETED
            job.started_at = now
            job.completed_at = now
            job.last_progress_at = now
        return job

    def _schedule(self, job: EmbeddingJob) -> None:
        if self.auto_start and job.status == JobStatus.PENDING:
            self.runner.start(
                job.id, self.process_document(job.document_id, job.id), document_id=job.document_id
            )

    async def upload_document(
        self,
        session: AsyncSession,
        data: DocumentUploadRequest,
        user_id: str | None = None,
    ) -> tuple[KnowledgeDocument, EmbeddingJob]:
        """
        上传文档：同步切分并创建向量化任务

        空文档切分结果为 0 个片段，任务直接标记为 completed。

        Returns:
            (document, job)
        """
        timer = RequestTimer()
        document = KnowledgeDocument(
            title=data.title,
            content=data.content,
            category=data.category,
            tags=data.tags,
            source_url=data.source_url,
            extra_metadata=data.metadata or {},
            uploaded_by=user_id,
        )
        session.add(document)
        await session.flush()

        chunks = self._chunk_document(document)
        session.add_all(chunks)
        timer.mark("chunking")

        job = self._new_job(document.id, total=len(chunks), processed=0)
        session.add(job)
        await session.commit()

        logger.info(
            f"文档上传完成: {document.title}，{len(chunks)} 个片段",
            extra={"document_id": document.id, "job_id": job.id, "metrics": timer.get_metrics()},
        )
        self._schedule(job)
        return document, job

    async def _get_document(self, session: AsyncSession, document_id: str) -> KnowledgeDocument:
        document = await session.get(KnowledgeDocument, document_id)
        if document is None:
            raise NotFoundError(f"文档不存在: {document_id}")
        return document

    async def _active_job(self, session: AsyncSession, document_id: str) -> EmbeddingJob | None:
        result = await session.execute(
            select(EmbeddingJob)
            .where(EmbeddingJob.document_id == document_id, EmbeddingJob.status.in_(JobStatus.ACTIVE))
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def _chunk_counts(self, session: AsyncSession, document_id: str) -> tuple[int, int]:
        """返回 (片段总数, 已向量化数)"""
        result = await session.execute(
            select(
                func.count(DocumentChunk.id),
                func.count(DocumentChunk.embedding_model),
            ).where(DocumentChunk.document_id == document_id)
        )
        total, embedded = result.one()
        return total, embedded

    async def reprocess_document(self, session: AsyncSession, document_id: str) -> EmbeddingJob:
        """
        重新处理文档：只向量化尚未向量化的片段

        - 文档已有活动任务时抛出 JobConflictError
        - 文档没有片段但有内容时重新切分
        - 已软删除的文档会重新启用

        Raises:
            NotFoundError: 文档不存在
            JobConflictError: 已有 pending/processing 任务，或已取消的任务仍在停止中
        """
        async with self._document_locks.hold(document_id):
            document = await self._get_document(session, document_id)
            active = await self._active_job(session, document_id)
            if active is not None:
                raise JobConflictError(f"文档已有处理中的任务: {active.id}")
            if self.runner.is_document_running(document_id):
                raise JobConflictError(f"文档 {document_id} 的上一个任务仍在停止中，请稍后重试")

            total, embedded = await self._chunk_counts(session, document_id)
            if total == 0 and document.content:
                chunks = self._chunk_document(document)
                session.add_all(chunks)
                total, embedded = len(chunks), 0
                logger.info(f"文档 {document_id} 没有片段，重新切分为 {total} 个片段")

            if not document.is_active:
                document.is_active = True
                await self.index.set_document_active(document_id, True)
                logger.info(f"重新启用文档 {document_id}")

            job = self._new_job(document_id, total=total, processed=embedded)
            session.add(job)
            await session.commit()

        logger.info(
            f"创建重新处理任务，待向量化 {total - embedded}/{total} 个片段",
            extra={"document_id": document_id, "job_id": job.id},
        )
        self._schedule(job)
        return job

    # ==================== 后台向量化 ====================

    async def process_document(self, document_id: str, job_id: str | None = None) -> None:
        """
        向量化文档中尚未向量化的片段（后台任务入口）

        分批调用 Embedding，每批在一个事务中写入向量和进度；
        每批开始前检查任务状态，被取消或标记卡住时停止。
        失败时任务标记为 failed，已完成的批次保留。
        同一文档的多个任务按顺序执行，不会同时写入同一批片段。
        """
        async with self._worker_locks.hold(document_id), self.session_factory() as session:
            if job_id is None:
                job = await self._active_job(session, document_id)
                if job is None:
                    logger.info(f"文档 {document_id} 没有待处理的任务")
                    return
                job_id = job.id

            now = utcnow()
            started = await session.execute(
                update(EmbeddingJob)
                .where(EmbeddingJob.id == job_id, EmbeddingJob.status == JobStatus.PENDING)
                .values(status=JobStatus.PROCESSING, started_at=now, last_progress_at=now)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            if started.rowcount == 0:
                logger.info(f"任务 {job_id} 不是 pending 状态，跳过")
                return

            timer = RequestTimer()
            try:
                stopped = await self._embed_pending_chunks(session, document_id, job_id)
                timer.mark("embedding")
                if stopped:
                    return
                # 没有待处理片段时（或计数与片段不一致时）在这里收尾
                await session.execute(
                    update(EmbeddingJob)
                    .where(EmbeddingJob.id == job_id, EmbeddingJob.status == JobStatus.PROCESSING)
                    .values(
                        status=JobStatus.COMPLETED,
                        processed_chunks=EmbeddingJob.total_chunks,
                        completed_at=utcnow(),
                    )
                    .execution_options(synchronize_session=False)
                )
                await session.commit()
                status = await session.scalar(select(EmbeddingJob.status).where(EmbeddingJob.id == job_id))
                if status == JobStatus.COMPLETED:
                    logger.info(
                        f"文档 {document_id} 向量化完成",
                        extra={"job_id": job_id, "metrics": timer.get_metrics()},
                    )
            except Exception as e:
                logger.error(f"文档 {document_id} 向量化失败: {e}", extra={"job_id": job_id}, exc_info=True)
                await session.rollback()
                await self._fail_job(session, job_id, JobFailureReason.ERROR, str(e))

    async def _document_active(self, session: AsyncSession, document_id: str) -> bool:
        """从数据库读取文档当前的启用状态（不使用会话中缓存的对象）"""
        return bool(await session.scalar(
            select(KnowledgeDocument.is_active).where(KnowledgeDocument.id == document_id)
        ))

    async def _embed_pending_chunks(self, session: AsyncSession, document_id: str, job_id: str) -> bool:
        """
        分批向量化

        最后一批的进度更新同时把任务标记为 completed，
        轮询方不会看到 processed == total 但仍是 processing 的状态。

        Returns:
            bool: 任务被外部终止（取消/卡住）时返回 True
        """
        settings = get_settings()
        document = await self._get_document(session, document_id)
        embedding = await self.registry.resolve_embedding(session)
        label = f"{embedding.provider_name}:{embedding.model_name}"

        result = await session.execute(
            select(DocumentChunk)
            .where(DocumentChunk.document_id == document_id, DocumentChunk.embedding.is_(None))
            .order_by(DocumentChunk.chunk_index)
        )
        pending = list(result.scalars().all())
        batch_size = max(1, settings.embedding_batch_size)

        for start in range(0, len(pending), batch_size):
            batch = pending[start:start + batch_size]

            status = await session.scalar(select(EmbeddingJob.status).where(EmbeddingJob.id == job_id))
            if status != JobStatus.PROCESSING:
                logger.warning(f"任务 {job_id} 已被终止（{status}），停止向量化")
                return True

            vectors = await embedding.embed_batch([c.text for c in batch])

            # 先写索引（维度不一致时抛出），再持久化
            # 向量化期间文档可能被软删除，启用状态以数据库为准
            active = await self._document_active(session, document_id)
            await self.index.upsert([
                IndexEntry(
                    chunk_id=chunk.id,
                    document_id=document_id,
                    chunk_index=chunk.chunk_index,
                    vector=vector,
                    text=chunk.text,
                    title=document.title,
                    document_active=active,
                )
                for chunk, vector in zip(batch, vectors)
            ])
            if active and not await self._document_active(session, document_id):
                # 软删除在写索引前后提交时，以停用状态为准
                await self.index.set_document_active(document_id, False)
            for chunk, vector in zip(batch, vectors):
                chunk.embedding = vector
                chunk.embedding_model = label

            done = EmbeddingJob.processed_chunks + len(batch) >= EmbeddingJob.total_chunks
            now = utcnow()
            progressed = await session.execute(
                update(EmbeddingJob)
                .where(EmbeddingJob.id == job_id, EmbeddingJob.status == JobStatus.PROCESSING)
                .values(
                    processed_chunks=EmbeddingJob.processed_chunks + len(batch),
                    last_progress_at=now,
                    status=case((done, JobStatus.COMPLETED), else_=JobStatus.PROCESSING),
                    completed_at=case((done, now), else_=EmbeddingJob.completed_at),
                )
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            logger.debug(f"任务 {job_id} 完成批次 {start // batch_size + 1}，{len(batch)} 个片段")
            if progressed.rowcount == 0:
                logger.warning(f"任务 {job_id} 已被终止，已保留本批次向量")
                return True

        return False

    async def _fail_job(self, session: AsyncSession, job_id: str, reason: str, message: str) -> bool:
        result = await session.execute(
            update(EmbeddingJob)
            .where(EmbeddingJob.id == job_id, EmbeddingJob.status.in_(JobStatus.ACTIVE))
            .values(
                status=JobStatus.FAILED,
                failure_reason=reason,
                error_message=message,
                completed_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        await session.commit()
        return result.rowcount > 0

    # ==================== 查询 / 管理 ====================

    async def get_job_status(self, session: AsyncSession, job_id: str) -> EmbeddingJob:
        job = await session.get(EmbeddingJob, job_id, populate_existing=True)
        if job is None:
            raise NotFoundError(f"任务不存在: {job_id}")
        return job

    async def cancel_job(self, session: AsyncSession, job_id: str) -> EmbeddingJob:
        """
        取消任务：标记为 failed（cancelled），后台任务在下一个批次边界停止

        Raises:
            NotFoundError: 任务不存在
            JobConflictError: 任务已结束
        """
        job = await self.get_job_status(session, job_id)
        if not await self._fail_job(session, job_id, JobFailureReason.CANCELLED, "任务已取消"):
            raise JobConflictError(f"任务已结束，无法取消（当前状态: {job.status}）")
        logger.info(f"任务 {job_id} 已取消", extra={"document_id": job.document_id})
        return await self.get_job_status(session, job_id)

    async def delete_document(self, session: AsyncSession, document_id: str) -> KnowledgeDocument:
        """软删除文档：停用文档，片段保留但不再参与检索"""
        document = await self._get_document(session, document_id)
        document.is_active = False
        await session.commit()
        await self.index.set_document_active(document_id, False)
        logger.info(f"文档 {document_id} 已停用")
        return document

    async def list_documents(
        self,
        session: AsyncSession,
        category: str | None = None,
        include_inactive: bool = False,
    ) -> list[tuple[KnowledgeDocument, int, int]]:
        """
        列出文档

        Returns:
            [(document, 片段总数, 已向量化数)]，按创建时间倒序
        """
        counts = (
            select(
                DocumentChunk.document_id.label("document_id"),
                func.count(DocumentChunk.id).label("chunk_count"),
                func.count(DocumentChunk.embedding_model).label("embedded_count"),
            )
            .group_by(DocumentChunk.document_id)
            .subquery()
        )
        stmt = (
            select(
                KnowledgeDocument,
                func.coalesce(counts.c.chunk_count, 0),
                func.coalesce(counts.c.embedded_count, 0),
            )
            .outerjoin(counts, counts.c.document_id == KnowledgeDocument.id)
            .order_by(KnowledgeDocument.created_at.desc())
        )
        if category:
            stmt = stmt.where(KnowledgeDocument.category == category)
        if not include_inactive:
            stmt = stmt.where(KnowledgeDocument.is_active.is_(True))
        result = await session.execute(stmt)
        return [(doc, chunk_count, embedded_count) for doc, chunk_count, embedded_count in result.all()]

    async def detect_stalled_jobs(self, session: AsyncSession, now: datetime | None = None) -> list[str]:
        """
        检测卡住的任务：processing 状态且超过 JOB_STALL_TIMEOUT_SECONDS 没有进展

        Returns:
            被标记为 failed（stalled）的任务 ID 列表
        """
        now = now or utcnow()
        cutoff = now - timedelta(seconds=get_settings().job_stall_timeout_seconds)
        result = await session.execute(
            select(EmbeddingJob).where(EmbeddingJob.status == JobStatus.PROCESSING)
        )
        stalled = []
        for job in result.scalars().all():
            last = as_utc(job.last_progress_at or job.started_at or job.created_at)
            if last < cutoff and await self._fail_job(
                session, job.id, JobFailureReason.STALLED, f"超过 {int((now - last).total_seconds())} 秒没有进展"
            ):
                stalled.append(job.id)
        if stalled:
            logger.warning(f"检测到 {len(stalled)} 个卡住的向量化任务，已标记为 failed")
        return stalled

    async def mark_interrupted_jobs(self, session: AsyncSession) -> int:
        """
        标记中断的任务

        服务重启时，pending/processing 状态的任务是被中断的，
        标记为 failed（interrupted）以便重新处理。
        """
        result = await session.execute(
            update(EmbeddingJob)
            .where(EmbeddingJob.status.in_(JobStatus.ACTIVE))
            .values(
                status=JobStatus.FAILED,
                failure_reason=JobFailureReason.INTERRUPTED,
                error_message="服务重启导致任务中断",
                completed_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        await session.commit()
        if result.rowcount > 0:
            logger.warning(f"检测到 {result.rowcount} 个中断的向量化任务，已标记为 failed")
        return result.rowcount

    async def rebuild_index(self, session: AsyncSession) -> int:
        """
        从数据库中已持久化的向量重建进程内索引

        持久化索引（Qdrant）跳过。维度与索引不一致的文档记录错误后跳过。

        Returns:
            写入索引的片段数量
        """
        if self.index.persistent:
            return 0
        result = await session.execute(
            select(DocumentChunk, KnowledgeDocument.title, KnowledgeDocument.is_active)
            .join(KnowledgeDocument, KnowledgeDocument.id == DocumentChunk.document_id)
            .where(DocumentChunk.embedding.is_not(None))
            .order_by(DocumentChunk.document_id, DocumentChunk.chunk_index)
        )
        by_document: dict[str, list[IndexEntry]] = {}
        for chunk, title, is_active in result.all():
            by_document.setdefault(chunk.document_id, []).append(
                IndexEntry(
                    chunk_id=chunk.id,
                    document_id=chunk.document_id,
                    chunk_index=chunk.chunk_index,
                    vector=chunk.embedding,
                    text=chunk.text,
                    title=title,
                    document_active=is_active,
                )
            )

        loaded = 0
        for document_id, entries in by_document.items():
            try:
                await self.index.upsert(entries)
                loaded += len(entries)
            except EmbeddingDimensionMismatch as e:
                logger.error(f"文档 {document_id} 的向量无法载入索引，需要重新向量化: {e}")
        logger.info(f"向量索引重建完成，载入 {loaded} 个片段")
        return loaded

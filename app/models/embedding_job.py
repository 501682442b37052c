"""
向量化任务模型 (EmbeddingJob)

显式状态机，持久化为一行记录，供管理后台轮询：

    pending ──> processing ──> completed
       │             │
       └─────────────┴──────> failed (error / cancelled / stalled / interrupted)

不变量：
- processed_chunks <= total_chunks
- processed_chunks == total_chunks 时状态为 completed
- 同一文档同时最多一个 pending/processing 任务
"""

from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base
from app.models.mixins import UUID_PK, TimestampMixin, new_id


class JobStatus:
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    ACTIVE = (PENDING, PROCESSING)


class JobFailureReason:
    ERROR = "error"
    CANCELLED = "cancelled"
    STALLED = "stalled"
    INTERRUPTED = "interrupted"


class EmbeddingJob(TimestampMixin, Base):
    """向量化任务表"""
    __tablename__ = "embedding_jobs"

    id: Mapped[UUID_PK] = mapped_column(default=new_id)

    document_id: Mapped[str] = mapped_column(
        ForeignKey("knowledge_documents.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    status: Mapped[str] = mapped_column(
        String(20),
        default=JobStatus.PENDING,
        nullable=False,
        index=True,
    )

    total_chunks: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    processed_chunks: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # 失败原因分类（error/cancelled/stalled/interrupted）与详细信息
    failure_reason: Mapped[str | None] = mapped_column(String(20))
    error_message: Mapped[str | None] = mapped_column(Text)

    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    # 最近一次进度推进时间，用于卡住检测
    last_progress_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

"""
文档片段模型 (DocumentChunk) - 检索的基本单位

数据流向: KnowledgeDocument → Chunker → DocumentChunk → Embedding → 向量索引

embedding 为空表示该片段尚未向量化，重新处理时只针对这些片段。
"""

from sqlalchemy import ForeignKey, Integer, JSON, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db.base import Base
from app.models.mixins import UUID_PK, TimestampMixin, new_id


class DocumentChunk(TimestampMixin, Base):
    """
    文档片段表

    字段说明：
    - document_id: 所属文档（文档删除时级联删除）
    - chunk_index: 片段序号，从 0 开始连续
    - text: 片段文本
    - token_count: 估算 token 数
    - embedding: 向量（JSON 数组），未向量化时为空
    - embedding_model: 生成向量的提供商/模型，如 "openai:text-embedding-3-small"
    - extra_metadata: start_char / end_char / overlap_chars 等
    """
    __tablename__ = "document_chunks"
    __table_args__ = (
        UniqueConstraint("document_id", "chunk_index", name="uq_document_chunks_document_index"),
    )

    id: Mapped[UUID_PK] = mapped_column(default=new_id)

    document_id: Mapped[str] = mapped_column(
        ForeignKey("knowledge_documents.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    chunk_index: Mapped[int] = mapped_column(Integer, nullable=False)

    text: Mapped[str] = mapped_column(Text, nullable=False)

    token_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # 未向量化时为 SQL NULL（none_as_null，便于 IS NULL 过滤）
    embedding: Mapped[list | None] = mapped_column(JSON(none_as_null=True))

    embedding_model: Mapped[str | None] = mapped_column(String(150))

    extra_metadata: Mapped[dict | None] = mapped_column("metadata", JSON, default=dict)

    document: Mapped["KnowledgeDocument"] = relationship(  # noqa: F821
        "KnowledgeDocument",
        back_populates="chunks",
    )

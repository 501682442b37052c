"""
知识库文档模型 (KnowledgeDocument)

文档是税务知识库的基本单元（法规条文、办税指南、常见问题等），
会被切分成多个 DocumentChunk 进行向量化存储。

处理流程：
    管理员上传 → 切分片段 → 向量化（EmbeddingJob）→ 存入向量索引

删除是软删除：is_active=False 后片段仍保留，检索时按文档状态过滤。
"""

from sqlalchemy import Boolean, JSON, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db.base import Base
from app.models.mixins import UUID_PK, TimestampMixin, new_id


class KnowledgeDocument(TimestampMixin, Base):
    """
    知识库文档表

    字段说明：
    - title: 文档标题
    - content: 文档全文
    - source_url: 来源链接（可选）
    - category: 分类（如 income_tax、gst、payroll）
    - tags: 标签列表
    - extra_metadata: 扩展元数据
    - is_active: 是否启用（软删除标记）
    - uploaded_by: 上传者 ID
    """
    __tablename__ = "knowledge_documents"

    id: Mapped[UUID_PK] = mapped_column(default=new_id)

    title: Mapped[str] = mapped_column(String(255), nullable=False)

    content: Mapped[str] = mapped_column(Text, nullable=False, default="")

    source_url: Mapped[str | None] = mapped_column(String(500))

    category: Mapped[str | None] = mapped_column(String(50), index=True)

    tags: Mapped[list | None] = mapped_column(JSON, default=list)

    # 数据库列名为 metadata，属性名用 extra_metadata 避免与 SQLAlchemy 冲突
    extra_metadata: Mapped[dict | None] = mapped_column("metadata", JSON, default=dict)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False, index=True)

    uploaded_by: Mapped[str | None] = mapped_column(String(64))

    chunks: Mapped[list["DocumentChunk"]] = relationship(  # noqa: F821
        "DocumentChunk",
        back_populates="document",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="DocumentChunk.chunk_index",
    )

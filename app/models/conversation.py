"""
对话模型 (Conversation & Message)

持久化纳税人与知识助手的多轮对话，以及每轮检索到的片段引用。

数据关系：
    Conversation (对话，属于某个用户)
        └── Message (消息，按 sequence 严格有序)
              └── Feedback (仅 assistant 消息)
"""

from datetime import datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, JSON, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db.base import Base
from app.models.mixins import UUID_PK, TimestampMixin, new_id


class MessageRole:
    USER = "user"
    ASSISTANT = "assistant"


class Conversation(TimestampMixin, Base):
    """
    对话表

    字段说明：
    - user_id: 所属用户（由外部认证层提供）
    - title: 对话标题（从首条消息自动生成，最多 50 字符）
    - is_archived: 是否已归档（归档不删除数据）
    - last_message_at: 最近一条消息时间，列表排序用
    """
    __tablename__ = "conversations"

    id: Mapped[UUID_PK] = mapped_column(default=new_id)

    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)

    title: Mapped[str | None] = mapped_column(String(255))

    is_archived: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    last_message_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    messages: Mapped[list["Message"]] = relationship(
        "Message",
        back_populates="conversation",
        cascade="all, delete-orphan",
        order_by="Message.sequence",
    )


class Message(TimestampMixin, Base):
    """
    消息表

    字段说明：
    - sequence: 对话内单调递增序号，从 1 开始
    - role: user / assistant
    - token_count: 估算 token 数（assistant 消息为提供商返回的输出 token 数）
    - retrieved_chunk_ids: 本轮检索到的片段 ID 列表（仅 assistant 消息）
    - provider / model_name: 生成回复所用的提供商和模型
    - extra_metadata: context_found、similarity 分数、耗时等
    """
    __tablename__ = "messages"
    __table_args__ = (
        UniqueConstraint("conversation_id", "sequence", name="uq_messages_conversation_sequence"),
    )

    id: Mapped[UUID_PK] = mapped_column(default=new_id)

    conversation_id: Mapped[str] = mapped_column(
        ForeignKey("conversations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    sequence: Mapped[int] = mapped_column(Integer, nullable=False)

    role: Mapped[str] = mapped_column(String(20), nullable=False)

    content: Mapped[str] = mapped_column(Text, nullable=False)

    token_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    retrieved_chunk_ids: Mapped[list | None] = mapped_column(JSON, default=list)

    provider: Mapped[str | None] = mapped_column(String(20))
    model_name: Mapped[str | None] = mapped_column(String(100))

    extra_metadata: Mapped[dict | None] = mapped_column("metadata", JSON, default=dict)

    conversation: Mapped["Conversation"] = relationship(
        "Conversation",
        back_populates="messages",
    )

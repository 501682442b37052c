"""
反馈模型 (Feedback)

用户对 assistant 回复的评分，用于统计回答质量。
"""

from sqlalchemy import Boolean, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base
from app.models.mixins import UUID_PK, TimestampMixin, new_id


class Feedback(TimestampMixin, Base):
    """
    反馈表

    字段说明：
    - message_id: 被评价的 assistant 消息
    - user_id: 评价人
    - rating: 评分 1-5
    - helpful: 是否有帮助（未提供时按 rating >= 4 推断）
    - comment: 文字评论
    """
    __tablename__ = "feedback"

    id: Mapped[UUID_PK] = mapped_column(default=new_id)

    message_id: Mapped[str] = mapped_column(
        ForeignKey("messages.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    user_id: Mapped[str | None] = mapped_column(String(64))

    rating: Mapped[int] = mapped_column(Integer, nullable=False)

    helpful: Mapped[bool] = mapped_column(Boolean, nullable=False)

    comment: Mapped[str | None] = mapped_column(Text)

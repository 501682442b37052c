"""
模型混入类 (Mixins)

提供可复用的模型字段和行为，通过多重继承添加到具体模型中。

使用示例：
    class MyModel(TimestampMixin, Base):
        __tablename__ = "my_table"
        id: Mapped[UUID_PK] = mapped_column(default=new_id)
        # 自动获得 created_at 和 updated_at 字段
"""

from datetime import datetime, timezone
from typing import Annotated
from uuid import uuid4

from sqlalchemy import DateTime, String, func
from sqlalchemy.orm import Mapped, mapped_column

# ==================== 类型别名 ====================
# 用于定义 UUID 格式的主键字段
# String(36) 对应 UUID 的标准格式：xxxxxxxx-xxxx-xxxx-xxxx-xxxxxxxxxxxx
UUID_PK = Annotated[str, mapped_column(String(36), primary_key=True)]


def new_id() -> str:
    """生成新的 UUID 主键"""
    return str(uuid4())


def utcnow() -> datetime:
    """当前 UTC 时间（微秒精度）"""
    return datetime.now(timezone.utc)


class TimestampMixin:
    """
    时间戳混入类

    - created_at: 记录创建时间
    - updated_at: 记录最后更新时间，每次 UPDATE 时自动更新

    时间戳由应用侧生成（微秒精度），消息排序依赖它；
    server_default 仅作为直接写库时的兜底。
    """

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        nullable=False,
    )

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        onupdate=utcnow,
        nullable=False,
    )


def as_utc(value: datetime | None) -> datetime | None:
    """将数据库读出的时间统一为带时区的 UTC（SQLite 不保存时区信息）"""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)

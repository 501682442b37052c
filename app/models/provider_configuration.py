"""
模型提供商配置 (ProviderConfiguration)

存储对话/向量化后端的配置，可通过管理接口动态修改，无需重启服务。

约束：
- 同一时刻最多一个配置处于 is_active + is_default 状态
- 配置在每次调用时解析（ProviderRegistry），不做长期缓存
- API Key 以密文存储，由 CredentialCipher 加解密
"""

from sqlalchemy import Boolean, Float, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base
from app.models.mixins import UUID_PK, TimestampMixin, new_id


class ProviderKind:
    """支持的提供商类型"""
    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    GEMINI = "gemini"
    OLLAMA = "ollama"

    ALL = (OPENAI, ANTHROPIC, GEMINI, OLLAMA)


class ProviderConfiguration(TimestampMixin, Base):
    """
    提供商配置表

    字段说明：
    - name: 配置名称（管理后台显示）
    - provider: 提供商类型（openai/anthropic/gemini/ollama）
    - model_name: 对话模型名称（如 gpt-4o、claude-3-5-sonnet、gemini-1.5-pro）
    - embedding_model: Embedding 模型名称（为空时使用提供商默认模型）
    - api_key_encrypted: 加密后的 API Key
    - api_endpoint: 自定义端点（可选）
    - temperature / max_tokens: 生成参数
    - context_window: 模型上下文窗口大小（token）
    - top_k / similarity_threshold: 检索参数
    - system_prompt: 系统提示词
    """
    __tablename__ = "provider_configurations"

    id: Mapped[UUID_PK] = mapped_column(default=new_id)

    name: Mapped[str] = mapped_column(String(100), nullable=False)

    provider: Mapped[str] = mapped_column(String(20), nullable=False)

    model_name: Mapped[str] = mapped_column(String(100), nullable=False)

    embedding_model: Mapped[str | None] = mapped_column(String(100))

    api_key_encrypted: Mapped[str] = mapped_column(Text, nullable=False, default="")

    api_endpoint: Mapped[str | None] = mapped_column(String(255))

    # ==================== 生成参数 ====================
    temperature: Mapped[float] = mapped_column(Float, default=0.7, nullable=False)
    max_tokens: Mapped[int] = mapped_column(Integer, default=1000, nullable=False)
    context_window: Mapped[int | None] = mapped_column(Integer)

    # ==================== 检索参数 ====================
    top_k: Mapped[int] = mapped_column(Integer, default=5, nullable=False)
    similarity_threshold: Mapped[float] = mapped_column(Float, default=0.7, nullable=False)

    system_prompt: Mapped[str] = mapped_column(
        Text,
        default="You are a helpful tax compliance assistant for Sierra Leone.",
        nullable=False,
    )

    # ==================== 状态 ====================
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False, index=True)
    is_default: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False, index=True)

    created_by: Mapped[str | None] = mapped_column(String(64))
    updated_by: Mapped[str | None] = mapped_column(String(64))

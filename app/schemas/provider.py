"""
提供商配置相关的请求/响应模型

API Key 只在创建/更新时以明文提交，响应中只返回是否已配置。
"""

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

ProviderName = Literal["openai", "anthropic", "gemini", "ollama"]


class ProviderConfigCreate(BaseModel):
    """
    创建提供商配置请求

    示例:
    ```json
    {
        "name": "OpenAI GPT-4o",
        "provider": "openai",
        "model_name": "gpt-4o",
        "api_key": "sk-...",
        "is_default": true
    }
    ```
    """
    name: str = Field(..., min_length=1, max_length=100, description="配置名称")
    provider: ProviderName = Field(..., description="提供商类型")
    model_name: str = Field(..., min_length=1, max_length=100, description="对话模型名称")
    embedding_model: str | None = Field(default=None, max_length=100, description="Embedding 模型名称")
    api_key: str | None = Field(default=None, description="API Key（明文，存储时加密）")
    api_endpoint: str | None = Field(default=None, max_length=255, description="自定义端点")
    temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    max_tokens: int = Field(default=1000, ge=1, le=32000, description="最大输出 token 数")
    context_window: int | None = Field(default=None, ge=256, description="上下文窗口（token）")
    top_k: int = Field(default=5, ge=1, le=50, description="检索片段数量")
    similarity_threshold: float = Field(default=0.7, ge=-1.0, le=1.0, description="相似度阈值")
    system_prompt: str = Field(
        default="You are a helpful tax compliance assistant for Sierra Leone.",
        min_length=1,
    )
    is_active: bool = True
    is_default: bool = False


class ProviderConfigUpdate(BaseModel):
    """更新提供商配置请求（只更新提交的字段）"""
    name: str | None = Field(default=None, min_length=1, max_length=100)
    model_name: str | None = Field(default=None, min_length=1, max_length=100)
    embedding_model: str | None = Field(default=None, max_length=100)
    api_key: str | None = None
    api_endpoint: str | None = Field(default=None, max_length=255)
    temperature: float | None = Field(default=None, ge=0.0, le=2.0)
    max_tokens: int | None = Field(default=None, ge=1, le=32000)
    context_window: int | None = Field(default=None, ge=256)
    top_k: int | None = Field(default=None, ge=1, le=50)
    similarity_threshold: float | None = Field(default=None, ge=-1.0, le=1.0)
    system_prompt: str | None = Field(default=None, min_length=1)
    is_active: bool | None = None
    is_default: bool | None = None


class ProviderConfigResponse(BaseModel):
    """提供商配置响应"""
    id: str
    name: str
    provider: str
    model_name: str
    embedding_model: str | None = None
    api_endpoint: str | None = None
    has_api_key: bool = False
    temperature: float
    max_tokens: int
    context_window: int | None = None
    top_k: int
    similarity_threshold: float
    system_prompt: str
    is_active: bool
    is_default: bool
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_model(cls, config) -> "ProviderConfigResponse":
        return cls(
            id=config.id,
            name=config.name,
            provider=config.provider,
            model_name=config.model_name,
            embedding_model=config.embedding_model,
            api_endpoint=config.api_endpoint,
            has_api_key=bool(config.api_key_encrypted),
            temperature=config.temperature,
            max_tokens=config.max_tokens,
            context_window=config.context_window,
            top_k=config.top_k,
            similarity_threshold=config.similarity_threshold,
            system_prompt=config.system_prompt,
            is_active=config.is_active,
            is_default=config.is_default,
            created_at=config.created_at,
            updated_at=config.updated_at,
        )

"""
提供商注册表 (Provider Registry)

在每次调用时解析当前活动配置（is_active + is_default），解密凭证，
并创建对应的对话 / Embedding 适配器。配置不做长期缓存，
管理员修改或删除配置后下一次调用立即生效。

Embedding 兜底：
    Anthropic 等后端没有 Embedding 接口，此时改用 FALLBACK_EMBEDDING_* 配置的后端，
    每次使用兜底都会记录 WARNING 日志；未配置兜底时抛出 ConfigurationError。

使用示例：
    from app.services.provider_registry import provider_registry

    resolved = await provider_registry.resolve(session)
    vector = await resolved.embedding.embed("What is the withholding tax rate?")
    result = await resolved.chat.chat(messages, temperature=resolved.temperature, max_tokens=resolved.max_tokens)
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import get_settings
from app.exceptions import ConfigurationError
from app.infra.crypto import CredentialCipher, get_cipher
from app.infra.embeddings import build_embedding_adapter
from app.infra.llm import build_chat_adapter
from app.infra.providers import ChatCapable, EmbeddingCapable
from app.models import ProviderConfiguration, ProviderKind

logger = logging.getLogger(__name__)

# 没有 Embedding 接口的后端
CHAT_ONLY_PROVIDERS = frozenset({ProviderKind.ANTHROPIC})


@dataclass
class ResolvedProvider:
    """解析后的活动提供商（配置参数 + 适配器）"""
    config_id: str
    provider: str
    model_name: str
    temperature: float
    max_tokens: int
    context_window: int
    top_k: int
    similarity_threshold: float
    system_prompt: str
    chat: ChatCapable
    embedding: EmbeddingCapable
    embedding_is_fallback: bool = False

    @property
    def embedding_label(self) -> str:
        """写入片段的 embedding_model 标识，如 openai:text-embedding-3-small"""
        return f"{self.embedding.provider_name}:{self.embedding.model_name}"


class ProviderRegistry:
    """
    提供商注册表

    适配器工厂和凭证解密器可注入，便于测试替换。
    """

    def __init__(
        self,
        cipher_factory: Callable[[], CredentialCipher] = get_cipher,
        chat_factory: Callable[..., ChatCapable] = build_chat_adapter,
        embedding_factory: Callable[..., EmbeddingCapable] = build_embedding_adapter,
    ):
        self._cipher_factory = cipher_factory
        self._chat_factory = chat_factory
        self._embedding_factory = embedding_factory

    async def get_active_configuration(self, session: AsyncSession) -> ProviderConfiguration:
        """
        获取活动默认配置

        Raises:
            ConfigurationError: 没有活动默认配置
        """
        result = await session.execute(
            select(ProviderConfiguration)
            .where(
                ProviderConfiguration.is_active.is_(True),
                ProviderConfiguration.is_default.is_(True),
            )
            .order_by(ProviderConfiguration.updated_at.desc())
            .limit(1)
        )
        config = result.scalar_one_or_none()
        if config is None:
            raise ConfigurationError("没有可用的模型提供商配置，请在管理后台设置默认提供商")
        if config.provider not in ProviderKind.ALL:
            raise ConfigurationError(f"不支持的模型提供商: {config.provider}")
        return config

    def _decrypt(self, config: ProviderConfiguration) -> str | None:
        if not config.api_key_encrypted:
            if config.provider != ProviderKind.OLLAMA:
                raise ConfigurationError("提供商凭证未配置", provider=config.provider)
            return None
        return self._cipher_factory().decrypt(config.api_key_encrypted)

    def build_embedding(
        self,
        config: ProviderConfiguration,
        api_key: str | None,
    ) -> tuple[EmbeddingCapable, bool]:
        """
        为配置创建 Embedding 适配器

        Returns:
            (adapter, is_fallback)
        """
        if config.provider not in CHAT_ONLY_PROVIDERS:
            adapter = self._embedding_factory(
                config.provider,
                config.embedding_model,
                api_key=api_key,
                base_url=config.api_endpoint,
            )
            return adapter, False

        fallback = get_settings().get_fallback_embedding_config()
        if fallback is None:
            raise ConfigurationError(
                "当前对话后端不支持 Embedding，且未配置 FALLBACK_EMBEDDING_PROVIDER",
                provider=config.provider,
            )
        logger.warning(
            f"{config.provider} 不支持 Embedding，使用兜底后端 {fallback['provider']}:{fallback['model']}",
            extra={"config_id": config.id},
        )
        adapter = self._embedding_factory(
            fallback["provider"],
            fallback["model"],
            api_key=fallback["api_key"],
            base_url=fallback["base_url"],
        )
        return adapter, True

    async def resolve(self, session: AsyncSession) -> ResolvedProvider:
        """
        解析活动配置并创建对话和 Embedding 适配器

        Raises:
            ConfigurationError: 无活动配置 / 凭证无法解密 / 无可用 Embedding 后端
        """
        config = await self.get_active_configuration(session)
        api_key = self._decrypt(config)
        chat = self._chat_factory(
            config.provider,
            config.model_name,
            api_key=api_key,
            base_url=config.api_endpoint,
        )
        embedding, is_fallback = self.build_embedding(config, api_key)

        return ResolvedProvider(
            config_id=config.id,
            provider=config.provider,
            model_name=config.model_name,
            temperature=config.temperature,
            max_tokens=config.max_tokens,
            context_window=config.context_window or get_settings().default_context_window,
            top_k=config.top_k,
            similarity_threshold=config.similarity_threshold,
            system_prompt=config.system_prompt,
            chat=chat,
            embedding=embedding,
            embedding_is_fallback=is_fallback,
        )

    async def resolve_embedding(self, session: AsyncSession) -> EmbeddingCapable:
        """只解析 Embedding 适配器（摄取任务使用）"""
        config = await self.get_active_configuration(session)
        embedding, _ = self.build_embedding(config, self._decrypt(config))
        return embedding


provider_registry = ProviderRegistry()

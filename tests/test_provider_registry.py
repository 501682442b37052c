"""
提供商注册表与配置管理测试

- 活动默认配置解析
- 凭证加解密
- Anthropic 的 Embedding 兜底
- 配置增删改（默认标记唯一）
"""

import pytest

from app.exceptions import ConfigurationError, NotFoundError
from app.infra.crypto import FernetCredentialCipher, generate_key
from app.infra.embeddings import OllamaEmbeddingAdapter, OpenAIEmbeddingAdapter
from app.infra.llm import AnthropicChatAdapter, OpenAIChatAdapter
from app.schemas.provider import ProviderConfigCreate, ProviderConfigUpdate
from app.services import provider_config as config_service
from app.services.provider_registry import ProviderRegistry



@pytest.fixture
def real_registry(cipher):
    """使用真实适配器工厂（不发出网络请求）"""
    return ProviderRegistry(cipher_factory=lambda: cipher)


class TestCredentialCipher:
    def test_round_trip_and_empty(self, cipher):
        token = cipher.encrypt("sk-secret")
        assert token != "sk-secret"
        assert cipher.decrypt(token) == "sk-secret"
        assert cipher.encrypt("") == ""
        assert cipher.decrypt("") == ""

    def test_wrong_key_is_configuration_error(self, cipher):
        token = cipher.encrypt("sk-secret")
        with pytest.raises(ConfigurationError):
            FernetCredentialCipher(generate_key()).decrypt(token)

    def test_invalid_key(self):
        with pytest.raises(ConfigurationError):
            FernetCredentialCipher("not-a-fernet-key")


class TestProviderRegistry:
    @pytest.mark.asyncio
    async def test_no_configuration(self, session, real_registry):
        with pytest.raises(ConfigurationError):
            await real_registry.resolve(session)

    @pytest.mark.asyncio
    async def test_inactive_or_non_default_is_ignored(self, session, make_provider, real_registry):
        await make_provider(name="inactive", is_active=False)
        await make_provider(name="not-default", is_default=False)
        with pytest.raises(ConfigurationError):
            await real_registry.get_active_configuration(session)

    @pytest.mark.asyncio
    async def test_resolve_openai(self, session, make_provider, real_registry, settings):
        config = await make_provider(context_window=None, top_k=3)

        resolved = await real_registry.resolve(session)

        assert resolved.config_id == config.id
        assert isinstance(resolved.chat, OpenAIChatAdapter)
        assert isinstance(resolved.embedding, OpenAIEmbeddingAdapter)
        assert resolved.embedding_is_fallback is False
        assert resolved.context_window == settings.default_context_window
        assert resolved.top_k == 3
        assert resolved.embedding_label == f"openai:{settings.openai_embedding_model}"

    @pytest.mark.asyncio
    async def test_missing_credential(self, session, make_provider, real_registry):
        await make_provider(api_key_encrypted="")
        with pytest.raises(ConfigurationError):
            await real_registry.resolve(session)

    @pytest.mark.asyncio
    async def test_ollama_needs_no_credential(self, session, make_provider, real_registry):
        await make_provider(provider="ollama", model_name="llama3", api_key_encrypted="")
        resolved = await real_registry.resolve(session)
        assert isinstance(resolved.embedding, OllamaEmbeddingAdapter)

    @pytest.mark.asyncio
    async def test_undecryptable_credential(self, session, make_provider, real_registry):
        other = FernetCredentialCipher(generate_key())
        await make_provider(api_key_encrypted=other.encrypt("sk-test"))
        with pytest.raises(ConfigurationError):
            await real_registry.resolve(session)

    @pytest.mark.asyncio
    async def test_anthropic_without_fallback(self, session, make_provider, real_registry, settings, monkeypatch):
        monkeypatch.setattr(settings, "fallback_embedding_provider", None)
        await make_provider(provider="anthropic", model_name="claude-3-5-sonnet")
        with pytest.raises(ConfigurationError):
            await real_registry.resolve(session)

    @pytest.mark.asyncio
    async def test_anthropic_uses_fallback_embedding(self, session, make_provider, real_registry, settings, monkeypatch, caplog):
        monkeypatch.setattr(settings, "fallback_embedding_provider", "ollama")
        monkeypatch.setattr(settings, "fallback_embedding_model", "nomic-embed-text")
        await make_provider(provider="anthropic", model_name="claude-3-5-sonnet")

        with caplog.at_level("WARNING", logger="app.services.provider_registry"):
            resolved = await real_registry.resolve(session)

        assert isinstance(resolved.chat, AnthropicChatAdapter)
        assert isinstance(resolved.embedding, OllamaEmbeddingAdapter)
        assert resolved.embedding.model_name == "nomic-embed-text"
        assert resolved.embedding_is_fallback is True
        assert any("兜底" in r.getMessage() for r in caplog.records)

    @pytest.mark.asyncio
    async def test_configuration_change_takes_effect_immediately(self, session, make_provider, real_registry):
        """配置不缓存：删除后下一次解析立即失败"""
        config = await make_provider()
        assert (await real_registry.resolve(session)).config_id == config.id

        await config_service.delete_provider_config(session, config.id)
        with pytest.raises(ConfigurationError):
            await real_registry.resolve(session)


class TestProviderConfigService:
    @pytest.mark.asyncio
    async def test_create_encrypts_key(self, session, cipher):
        config = await config_service.create_provider_config(
            session,
            ProviderConfigCreate(name="OpenAI", provider="openai", model_name="gpt-4o", api_key="sk-live"),
            user_id="admin-1",
        )
        assert config.api_key_encrypted and "sk-live" not in config.api_key_encrypted
        assert cipher.decrypt(config.api_key_encrypted) == "sk-live"
        assert config.created_by == "admin-1"

    @pytest.mark.asyncio
    async def test_only_one_default(self, session):
        first = await config_service.create_provider_config(
            session,
            ProviderConfigCreate(name="A", provider="ollama", model_name="llama3", is_default=True),
        )
        second = await config_service.create_provider_config(
            session,
            ProviderConfigCreate(name="B", provider="ollama", model_name="mistral", is_default=True),
        )
        await session.refresh(first)
        assert first.is_default is False
        assert second.is_default is True

        await config_service.update_provider_config(session, first.id, ProviderConfigUpdate(is_default=True))
        await session.refresh(second)
        assert second.is_default is False

    @pytest.mark.asyncio
    async def test_update_only_changes_submitted_fields(self, session, cipher):
        config = await config_service.create_provider_config(
            session,
            ProviderConfigCreate(name="A", provider="openai", model_name="gpt-4o", api_key="sk-1", top_k=7),
        )
        updated = await config_service.update_provider_config(
            session, config.id, ProviderConfigUpdate(temperature=0.1), user_id="admin-2"
        )
        assert updated.temperature == 0.1
        assert updated.top_k == 7
        assert cipher.decrypt(updated.api_key_encrypted) == "sk-1"
        assert updated.updated_by == "admin-2"

        cleared = await config_service.update_provider_config(session, config.id, ProviderConfigUpdate(api_key=""))
        assert cleared.api_key_encrypted == ""

    @pytest.mark.asyncio
    async def test_missing_config(self, session):
        with pytest.raises(NotFoundError):
            await config_service.get_provider_config(session, "missing")
        with pytest.raises(NotFoundError):
            await config_service.delete_provider_config(session, "missing")

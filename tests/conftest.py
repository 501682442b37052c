"""
测试公共夹具

- 每个测试使用独立的临时 SQLite 文件数据库（aiosqlite），并发会话各自拿到连接
- 提供商适配器用假实现替换：对话返回固定文本，向量化使用确定性哈希向量
- 凭证使用测试时生成的 Fernet 密钥加密
"""

import asyncio
import os

from cryptography.fernet import Fernet

# 设置测试环境变量（必须在导入 app 模块之前）
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./test.db")
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("CREDENTIAL_ENCRYPTION_KEY", Fernet.generate_key().decode("ascii"))
os.environ.setdefault("PROVIDER_RETRY_BASE_DELAY", "0")

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402

from app.config import get_settings  # noqa: E402
from app.db.session import build_engine, build_session_factory, init_models  # noqa: E402
from app.infra.crypto import FernetCredentialCipher  # noqa: E402
from app.infra.embeddings import HashEmbeddingAdapter  # noqa: E402
from app.infra.providers import ChatMessage, ChatResult  # noqa: E402
from app.infra.vector_index import InMemoryVectorIndex  # noqa: E402
from app.models import ProviderConfiguration  # noqa: E402
from app.services.provider_registry import ProviderRegistry  # noqa: E402


class FakeChatAdapter:
    """记录调用的假对话后端"""

    provider_name = "openai"

    def __init__(self, reply: str = "Returns are due by the 15th.", delay: float = 0.0):
        self.model_name = "gpt-test"
        self.reply = reply
        self.delay = delay
        self.error: Exception | None = None
        self.calls: list[list[ChatMessage]] = []

    async def chat(self, messages: list[ChatMessage], *, temperature: float, max_tokens: int) -> ChatResult:
        self.calls.append(list(messages))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return ChatResult(
            content=self.reply,
            provider=self.provider_name,
            model=self.model_name,
            input_tokens=sum(len(m.content) // 4 for m in messages),
            output_tokens=len(self.reply) // 4,
        )


class FlakyEmbeddingAdapter(HashEmbeddingAdapter):
    """前 succeed_batches 个批次成功，之后抛出指定异常"""

    def __init__(self, succeed_batches: int, error: Exception, dim: int = 256):
        super().__init__(dim)
        self.succeed_batches = succeed_batches
        self.error = error
        self.batches = 0

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        self.batches += 1
        if self.batches > self.succeed_batches:
            raise self.error
        return await super().embed_batch(texts)


@pytest.fixture
def settings():
    return get_settings()


@pytest.fixture
def cipher():
    return FernetCredentialCipher(get_settings().credential_encryption_key)


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    await init_models(bind=engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest_asyncio.fixture
async def session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def index():
    return InMemoryVectorIndex()


@pytest.fixture
def chat_adapter():
    return FakeChatAdapter()


@pytest.fixture
def embedding_adapter():
    return HashEmbeddingAdapter()


@pytest.fixture
def make_registry(cipher, chat_adapter, embedding_adapter):
    """创建使用假适配器的提供商注册表，可替换 Embedding 适配器"""
    def _make(embedding=None) -> ProviderRegistry:
        def chat_factory(provider, model, api_key=None, base_url=None):
            return chat_adapter

        def embedding_factory(provider, model, api_key=None, base_url=None):
            return embedding or embedding_adapter

        return ProviderRegistry(
            cipher_factory=lambda: cipher,
            chat_factory=chat_factory,
            embedding_factory=embedding_factory,
        )
    return _make


@pytest.fixture
def registry(make_registry):
    return make_registry()


async def add_provider(session, cipher, **overrides) -> ProviderConfiguration:
    """写入一个活动默认提供商配置"""
    values = {
        "name": "default",
        "provider": "openai",
        "model_name": "gpt-test",
        "api_key_encrypted": cipher.encrypt("sk-test"),
        "similarity_threshold": 0.2,
        "is_active": True,
        "is_default": True,
    }
    values.update(overrides)
    config = ProviderConfiguration(**values)
    session.add(config)
    await session.commit()
    return config


@pytest.fixture
def make_provider(session, cipher):
    """写入提供商配置的工厂：await make_provider(provider="anthropic", ...)"""
    async def _make(**overrides) -> ProviderConfiguration:
        return await add_provider(session, cipher, **overrides)
    return _make


@pytest_asyncio.fixture
async def provider(make_provider):
    return await make_provider()


@pytest.fixture
def flaky_embedding():
    """FlakyEmbeddingAdapter 工厂"""
    return FlakyEmbeddingAdapter

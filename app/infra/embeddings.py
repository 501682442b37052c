"""
文本向量化模块 (Embeddings)

将文本转换为向量表示，用于语义相似度计算。

支持的 Embedding 提供者：
- OpenAI (text-embedding-3-small/large)，通过 openai SDK
- Gemini (text-embedding-004)，通过 REST API
- Ollama (本地模型：bge-m3 等)，通过 REST API
- Hash（确定性哈希向量，无语义，仅用于开发测试）

Anthropic 没有 Embedding 接口，由 ProviderRegistry 切换到兜底后端。

使用示例：
    adapter = OpenAIEmbeddingAdapter(api_key="sk-...", model="text-embedding-3-small")
    vec = await adapter.embed("What is the GST rate?")
    vecs = await adapter.embed_batch(["文本1", "文本2"])
"""

import hashlib
import logging
import math
from functools import lru_cache

import httpx
import openai
from openai import AsyncOpenAI

from app.config import get_settings
from app.exceptions import PermanentProviderError
from app.infra.providers import classify_httpx_error, classify_openai_error, decode_response
from app.infra.retry import call_with_retry

logger = logging.getLogger(__name__)


@lru_cache(maxsize=8)
def _get_openai_client(api_key: str | None, base_url: str | None, timeout: float) -> AsyncOpenAI:
    """获取 OpenAI 客户端（重试由 call_with_retry 负责，SDK 自身不重试）"""
    return AsyncOpenAI(
        api_key=api_key or "dummy",
        base_url=base_url,
        timeout=timeout,
        max_retries=0,
    )


def _check_batch(vectors: list[list[float]], expected: int, provider: str) -> list[list[float]]:
    if len(vectors) != expected:
        raise PermanentProviderError(
            f"返回向量数量 {len(vectors)} 与输入数量 {expected} 不一致",
            provider=provider,
        )
    return vectors


class OpenAIEmbeddingAdapter:
    """OpenAI Embedding 适配器"""

    provider_name = "openai"

    def __init__(
        self,
        api_key: str | None,
        model: str,
        base_url: str | None = None,
        timeout: float | None = None,
    ):
        settings = get_settings()
        self.model_name = model
        self._api_key = api_key
        self._base_url = base_url or settings.openai_api_base
        self._timeout = timeout or settings.embedding_timeout_seconds

    @property
    def _client(self) -> AsyncOpenAI:
        return _get_openai_client(self._api_key, self._base_url, self._timeout)

    async def embed(self, text: str) -> list[float]:
        return (await self.embed_batch([text]))[0]

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []

        async def _once() -> list[list[float]]:
            try:
                response = await self._client.embeddings.create(model=self.model_name, input=texts)
            except openai.APIError as e:
                raise classify_openai_error(e, self.provider_name) from e
            sorted_data = sorted(response.data, key=lambda x: x.index)
            return [d.embedding for d in sorted_data]

        vectors = await call_with_retry(_once, operation="embedding", provider=self.provider_name)
        return _check_batch(vectors, len(texts), self.provider_name)


class GeminiEmbeddingAdapter:
    """Gemini Embedding 适配器（batchEmbedContents 接口）"""

    provider_name = "gemini"

    def __init__(
        self,
        api_key: str | None,
        model: str,
        base_url: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        settings = get_settings()
        self.model_name = model
        self._api_key = api_key
        self._base_url = (base_url or settings.gemini_api_base).rstrip("/")
        self._timeout = timeout or settings.embedding_timeout_seconds
        self._transport = transport

    async def embed(self, text: str) -> list[float]:
        return (await self.embed_batch([text]))[0]

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        url = f"{self._base_url}/models/{self.model_name}:batchEmbedContents"
        payload = {
            "requests": [
                {
                    "model": f"models/{self.model_name}",
                    "content": {"parts": [{"text": text}]},
                }
                for text in texts
            ]
        }

        async def _once() -> list[list[float]]:
            try:
                async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                    response = await client.post(url, params={"key": self._api_key}, json=payload)
                    response.raise_for_status()
            except httpx.HTTPError as e:
                raise classify_httpx_error(e, self.provider_name) from e
            return decode_response(
                response,
                lambda body: [list(item["values"]) for item in body["embeddings"]],
                self.provider_name,
            )

        vectors = await call_with_retry(_once, operation="embedding", provider=self.provider_name)
        return _check_batch(vectors, len(texts), self.provider_name)


class OllamaEmbeddingAdapter:
    """Ollama Embedding 适配器（/api/embed 支持批量输入）"""

    provider_name = "ollama"

    def __init__(
        self,
        model: str,
        base_url: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        settings = get_settings()
        self.model_name = model
        self._base_url = (base_url or settings.ollama_base_url).rstrip("/")
        self._timeout = timeout or settings.embedding_timeout_seconds
        self._transport = transport

    async def embed(self, text: str) -> list[float]:
        return (await self.embed_batch([text]))[0]

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        url = f"{self._base_url}/api/embed"

        async def _once() -> list[list[float]]:
            try:
                async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                    response = await client.post(url, json={"model": self.model_name, "input": texts})
                    response.raise_for_status()
            except httpx.HTTPError as e:
                raise classify_httpx_error(e, self.provider_name) from e
            return decode_response(
                response,
                lambda body: [list(vector) for vector in body["embeddings"]],
                self.provider_name,
            )

        vectors = await call_with_retry(_once, operation="embedding", provider=self.provider_name)
        return _check_batch(vectors, len(texts), self.provider_name)


def deterministic_hash_embed(text: str, dim: int = 256) -> list[float]:
    """
    确定性哈希 Embedding（无需 API，用于测试）

    使用 MD5 哈希（确定性）替代 Python hash()（每次运行不同）。
    注意：无语义信息，仅用于开发测试环境。

    Args:
        text: 输入文本
        dim: 向量维度

    Returns:
        list[float]: 归一化后的向量
    """
    vec = [0.0] * dim
    for token in text.lower().split():
        h = int(hashlib.md5(token.encode()).hexdigest(), 16)
        vec[h % dim] += 1.0

    # L2 归一化
    norm = math.sqrt(sum(v * v for v in vec)) or 1.0
    return [v / norm for v in vec]


class HashEmbeddingAdapter:
    """确定性哈希 Embedding 适配器（开发/测试）"""

    provider_name = "hash"

    def __init__(self, dim: int = 256):
        self.model_name = f"hash-{dim}"
        self.dim = dim

    async def embed(self, text: str) -> list[float]:
        return deterministic_hash_embed(text, self.dim)

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        return [deterministic_hash_embed(t, self.dim) for t in texts]


def build_embedding_adapter(
    provider: str,
    model: str | None,
    api_key: str | None = None,
    base_url: str | None = None,
):
    """
    按提供商类型创建 Embedding 适配器

    Raises:
        ValueError: 提供商不支持 Embedding
    """
    settings = get_settings()
    provider = provider.lower()
    model = model or settings.default_embedding_model(provider)
    if provider == "openai":
        return OpenAIEmbeddingAdapter(api_key=api_key, model=model, base_url=base_url)
    elif provider == "gemini":
        return GeminiEmbeddingAdapter(api_key=api_key, model=model, base_url=base_url)
    elif provider == "ollama":
        return OllamaEmbeddingAdapter(model=model, base_url=base_url)
    elif provider == "hash":
        return HashEmbeddingAdapter()
    raise ValueError(f"提供商 {provider} 不支持 Embedding")

"""
提供商能力接口

对话后端和向量化后端按能力拆分为两个协议：
- EmbeddingCapable: 文本 -> 固定维度向量
- ChatCapable: 有序的角色消息 + 生成参数 -> 文本 + token 用量

每个后端一个适配器类（见 app.infra.embeddings / app.infra.llm），
由 ProviderRegistry 按配置中的 provider 字段选择。

错误分类：
- 408/409/429/5xx、超时、网络错误 -> TransientProviderError（可重试）
- 401/403 -> ConfigurationError（凭证无效，不重试）
- 其他 4xx -> PermanentProviderError（不重试）
"""

from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Protocol, TypeVar, runtime_checkable

import httpx
import openai

from app.exceptions import ConfigurationError, PermanentProviderError, ProviderError, TransientProviderError

TRANSIENT_STATUS_CODES = frozenset({408, 409, 429})
AUTH_STATUS_CODES = frozenset({401, 403})

T = TypeVar("T")


@dataclass(frozen=True)
class ChatMessage:
    role: str       # system / user / assistant
    content: str


@dataclass
class ChatResult:
    content: str
    provider: str
    model: str
    input_tokens: int = 0
    output_tokens: int = 0


@runtime_checkable
class EmbeddingCapable(Protocol):
    provider_name: str
    model_name: str

    async def embed(self, text: str) -> list[float]: ...

    async def embed_batch(self, texts: list[str]) -> list[list[float]]: ...


@runtime_checkable
class ChatCapable(Protocol):
    provider_name: str
    model_name: str

    async def chat(
        self,
        messages: list[ChatMessage],
        *,
        temperature: float,
        max_tokens: int,
    ) -> ChatResult: ...


def error_for_status(status_code: int, detail: str, provider: str) -> Exception:
    """按 HTTP 状态码构造对应的异常"""
    if status_code in AUTH_STATUS_CODES:
        return ConfigurationError(f"提供商凭证无效或无权限 (HTTP {status_code}): {detail}", provider=provider)
    if status_code in TRANSIENT_STATUS_CODES or status_code >= 500:
        return TransientProviderError(f"HTTP {status_code}: {detail}", provider=provider)
    return PermanentProviderError(f"HTTP {status_code}: {detail}", provider=provider)


def classify_httpx_error(exc: Exception, provider: str) -> Exception:
    """将 httpx 异常转换为业务异常"""
    if isinstance(exc, httpx.HTTPStatusError):
        detail = exc.response.text[:500]
        return error_for_status(exc.response.status_code, detail, provider)
    if isinstance(exc, httpx.TimeoutException):
        return TransientProviderError(f"请求超时: {exc}", provider=provider)
    if isinstance(exc, httpx.TransportError):
        return TransientProviderError(f"网络错误: {exc}", provider=provider)
    return ProviderError(str(exc), provider=provider)


def classify_openai_error(exc: openai.APIError, provider: str) -> Exception:
    """将 openai SDK 异常转换为业务异常"""
    if isinstance(exc, openai.APIStatusError):
        return error_for_status(exc.status_code, exc.message, provider)
    if isinstance(exc, openai.APIConnectionError):
        # APITimeoutError 是 APIConnectionError 的子类
        return TransientProviderError(f"连接失败: {exc}", provider=provider)
    return PermanentProviderError(str(exc), provider=provider)


def decode_response(response: httpx.Response, extract: Callable[[Any], T], provider: str) -> T:
    """
    解析 JSON 响应体并提取所需字段

    响应不是 JSON 或缺少字段时抛出 PermanentProviderError，
    与其他提供商错误走同一条失败路径。
    """
    try:
        return extract(response.json())
    except (AttributeError, KeyError, IndexError, TypeError, ValueError) as e:
        raise PermanentProviderError(f"响应格式无效: {e!r}", provider=provider) from e

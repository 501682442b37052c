"""
LLM 客户端模块

支持的对话后端：
- OpenAI (gpt-4o 等)，通过 openai SDK
- Anthropic (Claude)，通过 anthropic SDK，仅对话，无 Embedding
- Gemini (Google)，通过 REST API
- Ollama (本地模型)，通过 REST API

每个后端一个适配器类，统一实现 ChatCapable 协议：

    result = await adapter.chat(
        [ChatMessage("system", "You are ..."), ChatMessage("user", "What is PAYE?")],
        temperature=0.7,
        max_tokens=1000,
    )
    print(result.content, result.output_tokens)

超时和瞬时错误重试统一由 call_with_retry 处理。
"""

import logging
from functools import lru_cache

import anthropic
import httpx
import openai
from openai import AsyncOpenAI

from app.config import get_settings
from app.exceptions import PermanentProviderError, TransientProviderError
from app.infra.providers import (
    ChatMessage,
    ChatResult,
    classify_httpx_error,
    classify_openai_error,
    decode_response,
    error_for_status,
)
from app.infra.retry import call_with_retry

logger = logging.getLogger(__name__)


@lru_cache(maxsize=8)
def _get_openai_client(api_key: str | None, base_url: str | None, timeout: float) -> AsyncOpenAI:
    """获取 OpenAI 客户端"""
    return AsyncOpenAI(
        api_key=api_key or "dummy",
        base_url=base_url,
        timeout=timeout,
        max_retries=0,
    )


def _split_system(messages: list[ChatMessage]) -> tuple[str | None, list[ChatMessage]]:
    """拆出 system 消息（Anthropic/Gemini 的 system 是独立参数）"""
    system_parts = [m.content for m in messages if m.role == "system"]
    rest = [m for m in messages if m.role != "system"]
    return ("\n\n".join(system_parts) if system_parts else None), rest


class OpenAIChatAdapter:
    """OpenAI Chat Completions 适配器"""

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
        self._timeout = timeout or settings.chat_timeout_seconds

    async def chat(self, messages: list[ChatMessage], *, temperature: float, max_tokens: int) -> ChatResult:
        client = _get_openai_client(self._api_key, self._base_url, self._timeout)

        async def _once() -> ChatResult:
            try:
                response = await client.chat.completions.create(
                    model=self.model_name,
                    messages=[{"role": m.role, "content": m.content} for m in messages],
                    temperature=temperature,
                    max_tokens=max_tokens,
                )
            except openai.APIError as e:
                raise classify_openai_error(e, self.provider_name) from e
            usage = response.usage
            return ChatResult(
                content=response.choices[0].message.content or "",
                provider=self.provider_name,
                model=self.model_name,
                input_tokens=usage.prompt_tokens if usage else 0,
                output_tokens=usage.completion_tokens if usage else 0,
            )

        return await call_with_retry(_once, operation="chat", provider=self.provider_name)


def _classify_anthropic_error(exc: anthropic.APIError, provider: str) -> Exception:
    if isinstance(exc, anthropic.APIStatusError):
        return error_for_status(exc.status_code, exc.message, provider)
    if isinstance(exc, anthropic.APIConnectionError):
        return TransientProviderError(f"连接失败: {exc}", provider=provider)
    return PermanentProviderError(str(exc), provider=provider)


class AnthropicChatAdapter:
    """
    Anthropic Messages API 适配器

    与 OpenAI 的差异：
    - system 提示词是独立参数，不在 messages 列表中
    - 返回内容是 block 列表，只取 text 类型并拼接
    """

    provider_name = "anthropic"

    def __init__(
        self,
        api_key: str | None,
        model: str,
        base_url: str | None = None,
        timeout: float | None = None,
    ):
        settings = get_settings()
        self.model_name = model
        self._client = anthropic.AsyncAnthropic(
            api_key=api_key,
            base_url=base_url,
            timeout=timeout or settings.chat_timeout_seconds,
            max_retries=0,
        )

    async def chat(self, messages: list[ChatMessage], *, temperature: float, max_tokens: int) -> ChatResult:
        system, rest = _split_system(messages)
        kwargs = {
            "model": self.model_name,
            "max_tokens": max_tokens,
            "temperature": temperature,
            "messages": [{"role": m.role, "content": m.content} for m in rest],
        }
        if system:
            kwargs["system"] = system

        async def _once() -> ChatResult:
            try:
                response = await self._client.messages.create(**kwargs)
            except anthropic.APIError as e:
                raise _classify_anthropic_error(e, self.provider_name) from e
            text_blocks = [block.text for block in response.content if block.type == "text"]
            if not text_blocks:
                raise PermanentProviderError("Anthropic 未返回文本内容", provider=self.provider_name)
            return ChatResult(
                content="\n".join(text_blocks),
                provider=self.provider_name,
                model=self.model_name,
                input_tokens=response.usage.input_tokens,
                output_tokens=response.usage.output_tokens,
            )

        return await call_with_retry(_once, operation="chat", provider=self.provider_name)


def _gemini_fields(body: dict) -> tuple[bool, str, int, int]:
    """取出是否有候选结果、首个候选的文本和 token 用量"""
    candidates = body.get("candidates") or []
    parts = candidates[0].get("content", {}).get("parts", []) if candidates else []
    usage = body.get("usageMetadata", {})
    return (
        bool(candidates),
        "".join(p.get("text", "") for p in parts),
        usage.get("promptTokenCount", 0),
        usage.get("candidatesTokenCount", 0),
    )


class GeminiChatAdapter:
    """Gemini generateContent 适配器（assistant 角色映射为 model）"""

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
        self._timeout = timeout or settings.chat_timeout_seconds
        self._transport = transport

    async def chat(self, messages: list[ChatMessage], *, temperature: float, max_tokens: int) -> ChatResult:
        system, rest = _split_system(messages)
        url = f"{self._base_url}/models/{self.model_name}:generateContent"
        payload: dict = {
            "contents": [
                {
                    "role": "model" if m.role == "assistant" else "user",
                    "parts": [{"text": m.content}],
                }
                for m in rest
            ],
            "generationConfig": {
                "temperature": temperature,
                "maxOutputTokens": max_tokens,
            },
        }
        if system:
            payload["systemInstruction"] = {"parts": [{"text": system}]}

        async def _once() -> ChatResult:
            try:
                async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                    response = await client.post(url, params={"key": self._api_key}, json=payload)
                    response.raise_for_status()
            except httpx.HTTPError as e:
                raise classify_httpx_error(e, self.provider_name) from e

            found, content, input_tokens, output_tokens = decode_response(
                response, _gemini_fields, self.provider_name
            )
            if not found:
                raise PermanentProviderError("Gemini 未返回候选结果", provider=self.provider_name)
            return ChatResult(
                content=content,
                provider=self.provider_name,
                model=self.model_name,
                input_tokens=input_tokens,
                output_tokens=output_tokens,
            )

        return await call_with_retry(_once, operation="chat", provider=self.provider_name)


class OllamaChatAdapter:
    """Ollama /api/chat 适配器"""

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
        self._timeout = timeout or settings.chat_timeout_seconds
        self._transport = transport

    async def chat(self, messages: list[ChatMessage], *, temperature: float, max_tokens: int) -> ChatResult:
        url = f"{self._base_url}/api/chat"
        payload = {
            "model": self.model_name,
            "messages": [{"role": m.role, "content": m.content} for m in messages],
            "stream": False,
            "options": {
                "temperature": temperature,
                "num_predict": max_tokens,
            },
        }

        async def _once() -> ChatResult:
            try:
                async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                    response = await client.post(url, json=payload)
                    response.raise_for_status()
            except httpx.HTTPError as e:
                raise classify_httpx_error(e, self.provider_name) from e
            content, input_tokens, output_tokens = decode_response(
                response,
                lambda body: (
                    str(body["message"]["content"]),
                    body.get("prompt_eval_count", 0),
                    body.get("eval_count", 0),
                ),
                self.provider_name,
            )
            return ChatResult(
                content=content,
                provider=self.provider_name,
                model=self.model_name,
                input_tokens=input_tokens,
                output_tokens=output_tokens,
            )

        return await call_with_retry(_once, operation="chat", provider=self.provider_name)


def build_chat_adapter(
    provider: str,
    model: str,
    api_key: str | None = None,
    base_url: str | None = None,
):
    """
    按提供商类型创建对话适配器

    Raises:
        ValueError: 未知的提供商
    """
    provider = provider.lower()
    if provider == "openai":
        return OpenAIChatAdapter(api_key=api_key, model=model, base_url=base_url)
    elif provider == "anthropic":
        return AnthropicChatAdapter(api_key=api_key, model=model, base_url=base_url)
    elif provider == "gemini":
        return GeminiChatAdapter(api_key=api_key, model=model, base_url=base_url)
    elif provider == "ollama":
        return OllamaChatAdapter(model=model, base_url=base_url)
    raise ValueError(f"未知的 LLM 提供者: {provider}")

"""
提供商调用重试

只对瞬时错误（超时、限流、服务端错误）做指数退避重试，
永久错误（凭证无效、请求格式错误）立即抛出。

使用示例：
    from app.infra.retry import call_with_retry

    vectors = await call_with_retry(
        lambda: adapter._embed_batch_once(texts),
        operation="embedding",
        provider="openai",
    )
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

from app.config import get_settings
from app.exceptions import TransientProviderError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def backoff_delay(attempt: int, base_delay: float, max_delay: float) -> float:
    """第 attempt 次重试前的等待时间（attempt 从 0 开始）"""
    return min(max_delay, base_delay * (2 ** attempt))


async def call_with_retry(
    func: Callable[[], Awaitable[T]],
    *,
    operation: str,
    provider: str,
    max_retries: int | None = None,
    base_delay: float | None = None,
    max_delay: float | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """
    执行调用，遇到 TransientProviderError 时退避重试

    Args:
        func: 无参协程工厂，每次重试重新调用
        operation: 操作名（日志用）
        provider: 提供商名（日志用）
        max_retries: 最大重试次数（不含首次调用），默认读取配置
        base_delay / max_delay: 退避参数，默认读取配置
        sleep: 等待函数（测试时可替换）

    Raises:
        TransientProviderError: 重试耗尽后抛出最后一次错误
        其他异常: 立即抛出
    """
    settings = get_settings()
    if max_retries is None:
        max_retries = settings.provider_max_retries
    if base_delay is None:
        base_delay = settings.provider_retry_base_delay
    if max_delay is None:
        max_delay = settings.provider_retry_max_delay

    attempt = 0
    while True:
        try:
            return await func()
        except TransientProviderError as e:
            if attempt >= max_retries:
                logger.error(
                    f"{operation} 调用失败，已重试 {attempt} 次: {e}",
                    extra={"provider": provider, "operation": operation},
                )
                raise
            delay = backoff_delay(attempt, base_delay, max_delay)
            attempt += 1
            logger.warning(
                f"{operation} 调用暂时失败，{delay:.1f}s 后第 {attempt} 次重试: {e}",
                extra={"provider": provider, "operation": operation},
            )
            await sleep(delay)

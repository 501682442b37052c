"""
反馈与统计分析服务

- submit_feedback: 用户对 assistant 回复评分（1-5），user 消息不接受反馈
- AnalyticsService: 使用情况统计与热门话题，只读计算；
  结果按 (类型, 起止时间, limit) 缓存，TTL 到期或有新消息/反馈时失效
"""

import logging
import re
import time
from collections import Counter
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import get_settings
from app.exceptions import InvalidDateRangeError, InvalidFeedbackError, NotFoundError
from app.models import Conversation, Feedback, Message, MessageRole
from app.models.mixins import as_utc, utcnow
from app.schemas.feedback import PopularTopics, TopicCount, UsageAnalytics

logger = logging.getLogger(__name__)

STOP_WORDS = frozenset({
    "the", "and", "for", "are", "but", "not", "you", "all", "any", "can", "had", "her",
    "was", "one", "our", "out", "has", "have", "what", "when", "where", "which", "who",
    "will", "with", "this", "that", "there", "their", "them", "then", "they", "from",
    "your", "about", "would", "could", "should", "does", "how", "why", "into", "more",
    "some", "such", "than", "these", "those", "were", "been", "being", "also", "just",
    "like", "much", "many", "need", "please", "tell", "know", "want", "here", "very",
})

WORD_PATTERN = re.compile(r"[a-z0-9][a-z0-9'-]*")


async def submit_feedback(
    session: AsyncSession,
    user_id: str,
    message_id: str,
    rating: int,
    helpful: bool | None = None,
    comment: str | None = None,
    on_change=None,
) -> Feedback:
    """
    提交反馈

    Raises:
        InvalidFeedbackError: 评分不在 1-5 范围，或目标不是 assistant 消息
        NotFoundError: 消息不存在或不属于该用户的对话
    """
    if not 1 <= rating <= 5:
        raise InvalidFeedbackError(f"评分必须在 1-5 之间: {rating}")

    result = await session.execute(
        select(Message, Conversation.user_id)
        .join(Conversation, Conversation.id == Message.conversation_id)
        .where(Message.id == message_id)
    )
    row = result.one_or_none()
    if row is None or row[1] != user_id:
        raise NotFoundError(f"消息不存在: {message_id}")
    message = row[0]
    if message.role != MessageRole.ASSISTANT:
        raise InvalidFeedbackError("只能对助手回复提交反馈")

    feedback = Feedback(
        message_id=message_id,
        user_id=user_id,
        rating=rating,
        helpful=rating >= 4 if helpful is None else helpful,
        comment=comment,
    )
    session.add(feedback)
    await session.commit()

    logger.info(f"收到反馈 rating={rating}", extra={"message_id": message_id, "helpful": feedback.helpful})
    if on_change:
        on_change()
    return feedback


def extract_topics(texts: list[str], limit: int) -> list[tuple[str, int]]:
    """统计高频词：小写、去停用词、忽略长度 <= 3 的词；次数相同按字母序"""
    counter: Counter[str] = Counter()
    for text in texts:
        for word in WORD_PATTERN.findall(text.lower()):
            word = word.strip("'-")
            if len(word) > 3 and word not in STOP_WORDS:
                counter[word] += 1
    return sorted(counter.items(), key=lambda kv: (-kv[1], kv[0]))[:limit]


class AnalyticsService:
    """统计分析服务（带 TTL 缓存）"""

    def __init__(self, ttl_seconds: int | None = None, max_entries: int | None = None):
        settings = get_settings()
        self.ttl_seconds = settings.analytics_cache_ttl_seconds if ttl_seconds is None else ttl_seconds
        self.max_entries = settings.analytics_cache_max_entries if max_entries is None else max_entries
        self._cache: dict[tuple, tuple[float, Any]] = {}

    def invalidate(self) -> None:
        """新消息/反馈写入后调用"""
        self._cache.clear()

    def _cached(self, key: tuple) -> Any | None:
        entry = self._cache.get(key)
        if entry is None:
            return None
        expires_at, value = entry
        if time.monotonic() >= expires_at:
            del self._cache[key]
            return None
        return value

    def _store(self, key: tuple, value: Any) -> None:
        """写入缓存；先清掉过期条目，仍然满了就淘汰最早过期的条目"""
        if self.ttl_seconds <= 0 or self.max_entries <= 0:
            return
        now = time.monotonic()
        for stale in [k for k, (expires_at, _) in self._cache.items() if expires_at <= now]:
            del self._cache[stale]
        while key not in self._cache and len(self._cache) >= self.max_entries:
            oldest = min(self._cache, key=lambda k: self._cache[k][0])
            del self._cache[oldest]
        self._cache[key] = (now + self.ttl_seconds, value)

    @staticmethod
    def _window(start: datetime | None, end: datetime | None) -> tuple[datetime, datetime]:
        end = as_utc(end) or utcnow()
        start = as_utc(start) or end - timedelta(days=get_settings().analytics_default_days)
        if start > end:
            raise InvalidDateRangeError("开始时间不能晚于结束时间")
        return start, end

    async def get_usage_analytics(
        self,
        session: AsyncSession,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> UsageAnalytics:
        key = ("usage", start, end)
        cached = self._cached(key)
        if cached is not None:
            return cached

        start, end = self._window(start, end)

        total_conversations = await session.scalar(
            select(func.count(Conversation.id)).where(Conversation.created_at.between(start, end))
        ) or 0
        total_messages = await session.scalar(
            select(func.count(Message.id)).where(Message.created_at.between(start, end))
        ) or 0
        messages_in_window_conversations = await session.scalar(
            select(func.count(Message.id))
            .join(Conversation, Conversation.id == Message.conversation_id)
            .where(Conversation.created_at.between(start, end))
        ) or 0

        rows = await session.execute(
            select(Feedback.rating, Feedback.helpful, func.count(Feedback.id))
            .where(Feedback.created_at.between(start, end))
            .group_by(Feedback.rating, Feedback.helpful)
        )
        distribution = {rating: 0 for rating in range(1, 6)}
        helpful_count = 0
        rating_sum = 0
        for rating, helpful, count in rows.all():
            distribution[rating] = distribution.get(rating, 0) + count
            rating_sum += rating * count
            if helpful:
                helpful_count += count
        total_feedback = sum(distribution.values())

        analytics = UsageAnalytics(
            start=start,
            end=end,
            total_conversations=total_conversations,
            total_messages=total_messages,
            average_messages_per_conversation=round(
                messages_in_window_conversations / total_conversations, 2
            ) if total_conversations else 0.0,
            total_feedback=total_feedback,
            average_rating=round(rating_sum / total_feedback, 2) if total_feedback else 0.0,
            rating_distribution=distribution,
            helpful_percentage=round(helpful_count * 100 / total_feedback, 2) if total_feedback else 0.0,
        )
        self._store(key, analytics)
        return analytics

    async def get_popular_topics(
        self,
        session: AsyncSession,
        start: datetime | None = None,
        end: datetime | None = None,
        limit: int = 10,
    ) -> PopularTopics:
        key = ("topics", start, end, limit)
        cached = self._cached(key)
        if cached is not None:
            return cached

        start, end = self._window(start, end)
        result = await session.execute(
            select(Message.content).where(
                Message.role == MessageRole.USER,
                Message.created_at.between(start, end),
            )
        )
        topics = extract_topics(list(result.scalars().all()), limit)

        popular = PopularTopics(
            start=start,
            end=end,
            topics=[TopicCount(topic=word, count=count) for word, count in topics],
        )
        self._store(key, popular)
        return popular

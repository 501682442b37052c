"""
反馈与统计分析测试

测试 app/services/feedback.py：
- 反馈校验（评分范围、只接受 assistant 回复、所有权）
- 使用情况统计与评分分布
- 热门话题提取
- 统计缓存与失效
"""

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from app.exceptions import InvalidDateRangeError, InvalidFeedbackError, NotFoundError
from app.models import Feedback
from app.services.conversation import ConversationService
from app.services.feedback import AnalyticsService, extract_topics, submit_feedback


@pytest.fixture
def conversations(registry, index):
    return ConversationService(registry=registry, index=index)


class TestSubmitFeedback:
    @pytest.mark.asyncio
    async def test_helpful_inferred_from_rating(self, session, conversations, provider):
        outcome = await conversations.chat(session, "user-1", "What is GST?")
        changes = []

        good = await submit_feedback(session, "user-1", outcome.message_id, 5, on_change=lambda: changes.append(1))
        poor = await submit_feedback(session, "user-1", outcome.message_id, 2, comment="Too vague")
        overridden = await submit_feedback(session, "user-1", outcome.message_id, 3, helpful=True)

        assert (good.helpful, poor.helpful, overridden.helpful) == (True, False, True)
        assert poor.comment == "Too vague"
        assert changes == [1]
        result = await session.execute(select(Feedback).where(Feedback.message_id == outcome.message_id))
        assert len(result.scalars().all()) == 3

    @pytest.mark.asyncio
    @pytest.mark.parametrize("rating", [0, 6, -1])
    async def test_rating_out_of_range(self, session, conversations, provider, rating):
        outcome = await conversations.chat(session, "user-1", "What is GST?")
        with pytest.raises(InvalidFeedbackError):
            await submit_feedback(session, "user-1", outcome.message_id, rating)

    @pytest.mark.asyncio
    async def test_user_message_rejected(self, session, conversations, provider):
        outcome = await conversations.chat(session, "user-1", "What is GST?")
        with pytest.raises(InvalidFeedbackError):
            await submit_feedback(session, "user-1", outcome.user_message_id, 4)

    @pytest.mark.asyncio
    async def test_other_users_message_not_found(self, session, conversations, provider):
        outcome = await conversations.chat(session, "user-1", "What is GST?")
        with pytest.raises(NotFoundError):
            await submit_feedback(session, "user-2", outcome.message_id, 4)
        with pytest.raises(NotFoundError):
            await submit_feedback(session, "user-1", "missing-message", 4)


class TestUsageAnalytics:
    @pytest.mark.asyncio
    async def test_usage_numbers(self, session, conversations, provider):
        first = await conversations.chat(session, "user-1", "What is GST?")
        await conversations.chat(session, "user-1", "Who pays it?", first.conversation_id)
        second = await conversations.chat(session, "user-2", "What is PAYE?")
        await submit_feedback(session, "user-1", first.message_id, 5)
        await submit_feedback(session, "user-2", second.message_id, 2)

        usage = await AnalyticsService(ttl_seconds=0).get_usage_analytics(session)

        assert usage.total_conversations == 2
        assert usage.total_messages == 6
        assert usage.average_messages_per_conversation == 3.0
        assert usage.total_feedback == 2
        assert usage.average_rating == 3.5
        assert usage.rating_distribution == {1: 0, 2: 1, 3: 0, 4: 0, 5: 1}
        assert usage.helpful_percentage == 50.0
        assert usage.end - usage.start == timedelta(days=30)

    @pytest.mark.asyncio
    async def test_empty_window(self, session, conversations, provider):
        await conversations.chat(session, "user-1", "What is GST?")
        end = datetime.now(timezone.utc) - timedelta(days=60)

        usage = await AnalyticsService(ttl_seconds=0).get_usage_analytics(session, end - timedelta(days=1), end)

        assert usage.total_conversations == usage.total_messages == usage.total_feedback == 0
        assert usage.average_messages_per_conversation == usage.average_rating == 0.0
        assert usage.helpful_percentage == 0.0
        assert sum(usage.rating_distribution.values()) == 0

    @pytest.mark.asyncio
    async def test_invalid_range(self, session):
        now = datetime.now(timezone.utc)
        analytics = AnalyticsService()
        with pytest.raises(InvalidDateRangeError):
            await analytics.get_usage_analytics(session, now, now - timedelta(days=1))
        with pytest.raises(InvalidDateRangeError):
            await analytics.get_popular_topics(session, now, now - timedelta(days=1))

    @pytest.mark.asyncio
    async def test_results_cached_until_invalidated(self, session, conversations, provider):
        analytics = AnalyticsService(ttl_seconds=300)
        await conversations.chat(session, "user-1", "What is GST?")
        before = await analytics.get_usage_analytics(session)

        await conversations.chat(session, "user-1", "What is PAYE?")
        assert await analytics.get_usage_analytics(session) is before

        analytics.invalidate()
        after = await analytics.get_usage_analytics(session)
        assert after.total_conversations == 2

    @pytest.mark.asyncio
    async def test_zero_ttl_disables_cache(self, session, conversations, provider):
        analytics = AnalyticsService(ttl_seconds=0)
        await conversations.chat(session, "user-1", "What is GST?")
        await analytics.get_usage_analytics(session)
        await conversations.chat(session, "user-1", "What is PAYE?")
        assert (await analytics.get_usage_analytics(session)).total_conversations == 2

    @pytest.mark.asyncio
    async def test_cache_size_is_bounded(self, session):
        analytics = AnalyticsService(ttl_seconds=300, max_entries=3)
        end = datetime(2026, 10, 1, tzinfo=timezone.utc)
        windows = [(end - timedelta(days=days), end) for days in range(1, 8)]

        for start, stop in windows:
            await analytics.get_usage_analytics(session, start, stop)

        assert len(analytics._cache) == 3
        assert ("usage", *windows[0]) not in analytics._cache
        assert ("usage", *windows[-1]) in analytics._cache
        latest = await analytics.get_usage_analytics(session, *windows[-1])
        assert await analytics.get_usage_analytics(session, *windows[-1]) is latest

    @pytest.mark.asyncio
    async def test_expired_entries_dropped_on_store(self, session):
        analytics = AnalyticsService(ttl_seconds=300)
        end = datetime(2026, 10, 1, tzinfo=timezone.utc)
        for days in range(1, 4):
            await analytics.get_popular_topics(session, end - timedelta(days=days), end)
        # 让已有条目全部过期
        analytics._cache = {key: (0.0, value) for key, (_, value) in analytics._cache.items()}

        await analytics.get_usage_analytics(session, end - timedelta(days=1), end)

        assert list(analytics._cache) == [("usage", end - timedelta(days=1), end)]


class TestPopularTopics:
    def test_extract_topics(self):
        texts = [
            "What is the GST filing deadline?",
            "GST filing penalties",
            "PAYE deadline for employers",
        ]
        assert extract_topics(texts, limit=3) == [("deadline", 2), ("filing", 2), ("employers", 1)]

    def test_stop_words_and_short_words_ignored(self):
        assert extract_topics(["What would you like to know about tax?"], limit=10) == []

    @pytest.mark.asyncio
    async def test_topics_from_user_messages(self, session, conversations, chat_adapter, provider):
        chat_adapter.reply = "Penalties apply to late withholding returns."
        await conversations.chat(session, "user-1", "Withholding tax on dividends")
        await conversations.chat(session, "user-2", "Withholding tax rates")

        topics = await AnalyticsService(ttl_seconds=0).get_popular_topics(session, limit=2)

        assert [(t.topic, t.count) for t in topics.topics] == [("withholding", 2), ("dividends", 1)]

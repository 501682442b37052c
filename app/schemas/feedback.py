"""
反馈与统计分析的请求/响应模型
"""

from datetime import datetime

from pydantic import BaseModel, Field


class FeedbackRequest(BaseModel):
    """
    提交反馈请求

    helpful 未提供时按 rating >= 4 推断。
    """
    rating: int = Field(..., ge=1, le=5, description="评分 1-5")
    helpful: bool | None = Field(default=None, description="是否有帮助")
    comment: str | None = Field(default=None, max_length=2000, description="文字评论")


class FeedbackResponse(BaseModel):
    id: str
    message_id: str
    rating: int
    helpful: bool
    comment: str | None = None
    created_at: datetime

    model_config = {"from_attributes": True}


class UsageAnalytics(BaseModel):
    """使用情况统计"""
    start: datetime
    end: datetime
    total_conversations: int
    total_messages: int
    average_messages_per_conversation: float
    total_feedback: int
    average_rating: float
    rating_distribution: dict[int, int]
    helpful_percentage: float


class TopicCount(BaseModel):
    topic: str
    count: int


class PopularTopics(BaseModel):
    start: datetime
    end: datetime
    topics: list[TopicCount]

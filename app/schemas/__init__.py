"""
数据模式层 (Schemas)

使用 Pydantic 定义 API 的请求和响应模型：
- 自动数据验证
- 自动生成 OpenAPI 文档
- 类型安全的序列化/反序列化
"""

from app.schemas.conversation import (
    ChatReply,
    ChatRequest,
    ChatResponse,
    ConversationDetailResponse,
    ConversationListResponse,
    ConversationResponse,
    MessageResponse,
    SourceItem,
)
from app.schemas.feedback import (
    FeedbackRequest,
    FeedbackResponse,
    PopularTopics,
    TopicCount,
    UsageAnalytics,
)
from app.schemas.knowledge import (
    DocumentListResponse,
    DocumentResponse,
    DocumentUploadRequest,
    DocumentUploadResponse,
    JobStatusResponse,
    ReprocessResponse,
)
from app.schemas.provider import (
    ProviderConfigCreate,
    ProviderConfigResponse,
    ProviderConfigUpdate,
)

__all__ = [
    # Knowledge schemas
    "DocumentUploadRequest",
    "DocumentUploadResponse",
    "DocumentResponse",
    "DocumentListResponse",
    "JobStatusResponse",
    "ReprocessResponse",
    # Conversation schemas
    "ChatRequest",
    "ChatReply",
    "ChatResponse",
    "SourceItem",
    "MessageResponse",
    "ConversationResponse",
    "ConversationDetailResponse",
    "ConversationListResponse",
    # Feedback schemas
    "FeedbackRequest",
    "FeedbackResponse",
    "UsageAnalytics",
    "TopicCount",
    "PopularTopics",
    # Provider schemas
    "ProviderConfigCreate",
    "ProviderConfigUpdate",
    "ProviderConfigResponse",
]

"""
对话相关的请求/响应模型
"""

from datetime import datetime

from pydantic import BaseModel, Field


class ChatRequest(BaseModel):
    """
    对话请求

    示例:
    ```json
    {
        "conversation_id": null,
        "message": "When is the PAYE return due?"
    }
    ```
    conversation_id 为空时创建新对话。
    """
    conversation_id: str | None = Field(default=None, description="对话 ID（为空则新建）")
    message: str = Field(..., min_length=1, description="用户消息")


class SourceItem(BaseModel):
    """引用来源项"""
    chunk_id: str
    document_id: str
    document_title: str | None = None
    score: float


class ChatReply(BaseModel):
    message_id: str
    content: str
    context_found: bool
    sources: list[SourceItem] = Field(default_factory=list)
    provider: str
    model: str
    input_tokens: int = 0
    output_tokens: int = 0


class ChatResponse(BaseModel):
    conversation_id: str
    reply: ChatReply


class MessageResponse(BaseModel):
    """消息响应"""
    id: str
    sequence: int
    role: str
    content: str
    token_count: int
    retrieved_chunk_ids: list[str] = Field(default_factory=list)
    provider: str | None = None
    model_name: str | None = None
    created_at: datetime

    model_config = {"from_attributes": True}


class ConversationResponse(BaseModel):
    """对话响应（不含消息）"""
    id: str
    title: str | None = None
    is_archived: bool
    created_at: datetime
    updated_at: datetime
    last_message_at: datetime | None = None

    model_config = {"from_attributes": True}


class ConversationDetailResponse(ConversationResponse):
    """对话详情（含消息）"""
    messages: list[MessageResponse] = Field(default_factory=list)


class ConversationListResponse(BaseModel):
    items: list[ConversationResponse]
    total: int

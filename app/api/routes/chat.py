"""
对话接口

POST /v1/chat: 发送一条消息，conversation_id 为空时创建新对话。

检索不到相关片段时仍正常返回（context_found=false）；
提供商未配置或调用失败时返回错误响应，不写入任何消息。
"""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_conversation_service, get_current_user_id, get_db_session
from app.schemas.conversation import ChatReply, ChatRequest, ChatResponse, SourceItem
from app.services.conversation import ConversationService

router = APIRouter(prefix="/v1", tags=["chat"])


@router.post("/chat", response_model=ChatResponse)
async def chat(
    payload: ChatRequest,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db_session),
    service: ConversationService = Depends(get_conversation_service),
):
    outcome = await service.chat(db, user_id, payload.message, conversation_id=payload.conversation_id)
    return ChatResponse(
        conversation_id=outcome.conversation_id,
        reply=ChatReply(
            message_id=outcome.message_id,
            content=outcome.content,
            context_found=outcome.context_found,
            sources=[
                SourceItem(
                    chunk_id=c.chunk_id,
                    document_id=c.document_id,
                    document_title=c.title,
                    score=round(c.score, 4),
                )
                for c in outcome.sources
            ],
            provider=outcome.provider,
            model=outcome.model,
            input_tokens=outcome.input_tokens,
            output_tokens=outcome.output_tokens,
        ),
    )

"""
对话管理路由

对话只对其所有者可见，访问他人的对话返回 404。

端点：
- GET  /v1/conversations               对话列表（最近活跃在前）
- GET  /v1/conversations/{id}          对话详情（含消息）
- POST /v1/conversations/{id}/archive  归档对话
"""

from fastapi import APIRouter, Depends, Path, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_conversation_service, get_current_user_id, get_db_session
from app.schemas.conversation import (
    ConversationDetailResponse,
    ConversationListResponse,
    ConversationResponse,
    MessageResponse,
)
from app.services.conversation import ConversationService

router = APIRouter(prefix="/v1/conversations", tags=["conversations"])


@router.get("", response_model=ConversationListResponse)
async def list_conversations(
    include_archived: bool = Query(False, description="是否包含已归档的对话"),
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db_session),
    service: ConversationService = Depends(get_conversation_service),
):
    conversations = await service.list_conversations(db, user_id, include_archived=include_archived)
    items = [ConversationResponse.model_validate(c) for c in conversations]
    return ConversationListResponse(items=items, total=len(items))


@router.get("/{conversation_id}", response_model=ConversationDetailResponse)
async def get_conversation(
    conversation_id: str = Path(..., description="对话 ID"),
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db_session),
    service: ConversationService = Depends(get_conversation_service),
):
    """对话详情，消息按顺序返回"""
    conversation = await service.get_conversation(db, user_id, conversation_id)
    return ConversationDetailResponse(
        id=conversation.id,
        title=conversation.title,
        is_archived=conversation.is_archived,
        created_at=conversation.created_at,
        updated_at=conversation.updated_at,
        last_message_at=conversation.last_message_at,
        messages=[MessageResponse.model_validate(m) for m in conversation.messages],
    )


@router.post("/{conversation_id}/archive", response_model=ConversationResponse)
async def archive_conversation(
    conversation_id: str = Path(..., description="对话 ID"),
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db_session),
    service: ConversationService = Depends(get_conversation_service),
):
    conversation = await service.archive_conversation(db, user_id, conversation_id)
    return ConversationResponse.model_validate(conversation)

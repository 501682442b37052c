"""
消息反馈接口

POST /v1/messages/{id}/feedback: 对助手回复评分（1-5）
"""

from fastapi import APIRouter, Depends, Path, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_analytics_service, get_current_user_id, get_db_session
from app.schemas.feedback import FeedbackRequest, FeedbackResponse
from app.services.feedback import AnalyticsService, submit_feedback

router = APIRouter(prefix="/v1/messages", tags=["feedback"])


@router.post("/{message_id}/feedback", response_model=FeedbackResponse, status_code=status.HTTP_201_CREATED)
async def create_feedback(
    payload: FeedbackRequest,
    message_id: str = Path(..., description="消息 ID"),
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db_session),
    analytics: AnalyticsService = Depends(get_analytics_service),
):
    feedback = await submit_feedback(
        db,
        user_id,
        message_id,
        rating=payload.rating,
        helpful=payload.helpful,
        comment=payload.comment,
        on_change=analytics.invalidate,
    )
    return FeedbackResponse.model_validate(feedback)

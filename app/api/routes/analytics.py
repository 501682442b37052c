"""
统计分析接口（管理员）

时间范围通过 start / end 查询参数指定（ISO 8601），
未指定时默认统计最近 ANALYTICS_DEFAULT_DAYS 天。
"""

from datetime import datetime

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_analytics_service, get_db_session, require_admin
from app.schemas.feedback import PopularTopics, UsageAnalytics
from app.services.feedback import AnalyticsService

router = APIRouter(prefix="/v1/admin/analytics", tags=["analytics"])


@router.get("/usage", response_model=UsageAnalytics)
async def usage_analytics(
    start: datetime | None = Query(None, description="开始时间"),
    end: datetime | None = Query(None, description="结束时间"),
    _: str = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session),
    service: AnalyticsService = Depends(get_analytics_service),
):
    return await service.get_usage_analytics(db, start, end)


@router.get("/topics", response_model=PopularTopics)
async def popular_topics(
    start: datetime | None = Query(None, description="开始时间"),
    end: datetime | None = Query(None, description="结束时间"),
    limit: int = Query(10, ge=1, le=100, description="返回话题数量"),
    _: str = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session),
    service: AnalyticsService = Depends(get_analytics_service),
):
    return await service.get_popular_topics(db, start, end, limit=limit)

"""
健康检查接口

用于 Kubernetes 等容器编排系统进行存活探测和就绪探测。
"""

from fastapi import APIRouter, Depends

from app.api.deps import get_ingestion_service
from app.services.ingestion import IngestionService

router = APIRouter()


@router.get("/healthz")
async def healthcheck(service: IngestionService = Depends(get_ingestion_service)) -> dict:
    """
    健康检查端点

    返回 {"status": "ok"} 表示服务正常运行，并附带向量索引中的片段数量。
    """
    return {"status": "ok", "indexed_chunks": await service.index.count()}

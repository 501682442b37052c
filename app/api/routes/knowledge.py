"""
知识库管理接口（管理员）

文档上传后立即返回任务 ID，向量化在后台执行，前端轮询任务状态。

端点：
- POST   /v1/admin/knowledge/documents                上传文档
- GET    /v1/admin/knowledge/documents                文档列表
- DELETE /v1/admin/knowledge/documents/{id}           停用文档
- POST   /v1/admin/knowledge/documents/{id}/reprocess 重新处理
- GET    /v1/admin/knowledge/jobs/{job_id}            任务状态
- POST   /v1/admin/knowledge/jobs/{job_id}/cancel     取消任务
"""

from fastapi import APIRouter, Depends, Path, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_db_session, get_ingestion_service, require_admin
from app.models import EmbeddingJob
from app.schemas.knowledge import (
    DocumentListResponse,
    DocumentResponse,
    DocumentUploadRequest,
    DocumentUploadResponse,
    JobStatusResponse,
    ReprocessResponse,
)
from app.services.ingestion import IngestionService

router = APIRouter(prefix="/v1/admin/knowledge", tags=["knowledge"])


def _job_to_response(job: EmbeddingJob) -> JobStatusResponse:
    return JobStatusResponse(
        job_id=job.id,
        document_id=job.document_id,
        status=job.status,
        processed=job.processed_chunks,
        total=job.total_chunks,
        error=job.error_message,
        failure_reason=job.failure_reason,
        started_at=job.started_at,
        completed_at=job.completed_at,
        last_progress_at=job.last_progress_at,
    )


@router.post("/documents", response_model=DocumentUploadResponse, status_code=status.HTTP_202_ACCEPTED)
async def upload_document(
    payload: DocumentUploadRequest,
    admin_id: str = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session),
    service: IngestionService = Depends(get_ingestion_service),
):
    """
    上传文档

    文档同步切分，向量化任务在后台执行，返回的 job_id 用于轮询进度。
    """
    document, job = await service.upload_document(db, payload, user_id=admin_id)
    return DocumentUploadResponse(
        document_id=document.id,
        job_id=job.id,
        total_chunks=job.total_chunks,
        status=job.status,
    )


@router.get("/documents", response_model=DocumentListResponse)
async def list_documents(
    category: str | None = Query(None, description="按分类过滤"),
    include_inactive: bool = Query(False, description="是否包含已停用的文档"),
    _: str = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session),
    service: IngestionService = Depends(get_ingestion_service),
):
    rows = await service.list_documents(db, category=category, include_inactive=include_inactive)
    items = [
        DocumentResponse(
            id=doc.id,
            title=doc.title,
            category=doc.category,
            tags=doc.tags or [],
            source_url=doc.source_url,
            is_active=doc.is_active,
            chunk_count=chunk_count,
            embedded_count=embedded_count,
            created_at=doc.created_at,
            updated_at=doc.updated_at,
        )
        for doc, chunk_count, embedded_count in rows
    ]
    return DocumentListResponse(items=items, total=len(items))


@router.delete("/documents/{document_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_document(
    document_id: str = Path(..., description="文档 ID"),
    _: str = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session),
    service: IngestionService = Depends(get_ingestion_service),
):
    """停用文档（片段保留，不再参与检索）"""
    await service.delete_document(db, document_id)


@router.post("/documents/{document_id}/reprocess", response_model=ReprocessResponse, status_code=status.HTTP_202_ACCEPTED)
async def reprocess_document(
    document_id: str = Path(..., description="文档 ID"),
    _: str = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session),
    service: IngestionService = Depends(get_ingestion_service),
):
    """重新处理：只向量化尚未向量化的片段"""
    job = await service.reprocess_document(db, document_id)
    return ReprocessResponse(document_id=document_id, job_id=job.id)


@router.get("/jobs/{job_id}", response_model=JobStatusResponse)
async def get_job_status(
    job_id: str = Path(..., description="任务 ID"),
    _: str = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session),
    service: IngestionService = Depends(get_ingestion_service),
):
    """查询任务状态（轮询时顺带检测卡住的任务）"""
    await service.detect_stalled_jobs(db)
    job = await service.get_job_status(db, job_id)
    return _job_to_response(job)


@router.post("/jobs/{job_id}/cancel", response_model=JobStatusResponse)
async def cancel_job(
    job_id: str = Path(..., description="任务 ID"),
    _: str = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session),
    service: IngestionService = Depends(get_ingestion_service),
):
    job = await service.cancel_job(db, job_id)
    return _job_to_response(job)

"""
知识库文档与向量化任务的请求/响应模型
"""

from datetime import datetime

from pydantic import BaseModel, Field


class DocumentUploadRequest(BaseModel):
    """
    上传文档请求

    示例:
    ```json
    {
        "title": "Goods and Services Tax Act 2009",
        "content": "...",
        "category": "gst",
        "tags": ["gst", "act"]
    }
    ```
    """
    title: str = Field(..., min_length=1, max_length=255, description="文档标题")
    content: str = Field(default="", description="文档全文")
    category: str | None = Field(default=None, max_length=50, description="分类")
    tags: list[str] = Field(default_factory=list, description="标签")
    source_url: str | None = Field(default=None, max_length=500, description="来源链接")
    metadata: dict | None = Field(default=None, description="扩展元数据")


class DocumentUploadResponse(BaseModel):
    document_id: str
    job_id: str
    total_chunks: int
    status: str


class DocumentResponse(BaseModel):
    """文档响应（不含全文）"""
    id: str
    title: str
    category: str | None = None
    tags: list[str] = Field(default_factory=list)
    source_url: str | None = None
    is_active: bool
    chunk_count: int = 0
    embedded_count: int = 0
    created_at: datetime
    updated_at: datetime


class DocumentListResponse(BaseModel):
    items: list[DocumentResponse]
    total: int


class JobStatusResponse(BaseModel):
    """向量化任务状态"""
    job_id: str
    document_id: str
    status: str
    processed: int
    total: int
    error: str | None = None
    failure_reason: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    last_progress_at: datetime | None = None


class ReprocessResponse(BaseModel):
    document_id: str
    job_id: str

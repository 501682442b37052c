"""
FastAPI 应用实例

这是 FastAPI 应用的核心配置文件，负责：
1. 创建 FastAPI 应用实例
2. 配置应用生命周期（启动/关闭时的初始化逻辑）
3. 注册所有 API 路由
4. 配置结构化日志和请求追踪
5. 将业务异常统一转换为 {"detail", "code"} 响应
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.api.deps import get_ingestion_service
from app.api.routes import api_router
from app.config import get_settings
from app.db.session import SessionLocal, init_models
from app.exceptions import KnowledgeAssistantError
from app.infra.logging import get_logger, setup_logging
from app.middleware import RequestTraceMiddleware

# 配置结构化日志
setup_logging()
logger = get_logger(__name__)

# 获取全局配置（单例模式，整个应用共享同一个配置实例）
settings = get_settings()

@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    应用生命周期管理器

    启动时：
    - 开发/测试环境自动建表（生产环境使用 Alembic 迁移）
    - 将上次运行遗留的 pending/processing 任务标记为 interrupted
    - 进程内向量索引从数据库中已持久化的向量重建

    关闭时：取消仍在运行的后台向量化任务
    """
    # ========== 启动时执行 ==========
    logger.info(f"应用启动中... 环境: {settings.environment}")

    if settings.environment in ("dev", "development", "test"):
        await init_models()
        logger.info("数据库表初始化完成（开发模式）")
    else:
        logger.info("跳过自动建表，请使用 Alembic 迁移")

    ingestion = get_ingestion_service()
    async with SessionLocal() as session:
        await ingestion.mark_interrupted_jobs(session)
        indexed = await ingestion.rebuild_index(session)
    if indexed:
        logger.info(f"向量索引重建完成，共 {indexed} 个片段")

    yield  # 应用运行中...

    # ========== 关闭时执行 ==========
    await ingestion.runner.shutdown()
    logger.info("应用已关闭")

# 创建 FastAPI 应用实例
app = FastAPI(
    title=settings.app_name,
    lifespan=lifespan,
)

# 注册中间件（注意顺序：后添加的先执行）
app.add_middleware(RequestTraceMiddleware)  # 请求追踪

# CORS 配置：门户前端跨域访问
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(api_router)

@app.exception_handler(KnowledgeAssistantError)
async def knowledge_assistant_exception_handler(_: Request, exc: KnowledgeAssistantError):
    """业务异常：按异常类型上的 status_code / code 返回"""
    if exc.status_code >= 500:
        logger.error(f"{exc.code}: {exc}", extra={"provider": exc.provider})
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": str(exc), "code": exc.code},
    )

@app.exception_handler(HTTPException)
async def http_exception_handler(_: Request, exc: HTTPException):
    """
    统一错误响应格式：
    {
        "detail": "<错误信息>",
        "code": "<ERROR_CODE>"
    }
    """
    code = "UNKNOWN_ERROR"
    detail = exc.detail
    if isinstance(exc.detail, dict):
        code = exc.detail.get("code") or code
        detail = exc.detail.get("detail") or exc.detail.get("message") or detail
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": detail, "code": code},
        headers=exc.headers,
    )

@app.exception_handler(RequestValidationError)
async def validation_exception_handler(_: Request, exc: RequestValidationError):
    # 将 Pydantic 校验错误统一映射为 VALIDATION_ERROR
    return JSONResponse(
        status_code=422,
        content={"detail": exc.errors(), "code": "VALIDATION_ERROR"},
    )

"""
API 依赖注入函数

这个模块定义了所有 API 路由共用的依赖项。
FastAPI 的依赖注入系统会自动调用这些函数，并将结果注入到路由处理函数中。

身份认证由外部认证层完成，这里只信任其注入的请求头：
- X-User-Id: 当前用户 ID（必需）
- X-User-Role: 用户角色，管理接口要求为 admin

服务实例为进程级单例，测试中可通过 app.dependency_overrides 替换。

使用示例：
    @router.get("/example")
    async def example_endpoint(
        user_id: str = Depends(get_current_user_id),        # 当前用户
        db: AsyncSession = Depends(get_db_session),         # 数据库会话
        service: ConversationService = Depends(get_conversation_service),
    ):
        pass
"""

from functools import lru_cache

from fastapi import Depends, Header, HTTPException, status

from app.db.session import SessionLocal, get_db
from app.infra.logging import set_user_id
from app.services.conversation import ConversationService
from app.services.feedback import AnalyticsService
from app.services.ingestion import IngestionService

ADMIN_ROLE = "admin"


async def get_current_user_id(
    x_user_id: str | None = Header(None, alias="X-User-Id"),
) -> str:
    """获取当前用户 ID，缺失时返回 401"""
    if not x_user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"code": "MISSING_USER", "detail": "Missing X-User-Id header"},
        )
    set_user_id(x_user_id)
    return x_user_id


async def require_admin(
    user_id: str = Depends(get_current_user_id),
    x_user_role: str | None = Header(None, alias="X-User-Role"),
) -> str:
    """要求管理员角色，返回管理员用户 ID"""
    if (x_user_role or "").lower() != ADMIN_ROLE:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"code": "FORBIDDEN", "detail": "Admin role required"},
        )
    return user_id


@lru_cache(maxsize=1)
def get_ingestion_service() -> IngestionService:
    """文档摄取服务单例（后台任务使用全局会话工厂）"""
    return IngestionService(SessionLocal)


@lru_cache(maxsize=1)
def get_analytics_service() -> AnalyticsService:
    return AnalyticsService()


@lru_cache(maxsize=1)
def get_conversation_service() -> ConversationService:
    """对话服务单例，新消息写入后使统计缓存失效"""
    return ConversationService(on_change=get_analytics_service().invalidate)


# 重新导出数据库会话获取函数，方便路由模块导入
get_db_session = get_db

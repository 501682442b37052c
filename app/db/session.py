"""
数据库会话管理

这个模块负责：
1. 创建数据库引擎（连接池）
2. 提供异步会话工厂
3. 实现 FastAPI 依赖注入的数据库会话获取函数

核心概念：
- Engine: 数据库连接池，管理与数据库的物理连接
- Session: 数据库会话，用于执行 SQL 和管理事务
- SessionLocal: 会话工厂，用于创建新的数据库会话

后台摄取任务不能复用请求的会话（请求结束后会话即关闭），
因此服务层持有会话工厂，每个任务自行创建独立会话。
"""

from collections.abc import AsyncGenerator

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from app.config import get_settings
from app.db.base import Base

settings = get_settings()


def build_engine(database_url: str) -> AsyncEngine:
    """
    创建数据库引擎

    SQLite（测试环境）不支持连接池参数，只对其他数据库启用连接池配置。
    """
    if database_url.startswith("sqlite"):
        return create_async_engine(database_url, echo=False, future=True)
    return create_async_engine(
        database_url,
        echo=False,             # 是否打印 SQL 语句（调试时可设为 True）
        future=True,            # 使用 SQLAlchemy 2.0 风格
        pool_pre_ping=True,     # 每次从连接池获取连接前先测试连接是否有效
        pool_size=10,           # 连接池保持的连接数
        max_overflow=20,        # 允许超出 pool_size 的额外连接数
        pool_timeout=30,        # 获取连接的超时时间（秒）
        pool_recycle=1800,      # 连接回收时间（秒），防止数据库端超时断开
    )


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """创建会话工厂（提交后不过期对象，便于提交后继续访问属性）"""
    return async_sessionmaker(engine, expire_on_commit=False)


engine = build_engine(settings.database_url)
SessionLocal = build_session_factory(engine)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    获取数据库会话（FastAPI 依赖注入函数）

    为每个请求创建一个新的数据库会话，请求处理完成后自动关闭。

    Yields:
        AsyncSession: 异步数据库会话对象
    """
    async with SessionLocal() as session:
        yield session


async def init_models(bind: AsyncEngine | None = None) -> None:
    """
    初始化数据库表（仅开发/测试环境使用）

    生产环境应该使用 Alembic 进行数据库迁移，此方法不会修改已存在的表结构。
    """
    # 导入 models 包，触发所有模型的注册
    from app import models  # noqa: F401

    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

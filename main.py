"""
知识助手服务 - 启动入口

运行方式：
    - 直接执行：python main.py
    - 或者使用：uvicorn app.main:app --reload

服务启动后可以访问：
    - API 文档：http://localhost:8000/docs
    - 健康检查：http://localhost:8000/healthz
"""

import uvicorn

from app.config import get_settings


def main() -> None:
    """
    启动 FastAPI 服务器

    开发环境开启自动重载；进程内向量索引和后台任务都在单个进程中，
    因此只使用一个 worker。
    """
    settings = get_settings()
    uvicorn.run(
        "app.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.environment in ("dev", "development"),
    )


if __name__ == "__main__":
    main()

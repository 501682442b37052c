"""
API 路由汇总

将所有子路由注册到主路由器，统一对外暴露。

路由模块说明：
- health.py        : 健康检查接口
- knowledge.py     : 知识库文档管理与向量化任务（管理员）
- chat.py          : 对话接口
- conversations.py : 对话列表、详情、归档
- feedback.py      : 消息反馈
- analytics.py     : 使用统计与热门话题（管理员）
- providers.py     : 提供商配置管理（管理员）
"""

from fastapi import APIRouter

from app.api.routes import (
    analytics,
    chat,
    conversations,
    feedback,
    health,
    knowledge,
    providers,
)

# 主路由器，包含所有 API 端点
api_router = APIRouter()

# 注册各子路由，tags 在各模块的 APIRouter 中声明
api_router.include_router(health.router, tags=["health"])
api_router.include_router(chat.router)
api_router.include_router(conversations.router)
api_router.include_router(feedback.router)
api_router.include_router(knowledge.router)
api_router.include_router(analytics.router)
api_router.include_router(providers.router)

"""
CTIS Knowledge Assistant - 应用主包

税务合规门户的知识库问答服务，包含以下子模块：
- api/        : API 路由和依赖注入
- db/         : 数据库连接和会话管理
- models/     : SQLAlchemy ORM 数据模型
- schemas/    : Pydantic 请求/响应模式
- services/   : 业务逻辑服务层（摄取、对话、反馈统计、提供商配置）
- pipeline/   : 可插拔算法（文本切分器）
- infra/      : 基础设施（提供商适配器、向量索引、日志、加密）
- middleware/ : 请求追踪中间件

项目架构遵循分层设计：
    API层 → 服务层 → 数据访问层 → 基础设施层
"""

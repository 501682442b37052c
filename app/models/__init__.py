"""
数据模型层 (ORM Models)

这个模块定义了所有的数据库表结构，使用 SQLAlchemy ORM 映射。

数据模型关系图：
    ProviderConfiguration (提供商配置，独立)

    KnowledgeDocument (知识库文档)
       ├── DocumentChunk (文档片段 + 向量)
       └── EmbeddingJob (向量化任务)

    Conversation (对话)
       └── Message (消息)
              └── Feedback (反馈)
"""

from app.models.conversation import Conversation, Message, MessageRole
from app.models.document_chunk import DocumentChunk
from app.models.embedding_job import EmbeddingJob, JobFailureReason, JobStatus
from app.models.feedback import Feedback
from app.models.knowledge_document import KnowledgeDocument
from app.models.provider_configuration import ProviderConfiguration, ProviderKind

# 导出所有模型，方便外部导入
__all__ = [
    "Conversation",
    "DocumentChunk",
    "EmbeddingJob",
    "Feedback",
    "JobFailureReason",
    "JobStatus",
    "KnowledgeDocument",
    "Message",
    "MessageRole",
    "ProviderConfiguration",
    "ProviderKind",
]

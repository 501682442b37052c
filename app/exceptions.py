"""
异常定义

所有业务异常继承自 KnowledgeAssistantError，携带错误码 code 和 HTTP 状态码，
由 app.main 中的异常处理器统一转换为 {"detail": ..., "code": ...} 响应。

    KnowledgeAssistantError
    ├── ConfigurationError          无活动提供商 / 凭证无效（不重试）
    ├── ProviderError               提供商调用失败
    │   ├── TransientProviderError  超时 / 限流 / 服务端错误（退避重试）
    │   └── PermanentProviderError  请求错误 / 不支持的输入（不重试）
    ├── IngestionError              文档摄取错误
    │   ├── EmbeddingDimensionMismatch
    │   └── JobConflictError        同一文档已有活动任务
    ├── NotFoundError
    ├── TokenBudgetExceededError    用户消息本身超出 token 预算
    ├── ConversationArchivedError
    ├── InvalidFeedbackError
    └── InvalidDateRangeError
"""


class KnowledgeAssistantError(Exception):
    """业务异常基类"""

    code = "INTERNAL_ERROR"
    status_code = 500

    def __init__(self, message: str = "", *, provider: str | None = None):
        self.message = message or self.__class__.__doc__ or ""
        self.provider = provider
        super().__init__(self.message)

    def __str__(self) -> str:
        if self.provider:
            return f"[{self.provider}] {self.message}"
        return self.message


class ConfigurationError(KnowledgeAssistantError):
    """提供商配置错误"""

    code = "PROVIDER_NOT_CONFIGURED"
    status_code = 503


class ProviderError(KnowledgeAssistantError):
    """提供商调用错误"""

    code = "PROVIDER_ERROR"
    status_code = 502


class TransientProviderError(ProviderError):
    """提供商暂时不可用"""

    code = "PROVIDER_UNAVAILABLE"


class PermanentProviderError(ProviderError):
    """提供商拒绝了请求"""

    code = "PROVIDER_REJECTED"


class IngestionError(KnowledgeAssistantError):
    """文档摄取错误"""

    code = "INGESTION_ERROR"
    status_code = 500


class EmbeddingDimensionMismatch(IngestionError):
    """向量维度与索引不一致"""

    code = "EMBEDDING_DIMENSION_MISMATCH"
    status_code = 409


class JobConflictError(IngestionError):
    """文档已有处理中的任务"""

    code = "JOB_CONFLICT"
    status_code = 409


class NotFoundError(KnowledgeAssistantError):
    """资源不存在"""

    code = "NOT_FOUND"
    status_code = 404


class TokenBudgetExceededError(KnowledgeAssistantError):
    """消息超出 token 预算"""

    code = "TOKEN_BUDGET_EXCEEDED"
    status_code = 413


class ConversationArchivedError(KnowledgeAssistantError):
    """对话已归档"""

    code = "CONVERSATION_ARCHIVED"
    status_code = 409


class InvalidFeedbackError(KnowledgeAssistantError):
    """反馈无效"""

    code = "INVALID_FEEDBACK"
    status_code = 422


class InvalidDateRangeError(KnowledgeAssistantError):
    """统计时间范围无效"""

    code = "INVALID_DATE_RANGE"
    status_code = 422

"""
对话编排服务 (Conversation Orchestrator)

每一轮对话的流程：

    用户消息
      │
      ├─> 解析活动提供商（ProviderRegistry）
      ├─> 问题向量化（失败则整轮中止，不写入任何消息）
      ├─> 向量索引检索 Top-K 片段
      ├─> 按 token 预算组装提示词（prompt_budget）
      ├─> 调用对话模型
      └─> 在一个事务中写入 user + assistant 消息（含检索片段引用）

并发：不同对话可并行；同一对话内的轮次通过按对话 ID 的 asyncio.Lock 串行执行，
消息用 sequence 字段和严格递增的时间戳保证顺序。

没有检索到相关片段不是错误：仍然调用模型，回复中 context_found=False，
assistant 消息不记录任何片段引用。
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from app.config import get_settings
from app.exceptions import ConfigurationError, ConversationArchivedError, NotFoundError
from app.infra.locks import KeyedLocks
from app.infra.logging import RequestTimer
from app.infra.providers import ChatMessage
from app.infra.tokens import estimate_tokens
from app.infra.vector_index import VectorIndex, get_vector_index
from app.models import Conversation, Message, MessageRole
from app.models.mixins import as_utc, new_id, utcnow
from app.services.prompt_budget import ContextChunk, assemble_prompt
from app.services.provider_registry import ProviderRegistry, provider_registry

logger = logging.getLogger(__name__)

MAX_LISTED_CONVERSATIONS = 50


@dataclass
class ChatOutcome:
    """一轮对话的结果"""
    conversation_id: str
    user_message_id: str
    message_id: str
    content: str
    context_found: bool
    provider: str
    model: str
    sources: list[ContextChunk] = field(default_factory=list)
    input_tokens: int = 0
    output_tokens: int = 0


def make_title(message: str, max_length: int | None = None) -> str:
    """从首条消息生成对话标题"""
    max_length = max_length or get_settings().conversation_title_length
    text = " ".join(message.split())
    if len(text) <= max_length:
        return text
    return text[: max_length - 3].rstrip() + "..."


class ConversationService:
    """
    对话编排服务

    Args:
        registry: 提供商注册表
        index: 向量索引（默认使用全局索引）
        on_change: 写入新消息后的回调（用于统计缓存失效）
    """

    def __init__(
        self,
        registry: ProviderRegistry = provider_registry,
        index: VectorIndex | None = None,
        on_change: Callable[[], None] | None = None,
    ):
        self.registry = registry
        self._index = index
        self.on_change = on_change
        self._locks = KeyedLocks()

    @property
    def index(self) -> VectorIndex:
        if self._index is None:
            self._index = get_vector_index()
        return self._index

    async def _owned_conversation(
        self,
        session: AsyncSession,
        user_id: str,
        conversation_id: str,
    ) -> Conversation:
        """获取属于该用户的对话，他人的对话同样视为不存在"""
        conversation = await session.get(Conversation, conversation_id, populate_existing=True)
        if conversation is None or conversation.user_id != user_id:
            raise NotFoundError(f"对话不存在: {conversation_id}")
        return conversation

    async def _load_history(self, session: AsyncSession, conversation_id: str) -> list[Message]:
        """最近 MAX_HISTORY_MESSAGES 条消息（时间正序）"""
        result = await session.execute(
            select(Message)
            .where(Message.conversation_id == conversation_id)
            .order_by(Message.sequence.desc())
            .limit(get_settings().max_history_messages)
        )
        return list(reversed(result.scalars().all()))

    async def _last_position(self, session: AsyncSession, conversation_id: str) -> tuple[int, datetime | None]:
        result = await session.execute(
            select(func.max(Message.sequence), func.max(Message.created_at))
            .where(Message.conversation_id == conversation_id)
        )
        last_sequence, last_created = result.one()
        return last_sequence or 0, as_utc(last_created)

    async def chat(
        self,
        session: AsyncSession,
        user_id: str,
        message: str,
        conversation_id: str | None = None,
    ) -> ChatOutcome:
        """
        处理一轮对话

        Raises:
            NotFoundError: 对话不存在或不属于该用户
            ConversationArchivedError: 对话已归档
            ConfigurationError: 没有可用的提供商配置
            TokenBudgetExceededError: 用户消息本身超出预算
            ProviderError: 向量化或生成失败
        """
        if conversation_id is None:
            conversation_id = new_id()
            is_new = True
        else:
            is_new = False
            conversation = await self._owned_conversation(session, user_id, conversation_id)
            if conversation.is_archived:
                raise ConversationArchivedError(f"对话已归档: {conversation_id}")

        async with self._locks.hold(conversation_id):
            return await self._run_turn(session, user_id, message, conversation_id, is_new)

    async def _run_turn(
        self,
        session: AsyncSession,
        user_id: str,
        message: str,
        conversation_id: str,
        is_new: bool,
    ) -> ChatOutcome:
        timer = RequestTimer()
        settings = get_settings()

        if not is_new:
            # 排队等锁期间对话可能已被归档
            conversation = await self._owned_conversation(session, user_id, conversation_id)
            if conversation.is_archived:
                raise ConversationArchivedError(f"对话已归档: {conversation_id}")

        resolved = await self.registry.resolve(session)
        budget = resolved.context_window - resolved.max_tokens
        if budget <= 0:
            raise ConfigurationError(
                f"上下文窗口 {resolved.context_window} 小于最大输出 {resolved.max_tokens}",
                provider=resolved.provider,
            )
        timer.mark("resolve")

        query_vector = await resolved.embedding.embed(message)
        timer.mark("embedding")

        hits = await self.index.search(query_vector, resolved.top_k, resolved.similarity_threshold)
        timer.mark("search")

        history = [] if is_new else await self._load_history(session, conversation_id)
        plan = assemble_prompt(
            system_prompt=resolved.system_prompt,
            history=[ChatMessage(m.role, m.content) for m in history],
            chunks=[
                ContextChunk(
                    chunk_id=h.chunk_id,
                    document_id=h.document_id,
                    title=h.title,
                    text=h.text,
                    score=h.score,
                )
                for h in hits
            ],
            user_message=message,
            budget_tokens=budget,
        )

        result = await resolved.chat.chat(
            plan.messages,
            temperature=resolved.temperature,
            max_tokens=resolved.max_tokens,
        )
        timer.mark("generation")

        # ========== 持久化（同一事务） ==========
        if is_new:
            conversation = Conversation(
                id=conversation_id,
                user_id=user_id,
                title=make_title(message, settings.conversation_title_length),
            )
            session.add(conversation)
            last_sequence, last_created = 0, None
        else:
            conversation = await self._owned_conversation(session, user_id, conversation_id)
            last_sequence, last_created = await self._last_position(session, conversation_id)

        user_ts = utcnow()
        if last_created is not None and user_ts <= last_created:
            user_ts = last_created + timedelta(microseconds=1)
        assistant_ts = max(utcnow(), user_ts + timedelta(microseconds=1))

        user_msg = Message(
            conversation_id=conversation_id,
            sequence=last_sequence + 1,
            role=MessageRole.USER,
            content=message,
            token_count=estimate_tokens(message),
            retrieved_chunk_ids=[],
            created_at=user_ts,
            updated_at=user_ts,
        )
        assistant_msg = Message(
            conversation_id=conversation_id,
            sequence=last_sequence + 2,
            role=MessageRole.ASSISTANT,
            content=result.content,
            token_count=result.output_tokens or estimate_tokens(result.content),
            retrieved_chunk_ids=[c.chunk_id for c in plan.chunks],
            provider=result.provider,
            model_name=result.model,
            extra_metadata={
                "context_found": plan.context_found,
                "context_dropped": plan.context_dropped,
                "scores": {c.chunk_id: round(c.score, 4) for c in plan.chunks},
                "prompt_tokens": plan.prompt_tokens,
                "input_tokens": result.input_tokens,
                "history_dropped": plan.history_dropped,
                "chunks_dropped": plan.chunks_dropped,
                "embedding_fallback": resolved.embedding_is_fallback,
            },
            created_at=assistant_ts,
            updated_at=assistant_ts,
        )
        session.add_all([user_msg, assistant_msg])
        conversation.last_message_at = assistant_ts
        await session.commit()
        timer.mark("persist")

        logger.info(
            f"对话完成，检索到 {len(plan.chunks)} 个片段",
            extra={
                "conversation_id": conversation_id,
                "provider": result.provider,
                "model": result.model,
                "context_found": plan.context_found,
                "metrics": timer.get_metrics(),
            },
        )
        if self.on_change:
            self.on_change()

        return ChatOutcome(
            conversation_id=conversation_id,
            user_message_id=user_msg.id,
            message_id=assistant_msg.id,
            content=result.content,
            context_found=plan.context_found,
            provider=result.provider,
            model=result.model,
            sources=plan.chunks,
            input_tokens=result.input_tokens,
            output_tokens=result.output_tokens,
        )

    async def list_conversations(
        self,
        session: AsyncSession,
        user_id: str,
        include_archived: bool = False,
    ) -> list[Conversation]:
        """用户的对话列表（最近活跃在前，最多 50 条）"""
        stmt = (
            select(Conversation)
            .where(Conversation.user_id == user_id)
            .order_by(
                func.coalesce(Conversation.last_message_at, Conversation.created_at).desc(),
                Conversation.id,
            )
            .limit(MAX_LISTED_CONVERSATIONS)
        )
        if not include_archived:
            stmt = stmt.where(Conversation.is_archived.is_(False))
        result = await session.execute(stmt)
        return list(result.scalars().all())

    async def get_conversation(self, session: AsyncSession, user_id: str, conversation_id: str) -> Conversation:
        """对话详情，messages 按 sequence 排序"""
        result = await session.execute(
            select(Conversation)
            .where(Conversation.id == conversation_id)
            .options(selectinload(Conversation.messages))
            .execution_options(populate_existing=True)
        )
        conversation = result.scalar_one_or_none()
        if conversation is None or conversation.user_id != user_id:
            raise NotFoundError(f"对话不存在: {conversation_id}")
        return conversation

    async def archive_conversation(self, session: AsyncSession, user_id: str, conversation_id: str) -> Conversation:
        """
        归档对话（不删除数据，归档后不能继续对话）

        与对话轮次共用同一把锁：进行中的轮次先写完，之后排队的轮次会被拒绝。
        """
        async with self._locks.hold(conversation_id):
            conversation = await self._owned_conversation(session, user_id, conversation_id)
            if not conversation.is_archived:
                conversation.is_archived = True
                await session.commit()
                logger.info(f"对话 {conversation_id} 已归档")
        return conversation

"""
提示词预算组装

在模型上下文窗口内组装一轮对话的提示词：

    [system] 系统提示词（从不截断）
    [history...] 历史消息（按时间顺序）
    [user] 检索上下文 + 用户问题（用户问题从不截断）

超出预算时的裁剪顺序：
1. 先丢弃检索片段，从相似度最低的开始，直到为零
2. 再丢弃历史消息，从最早的开始，直到为零
3. 系统提示词 + 用户问题本身超出预算时抛出 TokenBudgetExceededError

没有检索到片段时，在系统提示词后追加"知识库中没有相关资料"的说明；
检索到了片段但全部因预算被丢弃时，追加的是"资料因对话过长未能放入"的说明。
"""

from dataclasses import dataclass, field

from app.exceptions import TokenBudgetExceededError
from app.infra.providers import ChatMessage
from app.infra.tokens import estimate_tokens

CONTEXT_SEPARATOR = "\n\n---\n\n"

NO_CONTEXT_INSTRUCTION = (
    "\n\nNo relevant information was found in the knowledge base for this question. "
    "Tell the user that the knowledge base does not cover it, and only offer general "
    "guidance clearly marked as such."
)

CONTEXT_DROPPED_INSTRUCTION = (
    "\n\nRelevant knowledge base material was found for this question but could not be included "
    "because the conversation is too long. Tell the user the answer may be incomplete and suggest "
    "starting a new conversation for a fully sourced answer."
)


@dataclass(frozen=True)
class ContextChunk:
    chunk_id: str
    document_id: str
    title: str
    text: str
    score: float


@dataclass
class PromptPlan:
    """组装结果"""
    messages: list[ChatMessage]
    chunks: list[ContextChunk] = field(default_factory=list)
    history_kept: int = 0
    history_dropped: int = 0
    chunks_dropped: int = 0
    prompt_tokens: int = 0

    @property
    def context_found(self) -> bool:
        return bool(self.chunks)

    @property
    def context_dropped(self) -> bool:
        """检索到了片段，但一个都没能放进预算"""
        return not self.chunks and self.chunks_dropped > 0


def render_context(chunks: list[ContextChunk]) -> str:
    return CONTEXT_SEPARATOR.join(f"[Source: {c.title or 'Unknown'}]\n{c.text}" for c in chunks)


def render_user_message(message: str, chunks: list[ContextChunk]) -> str:
    if not chunks:
        return message
    return f"Context from knowledge base:\n{render_context(chunks)}\n\nUser question: {message}"


def _fit_context(message: str, ranked: list[ContextChunk], available: int) -> list[ContextChunk]:
    """按相似度从高到低，取能放进预算的最长前缀"""
    base = estimate_tokens(message)
    kept: list[ContextChunk] = []
    for chunk in ranked:
        candidate = kept + [chunk]
        if estimate_tokens(render_user_message(message, candidate)) - base > available:
            break
        kept = candidate
    return kept


def _fit_history(history: list[ChatMessage], available: int) -> list[ChatMessage]:
    """保留能放进预算的最新若干条历史"""
    kept: list[ChatMessage] = []
    used = 0
    for msg in reversed(history):
        cost = estimate_tokens(msg.content)
        if used + cost > available:
            break
        kept.append(msg)
        used += cost
    kept.reverse()
    return kept


def assemble_prompt(
    *,
    system_prompt: str,
    history: list[ChatMessage],
    chunks: list[ContextChunk],
    user_message: str,
    budget_tokens: int,
) -> PromptPlan:
    """
    组装提示词

    Args:
        system_prompt: 系统提示词
        history: 历史消息（时间正序）
        chunks: 检索到的片段（任意顺序）
        user_message: 本轮用户问题
        budget_tokens: 提示词可用 token 数（上下文窗口 - 最大输出）

    Raises:
        TokenBudgetExceededError: 系统提示词 + 用户问题超出预算
    """
    user_tokens = estimate_tokens(user_message)
    if estimate_tokens(system_prompt) + user_tokens > budget_tokens:
        raise TokenBudgetExceededError(
            f"消息过长：约 {user_tokens} tokens，超出可用预算 {budget_tokens - estimate_tokens(system_prompt)} tokens"
        )

    ranked = sorted(chunks, key=lambda c: (-c.score, c.chunk_id))
    history_tokens = sum(estimate_tokens(m.content) for m in history)
    remaining = budget_tokens - estimate_tokens(system_prompt) - user_tokens

    kept_chunks: list[ContextChunk] = []
    if history_tokens <= remaining:
        kept_chunks = _fit_context(user_message, ranked, remaining - history_tokens)

    system = system_prompt
    if not kept_chunks:
        system = system_prompt + (CONTEXT_DROPPED_INSTRUCTION if ranked else NO_CONTEXT_INSTRUCTION)
        if estimate_tokens(system) + user_tokens > budget_tokens:
            raise TokenBudgetExceededError(
                f"消息过长：约 {user_tokens} tokens，超出可用预算"
            )

    user_content = render_user_message(user_message, kept_chunks)
    available = budget_tokens - estimate_tokens(system) - estimate_tokens(user_content)
    kept_history = _fit_history(history, available)

    messages = [ChatMessage("system", system), *kept_history, ChatMessage("user", user_content)]
    return PromptPlan(
        messages=messages,
        chunks=kept_chunks,
        history_kept=len(kept_history),
        history_dropped=len(history) - len(kept_history),
        chunks_dropped=len(chunks) - len(kept_chunks),
        prompt_tokens=sum(estimate_tokens(m.content) for m in messages),
    )

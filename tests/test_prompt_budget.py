"""
提示词预算组装测试

测试 app/services/prompt_budget.py 的裁剪顺序：
先丢弃相似度最低的检索片段，再丢弃最早的历史消息，
系统提示词和用户问题从不截断。
"""

import pytest

from app.exceptions import TokenBudgetExceededError
from app.infra.providers import ChatMessage
from app.infra.tokens import estimate_tokens
from app.services.prompt_budget import (
    CONTEXT_DROPPED_INSTRUCTION,
    NO_CONTEXT_INSTRUCTION,
    ContextChunk,
    assemble_prompt,
    render_context,
    render_user_message,
)

SYSTEM = "You are a helpful tax compliance assistant."
QUESTION = "When is the GST return due?"


def _chunk(chunk_id: str, score: float, text: str = "GST returns are due monthly.", title: str = "GST Guide"):
    return ContextChunk(chunk_id=chunk_id, document_id="doc-1", title=title, text=text, score=score)


def _history(*contents: str) -> list[ChatMessage]:
    roles = ["user", "assistant"]
    return [ChatMessage(roles[i % 2], content) for i, content in enumerate(contents)]


class TestAssemblePrompt:
    def test_everything_fits(self):
        history = _history("What is GST?", "Goods and services tax.")
        chunks = [_chunk("c-low", 0.71, text="low"), _chunk("c-high", 0.93, text="high")]

        plan = assemble_prompt(
            system_prompt=SYSTEM, history=history, chunks=chunks, user_message=QUESTION, budget_tokens=1000
        )

        assert plan.messages[0] == ChatMessage("system", SYSTEM)
        assert plan.messages[1:3] == history
        assert plan.messages[-1].role == "user"
        assert plan.messages[-1].content.endswith(f"User question: {QUESTION}")
        assert [c.chunk_id for c in plan.chunks] == ["c-high", "c-low"]
        assert plan.messages[-1].content.index("high") < plan.messages[-1].content.index("low")
        assert plan.context_found is True
        assert plan.history_kept == 2
        assert plan.history_dropped == plan.chunks_dropped == 0
        assert plan.prompt_tokens == sum(estimate_tokens(m.content) for m in plan.messages)

    def test_no_chunks_adds_no_context_note(self):
        plan = assemble_prompt(
            system_prompt=SYSTEM, history=[], chunks=[], user_message=QUESTION, budget_tokens=1000
        )
        assert plan.messages == [
            ChatMessage("system", SYSTEM + NO_CONTEXT_INSTRUCTION),
            ChatMessage("user", QUESTION),
        ]
        assert plan.context_found is False

    def test_lowest_scoring_chunks_dropped_first(self):
        history = _history("What is GST?", "Goods and services tax.")
        top = _chunk("c-top", 0.9, text="t" * 200)
        second = _chunk("c-second", 0.8, text="s" * 200)
        history_tokens = sum(estimate_tokens(m.content) for m in history)
        budget = (
            estimate_tokens(SYSTEM)
            + estimate_tokens(render_user_message(QUESTION, [top]))
            + history_tokens
        )

        plan = assemble_prompt(
            system_prompt=SYSTEM, history=history, chunks=[second, top], user_message=QUESTION, budget_tokens=budget
        )

        assert [c.chunk_id for c in plan.chunks] == ["c-top"]
        assert plan.chunks_dropped == 1
        assert plan.history_kept == 2
        assert plan.prompt_tokens <= budget

    def test_history_dropped_oldest_first_after_chunks(self):
        history = _history("a" * 400, "b" * 400, "c" * 400)
        budget = (
            estimate_tokens(SYSTEM + CONTEXT_DROPPED_INSTRUCTION)
            + estimate_tokens(QUESTION)
            + estimate_tokens(history[-1].content)
        )

        plan = assemble_prompt(
            system_prompt=SYSTEM,
            history=history,
            chunks=[_chunk("c-1", 0.9)],
            user_message=QUESTION,
            budget_tokens=budget,
        )

        assert plan.chunks == []
        assert plan.chunks_dropped == 1
        assert plan.messages[1:-1] == [history[-1]]
        assert plan.history_dropped == 2
        assert plan.messages[0].content.endswith(CONTEXT_DROPPED_INSTRUCTION)
        assert plan.messages[-1] == ChatMessage("user", QUESTION)
        assert plan.prompt_tokens <= budget

    def test_dropped_context_note_differs_from_empty_knowledge_base(self):
        history = _history("a" * 2000)
        budget = estimate_tokens(SYSTEM + CONTEXT_DROPPED_INSTRUCTION) + estimate_tokens(QUESTION) + 20

        plan = assemble_prompt(
            system_prompt=SYSTEM,
            history=history,
            chunks=[_chunk("c-1", 0.9, text="GST " * 100)],
            user_message=QUESTION,
            budget_tokens=budget,
        )

        system = plan.messages[0].content
        assert system == SYSTEM + CONTEXT_DROPPED_INSTRUCTION
        assert NO_CONTEXT_INSTRUCTION not in system
        assert plan.context_found is False
        assert plan.context_dropped is True

        empty = assemble_prompt(
            system_prompt=SYSTEM, history=history, chunks=[], user_message=QUESTION, budget_tokens=budget
        )
        assert empty.messages[0].content == SYSTEM + NO_CONTEXT_INSTRUCTION
        assert empty.context_dropped is False

    def test_oversized_message_rejected(self):
        with pytest.raises(TokenBudgetExceededError):
            assemble_prompt(
                system_prompt=SYSTEM, history=[], chunks=[], user_message="x" * 400, budget_tokens=50
            )

    def test_no_context_note_counts_toward_budget(self):
        budget = estimate_tokens(SYSTEM) + estimate_tokens(QUESTION)
        with pytest.raises(TokenBudgetExceededError):
            assemble_prompt(
                system_prompt=SYSTEM, history=[], chunks=[], user_message=QUESTION, budget_tokens=budget
            )

    def test_equal_scores_ordered_by_chunk_id(self):
        plan = assemble_prompt(
            system_prompt=SYSTEM,
            history=[],
            chunks=[_chunk("c-b", 0.8), _chunk("c-a", 0.8)],
            user_message=QUESTION,
            budget_tokens=1000,
        )
        assert [c.chunk_id for c in plan.chunks] == ["c-a", "c-b"]


def test_render_context_labels_sources():
    rendered = render_context([_chunk("c-1", 0.9, text="first"), _chunk("c-2", 0.8, text="second", title="")])
    assert rendered == "[Source: GST Guide]\nfirst\n\n---\n\n[Source: Unknown]\nsecond"
    assert render_user_message(QUESTION, []) == QUESTION

"""
Pipeline 基础类型定义

切分器需实现 BaseChunkerOperator 协议，并通过 register_operator 注册，
摄取服务按名称（配置）取用。
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Protocol


@dataclass
class ChunkPiece:
    """
    文本片段数据结构

    metadata 至少包含：
    - start_char / end_char: 片段在原文中的字符区间 [start, end)
    - overlap_chars: 与上一片段重叠的字符数（首个片段为 0）
    """
    text: str
    metadata: dict = field(default_factory=dict)

    @property
    def overlap_chars(self) -> int:
        return self.metadata.get("overlap_chars", 0)


class BaseOperator(Protocol):
    """算法组件基础协议"""
    name: str  # 算法名称，如 "token_window"
    kind: str  # 算法类型，如 "chunker"


class BaseChunkerOperator(BaseOperator, Protocol):
    """切分器协议（同样输入和参数必须得到同样的切分边界）"""
    kind: str = "chunker"

    def chunk(self, text: str, metadata: dict | None = None) -> list[ChunkPiece]:
        """
        将文本切分为多个片段

        Args:
            text: 原始文本
            metadata: 附加元数据（会合并到每个片段）

        Returns:
            list[ChunkPiece]: 按原文顺序排列的片段，空文本返回空列表
        """
        ...


def reconstruct_text(pieces: list[ChunkPiece]) -> str:
    """去掉重叠部分后拼接片段，还原原文"""
    return "".join(p.text[p.overlap_chars:] for p in pieces)

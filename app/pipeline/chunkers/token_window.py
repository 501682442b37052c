"""
Token 窗口切分器

按估算 token 数（约 4 字符 = 1 token）切分文本，相邻片段保持固定重叠。
默认 500 token 一段（约 2000 字符），重叠 50 token（约 200 字符）。

切分规则：
- 窗口末尾 20% 范围内若有空白字符，在最后一个空白之后断开，避免截断单词
- 否则在窗口上限处硬切
- 下一片段从上一片段结束位置回退 overlap 个字符开始

每个片段记录 start_char / end_char / overlap_chars，
去掉重叠部分后按顺序拼接即可还原原文（见 reconstruct_text）。

示例（chunk_size_tokens=500, chunk_overlap_tokens=50）：
    1200 字符文本 -> 1 个片段 [0, 1200)
    5000 字符文本 -> [0, ~2000) [~1800, ~3800) [~3600, 5000)
"""

from app.config import get_settings
from app.infra.tokens import estimate_tokens
from app.pipeline.base import BaseChunkerOperator, ChunkPiece
from app.pipeline.registry import register_operator

# 在窗口末尾多大比例范围内寻找空白断点
BOUNDARY_SEARCH_RATIO = 0.2


@register_operator("chunker", "token_window")
class TokenWindowChunker(BaseChunkerOperator):
    name = "token_window"
    kind = "chunker"

    def __init__(
        self,
        chunk_size_tokens: int | None = None,
        chunk_overlap_tokens: int | None = None,
        chars_per_token: int | None = None,
    ):
        settings = get_settings()
        self.chunk_size_tokens = chunk_size_tokens or settings.chunk_size_tokens
        self.chunk_overlap_tokens = (
            settings.chunk_overlap_tokens if chunk_overlap_tokens is None else chunk_overlap_tokens
        )
        self.chars_per_token = chars_per_token or settings.chars_per_token

        if self.chunk_size_tokens <= 0:
            raise ValueError("chunk_size_tokens 必须大于 0")
        if not 0 <= self.chunk_overlap_tokens < self.chunk_size_tokens:
            raise ValueError("chunk_overlap_tokens 必须小于 chunk_size_tokens")

        self.window = self.chunk_size_tokens * self.chars_per_token
        self.overlap = self.chunk_overlap_tokens * self.chars_per_token

    def _cut_position(self, text: str, start: int) -> int:
        """计算从 start 开始的片段结束位置"""
        hard_end = start + self.window
        if hard_end >= len(text):
            return len(text)
        floor = hard_end - int(self.window * BOUNDARY_SEARCH_RATIO)
        for i in range(hard_end - 1, max(floor, start) - 1, -1):
            if text[i].isspace():
                return i + 1
        return hard_end

    def chunk(self, text: str, metadata: dict | None = None) -> list[ChunkPiece]:
        if not text:
            return []

        pieces: list[ChunkPiece] = []
        start = 0
        prev_end = 0
        while True:
            end = self._cut_position(text, start)
            piece_text = text[start:end]
            pieces.append(
                ChunkPiece(
                    text=piece_text,
                    metadata={
                        **(metadata or {}),
                        "start_char": start,
                        "end_char": end,
                        "overlap_chars": prev_end - start if pieces else 0,
                        "token_count": estimate_tokens(piece_text, self.chars_per_token),
                    },
                )
            )
            if end >= len(text):
                break
            # 保证至少前进一个字符
            start = max(end - self.overlap, start + 1)
            prev_end = end

        return pieces

"""
Token 窗口切分器单元测试

测试 app/pipeline/chunkers/token_window.py：
- 片段数量与边界
- 重叠与原文还原
- 单词边界
- 参数校验
"""

import pytest

from app.pipeline import operator_registry
from app.pipeline.base import ChunkPiece, reconstruct_text
from app.pipeline.chunkers.token_window import TokenWindowChunker

TAX_SENTENCE = "Every registered taxpayer shall file a monthly GST return with the authority. "


class TestTokenWindowChunker:
    """测试按 token 窗口切分"""

    def test_short_document_is_single_chunk(self):
        """1200 字符的文档在 500 token 窗口下只有 1 个片段"""
        text = "x" * 1200
        pieces = TokenWindowChunker(chunk_size_tokens=500, chunk_overlap_tokens=50).chunk(text)
        assert len(pieces) == 1
        assert pieces[0].text == text
        assert pieces[0].metadata["start_char"] == 0
        assert pieces[0].metadata["end_char"] == 1200
        assert pieces[0].overlap_chars == 0
        assert pieces[0].metadata["token_count"] == 300

    def test_empty_text_returns_no_chunks(self):
        assert TokenWindowChunker().chunk("") == []

    def test_hard_cut_without_whitespace(self):
        """没有空白字符时在窗口上限硬切，相邻片段重叠 200 字符"""
        text = "a" * 5000
        pieces = TokenWindowChunker(chunk_size_tokens=500, chunk_overlap_tokens=50).chunk(text)
        bounds = [(p.metadata["start_char"], p.metadata["end_char"]) for p in pieces]
        assert bounds == [(0, 2000), (1800, 3800), (3600, 5000)]
        assert [p.overlap_chars for p in pieces] == [0, 200, 200]

    def test_cuts_after_whitespace(self):
        """窗口末尾附近有空白时在空白之后断开，不截断单词"""
        text = TAX_SENTENCE * 80
        pieces = TokenWindowChunker(chunk_size_tokens=500, chunk_overlap_tokens=50).chunk(text)
        assert len(pieces) > 1
        for piece in pieces[:-1]:
            assert piece.text[-1].isspace()
            assert len(piece.text) <= 2000
            assert piece.metadata["token_count"] <= 500

    def test_reconstruct_original_text(self):
        """去掉重叠部分后拼接还原原文"""
        text = TAX_SENTENCE * 120
        pieces = TokenWindowChunker(chunk_size_tokens=500, chunk_overlap_tokens=50).chunk(text)
        assert reconstruct_text(pieces) == text

    def test_chunk_boundaries_are_deterministic(self):
        text = TAX_SENTENCE * 60
        first = TokenWindowChunker(chunk_size_tokens=100, chunk_overlap_tokens=10).chunk(text)
        second = TokenWindowChunker(chunk_size_tokens=100, chunk_overlap_tokens=10).chunk(text)
        assert [p.metadata for p in first] == [p.metadata for p in second]

    def test_metadata_is_merged_into_pieces(self):
        pieces = TokenWindowChunker().chunk("short text", metadata={"document_id": "doc-1"})
        assert pieces[0].metadata["document_id"] == "doc-1"

    def test_zero_overlap(self):
        text = "b" * 900
        pieces = TokenWindowChunker(chunk_size_tokens=100, chunk_overlap_tokens=0).chunk(text)
        assert [len(p.text) for p in pieces] == [400, 400, 100]
        assert reconstruct_text(pieces) == text

    @pytest.mark.parametrize("size, overlap", [(0, 0), (100, 100), (100, 150), (100, -1)])
    def test_invalid_parameters(self, size, overlap):
        with pytest.raises(ValueError):
            TokenWindowChunker(chunk_size_tokens=size, chunk_overlap_tokens=overlap)

    def test_defaults_come_from_settings(self, settings):
        chunker = TokenWindowChunker()
        assert chunker.window == settings.chunk_size_chars
        assert chunker.overlap == settings.chunk_overlap_chars


class TestOperatorRegistry:
    """测试算法注册表"""

    def test_token_window_registered(self):
        chunker = operator_registry.create("chunker", "token_window", chunk_size_tokens=10, chunk_overlap_tokens=2)
        assert isinstance(chunker, TokenWindowChunker)
        assert chunker.name == "token_window"
        assert "token_window" in operator_registry.list("chunker")

    def test_unknown_operator(self):
        assert operator_registry.get("chunker", "semantic") is None
        with pytest.raises(ValueError):
            operator_registry.create("chunker", "semantic")

    def test_chunk_piece_defaults(self):
        piece = ChunkPiece(text="测试")
        assert piece.metadata == {}
        assert piece.overlap_chars == 0

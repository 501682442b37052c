"""
文本切分器模块

- TokenWindowChunker : 按估算 token 数切分，保持片段间重叠，可无损还原原文
"""

from app.pipeline.chunkers.token_window import TokenWindowChunker  # noqa: F401

__all__ = ["TokenWindowChunker"]

"""
Token 估算

不依赖具体模型的分词器，按约 4 个字符 = 1 token 粗略估算，
用于切分片段和组装提示词时的预算控制。
"""

import math

from app.config import get_settings


def estimate_tokens(text: str, chars_per_token: int | None = None) -> int:
    """估算文本 token 数（向上取整，空文本为 0）"""
    if not text:
        return 0
    if chars_per_token is None:
        chars_per_token = get_settings().chars_per_token
    return math.ceil(len(text) / chars_per_token)


def tokens_to_chars(tokens: int, chars_per_token: int | None = None) -> int:
    """token 数换算为字符数"""
    if chars_per_token is None:
        chars_per_token = get_settings().chars_per_token
    return tokens * chars_per_token

"""
算法注册表

按 kind（类型）和 name（名称）两级索引管理算法组件：

    @register_operator("chunker", "token_window")
    class TokenWindowChunker: ...

    chunker = operator_registry.create("chunker", "token_window", chunk_size_tokens=500)
"""

from __future__ import annotations

from collections import defaultdict
from typing import Any, Callable


class OperatorRegistry:
    def __init__(self) -> None:
        # kind -> name -> operator_class
        self._operators: dict[str, dict[str, Any]] = defaultdict(dict)

    def register(self, kind: str, name: str, op: Any) -> None:
        self._operators[kind][name] = op

    def get(self, kind: str, name: str) -> Any:
        """获取算法组件类，未注册时返回 None"""
        return self._operators.get(kind, {}).get(name)

    def create(self, kind: str, name: str, **params: Any) -> Any:
        """
        按名称实例化算法组件

        Raises:
            ValueError: 未注册的算法
        """
        op = self.get(kind, name)
        if op is None:
            available = ", ".join(self.list(kind)) or "无"
            raise ValueError(f"未注册的 {kind}: {name}（可用: {available}）")
        return op(**params)

    def list(self, kind: str) -> list[str]:
        return sorted(self._operators.get(kind, {}).keys())


operator_registry = OperatorRegistry()


def register_operator(kind: str, name: str) -> Callable[[Any], Any]:
    """算法注册装饰器"""
    def wrapper(cls_or_fn: Any) -> Any:
        operator_registry.register(kind, name, cls_or_fn)
        return cls_or_fn

    return wrapper

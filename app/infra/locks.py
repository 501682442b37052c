"""
按键加锁

进程内的 asyncio.Lock 注册表，同一个键（对话 ID、文档 ID）的操作串行执行，
不同键之间互不影响。锁在没有持有者和等待者时自动回收。

使用示例：
    locks = KeyedLocks()
    async with locks.hold(conversation_id):
        ...
"""

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager


class KeyedLocks:
    def __init__(self):
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)

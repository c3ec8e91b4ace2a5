"""
Stock Gateway — 商品 ID ごとの排他

同じ商品 ID への在庫変更 Saga を直列化する (プロセス内のみ)。
previous_quantity を使った補償は、読み取りから商品更新までの間に
別の Saga が割り込むと壊れるため。
"""

import asyncio
from contextlib import asynccontextmanager


class ProductLocks:
    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._holders: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, product_id: str):
        key = str(product_id)
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._holders[key] = self._holders.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._holders[key] -= 1
            if self._holders[key] == 0:
                # 待機者がいなくなったロックは捨てる
                del self._holders[key]
                del self._locks[key]

    def is_locked(self, product_id: str) -> bool:
        lock = self._locks.get(str(product_id))
        return lock is not None and lock.locked()

    def __len__(self) -> int:
        return len(self._locks)

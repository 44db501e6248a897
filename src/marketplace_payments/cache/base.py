from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Optional


def credits_key(user_id: str) -> str:
    return f"credits:{user_id}"


class AsyncCacheBackend(ABC):
    """
    Minimal async cache abstraction used for frequently read values such as
    credit balances. Writers invalidate; readers fill on miss.
    """

    @abstractmethod
    async def get(self, key: str) -> Optional[Any]:
        ...

    @abstractmethod
    async def set(self, key: str, value: Any, ttl_seconds: int | None = None) -> None:
        ...

    @abstractmethod
    async def delete(self, key: str) -> None:
        ...

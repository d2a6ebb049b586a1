from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Optional


class AsyncCacheBackend(ABC):
    """
    Minimal async cache abstraction used for read-mostly projections such
    as account balances. Values must be plain JSON-compatible data.
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

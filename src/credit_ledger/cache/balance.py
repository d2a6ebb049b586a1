from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, ValidationError

from .base import AsyncCacheBackend
from ..models.account import CreditAccount


class CachedBalance(BaseModel):
    available_credits: int
    reserved_credits: int


class BalanceCache:
    """
    Write-through cache of account balances.

    Every mutating ledger operation pushes the account state it just stored;
    readers fall back to the DB on a miss, expiry or corrupted entry.
    """

    def __init__(self, backend: AsyncCacheBackend, ttl_seconds: int = 300) -> None:
        self._backend = backend
        self._ttl_seconds = ttl_seconds

    async def get(self, user_id: str) -> Optional[CachedBalance]:
        key = self._key(user_id)
        cached = await self._backend.get(key)
        if not isinstance(cached, dict):
            return None
        try:
            return CachedBalance.model_validate(cached)
        except ValidationError:
            # Corrupted entry; drop it so the next read repopulates from the DB.
            await self._backend.delete(key)
            return None

    async def store(self, account: CreditAccount) -> None:
        value = CachedBalance(
            available_credits=account.available_credits,
            reserved_credits=account.reserved_credits,
        )
        await self._backend.set(
            self._key(account.user_id), value.model_dump(), ttl_seconds=self._ttl_seconds
        )

    @staticmethod
    def _key(user_id: str) -> str:
        return f"credit:user:{user_id}:balance"

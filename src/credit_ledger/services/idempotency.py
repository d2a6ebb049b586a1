from __future__ import annotations

import logging
from typing import Awaitable, Callable, Optional, TypeVar

from ..db.base import BaseDBManager
from ..errors import DuplicateRecordError
from ..models.event import CreditEvent


logger = logging.getLogger(__name__)

T = TypeVar("T")


# Deterministic idempotency keys, one per kind of triggering action.

def reserve_key(reservation_id: str) -> str:
    return f"reserve:{reservation_id}"


def capture_key(reservation_id: str) -> str:
    return f"capture:{reservation_id}"


def release_key(reservation_id: str) -> str:
    return f"release:{reservation_id}"


def release_after_capture_key(reservation_id: str) -> str:
    return f"release_after_capture:{reservation_id}"


def subscription_grant_key(charge_id: str) -> str:
    return f"subscription_grant:{charge_id}"


def backfill_key(user_id: str, plan_id: str) -> str:
    return f"backfill:{user_id}:{plan_id}"


def reconcile_key(user_id: str, reserved_computed: int, reserved_stored: int) -> str:
    return f"reconcile:{user_id}:{reserved_computed}:{reserved_stored}"


class IdempotencyGuard:
    """
    Runs a mutating effect at most once per idempotency key.

    The credit event carrying the key is the proof that an effect was
    applied: if it exists, the effect is skipped and the prior outcome is
    rebuilt from it instead.
    """

    def __init__(self, db: BaseDBManager) -> None:
        self._db = db

    async def find(self, idempotency_key: str) -> Optional[CreditEvent]:
        return await self._db.get_event_by_idempotency_key(idempotency_key)

    async def apply_once(
        self,
        idempotency_key: str,
        effect: Callable[[], Awaitable[T]],
        replay: Callable[[CreditEvent], Awaitable[T]],
    ) -> T:
        existing = await self.find(idempotency_key)
        if existing is not None:
            return await replay(existing)
        try:
            return await effect()
        except DuplicateRecordError as exc:
            if exc.collection != CreditEvent.collection_name or exc.key != idempotency_key:
                raise
            # A concurrent caller recorded the same key first.
            winner = await self.find(idempotency_key)
            if winner is None:
                raise
            logger.info("Idempotency key %s applied concurrently; replaying", idempotency_key)
            return await replay(winner)

    async def record(self, event: CreditEvent) -> CreditEvent:
        """Insert ``event`` unless its key exists; returns the stored event."""
        existing = await self.find(event.idempotency_key)
        if existing is not None:
            return existing
        try:
            return await self._db.insert_event(event)
        except DuplicateRecordError:
            stored = await self.find(event.idempotency_key)
            if stored is None:
                raise
            return stored

from __future__ import annotations

import logging
from typing import Callable, Optional, Tuple

from ..cache.balance import BalanceCache
from ..db.base import BaseDBManager
from ..errors import StaleWriteError
from ..logging.ledger_logger import LedgerLogger
from ..models.account import CreditAccount


logger = logging.getLogger(__name__)

AccountTransition = Callable[[CreditAccount], CreditAccount]


class LedgerServiceBase:
    """
    Shared wiring for services that mutate credit accounts.

    Account writes are optimistic: read, compute the next state, write it
    back fenced on the version that was read, and retry from a fresh read if
    another writer won.
    """

    def __init__(
        self,
        db: BaseDBManager,
        ledger: LedgerLogger,
        cache: Optional[BalanceCache] = None,
        max_write_retries: int = 5,
    ) -> None:
        self._db = db
        self._ledger = ledger
        self._cache = cache
        self._max_write_retries = max(1, max_write_retries)

    async def _update_account(
        self, user_id: str, transition: AccountTransition
    ) -> Tuple[CreditAccount, CreditAccount]:
        """Apply ``transition`` to the account; returns (before, after)."""
        last_error: Optional[StaleWriteError] = None
        for attempt in range(1, self._max_write_retries + 1):
            current = await self._db.get_or_create_account(user_id)
            proposed = transition(current)
            try:
                saved = await self._db.replace_account(proposed, expected_version=current.version)
            except StaleWriteError as exc:
                logger.debug(
                    "Stale account write for %s (attempt %d/%d)",
                    user_id,
                    attempt,
                    self._max_write_retries,
                )
                last_error = exc
                continue
            if self._cache:
                await self._cache.store(saved)
            return current, saved
        assert last_error is not None
        raise last_error

    async def _current_account(self, user_id: str) -> CreditAccount:
        return await self._db.get_or_create_account(user_id)

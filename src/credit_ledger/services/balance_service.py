from __future__ import annotations

from typing import List, Optional

from ..cache.balance import BalanceCache
from ..db.base import BaseDBManager
from ..models.results import CreditBalance, ReservedAccountSummary


class BalanceService:
    """
    Read-only balance projections for dashboards and operators.

    Never creates accounts: a user with no account reads as zero balances.
    """

    def __init__(self, db: BaseDBManager, cache: Optional[BalanceCache] = None) -> None:
        self._db = db
        self._cache = cache

    async def get_my_credit_balance(self, user_id: str) -> CreditBalance:
        available, reserved = await self._balances(user_id)
        subscription = await self._db.get_active_subscription(user_id)
        return CreditBalance(
            available_credits=available,
            reserved_credits=reserved,
            total_credits=available + reserved,
            has_active_subscription=subscription is not None,
            plan_id=subscription.plan_id if subscription else None,
            next_billing_date=subscription.next_billing_date if subscription else None,
        )

    async def list_users_with_reserved_credits(self) -> List[ReservedAccountSummary]:
        accounts = await self._db.list_accounts_with_reserved_credits()
        return [
            ReservedAccountSummary(
                user_id=account.user_id,
                reserved_credits=account.reserved_credits,
                available_credits=account.available_credits,
            )
            for account in accounts
        ]

    async def _balances(self, user_id: str) -> tuple[int, int]:
        if self._cache:
            cached = await self._cache.get(user_id)
            if cached is not None:
                return cached.available_credits, cached.reserved_credits

        account = await self._db.get_account(user_id)
        if account is None:
            return 0, 0
        if self._cache:
            await self._cache.store(account)
        return account.available_credits, account.reserved_credits

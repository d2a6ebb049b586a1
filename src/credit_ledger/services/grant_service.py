from __future__ import annotations

from datetime import datetime
from typing import Optional

from ..cache.balance import BalanceCache
from ..db.base import BaseDBManager
from ..logging.ledger_logger import LedgerLogger
from ..models.event import CreditEvent, CreditEventType
from ..models.results import BackfillResult, GrantResult
from .base import LedgerServiceBase
from .idempotency import IdempotencyGuard, backfill_key, subscription_grant_key
from .pricing import PlanPricing
from .transitions import reset_to_plan


class GrantService(LedgerServiceBase):
    """
    Applies plan-based monthly credit grants.

    A grant resets the account to the plan's allotment (available = plan
    credits, reserved = 0) rather than adding to it, so missed or duplicated
    billing cycles cannot compound credits. Each grant is keyed by the
    triggering charge (or backfill) and applies at most once.
    """

    def __init__(
        self,
        db: BaseDBManager,
        ledger: LedgerLogger,
        pricing: Optional[PlanPricing] = None,
        cache: Optional[BalanceCache] = None,
        max_write_retries: int = 5,
        guard: Optional[IdempotencyGuard] = None,
    ) -> None:
        super().__init__(db, ledger, cache=cache, max_write_retries=max_write_retries)
        self._pricing = pricing or PlanPricing()
        self._guard = guard or IdempotencyGuard(db)

    async def grant_plan_credits(
        self,
        user_id: str,
        plan_id: str,
        idempotency_key: str,
        reference_type: str,
        reference_id: str,
        correlation_id: Optional[str] = None,
    ) -> GrantResult:
        async def effect() -> GrantResult:
            plan_credits = self._pricing.credits_for(plan_id)
            now = datetime.utcnow()
            before, account = await self._update_account(
                user_id, lambda current: reset_to_plan(current, plan_credits, now)
            )
            await self._guard.record(
                CreditEvent(
                    user_id=user_id,
                    type=CreditEventType.GRANT,
                    credits=plan_credits,
                    balance_after=account.available_credits,
                    reference_type=reference_type,
                    reference_id=reference_id,
                    idempotency_key=idempotency_key,
                    created_at=now,
                )
            )
            await self._ledger.log_operation(
                user_id=user_id,
                message="Plan credits granted",
                details={
                    "plan_id": plan_id,
                    "credits": plan_credits,
                    "available_before": before.available_credits,
                    "reserved_before": before.reserved_credits,
                    "reference_type": reference_type,
                    "reference_id": reference_id,
                },
                correlation_id=correlation_id,
            )
            return GrantResult(
                granted_credits=plan_credits,
                available_credits=account.available_credits,
                reserved_credits=account.reserved_credits,
                was_idempotent=False,
            )

        async def replay(_: CreditEvent) -> GrantResult:
            account = await self._current_account(user_id)
            return GrantResult(
                granted_credits=account.available_credits,
                available_credits=account.available_credits,
                reserved_credits=account.reserved_credits,
                was_idempotent=True,
            )

        async with self._db.transaction():
            return await self._guard.apply_once(idempotency_key, effect, replay)

    async def grant_plan_credits_for_charge(
        self,
        user_id: str,
        plan_id: str,
        charge_id: str,
        source: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> GrantResult:
        return await self.grant_plan_credits(
            user_id=user_id,
            plan_id=plan_id,
            idempotency_key=subscription_grant_key(charge_id),
            reference_type=source or "subscription_charge",
            reference_id=charge_id,
            correlation_id=correlation_id,
        )

    async def grant_plan_credits_for_charge_internal(
        self,
        user_id: str,
        plan_id: str,
        charge_id: str,
        source: Optional[str] = None,
    ) -> GrantResult:
        """Scheduler-facing entry point; same keying as the public variant."""
        return await self.grant_plan_credits_for_charge(
            user_id=user_id, plan_id=plan_id, charge_id=charge_id, source=source
        )

    async def backfill_credits_for_active_subscribers(self) -> BackfillResult:
        """Grant plan credits once to every user with an active subscription."""
        subscriptions = list(await self._db.list_active_subscriptions())
        granted = 0
        skipped = 0
        seen_users: set[str] = set()

        for subscription in subscriptions:
            if subscription.user_id in seen_users:
                skipped += 1
                continue
            seen_users.add(subscription.user_id)

            key = backfill_key(subscription.user_id, subscription.plan_id)
            if await self._guard.find(key) is not None:
                skipped += 1
                continue

            await self.grant_plan_credits(
                user_id=subscription.user_id,
                plan_id=subscription.plan_id,
                idempotency_key=key,
                reference_type="backfill",
                reference_id=f"{subscription.user_id}:{subscription.plan_id}",
            )
            granted += 1

        await self._ledger.log_system(
            message="Backfill of plan credits completed",
            details={"processed": len(subscriptions), "granted": granted, "skipped": skipped},
        )
        return BackfillResult(processed=len(subscriptions), granted=granted, skipped=skipped)

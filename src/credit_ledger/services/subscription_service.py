from __future__ import annotations

from datetime import datetime, timedelta
from typing import Iterable, Optional

from ..db.base import BaseDBManager
from ..errors import InvalidPlan, NotFound
from ..logging.ledger_logger import LedgerLogger
from ..models.subscription import Subscription, SubscriptionStatus
from .pricing import PlanPricing


class SubscriptionService:
    """
    Subscription management: one active subscription per user plus the
    billing bookkeeping the recurring scheduler needs.
    """

    def __init__(
        self,
        db: BaseDBManager,
        ledger: LedgerLogger,
        pricing: Optional[PlanPricing] = None,
    ) -> None:
        self._db = db
        self._ledger = ledger
        self._pricing = pricing or PlanPricing()

    async def create_subscription(
        self,
        user_id: str,
        plan_id: str,
        amount: float,
        currency: str,
        next_billing_date: datetime,
        payment_agreement_id: Optional[str] = None,
    ) -> Subscription:
        """
        Create the user's active subscription, or update it in place if the
        user already has one.
        """
        if not self._pricing.is_known(plan_id):
            raise InvalidPlan(f"Invalid planId: {plan_id}")

        existing = await self._db.get_active_subscription(user_id)
        if existing:
            existing.plan_id = plan_id
            if payment_agreement_id:
                existing.payment_agreement_id = payment_agreement_id
            existing.amount = amount
            existing.currency = currency
            existing.next_billing_date = next_billing_date
            subscription = await self._db.update_subscription(existing)
            message = "User subscription updated"
        else:
            subscription = await self._db.add_subscription(
                Subscription(
                    user_id=user_id,
                    plan_id=plan_id,
                    payment_agreement_id=payment_agreement_id,
                    amount=amount,
                    currency=currency,
                    next_billing_date=next_billing_date,
                )
            )
            message = "User subscription created"

        await self._ledger.log_operation(
            user_id=user_id,
            message=message,
            details={
                "subscription_id": subscription.id,
                "plan_id": plan_id,
                "next_billing_date": next_billing_date.isoformat(),
            },
        )
        return subscription

    async def get_active_subscription(self, user_id: str) -> Optional[Subscription]:
        return await self._db.get_active_subscription(user_id)

    async def update_subscription_status(
        self, user_id: str, status: SubscriptionStatus
    ) -> Subscription:
        status = SubscriptionStatus(status)
        subscription = await self._db.get_active_subscription(user_id)
        if subscription is None:
            subscription = await self._db.get_latest_subscription(user_id)
        if subscription is None:
            raise NotFound("Subscription not found")

        subscription.status = status
        if status == SubscriptionStatus.CANCELLED:
            subscription.cancelled_at = datetime.utcnow()
        subscription = await self._db.update_subscription(subscription)

        await self._ledger.log_operation(
            user_id=user_id,
            message="User subscription status changed",
            details={"subscription_id": subscription.id, "status": status.value},
        )
        return subscription

    async def list_subscriptions_due(
        self, as_of: Optional[datetime] = None
    ) -> Iterable[Subscription]:
        return await self._db.list_subscriptions_due(as_of or datetime.utcnow())

    async def mark_billed(
        self,
        subscription_id: str,
        charge_id: str,
        next_billing_date: datetime,
    ) -> Subscription:
        subscription = await self._require(subscription_id)
        subscription.last_billing_date = datetime.utcnow()
        subscription.last_billing_charge_id = charge_id
        subscription.next_billing_date = next_billing_date
        subscription.status = SubscriptionStatus.ACTIVE
        return await self._db.update_subscription(subscription)

    async def mark_failed(self, subscription_id: str, error: str) -> Subscription:
        subscription = await self._require(subscription_id)
        subscription.status = SubscriptionStatus.FAILED
        subscription = await self._db.update_subscription(subscription)

        await self._ledger.log_error(
            message="Subscription billing failed",
            details={"subscription_id": subscription_id, "error": error},
            user_id=subscription.user_id,
        )
        return subscription

    @staticmethod
    def next_billing_date_from(start: datetime, interval_days: int = 30) -> datetime:
        return start + timedelta(days=interval_days)

    async def _require(self, subscription_id: str) -> Subscription:
        subscription = await self._db.get_subscription(subscription_id)
        if subscription is None:
            raise NotFound("Subscription not found")
        return subscription

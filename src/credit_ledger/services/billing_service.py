from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional, Protocol

from ..logging.ledger_logger import LedgerLogger
from ..models.results import BillingRunResult
from ..models.subscription import Subscription
from .grant_service import GrantService
from .subscription_service import SubscriptionService


logger = logging.getLogger(__name__)


class ChargeGateway(Protocol):
    """
    Payment gateway collaborator. Creates a recurring charge for the
    subscription and returns the gateway's charge id, raising on failure.
    """

    async def charge(self, subscription: Subscription) -> str: ...


class BillingService:
    """
    Recurring billing run, typically invoked daily by a scheduler.

    Gateway calls happen before any ledger write; the charge id then anchors
    the grant, so a retried run can never grant twice for one charge.
    """

    def __init__(
        self,
        subscriptions: SubscriptionService,
        grants: GrantService,
        gateway: ChargeGateway,
        ledger: LedgerLogger,
        billing_interval_days: int = 30,
    ) -> None:
        self._subscriptions = subscriptions
        self._grants = grants
        self._gateway = gateway
        self._ledger = ledger
        self._billing_interval_days = billing_interval_days

    async def process_recurring_billing(
        self, as_of: Optional[datetime] = None
    ) -> BillingRunResult:
        as_of = as_of or datetime.utcnow()
        due = list(await self._subscriptions.list_subscriptions_due(as_of))
        logger.info("Processing %d subscriptions due for billing", len(due))

        succeeded = 0
        failed = 0
        for subscription in due:
            if not subscription.payment_agreement_id:
                logger.info(
                    "Skipping subscription %s - no payment agreement", subscription.id
                )
                continue

            try:
                charge_id = await self._gateway.charge(subscription)
                await self._subscriptions.mark_billed(
                    subscription_id=subscription.id or "",
                    charge_id=charge_id,
                    next_billing_date=SubscriptionService.next_billing_date_from(
                        as_of, self._billing_interval_days
                    ),
                )
                await self._grants.grant_plan_credits_for_charge_internal(
                    user_id=subscription.user_id,
                    plan_id=subscription.plan_id,
                    charge_id=charge_id,
                    source="recurring_billing",
                )
            except Exception as exc:
                logger.exception("Failed to bill subscription %s", subscription.id)
                await self._subscriptions.mark_failed(subscription.id or "", str(exc))
                failed += 1
                continue

            logger.info(
                "Billed subscription %s for user %s", subscription.id, subscription.user_id
            )
            succeeded += 1

        await self._ledger.log_system(
            message="Recurring billing run completed",
            details={"processed": len(due), "succeeded": succeeded, "failed": failed},
        )
        return BillingRunResult(processed=len(due), succeeded=succeeded, failed=failed)

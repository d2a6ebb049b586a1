from __future__ import annotations

from datetime import datetime, timedelta

import pytest

from credit_ledger.config import LedgerSettings
from credit_ledger.db.memory import InMemoryDBManager
from credit_ledger.errors import InvalidPlan, NotFound
from credit_ledger.logging.ledger_logger import LedgerLogger
from credit_ledger.models.subscription import Subscription, SubscriptionStatus
from credit_ledger.services.billing_service import BillingService
from credit_ledger.services.grant_service import GrantService
from credit_ledger.services.subscription_service import SubscriptionService
from credit_ledger.wiring import build_billing_service, build_services


class FakeGateway:
    def __init__(self, failing_users=()):
        self.failing_users = set(failing_users)
        self.charged = []

    async def charge(self, subscription: Subscription) -> str:
        if subscription.user_id in self.failing_users:
            raise RuntimeError("card declined")
        self.charged.append(subscription.id)
        return f"chg_{subscription.user_id}_{len(self.charged)}"


@pytest.mark.asyncio
async def test_create_updates_in_place_and_status_changes(tmp_path):
    db = InMemoryDBManager()
    ledger = LedgerLogger(db=db, file_path=tmp_path / "ledger.log")
    service = SubscriptionService(db=db, ledger=ledger)
    next_billing = datetime.utcnow() + timedelta(days=30)

    with pytest.raises(InvalidPlan):
        await service.create_subscription(
            user_id="user-1", plan_id="gold", amount=1, currency="SAR", next_billing_date=next_billing
        )

    created = await service.create_subscription(
        user_id="user-1",
        plan_id="starter",
        amount=75,
        currency="SAR",
        next_billing_date=next_billing,
        payment_agreement_id="agr_1",
    )
    upgraded = await service.create_subscription(
        user_id="user-1", plan_id="pro", amount=180, currency="SAR", next_billing_date=next_billing
    )
    assert upgraded.id == created.id
    assert upgraded.plan_id == "pro"
    assert upgraded.payment_agreement_id == "agr_1"

    cancelled = await service.update_subscription_status("user-1", SubscriptionStatus.CANCELLED)
    assert cancelled.status == SubscriptionStatus.CANCELLED
    assert cancelled.cancelled_at is not None
    assert await service.get_active_subscription("user-1") is None

    # Falls back to the latest subscription when none is active.
    reactivated = await service.update_subscription_status("user-1", "active")
    assert reactivated.status == SubscriptionStatus.ACTIVE

    with pytest.raises(NotFound):
        await service.update_subscription_status("user-2", SubscriptionStatus.CANCELLED)


@pytest.mark.asyncio
async def test_recurring_billing_charges_and_grants_due_subscriptions(tmp_path):
    db = InMemoryDBManager()
    ledger = LedgerLogger(db=db, file_path=tmp_path / "ledger.log")
    subscriptions = SubscriptionService(db=db, ledger=ledger)
    grants = GrantService(db=db, ledger=ledger)
    gateway = FakeGateway(failing_users={"user-3"})
    billing = BillingService(
        subscriptions=subscriptions, grants=grants, gateway=gateway, ledger=ledger
    )

    now = datetime(2024, 3, 1, 9, 0, 0)
    due = now - timedelta(hours=1)
    await subscriptions.create_subscription(
        user_id="user-1", plan_id="pro", amount=180, currency="SAR",
        next_billing_date=due, payment_agreement_id="agr_1",
    )
    await subscriptions.create_subscription(
        user_id="user-2", plan_id="starter", amount=75, currency="SAR", next_billing_date=due,
    )
    await subscriptions.create_subscription(
        user_id="user-3", plan_id="premium", amount=375, currency="SAR",
        next_billing_date=due, payment_agreement_id="agr_3",
    )
    await subscriptions.create_subscription(
        user_id="user-4", plan_id="pro", amount=180, currency="SAR",
        next_billing_date=now + timedelta(days=3), payment_agreement_id="agr_4",
    )

    result = await billing.process_recurring_billing(as_of=now)
    assert (result.processed, result.succeeded, result.failed) == (3, 1, 1)
    assert len(gateway.charged) == 1

    account = await db.get_account("user-1")
    assert account.available_credits == 4860
    billed = await subscriptions.get_active_subscription("user-1")
    assert billed.next_billing_date == now + timedelta(days=30)
    assert billed.last_billing_charge_id == "chg_user-1_1"
    event = await db.get_event_by_idempotency_key("subscription_grant:chg_user-1_1")
    assert event.reference_type == "recurring_billing"

    # No payment agreement: skipped, untouched.
    assert await db.get_account("user-2") is None
    assert (await subscriptions.get_active_subscription("user-2")).next_billing_date == due

    # Declined charge: marked failed, no credits.
    assert await subscriptions.get_active_subscription("user-3") is None
    failed = await db.get_latest_subscription("user-3")
    assert failed.status == SubscriptionStatus.FAILED
    assert await db.get_account("user-3") is None

    # The billed subscription is no longer due.
    rerun = await billing.process_recurring_billing(as_of=now)
    assert (rerun.processed, rerun.succeeded, rerun.failed) == (1, 0, 0)


@pytest.mark.asyncio
async def test_wired_billing_uses_configured_interval(tmp_path):
    settings = LedgerSettings(LEDGER_LOG_PATH=tmp_path / "ledger.log", BILLING_INTERVAL_DAYS=7)
    services = build_services(db=InMemoryDBManager(), settings=settings)
    billing = build_billing_service(services, FakeGateway(), settings=settings)

    now = datetime(2024, 3, 1, 9, 0, 0)
    await services.subscriptions.create_subscription(
        user_id="user-1", plan_id="starter", amount=75, currency="SAR",
        next_billing_date=now, payment_agreement_id="agr_1",
    )
    result = await billing.process_recurring_billing(as_of=now)
    assert result.succeeded == 1

    subscription = await services.subscriptions.get_active_subscription("user-1")
    assert subscription.next_billing_date == now + timedelta(days=7)
    balance = await services.balances.get_my_credit_balance("user-1")
    assert balance.available_credits == 2025

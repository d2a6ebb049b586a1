from __future__ import annotations

import asyncio
from datetime import datetime, timedelta

import pytest

from credit_ledger.cache.balance import BalanceCache
from credit_ledger.cache.memory import InMemoryAsyncCache
from credit_ledger.db.memory import InMemoryDBManager
from credit_ledger.errors import (
    Conflict,
    Forbidden,
    InsufficientCredits,
    InvalidAmount,
    NotFound,
    SubscriptionRequired,
)
from credit_ledger.logging.ledger_logger import LedgerLogger
from credit_ledger.models.account import CreditAccount
from credit_ledger.models.event import CreditEventType
from credit_ledger.models.ledger import OperationEventType
from credit_ledger.models.reservation import ReservationStatus
from credit_ledger.models.subscription import Subscription
from credit_ledger.services.reservation_service import ReservationService


async def _subscribe(db: InMemoryDBManager, user_id: str) -> None:
    await db.add_subscription(
        Subscription(
            user_id=user_id,
            plan_id="pro",
            amount=180,
            currency="SAR",
            next_billing_date=datetime.utcnow() + timedelta(days=30),
        )
    )


async def _fund(db: InMemoryDBManager, user_id: str, available: int) -> None:
    current = await db.get_or_create_account(user_id)
    await db.replace_account(
        current.model_copy(update={"available_credits": available}),
        expected_version=current.version,
    )


async def _setup(tmp_path, db=None, available=100, cache=None):
    db = db or InMemoryDBManager()
    ledger = LedgerLogger(db=db, file_path=tmp_path / "ledger.log")
    service = ReservationService(db=db, ledger=ledger, cache=cache)
    await _subscribe(db, "user-1")
    await _fund(db, "user-1", available)
    return db, service


@pytest.mark.asyncio
async def test_reserve_then_capture_refunds_unused_credits(tmp_path):
    """Available 100, reserve 30, job used 20: 80 available, nothing held."""
    db, service = await _setup(tmp_path)

    reserved = await service.reserve(
        user_id="user-1", service="fal", model_id="flux", estimated_credits=30
    )
    assert reserved.available_credits == 70
    assert reserved.reserved_credits == 30
    assert reserved.reservation_id.startswith("res_")

    result = await service.finalize(
        success=True, reservation_id=reserved.reservation_id, actual_credits=20
    )
    assert result is not None
    assert result.status == "captured"
    assert result.captured_credits == 20
    assert result.released_credits == 10
    assert (result.available_credits, result.reserved_credits) == (80, 0)

    stored = await service.get_reservation(reserved.reservation_id)
    assert stored.status == ReservationStatus.CAPTURED
    assert stored.actual_credits == 20
    assert stored.finalized_at is not None

    events = list(await db.list_events("user-1"))
    assert [e.type for e in events] == [
        CreditEventType.RESERVE,
        CreditEventType.CAPTURE,
        CreditEventType.RELEASE,
    ]
    assert events[-1].reference_type == "reservation_release"
    assert events[-1].credits == 10
    assert events[-1].balance_after == 80


@pytest.mark.asyncio
async def test_failed_job_restores_balance_exactly_once(tmp_path):
    db, service = await _setup(tmp_path)

    reserved = await service.reserve(
        user_id="user-1", service="elevenlabs", model_id="tts", estimated_credits=30
    )
    first = await service.finalize(success=False, reservation_id=reserved.reservation_id)
    assert first.status == "released"
    assert first.released_credits == 30
    assert (first.available_credits, first.reserved_credits) == (100, 0)

    # Duplicate webhook: reported as a no-op, balances untouched.
    second = await service.finalize(success=False, reservation_id=reserved.reservation_id)
    assert second.status == "noop"
    assert second.released_credits == 30
    assert (second.available_credits, second.reserved_credits) == (100, 0)

    # A late success report cannot capture a released reservation.
    late = await service.finalize(
        success=True, reservation_id=reserved.reservation_id, actual_credits=5
    )
    assert late.status == "noop"
    assert late.captured_credits == 0

    keys = [e.idempotency_key for e in await db.list_events("user-1")]
    assert keys == [f"reserve:{reserved.reservation_id}", f"release:{reserved.reservation_id}"]


@pytest.mark.asyncio
async def test_repeated_capture_is_a_noop(tmp_path):
    db, service = await _setup(tmp_path)
    reserved = await service.reserve(
        user_id="user-1", service="fal", model_id="flux", estimated_credits=30
    )
    await service.finalize(success=True, reservation_id=reserved.reservation_id, actual_credits=20)

    again = await service.finalize(
        success=True, reservation_id=reserved.reservation_id, actual_credits=25
    )
    assert again.status == "noop"
    assert again.captured_credits == 20
    assert again.released_credits == 10
    assert again.available_credits == 80
    assert len(list(await db.list_events("user-1"))) == 3


@pytest.mark.asyncio
async def test_failure_report_after_capture_is_a_noop(tmp_path):
    db, service = await _setup(tmp_path)
    reserved = await service.reserve(
        user_id="user-1", service="fal", model_id="flux", estimated_credits=30
    )
    account = await db.get_account("user-1")
    assert [h.reservation_id for h in account.holds] == [reserved.reservation_id]

    await service.finalize(success=True, reservation_id=reserved.reservation_id, actual_credits=20)
    assert (await db.get_account("user-1")).holds == []

    late_failure = await service.finalize(success=False, reservation_id=reserved.reservation_id)
    assert late_failure.status == "noop"
    assert (late_failure.captured_credits, late_failure.released_credits) == (20, 10)
    assert (late_failure.available_credits, late_failure.reserved_credits) == (80, 0)

    assert await db.get_event_by_idempotency_key(f"release:{reserved.reservation_id}") is None
    assert len(list(await db.list_events("user-1"))) == 3
    stored = await service.get_reservation(reserved.reservation_id)
    assert stored.status == ReservationStatus.CAPTURED


@pytest.mark.asyncio
async def test_lookup_without_an_identifier_raises_value_error(tmp_path):
    _, service = await _setup(tmp_path)

    with pytest.raises(ValueError):
        await service._locate(None, None)
    with pytest.raises(ValueError):
        await service._locate("", "")


@pytest.mark.asyncio
async def test_capture_clamps_to_estimate_and_rounds_up(tmp_path):
    db, service = await _setup(tmp_path)

    over = await service.reserve(
        user_id="user-1", service="fal", model_id="flux", estimated_credits=30
    )
    result = await service.finalize(
        success=True, reservation_id=over.reservation_id, actual_credits=50
    )
    assert result.captured_credits == 30
    assert result.released_credits == 0
    assert result.available_credits == 70
    assert await db.get_event_by_idempotency_key(
        f"release_after_capture:{over.reservation_id}"
    ) is None

    fractional = await service.reserve(
        user_id="user-1", service="fal", model_id="flux", estimated_credits=9.2
    )
    assert fractional.estimated_credits == 10
    result = await service.finalize(
        success=True, reservation_id=fractional.reservation_id, actual_credits=2.5
    )
    assert result.captured_credits == 3
    assert result.available_credits == 67


@pytest.mark.asyncio
async def test_capture_without_reported_usage_takes_the_estimate(tmp_path):
    _, service = await _setup(tmp_path)
    reserved = await service.reserve(
        user_id="user-1", service="runway", model_id="gen3", estimated_credits=40
    )
    result = await service.finalize(success=True, reservation_id=reserved.reservation_id)
    assert result.captured_credits == 40
    assert result.available_credits == 60


@pytest.mark.asyncio
async def test_reserve_is_idempotent_per_reservation_id(tmp_path):
    db, service = await _setup(tmp_path)

    first = await service.reserve(
        user_id="user-1",
        service="fal",
        model_id="flux",
        estimated_credits=30,
        reservation_id="res-fixed",
    )
    second = await service.reserve(
        user_id="user-1",
        service="fal",
        model_id="flux",
        estimated_credits=30,
        reservation_id="res-fixed",
    )
    assert first.was_idempotent is False
    assert second.was_idempotent is True
    assert second.reservation_id == "res-fixed"
    assert second.available_credits == 70

    account = await db.get_account("user-1")
    assert (account.available_credits, account.reserved_credits) == (70, 30)
    assert [h.reservation_id for h in account.holds] == ["res-fixed"]


@pytest.mark.asyncio
async def test_reservation_of_another_user_is_forbidden(tmp_path):
    db, service = await _setup(tmp_path)
    await _subscribe(db, "user-2")
    await _fund(db, "user-2", 100)

    await service.reserve(
        user_id="user-1",
        service="fal",
        model_id="flux",
        estimated_credits=30,
        reservation_id="res-1",
    )
    with pytest.raises(Forbidden):
        await service.reserve(
            user_id="user-2",
            service="fal",
            model_id="flux",
            estimated_credits=30,
            reservation_id="res-1",
        )
    with pytest.raises(Forbidden):
        await service.finalize(success=False, reservation_id="res-1", user_id="user-2")

    account = await db.get_account("user-2")
    assert account.available_credits == 100
    assert (await service.get_reservation("res-1")).status == ReservationStatus.RESERVED


@pytest.mark.asyncio
async def test_reserve_requires_active_subscription(tmp_path):
    db = InMemoryDBManager()
    ledger = LedgerLogger(db=db, file_path=tmp_path / "ledger.log")
    service = ReservationService(db=db, ledger=ledger)
    await _fund(db, "user-1", 100)

    with pytest.raises(SubscriptionRequired):
        await service.reserve(
            user_id="user-1", service="fal", model_id="flux", estimated_credits=10
        )

    assert list(await db.list_events("user-1")) == []
    errors = [e for e in db.operation_log if e.event_type == OperationEventType.ERROR]
    assert len(errors) == 1
    assert errors[0].user_id == "user-1"


@pytest.mark.asyncio
async def test_reserve_rejects_invalid_amounts_before_touching_the_ledger(tmp_path):
    db, service = await _setup(tmp_path)
    for amount in (0, -3, float("nan"), float("inf")):
        with pytest.raises(InvalidAmount):
            await service.reserve(
                user_id="user-1", service="fal", model_id="flux", estimated_credits=amount
            )
    assert list(await db.list_events("user-1")) == []


@pytest.mark.asyncio
async def test_insufficient_credits_leaves_balances_unchanged(tmp_path):
    db, service = await _setup(tmp_path, available=50)

    with pytest.raises(InsufficientCredits):
        await service.reserve(
            user_id="user-1", service="fal", model_id="flux", estimated_credits=51
        )

    account = await db.get_account("user-1")
    assert (account.available_credits, account.reserved_credits) == (50, 0)
    assert list(await service.list_open_reservations("user-1")) == []


@pytest.mark.asyncio
async def test_attach_external_request_id(tmp_path):
    _, service = await _setup(tmp_path)
    first = await service.reserve(
        user_id="user-1", service="fal", model_id="flux", estimated_credits=10
    )
    second = await service.reserve(
        user_id="user-1", service="fal", model_id="flux", estimated_credits=10
    )

    with pytest.raises(NotFound):
        await service.attach_external_request_id("missing", "job-1")

    await service.attach_external_request_id(first.reservation_id, "job-1")
    # Same id again is accepted without change.
    await service.attach_external_request_id(first.reservation_id, "job-1")

    with pytest.raises(Conflict):
        await service.attach_external_request_id(first.reservation_id, "job-2")
    with pytest.raises(Conflict):
        await service.attach_external_request_id(second.reservation_id, "job-1")

    stored = await service.get_reservation(first.reservation_id)
    assert stored.external_request_id == "job-1"
    assert (await service.get_reservation(second.reservation_id)).external_request_id is None


@pytest.mark.asyncio
async def test_finalize_by_external_request_id(tmp_path):
    _, service = await _setup(tmp_path)
    reserved = await service.reserve(
        user_id="user-1", service="runway", model_id="gen3", estimated_credits=30
    )
    await service.attach_external_request_id(reserved.reservation_id, "runway-job-9")

    result = await service.finalize(
        success=True, external_request_id="runway-job-9", actual_credits=12.3
    )
    assert result.reservation_id == reserved.reservation_id
    assert result.captured_credits == 13
    assert result.available_credits == 87

    stored = await service.get_reservation(reserved.reservation_id)
    assert stored.external_request_id == "runway-job-9"


@pytest.mark.asyncio
async def test_finalize_edge_cases(tmp_path):
    db, service = await _setup(tmp_path)

    assert await service.finalize(success=True, reservation_id="unknown") is None
    assert await service.finalize(success=False, external_request_id="unknown") is None

    with pytest.raises(ValueError):
        await service.finalize(success=True)

    reserved = await service.reserve(
        user_id="user-1", service="fal", model_id="flux", estimated_credits=30
    )
    with pytest.raises(InvalidAmount):
        await service.finalize(
            success=True, reservation_id=reserved.reservation_id, actual_credits=0
        )
    # The rejected call did not finalize anything.
    stored = await service.get_reservation(reserved.reservation_id)
    assert stored.status == ReservationStatus.RESERVED
    assert len(list(await db.list_events("user-1"))) == 1


@pytest.mark.asyncio
async def test_release_all_reserved_with_service_filter(tmp_path):
    db, service = await _setup(tmp_path)
    for service_name, credits in (("fal", 10), ("fal", 20), ("runway", 30)):
        await service.reserve(
            user_id="user-1", service=service_name, model_id="m", estimated_credits=credits
        )

    result = await service.release_all_reserved("user-1", service="fal")
    assert result.released_reservations == 2
    assert result.released_credits == 30
    assert (result.available_credits, result.reserved_credits) == (70, 30)

    remaining = list(await service.list_open_reservations("user-1"))
    assert [r.service.value for r in remaining] == ["runway"]

    result = await service.release_all_reserved("user-1")
    assert result.released_reservations == 1
    assert (result.available_credits, result.reserved_credits) == (100, 0)

    empty = await service.release_all_reserved("user-1")
    assert empty.released_reservations == 0
    assert empty.released_credits == 0


@pytest.mark.asyncio
async def test_latest_reserved_reservation_id(tmp_path):
    _, service = await _setup(tmp_path)
    assert await service.latest_reserved_reservation_id("user-1", "fal") is None

    await service.reserve(
        user_id="user-1", service="fal", model_id="m", estimated_credits=5, reservation_id="res-a"
    )
    await service.reserve(
        user_id="user-1", service="fal", model_id="m", estimated_credits=5, reservation_id="res-b"
    )
    await service.reserve(
        user_id="user-1", service="runway", model_id="m", estimated_credits=5, reservation_id="res-c"
    )
    assert await service.latest_reserved_reservation_id("user-1", "fal") == "res-b"

    await service.finalize(success=False, reservation_id="res-b")
    assert await service.latest_reserved_reservation_id("user-1", "fal") == "res-a"
    assert await service.latest_reserved_reservation_id("user-1", "elevenlabs") is None


@pytest.mark.asyncio
async def test_concurrent_reservations_never_overdraw(tmp_path):
    db, service = await _setup(tmp_path)

    results = await asyncio.gather(
        *[
            service.reserve(
                user_id="user-1", service="fal", model_id="flux", estimated_credits=30
            )
            for _ in range(5)
        ],
        return_exceptions=True,
    )
    succeeded = [r for r in results if not isinstance(r, Exception)]
    refused = [r for r in results if isinstance(r, InsufficientCredits)]
    assert len(succeeded) == 3
    assert len(refused) == 2

    account = await db.get_account("user-1")
    assert (account.available_credits, account.reserved_credits) == (10, 90)


@pytest.mark.asyncio
async def test_concurrent_reserve_with_same_id_holds_credits_once(tmp_path):
    db, service = await _setup(tmp_path)

    results = await asyncio.gather(
        *[
            service.reserve(
                user_id="user-1",
                service="fal",
                model_id="flux",
                estimated_credits=30,
                reservation_id="res-same",
            )
            for _ in range(3)
        ]
    )
    assert {r.reservation_id for r in results} == {"res-same"}
    assert sum(1 for r in results if not r.was_idempotent) == 1

    account = await db.get_account("user-1")
    assert (account.available_credits, account.reserved_credits) == (70, 30)
    assert [h.reservation_id for h in account.holds] == ["res-same"]


class RacingDBManager(InMemoryDBManager):
    """Lets another writer sneak in ahead of the first account write."""

    def __init__(self, races: int = 1) -> None:
        super().__init__()
        self.races = races

    async def replace_account(self, account, expected_version):
        if self.races:
            self.races -= 1
            current = await self.get_or_create_account(account.user_id)
            await super().replace_account(
                current.model_copy(
                    update={"available_credits": current.available_credits + 10}
                ),
                expected_version=current.version,
            )
        return await super().replace_account(account, expected_version)


@pytest.mark.asyncio
async def test_stale_account_write_is_retried_without_losing_updates(tmp_path):
    db, service = await _setup(tmp_path, db=RacingDBManager(races=0))
    db.races = 1

    reserved = await service.reserve(
        user_id="user-1", service="fal", model_id="flux", estimated_credits=30
    )
    # 100 + 10 from the concurrent writer - 30 reserved.
    assert reserved.available_credits == 80
    account = await db.get_account("user-1")
    assert isinstance(account, CreditAccount)
    assert (account.available_credits, account.reserved_credits) == (80, 30)


@pytest.mark.asyncio
async def test_account_writes_go_through_to_the_balance_cache(tmp_path):
    cache = BalanceCache(InMemoryAsyncCache())
    _, service = await _setup(tmp_path, cache=cache)

    reserved = await service.reserve(
        user_id="user-1", service="fal", model_id="flux", estimated_credits=30
    )
    cached = await cache.get("user-1")
    assert (cached.available_credits, cached.reserved_credits) == (70, 30)

    await service.finalize(success=False, reservation_id=reserved.reservation_id)
    cached = await cache.get("user-1")
    assert (cached.available_credits, cached.reserved_credits) == (100, 0)

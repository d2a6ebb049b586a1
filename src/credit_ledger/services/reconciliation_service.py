from __future__ import annotations

from datetime import datetime
from typing import Dict, List, Optional, Tuple

from ..cache.balance import BalanceCache
from ..db.base import BaseDBManager
from ..logging.ledger_logger import LedgerLogger
from ..models.account import CreditAccount
from ..models.event import CreditEvent, CreditEventType
from ..models.reservation import CreditReservation, ReservationStatus
from ..models.results import ReconcileResult
from .base import LedgerServiceBase
from .idempotency import (
    IdempotencyGuard,
    capture_key,
    reconcile_key,
    release_after_capture_key,
    release_key,
)
from .transitions import reconcile_reserved, settle_finalized


class ReconciliationService(LedgerServiceBase):
    """
    Recomputes an account's reserved balance from its reservations.

    Reservation and account writes are separate; a crash or partial retry
    between them leaves the two out of step. Reconciliation first settles
    finalized reservations whose hold is still on the account, exactly as
    the interrupted finalize would have, then aligns reserved credits with
    the open reservations and records an ``adjustment`` event for any
    remaining drift. Drift is never an error.
    """

    def __init__(
        self,
        db: BaseDBManager,
        ledger: LedgerLogger,
        cache: Optional[BalanceCache] = None,
        max_write_retries: int = 5,
        guard: Optional[IdempotencyGuard] = None,
    ) -> None:
        super().__init__(db, ledger, cache=cache, max_write_retries=max_write_retries)
        self._guard = guard or IdempotencyGuard(db)

    async def reconcile(
        self, user_id: str, correlation_id: Optional[str] = None
    ) -> ReconcileResult:
        async with self._db.transaction():
            open_reservations = list(
                await self._db.list_reservations(user_id, status=ReservationStatus.RESERVED)
            )
            finalized: Dict[str, CreditReservation] = {}
            for hold in (await self._current_account(user_id)).holds:
                reservation = await self._db.get_reservation(hold.reservation_id)
                if reservation is not None and reservation.status.is_terminal:
                    finalized[reservation.reservation_id] = reservation

            now = datetime.utcnow()
            outcomes: List[Tuple[int, List[CreditReservation]]] = []

            def transition(current: CreditAccount) -> CreditAccount:
                account = current
                settled: List[CreditReservation] = []
                for hold in current.holds:
                    reservation = finalized.get(hold.reservation_id)
                    if reservation is None or reservation in settled:
                        continue
                    account = settle_finalized(account, reservation, now)
                    settled.append(reservation)
                next_account, drift = reconcile_reserved(account, open_reservations, now)
                outcomes.append((drift, settled))
                return next_account

            before, after = await self._update_account(user_id, transition)
            drift, settled = outcomes[-1]

            for reservation in settled:
                await self._record_settlement(reservation, after, now)

            if drift != 0:
                await self._guard.record(
                    CreditEvent(
                        user_id=user_id,
                        type=CreditEventType.ADJUSTMENT,
                        credits=abs(drift),
                        balance_after=after.available_credits,
                        reference_type="reconcile",
                        reference_id=user_id,
                        idempotency_key=reconcile_key(
                            user_id, after.reserved_credits, after.reserved_credits + drift
                        ),
                        created_at=now,
                    )
                )

            if drift != 0 or settled:
                await self._ledger.log_operation(
                    user_id=user_id,
                    message="Reserved credits reconciled",
                    details={
                        "available_before": before.available_credits,
                        "reserved_before": before.reserved_credits,
                        "available_after": after.available_credits,
                        "reserved_after": after.reserved_credits,
                        "reserved_drift": drift,
                        "settled_reservations": [r.reservation_id for r in settled],
                    },
                    correlation_id=correlation_id,
                )

        return ReconcileResult(
            user_id=user_id,
            available_before=before.available_credits,
            reserved_before=before.reserved_credits,
            available_after=after.available_credits,
            reserved_after=after.reserved_credits,
            reserved_delta=before.reserved_credits - after.reserved_credits,
            settled_reservations=len(settled),
        )

    async def _record_settlement(
        self, reservation: CreditReservation, account: CreditAccount, now: datetime
    ) -> None:
        """Write the events the interrupted finalize did not get to."""
        estimated = reservation.estimated_credits
        if reservation.status == ReservationStatus.RELEASED:
            await self._guard.record(
                CreditEvent(
                    user_id=reservation.user_id,
                    type=CreditEventType.RELEASE,
                    credits=estimated,
                    balance_after=account.available_credits,
                    reference_type="reservation",
                    reference_id=reservation.reservation_id,
                    idempotency_key=release_key(reservation.reservation_id),
                    created_at=now,
                )
            )
            return

        captured = reservation.actual_credits or estimated
        await self._guard.record(
            CreditEvent(
                user_id=reservation.user_id,
                type=CreditEventType.CAPTURE,
                credits=captured,
                balance_after=account.available_credits,
                reference_type="reservation",
                reference_id=reservation.reservation_id,
                idempotency_key=capture_key(reservation.reservation_id),
                created_at=now,
            )
        )
        if estimated > captured:
            await self._guard.record(
                CreditEvent(
                    user_id=reservation.user_id,
                    type=CreditEventType.RELEASE,
                    credits=estimated - captured,
                    balance_after=account.available_credits,
                    reference_type="reservation_release",
                    reference_id=reservation.reservation_id,
                    idempotency_key=release_after_capture_key(reservation.reservation_id),
                    created_at=now,
                )
            )

    async def reconcile_all(self) -> List[ReconcileResult]:
        """Reconcile every account holding reserved credits or open reservations."""
        user_ids = {a.user_id for a in await self._db.list_accounts_with_reserved_credits()}
        user_ids.update(await self._db.list_user_ids_with_open_reservations())
        return [await self.reconcile(user_id) for user_id in sorted(user_ids)]

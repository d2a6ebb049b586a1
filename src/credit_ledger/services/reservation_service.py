from __future__ import annotations

import logging
import secrets
import time
from datetime import datetime
from typing import Any, Iterable, Optional, Union

from ..cache.balance import BalanceCache
from ..db.base import BaseDBManager
from ..errors import (
    Conflict,
    DuplicateRecordError,
    Forbidden,
    InsufficientCredits,
    NotFound,
    SubscriptionRequired,
)
from ..logging.ledger_logger import LedgerLogger
from ..models.event import CreditEvent, CreditEventType
from ..models.reservation import (
    CreditReservation,
    GenerationService,
    ReservationStatus,
)
from ..models.results import FinalizeResult, ReleaseAllResult, ReserveResult
from .base import LedgerServiceBase
from .idempotency import (
    IdempotencyGuard,
    capture_key,
    release_after_capture_key,
    release_key,
    reserve_key,
)
from .transitions import (
    attach_external_id,
    capture_funds,
    capture_reservation,
    captured_amount,
    normalize_credits,
    release_funds,
    release_reservation,
    reserve_funds,
)


logger = logging.getLogger(__name__)

ServiceLike = Union[GenerationService, str]


def generate_reservation_id() -> str:
    return f"res_{int(time.time() * 1000)}_{secrets.token_hex(8)}"


class ReservationService(LedgerServiceBase):
    """
    Reserve -> capture/release lifecycle for credits held against paid jobs.

    A reservation moves exactly once from ``reserved`` to ``captured`` or
    ``released``. Replays of any call (duplicate webhooks, client retries)
    report the recorded outcome instead of applying it again.
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

    async def reserve(
        self,
        user_id: str,
        service: ServiceLike,
        model_id: str,
        estimated_credits: Any,
        reservation_id: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> ReserveResult:
        estimated = normalize_credits(estimated_credits)
        service = GenerationService(service)

        async with self._db.transaction():
            if await self._db.get_active_subscription(user_id) is None:
                await self._ledger.log_error(
                    message="Reservation refused: no active subscription",
                    details={"service": service.value, "model_id": model_id},
                    user_id=user_id,
                    correlation_id=correlation_id,
                )
                raise SubscriptionRequired()

            reservation_id = reservation_id or generate_reservation_id()
            existing = await self._db.get_reservation(reservation_id)
            if existing is not None:
                return await self._replay_reserve(existing, user_id, correlation_id)

            async def effect() -> ReserveResult:
                return await self._reserve_new(
                    user_id=user_id,
                    service=service,
                    model_id=model_id,
                    estimated=estimated,
                    reservation_id=reservation_id,
                    correlation_id=correlation_id,
                )

            async def replay(event: CreditEvent) -> ReserveResult:
                if event.user_id != user_id:
                    raise Forbidden()
                account = await self._current_account(user_id)
                return ReserveResult(
                    reservation_id=reservation_id,
                    estimated_credits=event.credits,
                    available_credits=account.available_credits,
                    reserved_credits=account.reserved_credits,
                    was_idempotent=True,
                )

            return await self._guard.apply_once(reserve_key(reservation_id), effect, replay)

    async def _reserve_new(
        self,
        user_id: str,
        service: GenerationService,
        model_id: str,
        estimated: int,
        reservation_id: str,
        correlation_id: Optional[str],
    ) -> ReserveResult:
        now = datetime.utcnow()
        try:
            _, account = await self._update_account(
                user_id, lambda current: reserve_funds(current, estimated, now, reservation_id)
            )
        except InsufficientCredits:
            snapshot = await self._current_account(user_id)
            await self._ledger.log_error(
                message="Insufficient credits for reservation",
                details={
                    "requested": estimated,
                    "available": snapshot.available_credits,
                    "reserved": snapshot.reserved_credits,
                    "reservation_id": reservation_id,
                },
                user_id=user_id,
                correlation_id=correlation_id,
            )
            raise

        reservation = CreditReservation(
            reservation_id=reservation_id,
            user_id=user_id,
            service=service,
            model_id=model_id,
            estimated_credits=estimated,
            created_at=now,
        )
        try:
            await self._db.insert_reservation(reservation)
        except DuplicateRecordError:
            # Lost an insert race on the same id: undo our debit, report the winner.
            await self._update_account(
                user_id,
                lambda current: release_funds(
                    current, estimated, datetime.utcnow(), reservation
                ),
            )
            winner = await self._db.get_reservation(reservation_id)
            if winner is None:
                raise
            await self._ledger.log_operation(
                user_id=user_id,
                message="Concurrent reservation detected; debit compensated",
                details={"reservation_id": reservation_id, "credits": estimated},
                correlation_id=correlation_id,
            )
            return await self._replay_reserve(winner, user_id, correlation_id)

        await self._guard.record(
            CreditEvent(
                user_id=user_id,
                type=CreditEventType.RESERVE,
                credits=estimated,
                balance_after=account.available_credits,
                reference_type="reservation",
                reference_id=reservation_id,
                idempotency_key=reserve_key(reservation_id),
                created_at=now,
            )
        )
        await self._ledger.log_operation(
            user_id=user_id,
            message="Credits reserved",
            details={
                "reservation_id": reservation_id,
                "service": service.value,
                "model_id": model_id,
                "credits": estimated,
                "available_after": account.available_credits,
            },
            correlation_id=correlation_id,
        )
        return ReserveResult(
            reservation_id=reservation_id,
            estimated_credits=estimated,
            available_credits=account.available_credits,
            reserved_credits=account.reserved_credits,
        )

    async def _replay_reserve(
        self,
        reservation: CreditReservation,
        user_id: str,
        correlation_id: Optional[str],
    ) -> ReserveResult:
        if reservation.user_id != user_id:
            await self._ledger.log_error(
                message="Reservation belongs to another user",
                details={"reservation_id": reservation.reservation_id},
                user_id=user_id,
                correlation_id=correlation_id,
            )
            raise Forbidden()
        account = await self._current_account(user_id)
        return ReserveResult(
            reservation_id=reservation.reservation_id,
            estimated_credits=reservation.estimated_credits,
            available_credits=account.available_credits,
            reserved_credits=account.reserved_credits,
            was_idempotent=True,
        )

    async def attach_external_request_id(
        self,
        reservation_id: str,
        external_request_id: str,
        correlation_id: Optional[str] = None,
    ) -> None:
        async with self._db.transaction():
            reservation = await self._db.get_reservation(reservation_id)
            if reservation is None:
                raise NotFound("Reservation not found")

            try:
                attached = attach_external_id(reservation, external_request_id)
            except Conflict:
                await self._ledger.log_error(
                    message="Reservation already linked to another external request",
                    details={
                        "reservation_id": reservation_id,
                        "external_request_id": external_request_id,
                        "linked_external_request_id": reservation.external_request_id,
                    },
                    user_id=reservation.user_id,
                    correlation_id=correlation_id,
                )
                raise
            if attached is None:
                return

            holder = await self._db.get_reservation_by_external_id(external_request_id)
            if holder is not None and holder.reservation_id != reservation_id:
                await self._ledger.log_error(
                    message="External request already linked to another reservation",
                    details={
                        "reservation_id": reservation_id,
                        "external_request_id": external_request_id,
                        "linked_reservation_id": holder.reservation_id,
                    },
                    user_id=reservation.user_id,
                    correlation_id=correlation_id,
                )
                raise Conflict("External request already linked to another reservation")

            try:
                stored = await self._db.set_external_request_id(
                    reservation_id, external_request_id
                )
            except DuplicateRecordError as exc:
                raise Conflict(
                    "External request already linked to another reservation"
                ) from exc
            if not stored:
                # Someone attached concurrently; only the same id is acceptable.
                current = await self._db.get_reservation(reservation_id)
                if current is None or current.external_request_id != external_request_id:
                    raise Conflict()
                return

            await self._ledger.log_operation(
                user_id=reservation.user_id,
                message="External request attached to reservation",
                details={
                    "reservation_id": reservation_id,
                    "external_request_id": external_request_id,
                },
                correlation_id=correlation_id,
            )

    async def finalize(
        self,
        success: bool,
        reservation_id: Optional[str] = None,
        external_request_id: Optional[str] = None,
        actual_credits: Any = None,
        user_id: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> Optional[FinalizeResult]:
        """
        Capture (success) or release (failure) a reservation.

        Returns None when neither identifier resolves to a reservation, and a
        ``noop`` result when the reservation is already finalized.
        """
        if not reservation_id and not external_request_id:
            raise ValueError("Either reservation_id or external_request_id is required")
        if success and actual_credits is not None:
            normalize_credits(actual_credits)

        async with self._db.transaction():
            reservation = await self._locate(reservation_id, external_request_id)
            if reservation is None:
                logger.info(
                    "Nothing to finalize for reservation=%s external=%s",
                    reservation_id,
                    external_request_id,
                )
                return None

            if user_id is not None and reservation.user_id != user_id:
                await self._ledger.log_error(
                    message="Reservation belongs to another user",
                    details={"reservation_id": reservation.reservation_id},
                    user_id=user_id,
                    correlation_id=correlation_id,
                )
                raise Forbidden()

            if reservation.status.is_terminal:
                return await self._noop_result(reservation)

            if not success:
                return await self._release(reservation, correlation_id)
            return await self._capture(reservation, actual_credits, correlation_id)

    async def _locate(
        self, reservation_id: Optional[str], external_request_id: Optional[str]
    ) -> Optional[CreditReservation]:
        if reservation_id:
            return await self._db.get_reservation(reservation_id)
        if not external_request_id:
            raise ValueError("Either reservation_id or external_request_id is required")
        return await self._db.get_reservation_by_external_id(external_request_id)

    async def _noop_result(self, reservation: CreditReservation) -> FinalizeResult:
        current = await self._db.get_reservation(reservation.reservation_id) or reservation
        account = await self._current_account(current.user_id)
        captured = current.actual_credits or 0
        if current.status == ReservationStatus.RELEASED:
            released = current.estimated_credits
        elif current.status == ReservationStatus.CAPTURED:
            released = current.estimated_credits - captured
        else:
            released = 0
        return FinalizeResult(
            reservation_id=current.reservation_id,
            status="noop",
            captured_credits=captured,
            released_credits=released,
            available_credits=account.available_credits,
            reserved_credits=account.reserved_credits,
        )

    async def _release(
        self, reservation: CreditReservation, correlation_id: Optional[str]
    ) -> FinalizeResult:
        async def effect() -> FinalizeResult:
            now = datetime.utcnow()
            estimated = reservation.estimated_credits
            released = release_reservation(reservation, now)
            if not await self._db.transition_reservation(
                released, expected_status=ReservationStatus.RESERVED
            ):
                return await self._noop_result(reservation)

            _, account = await self._update_account(
                reservation.user_id,
                lambda current: release_funds(current, estimated, now, reservation),
            )
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
            await self._ledger.log_operation(
                user_id=reservation.user_id,
                message="Reserved credits released",
                details={
                    "reservation_id": reservation.reservation_id,
                    "credits": estimated,
                    "available_after": account.available_credits,
                },
                correlation_id=correlation_id,
            )
            return FinalizeResult(
                reservation_id=reservation.reservation_id,
                status="released",
                captured_credits=0,
                released_credits=estimated,
                available_credits=account.available_credits,
                reserved_credits=account.reserved_credits,
            )

        async def replay(_: CreditEvent) -> FinalizeResult:
            return await self._noop_result(reservation)

        return await self._guard.apply_once(
            release_key(reservation.reservation_id), effect, replay
        )

    async def _capture(
        self,
        reservation: CreditReservation,
        actual_credits: Any,
        correlation_id: Optional[str],
    ) -> FinalizeResult:
        async def effect() -> FinalizeResult:
            now = datetime.utcnow()
            estimated = reservation.estimated_credits
            captured = captured_amount(estimated, actual_credits)
            refund = estimated - captured

            finalized = capture_reservation(reservation, captured, now)
            if not await self._db.transition_reservation(
                finalized, expected_status=ReservationStatus.RESERVED
            ):
                return await self._noop_result(reservation)

            _, account = await self._update_account(
                reservation.user_id,
                lambda current: capture_funds(current, estimated, captured, now, reservation),
            )
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
            if refund > 0:
                await self._guard.record(
                    CreditEvent(
                        user_id=reservation.user_id,
                        type=CreditEventType.RELEASE,
                        credits=refund,
                        balance_after=account.available_credits,
                        reference_type="reservation_release",
                        reference_id=reservation.reservation_id,
                        idempotency_key=release_after_capture_key(reservation.reservation_id),
                        created_at=now,
                    )
                )
            await self._ledger.log_operation(
                user_id=reservation.user_id,
                message="Reserved credits captured",
                details={
                    "reservation_id": reservation.reservation_id,
                    "estimated": estimated,
                    "captured": captured,
                    "refunded": refund,
                    "available_after": account.available_credits,
                },
                correlation_id=correlation_id,
            )
            return FinalizeResult(
                reservation_id=reservation.reservation_id,
                status="captured",
                captured_credits=captured,
                released_credits=refund,
                available_credits=account.available_credits,
                reserved_credits=account.reserved_credits,
            )

        async def replay(_: CreditEvent) -> FinalizeResult:
            return await self._noop_result(reservation)

        return await self._guard.apply_once(
            capture_key(reservation.reservation_id), effect, replay
        )

    async def release_all_reserved(
        self,
        user_id: str,
        service: Optional[ServiceLike] = None,
        correlation_id: Optional[str] = None,
    ) -> ReleaseAllResult:
        """
        Release every open reservation of a user, oldest first.

        Used to unblock a user whose jobs died without reporting a status.
        """
        service_filter = GenerationService(service) if service is not None else None
        released_reservations = 0
        released_credits = 0

        async with self._db.transaction():
            pending = list(
                await self._db.list_reservations(
                    user_id, status=ReservationStatus.RESERVED, service=service_filter
                )
            )
            for reservation in pending:
                result = await self._release(reservation, correlation_id)
                if result.status == "released":
                    released_reservations += 1
                    released_credits += result.released_credits

            account = await self._current_account(user_id)

        if released_reservations:
            await self._ledger.log_operation(
                user_id=user_id,
                message="Open reservations released",
                details={
                    "service": service_filter.value if service_filter else None,
                    "released_reservations": released_reservations,
                    "released_credits": released_credits,
                },
                correlation_id=correlation_id,
            )
        return ReleaseAllResult(
            released_reservations=released_reservations,
            released_credits=released_credits,
            available_credits=account.available_credits,
            reserved_credits=account.reserved_credits,
        )

    async def latest_reserved_reservation_id(
        self, user_id: str, service: ServiceLike
    ) -> Optional[str]:
        """Newest still-open reservation for a user and service, if any."""
        open_reservations = list(
            await self._db.list_reservations(
                user_id,
                status=ReservationStatus.RESERVED,
                service=GenerationService(service),
            )
        )
        if not open_reservations:
            return None
        return open_reservations[-1].reservation_id

    async def get_reservation(self, reservation_id: str) -> Optional[CreditReservation]:
        return await self._db.get_reservation(reservation_id)

    async def list_open_reservations(self, user_id: str) -> Iterable[CreditReservation]:
        return await self._db.list_reservations(user_id, status=ReservationStatus.RESERVED)

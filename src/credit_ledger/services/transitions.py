"""
Pure state transitions for accounts and reservations.

Every function takes the current state and returns the complete next state
as a new, validated model; nothing here touches the store. Services read,
call one of these, and write the result back, so balance and lifecycle rules
live in one place.
"""

from __future__ import annotations

import math
from datetime import datetime
from numbers import Real
from typing import Any, List, Optional, Sequence, Tuple

from ..errors import Conflict, IllegalTransition, InsufficientCredits, InvalidAmount
from ..models.account import CreditAccount, ReservationHold
from ..models.reservation import CreditReservation, ReservationStatus


def normalize_credits(value: Any) -> int:
    """Validate a credit amount and round it up to a whole credit."""
    if isinstance(value, bool) or not isinstance(value, Real):
        raise InvalidAmount()
    if isinstance(value, int):
        if value <= 0:
            raise InvalidAmount()
        return value
    number = float(value)
    if not math.isfinite(number) or number <= 0:
        raise InvalidAmount()
    return math.ceil(number)


def captured_amount(estimated: int, actual: Optional[Any]) -> int:
    """
    Credits to capture for a successful job: the reported usage rounded up,
    or the estimate when none was reported, clamped to ``[1, estimated]``.
    """
    requested = normalize_credits(actual) if actual is not None else estimated
    return max(1, min(requested, estimated))


def _next_account(
    account: CreditAccount,
    available: int,
    reserved: int,
    now: datetime,
    holds: Optional[List[ReservationHold]] = None,
) -> CreditAccount:
    data = account.model_dump()
    data.update(available_credits=available, reserved_credits=reserved, updated_at=now)
    if holds is not None:
        data["holds"] = [hold.model_dump() for hold in holds]
    return CreditAccount.model_validate(data)


def _without_hold(account: CreditAccount, reservation_id: str) -> Optional[List[ReservationHold]]:
    """Holds minus the first one for ``reservation_id``, or None when there is none."""
    holds = list(account.holds)
    for index, hold in enumerate(holds):
        if hold.reservation_id == reservation_id:
            del holds[index]
            return holds
    return None


def _settles(
    account: CreditAccount, reservation: Optional[CreditReservation]
) -> Tuple[bool, Optional[List[ReservationHold]]]:
    """
    Whether an account write for ``reservation`` still has to move credits,
    and the holds to store with it.

    A reservation without a hold was either settled already or had its hold
    dropped by a plan reset. Only the reset case still moves credits.
    """
    if reservation is None:
        return True, None
    remaining = _without_hold(account, reservation.reservation_id)
    if remaining is not None:
        return True, remaining
    reset_at = account.last_reset_at
    return reset_at is not None and reservation.created_at <= reset_at, None


# Account transitions

def reserve_funds(
    account: CreditAccount,
    estimated: int,
    now: datetime,
    reservation_id: Optional[str] = None,
) -> CreditAccount:
    if account.available_credits < estimated:
        raise InsufficientCredits()
    holds = None
    if reservation_id is not None:
        holds = list(account.holds) + [
            ReservationHold(reservation_id=reservation_id, credits=estimated)
        ]
    return _next_account(
        account,
        available=account.available_credits - estimated,
        reserved=account.reserved_credits + estimated,
        now=now,
        holds=holds,
    )


def release_funds(
    account: CreditAccount,
    credits: int,
    now: datetime,
    reservation: Optional[CreditReservation] = None,
) -> CreditAccount:
    settles, holds = _settles(account, reservation)
    if not settles:
        return account
    return _next_account(
        account,
        available=account.available_credits + credits,
        reserved=max(0, account.reserved_credits - credits),
        now=now,
        holds=holds,
    )


def capture_funds(
    account: CreditAccount,
    estimated: int,
    captured: int,
    now: datetime,
    reservation: Optional[CreditReservation] = None,
) -> CreditAccount:
    settles, holds = _settles(account, reservation)
    if not settles:
        return account
    # Captured credits leave the ledger; only the unused part comes back.
    return _next_account(
        account,
        available=account.available_credits + (estimated - captured),
        reserved=max(0, account.reserved_credits - estimated),
        now=now,
        holds=holds,
    )


def settle_finalized(
    account: CreditAccount, reservation: CreditReservation, now: datetime
) -> CreditAccount:
    """
    Apply the account side of an already finalized reservation whose hold is
    still on the account. Accounts without that hold come back unchanged.
    """
    if account.hold_for(reservation.reservation_id) is None:
        return account
    estimated = reservation.estimated_credits
    if reservation.status == ReservationStatus.CAPTURED:
        captured = reservation.actual_credits or estimated
        return capture_funds(account, estimated, captured, now, reservation)
    if reservation.status == ReservationStatus.RELEASED:
        return release_funds(account, estimated, now, reservation)
    return account


def reset_to_plan(account: CreditAccount, plan_credits: int, now: datetime) -> CreditAccount:
    next_account = _next_account(account, available=plan_credits, reserved=0, now=now, holds=[])
    return next_account.model_copy(update={"last_reset_at": now})


def reconcile_reserved(
    account: CreditAccount, open_reservations: Sequence[CreditReservation], now: datetime
) -> Tuple[CreditAccount, int]:
    """
    Align stored reserved credits and holds with the open reservations.

    Returns the next account and ``stored - computed``: a positive delta is
    returned to available, a negative one is taken from available (floored
    at zero).
    """
    reserved_from_reservations = sum(r.estimated_credits for r in open_reservations)
    delta = account.reserved_credits - reserved_from_reservations
    if delta > 0:
        available = account.available_credits + delta
    else:
        available = max(0, account.available_credits + delta)
    holds = [
        ReservationHold(reservation_id=r.reservation_id, credits=r.estimated_credits)
        for r in open_reservations
    ]
    return (
        _next_account(
            account, available=available, reserved=reserved_from_reservations, now=now, holds=holds
        ),
        delta,
    )


# Reservation transitions

def _ensure_open(reservation: CreditReservation) -> None:
    if reservation.status.is_terminal:
        raise IllegalTransition(
            f"Reservation {reservation.reservation_id} is already {reservation.status.value}"
        )


def capture_reservation(
    reservation: CreditReservation, captured: int, now: datetime
) -> CreditReservation:
    _ensure_open(reservation)
    if not 1 <= captured <= reservation.estimated_credits:
        raise InvalidAmount("Captured credits must be between 1 and the estimate")
    return reservation.model_copy(
        update={
            "status": ReservationStatus.CAPTURED,
            "actual_credits": captured,
            "finalized_at": now,
        }
    )


def release_reservation(reservation: CreditReservation, now: datetime) -> CreditReservation:
    _ensure_open(reservation)
    return reservation.model_copy(
        update={"status": ReservationStatus.RELEASED, "finalized_at": now}
    )


def attach_external_id(
    reservation: CreditReservation, external_request_id: str
) -> Optional[CreditReservation]:
    """
    Returns the reservation with the id attached, or None when it already
    carries this exact id.
    """
    current = reservation.external_request_id
    if current == external_request_id:
        return None
    if current is not None:
        raise Conflict()
    return reservation.model_copy(update={"external_request_id": external_request_id})

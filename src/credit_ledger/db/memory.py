from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, Dict, Iterable, List, Optional, TypeVar

from .base import BaseDBManager
from ..errors import DuplicateRecordError, StaleWriteError
from ..models.account import CreditAccount
from ..models.base import DBSerializableModel
from ..models.event import CreditEvent
from ..models.ledger import OperationLogEntry
from ..models.reservation import (
    CreditReservation,
    GenerationService,
    ReservationStatus,
)
from ..models.subscription import Subscription, SubscriptionStatus


TModel = TypeVar("TModel", bound=DBSerializableModel)


def _copy(model: Optional[TModel]) -> Optional[TModel]:
    # Callers get detached copies so nothing mutates stored state in place.
    return model.model_copy(deep=True) if model is not None else None


class InMemoryDBManager(BaseDBManager):
    """
    Simple in-memory implementation used for tests and local development.
    NOT suitable for production, but enforces the same uniqueness, version
    and status fences as the real backends.
    """

    def __init__(self) -> None:
        self._accounts: Dict[str, CreditAccount] = {}
        self._reservations: Dict[str, CreditReservation] = {}
        self._external_ids: Dict[str, str] = {}
        self._events: Dict[str, CreditEvent] = {}
        self._subscriptions: Dict[str, Subscription] = {}
        self._operation_log: List[OperationLogEntry] = []
        self._id_counter: int = 0

    def _next_id(self) -> str:
        self._id_counter += 1
        return str(self._id_counter)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        # In-memory backend cannot provide real rollback; this is a no-op.
        yield

    # Accounts
    async def get_account(self, user_id: str) -> Optional[CreditAccount]:
        return _copy(self._accounts.get(user_id))

    async def get_or_create_account(self, user_id: str) -> CreditAccount:
        if user_id not in self._accounts:
            self._accounts[user_id] = CreditAccount(user_id=user_id)
        return _copy(self._accounts[user_id])

    async def replace_account(
        self, account: CreditAccount, expected_version: int
    ) -> CreditAccount:
        stored = self._accounts.get(account.user_id)
        stored_version = stored.version if stored is not None else 0
        if stored_version != expected_version:
            raise StaleWriteError(
                CreditAccount.collection_name, account.user_id, expected_version
            )
        saved = account.model_copy(update={"version": expected_version + 1}, deep=True)
        self._accounts[account.user_id] = saved
        return _copy(saved)

    async def list_accounts_with_reserved_credits(self) -> Iterable[CreditAccount]:
        return [_copy(a) for a in self._accounts.values() if a.reserved_credits > 0]

    # Reservations
    async def insert_reservation(
        self, reservation: CreditReservation
    ) -> CreditReservation:
        if reservation.reservation_id in self._reservations:
            raise DuplicateRecordError(
                CreditReservation.collection_name, reservation.reservation_id
            )
        ext = reservation.external_request_id
        if ext is not None and ext in self._external_ids:
            raise DuplicateRecordError(CreditReservation.collection_name, ext)
        self._reservations[reservation.reservation_id] = _copy(reservation)
        if ext is not None:
            self._external_ids[ext] = reservation.reservation_id
        return reservation

    async def get_reservation(self, reservation_id: str) -> Optional[CreditReservation]:
        return _copy(self._reservations.get(reservation_id))

    async def get_reservation_by_external_id(
        self, external_request_id: str
    ) -> Optional[CreditReservation]:
        reservation_id = self._external_ids.get(external_request_id)
        if reservation_id is None:
            return None
        return _copy(self._reservations.get(reservation_id))

    async def transition_reservation(
        self, reservation: CreditReservation, expected_status: ReservationStatus
    ) -> bool:
        stored = self._reservations.get(reservation.reservation_id)
        if stored is None or stored.status != expected_status:
            return False
        # External id is owned by set_external_request_id; keep the stored one.
        self._reservations[reservation.reservation_id] = reservation.model_copy(
            update={"external_request_id": stored.external_request_id}, deep=True
        )
        return True

    async def set_external_request_id(
        self, reservation_id: str, external_request_id: str
    ) -> bool:
        stored = self._reservations.get(reservation_id)
        if stored is None or stored.external_request_id is not None:
            return False
        if external_request_id in self._external_ids:
            raise DuplicateRecordError(
                CreditReservation.collection_name, external_request_id
            )
        stored.external_request_id = external_request_id
        self._external_ids[external_request_id] = reservation_id
        return True

    async def list_reservations(
        self,
        user_id: str,
        status: Optional[ReservationStatus] = None,
        service: Optional[GenerationService] = None,
    ) -> Iterable[CreditReservation]:
        matches = [
            r
            for r in self._reservations.values()
            if r.user_id == user_id
            and (status is None or r.status == status)
            and (service is None or r.service == service)
        ]
        matches.sort(key=lambda r: r.created_at)
        return [_copy(r) for r in matches]

    async def list_user_ids_with_open_reservations(self) -> Iterable[str]:
        return sorted(
            {
                r.user_id
                for r in self._reservations.values()
                if r.status == ReservationStatus.RESERVED
            }
        )

    # Credit events
    async def insert_event(self, event: CreditEvent) -> CreditEvent:
        if event.idempotency_key in self._events:
            raise DuplicateRecordError(
                CreditEvent.collection_name, event.idempotency_key
            )
        self._events[event.idempotency_key] = _copy(event)
        return event

    async def get_event_by_idempotency_key(
        self, idempotency_key: str
    ) -> Optional[CreditEvent]:
        return _copy(self._events.get(idempotency_key))

    async def list_events(self, user_id: str) -> Iterable[CreditEvent]:
        # Dicts keep insertion order, which is the append order of the log.
        return [_copy(e) for e in self._events.values() if e.user_id == user_id]

    # Subscriptions
    async def add_subscription(self, subscription: Subscription) -> Subscription:
        if subscription.id is None:
            subscription.id = self._next_id()
        self._subscriptions[subscription.id] = _copy(subscription)
        return subscription

    async def update_subscription(self, subscription: Subscription) -> Subscription:
        if subscription.id is None:
            raise ValueError("Subscription must have id to be updated")
        self._subscriptions[subscription.id] = _copy(subscription)
        return subscription

    async def get_subscription(self, subscription_id: str) -> Optional[Subscription]:
        return _copy(self._subscriptions.get(subscription_id))

    async def get_active_subscription(self, user_id: str) -> Optional[Subscription]:
        for sub in self._subscriptions.values():
            if sub.user_id == user_id and sub.status == SubscriptionStatus.ACTIVE:
                return _copy(sub)
        return None

    async def get_latest_subscription(self, user_id: str) -> Optional[Subscription]:
        subs = [s for s in self._subscriptions.values() if s.user_id == user_id]
        if not subs:
            return None
        return _copy(max(subs, key=lambda s: s.created_at))

    async def list_active_subscriptions(self) -> Iterable[Subscription]:
        return [
            _copy(s)
            for s in self._subscriptions.values()
            if s.status == SubscriptionStatus.ACTIVE
        ]

    async def list_subscriptions_due(self, as_of: datetime) -> Iterable[Subscription]:
        due = [
            s
            for s in self._subscriptions.values()
            if s.status == SubscriptionStatus.ACTIVE and s.next_billing_date <= as_of
        ]
        due.sort(key=lambda s: s.next_billing_date)
        return [_copy(s) for s in due]

    # Operation log
    async def add_operation_log_entry(
        self, entry: OperationLogEntry
    ) -> OperationLogEntry:
        if entry.id is None:
            entry.id = self._next_id()
        self._operation_log.append(entry)
        return entry

    @property
    def operation_log(self) -> List[OperationLogEntry]:
        return list(self._operation_log)

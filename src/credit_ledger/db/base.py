from __future__ import annotations

from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, Iterable, Optional

from ..models.account import CreditAccount
from ..models.event import CreditEvent
from ..models.ledger import OperationLogEntry
from ..models.reservation import (
    CreditReservation,
    GenerationService,
    ReservationStatus,
)
from ..models.subscription import Subscription


class BaseDBManager(ABC):
    """
    DB-agnostic async ledger store interface.

    Concrete implementations (in-memory, MongoDB, ...) must enforce the
    uniqueness declared on each model (``reservation_id``, ``idempotency_key``,
    ``external_request_id``) and raise ``DuplicateRecordError`` on collision.
    Account writes are version-checked and raise ``StaleWriteError`` when a
    concurrent writer got there first. Reservation status writes are fenced
    on the expected current status.
    """

    @abstractmethod
    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        """
        Provide an atomic transaction context if the backend supports it.
        Backends with only per-document atomicity may yield directly.
        """
        yield

    # Accounts
    @abstractmethod
    async def get_account(self, user_id: str) -> Optional[CreditAccount]: ...

    @abstractmethod
    async def get_or_create_account(self, user_id: str) -> CreditAccount:
        """Return the account, inserting a zero-balance one if missing."""
        ...

    @abstractmethod
    async def replace_account(
        self, account: CreditAccount, expected_version: int
    ) -> CreditAccount:
        """
        Store ``account`` if the stored version still equals ``expected_version``.
        The stored version becomes ``expected_version + 1``.
        """
        ...

    @abstractmethod
    async def list_accounts_with_reserved_credits(self) -> Iterable[CreditAccount]: ...

    # Reservations
    @abstractmethod
    async def insert_reservation(
        self, reservation: CreditReservation
    ) -> CreditReservation: ...

    @abstractmethod
    async def get_reservation(self, reservation_id: str) -> Optional[CreditReservation]: ...

    @abstractmethod
    async def get_reservation_by_external_id(
        self, external_request_id: str
    ) -> Optional[CreditReservation]: ...

    @abstractmethod
    async def transition_reservation(
        self, reservation: CreditReservation, expected_status: ReservationStatus
    ) -> bool:
        """
        Replace the stored reservation only if its status still equals
        ``expected_status``. Returns False when another writer moved it first.
        """
        ...

    @abstractmethod
    async def set_external_request_id(
        self, reservation_id: str, external_request_id: str
    ) -> bool:
        """
        Attach the external id only if none is set yet. Returns False when the
        reservation already carries an id.
        """
        ...

    @abstractmethod
    async def list_reservations(
        self,
        user_id: str,
        status: Optional[ReservationStatus] = None,
        service: Optional[GenerationService] = None,
    ) -> Iterable[CreditReservation]:
        """Reservations for a user ordered oldest first."""
        ...

    @abstractmethod
    async def list_user_ids_with_open_reservations(self) -> Iterable[str]: ...

    # Credit events
    @abstractmethod
    async def insert_event(self, event: CreditEvent) -> CreditEvent: ...

    @abstractmethod
    async def get_event_by_idempotency_key(
        self, idempotency_key: str
    ) -> Optional[CreditEvent]: ...

    @abstractmethod
    async def list_events(self, user_id: str) -> Iterable[CreditEvent]: ...

    # Subscriptions
    @abstractmethod
    async def add_subscription(self, subscription: Subscription) -> Subscription: ...

    @abstractmethod
    async def update_subscription(self, subscription: Subscription) -> Subscription: ...

    @abstractmethod
    async def get_subscription(self, subscription_id: str) -> Optional[Subscription]: ...

    @abstractmethod
    async def get_active_subscription(self, user_id: str) -> Optional[Subscription]: ...

    @abstractmethod
    async def get_latest_subscription(self, user_id: str) -> Optional[Subscription]: ...

    @abstractmethod
    async def list_active_subscriptions(self) -> Iterable[Subscription]: ...

    @abstractmethod
    async def list_subscriptions_due(self, as_of: datetime) -> Iterable[Subscription]:
        """Active subscriptions whose next billing date is at or before ``as_of``."""
        ...

    # Operation log
    @abstractmethod
    async def add_operation_log_entry(
        self, entry: OperationLogEntry
    ) -> OperationLogEntry: ...

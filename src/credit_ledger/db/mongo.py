from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Dict, Iterable, List, Mapping, Optional, Type, TypeVar
from uuid import uuid4

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError

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

MODELS: List[Type[DBSerializableModel]] = [
    CreditAccount,
    CreditReservation,
    CreditEvent,
    Subscription,
    OperationLogEntry,
]


class MongoDBManager(BaseDBManager):
    """
    MongoDB implementation of BaseDBManager using motor (async driver).

    Each model's primary key is stored as ``_id`` and mirrored in the model
    field, which keeps the rest of the system agnostic of MongoDB specifics.
    Uniqueness is enforced by the indexes created in ``ensure_indexes``.

    Note: The `transaction()` context manager is a no-op. The ledger relies
    on per-document atomicity: versioned account replaces, status-fenced
    reservation updates and unique indexes.
    """

    def __init__(self, database: AsyncIOMotorDatabase) -> None:
        self._db = database

    @classmethod
    def from_client_uri(cls, uri: str, db_name: str) -> "MongoDBManager":
        client = AsyncIOMotorClient(uri)
        return cls(client[db_name])

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        yield

    async def ensure_indexes(self) -> None:
        for model in MODELS:
            col = self._db[model.collection_name]
            for field in model.unique_fields:
                if field == model.primary_key:
                    continue
                await col.create_index([(field, ASCENDING)], unique=True)
            for field in model.sparse_unique_fields:
                await col.create_index(
                    [(field, ASCENDING)],
                    unique=True,
                    partialFilterExpression={field: {"$type": "string"}},
                )

        reservations = self._db[CreditReservation.collection_name]
        await reservations.create_index(
            [("user_id", ASCENDING), ("status", ASCENDING), ("created_at", ASCENDING)]
        )
        await self._db[CreditEvent.collection_name].create_index(
            [("user_id", ASCENDING), ("created_at", ASCENDING)]
        )
        subscriptions = self._db[Subscription.collection_name]
        await subscriptions.create_index([("user_id", ASCENDING), ("status", ASCENDING)])
        await subscriptions.create_index(
            [("status", ASCENDING), ("next_billing_date", ASCENDING)]
        )

    # Helper utilities
    @staticmethod
    def _prepare_insert(model: TModel) -> Dict[str, Any]:
        pk = model.primary_key or "id"
        model_id = getattr(model, pk, None)
        if not model_id:
            model_id = uuid4().hex
            setattr(model, pk, model_id)
        data = model.serialize_for_db()
        data["_id"] = model_id
        return data

    @staticmethod
    def _decode(model_cls: Type[TModel], doc: Optional[Mapping[str, Any]]) -> Optional[TModel]:
        if doc is None:
            return None
        data = dict(doc)
        doc_id = data.pop("_id", None)
        pk = model_cls.primary_key or "id"
        if pk not in data and doc_id is not None:
            data[pk] = str(doc_id)
        return model_cls.model_validate(data)

    async def _find_many(
        self,
        model_cls: Type[TModel],
        query: Mapping[str, Any],
        sort: Optional[List[Any]] = None,
    ) -> List[TModel]:
        cursor = self._db[model_cls.collection_name].find(query)
        if sort:
            cursor = cursor.sort(sort)
        docs = await cursor.to_list(length=None)
        return [self._decode(model_cls, d) for d in docs if d is not None]  # type: ignore[misc]

    # Accounts
    async def get_account(self, user_id: str) -> Optional[CreditAccount]:
        col = self._db[CreditAccount.collection_name]
        return self._decode(CreditAccount, await col.find_one({"_id": user_id}))

    async def get_or_create_account(self, user_id: str) -> CreditAccount:
        col = self._db[CreditAccount.collection_name]
        data = self._prepare_insert(CreditAccount(user_id=user_id))
        data.pop("_id")
        try:
            doc = await col.find_one_and_update(
                {"_id": user_id},
                {"$setOnInsert": data},
                upsert=True,
                return_document=ReturnDocument.AFTER,
            )
        except DuplicateKeyError:
            # Two concurrent upserts; the other one created it.
            doc = await col.find_one({"_id": user_id})
        return self._decode(CreditAccount, doc)  # type: ignore[return-value]

    async def replace_account(
        self, account: CreditAccount, expected_version: int
    ) -> CreditAccount:
        col = self._db[CreditAccount.collection_name]
        saved = account.model_copy(update={"version": expected_version + 1})
        data = self._prepare_insert(saved)
        result = await col.replace_one(
            {"_id": account.user_id, "version": expected_version}, data
        )
        if result.matched_count == 0:
            raise StaleWriteError(
                CreditAccount.collection_name, account.user_id, expected_version
            )
        return saved

    async def list_accounts_with_reserved_credits(self) -> Iterable[CreditAccount]:
        return await self._find_many(
            CreditAccount, {"reserved_credits": {"$gt": 0}}, [("user_id", ASCENDING)]
        )

    # Reservations
    async def insert_reservation(
        self, reservation: CreditReservation
    ) -> CreditReservation:
        col = self._db[CreditReservation.collection_name]
        try:
            await col.insert_one(self._prepare_insert(reservation))
        except DuplicateKeyError as exc:
            raise DuplicateRecordError(
                CreditReservation.collection_name, reservation.reservation_id
            ) from exc
        return reservation

    async def get_reservation(self, reservation_id: str) -> Optional[CreditReservation]:
        col = self._db[CreditReservation.collection_name]
        return self._decode(CreditReservation, await col.find_one({"_id": reservation_id}))

    async def get_reservation_by_external_id(
        self, external_request_id: str
    ) -> Optional[CreditReservation]:
        col = self._db[CreditReservation.collection_name]
        doc = await col.find_one({"external_request_id": external_request_id})
        return self._decode(CreditReservation, doc)

    async def transition_reservation(
        self, reservation: CreditReservation, expected_status: ReservationStatus
    ) -> bool:
        col = self._db[CreditReservation.collection_name]
        changes: Dict[str, Any] = {
            "status": reservation.status.value,
            "finalized_at": reservation.finalized_at,
        }
        if reservation.actual_credits is not None:
            changes["actual_credits"] = reservation.actual_credits
        result = await col.update_one(
            {"_id": reservation.reservation_id, "status": expected_status.value},
            {"$set": changes},
        )
        return result.modified_count == 1

    async def set_external_request_id(
        self, reservation_id: str, external_request_id: str
    ) -> bool:
        col = self._db[CreditReservation.collection_name]
        try:
            result = await col.update_one(
                {"_id": reservation_id, "external_request_id": {"$exists": False}},
                {"$set": {"external_request_id": external_request_id}},
            )
        except DuplicateKeyError as exc:
            raise DuplicateRecordError(
                CreditReservation.collection_name, external_request_id
            ) from exc
        return result.modified_count == 1

    async def list_reservations(
        self,
        user_id: str,
        status: Optional[ReservationStatus] = None,
        service: Optional[GenerationService] = None,
    ) -> Iterable[CreditReservation]:
        query: Dict[str, Any] = {"user_id": user_id}
        if status is not None:
            query["status"] = status.value
        if service is not None:
            query["service"] = service.value
        return await self._find_many(
            CreditReservation, query, [("created_at", ASCENDING)]
        )

    async def list_user_ids_with_open_reservations(self) -> Iterable[str]:
        col = self._db[CreditReservation.collection_name]
        user_ids = await col.distinct(
            "user_id", {"status": ReservationStatus.RESERVED.value}
        )
        return sorted(user_ids)

    # Credit events
    async def insert_event(self, event: CreditEvent) -> CreditEvent:
        col = self._db[CreditEvent.collection_name]
        try:
            await col.insert_one(self._prepare_insert(event))
        except DuplicateKeyError as exc:
            raise DuplicateRecordError(
                CreditEvent.collection_name, event.idempotency_key
            ) from exc
        return event

    async def get_event_by_idempotency_key(
        self, idempotency_key: str
    ) -> Optional[CreditEvent]:
        col = self._db[CreditEvent.collection_name]
        return self._decode(CreditEvent, await col.find_one({"_id": idempotency_key}))

    async def list_events(self, user_id: str) -> Iterable[CreditEvent]:
        return await self._find_many(
            CreditEvent, {"user_id": user_id}, [("created_at", ASCENDING)]
        )

    # Subscriptions
    async def add_subscription(self, subscription: Subscription) -> Subscription:
        col = self._db[Subscription.collection_name]
        await col.insert_one(self._prepare_insert(subscription))
        return subscription

    async def update_subscription(self, subscription: Subscription) -> Subscription:
        if not subscription.id:
            raise ValueError("Subscription must have id to be updated")
        col = self._db[Subscription.collection_name]
        data = self._prepare_insert(subscription)
        await col.replace_one({"_id": subscription.id}, data, upsert=False)
        return subscription

    async def get_subscription(self, subscription_id: str) -> Optional[Subscription]:
        col = self._db[Subscription.collection_name]
        return self._decode(Subscription, await col.find_one({"_id": subscription_id}))

    async def get_active_subscription(self, user_id: str) -> Optional[Subscription]:
        col = self._db[Subscription.collection_name]
        doc = await col.find_one(
            {"user_id": user_id, "status": SubscriptionStatus.ACTIVE.value}
        )
        return self._decode(Subscription, doc)

    async def get_latest_subscription(self, user_id: str) -> Optional[Subscription]:
        col = self._db[Subscription.collection_name]
        doc = await col.find_one({"user_id": user_id}, sort=[("created_at", DESCENDING)])
        return self._decode(Subscription, doc)

    async def list_active_subscriptions(self) -> Iterable[Subscription]:
        return await self._find_many(
            Subscription, {"status": SubscriptionStatus.ACTIVE.value}
        )

    async def list_subscriptions_due(self, as_of: datetime) -> Iterable[Subscription]:
        return await self._find_many(
            Subscription,
            {
                "status": SubscriptionStatus.ACTIVE.value,
                "next_billing_date": {"$lte": as_of},
            },
            [("next_billing_date", ASCENDING)],
        )

    # Operation log
    async def add_operation_log_entry(
        self, entry: OperationLogEntry
    ) -> OperationLogEntry:
        col = self._db[OperationLogEntry.collection_name]
        await col.insert_one(self._prepare_insert(entry))
        return entry

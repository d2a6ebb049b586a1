from __future__ import annotations

import logging
from typing import Optional

from .cache.balance import BalanceCache
from .cache.base import AsyncCacheBackend
from .cache.memory import InMemoryAsyncCache
from .config import LedgerSettings, get_settings
from .db.base import BaseDBManager
from .db.memory import InMemoryDBManager
from .db.mongo import MongoDBManager
from .logging.ledger_logger import LedgerLogger
from .services.balance_service import BalanceService
from .services.billing_service import BillingService, ChargeGateway
from .services.grant_service import GrantService
from .services.idempotency import IdempotencyGuard
from .services.pricing import PlanPricing
from .services.reconciliation_service import ReconciliationService
from .services.reservation_service import ReservationService
from .services.subscription_service import SubscriptionService


logger = logging.getLogger(__name__)


class LedgerServices:
    """The ledger services sharing one store handle, cache and logger."""

    def __init__(
        self,
        db: BaseDBManager,
        ledger: LedgerLogger,
        cache: Optional[BalanceCache],
        pricing: PlanPricing,
        max_write_retries: int = 5,
    ) -> None:
        guard = IdempotencyGuard(db)
        self.db = db
        self.ledger = ledger
        self.cache = cache
        self.pricing = pricing
        self.reservations = ReservationService(
            db, ledger, cache=cache, max_write_retries=max_write_retries, guard=guard
        )
        self.grants = GrantService(
            db,
            ledger,
            pricing=pricing,
            cache=cache,
            max_write_retries=max_write_retries,
            guard=guard,
        )
        self.reconciliation = ReconciliationService(
            db, ledger, cache=cache, max_write_retries=max_write_retries, guard=guard
        )
        self.balances = BalanceService(db, cache=cache)
        self.subscriptions = SubscriptionService(db, ledger, pricing=pricing)


def create_db_manager(settings: Optional[LedgerSettings] = None) -> BaseDBManager:
    settings = settings or get_settings()
    if settings.MONGO_URI:
        logger.info("Using MongoDB ledger store (db=%s)", settings.MONGO_DB)
        return MongoDBManager.from_client_uri(settings.MONGO_URI, settings.MONGO_DB)
    logger.warning("CREDIT_MONGO_URI not set; using the in-memory ledger store")
    return InMemoryDBManager()


def build_services(
    db: Optional[BaseDBManager] = None,
    settings: Optional[LedgerSettings] = None,
    cache_backend: Optional[AsyncCacheBackend] = None,
) -> LedgerServices:
    settings = settings or get_settings()
    db = db or create_db_manager(settings)
    ledger = LedgerLogger(db=db, file_path=settings.LEDGER_LOG_PATH)
    cache = BalanceCache(
        cache_backend or InMemoryAsyncCache(),
        ttl_seconds=settings.BALANCE_CACHE_TTL_SECONDS,
    )
    return LedgerServices(
        db=db,
        ledger=ledger,
        cache=cache,
        pricing=PlanPricing.from_settings(settings),
        max_write_retries=settings.MAX_WRITE_RETRIES,
    )


def build_billing_service(
    services: LedgerServices,
    gateway: ChargeGateway,
    settings: Optional[LedgerSettings] = None,
) -> BillingService:
    settings = settings or get_settings()
    return BillingService(
        subscriptions=services.subscriptions,
        grants=services.grants,
        gateway=gateway,
        ledger=services.ledger,
        billing_interval_days=settings.BILLING_INTERVAL_DAYS,
    )

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import ClassVar, Optional

from pydantic import Field

from .base import DBSerializableModel


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    CANCELLED = "cancelled"
    FAILED = "failed"
    EXPIRED = "expired"


class Subscription(DBSerializableModel):
    """
    Tracks which plan a user pays for, with recurring billing dates.
    """

    collection_name: ClassVar[str] = "subscriptions"

    id: Optional[str] = Field(default=None)
    user_id: str
    plan_id: str
    payment_agreement_id: Optional[str] = Field(
        default=None,
        description="Saved-card agreement used for recurring charges; optional.",
    )
    amount: float = Field(description="Subscription amount in the smallest currency unit.")
    currency: str
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE
    next_billing_date: datetime
    created_at: datetime = Field(default_factory=datetime.utcnow)
    cancelled_at: Optional[datetime] = None
    last_billing_date: Optional[datetime] = None
    last_billing_charge_id: Optional[str] = None

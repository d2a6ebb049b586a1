from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import ClassVar

from pydantic import Field

from .base import DBSerializableModel


class CreditEventType(str, Enum):
    GRANT = "grant"
    RESERVE = "reserve"
    CAPTURE = "capture"
    RELEASE = "release"
    ADJUSTMENT = "adjustment"


class CreditEvent(DBSerializableModel):
    """
    Append-only audit record of one balance-changing effect.

    The idempotency key is globally unique: an event existing for a key is
    what marks the effect as already applied.
    """

    collection_name: ClassVar[str] = "credit_events"
    primary_key: ClassVar[str] = "idempotency_key"
    unique_fields: ClassVar[tuple[str, ...]] = ("idempotency_key",)

    user_id: str
    type: CreditEventType
    credits: int = Field(ge=0)
    balance_after: int = Field(description="Available credits after the effect.")
    reference_type: str
    reference_id: str
    idempotency_key: str
    created_at: datetime = Field(default_factory=datetime.utcnow)

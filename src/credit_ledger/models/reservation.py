from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import ClassVar, Optional

from pydantic import ConfigDict, Field

from .base import DBSerializableModel


class GenerationService(str, Enum):
    FAL = "fal"
    ELEVENLABS = "elevenlabs"
    RUNWAY = "runway"


class ReservationStatus(str, Enum):
    RESERVED = "reserved"
    CAPTURED = "captured"
    RELEASED = "released"

    @property
    def is_terminal(self) -> bool:
        return self is not ReservationStatus.RESERVED


class CreditReservation(DBSerializableModel):
    """
    Credits held for one attempted paid generation job.

    Created in ``reserved`` state and moved exactly once to ``captured`` or
    ``released``. The external request id may be attached once and never
    reassigned.
    """

    collection_name: ClassVar[str] = "credit_reservations"
    primary_key: ClassVar[str] = "reservation_id"
    unique_fields: ClassVar[tuple[str, ...]] = ("reservation_id",)
    sparse_unique_fields: ClassVar[tuple[str, ...]] = ("external_request_id",)

    model_config = ConfigDict(protected_namespaces=())

    reservation_id: str
    user_id: str
    service: GenerationService
    model_id: str
    estimated_credits: int = Field(gt=0)
    status: ReservationStatus = ReservationStatus.RESERVED
    external_request_id: Optional[str] = Field(
        default=None,
        description="Job id reported by the downstream generation provider.",
    )
    actual_credits: Optional[int] = Field(
        default=None,
        ge=1,
        description="Credits captured on success; never above estimated_credits.",
    )
    created_at: datetime = Field(default_factory=datetime.utcnow)
    finalized_at: Optional[datetime] = None

from __future__ import annotations

from datetime import datetime
from typing import ClassVar, List, Optional

from pydantic import BaseModel, Field

from .base import DBSerializableModel


class ReservationHold(BaseModel):
    """Credits counted in ``reserved_credits`` for one open reservation."""

    reservation_id: str
    credits: int = Field(ge=1)


class CreditAccount(DBSerializableModel):
    """
    Per-user prepaid credit balance.

    ``available_credits`` is spendable; ``reserved_credits`` is held against
    open reservations. Accounts are created lazily with zero balances and are
    never deleted.

    ``holds`` names the reservations behind ``reserved_credits``. The account
    write that settles a reservation removes its hold in the same document
    write, so a finalized reservation that still has a hold was never settled
    on the account.
    """

    collection_name: ClassVar[str] = "credit_accounts"
    primary_key: ClassVar[str] = "user_id"
    unique_fields: ClassVar[tuple[str, ...]] = ("user_id",)

    user_id: str
    available_credits: int = Field(default=0, ge=0)
    reserved_credits: int = Field(default=0, ge=0)
    holds: List[ReservationHold] = Field(default_factory=list)
    last_reset_at: Optional[datetime] = Field(
        default=None,
        description="When a plan grant last reset the balance and dropped all holds.",
    )
    version: int = Field(
        default=0,
        description="Incremented on every write; used to fence concurrent updates.",
    )
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    @property
    def total_credits(self) -> int:
        return self.available_credits + self.reserved_credits

    def hold_for(self, reservation_id: str) -> Optional[ReservationHold]:
        for hold in self.holds:
            if hold.reservation_id == reservation_id:
                return hold
        return None

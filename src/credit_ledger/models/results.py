from __future__ import annotations

from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel


class ReserveResult(BaseModel):
    reservation_id: str
    estimated_credits: int
    available_credits: int
    reserved_credits: int
    was_idempotent: bool = False


class FinalizeResult(BaseModel):
    reservation_id: str
    status: Literal["captured", "released", "noop"]
    captured_credits: int
    released_credits: int
    available_credits: int
    reserved_credits: int


class ReleaseAllResult(BaseModel):
    released_reservations: int
    released_credits: int
    available_credits: int
    reserved_credits: int


class GrantResult(BaseModel):
    granted_credits: int
    available_credits: int
    reserved_credits: int
    was_idempotent: bool


class BackfillResult(BaseModel):
    processed: int
    granted: int
    skipped: int


class ReconcileResult(BaseModel):
    user_id: str
    available_before: int
    reserved_before: int
    available_after: int
    reserved_after: int
    reserved_delta: int
    settled_reservations: int = 0


class CreditBalance(BaseModel):
    """Dashboard projection of an account joined with its active subscription."""

    available_credits: int
    reserved_credits: int
    total_credits: int
    has_active_subscription: bool
    plan_id: Optional[str] = None
    next_billing_date: Optional[datetime] = None


class ReservedAccountSummary(BaseModel):
    user_id: str
    reserved_credits: int
    available_credits: int


class BillingRunResult(BaseModel):
    processed: int
    succeeded: int
    failed: int

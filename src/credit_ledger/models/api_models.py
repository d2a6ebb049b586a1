from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from .reservation import GenerationService


class ReserveRequest(BaseModel):
    model_config = ConfigDict(protected_namespaces=())

    user_id: str
    service: GenerationService
    model_id: str
    estimated_credits: float
    reservation_id: Optional[str] = None


class AttachExternalIdRequest(BaseModel):
    external_request_id: str


class FinalizeRequest(BaseModel):
    user_id: Optional[str] = None
    reservation_id: Optional[str] = None
    external_request_id: Optional[str] = None
    success: bool
    actual_credits: Optional[float] = None

    @model_validator(mode="after")
    def _require_identifier(self) -> "FinalizeRequest":
        if not self.reservation_id and not self.external_request_id:
            raise ValueError("Either reservation_id or external_request_id is required")
        return self


class ReleaseReservedRequest(BaseModel):
    service: Optional[GenerationService] = None


class ChargeGrantRequest(BaseModel):
    user_id: str
    plan_id: str
    charge_id: str
    source: Optional[str] = Field(
        default=None,
        description="Reference type recorded on the grant event; defaults to subscription_charge.",
    )


class ErrorResponse(BaseModel):
    detail: str
    code: str

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator, List, Optional

from fastapi import APIRouter, FastAPI, status
from fastapi.responses import JSONResponse

from ..db.mongo import MongoDBManager
from ..errors import (
    Conflict,
    CreditLedgerError,
    DuplicateRequest,
    Forbidden,
    IllegalTransition,
    InsufficientCredits,
    InvalidAmount,
    InvalidPlan,
    NotFound,
    SubscriptionRequired,
)
from ..models.api_models import (
    AttachExternalIdRequest,
    ChargeGrantRequest,
    ErrorResponse,
    FinalizeRequest,
    ReleaseReservedRequest,
    ReserveRequest,
)
from ..models.results import (
    BackfillResult,
    CreditBalance,
    FinalizeResult,
    GrantResult,
    ReconcileResult,
    ReleaseAllResult,
    ReservedAccountSummary,
    ReserveResult,
)
from ..wiring import LedgerServices, build_services


_STATUS_BY_ERROR = {
    InvalidAmount: status.HTTP_400_BAD_REQUEST,
    InvalidPlan: status.HTTP_400_BAD_REQUEST,
    SubscriptionRequired: status.HTTP_402_PAYMENT_REQUIRED,
    InsufficientCredits: status.HTTP_402_PAYMENT_REQUIRED,
    Forbidden: status.HTTP_403_FORBIDDEN,
    NotFound: status.HTTP_404_NOT_FOUND,
    Conflict: status.HTTP_409_CONFLICT,
    IllegalTransition: status.HTTP_409_CONFLICT,
    DuplicateRequest: status.HTTP_409_CONFLICT,
}


_ERROR_RESPONSES = {
    code: {"model": ErrorResponse} for code in sorted(set(_STATUS_BY_ERROR.values()))
}


def error_response(exc: CreditLedgerError) -> JSONResponse:
    status_code = _STATUS_BY_ERROR.get(type(exc), status.HTTP_400_BAD_REQUEST)
    return JSONResponse(
        status_code=status_code,
        content={"detail": exc.message, "code": exc.code},
    )


def create_router(services: LedgerServices) -> APIRouter:
    router = APIRouter(prefix="/credits", tags=["credits"], responses=_ERROR_RESPONSES)

    @router.post("/reservations", response_model=ReserveResult)
    async def reserve(payload: ReserveRequest):
        try:
            return await services.reservations.reserve(
                user_id=payload.user_id,
                service=payload.service,
                model_id=payload.model_id,
                estimated_credits=payload.estimated_credits,
                reservation_id=payload.reservation_id,
            )
        except CreditLedgerError as exc:
            return error_response(exc)

    @router.post(
        "/reservations/{reservation_id}/external-id",
        status_code=status.HTTP_204_NO_CONTENT,
    )
    async def attach_external_request_id(
        reservation_id: str, payload: AttachExternalIdRequest
    ):
        try:
            await services.reservations.attach_external_request_id(
                reservation_id, payload.external_request_id
            )
        except CreditLedgerError as exc:
            return error_response(exc)
        return None

    @router.post("/reservations/finalize", response_model=Optional[FinalizeResult])
    async def finalize(payload: FinalizeRequest):
        try:
            return await services.reservations.finalize(
                success=payload.success,
                reservation_id=payload.reservation_id,
                external_request_id=payload.external_request_id,
                actual_credits=payload.actual_credits,
                user_id=payload.user_id,
            )
        except CreditLedgerError as exc:
            return error_response(exc)

    @router.post("/users/{user_id}/release-reserved", response_model=ReleaseAllResult)
    async def release_reserved(user_id: str, payload: Optional[ReleaseReservedRequest] = None):
        service = payload.service if payload else None
        return await services.reservations.release_all_reserved(user_id, service=service)

    @router.post("/users/{user_id}/reconcile", response_model=ReconcileResult)
    async def reconcile(user_id: str):
        return await services.reconciliation.reconcile(user_id)

    @router.post("/grants/charge", response_model=GrantResult)
    async def grant_for_charge(payload: ChargeGrantRequest):
        try:
            return await services.grants.grant_plan_credits_for_charge(
                user_id=payload.user_id,
                plan_id=payload.plan_id,
                charge_id=payload.charge_id,
                source=payload.source,
            )
        except CreditLedgerError as exc:
            return error_response(exc)

    @router.post("/grants/backfill", response_model=BackfillResult)
    async def backfill():
        try:
            return await services.grants.backfill_credits_for_active_subscribers()
        except CreditLedgerError as exc:
            return error_response(exc)

    @router.get("/balance/{user_id}", response_model=CreditBalance)
    async def get_balance(user_id: str):
        return await services.balances.get_my_credit_balance(user_id)

    @router.get("/reserved-accounts", response_model=List[ReservedAccountSummary])
    async def reserved_accounts():
        return await services.balances.list_users_with_reserved_credits()

    return router


def create_app(services: Optional[LedgerServices] = None) -> FastAPI:
    services = services or build_services()

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        if isinstance(services.db, MongoDBManager):
            await services.db.ensure_indexes()
        yield

    app = FastAPI(title="Credit ledger", lifespan=lifespan)
    app.state.ledger_services = services
    app.include_router(create_router(services))
    return app

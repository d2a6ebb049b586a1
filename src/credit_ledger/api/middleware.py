"""
FastAPI/Starlette middleware that holds credits for the duration of a paid request.

Flow:
  1. Before request: reserve an estimated number of credits (from header or default).
  2. Request is executed.
  3. After response: on success, read actual usage from the response body
     (e.g. usage.credits), round it up to whole credits and capture it; the
     unused part of the estimate is released. On an error response or
     exception the whole reservation is released.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Callable, Optional, Sequence

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from ..errors import CreditLedgerError, DuplicateRequest, InvalidAmount
from ..models.reservation import GenerationService
from ..models.results import FinalizeResult, ReserveResult
from ..services.reservation_service import ReservationService
from ..services.transitions import normalize_credits
from .router import error_response


logger = logging.getLogger(__name__)


def _get_nested(data: Any, key_path: str) -> Optional[Any]:
    """Get a value using dot-notation key path, e.g. 'usage.credits'."""
    current: Any = data
    for k in key_path.strip().split("."):
        if not isinstance(current, dict) or k not in current:
            return None
        current = current[k]
    return current


class CreditReservationMiddleware(BaseHTTPMiddleware):
    """
    Reserves credits before the request and finalizes the reservation from
    the response.

    - The reservation id is derived from the user and the request id header
      when present. A request id that already has a reservation is answered
      with 409 and never reaches the handler, so a retry cannot run a paid
      job twice on one charge.
    - A 2xx response captures the reported usage (or the estimate when the
      usage key is missing); anything else releases the reservation.
    """

    def __init__(
        self,
        app: Any,
        reservations: ReservationService,
        *,
        service: GenerationService = GenerationService.FAL,
        path_prefix: str = "/api",
        user_id_header: str = "X-User-Id",
        request_id_header: str = "X-Request-Id",
        model_id_header: str = "X-Model-Id",
        estimated_credits_header: str = "X-Estimated-Credits",
        default_model_id: str = "default",
        default_estimated_credits: int = 10,
        response_usage_key: str = "credits_used",
        skip_paths: Optional[Sequence[str]] = None,
    ) -> None:
        super().__init__(app)
        self.reservations = reservations
        self.service = GenerationService(service)
        self.path_prefix = path_prefix.rstrip("/")
        self.user_id_header = user_id_header
        self.request_id_header = request_id_header
        self.model_id_header = model_id_header
        self.estimated_credits_header = estimated_credits_header
        self.default_model_id = default_model_id
        self.default_estimated_credits = default_estimated_credits
        self.response_usage_key = response_usage_key
        self.skip_paths = tuple(skip_paths or ())

    def _should_apply(self, path: str) -> bool:
        if not path.startswith(self.path_prefix + "/") and path != self.path_prefix:
            return False
        for skip in self.skip_paths:
            if path == skip or path.startswith(skip.rstrip("/") + "/"):
                return False
        return True

    def _estimated_credits(self, request: Request) -> int:
        raw = request.headers.get(self.estimated_credits_header)
        if raw is None:
            return self.default_estimated_credits
        try:
            return max(1, int(raw))
        except ValueError:
            return self.default_estimated_credits

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Any]
    ) -> Response:
        if not self._should_apply(request.url.path):
            return await call_next(request)

        user_id = request.headers.get(self.user_id_header)
        if not user_id:
            return JSONResponse(
                status_code=401,
                content={"detail": "Missing user identification (e.g. X-User-Id header)."},
            )

        request_id = request.headers.get(self.request_id_header)
        try:
            reservation: ReserveResult = await self.reservations.reserve(
                user_id=user_id,
                service=self.service,
                model_id=request.headers.get(self.model_id_header, self.default_model_id),
                estimated_credits=self._estimated_credits(request),
                reservation_id=f"req_{user_id}_{request_id}" if request_id else None,
                correlation_id=request_id,
            )
        except CreditLedgerError as exc:
            return error_response(exc)

        if reservation.was_idempotent:
            logger.warning(
                "Credit middleware: request %s already processed",
                request_id,
                extra={"path": request.url.path, "user_id": user_id},
            )
            return error_response(DuplicateRequest())

        request.state.credit_reservation = reservation

        try:
            response = await call_next(request)
        except Exception:
            await self._finalize(reservation, user_id, success=False, request_id=request_id)
            raise

        body_bytes: Optional[bytes] = getattr(response, "body", None)
        if body_bytes is None and hasattr(response, "body_iterator"):
            body_bytes = b"".join([chunk async for chunk in response.body_iterator])

        if not 200 <= response.status_code < 300:
            await self._finalize(reservation, user_id, success=False, request_id=request_id)
            return self._rebuild(response, body_bytes, None)

        actual: Optional[int] = None
        if body_bytes:
            try:
                raw = _get_nested(json.loads(body_bytes), self.response_usage_key)
                if raw is not None:
                    actual = normalize_credits(raw)
            except (json.JSONDecodeError, UnicodeDecodeError, InvalidAmount) as e:
                logger.warning(
                    "Credit middleware: could not read usage from response: %s",
                    e,
                    extra={"path": request.url.path, "user_id": user_id},
                )

        result = await self._finalize(
            reservation, user_id, success=True, actual_credits=actual, request_id=request_id
        )
        return self._rebuild(response, body_bytes, result)

    async def _finalize(
        self,
        reservation: ReserveResult,
        user_id: str,
        *,
        success: bool,
        actual_credits: Optional[int] = None,
        request_id: Optional[str] = None,
    ) -> Optional[FinalizeResult]:
        return await self.reservations.finalize(
            success=success,
            reservation_id=reservation.reservation_id,
            actual_credits=actual_credits,
            user_id=user_id,
            correlation_id=request_id,
        )

    @staticmethod
    def _rebuild(
        response: Response, body_bytes: Optional[bytes], result: Optional[FinalizeResult]
    ) -> Response:
        if body_bytes is None:
            return response
        headers = dict(response.headers)
        headers.pop("content-length", None)
        if result is not None and result.captured_credits > 0:
            headers["X-Credits-Captured"] = str(result.captured_credits)
        return Response(
            content=body_bytes,
            status_code=response.status_code,
            headers=headers,
            media_type=getattr(response, "media_type", None),
        )

"""Billing errors -> HTTPException with a structured detail.

detail = {"error_code", "message", "request_id"}
"""
import logging
import uuid
from typing import Optional

from fastapi import HTTPException, Request, status

from services.billing_errors import (
    BillingError,
    CompanyNotFoundError,
    IntentInProgressError,
    PlanNotFoundError,
    ProcessorError,
    ProcessorNotConfiguredError,
    ValidationError,
)

logger = logging.getLogger(__name__)


def request_id_for(request: Optional[Request] = None) -> str:
    if request is not None:
        existing = getattr(request.state, "request_id", None)
        if existing:
            return existing
    return f"req-{uuid.uuid4().hex[:12]}"


def error_detail(error_code: str, message: str, request_id: str) -> dict:
    return {"error_code": error_code, "message": message, "request_id": request_id}


def status_for(error: BillingError) -> int:
    # Order matters: ProcessorNotConfiguredError is a ProcessorError
    if isinstance(error, ValidationError):
        return status.HTTP_400_BAD_REQUEST
    if isinstance(error, (PlanNotFoundError, CompanyNotFoundError)):
        return status.HTTP_404_NOT_FOUND
    if isinstance(error, IntentInProgressError):
        return status.HTTP_409_CONFLICT
    if isinstance(error, ProcessorNotConfiguredError):
        return status.HTTP_503_SERVICE_UNAVAILABLE
    if isinstance(error, ProcessorError):
        return status.HTTP_502_BAD_GATEWAY
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def to_http_exception(error: BillingError, request: Optional[Request] = None) -> HTTPException:
    request_id = request_id_for(request)
    status_code = status_for(error)
    if status_code >= 500:
        logger.error(
            "Billing request failed request_id=%s error_code=%s: %s",
            request_id, error.error_code, error.message,
        )
    detail = error_detail(error.error_code, error.message, request_id)
    if isinstance(error, ProcessorError):
        detail["processor_code"] = error.code
    return HTTPException(status_code=status_code, detail=detail)

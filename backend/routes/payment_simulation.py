"""Payment simulation routes - Admin Test Harness over HTTP.

Endpoints:
- POST /api/test/simulate-payment-failure - Suspend a company
- POST /api/test/simulate-payment-success - Reactivate a company

Admin only, and only while ENABLE_TEST_ENDPOINTS allows it (off by default
in production). Database errors propagate as 500: a failed write never
reports success.
"""
import logging
from fastapi import APIRouter, Depends, HTTPException, Request, status
from middleware import admin_route_guard
from models import SimulatePaymentRequest
from services import admin_harness
from services.access_gate import access_gate
from services.billing_errors import BillingError
from utils.errors import error_detail, request_id_for, to_http_exception

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/test", tags=["payment-simulation"])


async def test_endpoints_guard(request: Request, admin: dict = Depends(admin_route_guard)) -> dict:
    if not admin_harness.test_endpoints_enabled():
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=error_detail("TEST_ENDPOINTS_DISABLED", "Test endpoints are disabled", request_id_for(request)),
        )
    return admin


async def _response(company) -> dict:
    decision = await access_gate.evaluate(company.company_id)
    return {
        "success": True,
        "company_id": company.company_id,
        "is_active": company.is_active,
        "plan_status": company.plan_status.value,
        "can_access": decision.allowed,
    }


@router.post("/simulate-payment-failure")
async def simulate_payment_failure(
    request: Request,
    body: SimulatePaymentRequest,
    admin: dict = Depends(test_endpoints_guard),
):
    try:
        company = await admin_harness.simulate_payment_failure(body.company_id, actor_id=admin.get("admin_id"))
    except BillingError as e:
        raise to_http_exception(e, request)
    return await _response(company)


@router.post("/simulate-payment-success")
async def simulate_payment_success(
    request: Request,
    body: SimulatePaymentRequest,
    admin: dict = Depends(test_endpoints_guard),
):
    try:
        company = await admin_harness.simulate_payment_success(body.company_id, actor_id=admin.get("admin_id"))
    except BillingError as e:
        raise to_http_exception(e, request)
    return await _response(company)

"""Subscription Routes - plan selection and payment start.

Endpoints:
- GET /api/plans - Public plan list with annual installment options
- GET /api/subscription/status - Current subscription status of the company
- POST /api/subscription/upgrade - Start payment for a plan (company token)
- POST /api/create-subscription - Self-service variant (token or companyId)

Payment start never changes company access; that happens when Stripe
confirms the payment (webhook) or through the test harness.
Responses are one of {clientSecret}, {demoMode, message} or {redirectUrl}.
"""
import logging
from fastapi import APIRouter, Depends, HTTPException, Request, status
from middleware import company_route_guard, get_current_user
from models import (
    PublicSubscriptionRequest,
    SubscriptionUpgradeRequest,
    UserRole,
)
from services.billing_errors import BillingError
from services.company_service import get_company
from services.payment_orchestrator import payment_orchestrator
from services.plan_catalog import plan_catalog
from services.subscription_status import resolve_company
from utils.errors import error_detail, request_id_for, to_http_exception

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api", tags=["subscription"])


@router.get("/plans")
async def list_plans():
    plans = await plan_catalog.list_plans(active_only=True)
    return {"plans": [plan_catalog.to_public_dict(p) for p in plans]}


@router.get("/subscription/status")
async def get_subscription_status(request: Request, user: dict = Depends(company_route_guard)):
    """Company-facing view; available while access is denied so the UI can explain why."""
    try:
        company = await get_company(user["company_id"])
    except BillingError as e:
        raise to_http_exception(e, request)

    resolved = resolve_company(company)
    plan = await plan_catalog.get_plan(company.plan_id) if company.plan_id is not None else None

    return {
        **resolved.to_dict(),
        "company_id": company.company_id,
        "plan_status": company.plan_status.value,
        "plan_id": company.plan_id,
        "plan_name": plan.name if plan else None,
        "plan_price": str(plan.price) if plan else None,
        "stripe_subscription_id": company.stripe_subscription_id,
        "next_billing_date": company.current_period_end,
        "trial_ends_at": company.trial_ends_at,
        "cancel_at_period_end": company.cancel_at_period_end,
    }


@router.post("/subscription/upgrade")
async def upgrade_subscription(
    request: Request,
    body: SubscriptionUpgradeRequest,
    user: dict = Depends(company_route_guard),
):
    try:
        result = await payment_orchestrator.create_or_upgrade_subscription(
            company_id=user["company_id"],
            plan_id=body.plan_id,
            billing_period=body.billing_period,
            installments=body.installments,
        )
    except BillingError as e:
        raise to_http_exception(e, request)
    return result.model_dump(by_alias=True)


@router.post("/create-subscription")
async def create_subscription(request: Request, body: PublicSubscriptionRequest):
    """Self-service entry for signup and trial-ending flows.

    A company token wins over a companyId in the body. Calls without one
    can reuse a pending selection but never replace it.
    """
    user = await get_current_user(request)
    company_id = None
    if user and user.get("role") == UserRole.ROLE_COMPANY.value:
        company_id = user.get("company_id")
    authenticated = company_id is not None
    if company_id is None:
        company_id = body.company_id
    if company_id is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=error_detail("COMPANY_REQUIRED", "companyId is required", request_id_for(request)),
        )

    try:
        result = await payment_orchestrator.create_or_upgrade_subscription(
            company_id=company_id,
            plan_id=body.plan_id,
            billing_period=body.resolved_period(),
            installments=body.installments,
            allow_supersede=authenticated,
        )
    except BillingError as e:
        raise to_http_exception(e, request)
    return result.model_dump(by_alias=True)

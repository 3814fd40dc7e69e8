"""Admin Billing Routes - plan price references and subscription monitoring.

Endpoints:
- GET /api/admin/plans - All plans including Stripe references
- PUT /api/admin/plans/{plan_id}/stripe - Set a plan's Stripe price id
- GET /api/admin/stripe/subscriptions - Merged local + Stripe view per company
- POST /api/admin/stripe/subscriptions/{subscription_id}/cancel - Cancel at period end
- POST /api/admin/stripe/subscriptions/{subscription_id}/reactivate - Undo cancel at period end

Every write is audit-logged.
"""
import logging
from fastapi import APIRouter, Depends, Request
from middleware import admin_route_guard
from models import AuditAction, StripePriceUpdateRequest, UserRole
from services.billing_errors import BillingError
from services.plan_catalog import plan_catalog, PRICE_ID_FIELDS
from services.stripe_service import stripe_service
from services.subscription_monitor import subscription_monitor
from utils.audit import create_audit_log
from utils.errors import to_http_exception

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/admin", tags=["admin-billing"], dependencies=[Depends(admin_route_guard)])


# =============================================================================
# Plans
# =============================================================================

@router.get("/plans")
async def list_admin_plans():
    plans = await plan_catalog.list_plans(active_only=False)
    return {"plans": [plan_catalog.to_admin_dict(p) for p in plans], "total": len(plans)}


@router.put("/plans/{plan_id}/stripe")
async def update_plan_stripe_price(
    request: Request,
    plan_id: int,
    body: StripePriceUpdateRequest,
    admin: dict = Depends(admin_route_guard),
):
    """
    Set the Stripe price reference of a plan for one billing period.

    The price id must look like price_*; nothing else on the plan is editable here.
    """
    try:
        before = await plan_catalog.get_plan(plan_id)
        plan = await plan_catalog.update_stripe_price_id(plan_id, body.stripe_price_id, body.billing_period)
    except BillingError as e:
        raise to_http_exception(e, request)

    field = PRICE_ID_FIELDS[body.billing_period]
    await create_audit_log(
        action=AuditAction.PLAN_PRICE_ID_UPDATED,
        actor_role=UserRole.ROLE_ADMIN.value,
        actor_id=admin.get("admin_id"),
        resource_type="plan",
        resource_id=str(plan_id),
        before_state={field: getattr(before, field) if before else None},
        after_state={field: getattr(plan, field)},
    )
    return {"success": True, "plan": plan_catalog.to_admin_dict(plan)}


# =============================================================================
# Stripe subscriptions
# =============================================================================

@router.get("/stripe/subscriptions")
async def list_stripe_subscriptions():
    """Polled by the admin dashboard (30s)."""
    rows = await subscription_monitor.list_subscriptions()
    return {
        "subscriptions": rows,
        "total": len(rows),
        "stripe_configured": stripe_service.is_configured(),
    }


@router.post("/stripe/subscriptions/{subscription_id}/cancel")
async def cancel_stripe_subscription(
    request: Request,
    subscription_id: str,
    admin: dict = Depends(admin_route_guard),
):
    try:
        result = await subscription_monitor.cancel_at_period_end(subscription_id, actor_id=admin.get("admin_id"))
    except BillingError as e:
        raise to_http_exception(e, request)
    return {"success": True, **result}


@router.post("/stripe/subscriptions/{subscription_id}/reactivate")
async def reactivate_stripe_subscription(
    request: Request,
    subscription_id: str,
    admin: dict = Depends(admin_route_guard),
):
    try:
        result = await subscription_monitor.reactivate(subscription_id, actor_id=admin.get("admin_id"))
    except BillingError as e:
        raise to_http_exception(e, request)
    return {"success": True, **result}

"""Company Routes - access decision and plan information.

Endpoints:
- GET /api/company/access - Access Gate decision with redirect target
- GET /api/company/plan-info - Plan, permissions and professionals usage
"""
import logging
from fastapi import APIRouter, Depends, Request
from database import database
from middleware import company_route_guard, require_active_subscription
from services.access_gate import access_gate
from services.billing_errors import BillingError
from services.company_service import get_company
from services.plan_catalog import plan_catalog, DEFAULT_PERMISSIONS
from utils.errors import to_http_exception

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/company", tags=["company"])


@router.get("/access")
async def get_access(request: Request, user: dict = Depends(company_route_guard)):
    """Called at login and on navigation; denial is a normal 200 answer here."""
    try:
        decision = await access_gate.evaluate(user["company_id"])
    except BillingError as e:
        raise to_http_exception(e, request)
    return decision.to_dict()


@router.get("/plan-info")
async def get_plan_info(request: Request, user: dict = Depends(require_active_subscription)):
    db = database.get_db()
    try:
        company = await get_company(user["company_id"])
    except BillingError as e:
        raise to_http_exception(e, request)

    plan = await plan_catalog.get_plan(company.plan_id) if company.plan_id is not None else None
    professionals_count = await db.professionals.count_documents({"company_id": company.company_id})

    if plan is None:
        # No plan yet (trial): everything enabled, single seat
        return {
            "plan": None,
            "permissions": [f.value for f in DEFAULT_PERMISSIONS],
            "professionals_count": professionals_count,
            "max_professionals": 1,
            "can_add_professional": professionals_count < 1,
        }

    limit = plan_catalog.professionals_limit(plan)
    return {
        "plan": plan_catalog.to_public_dict(plan),
        "permissions": [f.value for f in plan.permissions],
        "professionals_count": professionals_count,
        "max_professionals": limit,
        "can_add_professional": professionals_count < limit,
    }

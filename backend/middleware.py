from fastapi import Depends, Request, HTTPException, status
from typing import Optional
import logging
from auth import decode_access_token, check_rbac
from models import AuditAction, FeatureFlag, UserRole
from services.access_gate import access_gate
from services.billing_errors import CompanyNotFoundError
from services.company_service import get_company
from services.plan_catalog import plan_catalog, DEFAULT_PERMISSIONS
from utils.audit import create_audit_log
from utils.errors import error_detail, request_id_for

logger = logging.getLogger(__name__)

async def get_current_user(request: Request) -> Optional[dict]:
    """Extract and validate current user from JWT token."""
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        return None

    token = auth_header.split(" ")[1]
    payload = decode_access_token(token)

    if not payload:
        return None

    return payload

async def require_auth(request: Request) -> dict:
    """Require valid authentication."""
    user = await get_current_user(request)
    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated"
        )
    return user

async def require_role(request: Request, required_role: UserRole) -> dict:
    """Require specific role."""
    user = await require_auth(request)

    if not check_rbac(user.get("role"), required_role):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Insufficient permissions"
        )

    return user

async def require_admin(request: Request) -> dict:
    """Require admin role."""
    return await require_role(request, UserRole.ROLE_ADMIN)

async def admin_route_guard(request: Request) -> dict:
    """Guard for admin routes."""
    user = await require_admin(request)
    return user

async def company_route_guard(request: Request) -> dict:
    """Guard for company routes - token must carry a company_id."""
    user = await require_auth(request)
    if user.get("role") != UserRole.ROLE_COMPANY.value or user.get("company_id") is None:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Company account required"
        )
    return user

async def require_active_subscription(request: Request, user: dict = Depends(company_route_guard)) -> dict:
    """Access Gate for company-scoped routes. Denial answers 402 with a redirect target."""
    company_id = user["company_id"]
    try:
        decision = await access_gate.evaluate(company_id)
    except CompanyNotFoundError as e:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=error_detail(e.error_code, e.message, request_id_for(request)),
        )

    if not decision.allowed:
        await log_route_guard_redirect(company_id, str(request.url.path), decision.subscription.status.value)
        detail = error_detail(
            "SUBSCRIPTION_REQUIRED",
            "An active subscription is required",
            request_id_for(request),
        )
        detail["redirect"] = decision.redirect
        detail["status"] = decision.subscription.status.value
        raise HTTPException(
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            detail=detail,
            headers={"X-Redirect": decision.redirect},
        )

    request.state.company_id = company_id
    return user

def require_feature(flag: FeatureFlag):
    """Dependency factory: the company's plan must include `flag`.

    Usage:
        @router.get("/endpoint", dependencies=[Depends(require_feature(FeatureFlag.REPORTS))])
    """
    async def dependency(request: Request, user: dict = Depends(require_active_subscription)) -> dict:
        company = await get_company(user["company_id"])
        plan = await plan_catalog.get_plan(company.plan_id) if company.plan_id is not None else None
        # No plan yet (trial) gets the same set plan-info reports
        allowed = plan_catalog.has_feature(plan, flag) if plan is not None else flag in DEFAULT_PERMISSIONS
        if not allowed:
            logger.warning(
                "Feature access denied: company_id=%s plan_id=%s requested_feature=%s endpoint=%s method=%s",
                company.company_id, company.plan_id, flag.value, request.url.path, request.method,
            )
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=error_detail(
                    "FEATURE_NOT_IN_PLAN",
                    f"Your plan does not include '{flag.value}'. Please upgrade to access.",
                    request_id_for(request),
                ),
            )
        return user

    return dependency

async def log_route_guard_redirect(company_id: int, path: str, reason: str):
    """Log route guard redirect for audit."""
    await create_audit_log(
        action=AuditAction.ACCESS_DENIED,
        actor_role=UserRole.ROLE_COMPANY.value,
        company_id=company_id,
        metadata={
            "path": path,
            "reason": reason,
        }
    )

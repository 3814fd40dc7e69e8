"""Admin Test Harness - simulate processor payment callbacks.

Privileged, non-production operations for environments without live webhook
delivery. They write through the same company status writer as the webhook
confirmation path, so the Access Gate cannot tell the two apart. No payment
processor needs to be configured.
"""
import logging
import os
from typing import Optional

from models import AuditAction, Company, StatusSource
from services import company_service
from utils.audit import create_audit_log

logger = logging.getLogger(__name__)


def test_endpoints_enabled() -> bool:
    explicit = os.getenv("ENABLE_TEST_ENDPOINTS")
    if explicit is not None and explicit.strip():
        return explicit.strip().lower() in ("1", "true", "yes")
    return os.getenv("ENVIRONMENT", "development").lower() != "production"


async def simulate_payment_failure(company_id: int, actor_id: Optional[str] = None) -> Company:
    """Suspend the company as a failed payment would."""
    company = await company_service.mark_payment_failed(company_id, StatusSource.HARNESS)
    logger.warning("PAYMENT_FAILURE_SIMULATED company_id=%s actor_id=%s", company_id, actor_id)

    await create_audit_log(
        action=AuditAction.PAYMENT_FAILURE_SIMULATED,
        actor_role="ROLE_ADMIN",
        actor_id=actor_id,
        company_id=company_id,
        after_state={"is_active": company.is_active, "plan_status": company.plan_status.value},
    )
    return company


async def simulate_payment_success(company_id: int, actor_id: Optional[str] = None) -> Company:
    """Reactivate the company as a confirmed payment would."""
    company = await company_service.mark_payment_succeeded(company_id, StatusSource.HARNESS)
    logger.warning("PAYMENT_SUCCESS_SIMULATED company_id=%s actor_id=%s", company_id, actor_id)

    await create_audit_log(
        action=AuditAction.PAYMENT_SUCCESS_SIMULATED,
        actor_role="ROLE_ADMIN",
        actor_id=actor_id,
        company_id=company_id,
        after_state={"is_active": company.is_active, "plan_status": company.plan_status.value},
    )
    return company

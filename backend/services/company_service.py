"""Company status writer.

The single place that mutates Company.is_active / plan_status. The test
harness and the processor confirmation path both go through
mark_payment_succeeded / mark_payment_failed, so a simulated change is
indistinguishable from a webhook-driven one.

Every write is one find_one_and_update with $set: atomic per document and
last-writer-wins, with no read-then-write window.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from pymongo import ReturnDocument

from database import database
from models import Company, NormalizedStatus, PlanStatus, StatusSource
from services.billing_errors import CompanyNotFoundError

logger = logging.getLogger(__name__)

# Processor fields that may be synced onto the company document
PROCESSOR_FIELDS = frozenset({
    "stripe_customer_id",
    "stripe_subscription_id",
    "subscription_status",
    "current_period_start",
    "current_period_end",
    "cancel_at_period_end",
    "trial_ends_at",
})


async def get_company(company_id: int) -> Company:
    db = database.get_db()
    doc = await db.companies.find_one({"company_id": company_id}, {"_id": 0})
    if not doc:
        raise CompanyNotFoundError(company_id)
    return Company.model_validate(doc)


async def _update_company(company_id: int, fields: Dict[str, Any]) -> Company:
    db = database.get_db()
    fields = {**fields, "updated_at": datetime.now(timezone.utc)}
    doc = await db.companies.find_one_and_update(
        {"company_id": company_id},
        {"$set": fields},
        projection={"_id": 0},
        return_document=ReturnDocument.AFTER,
    )
    if not doc:
        raise CompanyNotFoundError(company_id)
    return Company.model_validate(doc)


async def set_access_state(
    company_id: int,
    is_active: bool,
    plan_status: PlanStatus,
    source: StatusSource,
    extra: Optional[Dict[str, Any]] = None,
) -> Company:
    fields = dict(extra or {})
    fields.update({
        "is_active": is_active,
        "plan_status": plan_status.value,
        "status_source": source.value,
    })
    company = await _update_company(company_id, fields)
    logger.info(
        "COMPANY_ACCESS_STATE company_id=%s is_active=%s plan_status=%s source=%s",
        company_id, is_active, plan_status.value, source.value,
    )
    return company


async def mark_payment_succeeded(
    company_id: int,
    source: StatusSource,
    extra: Optional[Dict[str, Any]] = None,
) -> Company:
    """Reactivate access; the processor is recorded as reporting active."""
    fields = {"subscription_status": NormalizedStatus.ACTIVE.value}
    fields.update(extra or {})
    return await set_access_state(company_id, True, PlanStatus.ACTIVE, source, fields)


async def mark_payment_failed(
    company_id: int,
    source: StatusSource,
    extra: Optional[Dict[str, Any]] = None,
) -> Company:
    return await set_access_state(company_id, False, PlanStatus.SUSPENDED, source, extra)


async def sync_processor_fields(company_id: int, fields: Dict[str, Any]) -> Company:
    """Record processor-reported state without touching the local access flags."""
    unknown = set(fields) - PROCESSOR_FIELDS
    if unknown:
        raise ValueError(f"Not processor fields: {sorted(unknown)}")
    return await _update_company(company_id, fields)


async def find_company_id_by_subscription(subscription_id: str) -> Optional[int]:
    db = database.get_db()
    doc = await db.companies.find_one(
        {"stripe_subscription_id": subscription_id},
        {"_id": 0, "company_id": 1},
    )
    return doc["company_id"] if doc else None

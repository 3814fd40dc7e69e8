"""Subscription monitor - admin view merging local company state with Stripe.

One row per company. Stripe lookups run concurrently; a failed lookup is
reported on its row as stripe_error instead of failing the whole listing.
Also owns the admin cancel / reactivate toggles (cancel_at_period_end).
"""
import asyncio
import logging
from typing import Any, Dict, List, Optional

from database import database
from models import AuditAction, Company, LatestInvoice
from services import company_service
from services.billing_errors import ProcessorError
from services.stripe_service import stripe_field, stripe_service
from services.subscription_status import resolve_company
from utils.audit import create_audit_log

logger = logging.getLogger(__name__)

MAX_COMPANIES = 500


def _latest_invoice(subscription: Any) -> Optional[Dict[str, Any]]:
    invoice = stripe_field(subscription, "latest_invoice")
    if invoice is None or isinstance(invoice, str):
        return None
    return LatestInvoice(
        id=stripe_field(invoice, "id"),
        status=stripe_field(invoice, "status"),
        total=stripe_field(invoice, "total"),
        paid=stripe_field(invoice, "paid"),
        payment_state=stripe_field(stripe_field(invoice, "payment_intent"), "status"),
    ).model_dump()


def _external_fields(subscription: Any) -> Dict[str, Any]:
    items = stripe_field(stripe_field(subscription, "items"), "data") or []
    first_item = items[0] if items else None
    price = stripe_field(first_item, "price")
    recurring = stripe_field(price, "recurring")
    return {
        "stripe_status": stripe_field(subscription, "status"),
        "current_period_start": stripe_field(subscription, "current_period_start")
        or stripe_field(first_item, "current_period_start"),
        "current_period_end": stripe_field(subscription, "current_period_end")
        or stripe_field(first_item, "current_period_end"),
        "cancel_at_period_end": bool(stripe_field(subscription, "cancel_at_period_end")),
        "canceled_at": stripe_field(subscription, "canceled_at"),
        "price_id": stripe_field(price, "id"),
        "amount": stripe_field(price, "unit_amount"),
        "currency": stripe_field(price, "currency"),
        "interval": stripe_field(recurring, "interval"),
        "latest_invoice": _latest_invoice(subscription),
    }


def _local_fields(company: Company) -> Dict[str, Any]:
    resolved = resolve_company(company)
    return {
        "company_id": company.company_id,
        "company_name": company.name,
        "company_email": company.email,
        "company_status": company.plan_status.value,
        "is_active": company.is_active,
        "plan_id": company.plan_id,
        "stripe_customer_id": company.stripe_customer_id,
        "stripe_subscription_id": company.stripe_subscription_id,
        "resolved_status": resolved.status.value,
        "can_access": resolved.is_active,
    }


class SubscriptionMonitor:

    async def _row(self, company: Company, configured: bool) -> Dict[str, Any]:
        row = _local_fields(company)
        if not company.stripe_subscription_id:
            return row
        if not configured:
            row["stripe_error"] = "Stripe not configured"
            return row
        try:
            subscription = await stripe_service.retrieve_subscription(company.stripe_subscription_id)
        except ProcessorError as e:
            row["stripe_error"] = e.message
            return row
        row.update(_external_fields(subscription))
        return row

    async def list_subscriptions(self) -> List[Dict[str, Any]]:
        db = database.get_db()
        docs = await db.companies.find({}, {"_id": 0}).sort("company_id", 1).to_list(MAX_COMPANIES)
        companies = [Company.model_validate(d) for d in docs]

        configured = stripe_service.is_configured()
        return list(await asyncio.gather(*(self._row(c, configured) for c in companies)))

    async def _toggle_cancel(
        self,
        subscription_id: str,
        cancel: bool,
        action: AuditAction,
        actor_id: Optional[str],
    ) -> Dict[str, Any]:
        subscription = await stripe_service.set_cancel_at_period_end(subscription_id, cancel)

        company_id = await company_service.find_company_id_by_subscription(subscription_id)
        if company_id is not None:
            await company_service.sync_processor_fields(company_id, {"cancel_at_period_end": cancel})

        await create_audit_log(
            action=action,
            actor_role="ROLE_ADMIN",
            actor_id=actor_id,
            company_id=company_id,
            resource_type="subscription",
            resource_id=subscription_id,
            after_state={"cancel_at_period_end": cancel},
        )
        logger.info(
            "%s subscription_id=%s company_id=%s actor_id=%s",
            action.value, subscription_id, company_id, actor_id,
        )
        return {
            "subscription_id": subscription_id,
            "company_id": company_id,
            "status": stripe_field(subscription, "status"),
            "cancel_at_period_end": bool(stripe_field(subscription, "cancel_at_period_end")),
        }

    async def cancel_at_period_end(self, subscription_id: str, actor_id: Optional[str] = None) -> Dict[str, Any]:
        return await self._toggle_cancel(subscription_id, True, AuditAction.SUBSCRIPTION_CANCEL_REQUESTED, actor_id)

    async def reactivate(self, subscription_id: str, actor_id: Optional[str] = None) -> Dict[str, Any]:
        return await self._toggle_cancel(subscription_id, False, AuditAction.SUBSCRIPTION_REACTIVATED, actor_id)


# Singleton instance
subscription_monitor = SubscriptionMonitor()

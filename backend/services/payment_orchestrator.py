"""Payment Orchestrator - subscription intents for a plan selection.

Two-phase protocol:
1. create_or_upgrade_subscription() reserves a pending intent, creates the
   Stripe artifact (subscription, payment intent, setup intent or checkout
   session) and returns what the client needs to finish payment. It never
   touches the company document.
2. confirm_intent() runs when Stripe reports success (webhook). It is the
   only path here that changes company access state.

The two phases are correlated by intent_id, which travels to Stripe as
metadata on every artifact.

In-flight guard: subscription_intents has a partial unique index on
company_id for status == "pending", so reserving an intent is an atomic
check-and-set. A concurrent request for the same selection waits for the
winner's artifact and returns it; a different selection supersedes it
unless the caller passes allow_supersede=False.
"""
import asyncio
import logging
import os
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from database import database
from models import (
    AuditAction,
    BillingPeriod,
    ClientSecretResult,
    Company,
    DemoModeResult,
    IntentStatus,
    NormalizedStatus,
    Plan,
    RedirectResult,
    StatusSource,
    SubscriptionIntentResult,
)
from services import company_service
from services.billing_errors import (
    IntentInProgressError,
    ProcessorError,
    ValidationError,
)
from services.installments import InstallmentBreakdown, compute_installment, get_option, to_cents
from services.plan_catalog import plan_catalog
from services.stripe_service import (
    BILLING_CURRENCY,
    client_secret_from_subscription,
    stripe_field,
    stripe_service,
)
from utils.audit import create_audit_log

logger = logging.getLogger(__name__)

INTENT_TTL_MINUTES = int(os.getenv("INTENT_TTL_MINUTES", "30"))
INTENT_POLL_INTERVAL_SECONDS = 0.2
INTENT_POLL_TIMEOUT_SECONDS = float(os.getenv("STRIPE_TIMEOUT_SECONDS", "15")) + 5
FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:3000").rstrip("/")

# Existing subscriptions in these states cannot be modified; a new one is created
_TERMINAL_SUBSCRIPTION_STATUSES = {
    NormalizedStatus.CANCELED.value,
    NormalizedStatus.INCOMPLETE_EXPIRED.value,
}

DEMO_MODE_MESSAGE = (
    "Payment processor not configured. Running in demo mode: "
    "no charge was created."
)


def _selection_matches(intent: Dict[str, Any], plan_id: int, period: BillingPeriod, installments: int) -> bool:
    return (
        intent.get("plan_id") == plan_id
        and intent.get("billing_period") == period.value
        and intent.get("installments") == installments
    )


def _has_artifact(intent: Dict[str, Any]) -> bool:
    return bool(intent.get("client_secret") or intent.get("redirect_url"))


async def _release_artifact(intent: Dict[str, Any]) -> None:
    # An in-place price change on a live subscription is not undone
    if intent.get("stripe_object_type") == "subscription" and not intent.get("created_subscription"):
        return
    await stripe_service.release_incomplete(intent.get("stripe_object_type"), intent.get("stripe_object_id"))


def result_from_intent(intent: Dict[str, Any]) -> SubscriptionIntentResult:
    if intent.get("kind") == "redirect":
        return RedirectResult(redirect_url=intent["redirect_url"], intent_id=intent["intent_id"])
    return ClientSecretResult(
        client_secret=intent["client_secret"],
        intent_id=intent["intent_id"],
        intent_type=intent["intent_type"],
    )


class PaymentOrchestrator:
    """Creates Stripe payment artifacts and confirms them."""

    def _resolve_installments(self, period: BillingPeriod, installments: Optional[int]) -> int:
        if installments is None:
            return 1
        option = get_option(installments)
        if period == BillingPeriod.MONTHLY and option.count != 1:
            raise ValidationError(
                "Installments are only available for annual billing",
                error_code="INSTALLMENTS_REQUIRE_ANNUAL",
            )
        return option.count

    async def create_or_upgrade_subscription(
        self,
        company_id: int,
        plan_id: int,
        billing_period,
        installments: Optional[int] = None,
        allow_supersede: bool = True,
    ) -> SubscriptionIntentResult:
        """Start payment for a plan selection.

        Raises ValidationError / PlanNotFoundError / CompanyNotFoundError
        before any processor call, ProcessorError when Stripe fails and
        IntentInProgressError when another selection is still being created.
        With allow_supersede=False a different pending selection is never
        replaced; the call gets IntentInProgressError instead.
        """
        try:
            period = BillingPeriod(billing_period)
        except ValueError:
            raise ValidationError(
                f"Invalid billing period '{billing_period}'",
                error_code="INVALID_BILLING_PERIOD",
            )

        count = self._resolve_installments(period, installments)
        plan = await plan_catalog.get_active_plan(plan_id)
        company = await company_service.get_company(company_id)

        base_amount = plan_catalog.price_for(plan, period)
        breakdown = compute_installment(base_amount, count)

        if not stripe_service.is_configured():
            logger.warning(
                "DEMO_MODE_FALLBACK company_id=%s plan_id=%s billing_period=%s installments=%s",
                company_id, plan_id, period.value, count,
            )
            return DemoModeResult(message=DEMO_MODE_MESSAGE)

        intent, created = await self._reserve_intent(company, plan, period, breakdown, allow_supersede)
        if not created:
            logger.info(
                "INTENT_REUSED company_id=%s intent_id=%s", company_id, intent["intent_id"]
            )
            return result_from_intent(intent)

        intent_id = intent["intent_id"]
        try:
            fields = await self._create_artifact(intent, company, plan, period, breakdown)
        except ProcessorError as e:
            await self._finish_intent(intent_id, IntentStatus.FAILED, {"error_code": e.code, "error": e.message})
            raise
        except BaseException as e:
            # Includes cancellation; a pending intent without an artifact would block the company
            logger.error("INTENT_CREATION_FAILED company_id=%s intent_id=%s error=%r", company_id, intent_id, e)
            await asyncio.shield(
                self._finish_intent(intent_id, IntentStatus.FAILED, {"error_code": "internal_error", "error": repr(e)})
            )
            raise

        db = database.get_db()
        persisted = await db.subscription_intents.find_one_and_update(
            {"intent_id": intent_id, "status": IntentStatus.PENDING.value},
            {"$set": fields},
            projection={"_id": 0},
            return_document=ReturnDocument.AFTER,
        )
        if not persisted:
            # Superseded or expired while Stripe was working
            await _release_artifact(fields)
            raise IntentInProgressError(
                f"Subscription intent {intent_id} was replaced by a newer selection",
            )

        logger.info(
            "INTENT_CREATED company_id=%s intent_id=%s kind=%s stripe_object=%s",
            company_id, intent_id, persisted["kind"], persisted.get("stripe_object_id"),
        )
        return result_from_intent(persisted)

    # ------------------------------------------------------------------
    # In-flight guard
    # ------------------------------------------------------------------

    async def _expire_stale_intents(self, company_id: int) -> None:
        db = database.get_db()
        result = await db.subscription_intents.update_many(
            {
                "company_id": company_id,
                "status": IntentStatus.PENDING.value,
                "expires_at": {"$lt": datetime.now(timezone.utc)},
            },
            {"$set": {"status": IntentStatus.EXPIRED.value}},
        )
        if result.modified_count:
            logger.info("INTENT_EXPIRED company_id=%s count=%s", company_id, result.modified_count)

    async def _reserve_intent(
        self,
        company: Company,
        plan: Plan,
        period: BillingPeriod,
        breakdown: InstallmentBreakdown,
        allow_supersede: bool = True,
    ):
        """Return (intent, created). created is False when an equal pending intent is reused."""
        db = database.get_db()
        await self._expire_stale_intents(company.company_id)

        now = datetime.now(timezone.utc)
        shown = breakdown.rounded()
        intent = {
            "intent_id": str(uuid.uuid4()),
            "company_id": company.company_id,
            "plan_id": plan.plan_id,
            "billing_period": period.value,
            "installments": breakdown.count,
            "base_amount": str(plan_catalog.price_for(plan, period)),
            "total_amount": str(shown.total),
            "per_installment": str(shown.per_installment),
            "status": IntentStatus.PENDING.value,
            "created_at": now,
            "expires_at": now + timedelta(minutes=INTENT_TTL_MINUTES),
        }

        # Second pass covers a pending intent that went away between insert and read
        for _ in range(2):
            try:
                await db.subscription_intents.insert_one(dict(intent))
                return intent, True
            except DuplicateKeyError:
                existing = await db.subscription_intents.find_one(
                    {"company_id": company.company_id, "status": IntentStatus.PENDING.value},
                    {"_id": 0},
                )
                if existing is None:
                    continue
                if _selection_matches(existing, plan.plan_id, period, breakdown.count):
                    return await self._await_artifact(existing), False
                if not allow_supersede:
                    raise IntentInProgressError(
                        f"A different plan selection is pending for company {company.company_id}",
                    )
                await self._supersede(existing)

        raise IntentInProgressError(
            f"A subscription intent for company {company.company_id} is already in progress",
        )

    async def _await_artifact(self, intent: Dict[str, Any]) -> Dict[str, Any]:
        """Wait (bounded) for a concurrent request to attach its Stripe artifact."""
        db = database.get_db()
        loop = asyncio.get_running_loop()
        deadline = loop.time() + INTENT_POLL_TIMEOUT_SECONDS

        current = intent
        while True:
            if _has_artifact(current):
                return current
            if current.get("status") == IntentStatus.FAILED.value:
                raise ProcessorError(
                    current.get("error_code") or "intent_failed",
                    current.get("error") or "Payment processor request failed",
                )
            if current.get("status") != IntentStatus.PENDING.value:
                raise IntentInProgressError(f"Subscription intent {current['intent_id']} is no longer pending")
            if loop.time() >= deadline:
                raise IntentInProgressError(f"Subscription intent {current['intent_id']} is still being created")

            await asyncio.sleep(INTENT_POLL_INTERVAL_SECONDS)
            current = await db.subscription_intents.find_one({"intent_id": intent["intent_id"]}, {"_id": 0})
            if current is None:
                raise IntentInProgressError(f"Subscription intent {intent['intent_id']} disappeared")

    async def _supersede(self, intent: Dict[str, Any]) -> None:
        if not _has_artifact(intent):
            raise IntentInProgressError(
                f"Subscription intent {intent['intent_id']} is still being created",
            )
        db = database.get_db()
        result = await db.subscription_intents.update_one(
            {"intent_id": intent["intent_id"], "status": IntentStatus.PENDING.value},
            {"$set": {"status": IntentStatus.SUPERSEDED.value, "finished_at": datetime.now(timezone.utc)}},
        )
        if result.modified_count:
            logger.info(
                "INTENT_SUPERSEDED company_id=%s intent_id=%s",
                intent["company_id"], intent["intent_id"],
            )
            await _release_artifact(intent)

    async def _finish_intent(self, intent_id: str, status: IntentStatus, extra: Optional[Dict[str, Any]] = None) -> bool:
        db = database.get_db()
        fields = {"status": status.value, "finished_at": datetime.now(timezone.utc)}
        fields.update(extra or {})
        result = await db.subscription_intents.update_one(
            {"intent_id": intent_id, "status": IntentStatus.PENDING.value},
            {"$set": fields},
        )
        return bool(result.modified_count)

    # ------------------------------------------------------------------
    # Stripe artifacts
    # ------------------------------------------------------------------

    async def _ensure_customer(self, company: Company, intent_id: str) -> str:
        if company.stripe_customer_id:
            return company.stripe_customer_id

        db = database.get_db()
        previous = await db.subscription_intents.find_one(
            {"company_id": company.company_id, "stripe_customer_id": {"$ne": None}},
            {"_id": 0, "stripe_customer_id": 1},
            sort=[("created_at", -1)],
        )
        if previous and previous.get("stripe_customer_id"):
            return previous["stripe_customer_id"]

        customer = await stripe_service.create_customer(
            email=company.email,
            name=company.name,
            metadata={"company_id": str(company.company_id)},
            idempotency_key=f"{intent_id}:customer",
        )
        customer_id = stripe_field(customer, "id")
        await db.subscription_intents.update_one(
            {"intent_id": intent_id},
            {"$set": {"stripe_customer_id": customer_id}},
        )
        return customer_id

    async def _create_artifact(
        self,
        intent: Dict[str, Any],
        company: Company,
        plan: Plan,
        period: BillingPeriod,
        breakdown: InstallmentBreakdown,
    ) -> Dict[str, Any]:
        intent_id = intent["intent_id"]
        metadata = {
            "intent_id": intent_id,
            "company_id": str(company.company_id),
            "plan_id": str(plan.plan_id),
            "billing_period": period.value,
            "installments": str(breakdown.count),
        }
        customer_id = await self._ensure_customer(company, intent_id)
        fields: Dict[str, Any] = {"stripe_customer_id": customer_id}

        price_id = plan_catalog.price_id_for(plan, period)
        if not price_id:
            fields.update(await self._create_checkout(intent_id, customer_id, plan, period, breakdown, metadata))
        elif period == BillingPeriod.MONTHLY:
            fields.update(await self._create_monthly(intent_id, company, plan, customer_id, price_id, metadata))
        else:
            fields.update(await self._create_annual(intent_id, customer_id, breakdown, metadata))
        return fields

    async def _create_monthly(
        self,
        intent_id: str,
        company: Company,
        plan: Plan,
        customer_id: str,
        price_id: str,
        metadata: Dict[str, str],
    ) -> Dict[str, Any]:
        upgrade = bool(
            company.stripe_subscription_id
            and company.subscription_status not in _TERMINAL_SUBSCRIPTION_STATUSES
        )
        if upgrade:
            subscription = await stripe_service.update_subscription_price(
                company.stripe_subscription_id, price_id,
                idempotency_key=f"{intent_id}:subscription.modify",
            )
        else:
            # One trial per company: only its first subscription gets the plan's free days
            trial_days = plan.free_days if not company.stripe_subscription_id else 0
            subscription = await stripe_service.create_subscription(
                customer_id, price_id, metadata,
                trial_period_days=trial_days,
                idempotency_key=f"{intent_id}:subscription",
            )

        subscription_id = stripe_field(subscription, "id")
        fields = {
            "kind": "client_secret",
            "stripe_object_type": "subscription",
            "stripe_object_id": subscription_id,
            "created_subscription": not upgrade,
        }

        secret = client_secret_from_subscription(subscription)
        if secret:
            pending_setup = stripe_field(stripe_field(subscription, "pending_setup_intent"), "client_secret")
            fields["client_secret"] = secret
            fields["intent_type"] = "setup_intent" if secret == pending_setup else "subscription"
            return fields

        # Nothing to pay now (trial or credit); collect a payment method instead
        setup_intent = await stripe_service.create_setup_intent(
            customer_id, metadata, idempotency_key=f"{intent_id}:setup_intent",
        )
        fields["client_secret"] = stripe_field(setup_intent, "client_secret")
        fields["intent_type"] = "setup_intent"
        fields["stripe_setup_intent_id"] = stripe_field(setup_intent, "id")
        return fields

    async def _create_annual(
        self,
        intent_id: str,
        customer_id: str,
        breakdown: InstallmentBreakdown,
        metadata: Dict[str, str],
    ) -> Dict[str, Any]:
        payment_intent = await stripe_service.create_payment_intent(
            amount_cents=to_cents(breakdown.total),
            customer_id=customer_id,
            metadata=metadata,
            installments_enabled=breakdown.count > 1,
            idempotency_key=f"{intent_id}:payment_intent",
        )
        return {
            "kind": "client_secret",
            "client_secret": stripe_field(payment_intent, "client_secret"),
            "intent_type": "payment_intent",
            "stripe_object_type": "payment_intent",
            "stripe_object_id": stripe_field(payment_intent, "id"),
        }

    async def _create_checkout(
        self,
        intent_id: str,
        customer_id: str,
        plan: Plan,
        period: BillingPeriod,
        breakdown: InstallmentBreakdown,
        metadata: Dict[str, str],
    ) -> Dict[str, Any]:
        logger.info("CHECKOUT_FALLBACK plan_id=%s billing_period=%s (no Stripe price)", plan.plan_id, period.value)
        price_data: Dict[str, Any] = {
            "currency": BILLING_CURRENCY,
            "product_data": {"name": plan.name},
        }
        if period == BillingPeriod.MONTHLY:
            mode = "subscription"
            price_data["unit_amount"] = to_cents(plan.price)
            price_data["recurring"] = {"interval": "month"}
        else:
            mode = "payment"
            price_data["unit_amount"] = to_cents(breakdown.total)

        session = await stripe_service.create_checkout_session(
            customer_id=customer_id,
            line_items=[{"price_data": price_data, "quantity": 1}],
            mode=mode,
            success_url=f"{FRONTEND_URL}/subscription?checkout=success&intent={intent_id}",
            cancel_url=f"{FRONTEND_URL}/subscription?checkout=cancelled&intent={intent_id}",
            metadata=metadata,
            idempotency_key=f"{intent_id}:checkout",
        )
        return {
            "kind": "redirect",
            "redirect_url": stripe_field(session, "url"),
            "stripe_object_type": "checkout_session",
            "stripe_object_id": stripe_field(session, "id"),
        }

    # ------------------------------------------------------------------
    # Confirmation path
    # ------------------------------------------------------------------

    async def find_intent(
        self,
        intent_id: Optional[str] = None,
        stripe_object_id: Optional[str] = None,
    ) -> Optional[Dict[str, Any]]:
        db = database.get_db()
        intent = None
        if intent_id:
            intent = await db.subscription_intents.find_one({"intent_id": intent_id}, {"_id": 0})
            if intent and (intent.get("status") == IntentStatus.PENDING.value or not stripe_object_id):
                return intent
        if stripe_object_id:
            # An upgraded subscription keeps the metadata of the intent that created it
            pending = await db.subscription_intents.find_one(
                {"stripe_object_id": stripe_object_id, "status": IntentStatus.PENDING.value},
                {"_id": 0},
                sort=[("created_at", -1)],
            )
            if pending:
                return pending
            if intent:
                return intent
            return await db.subscription_intents.find_one(
                {"stripe_object_id": stripe_object_id},
                {"_id": 0},
                sort=[("created_at", -1)],
            )
        return None

    async def confirm_intent(
        self,
        intent_id: Optional[str] = None,
        stripe_object_id: Optional[str] = None,
        subscription_id: Optional[str] = None,
        customer_id: Optional[str] = None,
        event_id: Optional[str] = None,
    ) -> Optional[Company]:
        """Apply a confirmed payment to the company. Returns None for an unknown intent."""
        intent = await self.find_intent(intent_id, stripe_object_id)
        if not intent:
            logger.warning(
                "INTENT_NOT_FOUND intent_id=%s stripe_object_id=%s event_id=%s",
                intent_id, stripe_object_id, event_id,
            )
            return None

        if intent["status"] == IntentStatus.CONFIRMED.value:
            logger.info("INTENT_ALREADY_CONFIRMED intent_id=%s", intent["intent_id"])
            return await company_service.get_company(intent["company_id"])

        extra: Dict[str, Any] = {
            "plan_id": intent["plan_id"],
            "cancel_at_period_end": False,
        }
        customer_id = customer_id or intent.get("stripe_customer_id")
        if customer_id:
            extra["stripe_customer_id"] = customer_id
        if not subscription_id and intent.get("stripe_object_type") == "subscription":
            subscription_id = intent.get("stripe_object_id")
        if subscription_id:
            extra["stripe_subscription_id"] = subscription_id
        if intent.get("billing_period") == BillingPeriod.ANNUAL.value and not subscription_id:
            # One-off annual payment: the period is tracked locally
            now = datetime.now(timezone.utc)
            extra["current_period_start"] = now
            extra["current_period_end"] = now + timedelta(days=365)

        before = await company_service.get_company(intent["company_id"])
        company = await company_service.mark_payment_succeeded(intent["company_id"], StatusSource.WEBHOOK, extra)

        db = database.get_db()
        await db.subscription_intents.update_one(
            {"intent_id": intent["intent_id"]},
            {"$set": {
                "status": IntentStatus.CONFIRMED.value,
                "confirmed_at": datetime.now(timezone.utc),
                "confirmed_by_event": event_id,
            }},
        )

        logger.info(
            "SUBSCRIPTION_CONFIRMED company_id=%s intent_id=%s plan_id=%s event_id=%s",
            company.company_id, intent["intent_id"], intent["plan_id"], event_id,
        )
        await create_audit_log(
            action=AuditAction.SUBSCRIPTION_CONFIRMED,
            actor_role="STRIPE",
            actor_id=event_id,
            company_id=company.company_id,
            resource_type="subscription_intent",
            resource_id=intent["intent_id"],
            before_state={"plan_id": before.plan_id, "is_active": before.is_active, "plan_status": before.plan_status.value},
            after_state={"plan_id": company.plan_id, "is_active": company.is_active, "plan_status": company.plan_status.value},
        )
        return company

    async def mark_intent_failed(
        self,
        intent_id: Optional[str] = None,
        stripe_object_id: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> bool:
        """Release the in-flight guard after a declined payment. Company state is untouched."""
        intent = await self.find_intent(intent_id, stripe_object_id)
        if not intent:
            return False
        updated = await self._finish_intent(
            intent["intent_id"], IntentStatus.FAILED, {"error_code": "payment_failed", "error": reason},
        )
        if updated:
            logger.info("INTENT_FAILED company_id=%s intent_id=%s reason=%s", intent["company_id"], intent["intent_id"], reason)
        return updated


# Singleton instance
payment_orchestrator = PaymentOrchestrator()

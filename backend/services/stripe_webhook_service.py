"""Stripe Webhook Service - asynchronous confirmation path with idempotency.

Key Principles:
1. Idempotency: every event id is recorded in stripe_events and processed once
2. Signature verification: events must be signed; unsigned events are accepted
   only with ENVIRONMENT=development and no webhook secret configured
3. Correlation: payments are matched to subscription intents by metadata.intent_id,
   falling back to the Stripe object id stored on the intent
4. Processor status is informational; only confirmed payments and the test
   harness change company access flags

Events Handled:
- payment_intent.succeeded, invoice.paid, checkout.session.completed (confirm)
- payment_intent.payment_failed (release the in-flight intent)
- invoice.payment_failed (sync past_due)
- customer.subscription.updated, customer.subscription.deleted (sync)
"""
import json
import logging
import os
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

import stripe
from pymongo.errors import DuplicateKeyError

from database import database
from models import AuditAction, IntentStatus, NormalizedStatus, StatusSource
from services import company_service
from services.payment_orchestrator import payment_orchestrator
from services.stripe_service import stripe_field
from utils.audit import create_audit_log

logger = logging.getLogger(__name__)

WEBHOOK_TOLERANCE_SECONDS = 300


class WebhookSecretMissingError(Exception):
    """No webhook secret outside development; events cannot be trusted."""


# Webhook secret: support test vs live. If STRIPE_WEBHOOK_SECRET is set, use it; else choose by key prefix.
def _get_webhook_secret() -> str:
    explicit = (os.getenv("STRIPE_WEBHOOK_SECRET") or "").strip()
    if explicit:
        return explicit
    key = (os.getenv("STRIPE_SECRET_KEY") or os.getenv("STRIPE_API_KEY") or "").strip()
    if key.startswith("sk_live_"):
        return (os.getenv("STRIPE_WEBHOOK_SECRET_LIVE") or "").strip()
    if key.startswith("sk_test_"):
        return (os.getenv("STRIPE_WEBHOOK_SECRET_TEST") or "").strip()
    return ""


def _timestamp(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def _object_id(value: Any) -> Optional[str]:
    """Stripe references arrive either as an id string or an expanded object."""
    if isinstance(value, str):
        return value
    return stripe_field(value, "id")


def _invoice_subscription_id(invoice: Dict) -> Optional[str]:
    subscription_id = _object_id(invoice.get("subscription"))
    if subscription_id:
        return subscription_id
    # Newer API versions nest it under parent.subscription_details
    details = stripe_field(invoice.get("parent"), "subscription_details")
    return _object_id(stripe_field(details, "subscription"))


def _invoice_intent_id(invoice: Dict) -> Optional[str]:
    for details in (invoice.get("subscription_details"), stripe_field(invoice.get("parent"), "subscription_details")):
        intent_id = stripe_field(stripe_field(details, "metadata"), "intent_id")
        if intent_id:
            return intent_id
    return (invoice.get("metadata") or {}).get("intent_id")


def _extract_webhook_context(event: Dict) -> Dict[str, Any]:
    """Extract safe fields for structured logging."""
    obj = event.get("data", {}).get("object", {}) or {}
    metadata = obj.get("metadata", {}) or {}
    return {
        "event_id": event.get("id"),
        "event_type": event.get("type"),
        "livemode": event.get("livemode"),
        "intent_id": metadata.get("intent_id"),
        "object_id": obj.get("id"),
    }


class StripeWebhookService:
    """Stripe webhook handler with idempotency."""

    # =========================================================================
    # Event Processing Entry Point
    # =========================================================================

    def _parse_event(self, payload: bytes, signature: Optional[str]) -> Dict:
        webhook_secret = _get_webhook_secret()
        text = payload.decode("utf-8")
        if webhook_secret:
            stripe.WebhookSignature.verify_header(
                text, signature or "", webhook_secret, WEBHOOK_TOLERANCE_SECONDS
            )
        elif os.getenv("ENVIRONMENT", "").strip().lower() == "development":
            logger.warning("STRIPE_WEBHOOK_SECRET (or _TEST/_LIVE) not set - skipping signature verification")
        else:
            raise WebhookSecretMissingError("STRIPE_WEBHOOK_SECRET (or _TEST/_LIVE) is required outside development")
        # Handlers work on plain dicts
        return json.loads(text)

    async def process_webhook(
        self,
        payload: bytes,
        signature: Optional[str],
    ) -> Tuple[bool, str, Optional[Dict]]:
        """
        Main webhook entry point.

        Returns:
            (success, message, details). success is False only for a bad
            signature, a missing webhook secret or an unparseable payload.
        """
        # Step 1: Verify signature
        try:
            event = self._parse_event(payload, signature)
        except stripe.SignatureVerificationError as e:
            logger.error("Webhook signature verification failed: %s", e)
            return False, "Invalid signature", {"error": str(e)}
        except WebhookSecretMissingError as e:
            logger.error("Webhook rejected: %s", e)
            return False, "Webhook secret not configured", {"error": str(e)}
        except ValueError as e:
            logger.error(f"Webhook parse error: {e}")
            return False, "Invalid payload", {"error": str(e)}

        if not isinstance(event, dict):
            return False, "Invalid payload", {"error": "Event must be a JSON object"}

        event_id = event.get("id")
        event_type = event.get("type")
        if not event_id or not event_type:
            return False, "Invalid payload", {"error": "Event id and type are required"}

        ctx = _extract_webhook_context(event)
        logger.info(
            "WEBHOOK_RECEIVED event_id=%s event_type=%s livemode=%s intent_id=%s object_id=%s",
            event_id, event_type, ctx.get("livemode"), ctx.get("intent_id"), ctx.get("object_id"),
        )

        # Step 2: Idempotency check
        db = database.get_db()
        existing = await db.stripe_events.find_one({"event_id": event_id})

        if existing and existing.get("status") == "PROCESSED":
            logger.info(f"Event {event_id} already processed - skipping")
            return True, "Already processed", {"event_id": event_id}

        # Step 3: Record event
        event_record = {
            "event_id": event_id,
            "type": event_type,
            "created": datetime.now(timezone.utc),
            "processed_at": None,
            "status": "PROCESSING",
            "error": None,
            "related_company_id": None,
            "raw_minimal": self._extract_safe_data(event),
        }

        if existing:
            await db.stripe_events.update_one(
                {"event_id": event_id},
                {"$set": event_record}
            )
        else:
            try:
                await db.stripe_events.insert_one(event_record)
            except DuplicateKeyError:
                logger.info(f"Event {event_id} duplicate insert (race) - skipping")
                return True, "Already processed", {"event_id": event_id}

        # Step 4: Process event
        try:
            result = await self._handle_event(event)

            await db.stripe_events.update_one(
                {"event_id": event_id},
                {
                    "$set": {
                        "status": "PROCESSED",
                        "processed_at": datetime.now(timezone.utc),
                        "related_company_id": result.get("company_id"),
                    }
                }
            )

            logger.info(
                "WEBHOOK_PROCESSED_OK event_id=%s event_type=%s company_id=%s handled=%s",
                event_id, event_type, result.get("company_id"), result.get("handled"),
            )
            return True, "Processed", result

        except Exception as e:
            logger.error(
                "WEBHOOK_PROCESSING_FAILED event_id=%s event_type=%s error=%s",
                event_id, event_type, str(e),
            )

            await db.stripe_events.update_one(
                {"event_id": event_id},
                {
                    "$set": {
                        "status": "FAILED",
                        "processed_at": datetime.now(timezone.utc),
                        "error": str(e),
                    }
                }
            )

            # Return 200 to prevent Stripe retries (we've logged the failure)
            return True, "Event logged with error", {"error": str(e), "event_id": event_id}

    # =========================================================================
    # Event Handlers
    # =========================================================================

    async def _handle_event(self, event: Dict) -> Dict:
        """Route event to appropriate handler."""
        event_type = event.get("type")
        data = event.get("data", {}).get("object", {})

        handlers = {
            "payment_intent.succeeded": self._handle_payment_intent_succeeded,
            "payment_intent.payment_failed": self._handle_payment_intent_failed,
            "invoice.paid": self._handle_invoice_paid,
            "invoice.payment_failed": self._handle_invoice_payment_failed,
            "checkout.session.completed": self._handle_checkout_completed,
            "customer.subscription.updated": self._handle_subscription_change,
            "customer.subscription.deleted": self._handle_subscription_change,
        }

        handler = handlers.get(event_type)
        if handler:
            return await handler(data, event)

        logger.info(f"Ignoring unhandled event type: {event_type}")
        return {"handled": False, "event_type": event_type}

    async def _handle_payment_intent_succeeded(self, payment_intent: Dict, event: Dict) -> Dict:
        if payment_intent.get("invoice"):
            # Subscription invoice payments are confirmed by invoice.paid
            return {"handled": False, "reason": "invoice_payment"}

        company = await payment_orchestrator.confirm_intent(
            intent_id=(payment_intent.get("metadata") or {}).get("intent_id"),
            stripe_object_id=payment_intent.get("id"),
            customer_id=_object_id(payment_intent.get("customer")),
            event_id=event.get("id"),
        )
        if company is None:
            return {"handled": False, "reason": "intent_not_found"}
        return {"handled": True, "company_id": company.company_id}

    async def _handle_payment_intent_failed(self, payment_intent: Dict, event: Dict) -> Dict:
        error = payment_intent.get("last_payment_error") or {}
        released = await payment_orchestrator.mark_intent_failed(
            intent_id=(payment_intent.get("metadata") or {}).get("intent_id"),
            stripe_object_id=payment_intent.get("id"),
            reason=error.get("message") or error.get("code"),
        )
        return {"handled": released}

    async def _handle_checkout_completed(self, session: Dict, event: Dict) -> Dict:
        if session.get("payment_status") not in ("paid", "no_payment_required"):
            # Delayed payment methods confirm later
            return {"handled": False, "reason": "payment_pending"}

        company = await payment_orchestrator.confirm_intent(
            intent_id=(session.get("metadata") or {}).get("intent_id"),
            stripe_object_id=session.get("id"),
            subscription_id=_object_id(session.get("subscription")),
            customer_id=_object_id(session.get("customer")),
            event_id=event.get("id"),
        )
        if company is None:
            return {"handled": False, "reason": "intent_not_found"}
        return {"handled": True, "company_id": company.company_id}

    async def _handle_invoice_paid(self, invoice: Dict, event: Dict) -> Dict:
        """First invoice confirms the intent; later invoices are renewals."""
        subscription_id = _invoice_subscription_id(invoice)
        intent = await payment_orchestrator.find_intent(_invoice_intent_id(invoice), subscription_id)

        if intent and intent.get("status") != IntentStatus.CONFIRMED.value:
            company = await payment_orchestrator.confirm_intent(
                intent_id=intent["intent_id"],
                subscription_id=subscription_id,
                customer_id=_object_id(invoice.get("customer")),
                event_id=event.get("id"),
            )
            return {"handled": True, "company_id": company.company_id}

        if not subscription_id:
            return {"handled": False, "reason": "no_subscription"}
        company_id = await company_service.find_company_id_by_subscription(subscription_id)
        if company_id is None:
            return {"handled": False, "reason": "company_not_found"}

        await company_service.mark_payment_succeeded(company_id, StatusSource.WEBHOOK)
        logger.info("SUBSCRIPTION_RENEWED company_id=%s subscription_id=%s", company_id, subscription_id)
        return {"handled": True, "company_id": company_id}

    async def _handle_invoice_payment_failed(self, invoice: Dict, event: Dict) -> Dict:
        """Non-payment is informational (grace period); access flags are not changed."""
        subscription_id = _invoice_subscription_id(invoice)
        if not subscription_id:
            return {"handled": False, "reason": "no_subscription"}
        company_id = await company_service.find_company_id_by_subscription(subscription_id)
        if company_id is None:
            return {"handled": False, "reason": "company_not_found"}

        await company_service.sync_processor_fields(
            company_id, {"subscription_status": NormalizedStatus.PAST_DUE.value}
        )
        logger.warning(
            "INVOICE_PAYMENT_FAILED company_id=%s subscription_id=%s attempt=%s",
            company_id, subscription_id, invoice.get("attempt_count"),
        )
        return {"handled": True, "company_id": company_id}

    async def _handle_subscription_change(self, subscription: Dict, event: Dict) -> Dict:
        subscription_id = subscription.get("id")
        company_id = await company_service.find_company_id_by_subscription(subscription_id)
        if company_id is None:
            return {"handled": False, "reason": "company_not_found"}

        status = subscription.get("status")
        if event.get("type") == "customer.subscription.deleted":
            status = NormalizedStatus.CANCELED.value

        # Period fields moved to subscription items in newer API versions
        items = stripe_field(subscription.get("items"), "data") or []
        first_item = items[0] if items else {}
        fields = {
            "subscription_status": status,
            "cancel_at_period_end": bool(subscription.get("cancel_at_period_end")),
            "current_period_start": _timestamp(
                subscription.get("current_period_start") or stripe_field(first_item, "current_period_start")
            ),
            "current_period_end": _timestamp(
                subscription.get("current_period_end") or stripe_field(first_item, "current_period_end")
            ),
            "trial_ends_at": _timestamp(subscription.get("trial_end")),
        }

        before = await company_service.get_company(company_id)
        company = await company_service.sync_processor_fields(company_id, fields)

        await create_audit_log(
            action=AuditAction.SUBSCRIPTION_STATUS_SYNCED,
            actor_role="STRIPE",
            actor_id=event.get("id"),
            company_id=company_id,
            resource_type="subscription",
            resource_id=subscription_id,
            before_state={"subscription_status": before.subscription_status, "cancel_at_period_end": before.cancel_at_period_end},
            after_state={"subscription_status": company.subscription_status, "cancel_at_period_end": company.cancel_at_period_end},
        )
        return {"handled": True, "company_id": company_id, "status": status}

    # =========================================================================
    # Helpers
    # =========================================================================

    def _extract_safe_data(self, event: Dict) -> Dict:
        """Extract safe subset of event data for logging (no secrets)."""
        obj = event.get("data", {}).get("object", {}) or {}
        return {
            "id": event.get("id"),
            "type": event.get("type"),
            "created": event.get("created"),
            "object_id": obj.get("id"),
            "object_type": obj.get("object"),
        }


# Singleton instance
stripe_webhook_service = StripeWebhookService()

"""Stripe Service - thin async wrapper over the Stripe SDK.

This service handles:
- Customer, subscription, payment intent and setup intent creation
- Hosted checkout sessions for plans without a configured price
- Subscription retrieval and cancel-at-period-end toggling

Key Principles:
- An empty STRIPE_SECRET_KEY means the processor is not configured (demo mode);
  callers check is_configured() before any call
- Every call runs in a worker thread bounded by STRIPE_TIMEOUT_SECONDS and
  surfaces failures as ProcessorError
- The SDK retries a failed request at most once
"""
import asyncio
import logging
import os
from typing import Any, Dict, List, Optional

import stripe

from services.billing_errors import ProcessorError, ProcessorNotConfiguredError

logger = logging.getLogger(__name__)

# Initialize Stripe (prefer STRIPE_SECRET_KEY; fallback STRIPE_API_KEY)
stripe.api_key = (os.getenv("STRIPE_SECRET_KEY") or os.getenv("STRIPE_API_KEY") or "").strip()
# Pinned so latest_invoice.payment_intent stays expandable
stripe.api_version = os.getenv("STRIPE_API_VERSION", "2024-06-20")
stripe.max_network_retries = 1

STRIPE_TIMEOUT_SECONDS = float(os.getenv("STRIPE_TIMEOUT_SECONDS", "15"))
BILLING_CURRENCY = os.getenv("BILLING_CURRENCY", "brl").lower()


def stripe_field(obj: Any, key: str) -> Any:
    if obj is None or isinstance(obj, str):
        return None
    if isinstance(obj, dict):
        return obj.get(key)
    return getattr(obj, key, None)


def client_secret_from_subscription(subscription: Any) -> Optional[str]:
    """First-invoice payment secret, or the pending setup intent's secret."""
    invoice = stripe_field(subscription, "latest_invoice")
    payment_intent = stripe_field(invoice, "payment_intent")
    secret = stripe_field(payment_intent, "client_secret")
    if secret:
        return secret
    secret = stripe_field(stripe_field(invoice, "confirmation_secret"), "client_secret")
    if secret:
        return secret
    return stripe_field(stripe_field(subscription, "pending_setup_intent"), "client_secret")


class StripeService:
    """Stripe billing operations service."""

    def is_configured(self) -> bool:
        return bool((stripe.api_key or "").strip())

    async def _call(self, operation: str, fn, *args, **params) -> Any:
        if not self.is_configured():
            raise ProcessorNotConfiguredError()
        if params.get("idempotency_key") is None:
            params.pop("idempotency_key", None)
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(fn, *args, **params),
                timeout=STRIPE_TIMEOUT_SECONDS,
            )
        except asyncio.TimeoutError:
            logger.error("PROCESSOR_ERROR operation=%s code=timeout timeout=%ss", operation, STRIPE_TIMEOUT_SECONDS)
            raise ProcessorError("timeout", f"Stripe {operation} timed out after {STRIPE_TIMEOUT_SECONDS:g}s")
        except stripe.StripeError as e:
            code = getattr(e, "code", None) or type(e).__name__
            logger.error("PROCESSOR_ERROR operation=%s code=%s error=%s", operation, code, e)
            raise ProcessorError(code, getattr(e, "user_message", None) or str(e))

    async def create_customer(
        self,
        email: Optional[str],
        name: Optional[str],
        metadata: Dict[str, str],
        idempotency_key: Optional[str] = None,
    ) -> Any:
        customer = await self._call(
            "customer.create",
            stripe.Customer.create,
            email=email,
            name=name,
            metadata=metadata,
            idempotency_key=idempotency_key,
        )
        logger.info("Stripe customer created: %s", stripe_field(customer, "id"))
        return customer

    async def create_subscription(
        self,
        customer_id: str,
        price_id: str,
        metadata: Dict[str, str],
        trial_period_days: int = 0,
        idempotency_key: Optional[str] = None,
    ) -> Any:
        """Incomplete subscription; the client confirms the first invoice.

        With a trial nothing is due now and Stripe returns a pending setup intent.
        """
        params: Dict[str, Any] = {
            "customer": customer_id,
            "items": [{"price": price_id}],
            "payment_behavior": "default_incomplete",
            "payment_settings": {"save_default_payment_method": "on_subscription"},
            "expand": ["latest_invoice.payment_intent", "pending_setup_intent"],
            "metadata": metadata,
            "idempotency_key": idempotency_key,
        }
        if trial_period_days > 0:
            params["trial_period_days"] = trial_period_days

        subscription = await self._call("subscription.create", stripe.Subscription.create, **params)
        logger.info("Stripe subscription created: %s", stripe_field(subscription, "id"))
        return subscription

    async def update_subscription_price(
        self,
        subscription_id: str,
        price_id: str,
        idempotency_key: Optional[str] = None,
    ) -> Any:
        """Swap the price of an existing subscription (plan upgrade).

        pending_if_incomplete accepts no metadata; the intent is correlated by
        subscription id.
        """
        current = await self._call("subscription.retrieve", stripe.Subscription.retrieve, subscription_id)
        items = stripe_field(stripe_field(current, "items"), "data") or []
        if not items:
            raise ProcessorError("subscription_without_items", f"Subscription {subscription_id} has no items")

        subscription = await self._call(
            "subscription.modify",
            stripe.Subscription.modify,
            subscription_id,
            items=[{"id": stripe_field(items[0], "id"), "price": price_id}],
            proration_behavior="always_invoice",
            payment_behavior="pending_if_incomplete",
            expand=["latest_invoice.payment_intent", "pending_setup_intent"],
            idempotency_key=idempotency_key,
        )
        logger.info("Stripe subscription price updated: %s", subscription_id)
        return subscription

    async def create_payment_intent(
        self,
        amount_cents: int,
        customer_id: Optional[str],
        metadata: Dict[str, str],
        installments_enabled: bool = False,
        idempotency_key: Optional[str] = None,
    ) -> Any:
        params: Dict[str, Any] = {
            "amount": amount_cents,
            "currency": BILLING_CURRENCY,
            "metadata": metadata,
            "automatic_payment_methods": {"enabled": True},
            "idempotency_key": idempotency_key,
        }
        if customer_id:
            params["customer"] = customer_id
        if installments_enabled:
            params["payment_method_options"] = {"card": {"installments": {"enabled": True}}}

        payment_intent = await self._call("payment_intent.create", stripe.PaymentIntent.create, **params)
        logger.info("Stripe payment intent created: %s", stripe_field(payment_intent, "id"))
        return payment_intent

    async def create_setup_intent(
        self,
        customer_id: Optional[str],
        metadata: Dict[str, str],
        idempotency_key: Optional[str] = None,
    ) -> Any:
        params: Dict[str, Any] = {
            "metadata": metadata,
            "usage": "off_session",
            "automatic_payment_methods": {"enabled": True},
            "idempotency_key": idempotency_key,
        }
        if customer_id:
            params["customer"] = customer_id

        setup_intent = await self._call("setup_intent.create", stripe.SetupIntent.create, **params)
        logger.info("Stripe setup intent created: %s", stripe_field(setup_intent, "id"))
        return setup_intent

    async def create_checkout_session(
        self,
        customer_id: Optional[str],
        line_items: List[Dict[str, Any]],
        mode: str,
        success_url: str,
        cancel_url: str,
        metadata: Dict[str, str],
        idempotency_key: Optional[str] = None,
    ) -> Any:
        """Hosted checkout; used when a plan has no Stripe price for the period."""
        params: Dict[str, Any] = {
            "mode": mode,
            "line_items": line_items,
            "success_url": success_url,
            "cancel_url": cancel_url,
            "metadata": metadata,
            "idempotency_key": idempotency_key,
        }
        if mode == "subscription":
            params["subscription_data"] = {"metadata": metadata}
        else:
            params["payment_intent_data"] = {"metadata": metadata}
        if customer_id:
            params["customer"] = customer_id

        session = await self._call("checkout.session.create", stripe.checkout.Session.create, **params)
        logger.info("Stripe checkout session created: %s", stripe_field(session, "id"))
        return session

    async def retrieve_subscription(self, subscription_id: str) -> Any:
        return await self._call(
            "subscription.retrieve",
            stripe.Subscription.retrieve,
            subscription_id,
            expand=["latest_invoice.payment_intent"],
        )

    async def set_cancel_at_period_end(self, subscription_id: str, cancel_at_period_end: bool) -> Any:
        subscription = await self._call(
            "subscription.modify",
            stripe.Subscription.modify,
            subscription_id,
            cancel_at_period_end=cancel_at_period_end,
        )
        logger.info(
            "Stripe subscription %s cancel_at_period_end=%s",
            subscription_id, cancel_at_period_end,
        )
        return subscription

    async def release_incomplete(self, object_type: Optional[str], object_id: Optional[str]) -> None:
        """Best-effort cleanup of an abandoned artifact (superseded intent)."""
        if not object_id:
            return
        try:
            if object_type == "subscription":
                await self._call("subscription.cancel", stripe.Subscription.cancel, object_id)
            elif object_type == "payment_intent":
                await self._call("payment_intent.cancel", stripe.PaymentIntent.cancel, object_id)
            elif object_type == "checkout_session":
                await self._call("checkout.session.expire", stripe.checkout.Session.expire, object_id)
        except ProcessorError as e:
            # The processor expires abandoned artifacts on its own
            logger.warning("Could not release %s %s: %s", object_type, object_id, e.message)


# Singleton instance
stripe_service = StripeService()

"""
Stripe webhook confirmation path.

Ensures:
- Successful payments confirm the matching subscription intent and reactivate the company.
- Each event id is processed once (redelivery is acknowledged and skipped).
- invoice.payment_failed only syncs past_due (grace period); deletion denies access.
- Bad signatures answer 400; handled failures still answer 200.
- Unsigned events are refused unless running in development.
"""
import hashlib
import hmac
import json
import time
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

import pytest

from services.access_gate import access_gate

WEBHOOK_URL = "/api/webhook/stripe"


@pytest.fixture(autouse=True)
def unsigned_webhooks(monkeypatch):
    monkeypatch.setenv("ENVIRONMENT", "development")
    with patch("services.stripe_webhook_service._get_webhook_secret", return_value=""):
        yield


def _event(event_type, obj, event_id="evt_1"):
    return {"id": event_id, "type": event_type, "livemode": False, "data": {"object": obj}}


def _post(client, event, headers=None):
    return client.post(WEBHOOK_URL, content=json.dumps(event), headers=headers or {})


def _pending_intent(fake_db, company_id, **overrides):
    now = datetime.now(timezone.utc)
    intent = {
        "intent_id": "intent-1",
        "company_id": company_id,
        "plan_id": 3,
        "billing_period": "monthly",
        "installments": 1,
        "kind": "client_secret",
        "client_secret": "secret",
        "intent_type": "subscription",
        "stripe_object_type": "subscription",
        "stripe_object_id": "sub_1",
        "stripe_customer_id": "cus_1",
        "status": "pending",
        "created_at": now,
        "expires_at": now + timedelta(minutes=30),
    }
    intent.update(overrides)
    fake_db.subscription_intents.docs.append(intent)
    return intent


def test_payment_intent_succeeded_confirms_annual_intent(client, fake_db, company_id):
    _pending_intent(
        fake_db, company_id, plan_id=2, billing_period="annual", installments=4,
        intent_type="payment_intent", stripe_object_type="payment_intent", stripe_object_id="pi_9",
    )
    fake_db.company(company_id).update({"is_active": False, "plan_status": "suspended"})
    event = _event("payment_intent.succeeded", {
        "id": "pi_9", "object": "payment_intent", "customer": "cus_1",
        "metadata": {"intent_id": "intent-1"},
    })

    response = _post(client, event)

    assert response.status_code == 200
    assert response.json()["details"]["handled"] is True
    company = fake_db.company(company_id)
    assert company["plan_id"] == 2
    assert company["is_active"] is True
    assert company["plan_status"] == "active"
    assert fake_db.intents(intent_id="intent-1")[0]["status"] == "confirmed"
    assert fake_db.stripe_events.docs[0]["status"] == "PROCESSED"


def test_duplicate_event_is_processed_once(client, fake_db, company_id):
    _pending_intent(fake_db, company_id, stripe_object_type="payment_intent", stripe_object_id="pi_9")
    event = _event("payment_intent.succeeded", {"id": "pi_9", "metadata": {"intent_id": "intent-1"}})

    first = _post(client, event)
    second = _post(client, event)

    assert first.json()["message"] == "Processed"
    assert second.json()["message"] == "Already processed"
    assert len(fake_db.stripe_events.docs) == 1
    assert [a["action"] for a in fake_db.audit_logs.docs] == ["SUBSCRIPTION_CONFIRMED"]


def test_invoice_payment_intent_is_left_to_invoice_paid(client, fake_db, company_id):
    _pending_intent(fake_db, company_id)
    event = _event("payment_intent.succeeded", {"id": "pi_inv", "invoice": "in_1", "metadata": {}})

    response = _post(client, event)

    assert response.json()["details"]["handled"] is False
    assert fake_db.intents(intent_id="intent-1")[0]["status"] == "pending"


def test_first_invoice_paid_confirms_subscription_intent(client, fake_db, company_id):
    _pending_intent(fake_db, company_id)
    event = _event("invoice.paid", {
        "id": "in_1", "customer": "cus_1", "subscription": "sub_1",
        "subscription_details": {"metadata": {"intent_id": "intent-1"}},
    })

    _post(client, event)

    company = fake_db.company(company_id)
    assert company["plan_id"] == 3
    assert company["stripe_subscription_id"] == "sub_1"
    assert fake_db.intents(intent_id="intent-1")[0]["status"] == "confirmed"


def test_invoice_paid_with_nested_subscription_reference(client, fake_db, company_id):
    """Newer API versions put the subscription under parent.subscription_details."""
    _pending_intent(fake_db, company_id)
    event = _event("invoice.paid", {
        "id": "in_1",
        "parent": {"subscription_details": {"subscription": "sub_1", "metadata": {}}},
    })

    _post(client, event)

    assert fake_db.intents(intent_id="intent-1")[0]["status"] == "confirmed"


def test_renewal_invoice_paid_clears_past_due(client, fake_db, company_id):
    fake_db.company(company_id).update({"stripe_subscription_id": "sub_1", "subscription_status": "past_due"})
    event = _event("invoice.paid", {"id": "in_2", "subscription": "sub_1", "billing_reason": "subscription_cycle"})

    response = _post(client, event)

    assert response.json()["details"]["company_id"] == company_id
    assert fake_db.company(company_id)["subscription_status"] == "active"


@pytest.mark.asyncio
async def test_invoice_payment_failed_is_a_grace_period(client, fake_db, company_id):
    fake_db.company(company_id).update({"stripe_subscription_id": "sub_1", "subscription_status": "active"})
    event = _event("invoice.payment_failed", {"id": "in_3", "subscription": "sub_1", "attempt_count": 1})

    _post(client, event)

    company = fake_db.company(company_id)
    assert company["subscription_status"] == "past_due"
    assert company["is_active"] is True
    decision = await access_gate.evaluate(company_id)
    assert decision.allowed is True
    assert decision.subscription.in_grace_period is True


@pytest.mark.asyncio
async def test_subscription_deleted_denies_access(client, fake_db, company_id):
    fake_db.company(company_id).update({"stripe_subscription_id": "sub_1", "subscription_status": "active"})
    event = _event("customer.subscription.deleted", {"id": "sub_1", "status": "active"})

    _post(client, event)

    assert fake_db.company(company_id)["subscription_status"] == "canceled"
    assert await access_gate.can_access(company_id) is False
    assert fake_db.audit_logs.docs[-1]["action"] == "SUBSCRIPTION_STATUS_SYNCED"


def test_subscription_updated_syncs_period_and_cancel_flag(client, fake_db, company_id):
    fake_db.company(company_id)["stripe_subscription_id"] = "sub_1"
    start = int(time.time())
    end = start + 30 * 86400
    event = _event("customer.subscription.updated", {
        "id": "sub_1", "status": "active", "cancel_at_period_end": True,
        "items": {"data": [{"id": "si_1", "current_period_start": start, "current_period_end": end}]},
    })

    _post(client, event)

    company = fake_db.company(company_id)
    assert company["cancel_at_period_end"] is True
    assert company["current_period_end"] == datetime.fromtimestamp(end, tz=timezone.utc)
    assert company["trial_ends_at"] is None


def test_subscription_event_for_unknown_company_is_acknowledged(client, fake_db):
    event = _event("customer.subscription.updated", {"id": "sub_unknown", "status": "active"})
    response = _post(client, event)
    assert response.status_code == 200
    assert response.json()["details"]["handled"] is False


def test_payment_failed_releases_the_intent(client, fake_db, company_id):
    _pending_intent(fake_db, company_id, stripe_object_type="payment_intent", stripe_object_id="pi_9")
    event = _event("payment_intent.payment_failed", {
        "id": "pi_9", "metadata": {"intent_id": "intent-1"},
        "last_payment_error": {"code": "card_declined", "message": "Your card was declined."},
    })

    _post(client, event)

    intent = fake_db.intents(intent_id="intent-1")[0]
    assert intent["status"] == "failed"
    assert intent["error"] == "Your card was declined."
    assert fake_db.company(company_id)["plan_id"] == 1


def test_checkout_completed_confirms_redirect_intent(client, fake_db, company_id):
    _pending_intent(
        fake_db, company_id, kind="redirect", redirect_url="https://checkout", client_secret=None,
        stripe_object_type="checkout_session", stripe_object_id="cs_1",
    )
    event = _event("checkout.session.completed", {
        "id": "cs_1", "payment_status": "paid", "customer": "cus_1", "subscription": "sub_new",
        "metadata": {"intent_id": "intent-1"},
    })

    _post(client, event)

    company = fake_db.company(company_id)
    assert company["stripe_subscription_id"] == "sub_new"
    assert company["plan_id"] == 3


def test_checkout_with_pending_payment_waits(client, fake_db, company_id):
    _pending_intent(fake_db, company_id, stripe_object_type="checkout_session", stripe_object_id="cs_1")
    event = _event("checkout.session.completed", {"id": "cs_1", "payment_status": "unpaid", "metadata": {}})

    _post(client, event)

    assert fake_db.intents(intent_id="intent-1")[0]["status"] == "pending"


def test_unhandled_event_type(client, fake_db):
    response = _post(client, _event("customer.created", {"id": "cus_1"}))
    assert response.status_code == 200
    assert response.json()["details"] == {"handled": False, "event_type": "customer.created"}


def test_handler_failure_still_answers_200(client, fake_db, company_id):
    _pending_intent(fake_db, company_id, stripe_object_type="payment_intent", stripe_object_id="pi_9")
    event = _event("payment_intent.succeeded", {"id": "pi_9", "metadata": {"intent_id": "intent-1"}})

    with patch(
        "services.stripe_webhook_service.payment_orchestrator.confirm_intent",
        new=AsyncMock(side_effect=RuntimeError("db down")),
    ):
        response = _post(client, event)

    assert response.status_code == 200
    assert response.json()["message"] == "Event logged with error"
    assert fake_db.stripe_events.docs[0]["status"] == "FAILED"


def test_invalid_json_is_rejected(client, fake_db):
    response = client.post(WEBHOOK_URL, content=b"not json")
    assert response.status_code == 400


def _signature(payload: str, secret: str, timestamp: int) -> str:
    signed = hmac.new(secret.encode(), f"{timestamp}.{payload}".encode(), hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signed}"


def test_signed_events(client, fake_db):
    secret = "whsec_test"
    payload = json.dumps(_event("customer.created", {"id": "cus_1"}, event_id="evt_signed"))

    with patch("services.stripe_webhook_service._get_webhook_secret", return_value=secret):
        bad = client.post(WEBHOOK_URL, content=payload, headers={"Stripe-Signature": "t=1,v1=deadbeef"})
        missing = client.post(WEBHOOK_URL, content=payload)
        good = client.post(
            WEBHOOK_URL,
            content=payload,
            headers={"Stripe-Signature": _signature(payload, secret, int(time.time()))},
        )

    assert bad.status_code == 400
    assert missing.status_code == 400
    assert good.status_code == 200
    assert [e["event_id"] for e in fake_db.stripe_events.docs] == ["evt_signed"]


@pytest.mark.parametrize("environment", ["production", "staging", None])
def test_unsigned_event_needs_development(client, fake_db, company_id, monkeypatch, environment):
    if environment is None:
        monkeypatch.delenv("ENVIRONMENT", raising=False)
    else:
        monkeypatch.setenv("ENVIRONMENT", environment)
    _pending_intent(fake_db, company_id, stripe_object_type="payment_intent", stripe_object_id="pi_9")
    fake_db.company(company_id).update({"is_active": False, "plan_status": "suspended"})
    event = _event("payment_intent.succeeded", {"id": "pi_9", "metadata": {"intent_id": "intent-1"}})

    response = _post(client, event)

    assert response.status_code == 400
    assert response.json()["detail"] == "Webhook secret not configured"
    assert fake_db.stripe_events.docs == []
    assert fake_db.company(company_id)["plan_status"] == "suspended"
    assert fake_db.intents(intent_id="intent-1")[0]["status"] == "pending"


@pytest.mark.parametrize("payload", [b"[]", b"42", b'"evt_1"', b"null"])
def test_non_object_payload_is_rejected(client, fake_db, payload):
    response = client.post(WEBHOOK_URL, content=payload)
    assert response.status_code == 400
    assert response.json()["detail"] == "Invalid payload"
    assert fake_db.stripe_events.docs == []


def test_concurrent_delivery_is_acknowledged(client, fake_db, company_id):
    """Another worker recorded the event between our lookup and insert."""
    _pending_intent(fake_db, company_id, stripe_object_type="payment_intent", stripe_object_id="pi_9")
    fake_db.stripe_events.docs.append({"event_id": "evt_1", "status": "PROCESSING"})
    event = _event("payment_intent.succeeded", {"id": "pi_9", "metadata": {"intent_id": "intent-1"}})

    with patch.object(fake_db.stripe_events, "find_one", new=AsyncMock(return_value=None)):
        response = _post(client, event)

    assert response.status_code == 200
    assert response.json()["message"] == "Already processed"
    assert fake_db.intents(intent_id="intent-1")[0]["status"] == "pending"


def test_upgrade_invoice_confirms_the_pending_upgrade(client, fake_db, company_id):
    """The subscription still carries the metadata of the intent that created it."""
    fake_db.company(company_id).update({"plan_id": 2, "stripe_subscription_id": "sub_1"})
    _pending_intent(fake_db, company_id, intent_id="intent-old", plan_id=2, status="confirmed")
    _pending_intent(
        fake_db, company_id, intent_id="intent-upgrade", plan_id=3,
        created_subscription=False, created_at=datetime.now(timezone.utc) + timedelta(seconds=1),
    )
    event = _event("invoice.paid", {
        "id": "in_proration", "customer": "cus_1", "subscription": "sub_1",
        "billing_reason": "subscription_update",
        "subscription_details": {"metadata": {"intent_id": "intent-old"}},
    })

    response = _post(client, event)

    assert response.json()["details"]["handled"] is True
    assert fake_db.intents(intent_id="intent-upgrade")[0]["status"] == "confirmed"
    assert fake_db.company(company_id)["plan_id"] == 3

"""Tests for Stripe checkout, subscription sync and webhooks."""

import hashlib
import hmac
import json
import time

import pytest
import stripe
from unittest.mock import patch


@pytest.fixture
def mock_stripe():
    """Replace the stripe module used by the billing service."""
    with patch("llm_tracker.services.billing.stripe") as mock_module:
        mock_module.Customer.list.return_value = _stripe_list([])
        yield mock_module


def _me(client, headers):
    return client.get("/auth/me", headers=headers).json()


def _stripe_list(data):
    return stripe.StripeObject.construct_from({"object": "list", "data": data}, "sk_test_123")


def _subscription(price_id, period_end=1735689600):
    return {
        "object": "subscription",
        "items": {
            "object": "list",
            "data": [{"price": {"id": price_id}, "current_period_end": period_end}],
        },
    }


class TestCheckout:

    def test_invalid_plan(self, client, auth_headers, mock_stripe):
        resp = client.post("/billing/checkout", json={"plan": "platinum"}, headers=auth_headers)
        assert resp.status_code == 400

    def test_not_configured(self, client, auth_headers):
        with patch("llm_tracker.config.STRIPE_SECRET_KEY", None):
            resp = client.post("/billing/checkout", json={"plan": "basic"}, headers=auth_headers)
        assert resp.status_code == 503

    def test_new_customer(self, client, auth_headers, mock_stripe):
        mock_stripe.checkout.Session.create.return_value = {"url": "https://checkout.stripe.test/c/1"}

        resp = client.post("/billing/checkout", json={"plan": "basic"}, headers=auth_headers)

        assert resp.status_code == 200
        assert resp.json() == {"url": "https://checkout.stripe.test/c/1"}

        user_id = _me(client, auth_headers)["id"]
        kwargs = mock_stripe.checkout.Session.create.call_args.kwargs
        assert kwargs["mode"] == "subscription"
        assert kwargs["line_items"] == [{"price": "price_basic", "quantity": 1}]
        assert kwargs["customer_email"] == "owner@example.com"
        assert kwargs["client_reference_id"] == user_id
        assert kwargs["metadata"] == {"user_id": user_id, "plan": "basic"}

    def test_existing_customer(self, client, auth_headers, mock_stripe):
        mock_stripe.Customer.list.return_value = _stripe_list([{"id": "cus_123"}])
        mock_stripe.checkout.Session.create.return_value = {"url": "https://checkout.stripe.test/c/2"}

        client.post("/billing/checkout", json={"plan": "gold"}, headers=auth_headers)

        kwargs = mock_stripe.checkout.Session.create.call_args.kwargs
        assert kwargs["customer"] == "cus_123"
        assert "customer_email" not in kwargs

    def test_stripe_error(self, client, auth_headers, mock_stripe):
        mock_stripe.checkout.Session.create.side_effect = stripe.StripeError("card network down")

        resp = client.post("/billing/checkout", json={"plan": "gold"}, headers=auth_headers)
        assert resp.status_code == 502


class TestPortal:

    def test_no_customer(self, client, auth_headers, mock_stripe):
        assert client.post("/billing/portal", headers=auth_headers).status_code == 404

    def test_portal_url(self, client, auth_headers, mock_stripe):
        mock_stripe.Customer.list.return_value = _stripe_list([{"id": "cus_123"}])
        mock_stripe.billing_portal.Session.create.return_value = {"url": "https://billing.stripe.test/p/1"}

        resp = client.post("/billing/portal", headers=auth_headers)

        assert resp.json() == {"url": "https://billing.stripe.test/p/1"}
        assert mock_stripe.billing_portal.Session.create.call_args.kwargs["customer"] == "cus_123"


class TestCheckSubscription:

    def test_active_subscription_applies_plan(self, client, auth_headers, mock_stripe):
        mock_stripe.Customer.list.return_value = _stripe_list([{"id": "cus_123"}])
        mock_stripe.Subscription.list.return_value = _stripe_list([_subscription("price_gold")])

        resp = client.post("/billing/check-subscription", headers=auth_headers)

        assert resp.status_code == 200
        assert resp.json() == {
            "subscribed": True,
            "subscription_tier": "gold",
            "subscription_end": "2025-01-01T00:00:00",
        }
        me = _me(client, auth_headers)
        assert me["plan"] == "gold"
        assert me["projects_limit"] == 10

    def test_no_subscription_falls_back_to_trial(self, client, auth_headers, mock_stripe, set_plan):
        set_plan("owner@example.com", "basic")
        mock_stripe.Customer.list.return_value = _stripe_list([{"id": "cus_123"}])
        mock_stripe.Subscription.list.return_value = _stripe_list([])

        resp = client.post("/billing/check-subscription", headers=auth_headers)

        assert resp.json()["subscribed"] is False
        me = _me(client, auth_headers)
        assert me["plan"] == "trial"
        assert me["trial_ends_at"] is not None

    def test_not_a_customer(self, client, auth_headers, mock_stripe):
        resp = client.post("/billing/check-subscription", headers=auth_headers)
        assert resp.json() == {"subscribed": False, "subscription_tier": None, "subscription_end": None}


class TestWebhook:

    def _post(self, client):
        return client.post(
            "/billing/webhook",
            content=b'{"id": "evt_1"}',
            headers={"stripe-signature": "t=1,v1=abc"},
        )

    def test_bad_signature(self, client, mock_stripe):
        mock_stripe.Webhook.construct_event.side_effect = stripe.SignatureVerificationError(
            "No signatures found", "t=1,v1=abc",
        )
        assert self._post(client).status_code == 400

    def test_bad_payload(self, client, mock_stripe):
        mock_stripe.Webhook.construct_event.side_effect = ValueError("Invalid payload")
        assert self._post(client).status_code == 400

    def test_checkout_then_cancel(self, client, auth_headers, mock_stripe):
        user_id = _me(client, auth_headers)["id"]

        mock_stripe.Webhook.construct_event.return_value = {
            "type": "checkout.session.completed",
            "data": {
                "object": {
                    "client_reference_id": user_id,
                    "customer": "cus_123",
                    "metadata": {"user_id": user_id, "plan": "basic"},
                }
            },
        }
        resp = self._post(client)
        assert resp.json() == {"received": True, "result": "activated"}
        assert _me(client, auth_headers)["plan"] == "basic"

        mock_stripe.Webhook.construct_event.return_value = {
            "type": "customer.subscription.updated",
            "data": {"object": dict(_subscription("price_gold"), customer="cus_123", status="active")},
        }
        assert self._post(client).json()["result"] == "updated"
        assert _me(client, auth_headers)["plan"] == "gold"

        mock_stripe.Webhook.construct_event.return_value = {
            "type": "customer.subscription.deleted",
            "data": {"object": {"customer": "cus_123"}},
        }
        assert self._post(client).json()["result"] == "cancelled"
        assert _me(client, auth_headers)["plan"] == "trial"

    def test_unknown_event_is_acknowledged(self, client, mock_stripe):
        mock_stripe.Webhook.construct_event.return_value = {
            "type": "invoice.paid",
            "data": {"object": {}},
        }
        resp = self._post(client)
        assert resp.status_code == 200
        assert resp.json()["result"] == "ignored"


def _signed(event, secret="whsec_test"):
    """Serialise `event` and sign it the way Stripe signs webhook deliveries."""
    payload = json.dumps(event)
    timestamp = int(time.time())
    signature = hmac.new(
        secret.encode("utf-8"),
        f"{timestamp}.{payload}".encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()
    return payload, f"t={timestamp},v1={signature}"


def _event(event_type, obj):
    return {
        "id": "evt_signed",
        "object": "event",
        "type": event_type,
        "data": {"object": obj},
    }


class TestSignedWebhook:
    """Events go through the real signature check and Stripe object types."""

    def _deliver(self, client, event):
        payload, header = _signed(event)
        return client.post(
            "/billing/webhook",
            content=payload.encode("utf-8"),
            headers={"stripe-signature": header, "content-type": "application/json"},
        )

    def test_subscription_lifecycle(self, client, auth_headers):
        user_id = _me(client, auth_headers)["id"]

        resp = self._deliver(client, _event("checkout.session.completed", {
            "id": "cs_test_1",
            "object": "checkout.session",
            "client_reference_id": user_id,
            "customer": "cus_signed",
            "metadata": {"user_id": user_id, "plan": "basic"},
        }))
        assert resp.status_code == 200, resp.text
        assert resp.json() == {"received": True, "result": "activated"}
        assert _me(client, auth_headers)["plan"] == "basic"

        subscription = dict(_subscription("price_gold"), id="sub_1", customer="cus_signed", status="active")
        resp = self._deliver(client, _event("customer.subscription.updated", subscription))
        assert resp.json()["result"] == "updated"
        me = _me(client, auth_headers)
        assert me["plan"] == "gold"
        assert me["plan_expires_at"] == "2025-01-01T00:00:00"

        resp = self._deliver(client, _event("customer.subscription.deleted", {
            "id": "sub_1",
            "object": "subscription",
            "customer": "cus_signed",
        }))
        assert resp.json()["result"] == "cancelled"
        assert _me(client, auth_headers)["plan"] == "trial"

    def test_wrong_secret_is_rejected(self, client, auth_headers):
        payload, header = _signed(_event("invoice.paid", {"object": "invoice"}), secret="whsec_other")
        resp = client.post("/billing/webhook", content=payload.encode("utf-8"), headers={"stripe-signature": header})
        assert resp.status_code == 400

"""Thin wrapper over the ``stripe`` SDK so handlers can be exercised with a fake."""

from __future__ import annotations

import json
import logging
from typing import Any

import stripe

from app.core.config import get_settings

logger = logging.getLogger(__name__)


class StripeSignatureError(Exception):
    """The payload or its ``stripe-signature`` header failed verification."""


class StripeNotConfiguredError(Exception):
    pass


def _plain(obj: Any) -> dict[str, Any]:
    # StripeObject renders itself as JSON; round-tripping yields plain nested dicts.
    if isinstance(obj, dict):
        return json.loads(json.dumps(obj, default=str))
    return json.loads(str(obj))


class StripeGateway:
    def __init__(self, secret_key: str | None = None, webhook_secret: str | None = None, base_url: str | None = None) -> None:
        settings = get_settings()
        self.secret_key = secret_key if secret_key is not None else settings.stripe_secret_key
        self.webhook_secret = webhook_secret if webhook_secret is not None else settings.stripe_webhook_secret
        self.base_url = (base_url or settings.app_base_url).rstrip("/")

    def _configure(self) -> None:
        if not self.secret_key:
            raise StripeNotConfiguredError("STRIPE_SECRET_KEY is not configured")
        stripe.api_key = self.secret_key

    def construct_event(self, payload: bytes, signature: str) -> dict[str, Any]:
        if not self.webhook_secret:
            raise StripeNotConfiguredError("STRIPE_WEBHOOK_SECRET is not configured")
        try:
            stripe.Webhook.construct_event(payload, signature, self.webhook_secret)
        except stripe.SignatureVerificationError as exc:
            raise StripeSignatureError(str(exc)) from exc
        except ValueError as exc:
            raise StripeSignatureError("invalid payload") from exc
        return json.loads(payload)

    def retrieve_subscription(self, subscription_id: str) -> dict[str, Any]:
        self._configure()
        return _plain(stripe.Subscription.retrieve(subscription_id))

    def retrieve_customer(self, customer_id: str) -> dict[str, Any]:
        self._configure()
        return _plain(stripe.Customer.retrieve(customer_id))

    def create_customer(self, *, email: str | None, name: str, organization_id: str) -> dict[str, Any]:
        self._configure()
        customer = stripe.Customer.create(email=email, name=name, metadata={"organization_id": organization_id})
        logger.info("stripe.customer.created", extra={"organization_id": organization_id})
        return _plain(customer)

    def create_checkout_session(self, *, customer_id: str, price_id: str, organization_id: str) -> dict[str, Any]:
        self._configure()
        session = stripe.checkout.Session.create(
            mode="subscription",
            customer=customer_id,
            line_items=[{"price": price_id, "quantity": 1}],
            success_url=f"{self.base_url}/app/settings/subscription/success?session_id={{CHECKOUT_SESSION_ID}}",
            cancel_url=f"{self.base_url}/app/settings/subscription/cancel",
            metadata={"organization_id": organization_id},
            subscription_data={"metadata": {"organization_id": organization_id}},
        )
        return _plain(session)

    def create_billing_portal_session(self, *, customer_id: str) -> dict[str, Any]:
        self._configure()
        session = stripe.billing_portal.Session.create(
            customer=customer_id,
            return_url=f"{self.base_url}/app/settings/subscription",
        )
        return _plain(session)


_gateway: StripeGateway | None = None


def get_stripe_gateway() -> StripeGateway:
    global _gateway
    if _gateway is None:
        _gateway = StripeGateway()
    return _gateway

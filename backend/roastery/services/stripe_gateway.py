# Overview: Thin wrapper around the Stripe SDK; every upstream call goes through here.

"""
Stripe Gateway

WHY: Keeps SDK details (api key, timeouts, retries, object shapes) in one
place. Every function returns plain dicts so services never depend on
StripeObject behaviour, and every SDK failure surfaces as UpstreamFailure.

Timeouts and network retries are configured once per app in configure():
no call blocks longer than STRIPE_TIMEOUT_SECONDS per attempt, and Stripe's
own idempotent retry handles transient network errors.
"""

from __future__ import annotations

import json

import stripe
from flask import current_app


class UpstreamFailure(Exception):
    """Stripe unreachable or returned an error. Safe to retry."""


def configure(app) -> None:
    stripe.api_key = app.config.get("STRIPE_SECRET_KEY") or None
    stripe.max_network_retries = int(app.config.get("STRIPE_MAX_NETWORK_RETRIES", 2))
    stripe.default_http_client = stripe.RequestsClient(
        timeout=float(app.config.get("STRIPE_TIMEOUT_SECONDS", 10))
    )


def _as_dict(obj) -> dict:
    if obj is None:
        return {}
    if isinstance(obj, stripe.StripeObject):
        return json.loads(str(obj))
    return dict(obj)


def _call(description: str, func, *args, **kwargs) -> dict:
    if not current_app.config.get("STRIPE_SECRET_KEY"):
        raise UpstreamFailure("Stripe is not configured")
    try:
        return _as_dict(func(*args, **kwargs))
    except stripe.StripeError as exc:
        current_app.logger.error("Stripe %s failed: %s", description, exc)
        raise UpstreamFailure(f"Stripe {description} failed") from exc


def create_payment_intent(*, amount: int, currency: str, metadata: dict, receipt_email: str | None = None) -> dict:
    params = {
        "amount": amount,
        "currency": currency,
        "payment_method_types": ["card"],
        "metadata": metadata,
    }
    if receipt_email:
        params["receipt_email"] = receipt_email
    return _call("payment intent create", stripe.PaymentIntent.create, **params)


def retrieve_payment_intent(intent_id: str) -> dict:
    return _call(
        "payment intent retrieve",
        stripe.PaymentIntent.retrieve,
        intent_id,
        expand=["latest_charge"],
    )


def list_payment_intents(*, created_gte: int, max_results: int = 100) -> list[dict]:
    if not current_app.config.get("STRIPE_SECRET_KEY"):
        raise UpstreamFailure("Stripe is not configured")
    try:
        page = stripe.PaymentIntent.list(limit=min(max_results, 100), created={"gte": created_gte})
        results = []
        for intent in page.auto_paging_iter():
            results.append(_as_dict(intent))
            if len(results) >= max_results:
                break
        return results
    except stripe.StripeError as exc:
        current_app.logger.error("Stripe payment intent list failed: %s", exc)
        raise UpstreamFailure("Stripe payment intent list failed") from exc


def retrieve_charge(charge_id: str) -> dict:
    return _call("charge retrieve", stripe.Charge.retrieve, charge_id)


def create_refund(*, payment_intent_id: str, amount: int, reason: str = "requested_by_customer") -> dict:
    return _call(
        "refund create",
        stripe.Refund.create,
        payment_intent=payment_intent_id,
        amount=amount,
        reason=reason,
    )


def verify_webhook_signature(payload: str, signature_header: str, secret: str) -> None:
    """Raises stripe.SignatureVerificationError on mismatch or stale timestamp."""
    stripe.WebhookSignature.verify_header(
        payload, signature_header, secret, tolerance=stripe.Webhook.DEFAULT_TOLERANCE
    )

# Overview: Service-layer operations turning confirmed Stripe payments into local orders.

"""
Payment Reconciliation Service

WHY: Stripe confirms payments asynchronously. The browser completes the
PaymentIntent directly with Stripe, and Stripe later notifies us through a
signed webhook. Orders are written here and only here, once per intent.

FLOW (per payment intent id):
    Created (at Stripe) -> awaiting notification -> Reconciled

Reconciled is reached either by the webhook (reconcile_notification) or by
an operator (recover_missing) when the webhook never arrived. Both paths go
through materialize(), so the end state is identical whichever runs first
and however many times each runs.

IDEMPOTENCE:
- A Payment row already present for the intent means it was reconciled;
  every later success notification for it is a duplicate and mutates nothing.
- Concurrent writers race on the unique payments.stripe_payment_intent_id
  (and orders.stripe_payment_intent_id) constraint; the loser's
  IntegrityError is converted to the duplicate outcome.
- Order, items and Payment are committed in a single transaction. A failure
  part-way rolls back everything.
"""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field
from datetime import timedelta

import stripe
from flask import current_app
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import Order, OrderItem, Payment, ProcessorEvent
from ..time_utils import utcnow, from_unix, to_utc_z
from . import stripe_gateway
from .auth_service import get_user_by_email
from .concurrency import run_with_retry
from .order_service import ORDER_STATUS_PAID, ORDER_STATUS_CANCELLED, get_order_by_intent
from .payment_service import (
    PAYMENT_STATUS_SUCCEEDED,
    PAYMENT_STATUS_DISPUTED,
    apply_refunded_total,
    get_payment_by_intent,
)
from .stripe_gateway import UpstreamFailure


OUTCOME_CREATED = "created"
OUTCOME_DUPLICATE = "duplicate"
OUTCOME_UPDATED = "updated"
OUTCOME_IGNORED = "ignored"
OUTCOME_REJECTED = "rejected"

EVENT_INTENT_SUCCEEDED = "payment_intent.succeeded"
EVENT_INTENT_FAILED = "payment_intent.payment_failed"
EVENT_INTENT_CANCELED = "payment_intent.canceled"
EVENT_DISPUTE_CREATED = "charge.dispute.created"
EVENT_CHARGE_REFUNDED = "charge.refunded"
EVENT_MANUAL_RECOVERY = "manual.recover_missing"

INCOMPLETE_INTENT_STATUSES = {
    "requires_payment_method",
    "requires_confirmation",
    "requires_action",
    "processing",
    "canceled",
}


class ReconciliationError(Exception):
    """Base class for reconciliation failures."""


class InvalidSignature(ReconciliationError):
    """Webhook signature missing, wrong, stale, or no secret configured."""


class MalformedNotification(ReconciliationError):
    """Verified payload does not have the shape we can reconcile."""


class IntentNotSucceeded(ReconciliationError):
    """Recovery requested for an intent Stripe has not marked succeeded."""

    def __init__(self, intent_id: str, status: str | None):
        super().__init__(f"Payment status is {status}, not succeeded")
        self.intent_id = intent_id
        self.status = status


@dataclass
class ReconcileResult:
    event_id: str | None
    event_type: str
    outcome: str
    payment_intent_id: str | None = None
    order_id: int | None = None
    detail: str | None = None

    def to_dict(self) -> dict:
        return {
            "event_id": self.event_id,
            "event_type": self.event_type,
            "outcome": self.outcome,
            "payment_intent_id": self.payment_intent_id,
            "order_id": self.order_id,
            "detail": self.detail,
        }


@dataclass
class IntentSnapshot:
    """Order data recovered from a PaymentIntent and its metadata."""
    intent_id: str
    currency: str
    total_cents: int
    subtotal_cents: int
    tax_cents: int
    shipping_cents: int
    discount_cents: int
    customer_name: str | None
    customer_email: str | None
    customer_phone: str | None
    shipping_city: str | None
    shipping_address: str | None
    items: list[dict] = field(default_factory=list)


# =============================================================================
# WEBHOOK ENTRY POINT
# =============================================================================

def reconcile_notification(payload, signature_header: str | None) -> ReconcileResult:
    """
    Verify and apply one Stripe webhook delivery.

    Raises:
        InvalidSignature: before any parsing or database access
        MalformedNotification: verified but unusable payload (logged, recorded)
    """
    secret = current_app.config.get("STRIPE_WEBHOOK_SECRET")
    if not secret:
        current_app.logger.error("STRIPE_WEBHOOK_SECRET is not configured; rejecting webhook")
        raise InvalidSignature("Webhook secret not configured")
    if not signature_header:
        raise InvalidSignature("Missing stripe-signature header")

    try:
        text = payload.decode("utf-8") if isinstance(payload, (bytes, bytearray)) else str(payload)
        stripe_gateway.verify_webhook_signature(text, signature_header, secret)
    except (UnicodeDecodeError, stripe.SignatureVerificationError) as exc:
        current_app.logger.warning("Webhook signature verification failed: %s", exc)
        raise InvalidSignature("Webhook signature verification failed") from exc

    try:
        event = _parse_event(text)
    except MalformedNotification as exc:
        current_app.logger.warning("Malformed webhook payload: %s (payload prefix: %r)", exc, text[:500])
        raise

    event_id = event["id"]
    event_type = event["type"]
    obj = event["data"]["object"]

    recorded = db.session.query(ProcessorEvent).filter_by(stripe_event_id=event_id).first()
    if recorded is not None and recorded.outcome != OUTCOME_REJECTED:
        order = get_order_by_intent(recorded.payment_intent_id) if recorded.payment_intent_id else None
        current_app.logger.info("Webhook event %s already processed (%s)", event_id, recorded.outcome)
        return ReconcileResult(
            event_id=event_id,
            event_type=event_type,
            outcome=OUTCOME_DUPLICATE,
            payment_intent_id=recorded.payment_intent_id,
            order_id=order.id if order else None,
        )

    handler = EVENT_HANDLERS.get(event_type, _handle_unhandled)
    try:
        result = handler(obj)
    except MalformedNotification as exc:
        current_app.logger.error(
            "Malformed %s notification %s: %s (payload prefix: %r)",
            event_type, event_id, exc, text[:500],
        )
        _record_event(event_id, event_type, obj.get("id"), OUTCOME_REJECTED, str(exc))
        raise

    result.event_id = event_id
    result.event_type = event_type
    _record_event(event_id, event_type, result.payment_intent_id, result.outcome, result.detail)

    current_app.logger.info(
        "Webhook %s (%s) for intent %s: %s",
        event_id, event_type, result.payment_intent_id, result.outcome,
    )
    return result


def _parse_event(text: str) -> dict:
    try:
        event = json.loads(text)
    except ValueError as exc:
        raise MalformedNotification("Payload is not valid JSON") from exc

    if not isinstance(event, dict):
        raise MalformedNotification("Event must be a JSON object")
    if not isinstance(event.get("id"), str) or not event["id"]:
        raise MalformedNotification("Event is missing an id")
    if not isinstance(event.get("type"), str) or not event["type"]:
        raise MalformedNotification("Event is missing a type")
    data = event.get("data")
    if not isinstance(data, dict) or not isinstance(data.get("object"), dict):
        raise MalformedNotification("Event is missing data.object")
    return event


def _record_event(event_id: str, event_type: str, intent_id, outcome: str, detail: str | None) -> None:
    """Upsert the ProcessorEvent row; a rejected row is overwritten by a later attempt."""
    try:
        row = db.session.query(ProcessorEvent).filter_by(stripe_event_id=event_id).first()
        if row is None:
            db.session.add(ProcessorEvent(
                stripe_event_id=event_id,
                event_type=event_type,
                payment_intent_id=intent_id if isinstance(intent_id, str) else None,
                outcome=outcome,
                detail=detail,
                received_at=utcnow(),
            ))
        elif row.outcome == OUTCOME_REJECTED:
            row.outcome = outcome
            row.detail = detail
            row.received_at = utcnow()
        db.session.commit()
    except IntegrityError:
        # Concurrent delivery of the same event recorded it first
        db.session.rollback()


# =============================================================================
# EVENT HANDLERS
# =============================================================================

def _require_intent(obj: dict) -> dict:
    if obj.get("object") != "payment_intent" or not isinstance(obj.get("id"), str):
        raise MalformedNotification("Expected a payment_intent object")
    return obj


def _handle_intent_succeeded(obj: dict) -> ReconcileResult:
    intent = _require_intent(obj)
    return materialize(intent)


def _handle_intent_unsuccessful(obj: dict) -> ReconcileResult:
    """
    Failed or canceled attempt. Orders are only created on success, so there
    is nothing local to change; the attempt is recorded for the audit trail.
    A late failure for an intent that already succeeded is stale and ignored.
    """
    intent = _require_intent(obj)
    error = intent.get("last_payment_error") or {}
    reason = error.get("message") if isinstance(error, dict) else None
    detail = f"status={intent.get('status')}"
    if reason:
        detail += f"; reason={reason}"
    if intent.get("cancellation_reason"):
        detail += f"; cancellation_reason={intent['cancellation_reason']}"

    payment = get_payment_by_intent(intent["id"])
    if payment is not None:
        detail += f"; ignored, payment already {payment.status}"

    return ReconcileResult(
        event_id=None,
        event_type="",
        outcome=OUTCOME_IGNORED,
        payment_intent_id=intent["id"],
        order_id=payment.order_id if payment else None,
        detail=detail,
    )


def _payment_for_charge(charge_id, intent_id) -> Payment | None:
    payment = None
    if isinstance(charge_id, str) and charge_id:
        payment = db.session.query(Payment).filter_by(stripe_charge_id=charge_id).first()
    if payment is None and isinstance(intent_id, str) and intent_id:
        payment = get_payment_by_intent(intent_id)
    return payment


def _handle_dispute_created(obj: dict) -> ReconcileResult:
    if obj.get("object") != "dispute":
        raise MalformedNotification("Expected a dispute object")

    payment = _payment_for_charge(obj.get("charge"), obj.get("payment_intent"))
    if payment is None:
        return ReconcileResult(
            event_id=None, event_type="", outcome=OUTCOME_IGNORED,
            payment_intent_id=obj.get("payment_intent"),
            detail=f"No local payment for charge {obj.get('charge')}",
        )

    if payment.status == PAYMENT_STATUS_DISPUTED:
        outcome = OUTCOME_DUPLICATE
    else:
        payment.status = PAYMENT_STATUS_DISPUTED
        payment.failure_reason = f"Payment disputed ({obj.get('reason') or 'unspecified'})"[:255]
        payment.order.status = ORDER_STATUS_CANCELLED
        db.session.commit()
        outcome = OUTCOME_UPDATED

    return ReconcileResult(
        event_id=None, event_type="", outcome=outcome,
        payment_intent_id=payment.stripe_payment_intent_id,
        order_id=payment.order_id,
    )


def _handle_charge_refunded(obj: dict) -> ReconcileResult:
    if obj.get("object") != "charge":
        raise MalformedNotification("Expected a charge object")
    amount_refunded = obj.get("amount_refunded")
    if not isinstance(amount_refunded, int) or isinstance(amount_refunded, bool):
        raise MalformedNotification("charge.amount_refunded must be an integer")

    payment = _payment_for_charge(obj.get("id"), obj.get("payment_intent"))
    if payment is None:
        return ReconcileResult(
            event_id=None, event_type="", outcome=OUTCOME_IGNORED,
            payment_intent_id=obj.get("payment_intent"),
            detail=f"No local payment for charge {obj.get('id')}",
        )

    if min(amount_refunded, payment.amount_cents) <= payment.refunded_cents:
        outcome = OUTCOME_DUPLICATE
    else:
        apply_refunded_total(payment, amount_refunded)
        db.session.commit()
        outcome = OUTCOME_UPDATED

    return ReconcileResult(
        event_id=None, event_type="", outcome=outcome,
        payment_intent_id=payment.stripe_payment_intent_id,
        order_id=payment.order_id,
    )


def _handle_unhandled(obj: dict) -> ReconcileResult:
    intent_id = obj.get("id") if obj.get("object") == "payment_intent" else obj.get("payment_intent")
    return ReconcileResult(
        event_id=None, event_type="", outcome=OUTCOME_IGNORED,
        payment_intent_id=intent_id if isinstance(intent_id, str) else None,
        detail="Unhandled event type",
    )


EVENT_HANDLERS = {
    EVENT_INTENT_SUCCEEDED: _handle_intent_succeeded,
    EVENT_INTENT_FAILED: _handle_intent_unsuccessful,
    EVENT_INTENT_CANCELED: _handle_intent_unsuccessful,
    EVENT_DISPUTE_CREATED: _handle_dispute_created,
    EVENT_CHARGE_REFUNDED: _handle_charge_refunded,
}


# =============================================================================
# ORDER CONSTRUCTION (shared by webhook and recovery)
# =============================================================================

def _meta_int(metadata: dict, key: str, default: int = 0) -> int:
    raw = metadata.get(key)
    if raw in (None, ""):
        return default
    try:
        value = int(str(raw).strip())
    except ValueError:
        raise MalformedNotification(f"metadata.{key} is not an integer: {raw!r}")
    if value < 0:
        raise MalformedNotification(f"metadata.{key} is negative")
    return value


def _meta_text(metadata: dict, key: str) -> str | None:
    value = metadata.get(key)
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def _parse_items(raw) -> list[dict]:
    if raw in (None, ""):
        return []
    try:
        items = json.loads(raw)
    except (TypeError, ValueError):
        raise MalformedNotification("metadata.order_items is not valid JSON")
    if not isinstance(items, list):
        raise MalformedNotification("metadata.order_items must be a list")

    parsed = []
    for index, item in enumerate(items):
        if not isinstance(item, dict):
            raise MalformedNotification(f"order_items[{index}] must be an object")
        quantity, price = item.get("q"), item.get("p")
        if not isinstance(quantity, int) or isinstance(quantity, bool) or quantity < 1:
            raise MalformedNotification(f"order_items[{index}].q must be a positive integer")
        if not isinstance(price, int) or isinstance(price, bool) or price < 0:
            raise MalformedNotification(f"order_items[{index}].p must be a non-negative integer")
        parsed.append({
            "product_id": item.get("i"),
            "variation_id": item.get("v"),
            "name": item.get("n"),
            "quantity": quantity,
            "unit_price_cents": price,
        })
    return parsed


def parse_intent_snapshot(intent: dict) -> IntentSnapshot:
    """
    Rebuild order data from a PaymentIntent.

    The amount Stripe actually collected is authoritative for the order total;
    metadata supplies the breakdown, customer, shipping and items.
    """
    intent_id = intent.get("id")
    if not isinstance(intent_id, str) or not intent_id:
        raise MalformedNotification("Payment intent has no id")

    metadata = intent.get("metadata") or {}
    if not isinstance(metadata, dict):
        raise MalformedNotification("Payment intent metadata must be an object")

    amount = intent.get("amount_received") or intent.get("amount")
    if not isinstance(amount, int) or isinstance(amount, bool) or amount <= 0:
        raise MalformedNotification("Payment intent has no positive amount")

    expected_total = _meta_int(metadata, "total_cents", default=amount)
    if expected_total != amount:
        current_app.logger.warning(
            "Intent %s collected %s but checkout recorded total %s", intent_id, amount, expected_total
        )

    currency = (intent.get("currency") or current_app.config.get("DEFAULT_CURRENCY", "aed")).lower()
    email = _meta_text(metadata, "customer_email") or intent.get("receipt_email")

    return IntentSnapshot(
        intent_id=intent_id,
        currency=currency,
        total_cents=amount,
        subtotal_cents=_meta_int(metadata, "subtotal_cents", default=amount),
        tax_cents=_meta_int(metadata, "tax_cents"),
        shipping_cents=_meta_int(metadata, "shipping_cents"),
        discount_cents=_meta_int(metadata, "discount_cents"),
        customer_name=_meta_text(metadata, "customer_name"),
        customer_email=email.lower() if email else None,
        customer_phone=_meta_text(metadata, "customer_phone"),
        shipping_city=_meta_text(metadata, "shipping_city"),
        shipping_address=_meta_text(metadata, "shipping_address"),
        items=_parse_items(metadata.get("order_items")),
    )


def _charge_details(intent: dict) -> dict:
    """
    Card details from the intent's latest charge.

    A charge id that cannot be fetched is not fatal: the order is still
    created, just without brand/last4/receipt.
    """
    charge = intent.get("latest_charge")
    if isinstance(charge, str):
        charge_id = charge
        try:
            charge = stripe_gateway.retrieve_charge(charge_id)
        except UpstreamFailure:
            current_app.logger.warning("Could not fetch charge %s for intent %s", charge_id, intent.get("id"))
            return {"charge_id": charge_id}
    if not isinstance(charge, dict):
        return {}

    method_details = charge.get("payment_method_details") or {}
    card = method_details.get("card") or {}
    return {
        "charge_id": charge.get("id"),
        "method": method_details.get("type") or "card",
        "brand": card.get("brand"),
        "last4": card.get("last4"),
        "receipt_url": charge.get("receipt_url"),
    }


def _existing_result(intent_id: str) -> ReconcileResult | None:
    # Every stored payment status is post-success, so any row means reconciled.
    payment = get_payment_by_intent(intent_id)
    if payment is not None:
        return ReconcileResult(
            event_id=None, event_type="", outcome=OUTCOME_DUPLICATE,
            payment_intent_id=intent_id, order_id=payment.order_id,
        )
    return None


def _create_records(snapshot: IntentSnapshot, charge: dict) -> ReconcileResult:
    user = get_user_by_email(snapshot.customer_email) if snapshot.customer_email else None

    order = Order(
        user_id=user.id if user else None,
        customer_name=snapshot.customer_name,
        customer_email=snapshot.customer_email,
        customer_phone=snapshot.customer_phone,
        shipping_city=snapshot.shipping_city,
        shipping_address=snapshot.shipping_address,
        subtotal_cents=snapshot.subtotal_cents,
        tax_cents=snapshot.tax_cents,
        shipping_cents=snapshot.shipping_cents,
        discount_cents=snapshot.discount_cents,
        total_cents=snapshot.total_cents,
        currency=snapshot.currency,
        status=ORDER_STATUS_PAID,
        stripe_payment_intent_id=snapshot.intent_id,
    )

    try:
        db.session.add(order)
        db.session.flush()  # Get order ID

        for item in snapshot.items:
            db.session.add(OrderItem(
                order_id=order.id,
                product_id=item["product_id"],
                variation_id=item["variation_id"],
                name=item["name"],
                quantity=item["quantity"],
                unit_price_cents=item["unit_price_cents"],
                line_total_cents=item["unit_price_cents"] * item["quantity"],
            ))

        db.session.add(Payment(
            order_id=order.id,
            user_id=order.user_id,
            stripe_payment_intent_id=snapshot.intent_id,
            stripe_charge_id=charge.get("charge_id"),
            amount_cents=snapshot.total_cents,
            refunded_cents=0,
            currency=snapshot.currency,
            status=PAYMENT_STATUS_SUCCEEDED,
            method=charge.get("method") or "card",
            brand=charge.get("brand"),
            last4=charge.get("last4"),
            receipt_url=charge.get("receipt_url"),
        ))

        db.session.commit()
    except IntegrityError:
        # Another writer reconciled this intent between our check and commit
        db.session.rollback()
        existing = _existing_result(snapshot.intent_id)
        if existing is None:
            raise
        return existing
    except Exception:
        db.session.rollback()
        raise

    return ReconcileResult(
        event_id=None, event_type="", outcome=OUTCOME_CREATED,
        payment_intent_id=snapshot.intent_id, order_id=order.id,
    )


def materialize(intent: dict) -> ReconcileResult:
    """
    Create the Order + Payment pair for a succeeded intent exactly once.

    Returns outcome "created" the first time and "duplicate" afterwards.
    Raises MalformedNotification when the intent cannot be turned into an order.
    """
    intent_id = intent.get("id")
    existing = _existing_result(intent_id) if isinstance(intent_id, str) else None
    if existing is not None:
        return existing

    snapshot = parse_intent_snapshot(intent)
    charge = _charge_details(intent)

    result = run_with_retry(lambda: _create_records(snapshot, charge))
    if result.outcome == OUTCOME_CREATED:
        current_app.logger.info(
            "Reconciled intent %s into order %s (%s %s)",
            snapshot.intent_id, result.order_id, snapshot.total_cents, snapshot.currency,
        )
    return result


# =============================================================================
# OPERATOR RECOVERY
# =============================================================================

def recover_missing(intent_id: str) -> ReconcileResult:
    """
    Rebuild the order for an intent that succeeded upstream but whose webhook
    never arrived. Safe to run any number of times, before or after the
    webhook.

    Raises:
        IntentNotSucceeded: Stripe reports any status other than succeeded
        UpstreamFailure: Stripe unreachable
        MalformedNotification: intent metadata cannot be turned into an order
    """
    intent = stripe_gateway.retrieve_payment_intent(intent_id)
    status = intent.get("status")
    if status != "succeeded":
        raise IntentNotSucceeded(intent_id, status)

    current_app.logger.info("Manual recovery requested for intent %s", intent_id)
    result = materialize(intent)
    result.event_type = EVENT_MANUAL_RECOVERY
    result.event_id = f"recovery_{uuid.uuid4().hex}"
    _record_event(result.event_id, EVENT_MANUAL_RECOVERY, intent_id, result.outcome, result.detail)
    return result


def _intent_summary(intent: dict) -> dict:
    currency = intent.get("currency") or ""
    metadata = intent.get("metadata") or {}
    return {
        "id": intent.get("id"),
        "status": intent.get("status"),
        "amount_cents": intent.get("amount"),
        "currency": currency,
        "created": to_utc_z(from_unix(intent.get("created"))),
        "metadata": metadata,
        "customer": {
            "email": metadata.get("customer_email") or intent.get("receipt_email"),
            "name": metadata.get("customer_name"),
            "phone": metadata.get("customer_phone"),
        },
    }


def inspect_intent(intent_id: str) -> dict:
    """Side-by-side view of the intent at Stripe and what we hold locally."""
    intent = stripe_gateway.retrieve_payment_intent(intent_id)
    order = get_order_by_intent(intent_id)
    payment = get_payment_by_intent(intent_id)
    return {
        "stripe": _intent_summary(intent),
        "database": {
            "order_exists": order is not None,
            "payment_exists": payment is not None,
            "order": order.to_dict() if order else None,
            "payment": payment.to_dict() if payment else None,
        },
    }


def list_incomplete_intents(days: int = 7) -> dict:
    """
    Recent intents needing attention: unfinished attempts, plus succeeded
    intents that have no local order (lost webhook, candidates for recovery).
    """
    since = utcnow() - timedelta(days=days)
    created_gte = int((since - from_unix(0)).total_seconds())
    intents = stripe_gateway.list_payment_intents(created_gte=created_gte)

    candidates = [
        i for i in intents
        if i.get("status") in INCOMPLETE_INTENT_STATUSES or i.get("status") == "succeeded"
    ]
    ids = [i["id"] for i in candidates if i.get("id")]
    with_orders = {
        row[0]
        for row in db.session.query(Order.stripe_payment_intent_id)
        .filter(Order.stripe_payment_intent_id.in_(ids))
        .all()
    } if ids else set()

    results = []
    for intent in candidates:
        has_order = intent.get("id") in with_orders
        if intent.get("status") == "succeeded" and has_order:
            continue
        entry = _intent_summary(intent)
        entry["has_order"] = has_order
        entry["missing_order"] = intent.get("status") == "succeeded" and not has_order
        results.append(entry)

    by_status: dict[str, int] = {}
    for entry in results:
        by_status[entry["status"]] = by_status.get(entry["status"], 0) + 1

    return {
        "intents": results,
        "summary": {
            "total": len(results),
            "without_orders": sum(1 for e in results if not e["has_order"]),
            "missing_orders": sum(1 for e in results if e["missing_order"]),
            "by_status": by_status,
        },
    }

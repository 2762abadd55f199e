# Overview: Service-layer operations for payments; checkout intents, refunds and reporting.

"""
Payment Processing Service

WHY: Checkout is paid by card through Stripe. The storefront first asks for a
PaymentIntent, the browser confirms it directly with Stripe, and the order is
only written once Stripe confirms success (see reconciliation_service.py).

DESIGN PRINCIPLES:
- create_intent never writes to the database; an abandoned checkout leaves
  nothing behind locally
- The intent carries a metadata snapshot of customer, shipping and items so
  the order can be rebuilt from Stripe alone
- All amounts are integer minor units (fils for AED, cents for USD)
"""

from __future__ import annotations

import json

from ..extensions import db
from ..models import Order, Payment
from ..validation import (
    MAX_AMOUNT_CENTS,
    NotFoundError,
    ValidationError,
    coerce_int,
    optional_cents,
)
from . import stripe_gateway
from .order_service import ORDER_STATUS_REFUNDED


class PaymentError(Exception):
    """Raised for payment operation errors."""
    pass


class InvalidAmount(PaymentError):
    """Amount missing, non-integer or not positive."""


class RefundError(PaymentError):
    """Refund request is not valid for this payment."""


# =============================================================================
# PAYMENT STATUS (CONSTANTS)
# =============================================================================

PAYMENT_STATUS_SUCCEEDED = "succeeded"
PAYMENT_STATUS_PARTIALLY_REFUNDED = "partially_refunded"
PAYMENT_STATUS_REFUNDED = "refunded"
PAYMENT_STATUS_DISPUTED = "disputed"

VALID_PAYMENT_STATUSES = [
    PAYMENT_STATUS_SUCCEEDED,
    PAYMENT_STATUS_PARTIALLY_REFUNDED,
    PAYMENT_STATUS_REFUNDED,
    PAYMENT_STATUS_DISPUTED,
]


# =============================================================================
# CHECKOUT INTENT
# =============================================================================

# Stripe limits: 50 keys, 500 characters per value
METADATA_VALUE_LIMIT = 500
ITEM_NAME_LIMIT = 40


def _meta_str(value) -> str:
    if value is None:
        return ""
    return str(value).strip()[:METADATA_VALUE_LIMIT]


def _normalize_items(items) -> list[dict]:
    if items is None:
        return []
    if not isinstance(items, list):
        raise ValidationError("items must be a list")

    normalized = []
    for index, item in enumerate(items):
        if not isinstance(item, dict):
            raise ValidationError(f"items[{index}] must be an object")
        product_id = item.get("productId") or item.get("product_id") or item.get("id")
        quantity = coerce_int(item.get("quantity", 1), f"items[{index}].quantity")
        if quantity < 1:
            raise ValidationError(f"items[{index}].quantity must be >= 1")
        price = coerce_int(item.get("price", 0), f"items[{index}].price")
        if price < 0:
            raise ValidationError(f"items[{index}].price must be >= 0")
        normalized.append({
            "i": str(product_id) if product_id is not None else None,
            "v": str(item["variationId"]) if item.get("variationId") else None,
            "n": _meta_str(item.get("name"))[:ITEM_NAME_LIMIT] or None,
            "p": price,
            "q": quantity,
        })
    return normalized


def encode_order_items(items: list[dict]) -> tuple[str, bool]:
    """
    Compact JSON for the order_items metadata value.

    Trailing items are dropped until the value fits the Stripe limit, so the
    stored JSON always parses. Returns (json, truncated).
    """
    kept = list(items)
    while True:
        encoded = json.dumps(kept, separators=(",", ":"))
        if len(encoded) <= METADATA_VALUE_LIMIT:
            return encoded, len(kept) < len(items)
        kept.pop()


def build_intent_metadata(
    *,
    amount_cents: int,
    customer_info: dict,
    shipping_info: dict,
    items: list[dict],
    breakdown: dict,
) -> dict:
    order_items, truncated = encode_order_items(items)
    metadata = {
        "customer_name": _meta_str(customer_info.get("fullName") or customer_info.get("name")),
        "customer_email": _meta_str(customer_info.get("email")).lower(),
        "customer_phone": _meta_str(customer_info.get("phone")),
        "shipping_city": _meta_str(shipping_info.get("city")),
        "shipping_address": _meta_str(shipping_info.get("address")),
        "items_count": str(len(items)),
        "order_items": order_items,
        "subtotal_cents": str(breakdown.get("subtotal_cents") if breakdown.get("subtotal_cents") is not None else amount_cents),
        "tax_cents": str(breakdown.get("tax_cents") or 0),
        "shipping_cents": str(breakdown.get("shipping_cents") or 0),
        "discount_cents": str(breakdown.get("discount_cents") or 0),
        "total_cents": str(amount_cents),
    }
    if truncated:
        metadata["items_truncated"] = "1"
    return metadata


def validate_amount(amount) -> int:
    if amount is None or amount == "":
        raise InvalidAmount("Invalid amount")
    try:
        amount_cents = coerce_int(amount, "amount")
    except ValidationError as exc:
        raise InvalidAmount(str(exc))
    if amount_cents <= 0:
        raise InvalidAmount("Invalid amount")
    if amount_cents > MAX_AMOUNT_CENTS:
        raise InvalidAmount(f"amount cannot exceed {MAX_AMOUNT_CENTS}")
    return amount_cents


def create_intent(
    amount,
    currency: str,
    customer_info: dict | None = None,
    shipping_info: dict | None = None,
    items: list | None = None,
    breakdown: dict | None = None,
) -> dict:
    """
    Create a Stripe PaymentIntent for a checkout attempt.

    Args:
        amount: total to charge, in minor units (4999 == 49.99 AED)
        currency: lower-case ISO code
        customer_info: {fullName, email, phone}
        shipping_info: {city, address}
        items: [{productId, variationId, name, price, quantity}], price in minor units
        breakdown: optional {subtotal_cents, tax_cents, shipping_cents, discount_cents}

    Returns:
        {"client_secret": ..., "intent_id": ...}

    Raises:
        InvalidAmount: amount <= 0 (no upstream call is made)
        ValidationError: malformed items / breakdown
        UpstreamFailure: Stripe error
    """
    amount_cents = validate_amount(amount)

    customer_info = customer_info if isinstance(customer_info, dict) else {}
    shipping_info = shipping_info if isinstance(shipping_info, dict) else {}
    breakdown = dict(breakdown or {})
    for key in ("subtotal_cents", "tax_cents", "shipping_cents", "discount_cents"):
        breakdown[key] = optional_cents(breakdown, key)

    metadata = build_intent_metadata(
        amount_cents=amount_cents,
        customer_info=customer_info,
        shipping_info=shipping_info,
        items=_normalize_items(items),
        breakdown=breakdown,
    )

    intent = stripe_gateway.create_payment_intent(
        amount=amount_cents,
        currency=currency,
        metadata=metadata,
        receipt_email=metadata["customer_email"] or None,
    )
    return {"client_secret": intent.get("client_secret"), "intent_id": intent.get("id")}


# =============================================================================
# PAYMENT QUERIES
# =============================================================================

def get_payment(payment_id: int) -> Payment:
    payment = db.session.get(Payment, payment_id)
    if not payment:
        raise NotFoundError("Payment not found")
    return payment


def get_payment_by_intent(intent_id: str) -> Payment | None:
    return db.session.query(Payment).filter_by(stripe_payment_intent_id=intent_id).first()


def list_payments(
    *,
    page: int = 1,
    limit: int = 20,
    status: str | None = None,
    search: str | None = None,
) -> tuple[list[Payment], int]:
    query = db.session.query(Payment).join(Order, Payment.order_id == Order.id)

    if status and status != "ALL":
        if status not in VALID_PAYMENT_STATUSES:
            raise ValidationError(f"Invalid status: {status}")
        query = query.filter(Payment.status == status)

    if search:
        like = f"%{search.strip()}%"
        query = query.filter(
            db.or_(
                Payment.stripe_payment_intent_id.ilike(like),
                Payment.stripe_charge_id.ilike(like),
                Order.customer_name.ilike(like),
                Order.customer_email.ilike(like),
            )
        )

    total = query.count()
    payments = (
        query.order_by(Payment.created_at.desc(), Payment.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )
    return payments, total


def payment_stats() -> dict:
    counts = dict(
        db.session.query(Payment.status, db.func.count(Payment.id))
        .group_by(Payment.status)
        .all()
    )
    revenue = db.session.query(db.func.coalesce(db.func.sum(Payment.amount_cents), 0)).scalar()
    refunded = db.session.query(db.func.coalesce(db.func.sum(Payment.refunded_cents), 0)).scalar()
    return {
        "total_payments": sum(counts.values()),
        "by_status": counts,
        "gross_revenue_cents": int(revenue or 0),
        "refunded_cents": int(refunded or 0),
        "net_revenue_cents": int(revenue or 0) - int(refunded or 0),
    }


# =============================================================================
# REFUNDS
# =============================================================================

def apply_refunded_total(payment: Payment, refunded_cents: int) -> Payment:
    """
    Record the cumulative refunded amount and move payment/order status.

    The refunded total only grows. A disputed payment keeps its status and its
    cancelled order. Does not commit; callers own the transaction.
    """
    capped = min(int(refunded_cents), payment.amount_cents)
    payment.refunded_cents = max(payment.refunded_cents or 0, capped)
    if payment.status == PAYMENT_STATUS_DISPUTED:
        return payment
    if payment.refunded_cents >= payment.amount_cents:
        payment.status = PAYMENT_STATUS_REFUNDED
        if payment.order is not None:
            payment.order.status = ORDER_STATUS_REFUNDED
    elif payment.refunded_cents > 0:
        payment.status = PAYMENT_STATUS_PARTIALLY_REFUNDED
    return payment


def refund_payment(payment_id: int, amount) -> tuple[Payment, dict]:
    """
    Refund part or all of a succeeded payment through Stripe.

    Raises:
        InvalidAmount: amount <= 0
        RefundError: payment not refundable or amount exceeds what remains
        UpstreamFailure: Stripe error
    """
    amount_cents = validate_amount(amount)
    payment = get_payment(payment_id)

    if payment.status not in (PAYMENT_STATUS_SUCCEEDED, PAYMENT_STATUS_PARTIALLY_REFUNDED):
        raise RefundError(f"Cannot refund a payment with status {payment.status}")

    remaining = payment.amount_cents - payment.refunded_cents
    if amount_cents > remaining:
        raise RefundError("Refund amount exceeds available amount")

    refund = stripe_gateway.create_refund(
        payment_intent_id=payment.stripe_payment_intent_id,
        amount=amount_cents,
    )

    apply_refunded_total(payment, payment.refunded_cents + amount_cents)
    db.session.commit()
    return payment, {
        "id": refund.get("id"),
        "amount_cents": amount_cents,
        "status": refund.get("status") or "pending",
    }

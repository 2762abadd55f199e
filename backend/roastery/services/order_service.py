# Overview: Service-layer operations for orders; listing, lookup and status transitions.

from __future__ import annotations

from ..extensions import db
from ..models import Order, Payment
from ..validation import NotFoundError, ValidationError


ORDER_STATUS_PENDING = "PENDING"
ORDER_STATUS_PAID = "PAID"
ORDER_STATUS_PROCESSING = "PROCESSING"
ORDER_STATUS_SHIPPED = "SHIPPED"
ORDER_STATUS_DELIVERED = "DELIVERED"
ORDER_STATUS_CANCELLED = "CANCELLED"
ORDER_STATUS_REFUNDED = "REFUNDED"

VALID_ORDER_STATUSES = [
    ORDER_STATUS_PENDING,
    ORDER_STATUS_PAID,
    ORDER_STATUS_PROCESSING,
    ORDER_STATUS_SHIPPED,
    ORDER_STATUS_DELIVERED,
    ORDER_STATUS_CANCELLED,
    ORDER_STATUS_REFUNDED,
]

# Allowed manual transitions (admin action). Payment-driven moves (PAID,
# REFUNDED after a processor refund, CANCELLED after a dispute) are applied
# by the payment services directly.
ORDER_TRANSITIONS = {
    ORDER_STATUS_PENDING: {ORDER_STATUS_PAID, ORDER_STATUS_CANCELLED},
    ORDER_STATUS_PAID: {ORDER_STATUS_PROCESSING, ORDER_STATUS_SHIPPED, ORDER_STATUS_CANCELLED, ORDER_STATUS_REFUNDED},
    ORDER_STATUS_PROCESSING: {ORDER_STATUS_SHIPPED, ORDER_STATUS_CANCELLED},
    ORDER_STATUS_SHIPPED: {ORDER_STATUS_DELIVERED},
    ORDER_STATUS_DELIVERED: {ORDER_STATUS_REFUNDED},
    ORDER_STATUS_CANCELLED: set(),
    ORDER_STATUS_REFUNDED: set(),
}


class InvalidTransition(ValueError):
    """Requested order status change is not allowed from the current status."""


def get_order(order_id: int) -> Order:
    order = db.session.get(Order, order_id)
    if not order:
        raise NotFoundError("Order not found")
    return order


def get_order_by_intent(intent_id: str) -> Order | None:
    return db.session.query(Order).filter_by(stripe_payment_intent_id=intent_id).first()


def list_orders(
    *,
    page: int = 1,
    limit: int = 20,
    status: str | None = None,
    search: str | None = None,
    user_id: int | None = None,
) -> tuple[list[Order], int]:
    """
    Paginated order listing, newest first.

    search matches customer name, customer email or the payment intent id.
    """
    query = db.session.query(Order)

    if status and status != "ALL":
        if status not in VALID_ORDER_STATUSES:
            raise ValidationError(f"Invalid status: {status}")
        query = query.filter(Order.status == status)

    if user_id is not None:
        query = query.filter(Order.user_id == user_id)

    if search:
        like = f"%{search.strip()}%"
        query = query.filter(
            db.or_(
                Order.customer_name.ilike(like),
                Order.customer_email.ilike(like),
                Order.stripe_payment_intent_id.ilike(like),
            )
        )

    total = query.count()
    orders = (
        query.order_by(Order.created_at.desc(), Order.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )
    return orders, total


def update_status(order_id: int, new_status: str) -> Order:
    """
    Apply an administrative status change.

    Raises:
        ValidationError: unknown status
        NotFoundError: order missing
        InvalidTransition: move not allowed from the current status
    """
    if new_status not in VALID_ORDER_STATUSES:
        raise ValidationError(f"Invalid status: {new_status}. Must be one of {VALID_ORDER_STATUSES}")

    order = get_order(order_id)
    if new_status == order.status:
        return order

    if new_status not in ORDER_TRANSITIONS.get(order.status, set()):
        raise InvalidTransition(f"Cannot change order from {order.status} to {new_status}")

    order.status = new_status
    db.session.commit()
    return order


def order_detail(order: Order) -> dict:
    data = order.to_dict(include_items=True)
    payment = db.session.query(Payment).filter_by(order_id=order.id).first()
    data["payment"] = payment.to_dict() if payment else None
    return data

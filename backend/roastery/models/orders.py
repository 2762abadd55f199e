from __future__ import annotations

from ..extensions import db
from ..money import format_minor_units, from_minor_units
from ..time_utils import to_utc_z, utcnow


class Order(db.Model):
    """
    Customer order, created only once a payment is confirmed.

    WHY: The storefront never writes an order at checkout time. Orders are
    materialized from the payment intent's metadata snapshot when Stripe
    reports success (webhook or operator recovery), so an abandoned checkout
    leaves nothing behind.

    stripe_payment_intent_id is unique: one order per completed payment.
    user_id is nullable for guest checkout.
    """
    __tablename__ = "orders"
    __table_args__ = (
        db.Index("ix_orders_status_created", "status", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True, index=True)

    # Customer / shipping snapshot taken at checkout
    customer_name = db.Column(db.String(120), nullable=True)
    customer_email = db.Column(db.String(255), nullable=True, index=True)
    customer_phone = db.Column(db.String(32), nullable=True)
    shipping_city = db.Column(db.String(120), nullable=True)
    shipping_address = db.Column(db.String(500), nullable=True)

    # Amounts in minor units
    subtotal_cents = db.Column(db.Integer, nullable=False, default=0)
    tax_cents = db.Column(db.Integer, nullable=False, default=0)
    shipping_cents = db.Column(db.Integer, nullable=False, default=0)
    discount_cents = db.Column(db.Integer, nullable=False, default=0)
    total_cents = db.Column(db.Integer, nullable=False)
    currency = db.Column(db.String(3), nullable=False, default="aed")

    status = db.Column(db.String(16), nullable=False, default="PENDING", index=True)

    stripe_payment_intent_id = db.Column(db.String(255), nullable=False, unique=True, index=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=utcnow)

    user = db.relationship("User", backref=db.backref("orders", lazy=True))

    @property
    def total(self):
        return from_minor_units(self.total_cents, self.currency)

    def __repr__(self) -> str:
        return f"<Order id={self.id} status={self.status} total_cents={self.total_cents}>"

    def to_dict(self, include_items: bool = False) -> dict:
        data = {
            "id": self.id,
            "user_id": self.user_id,
            "customer_name": self.customer_name,
            "customer_email": self.customer_email,
            "customer_phone": self.customer_phone,
            "shipping_city": self.shipping_city,
            "shipping_address": self.shipping_address,
            "subtotal_cents": self.subtotal_cents,
            "tax_cents": self.tax_cents,
            "shipping_cents": self.shipping_cents,
            "discount_cents": self.discount_cents,
            "total_cents": self.total_cents,
            "total": format_minor_units(self.total_cents, self.currency),
            "currency": self.currency,
            "status": self.status,
            "stripe_payment_intent_id": self.stripe_payment_intent_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
        if include_items:
            data["items"] = [item.to_dict() for item in self.items]
        return data


class OrderItem(db.Model):
    """Line item snapshot. Product ids are the storefront catalog's opaque ids."""
    __tablename__ = "order_items"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)

    product_id = db.Column(db.String(64), nullable=True)
    variation_id = db.Column(db.String(64), nullable=True)
    name = db.Column(db.String(255), nullable=True)

    quantity = db.Column(db.Integer, nullable=False)
    unit_price_cents = db.Column(db.Integer, nullable=False)
    line_total_cents = db.Column(db.Integer, nullable=False)

    order = db.relationship("Order", backref=db.backref("items", lazy=True, order_by="OrderItem.id"))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "product_id": self.product_id,
            "variation_id": self.variation_id,
            "name": self.name,
            "quantity": self.quantity,
            "unit_price_cents": self.unit_price_cents,
            "line_total_cents": self.line_total_cents,
        }

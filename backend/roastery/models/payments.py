from __future__ import annotations

from ..extensions import db
from ..money import format_minor_units
from ..time_utils import to_utc_z, utcnow


class Payment(db.Model):
    """
    Local record of a Stripe payment, paired 1:1 with its Order.

    DESIGN: stripe_payment_intent_id carries a unique constraint. Webhook
    deliveries are at-least-once and operator recovery can race a live
    webhook; the constraint is what serializes concurrent reconciliation.
    The loser of the race sees an IntegrityError and takes the duplicate path.

    STATUS:
    - processing: known locally but not yet confirmed (non-terminal)
    - succeeded / partially_refunded / refunded / disputed: terminal for
      reconciliation purposes
    - failed / canceled: intent did not complete
    """
    __tablename__ = "payments"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, unique=True, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True, index=True)

    stripe_payment_intent_id = db.Column(db.String(255), nullable=False, unique=True, index=True)
    stripe_charge_id = db.Column(db.String(255), nullable=True, index=True)

    amount_cents = db.Column(db.Integer, nullable=False)
    refunded_cents = db.Column(db.Integer, nullable=False, default=0)
    currency = db.Column(db.String(3), nullable=False, default="aed")

    status = db.Column(db.String(32), nullable=False, index=True)

    # Card details from the latest charge
    method = db.Column(db.String(32), nullable=True)
    brand = db.Column(db.String(32), nullable=True)
    last4 = db.Column(db.String(4), nullable=True)
    receipt_url = db.Column(db.String(500), nullable=True)

    failure_reason = db.Column(db.String(255), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=utcnow)

    order = db.relationship("Order", backref=db.backref("payment", uselist=False, lazy=True))
    user = db.relationship("User", backref=db.backref("payments", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "user_id": self.user_id,
            "stripe_payment_intent_id": self.stripe_payment_intent_id,
            "stripe_charge_id": self.stripe_charge_id,
            "amount_cents": self.amount_cents,
            "amount": format_minor_units(self.amount_cents, self.currency),
            "refunded_cents": self.refunded_cents,
            "currency": self.currency,
            "status": self.status,
            "method": self.method,
            "brand": self.brand,
            "last4": self.last4,
            "receipt_url": self.receipt_url,
            "failure_reason": self.failure_reason,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class ProcessorEvent(db.Model):
    """
    Every verified Stripe notification, keyed by Stripe's event id.

    WHY: Gives operators a trail of what each delivery did (created, duplicate,
    updated, ignored) and lets a redelivered event short-circuit early.
    """
    __tablename__ = "processor_events"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    stripe_event_id = db.Column(db.String(255), nullable=False, unique=True)  # e.g. "evt_1Abc..."
    event_type = db.Column(db.String(128), nullable=False, index=True)
    payment_intent_id = db.Column(db.String(255), nullable=True, index=True)
    outcome = db.Column(db.String(16), nullable=False)
    detail = db.Column(db.Text, nullable=True)
    received_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)

    def __repr__(self) -> str:
        return f"<ProcessorEvent {self.stripe_event_id} ({self.event_type}) {self.outcome}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "stripe_event_id": self.stripe_event_id,
            "event_type": self.event_type,
            "payment_intent_id": self.payment_intent_id,
            "outcome": self.outcome,
            "detail": self.detail,
            "received_at": to_utc_z(self.received_at),
        }

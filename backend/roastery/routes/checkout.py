# Overview: Flask API routes for storefront checkout; creates Stripe payment intents.

"""
Checkout API Routes

WHY: The storefront needs a PaymentIntent client secret to confirm a card
payment with Stripe.js. No order is written here; the order appears when
Stripe confirms the payment (webhook or operator recovery).

Public endpoint (guests can check out). Disabled with 503 while the site is
in maintenance mode.
"""

from flask import Blueprint, request, jsonify, current_app

from ..services import payment_service
from ..services import settings_service
from ..services.payment_service import InvalidAmount
from ..services.stripe_gateway import UpstreamFailure
from ..validation import ValidationError, normalize_currency, require_json_object


checkout_bp = Blueprint("checkout", __name__, url_prefix="/api")


@checkout_bp.post("/checkout/payment-intent")
@checkout_bp.post("/create-payment-intent")
def create_payment_intent_route():
    """
    Create a PaymentIntent for the cart.

    Request body (all amounts in minor units, 4999 == 49.99 AED):
    {
        "amount": 4999,
        "currency": "aed",            (optional)
        "customerInfo": {"fullName", "email", "phone"},
        "shippingInfo": {"city", "address"},
        "items": [{"productId", "variationId", "name", "price", "quantity"}],
        "subtotal": 4500, "tax": 225, "shippingCost": 274, "discount": 0   (optional)
    }

    Returns:
        200: {"clientSecret": "...", "intentId": "pi_..."}
        400: invalid amount or payload
        500: payment provider unavailable or unexpected error
        503: maintenance mode
    """
    try:
        if settings_service.is_maintenance_mode():
            return jsonify({
                "error": "The store is under maintenance. Please try again later.",
                "maintenanceMode": True,
            }), 503

        data = require_json_object(request.get_json(silent=True))

        currency = normalize_currency(data.get("currency"), current_app.config["DEFAULT_CURRENCY"])
        result = payment_service.create_intent(
            amount=data.get("amount"),
            currency=currency,
            customer_info=data.get("customerInfo"),
            shipping_info=data.get("shippingInfo"),
            items=data.get("items"),
            breakdown={
                "subtotal_cents": data.get("subtotal"),
                "tax_cents": data.get("tax"),
                "shipping_cents": data.get("shippingCost"),
                "discount_cents": data.get("discount"),
            },
        )

        return jsonify({
            "clientSecret": result["client_secret"],
            "intentId": result["intent_id"],
        }), 200

    except InvalidAmount as e:
        return jsonify({"error": str(e)}), 400
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except UpstreamFailure:
        return jsonify({"error": "Payment provider unavailable. Please try again."}), 500
    except Exception:
        current_app.logger.exception("Failed to create payment intent")
        return jsonify({"error": "Internal server error"}), 500

# Overview: Flask API routes for Stripe webhooks; verifies and reconciles notifications.

"""
Stripe Webhook Route

Stripe retries any non-2xx response for up to three days, so:
- 200 for every processed event, duplicates included
- 400 for bad signatures and unusable payloads (retrying will not help,
  the event is logged for manual recovery)
- 500 for store failures, so Stripe redelivers
"""

from flask import Blueprint, request, jsonify, current_app

from ..services import reconciliation_service
from ..services.reconciliation_service import InvalidSignature, MalformedNotification


webhooks_bp = Blueprint("webhooks", __name__, url_prefix="/api/webhooks")


@webhooks_bp.post("/stripe")
def stripe_webhook_route():
    try:
        result = reconciliation_service.reconcile_notification(
            request.get_data(cache=False),
            request.headers.get("Stripe-Signature"),
        )
        return jsonify({
            "received": True,
            "outcome": result.outcome,
            "orderId": result.order_id,
        }), 200

    except InvalidSignature as e:
        return jsonify({"error": str(e)}), 400
    except MalformedNotification as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to process Stripe webhook")
        return jsonify({"error": "Internal server error"}), 500

# Overview: Flask API routes for payments operations; parses input and returns JSON responses.

"""
Payment Administration API Routes

WHY: Staff need to see what Stripe charged, refund customers, and repair
orders whose webhook never arrived.

SECURITY:
- Listing and detail: staff roles (ADMIN, MANAGER, TEAM)
- Refunds and recovery: management roles (ADMIN, MANAGER)
"""

from flask import Blueprint, request, jsonify, g, current_app

from ..services import payment_service
from ..services import reconciliation_service
from ..services.payment_service import InvalidAmount, RefundError
from ..services.reconciliation_service import IntentNotSucceeded, MalformedNotification
from ..services.session_service import STAFF_ROLES, MANAGEMENT_ROLES
from ..services.stripe_gateway import UpstreamFailure
from ..validation import ValidationError, NotFoundError, parse_pagination, require_json_object
from ..decorators import require_roles


payments_bp = Blueprint("payments", __name__, url_prefix="/api/payments")


def _payment_row(payment) -> dict:
    data = payment.to_dict()
    order = payment.order
    data["order"] = {
        "id": order.id,
        "status": order.status,
        "customer_name": order.customer_name,
        "customer_email": order.customer_email,
        "total": order.to_dict()["total"],
    } if order else None
    return data


# =============================================================================
# PAYMENT QUERIES
# =============================================================================

@payments_bp.get("")
@require_roles(*STAFF_ROLES)
def list_payments_route():
    """
    Paginated payment list.

    Query params: page, limit, status, search (intent id, charge id,
    customer name or email)
    """
    try:
        page, limit = parse_pagination(request.args)
        payments, total = payment_service.list_payments(
            page=page,
            limit=limit,
            status=request.args.get("status"),
            search=request.args.get("search"),
        )
        return jsonify({
            "payments": [_payment_row(p) for p in payments],
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "pages": (total + limit - 1) // limit,
            },
        }), 200

    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to list payments")
        return jsonify({"error": "Internal server error"}), 500


@payments_bp.get("/stats")
@require_roles(*STAFF_ROLES)
def payment_stats_route():
    try:
        return jsonify(payment_service.payment_stats()), 200
    except Exception:
        current_app.logger.exception("Failed to load payment stats")
        return jsonify({"error": "Internal server error"}), 500


@payments_bp.get("/<int:payment_id>")
@require_roles(*STAFF_ROLES)
def get_payment_route(payment_id: int):
    try:
        payment = payment_service.get_payment(payment_id)
        return jsonify({"payment": _payment_row(payment)}), 200
    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404


# =============================================================================
# REFUNDS
# =============================================================================

@payments_bp.post("/<int:payment_id>/refund")
@require_roles(*MANAGEMENT_ROLES)
def refund_payment_route(payment_id: int):
    """
    Refund part or all of a payment.

    Request body: {"amount": 1500}  (minor units)

    Returns:
        200: updated payment and refund
        400: invalid amount
        404: payment not found
        409: not refundable / exceeds remaining
        502: Stripe error
    """
    try:
        data = require_json_object(request.get_json(silent=True))
        payment, refund = payment_service.refund_payment(payment_id, data.get("amount"))
        current_app.logger.info(
            "User %s refunded %s on payment %s", g.current_user.id, refund["amount_cents"], payment.id
        )
        return jsonify({"payment": _payment_row(payment), "refund": refund}), 200

    except InvalidAmount as e:
        return jsonify({"error": str(e)}), 400
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except RefundError as e:
        return jsonify({"error": str(e)}), 409
    except UpstreamFailure:
        return jsonify({"error": "Payment provider unavailable. Please try again."}), 502
    except Exception:
        current_app.logger.exception("Failed to refund payment")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# RECOVERY
# =============================================================================

def _intent_id_from_request() -> str | None:
    if request.method == "POST":
        data = request.get_json(silent=True) or {}
        intent_id = data.get("paymentIntentId")
    else:
        intent_id = request.args.get("paymentIntentId")
    if not isinstance(intent_id, str) or not intent_id.strip():
        return None
    return intent_id.strip()


@payments_bp.post("/recover-missing")
@require_roles(*MANAGEMENT_ROLES)
def recover_missing_route():
    """
    Create the order for a succeeded intent whose webhook never arrived.

    Request body: {"paymentIntentId": "pi_..."}

    Idempotent: returns "duplicate" if the order already exists.
    """
    intent_id = _intent_id_from_request()
    if not intent_id:
        return jsonify({"error": "paymentIntentId is required"}), 400

    try:
        result = reconciliation_service.recover_missing(intent_id)
        message = (
            "Order created successfully"
            if result.outcome == reconciliation_service.OUTCOME_CREATED
            else "Order already exists for this payment"
        )
        return jsonify({
            "success": True,
            "message": message,
            "outcome": result.outcome,
            "orderId": result.order_id,
        }), 200

    except IntentNotSucceeded as e:
        return jsonify({"error": str(e), "status": e.status}), 409
    except MalformedNotification as e:
        return jsonify({"error": str(e)}), 400
    except UpstreamFailure:
        return jsonify({"error": "Payment provider unavailable. Please try again."}), 502
    except Exception:
        current_app.logger.exception("Failed to recover missing order")
        return jsonify({"error": "Internal server error"}), 500


@payments_bp.get("/recover-missing")
@require_roles(*MANAGEMENT_ROLES)
def inspect_intent_route():
    """Compare an intent at Stripe with the local order/payment rows."""
    intent_id = _intent_id_from_request()
    if not intent_id:
        return jsonify({"error": "paymentIntentId query parameter is required"}), 400

    try:
        return jsonify(reconciliation_service.inspect_intent(intent_id)), 200
    except UpstreamFailure:
        return jsonify({"error": "Payment provider unavailable. Please try again."}), 502
    except Exception:
        current_app.logger.exception("Failed to inspect payment intent")
        return jsonify({"error": "Internal server error"}), 500


@payments_bp.get("/check-incomplete")
@require_roles(*MANAGEMENT_ROLES)
def check_incomplete_route():
    """
    Recent intents that never completed, or succeeded without an order.

    Query params: days (default 7, max 90)
    """
    try:
        days = int(request.args.get("days", 7))
    except (TypeError, ValueError):
        return jsonify({"error": "days must be an integer"}), 400
    if days < 1 or days > 90:
        return jsonify({"error": "days must be between 1 and 90"}), 400

    try:
        report = reconciliation_service.list_incomplete_intents(days=days)
        report["days"] = days
        return jsonify(report), 200
    except UpstreamFailure:
        return jsonify({"error": "Payment provider unavailable. Please try again."}), 502
    except Exception:
        current_app.logger.exception("Failed to check incomplete payments")
        return jsonify({"error": "Internal server error"}), 500

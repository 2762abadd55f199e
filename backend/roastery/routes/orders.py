# Overview: Flask API routes for orders; staff management and customer order history.

from flask import Blueprint, request, jsonify, g, current_app

from ..services import order_service
from ..services.order_service import InvalidTransition
from ..services.session_service import STAFF_ROLES, MANAGEMENT_ROLES
from ..validation import ValidationError, NotFoundError, parse_pagination, require_json_object
from ..decorators import require_roles, require_auth


orders_bp = Blueprint("orders", __name__, url_prefix="/api")


def _paginated(orders, total, page, limit) -> dict:
    return {
        "orders": [o.to_dict(include_items=True) for o in orders],
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "pages": (total + limit - 1) // limit,
        },
    }


@orders_bp.get("/orders")
@require_roles(*STAFF_ROLES)
def list_orders_route():
    """
    Paginated order list, newest first.

    Query params: page, limit, status, search
    """
    try:
        page, limit = parse_pagination(request.args)
        orders, total = order_service.list_orders(
            page=page,
            limit=limit,
            status=request.args.get("status"),
            search=request.args.get("search"),
        )
        return jsonify(_paginated(orders, total, page, limit)), 200

    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to list orders")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.get("/orders/<int:order_id>")
@require_roles(*STAFF_ROLES)
def get_order_route(order_id: int):
    try:
        order = order_service.get_order(order_id)
        return jsonify({"order": order_service.order_detail(order)}), 200
    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404


@orders_bp.patch("/orders/<int:order_id>/status")
@require_roles(*MANAGEMENT_ROLES)
def update_order_status_route(order_id: int):
    """
    Move an order through fulfilment.

    Request body: {"status": "SHIPPED"}

    Returns:
        200: updated order
        400: unknown status
        404: order not found
        409: transition not allowed from the current status
    """
    try:
        data = require_json_object(request.get_json(silent=True))
        status = data.get("status")
        if not isinstance(status, str) or not status:
            return jsonify({"error": "status is required"}), 400

        order = order_service.update_status(order_id, status.strip().upper())
        current_app.logger.info("User %s set order %s to %s", g.current_user.id, order.id, order.status)
        return jsonify({"order": order_service.order_detail(order)}), 200

    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except InvalidTransition as e:
        return jsonify({"error": str(e)}), 409
    except Exception:
        current_app.logger.exception("Failed to update order status")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.get("/customer/orders")
@require_auth
def customer_orders_route():
    """Orders owned by the signed-in account."""
    try:
        page, limit = parse_pagination(request.args)
        orders, total = order_service.list_orders(
            page=page,
            limit=limit,
            user_id=g.current_user.id,
        )
        return jsonify(_paginated(orders, total, page, limit)), 200

    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to list customer orders")
        return jsonify({"error": "Internal server error"}), 500

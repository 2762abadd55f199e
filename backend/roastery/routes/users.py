# Overview: Flask API routes for user administration; admin-only account management.

"""
User Administration API Routes

SECURITY:
- ADMIN role only
- An admin cannot demote or deactivate their own account
- Every create/update is written to the security event log
"""

from flask import Blueprint, request, jsonify, g, current_app

from ..services import auth_service
from ..services import security_service
from ..services.auth_service import PasswordValidationError
from ..services.session_service import ADMIN_ROLES
from ..models import ROLE_CUSTOMER
from ..validation import ValidationError, ConflictError, NotFoundError, require_json_object
from ..decorators import require_roles


users_bp = Blueprint("users", __name__, url_prefix="/api/users")


def _audit(event_type: str, target_id: int, reason: str) -> None:
    security_service.log_security_event(
        user_id=g.current_user.id,
        event_type=event_type,
        success=True,
        resource=f"/api/users/{target_id}",
        action=request.method,
        reason=reason,
        ip_address=request.remote_addr,
        user_agent=request.headers.get("User-Agent"),
    )


@users_bp.get("")
@require_roles(*ADMIN_ROLES)
def list_users_route():
    try:
        users = auth_service.list_users(role=request.args.get("role") or None)
        return jsonify({"users": [u.to_dict() for u in users]}), 200
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400


@users_bp.get("/<int:user_id>")
@require_roles(*ADMIN_ROLES)
def get_user_route(user_id: int):
    try:
        return jsonify({"user": auth_service.get_user(user_id).to_dict()}), 200
    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404


@users_bp.post("")
@require_roles(*ADMIN_ROLES)
def create_user_route():
    """
    Create a staff or customer account.

    Request body: {"email", "password", "name"?, "phone"?, "role"?}
    """
    try:
        data = require_json_object(request.get_json(silent=True))
        if not data.get("email") or not data.get("password"):
            return jsonify({"error": "Email and password are required"}), 400

        user = auth_service.create_user(
            email=data.get("email"),
            password=data.get("password"),
            role=data.get("role") or ROLE_CUSTOMER,
            name=data.get("name"),
            phone=data.get("phone"),
        )
        _audit("USER_CREATED", user.id, f"Created {user.role} account")
        return jsonify({"user": user.to_dict()}), 201

    except PasswordValidationError as e:
        return jsonify({"error": str(e)}), 400
    except ConflictError as e:
        return jsonify({"error": str(e)}), 409
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to create user")
        return jsonify({"error": "Internal server error"}), 500


@users_bp.patch("/<int:user_id>")
@require_roles(*ADMIN_ROLES)
def update_user_route(user_id: int):
    """
    Update name, phone, role, is_active or password.

    Returns 409 when an admin tries to demote or deactivate themself.
    """
    try:
        data = require_json_object(request.get_json(silent=True))
        if not data:
            return jsonify({"error": "No changes provided"}), 400

        user = auth_service.update_user(user_id, g.current_user.id, data)
        _audit("USER_UPDATED", user.id, f"Changed: {', '.join(sorted(data))}")
        return jsonify({"user": user.to_dict()}), 200

    except PasswordValidationError as e:
        return jsonify({"error": str(e)}), 400
    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except ConflictError as e:
        return jsonify({"error": str(e)}), 409
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to update user")
        return jsonify({"error": "Internal server error"}), 500

# Overview: Flask API routes for auth operations; parses input and returns JSON responses.

"""
Authentication API routes

SECURITY FEATURES:
- Session token carried in an HttpOnly, SameSite=Lax cookie (never in JS)
- Failed logins recorded to the security event log
- Responses are marked Cache-Control: no-store
- Password strength validation on registration
"""

from flask import Blueprint, request, jsonify, current_app, g

from ..services import auth_service
from ..services import session_service
from ..services import security_service
from ..services.auth_service import PasswordValidationError
from ..services.session_service import InvalidCredentials, AccountInactive
from ..models import ROLE_CUSTOMER
from ..validation import ValidationError, ConflictError, require_json_object
from ..decorators import require_auth


auth_bp = Blueprint("auth", __name__, url_prefix="/api/auth")


def _no_store(response):
    response.headers["Cache-Control"] = "no-store"
    return response


def _set_session_cookie(response, token: str):
    response.set_cookie(
        current_app.config["SESSION_COOKIE_NAME"],
        token,
        max_age=int(current_app.config.get("SESSION_TTL_SECONDS", 3600)),
        httponly=True,
        secure=bool(current_app.config.get("SESSION_COOKIE_SECURE")),
        samesite="Lax",
        path="/",
    )
    return response


@auth_bp.post("/login")
def login_route():
    """
    Authenticate user and set the session cookie.

    Request body: {"email": "...", "password": "..."}

    Returns:
        200: {"user": {...}}
        400: missing fields
        401: invalid credentials
        403: account deactivated
    """
    try:
        data = require_json_object(request.get_json(silent=True))
        email = data.get("email")
        password = data.get("password")

        if not isinstance(email, str) or not isinstance(password, str) or not email or not password:
            return _no_store(jsonify({"error": "Email and password are required"})), 400

        try:
            user, token = session_service.issue_token(email, password)
        except InvalidCredentials:
            security_service.log_security_event(
                user_id=None,
                event_type="LOGIN_FAILED",
                success=False,
                resource=request.path,
                action=request.method,
                reason=f"Invalid credentials for {str(email).strip().lower()[:255]}",
                ip_address=request.remote_addr,
                user_agent=request.headers.get("User-Agent"),
            )
            return _no_store(jsonify({"error": "Invalid credentials"})), 401
        except AccountInactive as e:
            return _no_store(jsonify({"error": str(e)})), 403

        response = jsonify({"user": user.to_dict(), "message": "Login successful"})
        _set_session_cookie(response, token)
        return _no_store(response), 200

    except ValidationError as e:
        return _no_store(jsonify({"error": str(e)})), 400
    except Exception:
        current_app.logger.exception("Failed to login user")
        return jsonify({"error": "Internal server error"}), 500


@auth_bp.post("/logout")
def logout_route():
    """
    Clear the session cookie.

    Tokens are stateless; this only tells the browser to discard its copy.
    """
    response = jsonify({"message": "Logged out"})
    response.delete_cookie(current_app.config["SESSION_COOKIE_NAME"], path="/")
    return _no_store(response), 200


@auth_bp.get("/session")
@require_auth
def session_route():
    """Return the user behind the current session cookie."""
    context = g.session_context
    return _no_store(jsonify({
        "user": g.current_user.to_dict(),
        "expires_at": context.expires_at.isoformat() + "Z" if context.expires_at else None,
    })), 200


@auth_bp.post("/register")
def register_route():
    """
    Customer self-registration.

    Request body: {"email", "password", "name"?, "phone"?}

    Staff accounts are only created by admins (POST /api/users or CLI).
    """
    try:
        data = require_json_object(request.get_json(silent=True))
        if not isinstance(data.get("email"), str) or not isinstance(data.get("password"), str) \
                or not data.get("email") or not data.get("password"):
            return jsonify({"error": "Email and password are required"}), 400
        for field in ("name", "phone"):
            if data.get(field) is not None and not isinstance(data.get(field), str):
                return jsonify({"error": f"{field} must be a string"}), 400

        user = auth_service.create_user(
            email=data.get("email"),
            password=data.get("password"),
            role=ROLE_CUSTOMER,
            name=data.get("name"),
            phone=data.get("phone"),
        )
        current_app.logger.info("Registered customer account %s", user.id)
        return jsonify({"user": user.to_dict()}), 201

    except PasswordValidationError as e:
        return jsonify({"error": str(e)}), 400
    except ConflictError as e:
        return jsonify({"error": str(e)}), 409
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to register user")
        return jsonify({"error": "Internal server error"}), 500

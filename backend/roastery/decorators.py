# Overview: Request decorators gating API routes on the session token and role.

from functools import wraps
from flask import request, jsonify, g, current_app

from .models import ALL_ROLES
from .services import session_service, security_service
from .services.session_service import InvalidToken, Forbidden


def get_request_token() -> str | None:
    """
    Session token from the auth cookie, or from an Authorization: Bearer
    header for non-browser API clients.
    """
    token = request.cookies.get(current_app.config["SESSION_COOKIE_NAME"])
    if token:
        return token

    auth_header = request.headers.get("Authorization")
    if auth_header and auth_header.startswith("Bearer "):
        return auth_header.split(" ", 1)[1].strip() or None
    return None


def require_roles(*roles):
    """
    Require a valid session whose user holds one of the given roles.

    This is the only authorization gate for protected routes. Sets:
    - g.current_user: the authenticated User
    - g.session_context: the full SessionContext

    Returns 401 when the token is missing, invalid, expired or belongs to a
    deactivated account; 403 when the role is not in the allow-list.
    """
    allowed = tuple(roles) or ALL_ROLES

    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            token = get_request_token()
            if not token:
                return jsonify({"error": "Authentication required"}), 401

            try:
                context = session_service.authorize(token, allowed)
            except InvalidToken as e:
                current_app.logger.warning("Rejected token on %s %s: %s", request.method, request.path, e)
                return jsonify({"error": "Invalid or expired token"}), 401
            except Forbidden as e:
                security_service.log_security_event(
                    user_id=e.user_id,
                    event_type="ACCESS_DENIED",
                    success=False,
                    resource=request.path,
                    action=request.method,
                    reason=f"{e}; requires one of: {', '.join(allowed)}",
                    ip_address=request.remote_addr,
                    user_agent=request.headers.get("User-Agent"),
                )
                current_app.logger.warning("Forbidden %s %s: %s", request.method, request.path, e)
                return jsonify({
                    "error": "Forbidden",
                    "required_roles": list(allowed),
                }), 403

            g.current_user = context.user
            g.session_context = context

            return f(*args, **kwargs)

        return decorated_function
    return decorator


def require_auth(f):
    """Require any authenticated, active user."""
    return require_roles(*ALL_ROLES)(f)

# Overview: Service-layer operations for session tokens; issue, verify and authorize.

"""
Session Token Service

WHY: Staff and customers authenticate once and then present a signed token
(HttpOnly cookie) on every request. Tokens are HS256 JWTs signed with the
server-held JWT_SECRET and carry {sub, email, role, iat, exp}.

DESIGN:
- Stateless bearer model: nothing is stored server-side when a token is
  issued, and logout only tells the client to discard its cookie.
- verify_token still re-reads the user on every request. A deactivated
  account is locked out immediately even though its token is still signed
  and unexpired, and the role used for authorization is the stored role,
  not the one embedded at issue time.
- authorize() is the single role gate for protected operations; routes use
  it through decorators.require_roles.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import jwt
from flask import current_app

from ..extensions import db
from ..models import User, ROLE_ADMIN, ROLE_MANAGER, ROLE_TEAM, ALL_ROLES
from ..time_utils import from_unix, utcnow
from .auth_service import get_user_by_email, verify_password


JWT_ALGORITHM = "HS256"
TOKEN_TYPE = "session"

STAFF_ROLES = (ROLE_ADMIN, ROLE_MANAGER, ROLE_TEAM)
MANAGEMENT_ROLES = (ROLE_ADMIN, ROLE_MANAGER)
ADMIN_ROLES = (ROLE_ADMIN,)


class SessionError(Exception):
    """Base class for session authority failures."""


class InvalidCredentials(SessionError):
    """Email unknown or password mismatch."""


class AccountInactive(SessionError):
    """Credentials matched but the account has been deactivated."""


class InvalidToken(SessionError):
    """Signature, shape, expiry or liveness check failed."""


class Forbidden(SessionError):
    """Token is valid but the user's role is not allowed."""

    def __init__(self, message: str, user_id: int | None = None):
        super().__init__(message)
        self.user_id = user_id


@dataclass
class SessionContext:
    """Resolved identity for one request."""
    user: User
    user_id: int
    email: str
    role: str
    issued_at: datetime | None
    expires_at: datetime | None


def _secret() -> str:
    return current_app.config["JWT_SECRET"]


def _ttl() -> timedelta:
    return timedelta(seconds=int(current_app.config.get("SESSION_TTL_SECONDS", 3600)))


def encode_token(user: User) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        "type": TOKEN_TYPE,
        "sub": str(user.id),
        "email": user.email,
        "role": user.role,
        "iat": int(now.timestamp()),
        "exp": int((now + _ttl()).timestamp()),
    }
    return jwt.encode(payload, _secret(), algorithm=JWT_ALGORITHM)


def issue_token(email: str, password: str) -> tuple[User, str]:
    """
    Verify credentials and sign a session token.

    Returns (user, token). The caller persists the token as a cookie.

    Raises:
        InvalidCredentials: unknown email or wrong password
        AccountInactive: password matched but is_active is False
    """
    user = get_user_by_email(email or "")
    if not user or not verify_password(password, user.password_hash):
        raise InvalidCredentials("Invalid credentials")

    if not user.is_active:
        raise AccountInactive("Your account has been deactivated. Please contact support.")

    token = encode_token(user)
    user.last_login_at = utcnow()
    db.session.commit()

    current_app.logger.info("Issued session token for user %s (%s)", user.id, user.role)
    return user, token


def decode_token(token: str) -> dict:
    """
    Validate signature and expiry, return claims.

    Raises InvalidToken for any signature mismatch, malformed payload,
    missing claim, wrong token type, or expiry.
    """
    if not token:
        raise InvalidToken("Missing token")
    try:
        claims = jwt.decode(
            token,
            _secret(),
            algorithms=[JWT_ALGORITHM],
            options={"require": ["sub", "exp", "iat"]},
        )
    except jwt.InvalidTokenError as exc:
        raise InvalidToken(str(exc)) from exc

    if claims.get("type", TOKEN_TYPE) != TOKEN_TYPE:
        raise InvalidToken(f"Unsupported token type: {claims.get('type')}")
    return claims


def verify_token(token: str) -> SessionContext:
    """
    Resolve a presented token to a live user.

    Returns SessionContext with the stored (current) role.
    Raises InvalidToken if the token is bad or the user is gone or inactive.
    """
    claims = decode_token(token)

    try:
        user_id = int(claims["sub"])
    except (TypeError, ValueError):
        raise InvalidToken("Malformed subject claim")

    user = db.session.get(User, user_id)
    if not user:
        raise InvalidToken("User no longer exists")
    if not user.is_active:
        raise InvalidToken("User account deactivated")
    if user.role not in ALL_ROLES:
        raise InvalidToken("User has an unknown role")

    return SessionContext(
        user=user,
        user_id=user.id,
        email=user.email,
        role=user.role,
        issued_at=from_unix(claims.get("iat")),
        expires_at=from_unix(claims.get("exp")),
    )


def authorize(token: str, allowed_roles) -> SessionContext:
    """
    Verify token and require the user's role to be in allowed_roles.

    Raises InvalidToken (401) or Forbidden (403).
    """
    context = verify_token(token)
    if context.role not in allowed_roles:
        raise Forbidden(f"Role {context.role} not permitted", user_id=context.user_id)
    return context

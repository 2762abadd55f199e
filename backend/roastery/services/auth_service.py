# Overview: Service-layer operations for user accounts and password handling.

"""
Account and Password Service

WHY: Every staff action must be attributable and every customer order can be
linked back to an account. Uses bcrypt for password hashing.

SECURITY NOTES:
- Passwords hashed with bcrypt (cost factor 12)
- Minimum 8 characters with upper case, lower case and a digit
- Emails are stored lower-cased; uniqueness is case-insensitive
- Token issuing and verification live in session_service.py
"""

import re

import bcrypt
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import User, ALL_ROLES, ROLE_CUSTOMER
from ..validation import ValidationError, ConflictError, NotFoundError, normalize_email


class PasswordValidationError(ValidationError):
    """Raised when password doesn't meet strength requirements."""
    pass


def validate_password_strength(password: str) -> None:
    """
    Validate password meets strength requirements.

    Raises PasswordValidationError if requirements not met.
    """
    if not isinstance(password, str) or len(password) < 8:
        raise PasswordValidationError("Password must be at least 8 characters long")

    if not re.search(r'[A-Z]', password):
        raise PasswordValidationError("Password must contain at least one uppercase letter")

    if not re.search(r'[a-z]', password):
        raise PasswordValidationError("Password must contain at least one lowercase letter")

    if not re.search(r'\d', password):
        raise PasswordValidationError("Password must contain at least one digit")


def hash_password(password: str) -> str:
    """
    Hash password using bcrypt with cost factor 12.

    Password is validated for strength before hashing.
    """
    validate_password_strength(password)
    salt = bcrypt.gensalt(rounds=12)
    hashed = bcrypt.hashpw(password.encode('utf-8'), salt)
    return hashed.decode('utf-8')  # Store as string in database


def verify_password(password: str, password_hash: str) -> bool:
    """
    Verify password against bcrypt hash.

    bcrypt.checkpw() is constant-time. A malformed stored hash counts as a
    mismatch rather than an error.
    """
    if not isinstance(password, str) or not password or not password_hash:
        return False
    try:
        return bcrypt.checkpw(password.encode('utf-8'), password_hash.encode('utf-8'))
    except ValueError:
        return False


def validate_role(role: str) -> str:
    if role not in ALL_ROLES:
        raise ValidationError(f"Invalid role: {role}. Must be one of {list(ALL_ROLES)}")
    return role


def get_user_by_email(email: str) -> User | None:
    if not isinstance(email, str) or not email.strip():
        return None
    return db.session.query(User).filter(User.email == email.strip().lower()).first()


def get_user(user_id: int) -> User:
    user = db.session.get(User, user_id)
    if not user:
        raise NotFoundError("User not found")
    return user


def create_user(
    email: str,
    password: str,
    role: str = ROLE_CUSTOMER,
    name: str | None = None,
    phone: str | None = None,
) -> User:
    """
    Create a new account with a bcrypt password hash.

    Raises:
        ValidationError: bad email or role
        PasswordValidationError: weak password
        ConflictError: email already registered
    """
    email = normalize_email(email)
    validate_role(role)

    if get_user_by_email(email):
        raise ConflictError("User with this email already exists")

    user = User(
        email=email,
        password_hash=hash_password(password),
        role=role,
        name=(name or email.split("@")[0]).strip()[:120],
        phone=(phone or None),
        is_active=True,
    )
    db.session.add(user)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise ConflictError("User with this email already exists")
    return user


def update_user(user_id: int, actor_id: int, changes: dict) -> User:
    """
    Apply an admin edit to a user.

    Supported keys: name, phone, role, is_active, password.
    An admin cannot demote or deactivate their own account.
    """
    user = get_user(user_id)
    allowed = {"name", "phone", "role", "is_active", "password"}
    unknown = set(changes) - allowed
    if unknown:
        raise ValidationError(f"Field not allowed: {', '.join(sorted(unknown))}")

    if "role" in changes:
        role = validate_role(changes["role"])
        if user.id == actor_id and role != user.role:
            raise ConflictError("You cannot change your own role")
        user.role = role

    if "is_active" in changes:
        if not isinstance(changes["is_active"], bool):
            raise ValidationError("is_active must be a boolean")
        if user.id == actor_id and not changes["is_active"]:
            raise ConflictError("You cannot deactivate your own account")
        user.is_active = changes["is_active"]

    if "name" in changes:
        user.name = (changes["name"] or "").strip()[:120] or None

    if "phone" in changes:
        user.phone = (changes["phone"] or "").strip()[:32] or None

    if "password" in changes:
        user.password_hash = hash_password(changes["password"])

    db.session.commit()
    return user


def set_password(email: str, password: str) -> User:
    user = get_user_by_email(email)
    if not user:
        raise NotFoundError("User not found")
    user.password_hash = hash_password(password)
    db.session.commit()
    return user


def list_users(role: str | None = None) -> list[User]:
    query = db.session.query(User)
    if role:
        query = query.filter(User.role == validate_role(role))
    return query.order_by(User.created_at.desc(), User.id.desc()).all()

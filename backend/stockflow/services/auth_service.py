# Overview: Service-layer operations for auth; users of each tier and password checks.

"""
Authentication Service

WHY: Every action must be attributable. Uses bcrypt for password hashing
and validates password strength.

HIERARCHY: Users carry a closed Role and a parent_id linking them to the
account that created them (regional distributor -> distributor -> field agent).
Legacy role strings are normalized via Role.from_legacy before they reach
the core.

SECURITY NOTES:
- Passwords hashed with bcrypt (cost factor from BCRYPT_ROUNDS, default 12)
- Minimum 8 characters, upper, lower, digit and special char required
- Session tokens managed separately (see session_service.py)
"""

import bcrypt
import re
from flask import current_app

from ..extensions import db
from ..errors import ValidationError
from ..models import Role, User
from ..time_utils import utcnow


# Which role may create accounts of which role
ALLOWED_CHILD_ROLES = {
    Role.ISSUER: {Role.ISSUER, Role.REGIONAL_DISTRIBUTOR, Role.DISTRIBUTOR},
    Role.REGIONAL_DISTRIBUTOR: {Role.DISTRIBUTOR},
    Role.DISTRIBUTOR: {Role.FIELD_AGENT},
    Role.FIELD_AGENT: set(),
}


class PasswordValidationError(ValidationError):
    """Raised when password doesn't meet strength requirements."""
    pass


def validate_password_strength(password: str) -> None:
    """
    Validate password meets strength requirements.

    Raises PasswordValidationError if requirements not met.
    """
    if len(password) < 8:
        raise PasswordValidationError("Password must be at least 8 characters long")

    if not re.search(r'[A-Z]', password):
        raise PasswordValidationError("Password must contain at least one uppercase letter")

    if not re.search(r'[a-z]', password):
        raise PasswordValidationError("Password must contain at least one lowercase letter")

    if not re.search(r'\d', password):
        raise PasswordValidationError("Password must contain at least one digit")

    if not re.search(r"[!@#$%^&*(),.'\":{}|<>]", password):
        raise PasswordValidationError("Password must contain at least one special character")


def hash_password(password: str) -> str:
    """
    Hash password using bcrypt.

    Password is validated for strength before hashing.
    """
    validate_password_strength(password)
    salt = bcrypt.gensalt(rounds=current_app.config.get("BCRYPT_ROUNDS", 12))
    hashed = bcrypt.hashpw(password.encode('utf-8'), salt)
    return hashed.decode('utf-8')  # Store as string in database


def verify_password(password: str, password_hash: str) -> bool:
    """
    Verify password against bcrypt hash.

    bcrypt.checkpw() is timing-safe. A malformed stored hash counts as a mismatch.
    """
    try:
        return bcrypt.checkpw(password.encode('utf-8'), password_hash.encode('utf-8'))
    except ValueError:
        return False


def create_user(
    username: str,
    email: str,
    password: str,
    role: str | Role,
    parent_id: int | None = None,
) -> User:
    """
    Create a user in the distribution hierarchy.

    Args:
        username: Unique username
        email: Unique email
        password: Password meeting strength requirements
        role: Role or legacy role string ("dealer", "salesman", ...)
        parent_id: Owning account; must be allowed to create this role

    Raises:
        ValidationError: unknown role, duplicate user, or parent not allowed
        PasswordValidationError: weak password
    """
    try:
        role = Role.from_legacy(role) if not isinstance(role, Role) else role
    except ValueError as exc:
        raise ValidationError(str(exc))

    if parent_id is not None:
        parent = db.session.get(User, parent_id)
        if parent is None:
            raise ValidationError("Parent user not found")
        if role not in ALLOWED_CHILD_ROLES[Role(parent.role)]:
            raise ValidationError(
                f"A {parent.role} cannot create a {role.value} account"
            )
    elif role != Role.ISSUER:
        raise ValidationError(f"A {role.value} account requires a parent user")

    existing = db.session.query(User).filter(
        db.or_(User.username == username, User.email == email)
    ).first()
    if existing:
        raise ValidationError("Username or email already exists")

    user = User(
        username=username,
        email=email,
        password_hash=hash_password(password),
        role=role.value,
        parent_id=parent_id,
    )
    db.session.add(user)
    db.session.flush()
    return user


def authenticate(username: str, password: str) -> User | None:
    """
    Authenticate user with username (or email) and password.

    Returns User if credentials valid, None otherwise.
    Updates last_login_at timestamp on successful authentication.
    """
    user = db.session.query(User).filter(
        db.or_(User.username == username, User.email == username),
        User.is_active.is_(True),
    ).first()

    if not user:
        return None

    if verify_password(password, user.password_hash):
        user.last_login_at = utcnow()
        db.session.commit()
        return user

    return None

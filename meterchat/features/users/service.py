"""
User domain service.
- register_user(email, password, name)
- authenticate_user(email, password)
- get_user_by_email(email) / require_user(email)
"""

from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import select, insert, update
from sqlalchemy.exc import IntegrityError

from meterchat.core.auth import hash_password, verify_password
from meterchat.core.database import get_db_session, users
from meterchat.core.errors import AuthenticationError, ConflictError, NotFoundError, ValidationError
from meterchat.core.logging import log_event
from meterchat.models.plan import DEFAULT_PLAN, PLAN_LIMITS
from meterchat.models.user import User

MIN_PASSWORD_LENGTH = 8


def row_to_user(row) -> User:
    return User(
        id=row.id,
        email=row.email,
        name=row.name,
        plan=row.plan,
        messages_used=row.messages_used,
        messages_limit=row.messages_limit,
        tokens_used=row.tokens_used,
        stripe_customer_id=row.stripe_customer_id,
        stripe_subscription_id=row.stripe_subscription_id,
        subscription_status=row.subscription_status,
        billing_event_at=row.billing_event_at,
        created_at=row.created_at,
    )


def get_user_by_email(email: str) -> Optional[User]:
    with get_db_session() as session:
        row = session.execute(
            select(users).where(users.c.email == User.normalized_email(email))
        ).first()
        return row_to_user(row) if row else None


def require_user(email: str) -> User:
    user = get_user_by_email(email)
    if user is None:
        raise NotFoundError("User not found")
    return user


def register_user(email: str, password: str, name: Optional[str] = None) -> User:
    """Create a user on the default plan with an empty usage counter."""
    normalized = User.normalized_email(email)
    if "@" not in normalized:
        raise ValidationError("A valid email is required")
    if len(password) < MIN_PASSWORD_LENGTH:
        raise ValidationError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")

    try:
        with get_db_session() as session:
            session.execute(
                insert(users).values(
                    email=normalized,
                    name=(name or "").strip() or None,
                    password_hash=hash_password(password),
                    plan=DEFAULT_PLAN.value,
                    messages_used=0,
                    messages_limit=PLAN_LIMITS[DEFAULT_PLAN],
                    tokens_used=0,
                )
            )
    except IntegrityError:
        raise ConflictError("An account with this email already exists")

    log_event("info", "user.registered", user_email=normalized, event_type="user.registered")
    return require_user(normalized)


def authenticate_user(email: str, password: str) -> User:
    """Check credentials and record the login time."""
    normalized = User.normalized_email(email)
    with get_db_session() as session:
        row = session.execute(select(users).where(users.c.email == normalized)).first()
        # Same message for unknown email and wrong password
        if row is None or not verify_password(password, row.password_hash):
            raise AuthenticationError("Invalid email or password")
        session.execute(
            update(users)
            .where(users.c.id == row.id)
            .values(last_login_at=datetime.now(timezone.utc))
        )
    return require_user(normalized)

# Overview: Service-layer operations for principals and authorization checks.

"""
Principals and explicit authorization.

Every core mutation receives the acting Principal from its caller instead of
reading ambient session state. Only an admin may review offers and
payments; only the owning buyer may submit against or withdraw their own
records.
"""

from __future__ import annotations

from dataclasses import dataclass

from ..exceptions import AuthorizationError, ValidationError
from ..extensions import db
from ..models import User
from ..models.auth import ROLE_ADMIN, ROLE_BUYER, VALID_ROLES


@dataclass(frozen=True)
class Principal:
    """Authenticated caller: who is acting and in which role."""
    user_id: int
    role: str

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN

    @property
    def is_buyer(self) -> bool:
        return self.role == ROLE_BUYER

    @classmethod
    def for_user(cls, user: User) -> "Principal":
        return cls(user_id=user.id, role=user.role)


def require_admin(principal: Principal | None) -> Principal:
    if principal is None or not principal.is_admin:
        raise AuthorizationError("Admin privileges required")
    return principal


def require_buyer(principal: Principal | None, owner_id: int | None = None) -> Principal:
    """Require a buyer principal, and ownership when owner_id is given."""
    if principal is None or not principal.is_buyer:
        raise AuthorizationError("Buyer account required")
    if owner_id is not None and principal.user_id != owner_id:
        raise AuthorizationError("Only the owning buyer may perform this action")
    return principal


def require_owner_or_admin(principal: Principal | None, owner_id: int) -> Principal:
    if principal is None:
        raise AuthorizationError("Authentication required")
    if principal.is_admin or principal.user_id == owner_id:
        return principal
    raise AuthorizationError("Not allowed to access this record")


def create_user(email: str, role: str, display_name: str | None = None) -> User:
    """
    Register the local projection of an identity-provider user.

    Raises:
        ValidationError: Missing email, unknown role, or duplicate email
    """
    email = (email or "").strip().lower()
    if not email or "@" not in email:
        raise ValidationError("A valid email is required")
    if role not in VALID_ROLES:
        raise ValidationError(f"role must be one of: {', '.join(sorted(VALID_ROLES))}")

    if db.session.query(User).filter_by(email=email).first():
        raise ValidationError(f"User with email {email} already exists")

    user = User(email=email, role=role, display_name=(display_name or "").strip() or None, is_active=True)
    db.session.add(user)
    db.session.commit()
    return user

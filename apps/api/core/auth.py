"""
Authentication and authorization dependencies.

Provides FastAPI dependencies for:
- Verifying the identity provider's bearer token
- Loading the caller's users/{uid} document
- Role-based access control over the platform role order
"""
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Optional

from fastapi import Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from core.document_store import DocumentStore, USERS, get_document_store
from core.exceptions import ForbiddenError, UnauthorizedError
from core.roles import INVITER_ROLES, STAFF_ROLES, Role, is_staff, user_role
from core.security import decode_access_token

# Use auto_error=False to handle missing credentials manually and return 401 (not 403)
security = HTTPBearer(auto_error=False)


@dataclass
class CurrentUser:
    uid: str
    role: Optional[Role]
    email: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)

    @property
    def display_name(self) -> str:
        return self.data.get("displayName") or self.data.get("name") or self.email or "Coach"

    @property
    def is_staff(self) -> bool:
        return is_staff(self.role)


def _claims_from(credentials: HTTPAuthorizationCredentials) -> Dict[str, Any]:
    payload = decode_access_token(credentials.credentials)
    if not payload:
        raise UnauthorizedError("Invalid authentication credentials")
    if not payload.get("sub"):
        raise UnauthorizedError("Invalid token payload")
    return payload


def get_token_claims(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> Dict[str, Any]:
    """Verified token claims; 401 when missing or invalid."""
    if not credentials:
        raise UnauthorizedError("Not authenticated")
    return _claims_from(credentials)


def get_optional_token_claims(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> Optional[Dict[str, Any]]:
    """
    Claims when a bearer token is sent, None otherwise.

    A token that is present but invalid is still rejected with 401.
    """
    if not credentials:
        return None
    return _claims_from(credentials)


def get_current_user(
    claims: Dict[str, Any] = Depends(get_token_claims),
    store: DocumentStore = Depends(get_document_store),
) -> CurrentUser:
    """
    Get the current authenticated user from the bearer token.

    The token subject must have a users/{uid} document.
    """
    uid = claims["sub"]
    user_doc = store.get(USERS, uid)
    if not user_doc:
        raise UnauthorizedError("User not found")

    if user_doc.get("blocked"):
        raise ForbiddenError("Account is blocked")

    return CurrentUser(
        uid=uid,
        role=user_role(user_doc),
        email=user_doc.get("email") or claims.get("email"),
        data=user_doc,
    )


def require_role(allowed_roles: Iterable[Role]):
    """
    Dependency factory for role-based access control.

    Usage:
        @router.post("/things")
        def create_thing(user: CurrentUser = Depends(require_role([Role.COACH]))):
            ...
    """
    allowed = tuple(allowed_roles)

    def role_checker(current_user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
        if current_user.role not in allowed:
            raise ForbiddenError(
                f"Access denied. Required roles: {[r.value for r in allowed]}"
            )
        return current_user

    return role_checker


def require_admin(
    current_user: CurrentUser = Depends(require_role(STAFF_ROLES))
) -> CurrentUser:
    """Require admin or superadmin role."""
    return current_user


def require_inviter(
    current_user: CurrentUser = Depends(require_role(INVITER_ROLES))
) -> CurrentUser:
    """Coaches and staff may create and manage invitations."""
    return current_user

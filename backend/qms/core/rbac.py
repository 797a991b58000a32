"""Role-Based Access Control (RBAC) utilities."""

from enum import Enum
from typing import Annotated, Any, Dict, Optional

from fastapi import Depends, HTTPException, Request, status

from qms.core.security import decode_access_token


class UserRole(str, Enum):
    """User roles for RBAC."""

    SUPER_ADMIN = "super_admin"
    ADMIN = "admin"
    STAFF = "staff"


# Role hierarchy: super_admin > admin > staff
ROLE_HIERARCHY = {
    UserRole.SUPER_ADMIN: 3,
    UserRole.ADMIN: 2,
    UserRole.STAFF: 1,
}


class TokenData:
    """Decoded token data.

    Attributes:
        user_id: The user's database ID (the staff id used by queue operations).
        organization_id: Tenant the user belongs to; every queue call is scoped to it.
        role: The user's role.
        username: Display name, defaults to ``user-<id>``.
    """

    def __init__(self, user_id: int, organization_id: int, role: UserRole, username: str = ""):
        self.user_id = user_id
        self.id = user_id
        self.organization_id = organization_id
        self.role = role
        self.username = username or f"user-{user_id}"


def _payload_from_request(request: Request) -> Optional[Dict[str, Any]]:
    """Decode the bearer token, falling back to the access_token cookie."""
    payload = None

    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        token = auth_header.split(" ", 1)[1]
        if token:
            payload = decode_access_token(token)

    if payload is None:
        cookie_token = request.cookies.get("access_token")
        if cookie_token:
            payload = decode_access_token(cookie_token)

    return payload


def _token_data(payload: Dict[str, Any]) -> Optional[TokenData]:
    user_id = payload.get("sub")
    organization_id = payload.get("org")
    role = payload.get("role")
    if user_id is None or organization_id is None or role is None:
        return None
    try:
        user_role = UserRole(role)
    except ValueError:
        return None
    return TokenData(
        user_id=int(user_id),
        organization_id=int(organization_id),
        role=user_role,
        username=payload.get("username", ""),
    )


async def get_current_user(request: Request) -> TokenData:
    """Get the current authenticated user from JWT token."""
    payload = _payload_from_request(request)
    if payload is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )

    user = _token_data(payload)
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token payload",
        )
    return user


def require_role(minimum_role: UserRole):
    """Dependency to require a minimum role level."""

    async def role_checker(
        current_user: Annotated[TokenData, Depends(get_current_user)]
    ) -> TokenData:
        user_level = ROLE_HIERARCHY.get(current_user.role, 0)
        required_level = ROLE_HIERARCHY.get(minimum_role, 0)

        if user_level < required_level:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Requires role {minimum_role.value} or higher",
            )
        return current_user

    return role_checker


def acting_staff_id(staff_id: Optional[int], current_user: TokenData) -> int:
    """Staff member a queue operation is recorded against.

    Defaults to the caller. Only admins may act for another staff member;
    the service checks that member belongs to the caller's organization.
    """
    if staff_id is None or staff_id == current_user.user_id:
        return current_user.user_id
    if ROLE_HIERARCHY.get(current_user.role, 0) < ROLE_HIERARCHY[UserRole.ADMIN]:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Cannot act on behalf of another staff member",
        )
    return staff_id


# Common role dependencies
RequireAdmin = Annotated[TokenData, Depends(require_role(UserRole.ADMIN))]
RequireStaff = Annotated[TokenData, Depends(require_role(UserRole.STAFF))]

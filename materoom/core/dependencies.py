"""
FastAPI dependencies for route protection.
"""
import uuid
from typing import Dict, Any

from fastapi import Request, Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from materoom.core.exceptions import NotAuthenticated, SessionExpired

# Security scheme for OpenAPI docs (shows lock icon and Authorization header)
bearer_scheme = HTTPBearer(
    scheme_name="Bearer",
    description="Bearer token issued at login",
    auto_error=False,
)


async def validate_session(
    request: Request,
    credentials: HTTPAuthorizationCredentials = Depends(bearer_scheme)
) -> Dict[str, Any]:
    """
    Validates session loaded by middleware.

    Returns:
        User data dict with user_id, email, is_active

    Raises:
        NotAuthenticated: No token provided
        SessionExpired: Token not found in Redis or user inactive
    """
    if not request.state.token:
        raise NotAuthenticated()

    session = request.state.session
    if not session or not session.get("is_active", True):
        raise SessionExpired()

    return session


async def get_current_user_id(
    current_user: Dict[str, Any] = Depends(validate_session),
) -> uuid.UUID:
    try:
        return uuid.UUID(str(current_user.get("user_id")))
    except (TypeError, ValueError):
        raise SessionExpired()

"""API dependencies - authentication and authorization"""

from fastapi import Depends, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.orm import Session
from typing import Optional

from app.core.database import get_db
from app.core.exceptions import AuthenticationError, AuthorizationError
from app.models.user import User
from app.services.collaborators import AuthCollaborators, get_collaborators
from app.services.session_ledger import AccessContext, session_ledger

# HTTP Bearer token scheme
security = HTTPBearer()
optional_security = HTTPBearer(auto_error=False)


def client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


def user_agent(request: Request) -> Optional[str]:
    return request.headers.get("user-agent")


def get_current_context(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    db: Session = Depends(get_db)
) -> AccessContext:
    """
    Resolve the bearer access token to its user and live session

    Args:
        credentials: HTTP Bearer credentials
        db: Database session

    Returns:
        AccessContext for the request

    Raises:
        AuthenticationError: If the token is invalid, expired, or its session is no longer live
    """
    return session_ledger.authenticate_access_token(db, credentials.credentials)


def get_current_user(
    context: AccessContext = Depends(get_current_context)
) -> User:
    return context.user


def get_current_admin_user(
    current_user: User = Depends(get_current_user),
    collab: AuthCollaborators = Depends(get_collaborators)
) -> User:
    """
    Get current admin user (authorization check)

    Raises:
        AuthorizationError: If the role provider does not grant `admin`
    """
    if "admin" not in collab.roles.get_roles(current_user.id):
        raise AuthorizationError("Admin access required")
    return current_user


def get_optional_current_context(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(optional_security),
    db: Session = Depends(get_db)
) -> Optional[AccessContext]:
    """Authenticated context if a valid bearer token was sent, None otherwise"""
    if not credentials:
        return None
    try:
        return session_ledger.authenticate_access_token(db, credentials.credentials)
    except AuthenticationError:
        return None

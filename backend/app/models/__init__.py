"""Database models"""

from app.models.user import User
from app.models.session import Device, AuthSession, RetiredRefreshToken
from app.models.signing_key import SigningKey
from app.models.oidc import AuthorizationCode, DelegatedRefreshToken
from app.models.one_time_token import OneTimeToken
from app.models.audit import AuthEvent

__all__ = [
    "User",
    "Device",
    "AuthSession",
    "RetiredRefreshToken",
    "SigningKey",
    "AuthorizationCode",
    "DelegatedRefreshToken",
    "OneTimeToken",
    "AuthEvent",
]

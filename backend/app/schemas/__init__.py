"""Pydantic schemas for API validation"""

from app.schemas.user import (
    UserStatus,
    UserRegister,
    UserResponse,
    UserStatusUpdate,
    EmailVerificationRequest,
    PasswordResetRequest,
    PasswordResetConfirm,
)
from app.schemas.auth import (
    DeviceInfo,
    UserLogin,
    TokenPair,
    SessionSummary,
    LoginResponse,
    RefreshTokenRequest,
    SessionResponse,
)
from app.schemas.oidc import (
    AuthorizationRequest,
    OIDCTokenResponse,
    IntrospectionResponse,
    UserInfoResponse,
    RevocationResponse,
)
from app.schemas.keys import JsonWebKey, JWKSResponse, SigningKeyInfo, KeyHealth, KeyStatusResponse, KeyRotationResponse
from app.schemas.audit import AuthEventResponse

__all__ = [
    "UserStatus", "UserRegister", "UserResponse", "UserStatusUpdate",
    "EmailVerificationRequest", "PasswordResetRequest", "PasswordResetConfirm",
    "DeviceInfo", "UserLogin", "TokenPair", "SessionSummary", "LoginResponse",
    "RefreshTokenRequest", "SessionResponse",
    "AuthorizationRequest", "OIDCTokenResponse", "IntrospectionResponse", "UserInfoResponse", "RevocationResponse",
    "JsonWebKey", "JWKSResponse", "SigningKeyInfo", "KeyHealth", "KeyStatusResponse", "KeyRotationResponse",
    "AuthEventResponse",
]

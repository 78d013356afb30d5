"""Custom exception classes for the application"""

from typing import Optional, Dict, Any


class BaseAPIException(Exception):
    """Base exception for all API errors"""

    def __init__(
        self,
        message: str,
        status_code: int = 500,
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        super().__init__(self.message)


# Authentication Errors
class AuthenticationError(BaseAPIException):
    """Base authentication error"""
    def __init__(self, message: str = "Authentication failed", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, status_code=401, details=details)


class InvalidCredentialsError(AuthenticationError):
    """Unknown email or wrong password (never distinguished)"""
    def __init__(self):
        super().__init__("Invalid email or password")


class AccountNotActiveError(AuthenticationError):
    """Credentials are valid but the account is pending or suspended"""
    def __init__(self):
        super().__init__("Account is not active")


class TokenExpiredError(AuthenticationError):
    """JWT token has expired"""
    def __init__(self):
        super().__init__("Token has expired")


class TokenInvalidError(AuthenticationError):
    """JWT token is invalid"""
    def __init__(self, message: str = "Invalid token"):
        super().__init__(message)


class UnknownSigningKeyError(TokenInvalidError):
    """Token references a key id the authority does not hold"""
    def __init__(self, kid: str):
        super().__init__(f"Unknown signing key: {kid}")
        self.kid = kid


class ExpiredSigningKeyError(TokenInvalidError):
    """Token was signed by a key that is past its own expiry"""
    def __init__(self, kid: str):
        super().__init__(f"Signing key has expired: {kid}")
        self.kid = kid


class SessionRevokedError(AuthenticationError):
    """Access token belongs to a revoked or expired session"""
    def __init__(self):
        super().__init__("Session has been revoked")


class InvalidRefreshTokenError(AuthenticationError):
    """Refresh token is unknown, expired or revoked"""
    def __init__(self):
        super().__init__("Invalid refresh token")


class TokenReuseDetectedError(AuthenticationError):
    """A rotated-away refresh token was presented again"""
    def __init__(self):
        super().__init__("Token reuse detected")


# OAuth / OIDC errors, rendered as {"error", "error_description"}
class OAuthError(BaseAPIException):
    """Base error for the delegated authorization endpoints"""
    error = "invalid_request"

    def __init__(self, description: str, status_code: int = 400):
        super().__init__(description, status_code=status_code, details={"error": self.error})


class InvalidRequestError(OAuthError):
    error = "invalid_request"


class InvalidGrantError(OAuthError):
    error = "invalid_grant"


class InvalidOrExpiredCodeError(InvalidGrantError):
    def __init__(self):
        super().__init__("Invalid or expired authorization code")


class InvalidCodeVerifierError(InvalidGrantError):
    def __init__(self):
        super().__init__("Invalid code verifier")


class InvalidScopeError(OAuthError):
    error = "invalid_scope"


class InvalidClientError(OAuthError):
    error = "invalid_client"

    def __init__(self, description: str = "Unknown client or redirect URI"):
        super().__init__(description, status_code=400)


class UnsupportedGrantTypeError(OAuthError):
    error = "unsupported_grant_type"

    def __init__(self):
        super().__init__("Only authorization_code and refresh_token are supported")


class UnsupportedResponseTypeError(OAuthError):
    error = "unsupported_response_type"

    def __init__(self):
        super().__init__("Only authorization code flow is supported")


class InvalidTokenError(OAuthError):
    error = "invalid_token"

    def __init__(self, description: str = "Invalid access token"):
        super().__init__(description, status_code=401)


# Authorization Errors
class AuthorizationError(BaseAPIException):
    """Insufficient permissions"""
    def __init__(self, message: str = "Insufficient permissions"):
        super().__init__(message, status_code=403)


# Resource Errors
class ResourceNotFoundError(BaseAPIException):
    """Resource not found"""
    def __init__(self, resource: str):
        super().__init__(f"{resource} not found", status_code=404)


class ResourceAlreadyExistsError(BaseAPIException):
    """Resource already exists"""
    def __init__(self, resource: str):
        super().__init__(f"{resource} already exists", status_code=409)


# Validation Errors
class ValidationError(BaseAPIException):
    """Validation error"""
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, status_code=422, details=details)


class InvalidOneTimeTokenError(BaseAPIException):
    """Email verification / password reset token is unknown or expired"""
    def __init__(self):
        super().__init__("Invalid or expired token", status_code=400)


class CaptchaRequiredError(BaseAPIException):
    """Risk scoring requires a CAPTCHA for this flow"""
    def __init__(self, message: str = "CAPTCHA verification required"):
        super().__init__(message, status_code=400, details={"captcha_required": True})


class ConflictError(BaseAPIException):
    """Conditional update lost to a concurrent request (already used / revoked)"""
    def __init__(self, message: str = "Resource was modified by another request"):
        super().__init__(message, status_code=409)


class RateLimitExceededError(BaseAPIException):
    """Rate limit exceeded"""
    def __init__(self, message: str = "Rate limit exceeded. Please try again later.", retry_after: int = 60):
        super().__init__(message, status_code=429, details={"retry_after": retry_after})


# Dependency Errors
class ServiceUnavailableError(BaseAPIException):
    """Downstream dependency (store, key material) is unavailable"""
    def __init__(self, message: str = "Service temporarily unavailable"):
        super().__init__(message, status_code=503)


class DependencyTimeoutError(ServiceUnavailableError):
    """Downstream dependency did not answer within its bound"""
    def __init__(self, message: str = "Upstream dependency timed out"):
        super().__init__(message)
        self.status_code = 504


class SigningKeyUnavailableError(ServiceUnavailableError):
    """No active signing key is loaded"""
    def __init__(self):
        super().__init__("No active signing key available")

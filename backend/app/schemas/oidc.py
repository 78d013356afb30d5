"""Delegated authorization (OIDC-style) schemas"""

from typing import List, Optional

from pydantic import BaseModel


class AuthorizationRequest(BaseModel):
    """Validated /authorize parameters bound to an authorization code"""
    client_id: str
    redirect_uri: str
    scopes: List[str]
    code_challenge: str
    code_challenge_method: str = "S256"
    state: Optional[str] = None
    nonce: Optional[str] = None


class OIDCTokenResponse(BaseModel):
    access_token: str
    token_type: str = "Bearer"
    expires_in: int
    refresh_token: str
    scope: str
    id_token: Optional[str] = None


class IntrospectionResponse(BaseModel):
    active: bool
    sub: Optional[str] = None
    client_id: Optional[str] = None
    scope: Optional[str] = None
    exp: Optional[int] = None
    iat: Optional[int] = None
    iss: Optional[str] = None
    aud: Optional[str] = None
    sid: Optional[str] = None
    token_type: Optional[str] = None


class UserInfoResponse(BaseModel):
    sub: str
    email: Optional[str] = None
    email_verified: Optional[bool] = None


class RevocationResponse(BaseModel):
    success: bool = True
    message: Optional[str] = None

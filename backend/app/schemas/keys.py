"""Signing key schemas"""

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel


class JsonWebKey(BaseModel):
    kty: str = "oct"
    kid: str
    use: str = "sig"
    alg: str
    k: str
    created_at: int
    expires_at: int


class JWKSResponse(BaseModel):
    keys: List[JsonWebKey]


class SigningKeyInfo(BaseModel):
    kid: str
    created_at: datetime
    expires_at: datetime
    is_active: bool
    is_expired: bool


class KeyHealth(BaseModel):
    status: str
    current_kid: Optional[str] = None
    hours_until_expiry: Optional[float] = None
    total_keys: int = 0
    degraded: bool = False
    error: Optional[str] = None


class KeyStatusResponse(BaseModel):
    success: bool = True
    status: KeyHealth
    keys: List[SigningKeyInfo]


class KeyRotationResponse(BaseModel):
    success: bool = True
    message: str
    new_kid: str

"""Session and token schemas"""

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator

from app.schemas.user import UserResponse, _normalize_email


class DeviceInfo(BaseModel):
    """Device signals captured at login"""
    platform: str = Field(..., min_length=1, max_length=32)
    model: Optional[str] = Field(None, max_length=128)
    os_version: Optional[str] = Field(None, max_length=64)
    app_version: Optional[str] = Field(None, max_length=64)


class UserLogin(BaseModel):
    """User login schema"""
    email: str = Field(..., max_length=320)
    password: str = Field(..., min_length=1)
    captcha_token: Optional[str] = None
    device: Optional[DeviceInfo] = None

    @field_validator("email")
    @classmethod
    def email_format(cls, v):
        return _normalize_email(v)


class TokenPair(BaseModel):
    """Access token plus opaque refresh token, returned exactly once"""
    access_token: str
    refresh_token: str
    token_type: str = "Bearer"
    expires_in: int


class SessionSummary(BaseModel):
    id: str
    expires_at: datetime


class LoginResponse(BaseModel):
    """Login / refresh response"""
    success: bool = True
    user: UserResponse
    tokens: TokenPair
    session: SessionSummary
    roles: List[str] = []
    permissions: List[str] = []


class RefreshTokenRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1)


class SessionResponse(BaseModel):
    """Live session, as shown in session management"""
    id: str
    platform: Optional[str] = None
    device_handle: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: Optional[datetime] = None
    last_used_at: Optional[datetime] = None
    expires_at: datetime
    current: bool = False

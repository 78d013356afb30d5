"""Audit event response schemas."""

from datetime import datetime
from typing import Optional, Dict, Any

from pydantic import BaseModel


class AuthEventResponse(BaseModel):
    id: int
    user_id: Optional[int]
    event: str
    success: bool
    ip_address: Optional[str]
    metadata: Dict[str, Any] = {}
    created_at: Optional[datetime]

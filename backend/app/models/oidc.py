"""Delegated authorization (authorization code + PKCE) models."""

from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Text
from sqlalchemy.orm import relationship

from app.core.database import Base
from app.core.timeutils import utcnow


class AuthorizationCode(Base):
    """One-time code bound to a client, redirect URI and PKCE challenge."""

    __tablename__ = "authorization_codes"

    id = Column(Integer, primary_key=True, index=True)
    code_hash = Column(String(64), nullable=False, unique=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    client_id = Column(String(128), nullable=False)
    redirect_uri = Column(Text, nullable=False)
    scopes = Column(String(512), nullable=False)
    code_challenge = Column(String(128), nullable=False)
    code_challenge_method = Column(String(16), nullable=False, default="S256")
    nonce = Column(String(255), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    used_at = Column(DateTime(timezone=True), nullable=True)

    user = relationship("User")

    @property
    def scope_list(self):
        return self.scopes.split()


class DelegatedRefreshToken(Base):
    """Single-use refresh token issued to a third-party client."""

    __tablename__ = "delegated_refresh_tokens"

    id = Column(Integer, primary_key=True, index=True)
    token_hash = Column(String(64), nullable=False, unique=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    client_id = Column(String(128), nullable=False)
    scopes = Column(String(512), nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    used_at = Column(DateTime(timezone=True), nullable=True)

    user = relationship("User")

    @property
    def scope_list(self):
        return self.scopes.split()

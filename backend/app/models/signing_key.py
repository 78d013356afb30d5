"""Signing key persistence model."""

from sqlalchemy import Column, String, Boolean, DateTime, Text, Index, true
from sqlalchemy.sql import func

from app.core.database import Base


class SigningKey(Base):
    """Symmetric key material addressed by `kid` in token headers."""

    __tablename__ = "signing_keys"

    kid = Column(String(64), primary_key=True)
    secret = Column(Text, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False, index=True)
    is_active = Column(Boolean, default=False, nullable=False)
    deactivated_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        # at most one active key
        Index(
            "uq_signing_keys_single_active",
            "is_active",
            unique=True,
            postgresql_where=is_active == true(),
            sqlite_where=is_active == true(),
        ),
    )

    def __repr__(self):
        return f"<SigningKey(kid='{self.kid}', active={self.is_active})>"

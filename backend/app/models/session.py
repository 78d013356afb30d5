"""Session ledger persistence models."""

from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Index
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship

from app.core.database import Base
from app.core.timeutils import utcnow


class Device(Base):
    """A client device, identified by a stable fingerprint of its signals."""

    __tablename__ = "devices"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    device_handle = Column(String(64), nullable=False)
    platform = Column(String(32), nullable=False)
    model = Column(String(128), nullable=True)
    os_version = Column(String(64), nullable=True)
    app_version = Column(String(64), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    last_seen_at = Column(DateTime(timezone=True), default=utcnow)

    user = relationship("User", back_populates="devices")

    __table_args__ = (
        Index("uq_devices_user_handle", "user_id", "device_handle", unique=True),
    )


class AuthSession(Base):
    """
    One row per logged-in device.

    Rotation updates this row in place: `current_token_id` and
    `refresh_token_hash` change, `family_id` never does.
    """

    __tablename__ = "sessions"

    id = Column(String(36), primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    family_id = Column(String(36), nullable=False, index=True)
    current_token_id = Column(String(36), nullable=False)
    refresh_token_hash = Column(String(64), nullable=False, unique=True)
    device_id = Column(Integer, ForeignKey("devices.id", ondelete="SET NULL"), nullable=True)
    ip_address = Column(String(64), nullable=True)
    user_agent = Column(String(512), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    last_used_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    revoked_at = Column(DateTime(timezone=True), nullable=True)
    revoked_reason = Column(String(64), nullable=True)
    reused_token_id_of = Column(String(36), nullable=True)

    user = relationship("User", back_populates="sessions")
    device = relationship("Device")

    __table_args__ = (
        Index("idx_sessions_user_live", "user_id", "revoked_at", "expires_at"),
    )


class RetiredRefreshToken(Base):
    """Digest of a refresh token that was rotated away; presenting it again is reuse."""

    __tablename__ = "retired_refresh_tokens"

    id = Column(Integer, primary_key=True, index=True)
    token_hash = Column(String(64), nullable=False, unique=True)
    token_id = Column(String(36), nullable=False)
    session_id = Column(String(36), ForeignKey("sessions.id", ondelete="CASCADE"), nullable=False)
    family_id = Column(String(36), nullable=False, index=True)
    rotated_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

"""Append-only authentication audit trail."""

from sqlalchemy import Column, Integer, String, Boolean, DateTime, ForeignKey, Text, Index
from sqlalchemy.sql import func

from app.core.database import Base


class AuthEvent(Base):
    """Immutable auth events (login, refresh, revocations, token exchanges)."""

    __tablename__ = "auth_events"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    event = Column(String(64), nullable=False, index=True)
    success = Column(Boolean, nullable=False)
    ip_address = Column(String(64), nullable=True)
    metadata_json = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (
        Index("idx_auth_events_created_at", "created_at"),
    )

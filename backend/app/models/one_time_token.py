"""Single-use tokens for email verification and password reset."""

from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, CheckConstraint

from app.core.database import Base
from app.core.timeutils import utcnow


class OneTimeToken(Base):
    __tablename__ = "one_time_tokens"

    id = Column(Integer, primary_key=True, index=True)
    token_hash = Column(String(64), nullable=False, unique=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    purpose = Column(String(32), nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    used_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint(
            "purpose IN ('email_verification', 'password_reset')",
            name="chk_one_time_token_purpose",
        ),
    )

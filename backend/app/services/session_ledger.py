"""Session rows, refresh token rotation and reuse detection."""

from __future__ import annotations

import hashlib
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from app.config import settings
from app.core.database import store_operation
from app.core.exceptions import (
    AuthenticationError,
    InvalidRefreshTokenError,
    ResourceNotFoundError,
    SessionRevokedError,
    TokenInvalidError,
    TokenReuseDetectedError,
)
from app.core.metrics import TOKEN_REUSE_DETECTED
from app.core.security import generate_opaque_token, hash_opaque_token
from app.core.timeutils import as_naive_utc, utcnow
from app.models.session import AuthSession, Device, RetiredRefreshToken
from app.models.user import User
from app.schemas.auth import DeviceInfo, TokenPair
from app.services.audit_service import audit_recorder
from app.services.key_authority import key_authority

logger = logging.getLogger(__name__)


class RevocationResult(str, Enum):
    REVOKED = "revoked"
    ALREADY_REVOKED = "already_revoked"


@dataclass
class SessionGrant:
    session: AuthSession
    tokens: TokenPair


@dataclass
class RotationResult:
    user: User
    session: AuthSession
    tokens: TokenPair


@dataclass
class AccessContext:
    """Authenticated request: the token's user, its live session and the verified claims."""

    user: User
    session: AuthSession
    claims: Dict[str, Any]


class SessionLedger:
    """
    Session state machine.

    A session is `active`, rotates in place any number of times, and ends
    either `revoked` (stored) or expired (`expires_at <= now`). Every
    refresh token that is rotated away is remembered by digest; presenting
    one again revokes the whole family.
    """

    @staticmethod
    def is_live(session: AuthSession, now: Optional[datetime] = None) -> bool:
        now = now or utcnow()
        return session.revoked_at is None and as_naive_utc(session.expires_at) > now

    @staticmethod
    def device_handle_for(device: DeviceInfo) -> str:
        raw = "|".join([
            device.platform,
            device.model or "",
            device.os_version or "",
            device.app_version or "",
        ])
        return hashlib.sha256(raw.encode("utf-8")).hexdigest()

    def _upsert_device(self, db: Session, user_id: int, device: DeviceInfo, now: datetime) -> Device:
        handle = self.device_handle_for(device)
        row = (
            db.query(Device)
            .filter(Device.user_id == user_id, Device.device_handle == handle)
            .first()
        )
        if row is not None:
            row.last_seen_at = now
            return row

        row = Device(
            user_id=user_id,
            device_handle=handle,
            platform=device.platform,
            model=device.model,
            os_version=device.os_version,
            app_version=device.app_version,
            last_seen_at=now,
        )
        db.add(row)
        db.flush()
        return row

    @staticmethod
    def _mint_access_token(user_id: int, session_id: str) -> str:
        return key_authority.sign(
            {"sub": user_id, "sid": session_id},
            expires_delta=timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES),
        )

    @staticmethod
    def _token_pair(access_token: str, refresh_token: str) -> TokenPair:
        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_in=settings.ACCESS_TOKEN_EXPIRE_MINUTES * 60,
        )

    # ------------------------------------------------------------------
    # Creation and issuance
    # ------------------------------------------------------------------

    @store_operation("session creation")
    def create_session(
        self,
        db: Session,
        user: User,
        *,
        device: Optional[DeviceInfo] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> SessionGrant:
        """Root of a new rotation family; tokens are returned in plaintext exactly once."""
        now = utcnow()
        try:
            device_row = self._upsert_device(db, user.id, device, now) if device else None
            session = AuthSession(
                id=str(uuid.uuid4()),
                user_id=user.id,
                family_id=str(uuid.uuid4()),
                current_token_id=str(uuid.uuid4()),
                refresh_token_hash=f"pending:{uuid.uuid4().hex}",
                device_id=device_row.id if device_row is not None else None,
                ip_address=ip_address,
                user_agent=user_agent[:512] if user_agent else None,
                created_at=now,
                last_used_at=now,
                expires_at=now + timedelta(days=settings.REFRESH_TOKEN_EXPIRE_DAYS),
            )
            db.add(session)
            db.flush()
            tokens = self.issue_tokens(db, session)
            db.commit()
        except Exception:
            db.rollback()
            raise

        logger.info("Session %s created for user %s", session.id, user.id)
        return SessionGrant(session=session, tokens=tokens)

    def issue_tokens(self, db: Session, session: AuthSession) -> TokenPair:
        """Mint an access token and a fresh refresh token; only the refresh digest is stored. Caller commits."""
        refresh_token = generate_opaque_token()
        session.refresh_token_hash = hash_opaque_token(refresh_token)
        db.flush()
        return self._token_pair(self._mint_access_token(session.user_id, session.id), refresh_token)

    # ------------------------------------------------------------------
    # Rotation
    # ------------------------------------------------------------------

    @store_operation("refresh token rotation")
    def rotate(
        self,
        db: Session,
        refresh_token: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> RotationResult:
        """
        Exchange a refresh token for a new pair.

        Raises:
            InvalidRefreshTokenError: Unknown, expired or revoked token, or inactive user
            TokenReuseDetectedError: The token was already rotated away; its family is revoked
        """
        if not refresh_token:
            raise InvalidRefreshTokenError()

        token_hash = hash_opaque_token(refresh_token)
        session = self._find_by_token_hash(db, token_hash)

        if session is None:
            retired = (
                db.query(RetiredRefreshToken)
                .filter(RetiredRefreshToken.token_hash == token_hash)
                .first()
            )
            if retired is not None:
                owner_id = (
                    db.query(AuthSession.user_id)
                    .filter(AuthSession.id == retired.session_id)
                    .scalar()
                )
                self._handle_reuse(
                    db,
                    family_id=retired.family_id,
                    token_id=retired.token_id,
                    user_id=owner_id,
                    ip_address=ip_address,
                )
            self._reject(db, None, "unknown_token", ip_address)

        now = utcnow()
        if session.reused_token_id_of is not None:
            self._handle_reuse(
                db,
                family_id=session.family_id,
                token_id=session.current_token_id,
                user_id=session.user_id,
                ip_address=ip_address,
            )
        if not self.is_live(session, now):
            self._reject(db, session.user_id, "session_not_live", ip_address)

        user = session.user
        if user is None or not user.is_active:
            self._reject(db, session.user_id, "user_inactive", ip_address)

        # rollback expires ORM state; keep what the reuse path needs
        session_id = session.id
        family_id = session.family_id
        user_id = session.user_id
        previous_token_id = session.current_token_id
        previous_used = as_naive_utc(session.last_used_at)
        last_used_at = now
        if previous_used is not None and last_used_at <= previous_used:
            last_used_at = previous_used + timedelta(microseconds=1)

        new_refresh_token = generate_opaque_token()
        try:
            updated = (
                db.query(AuthSession)
                .filter(
                    AuthSession.id == session_id,
                    AuthSession.refresh_token_hash == token_hash,
                    AuthSession.revoked_at.is_(None),
                )
                .update(
                    {
                        "current_token_id": str(uuid.uuid4()),
                        "refresh_token_hash": hash_opaque_token(new_refresh_token),
                        "last_used_at": last_used_at,
                    },
                    synchronize_session=False,
                )
            )
            if updated != 1:
                # lost a race against another rotation of the same token
                db.rollback()
                self._handle_reuse(
                    db,
                    family_id=family_id,
                    token_id=previous_token_id,
                    user_id=user_id,
                    ip_address=ip_address,
                )
            db.add(
                RetiredRefreshToken(
                    token_hash=token_hash,
                    token_id=previous_token_id,
                    session_id=session_id,
                    family_id=family_id,
                    rotated_at=now,
                )
            )
            db.commit()
        except IntegrityError:
            db.rollback()
            self._handle_reuse(
                db,
                family_id=family_id,
                token_id=previous_token_id,
                user_id=user_id,
                ip_address=ip_address,
            )
        except SQLAlchemyError:
            db.rollback()
            raise

        access_token = self._mint_access_token(user_id, session_id)
        audit_recorder.record(
            db,
            user_id=user_id,
            event="token_refresh",
            success=True,
            ip_address=ip_address,
            metadata={"session_id": session_id, "user_agent": user_agent},
        )
        db.refresh(session)
        return RotationResult(
            user=user,
            session=session,
            tokens=self._token_pair(access_token, new_refresh_token),
        )

    def _find_by_token_hash(self, db: Session, token_hash: str) -> Optional[AuthSession]:
        return (
            db.query(AuthSession)
            .filter(AuthSession.refresh_token_hash == token_hash)
            .first()
        )

    def _reject(self, db: Session, user_id: Optional[int], reason: str, ip_address: Optional[str]) -> None:
        db.rollback()
        audit_recorder.record(
            db,
            user_id=user_id,
            event="token_refresh",
            success=False,
            ip_address=ip_address,
            metadata={"reason": reason},
        )
        raise InvalidRefreshTokenError()

    def _handle_reuse(
        self,
        db: Session,
        *,
        family_id: str,
        token_id: str,
        user_id: Optional[int],
        ip_address: Optional[str],
    ) -> None:
        revoked = self._revoke_family_rows(db, family_id, "token_reuse", reused_token_id=token_id)
        db.commit()
        TOKEN_REUSE_DETECTED.inc()
        logger.warning(
            "Refresh token reuse detected: family=%s token=%s user=%s ip=%s, revoked %d sessions",
            family_id, token_id, user_id, ip_address, revoked,
        )
        audit_recorder.record(
            db,
            user_id=user_id,
            event="token_reuse_detected",
            success=False,
            ip_address=ip_address,
            metadata={"family_id": family_id, "token_id": token_id, "revoked_sessions": revoked},
        )
        raise TokenReuseDetectedError()

    # ------------------------------------------------------------------
    # Revocation
    # ------------------------------------------------------------------

    @staticmethod
    def _revoke_family_rows(
        db: Session,
        family_id: str,
        reason: str,
        reused_token_id: Optional[str] = None,
    ) -> int:
        now = utcnow()
        count = (
            db.query(AuthSession)
            .filter(AuthSession.family_id == family_id, AuthSession.revoked_at.is_(None))
            .update({"revoked_at": now, "revoked_reason": reason}, synchronize_session=False)
        )
        if reused_token_id is not None:
            db.query(AuthSession).filter(
                AuthSession.family_id == family_id,
                AuthSession.reused_token_id_of.is_(None),
            ).update({"reused_token_id_of": reused_token_id}, synchronize_session=False)
        return count

    @store_operation("session revoke")
    def revoke(
        self,
        db: Session,
        session_id: str,
        *,
        reason: str = "logout",
        user_id: Optional[int] = None,
        ip_address: Optional[str] = None,
    ) -> RevocationResult:
        """Idempotent. When `user_id` is given, other users' sessions read as not found."""
        query = db.query(AuthSession).filter(AuthSession.id == session_id)
        if user_id is not None:
            query = query.filter(AuthSession.user_id == user_id)
        session = query.first()
        if session is None:
            raise ResourceNotFoundError("Session")

        owner_id = session.user_id
        updated = (
            db.query(AuthSession)
            .filter(AuthSession.id == session_id, AuthSession.revoked_at.is_(None))
            .update({"revoked_at": utcnow(), "revoked_reason": reason}, synchronize_session=False)
        )
        db.commit()

        if updated == 0:
            return RevocationResult.ALREADY_REVOKED

        audit_recorder.record(
            db,
            user_id=owner_id,
            event="session_revoked",
            success=True,
            ip_address=ip_address,
            metadata={"session_id": session_id, "reason": reason},
        )
        return RevocationResult.REVOKED

    @store_operation("family revoke")
    def revoke_family(self, db: Session, family_id: str, *, reason: str) -> int:
        count = self._revoke_family_rows(db, family_id, reason)
        db.commit()
        logger.info("Revoked %d sessions in family %s (%s)", count, family_id, reason)
        return count

    @store_operation("user session revoke")
    def revoke_all_for_user(self, db: Session, user_id: int, *, reason: str, commit: bool = True) -> int:
        """Sign out everywhere. With `commit=False` the caller's transaction carries the update."""
        count = (
            db.query(AuthSession)
            .filter(AuthSession.user_id == user_id, AuthSession.revoked_at.is_(None))
            .update({"revoked_at": utcnow(), "revoked_reason": reason}, synchronize_session=False)
        )
        if commit:
            db.commit()
        logger.info("Revoked %d sessions for user %s (%s)", count, user_id, reason)
        return count

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @store_operation("session listing")
    def list_active_sessions(self, db: Session, user_id: int) -> List[AuthSession]:
        return (
            db.query(AuthSession)
            .filter(
                AuthSession.user_id == user_id,
                AuthSession.revoked_at.is_(None),
                AuthSession.expires_at > utcnow(),
            )
            .order_by(AuthSession.last_used_at.desc())
            .all()
        )

    @store_operation("access token authentication")
    def authenticate_access_token(self, db: Session, token: str) -> AccessContext:
        """
        Resolve a bearer access token to its user and live session.

        Raises:
            TokenInvalidError / TokenExpiredError: Verification failed
            SessionRevokedError: The session was revoked or has expired
        """
        claims = key_authority.verify(token)
        session_id = claims.get("sid")
        subject = claims.get("sub")
        if not session_id or not subject:
            raise TokenInvalidError("Token is not bound to a session")

        session = db.query(AuthSession).filter(AuthSession.id == session_id).first()
        if session is None or str(session.user_id) != str(subject) or not self.is_live(session):
            raise SessionRevokedError()

        user = session.user
        if user is None or not user.is_active:
            raise AuthenticationError("User not found or inactive")
        return AccessContext(user=user, session=session, claims=claims)

    @store_operation("session purge")
    def purge_expired(self, db: Session, *, older_than: datetime) -> int:
        """Hard-delete sessions that expired or were revoked before `older_than`."""
        stale_ids = [
            sid
            for (sid,) in db.query(AuthSession.id)
            .filter(or_(AuthSession.expires_at < older_than, AuthSession.revoked_at < older_than))
            .all()
        ]
        if not stale_ids:
            return 0
        try:
            db.query(RetiredRefreshToken).filter(
                RetiredRefreshToken.session_id.in_(stale_ids)
            ).delete(synchronize_session=False)
            db.query(AuthSession).filter(AuthSession.id.in_(stale_ids)).delete(synchronize_session=False)
            db.commit()
        except SQLAlchemyError:
            db.rollback()
            raise
        logger.info("Purged %d stale sessions", len(stale_ids))
        return len(stale_ids)


session_ledger = SessionLedger()

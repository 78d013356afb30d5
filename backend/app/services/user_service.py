"""User service - registration, credential verification and account lifecycle"""

from dataclasses import dataclass
from datetime import timedelta
from typing import Optional
import logging

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.config import settings
from app.core.database import store_operation
from app.core.exceptions import (
    AccountNotActiveError,
    ConflictError,
    InvalidCredentialsError,
    InvalidOneTimeTokenError,
    ResourceAlreadyExistsError,
    ResourceNotFoundError,
)
from app.core.security import (
    burn_password_check,
    generate_opaque_token,
    get_password_hash,
    hash_opaque_token,
    verify_password,
)
from app.core.timeutils import as_naive_utc, utcnow
from app.models.one_time_token import OneTimeToken
from app.models.user import User
from app.schemas.auth import DeviceInfo, TokenPair
from app.schemas.user import UserRegister, UserStatus
from app.models.session import AuthSession
from app.services.audit_service import audit_recorder
from app.services.collaborators import EmailSender, collaborators
from app.services.session_ledger import session_ledger

logger = logging.getLogger(__name__)

EMAIL_VERIFICATION = "email_verification"
PASSWORD_RESET = "password_reset"


@dataclass
class LoginResult:
    user: User
    session: AuthSession
    tokens: TokenPair


class UserService:
    """Service for user identity and credentials"""

    @staticmethod
    def get_user_by_id(db: Session, user_id: int) -> Optional[User]:
        """Get user by ID (soft-deleted users are never returned)"""
        return db.query(User).filter(User.id == user_id, User.deleted_at.is_(None)).first()

    @staticmethod
    def get_user_by_email(db: Session, email: str) -> Optional[User]:
        """Get user by normalized email (soft-deleted users are never returned)"""
        return (
            db.query(User)
            .filter(User.email == email.strip().lower(), User.deleted_at.is_(None))
            .first()
        )

    # ------------------------------------------------------------------
    # One-time tokens
    # ------------------------------------------------------------------

    @staticmethod
    def _issue_one_time_token(db: Session, user_id: int, purpose: str, lifetime: timedelta) -> str:
        """Stage a single-use token; the caller commits."""
        token = generate_opaque_token()
        db.add(
            OneTimeToken(
                token_hash=hash_opaque_token(token),
                user_id=user_id,
                purpose=purpose,
                expires_at=utcnow() + lifetime,
            )
        )
        return token

    @staticmethod
    def _consume_one_time_token(db: Session, token: str, purpose: str) -> OneTimeToken:
        """
        Mark a one-time token used; the caller commits.

        Raises:
            InvalidOneTimeTokenError: Unknown, expired, used, or issued for another purpose
            ConflictError: A concurrent request consumed it first
        """
        if not token:
            raise InvalidOneTimeTokenError()

        now = utcnow()
        record = (
            db.query(OneTimeToken)
            .filter(OneTimeToken.token_hash == hash_opaque_token(token), OneTimeToken.purpose == purpose)
            .first()
        )
        if record is None or record.used_at is not None or as_naive_utc(record.expires_at) <= now:
            raise InvalidOneTimeTokenError()

        updated = (
            db.query(OneTimeToken)
            .filter(OneTimeToken.id == record.id, OneTimeToken.used_at.is_(None))
            .update({"used_at": now}, synchronize_session=False)
        )
        if updated != 1:
            db.rollback()
            raise ConflictError("Token has already been used")
        return record

    # ------------------------------------------------------------------
    # Registration and verification
    # ------------------------------------------------------------------

    @store_operation("registration")
    def register_user(
        self,
        db: Session,
        user_data: UserRegister,
        email_sender: Optional[EmailSender] = None,
    ) -> User:
        """
        Create a pending user and send the email verification token

        Args:
            db: Database session
            user_data: Registration payload
            email_sender: Delivery collaborator (defaults to the configured one)

        Returns:
            Created user
        """
        if db.query(User).filter(User.email == user_data.email).first():
            raise ResourceAlreadyExistsError("User")

        user = User(
            email=user_data.email,
            password_hash=get_password_hash(user_data.password),
            status=UserStatus.PENDING.value,
        )
        db.add(user)
        try:
            db.flush()
        except IntegrityError:
            db.rollback()
            raise ResourceAlreadyExistsError("User")

        token = self._issue_one_time_token(
            db, user.id, EMAIL_VERIFICATION, timedelta(hours=settings.EMAIL_VERIFICATION_EXPIRE_HOURS)
        )
        db.commit()
        db.refresh(user)

        sender = email_sender or collaborators.email
        try:
            sender.send_verification_email(user.id, user.email, token)
        except Exception as exc:
            # the account exists either way; delivery is the mail service's concern
            logger.exception("Verification email for user %s could not be handed off: %s", user.id, exc)

        audit_recorder.record(db, user_id=user.id, event="register", success=True)
        logger.info("Registered user %s", user.id)
        return user

    @store_operation("email verification")
    def verify_email(self, db: Session, token: str) -> User:
        record = self._consume_one_time_token(db, token, EMAIL_VERIFICATION)
        user = self.get_user_by_id(db, record.user_id)
        if user is None:
            db.rollback()
            raise InvalidOneTimeTokenError()

        if user.email_verified_at is None:
            user.email_verified_at = utcnow()
        if user.status == UserStatus.PENDING.value:
            user.status = UserStatus.ACTIVE.value
        db.commit()
        db.refresh(user)

        audit_recorder.record(db, user_id=user.id, event="email_verified", success=True)
        return user

    # ------------------------------------------------------------------
    # Credentials
    # ------------------------------------------------------------------

    @store_operation("authentication")
    def authenticate(self, db: Session, email: str, password: str, ip_address: Optional[str] = None) -> User:
        """
        Verify a primary credential.

        Unknown email and wrong password are indistinguishable to the caller,
        both in the error and in the time taken.

        Raises:
            InvalidCredentialsError: Unknown email or wrong password
            AccountNotActiveError: Correct password, account pending or suspended
        """
        user = self.get_user_by_email(db, email)

        if user is None or not user.password_hash:
            burn_password_check(password)
            self._login_failed(db, None, "unknown_email", ip_address)
            raise InvalidCredentialsError()

        if not verify_password(password, user.password_hash):
            self._login_failed(db, user.id, "wrong_password", ip_address)
            raise InvalidCredentialsError()

        if user.status != UserStatus.ACTIVE.value:
            self._login_failed(db, user.id, f"account_{user.status}", ip_address)
            raise AccountNotActiveError()

        return user

    @staticmethod
    def _login_failed(db: Session, user_id: Optional[int], reason: str, ip_address: Optional[str]) -> None:
        logger.info("Login failed (%s) for user %s from %s", reason, user_id, ip_address)
        audit_recorder.record(
            db,
            user_id=user_id,
            event="login",
            success=False,
            ip_address=ip_address,
            metadata={"reason": reason},
        )

    def login(
        self,
        db: Session,
        email: str,
        password: str,
        *,
        device: Optional[DeviceInfo] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> LoginResult:
        user = self.authenticate(db, email, password, ip_address)
        user.last_login = utcnow()
        grant = session_ledger.create_session(
            db, user, device=device, ip_address=ip_address, user_agent=user_agent
        )
        audit_recorder.record(
            db,
            user_id=user.id,
            event="login",
            success=True,
            ip_address=ip_address,
            metadata={"session_id": grant.session.id, "platform": device.platform if device else None},
        )
        logger.info("User %s logged in (session %s)", user.id, grant.session.id)
        return LoginResult(user=user, session=grant.session, tokens=grant.tokens)

    # ------------------------------------------------------------------
    # Password reset
    # ------------------------------------------------------------------

    @store_operation("password reset request")
    def request_password_reset(
        self,
        db: Session,
        email: str,
        email_sender: Optional[EmailSender] = None,
        ip_address: Optional[str] = None,
    ) -> None:
        """Unknown emails are accepted silently."""
        user = self.get_user_by_email(db, email)
        if user is None:
            logger.info("Password reset requested for unknown email")
            return

        token = self._issue_one_time_token(
            db, user.id, PASSWORD_RESET, timedelta(minutes=settings.PASSWORD_RESET_EXPIRE_MINUTES)
        )
        db.commit()

        sender = email_sender or collaborators.email
        try:
            sender.send_password_reset_email(user.id, user.email, token)
        except Exception as exc:
            logger.exception("Password reset email for user %s could not be handed off: %s", user.id, exc)

        audit_recorder.record(db, user_id=user.id, event="password_reset_requested", success=True, ip_address=ip_address)

    @store_operation("password reset")
    def reset_password(self, db: Session, token: str, new_password: str, ip_address: Optional[str] = None) -> int:
        """
        Replace the password and sign the user out everywhere

        Returns:
            int: Number of sessions revoked
        """
        record = self._consume_one_time_token(db, token, PASSWORD_RESET)
        user = self.get_user_by_id(db, record.user_id)
        if user is None:
            db.rollback()
            raise InvalidOneTimeTokenError()

        user.password_hash = get_password_hash(new_password)
        # any other outstanding reset links die with this one
        db.query(OneTimeToken).filter(
            OneTimeToken.user_id == user.id,
            OneTimeToken.purpose == PASSWORD_RESET,
            OneTimeToken.used_at.is_(None),
        ).update({"used_at": utcnow()}, synchronize_session=False)
        revoked = session_ledger.revoke_all_for_user(db, user.id, reason="password_reset", commit=False)
        db.commit()

        audit_recorder.record(
            db,
            user_id=user.id,
            event="password_reset",
            success=True,
            ip_address=ip_address,
            metadata={"revoked_sessions": revoked},
        )
        logger.info("Password reset for user %s, %d sessions revoked", user.id, revoked)
        return revoked

    # ------------------------------------------------------------------
    # Administrative lifecycle
    # ------------------------------------------------------------------

    @store_operation("user status change")
    def set_status(self, db: Session, user_id: int, status: UserStatus, actor_id: Optional[int] = None) -> User:
        user = self.get_user_by_id(db, user_id)
        if not user:
            raise ResourceNotFoundError("User")

        previous = user.status
        user.status = UserStatus(status).value
        revoked = 0
        if user.status != UserStatus.ACTIVE.value:
            revoked = session_ledger.revoke_all_for_user(
                db, user.id, reason=f"status_{user.status}", commit=False
            )
        db.commit()
        db.refresh(user)

        audit_recorder.record(
            db,
            user_id=user.id,
            event="status_changed",
            success=True,
            metadata={"from": previous, "to": user.status, "actor_id": actor_id, "revoked_sessions": revoked},
        )
        logger.info("User %s status %s -> %s", user.id, previous, user.status)
        return user

    @store_operation("user deletion")
    def soft_delete_user(self, db: Session, user_id: int) -> int:
        """
        Hide the user from every lookup and end all of its sessions

        Returns:
            int: Number of sessions revoked
        """
        user = self.get_user_by_id(db, user_id)
        if not user:
            raise ResourceNotFoundError("User")

        user.deleted_at = utcnow()
        revoked = session_ledger.revoke_all_for_user(db, user.id, reason="user_deleted", commit=False)
        db.commit()

        audit_recorder.record(db, user_id=user_id, event="user_deleted", success=True)
        logger.info("Soft-deleted user %s", user_id)
        return revoked


# Singleton instance
user_service = UserService()

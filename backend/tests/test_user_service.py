import pytest
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from app.core.exceptions import (
    AccountNotActiveError,
    ConflictError,
    InvalidCredentialsError,
    InvalidOneTimeTokenError,
    ResourceAlreadyExistsError,
    ResourceNotFoundError,
)
from app.core.security import verify_password
from app.models.audit import AuthEvent
from app.models.one_time_token import OneTimeToken
from app.models.session import AuthSession
from app.models.user import User
from app.schemas.user import UserRegister, UserStatus
from app.services import audit_service
from app.services.session_ledger import session_ledger
from app.services.user_service import EMAIL_VERIFICATION, PASSWORD_RESET, user_service

from conftest import PASSWORD


class RecordingEmailSender:
    def __init__(self):
        self.verification = []
        self.reset = []

    def send_verification_email(self, user_id, email, token):
        self.verification.append((user_id, email, token))

    def send_password_reset_email(self, user_id, email, token):
        self.reset.append((user_id, email, token))


class FailingAuditSession(Session):
    def add(self, instance, _warn=True):
        raise OperationalError("INSERT INTO auth_events", {}, Exception("disk I/O error"))


class BrokenEmailSender:
    def send_verification_email(self, user_id, email, token):
        raise ConnectionError("smtp down")

    def send_password_reset_email(self, user_id, email, token):
        raise ConnectionError("smtp down")


def test_register_creates_pending_user_and_sends_token(db):
    sender = RecordingEmailSender()
    user = user_service.register_user(
        db, UserRegister(email="  Bob@Example.com ", password="long-enough-pw"), email_sender=sender
    )

    assert user.email == "bob@example.com"
    assert user.status == "pending"
    assert user.email_verified is False
    assert verify_password("long-enough-pw", user.password_hash)
    assert len(sender.verification) == 1
    assert db.query(OneTimeToken).filter(OneTimeToken.purpose == EMAIL_VERIFICATION).count() == 1


def test_register_duplicate_email(db, make_user):
    make_user("bob@example.com")
    with pytest.raises(ResourceAlreadyExistsError):
        user_service.register_user(
            db, UserRegister(email="bob@example.com", password="long-enough-pw"), email_sender=RecordingEmailSender()
        )


def test_register_survives_email_delivery_failure(db):
    user = user_service.register_user(
        db, UserRegister(email="carol@example.com", password="long-enough-pw"), email_sender=BrokenEmailSender()
    )
    assert db.query(User).filter(User.id == user.id).count() == 1


def test_verify_email_activates_once(db):
    sender = RecordingEmailSender()
    user_service.register_user(
        db, UserRegister(email="dave@example.com", password="long-enough-pw"), email_sender=sender
    )
    token = sender.verification[0][2]

    user = user_service.verify_email(db, token)
    assert user.status == "active"
    assert user.email_verified is True

    with pytest.raises(InvalidOneTimeTokenError):
        user_service.verify_email(db, token)


def test_one_time_token_purpose_is_enforced(db, make_user):
    user = make_user()
    sender = RecordingEmailSender()
    user_service.request_password_reset(db, user.email, email_sender=sender)
    reset_token = sender.reset[0][2]

    with pytest.raises(InvalidOneTimeTokenError):
        user_service.verify_email(db, reset_token)


def test_one_time_token_lost_race_is_conflict(db, session_factory, make_user):
    user = make_user()
    sender = RecordingEmailSender()
    user_service.request_password_reset(db, user.email, email_sender=sender)
    token = sender.reset[0][2]

    # loaded before the concurrent request consumes it
    stale = db.query(OneTimeToken).filter(OneTimeToken.purpose == PASSWORD_RESET).one()
    assert stale.used_at is None

    other = session_factory()
    try:
        user_service.reset_password(other, token, "brand-new-password")
    finally:
        other.close()

    with pytest.raises(ConflictError):
        user_service.reset_password(db, token, "another-password")


def test_authenticate_unknown_and_wrong_password_look_the_same(db, make_user):
    make_user("erin@example.com")

    with pytest.raises(InvalidCredentialsError) as unknown:
        user_service.authenticate(db, "nobody@example.com", PASSWORD)
    with pytest.raises(InvalidCredentialsError) as wrong:
        user_service.authenticate(db, "erin@example.com", "not-the-password")

    assert unknown.value.message == wrong.value.message
    assert unknown.value.status_code == wrong.value.status_code == 401


def test_authenticate_pending_account(db, make_user):
    make_user("frank@example.com", status="pending")
    with pytest.raises(AccountNotActiveError):
        user_service.authenticate(db, "frank@example.com", PASSWORD)


def test_authenticate_ignores_soft_deleted_users(db, make_user):
    user = make_user("gina@example.com")
    user_service.soft_delete_user(db, user.id)

    with pytest.raises(InvalidCredentialsError):
        user_service.authenticate(db, "gina@example.com", PASSWORD)
    assert user_service.get_user_by_id(db, user.id) is None


def test_login_opens_session_and_audits(authority, db, make_user):
    user = make_user()
    result = user_service.login(db, user.email, PASSWORD, ip_address="198.51.100.4", user_agent="pytest")

    assert result.user.id == user.id
    assert result.user.last_login is not None
    assert db.query(AuthSession).filter(AuthSession.user_id == user.id).count() == 1
    event = db.query(AuthEvent).filter(AuthEvent.event == "login", AuthEvent.success.is_(True)).one()
    assert event.ip_address == "198.51.100.4"


def test_login_succeeds_when_audit_store_fails(authority, db, make_user, monkeypatch):
    user = make_user()
    monkeypatch.setattr(audit_service, "Session", FailingAuditSession)

    result = user_service.login(db, user.email, PASSWORD)

    assert result.tokens.access_token
    assert db.query(AuthSession).count() == 1
    assert db.query(AuthEvent).count() == 0


def test_failed_login_is_audited(db, make_user):
    user = make_user()
    with pytest.raises(InvalidCredentialsError):
        user_service.authenticate(db, user.email, "bad-password", ip_address="192.0.2.1")

    event = db.query(AuthEvent).one()
    assert event.success is False
    assert event.user_id == user.id


def test_password_reset_revokes_every_session(authority, db, make_user):
    user = make_user()
    first = session_ledger.create_session(db, user)
    second = session_ledger.create_session(db, user)
    sender = RecordingEmailSender()
    user_service.request_password_reset(db, user.email, email_sender=sender)
    user_service.request_password_reset(db, user.email, email_sender=sender)

    revoked = user_service.reset_password(db, sender.reset[0][2], "brand-new-password")

    assert revoked == 2
    assert session_ledger.list_active_sessions(db, user.id) == []
    db.expire_all()
    assert all(s.revoked_reason == "password_reset" for s in db.query(AuthSession).all())
    assert {first.session.id, second.session.id} == {s.id for s in db.query(AuthSession).all()}
    assert user_service.authenticate(db, user.email, "brand-new-password").id == user.id

    # the second outstanding link died with the first
    with pytest.raises(InvalidOneTimeTokenError):
        user_service.reset_password(db, sender.reset[1][2], "another-password")


def test_password_reset_token_is_single_use(authority, db, make_user):
    user = make_user()
    sender = RecordingEmailSender()
    user_service.request_password_reset(db, user.email, email_sender=sender)
    token = sender.reset[0][2]

    user_service.reset_password(db, token, "brand-new-password")
    with pytest.raises(InvalidOneTimeTokenError):
        user_service.reset_password(db, token, "yet-another-password")


def test_password_reset_request_for_unknown_email_is_silent(db):
    sender = RecordingEmailSender()
    assert user_service.request_password_reset(db, "ghost@example.com", email_sender=sender) is None
    assert sender.reset == []


def test_suspending_user_revokes_sessions(authority, db, make_user):
    user = make_user()
    session_ledger.create_session(db, user)

    updated = user_service.set_status(db, user.id, UserStatus.SUSPENDED, actor_id=99)

    assert updated.status == "suspended"
    assert session_ledger.list_active_sessions(db, user.id) == []


def test_set_status_unknown_user(db):
    with pytest.raises(ResourceNotFoundError):
        user_service.set_status(db, 12345, UserStatus.ACTIVE)

from datetime import timedelta

from app.core.timeutils import utcnow
from app.models.session import AuthSession
from app.models.signing_key import SigningKey
from app.services.key_rotation_worker import KeyRotationWorker
from app.services.session_ledger import session_ledger


class ExplodingAuthority:
    def check_and_rotate(self):
        raise RuntimeError("store is down")


def test_tick_rotates_and_purges(authority, session_factory, db, make_user):
    user = make_user()
    session_id = session_ledger.create_session(db, user).session.id
    db.query(AuthSession).update(
        {"expires_at": utcnow() - timedelta(days=90), "revoked_at": utcnow() - timedelta(days=90)},
        synchronize_session=False,
    )
    old_kid = authority.snapshot().active_kid
    # the stored key is near expiry even though this process loaded it fresh
    db.query(SigningKey).filter(SigningKey.kid == old_kid).update(
        {"expires_at": utcnow() + timedelta(minutes=30)}, synchronize_session=False
    )
    db.commit()

    worker = KeyRotationWorker(authority=authority, session_factory=session_factory, interval_seconds=60)

    assert worker.tick() is True
    assert authority.snapshot().active_kid != old_kid
    assert db.query(SigningKey).filter(SigningKey.is_active.is_(True)).count() == 1
    assert db.query(AuthSession).filter(AuthSession.id == session_id).count() == 0
    status = worker.status()
    assert status["tick_count"] == 1
    assert status["failure_count"] == 0
    assert status["last_heartbeat"] > 0


def test_failed_tick_is_recorded_and_does_not_raise(session_factory):
    worker = KeyRotationWorker(authority=ExplodingAuthority(), session_factory=session_factory, interval_seconds=60)

    assert worker.tick() is False

    status = worker.status()
    assert status["failure_count"] == 1
    assert status["last_error"] == "key rotation: store is down"
    assert status["tick_count"] == 1


def test_start_and_stop(authority):
    worker = KeyRotationWorker(authority=authority, interval_seconds=3600)
    worker.start()
    try:
        assert worker.is_running()
        assert worker.status()["running"] is True
    finally:
        worker.stop()
    assert not worker.is_running()

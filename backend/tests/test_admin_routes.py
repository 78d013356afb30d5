from app.api.v1 import admin as admin_routes
from app.models.audit import AuthEvent
from app.models.signing_key import SigningKey
from app.schemas.user import UserStatus, UserStatusUpdate
from app.services.session_ledger import session_ledger
from app.services.user_service import user_service


def test_rotate_keys_keeps_previous_key_published(authority, db, make_user, request_stub):
    admin = make_user("admin@example.com")
    old_kid = authority.snapshot().active_kid

    response = admin_routes.rotate_keys(request_stub, current_user=admin, db=db)

    assert response.success is True
    assert response.new_kid != old_kid
    assert db.query(SigningKey).count() == 2
    event = db.query(AuthEvent).filter(AuthEvent.event == "key_rotated").one()
    assert event.user_id == admin.id
    assert admin_routes.audit_recorder.decode_metadata(event) == {"kid": response.new_kid}


def test_key_status_lists_keys(authority, db, make_user, request_stub):
    admin = make_user("admin@example.com")
    admin_routes.rotate_keys(request_stub, current_user=admin, db=db)

    status = admin_routes.key_status(current_user=admin)

    assert status.status.status == "healthy"
    assert len(status.keys) == 2
    assert [k.is_active for k in status.keys].count(True) == 1


def test_audit_events_filter_and_order(authority, db, make_user, request_stub):
    admin = make_user("admin@example.com")
    user = make_user("alice@example.com")
    user_service.login(db, user.email, "correct horse battery", ip_address="10.1.1.1")
    admin_routes.rotate_keys(request_stub, current_user=admin, db=db)

    everything = admin_routes.get_audit_events(limit=100, event=None, user_id=None, current_user=admin, db=db)
    assert [e.event for e in everything][:2] == ["key_rotated", "login"]

    logins = admin_routes.get_audit_events(limit=100, event="login", user_id=user.id, current_user=admin, db=db)
    assert len(logins) == 1
    assert logins[0].ip_address == "10.1.1.1"
    assert "session_id" in logins[0].metadata


def test_suspend_user_revokes_sessions(authority, db, make_user):
    admin = make_user("admin@example.com")
    user = make_user("alice@example.com")
    session_ledger.create_session(db, user)

    updated = admin_routes.update_user_status(
        user.id, UserStatusUpdate(status=UserStatus.SUSPENDED), current_user=admin, db=db
    )

    assert updated.status == "suspended"
    assert session_ledger.list_active_sessions(db, user.id) == []


def test_delete_user_revokes_sessions(authority, db, make_user):
    admin = make_user("admin@example.com")
    user = make_user("alice@example.com")
    session_ledger.create_session(db, user)

    result = admin_routes.delete_user(user.id, current_user=admin, db=db)

    assert result == {"success": True, "message": "User deleted", "revoked_sessions": 1}
    assert user_service.get_user_by_id(db, user.id) is None

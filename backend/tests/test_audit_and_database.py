import pytest
from sqlalchemy.exc import OperationalError, TimeoutError as PoolTimeoutError

from app.core.database import store_guard, store_operation
from app.core.exceptions import DependencyTimeoutError, ServiceUnavailableError
from app.models.audit import AuthEvent
from app.services.audit_service import audit_recorder


class PgError(Exception):
    def __init__(self, pgcode):
        super().__init__("canceling statement due to statement timeout")
        self.pgcode = pgcode


def test_events_are_listed_newest_first(db, make_user):
    user = make_user()
    audit_recorder.record(db, user_id=user.id, event="login", success=True, metadata={"session_id": 1})
    audit_recorder.record(db, user_id=user.id, event="logout", success=True)
    audit_recorder.record(db, user_id=None, event="login_failed", success=False, ip_address="10.0.0.9")

    events = audit_recorder.list_events(db)
    assert [e.event for e in events] == ["login_failed", "logout", "login"]

    mine = audit_recorder.list_events(db, user_id=user.id, event="login")
    assert len(mine) == 1
    assert audit_recorder.decode_metadata(mine[0]) == {"session_id": 1}

    assert len(audit_recorder.list_events(db, limit=2)) == 2


def test_broken_metadata_decodes_empty():
    assert audit_recorder.decode_metadata(AuthEvent(event="login", success=True, metadata_json="{not json")) == {}


def test_pool_timeout_maps_to_504():
    with pytest.raises(DependencyTimeoutError) as exc_info:
        with store_guard("refresh"):
            raise PoolTimeoutError("QueuePool limit reached")
    assert exc_info.value.status_code == 504


def test_statement_timeout_maps_to_504():
    with pytest.raises(DependencyTimeoutError) as exc_info:
        with store_guard("refresh"):
            raise OperationalError("SELECT 1", {}, PgError("57014"))
    assert exc_info.value.status_code == 504


def test_other_operational_errors_map_to_503():
    with pytest.raises(ServiceUnavailableError) as exc_info:
        with store_guard("login"):
            raise OperationalError("SELECT 1", {}, PgError("08006"))
    assert exc_info.value.status_code == 503
    assert not isinstance(exc_info.value, DependencyTimeoutError)


def test_store_operation_decorator():
    @store_operation("lookup")
    def lookup():
        raise OperationalError("SELECT 1", {}, Exception("database is locked"))

    with pytest.raises(ServiceUnavailableError) as exc_info:
        lookup()
    assert "lookup" in exc_info.value.message

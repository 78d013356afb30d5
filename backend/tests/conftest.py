import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("DB_INIT_MODE", "off")

from types import SimpleNamespace

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from app.core.database import Base
from app.core.security import get_password_hash
from app.models.user import User
from app.services.key_authority import KeyRing, key_authority
from app.services.rate_limiter import rate_limiter

PASSWORD = "correct horse battery"


@pytest.fixture
def session_factory(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'authority.db'}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    yield factory
    engine.dispose()


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def authority(session_factory, monkeypatch):
    monkeypatch.setattr(key_authority, "_session_factory", session_factory)
    monkeypatch.setattr(key_authority, "_ring", KeyRing())
    monkeypatch.setattr(key_authority, "_last_miss_reload", None)
    key_authority.load()
    return key_authority


@pytest.fixture(autouse=True)
def _clear_rate_limits():
    rate_limiter.reset()
    yield
    rate_limiter.reset()


@pytest.fixture
def make_user(db):
    def _make(email="alice@example.com", password=PASSWORD, status="active"):
        user = User(email=email, password_hash=get_password_hash(password), status=status)
        db.add(user)
        db.commit()
        db.refresh(user)
        return user
    return _make


@pytest.fixture
def request_stub():
    return SimpleNamespace(client=SimpleNamespace(host="127.0.0.1"), headers={"user-agent": "pytest"})

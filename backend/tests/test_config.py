import pytest

from app.config import Settings

STRONG_SECRET = "9f2c4e6a8b0d1f3a5c7e9b1d3f5a7c9e"
STRONG_HASH_SECRET = "0a1b2c3d4e5f60718293a4b5c6d7e8f9"


def _production(**overrides):
    values = {
        "ENVIRONMENT": "production",
        "SECRET_KEY": STRONG_SECRET,
        "TOKEN_HASH_SECRET": STRONG_HASH_SECRET,
        "OIDC_CLIENTS": {"photo-printer": ["https://printer.example.com/callback"]},
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


def test_production_settings_with_registered_clients_pass():
    _production().validate_security_settings()


def test_production_requires_registered_oidc_clients():
    with pytest.raises(ValueError, match="OIDC_CLIENTS"):
        _production(OIDC_CLIENTS={}).validate_security_settings()


def test_production_rejects_default_secret():
    with pytest.raises(ValueError, match="SECRET_KEY"):
        _production(SECRET_KEY="change-me").validate_security_settings()


def test_development_allows_open_client_registry():
    Settings(_env_file=None, ENVIRONMENT="development", OIDC_CLIENTS={}).validate_security_settings()

from datetime import timedelta

import pytest

from app.config import settings
from app.core.exceptions import (
    InvalidClientError,
    InvalidCodeVerifierError,
    InvalidGrantError,
    InvalidOrExpiredCodeError,
    InvalidRequestError,
    InvalidScopeError,
    InvalidTokenError,
    UnsupportedResponseTypeError,
)
from app.core.security import compute_code_challenge
from app.core.timeutils import utcnow
from app.models.oidc import AuthorizationCode, DelegatedRefreshToken
from app.services.oidc_service import oidc_service
from app.services.session_ledger import session_ledger

CLIENT_ID = "photo-printer"
REDIRECT_URI = "https://printer.example.com/callback"
VERIFIER = "M25iVXpKU3puUjFaYWg3T1NDTDQtcW1ROUY5YXlwalNoc0hhakxifmZHag"


def _issue_code(db, user, scopes=("openid", "email"), nonce=None, verifier=VERIFIER):
    return oidc_service.issue_authorization_code(
        db,
        user_id=user.id,
        client_id=CLIENT_ID,
        redirect_uri=REDIRECT_URI,
        scopes=list(scopes),
        code_challenge=compute_code_challenge(verifier, "S256"),
        nonce=nonce,
    )


def _exchange(db, code, verifier=VERIFIER, client_id=CLIENT_ID, redirect_uri=REDIRECT_URI):
    return oidc_service.exchange_code(
        db, code=code, client_id=client_id, redirect_uri=redirect_uri, code_verifier=verifier
    )


def test_validate_authorization_request_defaults():
    request = oidc_service.validate_authorization_request(
        response_type="code",
        client_id=CLIENT_ID,
        redirect_uri=REDIRECT_URI,
        scope=None,
        code_challenge=compute_code_challenge(VERIFIER, "S256"),
        state="xyz",
    )
    assert request.scopes == ["openid"]
    assert request.code_challenge_method == "S256"
    assert request.state == "xyz"


@pytest.mark.parametrize(
    "overrides, error",
    [
        ({"response_type": "token"}, UnsupportedResponseTypeError),
        ({"client_id": ""}, InvalidRequestError),
        ({"scope": "openid admin"}, InvalidScopeError),
        ({"code_challenge": None}, InvalidRequestError),
        ({"code_challenge_method": "plain"}, InvalidRequestError),
        ({"code_challenge": "too-short"}, InvalidRequestError),
    ],
)
def test_validate_authorization_request_rejections(overrides, error):
    params = {
        "response_type": "code",
        "client_id": CLIENT_ID,
        "redirect_uri": REDIRECT_URI,
        "scope": "openid",
        "code_challenge": compute_code_challenge(VERIFIER, "S256"),
    }
    params.update(overrides)
    with pytest.raises(error):
        oidc_service.validate_authorization_request(**params)


def test_registered_clients_restrict_redirect_uri(monkeypatch):
    monkeypatch.setattr(settings, "OIDC_CLIENTS", {CLIENT_ID: [REDIRECT_URI]})
    with pytest.raises(InvalidClientError):
        oidc_service.validate_authorization_request(
            response_type="code",
            client_id=CLIENT_ID,
            redirect_uri="https://evil.example.com/callback",
            scope="openid",
            code_challenge=compute_code_challenge(VERIFIER, "S256"),
        )


def test_code_exchange_issues_tokens(authority, db, make_user):
    user = make_user()
    code = _issue_code(db, user, nonce="n-0S6_WzA2Mj")

    tokens = _exchange(db, code)

    assert tokens.scope == "openid email"
    assert tokens.refresh_token
    access = authority.verify(tokens.access_token)
    assert access["sub"] == str(user.id)
    assert access["client_id"] == CLIENT_ID
    assert access["email"] == user.email
    id_claims = authority.verify(tokens.id_token, audience=CLIENT_ID, token_type="id")
    assert id_claims["nonce"] == "n-0S6_WzA2Mj"
    assert db.query(AuthorizationCode).one().used_at is not None


def test_code_without_openid_scope_has_no_id_token(authority, db, make_user):
    user = make_user()
    tokens = _exchange(db, _issue_code(db, user, scopes=("profile",)))
    assert tokens.id_token is None


def test_code_can_be_exchanged_only_once(authority, db, make_user):
    user = make_user()
    code = _issue_code(db, user)
    _exchange(db, code)

    with pytest.raises(InvalidOrExpiredCodeError):
        _exchange(db, code)


def test_concurrent_exchange_yields_one_success(authority, session_factory, db, make_user, monkeypatch):
    user = make_user()
    code = _issue_code(db, user)

    slow_db = session_factory()
    try:
        stale = oidc_service._find_live_code(slow_db, db.query(AuthorizationCode.code_hash).scalar())
        assert stale is not None

        assert _exchange(db, code).access_token

        # the second request read the code before the first one claimed it
        monkeypatch.setattr(oidc_service, "_find_live_code", lambda _db, _hash: stale)
        with pytest.raises(InvalidOrExpiredCodeError):
            _exchange(slow_db, code)
    finally:
        slow_db.close()

    assert db.query(DelegatedRefreshToken).count() == 1


def test_pkce_mismatch_always_fails(authority, db, make_user):
    user = make_user()
    code = _issue_code(db, user)
    wrong_verifiers = [
        VERIFIER[:-1] + ("A" if VERIFIER[-1] != "A" else "B"),
        "x" * 43,
        compute_code_challenge(VERIFIER, "S256"),
        "",
    ]
    for verifier in wrong_verifiers:
        with pytest.raises(InvalidCodeVerifierError):
            _exchange(db, code, verifier=verifier)

    # failed attempts do not consume the code
    assert _exchange(db, code).access_token


def test_code_is_bound_to_client_and_redirect(authority, db, make_user):
    user = make_user()
    code = _issue_code(db, user)
    with pytest.raises(InvalidOrExpiredCodeError):
        _exchange(db, code, client_id="other-client")
    with pytest.raises(InvalidOrExpiredCodeError):
        _exchange(db, code, redirect_uri="https://printer.example.com/other")


def test_expired_code_is_rejected(authority, db, make_user):
    user = make_user()
    code = _issue_code(db, user)
    db.query(AuthorizationCode).update({"expires_at": utcnow() - timedelta(seconds=1)}, synchronize_session=False)
    db.commit()

    with pytest.raises(InvalidOrExpiredCodeError):
        _exchange(db, code)


def test_delegated_refresh_is_single_use_and_scope_bounded(authority, db, make_user):
    user = make_user()
    tokens = _exchange(db, _issue_code(db, user, scopes=("openid", "email")))

    with pytest.raises(InvalidScopeError):
        oidc_service.refresh(db, tokens.refresh_token, scopes=["openid", "profile"])

    narrowed = oidc_service.refresh(db, tokens.refresh_token, scopes=["openid"])
    assert narrowed.scope == "openid"
    assert "email" not in authority.verify(narrowed.access_token)

    with pytest.raises(InvalidGrantError):
        oidc_service.refresh(db, tokens.refresh_token)


def test_delegated_refresh_checks_client(authority, db, make_user):
    user = make_user()
    tokens = _exchange(db, _issue_code(db, user))
    with pytest.raises(InvalidGrantError):
        oidc_service.refresh(db, tokens.refresh_token, client_id="other-client")


def test_introspection(authority, db, make_user):
    user = make_user()
    tokens = _exchange(db, _issue_code(db, user))

    access = oidc_service.introspect(db, tokens.access_token)
    assert access["active"] is True
    assert access["client_id"] == CLIENT_ID
    assert access["sub"] == str(user.id)

    refresh = oidc_service.introspect(db, tokens.refresh_token)
    assert refresh["active"] is True
    assert refresh["token_type"] == "refresh_token"

    assert oidc_service.introspect(db, "garbage") == {"active": False}
    assert oidc_service.introspect(db, "") == {"active": False}


def test_introspection_of_revoked_session_token_is_inactive(authority, db, make_user):
    user = make_user()
    grant = session_ledger.create_session(db, user)
    assert oidc_service.introspect(db, grant.tokens.access_token)["active"] is True

    session_ledger.revoke(db, grant.session.id)

    assert oidc_service.introspect(db, grant.tokens.access_token) == {"active": False}


def test_revoke_delegated_refresh_token(authority, db, make_user):
    user = make_user()
    tokens = _exchange(db, _issue_code(db, user))

    assert oidc_service.revoke(db, tokens.refresh_token) == {"success": True}
    assert oidc_service.introspect(db, tokens.refresh_token) == {"active": False}
    assert oidc_service.revoke(db, tokens.refresh_token) == {"success": True}


def test_revoke_signed_token_expires_naturally(authority, db, make_user):
    user = make_user()
    tokens = _exchange(db, _issue_code(db, user))
    result = oidc_service.revoke(db, tokens.access_token)
    assert result["message"] == "Token will expire naturally"


def test_userinfo_is_scope_gated(authority, db, make_user):
    user = make_user()
    with_email = _exchange(db, _issue_code(db, user, scopes=("openid", "email")))
    without_email = _exchange(db, _issue_code(db, user, scopes=("openid",)))

    assert oidc_service.userinfo(db, with_email.access_token) == {
        "sub": str(user.id),
        "email": user.email,
        "email_verified": False,
    }
    assert oidc_service.userinfo(db, without_email.access_token) == {"sub": str(user.id)}


def test_userinfo_rejects_bad_tokens(authority, db, make_user):
    user = make_user()
    expired = authority.sign({"sub": user.id, "scope": "openid"}, expires_delta=timedelta(seconds=-5))
    with pytest.raises(InvalidTokenError) as exc_info:
        oidc_service.userinfo(db, expired)
    assert exc_info.value.message == "Access token has expired"

    with pytest.raises(InvalidTokenError):
        oidc_service.userinfo(db, "garbage")


def test_suspended_user_cannot_exchange(authority, db, make_user):
    user = make_user()
    code = _issue_code(db, user)
    user.status = "suspended"
    db.commit()

    with pytest.raises(InvalidGrantError):
        _exchange(db, code)


def test_purge_removes_expired_grants(authority, db, make_user):
    user = make_user()
    _exchange(db, _issue_code(db, user))
    _issue_code(db, user)
    long_ago = utcnow() - timedelta(days=60)
    db.query(AuthorizationCode).update({"expires_at": long_ago}, synchronize_session=False)
    db.query(DelegatedRefreshToken).update({"expires_at": long_ago}, synchronize_session=False)
    db.commit()

    assert oidc_service.purge_expired(db, older_than=utcnow() - timedelta(days=30)) == 3
    assert db.query(AuthorizationCode).count() == 0


def test_discovery_document():
    config = oidc_service.get_configuration()
    assert config["response_types_supported"] == ["code"]
    assert config["code_challenge_methods_supported"] == ["S256"]
    assert config["jwks_uri"].endswith("/api/v1/oauth/jwks.json")

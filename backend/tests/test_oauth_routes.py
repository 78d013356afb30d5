from types import SimpleNamespace
from urllib.parse import parse_qs, urlparse

import pytest
from fastapi.security import HTTPAuthorizationCredentials

from app.api.v1 import oauth as oauth_routes
from app.core.exceptions import InvalidRequestError, InvalidTokenError, UnsupportedGrantTypeError
from app.core.security import compute_code_challenge
from app.services.session_ledger import session_ledger

CLIENT_ID = "photo-printer"
REDIRECT_URI = "https://printer.example.com/callback"
VERIFIER = "M25iVXpKU3puUjFaYWg3T1NDTDQtcW1ROUY5YXlwalNoc0hhakxifmZHag"
AUTHORIZE_URL = "http://testserver/api/v1/oauth/authorize?client_id=photo-printer"


def _authorize(db, context, state="af0ifjsldkj"):
    return oauth_routes.authorize(
        SimpleNamespace(url=AUTHORIZE_URL),
        client_id=CLIENT_ID,
        redirect_uri=REDIRECT_URI,
        code_challenge=compute_code_challenge(VERIFIER, "S256"),
        response_type="code",
        scope="openid email",
        state=state,
        code_challenge_method="S256",
        nonce=None,
        context=context,
        db=db,
    )


def _token(db, **form):
    params = {
        "grant_type": "authorization_code",
        "code": None,
        "redirect_uri": None,
        "client_id": None,
        "code_verifier": None,
        "refresh_token": None,
        "scope": None,
    }
    params.update(form)
    return oauth_routes.token(db=db, **params)


def test_authorize_redirects_anonymous_user_to_login(authority, db):
    response = _authorize(db, context=None)

    assert response.status_code == 302
    location = urlparse(response.headers["location"])
    assert location.path == "/login"
    assert parse_qs(location.query)["next"] == [AUTHORIZE_URL]


def test_full_authorization_code_flow(authority, db, make_user):
    user = make_user()
    grant = session_ledger.create_session(db, user)
    context = session_ledger.authenticate_access_token(db, grant.tokens.access_token)

    response = _authorize(db, context)
    location = urlparse(response.headers["location"])
    query = parse_qs(location.query)
    assert f"{location.scheme}://{location.netloc}{location.path}" == REDIRECT_URI
    assert query["state"] == ["af0ifjsldkj"]

    tokens = _token(
        db,
        code=query["code"][0],
        redirect_uri=REDIRECT_URI,
        client_id=CLIENT_ID,
        code_verifier=VERIFIER,
    )
    assert tokens.id_token

    info = oauth_routes.userinfo(
        credentials=HTTPAuthorizationCredentials(scheme="Bearer", credentials=tokens.access_token), db=db
    )
    assert info == {"sub": str(user.id), "email": user.email, "email_verified": False}

    refreshed = _token(db, grant_type="refresh_token", refresh_token=tokens.refresh_token, scope="openid")
    assert refreshed.scope == "openid"

    assert oauth_routes.introspect(token=refreshed.refresh_token, db=db)["active"] is True
    assert oauth_routes.revoke(token=refreshed.refresh_token, db=db) == {"success": True}
    assert oauth_routes.introspect(token=refreshed.refresh_token, db=db) == {"active": False}


def test_token_requires_pkce_fields(authority, db):
    with pytest.raises(InvalidRequestError):
        _token(db, code="abc", client_id=CLIENT_ID, redirect_uri=REDIRECT_URI)
    with pytest.raises(InvalidRequestError):
        _token(db, grant_type="refresh_token")


def test_token_rejects_unknown_grant(authority, db):
    with pytest.raises(UnsupportedGrantTypeError) as exc_info:
        _token(db, grant_type="password")
    assert exc_info.value.error == "unsupported_grant_type"


def test_userinfo_requires_bearer(db):
    with pytest.raises(InvalidTokenError) as exc_info:
        oauth_routes.userinfo(credentials=None, db=db)
    assert exc_info.value.status_code == 401


def test_jwks_lists_active_key(authority):
    document = oauth_routes.jwks()
    assert [key["kid"] for key in document["keys"]] == [authority.snapshot().active_kid]


def test_openid_configuration():
    assert oauth_routes.openid_configuration()["grant_types_supported"] == ["authorization_code", "refresh_token"]

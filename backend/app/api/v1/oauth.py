"""Delegated authorization routes (authorization code + PKCE)"""

from fastapi import APIRouter, Depends, Form, Query, Request
from fastapi.responses import RedirectResponse
from fastapi.security import HTTPAuthorizationCredentials
from sqlalchemy.orm import Session
from typing import Optional
from urllib.parse import urlencode

from app.config import settings
from app.core.database import get_db
from app.core.exceptions import InvalidRequestError, InvalidTokenError, UnsupportedGrantTypeError
from app.schemas.keys import JWKSResponse
from app.schemas.oidc import IntrospectionResponse, OIDCTokenResponse, RevocationResponse, UserInfoResponse
from app.services.key_authority import key_authority
from app.services.oidc_service import oidc_service
from app.services.session_ledger import AccessContext
from app.api.deps import get_optional_current_context, optional_security

router = APIRouter()


@router.get("/.well-known/openid-configuration")
def openid_configuration():
    return oidc_service.get_configuration()


@router.get("/authorize")
def authorize(
    request: Request,
    client_id: str = Query(...),
    redirect_uri: str = Query(...),
    code_challenge: Optional[str] = Query(None),
    response_type: str = Query("code"),
    scope: Optional[str] = Query(None),
    state: Optional[str] = Query(None),
    code_challenge_method: Optional[str] = Query(None),
    nonce: Optional[str] = Query(None),
    context: Optional[AccessContext] = Depends(get_optional_current_context),
    db: Session = Depends(get_db)
):
    """
    Authorization endpoint

    Invalid requests are answered directly, never redirected to an
    unverified redirect URI. Unauthenticated users are sent to the login
    page with this request as the return address.
    """
    auth_request = oidc_service.validate_authorization_request(
        response_type=response_type,
        client_id=client_id,
        redirect_uri=redirect_uri,
        scope=scope,
        code_challenge=code_challenge,
        code_challenge_method=code_challenge_method,
        state=state,
        nonce=nonce,
    )

    if context is None:
        return RedirectResponse(
            f"{settings.LOGIN_URL}?{urlencode({'next': str(request.url)})}",
            status_code=302,
        )

    code = oidc_service.issue_authorization_code(
        db,
        user_id=context.user.id,
        client_id=auth_request.client_id,
        redirect_uri=auth_request.redirect_uri,
        scopes=auth_request.scopes,
        code_challenge=auth_request.code_challenge,
        challenge_method=auth_request.code_challenge_method,
        nonce=auth_request.nonce,
    )
    params = {"code": code}
    if auth_request.state:
        params["state"] = auth_request.state
    separator = "&" if "?" in auth_request.redirect_uri else "?"
    return RedirectResponse(f"{auth_request.redirect_uri}{separator}{urlencode(params)}", status_code=302)


@router.post("/token", response_model=OIDCTokenResponse, response_model_exclude_none=True)
def token(
    grant_type: str = Form(...),
    code: Optional[str] = Form(None),
    redirect_uri: Optional[str] = Form(None),
    client_id: Optional[str] = Form(None),
    code_verifier: Optional[str] = Form(None),
    refresh_token: Optional[str] = Form(None),
    scope: Optional[str] = Form(None),
    db: Session = Depends(get_db)
):
    """Token endpoint: `authorization_code` or `refresh_token` grant"""
    if grant_type == "authorization_code":
        if not (code and client_id and redirect_uri and code_verifier):
            raise InvalidRequestError("code, client_id, redirect_uri and code_verifier are required")
        return oidc_service.exchange_code(
            db,
            code=code,
            client_id=client_id,
            redirect_uri=redirect_uri,
            code_verifier=code_verifier,
        )

    if grant_type == "refresh_token":
        if not refresh_token:
            raise InvalidRequestError("refresh_token is required")
        return oidc_service.refresh(
            db,
            refresh_token,
            scopes=scope.split() if scope else None,
            client_id=client_id,
        )

    raise UnsupportedGrantTypeError()


@router.get("/userinfo", response_model=UserInfoResponse, response_model_exclude_none=True)
def userinfo(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(optional_security),
    db: Session = Depends(get_db)
):
    if not credentials:
        raise InvalidTokenError("Missing access token")
    return oidc_service.userinfo(db, credentials.credentials)


@router.post("/introspect", response_model=IntrospectionResponse, response_model_exclude_none=True)
def introspect(
    token: str = Form(""),
    db: Session = Depends(get_db)
):
    return oidc_service.introspect(db, token)


@router.post("/revoke", response_model=RevocationResponse, response_model_exclude_none=True)
def revoke(
    token: str = Form(""),
    db: Session = Depends(get_db)
):
    return oidc_service.revoke(db, token)


@router.get("/jwks.json", response_model=JWKSResponse)
def jwks():
    """Published key set for independent verifiers"""
    return {"keys": key_authority.publish_key_set()}

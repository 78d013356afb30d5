"""Delegated authorization: authorization code + PKCE, delegated refresh, introspection."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from jose import jwt
from jose.exceptions import JWTError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.config import settings
from app.core.database import store_operation
from app.core.exceptions import (
    AuthenticationError,
    InvalidClientError,
    InvalidCodeVerifierError,
    InvalidGrantError,
    InvalidOrExpiredCodeError,
    InvalidRequestError,
    InvalidScopeError,
    InvalidTokenError,
    TokenExpiredError,
    UnsupportedResponseTypeError,
)
from app.core.security import (
    generate_opaque_token,
    hash_opaque_token,
    is_valid_code_verifier,
    verify_code_challenge,
)
from app.core.timeutils import to_timestamp, utcnow
from app.models.oidc import AuthorizationCode, DelegatedRefreshToken
from app.models.session import AuthSession
from app.models.user import User
from app.schemas.oidc import AuthorizationRequest, OIDCTokenResponse
from app.services.audit_service import audit_recorder
from app.services.key_authority import key_authority
from app.services.session_ledger import session_ledger
from app.services.user_service import user_service

logger = logging.getLogger(__name__)

EMAIL_CLAIM_SCOPES = {"email", "profile"}


class OIDCService:
    """Authorization server for third-party clients, signing through the key authority."""

    # ------------------------------------------------------------------
    # Discovery and request validation
    # ------------------------------------------------------------------

    @staticmethod
    def get_configuration() -> Dict[str, Any]:
        base = f"{settings.API_BASE_URL.rstrip('/')}/api/v1/oauth"
        return {
            "issuer": settings.JWT_ISSUER,
            "authorization_endpoint": f"{base}/authorize",
            "token_endpoint": f"{base}/token",
            "userinfo_endpoint": f"{base}/userinfo",
            "jwks_uri": f"{base}/jwks.json",
            "introspection_endpoint": f"{base}/introspect",
            "revocation_endpoint": f"{base}/revoke",
            "response_types_supported": ["code"],
            "grant_types_supported": ["authorization_code", "refresh_token"],
            "subject_types_supported": ["public"],
            "id_token_signing_alg_values_supported": [settings.ALGORITHM],
            "token_endpoint_auth_methods_supported": ["none"],
            "scopes_supported": list(settings.OIDC_SCOPES_SUPPORTED),
            "claims_supported": ["sub", "iss", "aud", "exp", "iat", "nonce", "email", "email_verified"],
            "code_challenge_methods_supported": list(settings.OIDC_CODE_CHALLENGE_METHODS),
        }

    @staticmethod
    def validate_authorization_request(
        *,
        response_type: str,
        client_id: str,
        redirect_uri: str,
        scope: Optional[str],
        code_challenge: Optional[str],
        code_challenge_method: Optional[str] = None,
        state: Optional[str] = None,
        nonce: Optional[str] = None,
    ) -> AuthorizationRequest:
        if response_type != "code":
            raise UnsupportedResponseTypeError()
        if not client_id or not redirect_uri:
            raise InvalidRequestError("client_id and redirect_uri are required")

        clients = settings.OIDC_CLIENTS
        if clients and redirect_uri not in clients.get(client_id, []):
            raise InvalidClientError()

        scopes = (scope or "openid").split()
        unsupported = [s for s in scopes if s not in settings.OIDC_SCOPES_SUPPORTED]
        if unsupported:
            raise InvalidScopeError(f"Unsupported scope: {' '.join(unsupported)}")

        method = code_challenge_method or "S256"
        if not code_challenge:
            raise InvalidRequestError("code_challenge is required")
        if method not in settings.OIDC_CODE_CHALLENGE_METHODS:
            raise InvalidRequestError(f"Unsupported code_challenge_method: {method}")
        if not is_valid_code_verifier(code_challenge):
            raise InvalidRequestError("Malformed code_challenge")

        return AuthorizationRequest(
            client_id=client_id,
            redirect_uri=redirect_uri,
            scopes=scopes,
            code_challenge=code_challenge,
            code_challenge_method=method,
            state=state,
            nonce=nonce,
        )

    # ------------------------------------------------------------------
    # Authorization code
    # ------------------------------------------------------------------

    @store_operation("authorization code issue")
    def issue_authorization_code(
        self,
        db: Session,
        *,
        user_id: int,
        client_id: str,
        redirect_uri: str,
        scopes: List[str],
        code_challenge: str,
        challenge_method: str = "S256",
        nonce: Optional[str] = None,
    ) -> str:
        """Returns the plaintext code; only its digest is stored."""
        code = generate_opaque_token()
        db.add(
            AuthorizationCode(
                code_hash=hash_opaque_token(code),
                user_id=user_id,
                client_id=client_id,
                redirect_uri=redirect_uri,
                scopes=" ".join(scopes),
                code_challenge=code_challenge,
                code_challenge_method=challenge_method,
                nonce=nonce,
                expires_at=utcnow() + timedelta(minutes=settings.AUTHORIZATION_CODE_EXPIRE_MINUTES),
            )
        )
        try:
            db.commit()
        except SQLAlchemyError:
            db.rollback()
            raise

        audit_recorder.record(
            db,
            user_id=user_id,
            event="authorization_code_issued",
            success=True,
            metadata={"client_id": client_id, "scopes": scopes},
        )
        return code

    def _find_live_code(self, db: Session, code_hash: str) -> Optional[AuthorizationCode]:
        return (
            db.query(AuthorizationCode)
            .filter(
                AuthorizationCode.code_hash == code_hash,
                AuthorizationCode.used_at.is_(None),
                AuthorizationCode.expires_at > utcnow(),
            )
            .first()
        )

    @store_operation("authorization code exchange")
    def exchange_code(
        self,
        db: Session,
        *,
        code: str,
        client_id: str,
        redirect_uri: str,
        code_verifier: str,
    ) -> OIDCTokenResponse:
        """
        Redeem an authorization code exactly once.

        Raises:
            InvalidOrExpiredCodeError: Unknown, expired, already used, or bound to another client/redirect
            InvalidCodeVerifierError: The verifier does not derive the stored challenge
        """
        if not code:
            raise InvalidOrExpiredCodeError()

        record = self._find_live_code(db, hash_opaque_token(code))
        if record is None or record.client_id != client_id or record.redirect_uri != redirect_uri:
            raise InvalidOrExpiredCodeError()

        if not verify_code_challenge(code_verifier or "", record.code_challenge, record.code_challenge_method):
            audit_recorder.record(
                db,
                user_id=record.user_id,
                event="token_exchange",
                success=False,
                metadata={"client_id": client_id, "reason": "pkce_mismatch"},
            )
            raise InvalidCodeVerifierError()

        code_id = record.id
        user_id = record.user_id
        scopes = record.scope_list
        nonce = record.nonce
        now = utcnow()
        try:
            claimed = (
                db.query(AuthorizationCode)
                .filter(
                    AuthorizationCode.id == code_id,
                    AuthorizationCode.used_at.is_(None),
                    AuthorizationCode.expires_at > now,
                )
                .update({"used_at": now}, synchronize_session=False)
            )
            if claimed != 1:
                db.rollback()
                raise InvalidOrExpiredCodeError()

            user = user_service.get_user_by_id(db, user_id)
            if user is None or not user.is_active:
                db.rollback()
                raise InvalidGrantError("User not found or inactive")

            tokens = self._issue_tokens(db, user, client_id, scopes, nonce=nonce)
            db.commit()
        except SQLAlchemyError:
            db.rollback()
            raise

        audit_recorder.record(
            db,
            user_id=user_id,
            event="token_exchange",
            success=True,
            metadata={"client_id": client_id, "scopes": scopes},
        )
        return tokens

    # ------------------------------------------------------------------
    # Token issuance and delegated refresh
    # ------------------------------------------------------------------

    @staticmethod
    def _issue_tokens(
        db: Session,
        user: User,
        client_id: str,
        scopes: List[str],
        nonce: Optional[str] = None,
    ) -> OIDCTokenResponse:
        """Sign the access (and ID) token and stage a delegated refresh token; the caller commits."""
        lifetime = timedelta(minutes=settings.OIDC_ACCESS_TOKEN_EXPIRE_MINUTES)
        scope = " ".join(scopes)
        email_claims = {}
        if EMAIL_CLAIM_SCOPES.intersection(scopes):
            email_claims = {"email": user.email, "email_verified": user.email_verified}

        access_token = key_authority.sign(
            {"sub": user.id, "scope": scope, "client_id": client_id, **email_claims},
            expires_delta=lifetime,
        )

        id_token = None
        if "openid" in scopes:
            id_claims = {"sub": user.id, **email_claims}
            if nonce:
                id_claims["nonce"] = nonce
            id_token = key_authority.sign(id_claims, expires_delta=lifetime, audience=client_id, token_type="id")

        refresh_token = generate_opaque_token()
        db.add(
            DelegatedRefreshToken(
                token_hash=hash_opaque_token(refresh_token),
                user_id=user.id,
                client_id=client_id,
                scopes=scope,
                expires_at=utcnow() + timedelta(days=settings.OIDC_REFRESH_TOKEN_EXPIRE_DAYS),
            )
        )
        return OIDCTokenResponse(
            access_token=access_token,
            expires_in=int(lifetime.total_seconds()),
            refresh_token=refresh_token,
            scope=scope,
            id_token=id_token,
        )

    def _find_live_refresh_token(self, db: Session, token_hash: str) -> Optional[DelegatedRefreshToken]:
        return (
            db.query(DelegatedRefreshToken)
            .filter(
                DelegatedRefreshToken.token_hash == token_hash,
                DelegatedRefreshToken.used_at.is_(None),
                DelegatedRefreshToken.expires_at > utcnow(),
            )
            .first()
        )

    @store_operation("delegated refresh")
    def refresh(
        self,
        db: Session,
        refresh_token: str,
        *,
        scopes: Optional[List[str]] = None,
        client_id: Optional[str] = None,
    ) -> OIDCTokenResponse:
        """Single-use: the presented token is consumed and a new pair returned."""
        if not refresh_token:
            raise InvalidGrantError("Invalid or expired refresh token")

        record = self._find_live_refresh_token(db, hash_opaque_token(refresh_token))
        if record is None or (client_id and client_id != record.client_id):
            raise InvalidGrantError("Invalid or expired refresh token")

        granted = record.scope_list
        requested = scopes or granted
        if not set(requested).issubset(granted):
            raise InvalidScopeError("Requested scope exceeds the original grant")

        token_id = record.id
        user_id = record.user_id
        bound_client = record.client_id
        now = utcnow()
        try:
            claimed = (
                db.query(DelegatedRefreshToken)
                .filter(DelegatedRefreshToken.id == token_id, DelegatedRefreshToken.used_at.is_(None))
                .update({"used_at": now}, synchronize_session=False)
            )
            if claimed != 1:
                db.rollback()
                raise InvalidGrantError("Invalid or expired refresh token")

            user = user_service.get_user_by_id(db, user_id)
            if user is None or not user.is_active:
                db.rollback()
                raise InvalidGrantError("User not found or inactive")

            tokens = self._issue_tokens(db, user, bound_client, list(requested))
            db.commit()
        except SQLAlchemyError:
            db.rollback()
            raise

        audit_recorder.record(
            db,
            user_id=user_id,
            event="delegated_refresh",
            success=True,
            metadata={"client_id": bound_client, "scopes": list(requested)},
        )
        return tokens

    # ------------------------------------------------------------------
    # Introspection, revocation, userinfo
    # ------------------------------------------------------------------

    @staticmethod
    def _session_is_live(db: Session, session_id: str) -> bool:
        session = db.query(AuthSession).filter(AuthSession.id == session_id).first()
        return session is not None and session_ledger.is_live(session)

    @store_operation("token introspection")
    def introspect(self, db: Session, token: str) -> Dict[str, Any]:
        """Always answers; anything unrecognised is `{"active": False}`."""
        if not token:
            return {"active": False}

        try:
            claims = key_authority.verify(token)
        except AuthenticationError:
            claims = None

        if claims is not None:
            session_id = claims.get("sid")
            if session_id and not self._session_is_live(db, session_id):
                return {"active": False}
            return {
                "active": True,
                "sub": claims.get("sub"),
                "client_id": claims.get("client_id"),
                "scope": claims.get("scope"),
                "exp": claims.get("exp"),
                "iat": claims.get("iat"),
                "iss": claims.get("iss"),
                "aud": claims.get("aud"),
                "sid": session_id,
                "token_type": "Bearer",
            }

        record = self._find_live_refresh_token(db, hash_opaque_token(token))
        if record is not None:
            return {
                "active": True,
                "sub": str(record.user_id),
                "client_id": record.client_id,
                "scope": record.scopes,
                "exp": to_timestamp(record.expires_at),
                "iat": to_timestamp(record.created_at) if record.created_at else None,
                "token_type": "refresh_token",
            }
        return {"active": False}

    @staticmethod
    def _is_signed_token(token: str) -> bool:
        try:
            return bool(jwt.get_unverified_claims(token).get("sub"))
        except JWTError:
            return False

    @store_operation("token revocation")
    def revoke(self, db: Session, token: str) -> Dict[str, Any]:
        """Always succeeds. Signed tokens are left to expire; delegated refresh tokens are used up."""
        if not token:
            return {"success": True}

        if self._is_signed_token(token):
            logger.info("Revocation requested for a signed token; it will expire naturally")
            return {"success": True, "message": "Token will expire naturally"}

        token_hash = hash_opaque_token(token)
        record = (
            db.query(DelegatedRefreshToken)
            .filter(DelegatedRefreshToken.token_hash == token_hash)
            .first()
        )
        if record is None or record.used_at is not None:
            return {"success": True}

        user_id = record.user_id
        try:
            updated = (
                db.query(DelegatedRefreshToken)
                .filter(DelegatedRefreshToken.id == record.id, DelegatedRefreshToken.used_at.is_(None))
                .update({"used_at": utcnow()}, synchronize_session=False)
            )
            db.commit()
        except SQLAlchemyError:
            db.rollback()
            raise

        if updated:
            audit_recorder.record(
                db,
                user_id=user_id,
                event="token_revoked",
                success=True,
                metadata={"token_type": "refresh_token"},
            )
        return {"success": True}

    @store_operation("userinfo")
    def userinfo(self, db: Session, access_token: str) -> Dict[str, Any]:
        try:
            claims = key_authority.verify(access_token)
        except TokenExpiredError:
            raise InvalidTokenError("Access token has expired")
        except AuthenticationError:
            raise InvalidTokenError()

        session_id = claims.get("sid")
        if session_id and not self._session_is_live(db, session_id):
            raise InvalidTokenError("Session has been revoked")

        try:
            user = user_service.get_user_by_id(db, int(claims.get("sub")))
        except (TypeError, ValueError):
            user = None
        if user is None:
            raise InvalidTokenError("User not found")

        scopes = (claims.get("scope") or "openid").split()
        info: Dict[str, Any] = {"sub": str(user.id)}
        if EMAIL_CLAIM_SCOPES.intersection(scopes):
            info["email"] = user.email
            info["email_verified"] = user.email_verified
        return info

    # ------------------------------------------------------------------
    # Housekeeping
    # ------------------------------------------------------------------

    @store_operation("delegated grant purge")
    def purge_expired(self, db: Session, *, older_than: datetime) -> int:
        """Hard-delete codes and delegated refresh tokens that expired before `older_than`."""
        try:
            codes = (
                db.query(AuthorizationCode)
                .filter(AuthorizationCode.expires_at < older_than)
                .delete(synchronize_session=False)
            )
            tokens = (
                db.query(DelegatedRefreshToken)
                .filter(DelegatedRefreshToken.expires_at < older_than)
                .delete(synchronize_session=False)
            )
            db.commit()
        except SQLAlchemyError:
            db.rollback()
            raise
        if codes or tokens:
            logger.info("Purged %d authorization codes and %d delegated refresh tokens", codes, tokens)
        return codes + tokens


oidc_service = OIDCService()

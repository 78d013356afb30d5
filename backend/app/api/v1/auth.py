"""Authentication routes"""

from fastapi import APIRouter, Depends, status, Request
from sqlalchemy.orm import Session
from typing import List

from app.core.database import get_db
from app.config import settings
from app.schemas.auth import (
    LoginResponse,
    RefreshTokenRequest,
    SessionResponse,
    SessionSummary,
    TokenPair,
    UserLogin,
)
from app.schemas.user import (
    EmailVerificationRequest,
    PasswordResetConfirm,
    PasswordResetRequest,
    UserRegister,
    UserResponse,
)
from app.models.session import AuthSession
from app.models.user import User
from app.services.audit_service import audit_recorder
from app.services.collaborators import AuthCollaborators, get_collaborators
from app.services.rate_limiter import DEFAULT_RULES, LOGIN_RULES, rate_limiter
from app.services.session_ledger import AccessContext, session_ledger
from app.services.user_service import user_service
from app.api.deps import client_ip, get_current_context, get_current_user, user_agent
from app.core.exceptions import CaptchaRequiredError

router = APIRouter()


def _login_response(user: User, session: AuthSession, tokens: TokenPair, collab: AuthCollaborators) -> LoginResponse:
    return LoginResponse(
        user=UserResponse.model_validate(user),
        tokens=tokens,
        session=SessionSummary(id=session.id, expires_at=session.expires_at),
        roles=collab.roles.get_roles(user.id),
        permissions=collab.roles.get_permissions(user.id),
    )


@router.post("/register", response_model=UserResponse, status_code=status.HTTP_201_CREATED)
def register(
    user_data: UserRegister,
    request: Request,
    db: Session = Depends(get_db),
    collab: AuthCollaborators = Depends(get_collaborators)
):
    """
    Register a new account (pending until the email is verified)

    Returns:
        Created user
    """
    rate_limiter.check(f"register:{client_ip(request)}", DEFAULT_RULES)
    user = user_service.register_user(db, user_data, email_sender=collab.email)
    return UserResponse.model_validate(user)


@router.post("/verify-email", response_model=UserResponse)
def verify_email(
    body: EmailVerificationRequest,
    db: Session = Depends(get_db)
):
    user = user_service.verify_email(db, body.token)
    return UserResponse.model_validate(user)


@router.post("/login", response_model=LoginResponse, status_code=status.HTTP_200_OK)
def login(
    credentials: UserLogin,
    request: Request,
    db: Session = Depends(get_db),
    collab: AuthCollaborators = Depends(get_collaborators)
):
    """
    Login endpoint - verify the password and open a session

    Args:
        credentials: Email, password, optional CAPTCHA token and device signals
        db: Database session

    Returns:
        Token pair, session summary, roles and permissions
    """
    ip = client_ip(request)
    ua = user_agent(request)
    rate_limiter.check(f"login:ip:{ip}", LOGIN_RULES)
    rate_limiter.check(f"login:email:{credentials.email}", LOGIN_RULES)

    known = user_service.get_user_by_email(db, credentials.email)
    if collab.captcha.should_challenge("login", known.id if known else None, ip, ua):
        if not credentials.captcha_token:
            raise CaptchaRequiredError()
        verdict = collab.captcha.verify(settings.CAPTCHA_PROVIDER, credentials.captcha_token, "login", ip, ua)
        if not verdict.success:
            raise CaptchaRequiredError("CAPTCHA verification failed")

    result = user_service.login(
        db,
        credentials.email,
        credentials.password,
        device=credentials.device,
        ip_address=ip,
        user_agent=ua,
    )
    return _login_response(result.user, result.session, result.tokens, collab)


@router.post("/refresh", response_model=LoginResponse)
def refresh_token(
    req: RefreshTokenRequest,
    request: Request,
    db: Session = Depends(get_db),
    collab: AuthCollaborators = Depends(get_collaborators)
):
    """
    Rotate the refresh token

    Presenting a refresh token that was already rotated away revokes every
    session of its family.
    """
    ip = client_ip(request)
    rate_limiter.check(f"refresh:ip:{ip}", DEFAULT_RULES)
    result = session_ledger.rotate(db, req.refresh_token, ip_address=ip, user_agent=user_agent(request))
    return _login_response(result.user, result.session, result.tokens, collab)


@router.post("/logout", status_code=status.HTTP_200_OK)
def logout(
    request: Request,
    context: AccessContext = Depends(get_current_context),
    db: Session = Depends(get_db)
):
    """Revoke the session the access token belongs to"""
    result = session_ledger.revoke(
        db,
        context.session.id,
        reason="logout",
        user_id=context.user.id,
        ip_address=client_ip(request),
    )
    return {
        "success": True,
        "message": "Logged out successfully",
        "result": result.value,
    }


@router.post("/logout-all", status_code=status.HTTP_200_OK)
def logout_all(
    request: Request,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Sign out everywhere"""
    user_id = current_user.id
    revoked = session_ledger.revoke_all_for_user(db, user_id, reason="logout_all")
    audit_recorder.record(
        db,
        user_id=user_id,
        event="logout_all",
        success=True,
        ip_address=client_ip(request),
        metadata={"revoked_sessions": revoked},
    )
    return {"success": True, "revoked_sessions": revoked}


@router.get("/me", response_model=UserResponse)
def get_current_user_info(
    current_user: User = Depends(get_current_user)
):
    return UserResponse.model_validate(current_user)


@router.get("/sessions", response_model=List[SessionResponse])
def list_sessions(
    context: AccessContext = Depends(get_current_context),
    db: Session = Depends(get_db)
):
    """Live sessions of the current user, most recently used first"""
    sessions = session_ledger.list_active_sessions(db, context.user.id)
    return [
        SessionResponse(
            id=s.id,
            platform=s.device.platform if s.device else None,
            device_handle=s.device.device_handle if s.device else None,
            ip_address=s.ip_address,
            user_agent=s.user_agent,
            created_at=s.created_at,
            last_used_at=s.last_used_at,
            expires_at=s.expires_at,
            current=s.id == context.session.id,
        )
        for s in sessions
    ]


@router.delete("/sessions/{session_id}", status_code=status.HTTP_200_OK)
def revoke_session(
    session_id: str,
    request: Request,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Revoke one of the current user's sessions (idempotent)"""
    result = session_ledger.revoke(
        db,
        session_id,
        reason="user_revoked",
        user_id=current_user.id,
        ip_address=client_ip(request),
    )
    return {"success": True, "result": result.value}


@router.post("/password-reset", status_code=status.HTTP_202_ACCEPTED)
def request_password_reset(
    body: PasswordResetRequest,
    request: Request,
    db: Session = Depends(get_db),
    collab: AuthCollaborators = Depends(get_collaborators)
):
    """Always accepted, whether or not the email belongs to an account"""
    ip = client_ip(request)
    rate_limiter.check(f"password-reset:ip:{ip}", LOGIN_RULES)
    user_service.request_password_reset(db, body.email, email_sender=collab.email, ip_address=ip)
    return {
        "success": True,
        "message": "If the account exists, a password reset email has been sent",
    }


@router.post("/password-reset/confirm", status_code=status.HTTP_200_OK)
def confirm_password_reset(
    body: PasswordResetConfirm,
    request: Request,
    db: Session = Depends(get_db)
):
    revoked = user_service.reset_password(db, body.token, body.new_password, ip_address=client_ip(request))
    return {
        "success": True,
        "message": "Password updated; all sessions have been signed out",
        "revoked_sessions": revoked,
    }

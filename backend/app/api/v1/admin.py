"""Admin routes - signing keys, audit trail and account lifecycle"""

from fastapi import APIRouter, Depends, status, Request
from sqlalchemy.orm import Session
from typing import List, Optional

from app.core.database import get_db, store_guard
from app.schemas.audit import AuthEventResponse
from app.schemas.keys import KeyHealth, KeyRotationResponse, KeyStatusResponse, SigningKeyInfo
from app.schemas.user import UserResponse, UserStatusUpdate
from app.services.audit_service import audit_recorder
from app.services.key_authority import key_authority
from app.services.user_service import user_service
from app.api.deps import client_ip, get_current_admin_user
from app.models.user import User

router = APIRouter()


@router.post("/keys/rotate", response_model=KeyRotationResponse, status_code=status.HTTP_200_OK)
def rotate_keys(
    request: Request,
    current_user: User = Depends(get_current_admin_user),
    db: Session = Depends(get_db)
):
    """
    Force a signing key rotation

    The previous key stays published and verifiable until its own expiry.

    Returns:
        The new key id
    """
    with store_guard("key rotation"):
        new_kid = key_authority.rotate(reason="forced")
    audit_recorder.record(
        db,
        user_id=current_user.id,
        event="key_rotated",
        success=True,
        ip_address=client_ip(request),
        metadata={"kid": new_kid},
    )
    return KeyRotationResponse(message="Signing key rotated", new_kid=new_kid)


@router.get("/keys/status", response_model=KeyStatusResponse)
def key_status(
    current_user: User = Depends(get_current_admin_user)
):
    return KeyStatusResponse(
        status=KeyHealth(**key_authority.key_status()),
        keys=[SigningKeyInfo(**key) for key in key_authority.list_keys()],
    )


@router.get("/audit-events", response_model=List[AuthEventResponse])
def get_audit_events(
    limit: int = 100,
    event: Optional[str] = None,
    user_id: Optional[int] = None,
    current_user: User = Depends(get_current_admin_user),
    db: Session = Depends(get_db),
):
    """List recent auth events, newest first."""
    events = audit_recorder.list_events(
        db,
        user_id=user_id,
        event=event,
        limit=max(1, min(limit, 500)),
    )
    return [
        AuthEventResponse(
            id=ev.id,
            user_id=ev.user_id,
            event=ev.event,
            success=ev.success,
            ip_address=ev.ip_address,
            metadata=audit_recorder.decode_metadata(ev),
            created_at=ev.created_at,
        )
        for ev in events
    ]


@router.patch("/users/{user_id}/status", response_model=UserResponse)
def update_user_status(
    user_id: int,
    body: UserStatusUpdate,
    current_user: User = Depends(get_current_admin_user),
    db: Session = Depends(get_db)
):
    """
    Change a user's lifecycle status

    Moving a user out of `active` revokes all of its sessions.
    """
    user = user_service.set_status(db, user_id, body.status, actor_id=current_user.id)
    return UserResponse.model_validate(user)


@router.delete("/users/{user_id}", status_code=status.HTTP_200_OK)
def delete_user(
    user_id: int,
    current_user: User = Depends(get_current_admin_user),
    db: Session = Depends(get_db)
):
    """Soft-delete a user and end its sessions"""
    revoked = user_service.soft_delete_user(db, user_id)
    return {
        "success": True,
        "message": "User deleted",
        "revoked_sessions": revoked,
    }

"""Best-effort audit trail for authentication events."""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.metrics import AUDIT_FAILURES, AUTH_EVENTS
from app.models.audit import AuthEvent

logger = logging.getLogger(__name__)


class AuthEventRecorder:
    """
    Append auth events without ever affecting the caller's outcome.

    Each event is written through a separate session bound to the same
    engine, after the caller's own transaction has been committed or rolled
    back. Failures go to the log and the audit-failure counter only.
    """

    def record(
        self,
        db: Session,
        *,
        user_id: Optional[int],
        event: str,
        success: bool,
        ip_address: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        AUTH_EVENTS.labels(event, "true" if success else "false").inc()
        audit_db = Session(bind=db.get_bind())
        try:
            audit_db.add(
                AuthEvent(
                    user_id=user_id,
                    event=event,
                    success=success,
                    ip_address=ip_address,
                    metadata_json=json.dumps(metadata or {}, ensure_ascii=False, default=str),
                )
            )
            audit_db.commit()
        except SQLAlchemyError as exc:
            audit_db.rollback()
            AUDIT_FAILURES.inc()
            logger.warning("Failed to record auth event %s for user %s: %s", event, user_id, exc)
        finally:
            audit_db.close()

    @staticmethod
    def list_events(
        db: Session,
        *,
        user_id: Optional[int] = None,
        event: Optional[str] = None,
        limit: int = 100,
    ) -> List[AuthEvent]:
        query = db.query(AuthEvent)
        if user_id is not None:
            query = query.filter(AuthEvent.user_id == user_id)
        if event:
            query = query.filter(AuthEvent.event == event)
        return query.order_by(AuthEvent.created_at.desc(), AuthEvent.id.desc()).limit(limit).all()

    @staticmethod
    def decode_metadata(event: AuthEvent) -> Dict[str, Any]:
        try:
            return json.loads(event.metadata_json or "{}")
        except json.JSONDecodeError:
            return {}


audit_recorder = AuthEventRecorder()

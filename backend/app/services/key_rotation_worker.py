"""Background timer for signing key rotation and session housekeeping."""

from __future__ import annotations

import logging
import threading
import time
from datetime import timedelta
from typing import Callable, Optional

from sqlalchemy.orm import Session

from app.config import settings
from app.core.metrics import KEY_ROTATION_FAILURES, ROTATION_WORKER_UP
from app.core.timeutils import utcnow
from app.services.key_authority import KeyAuthority, key_authority
from app.services.oidc_service import oidc_service
from app.services.session_ledger import session_ledger

logger = logging.getLogger(__name__)


class KeyRotationWorker:
    """Periodic key check, decoupled from request handling."""

    def __init__(
        self,
        authority: Optional[KeyAuthority] = None,
        session_factory: Optional[Callable[[], Session]] = None,
        interval_seconds: Optional[float] = None,
    ) -> None:
        self.authority = authority or key_authority
        self._session_factory = session_factory
        self.interval_seconds = interval_seconds or settings.KEY_ROTATION_CHECK_INTERVAL_SECONDS
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._heartbeat: float = 0.0
        self._tick_count: int = 0
        self._failure_count: int = 0
        self._last_error: Optional[str] = None

    def bind(self, session_factory: Callable[[], Session]) -> "KeyRotationWorker":
        self._session_factory = session_factory
        return self

    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.is_running():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run_loop, name="key-rotation-worker", daemon=True)
        self._thread.start()
        ROTATION_WORKER_UP.set(1)
        logger.info("Key rotation worker started (interval=%ss)", self.interval_seconds)

    def stop(self) -> None:
        self._stop_event.set()
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=5)
        ROTATION_WORKER_UP.set(0)
        logger.info("Key rotation worker stopped")

    def status(self) -> dict:
        return {
            "running": self.is_running(),
            "last_heartbeat": self._heartbeat,
            "tick_count": self._tick_count,
            "failure_count": self._failure_count,
            "last_error": self._last_error,
        }

    def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            self.tick()
            self._stop_event.wait(max(1.0, self.interval_seconds))

    def tick(self) -> bool:
        """
        Run one check. Never raises; a failed tick is retried on the next one.

        Returns:
            bool: True when the tick completed without errors
        """
        ok = True
        try:
            self.authority.check_and_rotate()
        except Exception as exc:
            ok = False
            self._record_failure("key rotation", exc)

        if self._session_factory is not None:
            db = self._session_factory()
            try:
                cutoff = utcnow() - timedelta(days=settings.SESSION_PURGE_AFTER_DAYS)
                session_ledger.purge_expired(db, older_than=cutoff)
                oidc_service.purge_expired(db, older_than=cutoff)
            except Exception as exc:
                ok = False
                db.rollback()
                self._record_failure("session purge", exc)
            finally:
                db.close()

        self._heartbeat = time.time()
        self._tick_count += 1
        return ok

    def _record_failure(self, stage: str, exc: Exception) -> None:
        self._failure_count += 1
        self._last_error = f"{stage}: {exc}"
        KEY_ROTATION_FAILURES.inc()
        logger.exception("Scheduled %s failed, will retry next tick: %s", stage, exc)


key_rotation_worker = KeyRotationWorker()

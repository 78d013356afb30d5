"""Signing key set: rotation, sign/verify by key id, published key set."""

from __future__ import annotations

import base64
import logging
import secrets
import threading
import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from types import MappingProxyType
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from jose import jwt
from jose.exceptions import ExpiredSignatureError, JWTError
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from app.config import settings
from app.core.exceptions import (
    ExpiredSigningKeyError,
    SigningKeyUnavailableError,
    TokenExpiredError,
    TokenInvalidError,
    UnknownSigningKeyError,
)
from app.core.metrics import KEY_AUTHORITY_DEGRADED, KEY_ROTATIONS
from app.core.timeutils import as_naive_utc, to_timestamp, utcnow
from app.models.signing_key import SigningKey

logger = logging.getLogger(__name__)

FALLBACK_KID = "fallback"


@dataclass(frozen=True)
class SigningKeyMaterial:
    kid: str
    secret: str
    created_at: datetime
    expires_at: datetime
    is_active: bool
    persisted: bool = True

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at <= (now or utcnow())

    @classmethod
    def from_row(cls, row: SigningKey) -> "SigningKeyMaterial":
        return cls(
            kid=row.kid,
            secret=row.secret,
            created_at=as_naive_utc(row.created_at) or utcnow(),
            expires_at=as_naive_utc(row.expires_at),
            is_active=bool(row.is_active),
        )


@dataclass(frozen=True)
class KeyRing:
    """Immutable snapshot handed to sign/verify; replaced wholesale on rotation."""

    active_kid: Optional[str] = None
    keys: Mapping[str, SigningKeyMaterial] = field(default_factory=lambda: MappingProxyType({}))
    degraded: bool = False

    @property
    def active(self) -> Optional[SigningKeyMaterial]:
        if self.active_kid is None:
            return None
        return self.keys.get(self.active_kid)

    def get(self, kid: str) -> Optional[SigningKeyMaterial]:
        return self.keys.get(kid)

    @classmethod
    def build(cls, keys: List[SigningKeyMaterial], degraded: bool = False) -> "KeyRing":
        active = [k for k in keys if k.is_active]
        active.sort(key=lambda k: k.created_at, reverse=True)
        return cls(
            active_kid=active[0].kid if active else None,
            keys=MappingProxyType({k.kid: k for k in keys}),
            degraded=degraded,
        )


class KeyAuthority:
    """
    Owns the symmetric signing keys.

    The current ring is read without locking; only `load`, `rotate` and
    `cleanup_expired_keys` replace it, serialized by `_write_lock`.
    """

    def __init__(
        self,
        session_factory: Optional[Callable[[], Session]] = None,
        *,
        algorithm: Optional[str] = None,
        issuer: Optional[str] = None,
        audience: Optional[str] = None,
        key_lifetime: Optional[timedelta] = None,
        rotation_threshold: Optional[timedelta] = None,
        retention: Optional[timedelta] = None,
        fallback_secret: Optional[str] = None,
        reload_interval: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._session_factory = session_factory
        self.algorithm = algorithm or settings.ALGORITHM
        self.issuer = issuer or settings.JWT_ISSUER
        self.audience = audience or settings.JWT_AUDIENCE
        self.key_lifetime = key_lifetime or timedelta(hours=settings.SIGNING_KEY_LIFETIME_HOURS)
        self.rotation_threshold = rotation_threshold or timedelta(hours=settings.SIGNING_KEY_ROTATION_THRESHOLD_HOURS)
        self.retention = retention or timedelta(hours=settings.SIGNING_KEY_RETENTION_HOURS)
        self._fallback_secret = fallback_secret or settings.SECRET_KEY
        self._ring = KeyRing()
        self._write_lock = threading.Lock()
        self.reload_interval = settings.KEY_RELOAD_MIN_INTERVAL_SECONDS if reload_interval is None else reload_interval
        self._clock = clock
        self._last_miss_reload: Optional[float] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def bind(self, session_factory: Callable[[], Session]) -> "KeyAuthority":
        self._session_factory = session_factory
        return self

    def snapshot(self) -> KeyRing:
        return self._ring

    @property
    def degraded(self) -> bool:
        return self._ring.degraded

    def load(self) -> KeyRing:
        """Load every unexpired key; generate one if none; fall back to the static key if the store is down."""
        if self._session_factory is None:
            logger.warning("Key authority has no store configured; using static fallback key")
            return self._enter_fallback()

        try:
            keys = self._fetch_unexpired_keys()
        except SQLAlchemyError as exc:
            logger.error("Failed to load signing keys, entering degraded mode: %s", exc)
            return self._enter_fallback()

        with self._write_lock:
            self._install(keys, degraded=False)

        if self._ring.active is None:
            logger.info("No active signing key found, generating initial key")
            self.rotate(reason="initial")
        else:
            logger.info("Loaded %d signing keys (active=%s)", len(keys), self._ring.active_kid)
        return self._ring

    def _enter_fallback(self) -> KeyRing:
        now = utcnow()
        fallback = SigningKeyMaterial(
            kid=FALLBACK_KID,
            secret=self._fallback_secret,
            created_at=now,
            expires_at=now + self.key_lifetime,
            is_active=True,
            persisted=False,
        )
        with self._write_lock:
            self._ring = KeyRing.build([fallback], degraded=True)
        KEY_AUTHORITY_DEGRADED.set(1)
        logger.warning("Key authority running in degraded mode with static key '%s'; rotation disabled", FALLBACK_KID)
        return self._ring

    def _install(self, keys: List[SigningKeyMaterial], degraded: bool) -> None:
        """Replace the ring; caller holds _write_lock."""
        now = utcnow()
        # Tokens signed by the fallback key stay verifiable after the store comes back.
        previous = self._ring.get(FALLBACK_KID)
        if previous is not None and not previous.is_expired(now) and not degraded:
            keys = keys + [replace(previous, is_active=False)]
        self._ring = KeyRing.build(keys, degraded=degraded)
        KEY_AUTHORITY_DEGRADED.set(1 if degraded else 0)

    def _fetch_unexpired_keys(self) -> List[SigningKeyMaterial]:
        db = self._session_factory()
        try:
            rows = (
                db.query(SigningKey)
                .filter(SigningKey.expires_at > utcnow())
                .order_by(SigningKey.created_at.desc())
                .all()
            )
            return [SigningKeyMaterial.from_row(row) for row in rows]
        finally:
            db.close()

    def reload(self) -> KeyRing:
        keys = self._fetch_unexpired_keys()
        with self._write_lock:
            self._install(keys, degraded=False)
        return self._ring

    # ------------------------------------------------------------------
    # Rotation
    # ------------------------------------------------------------------

    @staticmethod
    def _generate_kid() -> str:
        return secrets.token_hex(8)

    @staticmethod
    def _generate_secret() -> str:
        return secrets.token_urlsafe(64)

    def rotate(self, reason: str = "forced") -> str:
        """
        Persist a new active key and deactivate (but keep) the previous one.

        Returns:
            str: The new key id
        """
        kid, _ = self._rotate(reason)
        return kid

    def _rotate(self, reason: str, expected_kid: Optional[str] = None) -> Tuple[str, bool]:
        """
        Rotate, optionally only if `expected_kid` is still the active key in the store.

        When another process has already replaced `expected_kid`, its key is
        adopted instead of generating a second one.

        Returns:
            tuple: (active key id, whether this call generated it)
        """
        if self._session_factory is None:
            raise SigningKeyUnavailableError()

        with self._write_lock:
            now = utcnow()
            kid = self._generate_kid()
            secret = self._generate_secret()
            expires_at = now + self.key_lifetime

            db = self._session_factory()
            try:
                previous = db.query(SigningKey).filter(SigningKey.is_active.is_(True))
                if expected_kid is not None:
                    previous = previous.filter(SigningKey.kid == expected_kid)
                deactivated = previous.update(
                    {"is_active": False, "deactivated_at": now}, synchronize_session=False
                )
                if expected_kid is not None and deactivated == 0:
                    db.rollback()
                    return self._adopt_stored_key(), False
                db.add(
                    SigningKey(
                        kid=kid,
                        secret=secret,
                        created_at=now,
                        expires_at=expires_at,
                        is_active=True,
                    )
                )
                db.commit()
            except IntegrityError:
                # another process rotated at the same moment; adopt its key
                db.rollback()
                logger.warning("Concurrent signing key rotation detected, reloading key set")
                return self._adopt_stored_key(), False
            except SQLAlchemyError:
                db.rollback()
                raise
            finally:
                db.close()

            keys = [
                replace(k, is_active=False) if k.is_active else k
                for k in self._ring.keys.values()
                if k.persisted and not k.is_expired(now)
            ]
            keys.append(
                SigningKeyMaterial(
                    kid=kid,
                    secret=secret,
                    created_at=now,
                    expires_at=expires_at,
                    is_active=True,
                )
            )
            self._install(keys, degraded=False)

        KEY_ROTATIONS.labels(reason).inc()
        logger.info("Generated new signing key %s (reason=%s)", kid, reason)
        return kid, True

    def _adopt_stored_key(self) -> str:
        """Install the store's key set; caller holds _write_lock."""
        self._install(self._fetch_unexpired_keys(), degraded=False)
        if self._ring.active_kid is None:
            raise SigningKeyUnavailableError()
        logger.info("Adopted signing key %s rotated by another instance", self._ring.active_kid)
        return self._ring.active_kid

    def needs_rotation(self, now: Optional[datetime] = None) -> bool:
        now = now or utcnow()
        active = self._ring.active
        if active is None:
            return True
        return active.expires_at - now <= self.rotation_threshold

    def check_and_rotate(self) -> Optional[str]:
        """Scheduled check. Returns the new key id when this call rotated."""
        if self._ring.degraded:
            if self._session_factory is None:
                return None
            # a store outage at startup is retried here; success leaves degraded mode
            self.load()
            if self._ring.degraded:
                return None
            logger.info("Key authority recovered from degraded mode")

        # decide from the shared store, not from what this process loaded earlier
        self.reload()

        new_kid = None
        if self.needs_rotation():
            logger.info("Active signing key approaching expiry, rotating")
            kid, rotated = self._rotate("scheduled", expected_kid=self._ring.active_kid)
            if rotated:
                new_kid = kid

        self.cleanup_expired_keys()
        return new_kid

    def cleanup_expired_keys(self) -> int:
        """Hard-delete keys expired for longer than the retention window."""
        if self._session_factory is None or self._ring.degraded:
            return 0

        cutoff = utcnow() - self.retention
        db = self._session_factory()
        try:
            expired = [
                kid for (kid,) in db.query(SigningKey.kid).filter(SigningKey.expires_at < cutoff).all()
            ]
            if not expired:
                return 0
            db.query(SigningKey).filter(SigningKey.kid.in_(expired)).delete(synchronize_session=False)
            db.commit()
        except SQLAlchemyError:
            db.rollback()
            raise
        finally:
            db.close()

        with self._write_lock:
            remaining = [k for k in self._ring.keys.values() if k.kid not in expired]
            self._ring = KeyRing.build(remaining, degraded=self._ring.degraded)

        logger.info("Cleaned up %d expired signing keys", len(expired))
        return len(expired)

    # ------------------------------------------------------------------
    # Token operations
    # ------------------------------------------------------------------

    def sign(
        self,
        claims: Dict[str, Any],
        *,
        expires_delta: timedelta,
        issuer: Optional[str] = None,
        audience: Optional[str] = None,
        token_type: str = "access",
    ) -> str:
        """Sign with the active key; its id travels in the `kid` header."""
        ring = self._ring
        key = ring.active
        if key is None:
            raise SigningKeyUnavailableError()

        now = utcnow()
        to_encode = dict(claims)
        if "sub" in to_encode:
            to_encode["sub"] = str(to_encode["sub"])
        to_encode.update({
            "iss": issuer or self.issuer,
            "aud": audience or self.audience,
            "iat": now,
            "exp": now + expires_delta,
            "jti": secrets.token_urlsafe(16),
            "typ": token_type,
        })
        return jwt.encode(to_encode, key.secret, algorithm=self.algorithm, headers={"kid": key.kid})

    def _lookup(self, kid: str) -> Optional[SigningKeyMaterial]:
        key = self._ring.get(kid)
        if key is not None or self._session_factory is None or self._ring.degraded:
            return key
        # another instance may have rotated since our last load; unknown kids
        # cost at most one store read per reload_interval
        now = self._clock()
        if self._last_miss_reload is not None and now - self._last_miss_reload < self.reload_interval:
            return None
        self._last_miss_reload = now
        return self.reload().get(kid)

    def verify(
        self,
        token: str,
        *,
        issuer: Optional[str] = None,
        audience: Optional[str] = None,
        token_type: Optional[str] = "access",
    ) -> Dict[str, Any]:
        """
        Verify a token against the exact key named in its header.

        Raises:
            TokenInvalidError: Malformed token, bad signature or claims
            UnknownSigningKeyError: `kid` is not (or no longer) held
            ExpiredSigningKeyError: `kid` is past its own expiry
            TokenExpiredError: The token itself has expired
        """
        try:
            header = jwt.get_unverified_header(token)
        except JWTError as exc:
            raise TokenInvalidError("Malformed token") from exc

        kid = header.get("kid")
        if not kid:
            raise TokenInvalidError("Token missing key ID")

        key = self._lookup(kid)
        if key is None:
            raise UnknownSigningKeyError(kid)
        if key.is_expired():
            raise ExpiredSigningKeyError(kid)

        try:
            claims = jwt.decode(
                token,
                key.secret,
                algorithms=[self.algorithm],
                issuer=issuer or self.issuer,
                audience=audience or self.audience,
            )
        except ExpiredSignatureError as exc:
            raise TokenExpiredError() from exc
        except JWTError as exc:
            raise TokenInvalidError() from exc

        if token_type is not None and claims.get("typ") != token_type:
            raise TokenInvalidError(f"Token is not an {token_type} token")
        return claims

    # ------------------------------------------------------------------
    # Published key set and status
    # ------------------------------------------------------------------

    def publish_key_set(self) -> List[Dict[str, Any]]:
        """Every key that has not fully expired, as JWKs."""
        now = utcnow()
        published = []
        for key in sorted(self._ring.keys.values(), key=lambda k: k.created_at, reverse=True):
            if key.is_expired(now):
                continue
            published.append({
                "kty": "oct",
                "kid": key.kid,
                "use": "sig",
                "alg": self.algorithm,
                "k": base64.urlsafe_b64encode(key.secret.encode("utf-8")).rstrip(b"=").decode("ascii"),
                "created_at": to_timestamp(key.created_at),
                "expires_at": to_timestamp(key.expires_at),
            })
        return published

    def list_keys(self) -> List[Dict[str, Any]]:
        now = utcnow()
        return [
            {
                "kid": key.kid,
                "created_at": key.created_at,
                "expires_at": key.expires_at,
                "is_active": key.kid == self._ring.active_kid,
                "is_expired": key.is_expired(now),
            }
            for key in sorted(self._ring.keys.values(), key=lambda k: k.created_at, reverse=True)
        ]

    def key_status(self) -> Dict[str, Any]:
        ring = self._ring
        active = ring.active
        if active is None:
            return {
                "status": "unhealthy",
                "error": "No active signing key available",
                "total_keys": len(ring.keys),
                "degraded": ring.degraded,
            }

        hours_until_expiry = (active.expires_at - utcnow()).total_seconds() / 3600
        status = "healthy"
        if hours_until_expiry < 1:
            status = "critical"
        elif hours_until_expiry < 24:
            status = "warning"

        return {
            "status": status,
            "current_kid": active.kid,
            "hours_until_expiry": round(hours_until_expiry, 2),
            "total_keys": len(ring.keys),
            "degraded": ring.degraded,
        }


key_authority = KeyAuthority()

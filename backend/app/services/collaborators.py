"""Interfaces to services outside the authority: CAPTCHA, roles, email."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Protocol

from app.config import settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CaptchaResult:
    success: bool
    score: Optional[float] = None


class CaptchaVerifier(Protocol):
    def should_challenge(self, flow: str, user_id: Optional[int], ip_address: Optional[str], user_agent: Optional[str]) -> bool:
        ...

    def verify(self, provider: str, token: str, flow: str, ip_address: Optional[str], user_agent: Optional[str]) -> CaptchaResult:
        ...


class RoleProvider(Protocol):
    def get_roles(self, user_id: int) -> List[str]:
        ...

    def get_permissions(self, user_id: int) -> List[str]:
        ...


class EmailSender(Protocol):
    def send_verification_email(self, user_id: int, email: str, token: str) -> None:
        ...

    def send_password_reset_email(self, user_id: int, email: str, token: str) -> None:
        ...


class NoChallengeCaptcha:
    """Risk scoring disabled: never asks for a CAPTCHA."""

    def should_challenge(self, flow, user_id, ip_address, user_agent) -> bool:
        return False

    def verify(self, provider, token, flow, ip_address, user_agent) -> CaptchaResult:
        return CaptchaResult(success=True)


class StaticRoleProvider:
    """`admin` for the configured user ids, `user` for everyone."""

    ADMIN_PERMISSIONS = ["keys:rotate", "keys:read", "audit:read", "users:manage"]

    def __init__(self, admin_user_ids: Optional[List[int]] = None) -> None:
        self._admin_user_ids = set(admin_user_ids if admin_user_ids is not None else settings.ADMIN_USER_IDS)

    def get_roles(self, user_id: int) -> List[str]:
        if user_id in self._admin_user_ids:
            return ["admin", "user"]
        return ["user"]

    def get_permissions(self, user_id: int) -> List[str]:
        permissions = ["sessions:manage"]
        if user_id in self._admin_user_ids:
            permissions.extend(self.ADMIN_PERMISSIONS)
        return permissions


class LoggingEmailSender:
    """Stands in for a mail service; records that a message would be sent."""

    def send_verification_email(self, user_id: int, email: str, token: str) -> None:
        logger.info("Verification email queued for user %s <%s>", user_id, email)

    def send_password_reset_email(self, user_id: int, email: str, token: str) -> None:
        logger.info("Password reset email queued for user %s <%s>", user_id, email)


@dataclass
class AuthCollaborators:
    captcha: CaptchaVerifier = field(default_factory=NoChallengeCaptcha)
    roles: RoleProvider = field(default_factory=StaticRoleProvider)
    email: EmailSender = field(default_factory=LoggingEmailSender)


collaborators = AuthCollaborators()


def get_collaborators() -> AuthCollaborators:
    """FastAPI dependency; override in deployments or tests."""
    return collaborators

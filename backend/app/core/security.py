"""Security utilities - password hashing, opaque token digests, PKCE"""

import base64
import hashlib
import hmac
import re
import secrets

import bcrypt

from app.config import settings

# RFC 7636 section 4.1: 43-128 characters from the unreserved set
_CODE_VERIFIER_RE = re.compile(r"^[A-Za-z0-9\-._~]{43,128}$")

# Compared against when the email is unknown so both failure paths cost one bcrypt check
_DUMMY_PASSWORD_HASH = bcrypt.hashpw(b"timing-equalizer", bcrypt.gensalt()).decode("utf-8")


def verify_password(plain_password: str, hashed_password: str) -> bool:
    """
    Verify a password against its hash

    Args:
        plain_password: Plain text password
        hashed_password: Hashed password

    Returns:
        bool: True if password matches
    """
    return bcrypt.checkpw(
        plain_password.encode('utf-8'),
        hashed_password.encode('utf-8')
    )


def burn_password_check(plain_password: str) -> None:
    """Spend one bcrypt verification without a real hash."""
    verify_password(plain_password, _DUMMY_PASSWORD_HASH)


def get_password_hash(password: str) -> str:
    """
    Hash a password using bcrypt

    Args:
        password: Plain text password

    Returns:
        str: Hashed password
    """
    return bcrypt.hashpw(
        password.encode('utf-8'),
        bcrypt.gensalt()
    ).decode('utf-8')


def generate_opaque_token(nbytes: int = 32) -> str:
    """Random URL-safe string with no embedded structure."""
    return secrets.token_urlsafe(nbytes)


def hash_opaque_token(token: str) -> str:
    """
    Keyed digest of an opaque token.

    Only this digest is persisted; the server-side key means a leaked table
    cannot be brute-forced offline or matched against other deployments.
    """
    return hmac.new(
        settings.TOKEN_HASH_SECRET.encode("utf-8"),
        token.encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()


def is_valid_code_verifier(code_verifier: str) -> bool:
    return bool(code_verifier) and bool(_CODE_VERIFIER_RE.match(code_verifier))


def compute_code_challenge(code_verifier: str, method: str) -> str:
    """
    Derive the PKCE challenge for a verifier.

    Args:
        code_verifier: Client-held secret
        method: "S256" or "plain"

    Returns:
        str: The challenge the client should have sent on /authorize
    """
    if method == "S256":
        digest = hashlib.sha256(code_verifier.encode("ascii")).digest()
        return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")
    if method == "plain":
        return code_verifier
    raise ValueError(f"Unsupported code challenge method: {method}")


def verify_code_challenge(code_verifier: str, code_challenge: str, method: str) -> bool:
    if not is_valid_code_verifier(code_verifier):
        return False
    try:
        expected = compute_code_challenge(code_verifier, method)
    except ValueError:
        return False
    return hmac.compare_digest(expected, code_challenge)

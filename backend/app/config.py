"""Application configuration management"""

import json
from functools import lru_cache
from pathlib import Path
from typing import Annotated, Any, Dict, List

from urllib.parse import quote_plus

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode

# Base directory: backend/
_BASE_DIR = Path(__file__).resolve().parent.parent


class Settings(BaseSettings):
    """Application settings with environment variable support"""

    # Application
    APP_NAME: str = "Token Authority"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    ENVIRONMENT: str = "development"

    # Server
    HOST: str = "0.0.0.0"
    PORT: int = 8000
    WORKERS: int = 4

    # Database (PostgreSQL)
    DATABASE_URL: str = ""
    POSTGRES_HOST: str = "localhost"
    POSTGRES_PORT: int = 5432
    POSTGRES_DB: str = "token_authority"
    POSTGRES_USER: str = "authority"
    POSTGRES_PASSWORD: str = "authority"
    DATABASE_POOL_SIZE: int = 30
    DATABASE_MAX_OVERFLOW: int = 20
    DATABASE_POOL_TIMEOUT: int = 10
    DATABASE_STATEMENT_TIMEOUT_MS: int = 5000

    # Token signing
    SECRET_KEY: str = "dev-secret-key-change-in-production-use-openssl-rand-hex-32"
    TOKEN_HASH_SECRET: str = "dev-token-hash-secret-change-in-production"
    ALGORITHM: str = "HS256"
    JWT_ISSUER: str = "token-authority"
    JWT_AUDIENCE: str = "token-authority-api"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 15
    REFRESH_TOKEN_EXPIRE_DAYS: int = 7

    # Signing key rotation
    SIGNING_KEY_LIFETIME_HOURS: int = 168
    SIGNING_KEY_ROTATION_THRESHOLD_HOURS: int = 24
    SIGNING_KEY_RETENTION_HOURS: int = 24
    KEY_ROTATION_CHECK_INTERVAL_SECONDS: float = 3600.0
    RUN_EMBEDDED_KEY_ROTATION: bool = True
    # minimum gap between store reloads triggered by an unknown kid
    KEY_RELOAD_MIN_INTERVAL_SECONDS: float = 5.0

    # Delegated authorization (OIDC)
    API_BASE_URL: str = "http://localhost:8000"
    LOGIN_URL: str = "/login"
    AUTHORIZATION_CODE_EXPIRE_MINUTES: int = 10
    OIDC_ACCESS_TOKEN_EXPIRE_MINUTES: int = 60
    OIDC_REFRESH_TOKEN_EXPIRE_DAYS: int = 30
    OIDC_SCOPES_SUPPORTED: List[str] = Field(default_factory=lambda: ["openid", "profile", "email"])
    OIDC_CODE_CHALLENGE_METHODS: List[str] = Field(default_factory=lambda: ["S256"])
    # client_id -> allowed redirect URIs; empty accepts any client outside production
    OIDC_CLIENTS: Dict[str, List[str]] = Field(default_factory=dict)

    # One-time tokens
    EMAIL_VERIFICATION_EXPIRE_HOURS: int = 24
    PASSWORD_RESET_EXPIRE_MINUTES: int = 30

    # Session housekeeping
    SESSION_PURGE_AFTER_DAYS: int = 30

    # Rate Limiting
    RATE_LIMIT_PER_MINUTE: int = 100
    RATE_LIMIT_PER_HOUR: int = 1000
    LOGIN_RATE_LIMIT_PER_MINUTE: int = 10
    LOGIN_RATE_LIMIT_PER_HOUR: int = 50

    # Collaborators
    CAPTCHA_PROVIDER: str = "recaptcha_v2"
    ADMIN_USER_IDS: List[int] = Field(default_factory=list)

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FILE: str = ""

    # CORS
    CORS_ORIGINS: Annotated[List[str], NoDecode] = ["http://localhost:3000"]

    # Database initialization discipline
    DB_INIT_MODE: str = "migrate"  # migrate | create_all | off
    DB_REQUIRE_HEAD: bool = True

    class Config:
        env_file = ".env"
        case_sensitive = True

    @field_validator("CORS_ORIGINS", mode="before")
    @classmethod
    def _parse_cors_origins(cls, value: Any) -> Any:
        """
        Accept JSON array or comma-separated origins from env.

        Examples:
            CORS_ORIGINS=["http://localhost:3000","http://example.com"]
            CORS_ORIGINS=http://localhost:3000,http://example.com
        """
        if not isinstance(value, str):
            return value

        raw = value.strip()
        if not raw:
            return []

        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            parsed = None

        if isinstance(parsed, str):
            return [parsed]
        if isinstance(parsed, list):
            return [str(origin).strip() for origin in parsed if str(origin).strip()]

        return [origin.strip() for origin in raw.split(",") if origin.strip()]

    def get_log_file(self) -> str:
        p = self.LOG_FILE
        if not p or p.startswith(".."):
            return str(_BASE_DIR.parent / "logs" / "authority.log")
        return p

    def get_database_url(self) -> str:
        """
        Resolve database URL.

        Priority:
          1) Explicit DATABASE_URL
          2) Construct from POSTGRES_* parts with safe URL encoding
        """
        if self.DATABASE_URL:
            return self.DATABASE_URL

        user = quote_plus(self.POSTGRES_USER)
        password = quote_plus(self.POSTGRES_PASSWORD)
        return (
            f"postgresql://{user}:{password}"
            f"@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"
        )

    def validate_security_settings(self) -> None:
        """
        Validate runtime security defaults in production.

        Raises:
            ValueError: If insecure defaults are detected.
        """
        if self.ENVIRONMENT.lower() != "production":
            return

        insecure_secret_markers = {
            "",
            "dev-secret-key-change-in-production-use-openssl-rand-hex-32",
            "dev-token-hash-secret-change-in-production",
            "change-me",
        }

        if self.SECRET_KEY in insecure_secret_markers or len(self.SECRET_KEY) < 32:
            raise ValueError(
                "Insecure SECRET_KEY for production. Use a strong key (e.g. `openssl rand -hex 32`)."
            )

        if self.TOKEN_HASH_SECRET in insecure_secret_markers or len(self.TOKEN_HASH_SECRET) < 32:
            raise ValueError(
                "Insecure TOKEN_HASH_SECRET for production. Opaque token digests must use a strong key."
            )

        # without registered clients /oauth/authorize redirects codes anywhere
        if not self.OIDC_CLIENTS:
            raise ValueError(
                "OIDC_CLIENTS must register every client and its redirect URIs in production."
            )

        if self.SIGNING_KEY_ROTATION_THRESHOLD_HOURS >= self.SIGNING_KEY_LIFETIME_HOURS:
            raise ValueError(
                "SIGNING_KEY_ROTATION_THRESHOLD_HOURS must be shorter than SIGNING_KEY_LIFETIME_HOURS."
            )


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()


settings = get_settings()

"""
Environment configuration.

All runtime settings are read from environment variables once and cached.
Tests call reset_settings() after patching the environment.

Variables:
    DATABASE_URL                 Primary (row-security enforced) database
    MAINTENANCE_DATABASE_URL     Privileged connection for bypass sessions
    WORKOS_API_KEY               Identity provider API key
    WORKOS_CLIENT_ID             Identity provider client id
    WORKOS_API_BASE_URL          Identity provider API base URL
    WORKOS_ISSUER                Expected token issuer
    WORKOS_JWKS_URL              Key set URL (derived from client id if unset)
    WORKOS_AUDIENCE              Expected token audience (optional)
    JWKS_CACHE_TTL_SECONDS       Key set cache lifetime (default 300)
    IDP_TIMEOUT_SECONDS          Provider request timeout (default 10)
    DB_STATEMENT_TIMEOUT_MS      PostgreSQL statement_timeout (default 15000)
    AUDIT_POLICIES_PATH          Override path for audit_policies.yml
"""

import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

DEFAULT_WORKOS_API_BASE_URL = "https://api.workos.com"


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")


def _normalize_database_url(url: Optional[str]) -> Optional[str]:
    # SQLAlchemy requires postgresql:// rather than postgres://
    if url and url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql://", 1)
    return url


@dataclass(frozen=True)
class Settings:
    database_url: Optional[str]
    maintenance_database_url: Optional[str]
    workos_api_key: Optional[str]
    workos_client_id: Optional[str]
    workos_api_base_url: str
    workos_issuer: Optional[str]
    workos_jwks_url: Optional[str]
    workos_audience: Optional[str]
    jwks_cache_ttl_seconds: int
    idp_timeout_seconds: int
    db_statement_timeout_ms: int
    audit_policies_path: Optional[str]

    @property
    def jwks_url(self) -> Optional[str]:
        if self.workos_jwks_url:
            return self.workos_jwks_url
        if self.workos_client_id:
            return f"{self.workos_api_base_url.rstrip('/')}/sso/jwks/{self.workos_client_id}"
        return None

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            database_url=_normalize_database_url(os.getenv("DATABASE_URL")),
            maintenance_database_url=_normalize_database_url(os.getenv("MAINTENANCE_DATABASE_URL")),
            workos_api_key=os.getenv("WORKOS_API_KEY"),
            workos_client_id=os.getenv("WORKOS_CLIENT_ID"),
            workos_api_base_url=os.getenv("WORKOS_API_BASE_URL", DEFAULT_WORKOS_API_BASE_URL),
            workos_issuer=os.getenv("WORKOS_ISSUER"),
            workos_jwks_url=os.getenv("WORKOS_JWKS_URL"),
            workos_audience=os.getenv("WORKOS_AUDIENCE") or None,
            jwks_cache_ttl_seconds=_int_env("JWKS_CACHE_TTL_SECONDS", 300),
            idp_timeout_seconds=_int_env("IDP_TIMEOUT_SECONDS", 10),
            db_statement_timeout_ms=_int_env("DB_STATEMENT_TIMEOUT_MS", 15000),
            audit_policies_path=os.getenv("AUDIT_POLICIES_PATH"),
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return the process-wide Settings."""
    return Settings.from_env()


def reset_settings() -> None:
    """Drop cached settings (for tests only)."""
    get_settings.cache_clear()

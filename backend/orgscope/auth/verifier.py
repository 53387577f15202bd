"""
Session token verifier for WorkOS-issued access tokens.

This module handles:
- Token extraction from the Authorization header or the session cookie
- RS256 signature verification against the cached provider JWKS
- exp / iat / iss (and aud when configured) validation with clock skew
- Mapping verified claims to a VerifiedIdentity

SECURITY:
- WorkOS is the ONLY authentication authority
- Unverifiable tokens are rejected; a JWKS outage with no cached keys is
  ProviderUnavailable, NEVER "authenticated"
- The only side effect is the JWKS cache
"""

import logging
from threading import Lock
from typing import Optional

import jwt
from jwt.exceptions import (
    ExpiredSignatureError,
    ImmatureSignatureError,
    InvalidAudienceError,
    InvalidIssuerError,
    InvalidTokenError,
)
from pydantic import ValidationError
from starlette.requests import Request

from orgscope.auth.claims import SessionTokenClaims, VerifiedIdentity
from orgscope.auth.errors import ProviderUnavailable, Unauthenticated
from orgscope.auth.jwks import JWKSCache
from orgscope.config.settings import get_settings

logger = logging.getLogger(__name__)

SESSION_COOKIE_NAME = "wos-session"


def extract_session_token(request: Request) -> Optional[str]:
    """Bearer token from the Authorization header, else the session cookie."""
    auth_header = request.headers.get("Authorization", "")
    if auth_header.lower().startswith("bearer "):
        token = auth_header[7:].strip()
        if token:
            return token
    cookie = request.cookies.get(SESSION_COOKIE_NAME)
    return cookie or None


class IdentityTokenVerifier:
    """
    Verifies provider access tokens.

    Usage:
        verifier = IdentityTokenVerifier(jwks=JWKSCache(url), issuer=issuer)
        identity = verifier.verify(token)
    """

    # Clock skew tolerance in seconds (for exp/iat validation)
    CLOCK_SKEW_SECONDS = 30

    def __init__(
        self,
        jwks: JWKSCache,
        issuer: str,
        audience: Optional[str] = None,
    ):
        if not issuer:
            raise ValueError("Token issuer is required")
        self._jwks = jwks
        self._issuer = issuer
        self._audience = audience

        logger.info(
            "Initialized IdentityTokenVerifier",
            extra={"issuer": issuer, "jwks_url": jwks.jwks_url},
        )

    def verify(self, token: Optional[str]) -> VerifiedIdentity:
        """
        Verify a session token.

        Raises:
            Unauthenticated: missing, malformed, expired, bad signature, wrong issuer
            ProviderUnavailable: signing keys unavailable and never cached
        """
        if not token:
            raise Unauthenticated("Session token is required", error_code="missing_token")

        try:
            header = jwt.get_unverified_header(token)
        except InvalidTokenError as e:
            raise Unauthenticated(f"Malformed token: {e}", error_code="malformed_token")

        if header.get("alg") != "RS256":
            raise Unauthenticated("Unsupported signing algorithm", error_code="invalid_algorithm")

        signing_key = self._jwks.get_signing_key(header.get("kid"))

        try:
            payload = jwt.decode(
                token,
                signing_key.key,
                algorithms=["RS256"],
                issuer=self._issuer,
                audience=self._audience,
                options={
                    "verify_aud": self._audience is not None,
                    "require": ["sub", "iss", "exp", "iat"],
                },
                leeway=self.CLOCK_SKEW_SECONDS,
            )
        except ExpiredSignatureError:
            logger.info("Token has expired")
            raise Unauthenticated("Token has expired", error_code="token_expired")
        except ImmatureSignatureError:
            raise Unauthenticated("Token not yet valid", error_code="token_not_yet_valid")
        except InvalidIssuerError:
            logger.warning("Invalid token issuer")
            raise Unauthenticated("Invalid token issuer", error_code="invalid_issuer")
        except InvalidAudienceError:
            logger.warning("Invalid token audience")
            raise Unauthenticated("Invalid token audience", error_code="invalid_audience")
        except InvalidTokenError as e:
            logger.warning("Invalid token: %s", e)
            raise Unauthenticated(f"Invalid token: {e}", error_code="invalid_token")

        try:
            claims = SessionTokenClaims.model_validate(payload)
        except ValidationError as e:
            raise Unauthenticated(f"Invalid token claims: {e}", error_code="invalid_claims")

        logger.debug(
            "Token verified",
            extra={"sub": claims.sub, "sid": claims.sid},
        )
        return VerifiedIdentity.from_claims(claims)


# Singleton verifier instance (lazy initialization)
_verifier_instance: Optional[IdentityTokenVerifier] = None
_verifier_lock = Lock()


def get_verifier() -> IdentityTokenVerifier:
    """
    Process-wide verifier built from settings.

    Raises:
        ProviderUnavailable: identity provider not configured
    """
    global _verifier_instance

    with _verifier_lock:
        if _verifier_instance is None:
            settings = get_settings()
            if not settings.jwks_url or not settings.workos_issuer:
                raise ProviderUnavailable(
                    "Identity provider is not configured (WORKOS_ISSUER / WORKOS_CLIENT_ID)",
                    error_code="provider_not_configured",
                )
            _verifier_instance = IdentityTokenVerifier(
                jwks=JWKSCache(
                    settings.jwks_url,
                    ttl_seconds=settings.jwks_cache_ttl_seconds,
                    timeout=float(settings.idp_timeout_seconds),
                ),
                issuer=settings.workos_issuer,
                audience=settings.workos_audience,
            )
        return _verifier_instance


def reset_verifier() -> None:
    """Drop the singleton (for tests only)."""
    global _verifier_instance
    with _verifier_lock:
        _verifier_instance = None

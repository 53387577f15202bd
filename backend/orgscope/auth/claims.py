"""
Session token claims and registration intent.

WorkOS access token claims used:
- sub: provider user id
- sid: session id
- org_id: provider organization id (hint for multi-org identities)
- role: provider role inside org_id (informational; local Membership wins)
- email, first_name, last_name / name: optional custom claims

Registration intent travels in the OAuth "state" parameter as JSON, e.g.
{"expert": true, "returnTo": "/setup"}. A malformed state is ignored.
"""

import json
import logging
from dataclasses import dataclass
from typing import Optional, Any, Dict

from pydantic import BaseModel, ConfigDict, Field

from orgscope.models.organization import OrganizationType

logger = logging.getLogger(__name__)


class SessionTokenClaims(BaseModel):
    """Verified access token payload."""

    sub: str = Field(..., description="Provider user id")
    iss: str = Field(..., description="Token issuer")
    exp: int = Field(..., description="Expiration timestamp (Unix)")
    iat: int = Field(..., description="Issued at timestamp (Unix)")

    sid: Optional[str] = Field(None, description="Session id")
    org_id: Optional[str] = Field(None, description="Provider organization id")
    role: Optional[str] = Field(None, description="Provider role in org_id")

    email: Optional[str] = None
    name: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None

    model_config = ConfigDict(extra="allow")

    @property
    def display_name(self) -> Optional[str]:
        if self.name and self.name.strip():
            return self.name.strip()
        parts = [p.strip() for p in (self.first_name, self.last_name) if p and p.strip()]
        return " ".join(parts) or None


@dataclass(frozen=True)
class VerifiedIdentity:
    """Result of a successful token verification."""
    subject_id: str
    email: Optional[str]
    display_name: Optional[str]
    org_hint: Optional[str]
    session_id: Optional[str]

    @classmethod
    def from_claims(cls, claims: SessionTokenClaims) -> "VerifiedIdentity":
        return cls(
            subject_id=claims.sub,
            email=claims.email.strip().lower() if claims.email else None,
            display_name=claims.display_name,
            org_hint=claims.org_id,
            session_id=claims.sid,
        )


@dataclass(frozen=True)
class RegistrationIntent:
    """What the identity asked to become when it signed up."""
    expert: bool = False
    return_to: Optional[str] = None

    @property
    def organization_type(self) -> OrganizationType:
        if self.expert:
            return OrganizationType.EXPERT_INDIVIDUAL
        return OrganizationType.PATIENT_PERSONAL


def _safe_return_path(value: Any) -> Optional[str]:
    # Relative paths only; "//host" would be an open redirect
    if isinstance(value, str) and value.startswith("/") and not value.startswith("//"):
        return value
    return None


def parse_registration_intent(state: Optional[str]) -> RegistrationIntent:
    """
    Parse the OAuth state JSON.

    {"expert": true} and {"expert": "true"} both mean expert intent.
    Anything unparseable yields the default (patient) intent.
    """
    if not state:
        return RegistrationIntent()
    try:
        data: Dict[str, Any] = json.loads(state)
    except (TypeError, ValueError):
        logger.debug("Ignoring non-JSON OAuth state")
        return RegistrationIntent()
    if not isinstance(data, dict):
        return RegistrationIntent()

    expert = data.get("expert") is True or data.get("expert") == "true"
    if expert:
        logger.info("Expert registration intent detected")
    return RegistrationIntent(expert=expert, return_to=_safe_return_path(data.get("returnTo")))

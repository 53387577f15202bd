"""
Data models for WorkOS API responses.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict


class WorkOSUser(BaseModel):
    id: str
    email: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email_verified: bool = False

    model_config = ConfigDict(extra="ignore")

    @property
    def display_name(self) -> Optional[str]:
        parts = [p.strip() for p in (self.first_name, self.last_name) if p and p.strip()]
        return " ".join(parts) or None


class WorkOSOrganization(BaseModel):
    id: str
    name: str
    external_id: Optional[str] = None

    model_config = ConfigDict(extra="ignore")


class WorkOSMembership(BaseModel):
    id: str
    user_id: str
    organization_id: str
    status: Optional[str] = None

    model_config = ConfigDict(extra="ignore")


class WorkOSAuthentication(BaseModel):
    """Result of exchanging an authorization code."""
    user: WorkOSUser
    access_token: str
    refresh_token: Optional[str] = None
    organization_id: Optional[str] = None

    model_config = ConfigDict(extra="ignore")

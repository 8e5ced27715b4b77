"""Pydantic models for the camper columns the sync engine reads and writes.

The ``campers`` table is owned by the surrounding application.  The engine
only reads provider/credential fields and writes sync status and cached
publisher sessions.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import Field, field_validator

from src.models.base import GuardianBase, as_utc


# ---------- Enums ----------

class ProviderKind(str, Enum):
    dexcom_publisher = "dexcom_publisher"
    dexcom_follower = "dexcom_follower"
    nightscout = "nightscout"
    libre = "libre"


class AuthMode(str, Enum):
    publisher = "publisher"
    follower = "follower"


# ---------- Camper ----------

class CamperRecord(GuardianBase):
    id: int
    name: str | None = None
    cgm_provider: str | None = None  # dexcom | nightscout | libre
    cgm_auth_mode: AuthMode = AuthMode.publisher
    cgm_username: str | None = None
    cgm_password_enc: str | None = Field(default=None, repr=False)
    cgm_url: str | None = None
    cgm_session_id: str | None = Field(default=None, repr=False)
    session_expires_at: datetime | None = None
    target_low: int = 70
    target_high: int = 180
    last_sync_at: datetime | None = None
    sync_error: str | None = None
    is_active: bool = True

    @field_validator("cgm_auth_mode", mode="before")
    @classmethod
    def _default_auth_mode(cls, v: object) -> object:
        return v or AuthMode.publisher

    @field_validator("session_expires_at", "last_sync_at")
    @classmethod
    def _to_utc(cls, v: datetime | None) -> datetime | None:
        return as_utc(v)

    @property
    def provider_kind(self) -> ProviderKind | None:
        """Resolve the provider implementation this camper is synced with."""
        provider = (self.cgm_provider or "").strip().lower()
        if provider == "dexcom":
            if self.cgm_auth_mode == AuthMode.follower:
                return ProviderKind.dexcom_follower
            return ProviderKind.dexcom_publisher
        if provider == "nightscout":
            return ProviderKind.nightscout
        if provider == "libre":
            return ProviderKind.libre
        return None

    @property
    def has_credentials(self) -> bool:
        kind = self.provider_kind
        if kind is None:
            return False
        if kind == ProviderKind.dexcom_follower:
            # shared follower login; the username names the publisher to read
            return bool(self.cgm_username)
        if kind == ProviderKind.nightscout:
            return bool(self.cgm_url)
        return bool(self.cgm_username and self.cgm_password_enc)

    @property
    def is_monitorable(self) -> bool:
        """Active, provider assigned, and credentials configured."""
        return self.is_active and self.provider_kind is not None and self.has_credentials


class SyncStatusSummary(GuardianBase):
    """Aggregate sync health shown on the dashboard."""

    total: int = 0
    connected: int = 0
    errors: int = 0
    last_sync: datetime | None = None

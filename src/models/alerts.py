"""Pydantic models for care-team alerts."""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import field_validator

from src.models.base import GuardianBase, as_utc


# ---------- Enums ----------

class AlertKind(str, Enum):
    critical_low = "critical_low"
    low = "low"
    high = "high"
    critical_high = "critical_high"
    no_data = "no_data"

    @property
    def severity(self) -> int:
        """Dashboard sort order, most urgent first."""
        return _SEVERITY[self]


_SEVERITY: dict[AlertKind, int] = {
    AlertKind.critical_low: 1,
    AlertKind.critical_high: 2,
    AlertKind.low: 3,
    AlertKind.high: 4,
    AlertKind.no_data: 5,
}

# ---------- Alerts ----------

class AlertRead(GuardianBase):
    id: int
    camper_id: int
    type: AlertKind
    value: int | None = None  # None for no_data
    created_at: datetime
    acknowledged_by: int | None = None
    acknowledged_at: datetime | None = None

    @field_validator("created_at", "acknowledged_at")
    @classmethod
    def _to_utc(cls, v: datetime | None) -> datetime | None:
        return as_utc(v)

    @property
    def is_acknowledged(self) -> bool:
        return self.acknowledged_at is not None

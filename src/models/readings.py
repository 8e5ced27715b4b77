"""Pydantic models for stored glucose readings."""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import Field, field_validator

from src.models.base import GuardianBase, as_utc

# Highest value any supported meter reports, in mg/dL
MAX_GLUCOSE_MGDL = 1000


class TrendDirection(str, Enum):
    double_up = "double_up"
    single_up = "single_up"
    forty_five_up = "forty_five_up"
    flat = "flat"
    forty_five_down = "forty_five_down"
    single_down = "single_down"
    double_down = "double_down"
    unknown = "unknown"

    @property
    def arrow(self) -> str:
        return _TREND_ARROWS[self]


_TREND_ARROWS: dict[TrendDirection, str] = {
    TrendDirection.double_up: "↑↑",
    TrendDirection.single_up: "↑",
    TrendDirection.forty_five_up: "↗",
    TrendDirection.flat: "→",
    TrendDirection.forty_five_down: "↘",
    TrendDirection.single_down: "↓",
    TrendDirection.double_down: "↓↓",
    TrendDirection.unknown: "?",
}


class GlucoseReadingRead(GuardianBase):
    id: int | None = None
    camper_id: int
    value: int = Field(gt=0, le=MAX_GLUCOSE_MGDL)  # mg/dL
    trend: TrendDirection = TrendDirection.unknown
    reading_time: datetime

    @field_validator("trend", mode="before")
    @classmethod
    def _coerce_trend(cls, v: object) -> object:
        if v is None:
            return TrendDirection.unknown
        try:
            return TrendDirection(v)
        except ValueError:
            return TrendDirection.unknown

    @field_validator("reading_time")
    @classmethod
    def _to_utc(cls, v: datetime) -> datetime:
        return as_utc(v)

"""Nightscout provider for campers who run their own Nightscout site.

Endpoints used:
    /api/v1/status.json      Reachability and ``apiEnabled`` check
    /api/v1/entries/sgv.json Latest sensor glucose values

The API secret travels as the ``api-secret`` header holding its SHA-1 hex
digest.  Nightscout has no login, so the "session" is that digest plus the
site URL; it is kept in memory only.
"""

from __future__ import annotations

import hashlib
import logging
from datetime import datetime, timedelta
from typing import Any, Callable

import httpx

from src.cgm.base import (
    CGMProvider,
    GlucoseSample,
    ProviderCredentials,
    ProviderSession,
    ReadingWindow,
)
from src.cgm.errors import (
    InvalidCredentialsError,
    ProviderUnavailableError,
    SessionExpiredError,
    ValidationError,
)
from src.models.base import utc_now
from src.models.campers import ProviderKind
from src.models.readings import TrendDirection

logger = logging.getLogger("guardianview.cgm.nightscout")

_STATUS_PATH = "/api/v1/status.json"
_ENTRIES_PATH = "/api/v1/entries/sgv.json"

_TREND_MAP: dict[str, TrendDirection] = {
    "DoubleUp": TrendDirection.double_up,
    "SingleUp": TrendDirection.single_up,
    "FortyFiveUp": TrendDirection.forty_five_up,
    "Flat": TrendDirection.flat,
    "FortyFiveDown": TrendDirection.forty_five_down,
    "SingleDown": TrendDirection.single_down,
    "DoubleDown": TrendDirection.double_down,
}


def hash_api_secret(secret: str) -> str:
    """Return the SHA-1 hex digest Nightscout expects in ``api-secret``."""
    return hashlib.sha1(secret.encode("utf-8")).hexdigest()


class NightscoutProvider(CGMProvider):
    """Reads sensor glucose entries from a self-hosted Nightscout instance."""

    KINDS = (ProviderKind.nightscout,)
    DISPLAY_NAME = "Nightscout"
    PERSISTS_SESSION = False

    def __init__(
        self,
        session_ttl: timedelta = timedelta(hours=24),
        http_client: httpx.AsyncClient | None = None,
        timeout: float = 15.0,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        super().__init__(http_client=http_client, timeout=timeout)
        self._session_ttl = session_ttl
        self._clock = clock

    async def authenticate(self, credentials: ProviderCredentials) -> ProviderSession:
        """Check the site is reachable with the API enabled and accepts the secret."""
        base_url = (credentials.url or "").strip().rstrip("/")
        if not base_url.startswith(("http://", "https://")):
            raise InvalidCredentialsError(
                "Nightscout URL must start with http:// or https://",
                provider=self.DISPLAY_NAME,
            )

        secret_hash = hash_api_secret(credentials.password) if credentials.password else None
        response = await self._send(
            "get", base_url + _STATUS_PATH, headers=self._headers(secret_hash)
        )

        if response.status_code in (401, 403):
            raise InvalidCredentialsError(
                "Nightscout rejected the API secret", provider=self.DISPLAY_NAME
            )
        if response.status_code != 200:
            raise self._unavailable("status check", response)

        status = self._json(response)
        if not isinstance(status, dict):
            raise ProviderUnavailableError(
                "Nightscout status response was not an object", provider=self.DISPLAY_NAME
            )
        if not status.get("apiEnabled"):
            raise InvalidCredentialsError(
                "Nightscout API is not enabled", provider=self.DISPLAY_NAME
            )

        return ProviderSession(
            token=secret_hash or hash_api_secret(""),
            expires_at=self._clock() + self._session_ttl,
            extra={"url": base_url, "send_secret": secret_hash is not None},
        )

    async def fetch_readings(
        self,
        session: ProviderSession,
        window: ReadingWindow,
        target_id: str | None = None,
    ) -> list[GlucoseSample]:
        base_url = session.extra.get("url")
        if not base_url:
            raise SessionExpiredError(
                "Nightscout session has no site URL", provider=self.DISPLAY_NAME
            )
        secret_hash = session.token if session.extra.get("send_secret") else None

        response = await self._send(
            "get",
            base_url + _ENTRIES_PATH,
            params={"count": window.max_count},
            headers=self._headers(secret_hash),
        )

        if response.status_code in (401, 403):
            raise SessionExpiredError(
                "Nightscout no longer accepts the API secret", provider=self.DISPLAY_NAME
            )
        if response.status_code != 200:
            raise self._unavailable("entries", response)

        payload = self._json(response)
        if not isinstance(payload, list):
            raise ProviderUnavailableError(
                "Nightscout entries response was not a list", provider=self.DISPLAY_NAME
            )
        return self._normalize_entries(payload, self._parse_entry)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _headers(secret_hash: str | None) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if secret_hash:
            headers["api-secret"] = secret_hash
        return headers

    def _parse_entry(self, entry: Any) -> GlucoseSample:
        if not isinstance(entry, dict):
            raise ValidationError(f"unexpected entry {entry!r}")
        value = self._require_glucose(entry.get("sgv"))
        if entry.get("date") is not None:
            reading_time = self._from_epoch_ms(entry["date"])
        else:
            reading_time = self._parse_iso_datetime(entry.get("dateString"))
            if reading_time is None:
                raise ValidationError("entry has no timestamp")
        return GlucoseSample(
            value=value,
            trend=_TREND_MAP.get(entry.get("direction") or "", TrendDirection.unknown),
            reading_time=reading_time,
        )

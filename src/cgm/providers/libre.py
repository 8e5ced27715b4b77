"""LibreLinkUp provider (FreeStyle Libre follower cloud).

API base: https://api.libreview.io (regional hosts ``api-<region>.libreview.io``)

Endpoints used:
    /llu/auth/login                      Email/password login -> auth ticket
    /llu/connections                     Patients shared with this account
    /llu/connections/{patientId}/graph   Last 12 h of readings + current value

Login may answer ``{"status": 0, "data": {"redirect": true, "region": "eu"}}``;
the request is retried once against the regional host.  Authenticated calls
carry ``Authorization: Bearer <token>`` and ``Account-Id`` (SHA-256 hex of the
user id).
"""

from __future__ import annotations

import hashlib
import logging
from datetime import datetime, timedelta, timezone
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

logger = logging.getLogger("guardianview.cgm.libre")

_LIBRE_API_BASE = "https://api.libreview.io"
_LOGIN_PATH = "/llu/auth/login"
_CONNECTIONS_PATH = "/llu/connections"

_HEADERS = {
    "User-Agent": "Mozilla/5.0",
    "Content-Type": "application/json",
    "version": "4.16.0",
    "product": "llu.ios",
    "Cache-Control": "no-cache",
}

# Login status codes
_STATUS_OK = 0
_STATUS_BAD_CREDENTIALS = 2
_STATUS_TERMS_REQUIRED = 4

# HTTP statuses on login that mean the account itself was refused
_REJECTED_LOGIN_STATUSES = {401, 403}

_TIMESTAMP_FORMAT = "%m/%d/%Y %I:%M:%S %p"

_TREND_MAP: dict[int, TrendDirection] = {
    1: TrendDirection.single_down,
    2: TrendDirection.forty_five_down,
    3: TrendDirection.flat,
    4: TrendDirection.forty_five_up,
    5: TrendDirection.single_up,
}


def region_to_base_url(region: str) -> str:
    """Map a LibreView region code to its API host."""
    r = region.strip().lower()
    if not r:
        return _LIBRE_API_BASE
    if r == "eu":
        r = "de"
    return f"https://api-{r}.libreview.io"


def account_id_for(user_id: str) -> str:
    return hashlib.sha256(user_id.encode("utf-8")).hexdigest()


class LibreLinkUpProvider(CGMProvider):
    """Reads the first patient shared with a LibreLinkUp account."""

    KINDS = (ProviderKind.libre,)
    DISPLAY_NAME = "LibreLinkUp"
    PERSISTS_SESSION = False

    def __init__(
        self,
        api_base: str = _LIBRE_API_BASE,
        session_ttl: timedelta = timedelta(hours=1),
        http_client: httpx.AsyncClient | None = None,
        timeout: float = 15.0,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        super().__init__(http_client=http_client, timeout=timeout)
        self._api_base = api_base.rstrip("/")
        self._session_ttl = session_ttl
        self._clock = clock

    # ------------------------------------------------------------------
    # CGMProvider interface
    # ------------------------------------------------------------------

    async def authenticate(self, credentials: ProviderCredentials) -> ProviderSession:
        """Log in, follow at most one regional redirect, and resolve the patient id."""
        if not credentials.username or not credentials.password:
            raise InvalidCredentialsError(
                "LibreLinkUp email and password are required", provider=self.DISPLAY_NAME
            )

        api_base = self._api_base
        body = {"email": credentials.username, "password": credentials.password}
        for attempt in (1, 2):
            response = await self._send(
                "post", api_base + _LOGIN_PATH, json=body, headers=_HEADERS
            )
            if response.status_code in _REJECTED_LOGIN_STATUSES:
                raise InvalidCredentialsError(
                    "LibreLinkUp rejected the login", provider=self.DISPLAY_NAME
                )
            if response.status_code != 200:
                raise self._unavailable("login", response)

            payload = self._json(response)
            if not isinstance(payload, dict):
                raise ProviderUnavailableError(
                    "LibreLinkUp login response was not an object", provider=self.DISPLAY_NAME
                )
            data = payload.get("data")
            data = data if isinstance(data, dict) else {}

            region = str(data.get("region") or "").strip()
            if data.get("redirect") and region:
                new_base = region_to_base_url(region)
                if attempt == 1 and new_base != api_base:
                    logger.info("LibreLinkUp: redirected to region %s", region)
                    api_base = new_base
                    continue
                raise ProviderUnavailableError(
                    "LibreLinkUp login redirect loop", provider=self.DISPLAY_NAME
                )
            break

        status = self._safe_int(payload.get("status"))
        if status == _STATUS_BAD_CREDENTIALS:
            raise InvalidCredentialsError(
                "Invalid LibreLinkUp credentials", provider=self.DISPLAY_NAME
            )
        if status == _STATUS_TERMS_REQUIRED:
            raise InvalidCredentialsError(
                "LibreLinkUp account must accept the terms of use in the app",
                provider=self.DISPLAY_NAME,
            )

        user = data.get("user") or {}
        ticket = data.get("authTicket") or {}
        user_id = str(user.get("id") or "")
        token = str(ticket.get("token") or "")
        if status != _STATUS_OK or not user_id or not token:
            raise ProviderUnavailableError(
                f"LibreLinkUp login response incomplete (status={status})",
                provider=self.DISPLAY_NAME,
            )

        account_id = account_id_for(user_id)
        patient_id = await self._first_patient_id(api_base, token, account_id)
        logger.info("LibreLinkUp: login succeeded")
        return ProviderSession(
            token=token,
            expires_at=self._ticket_expiry(ticket.get("expires")),
            extra={
                "api_base": api_base,
                "account_id": account_id,
                "patient_id": patient_id,
            },
        )

    async def fetch_readings(
        self,
        session: ProviderSession,
        window: ReadingWindow,
        target_id: str | None = None,
    ) -> list[GlucoseSample]:
        patient_id = session.extra.get("patient_id")
        api_base = session.extra.get("api_base", self._api_base)
        if not patient_id:
            raise SessionExpiredError(
                "LibreLinkUp session has no patient id", provider=self.DISPLAY_NAME
            )

        response = await self._send(
            "get",
            f"{api_base}{_CONNECTIONS_PATH}/{patient_id}/graph",
            headers=self._auth_headers(session.token, session.extra.get("account_id")),
        )
        if response.status_code == 401:
            raise SessionExpiredError(
                "LibreLinkUp session expired", provider=self.DISPLAY_NAME
            )
        if response.status_code != 200:
            raise self._unavailable("graph", response)

        payload = self._json(response)
        data = payload.get("data") if isinstance(payload, dict) else None
        if not isinstance(data, dict):
            raise ProviderUnavailableError(
                "LibreLinkUp graph response had no data", provider=self.DISPLAY_NAME
            )

        entries: list[Any] = list(data.get("graphData") or [])
        current = (data.get("connection") or {}).get("glucoseMeasurement")
        if current:
            entries.append(current)

        samples = self._normalize_entries(entries, self._parse_entry)
        cutoff = self._clock() - timedelta(minutes=window.minutes)
        return [s for s in samples if s.reading_time >= cutoff][: window.max_count]

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _first_patient_id(self, api_base: str, token: str, account_id: str) -> str:
        response = await self._send(
            "get", api_base + _CONNECTIONS_PATH, headers=self._auth_headers(token, account_id)
        )
        if response.status_code != 200:
            raise self._unavailable("connections", response)

        payload = self._json(response)
        connections = payload.get("data") if isinstance(payload, dict) else None
        if not isinstance(connections, list) or not connections:
            raise InvalidCredentialsError(
                "No LibreLinkUp connections found for this account",
                provider=self.DISPLAY_NAME,
            )
        patient_id = connections[0].get("patientId") if isinstance(connections[0], dict) else None
        if not patient_id:
            raise ProviderUnavailableError(
                "LibreLinkUp connection has no patient id", provider=self.DISPLAY_NAME
            )
        return str(patient_id)

    @staticmethod
    def _auth_headers(token: str, account_id: str | None) -> dict[str, str]:
        headers = dict(_HEADERS)
        headers["Authorization"] = f"Bearer {token}"
        if account_id:
            headers["Account-Id"] = account_id
        return headers

    def _ticket_expiry(self, expires: object) -> datetime:
        """Auth ticket expiry (unix seconds), falling back to the configured TTL."""
        seconds = self._safe_int(expires)
        if seconds and seconds > 0:
            try:
                return datetime.fromtimestamp(seconds, tz=timezone.utc)
            except (OverflowError, OSError, ValueError):
                logger.warning("LibreLinkUp: unusable ticket expiry %r", expires)
        return self._clock() + self._session_ttl

    def _parse_entry(self, entry: Any) -> GlucoseSample:
        if not isinstance(entry, dict):
            raise ValidationError(f"unexpected entry {entry!r}")
        value = self._require_glucose(entry.get("ValueInMgPerDl", entry.get("Value")))
        raw_ts = entry.get("FactoryTimestamp")
        try:
            reading_time = datetime.strptime(raw_ts, _TIMESTAMP_FORMAT).replace(
                tzinfo=timezone.utc
            )
        except (TypeError, ValueError) as exc:
            raise ValidationError(f"unusable timestamp {raw_ts!r}") from exc
        trend = _TREND_MAP.get(self._safe_int(entry.get("TrendArrow")), TrendDirection.unknown)
        return GlucoseSample(value=value, trend=trend, reading_time=reading_time)

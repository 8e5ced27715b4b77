"""Dexcom Share provider.

Serves both camper-owned publisher accounts and the camp's shared follower
account.  Login is two-step:

    General/AuthenticatePublisherAccount   username + password -> accountId
    General/LoginPublisherAccountById      accountId + password -> sessionId

Readings:
    Publisher/ReadPublisherLatestGlucoseValues
    Follower/ReadFollowerLatestGlucoseValues

Both take ``sessionId``, ``minutes`` and ``maxCount`` query parameters.  The
Share service signals an expired session with HTTP 500 and a body naming the
session (``SessionIdNotFound`` / ``SessionNotValid``).

Regional hosts:
    us   https://share2.dexcom.com
    ous  https://shareous1.dexcom.com
"""

from __future__ import annotations

import logging
import re
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
from src.models.campers import AuthMode, ProviderKind
from src.models.readings import TrendDirection

logger = logging.getLogger("guardianview.cgm.dexcom")

_DEXCOM_HOSTS = {
    "us": "https://share2.dexcom.com",
    "ous": "https://shareous1.dexcom.com",
}
_SERVICES_PATH = "/ShareWebServices/Services"
_APPLICATION_ID = "d89443d2-327c-4a6f-89e5-496bbb0317db"
_NIL_GUID = "00000000-0000-0000-0000-000000000000"

_HEADERS = {
    "Content-Type": "application/json",
    "Accept": "application/json",
    "User-Agent": "GuardianView",
}

# Error codes returned in the JSON body of a rejected login
_BAD_LOGIN_CODES = {"AccountPasswordInvalid", "AccountNotFound"}
_REJECTED_LOGIN_STATUSES = {401, 403}

# Share reports trend either by name or by its position in this list
_TREND_NAMES: list[tuple[str, TrendDirection]] = [
    ("None", TrendDirection.unknown),
    ("DoubleUp", TrendDirection.double_up),
    ("SingleUp", TrendDirection.single_up),
    ("FortyFiveUp", TrendDirection.forty_five_up),
    ("Flat", TrendDirection.flat),
    ("FortyFiveDown", TrendDirection.forty_five_down),
    ("SingleDown", TrendDirection.single_down),
    ("DoubleDown", TrendDirection.double_down),
    ("NotComputable", TrendDirection.unknown),
    ("RateOutOfRange", TrendDirection.unknown),
]
_TREND_BY_NAME = dict(_TREND_NAMES)

# "Date(1703182152000)" or "Date(1703182152000-0500)"; the number is UTC epoch ms
_DATE_RE = re.compile(r"Date\((-?\d+)(?:[+-]\d{4})?\)")


class DexcomShareProvider(CGMProvider):
    """Dexcom Share client for publisher or follower mode.

    One instance serves one mode; the registry builds one of each.  Follower
    mode reads whatever the follower account is subscribed to, so
    ``target_id`` is accepted for interface parity and only logged.
    """

    KINDS = (ProviderKind.dexcom_publisher, ProviderKind.dexcom_follower)
    DISPLAY_NAME = "Dexcom Share"
    PERSISTS_SESSION = True

    def __init__(
        self,
        mode: AuthMode = AuthMode.publisher,
        region: str = "us",
        session_ttl: timedelta = timedelta(hours=12),
        http_client: httpx.AsyncClient | None = None,
        timeout: float = 15.0,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        """Initialize the Dexcom provider.

        Args:
            mode:        Publisher (camper's own account) or follower.
            region:      ``us`` or ``ous`` (DEXCOM_REGION env var).
            session_ttl: How long a new session is trusted before re-login.
            http_client: Optional pre-configured httpx client (for testing).
            timeout:     Request timeout when no client is injected.
            clock:       Current aware UTC time.

        Raises:
            ValueError: Unknown region.
        """
        super().__init__(http_client=http_client, timeout=timeout)
        host = _DEXCOM_HOSTS.get(region.strip().lower())
        if host is None:
            raise ValueError(
                f"Unknown Dexcom region '{region}'. Available: {list(_DEXCOM_HOSTS)}"
            )
        self._base = host + _SERVICES_PATH
        self._mode = AuthMode(mode)
        self._session_ttl = session_ttl
        self._clock = clock

    @property
    def mode(self) -> AuthMode:
        return self._mode

    # ------------------------------------------------------------------
    # CGMProvider interface
    # ------------------------------------------------------------------

    async def authenticate(self, credentials: ProviderCredentials) -> ProviderSession:
        """Run the two-step Share login and return a session with the configured TTL."""
        if not credentials.username or not credentials.password:
            raise InvalidCredentialsError(
                "Dexcom username and password are required", provider=self.DISPLAY_NAME
            )

        account_id = await self._login_step(
            "General/AuthenticatePublisherAccount",
            {
                "accountName": credentials.username,
                "password": credentials.password,
                "applicationId": _APPLICATION_ID,
            },
        )
        session_id = await self._login_step(
            "General/LoginPublisherAccountById",
            {
                "accountId": account_id,
                "password": credentials.password,
                "applicationId": _APPLICATION_ID,
            },
        )
        logger.info("Dexcom: %s login succeeded", self._mode.value)
        return ProviderSession(
            token=session_id,
            expires_at=self._clock() + self._session_ttl,
            extra={"mode": self._mode.value},
        )

    async def fetch_readings(
        self,
        session: ProviderSession,
        window: ReadingWindow,
        target_id: str | None = None,
    ) -> list[GlucoseSample]:
        if self._mode is AuthMode.follower:
            path = "Follower/ReadFollowerLatestGlucoseValues"
            if target_id:
                logger.debug("Dexcom follower read for %s", target_id)
        else:
            path = "Publisher/ReadPublisherLatestGlucoseValues"

        response = await self._send(
            "get",
            f"{self._base}/{path}",
            params={
                "sessionId": session.token,
                "minutes": window.minutes,
                "maxCount": window.max_count,
            },
            headers=_HEADERS,
        )

        if response.status_code == 500 and "Session" in response.text:
            raise SessionExpiredError(
                f"Dexcom {self._mode.value} session expired", provider=self.DISPLAY_NAME
            )
        if response.status_code != 200:
            raise self._unavailable("readings", response)

        payload = self._json(response)
        if not isinstance(payload, list):
            raise ProviderUnavailableError(
                "Dexcom readings response was not a list", provider=self.DISPLAY_NAME
            )
        return self._normalize_entries(payload, self._parse_entry)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _login_step(self, path: str, body: dict[str, str]) -> str:
        """POST one login step and return the GUID it yields."""
        response = await self._send(
            "post", f"{self._base}/{path}", json=body, headers=_HEADERS
        )

        if response.status_code != 200:
            if self._is_rejected_login(response):
                raise InvalidCredentialsError(
                    "Invalid Dexcom credentials", provider=self.DISPLAY_NAME
                )
            raise self._unavailable("login", response)

        value = self._json(response)
        if not isinstance(value, str) or not value:
            raise ProviderUnavailableError(
                "Dexcom login returned an unexpected body", provider=self.DISPLAY_NAME
            )
        if value == _NIL_GUID:
            raise InvalidCredentialsError(
                "Invalid Dexcom credentials", provider=self.DISPLAY_NAME
            )
        return value

    @staticmethod
    def _is_rejected_login(response: httpx.Response) -> bool:
        if response.status_code in _REJECTED_LOGIN_STATUSES:
            return True
        try:
            body: Any = response.json()
        except ValueError:
            return False
        code = str(body.get("Code") or "") if isinstance(body, dict) else ""
        return code in _BAD_LOGIN_CODES or code.startswith("SSO_Authenticate")

    def _parse_entry(self, entry: Any) -> GlucoseSample:
        if not isinstance(entry, dict):
            raise ValidationError(f"unexpected entry {entry!r}")
        value = self._require_glucose(entry.get("Value"))
        reading_time = self._parse_share_date(entry.get("ST") or entry.get("WT"))
        return GlucoseSample(
            value=value,
            trend=self._parse_trend(entry.get("Trend")),
            reading_time=reading_time,
        )

    @staticmethod
    def _parse_share_date(raw: object) -> datetime:
        match = _DATE_RE.search(raw) if isinstance(raw, str) else None
        if match is None:
            raise ValidationError(f"unusable timestamp {raw!r}")
        return CGMProvider._from_epoch_ms(match.group(1))

    @staticmethod
    def _parse_trend(raw: object) -> TrendDirection:
        if isinstance(raw, str):
            return _TREND_BY_NAME.get(raw, TrendDirection.unknown)
        if isinstance(raw, int) and not isinstance(raw, bool) and 0 <= raw < len(_TREND_NAMES):
            return _TREND_NAMES[raw][1]
        return TrendDirection.unknown

"""Base classes and canonical data models for the GuardianView sync engine.

Every CGM provider must subclass CGMProvider and return canonical
GlucoseSample objects.  These types are the single source of truth consumed by
the session cache, reading store, alert engine, and orchestrator.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Iterable

import httpx

from src.cgm.errors import CGMSyncError, ProviderUnavailableError, ValidationError
from src.models.campers import ProviderKind
from src.models.readings import MAX_GLUCOSE_MGDL, TrendDirection

logger = logging.getLogger("guardianview.cgm")


# ---------------------------------------------------------------------------
# Credentials / sessions
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ProviderCredentials:
    """Decrypted login material for one provider account.

    Attributes:
        username: Account name / email (Dexcom, LibreLinkUp).
        password: Plaintext password or Nightscout API secret.  Excluded from
                  repr so it cannot leak into logs.
        url:      Base URL for self-hosted providers (Nightscout).
    """

    username: str | None = None
    password: str | None = field(default=None, repr=False)
    url: str | None = None


@dataclass
class ProviderSession:
    """Short-lived provider session returned by ``authenticate``.

    Attributes:
        token:      Session id / bearer token sent on subsequent reads.
        expires_at: Aware UTC instant after which the token must not be reused.
        subject_id: Owning camper id, or None for the shared follower session.
        extra:      Provider-specific values needed to read (e.g. patient id).
    """

    token: str = field(repr=False)
    expires_at: datetime | None = None
    subject_id: int | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def is_valid(self, now: datetime) -> bool:
        """Return True if the session may be reused at *now*.

        Sessions without a known expiry are never reused.
        """
        return bool(self.token) and self.expires_at is not None and now < self.expires_at


@dataclass(frozen=True)
class ReadingWindow:
    """How far back and how many samples to request per fetch."""

    minutes: int = 180
    max_count: int = 36


@dataclass
class ConnectionCheck:
    """Outcome of ``test_connection``.

    ``session`` is populated on success so the caller can persist it and skip
    the first login of the next sync.
    """

    ok: bool
    message: str | None = None
    session: ProviderSession | None = None


# ---------------------------------------------------------------------------
# Canonical sample
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class GlucoseSample:
    """One normalized CGM sample.

    Attributes:
        value:       Glucose in mg/dL (positive integer).
        trend:       Canonical trend direction.
        reading_time: Provider-reported sample instant, aware UTC.
        subject_id:  Owning camper id.  Providers leave it None; the
                     orchestrator binds it before ingestion.
    """

    value: int
    trend: TrendDirection
    reading_time: datetime
    subject_id: int | None = None

    def for_subject(self, subject_id: int) -> "GlucoseSample":
        return GlucoseSample(self.value, self.trend, self.reading_time, subject_id)


# ---------------------------------------------------------------------------
# Abstract base provider
# ---------------------------------------------------------------------------


class CGMProvider(ABC):
    """Abstract base class for all CGM cloud providers.

    Subclasses must implement:
        - authenticate()
        - fetch_readings()

    ``test_connection()`` is shared: it goes through ``authenticate()`` so a
    verified connection is always syncable.
    """

    #: Provider kinds this implementation serves.
    KINDS: tuple[ProviderKind, ...] = ()

    #: Human-readable name for logging and sync_error messages.
    DISPLAY_NAME: str = "Unknown Provider"

    #: Whether sessions are written back to the camper row to survive restarts.
    PERSISTS_SESSION: bool = False

    def __init__(
        self,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = 15.0,
    ) -> None:
        """
        Args:
            http_client: Shared httpx client (pooling, tests).  When None each
                         request opens its own client.
            timeout:     Per-request timeout in seconds for owned clients.
        """
        self._http_client = http_client
        self._timeout = timeout

    @abstractmethod
    async def authenticate(self, credentials: ProviderCredentials) -> ProviderSession:
        """Log in and return a new session.

        Raises:
            InvalidCredentialsError:  Login rejected.
            ProviderUnavailableError: Network/5xx failure or malformed response.
        """

    @abstractmethod
    async def fetch_readings(
        self,
        session: ProviderSession,
        window: ReadingWindow,
        target_id: str | None = None,
    ) -> list[GlucoseSample]:
        """Fetch recent samples, newest first.

        Args:
            session:   A valid session from ``authenticate``.
            window:    Lookback window and sample cap.
            target_id: Provider-side id of whose readings to read.  Only
                       follower-style providers use it.

        Raises:
            SessionExpiredError:      The provider rejected the session.
            ProviderUnavailableError: Any other failure.
            ValidationError:          Payload had entries but none were usable.
        """

    async def test_connection(self, credentials: ProviderCredentials) -> ConnectionCheck:
        """Verify credentials by running the real authenticate path."""
        try:
            session = await self.authenticate(credentials)
        except CGMSyncError as exc:
            logger.info("%s connection test failed: %s", self.DISPLAY_NAME, exc)
            return ConnectionCheck(ok=False, message=str(exc))
        return ConnectionCheck(ok=True, session=session)

    # ------------------------------------------------------------------
    # Shared helpers, available to all providers
    # ------------------------------------------------------------------

    async def _send(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        """Issue a GET or POST and return the response without raising on status.

        Transport failures and timeouts become ProviderUnavailableError.
        """
        try:
            if self._http_client is not None:
                return await getattr(self._http_client, method)(url, **kwargs)
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                return await getattr(client, method)(url, **kwargs)
        except httpx.HTTPError as exc:
            raise ProviderUnavailableError(
                f"{self.DISPLAY_NAME} request failed: {exc.__class__.__name__}",
                provider=self.DISPLAY_NAME,
            ) from exc

    def _json(self, response: httpx.Response) -> Any:
        """Decode a JSON body or raise ProviderUnavailableError."""
        try:
            return response.json()
        except ValueError as exc:
            raise ProviderUnavailableError(
                f"{self.DISPLAY_NAME} returned a malformed response",
                provider=self.DISPLAY_NAME,
            ) from exc

    def _unavailable(self, what: str, response: httpx.Response) -> ProviderUnavailableError:
        return ProviderUnavailableError(
            f"{self.DISPLAY_NAME} {what} failed ({response.status_code})",
            provider=self.DISPLAY_NAME,
        )

    def _normalize_entries(
        self,
        entries: Iterable[Any],
        parse: Callable[[Any], GlucoseSample],
    ) -> list[GlucoseSample]:
        """Apply *parse* to every entry, dropping malformed ones.

        Returns samples sorted newest first.  Raises ValidationError when the
        payload had entries but none of them parsed.
        """
        samples: list[GlucoseSample] = []
        seen = 0
        for entry in entries:
            seen += 1
            try:
                samples.append(parse(entry))
            except ValidationError as exc:
                logger.debug("%s: dropping sample: %s", self.DISPLAY_NAME, exc)
        if seen and not samples:
            raise ValidationError(
                f"{self.DISPLAY_NAME} returned {seen} readings but none were usable",
                provider=self.DISPLAY_NAME,
            )
        samples.sort(key=lambda s: s.reading_time, reverse=True)
        return samples

    @staticmethod
    def _safe_int(value: object) -> int | None:
        """Safely coerce a value to int, returning None on failure."""
        if value is None or isinstance(value, bool):
            return None
        try:
            return int(value)
        except (TypeError, ValueError):
            return None

    @staticmethod
    def _require_glucose(value: object) -> int:
        """Return an integer mg/dL value in 1..MAX_GLUCOSE_MGDL or raise ValidationError."""
        mgdl = CGMProvider._safe_int(value)
        if mgdl is None or not 0 < mgdl <= MAX_GLUCOSE_MGDL:
            raise ValidationError(f"unusable glucose value {value!r}")
        return mgdl

    @staticmethod
    def _from_epoch_ms(value: object) -> datetime:
        """Convert epoch milliseconds to an aware UTC datetime."""
        ms = CGMProvider._safe_int(value)
        if ms is None or ms <= 0:
            raise ValidationError(f"unusable timestamp {value!r}")
        try:
            return datetime.fromtimestamp(ms / 1000, tz=timezone.utc)
        except (OverflowError, OSError, ValueError) as exc:
            raise ValidationError(f"unusable timestamp {value!r}") from exc

    @staticmethod
    def _parse_iso_datetime(value: str | None) -> datetime | None:
        """Parse an ISO-8601 datetime string to an aware UTC datetime.

        Naive strings are assumed UTC.  Returns None if unparseable.
        """
        if not value:
            return None
        try:
            dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except (ValueError, AttributeError):
            logger.warning("Could not parse datetime string: %r", value)
            return None
        if dt.tzinfo is None:
            return dt.replace(tzinfo=timezone.utc)
        return dt.astimezone(timezone.utc)

"""Provider session cache.

Two kinds of sessions live here:

    Per-camper sessions   keyed by camper id, created from the camper's own
                          (encrypted) credentials.  Providers with
                          ``PERSISTS_SESSION`` also have the token written to
                          the camper row so restarts skip a login.
    Shared follower       one Dexcom Share session for every follower-mode
                          camper, logged in with the camp's follower account.

The follower refresh is single-flight: while one login is in progress every
other caller awaits the same task and sees the same result or error.  Sessions
are re-checked against the wall clock on every use.

A per-camper login that fails with ``InvalidCredentialsError`` or
``DecryptionError`` is remembered against the credential fields it was tried
with.  Later calls re-raise it without contacting the provider until one of
those fields changes.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Callable

from src.cgm.base import CGMProvider, ProviderCredentials, ProviderSession
from src.cgm.errors import CGMSyncError, DecryptionError, InvalidCredentialsError
from src.cgm.store import CGMStore
from src.cgm.vault import CredentialVault
from src.config import Settings, get_settings
from src.models.base import utc_now
from src.models.campers import AuthMode, CamperRecord, ProviderKind

logger = logging.getLogger("guardianview.cgm.sessions")

CredentialFingerprint = tuple[str | None, AuthMode, str | None, str | None, str | None]


def _fingerprint(camper: CamperRecord) -> CredentialFingerprint:
    return (
        camper.cgm_provider,
        camper.cgm_auth_mode,
        camper.cgm_username,
        camper.cgm_url,
        camper.cgm_password_enc,
    )


class SessionCache:
    """Hands out valid provider sessions, logging in only when needed.

    Args:
        vault:    Decrypts stored camper credentials.
        store:    Reads/writes persisted sessions on the camper row.
        settings: Supplies the shared follower login.
        clock:    Returns the current aware UTC time.
    """

    def __init__(
        self,
        vault: CredentialVault,
        store: CGMStore,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._vault = vault
        self._store = store
        self._settings = settings or get_settings()
        self._clock = clock
        self._sessions: dict[int, ProviderSession] = {}
        self._rejected: dict[int, tuple[CredentialFingerprint, CGMSyncError]] = {}
        self._shared: ProviderSession | None = None
        self._refresh: asyncio.Task | None = None

    async def get_session(
        self, camper: CamperRecord, provider: CGMProvider
    ) -> ProviderSession:
        """Return a usable session for *camper*, authenticating if necessary.

        Lookup order: in-memory session, then the token persisted on the
        camper row, then a fresh login with the decrypted credentials.

        Raises:
            InvalidCredentialsError, ProviderUnavailableError, DecryptionError
        """
        if camper.provider_kind is ProviderKind.dexcom_follower:
            return await self._shared_session(provider)

        now = self._clock()
        cached = self._sessions.get(camper.id)
        if cached is not None and cached.is_valid(now):
            return cached

        if provider.PERSISTS_SESSION and camper.cgm_session_id:
            persisted = ProviderSession(
                token=camper.cgm_session_id,
                expires_at=camper.session_expires_at,
                subject_id=camper.id,
            )
            if persisted.is_valid(now):
                self._sessions[camper.id] = persisted
                return persisted

        fingerprint = _fingerprint(camper)
        rejected = self._rejected.get(camper.id)
        if rejected is not None:
            if rejected[0] == fingerprint:
                error = rejected[1]
                raise type(error)(str(error), provider=error.provider)
            del self._rejected[camper.id]

        try:
            session = await provider.authenticate(self._credentials_for(camper))
        except (InvalidCredentialsError, DecryptionError) as exc:
            self._rejected[camper.id] = (fingerprint, exc)
            logger.info(
                "Camper %s: login rejected, not retrying until credentials change",
                camper.id,
            )
            raise
        session.subject_id = camper.id
        self._sessions[camper.id] = session
        if provider.PERSISTS_SESSION:
            await self._store.save_session(camper.id, session.token, session.expires_at)
        logger.debug("Camper %s: new %s session", camper.id, provider.DISPLAY_NAME)
        return session

    async def invalidate(
        self, camper: CamperRecord, session: ProviderSession | None = None
    ) -> None:
        """Forget a session the provider reported as expired.

        For the shared follower session this only drops it if *session* is
        still the current one, so a refresh done by a concurrent camper is kept.
        """
        if camper.provider_kind is ProviderKind.dexcom_follower:
            if self._shared is not None and (
                session is None or session.token == self._shared.token
            ):
                self._shared = None
                logger.info("Shared follower session invalidated")
            return

        self._sessions.pop(camper.id, None)
        await self._store.clear_session(camper.id)
        logger.info("Camper %s: session invalidated", camper.id)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _credentials_for(self, camper: CamperRecord) -> ProviderCredentials:
        password = self._vault.decrypt(camper.cgm_password_enc)
        if camper.provider_kind is ProviderKind.nightscout:
            return ProviderCredentials(url=camper.cgm_url, password=password)
        return ProviderCredentials(username=camper.cgm_username, password=password)

    async def _shared_session(self, provider: CGMProvider) -> ProviderSession:
        current = self._shared
        if current is not None and current.is_valid(self._clock()):
            return current
        if self._refresh is None or self._refresh.done():
            self._refresh = asyncio.create_task(self._login_follower(provider))
        return await asyncio.shield(self._refresh)

    async def _login_follower(self, provider: CGMProvider) -> ProviderSession:
        if not self._settings.follower_configured:
            raise InvalidCredentialsError(
                "Dexcom follower account is not configured "
                "(DEXCOM_FOLLOWER_USERNAME / DEXCOM_FOLLOWER_PASSWORD)",
                provider=provider.DISPLAY_NAME,
            )
        session = await provider.authenticate(
            ProviderCredentials(
                username=self._settings.dexcom_follower_username,
                password=self._settings.dexcom_follower_password,
            )
        )
        self._shared = session
        logger.info("Shared follower session refreshed")
        return session

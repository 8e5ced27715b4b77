"""Error taxonomy for the sync engine.

Every per-camper failure is raised as a ``CGMSyncError`` subclass and caught at
the camper boundary by the orchestrator, where ``str(exc)`` becomes the stored
``sync_error``.  Messages therefore must be human-readable and must never
contain credentials.
"""

from __future__ import annotations


class CGMSyncError(Exception):
    """Base class for all per-camper sync failures."""

    def __init__(self, message: str, provider: str | None = None) -> None:
        super().__init__(message)
        self.provider = provider


class InvalidCredentialsError(CGMSyncError):
    """The provider rejected the login.  Not retried until credentials change."""


class SessionExpiredError(CGMSyncError):
    """The provider no longer accepts the session token; re-authenticate."""


class ProviderUnavailableError(CGMSyncError):
    """Network failure, 5xx, or an unparseable response.  Retried next cycle."""


class DecryptionError(CGMSyncError):
    """A stored credential could not be decrypted (corrupt blob or wrong key).

    Like InvalidCredentialsError, not retried until the stored credential changes.
    """


class ValidationError(CGMSyncError):
    """A provider payload contained no usable glucose samples."""

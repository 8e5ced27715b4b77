"""GuardianView CGM sync and alerting engine.

This package polls each camper's CGM cloud account in the background,
stores normalized glucose readings, and raises threshold and no-data alerts
for care staff.

Subpackages:
    providers/ Vendor clients (Dexcom Share, Nightscout, LibreLinkUp)
    sync/      Cycle orchestrator, background scheduler, deduplication

Core modules:
    base          CGMProvider ABC and canonical data models
    errors        Per-camper error taxonomy
    vault         AES-256-GCM credential encryption
    sessions      Provider session cache (per camper + shared follower)
    store         Storage interface and in-memory backend
    pg_store      PostgreSQL backend
    alerts        Threshold classification and alert creation
    config_loader Load/validate/hot-reload sync_config.yaml
"""

from src.cgm.base import (
    CGMProvider,
    ConnectionCheck,
    GlucoseSample,
    ProviderCredentials,
    ProviderSession,
    ReadingWindow,
)
from src.cgm.config_loader import SyncConfig, get_sync_config
from src.cgm.errors import (
    CGMSyncError,
    DecryptionError,
    InvalidCredentialsError,
    ProviderUnavailableError,
    SessionExpiredError,
    ValidationError,
)

__all__ = [
    "CGMProvider",
    "ConnectionCheck",
    "GlucoseSample",
    "ProviderCredentials",
    "ProviderSession",
    "ReadingWindow",
    "SyncConfig",
    "get_sync_config",
    "CGMSyncError",
    "DecryptionError",
    "InvalidCredentialsError",
    "ProviderUnavailableError",
    "SessionExpiredError",
    "ValidationError",
]

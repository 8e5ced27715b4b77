"""CGM cloud providers for GuardianView.

Each provider implements the CGMProvider ABC and handles:
- Authentication against the vendor cloud
- Fetching recent glucose samples
- Normalizing vendor-specific JSON into canonical GlucoseSample objects

Available providers:
    DexcomShareProvider  Dexcom Share, publisher and follower modes
    NightscoutProvider   Self-hosted Nightscout (REST API v1)
    LibreLinkUpProvider  Abbott LibreLinkUp follower cloud
"""

from __future__ import annotations

from datetime import datetime
from typing import Callable

import httpx

from src.cgm.base import CGMProvider
from src.cgm.config_loader import SyncConfig
from src.cgm.providers.dexcom import DexcomShareProvider
from src.cgm.providers.libre import LibreLinkUpProvider
from src.cgm.providers.nightscout import NightscoutProvider
from src.config import Settings
from src.models.base import utc_now
from src.models.campers import AuthMode, ProviderKind

__all__ = [
    "DexcomShareProvider",
    "NightscoutProvider",
    "LibreLinkUpProvider",
    "PROVIDER_REGISTRY",
    "get_provider",
    "build_providers",
]

# Registry: provider kind → provider class
PROVIDER_REGISTRY: dict[ProviderKind, type[CGMProvider]] = {
    ProviderKind.dexcom_publisher: DexcomShareProvider,
    ProviderKind.dexcom_follower: DexcomShareProvider,
    ProviderKind.nightscout: NightscoutProvider,
    ProviderKind.libre: LibreLinkUpProvider,
}


def get_provider(kind: ProviderKind | str) -> type[CGMProvider]:
    """Return the provider class for a given provider kind.

    Args:
        kind: e.g. ``ProviderKind.nightscout`` or ``'dexcom_follower'``

    Returns:
        The provider class (not an instance).

    Raises:
        KeyError: If the kind is not registered.
    """
    try:
        key = ProviderKind(kind)
    except ValueError:
        key = None
    if key not in PROVIDER_REGISTRY:
        raise KeyError(
            f"No provider registered for '{kind}'. "
            f"Available: {[k.value for k in PROVIDER_REGISTRY]}"
        )
    return PROVIDER_REGISTRY[key]


def build_providers(
    settings: Settings,
    config: SyncConfig,
    http_client: httpx.AsyncClient | None = None,
    clock: Callable[[], datetime] = utc_now,
) -> dict[ProviderKind, CGMProvider]:
    """Instantiate one provider per kind, sharing *http_client*."""
    timeout = settings.http_timeout_seconds
    providers: dict[ProviderKind, CGMProvider] = {}
    for kind in PROVIDER_REGISTRY:
        provider_cls = get_provider(kind)
        ttl = config.session_ttl(kind)
        if provider_cls is DexcomShareProvider:
            mode = AuthMode.follower if kind is ProviderKind.dexcom_follower else AuthMode.publisher
            providers[kind] = DexcomShareProvider(
                mode=mode,
                region=settings.dexcom_region,
                session_ttl=ttl,
                http_client=http_client,
                timeout=timeout,
                clock=clock,
            )
        else:
            providers[kind] = provider_cls(
                session_ttl=ttl, http_client=http_client, timeout=timeout, clock=clock
            )
    return providers

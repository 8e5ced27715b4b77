"""GuardianView sync engine: background process entry point.

Run locally:
    guardianview-sync
    python -m src.main
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from datetime import datetime
from typing import Callable

import httpx

from src.cgm.alerts import AlertEngine
from src.cgm.config_loader import SyncConfig, get_sync_config
from src.cgm.pg_store import PostgresStore
from src.cgm.providers import build_providers
from src.cgm.sessions import SessionCache
from src.cgm.store import CGMStore
from src.cgm.sync.orchestrator import SyncOrchestrator
from src.cgm.sync.scheduler import SyncScheduler
from src.cgm.vault import CredentialVault
from src.config import Settings, get_settings
from src.models.base import utc_now
from src.services.database import close_pool, ensure_schema, init_pool

logger = logging.getLogger("guardianview")


# ---------- Logging ----------

def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        stream=sys.stdout,
    )


# ---------- Wiring ----------

def build_orchestrator(
    settings: Settings,
    store: CGMStore,
    http_client: httpx.AsyncClient | None = None,
    config: SyncConfig | None = None,
    clock: Callable[[], datetime] = utc_now,
) -> SyncOrchestrator:
    """Assemble the engine around *store*.

    Raises:
        ValueError: ENCRYPTION_KEY missing or malformed.
    """
    config = config or get_sync_config()
    vault = CredentialVault(settings.encryption_key)
    return SyncOrchestrator(
        store=store,
        providers=build_providers(settings, config, http_client, clock=clock),
        sessions=SessionCache(vault, store, settings, clock=clock),
        alerts=AlertEngine(store, config.alerts, clock=clock),
        config=config,
        clock=clock,
    )


# ---------- Lifecycle ----------

async def run(settings: Settings | None = None) -> None:
    """Run the scheduler until SIGINT/SIGTERM."""
    settings = settings or get_settings()
    config = get_sync_config()
    logger.info(
        "Starting %s v%s [%s]", settings.app_name, settings.app_version, settings.environment
    )

    await init_pool(settings)
    try:
        await ensure_schema()
        async with httpx.AsyncClient(timeout=settings.http_timeout_seconds) as client:
            orchestrator = build_orchestrator(settings, PostgresStore(), client, config)
            scheduler = SyncScheduler(orchestrator, config.schedule.interval_seconds)

            stop = asyncio.Event()
            loop = asyncio.get_running_loop()
            for sig in (signal.SIGINT, signal.SIGTERM):
                try:
                    loop.add_signal_handler(sig, stop.set)
                except NotImplementedError:
                    # Windows event loops have no signal handlers
                    signal.signal(sig, lambda *_: loop.call_soon_threadsafe(stop.set))

            scheduler.start()
            await stop.wait()
            logger.info("Shutdown requested")
            await scheduler.stop()
    finally:
        await close_pool()
    logger.info("%s shut down", settings.app_name)


def main() -> None:
    settings = get_settings()
    configure_logging(settings.log_level)
    asyncio.run(run(settings))


if __name__ == "__main__":
    main()

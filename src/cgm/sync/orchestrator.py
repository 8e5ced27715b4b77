"""Sync orchestrator: one cycle over every monitorable camper.

Cycle workflow:
1. Load active campers with a provider and credentials
2. Split them into batches of ``schedule.batch_size``
3. Sync each batch concurrently, pausing ``schedule.batch_pause_ms`` between batches
4. Per camper: session -> fetch -> ingest -> prune -> alert check -> sync status
5. Sweep for campers with no recent data

A failing camper never affects its siblings: every error is caught at the
camper boundary and stored as ``sync_error``.  Nothing is retried inside a
cycle; the next cycle is the retry.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable

from src.cgm.alerts import AlertEngine
from src.cgm.base import CGMProvider, ProviderSession
from src.cgm.config_loader import SyncConfig
from src.cgm.errors import CGMSyncError, SessionExpiredError
from src.cgm.sessions import SessionCache
from src.cgm.store import CGMStore
from src.models.alerts import AlertKind
from src.models.base import utc_now
from src.models.campers import CamperRecord, ProviderKind

logger = logging.getLogger("guardianview.cgm.sync.orchestrator")

# A failed camper waits for the next cycle; there is no immediate retry.
RETRY_WITHIN_CYCLE = False


@dataclass
class SubjectSyncResult:
    """Result of syncing one camper.

    Attributes:
        camper_id:        Camper id.
        provider:         Provider kind value, or None if unresolved.
        readings_fetched: Samples returned by the provider.
        readings_saved:   Samples that were new.
        readings_pruned:  Samples removed by retention.
        alert:            Kind of alert created, if any.
        status:           'success' or 'error'.
        error:            Stored sync_error when status == 'error'.
        synced_at:        When the sync status was recorded.
    """

    camper_id: int
    provider: str | None = None
    readings_fetched: int = 0
    readings_saved: int = 0
    readings_pruned: int = 0
    alert: AlertKind | None = None
    status: str = "success"
    error: str | None = None
    synced_at: datetime = field(default_factory=utc_now)

    @property
    def ok(self) -> bool:
        return self.status == "success"


@dataclass
class CycleResult:
    """Outcome of one full sync cycle."""

    trigger: str
    started_at: datetime
    finished_at: datetime | None = None
    results: list[SubjectSyncResult] = field(default_factory=list)
    batches: int = 0
    no_data_alerts: int = 0

    @property
    def succeeded(self) -> int:
        return sum(1 for r in self.results if r.ok)

    @property
    def failed(self) -> int:
        return sum(1 for r in self.results if not r.ok)


class SyncOrchestrator:
    """Drive sync cycles and single-camper syncs.

    Usage::

        orchestrator = SyncOrchestrator(store, providers, sessions, alerts, config)
        await orchestrator.run_cycle()
        await orchestrator.sync_subject_now(camper_id=42)
    """

    def __init__(
        self,
        store: CGMStore,
        providers: dict[ProviderKind, CGMProvider],
        sessions: SessionCache,
        alerts: AlertEngine,
        config: SyncConfig,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self._providers = providers
        self._sessions = sessions
        self._alerts = alerts
        self._config = config
        self._clock = clock

    async def run_cycle(self, trigger: str = "scheduled") -> CycleResult:
        """Sync every monitorable camper in batches, then sweep for missing data.

        Errors loading campers propagate; per-camper errors never do.
        """
        cycle = CycleResult(trigger=trigger, started_at=self._clock())
        campers = await self._store.list_monitorable_campers()

        size = self._config.schedule.batch_size
        pause = self._config.schedule.batch_pause_ms / 1000
        batches = [campers[i : i + size] for i in range(0, len(campers), size)]
        cycle.batches = len(batches)

        for index, batch in enumerate(batches):
            if index:
                await asyncio.sleep(pause)
            outcomes = await asyncio.gather(
                *(self.sync_subject(c) for c in batch), return_exceptions=True
            )
            for camper, outcome in zip(batch, outcomes):
                if isinstance(outcome, SubjectSyncResult):
                    cycle.results.append(outcome)
                elif isinstance(outcome, Exception):
                    # raised while recording the failure itself, e.g. store down
                    logger.error("Camper %s: sync status not recorded: %s", camper.id, outcome)
                    cycle.results.append(
                        SubjectSyncResult(
                            camper_id=camper.id,
                            provider=self._kind_value(camper),
                            status="error",
                            error=str(outcome),
                        )
                    )
                else:
                    raise outcome

        stale = await self._alerts.sweep_no_data(
            await self._store.list_monitorable_campers(), now=self._clock()
        )
        cycle.no_data_alerts = len(stale)
        cycle.finished_at = self._clock()

        logger.info(
            "Sync cycle (%s): %d campers in %d batches, %d ok, %d failed, "
            "%d no-data alerts, %.1fs",
            trigger,
            len(cycle.results),
            cycle.batches,
            cycle.succeeded,
            cycle.failed,
            cycle.no_data_alerts,
            (cycle.finished_at - cycle.started_at).total_seconds(),
        )
        return cycle

    async def sync_subject(self, camper: CamperRecord) -> SubjectSyncResult:
        """Sync one camper and record the outcome on the camper row."""
        kind = camper.provider_kind
        result = SubjectSyncResult(camper_id=camper.id, provider=self._kind_value(camper))
        session: ProviderSession | None = None

        try:
            provider = self._provider_for(camper)
            session = await self._sessions.get_session(camper, provider)
            target_id = camper.cgm_username if kind is ProviderKind.dexcom_follower else None
            samples = await provider.fetch_readings(
                session, self._config.window_for(kind), target_id=target_id
            )
            result.readings_fetched = len(samples)

            now = self._clock()
            result.readings_saved = await self._store.ingest(camper.id, samples)
            result.readings_pruned = await self._store.prune_readings(
                camper.id, now - self._config.retention.horizon
            )
            if samples:
                latest = max(samples, key=lambda s: s.reading_time)
                alert = await self._alerts.evaluate_reading(camper, latest, now=now)
                result.alert = alert.type if alert else None

        except SessionExpiredError as exc:
            logger.warning("Camper %s: %s", camper.id, exc)
            self._mark_failed(result, str(exc))
            try:
                await self._sessions.invalidate(camper, session)
            except Exception:
                # the sync status below must still be written
                logger.exception("Camper %s: could not clear expired session", camper.id)
        except CGMSyncError as exc:
            logger.warning("Camper %s: sync failed: %s", camper.id, exc)
            self._mark_failed(result, str(exc))
        except Exception as exc:
            logger.exception("Camper %s: unexpected sync error", camper.id)
            self._mark_failed(result, str(exc) or exc.__class__.__name__)

        result.synced_at = self._clock()
        await self._store.update_sync_status(camper.id, result.synced_at, result.error)
        if result.ok:
            logger.debug(
                "Camper %s: %d fetched, %d new, %d pruned",
                camper.id, result.readings_fetched, result.readings_saved, result.readings_pruned,
            )
        return result

    async def sync_subject_now(self, camper_id: int) -> SubjectSyncResult:
        """Manual "sync this camper now".

        Raises:
            LookupError: No camper with that id.
        """
        camper = await self._store.get_camper(camper_id)
        if camper is None:
            raise LookupError(f"Camper {camper_id} not found")
        logger.info("Manual sync requested for camper %s", camper_id)
        return await self.sync_subject(camper)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _provider_for(self, camper: CamperRecord) -> CGMProvider:
        kind = camper.provider_kind
        provider = self._providers.get(kind) if kind is not None else None
        if provider is None:
            raise CGMSyncError(
                f"No CGM provider available for '{camper.cgm_provider or 'none'}'"
            )
        return provider

    @staticmethod
    def _kind_value(camper: CamperRecord) -> str | None:
        kind = camper.provider_kind
        return kind.value if kind is not None else None

    @staticmethod
    def _mark_failed(result: SubjectSyncResult, message: str) -> None:
        result.status = "error"
        result.error = message

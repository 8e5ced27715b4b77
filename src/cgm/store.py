"""Storage interface for campers' sync state, glucose readings, and alerts.

``CGMStore`` is everything the sync engine reads or writes.  Two backends
implement it:

    PostgresStore  (src.cgm.pg_store): production, asyncpg
    InMemoryStore  (this module):      local runs and tests

Writes are idempotent where the engine may repeat them: readings are
insert-if-absent on (camper_id, reading_time), and alert creation is an atomic
"create unless an open alert of this kind is recent".
"""

from __future__ import annotations

import itertools
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Iterable

from src.cgm.base import GlucoseSample
from src.cgm.sync.dedup import dedupe_samples, reading_key
from src.models.alerts import AlertKind, AlertRead
from src.models.base import utc_now
from src.models.campers import CamperRecord, SyncStatusSummary
from src.models.readings import GlucoseReadingRead


class CGMStore(ABC):
    """Persistence operations used by the sync engine and its consumers."""

    # ---------- Campers ----------

    @abstractmethod
    async def list_monitorable_campers(self) -> list[CamperRecord]:
        """Active campers with a provider and credentials configured."""

    @abstractmethod
    async def get_camper(self, camper_id: int) -> CamperRecord | None:
        ...

    @abstractmethod
    async def update_sync_status(
        self, camper_id: int, synced_at: datetime, error: str | None
    ) -> None:
        """Record the outcome of a sync attempt (error=None on success)."""

    @abstractmethod
    async def save_session(
        self, camper_id: int, token: str, expires_at: datetime | None
    ) -> None:
        ...

    @abstractmethod
    async def clear_session(self, camper_id: int) -> None:
        ...

    @abstractmethod
    async def sync_status_summary(self) -> SyncStatusSummary:
        ...

    # ---------- Readings ----------

    @abstractmethod
    async def ingest(self, camper_id: int, samples: Iterable[GlucoseSample]) -> int:
        """Insert samples not already stored; return the number of new rows."""

    @abstractmethod
    async def prune_readings(self, camper_id: int, older_than: datetime) -> int:
        """Delete the camper's readings taken before *older_than*; return count."""

    @abstractmethod
    async def list_readings(
        self,
        camper_id: int,
        start: datetime | None = None,
        end: datetime | None = None,
        limit: int | None = None,
    ) -> list[GlucoseReadingRead]:
        """Readings in [start, end], newest first."""

    async def latest_reading(self, camper_id: int) -> GlucoseReadingRead | None:
        rows = await self.list_readings(camper_id, limit=1)
        return rows[0] if rows else None

    # ---------- Alerts ----------

    @abstractmethod
    async def create_alert_if_absent(
        self,
        camper_id: int,
        kind: AlertKind,
        value: int | None,
        created_at: datetime,
        since: datetime,
    ) -> AlertRead | None:
        """Create an alert unless an unacknowledged one of the same kind for the
        same camper was created after *since*.  Returns the new alert or None.
        """

    @abstractmethod
    async def list_alerts(
        self,
        camper_id: int | None = None,
        kind: AlertKind | None = None,
        acknowledged: bool | None = None,
    ) -> list[AlertRead]:
        """Alerts ordered by severity, then newest first."""

    @abstractmethod
    async def acknowledge_alert(
        self, alert_id: int, acknowledged_by: int | None, at: datetime | None = None
    ) -> bool:
        """Mark an alert acknowledged.  Returns False if it does not exist or
        was already acknowledged.
        """


class InMemoryStore(CGMStore):
    """Process-local CGMStore.

    Every method completes without awaiting, so each call is atomic with
    respect to other coroutines on the same event loop.
    """

    def __init__(self, campers: Iterable[CamperRecord] = ()) -> None:
        self._campers: dict[int, CamperRecord] = {}
        self._readings: dict[str, GlucoseReadingRead] = {}
        self._alerts: dict[int, AlertRead] = {}
        self._reading_ids = itertools.count(1)
        self._alert_ids = itertools.count(1)
        for camper in campers:
            self.add_camper(camper)

    def add_camper(self, camper: CamperRecord) -> None:
        self._campers[camper.id] = camper

    # ---------- Campers ----------

    async def list_monitorable_campers(self) -> list[CamperRecord]:
        return [c for _, c in sorted(self._campers.items()) if c.is_monitorable]

    async def get_camper(self, camper_id: int) -> CamperRecord | None:
        return self._campers.get(camper_id)

    async def update_sync_status(
        self, camper_id: int, synced_at: datetime, error: str | None
    ) -> None:
        self._update(camper_id, last_sync_at=synced_at, sync_error=error)

    async def save_session(
        self, camper_id: int, token: str, expires_at: datetime | None
    ) -> None:
        self._update(camper_id, cgm_session_id=token, session_expires_at=expires_at)

    async def clear_session(self, camper_id: int) -> None:
        self._update(camper_id, cgm_session_id=None, session_expires_at=None)

    async def sync_status_summary(self) -> SyncStatusSummary:
        active = [c for c in self._campers.values() if c.is_active]
        synced = [c.last_sync_at for c in active if c.last_sync_at is not None]
        return SyncStatusSummary(
            total=len(active),
            connected=sum(1 for c in active if c.has_credentials),
            errors=sum(1 for c in active if c.sync_error is not None),
            last_sync=max(synced) if synced else None,
        )

    def _update(self, camper_id: int, **changes: object) -> None:
        camper = self._campers.get(camper_id)
        if camper is None:
            raise LookupError(f"Camper {camper_id} not found")
        self._campers[camper_id] = camper.model_copy(update=changes)

    # ---------- Readings ----------

    async def ingest(self, camper_id: int, samples: Iterable[GlucoseSample]) -> int:
        inserted = 0
        for sample in dedupe_samples(camper_id, samples):
            key = reading_key(camper_id, sample.reading_time)
            if key in self._readings:
                continue
            self._readings[key] = GlucoseReadingRead(
                id=next(self._reading_ids),
                camper_id=camper_id,
                value=sample.value,
                trend=sample.trend,
                reading_time=sample.reading_time,
            )
            inserted += 1
        return inserted

    async def prune_readings(self, camper_id: int, older_than: datetime) -> int:
        stale = [
            key
            for key, r in self._readings.items()
            if r.camper_id == camper_id and r.reading_time < older_than
        ]
        for key in stale:
            del self._readings[key]
        return len(stale)

    async def list_readings(
        self,
        camper_id: int,
        start: datetime | None = None,
        end: datetime | None = None,
        limit: int | None = None,
    ) -> list[GlucoseReadingRead]:
        rows = [
            r
            for r in self._readings.values()
            if r.camper_id == camper_id
            and (start is None or r.reading_time >= start)
            and (end is None or r.reading_time <= end)
        ]
        rows.sort(key=lambda r: r.reading_time, reverse=True)
        return rows[:limit] if limit is not None else rows

    # ---------- Alerts ----------

    async def create_alert_if_absent(
        self,
        camper_id: int,
        kind: AlertKind,
        value: int | None,
        created_at: datetime,
        since: datetime,
    ) -> AlertRead | None:
        for alert in self._alerts.values():
            if (
                alert.camper_id == camper_id
                and alert.type == kind
                and alert.acknowledged_at is None
                and alert.created_at > since
            ):
                return None
        alert = AlertRead(
            id=next(self._alert_ids),
            camper_id=camper_id,
            type=kind,
            value=value,
            created_at=created_at,
        )
        self._alerts[alert.id] = alert
        return alert

    async def list_alerts(
        self,
        camper_id: int | None = None,
        kind: AlertKind | None = None,
        acknowledged: bool | None = None,
    ) -> list[AlertRead]:
        rows = [
            a
            for a in self._alerts.values()
            if (camper_id is None or a.camper_id == camper_id)
            and (kind is None or a.type == kind)
            and (acknowledged is None or a.is_acknowledged == acknowledged)
        ]
        rows.sort(key=lambda a: a.created_at, reverse=True)
        rows.sort(key=lambda a: a.type.severity)
        return rows

    async def acknowledge_alert(
        self, alert_id: int, acknowledged_by: int | None, at: datetime | None = None
    ) -> bool:
        alert = self._alerts.get(alert_id)
        if alert is None or alert.is_acknowledged:
            return False
        self._alerts[alert_id] = alert.model_copy(
            update={"acknowledged_by": acknowledged_by, "acknowledged_at": at or utc_now()}
        )
        return True

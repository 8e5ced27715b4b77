"""PostgreSQL implementation of CGMStore on the shared asyncpg pool."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Iterable

from src.cgm.base import GlucoseSample
from src.cgm.store import CGMStore
from src.cgm.sync.dedup import build_insert_ignore_query, dedupe_samples, rows_affected
from src.models.alerts import AlertKind, AlertRead
from src.models.base import utc_now
from src.models.campers import CamperRecord, SyncStatusSummary
from src.models.readings import GlucoseReadingRead
from src.services import database as db

logger = logging.getLogger("guardianview.cgm.pg_store")

_CAMPER_COLUMNS = (
    "id, name, cgm_provider, cgm_auth_mode, cgm_username, cgm_password_enc, cgm_url, "
    "cgm_session_id, session_expires_at, target_low, target_high, last_sync_at, "
    "sync_error, is_active"
)

_INSERT_READING = build_insert_ignore_query(
    "glucose_readings",
    ["camper_id", "value", "trend", "reading_time"],
    ["camper_id", "reading_time"],
)

# Namespace for per-camper advisory locks around alert creation
_ALERT_LOCK_NAMESPACE = 7301

_SEVERITY_ORDER = (
    "CASE type "
    + " ".join(f"WHEN '{k.value}' THEN {k.severity}" for k in AlertKind)
    + " END"
)


class PostgresStore(CGMStore):
    """CGMStore backed by the ``campers``, ``glucose_readings`` and ``alerts`` tables."""

    # ---------- Campers ----------

    async def list_monitorable_campers(self) -> list[CamperRecord]:
        rows = await db.fetch(
            f"SELECT {_CAMPER_COLUMNS} FROM campers "
            "WHERE is_active AND cgm_provider IS NOT NULL ORDER BY id"
        )
        campers = [CamperRecord.model_validate(dict(r)) for r in rows]
        return [c for c in campers if c.is_monitorable]

    async def get_camper(self, camper_id: int) -> CamperRecord | None:
        row = await db.fetchrow(
            f"SELECT {_CAMPER_COLUMNS} FROM campers WHERE id = $1", camper_id
        )
        return CamperRecord.model_validate(dict(row)) if row else None

    async def update_sync_status(
        self, camper_id: int, synced_at: datetime, error: str | None
    ) -> None:
        await db.execute(
            "UPDATE campers SET last_sync_at = $2, sync_error = $3 WHERE id = $1",
            camper_id, synced_at, error,
        )

    async def save_session(
        self, camper_id: int, token: str, expires_at: datetime | None
    ) -> None:
        await db.execute(
            "UPDATE campers SET cgm_session_id = $2, session_expires_at = $3 WHERE id = $1",
            camper_id, token, expires_at,
        )

    async def clear_session(self, camper_id: int) -> None:
        await db.execute(
            "UPDATE campers SET cgm_session_id = NULL, session_expires_at = NULL WHERE id = $1",
            camper_id,
        )

    async def sync_status_summary(self) -> SyncStatusSummary:
        rows = await db.fetch(
            f"SELECT {_CAMPER_COLUMNS} FROM campers WHERE is_active"
        )
        campers = [CamperRecord.model_validate(dict(r)) for r in rows]
        synced = [c.last_sync_at for c in campers if c.last_sync_at is not None]
        return SyncStatusSummary(
            total=len(campers),
            connected=sum(1 for c in campers if c.has_credentials),
            errors=sum(1 for c in campers if c.sync_error is not None),
            last_sync=max(synced) if synced else None,
        )

    # ---------- Readings ----------

    async def ingest(self, camper_id: int, samples: Iterable[GlucoseSample]) -> int:
        unique = dedupe_samples(camper_id, samples)
        if not unique:
            return 0
        inserted = 0
        async with db.get_connection() as conn:
            for s in unique:
                status = await conn.execute(
                    _INSERT_READING, camper_id, s.value, s.trend.value, s.reading_time
                )
                inserted += rows_affected(status)
        logger.debug("Camper %s: %d of %d readings new", camper_id, inserted, len(unique))
        return inserted

    async def prune_readings(self, camper_id: int, older_than: datetime) -> int:
        status = await db.execute(
            "DELETE FROM glucose_readings WHERE camper_id = $1 AND reading_time < $2",
            camper_id, older_than,
        )
        return rows_affected(status)

    async def list_readings(
        self,
        camper_id: int,
        start: datetime | None = None,
        end: datetime | None = None,
        limit: int | None = None,
    ) -> list[GlucoseReadingRead]:
        conditions = ["camper_id = $1"]
        params: list[Any] = [camper_id]
        idx = 2

        if start:
            conditions.append(f"reading_time >= ${idx}")
            params.append(start)
            idx += 1
        if end:
            conditions.append(f"reading_time <= ${idx}")
            params.append(end)
            idx += 1

        query = (
            "SELECT id, camper_id, value, trend, reading_time FROM glucose_readings "
            f"WHERE {' AND '.join(conditions)} ORDER BY reading_time DESC"
        )
        if limit is not None:
            query += f" LIMIT ${idx}"
            params.append(limit)

        rows = await db.fetch(query, *params)
        return [GlucoseReadingRead.model_validate(dict(r)) for r in rows]

    # ---------- Alerts ----------

    async def create_alert_if_absent(
        self,
        camper_id: int,
        kind: AlertKind,
        value: int | None,
        created_at: datetime,
        since: datetime,
    ) -> AlertRead | None:
        async with db.get_connection() as conn:
            # serializes the exists-check with concurrent cycles for this camper
            await conn.execute(
                "SELECT pg_advisory_xact_lock($1, $2)", _ALERT_LOCK_NAMESPACE, camper_id
            )
            row = await conn.fetchrow(
                """
                INSERT INTO alerts (camper_id, type, value, created_at)
                SELECT $1, $2, $3, $4
                WHERE NOT EXISTS (
                    SELECT 1 FROM alerts
                    WHERE camper_id = $1 AND type = $2
                      AND acknowledged_at IS NULL AND created_at > $5
                )
                RETURNING id, camper_id, type, value, created_at, acknowledged_by, acknowledged_at
                """,
                camper_id, kind.value, value, created_at, since,
            )
        return AlertRead.model_validate(dict(row)) if row else None

    async def list_alerts(
        self,
        camper_id: int | None = None,
        kind: AlertKind | None = None,
        acknowledged: bool | None = None,
    ) -> list[AlertRead]:
        conditions: list[str] = []
        params: list[Any] = []

        if camper_id is not None:
            params.append(camper_id)
            conditions.append(f"camper_id = ${len(params)}")
        if kind is not None:
            params.append(kind.value)
            conditions.append(f"type = ${len(params)}")
        if acknowledged is not None:
            conditions.append(
                "acknowledged_at IS NOT NULL" if acknowledged else "acknowledged_at IS NULL"
            )

        where = f"WHERE {' AND '.join(conditions)} " if conditions else ""
        rows = await db.fetch(
            "SELECT id, camper_id, type, value, created_at, acknowledged_by, acknowledged_at "
            f"FROM alerts {where}ORDER BY {_SEVERITY_ORDER}, created_at DESC",
            *params,
        )
        return [AlertRead.model_validate(dict(r)) for r in rows]

    async def acknowledge_alert(
        self, alert_id: int, acknowledged_by: int | None, at: datetime | None = None
    ) -> bool:
        status = await db.execute(
            "UPDATE alerts SET acknowledged_by = $2, acknowledged_at = $3 "
            "WHERE id = $1 AND acknowledged_at IS NULL",
            alert_id, acknowledged_by, at or utc_now(),
        )
        return rows_affected(status) > 0

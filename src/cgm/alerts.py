"""Alert engine: glucose thresholds, suppression, and missing-data detection.

Threshold precedence (first match wins)::

    value <  critical_low (55)     -> critical_low
    value <  camper target_low     -> low
    value >= critical_high (300)   -> critical_high
    value >  camper target_high    -> high
    otherwise                      -> no alert

A camper gets at most one unacknowledged alert of a given kind per
suppression window (15 minutes).  The engine only creates alerts; care staff
acknowledge them through the API layer and nothing here deletes them.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Iterable

from src.cgm.base import GlucoseSample
from src.cgm.config_loader import AlertThresholds
from src.cgm.store import CGMStore
from src.models.alerts import AlertKind, AlertRead
from src.models.base import utc_now
from src.models.campers import CamperRecord

logger = logging.getLogger("guardianview.cgm.alerts")


def classify_glucose(
    value: int,
    target_low: int,
    target_high: int,
    thresholds: AlertThresholds | None = None,
) -> AlertKind | None:
    """Return the alert kind for a glucose value, or None when in range."""
    t = thresholds or AlertThresholds()
    if value < t.critical_low:
        return AlertKind.critical_low
    if value < target_low:
        return AlertKind.low
    if value >= t.critical_high:
        return AlertKind.critical_high
    if value > target_high:
        return AlertKind.high
    return None


class AlertEngine:
    """Create threshold and no-data alerts for campers.

    Args:
        store:      Where alerts are written and suppression is checked.
        thresholds: Clinical thresholds and windows.
        clock:      Returns the current aware UTC time.
    """

    def __init__(
        self,
        store: CGMStore,
        thresholds: AlertThresholds | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self._thresholds = thresholds or AlertThresholds()
        self._clock = clock

    async def evaluate_reading(
        self,
        camper: CamperRecord,
        sample: GlucoseSample,
        now: datetime | None = None,
    ) -> AlertRead | None:
        """Classify *sample* against the camper's range and create an alert
        unless one of the same kind is already open within the window.
        """
        kind = classify_glucose(
            sample.value, camper.target_low, camper.target_high, self._thresholds
        )
        if kind is None:
            return None
        return await self._raise(camper.id, kind, sample.value, now)

    async def sweep_no_data(
        self,
        campers: Iterable[CamperRecord],
        now: datetime | None = None,
    ) -> list[AlertRead]:
        """Create ``no_data`` alerts for monitorable campers whose last sync is
        missing or older than the no-data threshold.

        Runs once per cycle.  It looks only at ``last_sync_at``, not at the
        outcome of the latest fetch.
        """
        now = now or self._clock()
        cutoff = now - self._thresholds.no_data_after
        created: list[AlertRead] = []
        for camper in campers:
            if not camper.is_monitorable:
                continue
            if camper.last_sync_at is not None and camper.last_sync_at >= cutoff:
                continue
            alert = await self._raise(camper.id, AlertKind.no_data, None, now)
            if alert is not None:
                created.append(alert)
        if created:
            logger.warning("No-data sweep: %d camper(s) stale", len(created))
        return created

    async def _raise(
        self, camper_id: int, kind: AlertKind, value: int | None, now: datetime | None
    ) -> AlertRead | None:
        now = now or self._clock()
        alert = await self._store.create_alert_if_absent(
            camper_id,
            kind,
            value,
            created_at=now,
            since=now - self._thresholds.suppression_window,
        )
        if alert is None:
            logger.debug("Camper %s: %s suppressed", camper_id, kind.value)
        else:
            logger.info("Camper %s: %s alert (value=%s)", camper_id, kind.value, value)
        return alert

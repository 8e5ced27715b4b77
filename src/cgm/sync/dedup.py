"""Deduplication logic for glucose ingestion.

Overlapping fetch windows return the same samples cycle after cycle, so every
write is insert-if-absent on the reading's natural key.

Dedup keys:
    - glucose_readings: (camper_id, reading_time), UNIQUE constraint
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Iterable

from src.cgm.base import GlucoseSample

logger = logging.getLogger("guardianview.cgm.sync.dedup")


def reading_key(camper_id: int, reading_time: datetime) -> str:
    """Generate a dedup key for a glucose reading.

    This key matches the UNIQUE constraint on glucose_readings:
    (camper_id, reading_time).  ``reading_time`` must be aware UTC so the
    same instant always yields the same key.
    """
    return f"{camper_id}:{reading_time.isoformat()}"


def dedupe_samples(camper_id: int, samples: Iterable[GlucoseSample]) -> list[GlucoseSample]:
    """Collapse samples sharing a timestamp, keeping the first occurrence.

    Providers occasionally repeat a sample inside one payload; dropping the
    repeats before the write keeps the inserted-row count meaningful.
    """
    seen: set[str] = set()
    unique: list[GlucoseSample] = []
    total = 0
    for sample in samples:
        total += 1
        key = reading_key(camper_id, sample.reading_time)
        if key in seen:
            continue
        seen.add(key)
        unique.append(sample.for_subject(camper_id))
    dropped = total - len(unique)
    if dropped:
        logger.debug("Dropped %d in-batch duplicate samples for camper %s", dropped, camper_id)
    return unique


def build_insert_ignore_query(
    table: str,
    columns: list[str],
    conflict_columns: list[str],
) -> str:
    """Build a PostgreSQL INSERT ... ON CONFLICT DO NOTHING query.

    Generates idempotent, append-only writes: re-inserting an existing key is
    a silent no-op and rows are never updated.

    Args:
        table:            Target table name.
        columns:          All columns to insert.
        conflict_columns: Columns that define the UNIQUE constraint.

    Returns:
        Parameterized SQL string.
    """
    placeholders = ", ".join(f"${i + 1}" for i in range(len(columns)))
    col_list = ", ".join(columns)
    conflict_target = ", ".join(conflict_columns)
    return (
        f"INSERT INTO {table} ({col_list}) "
        f"VALUES ({placeholders}) "
        f"ON CONFLICT ({conflict_target}) DO NOTHING"
    )


def rows_affected(status: str) -> int:
    """Parse the row count from an asyncpg command status like ``INSERT 0 3``."""
    try:
        return int(status.rsplit(" ", 1)[-1])
    except (AttributeError, ValueError):
        return 0

"""Load, validate, and hot-reload the sync engine configuration.

The config lives in ``sync_config.yaml`` alongside this module (or at
``SYNC_CONFIG_PATH``).  At startup it is loaded once and cached.  Call
``reload_sync_config()`` to re-read from disk, no restart required.

Usage::

    from src.cgm.config_loader import get_sync_config

    config = get_sync_config()
    config.schedule.batch_size                        # 15
    config.window_for(ProviderKind.nightscout)        # ReadingWindow(...)
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path

from src.cgm.base import ReadingWindow
from src.models.campers import ProviderKind

logger = logging.getLogger("guardianview.cgm.config")

# Path to the YAML file sitting next to this module
_CONFIG_PATH = Path(__file__).parent / "sync_config.yaml"


# ---------------------------------------------------------------------------
# Typed config sections
# ---------------------------------------------------------------------------


@dataclass
class ScheduleConfig:
    """Cycle timer and batching."""

    interval_seconds: float = 60.0
    batch_size: int = 15
    batch_pause_ms: int = 500


@dataclass
class AlertThresholds:
    """Fixed clinical thresholds and alert timing.

    Per-camper ``target_low`` / ``target_high`` come from the camper row.
    """

    critical_low: int = 55
    critical_high: int = 300
    suppression_minutes: int = 15
    no_data_minutes: int = 15

    @property
    def suppression_window(self) -> timedelta:
        return timedelta(minutes=self.suppression_minutes)

    @property
    def no_data_after(self) -> timedelta:
        return timedelta(minutes=self.no_data_minutes)


@dataclass
class RetentionConfig:
    hours: int = 24

    @property
    def horizon(self) -> timedelta:
        return timedelta(hours=self.hours)


@dataclass
class SyncConfig:
    """Complete, validated sync configuration.

    Attributes:
        version:      Config schema version string.
        schedule:     Cycle interval and batching.
        alerts:       Alert thresholds and windows.
        retention:    Reading retention horizon.
        session_ttls: Provider kind → session lifetime in minutes.
        windows:      Provider kind → fetch window.
    """

    version: str
    schedule: ScheduleConfig
    alerts: AlertThresholds
    retention: RetentionConfig
    session_ttls: dict[ProviderKind, int]
    windows: dict[ProviderKind, ReadingWindow]
    _raw: dict = field(default_factory=dict, repr=False)

    # ------------------------------------------------------------------
    # Convenience accessors
    # ------------------------------------------------------------------

    def session_ttl(self, kind: ProviderKind) -> timedelta:
        """Return the session lifetime for a provider kind (default 60 min)."""
        return timedelta(minutes=self.session_ttls.get(kind, 60))

    def window_for(self, kind: ProviderKind) -> ReadingWindow:
        return self.windows.get(kind, ReadingWindow())


# ---------------------------------------------------------------------------
# Loader / validation
# ---------------------------------------------------------------------------


class ConfigValidationError(ValueError):
    """Raised when sync_config.yaml fails validation."""


def _load_yaml(path: Path) -> dict:
    """Read and parse a YAML file.

    Raises:
        FileNotFoundError:     If the file does not exist.
        ConfigValidationError: If the YAML is malformed.
    """
    import yaml  # pyyaml

    if not path.exists():
        raise FileNotFoundError(f"Sync config not found: {path}")

    with path.open("r", encoding="utf-8") as fh:
        try:
            return yaml.safe_load(fh) or {}
        except yaml.YAMLError as exc:
            raise ConfigValidationError(f"YAML parse error in {path}: {exc}") from exc


def _validate_and_build(raw: dict) -> SyncConfig:
    """Validate the raw YAML dict and construct a SyncConfig.

    Every problem is collected so one error lists all of them.

    Raises:
        ConfigValidationError: If any value is missing a valid type or range.
    """
    errors: list[str] = []

    def _number(section: dict, key: str, name: str, default: float, minimum: float) -> float:
        value = section.get(key, default)
        try:
            number = float(value)
        except (TypeError, ValueError):
            errors.append(f"{name}.{key} must be a number, got {value!r}")
            return default
        if number < minimum:
            errors.append(f"{name}.{key} = {number:g} must be >= {minimum:g}")
        return number

    def _mapping(value: object, name: str) -> dict:
        value = value or {}
        if not isinstance(value, dict):
            errors.append(f"'{name}' must be a mapping")
            return {}
        return value

    def _section(key: str) -> dict:
        return _mapping(raw.get(key), key)

    version = str(raw.get("version", "1.0"))

    # ── Schedule ──
    sc = _section("schedule")
    schedule = ScheduleConfig(
        interval_seconds=_number(sc, "interval_seconds", "schedule", 60, 1),
        batch_size=int(_number(sc, "batch_size", "schedule", 15, 1)),
        batch_pause_ms=int(_number(sc, "batch_pause_ms", "schedule", 500, 0)),
    )

    # ── Alerts ──
    al = _section("alerts")
    alerts = AlertThresholds(
        critical_low=int(_number(al, "critical_low", "alerts", 55, 1)),
        critical_high=int(_number(al, "critical_high", "alerts", 300, 1)),
        suppression_minutes=int(_number(al, "suppression_minutes", "alerts", 15, 0)),
        no_data_minutes=int(_number(al, "no_data_minutes", "alerts", 15, 1)),
    )
    if alerts.critical_low >= alerts.critical_high:
        errors.append(
            f"alerts.critical_low ({alerts.critical_low}) must be below "
            f"alerts.critical_high ({alerts.critical_high})"
        )

    # ── Retention ──
    rt = _section("retention")
    retention = RetentionConfig(hours=int(_number(rt, "hours", "retention", 24, 1)))

    # ── Sessions ──
    ttl_raw = _mapping(_section("sessions").get("ttl_minutes"), "sessions.ttl_minutes")
    session_ttls: dict[ProviderKind, int] = {}
    for key, value in ttl_raw.items():
        try:
            kind = ProviderKind(key)
        except ValueError:
            errors.append(f"sessions.ttl_minutes.{key} is not a known provider")
            continue
        session_ttls[kind] = int(_number(ttl_raw, key, "sessions.ttl_minutes", 60, 1))

    # ── Fetch windows ──
    fe = _section("fetch")
    dexcom = _mapping(fe.get("dexcom"), "fetch.dexcom")
    nightscout = _mapping(fe.get("nightscout"), "fetch.nightscout")
    libre = _mapping(fe.get("libre"), "fetch.libre")
    dexcom_window = ReadingWindow(
        minutes=int(_number(dexcom, "minutes", "fetch.dexcom", 180, 5)),
        max_count=int(_number(dexcom, "max_count", "fetch.dexcom", 36, 1)),
    )
    windows = {
        ProviderKind.dexcom_publisher: dexcom_window,
        ProviderKind.dexcom_follower: dexcom_window,
        ProviderKind.nightscout: ReadingWindow(
            minutes=int(_number(nightscout, "minutes", "fetch.nightscout", 180, 5)),
            max_count=int(_number(nightscout, "max_count", "fetch.nightscout", 12, 1)),
        ),
        ProviderKind.libre: ReadingWindow(
            minutes=int(_number(libre, "minutes", "fetch.libre", 720, 5)),
            max_count=int(_number(libre, "max_count", "fetch.libre", 144, 1)),
        ),
    }

    if errors:
        raise ConfigValidationError(
            f"sync_config.yaml has {len(errors)} validation error(s):\n"
            + "\n".join(f"  • {e}" for e in errors)
        )

    return SyncConfig(
        version=version,
        schedule=schedule,
        alerts=alerts,
        retention=retention,
        session_ttls=session_ttls,
        windows=windows,
        _raw=raw,
    )


def load_sync_config(path: Path | None = None) -> SyncConfig:
    """Load and validate the sync config from disk.

    Args:
        path: Override path to YAML. Uses SYNC_CONFIG_PATH, then the bundled
              sync_config.yaml.
    """
    if path is None:
        from src.config import get_settings

        override = get_settings().sync_config_path
        path = Path(override) if override else _CONFIG_PATH
    raw = _load_yaml(path)
    if not isinstance(raw, dict):
        raise ConfigValidationError(f"{path} must contain a YAML mapping")
    config = _validate_and_build(raw)
    logger.info("Loaded sync config v%s from %s", config.version, path)
    return config


# ---------------------------------------------------------------------------
# Global singleton with hot-reload support
# ---------------------------------------------------------------------------

_config: SyncConfig | None = None
_config_lock = threading.Lock()


def get_sync_config() -> SyncConfig:
    """Return the global SyncConfig singleton, loading it on first call.

    Thread-safe.  Use ``reload_sync_config()`` to refresh after YAML changes.
    """
    global _config
    if _config is None:
        with _config_lock:
            if _config is None:  # double-checked locking
                _config = load_sync_config()
    return _config


def reload_sync_config(path: Path | None = None) -> SyncConfig:
    """Reload the sync config from disk and replace the global singleton.

    If validation fails, the old config is retained and the error is re-raised.

    Raises:
        ConfigValidationError: If the new config is invalid.
        FileNotFoundError:     If the config file is missing.
    """
    global _config
    new_config = load_sync_config(path)  # validate before acquiring lock
    with _config_lock:
        old_version = _config.version if _config else "none"
        _config = new_config
    logger.info("Reloaded sync config: %s → %s", old_version, new_config.version)
    return new_config

"""Tests for sync_config.yaml loading and validation, and env settings."""

from __future__ import annotations

from datetime import timedelta
from pathlib import Path

import pytest

from src.cgm.base import ReadingWindow
from src.cgm.config_loader import (
    ConfigValidationError,
    SyncConfig,
    _validate_and_build,
    load_sync_config,
    reload_sync_config,
)
from src.config import Settings
from src.models.campers import ProviderKind


class TestConfigLoading:
    """Tests for loading the bundled sync_config.yaml."""

    def test_load_default_config(self, sync_config: SyncConfig) -> None:
        assert sync_config.version == "1.0"

    def test_schedule_defaults(self, sync_config: SyncConfig) -> None:
        assert sync_config.schedule.interval_seconds == 60
        assert sync_config.schedule.batch_size == 15
        assert sync_config.schedule.batch_pause_ms == 500

    def test_alert_thresholds(self, sync_config: SyncConfig) -> None:
        al = sync_config.alerts
        assert al.critical_low == 55
        assert al.critical_high == 300
        assert al.suppression_window == timedelta(minutes=15)
        assert al.no_data_after == timedelta(minutes=15)

    def test_retention_is_one_day(self, sync_config: SyncConfig) -> None:
        assert sync_config.retention.horizon == timedelta(hours=24)

    def test_every_provider_has_a_session_ttl(self, sync_config: SyncConfig) -> None:
        for kind in ProviderKind:
            assert kind in sync_config.session_ttls, f"missing TTL for {kind.value}"

    def test_libre_ttl(self, sync_config: SyncConfig) -> None:
        assert sync_config.session_ttl(ProviderKind.libre) == timedelta(minutes=60)

    def test_dexcom_window_shared_by_both_modes(self, sync_config: SyncConfig) -> None:
        expected = ReadingWindow(minutes=180, max_count=36)
        assert sync_config.window_for(ProviderKind.dexcom_publisher) == expected
        assert sync_config.window_for(ProviderKind.dexcom_follower) == expected

    def test_nightscout_count(self, sync_config: SyncConfig) -> None:
        assert sync_config.window_for(ProviderKind.nightscout).max_count == 12


class TestConfigValidation:
    """Tests for config validation logic."""

    def test_empty_config_uses_defaults(self) -> None:
        config = _validate_and_build({})
        assert config.schedule.batch_size == 15
        assert config.alerts.critical_low == 55
        assert config.retention.hours == 24
        # unlisted providers fall back to 60 minutes
        assert config.session_ttl(ProviderKind.nightscout) == timedelta(minutes=60)

    def test_non_numeric_value_raises(self) -> None:
        raw = {"schedule": {"batch_size": "lots"}}
        with pytest.raises(ConfigValidationError, match="batch_size"):
            _validate_and_build(raw)

    def test_below_minimum_raises(self) -> None:
        raw = {"schedule": {"interval_seconds": 0}}
        with pytest.raises(ConfigValidationError, match="interval_seconds"):
            _validate_and_build(raw)

    def test_inverted_critical_thresholds_raise(self) -> None:
        raw = {"alerts": {"critical_low": 300, "critical_high": 55}}
        with pytest.raises(ConfigValidationError, match="critical_low"):
            _validate_and_build(raw)

    def test_unknown_provider_ttl_raises(self) -> None:
        raw = {"sessions": {"ttl_minutes": {"medtronic": 30}}}
        with pytest.raises(ConfigValidationError, match="medtronic"):
            _validate_and_build(raw)

    def test_all_errors_reported_together(self) -> None:
        raw = {
            "schedule": {"batch_size": 0, "batch_pause_ms": -1},
            "retention": {"hours": "forever"},
        }
        with pytest.raises(ConfigValidationError, match="3 validation error"):
            _validate_and_build(raw)

    def test_section_must_be_mapping(self) -> None:
        with pytest.raises(ConfigValidationError, match="'alerts' must be a mapping"):
            _validate_and_build({"alerts": [55, 300]})

    @pytest.mark.parametrize(
        "raw,name",
        [
            ({"sessions": {"ttl_minutes": 30}}, "sessions.ttl_minutes"),
            ({"sessions": {"ttl_minutes": ["libre", 60]}}, "sessions.ttl_minutes"),
            ({"fetch": {"dexcom": 180}}, "fetch.dexcom"),
            ({"fetch": {"nightscout": "all"}}, "fetch.nightscout"),
            ({"fetch": {"libre": [720, 144]}}, "fetch.libre"),
        ],
    )
    def test_nested_section_must_be_mapping(self, raw: dict, name: str) -> None:
        with pytest.raises(ConfigValidationError, match=f"'{name}' must be a mapping"):
            _validate_and_build(raw)

    def test_nested_mapping_errors_collected(self) -> None:
        raw = {"sessions": {"ttl_minutes": 30}, "fetch": {"dexcom": 180, "libre": 720}}
        with pytest.raises(ConfigValidationError, match="3 validation error"):
            _validate_and_build(raw)

    def test_hot_reload(self, tmp_path: Path) -> None:
        """reload_sync_config() should replace the global singleton."""
        config_file = tmp_path / "sync_config.yaml"
        config_file.write_text(
            'version: "2.0-test"\n'
            "schedule:\n"
            "  interval_seconds: 30\n"
            "  batch_size: 5\n"
        )
        new_config = reload_sync_config(path=config_file)
        assert new_config.version == "2.0-test"
        assert new_config.schedule.batch_size == 5

    def test_invalid_reload_raises(self, tmp_path: Path) -> None:
        config_file = tmp_path / "sync_config.yaml"
        config_file.write_text("schedule: [unclosed\n")
        with pytest.raises(ConfigValidationError):
            reload_sync_config(path=config_file)

    def test_load_nonexistent_file_raises(self) -> None:
        with pytest.raises(FileNotFoundError):
            load_sync_config(path=Path("/nonexistent/path/sync_config.yaml"))


class TestSettings:
    def test_follower_configured_needs_both_values(self) -> None:
        assert not Settings(_env_file=None, dexcom_follower_username="camp").follower_configured
        assert Settings(
            _env_file=None,
            dexcom_follower_username="camp",
            dexcom_follower_password="secret",
        ).follower_configured

    def test_env_vars_are_read(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("DEXCOM_REGION", "ous")
        monkeypatch.setenv("HTTP_TIMEOUT_SECONDS", "4.5")
        s = Settings(_env_file=None)
        assert s.dexcom_region == "ous"
        assert s.http_timeout_seconds == 4.5

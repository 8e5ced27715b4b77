"""Tests for threshold classification, suppression, and the no-data sweep."""

from __future__ import annotations

from datetime import timedelta

import pytest

from src.cgm.alerts import AlertEngine, classify_glucose
from src.cgm.config_loader import AlertThresholds
from src.cgm.store import InMemoryStore
from src.cgm.tests.conftest import NOW, FakeClock, make_camper, sample
from src.models.alerts import AlertKind


@pytest.fixture
def engine(store: InMemoryStore, clock: FakeClock) -> AlertEngine:
    return AlertEngine(store, AlertThresholds(), clock=clock)


class TestClassifyGlucose:
    @pytest.mark.parametrize(
        "value,expected",
        [
            (40, AlertKind.critical_low),
            (65, AlertKind.low),
            (150, None),
            (200, AlertKind.high),
            (320, AlertKind.critical_high),
        ],
    )
    def test_precedence_for_default_range(self, value: int, expected: AlertKind | None) -> None:
        assert classify_glucose(value, 70, 180) == expected

    @pytest.mark.parametrize(
        "value,expected",
        [
            (54, AlertKind.critical_low),
            (55, AlertKind.low),
            (69, AlertKind.low),
            (70, None),
            (180, None),
            (181, AlertKind.high),
            (299, AlertKind.high),
            (300, AlertKind.critical_high),
        ],
    )
    def test_boundaries(self, value: int, expected: AlertKind | None) -> None:
        assert classify_glucose(value, 70, 180) == expected

    def test_critical_low_wins_over_camper_target(self) -> None:
        # a target_low below 55 never hides a critical low
        assert classify_glucose(50, 45, 180) == AlertKind.critical_low

    def test_camper_target_high_above_critical(self) -> None:
        assert classify_glucose(310, 70, 350) == AlertKind.critical_high

    def test_custom_range(self) -> None:
        assert classify_glucose(85, 90, 160) == AlertKind.low
        assert classify_glucose(165, 90, 160) == AlertKind.high

    def test_custom_thresholds(self) -> None:
        t = AlertThresholds(critical_low=60, critical_high=250)
        assert classify_glucose(58, 70, 180, t) == AlertKind.critical_low
        assert classify_glucose(250, 70, 180, t) == AlertKind.critical_high


class TestEvaluateReading:
    @pytest.mark.asyncio
    async def test_in_range_creates_nothing(self, engine: AlertEngine, store: InMemoryStore) -> None:
        assert await engine.evaluate_reading(make_camper(), sample(120)) is None
        assert await store.list_alerts() == []

    @pytest.mark.asyncio
    async def test_alert_carries_value_and_time(self, engine: AlertEngine) -> None:
        alert = await engine.evaluate_reading(make_camper(), sample(40))
        assert alert is not None
        assert alert.type is AlertKind.critical_low
        assert alert.value == 40
        assert alert.created_at == NOW

    @pytest.mark.asyncio
    async def test_repeat_within_window_suppressed(
        self, engine: AlertEngine, store: InMemoryStore, clock: FakeClock
    ) -> None:
        camper = make_camper()
        await engine.evaluate_reading(camper, sample(40))
        clock.advance(minutes=2)
        assert await engine.evaluate_reading(camper, sample(40, at=clock())) is None
        assert len(await store.list_alerts(kind=AlertKind.critical_low)) == 1

    @pytest.mark.asyncio
    async def test_repeat_after_window_creates_second(
        self, engine: AlertEngine, store: InMemoryStore, clock: FakeClock
    ) -> None:
        camper = make_camper()
        await engine.evaluate_reading(camper, sample(40))
        clock.advance(minutes=20)
        assert await engine.evaluate_reading(camper, sample(40, at=clock())) is not None
        assert len(await store.list_alerts(kind=AlertKind.critical_low)) == 2

    @pytest.mark.asyncio
    async def test_acknowledged_alert_allows_new_one(
        self, engine: AlertEngine, store: InMemoryStore, clock: FakeClock
    ) -> None:
        camper = make_camper()
        first = await engine.evaluate_reading(camper, sample(65))
        await store.acknowledge_alert(first.id, acknowledged_by=1, at=clock())
        clock.advance(minutes=1)
        assert await engine.evaluate_reading(camper, sample(64, at=clock())) is not None

    @pytest.mark.asyncio
    async def test_different_kind_not_suppressed(
        self, engine: AlertEngine, clock: FakeClock
    ) -> None:
        camper = make_camper()
        await engine.evaluate_reading(camper, sample(65))
        clock.advance(minutes=1)
        alert = await engine.evaluate_reading(camper, sample(45, at=clock()))
        assert alert is not None and alert.type is AlertKind.critical_low

    @pytest.mark.asyncio
    async def test_back_in_range_leaves_alerts_open(
        self, engine: AlertEngine, store: InMemoryStore, clock: FakeClock
    ) -> None:
        camper = make_camper()
        await engine.evaluate_reading(camper, sample(250))
        clock.advance(minutes=5)
        await engine.evaluate_reading(camper, sample(120, at=clock()))
        (alert,) = await store.list_alerts()
        assert not alert.is_acknowledged

    @pytest.mark.asyncio
    async def test_uses_camper_targets(self, engine: AlertEngine) -> None:
        camper = make_camper(target_low=100, target_high=140)
        alert = await engine.evaluate_reading(camper, sample(95))
        assert alert is not None and alert.type is AlertKind.low


class TestNoDataSweep:
    @pytest.mark.asyncio
    async def test_stale_camper_gets_one_alert(
        self, engine: AlertEngine, store: InMemoryStore
    ) -> None:
        camper = make_camper(last_sync_at=NOW - timedelta(minutes=20))
        created = await engine.sweep_no_data([camper])
        assert [a.type for a in created] == [AlertKind.no_data]
        assert created[0].value is None

        assert await engine.sweep_no_data([camper]) == []
        assert len(await store.list_alerts(kind=AlertKind.no_data)) == 1

    @pytest.mark.asyncio
    async def test_never_synced_counts_as_stale(self, engine: AlertEngine) -> None:
        created = await engine.sweep_no_data([make_camper(last_sync_at=None)])
        assert len(created) == 1

    @pytest.mark.asyncio
    async def test_recent_sync_is_not_stale(self, engine: AlertEngine) -> None:
        fresh = make_camper(last_sync_at=NOW - timedelta(minutes=14))
        assert await engine.sweep_no_data([fresh]) == []

    @pytest.mark.asyncio
    async def test_failed_but_recent_sync_is_not_stale(self, engine: AlertEngine) -> None:
        camper = make_camper(
            last_sync_at=NOW - timedelta(minutes=1), sync_error="Dexcom Share readings failed (503)"
        )
        assert await engine.sweep_no_data([camper]) == []

    @pytest.mark.asyncio
    async def test_unmonitorable_campers_skipped(self, engine: AlertEngine) -> None:
        campers = [
            make_camper(1, is_active=False),
            make_camper(2, cgm_provider=None),
            make_camper(3, cgm_password_enc=None),
        ]
        assert await engine.sweep_no_data(campers) == []

    @pytest.mark.asyncio
    async def test_follower_and_nightscout_campers_eligible(self, engine: AlertEngine) -> None:
        campers = [
            make_camper(1, cgm_auth_mode="follower", cgm_password_enc=None),
            make_camper(2, cgm_provider="nightscout", cgm_url="https://ns.example.com"),
        ]
        created = await engine.sweep_no_data(campers)
        assert sorted(a.camper_id for a in created) == [1, 2]

    @pytest.mark.asyncio
    async def test_alert_again_after_window(
        self, engine: AlertEngine, clock: FakeClock
    ) -> None:
        camper = make_camper(last_sync_at=NOW - timedelta(minutes=20))
        await engine.sweep_no_data([camper])
        clock.advance(minutes=16)
        assert len(await engine.sweep_no_data([camper])) == 1

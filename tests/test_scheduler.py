"""Tests for the scheduling orchestrator and the multi-account fan-out."""

from __future__ import annotations

from datetime import date, datetime, timedelta, timezone

import pytest

from conftest import (
    NOW,
    FakeDeviceClient,
    FakePriceService,
    FakeWeatherService,
    hourly_prices,
    water_based_state,
)
from core.hestia.exceptions import DeviceConnectionError
from core.hestia.models import (
    AccountCredential,
    ConsumptionBlock,
    ConsumptionData,
    ControlAction,
    DeviceSnapshot,
    PlannedDHWHour,
    PlannedHeatingHour,
    TickResult,
)
from core.hestia.scheduler import (
    SchedulingOrchestrator,
    dhw_action,
    heating_action,
    local_trigger_hour,
    run_for_all_accounts,
    schedule_slot_hour_utc,
)

DAY = NOW.date()
MIDNIGHT = datetime(2026, 1, 15, 0, 0, tzinfo=timezone.utc)
TOMORROW = MIDNIGHT + timedelta(days=1)
# 13:00 UTC is 15:00 in Tallinn in winter, the default planning hour
PLANNING_TIME = datetime(2026, 1, 15, 13, 5, tzinfo=timezone.utc)


def _orchestrator(store, prices=None, device=None, weather=None, now=NOW) -> SchedulingOrchestrator:
    return SchedulingOrchestrator(
        store=store,
        price_service=prices or FakePriceService(current=80.0),
        weather_service=weather or FakeWeatherService(),
        device_client=device or FakeDeviceClient(state=water_based_state()),
        clock=lambda: now,
    )


def _plan_hour(store, hour: int, offset: int, account_id: str = "acc-1") -> None:
    store.save_heating_schedule(account_id, DAY, [
        PlannedHeatingHour(DAY, hour, offset, None, 8.0, "planned"),
    ])


def test_trigger_and_slot_hours_differ() -> None:
    summer_evening = datetime(2026, 7, 1, 21, 30, tzinfo=timezone.utc)

    assert local_trigger_hour(summer_evening, "Europe/Tallinn") == 0
    assert schedule_slot_hour_utc(summer_evening) == 21
    assert local_trigger_hour(NOW, "Europe/Tallinn") == 12
    assert schedule_slot_hour_utc(NOW) == 10


@pytest.mark.parametrize("offset,action", [(5, "boost"), (4, "normal"), (-4, "normal"), (-5, "reduce")])
def test_heating_action_thresholds(offset, action) -> None:
    assert heating_action(offset) == action


@pytest.mark.parametrize("temp,action", [(50, "boost"), (49, "normal"), (36, "normal"), (35, "reduce")])
def test_dhw_action_thresholds(temp, action) -> None:
    assert dhw_action(temp) == action


def test_tick_applies_planned_offset(connected_store) -> None:
    _plan_hour(connected_store, 10, 6)
    device = FakeDeviceClient(state=water_based_state(target_offset=0.0))

    result = _orchestrator(connected_store, device=device).run_tick("acc-1")

    assert result.success
    assert result.decision.action == ControlAction.BOOST
    assert result.decision.target_temperature == 6
    assert device.heating_writes == [6]
    assert connected_store.get_heating_applied_at("acc-1", DAY, 10) is not None

    log = connected_store.get_recent_control_logs("acc-1")
    assert len(log) == 1
    assert (log[0].old_target_temp, log[0].new_target_temp) == (0.0, 6.0)
    assert log[0].price_eur_mwh == 80.0

    snapshot = connected_store.get_latest_snapshot("acc-1")
    assert snapshot.target_offset == 0.0
    assert snapshot.price_cent_kwh == pytest.approx(8.0)
    assert snapshot.action_taken == ControlAction.BOOST


def test_tick_skips_write_when_device_already_at_target(connected_store) -> None:
    _plan_hour(connected_store, 10, -3)
    device = FakeDeviceClient(state=water_based_state(target_offset=-3.0))

    result = _orchestrator(connected_store, device=device).run_tick("acc-1")

    assert result.success
    assert result.message == "Heating: no change (offset -3)"
    assert device.heating_writes == []
    assert connected_store.get_recent_control_logs("acc-1") == []
    assert connected_store.get_latest_snapshot("acc-1") is not None


def test_repeated_tick_writes_once(connected_store) -> None:
    _plan_hour(connected_store, 10, 6)
    device = FakeDeviceClient(state=water_based_state(target_offset=0.0))
    orchestrator = _orchestrator(connected_store, device=device)

    first = orchestrator.run_tick("acc-1")
    second = orchestrator.run_tick("acc-1")

    assert first.decision == second.decision
    assert device.heating_writes == [6]
    assert len(connected_store.get_recent_control_logs("acc-1")) == 1


def test_tick_falls_back_without_plan(connected_store) -> None:
    today = [100.0] * 24
    today[10] = 20.0
    prices = FakePriceService(today=hourly_prices(MIDNIGHT, today), current=20.0)
    device = FakeDeviceClient(state=water_based_state(target_offset=0.0))

    result = _orchestrator(connected_store, prices=prices, device=device).run_tick("acc-1")

    assert result.success
    assert result.decision.action == ControlAction.BOOST
    assert result.decision.target_temperature == 10
    assert "[fallback]" in result.decision.reason
    assert device.heating_writes == [10]


def test_tick_fails_without_current_price(connected_store) -> None:
    result = _orchestrator(connected_store, prices=FakePriceService(current=None)).run_tick("acc-1")

    assert not result.success
    assert result.message == "Could not get current electricity price"


def test_tick_fails_without_credential(store) -> None:
    result = _orchestrator(store).run_tick("acc-1")

    assert not result.success
    assert "no valid access token" in result.message


def test_tick_rejects_air_based_device(connected_store) -> None:
    state = water_based_state()
    state.is_water_based = False
    device = FakeDeviceClient(state=state)

    result = _orchestrator(connected_store, device=device).run_tick("acc-1")

    assert not result.success
    assert "water-based" in result.message
    assert device.heating_writes == []


def test_tick_fails_without_device(connected_store) -> None:
    result = _orchestrator(connected_store, device=FakeDeviceClient(state=None)).run_tick("acc-1")

    assert not result.success
    assert result.message == "No Daikin devices found"


def test_tick_catches_device_errors(connected_store) -> None:
    device = FakeDeviceClient(fail=DeviceConnectionError("Daikin API error 503: unavailable"))

    result = _orchestrator(connected_store, device=device).run_tick("acc-1")

    assert isinstance(result, TickResult)
    assert not result.success
    assert "503" in result.message


def test_expiring_token_is_refreshed(store) -> None:
    store.save_credential(AccountCredential("acc-1", "old", "refresh", NOW + timedelta(minutes=2)))
    device = FakeDeviceClient(state=water_based_state())

    result = _orchestrator(store, device=device).run_tick("acc-1")

    assert result.success
    assert device.refreshed == ["acc-1"]
    assert store.get_credential("acc-1").access_token == "refreshed-token"


def test_planning_runs_at_local_planning_hour(connected_store) -> None:
    prices = FakePriceService(
        today=hourly_prices(MIDNIGHT, [float(50 + h) for h in range(24)]),
        tomorrow=hourly_prices(TOMORROW, [float(90 - h) for h in range(24)]),
        current=63.0,
    )
    weather = FakeWeatherService()

    result = _orchestrator(connected_store, prices=prices, weather=weather, now=PLANNING_TIME).run_tick("acc-1")

    assert result.planning_result.success
    assert result.planning_result.message.startswith("Plan created: today 11h + tomorrow 24h.")
    assert len(connected_store.get_heating_schedule("acc-1", DAY)) == 11
    assert len(connected_store.get_heating_schedule("acc-1", DAY + timedelta(days=1))) == 24
    assert connected_store.get_user_settings("acc-1")["planning_needs_retry"] == "false"
    assert weather.cleaned
    # The 13:00 entry was just planned and is applied in the same tick
    assert connected_store.get_heating_applied_at("acc-1", DAY, 13) is not None


def test_failed_planning_sets_retry_flag_and_retries(connected_store) -> None:
    short = FakePriceService(today=hourly_prices(PLANNING_TIME.replace(minute=0), [50.0] * 3), current=50.0)

    first = _orchestrator(connected_store, prices=short, now=PLANNING_TIME).run_tick("acc-1")

    assert not first.planning_result.success
    assert "Not enough price data (3 hours)" in first.planning_result.message
    assert connected_store.get_settings("acc-1").planning_needs_retry is True

    later = PLANNING_TIME + timedelta(hours=1)
    full = FakePriceService(
        today=hourly_prices(MIDNIGHT, [60.0] * 24),
        tomorrow=hourly_prices(TOMORROW, [40.0] * 24),
        current=60.0,
    )
    second = _orchestrator(connected_store, prices=full, now=later).run_tick("acc-1")

    assert second.planning_result.success
    assert connected_store.get_settings("acc-1").planning_needs_retry is False


def test_no_planning_outside_planning_hour(connected_store) -> None:
    result = _orchestrator(connected_store).run_tick("acc-1")
    assert result.planning_result is None


def test_planning_excludes_past_hours_of_today(connected_store) -> None:
    prices = FakePriceService(today=hourly_prices(MIDNIGHT, [50.0 + h for h in range(24)]))

    result = _orchestrator(connected_store, prices=prices, now=PLANNING_TIME).force_planning("acc-1")

    assert result.success
    assert [h.hour for h in result.heating_hours] == list(range(13, 24))
    assert result.dhw_hours == []


def test_planning_includes_dhw_when_enabled(connected_store) -> None:
    connected_store.update_setting("acc-1", "dhw_enabled", "true")
    prices = FakePriceService(today=hourly_prices(MIDNIGHT, [50.0 + h for h in range(24)]))

    result = _orchestrator(connected_store, prices=prices, now=PLANNING_TIME).force_planning("acc-1")

    assert len(result.dhw_hours) == 11
    assert result.message.endswith("Hot water: 11h planned.")
    assert connected_store.get_planned_dhw_temp("acc-1", DAY, 13) is not None


def test_planning_removes_old_plans(connected_store) -> None:
    old = DAY - timedelta(days=8)
    connected_store.save_heating_schedule("acc-1", old, [PlannedHeatingHour(old, 1, 2, None, 4.0, "old")])
    prices = FakePriceService(today=hourly_prices(MIDNIGHT, [50.0 + h for h in range(24)]))

    _orchestrator(connected_store, prices=prices, now=PLANNING_TIME).force_planning("acc-1")

    assert connected_store.get_heating_schedule("acc-1", old) == []


def test_tick_applies_planned_dhw(connected_store, dhw_state) -> None:
    connected_store.update_setting("acc-1", "dhw_enabled", "true")
    connected_store.save_dhw_schedule("acc-1", DAY, [PlannedDHWHour(DAY, 10, 52, 8.0, "planned")])
    device = FakeDeviceClient(state=water_based_state(dhw=dhw_state))

    result = _orchestrator(connected_store, device=device).run_tick("acc-1")

    assert result.success
    assert result.dhw_decision.action == ControlAction.BOOST
    assert device.dhw_writes == [52]
    assert connected_store.get_dhw_applied_at("acc-1", DAY, 10) is not None
    assert [e.action for e in connected_store.get_recent_control_logs("acc-1")] == ["dhw_boost", "reduce"]


def test_tick_uses_dhw_fallback_without_plan(connected_store, dhw_state) -> None:
    connected_store.update_setting("acc-1", "dhw_enabled", "true")
    device = FakeDeviceClient(state=water_based_state(dhw=dhw_state))

    result = _orchestrator(connected_store, device=device).run_tick("acc-1")

    # 8.0 c/kWh is above the default low price threshold
    assert result.dhw_decision.action == ControlAction.REDUCE
    assert result.dhw_decision.target_temperature == 30
    assert device.dhw_writes == [30]


def test_dhw_ignored_when_disabled(connected_store, dhw_state) -> None:
    device = FakeDeviceClient(state=water_based_state(dhw=dhw_state))

    result = _orchestrator(connected_store, device=device).run_tick("acc-1")

    assert result.dhw_decision is None
    assert device.dhw_writes == []


def test_preview_has_no_side_effects(connected_store) -> None:
    _plan_hour(connected_store, 10, -6)
    device = FakeDeviceClient(state=water_based_state())

    decision = _orchestrator(connected_store, device=device).preview_control_action("acc-1")

    assert decision.action == ControlAction.REDUCE
    assert decision.target_temperature == -6
    assert connected_store.get_heating_applied_at("acc-1", DAY, 10) is None
    assert device.heating_writes == []
    assert connected_store.get_latest_snapshot("acc-1") is None


def test_preview_without_price(connected_store) -> None:
    orchestrator = _orchestrator(connected_store, prices=FakePriceService(current=None))
    assert orchestrator.preview_control_action("acc-1") is None


def test_schedule_for_date(connected_store) -> None:
    _plan_hour(connected_store, 10, 2)

    schedule = _orchestrator(connected_store).get_schedule_for_date("acc-1")

    assert schedule["date"] == DAY.isoformat()
    assert [h.planned_offset for h in schedule["heating"]] == [2]
    assert schedule["dhw"] == []
    assert _orchestrator(connected_store).get_schedule_for_date("acc-1", date(2026, 1, 1))["heating"] == []


def test_debug_schedule_compares_fresh_and_stored(connected_store) -> None:
    prices = FakePriceService(
        today=hourly_prices(MIDNIGHT, [50.0 + h for h in range(24)]),
        tomorrow=hourly_prices(TOMORROW, [30.0] * 24),
    )
    orchestrator = _orchestrator(connected_store, prices=prices, now=PLANNING_TIME)
    orchestrator.force_planning("acc-1")

    debug = orchestrator.debug_schedule("acc-1")

    assert debug["price_stats"]["total_hours"] == 35
    assert debug["calculated"]["total"] == 35
    assert len(debug["calculated"]["cheapest"]) == 5
    assert debug["calculated"]["most_expensive"][0]["price"] == pytest.approx(7.3)
    assert len(debug["stored"]["today"]) == 11
    assert len(debug["stored"]["tomorrow"]) == 24


def test_fan_out_records_failures_per_account(store) -> None:
    for account_id in ("acc-1", "acc-2", "acc-3"):
        store.save_credential(AccountCredential(account_id, "token", "refresh", NOW + timedelta(hours=1)))

    class FlakyOrchestrator:
        def __init__(self):
            self.store = store
            self.seen = []

        def run_tick(self, account_id):
            self.seen.append(account_id)
            if account_id == "acc-2":
                raise RuntimeError("boom")
            return TickResult(success=True, message="ok")

    orchestrator = FlakyOrchestrator()
    result = run_for_all_accounts(orchestrator)

    assert orchestrator.seen == ["acc-1", "acc-2", "acc-3"]
    assert not result.success
    assert result.accounts_processed == 3
    assert [(r.account_id, r.success) for r in result.results] == [
        ("acc-1", True),
        ("acc-2", False),
        ("acc-3", True),
    ]
    assert result.results[1].message == "boom"


def test_fan_out_with_real_orchestrator(connected_store) -> None:
    result = run_for_all_accounts(_orchestrator(connected_store))

    assert result.success
    assert result.accounts_processed == 1
    assert result.results[0].decision is not None


class _BrokenTomorrowPrices(FakePriceService):
    def get_tomorrow_prices(self, now):
        raise KeyError("timestamp")


class _BrokenWeather(FakeWeatherService):
    def get_weather_for_days(self, days, latitude, longitude):
        raise AttributeError("'list' object has no attribute 'get'")


def test_unexpected_planning_error_sets_retry_flag_and_still_controls(connected_store) -> None:
    prices = _BrokenTomorrowPrices(today=hourly_prices(MIDNIGHT, [60.0] * 24), current=63.0)
    device = FakeDeviceClient(state=water_based_state(target_offset=0.0))

    result = _orchestrator(connected_store, prices=prices, device=device, now=PLANNING_TIME).run_tick("acc-1")

    assert not result.planning_result.success
    assert "timestamp" in result.planning_result.message
    assert connected_store.get_settings("acc-1").planning_needs_retry is True
    # 6.3 c/kWh is above the low price threshold and no window price is known
    assert result.success
    assert result.decision.action == ControlAction.REDUCE
    assert device.heating_writes == [-10]


def test_weather_failure_plans_without_cold_adjustment(connected_store) -> None:
    prices = FakePriceService(today=hourly_prices(MIDNIGHT, [50.0 + h for h in range(24)]))

    result = _orchestrator(
        connected_store, prices=prices, weather=_BrokenWeather(), now=PLANNING_TIME
    ).force_planning("acc-1")

    assert result.success
    assert len(result.heating_hours) == 11
    assert all(h.outdoor_temp_forecast is None for h in result.heating_hours)
    assert len(connected_store.get_heating_schedule("acc-1", DAY)) == 11


def test_tick_records_consumption_under_local_dates(connected_store) -> None:
    state = water_based_state()
    state.consumption = ConsumptionData(blocks=[
        ConsumptionBlock(day_offset=-1, start_hour=22, heating_kwh=1.5),
        ConsumptionBlock(day_offset=0, start_hour=10, heating_kwh=0.4, dhw_kwh=0.2),
    ])
    orchestrator = _orchestrator(connected_store, device=FakeDeviceClient(state=state))

    assert orchestrator.run_tick("acc-1").success

    consumption = orchestrator.get_consumption("acc-1", days=7)
    assert consumption["since"] == "2026-01-08"
    assert [(c.date, c.hour, c.heating_kwh, c.dhw_kwh) for c in consumption["hourly"]] == [
        (date(2026, 1, 14), 22, 1.5, None),
        (date(2026, 1, 15), 10, 0.4, 0.2),
    ]
    assert [(d.date, d.heating_kwh) for d in consumption["daily"]] == [
        (date(2026, 1, 14), 1.5),
        (date(2026, 1, 15), 0.4),
    ]


def test_device_history_covers_requested_hours(connected_store) -> None:
    for age in (30, 5, 1):
        connected_store.save_device_snapshot("acc-1", DeviceSnapshot(
            timestamp=NOW - timedelta(hours=age),
            device_id="device-1",
            water_temp=30.0 + age,
            outdoor_temp=-2.0,
            target_offset=0.0,
            mode="heating",
            power_on=True,
            price_cent_kwh=8.0,
            action_taken="normal",
        ))

    history = _orchestrator(connected_store).get_device_history("acc-1", hours=24)

    assert [s.water_temp for s in history] == [35.0, 31.0]

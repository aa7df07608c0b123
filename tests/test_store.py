"""Tests for the SQLAlchemy store (in-memory SQLite)."""

from __future__ import annotations

from datetime import date, datetime, timedelta, timezone

from conftest import hourly_prices, hourly_weather
from core.hestia.models import (
    AccountCredential,
    ControlLogEntry,
    DeviceSnapshot,
    HourlyConsumption,
    PlannedDHWHour,
    PlannedHeatingHour,
)
from core.hestia.store import Store

DAY = date(2026, 1, 15)
START = datetime(2026, 1, 15, 0, 0, tzinfo=timezone.utc)


def _heating(hour: int, offset: int) -> PlannedHeatingHour:
    return PlannedHeatingHour(
        date=DAY, hour=hour, planned_offset=offset, outdoor_temp_forecast=-3.0, price_cent_kwh=9.5, reason="test"
    )


def test_settings_tiers(store: Store) -> None:
    store.update_setting("acc-1", "price_sensitivity", "4.0")
    store.update_setting("acc-1", "best_price_window_hours", "8")

    assert store.get_user_settings("acc-1") == {"price_sensitivity": "4.0"}
    assert store.get_global_settings() == {"best_price_window_hours": "8"}

    settings = store.get_settings("acc-1")
    assert settings.price_sensitivity == 4.0
    assert settings.best_price_window_hours == 8
    assert store.get_settings("acc-2").price_sensitivity == 7.0


def test_user_setting_upsert(store: Store) -> None:
    store.set_user_setting("acc-1", "planning_needs_retry", "true")
    store.set_user_setting("acc-1", "planning_needs_retry", "false")
    assert store.get_user_settings("acc-1") == {"planning_needs_retry": "false"}


def test_initialize_user_settings_copies_global_values_once(store: Store) -> None:
    store.set_global_setting("price_sensitivity", "6.0")
    store.set_user_setting("acc-1", "planning_hour", "13")

    store.initialize_user_settings("acc-1")

    assert store.get_user_settings("acc-1") == {"price_sensitivity": "6.0", "planning_hour": "13"}


def test_credentials(store: Store) -> None:
    expires = datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)
    store.save_credential(AccountCredential("acc-2", "a", "r", expires))
    store.save_credential(AccountCredential("acc-1", "a", "r", expires))
    store.save_credential(AccountCredential("acc-1", "b", "r2", expires + timedelta(hours=1)))

    credential = store.get_credential("acc-1")
    assert credential.access_token == "b"
    assert credential.expires_at == expires + timedelta(hours=1)
    assert [c.account_id for c in store.get_accounts_with_credentials()] == ["acc-1", "acc-2"]

    store.delete_credential("acc-2")
    assert store.get_credential("acc-2") is None


def test_prices_range_and_upsert(store: Store) -> None:
    store.save_prices(hourly_prices(START, [10.0, 20.0, 30.0]))
    store.save_prices(hourly_prices(START + timedelta(hours=2), [35.0, 40.0]))

    prices = store.get_prices_for_range(START + timedelta(hours=1), START + timedelta(hours=4))

    assert [p.price_eur_mwh for p in prices] == [20.0, 35.0, 40.0]
    assert prices[0].timestamp == START + timedelta(hours=1)
    assert prices[0].timestamp.tzinfo is not None


def test_weather_cache_and_cleanup(store: Store) -> None:
    store.save_weather(hourly_weather(START - timedelta(days=10), [1.0, 2.0]))
    store.save_weather(hourly_weather(START, [-4.0, -5.0]))

    store.delete_weather_before(START - timedelta(days=7))

    remaining = store.get_weather_for_range(START - timedelta(days=30), START + timedelta(days=1))
    assert [w.temperature for w in remaining] == [-4.0, -5.0]


def test_heating_schedule_upsert_clears_applied_marker(store: Store) -> None:
    store.save_heating_schedule("acc-1", DAY, [_heating(10, 3), _heating(11, -4)])
    store.mark_heating_applied("acc-1", DAY, 10)
    assert store.get_heating_applied_at("acc-1", DAY, 10) is not None

    store.save_heating_schedule("acc-1", DAY, [_heating(10, 6)])

    assert store.get_planned_offset("acc-1", DAY, 10) == 6
    assert store.get_heating_applied_at("acc-1", DAY, 10) is None
    assert [h.hour for h in store.get_heating_schedule("acc-1", DAY)] == [10, 11]


def test_plans_are_scoped_per_account(store: Store) -> None:
    store.save_heating_schedule("acc-1", DAY, [_heating(10, 3)])

    assert store.get_planned_offset("acc-2", DAY, 10) is None
    assert store.get_heating_schedule("acc-2", DAY) == []


def test_dhw_schedule(store: Store) -> None:
    row = PlannedDHWHour(date=DAY, hour=4, planned_temp=52, price_cent_kwh=3.1, reason="cheap")
    store.save_dhw_schedule("acc-1", DAY, [row])
    store.mark_dhw_applied("acc-1", DAY, 4)

    assert store.get_planned_dhw_temp("acc-1", DAY, 4) == 52
    assert store.get_planned_dhw_temp("acc-1", DAY, 5) is None
    assert store.get_dhw_applied_at("acc-1", DAY, 4) is not None
    assert store.get_dhw_schedule("acc-1", DAY) == [row]


def test_delete_schedules_before(store: Store) -> None:
    old = DAY - timedelta(days=8)
    store.save_heating_schedule("acc-1", old, [PlannedHeatingHour(old, 1, 2, None, 4.0, "old")])
    store.save_heating_schedule("acc-1", DAY, [_heating(1, 2)])
    store.save_dhw_schedule("acc-1", old, [PlannedDHWHour(old, 1, 50, 4.0, "old")])

    store.delete_schedules_before("acc-1", DAY - timedelta(days=7))

    assert store.get_heating_schedule("acc-1", old) == []
    assert store.get_dhw_schedule("acc-1", old) == []
    assert len(store.get_heating_schedule("acc-1", DAY)) == 1


def test_device_snapshots_and_control_log(store: Store) -> None:
    snapshot = DeviceSnapshot(
        timestamp=START,
        device_id="device-1",
        water_temp=34.0,
        outdoor_temp=-2.0,
        target_offset=1.0,
        mode="heating",
        power_on=True,
        price_cent_kwh=8.2,
        action_taken="normal",
    )
    store.save_device_snapshot("acc-1", snapshot)
    assert store.get_latest_snapshot("acc-1") == snapshot
    assert store.get_latest_snapshot("acc-2") is None

    for i in range(3):
        store.log_control_action("acc-1", ControlLogEntry(
            timestamp=START + timedelta(hours=i),
            action="boost",
            reason=f"entry {i}",
            price_eur_mwh=20.0,
            old_target_temp=0.0,
            new_target_temp=10.0,
        ))

    entries = store.get_recent_control_logs("acc-1", limit=2)
    assert [e.reason for e in entries] == ["entry 2", "entry 1"]
    assert entries[0].id is not None
    assert store.get_recent_control_logs("acc-2") == []


def test_hourly_consumption_keeps_known_values(store: Store) -> None:
    store.save_hourly_consumption("acc-1", [HourlyConsumption(DAY, 8, heating_kwh=1.2, dhw_kwh=0.3)])
    store.save_hourly_consumption("acc-1", [HourlyConsumption(DAY, 8, heating_kwh=None, cooling_kwh=0.0)])

    [block] = store.get_hourly_consumption("acc-1", DAY)
    assert (block.heating_kwh, block.cooling_kwh, block.dhw_kwh) == (1.2, 0.0, 0.3)
    assert store.get_hourly_consumption("acc-2", DAY) == []


def test_daily_consumption_totals(store: Store) -> None:
    yesterday = DAY - timedelta(days=1)
    store.save_hourly_consumption("acc-1", [
        HourlyConsumption(yesterday, 22, heating_kwh=1.0),
        HourlyConsumption(DAY, 0, heating_kwh=0.5, dhw_kwh=0.25),
        HourlyConsumption(DAY, 2, heating_kwh=0.75),
    ])

    daily = store.get_daily_consumption("acc-1", yesterday)

    assert [(d.date, d.heating_kwh, d.dhw_kwh) for d in daily] == [(yesterday, 1.0, None), (DAY, 1.25, 0.25)]
    assert [d.date for d in store.get_daily_consumption("acc-1", DAY)] == [DAY]

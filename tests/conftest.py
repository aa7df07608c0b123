"""Shared fixtures and fakes for the Hestia tests."""

from __future__ import annotations

from datetime import date, datetime, timedelta, timezone

import pytest

from core.hestia.models import AccountCredential, DeviceState, DHWState, PricePoint, WeatherPoint
from core.hestia.store import Store

NOW = datetime(2026, 1, 15, 10, 30, tzinfo=timezone.utc)


def hourly_prices(start: datetime, eur_mwh: list[float]) -> list[PricePoint]:
    """Consecutive hourly price points starting at start."""
    return [PricePoint(timestamp=start + timedelta(hours=i), price_eur_mwh=p) for i, p in enumerate(eur_mwh)]


def hourly_weather(start: datetime, temperatures: list[float]) -> list[WeatherPoint]:
    return [WeatherPoint(timestamp=start + timedelta(hours=i), temperature=t) for i, t in enumerate(temperatures)]


class FakePriceService:
    """Price service returning fixed lists."""

    def __init__(self, today=None, tomorrow=None, current=None):
        self.today = today or []
        self.tomorrow = tomorrow or []
        self.current = current

    def get_today_prices(self, now):
        return list(self.today)

    def get_tomorrow_prices(self, now):
        return list(self.tomorrow)

    def get_current_hour_price(self, now):
        return self.current


class FakeWeatherService:
    def __init__(self, points=None):
        self.points = points or []
        self.cleaned = False

    def get_weather_for_days(self, days, latitude, longitude):
        return list(self.points)

    def cleanup(self, now):
        self.cleaned = True


class FakeDeviceClient:
    """Records writes instead of calling the cloud API."""

    def __init__(self, state: DeviceState | None = None, fail: Exception | None = None):
        self.state = state
        self.fail = fail
        self.heating_writes = []
        self.dhw_writes = []
        self.refreshed = []

    def get_state(self, token):
        if self.fail:
            raise self.fail
        return self.state

    def set_heating_offset(self, token, state, value):
        self.heating_writes.append(value)
        state.target_offset = value

    def set_dhw_temperature(self, token, state, value):
        self.dhw_writes.append(value)
        if state.dhw:
            state.dhw.target_temp = value

    def refresh_access_token(self, credential, now):
        self.refreshed.append(credential.account_id)
        return AccountCredential(
            account_id=credential.account_id,
            access_token="refreshed-token",
            refresh_token=credential.refresh_token,
            expires_at=now + timedelta(hours=1),
        )


def water_based_state(target_offset=0.0, water_temp=35.0, dhw=None) -> DeviceState:
    return DeviceState(
        device_id="device-1",
        climate_control_id="1",
        dhw_control_id="2" if dhw else None,
        is_water_based=True,
        water_temp=water_temp,
        outdoor_temp=-2.0,
        target_offset=target_offset,
        mode="heating",
        power_on=True,
        dhw=dhw,
    )


@pytest.fixture
def store() -> Store:
    return Store("sqlite://")


@pytest.fixture
def connected_store(store) -> Store:
    """Store with one account holding a valid token."""
    store.save_credential(AccountCredential(
        account_id="acc-1",
        access_token="token",
        refresh_token="refresh",
        expires_at=NOW + timedelta(hours=2),
    ))
    return store


@pytest.fixture
def today() -> date:
    return NOW.date()


@pytest.fixture
def dhw_state() -> DHWState:
    return DHWState(tank_temp=45.0, target_temp=45.0, power_on=True)

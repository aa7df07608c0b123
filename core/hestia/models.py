"""
Hestia Data Models

Plain dataclasses shared by the planners, the orchestrator and the store.
Calendar slots are always derived from the UTC instant.
"""

from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Optional


class ControlAction:
    """Actions a control decision can take."""

    BOOST = "boost"
    NORMAL = "normal"
    REDUCE = "reduce"
    NONE = "none"


@dataclass(frozen=True, order=True)
class CalendarSlot:
    """A (UTC date, UTC hour-of-day) key aligning prices, weather and plans."""

    date: date
    hour: int

    @classmethod
    def from_timestamp(cls, timestamp: datetime) -> "CalendarSlot":
        """Build the slot for an instant (naive datetimes are taken as UTC)."""
        if timestamp.tzinfo is None:
            timestamp = timestamp.replace(tzinfo=timezone.utc)
        utc = timestamp.astimezone(timezone.utc)
        return cls(date=utc.date(), hour=utc.hour)


def covers_every_hour(timestamps, start: datetime, end: datetime) -> bool:
    """Whether every UTC hour in [start, end) has at least one timestamp.

    Works on 23- and 25-hour days and on quarter-hour data.
    """
    expected = {
        CalendarSlot.from_timestamp(start + timedelta(hours=i))
        for i in range(int((end - start).total_seconds() // 3600))
    }
    return expected <= {CalendarSlot.from_timestamp(t) for t in timestamps}


@dataclass
class PricePoint:
    """Raw price from the price source."""

    timestamp: datetime  # UTC, start of the interval
    price_eur_mwh: float


@dataclass
class HourPrice:
    """Price averaged over one calendar slot."""

    slot: CalendarSlot
    price: float  # c/kWh


@dataclass
class WeatherPoint:
    """Forecast outdoor temperature for one hour."""

    timestamp: datetime
    temperature: float  # °C at 2 m


@dataclass
class PlannedHeatingHour:
    """One hour of the heating plan."""

    date: date
    hour: int
    planned_offset: int  # -10..+10
    outdoor_temp_forecast: Optional[float]
    price_cent_kwh: float
    reason: str


@dataclass
class PlannedDHWHour:
    """One hour of the hot water plan."""

    date: date
    hour: int
    planned_temp: int  # dhw_min_temp..dhw_target_temp
    price_cent_kwh: float
    reason: str


@dataclass
class ControlDecision:
    """What to do with the device this hour."""

    action: str
    reason: str
    target_temperature: float  # offset for heating, absolute °C for DHW
    current_price: Optional[float]


@dataclass
class ControlLogEntry:
    """An actual device write, kept for audit history."""

    timestamp: datetime
    action: str
    reason: str
    price_eur_mwh: Optional[float]
    old_target_temp: Optional[float]
    new_target_temp: Optional[float]
    id: Optional[int] = None


@dataclass
class DHWState:
    """Domestic hot water tank state."""

    tank_temp: Optional[float] = None
    target_temp: Optional[float] = None
    power_on: bool = False


@dataclass
class ConsumptionBlock:
    """Energy used in one 2-hour block, relative to the device's local today."""

    day_offset: int  # -1 yesterday, 0 today
    start_hour: int  # 0, 2, ..., 22
    heating_kwh: Optional[float] = None
    cooling_kwh: Optional[float] = None
    dhw_kwh: Optional[float] = None


@dataclass
class ConsumptionData:
    """Energy use as reported by the device."""

    heating_today_kwh: Optional[float] = None
    cooling_today_kwh: Optional[float] = None
    dhw_today_kwh: Optional[float] = None
    blocks: list[ConsumptionBlock] = field(default_factory=list)


@dataclass
class HourlyConsumption:
    """Stored energy use for a 2-hour block starting at a local hour."""

    date: date  # local date
    hour: int
    heating_kwh: Optional[float] = None
    cooling_kwh: Optional[float] = None
    dhw_kwh: Optional[float] = None


@dataclass
class DailyConsumption:
    """Energy use summed over one local day."""

    date: date
    heating_kwh: Optional[float] = None
    cooling_kwh: Optional[float] = None
    dhw_kwh: Optional[float] = None


@dataclass
class DeviceState:
    """Heat pump state read from the cloud API."""

    device_id: str
    climate_control_id: Optional[str] = None
    dhw_control_id: Optional[str] = None
    is_water_based: bool = False
    water_temp: Optional[float] = None
    outdoor_temp: Optional[float] = None
    target_offset: Optional[float] = None
    mode: Optional[str] = None
    power_on: bool = False
    dhw: Optional[DHWState] = None
    consumption: ConsumptionData = field(default_factory=ConsumptionData)


@dataclass
class DeviceSnapshot:
    """Device state saved once per tick."""

    timestamp: datetime
    device_id: str
    water_temp: Optional[float]
    outdoor_temp: Optional[float]
    target_offset: Optional[float]
    mode: Optional[str]
    power_on: bool
    price_cent_kwh: Optional[float]
    action_taken: Optional[str]
    dhw_tank_temp: Optional[float] = None
    dhw_target_temp: Optional[float] = None
    dhw_action: Optional[str] = None
    heating_kwh: Optional[float] = None
    cooling_kwh: Optional[float] = None
    dhw_kwh: Optional[float] = None


@dataclass
class AccountCredential:
    """Stored device API tokens for one account."""

    account_id: str
    access_token: str
    refresh_token: str
    expires_at: datetime

    def is_valid(self, now: datetime) -> bool:
        expires_at = self.expires_at
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        return bool(self.access_token) and expires_at > now


@dataclass
class PlanningResult:
    """Outcome of a planning run."""

    success: bool
    message: str
    date: str
    heating_hours: list[PlannedHeatingHour] = field(default_factory=list)
    dhw_hours: list[PlannedDHWHour] = field(default_factory=list)


@dataclass
class TickResult:
    """Outcome of one orchestrator tick for one account."""

    success: bool
    message: str
    decision: Optional[ControlDecision] = None
    dhw_decision: Optional[ControlDecision] = None
    snapshot: Optional[DeviceSnapshot] = None
    planning_result: Optional[PlanningResult] = None


@dataclass
class AccountTickResult:
    """Per-account entry of a fan-out run."""

    account_id: str
    success: bool
    message: str
    decision: Optional[ControlDecision] = None


@dataclass
class FanOutResult:
    """Outcome of running the orchestrator for every account."""

    success: bool
    accounts_processed: int
    results: list[AccountTickResult] = field(default_factory=list)

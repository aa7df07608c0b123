"""
Price-Proportional Planning

Turns the combined price pool into a per-hour plan:

1. Normalise each hour's price against the pool median, scaled by half the
   spread and clamped to [-1, +1]
2. Multiply by a sensitivity constant (cheap hours go up, expensive go down)
3. Fairness floor: the cheapest half of the hours never go below the floor
4. Optional per-slot adjustment (cold weather relaxation for heating)
5. Clamp to the output range and round

Heating produces leaving-water offsets, hot water produces absolute tank
temperatures. Both run through the same allocation with different
parameters. The planners are pure: same input, same plan.
"""

from dataclasses import dataclass, field
import logging
import math
from typing import Callable, Optional

from .models import CalendarSlot, HourPrice, PlannedDHWHour, PlannedHeatingHour, PricePoint, WeatherPoint
from .price_normalizer import PriceStatistics, aggregate_hourly_prices, compute_price_statistics
from .settings import Settings
from .weather import build_weather_lookup, lookup_temperature

logger = logging.getLogger(__name__)

# Heating offset range accepted by the heat pump
MIN_OFFSET = -10
MAX_OFFSET = 10

# Hot water is less price sensitive than heating, not user-configurable
DHW_SENSITIVITY = 3.0

# Cold weather relaxation reaches its maximum this many degrees below threshold
COLD_RELAXATION_SPAN = 10.0
COLD_RELAXATION_MAX = 0.5

GUARANTEE_NOTE = "cheap-half guarantee"

# (slot, value) -> (adjusted value, note or None)
SlotAdjustment = Callable[[CalendarSlot, float], tuple[float, Optional[str]]]


@dataclass
class Allocation:
    """Planned value for one slot before it is turned into a plan row."""

    slot: CalendarSlot
    price: float
    raw_value: float
    value: int
    notes: list[str] = field(default_factory=list)


def round_half_up(value: float) -> int:
    """Round to the nearest integer, halves towards +infinity."""
    return math.floor(value + 0.5)


def clamp(value: float, lower: float, upper: float) -> float:
    return max(lower, min(upper, value))


def proportional_value(
    price: float,
    stats: PriceStatistics,
    sensitivity: float,
    midpoint: float = 0.0,
    scale: float = 1.0,
) -> float:
    """Raw planned value for a price, before fairness and adjustments.

    Args:
        price: Hour price (c/kWh)
        stats: Statistics of the whole price pool
        sensitivity: How strongly price moves the value
        midpoint: Value of an hour priced exactly at the median
        scale: Output units per unit of sensitivity

    Returns:
        midpoint - sensitivity * deviation * scale, deviation in [-1, +1]
    """
    deviation = clamp((price - stats.median) / stats.half_spread, -1.0, 1.0)
    return midpoint - sensitivity * deviation * scale


def cheapest_half(hour_prices: list[HourPrice]) -> set[CalendarSlot]:
    """Slots of the ceil(n/2) cheapest hours.

    Ties are broken by input order only (stable sort on price).
    """
    by_price = sorted(hour_prices, key=lambda hp: hp.price)
    return {hp.slot for hp in by_price[: math.ceil(len(by_price) / 2)]}


def allocate_proportional(
    hour_prices: list[HourPrice],
    stats: PriceStatistics,
    sensitivity: float,
    lower: float,
    upper: float,
    floor_value: float,
    midpoint: float = 0.0,
    scale: float = 1.0,
    adjust: Optional[SlotAdjustment] = None,
) -> list[Allocation]:
    """Bounded price-proportional allocation with a fairness floor.

    Args:
        hour_prices: One price per slot
        stats: Statistics over hour_prices
        sensitivity: Sensitivity constant
        lower: Minimum output value
        upper: Maximum output value
        floor_value: Minimum value for the cheapest half of the slots
        midpoint: Value at the median price
        scale: Output units per unit of sensitivity
        adjust: Optional per-slot adjustment applied after the floor

    Returns:
        Allocations sorted by slot
    """
    cheap_slots = cheapest_half(hour_prices)

    allocations = []
    for hp in hour_prices:
        raw = proportional_value(hp.price, stats, sensitivity, midpoint, scale)
        value = raw
        notes = []

        if hp.slot in cheap_slots and value < floor_value:
            value = floor_value
            notes.append(GUARANTEE_NOTE)

        if adjust is not None:
            value, note = adjust(hp.slot, value)
            if note:
                notes.append(note)

        allocations.append(Allocation(
            slot=hp.slot,
            price=hp.price,
            raw_value=raw,
            value=round_half_up(clamp(value, lower, upper)),
            notes=notes,
        ))

    return sorted(allocations, key=lambda a: a.slot)


def cold_weather_relaxation(
    weather_lookup: dict[CalendarSlot, float], threshold: float
) -> SlotAdjustment:
    """Adjustment that softens heating penalties in cold weather.

    Only negative offsets with a known forecast below the threshold change.
    The penalty shrinks linearly, by half once it is COLD_RELAXATION_SPAN
    degrees below the threshold.
    """

    def adjust(slot: CalendarSlot, offset: float) -> tuple[float, Optional[str]]:
        outdoor_temp = lookup_temperature(weather_lookup, slot)
        if outdoor_temp is None or outdoor_temp >= threshold or offset >= 0:
            return offset, None

        cold_factor = clamp((threshold - outdoor_temp) / COLD_RELAXATION_SPAN, 0.0, 1.0)
        relaxed = offset * (1 - COLD_RELAXATION_MAX * cold_factor)
        return relaxed, f"cold weather ({outdoor_temp:.0f}°C)"

    return adjust


def _reason(price: float, bucket: str, notes: list[str], outdoor_temp: Optional[float] = None) -> str:
    reason = f"Price {price:.1f} c/kWh ({bucket})"
    if outdoor_temp is not None:
        reason += f", outdoor {outdoor_temp:.0f}°C"
    if notes:
        reason += f" [{', '.join(notes)}]"
    return reason


def plan_heating_offsets(
    prices: list[PricePoint],
    weather: list[WeatherPoint],
    settings: Settings,
) -> list[PlannedHeatingHour]:
    """Plan heating offsets for every hour with a known price.

    Today's remaining hours and tomorrow's hours are normalised together, so
    an evening that only looks cheap relative to today is not boosted when
    tomorrow morning is cheaper.

    Args:
        prices: Raw prices covering the planning horizon
        weather: Forecast points; hours without one get no cold adjustment
        settings: Account settings (price_sensitivity, cold_weather_threshold)

    Returns:
        One entry per calendar slot, sorted by (date, hour)
    """
    hour_prices = aggregate_hourly_prices(prices)
    if not hour_prices:
        return []

    stats = compute_price_statistics(hour_prices)
    weather_lookup = build_weather_lookup(weather)

    allocations = allocate_proportional(
        hour_prices,
        stats,
        sensitivity=settings.price_sensitivity,
        lower=MIN_OFFSET,
        upper=MAX_OFFSET,
        floor_value=0.0,
        adjust=cold_weather_relaxation(weather_lookup, settings.cold_weather_threshold),
    )

    planned = []
    for a in allocations:
        outdoor_temp = lookup_temperature(weather_lookup, a.slot)
        planned.append(PlannedHeatingHour(
            date=a.slot.date,
            hour=a.slot.hour,
            planned_offset=a.value,
            outdoor_temp_forecast=outdoor_temp,
            price_cent_kwh=a.price,
            reason=_reason(a.price, stats.bucket(a.price), a.notes, outdoor_temp),
        ))

    logger.debug(
        f"Planned {len(planned)} heating hours: median {stats.median:.2f} c/kWh, "
        f"spread {stats.spread:.2f}, K={settings.price_sensitivity}"
    )
    return planned


def plan_dhw_temperatures(prices: list[PricePoint], settings: Settings) -> list[PlannedDHWHour]:
    """Plan hot water tank targets for every hour with a known price.

    Temperatures move around the midpoint of [dhw_min_temp, dhw_target_temp];
    the cheapest half of the hours never go below the midpoint.
    """
    hour_prices = aggregate_hourly_prices(prices)
    if not hour_prices:
        return []

    stats = compute_price_statistics(hour_prices)
    min_temp = settings.dhw_min_temp
    max_temp = settings.dhw_target_temp
    mid_temp = (min_temp + max_temp) / 2

    allocations = allocate_proportional(
        hour_prices,
        stats,
        sensitivity=DHW_SENSITIVITY,
        lower=min_temp,
        upper=max_temp,
        floor_value=mid_temp,
        midpoint=mid_temp,
        scale=(max_temp - min_temp) / 20,
    )

    return [
        PlannedDHWHour(
            date=a.slot.date,
            hour=a.slot.hour,
            planned_temp=a.value,
            price_cent_kwh=a.price,
            reason=_reason(a.price, stats.bucket(a.price), a.notes),
        )
        for a in allocations
    ]

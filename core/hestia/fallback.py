"""
Fallback Control Decisions

Reactive rules for hours without a persisted plan entry. Read-only over its
inputs and tolerant of missing data: when in doubt it reduces.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from .models import ControlAction, ControlDecision, PricePoint
from .planner import MAX_OFFSET, MIN_OFFSET
from .price_normalizer import eur_mwh_to_cent_kwh
from .settings import Settings

logger = logging.getLogger(__name__)

FALLBACK_TAG = "[fallback]"


def _as_utc(timestamp: datetime) -> datetime:
    if timestamp.tzinfo is None:
        return timestamp.replace(tzinfo=timezone.utc)
    return timestamp.astimezone(timezone.utc)


def find_cheapest_hour_in_window(
    prices: list[PricePoint],
    window_hours: int,
    current_time: datetime,
) -> Optional[PricePoint]:
    """Cheapest price starting within [current_time, current_time + window).

    The first of several equal minima wins.
    """
    start = _as_utc(current_time)
    end = start + timedelta(hours=window_hours)

    cheapest = None
    for point in prices:
        if start <= _as_utc(point.timestamp) < end:
            if cheapest is None or point.price_eur_mwh < cheapest.price_eur_mwh:
                cheapest = point
    return cheapest


def decide_fallback_heating(
    current_price: Optional[float],
    current_time: datetime,
    prices: list[PricePoint],
    settings: Settings,
    water_temp: Optional[float] = None,
) -> ControlDecision:
    """Heating decision when no plan exists for the current hour.

    Args:
        current_price: Current hour price (c/kWh), None if unknown
        current_time: Start of the current hour
        prices: All known raw prices (today and tomorrow)
        settings: Account settings
        water_temp: Live leaving water temperature, None if unknown

    Returns:
        Boost (+10) or reduce (-10) decision
    """
    min_water_temp = settings.min_water_temp
    window_hours = settings.best_price_window_hours

    # Safety floor dominates everything else
    if water_temp is not None and water_temp <= min_water_temp:
        logger.warning(f"Water temp {water_temp}°C at or below {min_water_temp}°C, forcing boost")
        return ControlDecision(
            action=ControlAction.BOOST,
            reason=f"Water temp {water_temp}°C at minimum {min_water_temp}°C - safety heating",
            target_temperature=MAX_OFFSET,
            current_price=current_price,
        )

    cheapest = find_cheapest_hour_in_window(prices, window_hours, current_time)
    if cheapest is not None:
        current_start = _as_utc(current_time)
        cheapest_start = _as_utc(cheapest.timestamp)
        cheapest_price = eur_mwh_to_cent_kwh(cheapest.price_eur_mwh)

        if abs(current_start - cheapest_start) < timedelta(hours=1):
            return ControlDecision(
                action=ControlAction.BOOST,
                reason=(
                    f"Current hour is the cheapest in the {window_hours}h window "
                    f"({cheapest_price:.1f} c/kWh) {FALLBACK_TAG}"
                ),
                target_temperature=MAX_OFFSET,
                current_price=current_price,
            )

        hours_until = round((cheapest_start - current_start) / timedelta(hours=1))
        return ControlDecision(
            action=ControlAction.REDUCE,
            reason=f"Waiting for cheaper price in {hours_until}h {FALLBACK_TAG}",
            target_temperature=MIN_OFFSET,
            current_price=current_price,
        )

    if current_price is not None and current_price < settings.low_price_threshold:
        return ControlDecision(
            action=ControlAction.BOOST,
            reason=f"Price {current_price:.1f} c/kWh below threshold {FALLBACK_TAG}",
            target_temperature=MAX_OFFSET,
            current_price=current_price,
        )

    return ControlDecision(
        action=ControlAction.REDUCE,
        reason=f"No price data {FALLBACK_TAG}",
        target_temperature=MIN_OFFSET,
        current_price=current_price,
    )


def decide_fallback_dhw(
    current_price: Optional[float],
    settings: Settings,
    tank_temp: Optional[float] = None,
) -> ControlDecision:
    """Hot water decision when no plan exists for the current hour."""
    min_temp = settings.dhw_min_temp
    boost_temp = settings.dhw_target_temp

    if tank_temp is not None and tank_temp <= min_temp:
        return ControlDecision(
            action=ControlAction.BOOST,
            reason=f"Tank temp {tank_temp}°C at minimum {min_temp}°C {FALLBACK_TAG}",
            target_temperature=boost_temp,
            current_price=current_price,
        )

    if current_price is not None and current_price < settings.low_price_threshold:
        return ControlDecision(
            action=ControlAction.BOOST,
            reason=f"Low price {current_price:.1f} c/kWh {FALLBACK_TAG}",
            target_temperature=boost_temp,
            current_price=current_price,
        )

    return ControlDecision(
        action=ControlAction.REDUCE,
        reason=f"Normal price {FALLBACK_TAG}",
        target_temperature=min_temp,
        current_price=current_price,
    )

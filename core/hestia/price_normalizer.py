"""
Price Normalization

Aggregates raw day-ahead prices into one price per calendar slot and
summarises the whole pool (today's remaining hours plus tomorrow) so that
every hour is judged against the same median and spread.
"""

from collections import defaultdict
from dataclasses import dataclass
import logging
import math

import numpy as np

from .models import CalendarSlot, HourPrice, PricePoint

logger = logging.getLogger(__name__)

# Planning needs at least this many hours of combined price data
MIN_PLANNING_HOURS = 6

# Bucket labels used in plan reasons
BUCKET_CHEAP = "cheap"
BUCKET_MID = "mid"
BUCKET_EXPENSIVE = "expensive"


def eur_mwh_to_cent_kwh(price_eur_mwh: float) -> float:
    """Convert EUR/MWh to c/kWh (1 EUR/MWh = 0.1 c/kWh)."""
    return price_eur_mwh / 10


@dataclass
class PriceStatistics:
    """Summary of the combined price pool (c/kWh)."""

    sorted_prices: list[float]
    median: float
    min_price: float
    max_price: float
    spread: float
    half_spread: float

    @property
    def cheap_threshold(self) -> float:
        """Price at the 25th percentile position."""
        return self.sorted_prices[math.floor(len(self.sorted_prices) * 0.25)]

    @property
    def expensive_threshold(self) -> float:
        """Price at the 75th percentile position."""
        return self.sorted_prices[math.floor(len(self.sorted_prices) * 0.75)]

    def bucket(self, price: float) -> str:
        """Classify a price as cheap, mid or expensive."""
        if price <= self.cheap_threshold:
            return BUCKET_CHEAP
        if price >= self.expensive_threshold:
            return BUCKET_EXPENSIVE
        return BUCKET_MID


def aggregate_hourly_prices(prices: list[PricePoint]) -> list[HourPrice]:
    """Average raw prices per calendar slot and convert to c/kWh.

    Sub-hourly points (e.g. 15-minute resolution) that share a UTC hour are
    averaged into a single value. Slots keep first-seen order.
    """
    grouped: dict[CalendarSlot, list[float]] = defaultdict(list)
    for point in prices:
        slot = CalendarSlot.from_timestamp(point.timestamp)
        grouped[slot].append(eur_mwh_to_cent_kwh(point.price_eur_mwh))

    return [
        HourPrice(slot=slot, price=float(np.mean(values)))
        for slot, values in grouped.items()
    ]


def compute_price_statistics(hour_prices: list[HourPrice]) -> PriceStatistics:
    """Compute median, range and spread over all hourly prices.

    The median is the element at index n // 2 of the sorted list. For an even
    count that is the upper of the two middle values, not their average; the
    plan depends on this exact choice so it is kept.

    Raises:
        ValueError: If hour_prices is empty
    """
    if not hour_prices:
        raise ValueError("Cannot compute statistics for an empty price list")

    sorted_prices = [float(p) for p in np.sort([hp.price for hp in hour_prices])]
    median = sorted_prices[len(sorted_prices) // 2]
    min_price = sorted_prices[0]
    max_price = sorted_prices[-1]
    spread = max_price - min_price

    # Avoid division by zero if all prices are the same
    half_spread = spread / 2 if spread > 0 else 1.0

    return PriceStatistics(
        sorted_prices=sorted_prices,
        median=median,
        min_price=min_price,
        max_price=max_price,
        spread=spread,
        half_spread=half_spread,
    )


def has_enough_prices(hour_prices: list[HourPrice]) -> bool:
    return len(hour_prices) >= MIN_PLANNING_HOURS

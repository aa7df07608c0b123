"""
Electricity Price Source

Day-ahead prices from the Elering dashboard API, cached in the store.
Today and tomorrow are local calendar days in the configured timezone.
"""

import logging
from datetime import date, datetime, time, timedelta, timezone
from typing import Optional
from zoneinfo import ZoneInfo

import requests

from .exceptions import PriceDataError
from .models import PricePoint, covers_every_hour

logger = logging.getLogger(__name__)

ELERING_API_URL = "https://dashboard.elering.ee/api/nps/price"

# Next-day prices are published around this local hour
TOMORROW_PUBLISH_HOUR = 14


class EleringClient:
    """Minimal Elering Nord Pool price client (Estonian area)."""

    def __init__(self, base_url: str = ELERING_API_URL, timeout: int = 10, area: str = "ee"):
        self.base_url = base_url
        self.session = requests.Session()
        self.timeout = timeout
        self.area = area

    def fetch_prices(self, start: datetime, end: datetime) -> list[PricePoint]:
        """Fetch prices for [start, end).

        Raises:
            PriceDataError: If the request fails or the response is malformed
        """
        params = {
            "start": start.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.000Z"),
            "end": end.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.000Z"),
        }
        try:
            response = self.session.get(self.base_url, params=params, timeout=self.timeout)
            response.raise_for_status()
            data = response.json()
        except requests.exceptions.RequestException as e:
            raise PriceDataError(f"Elering API request failed: {e}")
        except ValueError as e:
            raise PriceDataError(f"Invalid JSON from Elering API: {e}")

        if not isinstance(data, dict) or not data.get("success"):
            raise PriceDataError("Invalid response from Elering API")
        items = (data.get("data") or {}).get(self.area)
        if items is None:
            raise PriceDataError("Invalid response from Elering API")

        try:
            return [
                PricePoint(
                    timestamp=datetime.fromtimestamp(item["timestamp"], tz=timezone.utc),
                    price_eur_mwh=float(item["price"]),
                )
                for item in items
            ]
        except (KeyError, TypeError, ValueError) as e:
            raise PriceDataError(f"Malformed price data from Elering API: {e!r}")


class PriceService:
    """Cached access to today's and tomorrow's prices."""

    def __init__(self, store, client: EleringClient, tz: str = "Europe/Tallinn"):
        self.store = store
        self.client = client
        self.tz = ZoneInfo(tz)

    def _local_day_range(self, day: date) -> tuple[datetime, datetime]:
        start = datetime.combine(day, time.min, tzinfo=self.tz)
        end = datetime.combine(day + timedelta(days=1), time.min, tzinfo=self.tz)
        return start.astimezone(timezone.utc), end.astimezone(timezone.utc)

    def get_prices_for_day(self, day: date) -> list[PricePoint]:
        """Prices for one local day, refreshed from the API when the cache is short.

        Raises:
            PriceDataError: If the cache is incomplete and the fetch fails
        """
        start, end = self._local_day_range(day)
        prices = self.store.get_prices_for_range(start, end)
        if covers_every_hour([p.timestamp for p in prices], start, end):
            return prices

        fresh = self.client.fetch_prices(start, end)
        if fresh:
            self.store.save_prices(fresh)
            logger.info(f"Fetched {len(fresh)} prices for {day.isoformat()}")
            return fresh
        return prices

    def get_today_prices(self, now: datetime) -> list[PricePoint]:
        return self.get_prices_for_day(now.astimezone(self.tz).date())

    def get_tomorrow_prices(self, now: datetime) -> list[PricePoint]:
        """Tomorrow's prices; the API is only asked after publication.

        A failed fetch is not an error here, it returns what is cached.
        """
        local_now = now.astimezone(self.tz)
        tomorrow = local_now.date() + timedelta(days=1)
        start, end = self._local_day_range(tomorrow)

        prices = self.store.get_prices_for_range(start, end)
        complete = covers_every_hour([p.timestamp for p in prices], start, end)
        if complete or local_now.hour < TOMORROW_PUBLISH_HOUR:
            return prices

        try:
            fresh = self.client.fetch_prices(start, end)
        except PriceDataError as e:
            logger.info(f"Tomorrow's prices not available yet: {e}")
            return prices

        if fresh:
            self.store.save_prices(fresh)
            return fresh
        return prices

    def get_current_hour_price(self, now: datetime) -> Optional[float]:
        """Price (EUR/MWh) of the hour containing now, or None if unknown."""
        hour_start = now.astimezone(timezone.utc).replace(minute=0, second=0, microsecond=0)
        hour_end = hour_start + timedelta(hours=1)

        prices = self.store.get_prices_for_range(hour_start, hour_end)
        if not prices:
            try:
                self.get_today_prices(now)
            except PriceDataError as e:
                logger.warning(f"Could not refresh today's prices: {e}")
                return None
            prices = self.store.get_prices_for_range(hour_start, hour_end)

        if not prices:
            return None
        return prices[0].price_eur_mwh

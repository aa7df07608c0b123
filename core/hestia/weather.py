"""
Weather Forecast Lookup

Fetches hourly outdoor temperature forecasts from Open-Meteo, caches them in
the store and maps them onto the same calendar slots as prices. Weather is
best-effort: a failed fetch never aborts planning.
"""

import logging
from datetime import date, datetime, time, timedelta, timezone
from typing import Optional
from zoneinfo import ZoneInfo

import requests

from .exceptions import WeatherDataError
from .models import CalendarSlot, WeatherPoint, covers_every_hour

logger = logging.getLogger(__name__)

OPEN_METEO_API_URL = "https://api.open-meteo.com/v1/forecast"

# Forecasts older than this are removed from the cache
WEATHER_RETENTION_DAYS = 7


def build_weather_lookup(points: list[WeatherPoint]) -> dict[CalendarSlot, float]:
    """Map forecasts by calendar slot. Later points win on duplicate slots."""
    return {CalendarSlot.from_timestamp(p.timestamp): p.temperature for p in points}


def lookup_temperature(lookup: dict[CalendarSlot, float], slot: CalendarSlot) -> Optional[float]:
    """Temperature for a slot, or None when the forecast has no such hour."""
    return lookup.get(slot)


class OpenMeteoClient:
    """Minimal Open-Meteo forecast client."""

    def __init__(self, base_url: str = OPEN_METEO_API_URL, timeout: int = 10):
        self.base_url = base_url
        self.session = requests.Session()
        self.timeout = timeout

    def fetch_forecast(self, latitude: float, longitude: float, days: int = 2) -> list[WeatherPoint]:
        """Fetch hourly 2 m temperatures.

        Args:
            latitude: Location latitude
            longitude: Location longitude
            days: Number of forecast days (1-7)

        Returns:
            Hourly weather points with UTC timestamps

        Raises:
            WeatherDataError: If the request fails or the response is malformed
        """
        params = {
            "latitude": latitude,
            "longitude": longitude,
            "hourly": "temperature_2m",
            "forecast_days": min(days, 7),
            "timezone": "UTC",
        }
        try:
            response = self.session.get(self.base_url, params=params, timeout=self.timeout)
            response.raise_for_status()
            data = response.json()
        except requests.exceptions.RequestException as e:
            raise WeatherDataError(f"Open-Meteo API request failed: {e}")
        except ValueError as e:
            raise WeatherDataError(f"Invalid JSON from Open-Meteo API: {e}")

        hourly = data.get("hourly") if isinstance(data, dict) else None
        if not isinstance(hourly, dict):
            raise WeatherDataError("Invalid response from Open-Meteo API")
        times = hourly.get("time")
        temperatures = hourly.get("temperature_2m")
        if not times or temperatures is None:
            raise WeatherDataError("Invalid response from Open-Meteo API")

        points = []
        try:
            for time_str, temperature in zip(times, temperatures):
                if temperature is None:
                    continue
                timestamp = datetime.fromisoformat(time_str)
                if timestamp.tzinfo is None:
                    timestamp = timestamp.replace(tzinfo=timezone.utc)
                points.append(WeatherPoint(timestamp=timestamp, temperature=float(temperature)))
        except (TypeError, ValueError) as e:
            raise WeatherDataError(f"Malformed forecast from Open-Meteo API: {e}")
        return points


class WeatherService:
    """Cached, failure-tolerant access to forecasts for planning."""

    def __init__(self, store, client: OpenMeteoClient, tz: str = "Europe/Tallinn"):
        self.store = store
        self.client = client
        self.tz = ZoneInfo(tz)

    def get_weather_for_date(self, day: date, latitude: float, longitude: float) -> list[WeatherPoint]:
        """Forecast for one local calendar day.

        Uses the cache when it covers every hour of the day, otherwise
        refreshes from the API. On a failed refresh, whatever is cached is
        returned.
        """
        start = datetime.combine(day, time.min, tzinfo=self.tz).astimezone(timezone.utc)
        end = datetime.combine(day + timedelta(days=1), time.min, tzinfo=self.tz).astimezone(timezone.utc)

        forecasts = self.store.get_weather_for_range(start, end)
        if covers_every_hour([f.timestamp for f in forecasts], start, end):
            return forecasts

        try:
            fresh = self.client.fetch_forecast(latitude, longitude, days=2)
        except WeatherDataError as e:
            logger.warning(f"Failed to fetch weather forecast, using {len(forecasts)} cached hours: {e}")
            return forecasts

        self.store.save_weather(fresh)
        return [f for f in fresh if start <= f.timestamp < end]

    def get_weather_for_days(self, days: list[date], latitude: float, longitude: float) -> list[WeatherPoint]:
        points = []
        for day in days:
            points.extend(self.get_weather_for_date(day, latitude, longitude))
        return points

    def cleanup(self, now: datetime) -> None:
        """Drop cached forecasts older than the retention window."""
        self.store.delete_weather_before(now - timedelta(days=WEATHER_RETENTION_DAYS))

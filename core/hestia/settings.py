"""
Hestia Account Settings

Two-tier resolution: global defaults overridden by per-account values.
Both tiers are stored as string key/value rows and parsed here.
"""

from dataclasses import asdict, dataclass, fields
import logging
import re

from .exceptions import ConfigurationError

logger = logging.getLogger(__name__)


def _camel_to_snake(name: str) -> str:
    """Convert camelCase to snake_case."""
    s1 = re.sub("(.)([A-Z][a-z]+)", r"\1_\2", name)
    return re.sub("([a-z0-9])([A-Z])", r"\1_\2", s1).lower()


# Keys stored per account; everything else lives in the global table
USER_SPECIFIC_SETTINGS = [
    "price_sensitivity",
    "cold_weather_threshold",
    "planning_hour",
    "low_price_threshold",
    "dhw_enabled",
    "dhw_min_temp",
    "dhw_target_temp",
    "weather_location_lat",
    "weather_location_lon",
    "planning_needs_retry",
]


@dataclass
class Settings:
    """Resolved settings for one account."""

    price_sensitivity: float = 7.0  # K, 1-10
    cold_weather_threshold: float = -5.0  # °C
    planning_hour: int = 15  # local wall-clock hour
    low_price_threshold: float = 5.0  # c/kWh
    dhw_enabled: bool = False
    dhw_min_temp: float = 30.0  # °C
    dhw_target_temp: float = 60.0  # °C
    best_price_window_hours: int = 6
    min_water_temp: float = 20.0  # °C, fallback safety floor
    weather_location_lat: float = 59.3
    weather_location_lon: float = 24.7
    planning_needs_retry: bool = False

    @classmethod
    def from_dict(cls, data: dict) -> "Settings":
        """Create from a string/typed dictionary, ignoring unknown keys."""
        converted = {_camel_to_snake(k): v for k, v in data.items()}
        known = {f.name: f for f in fields(cls)}
        kwargs = {}
        for key, value in converted.items():
            if key not in known or value is None:
                continue
            try:
                kwargs[key] = _parse_value(known[key].type, value)
            except (TypeError, ValueError):
                logger.warning(f"Ignoring invalid setting {key}={value!r}, using default")
        return cls(**kwargs)


def _parse_value(type_name, value):
    if type_name in (bool, "bool"):
        if isinstance(value, bool):
            return value
        return str(value).strip().lower() == "true"
    if type_name in (int, "int"):
        return int(float(value))
    return float(value)


def resolve_settings(global_defaults: dict[str, str], user_overrides: dict[str, str]) -> Settings:
    """Resolve the effective settings for an account.

    Called once per tick and never cached, so a changed value is picked up
    on the next run.

    Args:
        global_defaults: Rows of the shared settings table
        user_overrides: Rows of the account's own settings

    Returns:
        Settings with built-in defaults for anything neither tier defines
    """
    merged = dict(global_defaults)
    merged.update(user_overrides)
    return Settings.from_dict(merged)


def is_user_specific(key: str) -> bool:
    """Whether a setting is stored per account rather than globally."""
    return key in USER_SPECIFIC_SETTINGS


def validate_setting(key: str, value) -> str:
    """Validate a setting at the write boundary and return its stored form.

    Raises:
        ConfigurationError: Unknown key or value out of range
    """
    known = {f.name: f for f in fields(Settings)}
    if key not in known:
        raise ConfigurationError(f"Unknown setting: {key}")

    try:
        parsed = _parse_value(known[key].type, value)
    except (TypeError, ValueError):
        raise ConfigurationError(f"Invalid value for {key}: {value!r}")

    ranges = {
        "price_sensitivity": (1, 10),
        "planning_hour": (0, 23),
        "weather_location_lat": (-90, 90),
        "weather_location_lon": (-180, 180),
        "dhw_min_temp": (30, 60),
        "dhw_target_temp": (30, 60),
        "best_price_window_hours": (1, 48),
    }
    if key in ranges:
        low, high = ranges[key]
        if not low <= parsed <= high:
            raise ConfigurationError(f"{key} must be between {low} and {high}, got {parsed}")

    if isinstance(parsed, bool):
        return "true" if parsed else "false"
    return str(parsed)


def validate_settings_update(current: Settings, updates: dict) -> dict[str, str]:
    """Validate a batch of settings against the account's current values.

    Each value is checked on its own, then the merged result must keep the
    hot water minimum at or below the hot water target.

    Raises:
        ConfigurationError: Any value is invalid or the merged settings conflict
    """
    validated = {key: validate_setting(key, value) for key, value in updates.items()}

    merged = Settings.from_dict({**asdict(current), **validated})
    if merged.dhw_min_temp > merged.dhw_target_temp:
        raise ConfigurationError(
            f"dhw_min_temp ({merged.dhw_min_temp}) must not exceed dhw_target_temp ({merged.dhw_target_temp})"
        )
    return validated

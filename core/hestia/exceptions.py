"""
Hestia Custom Exceptions

Simple exception hierarchy for error handling.
Collaborator clients raise these; core functions turn them into result values.
"""


class HestiaError(Exception):
    """Base exception for Hestia."""

    pass


class ConfigurationError(HestiaError):
    """Configuration or a settings value is invalid."""

    pass


class PriceDataError(HestiaError):
    """Electricity price data is unavailable or invalid."""

    pass


class WeatherDataError(HestiaError):
    """Weather forecast is unavailable or invalid."""

    pass


class DeviceConnectionError(HestiaError):
    """Cannot reach the heat pump cloud API or the credential was rejected."""

    pass


class PlanningError(HestiaError):
    """Daily planning could not produce a schedule."""

    pass

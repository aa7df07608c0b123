"""Hestia price-proportional heat pump scheduling package."""

# Define public API
__all__ = [
    "AppConfig",
    "load_app_config",
    "Settings",
    "resolve_settings",
    "Store",
    "SchedulingOrchestrator",
    "run_for_all_accounts",
    "TickService",
    "plan_heating_offsets",
    "plan_dhw_temperatures",
]

# Import configuration and settings
from .config import AppConfig, load_app_config
from .settings import Settings, resolve_settings

# Import persistence
from .store import Store

# Import planning and control
from .planner import plan_dhw_temperatures, plan_heating_offsets
from .scheduler import SchedulingOrchestrator, run_for_all_accounts
from .tick_service import TickService

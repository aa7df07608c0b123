"""
Application configuration.

Loaded once at startup from, in order of precedence:
1. /data/options.json (add-on deployment)
2. config.yaml next to the project root (development)
3. Environment variables / .env
"""

from dataclasses import dataclass, fields
import json
import logging
import os
from typing import Optional

import yaml
from dotenv import load_dotenv

logger = logging.getLogger(__name__)

OPTIONS_PATH = "/data/options.json"
DEFAULT_CONFIG_YAML = os.path.join(os.path.dirname(__file__), "..", "..", "config.yaml")

# AppConfig field -> environment variable
ENV_VARS = {
    "database_url": "HESTIA_DATABASE_URL",
    "timezone": "HESTIA_TIMEZONE",
    "daikin_client_id": "DAIKIN_CLIENT_ID",
    "daikin_client_secret": "DAIKIN_CLIENT_SECRET",
    "cron_secret": "CRON_SECRET",
    "tick_interval_minutes": "HESTIA_TICK_INTERVAL_MINUTES",
    "scheduler_enabled": "HESTIA_SCHEDULER_ENABLED",
}


@dataclass
class AppConfig:
    """Process-wide configuration (per-account settings live in the store)."""

    database_url: str = "sqlite:///data/hestia.db"
    timezone: str = "Europe/Tallinn"
    daikin_client_id: str = ""
    daikin_client_secret: str = ""
    cron_secret: str = ""
    tick_interval_minutes: int = 60
    scheduler_enabled: bool = True

    @classmethod
    def from_dict(cls, data: dict) -> "AppConfig":
        known = {f.name: f for f in fields(cls)}
        kwargs = {}
        for key, value in data.items():
            if key not in known or value is None or value == "":
                continue
            if known[key].type in (bool, "bool"):
                kwargs[key] = value if isinstance(value, bool) else str(value).lower() in ("1", "true", "yes")
            elif known[key].type in (int, "int"):
                kwargs[key] = int(value)
            else:
                kwargs[key] = str(value)
        return cls(**kwargs)


def _load_options_json(path: str) -> dict:
    if not os.path.exists(path):
        return {}
    try:
        with open(path) as f:
            options = json.load(f)
        logger.debug(f"Loaded config from {path}")
        return options.get("hestia", options)
    except (OSError, ValueError) as e:
        logger.warning(f"Failed to load {path}: {e}")
        return {}


def _load_config_yaml(path: str) -> dict:
    if not os.path.exists(path):
        return {}
    try:
        with open(path) as f:
            config = yaml.safe_load(f) or {}
        logger.debug(f"Loaded config from {path}")
        return config.get("options", config)
    except (OSError, yaml.YAMLError) as e:
        logger.warning(f"Failed to load {path}: {e}")
        return {}


def _load_env() -> dict:
    load_dotenv()
    return {key: os.getenv(var) for key, var in ENV_VARS.items() if os.getenv(var)}


def load_app_config(
    options_path: str = OPTIONS_PATH,
    yaml_path: Optional[str] = DEFAULT_CONFIG_YAML,
) -> AppConfig:
    """Merge all configuration sources into an AppConfig.

    Later sources only fill keys the earlier ones left unset.
    """
    merged: dict = {}
    sources = [_load_options_json(options_path)]
    if yaml_path:
        sources.append(_load_config_yaml(yaml_path))
    sources.append(_load_env())

    for source in sources:
        for key, value in source.items():
            if merged.get(key) in (None, ""):
                merged[key] = value

    config = AppConfig.from_dict(merged)
    if not config.daikin_client_id or not config.daikin_client_secret:
        logger.warning("Daikin client credentials not configured, token refresh disabled")
    return config

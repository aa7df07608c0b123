"""
Daikin Onecta API Client

Minimal client for reading the heat pump state and writing the leaving water
offset and hot water tank target.
"""

from datetime import datetime, timedelta, timezone
import logging
from typing import Any, Optional

import requests

from .exceptions import DeviceConnectionError
from .models import AccountCredential, ConsumptionBlock, ConsumptionData, DeviceState, DHWState

logger = logging.getLogger(__name__)

DAIKIN_API_URL = "https://api.onecta.daikineurope.com/v1"
DAIKIN_TOKEN_URL = "https://idp.onecta.daikineurope.com/v1/oidc/token"

# Hot water tank target range accepted by the device
DHW_MIN_TEMP = 30
DHW_MAX_TEMP = 60

CLIMATE_CONTROL = "climateControl"
DHW_TANK = "domesticHotWaterTank"

# Daily consumption arrays hold 2-hour blocks, yesterday first
BLOCK_HOURS = 2
BLOCKS_PER_DAY = 24 // BLOCK_HOURS


def _find_point(device: dict, point_type: str) -> Optional[dict]:
    for point in device.get("managementPoints", []):
        if point.get("managementPointType") == point_type:
            return point
    return None


def _value(node: Any, *path: str) -> Any:
    """Walk nested {"value": ...} dictionaries, None if any key is missing."""
    for key in path:
        if not isinstance(node, dict):
            return None
        node = node.get(key)
    return node


def _heating_setpoints(point: dict) -> dict:
    return _value(point, "temperatureControl", "value", "operationModes", "heating", "setpoints") or {}


def _daily_array(point: Optional[dict], mode: str) -> list:
    values = _value(point, "consumptionData", "value", "electrical", mode, "d")
    return values if isinstance(values, list) else []


def _today_kwh(point: Optional[dict], mode: str) -> Optional[float]:
    """Sum today's 2-hour consumption blocks (second half of the daily array)."""
    blocks = _daily_array(point, mode)
    today = [b for b in blocks[len(blocks) // 2:] if b is not None]
    return float(sum(today)) if today else None


def _kwh_at(values: list, index: int) -> Optional[float]:
    if index >= len(values) or values[index] is None:
        return None
    return float(values[index])


def _consumption_blocks(climate: Optional[dict], dhw_point: Optional[dict]) -> list[ConsumptionBlock]:
    """2-hour blocks for yesterday and today; blocks without any data are skipped."""
    heating = _daily_array(climate, "heating")
    cooling = _daily_array(climate, "cooling")
    dhw = _daily_array(dhw_point, "heating")

    blocks = []
    for i in range(min(max(len(heating), len(cooling), len(dhw)), 2 * BLOCKS_PER_DAY)):
        block = ConsumptionBlock(
            day_offset=-1 if i < BLOCKS_PER_DAY else 0,
            start_hour=(i % BLOCKS_PER_DAY) * BLOCK_HOURS,
            heating_kwh=_kwh_at(heating, i),
            cooling_kwh=_kwh_at(cooling, i),
            dhw_kwh=_kwh_at(dhw, i),
        )
        if block.heating_kwh is None and block.cooling_kwh is None and block.dhw_kwh is None:
            continue
        blocks.append(block)
    return blocks


def parse_device_state(device: dict) -> DeviceState:
    """Build a DeviceState from a gateway device document."""
    climate = _find_point(device, CLIMATE_CONTROL)
    dhw_point = _find_point(device, DHW_TANK)

    state = DeviceState(device_id=device.get("id", ""))

    if climate is not None:
        state.climate_control_id = climate.get("embeddedId")
        state.power_on = _value(climate, "onOffMode", "value") == "on"
        state.mode = _value(climate, "operationMode", "value")
        state.water_temp = _value(climate, "sensoryData", "value", "leavingWaterTemperature", "value")
        state.outdoor_temp = _value(climate, "sensoryData", "value", "outdoorTemperature", "value")

        setpoints = _heating_setpoints(climate)
        state.is_water_based = "leavingWaterOffset" in setpoints
        state.target_offset = _value(setpoints, "leavingWaterOffset", "value")

    if dhw_point is not None:
        state.dhw_control_id = dhw_point.get("embeddedId")
        state.dhw = DHWState(
            tank_temp=_value(dhw_point, "sensoryData", "value", "tankTemperature", "value"),
            target_temp=_value(_heating_setpoints(dhw_point), "domesticHotWaterTemperature", "value"),
            power_on=_value(dhw_point, "onOffMode", "value") == "on",
        )

    state.consumption = ConsumptionData(
        heating_today_kwh=_today_kwh(climate, "heating"),
        cooling_today_kwh=_today_kwh(climate, "cooling"),
        dhw_today_kwh=_today_kwh(dhw_point, "heating"),
        blocks=_consumption_blocks(climate, dhw_point),
    )
    return state


class DaikinClient:
    """Daikin Onecta cloud API client."""

    def __init__(
        self,
        base_url: str = DAIKIN_API_URL,
        client_id: str = "",
        client_secret: str = "",
        token_url: str = DAIKIN_TOKEN_URL,
        timeout: int = 10,
    ):
        self.base_url = base_url.rstrip("/")
        self.client_id = client_id
        self.client_secret = client_secret
        self.token_url = token_url
        self.session = requests.Session()
        self.timeout = timeout

    def _request(self, token: str, method: str, endpoint: str, body: Optional[dict] = None) -> Any:
        url = f"{self.base_url}{endpoint}"
        headers = {"Authorization": f"Bearer {token}", "Content-Type": "application/json"}
        try:
            response = self.session.request(method, url, headers=headers, json=body, timeout=self.timeout)
            response.raise_for_status()
        except requests.exceptions.HTTPError as e:
            raise DeviceConnectionError(f"Daikin API error {e.response.status_code}: {e.response.text}")
        except requests.exceptions.RequestException as e:
            raise DeviceConnectionError(f"Daikin API request failed: {e}")

        # PATCH responses are usually empty
        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as e:
            raise DeviceConnectionError(f"Invalid JSON from Daikin API: {e}")

    def get_devices(self, token: str) -> list[dict]:
        return self._request(token, "GET", "/gateway-devices")

    def get_device(self, token: str, device_id: str) -> dict:
        return self._request(token, "GET", f"/gateway-devices/{device_id}")

    def get_state(self, token: str) -> Optional[DeviceState]:
        """State of the account's first device, None if it has no devices.

        Raises:
            DeviceConnectionError: If the API cannot be reached
        """
        devices = self.get_devices(token)
        if not devices:
            return None
        return parse_device_state(self.get_device(token, devices[0]["id"]))

    def _patch_setpoint(self, token: str, device_id: str, point_id: str, setpoint: str, value: float) -> None:
        body = {
            "value": {
                "operationModes": {
                    "heating": {"setpoints": {setpoint: {"value": value}}}
                }
            }
        }
        endpoint = f"/gateway-devices/{device_id}/management-points/{point_id}/characteristics/temperatureControl"
        self._request(token, "PATCH", endpoint, body)

    def set_heating_offset(self, token: str, state: DeviceState, value: float) -> None:
        """Write the leaving water offset (room temperature on air-based units)."""
        if not state.climate_control_id:
            raise DeviceConnectionError(f"Device {state.device_id} has no climate control point")
        setpoint = "leavingWaterOffset" if state.is_water_based else "roomTemperature"
        self._patch_setpoint(token, state.device_id, state.climate_control_id, setpoint, value)
        logger.info(f"Set {setpoint} to {value} on {state.device_id}")

    def set_dhw_temperature(self, token: str, state: DeviceState, value: float) -> None:
        """Write the hot water tank target, clamped to the device range."""
        if not state.dhw_control_id:
            raise DeviceConnectionError(f"Device {state.device_id} has no hot water tank")
        clamped = max(DHW_MIN_TEMP, min(DHW_MAX_TEMP, value))
        self._patch_setpoint(
            token, state.device_id, state.dhw_control_id, "domesticHotWaterTemperature", clamped
        )
        logger.info(f"Set hot water target to {clamped}°C on {state.device_id}")

    def refresh_access_token(self, credential: AccountCredential, now: datetime) -> AccountCredential:
        """Exchange the refresh token for a new access token.

        Raises:
            DeviceConnectionError: If the token endpoint rejects the request
        """
        if not self.client_id or not self.client_secret:
            raise DeviceConnectionError("Daikin client credentials not configured")

        try:
            response = self.session.post(
                self.token_url,
                data={"grant_type": "refresh_token", "refresh_token": credential.refresh_token},
                auth=(self.client_id, self.client_secret),
                timeout=self.timeout,
            )
            response.raise_for_status()
            data = response.json()
        except requests.exceptions.RequestException as e:
            raise DeviceConnectionError(f"Token refresh failed: {e}")
        except ValueError as e:
            raise DeviceConnectionError(f"Invalid token response: {e}")

        return AccountCredential(
            account_id=credential.account_id,
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token") or credential.refresh_token,
            expires_at=now.astimezone(timezone.utc) + timedelta(seconds=int(data["expires_in"])),
        )

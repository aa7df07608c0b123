"""
Hestia API Endpoints
"""

import asyncio
from dataclasses import asdict
from datetime import date
import os
import sys
from typing import Optional, Union

from fastapi import APIRouter, Header, HTTPException, Query
from loguru import logger
from pydantic import BaseModel

# Add core to Python path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from core.hestia.exceptions import ConfigurationError
from core.hestia.scheduler import run_for_all_accounts
from core.hestia.settings import validate_settings_update

router = APIRouter()

# Set by app.py during startup
orchestrator = None
app_config = None
tick_service = None


class UpdateSettingsRequest(BaseModel):
    """Request body for updating account settings."""
    settings: dict[str, Union[bool, int, float, str]]


def _require_orchestrator():
    if orchestrator is None:
        raise HTTPException(status_code=503, detail="Scheduler not initialized")
    return orchestrator


def _check_cron_secret(secret: Optional[str]):
    expected = app_config.cron_secret if app_config else ""
    if expected and secret != expected:
        raise HTTPException(status_code=401, detail="Invalid cron secret")


@router.get("/api/health")
async def health_check():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "app": "Hestia",
        "version": "0.1.0",
        "scheduler_initialized": orchestrator is not None,
        "tick_service_running": bool(tick_service and tick_service.running),
    }


@router.api_route("/api/cron", methods=["GET", "POST"])
async def run_cron(x_cron_secret: Optional[str] = Header(default=None)):
    """Run the scheduler for every account with stored credentials."""
    _check_cron_secret(x_cron_secret)
    current = _require_orchestrator()

    logger.info("Cron trigger received")
    result = await asyncio.to_thread(run_for_all_accounts, current)
    return asdict(result)


@router.get("/api/accounts/{account_id}/schedule")
async def get_schedule(account_id: str, day: Optional[str] = Query(default=None, alias="date")):
    """Stored heating and hot water plan for a UTC date (YYYY-MM-DD)."""
    current = _require_orchestrator()

    schedule_date = None
    if day:
        try:
            schedule_date = date.fromisoformat(day)
        except ValueError:
            raise HTTPException(status_code=400, detail=f"Invalid date: {day}")

    schedule = current.get_schedule_for_date(account_id, schedule_date)
    return {
        "account_id": account_id,
        "date": schedule["date"],
        "heating": [asdict(h) for h in schedule["heating"]],
        "dhw": [asdict(h) for h in schedule["dhw"]],
    }


@router.get("/api/accounts/{account_id}/preview")
async def preview_action(account_id: str):
    """Heating decision the next tick would take."""
    current = _require_orchestrator()

    decision = await asyncio.to_thread(current.preview_control_action, account_id)
    if decision is None:
        return {"account_id": account_id, "decision": None, "message": "Current price unknown"}
    return {"account_id": account_id, "decision": asdict(decision)}


@router.post("/api/accounts/{account_id}/plan")
async def force_plan(account_id: str):
    """Re-plan the account now."""
    current = _require_orchestrator()

    result = await asyncio.to_thread(current.force_planning, account_id)
    if not result.success:
        logger.warning(f"Manual planning failed for {account_id}: {result.message}")
    return asdict(result)


@router.get("/api/accounts/{account_id}/settings")
async def get_settings(account_id: str):
    """Resolved settings for an account."""
    current = _require_orchestrator()
    return {"account_id": account_id, "settings": asdict(current.store.get_settings(account_id))}


@router.put("/api/accounts/{account_id}/settings")
async def update_settings(account_id: str, request: UpdateSettingsRequest):
    """Validate and store settings.

    All values are validated before anything is written.
    """
    current = _require_orchestrator()

    try:
        validated = validate_settings_update(current.store.get_settings(account_id), request.settings)
    except ConfigurationError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e

    for key, value in validated.items():
        current.store.update_setting(account_id, key, value)
    logger.info(f"Updated settings for {account_id}: {sorted(validated)}")

    return {"account_id": account_id, "settings": asdict(current.store.get_settings(account_id))}


@router.get("/api/accounts/{account_id}/control-log")
async def get_control_log(account_id: str, limit: int = Query(default=50, ge=1, le=500)):
    """Recent device writes, newest first."""
    current = _require_orchestrator()
    entries = current.store.get_recent_control_logs(account_id, limit=limit)
    return {"account_id": account_id, "entries": [asdict(e) for e in entries]}


@router.get("/api/accounts/{account_id}/history")
async def get_history(account_id: str, hours: int = Query(default=24, ge=1, le=168)):
    """Device snapshots from the last hours, oldest first."""
    current = _require_orchestrator()
    snapshots = current.get_device_history(account_id, hours=hours)
    return {"account_id": account_id, "hours": hours, "states": [asdict(s) for s in snapshots]}


@router.get("/api/accounts/{account_id}/consumption")
async def get_consumption(account_id: str, days: int = Query(default=7, ge=1, le=90)):
    """Energy use per 2-hour block and per day."""
    current = _require_orchestrator()
    consumption = current.get_consumption(account_id, days=days)
    return {
        "account_id": account_id,
        "since": consumption["since"],
        "hourly": [asdict(c) for c in consumption["hourly"]],
        "daily": [asdict(c) for c in consumption["daily"]],
    }


@router.get("/api/accounts/{account_id}/debug-schedule")
async def debug_schedule(account_id: str):
    """Freshly calculated plan next to the stored one."""
    current = _require_orchestrator()
    try:
        return await asyncio.to_thread(current.debug_schedule, account_id)
    except Exception as e:
        logger.error(f"Debug schedule failed for {account_id}: {e}")
        raise HTTPException(status_code=500, detail=str(e)) from e

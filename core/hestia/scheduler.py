"""
Scheduling Orchestrator

Runs once per hour per account:

1. Re-plans when the local planning hour is reached or the last plan failed
2. Reads the current price, the account's token and the device state
3. Applies the planned value for the current UTC hour, or falls back to the
   reactive rules when there is no plan entry
4. Writes the device only when the target differs from what it reports

Plans are keyed by UTC calendar slot, the planning trigger by local wall
clock. The two hours are computed by separate named functions.
"""

from collections import defaultdict
from datetime import date, datetime, timedelta, timezone
import logging
from typing import Callable, Optional
from zoneinfo import ZoneInfo

from .exceptions import DeviceConnectionError, HestiaError, PlanningError, PriceDataError
from .fallback import decide_fallback_dhw, decide_fallback_heating
from .models import (
    AccountTickResult,
    ControlAction,
    ControlDecision,
    ControlLogEntry,
    DeviceSnapshot,
    FanOutResult,
    HourlyConsumption,
    PlanningResult,
    PricePoint,
    TickResult,
)
from .planner import plan_dhw_temperatures, plan_heating_offsets
from .price_normalizer import (
    MIN_PLANNING_HOURS,
    aggregate_hourly_prices,
    compute_price_statistics,
    eur_mwh_to_cent_kwh,
    has_enough_prices,
)
from .settings import Settings

logger = logging.getLogger(__name__)

# Planned values at or beyond these are reported as boost / reduce
BOOST_OFFSET = 5
REDUCE_OFFSET = -5
DHW_BOOST_TEMP = 50
DHW_REDUCE_TEMP = 35

SCHEDULE_RETENTION_DAYS = 7

# Refresh tokens that expire sooner than this
TOKEN_REFRESH_MARGIN = timedelta(minutes=5)

DEBUG_TOP_HOURS = 5


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def local_trigger_hour(now: datetime, tz: str) -> int:
    """Wall-clock hour in the configured timezone, compared with planning_hour."""
    return now.astimezone(ZoneInfo(tz)).hour


def schedule_slot_hour_utc(now: datetime) -> int:
    """UTC hour used to look up the plan entry for the current hour."""
    return now.astimezone(timezone.utc).hour


def heating_action(offset: float) -> str:
    if offset >= BOOST_OFFSET:
        return ControlAction.BOOST
    if offset <= REDUCE_OFFSET:
        return ControlAction.REDUCE
    return ControlAction.NORMAL


def dhw_action(temperature: float) -> str:
    if temperature >= DHW_BOOST_TEMP:
        return ControlAction.BOOST
    if temperature <= DHW_REDUCE_TEMP:
        return ControlAction.REDUCE
    return ControlAction.NORMAL


class SchedulingOrchestrator:
    """Planning and hourly control for one account at a time.

    Holds no per-account state between calls; everything is read from the
    store on each run.
    """

    def __init__(
        self,
        store,
        price_service,
        weather_service,
        device_client,
        tz: str = "Europe/Tallinn",
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.store = store
        self.price_service = price_service
        self.weather_service = weather_service
        self.device_client = device_client
        self.tz = tz
        self.clock = clock

    def _now(self) -> datetime:
        now = self.clock()
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        return now.astimezone(timezone.utc)

    # Planning

    def _planning_prices(self, now: datetime) -> tuple[list[PricePoint], list[PricePoint]]:
        """Remaining hours of today and all known hours of tomorrow."""
        hour_start = now.replace(minute=0, second=0, microsecond=0)
        today_prices = self.price_service.get_today_prices(now)
        remaining = [p for p in today_prices if p.timestamp >= hour_start]
        tomorrow_prices = self.price_service.get_tomorrow_prices(now)
        return remaining, tomorrow_prices

    def _planning_weather(self, now: datetime, settings: Settings) -> list:
        """Forecast for local today and tomorrow; empty when unavailable."""
        local_today = now.astimezone(ZoneInfo(self.tz)).date()
        try:
            return self.weather_service.get_weather_for_days(
                [local_today, local_today + timedelta(days=1)],
                settings.weather_location_lat,
                settings.weather_location_lon,
            )
        except Exception as e:
            logger.warning(f"Weather unavailable, planning without cold adjustment: {e}", exc_info=True)
            return []

    def execute_daily_planning(self, account_id: str, settings: Optional[Settings] = None) -> PlanningResult:
        """Plan every hour from now to the end of the known prices.

        Args:
            account_id: Account to plan for
            settings: Resolved settings, read from the store when omitted

        Returns:
            PlanningResult; failures are reported, not raised
        """
        now = self._now()
        today = now.date()
        tomorrow = today + timedelta(days=1)

        try:
            settings = settings or self.store.get_settings(account_id)
            remaining, tomorrow_prices = self._planning_prices(now)
            all_prices = remaining + tomorrow_prices

            hour_prices = aggregate_hourly_prices(all_prices)
            if not has_enough_prices(hour_prices):
                raise PlanningError(
                    f"Not enough price data ({len(hour_prices)} hours), "
                    f"need at least {MIN_PLANNING_HOURS} hours"
                )

            weather = self._planning_weather(now, settings)
            heating_hours = plan_heating_offsets(all_prices, weather, settings)
            dhw_hours = plan_dhw_temperatures(all_prices, settings) if settings.dhw_enabled else []

            heating_by_date = defaultdict(list)
            for h in heating_hours:
                heating_by_date[h.date].append(h)
            dhw_by_date = defaultdict(list)
            for h in dhw_hours:
                dhw_by_date[h.date].append(h)

            for day, hours in heating_by_date.items():
                self.store.save_heating_schedule(account_id, day, hours)
            for day, hours in dhw_by_date.items():
                self.store.save_dhw_schedule(account_id, day, hours)

            self.store.delete_schedules_before(account_id, today - timedelta(days=SCHEDULE_RETENTION_DAYS))
            self.weather_service.cleanup(now)
        except HestiaError as e:
            logger.warning(f"Planning failed for account {account_id}: {e}")
            return PlanningResult(success=False, message=str(e), date=today.isoformat())
        except Exception as e:
            logger.error(f"Unexpected planning error for account {account_id}: {e}", exc_info=True)
            return PlanningResult(
                success=False,
                message=f"Planning error: {str(e) or type(e).__name__}",
                date=today.isoformat(),
            )

        offsets = [h.planned_offset for h in heating_hours]
        avg_offset = sum(offsets) / len(offsets) if offsets else 0.0
        boost_hours = sum(1 for o in offsets if o >= BOOST_OFFSET)
        reduce_hours = sum(1 for o in offsets if o <= REDUCE_OFFSET)

        message = (
            f"Plan created: today {len(heating_by_date.get(today, []))}h + "
            f"tomorrow {len(heating_by_date.get(tomorrow, []))}h. "
            f"Heating: average offset {avg_offset:.1f}, boost {boost_hours}h, reduce {reduce_hours}h."
        )
        if dhw_hours:
            message += f" Hot water: {len(dhw_hours)}h planned."

        logger.info(f"Account {account_id}: {message}")
        return PlanningResult(
            success=True,
            message=message,
            date=f"{today.isoformat()}+{tomorrow.isoformat()}",
            heating_hours=heating_hours,
            dhw_hours=dhw_hours,
        )

    def force_planning(self, account_id: str) -> PlanningResult:
        """Re-plan now, regardless of the planning hour."""
        return self.execute_daily_planning(account_id)

    # Control decisions

    def _known_prices(self, now: datetime) -> list[PricePoint]:
        try:
            return self.price_service.get_today_prices(now) + self.price_service.get_tomorrow_prices(now)
        except PriceDataError as e:
            logger.warning(f"Fallback running without full price list: {e}")
            return []
        except Exception as e:
            logger.error(f"Unexpected error reading prices for the fallback: {e}", exc_info=True)
            return []

    def _heating_decision(
        self,
        account_id: str,
        settings: Settings,
        now: datetime,
        price: float,
        water_temp: Optional[float],
        mark_applied: bool,
    ) -> ControlDecision:
        today = now.date()
        hour = schedule_slot_hour_utc(now)

        planned = self.store.get_planned_offset(account_id, today, hour)
        if planned is not None:
            if mark_applied:
                self.store.mark_heating_applied(account_id, today, hour)
            return ControlDecision(
                action=heating_action(planned),
                reason=f"Planned offset {planned} (price {price:.1f} c/kWh)",
                target_temperature=planned,
                current_price=price,
            )

        hour_start = now.replace(minute=0, second=0, microsecond=0)
        return decide_fallback_heating(price, hour_start, self._known_prices(now), settings, water_temp)

    def _dhw_decision(
        self,
        account_id: str,
        settings: Settings,
        now: datetime,
        price: float,
        tank_temp: Optional[float],
    ) -> ControlDecision:
        today = now.date()
        hour = schedule_slot_hour_utc(now)

        planned = self.store.get_planned_dhw_temp(account_id, today, hour)
        if planned is not None:
            self.store.mark_dhw_applied(account_id, today, hour)
            return ControlDecision(
                action=dhw_action(planned),
                reason=f"Planned temperature {planned}°C",
                target_temperature=planned,
                current_price=price,
            )

        return decide_fallback_dhw(price, settings, tank_temp)

    def _get_access_token(self, account_id: str, now: datetime) -> Optional[str]:
        credential = self.store.get_credential(account_id)
        if credential is None or not credential.access_token:
            return None

        if credential.is_valid(now + TOKEN_REFRESH_MARGIN):
            return credential.access_token

        try:
            refreshed = self.device_client.refresh_access_token(credential, now)
        except DeviceConnectionError as e:
            logger.warning(f"Token refresh failed for account {account_id}: {e}")
            return None

        self.store.save_credential(refreshed)
        logger.info(f"Refreshed access token for account {account_id}")
        return refreshed.access_token

    def preview_control_action(self, account_id: str) -> Optional[ControlDecision]:
        """Heating decision the next tick would take, without touching the device.

        Returns None when the current price is unknown.
        """
        now = self._now()
        price_eur_mwh = self.price_service.get_current_hour_price(now)
        if price_eur_mwh is None:
            return None

        settings = self.store.get_settings(account_id)
        return self._heating_decision(
            account_id, settings, now, eur_mwh_to_cent_kwh(price_eur_mwh), None, mark_applied=False
        )

    def _save_consumption(self, account_id: str, now: datetime, blocks) -> None:
        """Store the device's 2-hour blocks under local dates."""
        if not blocks:
            return
        local_today = now.astimezone(ZoneInfo(self.tz)).date()
        self.store.save_hourly_consumption(account_id, [
            HourlyConsumption(
                date=local_today + timedelta(days=b.day_offset),
                hour=b.start_hour,
                heating_kwh=b.heating_kwh,
                cooling_kwh=b.cooling_kwh,
                dhw_kwh=b.dhw_kwh,
            )
            for b in blocks
        ])

    # Tick

    def run_tick(self, account_id: str) -> TickResult:
        """Run one control cycle for an account. Never raises."""
        try:
            return self._run_tick(account_id)
        except Exception as e:
            logger.error(f"Tick failed for account {account_id}: {e}", exc_info=True)
            return TickResult(success=False, message=str(e) or type(e).__name__)

    def _run_tick(self, account_id: str) -> TickResult:
        now = self._now()
        settings = self.store.get_settings(account_id)

        planning_result = None
        if local_trigger_hour(now, self.tz) == settings.planning_hour or settings.planning_needs_retry:
            planning_result = self.execute_daily_planning(account_id, settings)
            self.store.set_user_setting(
                account_id, "planning_needs_retry", "false" if planning_result.success else "true"
            )
            if not planning_result.success:
                logger.warning(f"Planning failed for account {account_id}, will retry next tick")

        price_eur_mwh = self.price_service.get_current_hour_price(now)
        if price_eur_mwh is None:
            return TickResult(
                success=False,
                message="Could not get current electricity price",
                planning_result=planning_result,
            )
        price = eur_mwh_to_cent_kwh(price_eur_mwh)

        token = self._get_access_token(account_id, now)
        if token is None:
            return TickResult(
                success=False,
                message="Not connected to Daikin (no valid access token)",
                planning_result=planning_result,
            )

        state = self.device_client.get_state(token)
        if state is None:
            return TickResult(success=False, message="No Daikin devices found", planning_result=planning_result)
        if not state.is_water_based:
            return TickResult(
                success=False,
                message="Only water-based systems with leaving water offset control are supported",
                planning_result=planning_result,
            )

        decision = self._heating_decision(account_id, settings, now, price, state.water_temp, mark_applied=True)

        dhw_decision = None
        if settings.dhw_enabled and state.dhw_control_id:
            tank_temp = state.dhw.tank_temp if state.dhw else None
            dhw_decision = self._dhw_decision(account_id, settings, now, price, tank_temp)

        snapshot = DeviceSnapshot(
            timestamp=now,
            device_id=state.device_id,
            water_temp=state.water_temp,
            outdoor_temp=state.outdoor_temp,
            target_offset=state.target_offset,
            mode=state.mode,
            power_on=state.power_on,
            price_cent_kwh=price,
            action_taken=decision.action,
            dhw_tank_temp=state.dhw.tank_temp if state.dhw else None,
            dhw_target_temp=state.dhw.target_temp if state.dhw else None,
            dhw_action=dhw_decision.action if dhw_decision else None,
            heating_kwh=state.consumption.heating_today_kwh,
            cooling_kwh=state.consumption.cooling_today_kwh,
            dhw_kwh=state.consumption.dhw_today_kwh,
        )
        self.store.save_device_snapshot(account_id, snapshot)
        self._save_consumption(account_id, now, state.consumption.blocks)

        messages = []
        if state.climate_control_id and state.target_offset != decision.target_temperature:
            self.device_client.set_heating_offset(token, state, decision.target_temperature)
            self.store.log_control_action(account_id, ControlLogEntry(
                timestamp=now,
                action=decision.action,
                reason=decision.reason,
                price_eur_mwh=price_eur_mwh,
                old_target_temp=state.target_offset,
                new_target_temp=decision.target_temperature,
            ))
            messages.append(
                f"Heating: offset {state.target_offset} -> {decision.target_temperature} ({decision.action})"
            )
        else:
            messages.append(f"Heating: no change (offset {decision.target_temperature})")

        if dhw_decision is not None:
            current_target = state.dhw.target_temp if state.dhw else None
            if current_target != dhw_decision.target_temperature:
                self.device_client.set_dhw_temperature(token, state, dhw_decision.target_temperature)
                self.store.log_control_action(account_id, ControlLogEntry(
                    timestamp=now,
                    action=f"dhw_{dhw_decision.action}",
                    reason=dhw_decision.reason,
                    price_eur_mwh=price_eur_mwh,
                    old_target_temp=current_target,
                    new_target_temp=dhw_decision.target_temperature,
                ))
                messages.append(
                    f"Hot water: target {current_target}°C -> "
                    f"{dhw_decision.target_temperature}°C ({dhw_decision.action})"
                )
            else:
                messages.append(f"Hot water: no change (target {dhw_decision.target_temperature}°C)")

        return TickResult(
            success=True,
            message="; ".join(messages),
            decision=decision,
            dhw_decision=dhw_decision,
            snapshot=snapshot,
            planning_result=planning_result,
        )

    # Inspection

    def get_schedule_for_date(self, account_id: str, day: Optional[date] = None) -> dict:
        """Stored heating and hot water plan for a UTC date (today by default)."""
        day = day or self._now().date()
        return {
            "date": day.isoformat(),
            "heating": self.store.get_heating_schedule(account_id, day),
            "dhw": self.store.get_dhw_schedule(account_id, day),
        }

    def get_device_history(self, account_id: str, hours: int = 24) -> list:
        """Device snapshots from the last hours, oldest first."""
        return self.store.get_device_state_history(account_id, self._now() - timedelta(hours=hours))

    def get_consumption(self, account_id: str, days: int = 7) -> dict:
        """Stored energy use for the last days, as 2-hour blocks and daily totals."""
        since = self._now().astimezone(ZoneInfo(self.tz)).date() - timedelta(days=days)
        return {
            "since": since.isoformat(),
            "hourly": self.store.get_hourly_consumption(account_id, since),
            "daily": self.store.get_daily_consumption(account_id, since),
        }

    def debug_schedule(self, account_id: str) -> dict:
        """Compare a freshly calculated plan with the stored one.

        Nothing is persisted.
        """
        now = self._now()
        today = now.date()
        tomorrow = today + timedelta(days=1)
        settings = self.store.get_settings(account_id)

        remaining, tomorrow_prices = self._planning_prices(now)
        all_prices = remaining + tomorrow_prices
        weather = self._planning_weather(now, settings)
        calculated = plan_heating_offsets(all_prices, weather, settings)

        hour_prices = aggregate_hourly_prices(all_prices)
        price_stats = None
        if hour_prices:
            stats = compute_price_statistics(hour_prices)
            price_stats = {
                "total_hours": len(hour_prices),
                "remaining_today_hours": len(remaining),
                "tomorrow_hours": len(tomorrow_prices),
                "min_price": round(stats.min_price, 2),
                "max_price": round(stats.max_price, 2),
                "median_price": round(stats.median, 2),
                "price_spread": round(stats.spread, 2),
                "half_spread": round(stats.half_spread, 2),
            }

        def row(h):
            return {
                "date": h.date.isoformat(),
                "hour": h.hour,
                "price": round(h.price_cent_kwh, 2),
                "offset": h.planned_offset,
                "reason": h.reason,
            }

        by_price = sorted(calculated, key=lambda h: h.price_cent_kwh)
        return {
            "debug": {
                "current_time": now.isoformat(),
                "today": today.isoformat(),
                "tomorrow": tomorrow.isoformat(),
                "local_hour": local_trigger_hour(now, self.tz),
                "utc_hour": schedule_slot_hour_utc(now),
                "price_sensitivity": settings.price_sensitivity,
                "cold_weather_threshold": settings.cold_weather_threshold,
            },
            "price_stats": price_stats,
            "weather_hours": len(weather),
            "calculated": {
                "total": len(calculated),
                "cheapest": [row(h) for h in by_price[:DEBUG_TOP_HOURS]],
                "most_expensive": [row(h) for h in by_price[::-1][:DEBUG_TOP_HOURS]],
                "all_by_hour": [row(h) for h in calculated],
            },
            "stored": {
                "today": [row(h) for h in self.store.get_heating_schedule(account_id, today)],
                "tomorrow": [row(h) for h in self.store.get_heating_schedule(account_id, tomorrow)],
            },
        }


def run_for_all_accounts(orchestrator: SchedulingOrchestrator) -> FanOutResult:
    """Run a tick for every account with stored credentials, one at a time.

    A failing account is recorded and does not stop the others.
    """
    accounts = orchestrator.store.get_accounts_with_credentials()
    logger.info(f"Running scheduler for {len(accounts)} account(s)")

    results = []
    for credential in accounts:
        account_id = credential.account_id
        try:
            result = orchestrator.run_tick(account_id)
            results.append(AccountTickResult(
                account_id=account_id,
                success=result.success,
                message=result.message,
                decision=result.decision,
            ))
        except Exception as e:
            logger.error(f"Scheduler error for account {account_id}: {e}", exc_info=True)
            results.append(AccountTickResult(account_id=account_id, success=False, message=str(e)))

    return FanOutResult(
        success=all(r.success for r in results),
        accounts_processed=len(results),
        results=results,
    )

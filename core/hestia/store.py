"""
Persistence

SQLAlchemy models and a small row store for settings, credentials, cached
prices and forecasts, per-account plans, device snapshots, energy use and the
control log.

Every method commits on its own; there is no cross-call transaction. Plan rows
are upserted on (account, date, hour) and an upsert always clears applied_at.
Timestamps are stored as naive UTC and returned timezone-aware.
"""

import logging
import os
from datetime import date, datetime, timezone
from typing import Optional

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Float,
    Integer,
    String,
    Text,
    UniqueConstraint,
    create_engine,
    delete,
    func,
    make_url,
    select,
    update,
)
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from .models import (
    AccountCredential,
    ControlLogEntry,
    DailyConsumption,
    DeviceSnapshot,
    HourlyConsumption,
    PlannedDHWHour,
    PlannedHeatingHour,
    PricePoint,
    WeatherPoint,
)
from .settings import USER_SPECIFIC_SETTINGS, Settings, is_user_specific, resolve_settings

logger = logging.getLogger(__name__)

Base = declarative_base()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _to_db(timestamp: datetime) -> datetime:
    """Naive UTC for storage."""
    if timestamp.tzinfo is None:
        return timestamp
    return timestamp.astimezone(timezone.utc).replace(tzinfo=None)


def _from_db(timestamp: Optional[datetime]) -> Optional[datetime]:
    if timestamp is None:
        return None
    return timestamp.replace(tzinfo=timezone.utc)


class GlobalSettingRow(Base):
    """Shared defaults (key/value)."""

    __tablename__ = "settings"

    key = Column(String, primary_key=True)
    value = Column(Text, nullable=False)
    updated_at = Column(DateTime, default=_utcnow)


class UserSettingRow(Base):
    """Per-account overrides (key/value)."""

    __tablename__ = "user_settings"
    __table_args__ = (UniqueConstraint("account_id", "key"),)

    id = Column(Integer, primary_key=True)
    account_id = Column(String, nullable=False, index=True)
    key = Column(String, nullable=False)
    value = Column(Text, nullable=False)
    updated_at = Column(DateTime, default=_utcnow)


class AccountTokenRow(Base):
    """Device API tokens, one row per account."""

    __tablename__ = "account_tokens"

    account_id = Column(String, primary_key=True)
    access_token = Column(Text, nullable=False)
    refresh_token = Column(Text, nullable=False)
    expires_at = Column(DateTime, nullable=False)
    updated_at = Column(DateTime, default=_utcnow)


class PriceRow(Base):
    """Cached day-ahead prices (shared by all accounts)."""

    __tablename__ = "prices"

    id = Column(Integer, primary_key=True)
    timestamp = Column(DateTime, nullable=False, unique=True, index=True)
    price_eur_mwh = Column(Float, nullable=False)


class WeatherRow(Base):
    """Cached hourly forecast."""

    __tablename__ = "weather_forecast"

    id = Column(Integer, primary_key=True)
    timestamp = Column(DateTime, nullable=False, unique=True, index=True)
    temperature = Column(Float, nullable=False)
    fetched_at = Column(DateTime, default=_utcnow)


class HeatingScheduleRow(Base):
    """Planned heating offset for one account and hour."""

    __tablename__ = "heating_schedule"
    __table_args__ = (UniqueConstraint("account_id", "date", "hour"),)

    id = Column(Integer, primary_key=True)
    account_id = Column(String, nullable=False, index=True)
    date = Column(String, nullable=False)  # YYYY-MM-DD (UTC)
    hour = Column(Integer, nullable=False)  # 0-23 (UTC)
    planned_offset = Column(Integer, nullable=False)
    outdoor_temp_forecast = Column(Float)
    price_cent_kwh = Column(Float, nullable=False)
    reason = Column(Text)
    created_at = Column(DateTime, default=_utcnow)
    applied_at = Column(DateTime)


class DHWScheduleRow(Base):
    """Planned hot water temperature for one account and hour."""

    __tablename__ = "dhw_schedule"
    __table_args__ = (UniqueConstraint("account_id", "date", "hour"),)

    id = Column(Integer, primary_key=True)
    account_id = Column(String, nullable=False, index=True)
    date = Column(String, nullable=False)
    hour = Column(Integer, nullable=False)
    planned_temp = Column(Integer, nullable=False)
    price_cent_kwh = Column(Float, nullable=False)
    reason = Column(Text)
    created_at = Column(DateTime, default=_utcnow)
    applied_at = Column(DateTime)


class DeviceStateRow(Base):
    """Device snapshot taken once per tick."""

    __tablename__ = "device_state"

    id = Column(Integer, primary_key=True)
    account_id = Column(String, nullable=False, index=True)
    timestamp = Column(DateTime, nullable=False, index=True)
    device_id = Column(String, nullable=False)
    water_temp = Column(Float)
    outdoor_temp = Column(Float)
    target_offset = Column(Float)
    mode = Column(String)
    power_on = Column(Boolean, default=False)
    price_cent_kwh = Column(Float)
    action_taken = Column(String)
    dhw_tank_temp = Column(Float)
    dhw_target_temp = Column(Float)
    dhw_action = Column(String)
    heating_kwh = Column(Float)
    cooling_kwh = Column(Float)
    dhw_kwh = Column(Float)


class EnergyConsumptionRow(Base):
    """Energy use per 2-hour block, keyed by local date and start hour."""

    __tablename__ = "energy_consumption"
    __table_args__ = (UniqueConstraint("account_id", "date", "hour"),)

    id = Column(Integer, primary_key=True)
    account_id = Column(String, nullable=False, index=True)
    date = Column(String, nullable=False)  # YYYY-MM-DD (local)
    hour = Column(Integer, nullable=False)
    heating_kwh = Column(Float)
    cooling_kwh = Column(Float)
    dhw_kwh = Column(Float)


class ControlLogRow(Base):
    """Append-only log of device writes."""

    __tablename__ = "control_log"

    id = Column(Integer, primary_key=True)
    account_id = Column(String, nullable=False, index=True)
    timestamp = Column(DateTime, nullable=False, index=True)
    action = Column(String, nullable=False)
    reason = Column(Text)
    price_eur_mwh = Column(Float)
    old_target_temp = Column(Float)
    new_target_temp = Column(Float)


class Store:
    """Row store backed by SQLAlchemy (SQLite)."""

    def __init__(self, database_url: str = "sqlite:///hestia.db"):
        """Open the database and create missing tables.

        Args:
            database_url: SQLAlchemy URL; "sqlite://" gives a private in-memory DB
        """
        engine_kwargs = {"connect_args": {"check_same_thread": False}}
        database = make_url(database_url).database
        if not database or database == ":memory:":
            engine_kwargs["poolclass"] = StaticPool
        elif os.path.dirname(database):
            os.makedirs(os.path.dirname(database), exist_ok=True)

        self.engine = create_engine(database_url, **engine_kwargs)
        Base.metadata.create_all(self.engine)
        self.Session = sessionmaker(bind=self.engine, expire_on_commit=False)
        logger.debug(f"Store opened at {database_url}")

    # Settings

    def get_global_settings(self) -> dict[str, str]:
        with self.Session() as session:
            rows = session.scalars(select(GlobalSettingRow)).all()
            return {row.key: row.value for row in rows}

    def set_global_setting(self, key: str, value: str) -> None:
        stmt = sqlite_insert(GlobalSettingRow).values(key=key, value=value, updated_at=_utcnow())
        stmt = stmt.on_conflict_do_update(
            index_elements=["key"],
            set_={"value": stmt.excluded.value, "updated_at": stmt.excluded.updated_at},
        )
        with self.Session.begin() as session:
            session.execute(stmt)

    def get_user_settings(self, account_id: str) -> dict[str, str]:
        with self.Session() as session:
            rows = session.scalars(
                select(UserSettingRow).where(UserSettingRow.account_id == account_id)
            ).all()
            return {row.key: row.value for row in rows}

    def set_user_setting(self, account_id: str, key: str, value: str) -> None:
        stmt = sqlite_insert(UserSettingRow).values(
            account_id=account_id, key=key, value=value, updated_at=_utcnow()
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["account_id", "key"],
            set_={"value": stmt.excluded.value, "updated_at": stmt.excluded.updated_at},
        )
        with self.Session.begin() as session:
            session.execute(stmt)

    def update_setting(self, account_id: str, key: str, value: str) -> None:
        """Write a setting to the account or the global tier, by key."""
        if is_user_specific(key):
            self.set_user_setting(account_id, key, value)
        else:
            self.set_global_setting(key, value)

    def initialize_user_settings(self, account_id: str) -> None:
        """Copy the global values of per-account keys to a new account.

        Existing account values are left alone.
        """
        global_settings = self.get_global_settings()
        with self.Session.begin() as session:
            for key in USER_SPECIFIC_SETTINGS:
                if key not in global_settings:
                    continue
                stmt = sqlite_insert(UserSettingRow).values(
                    account_id=account_id, key=key, value=global_settings[key], updated_at=_utcnow()
                ).on_conflict_do_nothing(index_elements=["account_id", "key"])
                session.execute(stmt)

    def get_settings(self, account_id: str) -> Settings:
        """Resolve settings for an account from both tiers."""
        return resolve_settings(self.get_global_settings(), self.get_user_settings(account_id))

    # Credentials

    def save_credential(self, credential: AccountCredential) -> None:
        values = {
            "account_id": credential.account_id,
            "access_token": credential.access_token,
            "refresh_token": credential.refresh_token,
            "expires_at": _to_db(credential.expires_at),
            "updated_at": _utcnow(),
        }
        stmt = sqlite_insert(AccountTokenRow).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=["account_id"],
            set_={k: v for k, v in values.items() if k != "account_id"},
        )
        with self.Session.begin() as session:
            session.execute(stmt)

    def get_credential(self, account_id: str) -> Optional[AccountCredential]:
        with self.Session() as session:
            row = session.get(AccountTokenRow, account_id)
            return self._credential_from_row(row) if row else None

    def delete_credential(self, account_id: str) -> None:
        with self.Session.begin() as session:
            session.execute(delete(AccountTokenRow).where(AccountTokenRow.account_id == account_id))

    def get_accounts_with_credentials(self) -> list[AccountCredential]:
        with self.Session() as session:
            rows = session.scalars(select(AccountTokenRow).order_by(AccountTokenRow.account_id)).all()
            return [self._credential_from_row(row) for row in rows]

    @staticmethod
    def _credential_from_row(row: AccountTokenRow) -> AccountCredential:
        return AccountCredential(
            account_id=row.account_id,
            access_token=row.access_token,
            refresh_token=row.refresh_token,
            expires_at=_from_db(row.expires_at),
        )

    # Prices

    def save_prices(self, prices: list[PricePoint]) -> None:
        with self.Session.begin() as session:
            for point in prices:
                stmt = sqlite_insert(PriceRow).values(
                    timestamp=_to_db(point.timestamp), price_eur_mwh=point.price_eur_mwh
                )
                stmt = stmt.on_conflict_do_update(
                    index_elements=["timestamp"],
                    set_={"price_eur_mwh": stmt.excluded.price_eur_mwh},
                )
                session.execute(stmt)

    def get_prices_for_range(self, start: datetime, end: datetime) -> list[PricePoint]:
        """Prices with start <= timestamp < end, ordered by time."""
        with self.Session() as session:
            rows = session.scalars(
                select(PriceRow)
                .where(PriceRow.timestamp >= _to_db(start), PriceRow.timestamp < _to_db(end))
                .order_by(PriceRow.timestamp)
            ).all()
            return [PricePoint(timestamp=_from_db(r.timestamp), price_eur_mwh=r.price_eur_mwh) for r in rows]

    # Weather

    def save_weather(self, points: list[WeatherPoint]) -> None:
        with self.Session.begin() as session:
            for point in points:
                stmt = sqlite_insert(WeatherRow).values(
                    timestamp=_to_db(point.timestamp), temperature=point.temperature, fetched_at=_utcnow()
                )
                stmt = stmt.on_conflict_do_update(
                    index_elements=["timestamp"],
                    set_={"temperature": stmt.excluded.temperature, "fetched_at": stmt.excluded.fetched_at},
                )
                session.execute(stmt)

    def get_weather_for_range(self, start: datetime, end: datetime) -> list[WeatherPoint]:
        with self.Session() as session:
            rows = session.scalars(
                select(WeatherRow)
                .where(WeatherRow.timestamp >= _to_db(start), WeatherRow.timestamp < _to_db(end))
                .order_by(WeatherRow.timestamp)
            ).all()
            return [WeatherPoint(timestamp=_from_db(r.timestamp), temperature=r.temperature) for r in rows]

    def delete_weather_before(self, cutoff: datetime) -> None:
        with self.Session.begin() as session:
            session.execute(delete(WeatherRow).where(WeatherRow.timestamp < _to_db(cutoff)))

    # Heating schedule

    def save_heating_schedule(self, account_id: str, day: date, hours: list[PlannedHeatingHour]) -> None:
        """Upsert one date's heating plan; re-planned hours lose their applied marker."""
        with self.Session.begin() as session:
            for h in hours:
                stmt = sqlite_insert(HeatingScheduleRow).values(
                    account_id=account_id,
                    date=day.isoformat(),
                    hour=h.hour,
                    planned_offset=h.planned_offset,
                    outdoor_temp_forecast=h.outdoor_temp_forecast,
                    price_cent_kwh=h.price_cent_kwh,
                    reason=h.reason,
                    created_at=_utcnow(),
                    applied_at=None,
                )
                stmt = stmt.on_conflict_do_update(
                    index_elements=["account_id", "date", "hour"],
                    set_={
                        "planned_offset": stmt.excluded.planned_offset,
                        "outdoor_temp_forecast": stmt.excluded.outdoor_temp_forecast,
                        "price_cent_kwh": stmt.excluded.price_cent_kwh,
                        "reason": stmt.excluded.reason,
                        "created_at": stmt.excluded.created_at,
                        "applied_at": None,
                    },
                )
                session.execute(stmt)

    def get_heating_schedule(self, account_id: str, day: date) -> list[PlannedHeatingHour]:
        with self.Session() as session:
            rows = session.scalars(
                select(HeatingScheduleRow)
                .where(HeatingScheduleRow.account_id == account_id, HeatingScheduleRow.date == day.isoformat())
                .order_by(HeatingScheduleRow.hour)
            ).all()
            return [
                PlannedHeatingHour(
                    date=date.fromisoformat(r.date),
                    hour=r.hour,
                    planned_offset=r.planned_offset,
                    outdoor_temp_forecast=r.outdoor_temp_forecast,
                    price_cent_kwh=r.price_cent_kwh,
                    reason=r.reason,
                )
                for r in rows
            ]

    def _heating_row(self, session, account_id: str, day: date, hour: int) -> Optional[HeatingScheduleRow]:
        return session.scalars(
            select(HeatingScheduleRow).where(
                HeatingScheduleRow.account_id == account_id,
                HeatingScheduleRow.date == day.isoformat(),
                HeatingScheduleRow.hour == hour,
            )
        ).first()

    def get_planned_offset(self, account_id: str, day: date, hour: int) -> Optional[int]:
        with self.Session() as session:
            row = self._heating_row(session, account_id, day, hour)
            return row.planned_offset if row else None

    def get_heating_applied_at(self, account_id: str, day: date, hour: int) -> Optional[datetime]:
        with self.Session() as session:
            row = self._heating_row(session, account_id, day, hour)
            return _from_db(row.applied_at) if row else None

    def mark_heating_applied(self, account_id: str, day: date, hour: int) -> None:
        with self.Session.begin() as session:
            session.execute(
                update(HeatingScheduleRow)
                .where(
                    HeatingScheduleRow.account_id == account_id,
                    HeatingScheduleRow.date == day.isoformat(),
                    HeatingScheduleRow.hour == hour,
                )
                .values(applied_at=_utcnow())
            )

    # DHW schedule

    def save_dhw_schedule(self, account_id: str, day: date, hours: list[PlannedDHWHour]) -> None:
        with self.Session.begin() as session:
            for h in hours:
                stmt = sqlite_insert(DHWScheduleRow).values(
                    account_id=account_id,
                    date=day.isoformat(),
                    hour=h.hour,
                    planned_temp=h.planned_temp,
                    price_cent_kwh=h.price_cent_kwh,
                    reason=h.reason,
                    created_at=_utcnow(),
                    applied_at=None,
                )
                stmt = stmt.on_conflict_do_update(
                    index_elements=["account_id", "date", "hour"],
                    set_={
                        "planned_temp": stmt.excluded.planned_temp,
                        "price_cent_kwh": stmt.excluded.price_cent_kwh,
                        "reason": stmt.excluded.reason,
                        "created_at": stmt.excluded.created_at,
                        "applied_at": None,
                    },
                )
                session.execute(stmt)

    def get_dhw_schedule(self, account_id: str, day: date) -> list[PlannedDHWHour]:
        with self.Session() as session:
            rows = session.scalars(
                select(DHWScheduleRow)
                .where(DHWScheduleRow.account_id == account_id, DHWScheduleRow.date == day.isoformat())
                .order_by(DHWScheduleRow.hour)
            ).all()
            return [
                PlannedDHWHour(
                    date=date.fromisoformat(r.date),
                    hour=r.hour,
                    planned_temp=r.planned_temp,
                    price_cent_kwh=r.price_cent_kwh,
                    reason=r.reason,
                )
                for r in rows
            ]

    def _dhw_row(self, session, account_id: str, day: date, hour: int) -> Optional[DHWScheduleRow]:
        return session.scalars(
            select(DHWScheduleRow).where(
                DHWScheduleRow.account_id == account_id,
                DHWScheduleRow.date == day.isoformat(),
                DHWScheduleRow.hour == hour,
            )
        ).first()

    def get_planned_dhw_temp(self, account_id: str, day: date, hour: int) -> Optional[int]:
        with self.Session() as session:
            row = self._dhw_row(session, account_id, day, hour)
            return row.planned_temp if row else None

    def get_dhw_applied_at(self, account_id: str, day: date, hour: int) -> Optional[datetime]:
        with self.Session() as session:
            row = self._dhw_row(session, account_id, day, hour)
            return _from_db(row.applied_at) if row else None

    def mark_dhw_applied(self, account_id: str, day: date, hour: int) -> None:
        with self.Session.begin() as session:
            session.execute(
                update(DHWScheduleRow)
                .where(
                    DHWScheduleRow.account_id == account_id,
                    DHWScheduleRow.date == day.isoformat(),
                    DHWScheduleRow.hour == hour,
                )
                .values(applied_at=_utcnow())
            )

    def delete_schedules_before(self, account_id: str, cutoff: date) -> None:
        """Remove an account's heating and hot water plans dated before cutoff."""
        cutoff_str = cutoff.isoformat()
        with self.Session.begin() as session:
            session.execute(
                delete(HeatingScheduleRow).where(
                    HeatingScheduleRow.account_id == account_id, HeatingScheduleRow.date < cutoff_str
                )
            )
            session.execute(
                delete(DHWScheduleRow).where(
                    DHWScheduleRow.account_id == account_id, DHWScheduleRow.date < cutoff_str
                )
            )

    # Device state and control log

    def save_device_snapshot(self, account_id: str, snapshot: DeviceSnapshot) -> None:
        with self.Session.begin() as session:
            session.add(DeviceStateRow(
                account_id=account_id,
                timestamp=_to_db(snapshot.timestamp),
                device_id=snapshot.device_id,
                water_temp=snapshot.water_temp,
                outdoor_temp=snapshot.outdoor_temp,
                target_offset=snapshot.target_offset,
                mode=snapshot.mode,
                power_on=snapshot.power_on,
                price_cent_kwh=snapshot.price_cent_kwh,
                action_taken=snapshot.action_taken,
                dhw_tank_temp=snapshot.dhw_tank_temp,
                dhw_target_temp=snapshot.dhw_target_temp,
                dhw_action=snapshot.dhw_action,
                heating_kwh=snapshot.heating_kwh,
                cooling_kwh=snapshot.cooling_kwh,
                dhw_kwh=snapshot.dhw_kwh,
            ))

    def get_latest_snapshot(self, account_id: str) -> Optional[DeviceSnapshot]:
        with self.Session() as session:
            row = session.scalars(
                select(DeviceStateRow)
                .where(DeviceStateRow.account_id == account_id)
                .order_by(DeviceStateRow.timestamp.desc(), DeviceStateRow.id.desc())
            ).first()
            return self._snapshot_from_row(row) if row else None

    def get_device_state_history(self, account_id: str, since: datetime) -> list[DeviceSnapshot]:
        """Snapshots taken at or after since, oldest first."""
        with self.Session() as session:
            rows = session.scalars(
                select(DeviceStateRow)
                .where(DeviceStateRow.account_id == account_id, DeviceStateRow.timestamp >= _to_db(since))
                .order_by(DeviceStateRow.timestamp, DeviceStateRow.id)
            ).all()
            return [self._snapshot_from_row(row) for row in rows]

    @staticmethod
    def _snapshot_from_row(row: DeviceStateRow) -> DeviceSnapshot:
        return DeviceSnapshot(
            timestamp=_from_db(row.timestamp),
            device_id=row.device_id,
            water_temp=row.water_temp,
            outdoor_temp=row.outdoor_temp,
            target_offset=row.target_offset,
            mode=row.mode,
            power_on=bool(row.power_on),
            price_cent_kwh=row.price_cent_kwh,
            action_taken=row.action_taken,
            dhw_tank_temp=row.dhw_tank_temp,
            dhw_target_temp=row.dhw_target_temp,
            dhw_action=row.dhw_action,
            heating_kwh=row.heating_kwh,
            cooling_kwh=row.cooling_kwh,
            dhw_kwh=row.dhw_kwh,
        )

    # Energy consumption

    def save_hourly_consumption(self, account_id: str, entries: list[HourlyConsumption]) -> None:
        """Upsert 2-hour blocks. A missing value never replaces a stored one."""
        with self.Session.begin() as session:
            for entry in entries:
                stmt = sqlite_insert(EnergyConsumptionRow).values(
                    account_id=account_id,
                    date=entry.date.isoformat(),
                    hour=entry.hour,
                    heating_kwh=entry.heating_kwh,
                    cooling_kwh=entry.cooling_kwh,
                    dhw_kwh=entry.dhw_kwh,
                )
                stmt = stmt.on_conflict_do_update(
                    index_elements=["account_id", "date", "hour"],
                    set_={
                        "heating_kwh": func.coalesce(stmt.excluded.heating_kwh, EnergyConsumptionRow.heating_kwh),
                        "cooling_kwh": func.coalesce(stmt.excluded.cooling_kwh, EnergyConsumptionRow.cooling_kwh),
                        "dhw_kwh": func.coalesce(stmt.excluded.dhw_kwh, EnergyConsumptionRow.dhw_kwh),
                    },
                )
                session.execute(stmt)

    def get_hourly_consumption(self, account_id: str, since: date) -> list[HourlyConsumption]:
        """Blocks dated on or after since, ordered by date and hour."""
        with self.Session() as session:
            rows = session.scalars(
                select(EnergyConsumptionRow)
                .where(
                    EnergyConsumptionRow.account_id == account_id,
                    EnergyConsumptionRow.date >= since.isoformat(),
                )
                .order_by(EnergyConsumptionRow.date, EnergyConsumptionRow.hour)
            ).all()
            return [
                HourlyConsumption(
                    date=date.fromisoformat(r.date),
                    hour=r.hour,
                    heating_kwh=r.heating_kwh,
                    cooling_kwh=r.cooling_kwh,
                    dhw_kwh=r.dhw_kwh,
                )
                for r in rows
            ]

    def get_daily_consumption(self, account_id: str, since: date) -> list[DailyConsumption]:
        """Per-day totals of the stored blocks, oldest first."""
        with self.Session() as session:
            rows = session.execute(
                select(
                    EnergyConsumptionRow.date,
                    func.sum(EnergyConsumptionRow.heating_kwh),
                    func.sum(EnergyConsumptionRow.cooling_kwh),
                    func.sum(EnergyConsumptionRow.dhw_kwh),
                )
                .where(
                    EnergyConsumptionRow.account_id == account_id,
                    EnergyConsumptionRow.date >= since.isoformat(),
                )
                .group_by(EnergyConsumptionRow.date)
                .order_by(EnergyConsumptionRow.date)
            ).all()
            return [
                DailyConsumption(date=date.fromisoformat(day), heating_kwh=heating, cooling_kwh=cooling, dhw_kwh=dhw)
                for day, heating, cooling, dhw in rows
            ]

    def log_control_action(self, account_id: str, entry: ControlLogEntry) -> None:
        with self.Session.begin() as session:
            session.add(ControlLogRow(
                account_id=account_id,
                timestamp=_to_db(entry.timestamp),
                action=entry.action,
                reason=entry.reason,
                price_eur_mwh=entry.price_eur_mwh,
                old_target_temp=entry.old_target_temp,
                new_target_temp=entry.new_target_temp,
            ))

    def get_recent_control_logs(self, account_id: str, limit: int = 50) -> list[ControlLogEntry]:
        """Newest first."""
        with self.Session() as session:
            rows = session.scalars(
                select(ControlLogRow)
                .where(ControlLogRow.account_id == account_id)
                .order_by(ControlLogRow.timestamp.desc(), ControlLogRow.id.desc())
                .limit(limit)
            ).all()
            return [
                ControlLogEntry(
                    id=r.id,
                    timestamp=_from_db(r.timestamp),
                    action=r.action,
                    reason=r.reason,
                    price_eur_mwh=r.price_eur_mwh,
                    old_target_temp=r.old_target_temp,
                    new_target_temp=r.new_target_temp,
                )
                for r in rows
            ]

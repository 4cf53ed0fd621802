"""SQLAlchemy-backed gateway (SQLite by default).

Blocking ORM calls run in a worker thread via ``asyncio.to_thread`` so the
event loop never waits on disk I/O.
"""

from __future__ import annotations

import asyncio
import datetime
from collections.abc import Callable
from pathlib import Path
from typing import TypeVar

import structlog
from sqlalchemy import Boolean, DateTime, Float, String, Text, and_, create_engine, func, select
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool

from src.core.types import (
    Alert,
    AlertSeverity,
    AlertType,
    CircuitReading,
    CircuitStatus,
    Reading,
    utc_now,
)
from src.storage.exceptions import StorageError, StorageNotInitializedError
from src.storage.gateway import PersistenceGateway

logger = structlog.stdlib.get_logger()

T = TypeVar("T")


class Base(DeclarativeBase):
    pass


class EnergyReadingRow(Base):
    __tablename__ = "energy_readings"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    timestamp: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), index=True)
    total_power: Mapped[float] = mapped_column(Float)
    voltage: Mapped[float] = mapped_column(Float)
    current: Mapped[float] = mapped_column(Float)
    frequency: Mapped[float] = mapped_column(Float)
    power_factor: Mapped[float] = mapped_column(Float)
    daily_usage: Mapped[float] = mapped_column(Float)
    monthly_usage: Mapped[float] = mapped_column(Float)
    cost_today: Mapped[float] = mapped_column(Float)
    cost_month: Mapped[float] = mapped_column(Float)
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), index=True)


class CircuitReadingRow(Base):
    __tablename__ = "circuit_readings"

    id: Mapped[str] = mapped_column(String(96), primary_key=True)
    circuit_id: Mapped[str] = mapped_column(String(64), index=True)
    circuit_name: Mapped[str] = mapped_column(String(128))
    power: Mapped[float] = mapped_column(Float)
    voltage: Mapped[float] = mapped_column(Float)
    current: Mapped[float] = mapped_column(Float)
    status: Mapped[str] = mapped_column(String(16))
    percentage: Mapped[float] = mapped_column(Float)
    timestamp: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), index=True)


class EnergyAlertRow(Base):
    __tablename__ = "energy_alerts"

    id: Mapped[str] = mapped_column(String(160), primary_key=True)
    type: Mapped[str] = mapped_column(String(32))
    severity: Mapped[str] = mapped_column(String(16))
    message: Mapped[str] = mapped_column(Text)
    circuit_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    value: Mapped[float] = mapped_column(Float)
    threshold: Mapped[float] = mapped_column(Float)
    timestamp: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), index=True)
    acknowledged: Mapped[bool] = mapped_column(Boolean, default=False, index=True)


def _as_utc(value: datetime.datetime) -> datetime.datetime:
    # SQLite drops tzinfo; everything is written in UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=datetime.UTC)
    return value.astimezone(datetime.UTC)


def _reading_from_row(row: EnergyReadingRow) -> Reading:
    return Reading(
        id=row.id,
        timestamp=_as_utc(row.timestamp),
        total_power=row.total_power,
        voltage=row.voltage,
        current=row.current,
        frequency=row.frequency,
        power_factor=row.power_factor,
        daily_usage=row.daily_usage,
        monthly_usage=row.monthly_usage,
        cost_today=row.cost_today,
        cost_month=row.cost_month,
        created_at=_as_utc(row.created_at),
    )


def _circuit_from_row(row: CircuitReadingRow) -> CircuitReading:
    return CircuitReading(
        id=row.id,
        circuit_id=row.circuit_id,
        circuit_name=row.circuit_name,
        power=row.power,
        voltage=row.voltage,
        current=row.current,
        status=CircuitStatus(row.status),
        percentage=row.percentage,
        timestamp=_as_utc(row.timestamp),
    )


def _alert_from_row(row: EnergyAlertRow) -> Alert:
    return Alert(
        id=row.id,
        type=AlertType(row.type),
        severity=AlertSeverity(row.severity),
        message=row.message,
        circuit_id=row.circuit_id,
        value=row.value,
        threshold=row.threshold,
        timestamp=_as_utc(row.timestamp),
        acknowledged=bool(row.acknowledged),
    )


class SqlGateway(PersistenceGateway):
    """Gateway persisting to a relational database through SQLAlchemy.

    Usage::

        async with SqlGateway("sqlite:///data/energy.db") as gateway:
            await gateway.store_reading(reading)
    """

    def __init__(self, url: str = "sqlite:///data/energy.db") -> None:
        self._url = url
        self._engine: Engine | None = None
        self._session_factory: sessionmaker[Session] | None = None

    async def open(self) -> None:
        if self._engine is not None:
            return
        await asyncio.to_thread(self._open_sync)
        logger.info("sql_gateway_opened", url=self._url)

    def _open_sync(self) -> None:
        url = make_url(self._url)
        kwargs: dict[str, object] = {}
        if url.get_backend_name() == "sqlite":
            kwargs["connect_args"] = {"check_same_thread": False}
            if url.database in (None, "", ":memory:"):
                kwargs["poolclass"] = StaticPool
            else:
                Path(url.database).parent.mkdir(parents=True, exist_ok=True)
        try:
            engine = create_engine(url, **kwargs)
            Base.metadata.create_all(engine)
        except SQLAlchemyError as exc:
            raise StorageError(f"Failed to open {self._url}") from exc
        self._engine = engine
        self._session_factory = sessionmaker(bind=engine, expire_on_commit=False)

    async def close(self) -> None:
        if self._engine is None:
            return
        engine = self._engine
        self._engine = None
        self._session_factory = None
        await asyncio.to_thread(engine.dispose)

    async def _run(self, op: str, fn: Callable[[Session], T]) -> T:
        factory = self._session_factory
        if factory is None:
            raise StorageNotInitializedError("SqlGateway is not open")

        def _call() -> T:
            with factory() as session:
                return fn(session)

        try:
            return await asyncio.to_thread(_call)
        except SQLAlchemyError as exc:
            raise StorageError(f"{op} failed: {exc}") from exc

    # ── Writes ──────────────────────────────────────────────────

    async def store_reading(self, reading: Reading) -> None:
        def _store(session: Session) -> None:
            session.add(EnergyReadingRow(**reading.model_dump()))
            session.commit()

        await self._run("store_reading", _store)

    async def store_circuit_readings(self, readings: list[CircuitReading]) -> None:
        def _store(session: Session) -> None:
            session.add_all(
                CircuitReadingRow(**cr.model_dump()) for cr in readings
            )
            session.commit()

        await self._run("store_circuit_readings", _store)

    async def store_alert(self, alert: Alert) -> None:
        def _store(session: Session) -> None:
            session.add(EnergyAlertRow(**alert.model_dump()))
            session.commit()

        await self._run("store_alert", _store)

    async def acknowledge_alert(self, alert_id: str) -> bool:
        def _ack(session: Session) -> bool:
            row = session.get(EnergyAlertRow, alert_id)
            if row is None:
                return False
            if not row.acknowledged:
                row.acknowledged = True
                session.commit()
            return True

        return await self._run("acknowledge_alert", _ack)

    # ── Queries ─────────────────────────────────────────────────

    async def query_latest_reading(self) -> Reading | None:
        def _query(session: Session) -> Reading | None:
            stmt = (
                select(EnergyReadingRow)
                .order_by(EnergyReadingRow.created_at.desc())
                .limit(1)
            )
            row = session.scalars(stmt).first()
            return _reading_from_row(row) if row is not None else None

        return await self._run("query_latest_reading", _query)

    async def query_circuit_readings(self) -> list[CircuitReading]:
        def _query(session: Session) -> list[CircuitReading]:
            latest = (
                select(
                    CircuitReadingRow.circuit_id,
                    func.max(CircuitReadingRow.timestamp).label("ts"),
                )
                .group_by(CircuitReadingRow.circuit_id)
                .subquery()
            )
            stmt = (
                select(CircuitReadingRow)
                .join(
                    latest,
                    and_(
                        CircuitReadingRow.circuit_id == latest.c.circuit_id,
                        CircuitReadingRow.timestamp == latest.c.ts,
                    ),
                )
                .order_by(CircuitReadingRow.circuit_id)
            )
            return [_circuit_from_row(row) for row in session.scalars(stmt)]

        return await self._run("query_circuit_readings", _query)

    async def query_usage_history(self, window_hours: float = 24) -> list[Reading]:
        since = utc_now() - datetime.timedelta(hours=window_hours)

        def _query(session: Session) -> list[Reading]:
            stmt = (
                select(EnergyReadingRow)
                .where(EnergyReadingRow.created_at >= since)
                .order_by(EnergyReadingRow.created_at.asc())
            )
            return [_reading_from_row(row) for row in session.scalars(stmt)]

        return await self._run("query_usage_history", _query)

    async def query_active_alerts(self) -> list[Alert]:
        def _query(session: Session) -> list[Alert]:
            stmt = (
                select(EnergyAlertRow)
                .where(EnergyAlertRow.acknowledged.is_(False))
                .order_by(EnergyAlertRow.timestamp.desc())
            )
            return [_alert_from_row(row) for row in session.scalars(stmt)]

        return await self._run("query_active_alerts", _query)

    async def query_average_power(self, since: datetime.datetime) -> float | None:
        since_utc = _as_utc(since)

        def _query(session: Session) -> float | None:
            stmt = select(func.avg(EnergyReadingRow.total_power)).where(
                EnergyReadingRow.created_at >= since_utc
            )
            value = session.scalar(stmt)
            return float(value) if value is not None else None

        return await self._run("query_average_power", _query)

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from itertools import count
from threading import Lock
from typing import Protocol

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, String, Text, create_engine, select, update
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship, sessionmaker

from .intervals import coerce_utc, validate_interval
from .reminder_state import starts_new_cycle


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _coerce_optional(value: datetime | None) -> datetime | None:
    return coerce_utc(value) if value is not None else None


class DeviceNotFoundError(KeyError):
    """Raised when an operation references a device id that does not exist."""


class OwnerNotFoundError(KeyError):
    """Raised when an operation references an owner id that does not exist."""


class ReminderStateError(ValueError):
    """Raised when a reminder stage would be recorded out of order."""


class StaleCycleError(ReminderStateError):
    """Raised when a stage is recorded against a cycle the device has already left."""


@dataclass(frozen=True)
class OwnerRecord:
    owner_id: int
    email: str
    first_name: str
    last_name: str
    is_active: bool
    created_at: datetime

    @property
    def display_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


@dataclass(frozen=True)
class DeviceRecord:
    device_id: int
    owner_id: int
    name: str
    serial_number: str | None
    notes: str | None
    last_serviced_at: datetime
    interval_months: int
    reminders_enabled: bool
    created_at: datetime
    stage1_sent_at: datetime | None
    stage2_sent_at: datetime | None


@dataclass(frozen=True)
class EligibleDevice:
    device: DeviceRecord
    owner: OwnerRecord


@dataclass(frozen=True)
class DeviceUpdateResult:
    device: DeviceRecord
    reminders_reset: bool


class DeviceRepository(Protocol):
    def reset(self) -> None: ...

    def create_owner(self, *, email: str, first_name: str, last_name: str, is_active: bool = True) -> OwnerRecord: ...

    def get_owner(self, owner_id: int) -> OwnerRecord: ...

    def set_owner_active(self, owner_id: int, is_active: bool) -> OwnerRecord: ...

    def delete_owner(self, owner_id: int) -> None: ...

    def create_device(
        self,
        *,
        owner_id: int,
        name: str,
        interval_months: int,
        last_serviced_at: datetime | None = None,
        serial_number: str | None = None,
        notes: str | None = None,
        reminders_enabled: bool = True,
    ) -> DeviceRecord: ...

    def get_device(self, device_id: int) -> DeviceRecord: ...

    def list_devices(self, *, owner_id: int | None = None) -> list[DeviceRecord]: ...

    def update_device(
        self,
        device_id: int,
        *,
        name: str,
        serial_number: str | None,
        notes: str | None,
        last_serviced_at: datetime,
        interval_months: int,
        reminders_enabled: bool,
    ) -> DeviceUpdateResult: ...

    def delete_device(self, device_id: int) -> None: ...

    def list_eligible_devices(self, now: datetime) -> list[EligibleDevice]: ...

    def record_stage1_sent(
        self, device_id: int, when: datetime, *, last_serviced_at: datetime | None = None
    ) -> bool: ...

    def record_stage2_sent(
        self, device_id: int, when: datetime, *, last_serviced_at: datetime | None = None
    ) -> bool: ...


def _check_cycle(device_id: int, stored: datetime, expected: datetime | None) -> None:
    if expected is not None and starts_new_cycle(expected, stored):
        raise StaleCycleError(f"device {device_id} was repacked since it was evaluated; stage not recorded")


class InMemoryDeviceRepository:
    """Deterministic in-memory store with incremental ids."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._owner_counter = count(1)
        self._device_counter = count(1)
        self._owners: dict[int, OwnerRecord] = {}
        self._devices: dict[int, DeviceRecord] = {}

    def reset(self) -> None:
        with self._lock:
            self._owner_counter = count(1)
            self._device_counter = count(1)
            self._owners.clear()
            self._devices.clear()

    def create_owner(self, *, email: str, first_name: str, last_name: str, is_active: bool = True) -> OwnerRecord:
        with self._lock:
            owner = OwnerRecord(
                owner_id=next(self._owner_counter),
                email=email.strip(),
                first_name=first_name.strip(),
                last_name=last_name.strip(),
                is_active=is_active,
                created_at=_now_utc(),
            )
            self._owners[owner.owner_id] = owner
            return owner

    def get_owner(self, owner_id: int) -> OwnerRecord:
        owner = self._owners.get(owner_id)
        if owner is None:
            raise OwnerNotFoundError(owner_id)
        return owner

    def set_owner_active(self, owner_id: int, is_active: bool) -> OwnerRecord:
        with self._lock:
            owner = self.get_owner(owner_id)
            updated = OwnerRecord(**{**owner.__dict__, "is_active": is_active})
            self._owners[owner_id] = updated
            return updated

    def delete_owner(self, owner_id: int) -> None:
        with self._lock:
            if owner_id not in self._owners:
                raise OwnerNotFoundError(owner_id)
            del self._owners[owner_id]
            for device_id in [key for key, value in self._devices.items() if value.owner_id == owner_id]:
                del self._devices[device_id]

    def create_device(
        self,
        *,
        owner_id: int,
        name: str,
        interval_months: int,
        last_serviced_at: datetime | None = None,
        serial_number: str | None = None,
        notes: str | None = None,
        reminders_enabled: bool = True,
    ) -> DeviceRecord:
        validate_interval(interval_months)
        with self._lock:
            self.get_owner(owner_id)
            created_at = _now_utc()
            device = DeviceRecord(
                device_id=next(self._device_counter),
                owner_id=owner_id,
                name=name.strip(),
                serial_number=serial_number,
                notes=notes,
                last_serviced_at=coerce_utc(last_serviced_at) if last_serviced_at is not None else created_at,
                interval_months=interval_months,
                reminders_enabled=reminders_enabled,
                created_at=created_at,
                stage1_sent_at=None,
                stage2_sent_at=None,
            )
            self._devices[device.device_id] = device
            return device

    def get_device(self, device_id: int) -> DeviceRecord:
        device = self._devices.get(device_id)
        if device is None:
            raise DeviceNotFoundError(device_id)
        return device

    def list_devices(self, *, owner_id: int | None = None) -> list[DeviceRecord]:
        devices = sorted(self._devices.values(), key=lambda value: value.device_id)
        if owner_id is None:
            return devices
        return [value for value in devices if value.owner_id == owner_id]

    def update_device(
        self,
        device_id: int,
        *,
        name: str,
        serial_number: str | None,
        notes: str | None,
        last_serviced_at: datetime,
        interval_months: int,
        reminders_enabled: bool,
    ) -> DeviceUpdateResult:
        validate_interval(interval_months)
        with self._lock:
            device = self.get_device(device_id)
            new_cycle = starts_new_cycle(device.last_serviced_at, last_serviced_at)
            updated = DeviceRecord(
                **{
                    **device.__dict__,
                    "name": name.strip(),
                    "serial_number": serial_number,
                    "notes": notes,
                    "last_serviced_at": coerce_utc(last_serviced_at),
                    "interval_months": interval_months,
                    "reminders_enabled": reminders_enabled,
                    "stage1_sent_at": None if new_cycle else device.stage1_sent_at,
                    "stage2_sent_at": None if new_cycle else device.stage2_sent_at,
                }
            )
            self._devices[device_id] = updated
            return DeviceUpdateResult(device=updated, reminders_reset=new_cycle)

    def delete_device(self, device_id: int) -> None:
        with self._lock:
            if device_id not in self._devices:
                raise DeviceNotFoundError(device_id)
            del self._devices[device_id]

    def list_eligible_devices(self, now: datetime) -> list[EligibleDevice]:
        _ = now
        with self._lock:
            eligible: list[EligibleDevice] = []
            for device in sorted(self._devices.values(), key=lambda value: value.device_id):
                owner = self._owners.get(device.owner_id)
                if owner is None or not owner.is_active or not device.reminders_enabled:
                    continue
                eligible.append(EligibleDevice(device=device, owner=owner))
            return eligible

    def record_stage1_sent(self, device_id: int, when: datetime, *, last_serviced_at: datetime | None = None) -> bool:
        with self._lock:
            device = self.get_device(device_id)
            _check_cycle(device_id, device.last_serviced_at, last_serviced_at)
            if device.stage1_sent_at is not None:
                return False
            self._devices[device_id] = DeviceRecord(**{**device.__dict__, "stage1_sent_at": coerce_utc(when)})
            return True

    def record_stage2_sent(self, device_id: int, when: datetime, *, last_serviced_at: datetime | None = None) -> bool:
        with self._lock:
            device = self.get_device(device_id)
            _check_cycle(device_id, device.last_serviced_at, last_serviced_at)
            if device.stage2_sent_at is not None:
                return False
            if device.stage1_sent_at is None:
                raise ReminderStateError(f"device {device_id} has no stage-1 reminder in the current cycle")
            self._devices[device_id] = DeviceRecord(**{**device.__dict__, "stage2_sent_at": coerce_utc(when)})
            return True


class DeviceStoreBase(DeclarativeBase):
    pass


class _OwnerRow(DeviceStoreBase):
    __tablename__ = "owners"

    owner_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    email: Mapped[str] = mapped_column(String(320), nullable=False, index=True)
    first_name: Mapped[str] = mapped_column(String(128), nullable=False)
    last_name: Mapped[str] = mapped_column(String(128), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    devices: Mapped[list[_DeviceRow]] = relationship(back_populates="owner", cascade="all, delete-orphan")


class _DeviceRow(DeviceStoreBase):
    __tablename__ = "devices"

    device_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    owner_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("owners.owner_id", ondelete="CASCADE"), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    serial_number: Mapped[str | None] = mapped_column(String(128), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_serviced_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    interval_months: Mapped[int] = mapped_column(Integer, nullable=False, default=12)
    reminders_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    stage1_sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    stage2_sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    owner: Mapped[_OwnerRow] = relationship(back_populates="devices")


def _owner_record(row: _OwnerRow) -> OwnerRecord:
    return OwnerRecord(
        owner_id=row.owner_id,
        email=row.email,
        first_name=row.first_name,
        last_name=row.last_name,
        is_active=row.is_active,
        created_at=coerce_utc(row.created_at),
    )


def _device_record(row: _DeviceRow) -> DeviceRecord:
    return DeviceRecord(
        device_id=row.device_id,
        owner_id=row.owner_id,
        name=row.name,
        serial_number=row.serial_number,
        notes=row.notes,
        last_serviced_at=coerce_utc(row.last_serviced_at),
        interval_months=row.interval_months,
        reminders_enabled=row.reminders_enabled,
        created_at=coerce_utc(row.created_at),
        stage1_sent_at=_coerce_optional(row.stage1_sent_at),
        stage2_sent_at=_coerce_optional(row.stage2_sent_at),
    )


class SqlAlchemyDeviceRepository:
    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise RuntimeError("DATABASE_URL is required for DEVICE_STORE_BACKEND=sqlalchemy")
        self._engine = create_engine(database_url, future=True, pool_pre_ping=True)
        self._session_factory = sessionmaker(self._engine, expire_on_commit=False, future=True)
        if database_url.startswith("sqlite"):
            DeviceStoreBase.metadata.create_all(self._engine)

    def _session(self):
        return self._session_factory()

    def reset(self) -> None:
        with self._session() as session:
            with session.begin():
                session.query(_DeviceRow).delete()
                session.query(_OwnerRow).delete()

    def create_owner(self, *, email: str, first_name: str, last_name: str, is_active: bool = True) -> OwnerRecord:
        with self._session() as session:
            with session.begin():
                row = _OwnerRow(
                    email=email.strip(),
                    first_name=first_name.strip(),
                    last_name=last_name.strip(),
                    is_active=is_active,
                    created_at=_now_utc(),
                )
                session.add(row)
                session.flush()
                return _owner_record(row)

    def get_owner(self, owner_id: int) -> OwnerRecord:
        with self._session() as session:
            row = session.get(_OwnerRow, owner_id)
            if row is None:
                raise OwnerNotFoundError(owner_id)
            return _owner_record(row)

    def set_owner_active(self, owner_id: int, is_active: bool) -> OwnerRecord:
        with self._session() as session:
            with session.begin():
                row = session.get(_OwnerRow, owner_id)
                if row is None:
                    raise OwnerNotFoundError(owner_id)
                row.is_active = is_active
                return _owner_record(row)

    def delete_owner(self, owner_id: int) -> None:
        with self._session() as session:
            with session.begin():
                row = session.get(_OwnerRow, owner_id)
                if row is None:
                    raise OwnerNotFoundError(owner_id)
                session.delete(row)

    def create_device(
        self,
        *,
        owner_id: int,
        name: str,
        interval_months: int,
        last_serviced_at: datetime | None = None,
        serial_number: str | None = None,
        notes: str | None = None,
        reminders_enabled: bool = True,
    ) -> DeviceRecord:
        validate_interval(interval_months)
        created_at = _now_utc()
        with self._session() as session:
            with session.begin():
                if session.get(_OwnerRow, owner_id) is None:
                    raise OwnerNotFoundError(owner_id)
                row = _DeviceRow(
                    owner_id=owner_id,
                    name=name.strip(),
                    serial_number=serial_number,
                    notes=notes,
                    last_serviced_at=coerce_utc(last_serviced_at) if last_serviced_at is not None else created_at,
                    interval_months=interval_months,
                    reminders_enabled=reminders_enabled,
                    created_at=created_at,
                    stage1_sent_at=None,
                    stage2_sent_at=None,
                )
                session.add(row)
                session.flush()
                return _device_record(row)

    def get_device(self, device_id: int) -> DeviceRecord:
        with self._session() as session:
            row = session.get(_DeviceRow, device_id)
            if row is None:
                raise DeviceNotFoundError(device_id)
            return _device_record(row)

    def list_devices(self, *, owner_id: int | None = None) -> list[DeviceRecord]:
        with self._session() as session:
            query = select(_DeviceRow).order_by(_DeviceRow.device_id.asc())
            if owner_id is not None:
                query = query.where(_DeviceRow.owner_id == owner_id)
            return [_device_record(row) for row in session.execute(query).scalars()]

    def update_device(
        self,
        device_id: int,
        *,
        name: str,
        serial_number: str | None,
        notes: str | None,
        last_serviced_at: datetime,
        interval_months: int,
        reminders_enabled: bool,
    ) -> DeviceUpdateResult:
        validate_interval(interval_months)
        with self._session() as session:
            with session.begin():
                row = session.get(_DeviceRow, device_id)
                if row is None:
                    raise DeviceNotFoundError(device_id)
                new_cycle = starts_new_cycle(row.last_serviced_at, last_serviced_at)
                row.name = name.strip()
                row.serial_number = serial_number
                row.notes = notes
                row.last_serviced_at = coerce_utc(last_serviced_at)
                row.interval_months = interval_months
                row.reminders_enabled = reminders_enabled
                if new_cycle:
                    row.stage1_sent_at = None
                    row.stage2_sent_at = None
                return DeviceUpdateResult(device=_device_record(row), reminders_reset=new_cycle)

    def delete_device(self, device_id: int) -> None:
        with self._session() as session:
            with session.begin():
                row = session.get(_DeviceRow, device_id)
                if row is None:
                    raise DeviceNotFoundError(device_id)
                session.delete(row)

    def list_eligible_devices(self, now: datetime) -> list[EligibleDevice]:
        _ = now
        with self._session() as session:
            rows = session.execute(
                select(_DeviceRow, _OwnerRow)
                .join(_OwnerRow, _DeviceRow.owner_id == _OwnerRow.owner_id)
                .where(_OwnerRow.is_active.is_(True))
                .where(_DeviceRow.reminders_enabled.is_(True))
                .order_by(_DeviceRow.device_id.asc())
            ).all()
            return [EligibleDevice(device=_device_record(device), owner=_owner_record(owner)) for device, owner in rows]

    def record_stage1_sent(self, device_id: int, when: datetime, *, last_serviced_at: datetime | None = None) -> bool:
        statement = (
            update(_DeviceRow)
            .where(_DeviceRow.device_id == device_id)
            .where(_DeviceRow.stage1_sent_at.is_(None))
            .values(stage1_sent_at=coerce_utc(when))
        )
        if last_serviced_at is not None:
            statement = statement.where(_DeviceRow.last_serviced_at == coerce_utc(last_serviced_at))
        with self._session() as session:
            with session.begin():
                if session.execute(statement).rowcount:
                    return True
                row = session.get(_DeviceRow, device_id)
                if row is None:
                    raise DeviceNotFoundError(device_id)
                _check_cycle(device_id, row.last_serviced_at, last_serviced_at)
                return False

    def record_stage2_sent(self, device_id: int, when: datetime, *, last_serviced_at: datetime | None = None) -> bool:
        statement = (
            update(_DeviceRow)
            .where(_DeviceRow.device_id == device_id)
            .where(_DeviceRow.stage1_sent_at.is_not(None))
            .where(_DeviceRow.stage2_sent_at.is_(None))
            .values(stage2_sent_at=coerce_utc(when))
        )
        if last_serviced_at is not None:
            statement = statement.where(_DeviceRow.last_serviced_at == coerce_utc(last_serviced_at))
        with self._session() as session:
            with session.begin():
                if session.execute(statement).rowcount:
                    return True
                row = session.get(_DeviceRow, device_id)
                if row is None:
                    raise DeviceNotFoundError(device_id)
                _check_cycle(device_id, row.last_serviced_at, last_serviced_at)
                if row.stage2_sent_at is not None:
                    return False
                raise ReminderStateError(f"device {device_id} has no stage-1 reminder in the current cycle")


def create_device_repository(*, backend: str, database_url: str) -> DeviceRepository:
    normalized = backend.strip().lower()
    if normalized == "sqlalchemy":
        return SqlAlchemyDeviceRepository(database_url)
    if normalized == "inmemory":
        return InMemoryDeviceRepository()
    raise RuntimeError(f"unsupported DEVICE_STORE_BACKEND: {backend}")

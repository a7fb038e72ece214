from __future__ import annotations

import secrets
from dataclasses import dataclass
from datetime import datetime, timezone
from itertools import count
from threading import Lock
from typing import Protocol

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, String, Text, create_engine, select
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker

from .intervals import coerce_utc


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _coerce_optional(value: datetime | None) -> datetime | None:
    return coerce_utc(value) if value is not None else None


class ReminderRunNotFoundError(KeyError):
    """Raised when a reminder run id does not exist."""


@dataclass(frozen=True)
class ReminderRunRecord:
    run_id: str
    run_at: datetime
    dry_run: bool
    triggered_by: str
    status: str
    evaluated_count: int
    stage1_sent_count: int
    stage2_sent_count: int
    skipped_count: int
    failed_count: int
    persist_failed_count: int
    error_message: str | None
    created_at: datetime
    finished_at: datetime | None


@dataclass(frozen=True)
class ReminderAttemptRecord:
    attempt_id: int
    run_id: str
    device_id: int
    owner_id: int
    action: str
    status: str
    reason: str
    attempted_at: datetime | None
    address_masked: str | None
    provider_message_id: str | None
    error_code: str | None
    error_message: str | None
    created_at: datetime


@dataclass(frozen=True)
class RunCounts:
    evaluated: int = 0
    stage1_sent: int = 0
    stage2_sent: int = 0
    skipped: int = 0
    failed: int = 0
    persist_failed: int = 0


class ReminderRunRepository(Protocol):
    def reset(self) -> None: ...

    def start_run(self, *, run_at: datetime, dry_run: bool, triggered_by: str) -> str: ...

    def record_attempt(
        self,
        run_id: str,
        *,
        device_id: int,
        owner_id: int,
        action: str,
        status: str,
        reason: str,
        attempted_at: datetime | None,
        address_masked: str | None,
        provider_message_id: str | None,
        error_code: str | None,
        error_message: str | None,
    ) -> int: ...

    def finish_run(
        self,
        run_id: str,
        *,
        status: str,
        counts: RunCounts,
        finished_at: datetime,
        error_message: str | None = None,
    ) -> None: ...

    def get_run(self, run_id: str) -> ReminderRunRecord | None: ...

    def get_latest_run(self) -> ReminderRunRecord | None: ...

    def list_attempts(self, run_id: str) -> list[ReminderAttemptRecord]: ...


class InMemoryReminderRunRepository:
    def __init__(self) -> None:
        self._lock = Lock()
        self._run_counter = count(1)
        self._attempt_counter = count(1)
        self._runs: dict[str, ReminderRunRecord] = {}
        self._attempts: dict[int, ReminderAttemptRecord] = {}
        self._attempt_ids_by_run: dict[str, list[int]] = {}

    def reset(self) -> None:
        with self._lock:
            self._run_counter = count(1)
            self._attempt_counter = count(1)
            self._runs.clear()
            self._attempts.clear()
            self._attempt_ids_by_run.clear()

    def start_run(self, *, run_at: datetime, dry_run: bool, triggered_by: str) -> str:
        with self._lock:
            run_id = f"rrun_{next(self._run_counter):06d}"
            self._runs[run_id] = ReminderRunRecord(
                run_id=run_id,
                run_at=coerce_utc(run_at),
                dry_run=dry_run,
                triggered_by=triggered_by,
                status="running",
                evaluated_count=0,
                stage1_sent_count=0,
                stage2_sent_count=0,
                skipped_count=0,
                failed_count=0,
                persist_failed_count=0,
                error_message=None,
                created_at=_now_utc(),
                finished_at=None,
            )
            self._attempt_ids_by_run[run_id] = []
            return run_id

    def record_attempt(
        self,
        run_id: str,
        *,
        device_id: int,
        owner_id: int,
        action: str,
        status: str,
        reason: str,
        attempted_at: datetime | None,
        address_masked: str | None,
        provider_message_id: str | None,
        error_code: str | None,
        error_message: str | None,
    ) -> int:
        with self._lock:
            if run_id not in self._runs:
                raise ReminderRunNotFoundError(run_id)
            attempt_id = next(self._attempt_counter)
            self._attempts[attempt_id] = ReminderAttemptRecord(
                attempt_id=attempt_id,
                run_id=run_id,
                device_id=device_id,
                owner_id=owner_id,
                action=action,
                status=status,
                reason=reason,
                attempted_at=_coerce_optional(attempted_at),
                address_masked=address_masked,
                provider_message_id=provider_message_id,
                error_code=error_code,
                error_message=error_message,
                created_at=_now_utc(),
            )
            self._attempt_ids_by_run[run_id].append(attempt_id)
            return attempt_id

    def finish_run(
        self,
        run_id: str,
        *,
        status: str,
        counts: RunCounts,
        finished_at: datetime,
        error_message: str | None = None,
    ) -> None:
        with self._lock:
            row = self._runs.get(run_id)
            if row is None:
                raise ReminderRunNotFoundError(run_id)
            self._runs[run_id] = ReminderRunRecord(
                **{
                    **row.__dict__,
                    "status": status,
                    "evaluated_count": counts.evaluated,
                    "stage1_sent_count": counts.stage1_sent,
                    "stage2_sent_count": counts.stage2_sent,
                    "skipped_count": counts.skipped,
                    "failed_count": counts.failed,
                    "persist_failed_count": counts.persist_failed,
                    "error_message": error_message,
                    "finished_at": coerce_utc(finished_at),
                }
            )

    def get_run(self, run_id: str) -> ReminderRunRecord | None:
        return self._runs.get(run_id)

    def get_latest_run(self) -> ReminderRunRecord | None:
        if not self._runs:
            return None
        return max(self._runs.values(), key=lambda value: (value.created_at, value.run_id))

    def list_attempts(self, run_id: str) -> list[ReminderAttemptRecord]:
        ids = self._attempt_ids_by_run.get(run_id, [])
        return [self._attempts[value] for value in ids]


class ReminderRunsBase(DeclarativeBase):
    pass


class _ReminderRunRow(ReminderRunsBase):
    __tablename__ = "reminder_runs"

    run_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    run_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    dry_run: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    triggered_by: Mapped[str] = mapped_column(String(32), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    evaluated_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    stage1_sent_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    stage2_sent_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    skipped_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failed_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    persist_failed_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class _ReminderAttemptRow(ReminderRunsBase):
    __tablename__ = "reminder_attempts"

    attempt_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    run_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("reminder_runs.run_id", ondelete="CASCADE"), nullable=False, index=True
    )
    device_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    owner_id: Mapped[int] = mapped_column(Integer, nullable=False)
    action: Mapped[str] = mapped_column(String(16), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False)
    reason: Mapped[str] = mapped_column(String(64), nullable=False)
    attempted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    address_masked: Mapped[str | None] = mapped_column(String(320), nullable=True)
    provider_message_id: Mapped[str | None] = mapped_column(String(256), nullable=True)
    error_code: Mapped[str | None] = mapped_column(String(128), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


def _run_record(row: _ReminderRunRow) -> ReminderRunRecord:
    return ReminderRunRecord(
        run_id=row.run_id,
        run_at=coerce_utc(row.run_at),
        dry_run=row.dry_run,
        triggered_by=row.triggered_by,
        status=row.status,
        evaluated_count=row.evaluated_count,
        stage1_sent_count=row.stage1_sent_count,
        stage2_sent_count=row.stage2_sent_count,
        skipped_count=row.skipped_count,
        failed_count=row.failed_count,
        persist_failed_count=row.persist_failed_count,
        error_message=row.error_message,
        created_at=coerce_utc(row.created_at),
        finished_at=_coerce_optional(row.finished_at),
    )


class SqlAlchemyReminderRunRepository:
    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise RuntimeError("DATABASE_URL is required for REMINDER_STORE_BACKEND=sqlalchemy")
        self._engine = create_engine(database_url, future=True, pool_pre_ping=True)
        self._session_factory = sessionmaker(self._engine, expire_on_commit=False, future=True)
        if database_url.startswith("sqlite"):
            ReminderRunsBase.metadata.create_all(self._engine)

    def _session(self):
        return self._session_factory()

    def reset(self) -> None:
        with self._session() as session:
            with session.begin():
                session.query(_ReminderAttemptRow).delete()
                session.query(_ReminderRunRow).delete()

    def start_run(self, *, run_at: datetime, dry_run: bool, triggered_by: str) -> str:
        run_id = f"rrun_{secrets.token_hex(8)}"
        with self._session() as session:
            with session.begin():
                session.add(
                    _ReminderRunRow(
                        run_id=run_id,
                        run_at=coerce_utc(run_at),
                        dry_run=dry_run,
                        triggered_by=triggered_by,
                        status="running",
                        evaluated_count=0,
                        stage1_sent_count=0,
                        stage2_sent_count=0,
                        skipped_count=0,
                        failed_count=0,
                        persist_failed_count=0,
                        error_message=None,
                        created_at=_now_utc(),
                        finished_at=None,
                    )
                )
        return run_id

    def record_attempt(
        self,
        run_id: str,
        *,
        device_id: int,
        owner_id: int,
        action: str,
        status: str,
        reason: str,
        attempted_at: datetime | None,
        address_masked: str | None,
        provider_message_id: str | None,
        error_code: str | None,
        error_message: str | None,
    ) -> int:
        with self._session() as session:
            with session.begin():
                if session.get(_ReminderRunRow, run_id) is None:
                    raise ReminderRunNotFoundError(run_id)
                row = _ReminderAttemptRow(
                    run_id=run_id,
                    device_id=device_id,
                    owner_id=owner_id,
                    action=action,
                    status=status,
                    reason=reason,
                    attempted_at=_coerce_optional(attempted_at),
                    address_masked=address_masked,
                    provider_message_id=provider_message_id,
                    error_code=error_code,
                    error_message=error_message,
                    created_at=_now_utc(),
                )
                session.add(row)
                session.flush()
                return row.attempt_id

    def finish_run(
        self,
        run_id: str,
        *,
        status: str,
        counts: RunCounts,
        finished_at: datetime,
        error_message: str | None = None,
    ) -> None:
        with self._session() as session:
            with session.begin():
                row = session.get(_ReminderRunRow, run_id)
                if row is None:
                    raise ReminderRunNotFoundError(run_id)
                row.status = status
                row.evaluated_count = counts.evaluated
                row.stage1_sent_count = counts.stage1_sent
                row.stage2_sent_count = counts.stage2_sent
                row.skipped_count = counts.skipped
                row.failed_count = counts.failed
                row.persist_failed_count = counts.persist_failed
                row.error_message = error_message
                row.finished_at = coerce_utc(finished_at)

    def get_run(self, run_id: str) -> ReminderRunRecord | None:
        with self._session() as session:
            row = session.get(_ReminderRunRow, run_id)
            if row is None:
                return None
            return _run_record(row)

    def get_latest_run(self) -> ReminderRunRecord | None:
        with self._session() as session:
            row = session.execute(
                select(_ReminderRunRow).order_by(_ReminderRunRow.created_at.desc()).limit(1)
            ).scalar_one_or_none()
            if row is None:
                return None
            return _run_record(row)

    def list_attempts(self, run_id: str) -> list[ReminderAttemptRecord]:
        with self._session() as session:
            rows = session.execute(
                select(_ReminderAttemptRow)
                .where(_ReminderAttemptRow.run_id == run_id)
                .order_by(_ReminderAttemptRow.attempt_id.asc())
            ).scalars()
            return [
                ReminderAttemptRecord(
                    attempt_id=row.attempt_id,
                    run_id=row.run_id,
                    device_id=row.device_id,
                    owner_id=row.owner_id,
                    action=row.action,
                    status=row.status,
                    reason=row.reason,
                    attempted_at=_coerce_optional(row.attempted_at),
                    address_masked=row.address_masked,
                    provider_message_id=row.provider_message_id,
                    error_code=row.error_code,
                    error_message=row.error_message,
                    created_at=coerce_utc(row.created_at),
                )
                for row in rows
            ]


def create_reminder_run_repository(*, backend: str, database_url: str) -> ReminderRunRepository:
    normalized = backend.strip().lower()
    if normalized == "sqlalchemy":
        return SqlAlchemyReminderRunRepository(database_url)
    if normalized == "inmemory":
        return InMemoryReminderRunRepository()
    raise RuntimeError(f"unsupported REMINDER_STORE_BACKEND: {backend}")

from __future__ import annotations

from datetime import datetime, timezone
from typing import Literal

from pydantic import BaseModel, Field, field_validator

from .intervals import validate_interval

ReminderActionName = Literal["none", "stage1", "stage2"]
DeviceOutcomeStatus = Literal["sent", "skipped", "failed", "persist_failed", "stale_cycle", "dry_run"]
ReminderRunStatus = Literal["running", "completed", "failed"]
ReminderStateName = Literal["pending", "stage1_notified", "stage2_notified"]


def _normalize_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class ReminderRunRequest(BaseModel):
    dry_run: bool = False
    now_override: datetime | None = None

    @field_validator("now_override")
    @classmethod
    def _normalize_override(cls, value: datetime | None) -> datetime | None:
        return _normalize_utc(value)


class DeviceReminderResult(BaseModel):
    device_id: int
    owner_id: int
    action: ReminderActionName
    status: DeviceOutcomeStatus
    reason: str
    attempted_at: datetime | None = None
    due_at: datetime | None = None
    escalation_at: datetime | None = None
    next_eligible_at: datetime | None = None
    address_masked: str | None = None
    provider_message_id: str | None = None
    error_code: str | None = None
    error_message: str | None = None


class ReminderRunSummary(BaseModel):
    run_id: str
    run_at: datetime
    dry_run: bool
    status: ReminderRunStatus
    triggered_by: str
    evaluated_count: int
    stage1_sent_count: int
    stage2_sent_count: int
    skipped_count: int
    failed_count: int
    persist_failed_count: int
    finished_at: datetime | None = None
    error_message: str | None = None
    results: list[DeviceReminderResult] = Field(default_factory=list)


class ReminderSummaryResponse(BaseModel):
    device_count: int
    eligible_count: int
    stage1_due_count: int
    stage2_due_count: int
    batch_running: bool
    last_run_id: str | None = None
    last_run_at: datetime | None = None
    last_run_status: ReminderRunStatus | None = None
    last_run_dry_run: bool | None = None
    last_run_stage1_sent_count: int | None = None
    last_run_stage2_sent_count: int | None = None
    last_run_failed_count: int | None = None
    last_run_skipped_count: int | None = None


class OwnerCreateRequest(BaseModel):
    email: str = Field(min_length=3, max_length=320)
    first_name: str = Field(min_length=1, max_length=128)
    last_name: str = Field(min_length=1, max_length=128)
    is_active: bool = True

    @field_validator("email")
    @classmethod
    def _normalize_email(cls, value: str) -> str:
        normalized = value.strip()
        if "@" not in normalized:
            raise ValueError("email must contain '@'")
        return normalized


class OwnerUpdateRequest(BaseModel):
    is_active: bool


class OwnerResponse(BaseModel):
    owner_id: int
    email: str
    first_name: str
    last_name: str
    is_active: bool
    created_at: datetime


class _DeviceFields(BaseModel):
    name: str = Field(min_length=1, max_length=256)
    serial_number: str | None = Field(default=None, max_length=128)
    notes: str | None = None
    interval_months: int
    reminders_enabled: bool = True

    @field_validator("interval_months")
    @classmethod
    def _check_interval(cls, value: int) -> int:
        return validate_interval(value)


class DeviceCreateRequest(_DeviceFields):
    owner_id: int
    last_serviced_at: datetime | None = None

    @field_validator("last_serviced_at")
    @classmethod
    def _normalize_last_serviced(cls, value: datetime | None) -> datetime | None:
        return _normalize_utc(value)


class DeviceUpdateRequest(_DeviceFields):
    last_serviced_at: datetime

    @field_validator("last_serviced_at")
    @classmethod
    def _normalize_last_serviced(cls, value: datetime) -> datetime:
        return value.replace(tzinfo=timezone.utc) if value.tzinfo is None else value.astimezone(timezone.utc)


class DeviceResponse(BaseModel):
    device_id: int
    owner_id: int
    name: str
    serial_number: str | None = None
    notes: str | None = None
    last_serviced_at: datetime
    interval_months: int
    reminders_enabled: bool
    created_at: datetime
    stage1_sent_at: datetime | None = None
    stage2_sent_at: datetime | None = None
    due_at: datetime
    escalation_at: datetime
    reminder_state: ReminderStateName


class DeviceListResponse(BaseModel):
    items: list[DeviceResponse]


class DeviceUpdateResponse(BaseModel):
    device: DeviceResponse
    reminders_reset: bool

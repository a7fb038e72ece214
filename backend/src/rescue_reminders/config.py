from __future__ import annotations

import os
from dataclasses import dataclass


def _as_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


def _as_int(value: str | None, default: int) -> int:
    if value is None:
        return default
    try:
        return int(value.strip())
    except ValueError:
        return default


def _normalize_mode(value: str | None, *, default: str, allowed: set[str]) -> str:
    if value is None:
        return default
    normalized = value.strip().lower()
    return normalized if normalized in allowed else default


@dataclass(frozen=True)
class Settings:
    app_name: str = "Rescue Reminder Backend"
    api_prefix: str = "/api/v1"
    database_url: str = ""
    device_store_backend: str = "inmemory"
    reminder_store_backend: str = "inmemory"
    # Daily trigger, 09:00 in the configured zone.
    reminder_scheduler_enabled: bool = False
    reminder_schedule_hour: int = 9
    reminder_schedule_minute: int = 0
    reminder_schedule_timezone: str = "UTC"
    reminder_overlap_policy: str = "drop"
    reminder_max_workers: int = 1
    reminder_allow_now_override: bool = True
    notifier_enabled: bool = False
    notifier_sender_type: str = "stub"
    notifier_api_base_url: str = ""
    notifier_api_key: str = ""
    notifier_timeout_seconds: int = 30
    notifier_from_address: str = "reminders@localhost"
    notifier_from_name: str = "Rescue Device Reminder"
    smtp_host: str = "localhost"
    smtp_port: int = 587
    smtp_username: str = ""
    smtp_password: str = ""
    smtp_starttls: bool = True
    ops_api_token: str = ""
    runtime_config_guard_mode: str = "warn"
    log_level: str = "INFO"


def get_settings() -> Settings:
    return Settings(
        app_name=os.getenv("RESCUE_APP_NAME", "Rescue Reminder Backend"),
        api_prefix=os.getenv("RESCUE_API_PREFIX", "/api/v1"),
        database_url=os.getenv("DATABASE_URL", ""),
        device_store_backend=_normalize_mode(
            os.getenv("DEVICE_STORE_BACKEND"),
            default="inmemory",
            allowed={"inmemory", "sqlalchemy"},
        ),
        reminder_store_backend=_normalize_mode(
            os.getenv("REMINDER_STORE_BACKEND"),
            default="inmemory",
            allowed={"inmemory", "sqlalchemy"},
        ),
        reminder_scheduler_enabled=_as_bool(os.getenv("REMINDER_SCHEDULER_ENABLED"), False),
        reminder_schedule_hour=_as_int(os.getenv("REMINDER_SCHEDULE_HOUR"), 9),
        reminder_schedule_minute=_as_int(os.getenv("REMINDER_SCHEDULE_MINUTE"), 0),
        reminder_schedule_timezone=os.getenv("REMINDER_SCHEDULE_TIMEZONE", "UTC"),
        reminder_overlap_policy=_normalize_mode(
            os.getenv("REMINDER_OVERLAP_POLICY"),
            default="drop",
            allowed={"drop", "queue"},
        ),
        reminder_max_workers=max(1, _as_int(os.getenv("REMINDER_MAX_WORKERS"), 1)),
        reminder_allow_now_override=_as_bool(os.getenv("REMINDER_ALLOW_NOW_OVERRIDE"), True),
        notifier_enabled=_as_bool(os.getenv("NOTIFIER_ENABLED"), False),
        notifier_sender_type=_normalize_mode(
            os.getenv("NOTIFIER_SENDER_TYPE"),
            default="stub",
            allowed={"stub", "http", "smtp"},
        ),
        notifier_api_base_url=os.getenv("NOTIFIER_API_BASE_URL", ""),
        notifier_api_key=os.getenv("NOTIFIER_API_KEY", ""),
        notifier_timeout_seconds=_as_int(os.getenv("NOTIFIER_TIMEOUT_SECONDS"), 30),
        notifier_from_address=os.getenv("NOTIFIER_FROM_ADDRESS", "reminders@localhost"),
        notifier_from_name=os.getenv("NOTIFIER_FROM_NAME", "Rescue Device Reminder"),
        smtp_host=os.getenv("SMTP_HOST", "localhost"),
        smtp_port=_as_int(os.getenv("SMTP_PORT"), 587),
        smtp_username=os.getenv("SMTP_USERNAME", ""),
        smtp_password=os.getenv("SMTP_PASSWORD", ""),
        smtp_starttls=_as_bool(os.getenv("SMTP_STARTTLS"), True),
        ops_api_token=os.getenv("OPS_API_TOKEN", ""),
        runtime_config_guard_mode=_normalize_mode(
            os.getenv("RUNTIME_CONFIG_GUARD_MODE"),
            default="warn",
            allowed={"off", "warn", "enforce"},
        ),
        log_level=os.getenv("LOG_LEVEL", "INFO").strip().upper() or "INFO",
    )


def runtime_config_issues(settings: Settings) -> tuple[str, ...]:
    issues: list[str] = []
    if settings.device_store_backend == "sqlalchemy" and not settings.database_url.strip():
        issues.append("DATABASE_URL is required when DEVICE_STORE_BACKEND=sqlalchemy")
    if settings.reminder_store_backend == "sqlalchemy" and not settings.database_url.strip():
        issues.append("DATABASE_URL is required when REMINDER_STORE_BACKEND=sqlalchemy")
    if not 0 <= settings.reminder_schedule_hour <= 23:
        issues.append("REMINDER_SCHEDULE_HOUR must be between 0 and 23")
    if not 0 <= settings.reminder_schedule_minute <= 59:
        issues.append("REMINDER_SCHEDULE_MINUTE must be between 0 and 59")
    if settings.notifier_enabled and settings.notifier_sender_type == "http":
        if not settings.notifier_api_base_url.strip():
            issues.append("NOTIFIER_API_BASE_URL is required when NOTIFIER_SENDER_TYPE=http")
        if not settings.notifier_api_key.strip():
            issues.append("NOTIFIER_API_KEY is required when NOTIFIER_SENDER_TYPE=http")
    if settings.notifier_enabled and settings.notifier_sender_type == "smtp":
        if not settings.smtp_host.strip():
            issues.append("SMTP_HOST is required when NOTIFIER_SENDER_TYPE=smtp")
        if bool(settings.smtp_username.strip()) != bool(settings.smtp_password):
            issues.append("SMTP_USERNAME and SMTP_PASSWORD must be set together")
    if settings.notifier_enabled and settings.notifier_sender_type == "stub":
        issues.append("NOTIFIER_ENABLED=true with NOTIFIER_SENDER_TYPE=stub delivers nothing")
    return tuple(issues)

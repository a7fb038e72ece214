from __future__ import annotations

import os

import pytest

from rescue_reminders.config import Settings, get_settings, runtime_config_issues
from rescue_reminders.main import create_app


def _set_env(overrides: dict[str, str | None]) -> dict[str, str | None]:
    previous: dict[str, str | None] = {}
    for key, value in overrides.items():
        previous[key] = os.environ.get(key)
        if value is None:
            os.environ.pop(key, None)
        else:
            os.environ[key] = value
    return previous


def _restore_env(previous: dict[str, str | None]) -> None:
    for key, value in previous.items():
        if value is None:
            os.environ.pop(key, None)
        else:
            os.environ[key] = value


def test_get_settings_defaults() -> None:
    previous = _set_env(
        {
            "REMINDER_SCHEDULE_HOUR": None,
            "REMINDER_OVERLAP_POLICY": None,
            "NOTIFIER_SENDER_TYPE": None,
            "DEVICE_STORE_BACKEND": None,
        }
    )
    try:
        settings = get_settings()
        assert settings.reminder_schedule_hour == 9
        assert settings.reminder_schedule_minute == 0
        assert settings.reminder_overlap_policy == "drop"
        assert settings.notifier_sender_type == "stub"
        assert settings.device_store_backend == "inmemory"
    finally:
        _restore_env(previous)


def test_get_settings_reads_environment() -> None:
    previous = _set_env(
        {
            "REMINDER_SCHEDULE_HOUR": "6",
            "REMINDER_SCHEDULE_TIMEZONE": "Europe/Berlin",
            "REMINDER_OVERLAP_POLICY": "QUEUE",
            "REMINDER_MAX_WORKERS": "4",
            "NOTIFIER_ENABLED": "yes",
            "NOTIFIER_SENDER_TYPE": "smtp",
            "SMTP_PORT": "2525",
            "SMTP_STARTTLS": "off",
            "LOG_LEVEL": "debug",
        }
    )
    try:
        settings = get_settings()
        assert settings.reminder_schedule_hour == 6
        assert settings.reminder_schedule_timezone == "Europe/Berlin"
        assert settings.reminder_overlap_policy == "queue"
        assert settings.reminder_max_workers == 4
        assert settings.notifier_enabled is True
        assert settings.notifier_sender_type == "smtp"
        assert settings.smtp_port == 2525
        assert settings.smtp_starttls is False
        assert settings.log_level == "DEBUG"
    finally:
        _restore_env(previous)


def test_invalid_values_fall_back_to_defaults() -> None:
    previous = _set_env(
        {
            "REMINDER_SCHEDULE_HOUR": "nine",
            "REMINDER_OVERLAP_POLICY": "parallel",
            "REMINDER_MAX_WORKERS": "0",
            "NOTIFIER_SENDER_TYPE": "pigeon",
        }
    )
    try:
        settings = get_settings()
        assert settings.reminder_schedule_hour == 9
        assert settings.reminder_overlap_policy == "drop"
        assert settings.reminder_max_workers == 1
        assert settings.notifier_sender_type == "stub"
    finally:
        _restore_env(previous)


def test_default_settings_have_no_issues() -> None:
    assert runtime_config_issues(Settings()) == ()


def test_sqlalchemy_backend_without_database_url_is_reported() -> None:
    issues = runtime_config_issues(Settings(device_store_backend="sqlalchemy"))

    assert any("DEVICE_STORE_BACKEND" in issue for issue in issues)


def test_http_sender_requires_url_and_key() -> None:
    issues = runtime_config_issues(Settings(notifier_enabled=True, notifier_sender_type="http"))

    assert any("NOTIFIER_API_BASE_URL" in issue for issue in issues)
    assert any("NOTIFIER_API_KEY" in issue for issue in issues)


def test_smtp_credentials_must_be_paired() -> None:
    issues = runtime_config_issues(Settings(notifier_enabled=True, notifier_sender_type="smtp", smtp_username="mailer"))

    assert any("SMTP_USERNAME and SMTP_PASSWORD" in issue for issue in issues)


def test_out_of_range_schedule_is_reported() -> None:
    issues = runtime_config_issues(Settings(reminder_schedule_hour=24, reminder_schedule_minute=60))

    assert len(issues) == 2


def test_create_app_blocks_startup_in_enforce_mode() -> None:
    previous = _set_env(
        {
            "RUNTIME_CONFIG_GUARD_MODE": "enforce",
            "DEVICE_STORE_BACKEND": "sqlalchemy",
            "DATABASE_URL": None,
        }
    )
    try:
        with pytest.raises(RuntimeError, match="runtime config guard blocked startup"):
            create_app()
    finally:
        _restore_env(previous)


def test_create_app_only_warns_in_warn_mode() -> None:
    previous = _set_env(
        {
            "RUNTIME_CONFIG_GUARD_MODE": "warn",
            "REMINDER_SCHEDULE_HOUR": "25",
        }
    )
    try:
        app = create_app()
        assert app.title == "Rescue Reminder Backend"
    finally:
        _restore_env(previous)

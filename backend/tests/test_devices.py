from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path

import pytest

from rescue_reminders.devices import (
    DeviceNotFoundError,
    DeviceRepository,
    InMemoryDeviceRepository,
    OwnerNotFoundError,
    ReminderStateError,
    SqlAlchemyDeviceRepository,
    StaleCycleError,
    create_device_repository,
)
from rescue_reminders.intervals import InvalidIntervalError

LAST_SERVICED = datetime(2024, 1, 15, tzinfo=timezone.utc)
SENT_AT = datetime(2024, 7, 15, 9, 0, tzinfo=timezone.utc)


@pytest.fixture(params=["inmemory", "sqlalchemy"])
def repo(request: pytest.FixtureRequest, tmp_path: Path) -> DeviceRepository:
    if request.param == "sqlalchemy":
        return SqlAlchemyDeviceRepository(f"sqlite:///{tmp_path / 'devices.db'}")
    return InMemoryDeviceRepository()


def _make_device(repo: DeviceRepository, *, is_active: bool = True, reminders_enabled: bool = True) -> int:
    owner = repo.create_owner(email="pilot@example.com", first_name="Ada", last_name="Jumper", is_active=is_active)
    device = repo.create_device(
        owner_id=owner.owner_id,
        name="Reserve canopy",
        interval_months=6,
        last_serviced_at=LAST_SERVICED,
        serial_number="RC-100",
        reminders_enabled=reminders_enabled,
    )
    return device.device_id


def test_create_and_get_device_round_trip(repo: DeviceRepository) -> None:
    device_id = _make_device(repo)

    device = repo.get_device(device_id)

    assert device.name == "Reserve canopy"
    assert device.serial_number == "RC-100"
    assert device.interval_months == 6
    assert device.last_serviced_at == LAST_SERVICED
    assert device.stage1_sent_at is None
    assert device.stage2_sent_at is None


def test_create_device_defaults_last_serviced_to_now(repo: DeviceRepository) -> None:
    owner = repo.create_owner(email="pilot@example.com", first_name="Ada", last_name="Jumper")
    before = datetime.now(timezone.utc)

    device = repo.create_device(owner_id=owner.owner_id, name="Harness", interval_months=12)

    assert device.last_serviced_at >= before.replace(microsecond=0)


def test_create_device_rejects_unsupported_interval(repo: DeviceRepository) -> None:
    owner = repo.create_owner(email="pilot@example.com", first_name="Ada", last_name="Jumper")

    with pytest.raises(InvalidIntervalError):
        repo.create_device(owner_id=owner.owner_id, name="Harness", interval_months=3)
    assert repo.list_devices() == []


def test_create_device_requires_existing_owner(repo: DeviceRepository) -> None:
    with pytest.raises(OwnerNotFoundError):
        repo.create_device(owner_id=999, name="Harness", interval_months=6)


def test_record_stage1_is_idempotent(repo: DeviceRepository) -> None:
    device_id = _make_device(repo)

    assert repo.record_stage1_sent(device_id, SENT_AT) is True
    assert repo.record_stage1_sent(device_id, datetime(2024, 7, 16, tzinfo=timezone.utc)) is False
    assert repo.get_device(device_id).stage1_sent_at == SENT_AT


def test_record_stage2_requires_stage1(repo: DeviceRepository) -> None:
    device_id = _make_device(repo)

    with pytest.raises(ReminderStateError):
        repo.record_stage2_sent(device_id, SENT_AT)

    repo.record_stage1_sent(device_id, SENT_AT)
    assert repo.record_stage2_sent(device_id, datetime(2024, 8, 15, tzinfo=timezone.utc)) is True
    assert repo.record_stage2_sent(device_id, datetime(2024, 8, 16, tzinfo=timezone.utc)) is False
    assert repo.get_device(device_id).stage2_sent_at == datetime(2024, 8, 15, tzinfo=timezone.utc)


def test_record_on_missing_device_raises(repo: DeviceRepository) -> None:
    with pytest.raises(DeviceNotFoundError):
        repo.record_stage1_sent(42, SENT_AT)
    with pytest.raises(DeviceNotFoundError):
        repo.record_stage2_sent(42, SENT_AT)
    with pytest.raises(DeviceNotFoundError):
        repo.get_device(42)


def test_record_for_evaluated_cycle_succeeds(repo: DeviceRepository) -> None:
    device_id = _make_device(repo)

    assert repo.record_stage1_sent(device_id, SENT_AT, last_serviced_at=LAST_SERVICED) is True
    assert repo.record_stage1_sent(device_id, SENT_AT, last_serviced_at=LAST_SERVICED) is False
    assert repo.record_stage2_sent(
        device_id, datetime(2024, 8, 15, tzinfo=timezone.utc), last_serviced_at=LAST_SERVICED
    ) is True


def test_record_for_a_cycle_the_device_has_left_is_rejected(repo: DeviceRepository) -> None:
    device_id = _make_device(repo)
    repo.record_stage1_sent(device_id, SENT_AT)
    repacked_at = datetime(2024, 7, 16, tzinfo=timezone.utc)
    repo.update_device(
        device_id,
        name="Reserve canopy",
        serial_number="RC-100",
        notes=None,
        last_serviced_at=repacked_at,
        interval_months=6,
        reminders_enabled=True,
    )

    with pytest.raises(StaleCycleError):
        repo.record_stage1_sent(device_id, SENT_AT, last_serviced_at=LAST_SERVICED)
    with pytest.raises(StaleCycleError):
        repo.record_stage2_sent(device_id, SENT_AT, last_serviced_at=LAST_SERVICED)

    device = repo.get_device(device_id)
    assert device.last_serviced_at == repacked_at
    assert device.stage1_sent_at is None
    assert device.stage2_sent_at is None


def test_new_last_serviced_clears_both_stages(repo: DeviceRepository) -> None:
    device_id = _make_device(repo)
    repo.record_stage1_sent(device_id, SENT_AT)
    repo.record_stage2_sent(device_id, datetime(2024, 8, 15, tzinfo=timezone.utc))

    result = repo.update_device(
        device_id,
        name="Reserve canopy",
        serial_number="RC-100",
        notes="repacked",
        last_serviced_at=datetime(2024, 8, 20, tzinfo=timezone.utc),
        interval_months=6,
        reminders_enabled=True,
    )

    assert result.reminders_reset is True
    assert result.device.stage1_sent_at is None
    assert result.device.stage2_sent_at is None
    assert repo.get_device(device_id).notes == "repacked"


def test_interval_change_alone_keeps_stage_flags(repo: DeviceRepository) -> None:
    device_id = _make_device(repo)
    repo.record_stage1_sent(device_id, SENT_AT)

    result = repo.update_device(
        device_id,
        name="Reserve canopy",
        serial_number="RC-100",
        notes=None,
        last_serviced_at=LAST_SERVICED,
        interval_months=12,
        reminders_enabled=True,
    )

    assert result.reminders_reset is False
    assert result.device.interval_months == 12
    assert result.device.stage1_sent_at == SENT_AT


def test_update_missing_device_raises(repo: DeviceRepository) -> None:
    with pytest.raises(DeviceNotFoundError):
        repo.update_device(
            7,
            name="x",
            serial_number=None,
            notes=None,
            last_serviced_at=LAST_SERVICED,
            interval_months=6,
            reminders_enabled=True,
        )


def test_eligible_devices_need_active_owner_and_enabled_reminders(repo: DeviceRepository) -> None:
    active_id = _make_device(repo)
    _make_device(repo, is_active=False)
    _make_device(repo, reminders_enabled=False)

    eligible = repo.list_eligible_devices(SENT_AT)

    assert [item.device.device_id for item in eligible] == [active_id]
    assert eligible[0].owner.email == "pilot@example.com"


def test_deactivating_owner_removes_devices_from_eligible_set(repo: DeviceRepository) -> None:
    device_id = _make_device(repo)
    owner_id = repo.get_device(device_id).owner_id

    owner = repo.set_owner_active(owner_id, False)

    assert owner.is_active is False
    assert repo.list_eligible_devices(SENT_AT) == []


def test_delete_owner_removes_devices(repo: DeviceRepository) -> None:
    device_id = _make_device(repo)
    owner_id = repo.get_device(device_id).owner_id

    repo.delete_owner(owner_id)

    assert repo.list_devices() == []
    with pytest.raises(OwnerNotFoundError):
        repo.get_owner(owner_id)
    with pytest.raises(OwnerNotFoundError):
        repo.delete_owner(owner_id)


def test_delete_device(repo: DeviceRepository) -> None:
    device_id = _make_device(repo)

    repo.delete_device(device_id)

    with pytest.raises(DeviceNotFoundError):
        repo.delete_device(device_id)


def test_list_devices_filters_by_owner(repo: DeviceRepository) -> None:
    first_id = _make_device(repo)
    second_id = _make_device(repo)
    second_owner = repo.get_device(second_id).owner_id

    assert [value.device_id for value in repo.list_devices()] == [first_id, second_id]
    assert [value.device_id for value in repo.list_devices(owner_id=second_owner)] == [second_id]


def test_reset_clears_everything(repo: DeviceRepository) -> None:
    _make_device(repo)

    repo.reset()

    assert repo.list_devices() == []


def test_factory_rejects_unknown_backend() -> None:
    with pytest.raises(RuntimeError, match="unsupported DEVICE_STORE_BACKEND"):
        create_device_repository(backend="redis", database_url="")


def test_sqlalchemy_backend_requires_database_url() -> None:
    with pytest.raises(RuntimeError, match="DATABASE_URL"):
        create_device_repository(backend="sqlalchemy", database_url="")

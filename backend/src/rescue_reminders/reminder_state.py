from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Literal

from .intervals import coerce_utc

if TYPE_CHECKING:
    from .devices import DeviceRecord

ReminderState = Literal["pending", "stage1_notified", "stage2_notified"]


def reminder_state(device: DeviceRecord) -> ReminderState:
    if device.stage2_sent_at is not None:
        return "stage2_notified"
    if device.stage1_sent_at is not None:
        return "stage1_notified"
    return "pending"


def starts_new_cycle(previous_last_serviced: datetime, new_last_serviced: datetime) -> bool:
    """A changed last-serviced timestamp is a new packing event."""
    return coerce_utc(previous_last_serviced) != coerce_utc(new_last_serviced)

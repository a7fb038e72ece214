"""Decide which reminder, if any, a device needs at a given instant.

Stage 1 is always checked first. A device whose first window was missed
(the job was down until after the escalation date) still gets stage 1 and
only reaches stage 2 on a later run, once stage 1 is on record.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Literal

from .devices import DeviceRecord
from .intervals import coerce_utc, due_date, escalation_date

ReminderAction = Literal["none", "stage1", "stage2"]


@dataclass(frozen=True)
class ReminderDecision:
    action: ReminderAction
    reason: str
    due_at: datetime
    escalation_at: datetime
    next_eligible_at: datetime | None = None

    @property
    def sends(self) -> bool:
        return self.action != "none"


def evaluate_device(device: DeviceRecord, *, owner_active: bool, now: datetime) -> ReminderDecision:
    now = coerce_utc(now)
    due_at = due_date(device.last_serviced_at, device.interval_months)
    escalation_at = escalation_date(due_at)

    def _none(reason: str, next_eligible_at: datetime | None = None) -> ReminderDecision:
        return ReminderDecision(
            action="none",
            reason=reason,
            due_at=due_at,
            escalation_at=escalation_at,
            next_eligible_at=next_eligible_at,
        )

    if not owner_active:
        return _none("owner_inactive")
    if not device.reminders_enabled:
        return _none("reminders_disabled")

    if device.stage1_sent_at is None:
        if now < due_at:
            return _none("not_due_yet", due_at)
        return ReminderDecision(
            action="stage1",
            reason="due_catch_up" if now >= escalation_at else "due",
            due_at=due_at,
            escalation_at=escalation_at,
            next_eligible_at=now,
        )

    if device.stage2_sent_at is not None:
        return _none("cycle_complete")
    if now < escalation_at:
        return _none("awaiting_escalation", escalation_at)
    return ReminderDecision(
        action="stage2",
        reason="escalation_due",
        due_at=due_at,
        escalation_at=escalation_at,
        next_eligible_at=now,
    )

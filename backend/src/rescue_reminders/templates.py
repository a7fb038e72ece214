from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from html import escape
from typing import Literal

TemplateKind = Literal["stage1", "stage2"]

_CHECKLIST = (
    "All items complete and in working order?",
    "Expiry dates checked?",
    "Device packed correctly and accessible?",
    "Batteries replaced where fitted?",
)


@dataclass(frozen=True)
class ReminderPayload:
    device_id: int
    device_name: str
    serial_number: str | None
    owner_first_name: str
    owner_last_name: str
    last_serviced_at: datetime
    due_at: datetime
    interval_months: int

    @property
    def owner_display_name(self) -> str:
        return f"{self.owner_first_name} {self.owner_last_name}".strip()


@dataclass(frozen=True)
class RenderedEmail:
    subject: str
    text: str
    html: str


def _format_date(value: datetime) -> str:
    return value.strftime("%d.%m.%Y")


def render_reminder_email(kind: TemplateKind, payload: ReminderPayload) -> RenderedEmail:
    second = kind == "stage2"
    if second:
        subject = f"SECOND reminder: {payload.device_name} is overdue"
        intro = "This is the second reminder. Your rescue device has been overdue for a month."
        closing = "Please repack your rescue device right away. Your safety depends on it."
        footer = "This is the second and final automatic reminder for this service cycle."
    else:
        subject = f"Reminder: {payload.device_name} is due for repacking"
        intro = "It is time to inspect and repack your rescue device."
        closing = "Thank you for taking care of your equipment."
        footer = (
            f"This automatic reminder is sent every {payload.interval_months} months. "
            "If the device is not repacked within a month you will receive one more reminder."
        )

    details = [
        f"Device: {payload.device_name}",
        f"Last packed: {_format_date(payload.last_serviced_at)}",
        f"Due by: {_format_date(payload.due_at)}",
    ]
    if payload.serial_number:
        details.insert(1, f"Serial number: {payload.serial_number}")

    text = "\n".join(
        [
            f"Hello {payload.owner_display_name},",
            "",
            intro,
            "",
            *details,
            "",
            "Checklist:",
            *(f"- {item}" for item in _CHECKLIST),
            "",
            closing,
            "",
            footer,
        ]
    )

    accent = "#dc2626" if second else "#3b82f6"
    html = (
        '<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">'
        f'<h1 style="color: {accent};">{escape(subject)}</h1>'
        f"<p>Hello {escape(payload.owner_display_name)},</p>"
        f'<p style="font-weight: {"bold" if second else "normal"};">{escape(intro)}</p>'
        f'<div style="border-left: 4px solid {accent}; padding: 12px 20px;">'
        + "".join(f"<p>{escape(line)}</p>" for line in details)
        + "</div>"
        "<p><strong>Checklist:</strong></p><ul>"
        + "".join(f"<li>{escape(item)}</li>" for item in _CHECKLIST)
        + "</ul>"
        f"<p>{escape(closing)}</p>"
        '<hr style="border: none; border-top: 1px solid #e5e7eb;">'
        f'<p style="color: #9ca3af; font-size: 12px;">{escape(footer)}</p>'
        "</div>"
    )
    return RenderedEmail(subject=subject, text=text, html=html)

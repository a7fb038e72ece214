from __future__ import annotations

import json
import smtplib
import socket
import urllib.error
import urllib.request
from dataclasses import dataclass
from datetime import datetime, timezone
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formataddr, make_msgid
from typing import Literal, Protocol

from .config import Settings
from .templates import ReminderPayload, TemplateKind, render_reminder_email


DispatchStatus = Literal["sent", "failed"]


@dataclass(frozen=True)
class NotificationRequest:
    address: str
    template_kind: TemplateKind
    payload: ReminderPayload


@dataclass(frozen=True)
class DispatchResult:
    status: DispatchStatus
    attempted_at: datetime
    provider_message_id: str | None = None
    error_code: str | None = None
    error_message: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.status == "sent"


class NotificationDispatcher(Protocol):
    def send(self, request: NotificationRequest) -> DispatchResult: ...


class StubNotificationDispatcher:
    """Records requests instead of delivering them."""

    def __init__(self, *, enabled: bool) -> None:
        self._enabled = enabled
        self.sent: list[NotificationRequest] = []

    def send(self, request: NotificationRequest) -> DispatchResult:
        attempted_at = datetime.now(timezone.utc)

        if not self._enabled:
            return DispatchResult(
                status="failed",
                attempted_at=attempted_at,
                error_code="notifier_disabled",
                error_message="Live reminder delivery is disabled",
            )

        if "fail" in request.address.lower():
            return DispatchResult(
                status="failed",
                attempted_at=attempted_at,
                error_code="stub_delivery_failed",
                error_message="Stub dispatcher forced failure for address",
            )

        self.sent.append(request)
        message_id = f"stub-{request.payload.device_id}-{request.template_kind}-{int(attempted_at.timestamp())}"
        return DispatchResult(status="sent", attempted_at=attempted_at, provider_message_id=message_id)


class _DispatchError(Exception):
    """Internal error raised when a transport call fails."""

    def __init__(self, error_code: str, message: str) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.message = message


class HttpNotificationDispatcher:
    """Delivers rendered reminder emails through a JSON mail API."""

    def __init__(
        self,
        *,
        base_url: str,
        api_key: str,
        from_address: str,
        from_name: str = "",
        timeout_seconds: int = 30,
    ) -> None:
        stripped_url = base_url.strip().rstrip("/")
        stripped_key = api_key.strip()
        if not stripped_url:
            raise ValueError("base_url must not be empty")
        if not stripped_key:
            raise ValueError("api_key must not be empty")
        self._base_url = stripped_url
        self._api_key = stripped_key
        self._from_address = from_address
        self._from_name = from_name
        self._timeout_seconds = timeout_seconds

    def send(self, request: NotificationRequest) -> DispatchResult:
        attempted_at = datetime.now(timezone.utc)
        rendered = render_reminder_email(request.template_kind, request.payload)
        idempotency_key = (
            f"rescue-{request.payload.device_id}-{request.template_kind}-"
            f"{request.payload.last_serviced_at.strftime('%Y%m%d%H%M%S')}"
        )
        body = {
            "from": {"email": self._from_address, "name": self._from_name},
            "to": request.address,
            "subject": rendered.subject,
            "text": rendered.text,
            "html": rendered.html,
            "idempotency_key": idempotency_key,
        }

        try:
            response_data = self._post(body)
        except _DispatchError as exc:
            return DispatchResult(
                status="failed",
                attempted_at=attempted_at,
                error_code=exc.error_code,
                error_message=f"{exc.message} (recipient: {mask_address(request.address)})",
            )
        message_id = response_data.get("message_id") if isinstance(response_data, dict) else None
        return DispatchResult(
            status="sent",
            attempted_at=attempted_at,
            provider_message_id=message_id if isinstance(message_id, str) else None,
        )

    def _post(self, body: dict[str, object]) -> object:
        url = f"{self._base_url}/v1/messages/send"
        data = json.dumps(body).encode("utf-8")
        request = urllib.request.Request(
            url,
            data=data,
            headers={
                "Authorization": f"Bearer {self._api_key}",
                "Content-Type": "application/json",
            },
            method="POST",
        )
        try:
            with urllib.request.urlopen(request, timeout=self._timeout_seconds) as response:
                return json.loads(response.read().decode("utf-8"))
        except urllib.error.HTTPError as exc:
            raise _DispatchError(
                error_code=f"http_{exc.code}",
                message=f"HTTP {exc.code}: {exc.reason}",
            ) from exc
        except urllib.error.URLError as exc:
            raise _DispatchError(
                error_code="connection_error",
                message=f"Connection error: {exc.reason}",
            ) from exc
        except (socket.timeout, TimeoutError) as exc:
            raise _DispatchError(
                error_code="timeout",
                message=f"Request timed out: {exc}",
            ) from exc
        except ValueError as exc:
            raise _DispatchError(
                error_code="invalid_response",
                message=f"Response was not valid JSON: {exc}",
            ) from exc


class SmtpNotificationDispatcher:
    """Delivers rendered reminder emails over SMTP."""

    def __init__(
        self,
        *,
        host: str,
        port: int,
        from_address: str,
        from_name: str = "",
        username: str = "",
        password: str = "",
        starttls: bool = True,
        timeout_seconds: int = 30,
    ) -> None:
        if not host.strip():
            raise ValueError("host must not be empty")
        self._host = host.strip()
        self._port = port
        self._from_address = from_address
        self._from_name = from_name
        self._username = username
        self._password = password
        self._starttls = starttls
        self._timeout_seconds = timeout_seconds

    def send(self, request: NotificationRequest) -> DispatchResult:
        attempted_at = datetime.now(timezone.utc)
        rendered = render_reminder_email(request.template_kind, request.payload)

        message = MIMEMultipart("alternative")
        message["Subject"] = rendered.subject
        message["From"] = formataddr((self._from_name, self._from_address))
        message["To"] = request.address
        message_id = make_msgid(domain=self._from_address.rpartition("@")[2] or None)
        message["Message-ID"] = message_id
        message.attach(MIMEText(rendered.text, "plain", "utf-8"))
        message.attach(MIMEText(rendered.html, "html", "utf-8"))

        try:
            with smtplib.SMTP(self._host, self._port, timeout=self._timeout_seconds) as server:
                if self._starttls:
                    server.starttls()
                if self._username:
                    server.login(self._username, self._password)
                server.sendmail(self._from_address, [request.address], message.as_string())
        except smtplib.SMTPRecipientsRefused as exc:
            return self._failed(attempted_at, "recipient_refused", str(exc), request.address)
        except smtplib.SMTPAuthenticationError as exc:
            return self._failed(attempted_at, "smtp_auth_failed", str(exc), request.address)
        except smtplib.SMTPException as exc:
            return self._failed(attempted_at, "smtp_error", str(exc), request.address)
        except (socket.timeout, TimeoutError) as exc:
            return self._failed(attempted_at, "timeout", f"SMTP timed out: {exc}", request.address)
        except OSError as exc:
            return self._failed(attempted_at, "connection_error", f"Connection error: {exc}", request.address)

        return DispatchResult(status="sent", attempted_at=attempted_at, provider_message_id=message_id)

    def _failed(self, attempted_at: datetime, error_code: str, message: str, address: str) -> DispatchResult:
        return DispatchResult(
            status="failed",
            attempted_at=attempted_at,
            error_code=error_code,
            error_message=f"{message} (recipient: {mask_address(address)})",
        )


def create_dispatcher(settings: Settings) -> NotificationDispatcher:
    sender_type = settings.notifier_sender_type
    if sender_type == "http":
        return HttpNotificationDispatcher(
            base_url=settings.notifier_api_base_url,
            api_key=settings.notifier_api_key,
            from_address=settings.notifier_from_address,
            from_name=settings.notifier_from_name,
            timeout_seconds=settings.notifier_timeout_seconds,
        )
    if sender_type == "smtp":
        return SmtpNotificationDispatcher(
            host=settings.smtp_host,
            port=settings.smtp_port,
            from_address=settings.notifier_from_address,
            from_name=settings.notifier_from_name,
            username=settings.smtp_username,
            password=settings.smtp_password,
            starttls=settings.smtp_starttls,
            timeout_seconds=settings.notifier_timeout_seconds,
        )
    return StubNotificationDispatcher(enabled=settings.notifier_enabled)


def mask_address(address: str) -> str:
    normalized = address.strip()
    if not normalized:
        return "***"

    if "@" in normalized:
        local, domain = normalized.split("@", 1)
        if len(local) <= 1:
            return f"*@{domain}"
        return f"{local[0]}***@{domain}"

    if len(normalized) <= 4:
        return "*" * len(normalized)

    return f"{normalized[:2]}***{normalized[-2:]}"

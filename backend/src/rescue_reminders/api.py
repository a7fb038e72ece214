from __future__ import annotations

import secrets

from fastapi import APIRouter, HTTPException, Request, Response, status

from .config import Settings, get_settings
from .devices import DeviceNotFoundError, DeviceRecord, DeviceRepository, OwnerNotFoundError, create_device_repository
from .dispatchers import create_dispatcher
from .intervals import due_date, escalation_date
from .models import (
    DeviceCreateRequest,
    DeviceListResponse,
    DeviceResponse,
    DeviceUpdateRequest,
    DeviceUpdateResponse,
    OwnerCreateRequest,
    OwnerResponse,
    OwnerUpdateRequest,
    ReminderRunRequest,
    ReminderRunSummary,
    ReminderSummaryResponse,
)
from .reminder_runs import ReminderRunNotFoundError, ReminderRunRepository, create_reminder_run_repository
from .reminder_state import reminder_state
from .runner import ReminderRunError, ReminderRunInProgressError, ReminderRunner

_settings = get_settings()
router = APIRouter(prefix=_settings.api_prefix, tags=["reminders"])


def _create_runner(settings: Settings, devices: DeviceRepository, runs: ReminderRunRepository) -> ReminderRunner:
    return ReminderRunner(
        devices=devices,
        dispatcher=create_dispatcher(settings),
        runs=runs,
        overlap_policy=settings.reminder_overlap_policy,
        max_workers=settings.reminder_max_workers,
    )


device_repo: DeviceRepository = create_device_repository(
    backend=_settings.device_store_backend,
    database_url=_settings.database_url,
)
run_repo: ReminderRunRepository = create_reminder_run_repository(
    backend=_settings.reminder_store_backend,
    database_url=_settings.database_url,
)
runner: ReminderRunner = _create_runner(_settings, device_repo, run_repo)


def reset_runtime_state_for_tests() -> None:
    device_repo.reset()
    run_repo.reset()


def _require_ops_token(request: Request) -> None:
    expected = _settings.ops_api_token
    if not expected:
        return
    token = request.headers.get("Authorization", "").removeprefix("Bearer ")
    if not token:
        raise HTTPException(401, "ops token required")
    if not secrets.compare_digest(token.encode("utf-8"), expected.encode("utf-8")):
        raise HTTPException(401, "invalid ops token")


def _device_response(device: DeviceRecord) -> DeviceResponse:
    due = due_date(device.last_serviced_at, device.interval_months)
    return DeviceResponse(
        device_id=device.device_id,
        owner_id=device.owner_id,
        name=device.name,
        serial_number=device.serial_number,
        notes=device.notes,
        last_serviced_at=device.last_serviced_at,
        interval_months=device.interval_months,
        reminders_enabled=device.reminders_enabled,
        created_at=device.created_at,
        stage1_sent_at=device.stage1_sent_at,
        stage2_sent_at=device.stage2_sent_at,
        due_at=due,
        escalation_at=escalation_date(due),
        reminder_state=reminder_state(device),
    )


@router.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@router.post("/owners", response_model=OwnerResponse, status_code=status.HTTP_201_CREATED)
def create_owner(payload: OwnerCreateRequest, request: Request) -> OwnerResponse:
    _require_ops_token(request)
    owner = device_repo.create_owner(
        email=payload.email,
        first_name=payload.first_name,
        last_name=payload.last_name,
        is_active=payload.is_active,
    )
    return OwnerResponse(**owner.__dict__)


@router.get("/owners/{owner_id}", response_model=OwnerResponse)
def get_owner(owner_id: int, request: Request) -> OwnerResponse:
    _require_ops_token(request)
    try:
        owner = device_repo.get_owner(owner_id)
    except OwnerNotFoundError as exc:
        raise HTTPException(status_code=404, detail=f"owner not found: {owner_id}") from exc
    return OwnerResponse(**owner.__dict__)


@router.patch("/owners/{owner_id}", response_model=OwnerResponse)
def update_owner(owner_id: int, payload: OwnerUpdateRequest, request: Request) -> OwnerResponse:
    _require_ops_token(request)
    try:
        owner = device_repo.set_owner_active(owner_id, payload.is_active)
    except OwnerNotFoundError as exc:
        raise HTTPException(status_code=404, detail=f"owner not found: {owner_id}") from exc
    return OwnerResponse(**owner.__dict__)


@router.delete("/owners/{owner_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_owner(owner_id: int, request: Request) -> Response:
    _require_ops_token(request)
    try:
        device_repo.delete_owner(owner_id)
    except OwnerNotFoundError as exc:
        raise HTTPException(status_code=404, detail=f"owner not found: {owner_id}") from exc
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/devices", response_model=DeviceResponse, status_code=status.HTTP_201_CREATED)
def create_device(payload: DeviceCreateRequest, request: Request) -> DeviceResponse:
    _require_ops_token(request)
    try:
        device = device_repo.create_device(
            owner_id=payload.owner_id,
            name=payload.name,
            interval_months=payload.interval_months,
            last_serviced_at=payload.last_serviced_at,
            serial_number=payload.serial_number,
            notes=payload.notes,
            reminders_enabled=payload.reminders_enabled,
        )
    except OwnerNotFoundError as exc:
        raise HTTPException(status_code=404, detail=f"owner not found: {payload.owner_id}") from exc
    return _device_response(device)


@router.get("/devices", response_model=DeviceListResponse)
def list_devices(request: Request, owner_id: int | None = None) -> DeviceListResponse:
    _require_ops_token(request)
    return DeviceListResponse(items=[_device_response(device) for device in device_repo.list_devices(owner_id=owner_id)])


@router.get("/devices/{device_id}", response_model=DeviceResponse)
def get_device(device_id: int, request: Request) -> DeviceResponse:
    _require_ops_token(request)
    try:
        device = device_repo.get_device(device_id)
    except DeviceNotFoundError as exc:
        raise HTTPException(status_code=404, detail=f"device not found: {device_id}") from exc
    return _device_response(device)


@router.put("/devices/{device_id}", response_model=DeviceUpdateResponse)
def update_device(device_id: int, payload: DeviceUpdateRequest, request: Request) -> DeviceUpdateResponse:
    _require_ops_token(request)
    try:
        result = device_repo.update_device(
            device_id,
            name=payload.name,
            serial_number=payload.serial_number,
            notes=payload.notes,
            last_serviced_at=payload.last_serviced_at,
            interval_months=payload.interval_months,
            reminders_enabled=payload.reminders_enabled,
        )
    except DeviceNotFoundError as exc:
        raise HTTPException(status_code=404, detail=f"device not found: {device_id}") from exc
    return DeviceUpdateResponse(device=_device_response(result.device), reminders_reset=result.reminders_reset)


@router.delete("/devices/{device_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_device(device_id: int, request: Request) -> Response:
    _require_ops_token(request)
    try:
        device_repo.delete_device(device_id)
    except DeviceNotFoundError as exc:
        raise HTTPException(status_code=404, detail=f"device not found: {device_id}") from exc
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/reminders/summary", response_model=ReminderSummaryResponse)
def get_reminder_summary(request: Request) -> ReminderSummaryResponse:
    _require_ops_token(request)
    return runner.summarize()


@router.post("/reminders/run/once", response_model=ReminderRunSummary)
def run_reminders_once(request: Request, payload: ReminderRunRequest | None = None) -> ReminderRunSummary:
    _require_ops_token(request)
    request_payload = payload or ReminderRunRequest()
    if request_payload.now_override is not None and not _settings.reminder_allow_now_override:
        raise HTTPException(400, "now_override is disabled (REMINDER_ALLOW_NOW_OVERRIDE=false)")
    try:
        return runner.run_once(request_payload.now_override, dry_run=request_payload.dry_run, triggered_by="api")
    except ReminderRunInProgressError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except ReminderRunError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc


@router.get("/reminders/runs/{run_id}", response_model=ReminderRunSummary)
def get_reminder_run(run_id: str, request: Request) -> ReminderRunSummary:
    _require_ops_token(request)
    try:
        return runner.get_run(run_id)
    except ReminderRunNotFoundError as exc:
        raise HTTPException(status_code=404, detail=f"reminder run not found: {run_id}") from exc

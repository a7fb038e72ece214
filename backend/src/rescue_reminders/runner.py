"""Batch driver for overdue-device reminders.

``ReminderRunner.run_once(now)`` is the single entry point used by the cron
trigger, the worker CLI and the operator API. Each call:

* holds a batch lock for its whole duration, so two batches never overlap
  (``drop`` rejects the second caller, ``queue`` makes it wait);
* lists eligible devices once, and aborts the run if that read fails;
* evaluates, dispatches and commits every device independently, so one
  device's failure never stops the rest;
* records the stage timestamp only after the dispatcher reports success,
  and only if the device is still in the cycle that was evaluated;
* writes each device's attempt to history as soon as it completes, and
  marks the run ``failed`` if the batch breaks off part way.

Delivery is at-least-once: if the commit after a successful send fails, the
device is reported as ``persist_failed`` and will be sent again next run.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from functools import partial
from threading import Lock
from typing import Callable

from .devices import DeviceRecord, DeviceRepository, EligibleDevice, StaleCycleError
from .dispatchers import NotificationDispatcher, NotificationRequest, mask_address
from .evaluator import ReminderDecision, evaluate_device
from .intervals import coerce_utc
from .models import DeviceReminderResult, ReminderRunSummary, ReminderSummaryResponse
from .reminder_runs import (
    ReminderAttemptRecord,
    ReminderRunNotFoundError,
    ReminderRunRecord,
    ReminderRunRepository,
    RunCounts,
)
from .templates import ReminderPayload

logger = logging.getLogger(__name__)


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


class ReminderRunError(RuntimeError):
    """Base class for failures of a whole reminder run."""


class ReminderRunInProgressError(ReminderRunError):
    """Raised when a run is requested while another batch is still running."""


class ReminderRunAbortedError(ReminderRunError):
    """Raised when the device population could not be loaded."""


class ReminderRunner:
    def __init__(
        self,
        *,
        devices: DeviceRepository,
        dispatcher: NotificationDispatcher,
        runs: ReminderRunRepository,
        overlap_policy: str = "drop",
        max_workers: int = 1,
        clock: Callable[[], datetime] = _now_utc,
    ) -> None:
        if overlap_policy not in {"drop", "queue"}:
            raise ValueError(f"unsupported overlap policy: {overlap_policy}")
        self._devices = devices
        self._dispatcher = dispatcher
        self._runs = runs
        self._overlap_policy = overlap_policy
        self._max_workers = max(1, max_workers)
        self._clock = clock
        self._batch_lock = Lock()
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def dispatcher(self) -> NotificationDispatcher:
        return self._dispatcher

    @dispatcher.setter
    def dispatcher(self, value: NotificationDispatcher) -> None:
        self._dispatcher = value

    def run_once(
        self,
        now: datetime | None = None,
        *,
        dry_run: bool = False,
        triggered_by: str = "schedule",
    ) -> ReminderRunSummary:
        if not self._batch_lock.acquire(blocking=self._overlap_policy == "queue"):
            logger.warning("reminder run requested by %s while a batch is running; dropped", triggered_by)
            raise ReminderRunInProgressError("a reminder run is already in progress")
        try:
            self._running = True
            run_at = coerce_utc(now) if now is not None else self._clock()
            return self._run_batch(run_at, dry_run=dry_run, triggered_by=triggered_by)
        finally:
            self._running = False
            self._batch_lock.release()

    def _run_batch(self, run_at: datetime, *, dry_run: bool, triggered_by: str) -> ReminderRunSummary:
        run_id = self._runs.start_run(run_at=run_at, dry_run=dry_run, triggered_by=triggered_by)
        logger.info("reminder run %s started (run_at=%s, dry_run=%s)", run_id, run_at.isoformat(), dry_run)

        try:
            eligible = self._devices.list_eligible_devices(run_at)
        except Exception as exc:
            logger.exception("reminder run %s aborted: eligible devices could not be loaded", run_id)
            self._fail_run(run_id, exc, RunCounts())
            raise ReminderRunAbortedError(f"reminder run {run_id} aborted: {exc}") from exc

        results: list[DeviceReminderResult] = []
        counts = RunCounts()
        try:
            process = partial(self._process_and_record, run_id=run_id, run_at=run_at, dry_run=dry_run)
            if self._max_workers > 1 and len(eligible) > 1:
                with ThreadPoolExecutor(max_workers=self._max_workers, thread_name_prefix="reminder-device") as pool:
                    results = list(pool.map(process, eligible))
            else:
                results = [process(item) for item in eligible]

            counts = _count_results(results)
            finished_at = self._clock()
            self._runs.finish_run(run_id, status="completed", counts=counts, finished_at=finished_at)
        except Exception as exc:
            logger.exception("reminder run %s failed after %d device(s) were processed", run_id, len(results))
            self._fail_run(run_id, exc, counts)
            raise ReminderRunError(f"reminder run {run_id} failed: {exc}") from exc

        if counts.evaluated == 0:
            logger.info("reminder run %s: no devices with reminders enabled", run_id)
        else:
            logger.info(
                "reminder run %s finished: %d stage-1 sent, %d stage-2 sent, %d skipped, %d failed, %d unrecorded",
                run_id,
                counts.stage1_sent,
                counts.stage2_sent,
                counts.skipped,
                counts.failed,
                counts.persist_failed,
            )

        return ReminderRunSummary(
            run_id=run_id,
            run_at=run_at,
            dry_run=dry_run,
            status="completed",
            triggered_by=triggered_by,
            evaluated_count=counts.evaluated,
            stage1_sent_count=counts.stage1_sent,
            stage2_sent_count=counts.stage2_sent,
            skipped_count=counts.skipped,
            failed_count=counts.failed,
            persist_failed_count=counts.persist_failed,
            finished_at=finished_at,
            results=results,
        )

    def _fail_run(self, run_id: str, exc: Exception, counts: RunCounts) -> None:
        try:
            self._runs.finish_run(
                run_id,
                status="failed",
                counts=counts,
                finished_at=self._clock(),
                error_message=str(exc) or exc.__class__.__name__,
            )
        except Exception:
            logger.exception("reminder run %s could not be marked failed", run_id)

    def _process_and_record(
        self, item: EligibleDevice, *, run_id: str, run_at: datetime, dry_run: bool
    ) -> DeviceReminderResult:
        result = self._process_device(item, run_at=run_at, dry_run=dry_run)
        self._record_attempt(run_id, result)
        return result

    def _process_device(self, item: EligibleDevice, *, run_at: datetime, dry_run: bool) -> DeviceReminderResult:
        device, owner = item.device, item.owner
        masked = mask_address(owner.email)
        base = {
            "device_id": device.device_id,
            "owner_id": owner.owner_id,
            "address_masked": masked,
        }

        try:
            decision = evaluate_device(device, owner_active=owner.is_active, now=run_at)
        except Exception as exc:
            logger.exception("device %s: reminder evaluation failed", device.device_id)
            return DeviceReminderResult(
                **base,
                action="none",
                status="failed",
                reason="evaluation_error",
                error_code="evaluation_error",
                error_message=str(exc),
            )

        timing = {
            "due_at": decision.due_at,
            "escalation_at": decision.escalation_at,
            "next_eligible_at": decision.next_eligible_at,
        }
        if not decision.sends:
            return DeviceReminderResult(**base, **timing, action="none", status="skipped", reason=decision.reason)
        if dry_run:
            return DeviceReminderResult(
                **base,
                **timing,
                action=decision.action,
                status="dry_run",
                reason=decision.reason,
                attempted_at=run_at,
            )

        request = NotificationRequest(
            address=owner.email,
            template_kind="stage1" if decision.action == "stage1" else "stage2",
            payload=ReminderPayload(
                device_id=device.device_id,
                device_name=device.name,
                serial_number=device.serial_number,
                owner_first_name=owner.first_name,
                owner_last_name=owner.last_name,
                last_serviced_at=device.last_serviced_at,
                due_at=decision.due_at,
                interval_months=device.interval_months,
            ),
        )
        try:
            dispatch = self._dispatcher.send(request)
        except Exception as exc:
            logger.exception("device %s: %s reminder to %s raised", device.device_id, decision.action, masked)
            return DeviceReminderResult(
                **base,
                **timing,
                action=decision.action,
                status="failed",
                reason="delivery_error",
                attempted_at=run_at,
                error_code="dispatch_exception",
                error_message=str(exc),
            )

        if not dispatch.succeeded:
            logger.warning(
                "device %s: %s reminder to %s failed (%s); will retry next run",
                device.device_id,
                decision.action,
                masked,
                dispatch.error_code,
            )
            return DeviceReminderResult(
                **base,
                **timing,
                action=decision.action,
                status="failed",
                reason="delivery_failed",
                attempted_at=dispatch.attempted_at,
                error_code=dispatch.error_code,
                error_message=dispatch.error_message,
            )

        try:
            self._commit(decision, device, run_at)
        except StaleCycleError as exc:
            logger.warning(
                "device %s: %s reminder delivered to %s but the device was repacked meanwhile; not recorded",
                device.device_id,
                decision.action,
                masked,
            )
            return DeviceReminderResult(
                **base,
                **timing,
                action=decision.action,
                status="stale_cycle",
                reason="repacked_during_delivery",
                attempted_at=dispatch.attempted_at,
                provider_message_id=dispatch.provider_message_id,
                error_code="stale_cycle",
                error_message=str(exc),
            )
        except Exception as exc:
            logger.error(
                "device %s: %s reminder delivered to %s but not recorded; it may be sent again next run",
                device.device_id,
                decision.action,
                masked,
                exc_info=True,
            )
            return DeviceReminderResult(
                **base,
                **timing,
                action=decision.action,
                status="persist_failed",
                reason="state_commit_failed",
                attempted_at=dispatch.attempted_at,
                provider_message_id=dispatch.provider_message_id,
                error_code="persist_failed",
                error_message=str(exc),
            )

        logger.info("device %s: %s reminder sent to %s", device.device_id, decision.action, masked)
        return DeviceReminderResult(
            **base,
            **timing,
            action=decision.action,
            status="sent",
            reason=decision.reason,
            attempted_at=dispatch.attempted_at,
            provider_message_id=dispatch.provider_message_id,
        )

    def _commit(self, decision: ReminderDecision, device: DeviceRecord, when: datetime) -> None:
        # only the cycle that was evaluated may be marked
        if decision.action == "stage1":
            self._devices.record_stage1_sent(device.device_id, when, last_serviced_at=device.last_serviced_at)
        else:
            self._devices.record_stage2_sent(device.device_id, when, last_serviced_at=device.last_serviced_at)

    def _record_attempt(self, run_id: str, result: DeviceReminderResult) -> None:
        try:
            self._runs.record_attempt(
                run_id,
                device_id=result.device_id,
                owner_id=result.owner_id,
                action=result.action,
                status=result.status,
                reason=result.reason,
                attempted_at=result.attempted_at,
                address_masked=result.address_masked,
                provider_message_id=result.provider_message_id,
                error_code=result.error_code,
                error_message=result.error_message,
            )
        except Exception:
            logger.exception("reminder run %s: attempt for device %s not written to history", run_id, result.device_id)

    def summarize(self, now: datetime | None = None) -> ReminderSummaryResponse:
        """Evaluate the current population without sending or writing anything."""
        current = coerce_utc(now) if now is not None else self._clock()
        eligible = self._devices.list_eligible_devices(current)
        decisions = [
            evaluate_device(item.device, owner_active=item.owner.is_active, now=current) for item in eligible
        ]
        latest = self._runs.get_latest_run()
        return ReminderSummaryResponse(
            device_count=len(self._devices.list_devices()),
            eligible_count=len(eligible),
            stage1_due_count=sum(1 for value in decisions if value.action == "stage1"),
            stage2_due_count=sum(1 for value in decisions if value.action == "stage2"),
            batch_running=self._running,
            last_run_id=latest.run_id if latest else None,
            last_run_at=latest.run_at if latest else None,
            last_run_status=latest.status if latest else None,  # type: ignore[arg-type]
            last_run_dry_run=latest.dry_run if latest else None,
            last_run_stage1_sent_count=latest.stage1_sent_count if latest else None,
            last_run_stage2_sent_count=latest.stage2_sent_count if latest else None,
            last_run_failed_count=latest.failed_count if latest else None,
            last_run_skipped_count=latest.skipped_count if latest else None,
        )

    def get_run(self, run_id: str) -> ReminderRunSummary:
        run = self._runs.get_run(run_id)
        if run is None:
            raise ReminderRunNotFoundError(run_id)
        return _summary_from_history(run, self._runs.list_attempts(run_id))


def _count_results(results: list[DeviceReminderResult]) -> RunCounts:
    return RunCounts(
        evaluated=len(results),
        stage1_sent=sum(1 for value in results if value.status == "sent" and value.action == "stage1"),
        stage2_sent=sum(1 for value in results if value.status == "sent" and value.action == "stage2"),
        skipped=sum(1 for value in results if value.status in {"skipped", "stale_cycle"}),
        failed=sum(1 for value in results if value.status == "failed"),
        persist_failed=sum(1 for value in results if value.status == "persist_failed"),
    )


def _summary_from_history(run: ReminderRunRecord, attempts: list[ReminderAttemptRecord]) -> ReminderRunSummary:
    return ReminderRunSummary(
        run_id=run.run_id,
        run_at=run.run_at,
        dry_run=run.dry_run,
        status=run.status,  # type: ignore[arg-type]
        triggered_by=run.triggered_by,
        evaluated_count=run.evaluated_count,
        stage1_sent_count=run.stage1_sent_count,
        stage2_sent_count=run.stage2_sent_count,
        skipped_count=run.skipped_count,
        failed_count=run.failed_count,
        persist_failed_count=run.persist_failed_count,
        finished_at=run.finished_at,
        error_message=run.error_message,
        results=[
            DeviceReminderResult(
                device_id=attempt.device_id,
                owner_id=attempt.owner_id,
                action=attempt.action,  # type: ignore[arg-type]
                status=attempt.status,  # type: ignore[arg-type]
                reason=attempt.reason,
                attempted_at=attempt.attempted_at,
                address_masked=attempt.address_masked,
                provider_message_id=attempt.provider_message_id,
                error_code=attempt.error_code,
                error_message=attempt.error_message,
            )
            for attempt in attempts
        ],
    )

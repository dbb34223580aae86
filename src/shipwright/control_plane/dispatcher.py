"""
shipwright — background run dispatcher

File: src/shipwright/control_plane/dispatcher.py

Purpose
- Drive queued runs through ``start -> execute -> complete | fail`` using
  only the pure transition function for state changes.
- Re-queue transient failures with exponential backoff; never retry a
  permanent failure.
- Recover runs whose heartbeat went stale (a worker died mid-run).

Functional requirements
- Every write is an optimistic check-and-set against the snapshot the
  transition was computed from; a lost race skips the run instead of
  clobbering another writer.
- Cancellation is cooperative: it is honoured before execution starts and
  again once the executor returns.
- Decisions are logged through ``structlog`` as machine-parseable events.

Non-functional requirements
- Clock and executor are injected; the dispatcher never sleeps.
"""

from __future__ import annotations

import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from enum import StrEnum
from typing import TYPE_CHECKING, Any, Protocol

import structlog

from shipwright.constants import (
    DEFAULT_DISPATCH_LIMIT,
    DEFAULT_STALE_AFTER_SECONDS,
    MAX_DISPATCH_LIMIT,
    MAX_STALE_AFTER_SECONDS,
    MIN_STALE_AFTER_SECONDS,
    RETRY_BASE_DELAY_SECONDS,
    RETRY_MAX_DELAY_SECONDS,
    WATCHDOG_FAILURE_MESSAGE,
)
from shipwright.control_plane.failure_classifier import decide_retry
from shipwright.control_plane.run_state_machine import compute_run_transition
from shipwright.domain.events import SupervisorEventType
from shipwright.domain.models import (
    UNSET,
    BackgroundRunRecord,
    JSONValue,
    RunMutation,
    RunOperation,
    RunStatus,
    RunTransitionRequest,
    TransitionFailure,
    UnsetType,
    coerce_run_output,
)

if TYPE_CHECKING:
    from shipwright.governance.policy import GovernancePolicy
    from shipwright.observability.event_log import SupervisorEventRecorder

Clock = Callable[[], datetime]
RunExecutor = Callable[[BackgroundRunRecord], JSONValue]
RecorderFactory = Callable[[str], "SupervisorEventRecorder"]


class StaleRecordError(RuntimeError):
    """Raised when a check-and-set finds the stored record changed underneath."""


class UnknownRunError(KeyError):
    """Raised when a run id is not present in the store."""


class PermanentRunError(Exception):
    """Raised by executors for failures that must never be retried."""


class RunStore(Protocol):
    def get(self, run_id: str) -> BackgroundRunRecord: ...

    def compare_and_set(
        self,
        run_id: str,
        expected: BackgroundRunRecord,
        mutation: RunMutation,
    ) -> BackgroundRunRecord: ...

    def list_by_status(self, status: RunStatus) -> tuple[BackgroundRunRecord, ...]: ...


class InMemoryRunStore:
    """Thread-safe reference ``RunStore`` keyed by ``record.run_id``."""

    def __init__(self, records: tuple[BackgroundRunRecord, ...] = ()) -> None:
        self._lock = threading.Lock()
        self._records: dict[str, BackgroundRunRecord] = {}
        for record in records:
            self.put(record)

    def put(self, record: BackgroundRunRecord) -> None:
        if record.run_id is None:
            raise ValueError("records stored for dispatch need a run_id")
        with self._lock:
            self._records[record.run_id] = record

    def get(self, run_id: str) -> BackgroundRunRecord:
        with self._lock:
            try:
                return self._records[run_id]
            except KeyError:
                raise UnknownRunError(run_id) from None

    def compare_and_set(
        self,
        run_id: str,
        expected: BackgroundRunRecord,
        mutation: RunMutation,
    ) -> BackgroundRunRecord:
        with self._lock:
            current = self._records.get(run_id)
            if current is None:
                raise UnknownRunError(run_id)
            if current != expected:
                raise StaleRecordError(f"run {run_id!r} changed since it was read")
            updated = current.apply(mutation)
            self._records[run_id] = updated
            return updated

    def list_by_status(self, status: RunStatus) -> tuple[BackgroundRunRecord, ...]:
        with self._lock:
            matches = [record for record in self._records.values() if record.status is status]
        return tuple(sorted(matches, key=lambda record: record.run_id or ""))


class DispatchAction(StrEnum):
    COMPLETED = "completed"
    FAILED = "failed"
    RETRY_SCHEDULED = "retry_scheduled"
    CANCELLED = "cancelled"
    SKIPPED = "skipped"


@dataclass(frozen=True, slots=True)
class DispatchOutcome:
    run_id: str
    action: DispatchAction
    status: RunStatus
    message: str | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "run_id": self.run_id,
            "action": self.action.value,
            "status": self.status.value,
            "message": self.message,
        }


def clamp_stale_after_seconds(value: int | None) -> int:
    if value is None:
        return DEFAULT_STALE_AFTER_SECONDS
    return max(MIN_STALE_AFTER_SECONDS, min(MAX_STALE_AFTER_SECONDS, int(value)))


def clamp_dispatch_limit(value: int | None) -> int:
    if value is None:
        return DEFAULT_DISPATCH_LIMIT
    return max(1, min(MAX_DISPATCH_LIMIT, int(value)))


def is_heartbeat_stale(
    record: BackgroundRunRecord,
    now: datetime,
    stale_after_seconds: int,
) -> bool:
    """True when a running record has not signalled liveness within the window."""

    if record.status is not RunStatus.RUNNING:
        return False
    reference = record.last_heartbeat_at or record.started_at
    if reference is None:
        return True
    return now - reference >= timedelta(seconds=stale_after_seconds)


def _utc_now() -> datetime:
    return datetime.now(UTC)


class RunDispatcher:
    """Executes due queued runs and recovers stale running ones."""

    def __init__(
        self,
        store: RunStore,
        executor: RunExecutor,
        *,
        clock: Clock | None = None,
        recorder_factory: RecorderFactory | None = None,
        policy: GovernancePolicy | None = None,
        retry_base_seconds: int = RETRY_BASE_DELAY_SECONDS,
        retry_max_seconds: int = RETRY_MAX_DELAY_SECONDS,
        logger: Any | None = None,
    ) -> None:
        self._store = store
        self._executor = executor
        self._clock = clock or _utc_now
        self._recorder_factory = recorder_factory
        self._policy = policy
        self._retry_base_seconds = retry_base_seconds
        self._retry_max_seconds = retry_max_seconds
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    def due_runs(self, now: datetime | None = None) -> tuple[BackgroundRunRecord, ...]:
        """Queued runs whose retry delay has elapsed, oldest schedule first."""

        at = now or self._clock()
        due = [
            record
            for record in self._store.list_by_status(RunStatus.QUEUED)
            if record.next_retry_at is None or record.next_retry_at <= at
        ]
        floor = datetime.min.replace(tzinfo=UTC)
        return tuple(
            sorted(due, key=lambda record: (record.next_retry_at or floor, record.run_id or ""))
        )

    def dispatch_queued(self, limit: int | None = None) -> tuple[DispatchOutcome, ...]:
        effective_limit = clamp_dispatch_limit(limit)
        candidates = self.due_runs()[:effective_limit]
        return tuple(self._dispatch_one(record) for record in candidates)

    def recover_stale_running(
        self,
        stale_after_seconds: int | None = None,
    ) -> tuple[DispatchOutcome, ...]:
        """Fail runs with stale heartbeats and re-queue the ones still eligible."""

        window = clamp_stale_after_seconds(stale_after_seconds)
        now = self._clock()
        outcomes: list[DispatchOutcome] = []
        for record in self._store.list_by_status(RunStatus.RUNNING):
            if not is_heartbeat_stale(record, now, window):
                continue
            run_id = record.run_id or ""
            failed = self._transition(
                record,
                RunTransitionRequest(RunOperation.FAIL, error_message=WATCHDOG_FAILURE_MESSAGE),
            )
            if failed is None:
                outcomes.append(
                    DispatchOutcome(run_id, DispatchAction.SKIPPED, record.status, "lost race")
                )
                continue
            self._logger.info(
                "run_watchdog_recovered",
                run_id=run_id,
                stale_after_seconds=window,
                attempt_count=failed.attempt_count,
            )
            outcomes.append(
                self._after_failure(failed, WATCHDOG_FAILURE_MESSAGE, permanent=False)
            )
        return tuple(outcomes)

    def _dispatch_one(self, record: BackgroundRunRecord) -> DispatchOutcome:
        run_id = record.run_id or ""
        if record.cancel_requested:
            return self._cancel(record)

        running = self._transition(record, RunTransitionRequest(RunOperation.START))
        if running is None:
            latest = self._store.get(run_id)
            return DispatchOutcome(
                run_id, DispatchAction.SKIPPED, latest.status, "start was not applied"
            )

        self._emit(running, SupervisorEventType.RUN_STARTED, "Run started.")
        self._logger.info("run_dispatch_started", run_id=run_id, attempt=running.attempt_count)

        output: JSONValue | UnsetType = UNSET
        failure_message: str | None = None
        permanent = False
        try:
            output = self._executor(running)
        except PermanentRunError as exc:
            failure_message = str(exc) or type(exc).__name__
            permanent = True
        except Exception as exc:  # executor failures are classified, not propagated
            failure_message = str(exc) or type(exc).__name__

        latest = self._store.get(run_id)
        if latest.status is not RunStatus.RUNNING:
            return DispatchOutcome(
                run_id, DispatchAction.SKIPPED, latest.status, "run left running during execution"
            )
        if latest.cancel_requested:
            return self._cancel(latest)

        if failure_message is None:
            try:
                output = coerce_run_output(output)
            except ValueError as exc:
                failure_message = f"Executor output rejected: {exc}"
                permanent = True

        if failure_message is None:
            completed = self._transition(
                latest, RunTransitionRequest(RunOperation.COMPLETE, output=output)
            )
            if completed is None:
                return DispatchOutcome(
                    run_id, DispatchAction.SKIPPED, latest.status, "complete was not applied"
                )
            self._emit(
                completed,
                SupervisorEventType.RUN_COMPLETED,
                "Run completed.",
                {"outcome": completed.status.value},
            )
            self._logger.info("run_dispatch_completed", run_id=run_id)
            return DispatchOutcome(run_id, DispatchAction.COMPLETED, completed.status)

        failed = self._transition(
            latest, RunTransitionRequest(RunOperation.FAIL, error_message=failure_message)
        )
        if failed is None:
            return DispatchOutcome(
                run_id, DispatchAction.SKIPPED, latest.status, "fail was not applied"
            )
        return self._after_failure(failed, failure_message, permanent=permanent)

    def _after_failure(
        self,
        failed: BackgroundRunRecord,
        message: str,
        *,
        permanent: bool,
    ) -> DispatchOutcome:
        run_id = failed.run_id or ""
        decision = decide_retry(
            failed,
            message,
            policy=self._policy,
            base_seconds=self._retry_base_seconds,
            max_seconds=self._retry_max_seconds,
        )
        if permanent or not decision.retry:
            reason = "permanent failure" if permanent else decision.reason
            self._logger.info(
                "run_dispatch_failed",
                run_id=run_id,
                kind=decision.kind.value,
                reason=reason,
                attempt_count=failed.attempt_count,
            )
            self._emit(
                failed,
                SupervisorEventType.RUN_COMPLETED,
                "Run failed.",
                {"outcome": failed.status.value, "error": failed.error_message, "retry": False},
            )
            return DispatchOutcome(
                run_id, DispatchAction.FAILED, failed.status, failed.error_message
            )

        requeued = self._transition(
            failed,
            RunTransitionRequest(
                RunOperation.RETRY, retry_after_seconds=decision.retry_after_seconds
            ),
        )
        if requeued is None:
            return DispatchOutcome(run_id, DispatchAction.FAILED, failed.status, message)
        self._logger.info(
            "run_retry_scheduled",
            run_id=run_id,
            retry_after_seconds=decision.retry_after_seconds,
            attempt_count=requeued.attempt_count,
            max_attempts=requeued.max_attempts,
        )
        return DispatchOutcome(run_id, DispatchAction.RETRY_SCHEDULED, requeued.status, message)

    def _cancel(self, record: BackgroundRunRecord) -> DispatchOutcome:
        run_id = record.run_id or ""
        cancelled = self._transition(record, RunTransitionRequest(RunOperation.CANCEL))
        if cancelled is None:
            latest = self._store.get(run_id)
            return DispatchOutcome(
                run_id, DispatchAction.SKIPPED, latest.status, "cancel was not applied"
            )
        self._logger.info("run_dispatch_cancelled", run_id=run_id)
        return DispatchOutcome(run_id, DispatchAction.CANCELLED, cancelled.status)

    def _transition(
        self,
        record: BackgroundRunRecord,
        request: RunTransitionRequest,
    ) -> BackgroundRunRecord | None:
        """Apply one transition with check-and-set; ``None`` when refused or raced."""

        run_id = record.run_id or ""
        result = compute_run_transition(record, request, self._clock())
        if isinstance(result, TransitionFailure):
            self._logger.info(
                "run_transition_refused",
                run_id=run_id,
                operation=request.operation.value,
                code=result.code.value,
                message=result.message,
            )
            return None
        try:
            return self._store.compare_and_set(run_id, record, result.mutation)
        except StaleRecordError:
            self._logger.info(
                "run_transition_conflict",
                run_id=run_id,
                operation=request.operation.value,
            )
            return None

    def _emit(
        self,
        record: BackgroundRunRecord,
        event: SupervisorEventType,
        summary: str,
        details: dict[str, object] | None = None,
    ) -> None:
        if self._recorder_factory is None or record.run_id is None:
            return
        recorder = self._recorder_factory(record.run_id)
        payload: dict[str, object] = {"attempt": record.attempt_count}
        payload.update(details or {})
        recorder.record(event, "dispatch", summary, payload)


__all__ = [
    "Clock",
    "DispatchAction",
    "DispatchOutcome",
    "InMemoryRunStore",
    "PermanentRunError",
    "RunDispatcher",
    "RunExecutor",
    "RunStore",
    "StaleRecordError",
    "UnknownRunError",
    "clamp_dispatch_limit",
    "clamp_stale_after_seconds",
    "is_heartbeat_stale",
]

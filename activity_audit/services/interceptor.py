"""
Activity interceptor: the two-phase write around a tracked operation.

Pre-phase (before):
1. Sanitize the before-snapshot
2. Write the PENDING record synchronously, so its id exists before
   the operation starts
3. Start the performance sample

Post-phase (after):
1. Derive the terminal status from the outcome
2. Record the error, affected entity, sanitized after-snapshot,
   field-level changes and performance
3. Hand the write to a background executor and return immediately

Audit failures are contained here. A store that is down costs us
the record, never the business operation: everything that runs in
the background is logged and swallowed, and a failed pre-write
returns a detached handle so the operation still runs.
"""

import asyncio
import functools
import logging
import threading
import uuid
from concurrent.futures import CancelledError as FutureCancelled
from concurrent.futures import Executor, Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Callable

from pydantic import BaseModel

from activity_audit.clock import Clock, utc_now
from activity_audit.config import Settings, get_settings
from activity_audit.models.enums import ActivityStatus, EntityType
from activity_audit.schemas.activity import OperationDescriptor, TargetRef
from activity_audit.services.performance import (
    PerformanceCollector,
    PerformanceMetrics,
    PerformanceSample,
)
from activity_audit.services.record_store import Finalization, RecordStore
from activity_audit.services.risk_scorer import SLOW_OPERATION, RiskScorer
from activity_audit.services.sanitizer import Sanitizer, compute_changes

logger = logging.getLogger(__name__)


def is_interruption(error: BaseException | None) -> bool:
    """Timeouts and cancellations end as TIMEOUT rather than FAILURE."""
    return isinstance(error, (TimeoutError, asyncio.CancelledError, FutureCancelled))


@dataclass
class OperationOutcome:
    """What a tracked operation reports when it completes."""
    error: BaseException | None = None
    timed_out: bool = False
    target: TargetRef | None = None
    after_state: Any = None
    metadata: BaseModel | None = None


class ActivityHandle:
    """
    Ties one invocation to its record.

    record_id is None when the pre-write failed; the handle is
    then detached and the post-phase only measures.
    """

    def __init__(
        self,
        record_id: uuid.UUID | None,
        descriptor: OperationDescriptor,
        before_state: dict | None,
        sample: PerformanceSample,
    ):
        self.record_id = record_id
        self.descriptor = descriptor
        self.before_state = before_state
        self.sample = sample
        self._lock = threading.Lock()
        self._finalized = False

    @property
    def detached(self) -> bool:
        return self.record_id is None

    @property
    def finalized(self) -> bool:
        return self._finalized

    def claim(self) -> bool:
        """True for the first caller only."""
        with self._lock:
            if self._finalized:
                return False
            self._finalized = True
            return True


class TrackedOperation:
    """Yielded by ActivityInterceptor.track for the business code to fill in."""

    def __init__(self, handle: ActivityHandle):
        self.handle = handle
        self.target: TargetRef | None = None
        self.after_state: Any = None
        self.metadata: BaseModel | None = None

    @property
    def record_id(self) -> uuid.UUID | None:
        return self.handle.record_id

    def set_target(
        self,
        entity_type: EntityType,
        entity_id: str | None = None,
        entity_name: str | None = None,
        platform: str | None = None,
    ) -> None:
        self.target = TargetRef(
            entity_type=entity_type,
            entity_id=entity_id,
            entity_name=entity_name,
            platform=platform,
        )

    def set_result(self, after_state: Any = None, metadata: BaseModel | None = None) -> None:
        self.after_state = after_state
        if metadata is not None:
            self.metadata = metadata

    def outcome(self, error: BaseException | None = None) -> OperationOutcome:
        return OperationOutcome(
            error=error,
            timed_out=is_interruption(error),
            target=self.target,
            after_state=self.after_state,
            metadata=self.metadata,
        )


class ActivityInterceptor:

    def __init__(
        self,
        store: RecordStore | None = None,
        settings: Settings | None = None,
        risk_scorer: RiskScorer | None = None,
        performance: PerformanceCollector | None = None,
        executor: Executor | None = None,
        clock: Clock = utc_now,
    ):
        self.settings = settings or get_settings()
        self.clock = clock
        self.store = store or RecordStore(settings=self.settings, clock=clock)
        self.sanitizer = Sanitizer(self.settings.SENSITIVE_FIELDS)
        self.risk_scorer = risk_scorer or RiskScorer(self.store, self.settings, clock)
        self.performance = performance or PerformanceCollector(self.settings.SLOW_OPERATION_MS)
        self._executor = executor
        self._owns_executor = executor is None
        self._executor_lock = threading.Lock()

    @property
    def executor(self) -> Executor:
        with self._executor_lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=self.settings.FINALIZER_WORKERS,
                    thread_name_prefix="audit-finalizer",
                )
            return self._executor

    def shutdown(self, wait: bool = True) -> None:
        """Drain pending finalizations. Only shuts down an executor we created."""
        with self._executor_lock:
            if self._owns_executor and self._executor is not None:
                self._executor.shutdown(wait=wait)
                self._executor = None

    # --- Pre-phase ---

    def before(self, descriptor: OperationDescriptor | dict) -> ActivityHandle:
        if isinstance(descriptor, dict):
            descriptor = OperationDescriptor.model_validate(descriptor)

        before_state = self.sanitizer.sanitize_snapshot(descriptor.before_state)
        metadata = (
            descriptor.metadata.model_dump(mode="json")
            if descriptor.metadata is not None else None
        )

        record_id = None
        try:
            record_id = self.store.create_pending(descriptor, before_state, metadata)
        except Exception:
            logger.exception(
                "Failed to write PENDING activity record (kind=%s actor=%s)",
                descriptor.kind.value, descriptor.actor_id,
            )

        return ActivityHandle(
            record_id=record_id,
            descriptor=descriptor,
            before_state=before_state,
            sample=self.performance.start(),
        )

    # --- Post-phase ---

    def after(
        self, handle: ActivityHandle, outcome: OperationOutcome | None = None
    ) -> Future | None:
        """
        Finalize the record in the background.

        Returns the future of the background write, or None when
        there is nothing to write (detached handle, already
        finalized, or the finalization could not be built).
        """
        if not handle.claim():
            logger.debug("Activity handle %s already finalized", handle.record_id)
            return None

        outcome = outcome or OperationOutcome()
        metrics = handle.sample.finish()

        if handle.detached:
            logger.warning(
                "Activity for %s by %s completed without a record (duration_ms=%s)",
                handle.descriptor.kind.value, handle.descriptor.actor_id,
                metrics.duration_ms,
            )
            return None

        try:
            finalization = self._build_finalization(handle, outcome, metrics)
            return self.executor.submit(self._finalize, handle.record_id, finalization)
        except Exception:
            logger.exception("Failed to schedule finalization of %s", handle.record_id)
            return None

    def _build_finalization(
        self,
        handle: ActivityHandle,
        outcome: OperationOutcome,
        metrics: PerformanceMetrics,
    ) -> Finalization:
        if outcome.timed_out:
            status = ActivityStatus.TIMEOUT
        elif outcome.error is not None:
            status = ActivityStatus.FAILURE
        else:
            status = ActivityStatus.SUCCESS

        error_code = error_message = error_detail = None
        if outcome.error is not None:
            exc = outcome.error
            # SystemExit.code is the exit status, not an error code
            code = getattr(exc, "code", None)
            error_code = code if isinstance(code, str) and code else type(exc).__name__
            error_message = self.sanitizer.mask_message(str(exc)) or type(exc).__name__
            error_detail = self.sanitizer.sanitize(getattr(exc, "detail", None))
        if outcome.timed_out:
            if isinstance(outcome.error, (asyncio.CancelledError, FutureCancelled)):
                error_code = "CANCELLED"
                error_message = error_message or "Operation was cancelled"
            else:
                error_code = "TIMEOUT"
                error_message = error_message or "Operation timed out"

        after_state = self.sanitizer.sanitize_snapshot(outcome.after_state)

        metadata = None
        if outcome.metadata is not None:
            if getattr(outcome.metadata, "kind", None) != handle.descriptor.kind.value:
                logger.warning(
                    "Dropping %s metadata reported for a %s operation",
                    getattr(outcome.metadata, "kind", None),
                    handle.descriptor.kind.value,
                )
            else:
                metadata = outcome.metadata.model_dump(mode="json")

        return Finalization(
            status=status,
            completed_at=self.clock(),
            target=outcome.target,
            after_state=after_state,
            changes=compute_changes(handle.before_state, after_state),
            metadata=metadata,
            error_code=str(error_code) if error_code is not None else None,
            error_message=error_message,
            error_detail=error_detail,
            performance=metrics,
        )

    def _finalize(self, record_id: uuid.UUID, finalization: Finalization) -> None:
        """Background job. Never raises."""
        try:
            if not self.store.finalize(record_id, finalization):
                return
        except Exception:
            logger.exception(
                "Failed to finalize activity record %s as %s",
                record_id, finalization.status.value,
            )
            return

        try:
            if self.performance.is_slow(finalization.performance):
                logger.info(
                    "Slow operation on record %s (%.1f ms)",
                    record_id, finalization.performance.duration_ms,
                )
                self.store.merge_security(
                    record_id,
                    self.settings.RISK_SLOW_OPERATION_SCORE,
                    [SLOW_OPERATION],
                )
            if self.settings.SCORE_ON_WRITE:
                self.risk_scorer.score_record(record_id)
        except Exception:
            logger.exception("Risk scoring failed for activity record %s", record_id)

    # --- Wrappers ---

    @contextmanager
    def track(self, descriptor: OperationDescriptor | dict):
        """
        Track a block of business code.

            with interceptor.track(descriptor) as op:
                account = create_account(...)
                op.set_target(EntityType.ACCOUNT, str(account.id), account.name)
                op.set_result(after_state=account_snapshot)

        Exceptions from the block are recorded and re-raised unchanged.
        That includes cancellation, KeyboardInterrupt and SystemExit,
        so an interrupted block does not leave its record PENDING.
        """
        handle = self.before(descriptor)
        op = TrackedOperation(handle)
        try:
            yield op
        except BaseException as exc:
            self.after(handle, op.outcome(error=exc))
            raise
        else:
            self.after(handle, op.outcome())

    def run(
        self,
        descriptor: OperationDescriptor | dict,
        operation: Callable[[], Any],
        timeout: float | None = None,
        describe_result: Callable[[Any], OperationOutcome] | None = None,
    ) -> Any:
        """
        Run operation as a tracked invocation and return its result.

        With a timeout the operation runs on its own worker thread.
        If it has not finished in time the record is finalized as
        TIMEOUT and TimeoutError is raised; the worker is left to
        finish on its own.
        """
        handle = self.before(descriptor)

        if timeout is None:
            try:
                result = operation()
            except BaseException as exc:
                self.after(handle, OperationOutcome(
                    error=exc, timed_out=is_interruption(exc)
                ))
                raise
        else:
            worker = ThreadPoolExecutor(max_workers=1, thread_name_prefix="audit-tracked")
            try:
                result = worker.submit(operation).result(timeout=timeout)
            except FutureTimeout as exc:
                error = TimeoutError(f"Operation exceeded timeout of {timeout}s")
                self.after(handle, OperationOutcome(error=error, timed_out=True))
                raise error from exc
            except BaseException as exc:
                self.after(handle, OperationOutcome(
                    error=exc, timed_out=is_interruption(exc)
                ))
                raise
            finally:
                worker.shutdown(wait=False)

        outcome = OperationOutcome()
        if describe_result is not None:
            try:
                outcome = describe_result(result)
            except Exception:
                logger.exception(
                    "Could not describe result of %s", handle.descriptor.kind.value
                )
        self.after(handle, outcome)
        return result

    def tracked(
        self,
        describe: Callable[..., OperationDescriptor],
        describe_result: Callable[[Any], OperationOutcome] | None = None,
        timeout: float | None = None,
    ):
        """
        Decorator form of run.

        describe receives the wrapped function's arguments and
        returns the descriptor for that call.
        """
        def decorator(func):
            @functools.wraps(func)
            def wrapper(*args, **kwargs):
                descriptor = describe(*args, **kwargs)
                return self.run(
                    descriptor,
                    lambda: func(*args, **kwargs),
                    timeout=timeout,
                    describe_result=describe_result,
                )
            return wrapper
        return decorator

"""Durable job queue backed by the queue_entries table.

The queue is a transport: it schedules job ids for workers and keeps retry and lease
bookkeeping. It never decides whether a job finished; the job record does.

Transport failures (database unreachable, enqueue timeout) raise QueueUnavailableError.
There is no silent fallback that drops work.
"""

import asyncio
import secrets
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Optional
from uuid import UUID

import structlog
from sqlalchemy import exc as sa_exc

from atelier.core.timezone import utcnow
from atelier.models.queue_entry import QueueEntry, QueueEntryStatus
from atelier.models.rate_limit import RateLimitHit
from atelier.services.exceptions import QueueUnavailableError
from atelier.services.queue.backoff import BackoffPolicy, BackoffType
from atelier.uow import UnitOfWorkFactory

logger = structlog.get_logger(__name__)

MIN_RATE_WAIT_SECONDS = 0.01

TRANSPORT_ERRORS = (
    sa_exc.OperationalError,
    sa_exc.InterfaceError,
    sa_exc.TimeoutError,
    OSError,
    asyncio.TimeoutError,
)


@dataclass(frozen=True)
class EnqueueOptions:
    """Per-entry delivery options.

    Attributes:
        attempts: Maximum deliveries before the entry fails for good
        backoff: Delay policy between failed deliveries
        priority: 1 (most urgent) to 10
        delay_ms: Initial delay before the first delivery
    """

    attempts: int = 3
    backoff: BackoffPolicy = field(default_factory=BackoffPolicy)
    priority: int = 5
    delay_ms: int = 0


@dataclass(frozen=True)
class RetentionPolicy:
    """How long finished entries are kept."""

    completed_age_seconds: int = 24 * 3600
    completed_count: int = 1000
    failed_age_seconds: int = 7 * 24 * 3600


@dataclass
class QueueMetrics:
    """Entry counts per outcome bucket.

    While a queue is paused its waiting entries are reported under ``paused``.
    """

    waiting: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
    delayed: int = 0
    paused: int = 0

    @property
    def total(self) -> int:
        return (
            self.waiting + self.active + self.completed + self.failed + self.delayed + self.paused
        )

    def as_dict(self) -> dict[str, int]:
        return {
            "waiting": self.waiting,
            "active": self.active,
            "completed": self.completed,
            "failed": self.failed,
            "delayed": self.delayed,
            "paused": self.paused,
            "total": self.total,
        }


@dataclass(frozen=True)
class FailureOutcome:
    """Result of reporting a failed delivery.

    Attributes:
        status: "retrying", "failed", or "stale" when the lease was already lost
        attempts_made: Deliveries consumed so far
        run_at: Next eligible run when retrying
    """

    status: str
    attempts_made: int
    run_at: Optional[datetime] = None


@dataclass(frozen=True)
class StalledEntry:
    """A lease that expired without heartbeat, and what the queue did about it."""

    entry_id: UUID
    job_id: Optional[UUID]
    worker_id: Optional[str]
    redelivered: bool
    stalled_count: int


class JobQueue:
    """Queue operations for every job type, shared by producers and workers.

    Args:
        uow_factory: Factory producing UnitOfWork instances
        enqueue_timeout_seconds: Hard cap on a single enqueue
        retention: Pruning policy for finished entries
    """

    def __init__(
        self,
        uow_factory: UnitOfWorkFactory,
        enqueue_timeout_seconds: float = 5.0,
        retention: Optional[RetentionPolicy] = None,
    ):
        self.uow_factory = uow_factory
        self.enqueue_timeout_seconds = enqueue_timeout_seconds
        self.retention = retention or RetentionPolicy()

    @asynccontextmanager
    async def _transport(self, operation: str):
        """Open a unit of work, mapping transport failures to QueueUnavailableError."""
        try:
            async with await self.uow_factory() as uow:
                yield uow
        except TRANSPORT_ERRORS as e:
            logger.error("queue.unavailable", operation=operation, error=str(e))
            raise QueueUnavailableError(
                f"Queue transport unavailable during {operation}: {e}"
            ) from e

    # Producer side

    async def enqueue(
        self,
        job_type: str,
        payload: dict[str, Any],
        options: Optional[EnqueueOptions] = None,
    ) -> QueueEntry:
        """Accept a job for eventual execution.

        Never runs the payload inline. Idempotent per job id: while an open entry for
        ``payload["job_id"]`` exists it is returned instead of a new one.

        Args:
            job_type: Queue name
            payload: Minimal context, normally {"job_id": ..., "user_id": ...}
            options: Delivery options (defaults to 3 attempts, exponential 30s backoff)

        Returns:
            The queue entry carrying the payload

        Raises:
            QueueUnavailableError: If the transport is down or the enqueue times out
        """
        options = options or EnqueueOptions()
        try:
            return await asyncio.wait_for(
                self._enqueue(job_type, payload, options), timeout=self.enqueue_timeout_seconds
            )
        except asyncio.TimeoutError as e:
            logger.error(
                "queue.unavailable",
                operation="enqueue",
                job_type=job_type,
                timeout=self.enqueue_timeout_seconds,
            )
            raise QueueUnavailableError(
                f"Enqueue timed out after {self.enqueue_timeout_seconds}s"
            ) from e

    async def _enqueue(
        self, job_type: str, payload: dict[str, Any], options: EnqueueOptions
    ) -> QueueEntry:
        payload = {k: str(v) if isinstance(v, UUID) else v for k, v in payload.items()}
        job_id = UUID(payload["job_id"]) if payload.get("job_id") else None
        now = utcnow()

        async with self._transport("enqueue") as uow:
            if job_id is not None:
                existing = await uow.queue_entries.get_open_for_job(job_type, job_id)
                if existing is not None:
                    logger.info(
                        "queue.entry.duplicate",
                        job_type=job_type,
                        job_id=str(job_id),
                        entry_id=str(existing.id),
                    )
                    return existing

            delayed = options.delay_ms > 0
            entry = QueueEntry(
                job_type=job_type,
                job_id=job_id,
                payload=payload,
                status=QueueEntryStatus.DELAYED if delayed else QueueEntryStatus.WAITING,
                priority=min(max(options.priority, 1), 10),
                max_attempts=max(options.attempts, 1),
                backoff_type=BackoffType(options.backoff.type).value,
                backoff_delay_ms=options.backoff.delay_ms,
                run_at=now + timedelta(milliseconds=options.delay_ms) if delayed else now,
            )
            await uow.queue_entries.add(entry)

        logger.info(
            "queue.entry.enqueued",
            job_type=job_type,
            entry_id=str(entry.id),
            job_id=str(job_id) if job_id else None,
            priority=entry.priority,
            delay_ms=options.delay_ms,
        )
        return entry

    async def retrieve(self, entry_id: UUID) -> Optional[QueueEntry]:
        """Return the current envelope state of an entry, or None if unknown."""
        async with self._transport("retrieve") as uow:
            return await uow.queue_entries.get_by_id(entry_id)

    async def remove_pending(self, job_id: UUID) -> int:
        """Delete waiting or delayed entries of a cancelled job.

        Returns:
            Number of removed entries
        """
        async with self._transport("remove_pending") as uow:
            removed = await uow.queue_entries.delete_pending_for_job(job_id)
        if removed:
            logger.info("queue.entry.removed", job_id=str(job_id), count=removed)
        return removed

    # Admission control

    async def is_paused(self, job_type: str) -> bool:
        async with self._transport("is_paused") as uow:
            return await uow.queue_states.is_paused(job_type)

    async def acquire_rate_slot(self, job_type: str, max_calls: int, duration_ms: int) -> float:
        """Take a slot in the rolling window shared by every process consuming ``job_type``.

        Counting and recording happen under the job type's queue state lock, so two
        workers cannot both take the last slot.

        Args:
            job_type: Queue name
            max_calls: Slots per window
            duration_ms: Window length in milliseconds

        Returns:
            0.0 if a slot was taken, otherwise seconds until the oldest slot frees up

        Raises:
            QueueUnavailableError: If the queue transport is down
        """
        window = timedelta(milliseconds=duration_ms)
        async with self._transport("acquire_rate_slot") as uow:
            await uow.queue_states.lock(job_type)
            now = utcnow()
            await uow.rate_limits.prune(job_type, now - window)
            used, oldest = await uow.rate_limits.window_usage(job_type)
            if used < max_calls:
                await uow.rate_limits.add(RateLimitHit(job_type=job_type, acquired_at=now))
                return 0.0
        if oldest is None:
            return MIN_RATE_WAIT_SECONDS
        return max((oldest + window - now).total_seconds(), MIN_RATE_WAIT_SECONDS)

    async def pause(self, job_type: str) -> None:
        """Stop dispatching entries of ``job_type``. Queued entries are kept."""
        async with self._transport("pause") as uow:
            await uow.queue_states.set_paused(job_type, True)
        logger.info("queue.paused", job_type=job_type)

    async def resume(self, job_type: str) -> None:
        """Resume dispatching entries of ``job_type``."""
        async with self._transport("resume") as uow:
            await uow.queue_states.set_paused(job_type, False)
        logger.info("queue.resumed", job_type=job_type)

    async def drain(self, job_type: str, timeout: float = 30.0, poll_interval: float = 0.5) -> int:
        """Pause dispatch and wait for in-flight entries to finish.

        Waiting and delayed entries stay queued; call resume() to dispatch them again.

        Args:
            job_type: Queue name
            timeout: Maximum seconds to wait for active entries
            poll_interval: Seconds between checks

        Returns:
            Number of entries still active when the wait ended (0 on a clean drain)
        """
        await self.pause(job_type)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            async with self._transport("drain") as uow:
                active = await uow.queue_entries.count_active(job_type)
            if active == 0 or loop.time() >= deadline:
                break
            await asyncio.sleep(poll_interval)

        logger.info("queue.drained", job_type=job_type, still_active=active)
        return active

    async def metrics(self, job_type: str) -> QueueMetrics:
        """Count entries per outcome bucket."""
        async with self._transport("metrics") as uow:
            counts = await uow.queue_entries.count_by_status(job_type)
            paused = await uow.queue_states.is_paused(job_type)

        metrics = QueueMetrics(
            waiting=counts[QueueEntryStatus.WAITING],
            active=counts[QueueEntryStatus.ACTIVE],
            completed=counts[QueueEntryStatus.COMPLETED],
            failed=counts[QueueEntryStatus.FAILED],
            delayed=counts[QueueEntryStatus.DELAYED],
        )
        if paused:
            metrics.paused, metrics.waiting = metrics.waiting, 0
        return metrics

    async def clean(self, job_type: str, now: Optional[datetime] = None) -> int:
        """Apply the retention policy to finished entries.

        Returns:
            Number of pruned entries
        """
        now = now or utcnow()
        async with self._transport("clean") as uow:
            pruned = await uow.queue_entries.prune(
                job_type,
                completed_before=now - timedelta(seconds=self.retention.completed_age_seconds),
                completed_keep=self.retention.completed_count,
                failed_before=now - timedelta(seconds=self.retention.failed_age_seconds),
            )
        if pruned:
            logger.debug("queue.entries.pruned", job_type=job_type, count=pruned)
        return pruned

    # Worker side

    async def claim(
        self, job_type: str, worker_id: str, lease_seconds: int
    ) -> Optional[QueueEntry]:
        """Lease the next runnable entry, or return None (empty or paused queue)."""
        now = utcnow()
        async with self._transport("claim") as uow:
            if await uow.queue_states.is_paused(job_type):
                return None
            return await uow.queue_entries.claim_next(
                job_type,
                now=now,
                lease_token=secrets.token_hex(16),
                lease_expires_at=now + timedelta(seconds=lease_seconds),
                worker_id=worker_id,
            )

    async def heartbeat(self, entry: QueueEntry, lease_seconds: int) -> bool:
        """Extend the lease of an entry this worker holds.

        Returns:
            False if the lease was lost
        """
        async with self._transport("heartbeat") as uow:
            return await uow.queue_entries.extend_lease(
                entry.id,
                entry.lease_token or "",
                until=utcnow() + timedelta(seconds=lease_seconds),
            )

    async def complete(self, entry: QueueEntry, result: Optional[dict] = None) -> bool:
        """Mark a leased entry completed.

        Returns:
            False if the lease was stale (entry re-delivered elsewhere)
        """
        now = utcnow()
        async with self._transport("complete") as uow:
            return await uow.queue_entries.finish_leased(
                entry.id,
                entry.lease_token or "",
                status=QueueEntryStatus.COMPLETED,
                attempts_made=entry.attempts_made + 1,
                result=result,
                last_error=None,
                finished_at=now,
            )

    async def fail(self, entry: QueueEntry, error: str, retryable: bool = True) -> FailureOutcome:
        """Report a failed delivery.

        The entry is rescheduled under its backoff policy unless the error is not
        retryable or attempts are exhausted, in which case it fails for good.
        """
        now = utcnow()
        attempts_made = entry.attempts_made + 1
        exhausted = attempts_made >= entry.max_attempts
        policy = BackoffPolicy(
            type=BackoffType(entry.backoff_type), delay_ms=entry.backoff_delay_ms
        )

        if retryable and not exhausted:
            run_at = now + timedelta(milliseconds=policy.delay_for(attempts_made))
            values: dict[str, Any] = {
                "status": QueueEntryStatus.DELAYED,
                "run_at": run_at,
                "worker_id": None,
            }
            outcome = FailureOutcome("retrying", attempts_made, run_at)
        else:
            values = {"status": QueueEntryStatus.FAILED, "finished_at": now}
            outcome = FailureOutcome("failed", attempts_made)

        async with self._transport("fail") as uow:
            applied = await uow.queue_entries.finish_leased(
                entry.id,
                entry.lease_token or "",
                attempts_made=attempts_made,
                last_error=error[:2000],
                **values,
            )
        if not applied:
            return FailureOutcome("stale", entry.attempts_made)
        return outcome

    async def recover_stalled(
        self, job_type: str, max_stalled_count: int
    ) -> list[StalledEntry]:
        """Re-deliver (or fail) active entries whose lease expired.

        Args:
            job_type: Queue name
            max_stalled_count: Re-deliveries allowed per entry before it fails

        Returns:
            One StalledEntry per recovered entry
        """
        now = utcnow()
        recovered: list[StalledEntry] = []
        async with self._transport("recover_stalled") as uow:
            for entry in await uow.queue_entries.get_stalled(job_type, now):
                redeliver = entry.stalled_count < max_stalled_count
                stalled_worker = entry.worker_id
                entry.stalled_count += 1
                entry.lease_token = None
                entry.lease_expires_at = None
                entry.worker_id = None
                if redeliver:
                    entry.status = QueueEntryStatus.WAITING
                    entry.run_at = now
                else:
                    entry.status = QueueEntryStatus.FAILED
                    entry.attempts_made += 1
                    entry.last_error = "job stalled more than allowable limit"
                    entry.finished_at = now
                uow.session.add(entry)
                recovered.append(
                    StalledEntry(
                        entry_id=entry.id,
                        job_id=entry.job_id,
                        worker_id=stalled_worker,
                        redelivered=redeliver,
                        stalled_count=entry.stalled_count,
                    )
                )
        return recovered

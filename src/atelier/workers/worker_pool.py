"""Worker pool consuming one job type from the durable queue.

Each executor loops over claim → handle → ack:
1. Claim the next runnable entry under a lease (skipped while the queue is paused)
2. Wait for a slot in the rate limit window shared by every pool of the job type
3. Run the handler while a heartbeat task keeps extending the lease
4. Ack: complete on success, fail (retry or give up) on error

Acks carry the lease token, so an executor whose lease expired cannot complete an
entry that was already re-delivered. A separate loop re-delivers stalled entries.
"""

import asyncio
import inspect
import os
import secrets
import socket
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

import structlog

from atelier.context import EngineContext
from atelier.models.queue_entry import QueueEntry
from atelier.services.exceptions import QueueUnavailableError, ServiceError
from atelier.services.queue.job_queue import StalledEntry
from atelier.services.queue.rate_limiter import SharedRateLimiter

logger = structlog.get_logger(__name__)

Handler = Callable[[QueueEntry], Awaitable[Optional[dict[str, Any]]]]
Listener = Callable[[dict[str, Any]], Any]

ERROR_BACKOFF_SECONDS = 5


@dataclass(frozen=True)
class RateLimit:
    """At most ``max`` jobs per rolling ``duration_ms`` window across the pool."""

    max: int
    duration_ms: int


class WorkerEvent(str, Enum):
    STARTED = "started"
    COMPLETED = "completed"
    FAILED = "failed"
    STALLED = "stalled"


def default_worker_id() -> str:
    return f"{socket.gethostname()}-{os.getpid()}-{secrets.token_hex(3)}"


class WorkerPool:
    """Bounded pool of executors for a single job type.

    Args:
        context: Engine context (queue and settings)
        job_type: Queue name consumed by this pool
        handler: Coroutine called with each claimed entry; its return value is stored
            as the entry result
        concurrency: Number of executors
        rate_limit: Optional limit shared by all executors and worker processes
        lease_seconds: Lease length; the heartbeat renews it every third of that
        poll_interval: Sleep between empty claims
        stalled_check_seconds: Interval of the stalled-entry sweep
        max_stalled_count: Re-deliveries allowed per entry before it fails
        worker_id: Identifier recorded on claimed entries
    """

    def __init__(
        self,
        context: EngineContext,
        job_type: str,
        handler: Handler,
        concurrency: int = 1,
        rate_limit: Optional[RateLimit] = None,
        lease_seconds: Optional[int] = None,
        poll_interval: Optional[float] = None,
        stalled_check_seconds: Optional[float] = None,
        max_stalled_count: Optional[int] = None,
        worker_id: Optional[str] = None,
    ):
        settings = context.settings
        self.context = context
        self.queue = context.queue
        self.job_type = job_type
        self.handler = handler
        self.concurrency = max(concurrency, 1)
        self.lease_seconds = lease_seconds or settings.queue_lease_seconds
        self.poll_interval = (
            settings.queue_poll_interval_seconds if poll_interval is None else poll_interval
        )
        self.stalled_check_seconds = stalled_check_seconds or settings.queue_stalled_check_seconds
        self.max_stalled_count = (
            settings.queue_max_stalled_count if max_stalled_count is None else max_stalled_count
        )
        self.worker_id = worker_id or default_worker_id()
        self.limiter = (
            SharedRateLimiter(context.queue, job_type, rate_limit.max, rate_limit.duration_ms)
            if rate_limit
            else None
        )
        self._listeners: dict[WorkerEvent, list[Listener]] = {event: [] for event in WorkerEvent}
        self._tasks: list[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    def on(self, event: WorkerEvent | str, listener: Listener) -> None:
        """Register a listener called with the event payload dict (sync or async)."""
        self._listeners[WorkerEvent(event)].append(listener)

    async def _emit(self, event: WorkerEvent, **payload: Any) -> None:
        for listener in self._listeners[event]:
            try:
                result = listener(payload)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(
                    "worker.listener.failed",
                    job_type=self.job_type,
                    worker_event=event.value,
                    error=str(e),
                    error_type=type(e).__name__,
                    exc_info=True,
                )

    async def process_next(self) -> bool:
        """Run one claim/handle/ack cycle.

        Returns:
            True if an entry was claimed and handled, False if none was runnable

        Raises:
            QueueUnavailableError: If the queue transport is down
        """
        entry = await self.queue.claim(self.job_type, self.worker_id, self.lease_seconds)
        if entry is None:
            return False

        heartbeat = asyncio.create_task(self._heartbeat(entry))
        try:
            if self.limiter is not None:
                await self.limiter.acquire()
            await self._handle(entry)
        finally:
            heartbeat.cancel()
            await asyncio.gather(heartbeat, return_exceptions=True)
        return True

    async def _handle(self, entry: QueueEntry) -> None:
        log = logger.bind(
            job_type=self.job_type,
            entry_id=str(entry.id),
            job_id=str(entry.job_id) if entry.job_id else None,
            attempt=entry.attempts_made + 1,
            worker_id=self.worker_id,
        )
        log.info("worker.job.started")
        await self._emit(WorkerEvent.STARTED, entry=entry)

        try:
            result = await self.handler(entry)
        except asyncio.CancelledError:
            # Lease expires and the stalled sweep re-delivers the entry
            raise
        except Exception as e:
            retryable = e.retryable if isinstance(e, ServiceError) else True
            outcome = await self.queue.fail(entry, str(e) or type(e).__name__, retryable)
            if outcome.status == "stale":
                log.warning("worker.lease.lost", stage="fail", error=str(e))
                return
            log.warning(
                "worker.job.failed",
                error=str(e),
                error_type=type(e).__name__,
                retryable=retryable,
                outcome=outcome.status,
                attempts_made=outcome.attempts_made,
                run_at=outcome.run_at.isoformat() if outcome.run_at else None,
            )
            await self._emit(WorkerEvent.FAILED, entry=entry, error=e, outcome=outcome)
            return

        if not await self.queue.complete(entry, result):
            log.warning("worker.lease.lost", stage="complete")
            return
        log.info("worker.job.completed", result_status=(result or {}).get("status"))
        await self._emit(WorkerEvent.COMPLETED, entry=entry, result=result)
        await self.queue.clean(self.job_type)

    async def _heartbeat(self, entry: QueueEntry) -> None:
        interval = max(self.lease_seconds / 3, 0.1)
        while True:
            await asyncio.sleep(interval)
            try:
                if not await self.queue.heartbeat(entry, self.lease_seconds):
                    logger.warning(
                        "worker.lease.lost", entry_id=str(entry.id), stage="heartbeat"
                    )
                    return
            except QueueUnavailableError as e:
                logger.warning("worker.heartbeat.failed", entry_id=str(entry.id), error=str(e))

    async def check_stalled(self) -> list[StalledEntry]:
        """Run one stalled-entry sweep and emit ``stalled`` for each recovered entry."""
        recovered = await self.queue.recover_stalled(self.job_type, self.max_stalled_count)
        for stalled in recovered:
            logger.warning(
                "worker.job.stalled",
                job_type=self.job_type,
                entry_id=str(stalled.entry_id),
                job_id=str(stalled.job_id) if stalled.job_id else None,
                stalled_worker=stalled.worker_id,
                redelivered=stalled.redelivered,
                stalled_count=stalled.stalled_count,
            )
            await self._emit(WorkerEvent.STALLED, stalled=stalled)
        return recovered

    async def _executor(self, index: int) -> None:
        while True:
            try:
                if not await self.process_next():
                    await asyncio.sleep(self.poll_interval)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(
                    "worker.error",
                    job_type=self.job_type,
                    executor=index,
                    error_type=type(e).__name__,
                    error_message=str(e),
                    exc_info=True,
                )
                await asyncio.sleep(ERROR_BACKOFF_SECONDS)

    async def _stalled_loop(self) -> None:
        while True:
            try:
                await self.check_stalled()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(
                    "worker.stalled_check.error",
                    job_type=self.job_type,
                    error_type=type(e).__name__,
                    error_message=str(e),
                )
            await asyncio.sleep(self.stalled_check_seconds)

    def start(self) -> None:
        """Spawn the executors and the stalled-entry sweep."""
        if self.running:
            return
        self._tasks = [
            asyncio.create_task(self._executor(i), name=f"{self.job_type}-executor-{i}")
            for i in range(self.concurrency)
        ]
        self._tasks.append(
            asyncio.create_task(self._stalled_loop(), name=f"{self.job_type}-stalled-check")
        )
        logger.info(
            "worker.started",
            job_type=self.job_type,
            worker_id=self.worker_id,
            concurrency=self.concurrency,
            rate_limit_max=self.limiter.max_calls if self.limiter else None,
        )

    async def wait(self) -> None:
        """Block until the pool's tasks end (normally only through cancellation)."""
        await asyncio.gather(*self._tasks)

    async def stop(self) -> None:
        """Cancel all executors. Entries they held are re-delivered after lease expiry."""
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info("worker.stopped", job_type=self.job_type, worker_id=self.worker_id)


def subscribe(
    context: EngineContext,
    job_type: str,
    handler: Handler,
    concurrency: Optional[int] = None,
    rate_limit: Optional[RateLimit] = None,
    **options: Any,
) -> WorkerPool:
    """Start consuming ``job_type`` with ``handler``.

    Concurrency and rate limit default to WORKER_CONCURRENCY and
    RATE_LIMIT_MAX per RATE_LIMIT_DURATION_MS.

    Returns:
        The started pool
    """
    settings = context.settings
    if rate_limit is None and settings.rate_limit_max > 0:
        rate_limit = RateLimit(settings.rate_limit_max, settings.rate_limit_duration_ms)
    pool = WorkerPool(
        context,
        job_type,
        handler,
        concurrency=concurrency or settings.worker_concurrency,
        rate_limit=rate_limit,
        **options,
    )
    pool.start()
    return pool

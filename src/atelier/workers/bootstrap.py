"""Consolidated worker bootstrap, parameterized by job type and provider.

One process consumes one job type. The provider adapter is resolved once here and
never re-resolved per job.
"""

import asyncio
from typing import Optional

import structlog

from atelier.context import EngineContext
from atelier.services.providers.base import ProviderKind, provider_mode
from atelier.services.providers.registry import build_provider
from atelier.workers.job_processor import GenerationJobProcessor
from atelier.workers.reconciliation import run_reconciliation, stalled_listener
from atelier.workers.worker_pool import WorkerEvent, WorkerPool, subscribe

logger = structlog.get_logger(__name__)


def start_generation_pool(
    context: EngineContext,
    job_type: Optional[str] = None,
    provider_kind: Optional[ProviderKind | str] = None,
) -> WorkerPool:
    """Build the provider and processor, then subscribe a pool to ``job_type``.

    Args:
        context: Engine context
        job_type: Queue to consume (defaults to WORKER_JOB_TYPE)
        provider_kind: Provider adapter (defaults to WORKER_PROVIDER)

    Returns:
        The started pool with the stalled-entry listener registered
    """
    settings = context.settings
    job_type = job_type or settings.worker_job_type
    provider = build_provider(
        provider_kind or settings.worker_provider, settings, context.http_client
    )
    processor = GenerationJobProcessor(context, provider)

    pool = subscribe(context, job_type, processor)
    pool.on(WorkerEvent.STALLED, stalled_listener(context))
    logger.info(
        "worker.provider.resolved",
        job_type=job_type,
        provider=provider.kind.value,
        mode=provider_mode(provider).value,
    )
    return pool


async def run_generation_worker(
    context: EngineContext,
    job_type: Optional[str] = None,
    provider_kind: Optional[ProviderKind | str] = None,
) -> None:
    """Run a generation worker pool plus the reconciliation sweeps until cancelled."""
    pool = start_generation_pool(context, job_type, provider_kind)
    reconciliation = asyncio.create_task(run_reconciliation(context))
    try:
        await asyncio.gather(pool.wait(), reconciliation)
    finally:
        reconciliation.cancel()
        await asyncio.gather(reconciliation, return_exceptions=True)
        await pool.stop()

"""Background workers for generation job processing."""

from atelier.workers.bootstrap import run_generation_worker, start_generation_pool
from atelier.workers.job_processor import GenerationJobProcessor
from atelier.workers.reconciliation import reconcile_once, run_reconciliation
from atelier.workers.worker_pool import RateLimit, WorkerEvent, WorkerPool, subscribe

__all__ = [
    "run_generation_worker",
    "start_generation_pool",
    "GenerationJobProcessor",
    "reconcile_once",
    "run_reconciliation",
    "RateLimit",
    "WorkerEvent",
    "WorkerPool",
    "subscribe",
]

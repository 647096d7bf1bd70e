"""Operator CLI for the generation job engine.

Usage:
    python -m atelier.cli COMMAND [OPTIONS]

Examples:
    # Run a worker for quilt designs through Replicate
    python -m atelier.cli worker --job-type quilt-design --provider replicate

    # Show queue counts
    python -m atelier.cli queue-status --job-type generate

    # Re-queue a failed job with a fresh attempt budget
    python -m atelier.cli retry-job 5f0c...

    # Stop dispatching, then resume
    python -m atelier.cli pause --job-type generate
    python -m atelier.cli resume --job-type generate

    # Run the reconciliation sweeps once
    python -m atelier.cli reconcile
"""

import asyncio
import sys
from argparse import ArgumentParser, Namespace
from typing import Optional, Sequence
from uuid import UUID

import structlog

from atelier.context import EngineContext, build_context
from atelier.core.config import Settings, configure_logging
from atelier.models.job import InvalidStateTransition
from atelier.services.exceptions import JobValidationError, QueueUnavailableError
from atelier.services.job_service import retry_job
from atelier.services.providers.base import ProviderKind
from atelier.workers.bootstrap import run_generation_worker
from atelier.workers.reconciliation import reconcile_once

logger = structlog.get_logger()


def parse_args(argv: Optional[Sequence[str]] = None) -> Namespace:
    """Parse command-line arguments."""
    parser = ArgumentParser(description="Generation job engine operations")
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose logging (DEBUG level)",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    worker = commands.add_parser("worker", help="Run a worker pool until interrupted")
    worker.add_argument("--job-type", help="Queue to consume (default: WORKER_JOB_TYPE)")
    worker.add_argument(
        "--provider",
        choices=[kind.value for kind in ProviderKind],
        help="Provider adapter (default: WORKER_PROVIDER)",
    )

    status = commands.add_parser("queue-status", help="Print queue counts")
    status.add_argument("--job-type", help="Queue name (default: WORKER_JOB_TYPE)")

    retry = commands.add_parser("retry-job", help="Re-queue a failed job")
    retry.add_argument("job_id", type=UUID, help="Job id")

    for name, text in (("pause", "Stop dispatching a queue"), ("resume", "Resume a queue")):
        command = commands.add_parser(name, help=text)
        command.add_argument("--job-type", help="Queue name (default: WORKER_JOB_TYPE)")

    drain = commands.add_parser("drain", help="Pause a queue and wait for active jobs")
    drain.add_argument("--job-type", help="Queue name (default: WORKER_JOB_TYPE)")
    drain.add_argument("--timeout", type=float, default=30.0, help="Seconds to wait")

    commands.add_parser("reconcile", help="Run the reconciliation sweeps once")

    return parser.parse_args(argv)


async def run_command(args: Namespace, context: EngineContext) -> int:
    """Execute a parsed command.

    Returns:
        Exit code
    """
    job_type = getattr(args, "job_type", None) or context.settings.worker_job_type

    if args.command == "worker":
        await run_generation_worker(context, job_type, args.provider)
        return 0

    if args.command == "queue-status":
        metrics = await context.queue.metrics(job_type)
        paused = await context.queue.is_paused(job_type)
        print(f"Queue: {job_type}{' (paused)' if paused else ''}")
        for name, count in metrics.as_dict().items():
            print(f"  {name:<10} {count}")
        return 0

    if args.command == "retry-job":
        try:
            job = await retry_job(context, args.job_id)
        except (JobValidationError, InvalidStateTransition) as e:
            print(f"Error: {e}", file=sys.stderr)
            return 1
        print(f"Job {job.id} re-queued on {job.job_type}")
        return 0

    if args.command == "pause":
        await context.queue.pause(job_type)
        print(f"Queue {job_type} paused")
        return 0

    if args.command == "resume":
        await context.queue.resume(job_type)
        print(f"Queue {job_type} resumed")
        return 0

    if args.command == "drain":
        remaining = await context.queue.drain(job_type, timeout=args.timeout)
        print(f"Queue {job_type} paused, {remaining} job(s) still active")
        return 0 if remaining == 0 else 2

    report = await reconcile_once(context)
    print(
        f"Stuck jobs failed: {report.stuck_failed}\n"
        f"Retries re-queued: {report.retries_requeued}\n"
        f"Old jobs deleted: {report.jobs_deleted}"
    )
    return 0


async def async_main(argv: Optional[Sequence[str]] = None) -> int:
    """Main CLI entry point (async).

    Returns:
        Exit code: 0 (success), 1 (error), 2 (drain timed out), 130 (interrupted)
    """
    args = parse_args(argv)

    settings = Settings()  # type: ignore[call-arg]
    if args.verbose:
        settings.log_level = "DEBUG"
    configure_logging(settings)
    logger.info("cli.started", command=args.command)

    context = build_context(settings)
    try:
        return await run_command(args, context)

    except QueueUnavailableError as e:
        logger.error("cli.queue_unavailable", error=str(e))
        print(f"\nError: {e}", file=sys.stderr)
        return 1

    except KeyboardInterrupt:
        logger.info("cli.interrupted")
        return 130  # Standard exit code for SIGINT

    finally:
        await context.aclose()


def main() -> None:
    """Synchronous entry point for CLI."""
    sys.exit(asyncio.run(async_main()))


if __name__ == "__main__":
    main()

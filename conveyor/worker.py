"""Worker process entrypoint and operator CLI.

Usage:
    python -m conveyor.worker                  # run the worker pool
    conveyor-worker --workers 2                # run is the default subcommand
    conveyor-worker run --workers 8
    conveyor-worker enqueue build --payload '{"deployment_id": "..."}'
    conveyor-worker rollback <deployment-id>
    conveyor-worker jobs --status failed
"""

import argparse
import asyncio
import json
import signal
import sys
from typing import Optional
from uuid import UUID

import structlog
from prometheus_client import start_http_server

from conveyor.config import get_settings
from conveyor.core.lifespan import create_db_pool, lifespan
from conveyor.core.logging import configure_logging
from conveyor.core.sentry import init_sentry
from conveyor.errors import ConveyorError, PermanentJobError
from conveyor.jobs.models import decode_payload
from conveyor.jobs.types import JobStatus, JobType
from conveyor.repositories.deployments import DeploymentRepository
from conveyor.repositories.jobs import JobRepository

logger = structlog.get_logger(__name__)


async def cmd_run(args: argparse.Namespace) -> int:
    """Run the worker pool until SIGINT/SIGTERM, then drain."""
    import conveyor.jobs.handlers  # noqa: F401
    from conveyor.jobs.pool import WorkerPool

    settings = get_settings()
    if args.workers:
        settings = settings.model_copy(update={"worker_count": args.workers})

    async with lifespan(settings) as resources:
        pool = WorkerPool.from_settings(resources.jobs, resources.context, settings)
        stop = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop.set)

        if settings.metrics_port:
            start_http_server(settings.metrics_port)
            logger.info("metrics_server_started", port=settings.metrics_port)
        pool.start()
        logger.info("conveyor_worker_running", workers=settings.worker_count)
        await stop.wait()
        logger.info("conveyor_worker_shutdown_requested")
        await pool.stop(timeout=args.drain_timeout)
    return 0


async def cmd_enqueue(args: argparse.Namespace) -> int:
    """Validate a payload and insert a pending job."""
    settings = get_settings()
    try:
        job_type = JobType(args.job_type)
        raw = json.loads(args.payload)
        payload = decode_payload(job_type, raw)
    except (ValueError, PermanentJobError) as e:
        print(f"Invalid job: {e}", file=sys.stderr)
        return 2

    pool = await create_db_pool(settings)
    try:
        job = await JobRepository(pool).create(
            job_type,
            payload.to_dict(),
            max_attempts=args.max_attempts or settings.job_max_attempts,
        )
    finally:
        await pool.close()
    print(json.dumps({"job_id": str(job.id), "type": job_type.value}))
    return 0


async def cmd_rollback(args: argparse.Namespace) -> int:
    """Create a rollback deployment for a successful deployment and enqueue it."""
    from conveyor.services.rollback import request_rollback

    settings = get_settings()
    pool = await create_db_pool(settings)
    try:
        deployment, job = await request_rollback(
            DeploymentRepository(pool),
            JobRepository(pool),
            UUID(args.deployment_id),
            max_attempts=settings.job_max_attempts,
        )
    except ConveyorError as e:
        print(f"Rollback rejected: {e}", file=sys.stderr)
        return 1
    finally:
        await pool.close()
    print(json.dumps({"deployment_id": str(deployment.id), "job_id": str(job.id)}))
    return 0


async def cmd_jobs(args: argparse.Namespace) -> int:
    """List jobs, newest first."""
    settings = get_settings()
    pool = await create_db_pool(settings)
    try:
        jobs, total = await JobRepository(pool).list_jobs(
            status=args.status,
            job_type=args.job_type,
            limit=args.limit,
        )
    finally:
        await pool.close()

    print(f"{total} job(s)")
    for job in jobs:
        job_type = job.type.value if isinstance(job.type, JobType) else job.type
        print(
            f"{job.id}  {job_type:<20} {job.status.value:<10} "
            f"attempts={job.attempts}/{job.max_attempts}  {job.error or ''}"
        )
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="conveyor-worker",
        description="Conveyor job worker",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    subparsers = parser.add_subparsers(dest="command")

    run_parser = subparsers.add_parser("run", help="Run the worker pool (default)")
    run_parser.add_argument("--workers", "-w", type=int, help="Override worker_count")
    run_parser.add_argument(
        "--drain-timeout",
        type=float,
        default=None,
        help="Seconds to wait for in-flight jobs on shutdown (default: no limit)",
    )

    enqueue_parser = subparsers.add_parser("enqueue", help="Enqueue a job")
    enqueue_parser.add_argument("job_type", choices=[jt.value for jt in JobType])
    enqueue_parser.add_argument("--payload", "-p", default="{}", help="JSON payload")
    enqueue_parser.add_argument("--max-attempts", type=int, help="Override job_max_attempts")

    rollback_parser = subparsers.add_parser("rollback", help="Roll back to a deployment")
    rollback_parser.add_argument("deployment_id", help="Successful deployment to roll back to")

    jobs_parser = subparsers.add_parser("jobs", help="List jobs")
    jobs_parser.add_argument("--status", "-s", choices=[s.value for s in JobStatus])
    jobs_parser.add_argument("--type", "-t", dest="job_type", choices=[jt.value for jt in JobType])
    jobs_parser.add_argument("--limit", "-l", type=int, default=50)

    return parser


COMMANDS = {
    "run": cmd_run,
    "enqueue": cmd_enqueue,
    "rollback": cmd_rollback,
    "jobs": cmd_jobs,
}


def normalize_argv(argv: list[str]) -> list[str]:
    """Prepend ``run`` unless the first argument names a subcommand or asks for help."""
    if argv and (argv[0] in COMMANDS or argv[0] in ("-h", "--help")):
        return argv
    return ["run", *argv]


def main(argv: Optional[list[str]] = None) -> int:
    """Main entry point."""
    if argv is None:
        argv = sys.argv[1:]
    args = build_parser().parse_args(normalize_argv(argv))

    settings = get_settings()
    configure_logging(settings.log_level, settings.log_format)
    init_sentry(settings)

    return asyncio.run(COMMANDS[args.command](args))


if __name__ == "__main__":
    sys.exit(main())

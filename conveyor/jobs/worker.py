"""Job worker - claims and executes jobs from the queue."""

import asyncio
import os
import socket
import time
import traceback
from typing import Any, Optional

import structlog

from conveyor import __version__
from conveyor.errors import DeploymentCancelled, PermanentJobError
from conveyor.jobs.metrics import (
    JOB_DURATION_SECONDS,
    JOBS_IN_FLIGHT,
    JOBS_PROCESSED_TOTAL,
    LEASES_LOST_TOTAL,
)
from conveyor.jobs.models import Job, decode_payload
from conveyor.jobs.registry import JobRegistry, default_registry
from conveyor.jobs.types import JobStatus, JobType
from conveyor.repositories.jobs import JobRepository

logger = structlog.get_logger(__name__)


def generate_worker_id(index: int = 0) -> str:
    """Generate a unique worker ID: hostname:pid:n."""
    return f"{socket.gethostname()}:{os.getpid()}:{index}"


def _type_name(job_type: Any) -> str:
    return job_type.value if isinstance(job_type, JobType) else str(job_type)


class WorkerRunner:
    """One poller: claims a job, runs its handler, records the outcome.

    Processes strictly one job at a time. While a handler runs, the lease is
    extended in the background so long builds are not reaped.
    """

    def __init__(
        self,
        job_repo: JobRepository,
        context: dict[str, Any],
        stop_event: asyncio.Event,
        worker_id: Optional[str] = None,
        registry: JobRegistry = default_registry,
        poll_interval: float = 5.0,
        lease_seconds: int = 1800,
        job_types: Optional[list[JobType]] = None,
        reap_interval: Optional[float] = None,
    ):
        self._job_repo = job_repo
        self._context = context
        self._stop = stop_event
        self._worker_id = worker_id or generate_worker_id()
        self._registry = registry
        self._poll_interval = poll_interval
        self._lease_seconds = lease_seconds
        self._job_types = job_types  # None = all types
        self._reap_interval = reap_interval  # None = this runner never reaps

    @property
    def worker_id(self) -> str:
        return self._worker_id

    async def run(self) -> None:
        """Poll until the stop event is set; the in-flight job always finishes."""
        logger.info(
            "worker_started",
            worker_id=self._worker_id,
            version=__version__,
            job_types=[jt.value for jt in self._job_types] if self._job_types else "all",
            reaper=self._reap_interval is not None,
        )
        loop = asyncio.get_running_loop()
        last_reap = loop.time()

        while not self._stop.is_set():
            try:
                if self._reap_interval is not None and loop.time() - last_reap >= self._reap_interval:
                    await self._job_repo.reap_stale()
                    last_reap = loop.time()

                job = await self._job_repo.claim(
                    self._worker_id, self._lease_seconds, self._job_types
                )
                if job:
                    await self.execute(job)
                else:
                    await self._idle(self._poll_interval)

            except asyncio.CancelledError:
                logger.info("worker_cancelled", worker_id=self._worker_id)
                raise
            except Exception as e:
                logger.error(
                    "worker_loop_error",
                    worker_id=self._worker_id,
                    error=str(e),
                    traceback=traceback.format_exc(),
                )
                await self._idle(self._poll_interval)

        logger.info("worker_stopped", worker_id=self._worker_id)

    async def _idle(self, seconds: float) -> None:
        """Sleep, waking early on shutdown."""
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def execute(self, job: Job) -> None:
        """Execute a single claimed job."""
        type_name = _type_name(job.type)
        log = logger.bind(
            job_id=str(job.id),
            job_type=type_name,
            attempt=job.attempts + 1,
            worker_id=self._worker_id,
        )

        try:
            handler = self._registry.get_handler(job.type)
        except KeyError:
            error = f"No handler registered for job type: {type_name}"
            log.error("job_no_handler", error=error)
            await self._job_repo.fail_permanent(job, error)
            return

        log.info("job_executing")
        lease = asyncio.create_task(self._keep_lease(job))
        JOBS_IN_FLIGHT.inc()
        started = time.monotonic()
        try:
            payload = decode_payload(job.type, job.payload)
            result = await handler(job, payload, self._context)
        except DeploymentCancelled as e:
            log.info("job_cancelled", error=str(e))
            await self._job_repo.fail_permanent(job, str(e))
            outcome = "cancelled"
        except PermanentJobError as e:
            log.warning("job_permanent_failure", error=str(e))
            await self._job_repo.fail_permanent(job, str(e))
            outcome = "failed"
        except Exception as e:
            log.error("job_handler_failed", error=str(e), traceback=traceback.format_exc())
            updated = await self._job_repo.fail_transient(job, str(e) or type(e).__name__)
            outcome = (
                "retry" if updated is not None and updated.status == JobStatus.PENDING else "failed"
            )
        else:
            await self._job_repo.complete(job)
            log.info("job_succeeded", result=result)
            outcome = "completed"
        finally:
            JOBS_IN_FLIGHT.dec()
            JOB_DURATION_SECONDS.labels(job_type=type_name).observe(time.monotonic() - started)
            lease.cancel()
            try:
                await lease
            except asyncio.CancelledError:
                pass
        JOBS_PROCESSED_TOTAL.labels(job_type=type_name, outcome=outcome).inc()

    async def _keep_lease(self, job: Job) -> None:
        interval = max(1.0, self._lease_seconds / 3)
        while True:
            await asyncio.sleep(interval)
            try:
                if not await self._job_repo.extend_lease(job, self._lease_seconds):
                    LEASES_LOST_TOTAL.inc()
                    logger.warning("job_lease_lost", job_id=str(job.id), worker_id=self._worker_id)
                    return
            except Exception as e:
                logger.warning("job_lease_extend_failed", job_id=str(job.id), error=str(e))

"""Fixed-size pool of job pollers sharing one stop signal."""

import asyncio
from typing import Any, Optional

import structlog

from conveyor.jobs.registry import JobRegistry, default_registry
from conveyor.jobs.worker import WorkerRunner, generate_worker_id
from conveyor.repositories.jobs import JobRepository

logger = structlog.get_logger(__name__)


class WorkerPool:
    """N independent runners. Runner 0 also reaps expired leases.

    ``stop()`` signals every runner and waits for in-flight jobs to drain.
    """

    def __init__(
        self,
        job_repo: JobRepository,
        context: dict[str, Any],
        count: int = 4,
        poll_interval: float = 5.0,
        lease_seconds: int = 1800,
        reap_interval: float = 60.0,
        registry: JobRegistry = default_registry,
    ):
        if count < 1:
            raise ValueError("worker count must be at least 1")
        self._stop = asyncio.Event()
        self.runners = [
            WorkerRunner(
                job_repo,
                context,
                self._stop,
                worker_id=generate_worker_id(i),
                registry=registry,
                poll_interval=poll_interval,
                lease_seconds=lease_seconds,
                reap_interval=reap_interval if i == 0 else None,
            )
            for i in range(count)
        ]
        self._tasks: list[asyncio.Task] = []

    @classmethod
    def from_settings(
        cls,
        job_repo: JobRepository,
        context: dict[str, Any],
        settings,
        registry: JobRegistry = default_registry,
    ) -> "WorkerPool":
        return cls(
            job_repo,
            context,
            count=settings.worker_count,
            poll_interval=settings.job_poll_interval_s,
            lease_seconds=settings.job_lease_seconds,
            reap_interval=settings.job_stale_reap_interval_s,
            registry=registry,
        )

    @property
    def running(self) -> bool:
        return any(not t.done() for t in self._tasks)

    def start(self) -> None:
        if self._tasks:
            raise RuntimeError("worker pool already started")
        self._tasks = [
            asyncio.create_task(runner.run(), name=f"worker-{runner.worker_id}")
            for runner in self.runners
        ]
        logger.info("worker_pool_started", workers=len(self.runners))

    async def wait(self) -> None:
        """Block until every runner has exited."""
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    async def stop(self, timeout: Optional[float] = None) -> None:
        """Signal shutdown and drain. Runners still busy after ``timeout`` are cancelled."""
        self._stop.set()
        if not self._tasks:
            return
        done, pending = await asyncio.wait(self._tasks, timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            logger.warning("worker_pool_drain_timeout", cancelled=len(pending))
            await asyncio.gather(*pending, return_exceptions=True)
        logger.info("worker_pool_stopped", workers=len(self.runners))

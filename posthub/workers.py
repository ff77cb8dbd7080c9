"""
Worker pool draining a ``JobQueue``.

Each worker is an asyncio task looping claim -> handle -> ack/fail.  The
pool knows nothing about the queue's backing store; it only talks to the
``JobQueue`` protocol.  Handler calls are bounded by ``job_timeout`` and
a timeout counts as a failed attempt.
"""
import asyncio
import logging
from typing import Awaitable, Callable, Mapping

from posthub.errors import QueueDeliveryFailure
from posthub.jobs import Job, JobQueue

JobHandler = Callable[[Job], Awaitable[None]]


class WorkerPool:
    def __init__(
        self,
        queue: JobQueue,
        handlers: Mapping[str, JobHandler],
        *,
        concurrency: int = 4,
        job_timeout: float = 30.0,
        poll_interval: float = 0.5,
        claim_timeout: float = 5.0,
        logger: logging.Logger | None = None,
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self._queue = queue
        self._handlers = dict(handlers)
        self._concurrency = concurrency
        self._job_timeout = job_timeout
        self._poll_interval = poll_interval
        self._claim_timeout = claim_timeout
        self._log = logger or logging.getLogger(__name__)
        self._tasks: list[asyncio.Task] = []
        self._stopping = asyncio.Event()

    @property
    def running(self) -> bool:
        return any(not t.done() for t in self._tasks)

    def register(self, job_type: str, handler: JobHandler) -> None:
        self._handlers[job_type] = handler

    async def start(self) -> None:
        if self.running:
            return
        self._stopping.clear()
        self._tasks = [
            asyncio.create_task(self._run(f"worker-{i}"), name=f"posthub-worker-{i}")
            for i in range(self._concurrency)
        ]
        self._log.info("Worker pool started with %d worker(s)", self._concurrency)

    async def stop(self, grace: float = 5.0) -> None:
        """Let workers finish their current job for up to *grace* seconds, then cancel."""
        self._stopping.set()
        if not self._tasks:
            return
        _, pending = await asyncio.wait(self._tasks, timeout=grace)
        for task in pending:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        self._log.info("Worker pool stopped")

    async def _run(self, worker_id: str) -> None:
        while not self._stopping.is_set():
            try:
                handled = await self.run_once(worker_id)
            except Exception:
                self._log.exception("%s: queue unavailable, backing off", worker_id)
                handled = False
            if not handled:
                try:
                    await asyncio.wait_for(self._stopping.wait(), timeout=self._poll_interval)
                except asyncio.TimeoutError:
                    pass

    async def run_once(self, worker_id: str = "worker-0") -> bool:
        """Claim and process at most one job.  Returns False when nothing was visible."""
        await asyncio.wait_for(self._queue.reap_expired(), timeout=self._claim_timeout)
        job = await asyncio.wait_for(self._queue.claim(worker_id), timeout=self._claim_timeout)
        if job is None:
            return False
        await self._process(job, worker_id)
        return True

    async def _process(self, job: Job, worker_id: str) -> None:
        handler = self._handlers.get(job.type)
        try:
            if handler is None:
                raise LookupError(f"no handler registered for job type {job.type!r}")
            await asyncio.wait_for(handler(job), timeout=self._job_timeout)
        except asyncio.TimeoutError:
            await self._record_failure(job, worker_id, TimeoutError(f"timed out after {self._job_timeout}s"))
        except Exception as exc:
            await self._record_failure(job, worker_id, exc)
        else:
            await self._queue.ack(job.id, worker_id)
            self._log.info("%s: job %s (%s) done on attempt %d", worker_id, job.id, job.type, job.attempts)

    async def _record_failure(self, job: Job, worker_id: str, cause: BaseException) -> None:
        failure = QueueDeliveryFailure(job.id, job.type, job.attempts, cause)
        self._log.warning("%s: %s", worker_id, failure.message)
        status = await self._queue.fail(job.id, worker_id, failure.message)
        if status is not None:
            self._log.debug("%s: job %s is now %s", worker_id, job.id, status.value)

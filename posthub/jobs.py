"""
Durable notification queue.

Jobs are rows in the ``jobs`` table.  Claiming is a conditional UPDATE
(compare-and-set on status, visibility and lease) so exactly one worker
wins a given job even when several poll at once.  A claim holds a
lease; if the worker dies before ack/fail, the lease runs out and the
job becomes claimable again.  Delivery is therefore at-least-once.

Lifecycle::

    pending --claim--> in_flight --ack--> done
                          |
                          +--fail (budget left)--> pending (after backoff)
                          +--fail (no budget)----> dead_lettered

``attempts`` counts claims, so a job that fails k times and then
succeeds finishes with k + 1 attempts.
"""
import enum
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Protocol

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from posthub.models import JobRecord
from posthub.schemas import JobView, QueueStats

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobStatus(str, enum.Enum):
    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    DONE = "done"
    DEAD_LETTERED = "dead_lettered"


@dataclass(frozen=True)
class Job:
    id: int
    type: str
    payload: bytes
    attempts: int
    max_attempts: int

    def json(self) -> Any:
        return json.loads(self.payload)


def backoff_delay(attempts: int, base: float, cap: float) -> float:
    """Exponential backoff in seconds after the *attempts*-th failure, capped."""
    return min(base * (2 ** max(attempts - 1, 0)), cap)


class JobQueue(Protocol):
    async def enqueue(self, job_type: str, payload: dict[str, Any]) -> int: ...

    async def claim(self, worker_id: str) -> Job | None: ...

    async def ack(self, job_id: int, worker_id: str) -> bool: ...

    async def fail(self, job_id: int, worker_id: str, error: str) -> JobStatus | None: ...

    async def reap_expired(self) -> int: ...


class SqlJobQueue:
    """``JobQueue`` backed by the relational store."""

    # Candidates fetched per claim round; losing a CAS race moves on to the next one.
    _CLAIM_BATCH = 5

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        max_attempts: int = 3,
        backoff_base: float = 1.0,
        backoff_max: float = 60.0,
        lease_seconds: float = 60.0,
        clock: Clock = utcnow,
        logger: logging.Logger | None = None,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self._sessions = session_factory
        self.max_attempts = max_attempts
        self._backoff_base = backoff_base
        self._backoff_max = backoff_max
        self._lease = timedelta(seconds=lease_seconds)
        self._clock = clock
        self._log = logger or logging.getLogger(__name__)

    # ------------------------------------------------------------------
    # Producer side
    # ------------------------------------------------------------------

    async def enqueue(self, job_type: str, payload: dict[str, Any]) -> int:
        now = self._clock()
        record = JobRecord(
            type=job_type,
            payload=json.dumps(payload, default=str).encode(),
            status=JobStatus.PENDING.value,
            attempts=0,
            max_attempts=self.max_attempts,
            enqueued_at=now,
            next_visible_at=now,
        )
        async with self._sessions() as db:
            db.add(record)
            await db.commit()
            job_id = record.id
        self._log.info("Enqueued job %s (%s)", job_id, job_type)
        return job_id

    # ------------------------------------------------------------------
    # Worker side
    # ------------------------------------------------------------------

    def _claimable(self, now: datetime):
        return and_(
            JobRecord.attempts < JobRecord.max_attempts,
            or_(
                and_(
                    JobRecord.status == JobStatus.PENDING.value,
                    JobRecord.next_visible_at <= now,
                ),
                and_(
                    JobRecord.status == JobStatus.IN_FLIGHT.value,
                    JobRecord.lease_expires_at <= now,
                ),
            ),
        )

    async def claim(self, worker_id: str) -> Job | None:
        """Atomically take the oldest visible job, or return None when idle."""
        now = self._clock()
        async with self._sessions() as db:
            candidates = (
                await db.execute(
                    select(JobRecord.id)
                    .where(self._claimable(now))
                    .order_by(JobRecord.next_visible_at, JobRecord.id)
                    .limit(self._CLAIM_BATCH)
                )
            ).scalars().all()

            for job_id in candidates:
                result = await db.execute(
                    update(JobRecord)
                    .where(JobRecord.id == job_id, self._claimable(now))
                    .values(
                        status=JobStatus.IN_FLIGHT.value,
                        attempts=JobRecord.attempts + 1,
                        lease_expires_at=now + self._lease,
                        locked_by=worker_id,
                    )
                    .execution_options(synchronize_session=False)
                )
                await db.commit()
                if result.rowcount != 1:
                    continue  # another worker won this one
                record = await db.get(JobRecord, job_id, populate_existing=True)
                return Job(
                    id=record.id,
                    type=record.type,
                    payload=record.payload,
                    attempts=record.attempts,
                    max_attempts=record.max_attempts,
                )
        return None

    async def ack(self, job_id: int, worker_id: str) -> bool:
        """Mark the job done; False if *worker_id* no longer holds its lease."""
        async with self._sessions() as db:
            result = await db.execute(
                update(JobRecord)
                .where(
                    JobRecord.id == job_id,
                    JobRecord.status == JobStatus.IN_FLIGHT.value,
                    JobRecord.locked_by == worker_id,
                )
                .values(
                    status=JobStatus.DONE.value,
                    finished_at=self._clock(),
                    lease_expires_at=None,
                    locked_by=None,
                )
                .execution_options(synchronize_session=False)
            )
            await db.commit()
        if result.rowcount != 1:
            self._log.warning("Ack for job %s by %s ignored: lease no longer held", job_id, worker_id)
            return False
        return True

    async def fail(self, job_id: int, worker_id: str, error: str) -> JobStatus | None:
        """
        Record a failed attempt.  Returns the job's new status, or None if
        *worker_id* had already lost the lease.
        """
        now = self._clock()
        async with self._sessions() as db:
            record = await db.get(JobRecord, job_id)
            if (
                record is None
                or record.status != JobStatus.IN_FLIGHT.value
                or record.locked_by != worker_id
            ):
                self._log.warning("Fail for job %s by %s ignored: lease no longer held", job_id, worker_id)
                return None

            if record.attempts >= record.max_attempts:
                values = {"status": JobStatus.DEAD_LETTERED.value, "finished_at": now}
            else:
                delay = backoff_delay(record.attempts, self._backoff_base, self._backoff_max)
                values = {
                    "status": JobStatus.PENDING.value,
                    "next_visible_at": now + timedelta(seconds=delay),
                }
            result = await db.execute(
                update(JobRecord)
                .where(
                    JobRecord.id == job_id,
                    JobRecord.status == JobStatus.IN_FLIGHT.value,
                    JobRecord.locked_by == worker_id,
                )
                .values(last_error=error[:2000], lease_expires_at=None, locked_by=None, **values)
                .execution_options(synchronize_session=False)
            )
            await db.commit()
        if result.rowcount != 1:
            return None
        status = JobStatus(values["status"])
        if status is JobStatus.DEAD_LETTERED:
            self._log.error(
                "Job %s dead-lettered after %d attempt(s): %s", job_id, record.attempts, error
            )
        return status

    async def reap_expired(self) -> int:
        """Dead-letter in-flight jobs whose lease lapsed with no attempts left."""
        now = self._clock()
        async with self._sessions() as db:
            result = await db.execute(
                update(JobRecord)
                .where(
                    JobRecord.status == JobStatus.IN_FLIGHT.value,
                    JobRecord.lease_expires_at <= now,
                    JobRecord.attempts >= JobRecord.max_attempts,
                )
                .values(
                    status=JobStatus.DEAD_LETTERED.value,
                    finished_at=now,
                    last_error="lease expired on final attempt",
                    lease_expires_at=None,
                    locked_by=None,
                )
                .execution_options(synchronize_session=False)
            )
            await db.commit()
        if result.rowcount:
            self._log.error("Dead-lettered %d job(s) whose final lease expired", result.rowcount)
        return result.rowcount

    # ------------------------------------------------------------------
    # Operator surface
    # ------------------------------------------------------------------

    async def get(self, job_id: int) -> JobView | None:
        async with self._sessions() as db:
            record = await db.get(JobRecord, job_id)
            return _to_view(record) if record is not None else None

    async def dead_letters(self, limit: int = 100) -> list[JobView]:
        async with self._sessions() as db:
            result = await db.execute(
                select(JobRecord)
                .where(JobRecord.status == JobStatus.DEAD_LETTERED.value)
                .order_by(JobRecord.finished_at.desc(), JobRecord.id.desc())
                .limit(limit)
            )
            return [_to_view(r) for r in result.scalars().all()]

    async def retry(self, job_id: int) -> bool:
        """Requeue a dead-lettered job with a fresh attempt budget."""
        now = self._clock()
        async with self._sessions() as db:
            result = await db.execute(
                update(JobRecord)
                .where(
                    JobRecord.id == job_id,
                    JobRecord.status == JobStatus.DEAD_LETTERED.value,
                )
                .values(
                    status=JobStatus.PENDING.value,
                    attempts=0,
                    next_visible_at=now,
                    finished_at=None,
                )
                .execution_options(synchronize_session=False)
            )
            await db.commit()
        if result.rowcount == 1:
            self._log.info("Dead-lettered job %s requeued by operator", job_id)
            return True
        return False

    async def stats(self) -> QueueStats:
        async with self._sessions() as db:
            rows = await db.execute(
                select(JobRecord.status, func.count()).group_by(JobRecord.status)
            )
            return QueueStats(**{status: count for status, count in rows.all()})


def _to_view(record: JobRecord) -> JobView:
    return JobView(
        id=record.id,
        type=record.type,
        status=record.status,
        attempts=record.attempts,
        max_attempts=record.max_attempts,
        enqueued_at=record.enqueued_at,
        next_visible_at=record.next_visible_at,
        last_error=record.last_error,
        finished_at=record.finished_at,
    )

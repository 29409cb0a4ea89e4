"""Database-backed processing queue.

Delivery is at-least-once: a lease that is not acknowledged before it expires
makes the job visible again and the next lease increments ``attempt_count``.
Every state change is an optimistic compare-and-set on ``version``, so racing
workers (threads, processes or hosts) never both lease the same job.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import and_, delete, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import get_settings
from app.core.clock import seconds_from, utcnow
from app.models import DeadLetter, JobState, ProcessingJob

settings = get_settings()
logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LeasedJob:
    """A worker's handle on a job; only the current lease token may ack or release."""

    id: int
    video_id: str
    attempt_count: int
    lease_token: str
    lease_expires_at: datetime
    enqueued_at: datetime


@dataclass(frozen=True)
class DeadLetteredJob:
    video_id: str
    attempt_count: int
    reason: str


class JobQueue:
    def __init__(
        self,
        lease_timeout_seconds: float | None = None,
        max_attempts: int | None = None,
        backoff_seconds: float | None = None,
        backoff_max_seconds: float | None = None,
    ):
        self.lease_timeout_seconds = lease_timeout_seconds or settings.job_lease_timeout_seconds
        self.max_attempts = max_attempts or settings.job_max_attempts
        self.backoff_seconds = (
            settings.job_retry_backoff_seconds if backoff_seconds is None else backoff_seconds
        )
        self.backoff_max_seconds = backoff_max_seconds or settings.job_retry_backoff_max_seconds

    def backoff_for(self, attempt_count: int) -> float:
        """Exponential backoff: base * 2^(attempt-1), capped."""
        if attempt_count <= 0:
            return 0.0
        return min(self.backoff_seconds * (2 ** (attempt_count - 1)), self.backoff_max_seconds)

    async def enqueue(self, db: AsyncSession, video_id: str, now: datetime | None = None) -> bool:
        """
        Add a job for ``video_id`` unless one is already active.

        Returns:
            True if a new job was created, False if one already existed
        """
        existing = await db.scalar(select(ProcessingJob.id).where(ProcessingJob.video_id == video_id))
        if existing is not None:
            logger.debug(f"Job for video {video_id} already active; enqueue is a no-op")
            return False

        now = now or utcnow()
        db.add(
            ProcessingJob(
                video_id=video_id,
                state=JobState.queued.value,
                attempt_count=0,
                version=0,
                enqueued_at=now,
                visible_at=now,
            )
        )
        try:
            await db.commit()
        except IntegrityError:
            # Lost the race to a concurrent enqueue for the same video
            await db.rollback()
            logger.debug(f"Concurrent enqueue for video {video_id} detected; keeping existing job")
            return False
        logger.info(f"Enqueued processing job for video {video_id}")
        return True

    def _leasable(self, now: datetime):
        return and_(
            ProcessingJob.attempt_count < self.max_attempts,
            ProcessingJob.cancelled.is_(False),
            or_(
                and_(ProcessingJob.state == JobState.queued.value, ProcessingJob.visible_at <= now),
                and_(ProcessingJob.state == JobState.leased.value, ProcessingJob.lease_expires_at <= now),
            ),
        )

    async def lease(self, db: AsyncSession, now: datetime | None = None) -> LeasedJob | None:
        """Lease the oldest available job, or return None when nothing is ready."""
        now = now or utcnow()
        candidates = (
            await db.scalars(
                select(ProcessingJob)
                .where(self._leasable(now))
                .order_by(ProcessingJob.visible_at, ProcessingJob.id)
                .limit(10)
                .execution_options(populate_existing=True)
            )
        ).all()

        for job in candidates:
            token = uuid.uuid4().hex
            expires_at = seconds_from(now, self.lease_timeout_seconds)
            result = await db.execute(
                update(ProcessingJob)
                .where(ProcessingJob.id == job.id, ProcessingJob.version == job.version)
                .values(
                    state=JobState.leased.value,
                    attempt_count=job.attempt_count + 1,
                    version=job.version + 1,
                    lease_token=token,
                    lease_expires_at=expires_at,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                await db.rollback()
                continue
            await db.commit()
            if job.state == JobState.leased.value:
                logger.warning(
                    f"Lease expired for video {job.video_id}; redelivering (attempt {job.attempt_count + 1})"
                )
            return LeasedJob(
                id=job.id,
                video_id=job.video_id,
                attempt_count=job.attempt_count + 1,
                lease_token=token,
                lease_expires_at=expires_at,
                enqueued_at=job.enqueued_at,
            )
        return None

    async def ack(self, db: AsyncSession, job: LeasedJob) -> bool:
        """Destroy the job. False means the lease was lost (expired and re-leased)."""
        result = await db.execute(
            delete(ProcessingJob)
            .where(ProcessingJob.id == job.id, ProcessingJob.lease_token == job.lease_token)
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        if result.rowcount != 1:
            logger.warning(f"Stale ack for video {job.video_id}: lease no longer held")
            return False
        return True

    async def release(
        self,
        db: AsyncSession,
        job: LeasedJob,
        error: str | None = None,
        now: datetime | None = None,
    ) -> bool:
        """Give the job back for a later retry. Cancelled jobs are deleted instead."""
        now = now or utcnow()
        if await self.is_cancelled(db, job):
            result = await db.execute(
                delete(ProcessingJob)
                .where(ProcessingJob.id == job.id, ProcessingJob.lease_token == job.lease_token)
                .execution_options(synchronize_session=False)
            )
            await db.commit()
            logger.info(f"Dropped cancelled job for video {job.video_id}")
            return result.rowcount == 1

        delay = self.backoff_for(job.attempt_count)
        result = await db.execute(
            update(ProcessingJob)
            .where(ProcessingJob.id == job.id, ProcessingJob.lease_token == job.lease_token)
            .values(
                state=JobState.queued.value,
                version=ProcessingJob.version + 1,
                lease_token=None,
                lease_expires_at=None,
                visible_at=seconds_from(now, delay),
                last_error=error,
            )
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        if result.rowcount != 1:
            logger.warning(f"Stale release for video {job.video_id}: lease no longer held")
            return False
        logger.info(
            f"Released job for video {job.video_id} after attempt {job.attempt_count}; retry in {delay:.1f}s"
        )
        return True

    async def is_cancelled(self, db: AsyncSession, job: LeasedJob) -> bool:
        cancelled = await db.scalar(
            select(ProcessingJob.cancelled).where(ProcessingJob.id == job.id)
        )
        # A missing row means the job was removed underneath us
        return cancelled is None or bool(cancelled)

    async def cancel(self, db: AsyncSession, video_id: str) -> None:
        """Drop a queued job; flag a leased one so its worker discards the result."""
        await db.execute(
            delete(ProcessingJob)
            .where(ProcessingJob.video_id == video_id, ProcessingJob.state == JobState.queued.value)
            .execution_options(synchronize_session=False)
        )
        await db.execute(
            update(ProcessingJob)
            .where(ProcessingJob.video_id == video_id)
            .values(cancelled=True, version=ProcessingJob.version + 1)
            .execution_options(synchronize_session=False)
        )
        await db.commit()

    async def reap_exhausted(self, db: AsyncSession, now: datetime | None = None) -> list[DeadLetteredJob]:
        """
        Move jobs that used up their attempt budget to the dead-letter table.

        Only jobs nobody is working on are considered: queued ones, or leased
        ones whose lease has expired. Cancelled orphans are simply deleted.

        Returns:
            The dead-lettered jobs; the caller transitions their videos to error
        """
        now = now or utcnow()
        idle = or_(
            ProcessingJob.state == JobState.queued.value,
            and_(ProcessingJob.state == JobState.leased.value, ProcessingJob.lease_expires_at <= now),
        )

        orphans = await db.execute(
            delete(ProcessingJob)
            .where(idle, ProcessingJob.cancelled.is_(True))
            .execution_options(synchronize_session=False)
        )
        if orphans.rowcount:
            logger.info(f"Removed {orphans.rowcount} cancelled job(s) with expired leases")
        await db.commit()

        exhausted = (
            await db.scalars(
                select(ProcessingJob)
                .where(idle, ProcessingJob.attempt_count >= self.max_attempts)
                .execution_options(populate_existing=True)
            )
        ).all()

        reaped = []
        for job in exhausted:
            reason = (
                f"Processing failed after {job.attempt_count} attempts (max {self.max_attempts})"
            )
            if job.last_error:
                reason = f"{reason}: {job.last_error}"
            result = await db.execute(
                delete(ProcessingJob)
                .where(ProcessingJob.id == job.id, ProcessingJob.version == job.version)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                await db.rollback()
                continue
            db.add(
                DeadLetter(
                    video_id=job.video_id,
                    attempt_count=job.attempt_count,
                    reason=reason,
                    enqueued_at=job.enqueued_at,
                    dead_lettered_at=now,
                )
            )
            await db.commit()
            logger.warning(f"Dead-lettered job for video {job.video_id}: {reason}")
            reaped.append(DeadLetteredJob(video_id=job.video_id, attempt_count=job.attempt_count, reason=reason))
        return reaped

    async def active_job(self, db: AsyncSession, video_id: str) -> ProcessingJob | None:
        return await db.scalar(
            select(ProcessingJob)
            .where(ProcessingJob.video_id == video_id)
            .execution_options(populate_existing=True)
        )

    async def list_dead_letters(self, db: AsyncSession, limit: int = 100) -> list[DeadLetter]:
        result = await db.scalars(
            select(DeadLetter).order_by(DeadLetter.dead_lettered_at.desc()).limit(limit)
        )
        return list(result.all())

"""Processes one leased job: probe → classify → verdict.

Outcomes:
    verdict            → safe/flagged, job acknowledged
    TransientInfraError → job released for a retry with backoff
    PermanentMediaError → video → error at once, job acknowledged
    stale delivery      → nothing applied, job acknowledged
    cancelled (deleted) → verdict discarded, job released (and dropped)
"""

import asyncio
import logging

from app.config import get_settings
from app.core.exceptions import (
    NotFoundError,
    OrderingConflict,
    PermanentMediaError,
    TransientInfraError,
)
from app.core.storage import BlobStore, with_blob_deadline
from app.integrations.classifier import ClassifierAdapter, apply_confidence_policy
from app.models import VideoStatus
from app.services.job_queue import JobQueue, LeasedJob
from app.services.state_machine import VideoStateMachine, VideoTrigger, load_video

settings = get_settings()
logger = logging.getLogger(__name__)

# Advisory processing progress reported at each stage
PROGRESS_STARTED = 5
PROGRESS_PROBED = 30
PROGRESS_SCORING = 50
PROGRESS_SCORED = 90


class JobProcessor:
    def __init__(
        self,
        session_factory,
        queue: JobQueue,
        blob_store: BlobStore,
        classifier: ClassifierAdapter,
        media_probe,
        confidence_threshold: float | None = None,
        classifier_timeout: float | None = None,
    ):
        self.session_factory = session_factory
        self.queue = queue
        self.blob_store = blob_store
        self.classifier = classifier
        self.media_probe = media_probe
        self.confidence_threshold = (
            settings.classifier_confidence_threshold
            if confidence_threshold is None
            else confidence_threshold
        )
        self.classifier_timeout = classifier_timeout or settings.classifier_timeout_seconds

    async def reap(self) -> int:
        """Dead-letter exhausted jobs and fail their videos."""
        async with self.session_factory() as db:
            reaped = await self.queue.reap_exhausted(db)
            for dead in reaped:
                try:
                    await VideoStateMachine.fire(
                        db, dead.video_id, VideoTrigger.job_dead_lettered, reason=dead.reason
                    )
                except (OrderingConflict, NotFoundError) as e:
                    logger.warning(f"Dead-letter for video {dead.video_id} not applied: {e}")
        return len(reaped)

    async def run_once(self) -> bool:
        """Lease and process a single job. Returns False when the queue had nothing ready."""
        async with self.session_factory() as db:
            job = await self.queue.lease(db)
        if job is None:
            return False
        await self.process(job)
        return True

    async def process(self, job: LeasedJob) -> None:
        logger.info(f"Processing video {job.video_id} (attempt {job.attempt_count})")
        async with self.session_factory() as db:
            try:
                await self._process(db, job)
            except TransientInfraError as e:
                logger.warning(f"Transient failure for video {job.video_id}: {e}")
                await db.rollback()
                await self.queue.release(db, job, error=str(e))
            except PermanentMediaError as e:
                logger.warning(f"Permanent media failure for video {job.video_id}: {e}")
                await db.rollback()
                await self._apply(
                    db, job, VideoTrigger.media_rejected, reason=f"Unreadable media: {e}"
                )
                await self.queue.ack(db, job)
            except NotFoundError as e:
                # Video or blob deleted underneath the worker
                logger.info(f"Video {job.video_id} vanished during processing: {e}")
                await db.rollback()
                await self.queue.release(db, job)
            except Exception as e:
                logger.exception(f"Unexpected failure processing video {job.video_id}")
                await db.rollback()
                await self.queue.release(db, job, error=f"{type(e).__name__}: {e}")

    async def _process(self, db, job: LeasedJob) -> None:
        try:
            video = await load_video(db, job.video_id)
        except NotFoundError:
            video = None
        if video is None or video.status != VideoStatus.processing.value:
            # Duplicate or late delivery; the video already moved on
            logger.warning(
                f"Discarding delivery for video {job.video_id}: "
                f"status is {video.status if video else 'deleted'}"
            )
            if video is None and await self.queue.is_cancelled(db, job):
                await self.queue.release(db, job)
            else:
                await self.queue.ack(db, job)
            return

        await VideoStateMachine.record_processing_progress(db, job.video_id, PROGRESS_STARTED)

        async with self.blob_store.local_copy(video.blob_ref) as path:
            info = await self.media_probe.probe(path)
        if info is not None and info.duration_seconds is not None:
            video.duration_seconds = info.duration_seconds
            await db.commit()
        await VideoStateMachine.record_processing_progress(db, job.video_id, PROGRESS_PROBED)

        url = await with_blob_deadline(self.blob_store.access_url(video.blob_ref), "blob url")
        await VideoStateMachine.record_processing_progress(db, job.video_id, PROGRESS_SCORING)
        try:
            verdict = await asyncio.wait_for(
                self.classifier.classify(job.video_id, video.blob_ref, url),
                timeout=self.classifier_timeout,
            )
        except asyncio.TimeoutError:
            raise TransientInfraError(f"Classifier timed out after {self.classifier_timeout}s")

        if await self.queue.is_cancelled(db, job):
            logger.info(f"Video {job.video_id} was deleted during processing; discarding verdict")
            await self.queue.release(db, job)
            return

        await VideoStateMachine.record_processing_progress(db, job.video_id, PROGRESS_SCORED)
        verdict = apply_confidence_policy(verdict, self.confidence_threshold)
        if verdict.verdict == "safe":
            await self._apply(db, job, VideoTrigger.verdict_safe, confidence=verdict.confidence)
        else:
            await self._apply(
                db,
                job,
                VideoTrigger.verdict_flagged,
                reason=verdict.reason,
                confidence=verdict.confidence,
            )
        await self.queue.ack(db, job)

    async def _apply(self, db, job: LeasedJob, trigger: VideoTrigger, **kwargs) -> None:
        try:
            await VideoStateMachine.fire(db, job.video_id, trigger, **kwargs)
        except (OrderingConflict, NotFoundError) as e:
            # Exactly-once from the engine's side: a second delivery loses the CAS
            logger.warning(f"Discarded {trigger.value} for video {job.video_id}: {e}")

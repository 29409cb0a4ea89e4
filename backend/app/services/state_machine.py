"""Video lifecycle: uploading → processing → {safe, flagged, error}.

Every status write is a compare-and-set on the current status, so two workers
holding stale views of the same video cannot both win. Terminal statuses are
write-once; a late or duplicate event raises OrderingConflict and leaves the
row untouched.
"""

import enum
import logging

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.clock import utcnow
from app.core.exceptions import NotFoundError, OrderingConflict, ValidationError
from app.core.locks import video_locks
from app.models import Video, VideoStatus
from app.schemas.events import VideoEvent
from app.services.notification_hub import get_notification_hub

logger = logging.getLogger(__name__)


class VideoTrigger(str, enum.Enum):
    upload_complete = "upload-complete"
    upload_abandoned = "upload-abandoned"
    size_exceeded = "size-exceeded"
    verdict_safe = "classifier-verdict-safe"
    verdict_flagged = "classifier-verdict-flagged"
    job_dead_lettered = "job-dead-lettered"
    media_rejected = "media-rejected"


TRANSITIONS: dict[tuple[VideoStatus, VideoTrigger], VideoStatus] = {
    (VideoStatus.uploading, VideoTrigger.upload_complete): VideoStatus.processing,
    (VideoStatus.uploading, VideoTrigger.upload_abandoned): VideoStatus.error,
    (VideoStatus.uploading, VideoTrigger.size_exceeded): VideoStatus.error,
    (VideoStatus.processing, VideoTrigger.verdict_safe): VideoStatus.safe,
    (VideoStatus.processing, VideoTrigger.verdict_flagged): VideoStatus.flagged,
    (VideoStatus.processing, VideoTrigger.job_dead_lettered): VideoStatus.error,
    (VideoStatus.processing, VideoTrigger.media_rejected): VideoStatus.error,
}

_DEFAULT_ERROR_REASONS = {
    VideoTrigger.upload_abandoned: "Upload abandoned: no data received before the stall timeout",
    VideoTrigger.size_exceeded: "Upload exceeded its declared size",
    VideoTrigger.job_dead_lettered: "Processing failed after exhausting all retry attempts",
    VideoTrigger.media_rejected: "Media could not be read",
}


async def load_video(db: AsyncSession, video_id: str) -> Video:
    """Fetch the committed row, bypassing the session's identity map."""
    result = await db.execute(
        select(Video).where(Video.id == video_id).execution_options(populate_existing=True)
    )
    video = result.scalar_one_or_none()
    if video is None:
        raise NotFoundError("Video", video_id)
    return video


async def emit(video: Video, deleted: bool = False) -> None:
    await get_notification_hub().publish(VideoEvent.from_video(video, deleted=deleted))


class VideoStateMachine:
    """Owns every status and progress write on ``videos``."""

    @staticmethod
    def target_for(current: VideoStatus, trigger: VideoTrigger) -> VideoStatus | None:
        return TRANSITIONS.get((current, trigger))

    @staticmethod
    async def fire(
        db: AsyncSession,
        video_id: str,
        trigger: VideoTrigger,
        *,
        reason: str | None = None,
        confidence: float | None = None,
    ) -> Video:
        """
        Apply ``trigger`` to the video and publish the resulting state.

        Args:
            db: Database session
            video_id: Video to transition
            trigger: Lifecycle event
            reason: Flag reason (verdict_flagged) or error reason (→ error)
            confidence: Classifier confidence for verdicts

        Returns:
            The video as committed

        Raises:
            NotFoundError: The video does not exist (or was deleted)
            OrderingConflict: The current status does not accept ``trigger``
            ValidationError: A transition guard failed
        """
        async with video_locks.hold(video_id):
            video = await load_video(db, video_id)
            current = VideoStatus(video.status)
            target = VideoStateMachine.target_for(current, trigger)
            if target is None:
                logger.warning(
                    f"Rejected {trigger.value} for video {video_id}: status is {current.value}"
                )
                raise OrderingConflict(video_id, current.value, trigger.value)

            now = utcnow()
            values: dict = {"status": target.value, "updated_at": now}

            if trigger is VideoTrigger.upload_complete:
                if video.upload_progress != 100:
                    raise ValidationError(
                        f"Upload incomplete: {video.upload_progress}% of declared bytes received"
                    )
                values["processing_progress"] = 0
            elif trigger is VideoTrigger.verdict_safe:
                values["processing_progress"] = 100
                values["classification_confidence"] = confidence
            elif trigger is VideoTrigger.verdict_flagged:
                if not reason or not reason.strip():
                    raise ValidationError("A flagged verdict requires a non-empty reason")
                values["processing_progress"] = 100
                values["classification_confidence"] = confidence
                values["flag_reason"] = reason.strip()
            else:
                values["error_reason"] = reason or _DEFAULT_ERROR_REASONS[trigger]

            result = await db.execute(
                update(Video)
                .where(Video.id == video_id, Video.status == current.value)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                # Another process moved the video first
                await db.rollback()
                raise OrderingConflict(video_id, current.value, trigger.value)
            await db.commit()

            video = await load_video(db, video_id)
            logger.info(f"Video {video_id}: {current.value} → {target.value} ({trigger.value})")
            await emit(video)
            return video

    @staticmethod
    async def record_upload_progress(db: AsyncSession, video_id: str, progress: int) -> bool:
        return await VideoStateMachine._raise_progress(
            db, video_id, Video.upload_progress, VideoStatus.uploading, progress
        )

    @staticmethod
    async def record_processing_progress(db: AsyncSession, video_id: str, progress: int) -> bool:
        """Advisory telemetry; out-of-order or stale values are ignored, never applied."""
        return await VideoStateMachine._raise_progress(
            db, video_id, Video.processing_progress, VideoStatus.processing, progress
        )

    @staticmethod
    async def _raise_progress(db, video_id, column, required: VideoStatus, progress: int) -> bool:
        progress = max(0, min(100, int(progress)))
        async with video_locks.hold(video_id):
            result = await db.execute(
                update(Video)
                .where(Video.id == video_id, Video.status == required.value, column < progress)
                .values({column.key: progress, "updated_at": utcnow()})
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                await db.rollback()
                return False
            await db.commit()
            await emit(await load_video(db, video_id))
            return True

"""Chunked, resumable upload ingestion.

Chunks are idempotent by ``(video_id, offset)``: re-sending a chunk rewrites
the same part and never advances progress twice. Chunk writes for one video
can run concurrently; finalization runs under the per-video lock.
"""

import logging
import re
import uuid
from datetime import datetime
from pathlib import Path

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import get_settings
from app.core.clock import seconds_from, utcnow
from app.core.exceptions import (
    IdConflictError,
    NotFoundError,
    OrderingConflict,
    PayloadTooLargeError,
    TransientInfraError,
    ValidationError,
)
from app.core.locks import video_locks
from app.core.permissions import Capability, Principal
from app.core.storage import BlobStore, get_blob_store, with_blob_deadline
from app.models import DeadLetter, ProcessingJob, UploadChunk, Video, VideoStatus
from app.services.job_queue import JobQueue
from app.services.state_machine import VideoStateMachine, VideoTrigger, emit, load_video
from app.services.video_service import VideoService

settings = get_settings()
logger = logging.getLogger(__name__)

VIDEO_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{1,64}$")
# Path segments the videos router serves itself
RESERVED_VIDEO_IDS = frozenset({"stats"})


class IngestionService:
    @staticmethod
    def validate_upload_request(
        filename: str,
        declared_size: int,
        content_type: str,
        video_id: str | None = None,
    ) -> None:
        """Reject bad uploads before anything is persisted."""
        if not filename or not filename.strip():
            raise ValidationError("filename is required")
        if declared_size <= 0:
            raise ValidationError("Declared size must be greater than zero")
        if declared_size > settings.max_video_size_bytes:
            raise PayloadTooLargeError(
                f"File size exceeds maximum allowed size of {settings.max_video_size_mb}MB"
            )
        content_type = (content_type or "").lower()
        if not content_type.startswith("video/") or content_type not in settings.allowed_video_types:
            raise ValidationError(
                f"File type {content_type or 'unknown'} not allowed. "
                f"Allowed types: {', '.join(settings.allowed_video_types)}"
            )
        if video_id is not None and video_id in RESERVED_VIDEO_IDS:
            raise ValidationError(f"id {video_id!r} is reserved")
        if video_id is not None and not VIDEO_ID_PATTERN.match(video_id):
            raise ValidationError("id must be 1-64 characters of letters, digits, '-' or '_'")

    @staticmethod
    async def initiate_upload(
        db: AsyncSession,
        principal: Principal,
        filename: str,
        declared_size: int,
        content_type: str,
        title: str | None = None,
        description: str | None = None,
        video_id: str | None = None,
    ) -> Video:
        """Create the Video in ``uploading`` with zero progress."""
        principal.require(Capability.video_upload)
        IngestionService.validate_upload_request(filename, declared_size, content_type, video_id)

        video_id = video_id or uuid.uuid4().hex
        if await db.get(Video, video_id) is not None:
            raise IdConflictError(video_id)

        now = utcnow()
        video = Video(
            id=video_id,
            owner_id=principal.user_id,
            filename=filename.strip(),
            title=(title or "").strip() or Path(filename.strip()).stem or filename.strip(),
            description=description,
            content_type=content_type.lower(),
            declared_size_bytes=declared_size,
            status=VideoStatus.uploading.value,
            upload_progress=0,
            processing_progress=0,
            created_at=now,
            updated_at=now,
            last_upload_activity_at=now,
        )
        db.add(video)
        try:
            await db.commit()
        except IntegrityError:
            await db.rollback()
            raise IdConflictError(video_id)

        logger.info(
            f"Upload initiated: video_id={video_id}, owner={principal.user_id}, size={declared_size}"
        )
        video = await load_video(db, video_id)
        await emit(video)
        return video

    @staticmethod
    async def put_chunk(
        db: AsyncSession,
        principal: Principal,
        video_id: str,
        offset: int,
        data: bytes,
        blob_store: BlobStore | None = None,
    ) -> Video:
        """
        Store one chunk and raise upload progress.

        Raises:
            ValidationError: Empty, oversized, negative-offset or overlapping chunk
            PayloadTooLargeError: Chunk runs past the declared size (video → error)
            OrderingConflict: Video is no longer uploading
        """
        blob_store = blob_store or get_blob_store()
        video = await VideoService.get_modifiable_video(db, principal, video_id, Capability.video_upload)
        if video.status != VideoStatus.uploading.value:
            raise OrderingConflict(video_id, video.status, "upload-chunk")

        length = len(data)
        if offset < 0:
            raise ValidationError("offset must be >= 0")
        if length == 0:
            raise ValidationError("Chunk is empty")
        if length > settings.max_chunk_size_bytes:
            raise PayloadTooLargeError(
                f"Chunk exceeds maximum chunk size of {settings.max_chunk_size_mb}MB"
            )
        if offset + length > video.declared_size_bytes:
            await VideoStateMachine.fire(
                db,
                video_id,
                VideoTrigger.size_exceeded,
                reason=(
                    f"Chunk at offset {offset} ({length} bytes) exceeds declared size "
                    f"of {video.declared_size_bytes} bytes"
                ),
            )
            await IngestionService.release_partial_upload(db, video_id, blob_store)
            raise PayloadTooLargeError(
                f"Chunk at offset {offset} ({length} bytes) exceeds declared size "
                f"of {video.declared_size_bytes} bytes"
            )

        await IngestionService._reserve_chunk(db, video_id, offset, length)

        await with_blob_deadline(blob_store.write_part(video_id, offset, data), "chunk write")

        now = utcnow()
        still_uploading = (
            select(Video.id)
            .where(Video.id == video_id, Video.status == VideoStatus.uploading.value)
            .exists()
        )
        marked = await db.execute(
            update(UploadChunk)
            .where(UploadChunk.video_id == video_id, UploadChunk.offset == offset, still_uploading)
            .values(stored=True, received_at=now)
            .execution_options(synchronize_session=False)
        )
        await db.execute(
            update(Video)
            .where(Video.id == video_id, Video.status == VideoStatus.uploading.value)
            .values(last_upload_activity_at=now)
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        if marked.rowcount != 1:
            await IngestionService._discard_late_chunk(db, video_id, blob_store)

        received = await IngestionService.received_bytes(db, video_id)
        progress = received * 100 // video.declared_size_bytes
        await VideoStateMachine.record_upload_progress(db, video_id, progress)
        return await load_video(db, video_id)

    @staticmethod
    async def _discard_late_chunk(db: AsyncSession, video_id: str, blob_store: BlobStore) -> None:
        """The video left ``uploading`` (deleted, expired) while the bytes were in flight."""
        try:
            video = await load_video(db, video_id)
        except NotFoundError:
            await with_blob_deadline(blob_store.delete_namespace(video_id), "blob delete")
            raise
        if video.blob_ref is None:
            await with_blob_deadline(blob_store.delete_namespace(video_id), "blob delete")
        raise OrderingConflict(video_id, video.status, "upload-chunk")

    @staticmethod
    async def _reserve_chunk(db: AsyncSession, video_id: str, offset: int, length: int) -> None:
        async with video_locks.hold(video_id):
            # Finalization holds the same lock; re-check after waiting on it
            video = await load_video(db, video_id)
            if video.status != VideoStatus.uploading.value:
                raise OrderingConflict(video_id, video.status, "upload-chunk")

            existing = await db.scalar(
                select(UploadChunk).where(UploadChunk.video_id == video_id, UploadChunk.offset == offset)
            )
            if existing is not None:
                if existing.length != length:
                    raise ValidationError(
                        f"Chunk at offset {offset} was already received with {existing.length} bytes"
                    )
                logger.debug(f"Re-received chunk {video_id}@{offset}; rewriting part")
                return

            overlapping = await db.scalar(
                select(UploadChunk.offset).where(
                    UploadChunk.video_id == video_id,
                    UploadChunk.offset < offset + length,
                    UploadChunk.offset + UploadChunk.length > offset,
                )
            )
            if overlapping is not None:
                raise ValidationError(
                    f"Chunk at offset {offset} overlaps the chunk at offset {overlapping}"
                )

            db.add(UploadChunk(video_id=video_id, offset=offset, length=length, stored=False))
            try:
                await db.commit()
            except IntegrityError:
                # Same offset reserved concurrently from another process
                await db.rollback()
                existing = await db.scalar(
                    select(UploadChunk).where(
                        UploadChunk.video_id == video_id, UploadChunk.offset == offset
                    )
                )
                if existing is None or existing.length != length:
                    raise ValidationError(f"Conflicting chunk at offset {offset}")

    @staticmethod
    async def received_bytes(db: AsyncSession, video_id: str) -> int:
        total = await db.scalar(
            select(func.coalesce(func.sum(UploadChunk.length), 0)).where(
                UploadChunk.video_id == video_id, UploadChunk.stored.is_(True)
            )
        )
        return int(total or 0)

    @staticmethod
    async def complete_upload(
        db: AsyncSession,
        principal: Principal,
        video_id: str,
        queue: JobQueue | None = None,
        blob_store: BlobStore | None = None,
    ) -> Video:
        """
        Finalize the upload: assemble the blob, move to ``processing``, enqueue one job.

        Safe to retry: a blob assembled by an interrupted earlier call is reused.
        """
        queue = queue or JobQueue()
        blob_store = blob_store or get_blob_store()

        async with video_locks.hold(video_id):
            video = await VideoService.get_modifiable_video(
                db, principal, video_id, Capability.video_upload
            )
            if video.status != VideoStatus.uploading.value:
                raise OrderingConflict(video_id, video.status, VideoTrigger.upload_complete.value)

            if video.blob_ref is None:
                await IngestionService._assemble(db, video, blob_store)

            video = await VideoStateMachine.fire(db, video_id, VideoTrigger.upload_complete)
            await queue.enqueue(db, video_id)

        if settings.use_celery:
            from app.workers.tasks import dispatch_processing

            dispatch_processing()
        return video

    @staticmethod
    async def _assemble(db: AsyncSession, video: Video, blob_store: BlobStore) -> None:
        chunks = (
            await db.scalars(
                select(UploadChunk)
                .where(UploadChunk.video_id == video.id)
                .order_by(UploadChunk.offset)
            )
        ).all()
        received = sum(c.length for c in chunks if c.stored)
        pending = [c.offset for c in chunks if not c.stored]
        if pending or received != video.declared_size_bytes or video.upload_progress != 100:
            raise ValidationError(
                f"Upload incomplete: received {received} of {video.declared_size_bytes} bytes"
            )

        assembled = await with_blob_deadline(
            blob_store.assemble(video.id, [c.offset for c in chunks]), "blob assembly"
        )
        if assembled.size_bytes != video.declared_size_bytes:
            raise TransientInfraError(
                f"Assembled blob is {assembled.size_bytes} bytes, expected {video.declared_size_bytes}"
            )

        await db.execute(
            update(Video)
            .where(Video.id == video.id)
            .values(
                blob_ref=assembled.blob_ref,
                content_sha256=assembled.sha256,
                size_bytes=assembled.size_bytes,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        await db.execute(delete(UploadChunk).where(UploadChunk.video_id == video.id))
        await db.commit()
        logger.info(f"Assembled blob for video {video.id}: sha256={assembled.sha256}")

    @staticmethod
    async def release_partial_upload(
        db: AsyncSession, video_id: str, blob_store: BlobStore | None = None
    ) -> None:
        blob_store = blob_store or get_blob_store()
        await db.execute(delete(UploadChunk).where(UploadChunk.video_id == video_id))
        await db.commit()
        await with_blob_deadline(blob_store.delete_namespace(video_id), "blob delete")

    @staticmethod
    async def abandon_stalled_uploads(
        db: AsyncSession,
        now: datetime | None = None,
        blob_store: BlobStore | None = None,
    ) -> list[str]:
        """Fail uploads with no chunk activity within the stall timeout and free their storage."""
        now = now or utcnow()
        cutoff = seconds_from(now, -settings.upload_stall_timeout_seconds)
        stalled = (
            await db.scalars(
                select(Video.id).where(
                    Video.status == VideoStatus.uploading.value,
                    Video.last_upload_activity_at < cutoff,
                )
            )
        ).all()

        abandoned = []
        for video_id in stalled:
            try:
                await VideoStateMachine.fire(db, video_id, VideoTrigger.upload_abandoned)
            except (OrderingConflict, NotFoundError) as e:
                logger.debug(f"Skip abandoning {video_id}: {e}")
                continue
            await IngestionService.release_partial_upload(db, video_id, blob_store)
            abandoned.append(video_id)
        if abandoned:
            logger.warning(f"Abandoned {len(abandoned)} stalled upload(s): {', '.join(abandoned)}")
        return abandoned

    @staticmethod
    async def recover_orphaned_processing(db: AsyncSession, queue: JobQueue | None = None) -> list[str]:
        """
        Repair ``processing`` videos that have no job.

        A crash between the transition and enqueue leaves a video to re-enqueue.
        A crash between dead-lettering and the ``job-dead-lettered`` transition
        leaves a dead-letter row; that video is failed, not given new attempts.
        """
        queue = queue or JobQueue()
        orphaned = (
            await db.scalars(
                select(Video.id).where(
                    Video.status == VideoStatus.processing.value,
                    ~select(ProcessingJob.id).where(ProcessingJob.video_id == Video.id).exists(),
                )
            )
        ).all()
        recovered = []
        for video_id in orphaned:
            dead = await db.scalar(
                select(DeadLetter)
                .where(DeadLetter.video_id == video_id)
                .order_by(DeadLetter.dead_lettered_at.desc())
                .limit(1)
            )
            if dead is not None:
                try:
                    await VideoStateMachine.fire(
                        db, video_id, VideoTrigger.job_dead_lettered, reason=dead.reason
                    )
                    logger.warning(f"Applied pending dead-letter for video {video_id}")
                except (OrderingConflict, NotFoundError) as e:
                    logger.debug(f"Skip dead-letter for {video_id}: {e}")
                continue
            if await queue.enqueue(db, video_id):
                recovered.append(video_id)
        if recovered:
            logger.warning(f"Re-enqueued {len(recovered)} orphaned video(s): {', '.join(recovered)}")
        return recovered

import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import get_settings
from app.core.clock import utcnow
from app.core.exceptions import NotFoundError, PermissionDeniedError, ValidationError
from app.core.locks import video_locks
from app.core.permissions import Capability, Principal
from app.core.storage import BlobStore, get_blob_store, with_blob_deadline
from app.models import UploadChunk, Video, VideoStatus
from app.services.job_queue import JobQueue
from app.services.state_machine import emit, load_video

settings = get_settings()
logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ByteRange:
    start: int
    end: int  # inclusive

    @property
    def length(self) -> int:
        return self.end - self.start + 1


@dataclass
class VideoContent:
    """What ``GET /videos/{id}/content`` sends: a redirect, or a (ranged) byte stream."""

    video: Video
    size: int
    byte_range: ByteRange | None = None
    redirect_url: str | None = None
    chunks: AsyncIterator[bytes] | None = None

    @property
    def length(self) -> int:
        return self.byte_range.length if self.byte_range is not None else self.size


def parse_range_header(header: str | None, size: int) -> ByteRange | None:
    """Parse a single ``bytes=start-end`` range. None means the whole object."""
    if not header:
        return None
    unit, _, byte_range = header.partition("=")
    if unit.strip() != "bytes" or "," in byte_range or "-" not in byte_range:
        raise ValidationError(f"Unsupported Range header: {header}")
    start_s, _, end_s = byte_range.strip().partition("-")
    try:
        if start_s == "":
            # Suffix range: last N bytes
            suffix = int(end_s)
            if suffix <= 0:
                raise ValidationError(f"Unsatisfiable range: {header}")
            start, end = max(size - suffix, 0), size - 1
        else:
            start = int(start_s)
            end = int(end_s) if end_s else size - 1
    except ValueError:
        raise ValidationError(f"Malformed Range header: {header}")
    end = min(end, size - 1)
    if start < 0 or start > end:
        raise ValidationError(f"Unsatisfiable range: {header}")
    return ByteRange(start, end)


class VideoService:
    """Read side over Video entities, plus owner-level edits and deletion."""

    @staticmethod
    async def get_visible_video(db: AsyncSession, principal: Principal, video_id: str) -> Video:
        """Fetch a video the caller may see; others' videos look like missing ones."""
        principal.require(Capability.video_read)
        video = await load_video(db, video_id)
        if video.owner_id != principal.user_id and not principal.can(Capability.video_read_any):
            raise NotFoundError("Video", video_id)
        return video

    @staticmethod
    async def get_modifiable_video(
        db: AsyncSession, principal: Principal, video_id: str, capability: Capability
    ) -> Video:
        principal.require(capability)
        video = await VideoService.get_visible_video(db, principal, video_id)
        if video.owner_id != principal.user_id and not principal.can(Capability.video_modify_any):
            raise PermissionDeniedError(Capability.video_modify_any.value)
        return video

    @staticmethod
    async def list_videos(
        db: AsyncSession,
        principal: Principal,
        status: VideoStatus | None = None,
        owner_id: int | None = None,
        page: int = 1,
        page_size: int | None = None,
    ) -> tuple[list[Video], int]:
        """Paginated video list with total count, newest first."""
        principal.require(Capability.video_read)
        page_size = page_size or settings.default_page_size
        if page < 1:
            raise ValidationError("page must be >= 1")
        if page_size < 1 or page_size > settings.max_page_size:
            raise ValidationError(f"page_size must be between 1 and {settings.max_page_size}")

        conditions = []
        if principal.can(Capability.video_read_any):
            if owner_id is not None:
                conditions.append(Video.owner_id == owner_id)
        else:
            # Non-admins are always scoped to their own videos
            conditions.append(Video.owner_id == principal.user_id)
        if status is not None:
            conditions.append(Video.status == VideoStatus(status).value)

        count_stmt = select(func.count()).select_from(Video).where(*conditions)
        total = (await db.execute(count_stmt)).scalar_one()

        stmt = (
            select(Video)
            .where(*conditions)
            .order_by(Video.created_at.desc(), Video.id)
            .offset((page - 1) * page_size)
            .limit(page_size)
            .execution_options(populate_existing=True)
        )
        result = await db.execute(stmt)
        return list(result.scalars().all()), total

    @staticmethod
    async def status_counts(
        db: AsyncSession, principal: Principal, owner_id: int | None = None
    ) -> dict[VideoStatus, int]:
        """Number of videos per status, scoped like ``list_videos``. Every status is present."""
        principal.require(Capability.video_read)
        stmt = select(Video.status, func.count()).group_by(Video.status)
        if principal.can(Capability.video_read_any):
            if owner_id is not None:
                stmt = stmt.where(Video.owner_id == owner_id)
        else:
            stmt = stmt.where(Video.owner_id == principal.user_id)

        counts = {status: 0 for status in VideoStatus}
        for status, count in (await db.execute(stmt)).all():
            counts[VideoStatus(status)] = count
        return counts

    @staticmethod
    async def update_metadata(
        db: AsyncSession,
        principal: Principal,
        video_id: str,
        filename: str | None = None,
        title: str | None = None,
        description: str | None = None,
    ) -> Video:
        video = await VideoService.get_modifiable_video(db, principal, video_id, Capability.video_edit)
        changes = {
            field: value.strip()
            for field, value in (("filename", filename), ("title", title))
            if value is not None
        }
        for field, value in changes.items():
            if not value:
                raise ValidationError(f"{field} must not be empty")
        for field, value in changes.items():
            setattr(video, field, value)
        if description is not None:
            video.description = description
        video.updated_at = utcnow()
        await db.commit()
        logger.info(f"Updated metadata of video {video_id}")
        return await load_video(db, video_id)

    @staticmethod
    async def read_content(
        db: AsyncSession,
        principal: Principal,
        video_id: str,
        range_header: str | None = None,
        blob_store: BlobStore | None = None,
    ) -> VideoContent:
        """
        Prepare playback of the assembled blob, or of one byte range of it.

        Stores that serve clients directly (S3) answer with a presigned URL.
        Otherwise the bytes are streamed in pieces; a range longer than
        ``content_max_range_bytes`` is shortened to that length.
        """
        blob_store = blob_store or get_blob_store()
        video = await VideoService.get_visible_video(db, principal, video_id)
        if not video.blob_ref:
            raise NotFoundError("Video content", video_id)

        url = await with_blob_deadline(blob_store.download_url(video.blob_ref), "blob url")
        if url is not None:
            return VideoContent(video=video, size=video.size_bytes, redirect_url=url)

        size = await with_blob_deadline(blob_store.size(video.blob_ref), "blob stat")
        byte_range = parse_range_header(range_header, size)
        if byte_range is not None and byte_range.length > settings.content_max_range_bytes:
            byte_range = ByteRange(byte_range.start, byte_range.start + settings.content_max_range_bytes - 1)
        start, length = (byte_range.start, byte_range.length) if byte_range else (0, size)
        return VideoContent(
            video=video,
            size=size,
            byte_range=byte_range,
            chunks=blob_store.iter_range(video.blob_ref, start, length),
        )

    @staticmethod
    async def delete_video(
        db: AsyncSession,
        principal: Principal,
        video_id: str,
        queue: JobQueue | None = None,
        blob_store: BlobStore | None = None,
    ) -> None:
        """Delete video, its upload chunks, its blob namespace and any in-flight job."""
        queue = queue or JobQueue()
        blob_store = blob_store or get_blob_store()

        async with video_locks.hold(video_id):
            video = await VideoService.get_modifiable_video(
                db, principal, video_id, Capability.video_delete
            )
            # A leased job is only flagged; its worker discards the verdict later
            await queue.cancel(db, video_id)

            await db.execute(delete(UploadChunk).where(UploadChunk.video_id == video_id))
            await db.delete(video)
            await db.commit()
            logger.info(f"Deleted video {video_id} (status was {video.status})")

            await with_blob_deadline(blob_store.delete_namespace(video_id), "blob delete")
            await emit(video, deleted=True)

"""청크 업로드 테스트."""

import asyncio
import hashlib
from datetime import timedelta

import pytest
from sqlalchemy import delete

from app.config import get_settings
from app.core.clock import utcnow
from app.core.exceptions import (
    IdConflictError,
    NotFoundError,
    OrderingConflict,
    PayloadTooLargeError,
    PermissionDeniedError,
    ValidationError,
)
from app.core.permissions import Role
from app.models import ProcessingJob, VideoStatus
from app.services.ingestion_service import IngestionService
from app.services.state_machine import load_video

settings = get_settings()


@pytest.mark.parametrize(
    "filename, size, content_type, error",
    [
        ("clip.mp4", 0, "video/mp4", ValidationError),
        ("clip.mp4", -1, "video/mp4", ValidationError),
        ("clip.txt", 100, "text/plain", ValidationError),
        ("clip.ogv", 100, "video/ogg", ValidationError),
        ("", 100, "video/mp4", ValidationError),
        ("huge.mp4", 10 * 1024 ** 4, "video/mp4", PayloadTooLargeError),
    ],
)
def test_validate_upload_request_rejects(filename, size, content_type, error):
    with pytest.raises(error):
        IngestionService.validate_upload_request(filename, size, content_type)


def test_validate_upload_request_rejects_bad_id():
    with pytest.raises(ValidationError):
        IngestionService.validate_upload_request("clip.mp4", 10, "video/mp4", video_id="../etc")


async def test_initiate_upload(db, make_principal, fresh_hub):
    owner = await make_principal()
    async with fresh_hub.subscribe(owner.user_id) as sub:
        video = await IngestionService.initiate_upload(
            db, owner, "My Clip.mp4", 1000, "video/mp4", video_id="my-clip"
        )
        event = sub.queue.get_nowait()

    assert video.id == "my-clip"
    assert video.status == VideoStatus.uploading.value
    assert video.upload_progress == 0
    assert video.title == "My Clip"
    assert event.video_id == "my-clip"
    assert event.status == "uploading"


async def test_initiate_upload_duplicate_id(db, make_principal):
    owner = await make_principal()
    await IngestionService.initiate_upload(db, owner, "a.mp4", 10, "video/mp4", video_id="dup")
    with pytest.raises(IdConflictError):
        await IngestionService.initiate_upload(db, owner, "b.mp4", 10, "video/mp4", video_id="dup")


async def test_viewer_cannot_upload(db, make_principal):
    viewer = await make_principal(Role.viewer)
    with pytest.raises(PermissionDeniedError):
        await IngestionService.initiate_upload(db, viewer, "a.mp4", 10, "video/mp4")


async def test_chunks_out_of_order_and_resent(db, make_principal, blob_store, queue):
    owner = await make_principal()
    data = bytes(range(256)) * 4  # 1024 bytes
    video = await IngestionService.initiate_upload(db, owner, "a.mp4", len(data), "video/mp4")

    video = await IngestionService.put_chunk(db, owner, video.id, 512, data[512:], blob_store)
    assert video.upload_progress == 50

    # Same chunk again: idempotent, progress unchanged
    video = await IngestionService.put_chunk(db, owner, video.id, 512, data[512:], blob_store)
    assert video.upload_progress == 50
    assert await IngestionService.received_bytes(db, video.id) == 512

    video = await IngestionService.put_chunk(db, owner, video.id, 0, data[:512], blob_store)
    assert video.upload_progress == 100

    video = await IngestionService.complete_upload(db, owner, video.id, queue=queue, blob_store=blob_store)
    assert video.status == VideoStatus.processing.value
    assert video.size_bytes == len(data)
    assert video.content_sha256 == hashlib.sha256(data).hexdigest()
    assert await blob_store.read_range(video.blob_ref, 0, len(data)) == data
    assert await queue.active_job(db, video.id) is not None


async def test_overlapping_chunk_rejected(db, make_principal, blob_store):
    owner = await make_principal()
    video = await IngestionService.initiate_upload(db, owner, "a.mp4", 1000, "video/mp4")
    await IngestionService.put_chunk(db, owner, video.id, 0, b"a" * 400, blob_store)

    with pytest.raises(ValidationError):
        await IngestionService.put_chunk(db, owner, video.id, 200, b"b" * 400, blob_store)
    with pytest.raises(ValidationError):
        await IngestionService.put_chunk(db, owner, video.id, 0, b"a" * 300, blob_store)
    with pytest.raises(ValidationError):
        await IngestionService.put_chunk(db, owner, video.id, 400, b"", blob_store)


async def test_chunk_past_declared_size_fails_upload(db, make_principal, blob_store):
    owner = await make_principal()
    video = await IngestionService.initiate_upload(db, owner, "a.mp4", 1000, "video/mp4")
    await IngestionService.put_chunk(db, owner, video.id, 0, b"a" * 600, blob_store)

    with pytest.raises(PayloadTooLargeError):
        await IngestionService.put_chunk(db, owner, video.id, 600, b"b" * 600, blob_store)

    video = await load_video(db, video.id)
    assert video.status == VideoStatus.error.value
    assert "exceeds declared size" in video.error_reason
    assert not (blob_store.root / video.id).exists()

    with pytest.raises(OrderingConflict):
        await IngestionService.put_chunk(db, owner, video.id, 600, b"b" * 400, blob_store)


async def test_complete_before_all_bytes(db, make_principal, blob_store, queue):
    owner = await make_principal()
    video = await IngestionService.initiate_upload(db, owner, "a.mp4", 1000, "video/mp4")
    await IngestionService.put_chunk(db, owner, video.id, 0, b"a" * 400, blob_store)

    with pytest.raises(ValidationError):
        await IngestionService.complete_upload(db, owner, video.id, queue=queue, blob_store=blob_store)
    assert (await load_video(db, video.id)).status == VideoStatus.uploading.value
    assert await queue.active_job(db, video.id) is None


async def test_complete_twice_enqueues_once(db, make_principal, upload, blob_store, queue):
    owner = await make_principal()
    video = await upload(owner)

    with pytest.raises(OrderingConflict):
        await IngestionService.complete_upload(db, owner, video.id, queue=queue, blob_store=blob_store)
    job = await queue.active_job(db, video.id)
    assert job.attempt_count == 0


async def test_other_users_video_is_not_found(db, make_principal, upload, blob_store):
    owner = await make_principal()
    other = await make_principal()
    video = await upload(owner, complete=False)

    with pytest.raises(NotFoundError):
        await IngestionService.put_chunk(db, other, video.id, 0, b"x", blob_store)


async def test_stalled_upload_is_abandoned(db, make_principal, blob_store):
    owner = await make_principal()
    video = await IngestionService.initiate_upload(db, owner, "a.mp4", 1000, "video/mp4")
    await IngestionService.put_chunk(db, owner, video.id, 0, b"a" * 400, blob_store)
    fresh = await IngestionService.initiate_upload(db, owner, "b.mp4", 1000, "video/mp4")

    assert await IngestionService.abandon_stalled_uploads(db, blob_store=blob_store) == []

    later = utcnow() + timedelta(seconds=settings.upload_stall_timeout_seconds + 1)
    abandoned = await IngestionService.abandon_stalled_uploads(db, now=later, blob_store=blob_store)
    assert set(abandoned) == {video.id, fresh.id}

    video = await load_video(db, video.id)
    assert video.status == VideoStatus.error.value
    assert await IngestionService.received_bytes(db, video.id) == 0
    assert not (blob_store.root / video.id).exists()


async def test_orphaned_processing_video_is_requeued(db, make_principal, upload, queue):
    owner = await make_principal()
    video = await upload(owner)
    await db.execute(delete(ProcessingJob).where(ProcessingJob.video_id == video.id))
    await db.commit()

    assert await IngestionService.recover_orphaned_processing(db, queue=queue) == [video.id]
    assert await queue.active_job(db, video.id) is not None
    assert await IngestionService.recover_orphaned_processing(db, queue=queue) == []


async def test_zero_byte_upload_creates_nothing(db, make_principal):
    owner = await make_principal()
    with pytest.raises(ValidationError):
        await IngestionService.initiate_upload(db, owner, "empty.mp4", 0, "video/mp4", video_id="empty")
    with pytest.raises(NotFoundError):
        await load_video(db, "empty")


async def test_chunk_resent_during_completion_is_refused(
    db, session_factory, make_principal, upload, blob_store, queue
):
    owner = await make_principal()
    data = b"c" * 800
    video = await upload(owner, data=data, chunk_size=400, complete=False)

    async def complete():
        async with session_factory() as session:
            return await IngestionService.complete_upload(
                session, owner, video.id, queue=queue, blob_store=blob_store
            )

    async def resend():
        async with session_factory() as session:
            return await IngestionService.put_chunk(session, owner, video.id, 0, data[:400], blob_store)

    completed, resent = await asyncio.gather(complete(), resend(), return_exceptions=True)

    assert completed.status == VideoStatus.processing.value
    assert isinstance(resent, OrderingConflict)
    assert await IngestionService.received_bytes(db, video.id) == 0
    assert not (blob_store.root / video.id / "parts").exists()
    assert await blob_store.read_range(completed.blob_ref, 0, len(data)) == data


async def test_dead_lettered_orphan_is_failed_not_requeued(db, make_principal, upload, queue):
    owner = await make_principal()
    video = await upload(owner)
    for _ in range(queue.max_attempts):
        job = await queue.lease(db)
        await queue.release(db, job, error="scorer unavailable")

    # Dead-lettered, but the process stopped before the video transition
    reaped = await queue.reap_exhausted(db)
    assert [r.video_id for r in reaped] == [video.id]
    assert (await load_video(db, video.id)).status == VideoStatus.processing.value

    assert await IngestionService.recover_orphaned_processing(db, queue=queue) == []

    video = await load_video(db, video.id)
    assert video.status == VideoStatus.error.value
    assert video.error_reason == reaped[0].reason
    assert await queue.active_job(db, video.id) is None

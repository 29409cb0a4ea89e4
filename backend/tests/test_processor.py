"""워커 처리 흐름 테스트: probe → classify → verdict."""

import pytest

from app.core.exceptions import NotFoundError, PermanentMediaError, TransientInfraError
from app.integrations.classifier import Verdict
from app.models import VideoStatus
from app.services.state_machine import load_video
from app.services.video_service import VideoService
from app.workers.pool import sweep
from app.workers.processor import JobProcessor

from conftest import FakeClassifier, FakeProbe


def make_processor(session_factory, queue, blob_store, classifier, probe=None, threshold=0.8):
    return JobProcessor(
        session_factory=session_factory,
        queue=queue,
        blob_store=blob_store,
        classifier=classifier,
        media_probe=probe or FakeProbe(),
        confidence_threshold=threshold,
        classifier_timeout=5,
    )


async def test_safe_verdict(db, session_factory, make_principal, upload, queue, blob_store):
    owner = await make_principal()
    video = await upload(owner)
    probe = FakeProbe(duration=42.0)
    processor = make_processor(
        session_factory, queue, blob_store, FakeClassifier(Verdict(verdict="safe", confidence=0.97)), probe
    )

    assert await processor.run_once() is True
    assert await processor.run_once() is False

    video = await load_video(db, video.id)
    assert video.status == VideoStatus.safe.value
    assert video.processing_progress == 100
    assert video.duration_seconds == 42.0
    assert video.classification_confidence == pytest.approx(0.97)
    assert await queue.active_job(db, video.id) is None
    assert len(probe.paths) == 1


async def test_flagged_verdict_keeps_reason(db, session_factory, make_principal, upload, queue, blob_store):
    owner = await make_principal()
    video = await upload(owner)
    classifier = FakeClassifier(Verdict(verdict="flagged", confidence=0.95, reason="nudity"))
    processor = make_processor(session_factory, queue, blob_store, classifier)

    await processor.run_once()

    video = await load_video(db, video.id)
    assert video.status == VideoStatus.flagged.value
    assert video.flag_reason == "nudity"
    assert await queue.active_job(db, video.id) is None


async def test_low_confidence_fails_closed(db, session_factory, make_principal, upload, queue, blob_store):
    owner = await make_principal()
    video = await upload(owner)
    classifier = FakeClassifier(Verdict(verdict="safe", confidence=0.4))
    processor = make_processor(session_factory, queue, blob_store, classifier, threshold=0.8)

    await processor.run_once()

    video = await load_video(db, video.id)
    assert video.status == VideoStatus.flagged.value
    assert "manual review" in video.flag_reason


async def test_transient_failure_is_retried(db, session_factory, make_principal, upload, queue, blob_store):
    owner = await make_principal()
    video = await upload(owner)
    classifier = FakeClassifier(
        TransientInfraError("classifier unavailable"),
        Verdict(verdict="safe", confidence=0.9),
    )
    processor = make_processor(session_factory, queue, blob_store, classifier)

    await processor.run_once()
    video = await load_video(db, video.id)
    assert video.status == VideoStatus.processing.value
    job = await queue.active_job(db, video.id)
    assert job.attempt_count == 1
    assert "classifier unavailable" in job.last_error

    await processor.run_once()
    video = await load_video(db, video.id)
    assert video.status == VideoStatus.safe.value
    assert classifier.calls == [video.id, video.id]


async def test_retries_exhausted_moves_to_error(db, session_factory, make_principal, upload, queue, blob_store):
    owner = await make_principal()
    video = await upload(owner)
    processor = make_processor(
        session_factory, queue, blob_store, FakeClassifier(TransientInfraError("timeout"))
    )

    for _ in range(queue.max_attempts):
        assert await processor.run_once() is True
    assert await processor.run_once() is False

    assert await processor.reap() == 1
    video = await load_video(db, video.id)
    assert video.status == VideoStatus.error.value
    assert f"{queue.max_attempts} attempts" in video.error_reason
    dead = await queue.list_dead_letters(db)
    assert [d.video_id for d in dead] == [video.id]


async def test_permanent_media_error_fails_at_once(db, session_factory, make_principal, upload, queue, blob_store):
    owner = await make_principal()
    video = await upload(owner)
    classifier = FakeClassifier(Verdict(verdict="safe", confidence=0.99))
    probe = FakeProbe(error=PermanentMediaError("moov atom not found"))
    processor = make_processor(session_factory, queue, blob_store, classifier, probe)

    await processor.run_once()

    video = await load_video(db, video.id)
    assert video.status == VideoStatus.error.value
    assert "moov atom not found" in video.error_reason
    assert classifier.calls == []
    assert await queue.active_job(db, video.id) is None


async def test_delete_during_processing_discards_verdict(
    db, session_factory, make_principal, upload, queue, blob_store
):
    owner = await make_principal()
    video = await upload(owner)

    async def delete_underneath(video_id):
        async with session_factory() as other:
            await VideoService.delete_video(other, owner, video_id, queue=queue, blob_store=blob_store)

    classifier = FakeClassifier(Verdict(verdict="safe", confidence=0.99), on_call=delete_underneath)
    processor = make_processor(session_factory, queue, blob_store, classifier)

    assert await processor.run_once() is True

    with pytest.raises(NotFoundError):
        await load_video(db, video.id)
    assert await queue.active_job(db, video.id) is None
    assert not (blob_store.root / video.id).exists()


async def test_duplicate_delivery_is_discarded(db, session_factory, make_principal, upload, queue, blob_store):
    owner = await make_principal()
    video = await upload(owner)
    classifier = FakeClassifier(Verdict(verdict="safe", confidence=0.99))
    processor = make_processor(session_factory, queue, blob_store, classifier)
    await processor.run_once()

    # A stray second job for a video that already has its verdict
    await queue.enqueue(db, video.id)
    assert await processor.run_once() is True

    video = await load_video(db, video.id)
    assert video.status == VideoStatus.safe.value
    assert len(classifier.calls) == 1
    assert await queue.active_job(db, video.id) is None


async def test_sweep_recovers_and_reaps(db, session_factory, make_principal, upload, queue, blob_store):
    owner = await make_principal()
    video = await upload(owner)
    await queue.cancel(db, video.id)  # queued job removed, video left in processing

    processor = make_processor(
        session_factory, queue, blob_store, FakeClassifier(Verdict(verdict="safe", confidence=0.9))
    )
    await sweep(processor)
    assert await queue.active_job(db, video.id) is not None

    await processor.run_once()
    assert (await load_video(db, video.id)).status == VideoStatus.safe.value

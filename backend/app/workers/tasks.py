"""영상 처리 Celery 태스크 (USE_CELERY=true 일 때).

Celery only wakes workers up; the job table stays the source of truth for
leases, retries and dead-lettering. Run with::

    celery -A app.workers.tasks worker -B --concurrency 4
"""

import asyncio
import logging

from celery import Celery

from app.config import get_settings
from app.core.database import new_session_factory
from app.core.storage import get_blob_store
from app.integrations.classifier import build_classifier
from app.integrations.media_probe import get_media_probe
from app.services.job_queue import JobQueue
from app.services.notification_hub import get_notification_hub
from app.workers.pool import sweep
from app.workers.processor import JobProcessor

settings = get_settings()
logger = logging.getLogger(__name__)

celery_app = Celery(
    "vidsecure",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
)
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    task_track_started=True,
    task_acks_late=True,
    worker_prefetch_multiplier=1,  # 한 번에 한 작업만
    task_time_limit=settings.job_lease_timeout_seconds,
    beat_schedule={
        "sweep-pipeline": {
            "task": "app.workers.tasks.sweep_task",
            "schedule": settings.sweep_interval_seconds,
        },
        "poll-jobs": {
            "task": "app.workers.tasks.process_next_job_task",
            "schedule": settings.sweep_interval_seconds,
        },
    },
)


async def _with_processor(fn):
    # 태스크마다 새 이벤트 루프이므로 엔진/클라이언트도 새로 만든다
    engine, session_factory = new_session_factory()
    classifier = build_classifier()
    get_notification_hub.cache_clear()
    hub = get_notification_hub()
    processor = JobProcessor(
        session_factory=session_factory,
        queue=JobQueue(),
        blob_store=get_blob_store(),
        classifier=classifier,
        media_probe=get_media_probe(),
    )
    try:
        return await fn(processor)
    finally:
        if hasattr(classifier, "aclose"):
            await classifier.aclose()
        if hub.relay is not None:
            await hub.relay.close()
        await engine.dispose()


async def _process_one(processor: JobProcessor) -> bool:
    await processor.reap()
    return await processor.run_once()


@celery_app.task(name="app.workers.tasks.process_next_job_task")
def process_next_job_task():
    """
    Process at most one job, then hand the rest of the backlog to a fresh task.

    One job per task keeps each run inside ``task_time_limit`` (the lease
    timeout) however long the queue is.
    """
    processed = asyncio.run(_with_processor(_process_one))
    if processed:
        dispatch_processing()
    return {"processed": int(processed)}


@celery_app.task(name="app.workers.tasks.sweep_task")
def sweep_task():
    asyncio.run(_with_processor(sweep))
    return {"status": "ok"}


def dispatch_processing() -> None:
    """Wake a Celery worker after a job was enqueued."""
    task = process_next_job_task.delay()
    logger.info(f"Dispatched processing task: task_id={task.id}")

"""In-process worker pool (used when Celery is disabled).

Each worker reaps exhausted jobs, leases one job, processes it to the end and
repeats; idle workers sleep for ``worker_poll_interval_seconds``. A sweeper
task expires stalled uploads and recovers orphaned videos.
"""

import asyncio
import logging

from app.config import get_settings
from app.services.ingestion_service import IngestionService
from app.workers.processor import JobProcessor

settings = get_settings()
logger = logging.getLogger(__name__)


class WorkerPool:
    def __init__(
        self,
        processor: JobProcessor,
        concurrency: int | None = None,
        poll_interval: float | None = None,
        sweep_interval: float | None = None,
    ):
        self.processor = processor
        self.concurrency = concurrency or settings.worker_concurrency
        self.poll_interval = poll_interval or settings.worker_poll_interval_seconds
        self.sweep_interval = sweep_interval or settings.sweep_interval_seconds
        self._tasks: list[asyncio.Task] = []
        self._stopping = asyncio.Event()

    @property
    def running(self) -> bool:
        return any(not t.done() for t in self._tasks)

    def start(self) -> None:
        if self.running:
            return
        self._stopping.clear()
        self._tasks = [
            asyncio.create_task(self._worker(i), name=f"video-worker-{i}")
            for i in range(self.concurrency)
        ]
        self._tasks.append(asyncio.create_task(self._sweeper(), name="video-sweeper"))
        logger.info(f"Worker pool started with {self.concurrency} worker(s)")

    async def stop(self) -> None:
        self._stopping.set()
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info("Worker pool stopped")

    async def _idle(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._stopping.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def _worker(self, index: int) -> None:
        while not self._stopping.is_set():
            try:
                await self.processor.reap()
                worked = await self.processor.run_once()
            except asyncio.CancelledError:
                raise
            except Exception:
                # Keep the worker alive; the job's lease expires and it is redelivered
                logger.exception(f"Worker {index} crashed while handling a job")
                worked = False
            if not worked:
                await self._idle(self.poll_interval)

    async def _sweeper(self) -> None:
        while not self._stopping.is_set():
            try:
                await sweep(self.processor)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Sweep failed")
            await self._idle(self.sweep_interval)


async def sweep(processor: JobProcessor) -> None:
    """One maintenance pass: dead-letter, expire stalled uploads, recover orphans."""
    await processor.reap()
    async with processor.session_factory() as db:
        await IngestionService.abandon_stalled_uploads(db, blob_store=processor.blob_store)
        await IngestionService.recover_orphaned_processing(db, queue=processor.queue)

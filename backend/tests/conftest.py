"""공용 테스트 픽스처.

Settings are read once at import time, so the environment is prepared here
before anything under ``app`` is imported.
"""

import itertools
import os
import tempfile
from pathlib import Path

_TMP = Path(tempfile.mkdtemp(prefix="vidsecure-tests-"))
os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{_TMP / 'api.db'}")
os.environ.setdefault("LOCAL_STORAGE_DIR", str(_TMP / "storage"))
os.environ.setdefault("EMBEDDED_WORKERS", "false")
os.environ.setdefault("USE_CELERY", "false")
os.environ.setdefault("MEDIA_PROBE_ENABLED", "false")
os.environ.setdefault("CLASSIFIER_URL", "")
os.environ.setdefault("BOOTSTRAP_ADMIN_EMAIL", "admin@example.com")
os.environ.setdefault("SECRET_KEY", "test-secret")

import pytest  # noqa: E402

from app.core.database import init_models, new_session_factory  # noqa: E402
from app.core.permissions import Principal, Role  # noqa: E402
from app.core.security import hash_password  # noqa: E402
from app.core.storage import LocalBlobStore  # noqa: E402
from app.integrations.classifier import ClassifierAdapter, Verdict  # noqa: E402
from app.integrations.media_probe import MediaInfo  # noqa: E402
from app.models import User, Video, VideoStatus  # noqa: E402
from app.services.ingestion_service import IngestionService  # noqa: E402
from app.services.job_queue import JobQueue  # noqa: E402
from app.services.notification_hub import get_notification_hub  # noqa: E402

_ids = itertools.count(1)


@pytest.fixture(autouse=True)
def fresh_hub():
    get_notification_hub.cache_clear()
    yield get_notification_hub()
    get_notification_hub.cache_clear()


@pytest.fixture
async def session_factory(tmp_path):
    engine, factory = new_session_factory(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    await init_models(engine)
    yield factory
    await engine.dispose()


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def blob_store(tmp_path) -> LocalBlobStore:
    return LocalBlobStore(tmp_path / "blobs")


@pytest.fixture
def queue() -> JobQueue:
    return JobQueue(lease_timeout_seconds=60, max_attempts=3, backoff_seconds=0)


@pytest.fixture
def make_principal(db):
    """Insert a user with ``role`` and return its Principal."""

    async def _make(role: Role = Role.editor) -> Principal:
        n = next(_ids)
        user = User(
            email=f"user{n}@example.com",
            username=f"user{n}",
            hashed_password=hash_password("password"),
            role=role.value,
        )
        db.add(user)
        await db.commit()
        return Principal(user_id=user.id, role=role)

    return _make


@pytest.fixture
def make_video(db):
    """Insert a video directly in ``status`` (bypasses ingestion)."""

    async def _make(owner: Principal, status: VideoStatus = VideoStatus.uploading, **fields) -> Video:
        values = {
            "id": f"vid-{next(_ids)}",
            "owner_id": owner.user_id,
            "filename": "clip.mp4",
            "title": "clip",
            "content_type": "video/mp4",
            "declared_size_bytes": 1000,
            "status": status.value,
            "upload_progress": 0 if status is VideoStatus.uploading else 100,
            "processing_progress": 0,
        }
        if status is VideoStatus.flagged:
            values["flag_reason"] = "nudity"
        values.update(fields)
        video = Video(**values)
        db.add(video)
        await db.commit()
        return video

    return _make


@pytest.fixture
def upload(db, blob_store, queue):
    """Run a full chunked upload and complete it; returns the video in processing."""

    async def _upload(
        principal: Principal,
        data: bytes = b"\x00\x01video-bytes" * 100,
        chunk_size: int = 400,
        complete: bool = True,
    ) -> Video:
        video = await IngestionService.initiate_upload(
            db, principal, "clip.mp4", len(data), "video/mp4"
        )
        for offset in range(0, len(data), chunk_size):
            await IngestionService.put_chunk(
                db, principal, video.id, offset, data[offset:offset + chunk_size], blob_store
            )
        if not complete:
            return video
        return await IngestionService.complete_upload(
            db, principal, video.id, queue=queue, blob_store=blob_store
        )

    return _upload


class FakeClassifier(ClassifierAdapter):
    """Returns (or raises) the queued results in order; the last one repeats."""

    def __init__(self, *results, on_call=None):
        self.results = list(results)
        self.on_call = on_call
        self.calls: list[str] = []

    async def classify(self, video_id: str, blob_ref: str, url: str) -> Verdict:
        self.calls.append(video_id)
        if self.on_call is not None:
            await self.on_call(video_id)
        result = self.results.pop(0) if len(self.results) > 1 else self.results[0]
        if isinstance(result, Exception):
            raise result
        return result


class FakeProbe:
    def __init__(self, error: Exception | None = None, duration: float = 12.5):
        self.error = error
        self.duration = duration
        self.paths: list[Path] = []

    async def probe(self, file_path: Path) -> MediaInfo:
        self.paths.append(file_path)
        if self.error is not None:
            raise self.error
        return MediaInfo(duration_seconds=self.duration, codec="h264", width=1920, height=1080)

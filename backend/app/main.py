import asyncio
import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.config import get_settings
from app.api import admin, auth, notifications, videos
from app.core import database
from app.core.exceptions import (
    IdConflictError,
    InvalidCredentialsError,
    NotFoundError,
    OrderingConflict,
    PayloadTooLargeError,
    PermanentMediaError,
    PermissionDeniedError,
    PipelineError,
    TransientInfraError,
    ValidationError,
)
from app.core.storage import get_blob_store
from app.integrations.classifier import get_classifier
from app.integrations.media_probe import get_media_probe
from app.services.job_queue import JobQueue
from app.services.notification_hub import get_notification_hub
from app.workers.pool import WorkerPool
from app.workers.processor import JobProcessor

settings = get_settings()

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(
    title=settings.app_name,
    version="0.1.0",
    description="VidSecure - 영상 업로드 & 콘텐츠 안전성 분류 API",
)

# Looked up along the exception MRO; PipelineError catches anything unlisted
ERROR_STATUS_CODES: dict[type[PipelineError], int] = {
    PipelineError: 500,
    ValidationError: 400,
    IdConflictError: 409,
    PayloadTooLargeError: 413,
    TransientInfraError: 503,
    PermanentMediaError: 422,
    OrderingConflict: 409,
    NotFoundError: 404,
    PermissionDeniedError: 403,
    InvalidCredentialsError: 401,
}


async def pipeline_exception_handler(request: Request, exc: PipelineError):
    status_code = next(
        ERROR_STATUS_CODES[cls] for cls in type(exc).__mro__ if cls in ERROR_STATUS_CODES
    )
    if status_code >= 500:
        logger.warning(f"{request.method} {request.url.path} -> {status_code}: {exc}")
    return JSONResponse(
        status_code=status_code,
        content={"detail": str(exc), "error": type(exc).__name__},
    )


for _exc_class in ERROR_STATUS_CODES:
    app.add_exception_handler(_exc_class, pipeline_exception_handler)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Catch all unhandled exceptions and log them."""
    logger.exception(f"Unhandled error on {request.method} {request.url}")
    return JSONResponse(
        status_code=500,
        content={"detail": f"{type(exc).__name__}: {str(exc)}"}
    )


app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # TODO: 프로덕션에서는 특정 도메인만 허용
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(auth.router, prefix=f"{settings.api_prefix}/auth", tags=["auth"])
app.include_router(videos.router, prefix=f"{settings.api_prefix}/videos", tags=["videos"])
app.include_router(admin.router, prefix=f"{settings.api_prefix}/admin", tags=["admin"])
app.include_router(
    notifications.router, prefix=f"{settings.api_prefix}/notifications", tags=["notifications"]
)


@app.on_event("startup")
async def startup():
    await database.init_models()

    app.state.worker_pool = None
    app.state.relay_task = None
    if settings.use_celery:
        # Worker processes publish through Redis; fan their events out to local sockets
        hub = get_notification_hub()
        app.state.relay_task = asyncio.create_task(hub.relay.listen(hub))
    elif settings.embedded_workers:
        processor = JobProcessor(
            session_factory=database.async_session_factory,
            queue=JobQueue(),
            blob_store=get_blob_store(),
            classifier=get_classifier(),
            media_probe=get_media_probe(),
        )
        app.state.worker_pool = WorkerPool(processor)
        app.state.worker_pool.start()
    logger.info(f"{settings.app_name} started (celery={settings.use_celery})")


@app.on_event("shutdown")
async def shutdown():
    if app.state.worker_pool is not None:
        await app.state.worker_pool.stop()
    if app.state.relay_task is not None:
        app.state.relay_task.cancel()
        await asyncio.gather(app.state.relay_task, return_exceptions=True)
        await get_notification_hub().relay.close()
    await database.engine.dispose()


@app.get("/health")
async def health_check():
    return {"status": "ok", "service": settings.app_name}

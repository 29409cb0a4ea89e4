from fastapi import APIRouter, Depends, Header, Query, Request, Response
from fastapi.responses import RedirectResponse, StreamingResponse
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import get_settings
from app.core.database import get_db
from app.core.permissions import Principal
from app.core.security import get_current_principal
from app.models import VideoStatus
from app.services import IngestionService, VideoService
from app.schemas.video import (
    VideoCreate,
    VideoListResponse,
    VideoResponse,
    VideoStatsResponse,
    VideoUpdate,
)

settings = get_settings()
router = APIRouter()


@router.post("", response_model=VideoResponse, status_code=201)
async def create_video(
    body: VideoCreate,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
):
    """Start a chunked upload. The video is created in ``uploading``."""
    return await IngestionService.initiate_upload(
        db=db,
        principal=principal,
        filename=body.filename,
        declared_size=body.size_bytes,
        content_type=body.content_type,
        title=body.title,
        description=body.description,
        video_id=body.id,
    )


@router.put("/{video_id}/chunks/{offset}", response_model=VideoResponse)
async def put_chunk(
    video_id: str,
    offset: int,
    request: Request,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
):
    """Upload one chunk as the raw request body. Re-sending the same offset is a no-op."""
    data = await request.body()
    return await IngestionService.put_chunk(
        db=db, principal=principal, video_id=video_id, offset=offset, data=data
    )


@router.post("/{video_id}/complete", response_model=VideoResponse, status_code=202)
async def complete_upload(
    video_id: str,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
):
    """Finish the upload and queue the video for classification."""
    return await IngestionService.complete_upload(db=db, principal=principal, video_id=video_id)


@router.get("", response_model=VideoListResponse)
async def list_videos(
    status: VideoStatus | None = None,
    owner_id: int | None = None,
    page: int = Query(1, ge=1),
    page_size: int | None = Query(None, ge=1, le=settings.max_page_size),
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
):
    """List videos with pagination. Non-admins only see their own."""
    page_size = page_size or settings.default_page_size
    videos, total = await VideoService.list_videos(
        db=db,
        principal=principal,
        status=status,
        owner_id=owner_id,
        page=page,
        page_size=page_size,
    )
    return VideoListResponse(videos=videos, total=total, page=page, page_size=page_size)


@router.get("/stats", response_model=VideoStatsResponse)
async def video_stats(
    owner_id: int | None = None,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
):
    """Per-status counts for the dashboard, scoped like the list."""
    counts = await VideoService.status_counts(db=db, principal=principal, owner_id=owner_id)
    return VideoStatsResponse.from_counts(counts)


@router.get("/{video_id}", response_model=VideoResponse)
async def get_video(
    video_id: str,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
):
    """Get a specific video by ID."""
    return await VideoService.get_visible_video(db=db, principal=principal, video_id=video_id)


@router.patch("/{video_id}", response_model=VideoResponse)
async def update_video(
    video_id: str,
    body: VideoUpdate,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
):
    return await VideoService.update_metadata(
        db=db,
        principal=principal,
        video_id=video_id,
        filename=body.filename,
        title=body.title,
        description=body.description,
    )


@router.get("/{video_id}/content")
async def get_video_content(
    video_id: str,
    range_header: str | None = Header(None, alias="Range"),
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
):
    """Stream the assembled video. Supports a single ``Range: bytes=`` request."""
    content = await VideoService.read_content(
        db=db, principal=principal, video_id=video_id, range_header=range_header
    )
    if content.redirect_url is not None:
        return RedirectResponse(content.redirect_url, status_code=307)

    headers = {"Accept-Ranges": "bytes", "Content-Length": str(content.length)}
    status_code = 200
    if content.byte_range is not None:
        status_code = 206
        headers["Content-Range"] = (
            f"bytes {content.byte_range.start}-{content.byte_range.end}/{content.size}"
        )
    return StreamingResponse(
        content.chunks,
        status_code=status_code,
        media_type=content.video.content_type,
        headers=headers,
    )


@router.delete("/{video_id}", status_code=204)
async def delete_video(
    video_id: str,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
):
    """Delete a video, its blob and any pending processing job."""
    await VideoService.delete_video(db=db, principal=principal, video_id=video_id)
    return Response(status_code=204)

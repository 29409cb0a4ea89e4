from datetime import datetime

from pydantic import BaseModel, Field

from app.models import VideoStatus


class VideoCreate(BaseModel):
    filename: str = Field(min_length=1, max_length=255)
    size_bytes: int
    content_type: str
    title: str | None = Field(default=None, max_length=255)
    description: str | None = None
    id: str | None = Field(default=None, max_length=64)


class VideoUpdate(BaseModel):
    filename: str | None = Field(default=None, max_length=255)
    title: str | None = Field(default=None, max_length=255)
    description: str | None = None


class VideoResponse(BaseModel):
    id: str
    owner_id: int
    filename: str
    title: str
    description: str | None
    content_type: str
    declared_size_bytes: int
    size_bytes: int | None
    duration_seconds: float | None
    status: VideoStatus
    upload_progress: int
    processing_progress: int
    flag_reason: str | None
    classification_confidence: float | None
    error_reason: str | None
    content_sha256: str | None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class VideoListResponse(BaseModel):
    videos: list[VideoResponse]
    total: int
    page: int
    page_size: int


class VideoStatsResponse(BaseModel):
    """Dashboard counters. ``processing`` includes videos still uploading."""

    total: int
    safe: int
    flagged: int
    processing: int
    error: int
    by_status: dict[VideoStatus, int]

    @classmethod
    def from_counts(cls, counts: dict[VideoStatus, int]) -> "VideoStatsResponse":
        return cls(
            total=sum(counts.values()),
            safe=counts[VideoStatus.safe],
            flagged=counts[VideoStatus.flagged],
            processing=counts[VideoStatus.uploading] + counts[VideoStatus.processing],
            error=counts[VideoStatus.error],
            by_status=counts,
        )


class DeadLetterResponse(BaseModel):
    id: int
    video_id: str
    attempt_count: int
    reason: str
    enqueued_at: datetime
    dead_lettered_at: datetime

    model_config = {"from_attributes": True}

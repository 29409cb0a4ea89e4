from datetime import datetime

from pydantic import BaseModel, Field

from app.core.clock import utcnow


class VideoEvent(BaseModel):
    """State/progress notification pushed to the owning user's subscribers."""

    video_id: str
    owner_id: int = Field(exclude=True)
    status: str
    upload_progress: int
    processing_progress: int
    flag_reason: str | None = None
    error_reason: str | None = None
    deleted: bool = False
    emitted_at: datetime = Field(default_factory=utcnow)

    @classmethod
    def from_video(cls, video, deleted: bool = False) -> "VideoEvent":
        return cls(
            video_id=video.id,
            owner_id=video.owner_id,
            status=video.status,
            upload_progress=video.upload_progress,
            processing_progress=video.processing_progress,
            flag_reason=video.flag_reason,
            error_reason=video.error_reason,
            deleted=deleted,
        )


class RelayEnvelope(BaseModel):
    """Wire format on the Redis relay; carries the owner id the event omits."""

    owner_id: int
    event: dict

    @classmethod
    def wrap(cls, event: VideoEvent) -> "RelayEnvelope":
        return cls(owner_id=event.owner_id, event=event.model_dump(mode="json"))

    def unwrap(self) -> VideoEvent:
        return VideoEvent(owner_id=self.owner_id, **self.event)

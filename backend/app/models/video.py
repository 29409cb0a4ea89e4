import enum
from datetime import datetime

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.core.clock import utcnow
from app.core.database import Base


class VideoStatus(str, enum.Enum):
    uploading = "uploading"
    processing = "processing"
    safe = "safe"
    flagged = "flagged"
    error = "error"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({VideoStatus.safe, VideoStatus.flagged, VideoStatus.error})


class Video(Base):
    __tablename__ = "videos"
    __table_args__ = (
        CheckConstraint(
            "(status = 'flagged' AND flag_reason IS NOT NULL AND flag_reason <> '')"
            " OR (status <> 'flagged' AND flag_reason IS NULL)",
            name="ck_videos_flag_reason_iff_flagged",
        ),
        CheckConstraint("upload_progress BETWEEN 0 AND 100", name="ck_videos_upload_progress"),
        CheckConstraint("processing_progress BETWEEN 0 AND 100", name="ck_videos_processing_progress"),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    owner_id: Mapped[int] = mapped_column(ForeignKey("users.id"), index=True)
    filename: Mapped[str] = mapped_column(String(255))
    title: Mapped[str] = mapped_column(String(255))
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    content_type: Mapped[str] = mapped_column(String(100))
    declared_size_bytes: Mapped[int] = mapped_column(BigInteger)
    size_bytes: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    duration_seconds: Mapped[float | None] = mapped_column(Float, nullable=True)
    status: Mapped[str] = mapped_column(
        String(20), default=VideoStatus.uploading.value, index=True
    )  # uploading, processing, safe, flagged, error
    upload_progress: Mapped[int] = mapped_column(Integer, default=0)
    processing_progress: Mapped[int] = mapped_column(Integer, default=0)
    flag_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    classification_confidence: Mapped[float | None] = mapped_column(Float, nullable=True)
    error_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    blob_ref: Mapped[str | None] = mapped_column(String(500), nullable=True)
    content_sha256: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    last_upload_activity_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    owner = relationship("User", back_populates="videos")


class UploadChunk(Base):
    __tablename__ = "upload_chunks"
    __table_args__ = (UniqueConstraint("video_id", "offset", name="uq_upload_chunks_video_offset"),)

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    video_id: Mapped[str] = mapped_column(ForeignKey("videos.id"), index=True)
    offset: Mapped[int] = mapped_column(BigInteger)
    length: Mapped[int] = mapped_column(Integer)
    # Row is reserved before the bytes land; only stored chunks count as received
    stored: Mapped[bool] = mapped_column(Boolean, default=False)
    received_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

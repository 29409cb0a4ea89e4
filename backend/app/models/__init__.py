"""ORM models. Imported together so string relationships resolve."""

from .user import User
from .video import UploadChunk, Video, VideoStatus, TERMINAL_STATUSES
from .job import DeadLetter, JobState, ProcessingJob

__all__ = [
    "User",
    "Video",
    "VideoStatus",
    "TERMINAL_STATUSES",
    "UploadChunk",
    "ProcessingJob",
    "JobState",
    "DeadLetter",
]

"""Business logic services layer."""

from .auth_service import AuthService
from .video_service import VideoService
from .ingestion_service import IngestionService
from .state_machine import VideoStateMachine
from .job_queue import JobQueue
from .notification_hub import NotificationHub

__all__ = [
    "AuthService",
    "VideoService",
    "IngestionService",
    "VideoStateMachine",
    "JobQueue",
    "NotificationHub",
]

from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    # App
    app_name: str = "VidSecure"
    debug: bool = True
    api_prefix: str = "/api/v1"
    log_level: str = "INFO"

    # Database
    database_url: str = "sqlite+aiosqlite:///./vidsecure.db"

    # Use Celery for async tasks (set to False to run workers inside the API process)
    use_celery: bool = False
    embedded_workers: bool = True

    # Redis
    redis_url: str = "redis://localhost:6379/0"
    notification_channel: str = "vidsecure:video-events"

    # JWT
    secret_key: str = "CHANGE-THIS-IN-PRODUCTION"
    algorithm: str = "HS256"
    access_token_expire_minutes: int = 60 * 24  # 24 hours

    # Accounts
    default_user_role: str = "editor"
    bootstrap_admin_email: str = ""

    # AWS S3
    aws_access_key_id: str = ""
    aws_secret_access_key: str = ""
    aws_region: str = "ap-northeast-2"
    s3_bucket_name: str = "vidsecure-videos"
    presigned_url_expire_seconds: int = 3600

    # Local blob storage (used when S3 credentials are empty)
    local_storage_dir: str = "storage"
    blob_timeout_seconds: float = 30.0

    # File Upload
    max_video_size_mb: int = 2048
    max_chunk_size_mb: int = 16
    allowed_video_types: list[str] = [
        "video/mp4",
        "video/quicktime",
        "video/x-msvideo",
        "video/webm",
        "video/x-matroska",
    ]
    upload_stall_timeout_seconds: int = 15 * 60

    # Job queue
    job_lease_timeout_seconds: int = 5 * 60
    job_max_attempts: int = 5
    job_retry_backoff_seconds: float = 5.0
    job_retry_backoff_max_seconds: float = 300.0

    # Worker pool
    worker_concurrency: int = 4
    worker_poll_interval_seconds: float = 1.0
    sweep_interval_seconds: float = 30.0

    # Classifier (external scorer)
    classifier_url: str = ""
    classifier_api_key: str = ""
    classifier_timeout_seconds: float = 60.0
    classifier_confidence_threshold: float = 0.8

    # Media probe
    media_probe_enabled: bool = True
    ffprobe_path: str = "ffprobe"
    media_probe_timeout_seconds: float = 30.0

    # Query / notifications
    default_page_size: int = 20
    max_page_size: int = 100
    notification_queue_size: int = 100
    content_max_range_bytes: int = 8 * 1024 * 1024  # longer ranges are shortened

    # Celery
    celery_broker_url: str = "redis://localhost:6379/1"
    celery_result_backend: str = "redis://localhost:6379/2"

    model_config = {"env_file": ".env", "extra": "ignore"}

    @property
    def max_video_size_bytes(self) -> int:
        return self.max_video_size_mb * 1024 * 1024

    @property
    def max_chunk_size_bytes(self) -> int:
        return self.max_chunk_size_mb * 1024 * 1024


@lru_cache
def get_settings() -> Settings:
    return Settings()

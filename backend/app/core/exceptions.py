"""Custom exception classes for the application."""


class PipelineError(Exception):
    """Base class for errors raised by the ingestion and processing pipeline."""


class ValidationError(PipelineError):
    """Raised when a request is rejected before anything is persisted."""


class IdConflictError(ValidationError):
    """Raised when a client-chosen video id is already taken."""

    def __init__(self, video_id: str):
        self.video_id = video_id
        super().__init__(f"Video id already in use: {video_id}")


class PayloadTooLargeError(ValidationError):
    """Raised when an upload or chunk exceeds the allowed size."""


class TransientInfraError(PipelineError):
    """Queue, blob store or classifier is temporarily unavailable. Safe to retry."""


class PermanentMediaError(PipelineError):
    """Media is corrupt or unreadable. Retrying cannot help."""


class OrderingConflict(PipelineError):
    """Raised when a transition is attempted that the current status does not allow.

    Usually a late or duplicate delivery: terminal states are write-once.
    """

    def __init__(self, video_id: str, current: str, trigger: str):
        self.video_id = video_id
        self.current = current
        self.trigger = trigger
        super().__init__(f"Cannot apply '{trigger}' to video {video_id} in status '{current}'")


class NotFoundError(PipelineError):
    """Raised for operations on unknown or deleted ids."""

    def __init__(self, kind: str, identifier):
        self.kind = kind
        self.identifier = identifier
        super().__init__(f"{kind} not found: {identifier}")


class PermissionDeniedError(PipelineError):
    """Raised when the caller's role lacks the capability for an operation."""

    def __init__(self, capability: str):
        self.capability = capability
        super().__init__(f"Missing capability: {capability}")


class AccountConflictError(ValidationError):
    """Raised when registration collides with an existing account."""

    def __init__(self, field: str, value: str):
        self.field = field
        self.value = value
        super().__init__(f"{field} already registered: {value}")


class EmailAlreadyExistsError(AccountConflictError):
    def __init__(self, email: str):
        super().__init__("Email", email)


class UsernameAlreadyExistsError(AccountConflictError):
    def __init__(self, username: str):
        super().__init__("Username", username)


class InvalidCredentialsError(PipelineError):
    """Raised when authentication fails due to invalid email or password."""

    def __init__(self):
        super().__init__("Invalid email or password")

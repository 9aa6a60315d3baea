"""
Centralized exception definitions for the orchestration layer.
"""


class CaptionCraftError(Exception):
    """Base class for orchestration errors."""

    def __init__(self, message: str, detail: str = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or message


class RecordNotFoundError(CaptionCraftError):
    """Raised when a video or transcript record does not exist (or is not the owner's)."""

    def __init__(self, message: str = "Record not found"):
        super().__init__(message)


class InvalidTransitionError(CaptionCraftError):
    """Raised when a status change is not allowed by the lifecycle."""

    def __init__(self, current: str, target: str):
        super().__init__(f"Cannot move video from '{current}' to '{target}'")
        self.current = current
        self.target = target


class NotRetryableError(CaptionCraftError):
    """Raised when retry is requested for a video that is not in a failed state."""

    def __init__(self, message: str = "This video is not in a failed state and cannot be retried."):
        super().__init__(message)


class PermanentJobError(CaptionCraftError):
    """Stage failure that retrying cannot fix; the broker fails the job immediately."""


class TranscriptDataError(PermanentJobError):
    """Raised when transcript data is missing or has no segment list."""

    def __init__(self, message: str = "Transcript data is missing or segments are not an array."):
        super().__init__(message)


class ProviderError(CaptionCraftError):
    """Raised when an external collaborator (speech-to-text, ffmpeg, storage) fails."""

    def __init__(self, provider: str, message: str):
        super().__init__(f"{provider} failed: {message}")
        self.provider = provider


class BrokerUnavailableError(CaptionCraftError):
    """Raised when the broker transport gives up after exhausting its retries."""

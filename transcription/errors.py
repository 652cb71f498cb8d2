"""
Error taxonomy for the transcription pipeline.

Every failure that reaches a caller is a TranscriptionError subclass carrying
an ErrorKind, a short user-safe message, and a context dict used only for
logging. Arbitrary exceptions from yt-dlp, ffmpeg or a provider are mapped to
a kind with classify_error().
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorKind(Enum):
    """Caller-visible error categories."""
    CONTENT_UNAVAILABLE = "content_unavailable"
    SPLIT_FAILED = "split_failed"
    ALL_SEGMENTS_FAILED = "all_segments_failed"
    ALREADY_PROCESSING = "already_processing"
    PROVIDER_TIMEOUT = "provider_timeout"
    CONFIGURATION = "configuration"
    UNKNOWN = "unknown"


class TranscriptionError(Exception):
    """Base exception for transcription errors."""

    kind = ErrorKind.UNKNOWN
    default_user_message = "Transcription failed. Please try again later."

    def __init__(
        self,
        message: str,
        user_message: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.user_message = user_message or self.default_user_message
        self.context = context or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            'error_type': self.kind.value,
            'message': self.user_message,
        }


class ContentUnavailableError(TranscriptionError):
    """Raised when the source cannot be fetched (private, deleted, restricted, not found)."""
    kind = ErrorKind.CONTENT_UNAVAILABLE
    default_user_message = "This content is unavailable or private and cannot be processed."


class SplitFailedError(TranscriptionError):
    """Raised when chunking produced no usable segments."""
    kind = ErrorKind.SPLIT_FAILED
    default_user_message = "The audio could not be split for processing."


class AllSegmentsFailedError(TranscriptionError):
    """Raised when every segment transcription attempt failed."""
    kind = ErrorKind.ALL_SEGMENTS_FAILED
    default_user_message = "Transcription failed for every part of the audio."


class AlreadyProcessingError(TranscriptionError):
    """Raised when the same content is already being processed."""
    kind = ErrorKind.ALREADY_PROCESSING
    default_user_message = (
        "This content is already being processed. "
        "Please wait for the current processing to complete."
    )


class ProviderTimeoutError(TranscriptionError):
    """Raised when a speech-to-text call exceeds its timeout."""
    kind = ErrorKind.PROVIDER_TIMEOUT
    default_user_message = "The transcription service took too long to respond."


class ConfigurationError(TranscriptionError):
    """Raised when a provider or store is not configured."""
    kind = ErrorKind.CONFIGURATION
    default_user_message = "The transcription service is not configured."


class UnknownTranscriptionError(TranscriptionError):
    """Wraps an uncategorized failure, keeping the original message for diagnostics."""
    kind = ErrorKind.UNKNOWN

    def __init__(self, original: BaseException, context: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(f"{type(original).__name__}: {original}", context=context)
        self.original = original


class ProviderError(Exception):
    """Raised by a speech provider for a failed call. Absorbed per segment."""

    def __init__(self, message: str, status: Optional[int] = None, retryable: bool = True) -> None:
        super().__init__(message)
        self.status = status
        self.retryable = retryable


_UNAVAILABLE_MARKERS = (
    'video unavailable', 'unavailable', 'private', 'not found', '404',
    'deleted', 'removed', 'copyright', 'region', 'not available in your country',
    'sign in to confirm your age', 'members-only', '410',
)


def classify_error(error: BaseException) -> ErrorKind:
    """Categorize an arbitrary exception into an ErrorKind."""
    if isinstance(error, TranscriptionError):
        return error.kind

    error_str = str(error).lower()

    if isinstance(error, TimeoutError) or 'timed out' in error_str or 'timeout' in error_str:
        return ErrorKind.PROVIDER_TIMEOUT
    if any(marker in error_str for marker in _UNAVAILABLE_MARKERS):
        return ErrorKind.CONTENT_UNAVAILABLE
    if 'api key' in error_str:
        return ErrorKind.CONFIGURATION

    return ErrorKind.UNKNOWN


def unavailable_message(error: BaseException) -> str:
    """Build a caller-friendly message for an acquisition failure."""
    error_str = str(error).lower()

    if 'json' in error_str or 'parse' in error_str:
        return ("Video metadata extraction failed due to an invalid response. "
                "The video may be unavailable or restricted.")
    if 'private' in error_str or 'unavailable' in error_str:
        return "This video is unavailable or private and cannot be processed."
    if 'not found' in error_str or '404' in error_str:
        return "Video not found. Please check if the URL is correct and the video exists."
    if 'region' in error_str or 'country' in error_str:
        return "This video is not available in this region."
    return ContentUnavailableError.default_user_message


def wrap_error(error: BaseException, context: Optional[Dict[str, Any]] = None) -> TranscriptionError:
    """Return error unchanged if it is already a TranscriptionError, else wrap it."""
    if isinstance(error, TranscriptionError):
        if context:
            error.context = {**context, **error.context}
        return error

    kind = classify_error(error)
    if kind == ErrorKind.CONTENT_UNAVAILABLE:
        return ContentUnavailableError(str(error), user_message=unavailable_message(error), context=context)
    if kind == ErrorKind.PROVIDER_TIMEOUT:
        return ProviderTimeoutError(str(error), context=context)
    return UnknownTranscriptionError(error, context=context)

"""
Transcription core: turns a video URL or recorded audio into a transcript.
"""

from transcription.errors import (
    AllSegmentsFailedError,
    AlreadyProcessingError,
    ConfigurationError,
    ContentUnavailableError,
    ErrorKind,
    ProviderTimeoutError,
    SplitFailedError,
    TranscriptionError,
    UnknownTranscriptionError,
)
from transcription.models import (
    AudioQuality,
    ContentKind,
    ContentReference,
    Transcript,
    TranscriptionMode,
    TranscriptionOptions,
    WordTimestamp,
)
from transcription.pipeline import TranscriptionPipeline

__all__ = [
    'AllSegmentsFailedError',
    'AlreadyProcessingError',
    'AudioQuality',
    'ConfigurationError',
    'ContentKind',
    'ContentReference',
    'ContentUnavailableError',
    'ErrorKind',
    'ProviderTimeoutError',
    'SplitFailedError',
    'Transcript',
    'TranscriptionError',
    'TranscriptionMode',
    'TranscriptionOptions',
    'TranscriptionPipeline',
    'UnknownTranscriptionError',
    'WordTimestamp',
]

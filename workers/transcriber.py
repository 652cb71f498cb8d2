"""
TranscribeWorker - job-style surface over the transcription pipeline.

Accepts a content reference (YouTube URL, video ID or recorded-audio storage
path) or an uploaded audio buffer, plus a requesting principal, runs the
pipeline, and returns the standard worker result dict with the transcript or
an error code.
"""

from typing import Any, Dict, Optional

from config.settings import get_settings
from transcription.errors import ErrorKind, TranscriptionError, classify_error
from transcription.models import AudioQuality, TranscriptionOptions
from transcription.pipeline import TranscriptionPipeline
from transcription.url_parser import InputType, parse_content_input
from workers.base import BaseWorker


ERROR_CODES = {
    ErrorKind.PROVIDER_TIMEOUT: ('E001', 'timeout', True),
    ErrorKind.SPLIT_FAILED: ('E002', 'split_failed', True),
    ErrorKind.CONTENT_UNAVAILABLE: ('E003', 'content_unavailable', False),
    ErrorKind.ALL_SEGMENTS_FAILED: ('E004', 'all_segments_failed', True),
    ErrorKind.ALREADY_PROCESSING: ('E005', 'already_processing', True),
    ErrorKind.CONFIGURATION: ('E006', 'configuration', False),
    ErrorKind.UNKNOWN: ('E999', 'unknown', True),
}


class TranscribeWorker(BaseWorker):
    """
    Worker that transcribes one piece of content for one principal.

    Input:
        content: YouTube URL, video ID or storage path
        audio_data / filename: Uploaded audio bytes and their original name,
            instead of content
        principal: Requesting user/account identity (required)
        language: Language code (default "en")
        quality: low / medium / high (default "medium")
        word_timestamps: bool (default True)
    """

    def __init__(self, pipeline: Optional[TranscriptionPipeline] = None, log_level: str = "INFO"):
        super().__init__("transcriber", log_level=log_level)
        self._pipeline = pipeline

    @property
    def pipeline(self) -> TranscriptionPipeline:
        if self._pipeline is None:
            self._pipeline = TranscriptionPipeline.from_settings(get_settings())
        return self._pipeline

    def validate_input(self, input_data: Dict[str, Any]) -> bool:
        """Validate content reference or upload, and principal."""
        content = input_data.get('content')
        audio_data = input_data.get('audio_data')

        if not input_data.get('principal'):
            self.log_with_context("Missing required field: principal", level="ERROR")
            return False

        if bool(content) == bool(audio_data):
            self.log_with_context("Exactly one of content or audio_data is required", level="ERROR")
            return False

        if audio_data:
            if not isinstance(audio_data, (bytes, bytearray)) or not input_data.get('filename'):
                self.log_with_context("audio_data must be bytes and come with a filename", level="ERROR")
                return False
        else:
            input_type, _ = parse_content_input(content)
            if input_type == InputType.INVALID:
                self.log_with_context(f"Invalid content reference: {content}", level="ERROR")
                return False

        quality = input_data.get('quality', AudioQuality.MEDIUM.value)
        if quality not in {q.value for q in AudioQuality}:
            self.log_with_context(f"Invalid quality hint: {quality}", level="ERROR")
            return False

        return True

    async def execute(self, input_data: Dict[str, Any]) -> Dict[str, Any]:
        """Run the pipeline and return the transcript as a dict."""
        options = TranscriptionOptions(
            language=input_data.get('language', 'en'),
            quality_hint=AudioQuality(input_data.get('quality', AudioQuality.MEDIUM.value)),
            want_word_timestamps=input_data.get('word_timestamps', True),
        )

        async def progress(stage: str, percent: float) -> None:
            self.log_with_context(f"{stage} ({percent:.0f}%)", level="DEBUG")

        if input_data.get('audio_data'):
            transcript = await self.pipeline.transcribe_upload(
                bytes(input_data['audio_data']),
                input_data['filename'],
                input_data['principal'],
                options,
                progress,
            )
        else:
            transcript = await self.pipeline.transcribe(
                input_data['content'],
                input_data['principal'],
                options,
                progress,
            )

        self.log_with_context(
            "Transcript ready",
            extra_context={
                'strategy': transcript.strategy_used.value,
                'cached': transcript.cached,
                'chars': len(transcript.full_text),
            },
        )

        return {
            **transcript.to_dict(),
            'cached': transcript.cached,
            'partial': transcript.is_partial,
            'word_count': len(transcript.full_text.split()),
        }

    def handle_error(self, error: Exception) -> Dict[str, Any]:
        """Map an exception to an error code and a caller-safe message."""
        kind = classify_error(error)
        code, error_type, recoverable = ERROR_CODES[kind]

        if isinstance(error, TranscriptionError):
            message = error.user_message
        else:
            message = TranscriptionError.default_user_message

        return {
            'error_code': code,
            'error_type': error_type,
            'message': message,
            'recoverable': recoverable,
        }


async def transcribe_content(
    content: str,
    principal: str,
    language: str = 'en',
    quality: str = 'medium',
    word_timestamps: bool = True,
    pipeline: Optional[TranscriptionPipeline] = None,
) -> Dict[str, Any]:
    """
    Convenience function to transcribe content through a TranscribeWorker.

    Args:
        content: YouTube URL, video ID or storage path
        principal: Requesting user/account identity
        language: Language code
        quality: low / medium / high
        word_timestamps: Whether to return word timings
        pipeline: Optional preconfigured pipeline

    Returns:
        Standard worker result dict
    """
    worker = TranscribeWorker(pipeline=pipeline)
    return await worker.run({
        'content': content,
        'principal': principal,
        'language': language,
        'quality': quality,
        'word_timestamps': word_timestamps,
    })

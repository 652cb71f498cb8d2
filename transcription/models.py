"""
Data model of the transcription pipeline.

Plain dataclasses passed between the acquirer, splitter, executor, merger and
cache. Transcript is the only externally visible record and round-trips
through to_dict()/from_dict() for the durable cache tier.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Union

from .errors import TranscriptionError
from .url_parser import InputType, parse_content_input, video_url


ProgressCallback = Callable[[str, float], Union[None, Awaitable[None]]]


class ContentKind(Enum):
    """What kind of media a content reference points to."""
    RECORDED_AUDIO = "recorded_audio"
    REMOTE_VIDEO = "remote_video"


class AudioQuality(Enum):
    """Caller quality hint, mapped to yt-dlp audio quality levels."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def yt_dlp_quality(self) -> str:
        return {'low': '9', 'medium': '5', 'high': '0'}[self.value]


class TranscriptionMode(Enum):
    """Strategy outcome for a piece of audio."""
    HOST_TRANSCRIPT = "host_transcript"
    STANDARD = "standard"
    CHUNKED = "chunked"


@dataclass(frozen=True)
class ContentReference:
    """Immutable identity of a piece of input media."""
    kind: ContentKind
    identity: str
    source_url: Optional[str] = None

    @classmethod
    def from_input(cls, value: str) -> 'ContentReference':
        """
        Derive a reference from a caller URL, video ID or storage path.

        Raises:
            TranscriptionError: if the input is neither a YouTube video nor a storage path
        """
        input_type, identity = parse_content_input(value)
        if input_type == InputType.VIDEO:
            return cls(ContentKind.REMOTE_VIDEO, identity, video_url(identity))
        if input_type == InputType.STORAGE_PATH:
            return cls(ContentKind.RECORDED_AUDIO, identity)
        raise TranscriptionError(
            f"Unrecognized content input: {value!r}",
            user_message="Invalid YouTube URL or audio file path.",
        )

    @property
    def is_remote_video(self) -> bool:
        return self.kind == ContentKind.REMOTE_VIDEO

    def __str__(self) -> str:
        return f"{self.kind.value}:{self.identity}"


@dataclass
class TranscriptionOptions:
    """Per-call options."""
    language: str = "en"
    quality_hint: AudioQuality = AudioQuality.MEDIUM
    want_word_timestamps: bool = True


@dataclass
class TranscriptionRequest:
    """One inbound call; only its cache key outlives the call."""
    content_reference: ContentReference
    requesting_principal: str
    options: TranscriptionOptions = field(default_factory=TranscriptionOptions)

    @property
    def cache_key(self) -> Tuple[str, str]:
        return (str(self.content_reference), self.requesting_principal)


@dataclass
class AudioAsset:
    """A local raw audio file owned by one pipeline run."""
    local_path: Path
    duration_seconds: Optional[float]
    size_bytes: int
    format: str
    title: Optional[str] = None


@dataclass
class Segment:
    """One fixed-duration slice of an AudioAsset."""
    index: int
    local_path: Path
    start_offset_seconds: float
    duration_seconds: float


@dataclass
class WordTimestamp:
    """A word with its start/end time in seconds."""
    word: str
    start: float
    end: float
    confidence: Optional[float] = None

    def shifted(self, offset: float) -> 'WordTimestamp':
        return WordTimestamp(self.word, self.start + offset, self.end + offset, self.confidence)

    def to_dict(self) -> Dict[str, Any]:
        return {'word': self.word, 'start': self.start, 'end': self.end, 'confidence': self.confidence}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'WordTimestamp':
        return cls(
            word=data['word'],
            start=float(data['start']),
            end=float(data['end']),
            confidence=data.get('confidence'),
        )


@dataclass
class ProviderResult:
    """What a speech-to-text provider returns for one audio payload."""
    text: str
    confidence: Optional[float] = None
    duration_seconds: Optional[float] = None
    word_timestamps: List[WordTimestamp] = field(default_factory=list)
    language_detected: Optional[str] = None
    provider: str = "unknown"


@dataclass
class SegmentResult:
    """Result of one segment; failed segments keep their index and a placeholder."""
    index: int
    transcript_text: str
    confidence: float
    word_timestamps: List[WordTimestamp]
    language_detected: Optional[str]
    succeeded: bool
    duration_seconds: float = 0.0
    error: Optional[str] = None

    @classmethod
    def failed(cls, index: int, reason: str, duration_seconds: float = 0.0) -> 'SegmentResult':
        return cls(
            index=index,
            transcript_text=f"[Part {index + 1} transcription failed: {reason}]",
            confidence=0.0,
            word_timestamps=[],
            language_detected=None,
            succeeded=False,
            duration_seconds=duration_seconds,
            error=reason,
        )


@dataclass
class Transcript:
    """The externally visible transcription result."""
    full_text: str
    overall_confidence: float
    duration_seconds: float
    word_timestamps: List[WordTimestamp]
    language_detected: Optional[str]
    provider_used: str
    strategy_used: TranscriptionMode = TranscriptionMode.STANDARD
    segment_count: int = 1
    failed_segments: int = 0
    processing_time_seconds: float = 0.0
    cached: bool = False

    @property
    def is_partial(self) -> bool:
        return self.failed_segments > 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'full_text': self.full_text,
            'overall_confidence': self.overall_confidence,
            'duration_seconds': self.duration_seconds,
            'word_timestamps': [w.to_dict() for w in self.word_timestamps],
            'language_detected': self.language_detected,
            'provider_used': self.provider_used,
            'strategy_used': self.strategy_used.value,
            'segment_count': self.segment_count,
            'failed_segments': self.failed_segments,
            'processing_time_seconds': self.processing_time_seconds,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Transcript':
        return cls(
            full_text=data.get('full_text', ''),
            overall_confidence=float(data.get('overall_confidence', 0.0)),
            duration_seconds=float(data.get('duration_seconds', 0.0)),
            word_timestamps=[WordTimestamp.from_dict(w) for w in data.get('word_timestamps', [])],
            language_detected=data.get('language_detected'),
            provider_used=data.get('provider_used', 'unknown'),
            strategy_used=TranscriptionMode(data.get('strategy_used', TranscriptionMode.STANDARD.value)),
            segment_count=int(data.get('segment_count', 1)),
            failed_segments=int(data.get('failed_segments', 0)),
            processing_time_seconds=float(data.get('processing_time_seconds', 0.0)),
        )


@dataclass
class CacheEntry:
    """A cached transcript, scoped to one principal."""
    content_identity: str
    requesting_principal: str
    transcript: Transcript
    created_at: datetime = field(default_factory=datetime.utcnow)


@dataclass
class VideoMetadata:
    """Basic metadata of a remote video."""
    video_id: str
    title: str
    duration_seconds: Optional[float]
    channel_title: str = "Unknown Channel"

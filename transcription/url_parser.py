"""
Content Reference Parser

Derives the content identity used for caching and locking from whatever the
caller passed in:
- YouTube video URLs (watch, youtu.be, embed, v/, shorts, live)
- Bare 11-character video IDs
- Opaque storage paths of recorded audio uploads
"""

import posixpath
import re
from enum import Enum
from typing import Optional, Tuple
from urllib.parse import urlparse, parse_qs


class InputType(Enum):
    """Types of caller input"""
    VIDEO = "video"          # youtube.com/watch?v=XXX, youtu.be/XXX, shorts, embed
    STORAGE_PATH = "path"    # user-id/recording.m4a
    INVALID = "invalid"


VIDEO_ID_RE = re.compile(r'^[A-Za-z0-9_-]{11}$')


def is_valid_youtube_id(video_id: Optional[str]) -> bool:
    """
    Validate YouTube video ID format.

    YouTube video IDs are exactly 11 characters of the base64url alphabet
    and never end with '-', '_' or '.'.

    Examples:
        >>> is_valid_youtube_id("dQw4w9WgXcQ")
        True
        >>> is_valid_youtube_id("abc")
        False
    """
    if not video_id or not isinstance(video_id, str):
        return False
    if not VIDEO_ID_RE.match(video_id):
        return False
    return video_id[-1] not in ('-', '_', '.')


class ContentInputParser:
    """
    Parses caller input into (InputType, identity).

    Supports:
    - Video URLs: youtube.com/watch?v=VIDEO_ID, youtu.be/VIDEO_ID
    - Embeds and legacy: youtube.com/embed/VIDEO_ID, youtube.com/v/VIDEO_ID
    - Shorts and live: youtube.com/shorts/VIDEO_ID, youtube.com/live/VIDEO_ID
    - Storage paths: any relative path with a file name
    """

    VIDEO_PATTERNS = [
        r'(?:youtube\.com/watch\?(?:.*&)?v=|youtu\.be/)([a-zA-Z0-9_-]{11})',
        r'youtube\.com/embed/([a-zA-Z0-9_-]{11})',
        r'youtube\.com/v/([a-zA-Z0-9_-]{11})',
        r'youtube\.com/shorts/([a-zA-Z0-9_-]{11})',
        r'youtube\.com/live/([a-zA-Z0-9_-]{11})',
    ]

    def __init__(self):
        self.video_regex = [re.compile(pattern, re.IGNORECASE) for pattern in self.VIDEO_PATTERNS]

    def parse(self, value: str) -> Tuple[InputType, Optional[str]]:
        """
        Parse a URL, video ID or storage path.

        Args:
            value: Raw caller input

        Returns:
            Tuple of (InputType, identity); identity is the video ID for
            videos and the normalized storage path for uploads.
        """
        if not value or not isinstance(value, str):
            return InputType.INVALID, None

        value = value.strip()

        if is_valid_youtube_id(value):
            return InputType.VIDEO, value

        video_id = self.extract_video_id(value)
        if video_id:
            return InputType.VIDEO, video_id

        if self._looks_like_url(value):
            return InputType.INVALID, None

        path = self.normalize_storage_path(value)
        if path:
            return InputType.STORAGE_PATH, path

        return InputType.INVALID, None

    def extract_video_id(self, url: str) -> Optional[str]:
        """Extract the video ID from a YouTube URL, or None."""
        candidate = url if url.startswith(('http://', 'https://')) else f'https://{url}'

        for regex in self.video_regex:
            match = regex.search(candidate)
            if match and is_valid_youtube_id(match.group(1)):
                return match.group(1)

        # youtube.com/watch?feature=share&v=ID style query strings
        parsed = urlparse(candidate)
        if parsed.netloc.lower().endswith('youtube.com'):
            video_ids = parse_qs(parsed.query).get('v', [])
            if video_ids and is_valid_youtube_id(video_ids[0]):
                return video_ids[0]

        return None

    @staticmethod
    def normalize_storage_path(path: str) -> Optional[str]:
        """Normalize an upload storage path; reject traversal and empty names."""
        cleaned = path.replace('\\', '/').strip().lstrip('/')
        if not cleaned:
            return None
        normalized = posixpath.normpath(cleaned)
        if normalized in ('.', '') or normalized.startswith('..'):
            return None
        return normalized

    @staticmethod
    def _looks_like_url(value: str) -> bool:
        return value.startswith(('http://', 'https://')) or 'youtube.com' in value or 'youtu.be' in value


_parser = ContentInputParser()


def parse_content_input(value: str) -> Tuple[InputType, Optional[str]]:
    """Module-level convenience wrapper around ContentInputParser.parse."""
    return _parser.parse(value)


def video_url(video_id: str) -> str:
    """Canonical watch URL for a video ID."""
    return f"https://www.youtube.com/watch?v={video_id}"

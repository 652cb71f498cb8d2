"""
Host transcript fetcher.

Fast path for remote videos: reuse a transcript already published by the
video host. Any failure means "no transcript" and the caller falls through
to audio transcription.
"""

import asyncio
import logging
from typing import Any, List, Optional

from youtube_transcript_api import YouTubeTranscriptApi

from .models import Transcript, TranscriptionMode, WordTimestamp

logger = logging.getLogger(__name__)

PROVIDER_NAME = "youtube_transcript"


class HostTranscriptFetcher:
    """Fetches published YouTube captions through youtube-transcript-api."""

    def __init__(self, api: Optional[YouTubeTranscriptApi] = None, timeout: float = 30.0):
        self.api = api or YouTubeTranscriptApi()
        self.timeout = timeout
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    def _select_transcript(self, video_id: str, language: str) -> Any:
        """Manual in the requested language, then any manual, then generated."""
        transcript_list = list(self.api.list(video_id))
        if not transcript_list:
            return None

        manual = [t for t in transcript_list if not t.is_generated]
        generated = [t for t in transcript_list if t.is_generated]

        for transcript in manual:
            if transcript.language_code.split('-')[0] == language.split('-')[0]:
                return transcript
        if manual:
            return manual[0]
        for transcript in generated:
            if transcript.language_code.split('-')[0] == language.split('-')[0]:
                return transcript
        return generated[0] if generated else None

    def _fetch_sync(self, video_id: str, language: str, want_word_timestamps: bool) -> Optional[Transcript]:
        transcript = self._select_transcript(video_id, language)
        if transcript is None:
            return None

        snippets = list(transcript.fetch())
        texts: List[str] = []
        timestamps: List[WordTimestamp] = []
        end = 0.0
        for snippet in snippets:
            text = snippet.text.replace('\n', ' ').strip()
            if not text:
                continue
            texts.append(text)
            end = max(end, snippet.start + snippet.duration)
            # snippet granularity, not per-word
            if want_word_timestamps:
                timestamps.append(WordTimestamp(text, snippet.start, snippet.start + snippet.duration))

        full_text = ' '.join(texts)
        if not full_text:
            return None

        return Transcript(
            full_text=full_text,
            overall_confidence=1.0,
            duration_seconds=end,
            word_timestamps=timestamps,
            language_detected=transcript.language_code,
            provider_used=PROVIDER_NAME,
            strategy_used=TranscriptionMode.HOST_TRANSCRIPT,
            segment_count=1,
        )

    async def fetch(self, video_id: str, language: str = "en",
                    want_word_timestamps: bool = True) -> Optional[Transcript]:
        """Return the published transcript for video_id, or None."""
        try:
            transcript = await asyncio.wait_for(
                asyncio.to_thread(self._fetch_sync, video_id, language, want_word_timestamps),
                timeout=self.timeout,
            )
        except Exception as e:
            self.logger.info(f"No host transcript for {video_id}: {type(e).__name__}: {e}")
            return None

        if transcript is None:
            self.logger.info(f"No host transcript available for {video_id}")
        else:
            self.logger.info(
                f"Using host transcript for {video_id} ({transcript.language_detected}, "
                f"{len(transcript.full_text)} chars)"
            )
        return transcript

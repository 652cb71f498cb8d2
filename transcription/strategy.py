"""
Strategy Selector

Decides how a piece of content is transcribed. The cascade

    host transcript -> chunked -> standard

is an ordered list of strategies, each with an applicability predicate and
an attempt. StrategyChain walks the list and stops at the first transcript.
"""

import logging
from abc import ABC, abstractmethod
from typing import List, Optional

from .errors import SplitFailedError, TranscriptionError
from .executor import ConcurrentTranscriptionExecutor
from .host_transcripts import HostTranscriptFetcher
from .janitor import ResourceJanitor
from .logging_context import log_with_context
from .media import MediaAcquirer
from .merger import merge_segment_results
from .models import (
    AudioAsset, ContentKind, ProgressCallback, Transcript, TranscriptionMode, TranscriptionRequest,
)
from .progress import report_progress
from .splitter import AudioSplitter, transcode_for_speech

logger = logging.getLogger(__name__)

CHUNKING_THRESHOLD_SECONDS = 1200
UNKNOWN_DURATION_SECONDS = 1200


def select_mode(
    duration: Optional[float],
    threshold: float = CHUNKING_THRESHOLD_SECONDS,
    unknown_duration: float = UNKNOWN_DURATION_SECONDS,
) -> TranscriptionMode:
    """
    Choose standard or chunked transcription for an audio duration.

    duration <= threshold is standard, anything longer is chunked. An
    unmeasurable duration is assumed to be unknown_duration, and a tie with
    the threshold goes to the chunked path.
    """
    if duration is None:
        mode = TranscriptionMode.CHUNKED if unknown_duration >= threshold else TranscriptionMode.STANDARD
        logger.warning(
            f"Audio duration unknown, assuming {unknown_duration}s and using {mode.value} transcription"
        )
        return mode
    if duration > threshold:
        return TranscriptionMode.CHUNKED
    return TranscriptionMode.STANDARD


class StrategyContext:
    """Per-run state shared by the strategies: the request, its workspace, and the lazily acquired asset."""

    def __init__(
        self,
        request: TranscriptionRequest,
        janitor: ResourceJanitor,
        acquirer: MediaAcquirer,
        progress: Optional[ProgressCallback] = None,
    ):
        self.request = request
        self.janitor = janitor
        self.acquirer = acquirer
        self.progress = progress
        self.split_failed = False
        self._asset: Optional[AudioAsset] = None

    @property
    def reference(self):
        return self.request.content_reference

    @property
    def options(self):
        return self.request.options

    async def report(self, stage: str, percent: float) -> None:
        await report_progress(self.progress, stage, percent)

    async def asset(self) -> AudioAsset:
        """Acquire the raw audio once per run."""
        if self._asset is None:
            await self.report("Acquiring audio", 10)
            self._asset = await self.acquirer.acquire(
                self.reference,
                self.janitor.subdir('source'),
                self.options.quality_hint,
            )
            log_with_context(
                logger,
                "Audio acquired",
                extra_context={
                    'content': str(self.reference),
                    'duration': self._asset.duration_seconds,
                    'size_mb': round(self._asset.size_bytes / 1024 / 1024, 2),
                },
            )
        return self._asset


class TranscriptionStrategy(ABC):
    """One way of producing a transcript."""

    mode: TranscriptionMode

    @abstractmethod
    async def applies(self, context: StrategyContext) -> bool:
        pass

    @abstractmethod
    async def attempt(self, context: StrategyContext) -> Optional[Transcript]:
        """Return a transcript, or None to let the next strategy run."""
        pass

    @property
    def name(self) -> str:
        return self.mode.value


class HostTranscriptStrategy(TranscriptionStrategy):
    """Reuse the video host's published transcript."""

    mode = TranscriptionMode.HOST_TRANSCRIPT

    def __init__(self, fetcher: HostTranscriptFetcher, enabled: bool = True):
        self.fetcher = fetcher
        self.enabled = enabled

    async def applies(self, context: StrategyContext) -> bool:
        return self.enabled and context.reference.is_remote_video

    async def attempt(self, context: StrategyContext) -> Optional[Transcript]:
        await context.report("Checking for published transcript", 5)
        return await self.fetcher.fetch(
            context.reference.identity,
            context.options.language,
            context.options.want_word_timestamps,
        )


class ChunkedStrategy(TranscriptionStrategy):
    """Split long audio and transcribe the segments concurrently."""

    mode = TranscriptionMode.CHUNKED

    def __init__(
        self,
        splitter: AudioSplitter,
        executor: ConcurrentTranscriptionExecutor,
        threshold: float = CHUNKING_THRESHOLD_SECONDS,
        video_chunk_duration: float = 600,
        recorded_chunk_duration: float = 300,
        unknown_duration: float = UNKNOWN_DURATION_SECONDS,
    ):
        self.splitter = splitter
        self.executor = executor
        self.threshold = threshold
        self.video_chunk_duration = video_chunk_duration
        self.recorded_chunk_duration = recorded_chunk_duration
        self.unknown_duration = unknown_duration

    def chunk_duration_for(self, kind: ContentKind) -> float:
        if kind == ContentKind.REMOTE_VIDEO:
            return self.video_chunk_duration
        return self.recorded_chunk_duration

    async def applies(self, context: StrategyContext) -> bool:
        asset = await context.asset()
        mode = select_mode(asset.duration_seconds, self.threshold, self.unknown_duration)
        return mode == TranscriptionMode.CHUNKED

    async def attempt(self, context: StrategyContext) -> Optional[Transcript]:
        asset = await context.asset()
        chunk_duration = self.chunk_duration_for(context.reference.kind)

        await context.report("Splitting audio", 20)
        segments = await self.splitter.split(asset, chunk_duration, context.janitor.subdir('segments'))

        log_with_context(
            logger,
            f"Transcribing {len(segments)} segments",
            extra_context={'content': str(context.reference), 'chunk_duration': chunk_duration},
        )

        results = await self.executor.run(
            segments,
            context.options,
            progress=context.progress,
            progress_range=(25, 90),
        )

        await context.report("Merging transcript", 95)
        return merge_segment_results(
            results,
            chunk_duration=chunk_duration,
            asset_duration=asset.duration_seconds,
            provider=self.executor.provider.name,
            requested_language=context.options.language,
        )


class StandardStrategy(TranscriptionStrategy):
    """Transcribe the whole asset in one provider call."""

    mode = TranscriptionMode.STANDARD

    def __init__(self, executor: ConcurrentTranscriptionExecutor, transcode: bool = True):
        self.executor = executor
        self.transcode = transcode

    async def applies(self, context: StrategyContext) -> bool:
        return True

    async def attempt(self, context: StrategyContext) -> Optional[Transcript]:
        asset = await context.asset()
        if self.transcode:
            await context.report("Optimizing audio", 20)
            asset = await transcode_for_speech(asset, context.janitor.subdir('standard'))

        await context.report("Transcribing", 40)
        result = await self.executor.transcribe_whole(asset, context.options)

        duration = asset.duration_seconds
        if duration is None:
            duration = result.duration_seconds or 0.0

        return Transcript(
            full_text=result.text,
            overall_confidence=result.confidence if result.confidence is not None else 0.0,
            duration_seconds=float(duration),
            word_timestamps=result.word_timestamps,
            language_detected=result.language_detected or context.options.language,
            provider_used=result.provider,
            strategy_used=TranscriptionMode.STANDARD,
            segment_count=1,
        )


class StrategyChain:
    """Walks strategies in order and returns the first transcript produced."""

    def __init__(self, strategies: List[TranscriptionStrategy], fallback_on_split_failure: bool = True):
        self.strategies = strategies
        self.fallback_on_split_failure = fallback_on_split_failure

    async def run(self, context: StrategyContext) -> Transcript:
        """
        Produce a transcript for context.request.

        Raises:
            SplitFailedError: if chunking fails and fallback is disabled
            TranscriptionError: if no strategy produced a transcript
        """
        for strategy in self.strategies:
            if not await strategy.applies(context):
                logger.debug(f"Strategy {strategy.name} not applicable")
                continue

            try:
                transcript = await strategy.attempt(context)
            except SplitFailedError as e:
                if not self.fallback_on_split_failure:
                    raise
                context.split_failed = True
                log_with_context(
                    logger,
                    f"Chunked transcription failed, falling back to standard: {e}",
                    level="WARNING",
                    extra_context={'content': str(context.reference)},
                )
                continue

            if transcript is not None and transcript.full_text.strip():
                transcript.strategy_used = strategy.mode
                return transcript

            logger.info(f"Strategy {strategy.name} produced no transcript, trying next")

        raise TranscriptionError(
            f"No transcription strategy succeeded for {context.reference}",
            context={'content': str(context.reference)},
        )

"""
Transcription pipeline.

Entry point used by workers and the CLI:

    pipeline = TranscriptionPipeline.from_settings(settings)
    transcript = await pipeline.transcribe(reference, principal, options, progress)

Order of work for one call: cache lookup, processing lock, per-run working
directory, strategy chain, cache write. The lock and the working directory
are released on every exit path.
"""

import asyncio
import logging
import time
from datetime import timedelta
from pathlib import Path
from typing import Awaitable, Callable, Dict, List, Optional, Union

from .cache import LRUTranscriptCache, SQLTranscriptStore, TwoTierTranscriptCache
from .errors import TranscriptionError, wrap_error
from .executor import ConcurrentTranscriptionExecutor
from .host_transcripts import HostTranscriptFetcher
from .janitor import ResourceJanitor
from .locks import ProcessingLockManager
from .logging_context import log_with_context
from .media import MediaAcquirer
from .models import (
    ContentReference, ProgressCallback, Transcript, TranscriptionOptions, TranscriptionRequest,
)
from .progress import report_progress
from .providers import SpeechProvider, build_provider
from .splitter import FFmpegSplitter
from .strategy import (
    ChunkedStrategy, HostTranscriptStrategy, StandardStrategy, StrategyChain, StrategyContext,
)

logger = logging.getLogger(__name__)

CompletionHook = Callable[[str, Transcript], Union[None, Awaitable[None]]]


class TranscriptionPipeline:
    """Orchestrates cache, lock, workspace and strategies for one transcription call."""

    def __init__(
        self,
        acquirer: MediaAcquirer,
        chain: StrategyChain,
        cache: TwoTierTranscriptCache,
        locks: ProcessingLockManager,
        work_root: Path,
        lock_per_principal: bool = True,
        on_complete: Optional[CompletionHook] = None,
        provider: Optional[SpeechProvider] = None,
    ):
        self.acquirer = acquirer
        self.chain = chain
        self.cache = cache
        self.locks = locks
        self.work_root = Path(work_root)
        self.provider = provider
        self.lock_per_principal = lock_per_principal
        self.on_complete = on_complete
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    @classmethod
    def from_settings(
        cls,
        settings,
        provider: Optional[SpeechProvider] = None,
        on_complete: Optional[CompletionHook] = None,
    ) -> 'TranscriptionPipeline':
        """Wire the default components from Settings."""
        provider = provider or build_provider(settings)
        executor = ConcurrentTranscriptionExecutor.from_settings(provider, settings)

        strategies = [
            HostTranscriptStrategy(HostTranscriptFetcher(), enabled=settings.host_transcript_enabled),
            ChunkedStrategy(
                FFmpegSplitter.from_settings(settings),
                executor,
                threshold=settings.chunking_threshold_seconds,
                video_chunk_duration=settings.video_chunk_duration_seconds,
                recorded_chunk_duration=settings.recorded_chunk_duration_seconds,
                unknown_duration=settings.unknown_duration_seconds,
            ),
            StandardStrategy(executor),
        ]

        store = SQLTranscriptStore(
            settings.database_url,
            max_age=timedelta(hours=settings.durable_cache_max_age_hours),
        )

        return cls(
            acquirer=MediaAcquirer.from_settings(settings),
            chain=StrategyChain(strategies, settings.fallback_to_standard_on_split_failure),
            cache=TwoTierTranscriptCache(LRUTranscriptCache(settings.memory_cache_capacity), store),
            locks=ProcessingLockManager(wait_seconds=settings.lock_wait_seconds),
            work_root=settings.work_dir,
            lock_per_principal=settings.lock_per_principal,
            on_complete=on_complete,
            provider=provider,
        )

    def lock_key(self, request: TranscriptionRequest) -> str:
        if self.lock_per_principal:
            return f"processed:{request.content_reference}:{request.requesting_principal}"
        return f"processed:{request.content_reference}"

    async def transcribe(
        self,
        content_reference: Union[ContentReference, str],
        requesting_principal: str,
        options: Optional[TranscriptionOptions] = None,
        progress: Optional[ProgressCallback] = None,
    ) -> Transcript:
        """
        Transcribe content for a principal.

        Args:
            content_reference: ContentReference, or a URL/video ID/storage path
            requesting_principal: Identity of the caller; scopes cache and lock
            options: Language, quality hint, word timestamps
            progress: Optional (stage, percent) callback, sync or async

        Returns:
            Transcript; cached=True when served from the cache

        Raises:
            TranscriptionError: subclass describing the failure
        """
        if not isinstance(content_reference, ContentReference):
            content_reference = ContentReference.from_input(content_reference)

        request = TranscriptionRequest(content_reference, requesting_principal, options or TranscriptionOptions())
        identity, principal = request.cache_key
        started = time.monotonic()
        stage = 'cache'
        log_context = {'content': identity, 'principal': principal}

        log_with_context(self.logger, "Transcription requested", extra_context=log_context)
        await report_progress(progress, "Checking cache", 0)

        try:
            cached = await self.cache.get(identity, principal)
            if cached is not None:
                log_with_context(self.logger, "Returning cached transcript", extra_context=log_context)
                await report_progress(progress, "Completed", 100)
                return cached

            stage = 'lock'
            async with self.locks.hold(self.lock_key(request)):
                # The previous holder may have written the cache just before releasing.
                cached = await self.cache.get(identity, principal)
                if cached is not None:
                    log_with_context(self.logger, "Returning transcript cached by a concurrent run",
                                     extra_context=log_context)
                    await report_progress(progress, "Completed", 100)
                    return cached

                stage = 'transcribe'
                async with ResourceJanitor(self.work_root) as janitor:
                    context = StrategyContext(request, janitor, self.acquirer, progress)
                    transcript = await self.chain.run(context)

                transcript.processing_time_seconds = time.monotonic() - started
                transcript.cached = False

                stage = 'cache_write'
                await self.cache.put(identity, principal, transcript)

        except Exception as e:
            error = wrap_error(e, {**log_context, 'stage': stage})
            log_with_context(
                self.logger,
                f"Transcription failed: {error}",
                level="ERROR",
                extra_context={
                    **log_context,
                    'stage': stage,
                    'error_kind': error.kind.value,
                    'elapsed': f"{time.monotonic() - started:.1f}s",
                },
            )
            if error is e:
                raise
            raise error from e

        log_with_context(
            self.logger,
            "Transcription complete",
            extra_context={
                **log_context,
                'strategy': transcript.strategy_used.value,
                'segments': transcript.segment_count,
                'failed_segments': transcript.failed_segments,
                'elapsed': f"{transcript.processing_time_seconds:.1f}s",
            },
        )
        await report_progress(progress, "Completed", 100)
        await self._notify_complete(principal, transcript)
        return transcript

    async def transcribe_upload(
        self,
        data: bytes,
        filename: str,
        requesting_principal: str,
        options: Optional[TranscriptionOptions] = None,
        progress: Optional[ProgressCallback] = None,
    ) -> Transcript:
        """Store an uploaded audio buffer and transcribe it as recorded audio."""
        try:
            reference = await self.acquirer.store_upload(data, filename, requesting_principal)
        except Exception as e:
            error = wrap_error(e, {'principal': requesting_principal, 'stage': 'upload'})
            log_with_context(self.logger, f"Upload failed: {error}", level="ERROR",
                             extra_context={'principal': requesting_principal, 'filename': filename})
            if error is e:
                raise
            raise error from e
        return await self.transcribe(reference, requesting_principal, options, progress)

    async def _notify_complete(self, principal: str, transcript: Transcript) -> None:
        if self.on_complete is None:
            return
        try:
            outcome = self.on_complete(principal, transcript)
            if asyncio.iscoroutine(outcome):
                await outcome
        except Exception as e:
            self.logger.warning(f"Completion hook failed for {principal}: {e}")

    async def invalidate(self, content_reference: Union[ContentReference, str],
                         requesting_principal: Optional[str] = None) -> None:
        """Drop cached transcripts of content, for one principal or all."""
        if not isinstance(content_reference, ContentReference):
            content_reference = ContentReference.from_input(content_reference)
        await self.cache.invalidate(str(content_reference), requesting_principal)

    def active_locks(self) -> List[str]:
        return self.locks.active_locks()

    def clear_locks(self) -> int:
        return self.locks.clear_all()

    def stats(self) -> Dict[str, object]:
        return {
            **self.cache.stats(),
            'active_locks': len(self.locks.active_locks()),
        }

    def health_check(self) -> Dict[str, object]:
        return self.acquirer.health_check()

    async def close(self) -> None:
        await self.cache.close()
        if self.provider is not None:
            await self.provider.close()

"""
Concurrent Transcription Executor

Sends segments to the speech provider in fixed-size batches: members of a
batch run concurrently, batches run strictly one after another. Every call
has its own timeout and a bounded retry with exponential backoff. A segment
that still fails becomes a placeholder result; only a run in which every
segment failed is an error.
"""

import asyncio
import logging
from pathlib import Path
from typing import Awaitable, Callable, List, Optional, Tuple, Union

from .errors import AllSegmentsFailedError, ProviderError, ProviderTimeoutError, TranscriptionError
from .logging_context import log_with_context
from .models import (
    AudioAsset, ProgressCallback, ProviderResult, Segment, SegmentResult, TranscriptionOptions,
)
from .progress import report_progress
from .providers import SpeechProvider

logger = logging.getLogger(__name__)

UsageHook = Callable[[ProviderResult], Union[None, Awaitable[None]]]


class ConcurrentTranscriptionExecutor:
    """Bounded fan-out of provider calls over the segments of one asset."""

    def __init__(
        self,
        provider: SpeechProvider,
        max_concurrency: int = 3,
        segment_timeout: float = 150.0,
        standard_timeout: float = 180.0,
        max_retries: int = 1,
        retry_delay: float = 1.0,
        backoff_multiplier: float = 2.0,
        usage_hook: Optional[UsageHook] = None,
    ):
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be >= 1")
        self.provider = provider
        self.max_concurrency = max_concurrency
        self.segment_timeout = segment_timeout
        self.standard_timeout = standard_timeout
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.backoff_multiplier = backoff_multiplier
        self.usage_hook = usage_hook
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    @classmethod
    def from_settings(cls, provider: SpeechProvider, settings,
                      usage_hook: Optional[UsageHook] = None) -> 'ConcurrentTranscriptionExecutor':
        return cls(
            provider,
            max_concurrency=settings.max_concurrent_segments,
            segment_timeout=settings.segment_timeout_seconds,
            standard_timeout=settings.standard_timeout_seconds,
            max_retries=settings.provider_max_retries,
            retry_delay=settings.provider_retry_delay,
            usage_hook=usage_hook,
        )

    async def call_provider(self, path: Path, options: TranscriptionOptions, timeout: float,
                            label: str) -> ProviderResult:
        """
        One provider call with timeout and retry/backoff on retryable errors.

        Raises:
            ProviderTimeoutError: if the call exceeds timeout
            ProviderError: if the provider fails after all retries
        """
        audio = await asyncio.to_thread(Path(path).read_bytes)
        delay = self.retry_delay

        for attempt in range(self.max_retries + 1):
            try:
                result = await asyncio.wait_for(
                    self.provider.transcribe(
                        audio,
                        language=options.language,
                        want_word_timestamps=options.want_word_timestamps,
                        filename=Path(path).name,
                    ),
                    timeout=timeout,
                )
            except asyncio.TimeoutError as e:
                raise ProviderTimeoutError(
                    f"{label} transcription timed out after {timeout}s",
                    context={'label': label, 'timeout': timeout},
                ) from e
            except ProviderError as e:
                if not e.retryable or attempt >= self.max_retries:
                    raise
                self.logger.warning(
                    f"{label} attempt {attempt + 1} failed: {e}. Retrying in {delay:.1f}s..."
                )
                await asyncio.sleep(delay)
                delay *= self.backoff_multiplier
                continue

            if attempt > 0:
                self.logger.info(f"{label} succeeded on attempt {attempt + 1}")
            await self._record_usage(result)
            return result

        raise ProviderError(f"{label} failed after {self.max_retries + 1} attempts")

    async def transcribe_segment(self, segment: Segment, options: TranscriptionOptions) -> SegmentResult:
        """Transcribe one segment; any failure becomes a placeholder result."""
        label = f"Part {segment.index + 1}"
        try:
            result = await self.call_provider(segment.local_path, options, self.segment_timeout, label)
        except ProviderTimeoutError:
            self.logger.error(f"{label} timed out after {self.segment_timeout}s")
            return SegmentResult.failed(segment.index, 'timeout', segment.duration_seconds)
        except Exception as e:
            self.logger.error(f"{label} failed: {e}")
            return SegmentResult.failed(segment.index, str(e) or type(e).__name__, segment.duration_seconds)

        return SegmentResult(
            index=segment.index,
            transcript_text=result.text,
            confidence=result.confidence if result.confidence is not None else 0.0,
            word_timestamps=result.word_timestamps,
            language_detected=result.language_detected,
            succeeded=True,
            duration_seconds=segment.duration_seconds,
        )

    async def run(
        self,
        segments: List[Segment],
        options: TranscriptionOptions,
        progress: Optional[ProgressCallback] = None,
        progress_range: Tuple[float, float] = (0.0, 100.0),
    ) -> List[SegmentResult]:
        """
        Transcribe all segments in sequential batches of max_concurrency.

        Returns:
            One SegmentResult per segment, ordered by index

        Raises:
            AllSegmentsFailedError: if no segment succeeded
        """
        ordered = sorted(segments, key=lambda s: s.index)
        total = len(ordered)
        results: List[SegmentResult] = []
        low, high = progress_range

        for start in range(0, total, self.max_concurrency):
            batch = ordered[start:start + self.max_concurrency]
            log_with_context(
                self.logger,
                f"Processing batch {start // self.max_concurrency + 1}",
                extra_context={'segments': f"{batch[0].index + 1}-{batch[-1].index + 1}", 'total': total},
            )

            batch_results = await asyncio.gather(
                *(self.transcribe_segment(segment, options) for segment in batch)
            )
            results.extend(batch_results)

            completed = len(results)
            await report_progress(
                progress,
                f"Transcribing part {completed}/{total}",
                low + (high - low) * completed / total,
            )

        results.sort(key=lambda r: r.index)
        succeeded = sum(1 for r in results if r.succeeded)
        self.logger.info(f"Transcription complete: {succeeded}/{total} parts succeeded")

        if total and succeeded == 0:
            raise AllSegmentsFailedError(
                f"All {total} segments failed to transcribe",
                context={'errors': [r.error for r in results]},
            )
        return results

    async def transcribe_whole(self, asset: AudioAsset, options: TranscriptionOptions) -> ProviderResult:
        """
        Transcribe an asset as a single unit.

        Raises:
            ProviderTimeoutError: if the call exceeds the standard timeout
            TranscriptionError: if the provider fails
        """
        try:
            return await self.call_provider(asset.local_path, options, self.standard_timeout, "Audio")
        except TranscriptionError:
            raise
        except ProviderError as e:
            raise TranscriptionError(
                f"Transcription failed: {e}",
                context={'status': e.status},
            ) from e

    async def _record_usage(self, result: ProviderResult) -> None:
        if self.usage_hook is None:
            return
        try:
            outcome = self.usage_hook(result)
            if asyncio.iscoroutine(outcome):
                await outcome
        except Exception as e:
            self.logger.warning(f"Usage hook failed: {e}")

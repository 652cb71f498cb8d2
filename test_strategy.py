#!/usr/bin/env python3
"""
Tests for strategy selection and the strategy cascade.
"""

from typing import Optional

import pytest

from conftest import FakeAcquirer, FakeProvider, FakeSplitter
from transcription.errors import SplitFailedError, TranscriptionError
from transcription.executor import ConcurrentTranscriptionExecutor
from transcription.janitor import ResourceJanitor
from transcription.models import (
    ContentKind, ContentReference, Transcript, TranscriptionMode, TranscriptionRequest,
)
from transcription.strategy import (
    ChunkedStrategy,
    StrategyChain,
    StrategyContext,
    TranscriptionStrategy,
    select_mode,
)


class StubStrategy(TranscriptionStrategy):
    """Strategy with scripted applicability and outcome."""

    def __init__(self, mode, applicable=True, text: Optional[str] = "stub text", error=None):
        self.mode = mode
        self.applicable = applicable
        self.text = text
        self.error = error
        self.attempts = 0

    async def applies(self, context):
        return self.applicable

    async def attempt(self, context):
        self.attempts += 1
        if self.error is not None:
            raise self.error
        if self.text is None:
            return None
        return Transcript(full_text=self.text, overall_confidence=1.0, duration_seconds=1.0, word_timestamps=[], language_detected=None,
                          provider_used="stub", strategy_used=TranscriptionMode.STANDARD)


@pytest.fixture
def context(tmp_path):
    request = TranscriptionRequest(ContentReference.from_input("dQw4w9WgXcQ"), "alice")
    return StrategyContext(request, ResourceJanitor(tmp_path), FakeAcquirer(duration=1800))


class TestSelectMode:
    """Threshold boundaries."""

    @pytest.mark.parametrize("duration, mode", [
        (0, TranscriptionMode.STANDARD),
        (1200, TranscriptionMode.STANDARD),
        (1200.5, TranscriptionMode.CHUNKED),
        (1201, TranscriptionMode.CHUNKED),
        (None, TranscriptionMode.CHUNKED),
    ])
    def test_default_threshold(self, duration, mode):
        assert select_mode(duration) == mode

    def test_custom_threshold(self):
        assert select_mode(400, threshold=300) == TranscriptionMode.CHUNKED

    @pytest.mark.parametrize("unknown_duration, mode", [
        (600, TranscriptionMode.STANDARD),
        (1200, TranscriptionMode.CHUNKED),
        (3600, TranscriptionMode.CHUNKED),
    ])
    def test_unknown_duration_assumption(self, unknown_duration, mode):
        assert select_mode(None, threshold=1200, unknown_duration=unknown_duration) == mode


class TestStrategyContext:
    """Lazy asset acquisition."""

    @pytest.mark.asyncio
    async def test_asset_acquired_once(self, context):
        first = await context.asset()
        second = await context.asset()

        assert first is second
        assert context.acquirer.calls == 1
        assert first.local_path.parent == context.janitor.run_dir / "source"


class TestChunkedStrategy:
    """Chunk durations and applicability."""

    @pytest.fixture
    def strategy(self):
        executor = ConcurrentTranscriptionExecutor(FakeProvider(), retry_delay=0.0)
        return ChunkedStrategy(FakeSplitter(), executor, threshold=1200,
                               video_chunk_duration=600, recorded_chunk_duration=300)

    def test_chunk_duration_by_kind(self, strategy):
        assert strategy.chunk_duration_for(ContentKind.REMOTE_VIDEO) == 600
        assert strategy.chunk_duration_for(ContentKind.RECORDED_AUDIO) == 300

    @pytest.mark.asyncio
    async def test_long_audio_is_chunked(self, strategy, context):
        transcript = await strategy.attempt(context)

        assert await strategy.applies(context)
        assert transcript.segment_count == 3
        assert transcript.full_text.startswith("--- Part 1 ---")

    @pytest.mark.asyncio
    async def test_short_audio_not_applicable(self, strategy, tmp_path):
        request = TranscriptionRequest(ContentReference.from_input("u1/a.m4a"), "alice")
        context = StrategyContext(request, ResourceJanitor(tmp_path), FakeAcquirer(duration=60))

        assert not await strategy.applies(context)

    @pytest.mark.asyncio
    async def test_unknown_duration_follows_assumption(self, tmp_path):
        executor = ConcurrentTranscriptionExecutor(FakeProvider(), retry_delay=0.0)
        request = TranscriptionRequest(ContentReference.from_input("u1/a.m4a"), "alice")
        context = StrategyContext(request, ResourceJanitor(tmp_path), FakeAcquirer(duration=None))

        short = ChunkedStrategy(FakeSplitter(), executor, threshold=1200, unknown_duration=600)
        long = ChunkedStrategy(FakeSplitter(), executor, threshold=1200)

        assert not await short.applies(context)
        assert await long.applies(context)


class TestStrategyChain:
    """Cascade ordering and fallback."""

    @pytest.mark.asyncio
    async def test_first_success_wins(self, context):
        host = StubStrategy(TranscriptionMode.HOST_TRANSCRIPT)
        standard = StubStrategy(TranscriptionMode.STANDARD)

        transcript = await StrategyChain([host, standard]).run(context)

        assert transcript.strategy_used == TranscriptionMode.HOST_TRANSCRIPT
        assert standard.attempts == 0

    @pytest.mark.asyncio
    async def test_inapplicable_and_empty_are_skipped(self, context):
        skipped = StubStrategy(TranscriptionMode.HOST_TRANSCRIPT, applicable=False)
        empty = StubStrategy(TranscriptionMode.CHUNKED, text="   ")
        standard = StubStrategy(TranscriptionMode.STANDARD, text="final")

        transcript = await StrategyChain([skipped, empty, standard]).run(context)

        assert skipped.attempts == 0
        assert empty.attempts == 1
        assert transcript.full_text == "final"
        assert transcript.strategy_used == TranscriptionMode.STANDARD

    @pytest.mark.asyncio
    async def test_split_failure_falls_back(self, context):
        chunked = StubStrategy(TranscriptionMode.CHUNKED, error=SplitFailedError("no segments"))
        standard = StubStrategy(TranscriptionMode.STANDARD)

        transcript = await StrategyChain([chunked, standard]).run(context)

        assert context.split_failed is True
        assert transcript.strategy_used == TranscriptionMode.STANDARD

    @pytest.mark.asyncio
    async def test_split_failure_without_fallback(self, context):
        chunked = StubStrategy(TranscriptionMode.CHUNKED, error=SplitFailedError("no segments"))
        standard = StubStrategy(TranscriptionMode.STANDARD)

        with pytest.raises(SplitFailedError):
            await StrategyChain([chunked, standard], fallback_on_split_failure=False).run(context)

        assert standard.attempts == 0

    @pytest.mark.asyncio
    async def test_nothing_succeeds(self, context):
        chain = StrategyChain([StubStrategy(TranscriptionMode.STANDARD, text=None)])

        with pytest.raises(TranscriptionError):
            await chain.run(context)

"""
Shared fixtures and fakes for the transcription test suite.

The fakes stand in for the external collaborators (yt-dlp, ffmpeg, speech
providers, published captions) so the pipeline can be exercised end to end
without network access or binaries.
"""

import asyncio
import math
from pathlib import Path
from typing import Dict, List, Optional

import pytest

from transcription.cache import LRUTranscriptCache, TranscriptStore, TwoTierTranscriptCache
from transcription.errors import ContentUnavailableError, ProviderError, SplitFailedError
from transcription.executor import ConcurrentTranscriptionExecutor
from transcription.locks import ProcessingLockManager
from transcription.models import AudioAsset, CacheEntry, ContentReference, ProviderResult, WordTimestamp
from transcription.pipeline import TranscriptionPipeline
from transcription.providers import SpeechProvider
from transcription.splitter import AudioSplitter, build_segments
from transcription.strategy import (
    ChunkedStrategy, HostTranscriptStrategy, StandardStrategy, StrategyChain,
)


class FakeProvider(SpeechProvider):
    """
    Scripted speech provider.

    behaviors maps an audio file name to one of:
        "ok" (default), "timeout" (sleeps past any test timeout),
        "fail" (retryable ProviderError), "fatal" (non-retryable ProviderError)
    """

    name = "fake"

    def __init__(self, behaviors: Optional[Dict[str, str]] = None, delays: Optional[Dict[str, float]] = None,
                 confidences: Optional[Dict[str, float]] = None, default_delay: float = 0.0):
        self.behaviors = behaviors or {}
        self.delays = delays or {}
        self.confidences = confidences or {}
        self.default_delay = default_delay
        self.calls: List[str] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def transcribe(self, audio, language="en", want_word_timestamps=True, filename="audio.mp3"):
        self.calls.append(filename)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            behavior = self.behaviors.get(filename, "ok")
            if behavior == "timeout":
                await asyncio.sleep(3600)
            await asyncio.sleep(self.delays.get(filename, self.default_delay))
            if behavior == "fail":
                raise ProviderError(f"provider error for {filename}", status=503)
            if behavior == "fatal":
                raise ProviderError(f"bad request for {filename}", status=400, retryable=False)

            words = [
                WordTimestamp(f"{filename}-w0", 0.5, 1.0),
                WordTimestamp(f"{filename}-w1", 2.0, 2.5),
            ] if want_word_timestamps else []
            return ProviderResult(
                text=f"text of {filename}",
                confidence=self.confidences.get(filename, 0.9),
                duration_seconds=None,
                word_timestamps=words,
                language_detected=language,
                provider=self.name,
            )
        finally:
            self.in_flight -= 1


class FakeSplitter(AudioSplitter):
    """Creates ceil(duration / chunk) placeholder chunk files."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.calls = 0

    async def split(self, asset, chunk_duration, output_dir):
        self.calls += 1
        if self.fail:
            raise SplitFailedError("Audio splitting produced no segments")
        output_dir = Path(output_dir)
        output_dir.mkdir(parents=True, exist_ok=True)
        count = max(1, math.ceil((asset.duration_seconds or chunk_duration) / chunk_duration))
        files = []
        for index in range(count):
            path = output_dir / f"chunk_{index:03d}.mp3"
            path.write_bytes(b"\x00" * 16)
            files.append(path)
        return build_segments(files, chunk_duration, asset.duration_seconds)


class FakeAcquirer:
    """Writes a small audio file into the run directory and reports a scripted duration."""

    def __init__(self, duration: Optional[float] = 600.0, error: Optional[Exception] = None):
        self.duration = duration
        self.error = error
        self.calls = 0
        self.paths: List[Path] = []
        self.uploads: List[tuple] = []

    async def acquire(self, reference, output_dir, quality=None):
        self.calls += 1
        if self.error is not None:
            raise self.error
        path = Path(output_dir) / "audio.m4a"
        path.write_bytes(b"\x00" * 64)
        self.paths.append(path)
        return AudioAsset(local_path=path, duration_seconds=self.duration, size_bytes=64, format="m4a")

    async def store_upload(self, data, filename, principal):
        if not data:
            raise ContentUnavailableError("Empty upload", user_message="The uploaded audio file is empty.")
        self.uploads.append((principal, filename, bytes(data)))
        return ContentReference.from_input(f"{principal}/{Path(filename).stem}.m4a")

    def health_check(self):
        return {'yt_dlp_version': 'fake', 'ffmpeg_available': True, 'ffprobe_available': True}


class FakeHostFetcher:
    """Returns a fixed transcript (or None) for every video."""

    def __init__(self, transcript=None):
        self.transcript = transcript
        self.calls = 0

    async def fetch(self, video_id, language="en", want_word_timestamps=True):
        self.calls += 1
        return self.transcript


class InMemoryTranscriptStore(TranscriptStore):
    """Durable-tier stand-in kept in a dict."""

    def __init__(self, fail: bool = False):
        self.rows: Dict[tuple, CacheEntry] = {}
        self.fail = fail

    async def get(self, content_identity, principal):
        if self.fail:
            raise RuntimeError("database is locked")
        return self.rows.get((content_identity, principal))

    async def put(self, entry):
        if self.fail:
            raise RuntimeError("database is locked")
        self.rows[(entry.content_identity, entry.requesting_principal)] = entry

    async def delete(self, content_identity, principal=None):
        keys = [k for k in self.rows if k[0] == content_identity and (principal is None or k[1] == principal)]
        for key in keys:
            del self.rows[key]
        return len(keys)


@pytest.fixture
def work_root(tmp_path):
    root = tmp_path / "work"
    root.mkdir()
    return root


@pytest.fixture
def make_pipeline(work_root):
    """Factory building a pipeline around fakes; returns (pipeline, parts)."""

    def build(
        provider: Optional[FakeProvider] = None,
        acquirer: Optional[FakeAcquirer] = None,
        splitter: Optional[FakeSplitter] = None,
        host: Optional[FakeHostFetcher] = None,
        store: Optional[TranscriptStore] = None,
        segment_timeout: float = 1.0,
        max_concurrency: int = 3,
        fallback_on_split_failure: bool = True,
        lock_per_principal: bool = True,
        on_complete=None,
    ):
        provider = provider or FakeProvider()
        acquirer = acquirer or FakeAcquirer()
        splitter = splitter or FakeSplitter()
        host = host or FakeHostFetcher()
        executor = ConcurrentTranscriptionExecutor(
            provider,
            max_concurrency=max_concurrency,
            segment_timeout=segment_timeout,
            standard_timeout=segment_timeout,
            max_retries=1,
            retry_delay=0.0,
        )
        chain = StrategyChain(
            [
                HostTranscriptStrategy(host),
                ChunkedStrategy(splitter, executor, threshold=1200,
                                video_chunk_duration=600, recorded_chunk_duration=300),
                StandardStrategy(executor, transcode=False),
            ],
            fallback_on_split_failure=fallback_on_split_failure,
        )
        pipeline = TranscriptionPipeline(
            acquirer=acquirer,
            chain=chain,
            cache=TwoTierTranscriptCache(LRUTranscriptCache(16), store),
            locks=ProcessingLockManager(),
            work_root=work_root,
            lock_per_principal=lock_per_principal,
            on_complete=on_complete,
            provider=provider,
        )
        parts = {
            'provider': provider,
            'acquirer': acquirer,
            'splitter': splitter,
            'host': host,
            'executor': executor,
        }
        return pipeline, parts

    return build

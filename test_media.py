#!/usr/bin/env python3
"""
Tests for media acquisition and the host transcript fast path.

yt-dlp, ffprobe and youtube-transcript-api are mocked.
"""

import hashlib
import json
import shutil
import threading
import time
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
import yt_dlp

from transcription.errors import ContentUnavailableError
from transcription.host_transcripts import HostTranscriptFetcher
from transcription.media import LocalAudioStore, MediaAcquirer, probe_duration
from transcription.models import AudioQuality, ContentKind, ContentReference, TranscriptionMode


def fake_youtube_dl(info=None, error=None, write_file=None):
    """Patchable YoutubeDL replacement recording the options it was given."""
    created = []

    class FakeYDL:
        def __init__(self, opts):
            self.opts = opts
            created.append(self)

        def __enter__(self):
            return self

        def __exit__(self, *exc):
            return False

        def extract_info(self, url, download=False):
            if error is not None:
                raise error
            if download and write_file:
                write_file(self.opts)
            return info

    return FakeYDL, created


class TestDurationMeasurement:
    """ffprobe duration measurement."""

    @pytest.mark.asyncio
    async def test_parses_format_duration(self, tmp_path):
        process = MagicMock(returncode=0)
        process.communicate = AsyncMock(return_value=(json.dumps({'format': {'duration': '1834.5'}}).encode(), b""))
        with patch('asyncio.create_subprocess_exec', AsyncMock(return_value=process)):
            assert await probe_duration(tmp_path / "a.m4a") == 1834.5

    @pytest.mark.asyncio
    async def test_missing_ffprobe_gives_none(self, tmp_path):
        with patch('asyncio.create_subprocess_exec', AsyncMock(side_effect=FileNotFoundError())):
            assert await probe_duration(tmp_path / "a.m4a") is None

    @pytest.mark.asyncio
    async def test_failure_gives_none(self, tmp_path):
        process = MagicMock(returncode=1)
        process.communicate = AsyncMock(return_value=(b"", b"Invalid data"))
        with patch('asyncio.create_subprocess_exec', AsyncMock(return_value=process)):
            assert await probe_duration(tmp_path / "a.m4a") is None

    @pytest.mark.asyncio
    async def test_missing_duration_gives_none(self, tmp_path):
        process = MagicMock(returncode=0)
        process.communicate = AsyncMock(return_value=(b'{"format": {}}', b""))
        with patch('asyncio.create_subprocess_exec', AsyncMock(return_value=process)):
            assert await probe_duration(tmp_path / "a.m4a") is None


class TestLocalAudioStore:
    """Recorded audio uploads on local disk."""

    @pytest.fixture
    def uploads(self, tmp_path):
        root = tmp_path / "uploads"
        (root / "user-1").mkdir(parents=True)
        (root / "user-1" / "lecture.m4a").write_bytes(b"\x00" * 10)
        return root

    @pytest.mark.asyncio
    async def test_fetch_copies_into_run_dir(self, uploads, tmp_path):
        run_dir = tmp_path / "run"
        run_dir.mkdir()

        path = await LocalAudioStore(uploads).fetch("user-1/lecture.m4a", run_dir)

        assert path == run_dir / "lecture.m4a"
        assert path.read_bytes() == b"\x00" * 10

    @pytest.mark.asyncio
    async def test_missing_file(self, uploads, tmp_path):
        with pytest.raises(ContentUnavailableError):
            await LocalAudioStore(uploads).fetch("user-1/missing.m4a", tmp_path)

    def test_traversal_rejected(self, uploads):
        with pytest.raises(ContentUnavailableError):
            LocalAudioStore(uploads).resolve("../secrets.txt")

    @pytest.mark.asyncio
    async def test_save_creates_owner_directory(self, uploads):
        await LocalAudioStore(uploads).save(b"\x05" * 4, "user-2/new.wav")

        assert (uploads / "user-2" / "new.wav").read_bytes() == b"\x05" * 4

    @pytest.mark.asyncio
    async def test_save_outside_root_rejected(self, uploads, tmp_path):
        with pytest.raises(ContentUnavailableError):
            await LocalAudioStore(uploads).save(b"\x05", "../escaped.wav")

        assert not (tmp_path / "escaped.wav").exists()


class TestMediaAcquirer:
    """Test suite for MediaAcquirer."""

    @pytest.fixture
    def acquirer(self, tmp_path):
        return MediaAcquirer(audio_store=LocalAudioStore(tmp_path / "uploads"))

    @pytest.fixture
    def video(self):
        return ContentReference.from_input("dQw4w9WgXcQ")

    @pytest.mark.asyncio
    async def test_fetch_metadata(self, acquirer):
        ydl, _ = fake_youtube_dl(info={'id': 'dQw4w9WgXcQ', 'title': 'Lecture 1', 'duration': 3600, 'channel': 'Uni'})
        with patch('transcription.media.yt_dlp.YoutubeDL', ydl):
            metadata = await acquirer.fetch_metadata("https://www.youtube.com/watch?v=dQw4w9WgXcQ")

        assert metadata.title == 'Lecture 1'
        assert metadata.duration_seconds == 3600.0
        assert metadata.channel_title == 'Uni'

    @pytest.mark.asyncio
    async def test_private_video_is_unavailable(self, acquirer):
        ydl, _ = fake_youtube_dl(error=yt_dlp.utils.DownloadError("ERROR: Private video"))
        with patch('transcription.media.yt_dlp.YoutubeDL', ydl):
            with pytest.raises(ContentUnavailableError) as exc_info:
                await acquirer.fetch_metadata("https://www.youtube.com/watch?v=dQw4w9WgXcQ")

        assert "private" in exc_info.value.user_message

    @pytest.mark.asyncio
    async def test_download_audio_options_and_asset(self, acquirer, video, tmp_path):
        def write_file(opts):
            (tmp_path / "run" / "audio.m4a").write_bytes(b"\x00" * 100)

        ydl, created = fake_youtube_dl(info={'id': 'dQw4w9WgXcQ', 'title': 'Lecture', 'duration': 900},
                                       write_file=write_file)
        with patch('transcription.media.yt_dlp.YoutubeDL', ydl), \
             patch('transcription.media.probe_duration', AsyncMock(return_value=None)):
            asset = await acquirer.download_audio(video, tmp_path / "run", AudioQuality.LOW)

        opts = created[0].opts
        assert opts['noplaylist'] is True
        assert opts['max_filesize'] == 200 * 1024 * 1024
        assert opts['postprocessors'][0]['preferredcodec'] == 'm4a'
        assert opts['postprocessors'][0]['preferredquality'] == '9'
        assert asset.local_path.name == 'audio.m4a'
        assert asset.duration_seconds == 900.0
        assert asset.size_bytes == 100
        assert asset.title == 'Lecture'

    @pytest.mark.asyncio
    async def test_download_without_output_is_unavailable(self, acquirer, video, tmp_path):
        ydl, _ = fake_youtube_dl(info={'id': 'dQw4w9WgXcQ'})
        with patch('transcription.media.yt_dlp.YoutubeDL', ydl):
            with pytest.raises(ContentUnavailableError):
                await acquirer.download_audio(video, tmp_path / "run")

    @pytest.mark.asyncio
    async def test_unclassified_errors_become_unavailable(self, acquirer, video, tmp_path):
        ydl, _ = fake_youtube_dl(error=MemoryError("out of memory"))
        with patch('transcription.media.yt_dlp.YoutubeDL', ydl):
            with pytest.raises(ContentUnavailableError) as exc_info:
                await acquirer.download_audio(video, tmp_path / "run")

        assert isinstance(exc_info.value.__cause__, MemoryError)
        assert exc_info.value.context['stage'] == 'download'

    @pytest.mark.asyncio
    async def test_download_timeout_stops_the_download(self, tmp_path):
        acquirer = MediaAcquirer(download_timeout=0.1)
        run_dir = tmp_path / "run"
        finished = threading.Event()

        def slow_download(opts):
            try:
                for _ in range(40):
                    (run_dir / "audio.m4a.part").write_bytes(b"\x00" * 8)
                    time.sleep(0.05)
                    for hook in opts['progress_hooks']:
                        hook({'status': 'downloading'})
                (run_dir / "audio.m4a").write_bytes(b"\x00" * 100)
            finally:
                finished.set()

        ydl, created = fake_youtube_dl(info={'id': 'dQw4w9WgXcQ'}, write_file=slow_download)
        with patch('transcription.media.yt_dlp.YoutubeDL', ydl):
            with pytest.raises(ContentUnavailableError) as exc_info:
                await acquirer.download_audio(ContentReference.from_input("dQw4w9WgXcQ"), run_dir)

        assert finished.is_set()
        assert "took too long" in exc_info.value.user_message
        assert created[0].opts['postprocessor_hooks'] == created[0].opts['progress_hooks']
        assert not (run_dir / "audio.m4a").exists()

        shutil.rmtree(run_dir)
        time.sleep(0.1)
        assert not run_dir.exists()

    @pytest.mark.asyncio
    async def test_metadata_timeout_is_unavailable(self, tmp_path):
        acquirer = MediaAcquirer(metadata_timeout=0.05)
        ydl, _ = fake_youtube_dl(info={'id': 'dQw4w9WgXcQ'})

        def slow_extract(self, url, download=False):
            time.sleep(0.2)
            return {'id': 'dQw4w9WgXcQ'}

        with patch('transcription.media.yt_dlp.YoutubeDL', ydl), patch.object(ydl, 'extract_info', slow_extract):
            with pytest.raises(ContentUnavailableError):
                await acquirer.fetch_metadata("https://www.youtube.com/watch?v=dQw4w9WgXcQ")

    @pytest.mark.asyncio
    async def test_acquire_recorded(self, acquirer, tmp_path):
        (tmp_path / "uploads" / "u1").mkdir(parents=True)
        (tmp_path / "uploads" / "u1" / "talk.wav").write_bytes(b"\x00" * 50)
        run_dir = tmp_path / "run"
        run_dir.mkdir()

        with patch('transcription.media.probe_duration', AsyncMock(return_value=125.0)):
            asset = await acquirer.acquire(ContentReference.from_input("u1/talk.wav"), run_dir)

        assert asset.duration_seconds == 125.0
        assert asset.format == 'wav'

    @pytest.mark.asyncio
    async def test_store_upload(self, acquirer, tmp_path):
        reference = await acquirer.store_upload(b"\x01\x02", "Lecture 3.M4A", "alice")

        digest = hashlib.sha256(b"\x01\x02").hexdigest()[:16]
        assert reference.kind == ContentKind.RECORDED_AUDIO
        assert reference.identity == f"alice/{digest}.m4a"
        assert (tmp_path / "uploads" / "alice" / f"{digest}.m4a").read_bytes() == b"\x01\x02"

    @pytest.mark.asyncio
    async def test_identical_uploads_share_a_reference(self, acquirer):
        first = await acquirer.store_upload(b"same bytes", "a.mp3", "alice")
        second = await acquirer.store_upload(b"same bytes", "b.mp3", "alice")
        other = await acquirer.store_upload(b"same bytes", "a.mp3", "bob")

        assert first == second
        assert other != first

    @pytest.mark.asyncio
    async def test_upload_names_are_sanitized(self, acquirer, tmp_path):
        reference = await acquirer.store_upload(b"\x01", "../../evil.w@v", "../root")

        assert reference.identity.startswith("root/")
        assert reference.identity.endswith(".wv")
        assert (tmp_path / "uploads" / reference.identity).is_file()

    @pytest.mark.asyncio
    async def test_empty_upload_is_rejected(self, acquirer, tmp_path):
        with pytest.raises(ContentUnavailableError) as exc_info:
            await acquirer.store_upload(b"", "x.mp3", "alice")

        assert "empty" in exc_info.value.user_message
        assert not (tmp_path / "uploads").exists()

    @pytest.mark.asyncio
    async def test_upload_without_store_is_rejected(self):
        with pytest.raises(ContentUnavailableError):
            await MediaAcquirer().store_upload(b"\x01", "x.mp3", "alice")

    @pytest.mark.asyncio
    async def test_stored_upload_can_be_acquired(self, acquirer, tmp_path):
        reference = await acquirer.store_upload(b"\x00" * 30, "talk.wav", "alice")
        run_dir = tmp_path / "run"
        run_dir.mkdir()

        with patch('transcription.media.probe_duration', AsyncMock(return_value=42.0)):
            asset = await acquirer.acquire(reference, run_dir)

        assert asset.local_path.parent == run_dir
        assert asset.size_bytes == 30

    def test_health_check(self, acquirer):
        with patch('transcription.media.shutil.which', side_effect=lambda name: None if name == 'ffprobe' else '/bin/x'):
            report = acquirer.health_check()

        assert report['ffmpeg_available'] is True
        assert report['ffprobe_available'] is False
        assert report['yt_dlp_version']


def snippet(text, start, duration):
    return SimpleNamespace(text=text, start=start, duration=duration)


def listed(language_code, is_generated, snippets):
    transcript = MagicMock(language_code=language_code, is_generated=is_generated)
    transcript.fetch.return_value = snippets
    return transcript


class TestHostTranscriptFetcher:
    """Test suite for HostTranscriptFetcher."""

    @pytest.mark.asyncio
    async def test_prefers_manual_in_requested_language(self):
        api = MagicMock()
        api.list.return_value = [
            listed('en', True, [snippet('auto', 0, 1)]),
            listed('de', False, [snippet('deutsch', 0, 1)]),
            listed('en-GB', False, [snippet('hello\nworld', 0.0, 2.0), snippet('again', 2.0, 1.5)]),
        ]

        transcript = await HostTranscriptFetcher(api).fetch('dQw4w9WgXcQ', 'en')

        assert transcript.full_text == 'hello world again'
        assert transcript.language_detected == 'en-GB'
        assert transcript.strategy_used == TranscriptionMode.HOST_TRANSCRIPT
        assert transcript.provider_used == 'youtube_transcript'
        assert transcript.duration_seconds == 3.5
        assert [w.start for w in transcript.word_timestamps] == [0.0, 2.0]

    @pytest.mark.asyncio
    async def test_falls_back_to_generated(self):
        api = MagicMock()
        api.list.return_value = [listed('en', True, [snippet('auto text', 0, 1)])]

        transcript = await HostTranscriptFetcher(api).fetch('dQw4w9WgXcQ', 'en', want_word_timestamps=False)

        assert transcript.full_text == 'auto text'
        assert transcript.word_timestamps == []

    @pytest.mark.asyncio
    async def test_any_failure_is_none(self):
        api = MagicMock()
        api.list.side_effect = Exception("Subtitles are disabled for this video")

        assert await HostTranscriptFetcher(api).fetch('dQw4w9WgXcQ') is None

    @pytest.mark.asyncio
    async def test_blank_transcript_is_none(self):
        api = MagicMock()
        api.list.return_value = [listed('en', False, [snippet('  ', 0, 1)])]

        assert await HostTranscriptFetcher(api).fetch('dQw4w9WgXcQ') is None

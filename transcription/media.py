"""
Media Acquirer

Turns a ContentReference into a local AudioAsset inside a run-owned
directory:
- remote videos are resolved and downloaded as audio with yt-dlp
- recorded audio is read from an AudioStore by its opaque storage path;
  uploaded buffers are saved there first and then addressed the same way

Durations are measured with ffprobe; an unmeasurable duration is None and
left for the strategy selector to resolve.
"""

import asyncio
import hashlib
import json
import logging
import re
import shutil
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, Optional

import yt_dlp
from yt_dlp.utils import parse_bytes

from .errors import ContentUnavailableError, classify_error, unavailable_message
from .logging_context import log_with_context
from .models import AudioAsset, AudioQuality, ContentReference, VideoMetadata
from .url_parser import ContentInputParser

logger = logging.getLogger(__name__)

AUDIO_EXTENSIONS = ('m4a', 'mp3', 'wav', 'webm', 'opus')
UNSAFE_PATH_CHARS = re.compile(r'[^A-Za-z0-9_.-]')


async def probe_duration(path: Path, timeout: float = 30) -> Optional[float]:
    """Measure audio duration in seconds with ffprobe, or None."""
    cmd = [
        'ffprobe',
        '-v', 'quiet',
        '-print_format', 'json',
        '-show_format',
        str(path),
    ]
    try:
        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError:
        logger.warning("ffprobe not available - duration unknown")
        return None

    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        process.kill()
        await process.wait()
        logger.warning(f"ffprobe timeout for {path}")
        return None

    if process.returncode != 0:
        logger.warning(f"ffprobe failed for {path}: {stderr.decode('utf-8', errors='replace')}")
        return None

    try:
        duration = json.loads(stdout).get('format', {}).get('duration')
        return float(duration) if duration is not None else None
    except (json.JSONDecodeError, TypeError, ValueError) as e:
        logger.warning(f"Failed to parse ffprobe output for {path}: {e}")
        return None


class AudioStore(ABC):
    """Source of recorded audio uploads, addressed by opaque storage path."""

    @abstractmethod
    async def fetch(self, storage_path: str, destination_dir: Path) -> Path:
        """Copy the object at storage_path into destination_dir and return the local path."""
        pass

    @abstractmethod
    async def save(self, data: bytes, storage_path: str) -> None:
        """Persist an uploaded buffer under storage_path."""
        pass


class LocalAudioStore(AudioStore):
    """AudioStore backed by a directory on the local filesystem."""

    def __init__(self, root: Path):
        self.root = Path(root)

    def resolve(self, storage_path: str) -> Path:
        normalized = ContentInputParser.normalize_storage_path(storage_path)
        if normalized is None:
            raise ContentUnavailableError(
                f"Invalid storage path: {storage_path!r}",
                user_message="Audio file not found.",
            )
        path = (self.root / normalized).resolve()
        if self.root.resolve() not in path.parents:
            raise ContentUnavailableError(
                f"Storage path escapes upload root: {storage_path!r}",
                user_message="Audio file not found.",
            )
        return path

    async def fetch(self, storage_path: str, destination_dir: Path) -> Path:
        source = self.resolve(storage_path)
        if not source.is_file():
            raise ContentUnavailableError(
                f"Recorded audio not found: {storage_path}",
                user_message="Audio file not found.",
            )
        destination = Path(destination_dir) / source.name
        await asyncio.to_thread(shutil.copyfile, source, destination)
        return destination

    async def save(self, data: bytes, storage_path: str) -> None:
        path = self.resolve(storage_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        await asyncio.to_thread(path.write_bytes, data)


class MediaAcquirer:
    """Fetches metadata and raw audio for content references."""

    def __init__(
        self,
        audio_store: Optional[AudioStore] = None,
        max_filesize: str = "200M",
        metadata_timeout: float = 60.0,
        download_timeout: float = 900.0,
    ):
        self.audio_store = audio_store
        self.max_filesize = max_filesize
        self.metadata_timeout = metadata_timeout
        self.download_timeout = download_timeout
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    @classmethod
    def from_settings(cls, settings) -> 'MediaAcquirer':
        return cls(
            audio_store=LocalAudioStore(settings.upload_storage_path),
            max_filesize=settings.audio_max_filesize,
            metadata_timeout=settings.metadata_timeout_seconds,
            download_timeout=settings.download_timeout_seconds,
        )

    async def fetch_metadata(self, url: str) -> VideoMetadata:
        """
        Resolve title and duration of a remote video without downloading it.

        Raises:
            ContentUnavailableError: if the video is private, deleted, restricted or missing
        """
        ydl_opts = {
            'quiet': True,
            'no_warnings': True,
            'extract_flat': False,
            'noplaylist': True,
        }

        def extract() -> Dict[str, Any]:
            with yt_dlp.YoutubeDL(ydl_opts) as ydl:
                return ydl.extract_info(url, download=False)

        try:
            info = await asyncio.wait_for(asyncio.to_thread(extract), timeout=self.metadata_timeout)
        except Exception as e:
            raise self._unavailable(e, url, 'metadata') from e

        if not info or not info.get('id'):
            raise ContentUnavailableError(f"No video ID found for {url}", context={'url': url})

        duration = info.get('duration')
        return VideoMetadata(
            video_id=info['id'],
            title=info.get('title') or 'Unknown Title',
            duration_seconds=float(duration) if duration else None,
            channel_title=info.get('channel') or info.get('uploader') or 'Unknown Channel',
        )

    async def download_audio(
        self,
        reference: ContentReference,
        output_dir: Path,
        quality: AudioQuality = AudioQuality.MEDIUM,
    ) -> AudioAsset:
        """
        Download the audio track of a remote video into output_dir.

        Args:
            reference: Remote video reference
            output_dir: Run-owned directory
            quality: Caller quality hint

        Returns:
            AudioAsset with duration from ffprobe (falling back to yt-dlp's)
        """
        output_dir = Path(output_dir)
        output_dir.mkdir(parents=True, exist_ok=True)

        cancelled = threading.Event()

        def stop_if_cancelled(status: Dict[str, Any]) -> None:
            if cancelled.is_set():
                raise yt_dlp.utils.DownloadCancelled("Audio download cancelled after timeout")

        ydl_opts = {
            'format': 'bestaudio/best',
            'outtmpl': str(output_dir / 'audio.%(ext)s'),
            'quiet': True,
            'no_warnings': True,
            'noplaylist': True,
            'max_filesize': parse_bytes(self.max_filesize),
            'progress_hooks': [stop_if_cancelled],
            'postprocessor_hooks': [stop_if_cancelled],
            'postprocessors': [{
                'key': 'FFmpegExtractAudio',
                'preferredcodec': 'm4a',
                'preferredquality': quality.yt_dlp_quality,
            }],
        }

        def download() -> Dict[str, Any]:
            with yt_dlp.YoutubeDL(ydl_opts) as ydl:
                return ydl.extract_info(reference.source_url, download=True)

        log_with_context(
            self.logger,
            "Downloading audio",
            extra_context={'video_id': reference.identity, 'quality': quality.value},
        )

        worker = asyncio.ensure_future(asyncio.to_thread(download))
        try:
            info = await asyncio.wait_for(asyncio.shield(worker), timeout=self.download_timeout)
        except asyncio.TimeoutError as e:
            # Nothing may write into output_dir once this coroutine returns.
            cancelled.set()
            await asyncio.gather(worker, return_exceptions=True)
            raise self._unavailable(
                TimeoutError(f"Audio download timed out after {self.download_timeout}s"),
                reference.source_url,
                'download',
                user_message="Downloading the audio took too long. Please try again later.",
            ) from e
        except asyncio.CancelledError:
            cancelled.set()
            raise
        except Exception as e:
            raise self._unavailable(e, reference.source_url, 'download') from e

        audio_path = self._find_audio_file(output_dir)
        if audio_path is None:
            raise ContentUnavailableError(
                f"Audio download produced no file for {reference.identity}",
                context={'video_id': reference.identity},
            )

        duration = await probe_duration(audio_path)
        if duration is None and info and info.get('duration'):
            duration = float(info['duration'])

        return AudioAsset(
            local_path=audio_path,
            duration_seconds=duration,
            size_bytes=audio_path.stat().st_size,
            format=audio_path.suffix.lstrip('.'),
            title=(info or {}).get('title'),
        )

    async def fetch_recorded(self, reference: ContentReference, output_dir: Path) -> AudioAsset:
        """Copy a recorded upload out of the AudioStore into output_dir."""
        if self.audio_store is None:
            raise ContentUnavailableError(
                "No audio store configured for recorded audio",
                user_message="Audio file not found.",
            )
        local_path = await self.audio_store.fetch(reference.identity, Path(output_dir))
        return await self._asset_from_file(local_path)

    async def store_upload(self, data: bytes, filename: str, principal: str) -> ContentReference:
        """
        Save an uploaded audio buffer to the AudioStore.

        The storage path is derived from the principal and the content hash, so
        re-uploading identical bytes maps to the same reference (and cache entry).

        Returns:
            RECORDED_AUDIO reference for the stored upload
        """
        if not data:
            raise ContentUnavailableError("Empty audio upload", user_message="The uploaded audio file is empty.")
        if self.audio_store is None:
            raise ContentUnavailableError(
                "No audio store configured for uploads",
                user_message="Audio uploads are not available.",
            )

        owner = UNSAFE_PATH_CHARS.sub('_', principal).strip('._') or 'anonymous'
        digest = hashlib.sha256(data).hexdigest()[:16]
        suffix = UNSAFE_PATH_CHARS.sub('', Path(filename).suffix.lower()) or '.bin'
        storage_path = f"{owner}/{digest}{suffix}"

        await self.audio_store.save(data, storage_path)
        log_with_context(
            self.logger,
            "Stored audio upload",
            extra_context={'storage_path': storage_path, 'size_mb': round(len(data) / 1024 / 1024, 2)},
        )
        return ContentReference.from_input(storage_path)

    async def acquire(
        self,
        reference: ContentReference,
        output_dir: Path,
        quality: AudioQuality = AudioQuality.MEDIUM,
    ) -> AudioAsset:
        """Acquire raw audio for any content reference."""
        if reference.is_remote_video:
            return await self.download_audio(reference, output_dir, quality)
        return await self.fetch_recorded(reference, output_dir)

    async def _asset_from_file(self, path: Path) -> AudioAsset:
        return AudioAsset(
            local_path=path,
            duration_seconds=await probe_duration(path),
            size_bytes=path.stat().st_size,
            format=path.suffix.lstrip('.') or 'unknown',
            title=path.stem,
        )

    @staticmethod
    def _find_audio_file(output_dir: Path) -> Optional[Path]:
        for extension in AUDIO_EXTENSIONS:
            matches = sorted(output_dir.glob(f'audio.{extension}'))
            if matches:
                return matches[0]
        return None

    def _unavailable(self, error: Exception, url: Optional[str], stage: str,
                     user_message: Optional[str] = None) -> ContentUnavailableError:
        log_with_context(
            self.logger,
            f"Acquisition failed: {error}",
            level="ERROR",
            extra_context={'url': url, 'stage': stage, 'error_kind': classify_error(error).value},
        )
        return ContentUnavailableError(
            str(error) or type(error).__name__,
            user_message=user_message or unavailable_message(error),
            context={'url': url, 'stage': stage},
        )

    def health_check(self) -> Dict[str, Any]:
        """Report yt-dlp version and ffmpeg/ffprobe availability."""
        return {
            'yt_dlp_version': yt_dlp.version.__version__,
            'ffmpeg_available': shutil.which('ffmpeg') is not None,
            'ffprobe_available': shutil.which('ffprobe') is not None,
        }

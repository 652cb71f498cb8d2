"""
Chunk Splitter

Splits an AudioAsset into fixed-duration, speech-optimized MP3 segments with
a single ffmpeg segment-muxer invocation. The splitter sits behind the narrow
AudioSplitter interface so the pipeline can be exercised with a fake.
"""

import asyncio
import logging
import shutil
from abc import ABC, abstractmethod
from pathlib import Path
from typing import List, Optional

from .errors import SplitFailedError
from .logging_context import log_with_context
from .models import AudioAsset, Segment

logger = logging.getLogger(__name__)

CHUNK_PATTERN = "chunk_%03d.mp3"
LARGE_CHUNK_BYTES = 10 * 1024 * 1024


class FFmpegError(Exception):
    """ffmpeg exited non-zero, timed out, or is not installed."""
    pass


def speech_filter(silence_threshold_db: int = -35) -> str:
    """Audio filter trimming leading silence before speech recognition."""
    return (
        "silenceremove=start_periods=1:start_duration=1:"
        f"start_threshold={silence_threshold_db}dB:detection=peak"
    )


def speech_encoding_args(bitrate: str = "48k", sample_rate: int = 16000,
                         silence_threshold_db: int = -35) -> List[str]:
    """Mono low-bitrate MP3 encoding arguments shared by split and transcode."""
    return [
        '-c:a', 'libmp3lame',
        '-b:a', bitrate,
        '-ar', str(sample_rate),
        '-ac', '1',
        '-af', speech_filter(silence_threshold_db),
    ]


async def run_ffmpeg(args: List[str], timeout: Optional[float] = None) -> str:
    """
    Run ffmpeg with args and return its stderr output.

    Raises:
        FFmpegError: on non-zero exit, timeout, or missing binary
    """
    cmd = ['ffmpeg', '-hide_banner', '-y', *args]
    try:
        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError as e:
        raise FFmpegError("ffmpeg is not installed or not on PATH") from e

    try:
        _, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError as e:
        process.kill()
        await process.wait()
        raise FFmpegError(f"ffmpeg timed out after {timeout}s") from e

    output = stderr.decode('utf-8', errors='replace')
    if process.returncode != 0:
        raise FFmpegError(f"ffmpeg exited with code {process.returncode}: {output[-500:]}")
    return output


class AudioSplitter(ABC):
    """Splits an asset into ordered segments inside output_dir."""

    @abstractmethod
    async def split(self, asset: AudioAsset, chunk_duration: float, output_dir: Path) -> List[Segment]:
        pass


class FFmpegSplitter(AudioSplitter):
    """ffmpeg segment-muxer implementation of AudioSplitter."""

    def __init__(self, bitrate: str = "48k", sample_rate: int = 16000,
                 silence_threshold_db: int = -35, timeout: Optional[float] = 900):
        self.bitrate = bitrate
        self.sample_rate = sample_rate
        self.silence_threshold_db = silence_threshold_db
        self.timeout = timeout
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    @classmethod
    def from_settings(cls, settings) -> 'FFmpegSplitter':
        return cls(
            bitrate=settings.segment_bitrate,
            sample_rate=settings.segment_sample_rate,
            silence_threshold_db=settings.silence_threshold_db,
            timeout=settings.split_timeout_seconds,
        )

    def build_command(self, input_path: Path, chunk_duration: float, output_dir: Path) -> List[str]:
        """ffmpeg arguments (without the binary) for one split run."""
        return [
            '-i', str(input_path),
            '-f', 'segment',
            '-segment_time', str(int(chunk_duration)),
            *speech_encoding_args(self.bitrate, self.sample_rate, self.silence_threshold_db),
            '-reset_timestamps', '1',
            str(output_dir / CHUNK_PATTERN),
        ]

    async def split(self, asset: AudioAsset, chunk_duration: float, output_dir: Path) -> List[Segment]:
        """
        Split asset into segments of chunk_duration seconds.

        Args:
            asset: Local audio to split
            chunk_duration: Target segment length in seconds
            output_dir: Run-owned directory receiving chunk_NNN.mp3 files

        Returns:
            Segments ordered by index with deterministic start offsets

        Raises:
            SplitFailedError: if ffmpeg fails or produces no segments
        """
        output_dir = Path(output_dir)
        output_dir.mkdir(parents=True, exist_ok=True)

        log_with_context(
            self.logger,
            f"Splitting audio into {chunk_duration:.0f}s segments",
            extra_context={
                'source': asset.local_path.name,
                'duration': asset.duration_seconds,
                'size_mb': round(asset.size_bytes / 1024 / 1024, 2),
            },
        )

        try:
            await run_ffmpeg(self.build_command(asset.local_path, chunk_duration, output_dir), self.timeout)
        except FFmpegError as e:
            raise SplitFailedError(
                f"Audio splitting failed: {e}",
                context={'source': str(asset.local_path)},
            ) from e

        chunk_files = sorted(output_dir.glob('chunk_*.mp3'))
        if not chunk_files:
            raise SplitFailedError(
                "Audio splitting produced no segments",
                context={'source': str(asset.local_path)},
            )

        segments = build_segments(chunk_files, chunk_duration, asset.duration_seconds)
        self._log_sizes(chunk_files, asset.size_bytes)
        return segments

    def _log_sizes(self, chunk_files: List[Path], original_bytes: int) -> None:
        sizes = [path.stat().st_size for path in chunk_files]
        total = sum(sizes)
        for path, size in zip(chunk_files, sizes):
            self.logger.debug(f"{path.name}: {size / 1024 / 1024:.2f} MB")

        ratio = (original_bytes / total) if total else 0.0
        self.logger.info(
            f"Created {len(chunk_files)} segments, total {total / 1024 / 1024:.2f} MB "
            f"(compression ratio {ratio:.1f}x)"
        )

        average = total / len(sizes)
        if average > LARGE_CHUNK_BYTES:
            self.logger.warning(
                f"Average segment size {average / 1024 / 1024:.2f} MB exceeds 10 MB; "
                "provider upload limits may be hit"
            )


def build_segments(chunk_files: List[Path], chunk_duration: float,
                   total_duration: Optional[float]) -> List[Segment]:
    """Assign index, offset and duration to ordered chunk files."""
    segments = []
    for index, path in enumerate(chunk_files):
        offset = index * chunk_duration
        duration = chunk_duration
        if total_duration is not None:
            duration = max(0.0, min(chunk_duration, total_duration - offset))
        segments.append(Segment(
            index=index,
            local_path=path,
            start_offset_seconds=float(offset),
            duration_seconds=float(duration),
        ))
    return segments


async def transcode_for_speech(asset: AudioAsset, output_dir: Path, bitrate: str = "48k",
                               sample_rate: int = 16000, silence_threshold_db: int = -35,
                               timeout: Optional[float] = 300) -> AudioAsset:
    """
    Re-encode a whole asset to speech-optimized MP3 for the standard path.

    Returns the original asset unchanged if ffmpeg is unavailable or fails.
    """
    output_path = Path(output_dir) / f"{asset.local_path.stem}_speech.mp3"
    if shutil.which('ffmpeg') is None:
        logger.warning("ffmpeg not available, sending original audio")
        return asset

    try:
        await run_ffmpeg(
            ['-i', str(asset.local_path),
             *speech_encoding_args(bitrate, sample_rate, silence_threshold_db),
             str(output_path)],
            timeout,
        )
    except FFmpegError as e:
        logger.warning(f"Speech transcode failed, using original file: {e}")
        return asset

    size = output_path.stat().st_size
    logger.info(
        f"Transcoded {asset.local_path.name}: {asset.size_bytes / 1024 / 1024:.2f} MB -> "
        f"{size / 1024 / 1024:.2f} MB"
    )
    return AudioAsset(
        local_path=output_path,
        duration_seconds=asset.duration_seconds,
        size_bytes=size,
        format='mp3',
        title=asset.title,
    )

#!/usr/bin/env python3
"""
Transcription Core CLI

Transcribe YouTube videos or recorded audio uploads from the command line and
manage the transcript cache.
"""

import asyncio
import json
import sys
from datetime import timedelta
from pathlib import Path

import click
from tqdm import tqdm

from config.settings import get_settings
from transcription.cache import SQLTranscriptStore
from transcription.errors import TranscriptionError
from transcription.logging_context import configure_logging
from transcription.media import MediaAcquirer
from transcription.models import AudioQuality, ContentReference, TranscriptionOptions
from transcription.pipeline import TranscriptionPipeline
from transcription.strategy import select_mode

__version__ = "1.0.0"


def validate_content(ctx, param, value):
    """Validate YouTube URL, video ID or storage path."""
    try:
        return ContentReference.from_input(value)
    except TranscriptionError:
        raise click.BadParameter("Must be a YouTube video URL, video ID, or audio storage path")


def validate_optional_content(ctx, param, value):
    if not value:
        return None
    return validate_content(ctx, param, value)


def build_store(settings) -> SQLTranscriptStore:
    return SQLTranscriptStore(
        settings.database_url,
        max_age=timedelta(hours=settings.durable_cache_max_age_hours),
    )


@click.group(invoke_without_command=True)
@click.option('--version', is_flag=True, help='Show version and exit')
@click.option('--log-level', default=None, help='Override LOG_LEVEL (DEBUG, INFO, WARNING, ERROR)')
@click.pass_context
def cli(ctx, version, log_level):
    """
    Transcription Core

    Turn a YouTube video or a recorded lecture into a transcript, choosing
    between published captions, single-call and chunked transcription.
    """
    if version:
        click.echo(f"transcribe-core version {__version__}")
        return

    settings = get_settings()
    configure_logging(log_level or settings.log_level.value)

    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


def run_pipeline(settings, call):
    """Run call(pipeline, progress) under a tqdm progress bar and return its transcript."""

    async def run():
        pipeline = TranscriptionPipeline.from_settings(settings)
        with tqdm(total=100, desc="Starting", unit="%", bar_format="{desc:<32} {bar} {n:.0f}%") as bar:
            def progress(stage: str, percent: float) -> None:
                bar.set_description_str(stage[:32])
                bar.update(max(0.0, percent - bar.n))

            try:
                return await call(pipeline, progress)
            finally:
                await pipeline.close()

    try:
        return asyncio.run(run())
    except TranscriptionError as e:
        click.echo(f"❌ {e.user_message}", err=True)
        raise click.ClickException(f"Transcription failed ({e.kind.value})")
    except KeyboardInterrupt:
        click.echo("\n🛑 Transcription interrupted by user", err=True)
        raise click.Abort()


def emit_transcript(transcript, output, output_format):
    if output_format == 'json':
        rendered = json.dumps({**transcript.to_dict(), 'cached': transcript.cached}, indent=2)
    else:
        rendered = transcript.full_text

    if output:
        output.write_text(rendered, encoding='utf-8')
        click.echo(f"✅ Transcript written to {output}")
    else:
        click.echo(rendered)

    summary = (
        f"strategy={transcript.strategy_used.value} provider={transcript.provider_used} "
        f"segments={transcript.segment_count} failed={transcript.failed_segments} "
        f"confidence={transcript.overall_confidence:.2f} cached={transcript.cached}"
    )
    click.echo(click.style(summary, dim=True), err=True)
    if transcript.is_partial:
        click.echo(f"⚠️  {transcript.failed_segments} part(s) failed and were left as placeholders", err=True)


def transcript_options(func):
    """Options shared by the transcribe commands."""
    options = [
        click.option('--principal', '-p', default='cli', show_default=True, help='Requesting user identity'),
        click.option('--language', '-l', default='en', show_default=True, help='Language code'),
        click.option('--quality', type=click.Choice([q.value for q in AudioQuality]), default='medium',
                     show_default=True, help='Audio download quality'),
        click.option('--no-word-timestamps', is_flag=True, help='Skip word-level timestamps'),
        click.option('--output', '-o', type=click.Path(dir_okay=False, path_type=Path),
                     help='Write result to file'),
        click.option('--format', 'output_format', type=click.Choice(['text', 'json']), default='text',
                     show_default=True, help='Output format'),
    ]
    for option in reversed(options):
        func = option(func)
    return func


def build_options(language, quality, no_word_timestamps) -> TranscriptionOptions:
    return TranscriptionOptions(
        language=language,
        quality_hint=AudioQuality(quality),
        want_word_timestamps=not no_word_timestamps,
    )


@cli.command()
@click.argument('content', callback=validate_content)
@transcript_options
def transcribe(content, principal, language, quality, no_word_timestamps, output, output_format):
    """Transcribe a YouTube URL/video ID or a recorded audio storage path."""
    options = build_options(language, quality, no_word_timestamps)

    async def call(pipeline, progress):
        return await pipeline.transcribe(content, principal, options, progress)

    emit_transcript(run_pipeline(get_settings(), call), output, output_format)


@cli.command('transcribe-file')
@click.argument('audio_file', type=click.Path(exists=True, dir_okay=False, path_type=Path))
@transcript_options
def transcribe_file(audio_file, principal, language, quality, no_word_timestamps, output, output_format):
    """Upload a local audio file to the audio store and transcribe it."""
    options = build_options(language, quality, no_word_timestamps)
    data = audio_file.read_bytes()

    async def call(pipeline, progress):
        return await pipeline.transcribe_upload(data, audio_file.name, principal, options, progress)

    emit_transcript(run_pipeline(get_settings(), call), output, output_format)


@cli.command()
@click.argument('content', callback=validate_content)
def info(content):
    """Show metadata of a YouTube video and the transcription mode it would use."""
    if not content.is_remote_video:
        raise click.BadParameter("info only supports YouTube videos", param_hint='CONTENT')

    settings = get_settings()
    acquirer = MediaAcquirer.from_settings(settings)

    try:
        metadata = asyncio.run(acquirer.fetch_metadata(content.source_url))
    except TranscriptionError as e:
        raise click.ClickException(e.user_message)

    mode = select_mode(metadata.duration_seconds, settings.chunking_threshold_seconds,
                       settings.unknown_duration_seconds)
    duration = f"{metadata.duration_seconds:.0f}s" if metadata.duration_seconds else "unknown"
    click.echo(f"Title:    {metadata.title}")
    click.echo(f"Channel:  {metadata.channel_title}")
    click.echo(f"Video ID: {metadata.video_id}")
    click.echo(f"Duration: {duration}")
    click.echo(f"Mode:     {mode.value}")


@cli.command('cache-stats')
@click.option('--format', 'output_format', type=click.Choice(['table', 'json']), default='table',
              help='Output format')
def cache_stats(output_format):
    """Show durable transcript cache statistics."""
    settings = get_settings()

    async def collect():
        store = build_store(settings)
        try:
            return {
                'database_url': settings.database_url,
                'entries': await store.count(),
                'max_age_hours': settings.durable_cache_max_age_hours,
                'memory_capacity': settings.memory_cache_capacity,
            }
        finally:
            await store.close()

    try:
        stats = asyncio.run(collect())
    except Exception as e:
        raise click.ClickException(f"Failed to read cache: {str(e)}")

    if output_format == 'json':
        click.echo(json.dumps(stats, indent=2))
        return

    for key, value in stats.items():
        click.echo(f"{key:<16} {value}")


@cli.command('clear-cache')
@click.option('--content', 'content', callback=validate_optional_content,
              help='Only drop cached transcripts of this content')
@click.option('--principal', '-p', help='With --content, only drop this principal\'s entry')
@click.option('--expired', is_flag=True, help='Only purge entries older than the cache max age')
@click.confirmation_option(prompt='Drop cached transcripts?')
def clear_cache(content, principal, expired):
    """Delete cached transcripts."""
    if principal and content is None:
        raise click.UsageError("--principal requires --content")
    if expired and content is not None:
        raise click.UsageError("--expired cannot be combined with --content")

    settings = get_settings()

    async def clear():
        store = build_store(settings)
        try:
            if expired:
                return await store.purge_expired()
            if content is not None:
                return await store.delete(str(content), principal)
            return await store.clear()
        finally:
            await store.close()

    try:
        removed = asyncio.run(clear())
    except Exception as e:
        raise click.ClickException(f"Failed to clear cache: {str(e)}")

    click.echo(f"✅ Removed {removed} cached transcript(s)")


@cli.command()
def health():
    """Check external tools and provider configuration."""
    settings = get_settings()
    report = MediaAcquirer.from_settings(settings).health_check()

    key_configured = {
        'openai': bool(settings.openai_api_key),
        'google': bool(settings.google_api_key),
        'whisper_local': True,
    }[settings.speech_provider]
    report['speech_provider'] = settings.speech_provider
    report['provider_configured'] = key_configured

    healthy = report['ffmpeg_available'] and report['ffprobe_available'] and key_configured
    for key, value in report.items():
        click.echo(f"{key:<20} {value}")

    if not healthy:
        click.echo("❌ Unhealthy", err=True)
        sys.exit(1)
    click.echo("✅ Healthy")


if __name__ == '__main__':
    cli()

"""
Transcript Merger

Combines per-segment results into one Transcript: parts in index order,
word timestamps shifted onto the global timeline, and confidence averaged
over the parts that succeeded.
"""

import logging
from typing import List, Optional

from .models import SegmentResult, Transcript, TranscriptionMode, WordTimestamp

logger = logging.getLogger(__name__)

PART_HEADER = "--- Part {number} ---"


def merge_segment_results(
    results: List[SegmentResult],
    chunk_duration: float,
    asset_duration: Optional[float],
    provider: str,
    requested_language: Optional[str] = None,
) -> Transcript:
    """
    Merge segment results into a single transcript.

    Args:
        results: One result per segment, in any order
        chunk_duration: Nominal segment length used to offset word timestamps
        asset_duration: Total duration of the source audio, if known
        provider: Provider name recorded on the transcript
        requested_language: Fallback when no part reported a language

    Returns:
        Chunked-mode Transcript; failed parts keep their placeholder text
    """
    ordered = sorted(results, key=lambda r: r.index)

    parts = []
    words: List[WordTimestamp] = []
    for result in ordered:
        header = PART_HEADER.format(number=result.index + 1)
        parts.append(f"{header}\n{result.transcript_text.strip()}")
        offset = result.index * chunk_duration
        words.extend(word.shifted(offset) for word in result.word_timestamps)

    succeeded = [r for r in ordered if r.succeeded]
    failed = len(ordered) - len(succeeded)
    confidence = sum(r.confidence for r in succeeded) / len(succeeded) if succeeded else 0.0

    language = next((r.language_detected for r in succeeded if r.language_detected), None)

    if asset_duration is not None:
        duration = asset_duration
    else:
        duration = sum(r.duration_seconds for r in ordered)

    if failed:
        logger.warning(f"Merged transcript is partial: {failed}/{len(ordered)} parts failed")

    return Transcript(
        full_text="\n\n".join(parts),
        overall_confidence=confidence,
        duration_seconds=float(duration),
        word_timestamps=words,
        language_detected=language or requested_language,
        provider_used=provider,
        strategy_used=TranscriptionMode.CHUNKED,
        segment_count=len(ordered),
        failed_segments=failed,
    )

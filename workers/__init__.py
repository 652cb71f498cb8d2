"""
Workers module for the transcription service
"""

from workers.base import BaseWorker, WorkerStatus
from workers.transcriber import TranscribeWorker, transcribe_content

__all__ = [
    'BaseWorker',
    'WorkerStatus',
    'TranscribeWorker',
    'transcribe_content',
]

"""
Speech-to-text providers.

Every provider takes one audio payload and returns a ProviderResult. Failed
calls raise ProviderError (retryable or not); the executor decides what a
failure means for the run.
"""

import asyncio
import base64
import logging
import math
import os
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, List, Optional

import aiohttp
import openai

from .errors import ConfigurationError, ProviderError
from .models import ProviderResult, WordTimestamp

logger = logging.getLogger(__name__)


class SpeechProvider(ABC):
    """One speech-to-text backend."""

    name = "unknown"

    @abstractmethod
    async def transcribe(
        self,
        audio: bytes,
        language: str = "en",
        want_word_timestamps: bool = True,
        filename: str = "audio.mp3",
    ) -> ProviderResult:
        pass

    async def close(self) -> None:
        pass


def _field(obj: Any, name: str, default: Any = None) -> Any:
    """Read name from an SDK model or a plain dict."""
    if isinstance(obj, dict):
        return obj.get(name, default)
    return getattr(obj, name, default)


class OpenAIWhisperProvider(SpeechProvider):
    """OpenAI audio transcription API (whisper-1, verbose_json)."""

    name = "openai"

    def __init__(self, api_key: str, model: str = "whisper-1", client: Optional[openai.AsyncOpenAI] = None):
        if not api_key and client is None:
            raise ConfigurationError("OpenAI API key not found in environment variables")
        self.model = model
        self.client = client or openai.AsyncOpenAI(api_key=api_key, max_retries=0)
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    async def transcribe(self, audio: bytes, language: str = "en", want_word_timestamps: bool = True,
                         filename: str = "audio.mp3") -> ProviderResult:
        self.logger.info(f"OpenAI transcription starting: {len(audio) / 1024 / 1024:.2f} MB audio")

        request = {
            'model': self.model,
            'file': (filename, audio),
            'language': language,
            'response_format': 'verbose_json',
        }
        if want_word_timestamps:
            request['timestamp_granularities'] = ['word']

        try:
            response = await self.client.audio.transcriptions.create(**request)
        except openai.APIStatusError as e:
            retryable = e.status_code == 429 or e.status_code >= 500
            raise ProviderError(f"OpenAI API error: {e.status_code} - {e.message}",
                                status=e.status_code, retryable=retryable) from e
        except (openai.APIConnectionError, openai.APITimeoutError) as e:
            raise ProviderError(f"OpenAI connection error: {e}") from e

        return self.parse_response(response, language)

    def parse_response(self, response: Any, language: str) -> ProviderResult:
        words = [
            WordTimestamp(
                word=_field(word, 'word', ''),
                start=float(_field(word, 'start', 0.0)),
                end=float(_field(word, 'end', 0.0)),
            )
            for word in (_field(response, 'words') or [])
        ]

        confidence = None
        segments = _field(response, 'segments') or []
        if segments and _field(segments[0], 'avg_logprob') is not None:
            confidence = math.exp(_field(segments[0], 'avg_logprob'))

        duration = _field(response, 'duration')
        return ProviderResult(
            text=_field(response, 'text', '') or '',
            confidence=confidence,
            duration_seconds=float(duration) if duration is not None else None,
            word_timestamps=words,
            language_detected=_field(response, 'language') or language,
            provider=self.name,
        )

    async def close(self) -> None:
        await self.client.close()


class GoogleSpeechProvider(SpeechProvider):
    """Google Cloud Speech-to-Text REST API with API key auth."""

    name = "google"
    ENDPOINT = "https://speech.googleapis.com/v1p1beta1/speech:recognize"
    ENCODINGS = {'.mp3': 'MP3', '.flac': 'FLAC', '.webm': 'WEBM_OPUS', '.opus': 'OGG_OPUS'}

    def __init__(self, api_key: str, model: str = "latest_long", request_timeout: float = 180.0):
        if not api_key:
            raise ConfigurationError("Google API key not found in environment variables")
        self.api_key = api_key
        self.model = model
        self.request_timeout = request_timeout
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    def build_request(self, audio: bytes, language: str, want_word_timestamps: bool, filename: str) -> dict:
        config = {
            'languageCode': language or 'en-US',
            'enableWordTimeOffsets': want_word_timestamps,
            'enableAutomaticPunctuation': True,
            'model': self.model,
        }
        encoding = self.ENCODINGS.get(Path(filename).suffix.lower())
        if encoding:
            config['encoding'] = encoding
            config['sampleRateHertz'] = 16000
        return {
            'config': config,
            'audio': {'content': base64.b64encode(audio).decode('ascii')},
        }

    async def transcribe(self, audio: bytes, language: str = "en", want_word_timestamps: bool = True,
                         filename: str = "audio.mp3") -> ProviderResult:
        body = self.build_request(audio, language, want_word_timestamps, filename)

        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(
                    self.ENDPOINT,
                    params={'key': self.api_key},
                    json=body,
                    timeout=aiohttp.ClientTimeout(total=self.request_timeout),
                ) as response:
                    if response.status != 200:
                        error_data = await response.text()
                        raise ProviderError(
                            f"Google API error: {response.status} - {error_data}",
                            status=response.status,
                            retryable=response.status == 429 or response.status >= 500,
                        )
                    result = await response.json()
        except aiohttp.ClientError as e:
            raise ProviderError(f"Google connection error: {e}") from e

        return self.parse_response(result, language)

    def parse_response(self, result: dict, language: str) -> ProviderResult:
        results = result.get('results') or []
        if not results:
            raise ProviderError("No transcription results from Google Speech-to-Text", retryable=False)

        texts: List[str] = []
        confidences: List[float] = []
        words: List[WordTimestamp] = []
        for item in results:
            alternatives = item.get('alternatives') or []
            if not alternatives:
                continue
            alternative = alternatives[0]
            texts.append(alternative.get('transcript', '').strip())
            if alternative.get('confidence') is not None:
                confidences.append(float(alternative['confidence']))
            for word in alternative.get('words') or []:
                words.append(WordTimestamp(
                    word=word.get('word', ''),
                    start=float(str(word.get('startTime', '0s')).rstrip('s') or 0),
                    end=float(str(word.get('endTime', '0s')).rstrip('s') or 0),
                    confidence=word.get('confidence'),
                ))

        return ProviderResult(
            text=' '.join(text for text in texts if text),
            confidence=sum(confidences) / len(confidences) if confidences else None,
            word_timestamps=words,
            language_detected=language,
            provider=self.name,
        )


class LocalWhisperProvider(SpeechProvider):
    """openai-whisper running in-process; the model loads on first use."""

    name = "whisper_local"

    def __init__(self, model_name: str = "base"):
        self.model_name = model_name
        self._model = None
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    def _load_model(self):
        if self._model is None:
            import whisper
            self.logger.info(f"Loading Whisper model: {self.model_name}")
            self._model = whisper.load_model(self.model_name)
        return self._model

    def _transcribe_file(self, path: str, language: str, want_word_timestamps: bool) -> dict:
        model = self._load_model()
        return model.transcribe(
            path,
            language=language,
            task='transcribe',
            word_timestamps=want_word_timestamps,
            verbose=False,
        )

    async def transcribe(self, audio: bytes, language: str = "en", want_word_timestamps: bool = True,
                         filename: str = "audio.mp3") -> ProviderResult:
        suffix = Path(filename).suffix or '.mp3'
        handle, path = tempfile.mkstemp(suffix=suffix)
        try:
            with os.fdopen(handle, 'wb') as f:
                f.write(audio)
            try:
                result = await asyncio.to_thread(self._transcribe_file, path, language, want_word_timestamps)
            except RuntimeError as e:
                raise ProviderError(f"Whisper transcription failed: {e}", retryable=False) from e
        finally:
            os.unlink(path)

        segments = result.get('segments') or []
        words = [
            WordTimestamp(
                word=word.get('word', '').strip(),
                start=float(word.get('start', 0.0)),
                end=float(word.get('end', 0.0)),
                confidence=word.get('probability'),
            )
            for segment in segments
            for word in segment.get('words') or []
        ]
        confidence = None
        if segments and segments[0].get('avg_logprob') is not None:
            confidence = math.exp(segments[0]['avg_logprob'])

        return ProviderResult(
            text=(result.get('text') or '').strip(),
            confidence=confidence,
            duration_seconds=float(segments[-1]['end']) if segments else None,
            word_timestamps=words,
            language_detected=result.get('language') or language,
            provider=self.name,
        )


def build_provider(settings) -> SpeechProvider:
    """
    Construct the configured speech provider.

    Raises:
        ConfigurationError: if the selected provider is missing its API key
    """
    provider = settings.speech_provider
    if provider == 'openai':
        return OpenAIWhisperProvider(settings.openai_api_key, model=settings.openai_transcribe_model)
    if provider == 'google':
        return GoogleSpeechProvider(settings.google_api_key, request_timeout=settings.standard_timeout_seconds)
    if provider == 'whisper_local':
        return LocalWhisperProvider(settings.whisper_model)
    raise ConfigurationError(f"Unknown speech provider: {provider}")

"""Timestamped speech-to-text through a Whisper-compatible HTTP endpoint."""

import asyncio
import logging

import requests

from voiceover_producer import wav
from voiceover_producer.constants import (
    TRANSCRIPTION_MAX_BYTES,
    TRANSCRIPTION_MODEL,
    TRANSCRIPTION_TIMEOUT,
    TRANSCRIPTION_URL,
)
from voiceover_producer.errors import TranscriptionError
from voiceover_producer.models import TranscriptSegment, TranscriptWord
from voiceover_producer.retry import RetryPolicy, with_retry

logger = logging.getLogger(__name__)


def _attach_words(segments: list[TranscriptSegment], words: list[TranscriptWord]) -> None:
    """Hand each word to the segment whose time span contains its start."""
    if not segments:
        return
    position = 0
    for word in words:
        while position < len(segments) - 1 and word.start >= segments[position].end:
            position += 1
        segments[position].words.append(word)


def parse_response(payload: dict, offset: float = 0.0) -> list[TranscriptSegment]:
    """Turn a ``verbose_json`` body into segments, shifting times by ``offset``."""
    segments = [
        TranscriptSegment(
            text=(seg.get("text") or "").strip(),
            start=float(seg.get("start", 0.0)) + offset,
            end=float(seg.get("end", 0.0)) + offset,
        )
        for seg in payload.get("segments") or []
    ]
    words = [
        TranscriptWord(
            word=(w.get("word") or "").strip(),
            start=float(w.get("start", 0.0)) + offset,
            end=float(w.get("end", 0.0)) + offset,
        )
        for w in payload.get("words") or []
    ]
    _attach_words(segments, words)
    return [s for s in segments if s.text]


class Transcriber:
    def __init__(
        self,
        api_key: str,
        url: str = TRANSCRIPTION_URL,
        model: str = TRANSCRIPTION_MODEL,
        session: requests.Session | None = None,
        retry: RetryPolicy | None = None,
        max_bytes: int = TRANSCRIPTION_MAX_BYTES,
        timeout: float = TRANSCRIPTION_TIMEOUT,
    ):
        self.api_key = api_key
        self.url = url
        self.model = model
        self.session = session or requests.Session()
        self.retry = retry or RetryPolicy(retry_on=(TranscriptionError,))
        self.max_bytes = max_bytes
        self.timeout = timeout

    def _post(self, audio: bytes) -> dict:
        files = {"file": ("audio.wav", audio, "audio/wav")}
        data = {
            "model": self.model,
            "response_format": "verbose_json",
            "timestamp_granularities[]": ["word", "segment"],
        }
        try:
            resp = self.session.post(
                self.url,
                headers={"Authorization": f"Bearer {self.api_key}"},
                files=files,
                data=data,
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise TranscriptionError("Could not reach the transcription service") from exc
        if resp.status_code >= 400:
            logger.warning("Transcription HTTP %d: %.200s", resp.status_code, resp.text)
            raise TranscriptionError(f"Transcription service returned HTTP {resp.status_code}")
        try:
            return resp.json()
        except ValueError as exc:
            raise TranscriptionError("Transcription service returned invalid JSON") from exc

    async def transcribe(self, audio: bytes) -> list[TranscriptSegment]:
        """Transcribe a WAV, splitting it first when it exceeds the upload limit."""
        if not self.api_key:
            raise TranscriptionError("Transcription is not configured")

        pieces = wav.split_pcm(audio, self.max_bytes)
        if len(pieces) > 1:
            logger.info("Transcribing audio in %d pieces", len(pieces))

        segments: list[TranscriptSegment] = []
        for start, piece in pieces:

            async def attempt(_n: int, piece=piece) -> dict:
                return await asyncio.to_thread(self._post, piece)

            payload = await with_retry(attempt, self.retry)
            try:
                segments.extend(parse_response(payload, offset=start))
            except (TypeError, ValueError, AttributeError) as exc:
                raise TranscriptionError("Transcription service returned an unexpected body") from exc
        return segments

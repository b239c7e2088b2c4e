"""Speech synthesis via a remote serverless worker pool, with retry and polling."""

import asyncio
import base64
import binascii
import json
import logging
import time
from typing import Callable

import numpy as np
import requests
from pydub import AudioSegment

from voiceover_producer import wav
from voiceover_producer.config import Settings
from voiceover_producer.constants import (
    TTS_JOB_TIMEOUT,
    TTS_MAX_PAYLOAD_MB,
    TTS_POLL_FAST_ATTEMPTS,
    TTS_POLL_GROWTH,
    TTS_POLL_HINT_MAX,
    TTS_POLL_INTERVAL_INITIAL,
    TTS_POLL_INTERVAL_MAX,
    TTS_REQUEST_TIMEOUT,
)
from voiceover_producer.errors import (
    AnomalousAudioError,
    FormatError,
    SynthesisError,
    SynthesisTimeoutError,
    ValidationError,
)
from voiceover_producer.models import Segment, SynthesisJob
from voiceover_producer.retry import RetryPolicy, with_retry
from voiceover_producer.text import valid_chunks

logger = logging.getLogger(__name__)

FAILED_STATES = {"FAILED", "CANCELLED", "TIMED_OUT"}


class WorkerClient:
    """Blocking client for the worker pool's /run and /status endpoints."""

    def __init__(
        self,
        api_url: str,
        api_key: str,
        session: requests.Session | None = None,
        timeout: float = TTS_REQUEST_TIMEOUT,
    ):
        self.api_url = api_url.rstrip("/")
        self.api_key = api_key
        self.session = session or requests.Session()
        self.timeout = timeout

    def _headers(self) -> dict:
        return {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}

    def _request(self, method: str, url: str, **kwargs) -> dict:
        try:
            resp = self.session.request(method, url, headers=self._headers(), timeout=self.timeout, **kwargs)
        except requests.RequestException as exc:
            raise SynthesisError("Could not reach the synthesis worker") from exc
        if resp.status_code >= 400:
            logger.warning("Worker %s %s -> HTTP %d: %.200s", method, url, resp.status_code, resp.text)
            raise SynthesisError(f"Synthesis worker returned HTTP {resp.status_code}")
        try:
            return resp.json()
        except ValueError as exc:
            raise SynthesisError("Synthesis worker returned invalid JSON") from exc

    def submit(self, text: str, reference_audio_base64: str | None = None) -> str:
        """Start a job and return its id."""
        job_input = {"text": text, "prompt": text}
        if reference_audio_base64:
            job_input["reference_audio_base64"] = reference_audio_base64
        body = json.dumps({"input": job_input})

        size_mb = len(body) / (1024 * 1024)
        if size_mb > TTS_MAX_PAYLOAD_MB:
            raise ValidationError(f"Synthesis request is {size_mb:.1f}MB, limit is {TTS_MAX_PAYLOAD_MB}MB")

        data = self._request("POST", f"{self.api_url}/run", data=body)
        job_id = data.get("id")
        if not job_id:
            raise SynthesisError("Synthesis worker did not return a job id")
        return job_id

    def status(self, job_id: str) -> dict:
        return self._request("GET", f"{self.api_url}/status/{job_id}")


def _completed_job(job_id: str, status: dict) -> SynthesisJob:
    output = status.get("output") or {}
    if isinstance(output, dict) and output.get("error"):
        logger.warning("Job %s completed with error: %s", job_id, output["error"])
        raise SynthesisError("Synthesis worker reported an error")
    encoded = output.get("audio_base64") if isinstance(output, dict) else None
    if not encoded:
        raise SynthesisError("Synthesis worker returned no audio")
    try:
        audio = base64.b64decode(encoded, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise SynthesisError("Synthesis worker returned undecodable audio") from exc
    return SynthesisJob(job_id, "completed", audio, output.get("sample_rate", 0))


async def poll_job(
    client: WorkerClient,
    job_id: str,
    timeout: float = TTS_JOB_TIMEOUT,
    sleep=asyncio.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> SynthesisJob:
    """Poll a job until it completes, fails or runs out of time.

    The interval starts short and grows after the first few polls. A
    ``delayTime`` hint (ms) from the server stretches a single wait, capped.
    """
    deadline = clock() + timeout
    interval = TTS_POLL_INTERVAL_INITIAL
    polls = 0

    while True:
        status = await asyncio.to_thread(client.status, job_id)
        state = status.get("status", "")
        if state == "COMPLETED":
            return _completed_job(job_id, status)
        if state in FAILED_STATES:
            logger.warning("Job %s ended %s: %s", job_id, state, status.get("error", ""))
            raise SynthesisError(f"Synthesis job {state.lower().replace('_', ' ')}")

        polls += 1
        wait = interval
        hint = status.get("delayTime")
        if isinstance(hint, (int, float)) and hint / 1000 > wait:
            wait = min(hint / 1000, TTS_POLL_HINT_MAX)

        if clock() + wait > deadline:
            raise SynthesisTimeoutError(f"Synthesis job did not finish within {timeout:.0f}s")

        logger.debug("Job %s is %s, polling again in %.2fs", job_id, state or "pending", wait)
        await sleep(wait)
        if polls >= TTS_POLL_FAST_ATTEMPTS:
            interval = min(interval * TTS_POLL_GROWTH, TTS_POLL_INTERVAL_MAX)


def silent_window_ratio(wav_bytes: bytes, window_ms: int, threshold: float) -> float:
    """Fraction of ``window_ms`` windows whose RMS (16-bit scale) is below ``threshold``."""
    info = wav.parse(wav_bytes)
    if info.audio_format == 3:
        return 0.0

    payload = wav_bytes[info.data_start:info.data_end]
    payload = payload[:len(payload) - len(payload) % info.block_align]
    if not payload:
        return 1.0

    audio = AudioSegment(
        data=payload,
        sample_width=info.block_align // info.channels,
        frame_rate=info.sample_rate,
        channels=info.channels,
    ).set_sample_width(2)

    samples = np.array(audio.get_array_of_samples(), dtype=np.float64)
    frames = samples.reshape((-1, audio.channels))
    window = max(1, audio.frame_rate * window_ms // 1000)
    count = len(frames) // window
    if count == 0:
        windows = frames.reshape((1, -1))
    else:
        windows = frames[:count * window].reshape((count, -1))

    rms = np.sqrt(np.mean(windows ** 2, axis=1))
    return float(np.mean(rms < threshold))


class Synthesizer:
    """Turns one chunk of text into WAV bytes, retrying bad jobs."""

    def __init__(
        self,
        client: WorkerClient,
        settings: Settings | None = None,
        retry: RetryPolicy | None = None,
        sleep=asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
        job_timeout: float = TTS_JOB_TIMEOUT,
    ):
        self.client = client
        self.settings = settings or Settings()
        self.retry = retry or RetryPolicy(sleep=sleep)
        self.sleep = sleep
        self.clock = clock
        self.job_timeout = job_timeout

    def _check_silence(self, audio: bytes, attempt: int) -> None:
        ratio = silent_window_ratio(audio, self.settings.silence_window_ms, self.settings.silence_rms_threshold)
        if ratio <= self.settings.silence_max_ratio:
            return
        if attempt < self.retry.max_attempts - 1:
            raise AnomalousAudioError(f"Synthesized audio is {ratio:.0%} silence")
        logger.warning("Accepting mostly silent audio (%.0f%%) on final attempt", ratio * 100)

    async def synthesize(self, text: str, reference: str | None = None) -> bytes:
        """Synthesize ``text``, optionally cloning the base64 ``reference`` voice."""

        async def attempt(n: int) -> bytes:
            job_id = await asyncio.to_thread(self.client.submit, text, reference)
            logger.debug("Submitted job %s (%d chars, attempt %d)", job_id, len(text), n + 1)
            job = await poll_job(self.client, job_id, timeout=self.job_timeout, sleep=self.sleep, clock=self.clock)
            wav.parse(job.audio)
            self._check_silence(job.audio, n)
            return job.audio

        return await with_retry(attempt, self.retry)


async def synthesize_segment(
    synthesizer: Synthesizer,
    segment: Segment,
    reference: str | None = None,
    on_chunk: Callable[[int, int], None] | None = None,
) -> tuple[bytes, float]:
    """Synthesize a segment's chunks one after another and join them.

    A chunk that exhausts its retries is dropped with a warning. Raises
    SynthesisError when no chunk produced audio. ``on_chunk(done, total)`` is
    called after every chunk, successful or not.
    """
    chunks = valid_chunks(segment.text)
    if not chunks:
        raise SynthesisError(f"Segment {segment.index} has no speakable text")

    parts = []
    for done, chunk in enumerate(chunks, start=1):
        try:
            parts.append(await synthesizer.synthesize(chunk, reference))
        except (SynthesisError, FormatError) as exc:
            logger.warning("Segment %d chunk %d/%d dropped: %s", segment.index, done, len(chunks), exc)
        if on_chunk:
            on_chunk(done, len(chunks))

    if not parts:
        raise SynthesisError(f"Segment {segment.index} produced no audio")
    return wav.concatenate(parts)

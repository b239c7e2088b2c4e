"""Shared fixtures for voice-over producer tests."""

import base64

import numpy as np
import pytest

from voiceover_producer import wav
from voiceover_producer.models import TranscriptSegment

SAMPLE_RATE = 8000


def make_tone(seconds=0.5, freq=440.0, amplitude=0.5, sample_rate=SAMPLE_RATE, channels=1) -> bytes:
    """16-bit PCM sine tone in a canonical WAV container."""
    t = np.arange(int(seconds * sample_rate)) / sample_rate
    samples = (np.sin(2 * np.pi * freq * t) * amplitude * 32767).astype(np.int16)
    if channels > 1:
        samples = np.repeat(samples, channels)
    return wav.build(wav.pcm16_info(sample_rate, channels), samples.tobytes())


def make_silence(seconds=0.5, sample_rate=SAMPLE_RATE) -> bytes:
    frames = int(seconds * sample_rate)
    return wav.build(wav.pcm16_info(sample_rate), b"\x00\x00" * frames)


def completed(audio: bytes) -> dict:
    return {"status": "COMPLETED", "output": {"audio_base64": base64.b64encode(audio).decode()}}


class FakeWorkerClient:
    """Stands in for WorkerClient. ``respond(text, attempt)`` returns the job status."""

    api_key = "test-key"

    def __init__(self, respond=None):
        self.respond = respond or (lambda text, attempt: completed(make_tone(0.2)))
        self.submitted = []
        self.references = []
        self.jobs = {}

    def submit(self, text, reference_audio_base64=None):
        attempt = self.submitted.count(text)
        self.submitted.append(text)
        self.references.append(reference_audio_base64)
        job_id = f"job-{len(self.submitted)}"
        self.jobs[job_id] = self.respond(text, attempt)
        return job_id

    def status(self, job_id):
        return self.jobs[job_id]


class FakeTranscriber:
    def __init__(self, segments=None, error=None):
        self.segments = segments or []
        self.error = error
        self.calls = 0

    async def transcribe(self, audio):
        self.calls += 1
        if self.error:
            raise self.error
        return self.segments


class SleepRecorder:
    """Async sleep replacement that records requested delays and returns at once."""

    def __init__(self):
        self.delays = []

    async def __call__(self, seconds):
        self.delays.append(seconds)


@pytest.fixture
def tone():
    return make_tone


@pytest.fixture
def silence():
    return make_silence


@pytest.fixture
def fake_client():
    return FakeWorkerClient()


@pytest.fixture
def sleep_recorder():
    return SleepRecorder()


@pytest.fixture
def castle_transcript():
    """Two near-identical transcript segments, the second a looped repeat."""
    return [
        TranscriptSegment("The castle stood for centuries.", 0.0, 2.5),
        TranscriptSegment("The castle stood for centuries.", 2.5, 5.0),
    ]

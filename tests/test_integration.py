"""Integration tests (Layer 4): full pipeline over the HTTP client code paths."""

import asyncio
import itertools
import json
import shutil
import threading
from unittest.mock import MagicMock

import pytest

from conftest import FakeTranscriber, FakeWorkerClient, completed, make_tone
from voiceover_producer import wav
from voiceover_producer.config import Settings
from voiceover_producer.models import VoiceoverRequest
from voiceover_producer.pipeline import VoiceoverPipeline, combined_path
from voiceover_producer.progress import ProgressChannel
from voiceover_producer.repetition import RepetitionRemover
from voiceover_producer.storage import LocalStorage
from voiceover_producer.tts import Synthesizer, WorkerClient

requires_ffmpeg = pytest.mark.skipif(shutil.which("ffmpeg") is None, reason="ffmpeg not installed")

CHUNK_SECONDS = 0.05


class FakeWorkerSession:
    """Answers /run and /status the way the worker pool does, from many threads."""

    def __init__(self):
        self.jobs = {}
        self.submitted = []
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def _response(self, payload):
        resp = MagicMock()
        resp.status_code = 200
        resp.json.return_value = payload
        return resp

    def request(self, method, url, headers=None, timeout=None, data=None):
        if method == "POST":
            text = json.loads(data)["input"]["text"]
            with self._lock:
                job_id = f"job-{next(self._ids)}"
                self.submitted.append(text)
                self.jobs[job_id] = [{"status": "IN_QUEUE", "delayTime": 0}, completed(make_tone(CHUNK_SECONDS))]
            return self._response({"id": job_id, "status": "IN_QUEUE"})
        job_id = url.rsplit("/", 1)[-1]
        with self._lock:
            states = self.jobs[job_id]
            status = states.pop(0) if len(states) > 1 else states[0]
        return self._response(status)


async def _no_sleep(seconds):
    return None


def _story(sentences=850):
    topics = ["the harbor", "the old mill", "the northern road", "the market square", "the chapel bell"]
    return " ".join(
        f"This entry tells how {topics[i % len(topics)]} changed over many long years."
        for i in range(sentences)
    )


def test_ten_thousand_word_script(tmp_path):
    """A 10k-word script flows through ten segments into one WAV."""
    session = FakeWorkerSession()
    settings = Settings(runpod_api_key="k")
    client = WorkerClient("https://worker.example/v2/ep", "k", session=session)
    pipeline = VoiceoverPipeline(settings, Synthesizer(client, settings, sleep=_no_sleep), LocalStorage(tmp_path))
    channel = ProgressChannel()

    async def run():
        task = asyncio.ensure_future(pipeline.generate(VoiceoverRequest(_story(), asset_group_id="story"), channel))
        events = [e async for e in channel.events()]
        return await task, events

    result, events = asyncio.run(run())

    assert result.failed_segments == []
    assert len(result.segments) == 10
    assert all(len(text) <= 500 for text in session.submitted)
    assert result.duration == pytest.approx(len(session.submitted) * CHUNK_SECONDS)

    stored = (tmp_path / combined_path("story")).read_bytes()
    assert wav.duration(stored) == pytest.approx(result.duration)

    percents = [e.percent for e in events if e.type == "progress"]
    assert percents == sorted(percents)
    assert events[-1].type == "complete"


@requires_ffmpeg
def test_repeated_sentence_removed_from_voiceover(tmp_path, castle_transcript):
    """The worker says the castle sentence twice; the published file says it once."""
    settings = Settings()
    client = FakeWorkerClient(lambda text, attempt: completed(make_tone(5.0)))
    pipeline = VoiceoverPipeline(
        settings,
        Synthesizer(client, settings, sleep=_no_sleep),
        LocalStorage(tmp_path),
        remover=RepetitionRemover(FakeTranscriber(castle_transcript)),
    )

    result = asyncio.run(pipeline.generate(VoiceoverRequest("The castle stood for centuries.", asset_group_id="c")))

    assert len(result.repetitions) == 1
    assert result.duration == pytest.approx(2.5, abs=0.05)
    assert wav.duration((tmp_path / combined_path("c")).read_bytes()) == pytest.approx(2.5, abs=0.05)


@requires_ffmpeg
def test_repetition_then_speed(tmp_path, castle_transcript):
    settings = Settings()
    client = FakeWorkerClient(lambda text, attempt: completed(make_tone(5.0, sample_rate=16000)))
    pipeline = VoiceoverPipeline(
        settings,
        Synthesizer(client, settings, sleep=_no_sleep),
        LocalStorage(tmp_path),
        remover=RepetitionRemover(FakeTranscriber(castle_transcript)),
    )

    request = VoiceoverRequest("The castle stood for centuries.", asset_group_id="fast", speed=2.0)
    result = asyncio.run(pipeline.generate(request))
    assert result.duration == pytest.approx(1.25, abs=0.05)

"""Tests for the synthesis dispatcher."""

import asyncio
import base64
import json
from unittest.mock import MagicMock, patch

import pytest
import requests

from conftest import FakeWorkerClient, SleepRecorder, completed, make_silence, make_tone
from voiceover_producer import wav
from voiceover_producer.config import Settings
from voiceover_producer.errors import SynthesisError, SynthesisTimeoutError, ValidationError
from voiceover_producer.models import Segment
from voiceover_producer.tts import (
    Synthesizer,
    WorkerClient,
    poll_job,
    silent_window_ratio,
    synthesize_segment,
)

NAMES = ["alpha", "bravo", "charlie", "delta", "echo"]


def _chunk_text(name):
    """A sentence long enough that two never share a chunk."""
    return f"Chunk {name} " + "word " * 55 + "ends."


def _response(status_code=200, payload=None):
    resp = MagicMock()
    resp.status_code = status_code
    resp.json.return_value = payload or {}
    resp.text = json.dumps(payload or {})
    return resp


def _name_of(text):
    return next(n for n in NAMES if f"Chunk {n} " in text)


def _audio_for(name):
    return make_tone(0.1 * (NAMES.index(name) + 1), freq=300 + 100 * NAMES.index(name))


# --- WorkerClient ---

def test_submit_posts_job_input():
    session = MagicMock()
    session.request.return_value = _response(payload={"id": "job-1"})
    client = WorkerClient("https://api.example/v2/abc/", "secret", session=session)

    assert client.submit("Hello there.", "UklGRg==") == "job-1"

    method, url = session.request.call_args.args
    kwargs = session.request.call_args.kwargs
    assert (method, url) == ("POST", "https://api.example/v2/abc/run")
    assert kwargs["headers"]["Authorization"] == "Bearer secret"
    body = json.loads(kwargs["data"])
    assert body == {"input": {
        "text": "Hello there.", "prompt": "Hello there.", "reference_audio_base64": "UklGRg==",
    }}


def test_submit_without_reference_omits_field():
    session = MagicMock()
    session.request.return_value = _response(payload={"id": "job-2"})
    WorkerClient("https://w", "k", session=session).submit("Hello there.")
    body = json.loads(session.request.call_args.kwargs["data"])
    assert "reference_audio_base64" not in body["input"]


@patch("voiceover_producer.tts.TTS_MAX_PAYLOAD_MB", 0.001)
def test_submit_rejects_oversized_payload():
    session = MagicMock()
    client = WorkerClient("https://w", "k", session=session)
    with pytest.raises(ValidationError):
        client.submit("Hello there.", "A" * 5000)
    session.request.assert_not_called()


def test_submit_http_error():
    session = MagicMock()
    session.request.return_value = _response(status_code=503)
    with pytest.raises(SynthesisError):
        WorkerClient("https://w", "k", session=session).submit("Hello there.")


def test_submit_network_error():
    session = MagicMock()
    session.request.side_effect = requests.ConnectionError("boom")
    with pytest.raises(SynthesisError):
        WorkerClient("https://w", "k", session=session).submit("Hello there.")


def test_submit_missing_job_id():
    session = MagicMock()
    session.request.return_value = _response(payload={"status": "IN_QUEUE"})
    with pytest.raises(SynthesisError):
        WorkerClient("https://w", "k", session=session).submit("Hello there.")


def test_status_gets_job():
    session = MagicMock()
    session.request.return_value = _response(payload={"status": "IN_PROGRESS"})
    assert WorkerClient("https://w", "k", session=session).status("j1") == {"status": "IN_PROGRESS"}
    assert session.request.call_args.args == ("GET", "https://w/status/j1")


# --- poll_job ---

def test_poll_interval_grows_after_fast_polls():
    client = MagicMock()
    audio = make_tone(0.1)
    client.status.side_effect = [{"status": "IN_QUEUE"}] * 5 + [completed(audio)]
    sleep = SleepRecorder()

    job = asyncio.run(poll_job(client, "j1", sleep=sleep))

    assert job.audio == audio
    assert job.status == "completed"
    assert sleep.delays == pytest.approx([0.25, 0.25, 0.25, 0.2875, 0.330625])


def test_poll_interval_capped():
    client = MagicMock()
    client.status.side_effect = [{"status": "IN_PROGRESS"}] * 40 + [completed(make_tone(0.1))]
    sleep = SleepRecorder()
    asyncio.run(poll_job(client, "j1", sleep=sleep))
    assert max(sleep.delays) == pytest.approx(1.0)


def test_poll_honours_delay_hint():
    client = MagicMock()
    client.status.side_effect = [
        {"status": "IN_QUEUE", "delayTime": 800},
        {"status": "IN_QUEUE", "delayTime": 9000},
        {"status": "IN_QUEUE", "delayTime": 100},
        completed(make_tone(0.1)),
    ]
    sleep = SleepRecorder()
    asyncio.run(poll_job(client, "j1", sleep=sleep))
    assert sleep.delays == pytest.approx([0.8, 1.5, 0.25])


@pytest.mark.parametrize("state", ["FAILED", "CANCELLED", "TIMED_OUT"])
def test_poll_failed_states(state):
    client = MagicMock()
    client.status.return_value = {"status": state, "error": "worker exploded"}
    with pytest.raises(SynthesisError) as exc_info:
        asyncio.run(poll_job(client, "j1", sleep=SleepRecorder()))
    assert "j1" not in str(exc_info.value)


def test_poll_timeout():
    """Hard wall-clock timeout raises a SynthesisTimeoutError (also a TimeoutError)."""
    client = MagicMock()
    client.status.return_value = {"status": "IN_PROGRESS"}
    now = [0.0]

    async def sleep(seconds):
        now[0] += seconds

    with pytest.raises(SynthesisTimeoutError) as exc_info:
        asyncio.run(poll_job(client, "j1", timeout=5.0, sleep=sleep, clock=lambda: now[0]))
    assert isinstance(exc_info.value, TimeoutError)
    assert now[0] <= 5.0


def test_poll_completed_without_audio():
    client = MagicMock()
    client.status.return_value = {"status": "COMPLETED", "output": {}}
    with pytest.raises(SynthesisError):
        asyncio.run(poll_job(client, "j1", sleep=SleepRecorder()))


def test_poll_completed_with_bad_base64():
    client = MagicMock()
    client.status.return_value = {"status": "COMPLETED", "output": {"audio_base64": "not base64!!"}}
    with pytest.raises(SynthesisError):
        asyncio.run(poll_job(client, "j1", sleep=SleepRecorder()))


# --- silence detection ---

def test_silent_window_ratio():
    assert silent_window_ratio(make_tone(1.0), 50, 300) == 0.0
    assert silent_window_ratio(make_silence(1.0), 50, 300) == 1.0
    half, _ = wav.concatenate([make_tone(0.5), make_silence(0.5)])
    assert silent_window_ratio(half, 50, 300) == pytest.approx(0.5)


def test_silent_window_ratio_stereo():
    assert silent_window_ratio(make_tone(0.5, channels=2), 50, 300) == 0.0


# --- Synthesizer ---

def test_synthesize_retries_silent_result():
    """A mostly silent result counts as a failed attempt."""
    tone = make_tone(0.5)
    client = FakeWorkerClient(lambda text, attempt: completed(make_silence(0.5) if attempt == 0 else tone))
    sleep = SleepRecorder()
    synth = Synthesizer(client, Settings(), sleep=sleep)

    assert asyncio.run(synth.synthesize("Hello there.")) == tone
    assert sleep.delays == [1.0]
    assert len(client.submitted) == 2


def test_synthesize_accepts_silence_on_final_attempt():
    silence = make_silence(0.5)
    client = FakeWorkerClient(lambda text, attempt: completed(silence))
    sleep = SleepRecorder()
    synth = Synthesizer(client, Settings(), sleep=sleep)

    assert asyncio.run(synth.synthesize("Hello there.")) == silence
    assert sleep.delays == [1.0, 2.0]


def test_synthesize_silence_threshold_is_configurable():
    quiet = make_tone(0.5, amplitude=0.005)
    client = FakeWorkerClient(lambda text, attempt: completed(quiet))
    sleep = SleepRecorder()
    synth = Synthesizer(client, Settings(silence_rms_threshold=10), sleep=sleep)

    asyncio.run(synth.synthesize("Hello there."))
    assert sleep.delays == []


def test_synthesize_passes_reference():
    client = FakeWorkerClient()
    asyncio.run(Synthesizer(client, sleep=SleepRecorder()).synthesize("Hello there.", "UklGRg=="))
    assert client.references == ["UklGRg=="]


def test_synthesize_raises_after_retries():
    client = FakeWorkerClient(lambda text, attempt: {"status": "FAILED"})
    sleep = SleepRecorder()
    with pytest.raises(SynthesisError):
        asyncio.run(Synthesizer(client, sleep=sleep).synthesize("Hello there."))
    assert len(client.submitted) == 3
    assert sleep.delays == [1.0, 2.0]


# --- synthesize_segment ---

def test_segment_chunk_fails_twice_then_succeeds():
    """Chunk 3 of 5 fails twice; all five chunks still land in order."""

    def respond(text, attempt):
        name = _name_of(text)
        if name == "charlie" and attempt < 2:
            return {"status": "FAILED"}
        return completed(_audio_for(name))

    client = FakeWorkerClient(respond)
    sleep = SleepRecorder()
    synth = Synthesizer(client, Settings(), sleep=sleep)
    segment = Segment(1, " ".join(_chunk_text(n) for n in NAMES))
    progress = []

    audio, seconds = asyncio.run(
        synthesize_segment(synth, segment, on_chunk=lambda done, total: progress.append((done, total)))
    )

    assert sleep.delays == [1.0, 2.0]
    assert [_name_of(t) for t in client.submitted] == ["alpha", "bravo", "charlie", "charlie", "charlie", "delta", "echo"]
    assert wav.pcm(audio) == b"".join(wav.pcm(_audio_for(n)) for n in NAMES)
    assert seconds == pytest.approx(1.5)
    assert progress == [(1, 5), (2, 5), (3, 5), (4, 5), (5, 5)]


def test_segment_drops_exhausted_chunk():
    def respond(text, attempt):
        name = _name_of(text)
        return {"status": "FAILED"} if name == "bravo" else completed(_audio_for(name))

    synth = Synthesizer(FakeWorkerClient(respond), sleep=SleepRecorder())
    segment = Segment(2, " ".join(_chunk_text(n) for n in NAMES[:3]))

    audio, _ = asyncio.run(synthesize_segment(synth, segment))
    assert wav.pcm(audio) == wav.pcm(_audio_for("alpha")) + wav.pcm(_audio_for("charlie"))


def test_segment_all_chunks_fail():
    synth = Synthesizer(FakeWorkerClient(lambda text, attempt: {"status": "FAILED"}), sleep=SleepRecorder())
    with pytest.raises(SynthesisError):
        asyncio.run(synthesize_segment(synth, Segment(4, _chunk_text("delta"))))


def test_segment_without_speakable_text():
    synth = Synthesizer(FakeWorkerClient(), sleep=SleepRecorder())
    with pytest.raises(SynthesisError):
        asyncio.run(synthesize_segment(synth, Segment(1, "... !!")))


def test_completed_output_decodes_base64():
    audio = make_tone(0.1)
    client = MagicMock()
    client.status.return_value = {
        "status": "COMPLETED",
        "output": {"audio_base64": base64.b64encode(audio).decode(), "sample_rate": 8000},
    }
    job = asyncio.run(poll_job(client, "j9", sleep=SleepRecorder()))
    assert job.sample_rate == 8000
    assert job.audio == audio

"""Tests for the command-line interface."""

from unittest.mock import patch

import pytest

from conftest import FakeWorkerClient, SleepRecorder, make_tone
from voiceover_producer import wav
from voiceover_producer.cli import main
from voiceover_producer.pipeline import VoiceoverPipeline
from voiceover_producer.tts import Synthesizer

SCRIPT = "The harbor froze in 1709. Ships stayed in port all winter. Trade did not recover for years."


def _fake_pipeline(respond=None):
    """Build pipelines around a fake worker, keeping the storage the CLI chose."""
    def from_settings(settings, storage=None, jobs=None):
        client = FakeWorkerClient(respond)
        return VoiceoverPipeline(settings, Synthesizer(client, settings, sleep=SleepRecorder()), storage, jobs=jobs)
    return from_settings


@pytest.fixture
def env(monkeypatch):
    monkeypatch.setenv("RUNPOD_API_KEY", "test-key")
    monkeypatch.delenv("SUPABASE_URL", raising=False)
    monkeypatch.delenv("SUPABASE_SERVICE_ROLE_KEY", raising=False)
    monkeypatch.delenv("TRANSCRIPTION_API_KEY", raising=False)
    monkeypatch.delenv("GROQ_API_KEY", raising=False)


def _script_file(tmp_path, text=SCRIPT):
    path = tmp_path / "script.txt"
    path.write_text(text)
    return str(path)


def test_no_args_shows_help(capsys):
    """No subcommand prints help text."""
    with patch("sys.argv", ["voiceover-producer"]):
        main()
    assert "usage" in capsys.readouterr().out.lower()


def test_version(capsys):
    with pytest.raises(SystemExit) as exc_info:
        with patch("sys.argv", ["voiceover-producer", "--version"]):
            main()
    assert exc_info.value.code == 0
    assert "0.1.0" in capsys.readouterr().out


# --- generate ---

def test_generate_writes_voiceover(tmp_path, env, capsys):
    out = tmp_path / "out"
    argv = ["voiceover-producer", "generate", _script_file(tmp_path), "--group", "harbor",
            "--output-dir", str(out), "--segments", "3"]
    with patch.object(VoiceoverPipeline, "from_settings", side_effect=_fake_pipeline()):
        with patch("sys.argv", argv):
            main()

    combined = out / "harbor" / "voiceover.wav"
    assert wav.duration(combined.read_bytes()) == pytest.approx(0.6)
    assert (out / "harbor" / "segment-3.wav").exists()
    printed = capsys.readouterr().out
    assert "Done:" in printed
    assert "%]" in printed


def test_generate_missing_file(tmp_path, env):
    with pytest.raises(SystemExit):
        with patch("sys.argv", ["voiceover-producer", "generate", str(tmp_path / "nope.txt")]):
            main()


def test_generate_empty_file(tmp_path, env):
    with pytest.raises(SystemExit):
        with patch("sys.argv", ["voiceover-producer", "generate", _script_file(tmp_path, "  \n")]):
            main()


def test_generate_requires_api_key(tmp_path, monkeypatch, capsys):
    monkeypatch.delenv("RUNPOD_API_KEY", raising=False)
    with pytest.raises(SystemExit):
        with patch("sys.argv", ["voiceover-producer", "generate", _script_file(tmp_path)]):
            main()
    assert "RUNPOD_API_KEY" in capsys.readouterr().err


def test_generate_failure_exits_nonzero(tmp_path, env, capsys):
    argv = ["voiceover-producer", "generate", _script_file(tmp_path), "--output-dir", str(tmp_path)]
    with patch.object(VoiceoverPipeline, "from_settings",
                      side_effect=_fake_pipeline(lambda text, attempt: {"status": "FAILED"})):
        with pytest.raises(SystemExit) as exc_info:
            with patch("sys.argv", argv):
                main()
    assert exc_info.value.code == 1
    assert "All segments failed" in capsys.readouterr().err


# --- regenerate / recombine ---

def test_regenerate_requires_text(tmp_path, env):
    with pytest.raises(SystemExit):
        with patch("sys.argv", ["voiceover-producer", "regenerate", "harbor", "2"]):
            main()


def test_regenerate_writes_segment(tmp_path, env, capsys):
    argv = ["voiceover-producer", "regenerate", "harbor", "2", "--text", "The ice broke in March.",
            "--output-dir", str(tmp_path)]
    with patch.object(VoiceoverPipeline, "from_settings", side_effect=_fake_pipeline()):
        with patch("sys.argv", argv):
            main()
    assert (tmp_path / "harbor" / "segment-2.wav").exists()
    assert "Updated segment 2" in capsys.readouterr().out


def test_recombine_discovers_segments(tmp_path, env):
    group = tmp_path / "harbor"
    group.mkdir()
    (group / "segment-2.wav").write_bytes(make_tone(0.3))
    (group / "segment-1.wav").write_bytes(make_tone(0.1))
    (group / "notes.txt").write_text("ignore me")

    argv = ["voiceover-producer", "recombine", "harbor", "--output-dir", str(tmp_path)]
    with patch.object(VoiceoverPipeline, "from_settings", side_effect=_fake_pipeline()):
        with patch("sys.argv", argv):
            main()

    combined = (group / "voiceover.wav").read_bytes()
    assert wav.pcm(combined) == wav.pcm(make_tone(0.1)) + wav.pcm(make_tone(0.3))


def test_recombine_unknown_group(tmp_path, env):
    argv = ["voiceover-producer", "recombine", "missing", "--output-dir", str(tmp_path)]
    with patch.object(VoiceoverPipeline, "from_settings", side_effect=_fake_pipeline()):
        with pytest.raises(SystemExit):
            with patch("sys.argv", argv):
                main()


# --- serve ---

@patch("uvicorn.run")
def test_serve_runs_uvicorn(mock_run, env):
    with patch.object(VoiceoverPipeline, "from_settings", side_effect=_fake_pipeline()):
        with patch("sys.argv", ["voiceover-producer", "serve", "--port", "9001"]):
            main()
    assert mock_run.call_args.kwargs["port"] == 9001
    assert mock_run.call_args.kwargs["host"] == "0.0.0.0"


@patch("uvicorn.run")
def test_serve_without_storage_exits(mock_run, env, capsys):
    with pytest.raises(SystemExit):
        with patch("sys.argv", ["voiceover-producer", "serve"]):
            main()
    mock_run.assert_not_called()
    assert "Storage is not configured" in capsys.readouterr().err

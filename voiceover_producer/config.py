"""Runtime settings read from the environment."""

import os
from dataclasses import dataclass, field, replace

from voiceover_producer.constants import (
    DEFAULT_ENDPOINT_ID,
    DEFAULT_SEGMENT_COUNT,
    HEARTBEAT_INTERVAL,
    MAX_CONCURRENT_SEGMENTS,
    RUNPOD_API_BASE,
    SILENCE_MAX_RATIO,
    SILENCE_RMS_THRESHOLD,
    SILENCE_WINDOW_MS,
    STORAGE_BUCKET,
    TRANSCRIPTION_MODEL,
    TRANSCRIPTION_URL,
    VOICE_SAMPLE_ALLOWED_HOSTS,
)


def _env(name: str, default: str = "") -> str:
    """Read an env var, treating empty/whitespace values as unset."""
    value = os.environ.get(name, "").strip()
    return value or default


def _env_int(name: str, default: int) -> int:
    value = _env(name)
    return int(value) if value else default


def _env_float(name: str, default: float) -> float:
    value = _env(name)
    return float(value) if value else default


def _env_bool(name: str, default: bool) -> bool:
    value = _env(name).lower()
    if not value:
        return default
    return value in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Settings:
    runpod_api_key: str = ""
    runpod_api_url: str = f"{RUNPOD_API_BASE}/{DEFAULT_ENDPOINT_ID}"
    supabase_url: str = ""
    supabase_key: str = ""
    storage_bucket: str = STORAGE_BUCKET
    transcription_api_key: str = ""
    transcription_url: str = TRANSCRIPTION_URL
    transcription_model: str = TRANSCRIPTION_MODEL
    segment_count: int = DEFAULT_SEGMENT_COUNT
    max_concurrent_segments: int = MAX_CONCURRENT_SEGMENTS
    silence_rms_threshold: float = SILENCE_RMS_THRESHOLD
    silence_window_ms: int = SILENCE_WINDOW_MS
    silence_max_ratio: float = SILENCE_MAX_RATIO
    remove_repetitions: bool = True
    voice_sample_allowed_hosts: tuple[str, ...] = field(default=VOICE_SAMPLE_ALLOWED_HOSTS)
    heartbeat_interval: float = HEARTBEAT_INTERVAL
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from environment variables, falling back to constants."""
        endpoint_id = _env("RUNPOD_ENDPOINT_ID", DEFAULT_ENDPOINT_ID)
        extra_hosts = tuple(
            h.strip().lower() for h in _env("VOICE_SAMPLE_ALLOWED_HOSTS").split(",") if h.strip()
        )
        return cls(
            runpod_api_key=_env("RUNPOD_API_KEY"),
            runpod_api_url=_env("RUNPOD_API_URL", f"{RUNPOD_API_BASE}/{endpoint_id}"),
            supabase_url=_env("SUPABASE_URL").rstrip("/"),
            supabase_key=_env("SUPABASE_SERVICE_ROLE_KEY"),
            storage_bucket=_env("STORAGE_BUCKET", STORAGE_BUCKET),
            transcription_api_key=_env("TRANSCRIPTION_API_KEY", _env("GROQ_API_KEY")),
            transcription_url=_env("TRANSCRIPTION_URL", TRANSCRIPTION_URL),
            transcription_model=_env("TRANSCRIPTION_MODEL", TRANSCRIPTION_MODEL),
            segment_count=_env_int("SEGMENT_COUNT", DEFAULT_SEGMENT_COUNT),
            max_concurrent_segments=_env_int("MAX_CONCURRENT_SEGMENTS", MAX_CONCURRENT_SEGMENTS),
            silence_rms_threshold=_env_float("SILENCE_RMS_THRESHOLD", SILENCE_RMS_THRESHOLD),
            silence_window_ms=_env_int("SILENCE_WINDOW_MS", SILENCE_WINDOW_MS),
            silence_max_ratio=_env_float("SILENCE_MAX_RATIO", SILENCE_MAX_RATIO),
            remove_repetitions=_env_bool("REMOVE_REPETITIONS", True),
            voice_sample_allowed_hosts=VOICE_SAMPLE_ALLOWED_HOSTS + extra_hosts,
            heartbeat_interval=_env_float("HEARTBEAT_INTERVAL", HEARTBEAT_INTERVAL),
            log_level=_env("LOG_LEVEL", "INFO").upper(),
        )

    def with_overrides(self, **changes) -> "Settings":
        """Return a copy with the non-None ``changes`` applied."""
        return replace(self, **{k: v for k, v in changes.items() if v is not None})

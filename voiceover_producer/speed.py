"""Pitch-preserving playback speed adjustment."""

import logging

import numpy as np
import pedalboard
from pydub import AudioSegment

from voiceover_producer import wav
from voiceover_producer.constants import MAX_SPEED, MIN_SPEED

logger = logging.getLogger(__name__)


def _to_float_channels(audio: AudioSegment) -> np.ndarray:
    """pydub audio → float32 array shaped (channels, samples) in [-1, 1]."""
    samples = np.array(audio.get_array_of_samples(), dtype=np.float32)
    samples = samples.reshape((-1, audio.channels)).T
    return np.ascontiguousarray(samples / 32768.0)


def adjust_speed(data: bytes, factor: float, duration: float | None = None) -> tuple[bytes, float]:
    """Speed narration up or down without changing its pitch.

    Returns (wav_bytes, duration_seconds). A factor of exactly 1.0 hands back
    the same bytes object. Other factors are clamped to [MIN_SPEED, MAX_SPEED].
    """
    if factor == 1.0:
        return data, duration if duration is not None else wav.duration(data)

    clamped = min(max(factor, MIN_SPEED), MAX_SPEED)
    if clamped != factor:
        logger.warning("Speed %.2f out of range, using %.2f", factor, clamped)

    info = wav.parse(data)
    original = duration if duration is not None else info.duration
    payload = data[info.data_start:info.data_end]
    payload = payload[:len(payload) - len(payload) % info.block_align]

    audio = AudioSegment(
        data=payload,
        sample_width=info.block_align // info.channels,
        frame_rate=info.sample_rate,
        channels=info.channels,
    ).set_sample_width(2)

    stretched = pedalboard.time_stretch(
        _to_float_channels(audio), float(audio.frame_rate), stretch_factor=clamped,
    )

    # Back to interleaved int16
    processed = np.clip(stretched * 32768.0, -32768, 32767).astype(np.int16)
    processed = processed.T.flatten()

    logger.info("Adjusted speed x%.2f: %.1fs -> %.1fs", clamped, original, original / clamped)
    out = wav.build(wav.pcm16_info(audio.frame_rate, audio.channels), processed.tobytes())
    return out, original / clamped

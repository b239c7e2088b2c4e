"""Byte-level WAV parsing, concatenation, splitting and trimming.

Containers are treated as RIFF headers plus an opaque PCM payload. Nothing in
here decodes samples except ``trim_ranges``, which hands the payload to
ffmpeg's filter graph.
"""

import logging
import struct
import subprocess
from typing import Awaitable, Callable, Sequence

from pydub.utils import get_encoder_name

from voiceover_producer.errors import FormatError
from voiceover_producer.models import WavInfo

logger = logging.getLogger(__name__)

RIFF_HEADER_SIZE = 12
CANONICAL_HEADER_SIZE = 44
UNKNOWN_SIZE = 0xFFFFFFFF     # streamed writers leave this in size fields

_FMT = struct.Struct("<HHIIHH")

_CODECS = {8: "pcm_u8", 16: "pcm_s16le", 24: "pcm_s24le", 32: "pcm_s32le"}
_FLOAT_CODECS = {32: "pcm_f32le", 64: "pcm_f64le"}


def parse(data: bytes) -> WavInfo:
    """Locate the fmt and data sub-chunks of a WAV container.

    Raises FormatError for anything that is not a usable RIFF/WAVE buffer.
    """
    if len(data) < RIFF_HEADER_SIZE or data[:4] != b"RIFF" or data[8:12] != b"WAVE":
        raise FormatError("Not a RIFF/WAVE container")

    fmt_pos = data.find(b"fmt ", RIFF_HEADER_SIZE)
    if fmt_pos < 0:
        raise FormatError("WAV fmt chunk missing")
    fmt_size = int.from_bytes(data[fmt_pos + 4:fmt_pos + 8], "little")
    if fmt_size < _FMT.size or fmt_pos + 8 + _FMT.size > len(data):
        raise FormatError("WAV fmt chunk truncated")
    audio_format, channels, sample_rate, byte_rate, block_align, bits = _FMT.unpack_from(data, fmt_pos + 8)

    data_pos = data.find(b"data", fmt_pos + 8 + fmt_size)
    if data_pos < 0 or data_pos + 8 > len(data):
        raise FormatError("WAV data chunk missing")
    declared = int.from_bytes(data[data_pos + 4:data_pos + 8], "little")
    data_start = data_pos + 8

    if declared in (0, UNKNOWN_SIZE) or data_start + declared > len(data):
        data_end = len(data)
    else:
        data_end = data_start + declared

    if not byte_rate:
        byte_rate = sample_rate * channels * (bits // 8)
    if not block_align:
        block_align = channels * (bits // 8)
    if not byte_rate or not block_align:
        raise FormatError("WAV fmt chunk describes no audio")

    return WavInfo(
        audio_format=audio_format,
        channels=channels,
        sample_rate=sample_rate,
        byte_rate=byte_rate,
        block_align=block_align,
        bits_per_sample=bits,
        data_size_offset=data_pos + 4,
        data_start=data_start,
        data_end=data_end,
    )


def pcm(data: bytes) -> bytes:
    info = parse(data)
    return bytes(data[info.data_start:info.data_end])


def duration(data: bytes) -> float:
    """Playback length in seconds."""
    return parse(data).duration


def pcm16_info(sample_rate: int, channels: int = 1) -> WavInfo:
    """Format description for 16-bit signed PCM in a canonical header."""
    return WavInfo(
        audio_format=1,
        channels=channels,
        sample_rate=sample_rate,
        byte_rate=sample_rate * channels * 2,
        block_align=channels * 2,
        bits_per_sample=16,
        data_size_offset=CANONICAL_HEADER_SIZE - 4,
        data_start=CANONICAL_HEADER_SIZE,
        data_end=CANONICAL_HEADER_SIZE,
    )


def build(info: WavInfo, payload: bytes) -> bytes:
    """Wrap raw PCM in a canonical 44-byte header using ``info``'s format."""
    header = struct.pack(
        "<4sI4s4sIHHIIHH4sI",
        b"RIFF", CANONICAL_HEADER_SIZE - 8 + len(payload), b"WAVE",
        b"fmt ", 16,
        info.audio_format, info.channels, info.sample_rate,
        info.byte_rate, info.block_align, info.bits_per_sample,
        b"data", len(payload),
    )
    return header + bytes(payload)


def _patch_sizes(buf: bytearray, data_size_offset: int, data_length: int) -> None:
    struct.pack_into("<I", buf, 4, min(len(buf) - 8, UNKNOWN_SIZE))
    struct.pack_into("<I", buf, data_size_offset, min(data_length, UNKNOWN_SIZE))


def _check_compatible(first: WavInfo, other: WavInfo, position: int) -> None:
    if (first.sample_rate, first.channels, first.bits_per_sample) != (
        other.sample_rate, other.channels, other.bits_per_sample,
    ):
        logger.warning(
            "Container %d format %dHz/%dch/%dbit differs from %dHz/%dch/%dbit",
            position, other.sample_rate, other.channels, other.bits_per_sample,
            first.sample_rate, first.channels, first.bits_per_sample,
        )


def concatenate(containers: Sequence[bytes]) -> tuple[bytes, float]:
    """Join WAV containers into one, keeping the first header.

    Returns (wav_bytes, duration_seconds).
    """
    if not containers:
        raise FormatError("No audio to concatenate")

    infos = [parse(c) for c in containers]
    first = infos[0]
    for position, info in enumerate(infos[1:], start=2):
        _check_compatible(first, info, position)

    header_length = first.header_length
    total = sum(info.data_length for info in infos)
    out = bytearray(header_length + total)
    out[:header_length] = containers[0][:header_length]

    pos = header_length
    for container, info in zip(containers, infos):
        out[pos:pos + info.data_length] = memoryview(container)[info.data_start:info.data_end]
        pos += info.data_length

    _patch_sizes(out, first.data_size_offset, total)
    return bytes(out), total / first.byte_rate


async def concatenate_streaming(
    fetch: Callable[[str], Awaitable[bytes]],
    keys: Sequence[str],
    size_hints: Sequence[int] | None = None,
) -> tuple[bytes, float]:
    """Concatenate containers fetched one at a time.

    The output buffer is sized up front from ``size_hints`` (container sizes)
    so only one fetched container is held at once. Estimates are corrected
    after the last copy.
    """
    if not keys:
        raise FormatError("No audio to concatenate")

    out: bytearray | None = None
    first: WavInfo | None = None
    pos = 0

    for position, key in enumerate(keys, start=1):
        container = await fetch(key)
        info = parse(container)

        if out is None:
            first = info
            if size_hints:
                estimate = sum(max(hint - info.header_length, 0) for hint in size_hints)
            else:
                estimate = info.data_length
            out = bytearray(info.header_length + estimate)
            out[:info.header_length] = container[:info.header_length]
            pos = info.header_length
        else:
            _check_compatible(first, info, position)

        # Slice assignment grows the buffer when the estimate was short
        out[pos:pos + info.data_length] = memoryview(container)[info.data_start:info.data_end]
        pos += info.data_length
        logger.debug("Copied %s (%d bytes of PCM)", key, info.data_length)
        del container

    if len(out) != pos:
        logger.debug("Size estimate off by %d bytes, adjusting", len(out) - pos)
        del out[pos:]

    data_length = pos - first.header_length
    _patch_sizes(out, first.data_size_offset, data_length)
    return bytes(out), data_length / first.byte_rate


def split_pcm(data: bytes, max_bytes: int) -> list[tuple[float, bytes]]:
    """Cut a container into block-aligned containers no larger than ``max_bytes``.

    Returns (start_seconds, wav_bytes) pairs covering the audio contiguously.
    """
    if len(data) <= max_bytes:
        return [(0.0, data)]

    info = parse(data)
    room = max(max_bytes - CANONICAL_HEADER_SIZE, info.block_align)
    step = max(room - room % info.block_align, info.block_align)

    pieces = []
    for offset in range(info.data_start, info.data_end, step):
        payload = data[offset:min(offset + step, info.data_end)]
        start = (offset - info.data_start) / info.byte_rate
        pieces.append((start, build(info, payload)))
    return pieces


def _codec_for(info: WavInfo) -> str:
    codecs = _FLOAT_CODECS if info.audio_format == 3 else _CODECS
    codec = codecs.get(info.bits_per_sample)
    if codec is None:
        raise FormatError(f"Unsupported sample format ({info.bits_per_sample}-bit)")
    return codec


def trim_ranges(data: bytes, keep: Sequence[tuple[float, float]]) -> bytes:
    """Keep only the given [start, end) second ranges, in order.

    Runs ffmpeg with an atrim/asetpts/concat filter graph over pipes and
    re-wraps its output with a clean header.
    """
    info = parse(data)
    keep = [(start, end) for start, end in keep if end > start]
    if not keep:
        return build(info, b"")

    trims = [
        f"[0:a]atrim=start={start:.3f}:end={end:.3f},asetpts=PTS-STARTPTS[k{i}]"
        for i, (start, end) in enumerate(keep)
    ]
    inputs = "".join(f"[k{i}]" for i in range(len(keep)))
    graph = ";".join(trims) + f";{inputs}concat=n={len(keep)}:v=0:a=1[out]"

    cmd = [
        get_encoder_name(), "-hide_banner", "-loglevel", "error",
        "-f", "wav", "-i", "pipe:0",
        "-filter_complex", graph,
        "-map", "[out]",
        "-c:a", _codec_for(info),
        "-map_metadata", "-1", "-fflags", "+bitexact",
        "-f", "wav", "pipe:1",
    ]
    source = build(info, data[info.data_start:info.data_end])
    try:
        proc = subprocess.run(cmd, input=source, capture_output=True, check=True)
    except subprocess.CalledProcessError as exc:
        stderr = exc.stderr.decode(errors="replace").strip()
        raise FormatError(f"ffmpeg trim failed: {stderr[:200]}") from exc
    except OSError as exc:
        raise FormatError("ffmpeg is not available") from exc

    trimmed = parse(proc.stdout)
    return build(trimmed, proc.stdout[trimmed.data_start:trimmed.data_end])

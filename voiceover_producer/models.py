"""Data models for voice-over production."""

from dataclasses import dataclass, field


@dataclass
class Segment:
    index: int         # 1-based position in the script
    text: str


@dataclass
class SegmentResult:
    index: int
    text: str
    status: str = "complete"   # "complete" or "failed"
    audio_url: str = ""
    duration: float = 0.0      # seconds, one decimal
    size: int = 0              # bytes of the persisted WAV
    error: str = ""

    @property
    def ok(self) -> bool:
        return self.status == "complete"

    def to_dict(self) -> dict:
        data = {
            "index": self.index,
            "audioUrl": self.audio_url,
            "duration": self.duration,
            "size": self.size,
            "text": self.text,
            "status": self.status,
        }
        if self.error:
            data["error"] = self.error
        return data


@dataclass
class SynthesisJob:
    job_id: str
    status: str = "queued"     # queued, running, completed, failed
    audio: bytes = b""
    sample_rate: int = 0


@dataclass
class WavInfo:
    """Header metadata and payload location of one WAV container."""

    audio_format: int
    channels: int
    sample_rate: int
    byte_rate: int
    block_align: int
    bits_per_sample: int
    data_size_offset: int      # where the data sub-chunk's size field lives
    data_start: int            # first payload byte == header length
    data_end: int

    @property
    def header_length(self) -> int:
        return self.data_start

    @property
    def data_length(self) -> int:
        return self.data_end - self.data_start

    @property
    def duration(self) -> float:
        return self.data_length / self.byte_rate if self.byte_rate else 0.0


@dataclass
class TranscriptWord:
    word: str
    start: float
    end: float


@dataclass
class TranscriptSegment:
    text: str
    start: float
    end: float
    words: list[TranscriptWord] = field(default_factory=list)


@dataclass
class TimedSentence:
    text: str
    start: float
    end: float


@dataclass
class RepetitionRange:
    start: float
    end: float
    text: str

    def to_dict(self) -> dict:
        return {"start": round(self.start, 2), "end": round(self.end, 2), "text": self.text}


@dataclass
class RepetitionReport:
    audio: bytes
    ranges: list[RepetitionRange]
    duration_before: float
    duration_after: float
    skipped: bool = False      # transcription unavailable, audio untouched


@dataclass
class ProgressEvent:
    type: str                  # "progress", "complete", "error" or "heartbeat"
    percent: int = 0
    message: str = ""
    result: dict | None = None
    error: str = ""

    def to_dict(self) -> dict:
        if self.type == "progress":
            return {"type": "progress", "progress": self.percent, "message": self.message}
        if self.type == "complete":
            return {"type": "complete", **(self.result or {})}
        if self.type == "error":
            return {"type": "error", "error": self.error}
        return {"type": "heartbeat"}


@dataclass
class VoiceoverRequest:
    script: str
    reference_voice_url: str | None = None
    asset_group_id: str | None = None
    speed: float = 1.0


@dataclass
class VoiceoverResult:
    asset_group_id: str
    audio_url: str
    duration: float
    size: int
    word_count: int
    segments: list[SegmentResult] = field(default_factory=list)
    repetitions: list[RepetitionRange] = field(default_factory=list)

    @property
    def failed_segments(self) -> list[int]:
        return [s.index for s in self.segments if not s.ok]

    @property
    def total_duration(self) -> float:
        return sum(s.duration for s in self.segments if s.ok)

    def to_dict(self) -> dict:
        return {
            "success": True,
            "assetGroupId": self.asset_group_id,
            "audioUrl": self.audio_url,
            "duration": round(self.duration),
            "size": self.size,
            "segments": [s.to_dict() for s in self.segments],
            "failedSegments": self.failed_segments,
            "totalDuration": round(self.total_duration),
            "wordCount": self.word_count,
            "repetitionsRemoved": [r.to_dict() for r in self.repetitions],
        }

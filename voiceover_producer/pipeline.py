"""Voice-over pipeline: script → segments → parallel synthesis → one WAV."""

import asyncio
import logging
import uuid
from typing import Callable

from voiceover_producer import wav
from voiceover_producer.config import Settings
from voiceover_producer.constants import (
    COMBINED_PATH,
    PROGRESS_ASSEMBLY,
    PROGRESS_REPETITION,
    PROGRESS_SPEED,
    PROGRESS_SYNTHESIS_END,
    PROGRESS_SYNTHESIS_START,
    PROGRESS_UPLOAD,
    SEGMENT_PATH,
)
from voiceover_producer.errors import FormatError, SynthesisError, ValidationError, VoiceoverError, user_message
from voiceover_producer.jobs import JobStore
from voiceover_producer.models import RepetitionRange, Segment, SegmentResult, VoiceoverRequest, VoiceoverResult
from voiceover_producer.progress import ProgressChannel
from voiceover_producer.repetition import RepetitionRemover
from voiceover_producer.scheduler import ProgressTracker, run_rolling_window
from voiceover_producer.segmenter import split_into_chunks, split_into_segments, word_count
from voiceover_producer.speed import adjust_speed
from voiceover_producer.storage import Storage, SupabaseStorage
from voiceover_producer.text import prepare_script, validate
from voiceover_producer.transcribe import Transcriber
from voiceover_producer.tts import Synthesizer, WorkerClient, synthesize_segment
from voiceover_producer.voice_sample import fetch_voice_sample

logger = logging.getLogger(__name__)

Reporter = Callable[[float, str], None]


def segment_path(group: str, index: int) -> str:
    return SEGMENT_PATH.format(group=group, index=index)


def combined_path(group: str) -> str:
    return COMBINED_PATH.format(group=group)


def _has_speakable_text(segments: list[Segment]) -> bool:
    return any(validate(chunk) for seg in segments for chunk in split_into_chunks(seg.text))


class VoiceoverPipeline:
    """Coordinates one or more voice-over requests against shared collaborators."""

    def __init__(
        self,
        settings: Settings,
        synthesizer: Synthesizer,
        storage: Storage,
        remover: RepetitionRemover | None = None,
        jobs: JobStore | None = None,
        fetch_sample: Callable[..., str] = fetch_voice_sample,
    ):
        self.settings = settings
        self.synthesizer = synthesizer
        self.storage = storage
        self.remover = remover or RepetitionRemover(None)
        self.jobs = jobs or JobStore()
        self.fetch_sample = fetch_sample

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        storage: Storage | None = None,
        jobs: JobStore | None = None,
    ) -> "VoiceoverPipeline":
        """Wire real HTTP clients from ``settings``."""
        client = WorkerClient(settings.runpod_api_url, settings.runpod_api_key)
        transcriber = None
        if settings.remove_repetitions and settings.transcription_api_key:
            transcriber = Transcriber(
                settings.transcription_api_key,
                url=settings.transcription_url,
                model=settings.transcription_model,
            )
        if storage is None:
            storage = SupabaseStorage(settings.supabase_url, settings.supabase_key, settings.storage_bucket)
        return cls(
            settings,
            Synthesizer(client, settings),
            storage,
            remover=RepetitionRemover(transcriber),
            jobs=jobs,
        )

    def _reporter(self, channel: ProgressChannel | None, job_id: str | None) -> Reporter:
        def report(percent: float, message: str) -> None:
            logger.debug("[%3d%%] %s", percent, message)
            if channel is not None:
                channel.progress(percent, message)
            if job_id is not None:
                self.jobs.update(job_id, progress=int(percent), message=message)
        return report

    def _fail(self, exc: BaseException, channel: ProgressChannel | None, job_id: str | None) -> None:
        message = user_message(exc)
        if isinstance(exc, VoiceoverError):
            logger.error("Voice-over failed: %s", exc)
        else:
            logger.exception("Voice-over failed unexpectedly")
        if channel is not None:
            channel.error(message)
        if job_id is not None:
            self.jobs.update(job_id, status="failed", error=message)

    def _succeed(self, result: dict, channel: ProgressChannel | None, job_id: str | None) -> None:
        if channel is not None:
            channel.complete(result)
        if job_id is not None:
            self.jobs.update(job_id, status="complete", progress=100, result=result)

    async def _reference(self, url: str | None) -> str | None:
        if not url:
            return None
        return await asyncio.to_thread(self.fetch_sample, url, self.settings.voice_sample_allowed_hosts)

    async def _synthesize_and_store(
        self,
        group: str,
        segment: Segment,
        reference: str | None,
        on_chunk: Callable[[int, int], None] | None = None,
    ) -> SegmentResult:
        audio, seconds = await synthesize_segment(self.synthesizer, segment, reference, on_chunk)
        url = await asyncio.to_thread(self.storage.upload, segment_path(group, segment.index), audio)
        return SegmentResult(
            segment.index, segment.text, audio_url=url, duration=round(seconds, 1), size=len(audio),
        )

    async def _synthesize_all(
        self,
        group: str,
        segments: list[Segment],
        reference: str | None,
        report: Reporter,
    ) -> list[SegmentResult]:
        tracker = ProgressTracker(len(segments), report, PROGRESS_SYNTHESIS_START, PROGRESS_SYNTHESIS_END)

        async def worker(segment: Segment) -> SegmentResult:
            def on_chunk(done: int, total: int) -> None:
                tracker.update(segment.index, done / total, f"Segment {segment.index}: chunk {done}/{total}")

            try:
                result = await self._synthesize_and_store(group, segment, reference, on_chunk)
            except (SynthesisError, FormatError, ValidationError) as exc:
                logger.warning("Segment %d failed: %s", segment.index, exc)
                result = SegmentResult(segment.index, segment.text, status="failed", error=str(exc))
            tracker.finish(segment.index, f"Segment {segment.index} {'done' if result.ok else 'failed'}")
            return result

        results = await run_rolling_window(segments, worker, self.settings.max_concurrent_segments)
        return sorted(results, key=lambda r: r.index)

    async def _combine(self, group: str, segments: list[SegmentResult]) -> tuple[bytes, float]:
        """Stream stored segments back in index order into one container."""
        keys = [segment_path(group, s.index) for s in segments]
        durations = {}

        async def fetch(key: str) -> bytes:
            data = await asyncio.to_thread(self.storage.download, key)
            durations[key] = wav.duration(data)
            return data

        audio, seconds = await wav.concatenate_streaming(fetch, keys, [s.size for s in segments])
        for key, segment in zip(keys, segments):
            if not segment.duration:
                segment.duration = round(durations.get(key, 0.0), 1)
        return audio, seconds

    async def _finish(
        self,
        group: str,
        audio: bytes,
        seconds: float,
        speed: float,
        report: Reporter,
    ) -> tuple[str, bytes, float, list[RepetitionRange]]:
        """Repetition pass, speed change and upload of the combined file."""
        report(PROGRESS_REPETITION, "Checking for repeated speech")
        cleaned = await self.remover.process(audio)
        audio, repetitions = cleaned.audio, cleaned.ranges
        if repetitions:
            seconds = cleaned.duration_after

        if speed != 1.0:
            report(PROGRESS_SPEED, f"Adjusting speed to {speed}x")
            audio, seconds = await asyncio.to_thread(adjust_speed, audio, speed, seconds)

        report(PROGRESS_UPLOAD, "Uploading voice-over")
        url = await asyncio.to_thread(self.storage.upload, combined_path(group), audio)
        return url, audio, seconds, repetitions

    async def _generate(self, request: VoiceoverRequest, report: Reporter) -> VoiceoverResult:
        group = request.asset_group_id or uuid.uuid4().hex
        script = prepare_script(request.script)
        if not script:
            raise ValidationError("Script is empty")

        segments = [
            Segment(i, text)
            for i, text in enumerate(split_into_segments(script, self.settings.segment_count), start=1)
        ]
        if not _has_speakable_text(segments):
            raise ValidationError("Script has no speakable text")
        if not self.synthesizer.client.api_key:
            raise SynthesisError("Speech synthesis is not configured")

        words = word_count(script)
        logger.info("Generating voice-over %s: %d words in %d segments", group, words, len(segments))

        report(5, "Loading voice sample" if request.reference_voice_url else "Preparing script")
        reference = await self._reference(request.reference_voice_url)

        report(PROGRESS_SYNTHESIS_START, f"Synthesizing {len(segments)} segments")
        results = await self._synthesize_all(group, segments, reference, report)

        succeeded = [r for r in results if r.ok]
        if not succeeded:
            raise SynthesisError("All segments failed")
        if len(succeeded) < len(results):
            logger.warning(
                "Continuing without segment(s) %s", ", ".join(str(r.index) for r in results if not r.ok),
            )

        report(PROGRESS_ASSEMBLY, f"Combining {len(succeeded)} segments")
        audio, seconds = await self._combine(group, succeeded)

        url, audio, seconds, repetitions = await self._finish(group, audio, seconds, request.speed, report)
        logger.info("Voice-over %s ready: %.1fs, %d bytes", group, seconds, len(audio))
        return VoiceoverResult(group, url, seconds, len(audio), words, results, repetitions)

    async def generate(
        self,
        request: VoiceoverRequest,
        channel: ProgressChannel | None = None,
        job_id: str | None = None,
    ) -> VoiceoverResult:
        """Run the full pipeline, publishing progress to ``channel`` and the job store.

        Partial success counts as success; failed segment indices are listed
        in the result. Raises a VoiceoverError when nothing usable was made.
        """
        try:
            result = await self._generate(request, self._reporter(channel, job_id))
        except Exception as exc:
            self._fail(exc, channel, job_id)
            raise
        self._succeed(result.to_dict(), channel, job_id)
        return result

    async def regenerate_segment(
        self,
        text: str,
        index: int,
        asset_group_id: str,
        reference_voice_url: str | None = None,
    ) -> SegmentResult:
        """Re-synthesize one stored segment in place."""
        if not 1 <= index <= self.settings.segment_count:
            raise ValidationError(f"Segment index must be between 1 and {self.settings.segment_count}")
        if not asset_group_id:
            raise ValidationError("Asset group id is required")

        segment = Segment(index, prepare_script(text))
        if not _has_speakable_text([segment]):
            raise ValidationError("Segment has no speakable text")

        reference = await self._reference(reference_voice_url)
        logger.info("Regenerating segment %d of %s", index, asset_group_id)
        return await self._synthesize_and_store(asset_group_id, segment, reference)

    async def recombine(
        self,
        asset_group_id: str,
        segments: list[tuple[int, int]],
        speed: float = 1.0,
        channel: ProgressChannel | None = None,
    ) -> VoiceoverResult:
        """Rebuild the combined file from stored segments without re-synthesis.

        ``segments`` holds (index, stored_size) pairs; a size of 0 means unknown.
        """
        report = self._reporter(channel, None)
        try:
            if not asset_group_id:
                raise ValidationError("Asset group id is required")
            if not segments:
                raise ValidationError("No segments to combine")
            ordered = [
                SegmentResult(index, "", audio_url=self.storage.public_url(segment_path(asset_group_id, index)), size=size)
                for index, size in sorted(segments)
            ]
            report(PROGRESS_ASSEMBLY, f"Combining {len(ordered)} segments")
            audio, seconds = await self._combine(asset_group_id, ordered)
            url, audio, seconds, repetitions = await self._finish(asset_group_id, audio, seconds, speed, report)
        except Exception as exc:
            self._fail(exc, channel, None)
            raise

        result = VoiceoverResult(asset_group_id, url, seconds, len(audio), 0, ordered, repetitions)
        self._succeed(result.to_dict(), channel, None)
        return result

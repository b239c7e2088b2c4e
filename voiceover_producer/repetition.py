"""Find and cut looping or repeated speech from synthesized narration.

Workers under load sometimes say a sentence twice or stutter a phrase. The
audio is transcribed back to timestamped text, near-duplicate spans are
marked and the marked time ranges are trimmed out with ffmpeg.
"""

import asyncio
import logging
import re

from voiceover_producer import wav
from voiceover_producer.constants import (
    CONTAINMENT_THRESHOLD,
    JACCARD_THRESHOLD,
    MERGE_GAP_SECONDS,
    MIN_SENTENCE_WORDS,
    PHRASE_MAX_WORDS,
    PHRASE_MIN_WORDS,
    SENTENCE_LOOKAHEAD,
)
from voiceover_producer.errors import FormatError, TranscriptionError
from voiceover_producer.models import (
    RepetitionRange,
    RepetitionReport,
    TimedSentence,
    TranscriptSegment,
)
from voiceover_producer.segmenter import split_sentences
from voiceover_producer.transcribe import Transcriber

logger = logging.getLogger(__name__)

_WORD_RE = re.compile(r"[a-z0-9']+")
_SENTENCE_END_RE = re.compile(r"[.!?][\"')\]]*$")


def _norm_words(text: str) -> list[str]:
    return _WORD_RE.findall(text.lower())


def _sentences_from_words(segment: TranscriptSegment) -> list[TimedSentence]:
    sentences = []
    current = []
    for word in segment.words:
        current.append(word)
        if _SENTENCE_END_RE.search(word.word):
            sentences.append(current)
            current = []
    if current:
        sentences.append(current)
    return [
        TimedSentence(" ".join(w.word for w in group), group[0].start, group[-1].end)
        for group in sentences
    ]


def _sentences_by_interpolation(segment: TranscriptSegment) -> list[TimedSentence]:
    """Spread the segment's time over its sentences by character position."""
    text = segment.text
    total = len(text)
    span = segment.end - segment.start
    if not total:
        return []

    sentences = []
    cursor = 0
    for sentence in split_sentences(text):
        offset = text.find(sentence, cursor)
        if offset < 0:
            offset = cursor
        cursor = offset + len(sentence)
        sentences.append(TimedSentence(
            sentence,
            segment.start + span * offset / total,
            segment.start + span * min(cursor, total) / total,
        ))
    return sentences


def split_transcript_sentences(segments: list[TranscriptSegment]) -> list[TimedSentence]:
    """Sentence-level timings, from word timestamps when the service sent them."""
    sentences = []
    for segment in segments:
        if segment.words:
            sentences.extend(_sentences_from_words(segment))
        else:
            sentences.extend(_sentences_by_interpolation(segment))
    return sentences


def _is_duplicate(a: set[str], b: set[str]) -> bool:
    shared = len(a & b)
    if shared / len(a | b) >= JACCARD_THRESHOLD:
        return True
    # Catches a repeat with extra trailing words that keep Jaccard low
    return shared / min(len(a), len(b)) >= CONTAINMENT_THRESHOLD


def find_duplicate_sentences(
    sentences: list[TimedSentence],
    lookahead: int = SENTENCE_LOOKAHEAD,
) -> list[RepetitionRange]:
    """Mark sentences that repeat one of the few sentences before them."""
    word_sets = [set(_norm_words(s.text)) for s in sentences]
    marked: set[int] = set()

    for i, words in enumerate(word_sets):
        if i in marked or len(words) < MIN_SENTENCE_WORDS:
            continue
        for j in range(i + 1, min(i + 1 + lookahead, len(sentences))):
            if j in marked or len(word_sets[j]) < MIN_SENTENCE_WORDS:
                continue
            if _is_duplicate(words, word_sets[j]):
                logger.debug("Duplicate sentence at %.2fs: %s", sentences[j].start, sentences[j].text)
                marked.add(j)

    return [
        RepetitionRange(sentences[j].start, sentences[j].end, sentences[j].text)
        for j in sorted(marked)
    ]


def _word_times(segment: TranscriptSegment, words: list[str]) -> list[tuple[float, float]]:
    if segment.words and len(segment.words) == len(words):
        return [(w.start, w.end) for w in segment.words]
    step = (segment.end - segment.start) / len(words)
    return [(segment.start + step * i, segment.start + step * (i + 1)) for i in range(len(words))]


def find_phrase_loops(
    segments: list[TranscriptSegment],
    min_words: int = PHRASE_MIN_WORDS,
    max_words: int = PHRASE_MAX_WORDS,
) -> list[RepetitionRange]:
    """Mark the second copy of a phrase repeated back to back inside one segment."""
    ranges = []
    for segment in segments:
        if segment.words:
            raw = [w.word for w in segment.words]
            words = [" ".join(_norm_words(w)) for w in raw]
        else:
            raw = segment.text.split()
            words = [" ".join(_norm_words(w)) for w in raw]
        if len(words) < min_words * 2:
            continue

        times = _word_times(segment, words)
        covered: set[int] = set()
        for size in range(max_words, min_words - 1, -1):
            i = 0
            while i + 2 * size <= len(words):
                first = words[i:i + size]
                second = words[i + size:i + 2 * size]
                overlaps = any(k in covered for k in range(i, i + 2 * size))
                if first == second and all(first) and not overlaps:
                    covered.update(range(i + size, i + 2 * size))
                    ranges.append(RepetitionRange(
                        times[i + size][0],
                        times[i + 2 * size - 1][1],
                        " ".join(raw[i + size:i + 2 * size]),
                    ))
                    i += 2 * size
                else:
                    i += 1
    return ranges


def merge_ranges(ranges: list[RepetitionRange], gap: float = MERGE_GAP_SECONDS) -> list[RepetitionRange]:
    """Sort ranges and fuse any that overlap or sit within ``gap`` seconds."""
    merged: list[RepetitionRange] = []
    for r in sorted(ranges, key=lambda r: (r.start, r.end)):
        if merged and r.start <= merged[-1].end + gap:
            last = merged[-1]
            last.end = max(last.end, r.end)
            if r.text and r.text not in last.text:
                last.text = f"{last.text} {r.text}".strip()
        else:
            merged.append(RepetitionRange(r.start, r.end, r.text))
    return merged


def keep_ranges(ranges: list[RepetitionRange], total: float) -> list[tuple[float, float]]:
    """Complement of merged ``ranges`` within [0, total)."""
    keep = []
    cursor = 0.0
    for r in ranges:
        start = min(max(r.start, 0.0), total)
        if start > cursor:
            keep.append((cursor, start))
        cursor = max(cursor, min(r.end, total))
    if cursor < total:
        keep.append((cursor, total))
    return keep


class RepetitionRemover:
    """Optional quality pass. Any transcription problem leaves the audio untouched."""

    def __init__(self, transcriber: Transcriber | None):
        self.transcriber = transcriber

    async def process(self, audio: bytes) -> RepetitionReport:
        before = wav.duration(audio)
        if self.transcriber is None:
            logger.info("Repetition check skipped: transcription not configured")
            return RepetitionReport(audio, [], before, before, skipped=True)

        try:
            segments = await self.transcriber.transcribe(audio)
        except TranscriptionError as exc:
            logger.warning("Repetition check skipped: %s", exc)
            return RepetitionReport(audio, [], before, before, skipped=True)

        sentences = split_transcript_sentences(segments)
        ranges = merge_ranges(find_duplicate_sentences(sentences) + find_phrase_loops(segments))
        if not ranges:
            logger.info("No repetitions found")
            return RepetitionReport(audio, [], before, before)

        try:
            trimmed = await asyncio.to_thread(wav.trim_ranges, audio, keep_ranges(ranges, before))
        except FormatError as exc:
            logger.warning("Repetition removal failed, keeping original audio: %s", exc)
            return RepetitionReport(audio, [], before, before, skipped=True)

        after = wav.duration(trimmed)
        logger.info("Removed %d repeated span(s): %.1fs -> %.1fs", len(ranges), before, after)
        return RepetitionReport(trimmed, ranges, before, after)

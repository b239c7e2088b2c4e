"""Split a normalized script into parallel segments and worker-sized chunks."""

import math
import re

from voiceover_producer.constants import DEFAULT_SEGMENT_COUNT, MAX_CHUNK_LENGTH

_SENTENCE_RE = re.compile(r"(?<=[.!?])\s+")
_COMMA_RE = re.compile(r",\s*")


def split_sentences(text: str) -> list[str]:
    """Split text after sentence-ending punctuation. Empty pieces are dropped."""
    return [s for s in (part.strip() for part in _SENTENCE_RE.split(text.strip())) if s]


def word_count(text: str) -> int:
    return len(text.split())


def split_into_segments(text: str, count: int = DEFAULT_SEGMENT_COUNT) -> list[str]:
    """Partition text into at most ``count`` segments of similar word count.

    Sentences are never split across segments. A segment closes once it
    reaches ceil(total_words / count) words, provided another sentence is
    left to start the next one. Once the remaining sentences can only just
    fill the remaining slots the segment closes early, so short scripts yield one
    segment per sentence instead of starving the tail.
    """
    sentences = split_sentences(text)
    if not sentences or count < 1:
        return []

    total_words = sum(word_count(s) for s in sentences)
    target = max(1, math.ceil(total_words / count))

    segments: list[list[str]] = []
    current: list[str] = []
    current_words = 0

    for i, sentence in enumerate(sentences):
        current.append(sentence)
        current_words += word_count(sentence)

        sentences_left = len(sentences) - i - 1
        slots_left = count - len(segments) - 1   # slots after the current one
        if sentences_left == 0 or slots_left == 0:
            continue
        if current_words >= target or sentences_left <= slots_left:
            segments.append(current)
            current, current_words = [], 0

    if current:
        segments.append(current)

    # Merge any overflow into the last allowed segment
    while len(segments) > count:
        tail = segments.pop()
        segments[-1].extend(tail)

    return [" ".join(seg) for seg in segments]


def _split_long_part(part: str, max_length: int) -> list[str]:
    """Last resort: slice on raw character boundaries."""
    pieces = (part[i:i + max_length].strip() for i in range(0, len(part), max_length))
    return [p for p in pieces if p]


def _split_long_sentence(sentence: str, max_length: int) -> list[str]:
    """Split an over-long sentence on commas, then on characters."""
    chunks = []
    current = ""

    for part in _COMMA_RE.split(sentence):
        if len(part) > max_length:
            if current:
                chunks.append(current.strip())
                current = ""
            chunks.extend(_split_long_part(part, max_length))
        elif current and len(current) + 2 + len(part) > max_length:
            chunks.append(current.strip())
            current = part
        else:
            current = f"{current}, {part}" if current else part

    if current.strip():
        chunks.append(current.strip())
    return chunks


def split_into_chunks(text: str, max_length: int = MAX_CHUNK_LENGTH) -> list[str]:
    """Split text into chunks of at most ``max_length`` chars at sentence boundaries."""
    chunks = []
    current = ""

    for sentence in split_sentences(text):
        if len(sentence) > max_length:
            if current:
                chunks.append(current.strip())
                current = ""
            chunks.extend(_split_long_sentence(sentence, max_length))
        elif current and len(current) + 1 + len(sentence) > max_length:
            chunks.append(current.strip())
            current = sentence
        else:
            current = f"{current} {sentence}" if current else sentence

    if current.strip():
        chunks.append(current.strip())

    return [c for c in chunks if c]

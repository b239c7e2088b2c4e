"""Script cleanup, pronunciation normalization and chunk validation."""

import logging
import re
import unicodedata

import inflect

from voiceover_producer.constants import MAX_CHUNK_LENGTH, MAX_TEXT_LENGTH, MIN_TEXT_LENGTH
from voiceover_producer.segmenter import split_into_chunks, split_sentences

logger = logging.getLogger(__name__)

_inflect = inflect.engine()
_DIGIT_NAMES = dict(zip("0123456789", ["zero", "one", "two", "three", "four", "five", "six", "seven", "eight", "nine"]))

# Applied before non-ASCII stripping so the meaning survives
_PUNCTUATION_MAP = str.maketrans({
    "“": '"', "”": '"', "„": '"', "‟": '"', "″": '"',
    "‘": "'", "’": "'", "‚": "'", "‛": "'", "′": "'",
    "–": "-", "—": "-", "―": "-", "−": "-",
    "…": "...",
    " ": " ",
})

_NON_ASCII_RE = re.compile(r"[^\x00-\x7F]")
_ALNUM_RE = re.compile(r"[A-Za-z0-9]")
_WHITESPACE_RE = re.compile(r"\s+")

_AMOUNT = r"(?:\d{1,3}(?:,\d{3})+|\d+)(?:\.\d+)?"
_CURRENCY_RE = re.compile(rf"\$({_AMOUNT})")
_PERCENT_RE = re.compile(rf"\b({_AMOUNT})\s?%")
_ORDINAL_RE = re.compile(r"\b(\d+)(st|nd|rd|th)\b", re.IGNORECASE)
_DECADE_RE = re.compile(r"\b(\d{4})s\b")
_GROUPED_RE = re.compile(r"\b\d{1,3}(?:,\d{3})+(?:\.\d+)?\b")
_DECIMAL_RE = re.compile(r"\b\d+\.\d+\b")
_INTEGER_RE = re.compile(r"\b\d+\b")


def _words(number) -> str:
    """Spell out a number without grouping commas or "and".

    Runs too long for inflect's number names are read digit by digit.
    """
    try:
        return _inflect.number_to_words(str(number), comma="", andword="").replace(",", "")
    except inflect.NumOutOfRangeError:
        return " ".join(_DIGIT_NAMES.get(ch, "point") for ch in str(number) if ch.isdigit() or ch == ".")


def year_words(value: int) -> str:
    """Read a 4-digit number the way years are spoken.

    1347 → "thirteen forty-seven", 1905 → "nineteen oh five",
    1900 → "nineteen hundred", 2000 → "two thousand",
    2007 → "two thousand seven", 2024 → "twenty twenty-four".
    """
    century, rest = divmod(value, 100)
    if rest == 0:
        if century % 10 == 0:
            return _words(value)
        return f"{_words(century)} hundred"
    if rest < 10:
        if century % 10 == 0:
            return _words(value)
        return f"{_words(century)} oh {_words(rest)}"
    return f"{_words(century)} {_words(rest)}"


def _integer_replacer(match: re.Match) -> str:
    digits = match.group(0)
    if len(digits) == 4 and digits[0] != "0":
        return year_words(int(digits))
    return _words(digits.lstrip("0") or "0")


def _decade_replacer(match: re.Match) -> str:
    spoken = year_words(int(match.group(1))).split(" ")
    spoken[-1] = _inflect.plural_noun(spoken[-1])
    return " ".join(spoken)


def _currency_replacer(match: re.Match) -> str:
    dollars, _, cents = match.group(1).replace(",", "").partition(".")
    spoken = f"{_words(dollars)} {'dollar' if dollars == '1' else 'dollars'}"
    if cents.strip("0"):
        cents = cents[:2].ljust(2, "0")
        spoken += f" {_words(int(cents))} {'cent' if cents == '01' else 'cents'}"
    return spoken


def _ordinal_replacer(match: re.Match) -> str:
    return _inflect.ordinal(_words(match.group(1).lstrip("0") or "0"))


def spell_numbers(text: str) -> str:
    """Replace numerals with words. Output contains no standalone digit runs."""
    text = _CURRENCY_RE.sub(_currency_replacer, text)
    text = _PERCENT_RE.sub(lambda m: f"{_words(m.group(1).replace(',', ''))} percent", text)
    text = _ORDINAL_RE.sub(_ordinal_replacer, text)
    text = _DECADE_RE.sub(_decade_replacer, text)
    text = _GROUPED_RE.sub(lambda m: _words(m.group(0).replace(",", "")), text)
    text = _DECIMAL_RE.sub(lambda m: _words(m.group(0)), text)
    text = _INTEGER_RE.sub(_integer_replacer, text)
    return text


def normalize(text: str) -> str:
    """Make text safe for the synthesis worker. Pure, total and idempotent."""
    if not text:
        return ""
    text = unicodedata.normalize("NFKD", text)
    text = text.translate(_PUNCTUATION_MAP)
    text = spell_numbers(text)
    text = _NON_ASCII_RE.sub("", text)
    text = _WHITESPACE_RE.sub(" ", text)
    return text.strip()


def clean_markup(text: str) -> str:
    """Strip scene markers, bracketed notes and markdown from a script."""
    text = re.sub(r"\[SCENE \d+\]", "", text)
    text = re.sub(r"\[[^\]]+\]", "", text)
    text = re.sub(r"#{1,6}\s+", "", text)
    text = re.sub(r"\*{1,2}([^*]+)\*{1,2}", r"\1", text)
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()


def _sentence_key(sentence: str) -> str:
    return " ".join(re.findall(r"[a-z0-9']+", sentence.lower()))


def dedupe_sentences(text: str) -> str:
    """Drop sentences that repeat the sentence right before them."""
    kept = []
    previous_key = None
    for sentence in split_sentences(text):
        key = _sentence_key(sentence)
        if key and key == previous_key:
            logger.debug("Dropping duplicate sentence: %.60s", sentence)
            continue
        kept.append(sentence)
        previous_key = key
    return " ".join(kept)


def prepare_script(raw: str) -> str:
    """Clean, normalize and de-duplicate a raw script."""
    return dedupe_sentences(normalize(clean_markup(raw or "")))


def invalid_reason(chunk: str) -> str | None:
    """Return why the worker would choke on ``chunk``, or None if it is fine."""
    if not chunk:
        return "empty"
    stripped = chunk.strip()
    if len(stripped) < MIN_TEXT_LENGTH:
        return f"too short ({len(stripped)} chars)"
    if len(chunk) > MAX_TEXT_LENGTH:
        return f"too long ({len(chunk)} chars)"
    if _NON_ASCII_RE.search(chunk):
        return "contains non-ASCII"
    if not _ALNUM_RE.search(chunk):
        return "no alphanumeric characters"
    return None


def validate(chunk: str) -> bool:
    return invalid_reason(chunk) is None


def valid_chunks(text: str, max_length: int = MAX_CHUNK_LENGTH) -> list[str]:
    """Chunk text and drop chunks the worker cannot pronounce, logging why."""
    chunks = []
    for chunk in split_into_chunks(text, max_length):
        reason = invalid_reason(chunk)
        if reason:
            logger.warning("Skipping chunk (%s): %.50s", reason, chunk)
            continue
        chunks.append(chunk)
    return chunks

"""Exception taxonomy for the voice-over pipeline.

Every error carries a message that is safe to show to a caller: no stack
traces, job ids or storage keys.
"""


class VoiceoverError(Exception):
    """Base class for all pipeline failures."""

    user_message = "Audio generation failed"

    def __str__(self) -> str:
        return super().__str__() or self.user_message


class ValidationError(VoiceoverError):
    """Bad or empty input. Fails the request immediately, never retried."""

    user_message = "Invalid input"


class VoiceSampleError(ValidationError):
    """The reference voice sample URL was rejected or could not be fetched."""

    user_message = "Voice sample could not be used"


class SynthesisError(VoiceoverError):
    """The remote worker rejected, failed or garbled a job."""

    user_message = "Speech synthesis failed"


class SynthesisTimeoutError(SynthesisError, TimeoutError):
    """A job did not finish within its wall-clock budget."""

    user_message = "Speech synthesis timed out"


class AnomalousAudioError(SynthesisError):
    """A job completed but the audio is mostly silence."""

    user_message = "Speech synthesis returned silent audio"


class FormatError(VoiceoverError):
    """Malformed WAV container. Retrying will not fix it."""

    user_message = "Audio data was malformed"


class StorageError(VoiceoverError):
    """Upload or download against object storage failed."""

    user_message = "Audio storage failed"


class TranscriptionError(VoiceoverError):
    """Speech-to-text failed. Only ever skips the repetition pass."""

    user_message = "Transcription failed"


def user_message(exc: BaseException) -> str:
    """Return the message a caller may see for ``exc``."""
    if isinstance(exc, VoiceoverError):
        return str(exc)
    return VoiceoverError.user_message

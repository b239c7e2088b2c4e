"""All magic numbers and configuration constants."""

# Text
MAX_CHUNK_LENGTH = 500              # chars, worker handler limit per job
MIN_TEXT_LENGTH = 5                 # chars, shorter chunks are dropped
MAX_TEXT_LENGTH = 500               # chars, matches chunk length
DEFAULT_SEGMENT_COUNT = 10          # parallel segments per script (one per worker)

# Remote TTS worker
RUNPOD_API_BASE = "https://api.runpod.ai/v2"
DEFAULT_ENDPOINT_ID = "eitsgz3gndkh3s"
TTS_POLL_INTERVAL_INITIAL = 0.25    # seconds, fast first polls
TTS_POLL_INTERVAL_MAX = 1.0         # seconds, cap for adaptive polling
TTS_POLL_GROWTH = 1.15              # interval multiplier after the first polls
TTS_POLL_FAST_ATTEMPTS = 3          # polls before the interval starts growing
TTS_POLL_HINT_MAX = 1.5             # seconds, cap on the server's delayTime hint
TTS_JOB_TIMEOUT = 300.0             # seconds, hard wall clock per job
TTS_REQUEST_TIMEOUT = 30.0          # seconds, per HTTP request
TTS_MAX_PAYLOAD_MB = 50             # worker rejects larger request bodies
TTS_RETRY_COUNT = 3                 # max attempts per chunk
TTS_RETRY_BASE_DELAY = 1.0          # seconds, base delay for exponential backoff
TTS_RETRY_MAX_DELAY = 10.0          # seconds, backoff cap

# Anomalous (near-silent) synthesis results
SILENCE_WINDOW_MS = 50              # RMS analysis window
SILENCE_RMS_THRESHOLD = 300         # RMS on a 16-bit scale below which a window is silent
SILENCE_MAX_RATIO = 0.5             # more silent windows than this → anomalous

# Scheduling
MAX_CONCURRENT_SEGMENTS = 10        # rolling window size
HEARTBEAT_INTERVAL = 15.0           # seconds between SSE keepalive frames
MAX_FINISHED_JOBS = 200             # completed or failed job records kept for status polls

# Progress bands (percent)
PROGRESS_SYNTHESIS_START = 10
PROGRESS_SYNTHESIS_END = 85
PROGRESS_ASSEMBLY = 88
PROGRESS_REPETITION = 91
PROGRESS_SPEED = 93
PROGRESS_UPLOAD = 95

# Voice samples
MAX_VOICE_SAMPLE_SIZE = 10 * 1024 * 1024
VOICE_SAMPLE_ALLOWED_HOSTS = ("supabase.co", "supabase.com")

# Repetition detection
TRANSCRIPTION_URL = "https://api.groq.com/openai/v1/audio/transcriptions"
TRANSCRIPTION_MODEL = "whisper-large-v3-turbo"
TRANSCRIPTION_MAX_BYTES = 20 * 1024 * 1024   # service limit is 25 MB
TRANSCRIPTION_TIMEOUT = 300.0       # seconds per request
JACCARD_THRESHOLD = 0.7             # word-set similarity marking a duplicate
CONTAINMENT_THRESHOLD = 0.8         # share of the shorter sentence found in the longer
MIN_SENTENCE_WORDS = 3              # shorter sentences are never compared
SENTENCE_LOOKAHEAD = 3              # later sentences compared against each sentence
PHRASE_MIN_WORDS = 4                # shortest looping phrase
PHRASE_MAX_WORDS = 10               # longest looping phrase
MERGE_GAP_SECONDS = 0.1             # ranges closer than this are merged

# Speed
MIN_SPEED = 0.5
MAX_SPEED = 2.0

# Storage
STORAGE_BUCKET = "generated-assets"
SEGMENT_PATH = "{group}/segment-{index}.wav"
COMBINED_PATH = "{group}/voiceover.wav"
OUTPUT_DIR = "output"

VERSION = "0.1.0"

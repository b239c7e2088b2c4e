"""Fetch reference voice samples from trusted HTTPS hosts only."""

import base64
import ipaddress
import logging
from urllib.parse import urlparse

import requests

from voiceover_producer.constants import MAX_VOICE_SAMPLE_SIZE, VOICE_SAMPLE_ALLOWED_HOSTS
from voiceover_producer.errors import VoiceSampleError

logger = logging.getLogger(__name__)

DOWNLOAD_TIMEOUT = 30.0


def check_url(url: str, allowed_hosts=VOICE_SAMPLE_ALLOWED_HOSTS) -> str:
    """Reject anything but an HTTPS URL on an allow-listed public host.

    Returns the lower-cased hostname. Runs before any network access.
    """
    try:
        parsed = urlparse(url)
        host = (parsed.hostname or "").lower()
    except ValueError as exc:
        raise VoiceSampleError("Invalid voice sample URL") from exc

    if parsed.scheme != "https":
        raise VoiceSampleError("Voice sample URL must use HTTPS")
    if not host:
        raise VoiceSampleError("Invalid voice sample URL")
    if host == "localhost" or host.endswith(".localhost"):
        raise VoiceSampleError("Voice sample URL points to a private address")

    try:
        ip = ipaddress.ip_address(host)
    except ValueError:
        ip = None
    if ip is not None and (
        ip.is_private or ip.is_loopback or ip.is_link_local
        or ip.is_reserved or ip.is_multicast or ip.is_unspecified
    ):
        raise VoiceSampleError("Voice sample URL points to a private address")

    if not any(host == allowed or host.endswith("." + allowed) for allowed in allowed_hosts):
        raise VoiceSampleError("Voice sample host is not allowed")
    return host


def _sniff_format(data: bytes) -> str:
    if data[:4] == b"RIFF" and data[8:12] == b"WAVE":
        return "wav"
    if data[:3] == b"ID3" or data[:2] in (b"\xff\xfb", b"\xff\xf3", b"\xff\xf2"):
        return "mp3"
    return "unknown"


def fetch_voice_sample(
    url: str,
    allowed_hosts=VOICE_SAMPLE_ALLOWED_HOSTS,
    session: requests.Session | None = None,
    max_size: int = MAX_VOICE_SAMPLE_SIZE,
) -> str:
    """Download a voice sample and return it base64-encoded."""
    check_url(url, allowed_hosts)
    http = session or requests

    try:
        resp = http.get(url, timeout=DOWNLOAD_TIMEOUT, stream=True, allow_redirects=False)
    except requests.RequestException as exc:
        raise VoiceSampleError("Failed to download voice sample") from exc

    try:
        if 300 <= resp.status_code < 400:
            raise VoiceSampleError("Voice sample URL must not redirect")
        if resp.status_code >= 400:
            raise VoiceSampleError(f"Failed to download voice sample (HTTP {resp.status_code})")

        content_type = resp.headers.get("content-type", "")
        if content_type and not content_type.startswith(("audio/", "application/octet-stream")):
            logger.warning("Voice sample has unexpected content type %s", content_type)

        data = bytearray()
        for block in resp.iter_content(chunk_size=64 * 1024):
            data.extend(block)
            if len(data) > max_size:
                raise VoiceSampleError(f"Voice sample is larger than {max_size // (1024 * 1024)}MB")
    except requests.RequestException as exc:
        raise VoiceSampleError("Failed to download voice sample") from exc
    finally:
        resp.close()

    if not data:
        raise VoiceSampleError("Voice sample is empty")

    logger.info("Voice sample: %d bytes, format %s", len(data), _sniff_format(bytes(data[:12])))
    return base64.b64encode(bytes(data)).decode("ascii")

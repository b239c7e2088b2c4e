"""Object storage for segment and combined voice-over files."""

import logging
from abc import ABC, abstractmethod
from pathlib import Path

import requests

from voiceover_producer.constants import STORAGE_BUCKET
from voiceover_producer.errors import StorageError

logger = logging.getLogger(__name__)


class Storage(ABC):
    """Blocking byte storage addressed by slash-separated paths."""

    @abstractmethod
    def upload(self, path: str, data: bytes, content_type: str = "audio/wav") -> str:
        """Store ``data`` (overwriting) and return its public URL."""

    @abstractmethod
    def download(self, path: str) -> bytes:
        ...

    @abstractmethod
    def public_url(self, path: str) -> str:
        ...


class SupabaseStorage(Storage):
    """Supabase Storage REST API, authenticated with a service-role key."""

    def __init__(
        self,
        url: str,
        key: str,
        bucket: str = STORAGE_BUCKET,
        session: requests.Session | None = None,
        timeout: float = 120.0,
    ):
        if not url or not key:
            raise StorageError("Storage is not configured")
        self.url = url.rstrip("/")
        self.key = key
        self.bucket = bucket
        self.session = session or requests.Session()
        self.timeout = timeout

    def _object_url(self, path: str) -> str:
        return f"{self.url}/storage/v1/object/{self.bucket}/{path}"

    def _headers(self, **extra) -> dict:
        return {"Authorization": f"Bearer {self.key}", "apikey": self.key, **extra}

    def upload(self, path: str, data: bytes, content_type: str = "audio/wav") -> str:
        headers = self._headers(**{"Content-Type": content_type, "x-upsert": "true"})
        try:
            resp = self.session.post(self._object_url(path), data=data, headers=headers, timeout=self.timeout)
        except requests.RequestException as exc:
            raise StorageError("Could not reach storage") from exc
        if resp.status_code >= 400:
            logger.error("Upload of %s failed: HTTP %d %.200s", path, resp.status_code, resp.text)
            raise StorageError(f"Failed to upload audio (HTTP {resp.status_code})")
        logger.debug("Uploaded %s (%d bytes)", path, len(data))
        return self.public_url(path)

    def download(self, path: str) -> bytes:
        try:
            resp = self.session.get(self._object_url(path), headers=self._headers(), timeout=self.timeout)
        except requests.RequestException as exc:
            raise StorageError("Could not reach storage") from exc
        if resp.status_code >= 400:
            logger.error("Download of %s failed: HTTP %d", path, resp.status_code)
            raise StorageError(f"Failed to download audio (HTTP {resp.status_code})")
        return resp.content

    def public_url(self, path: str) -> str:
        return f"{self.url}/storage/v1/object/public/{self.bucket}/{path}"


class LocalStorage(Storage):
    """Files under a local directory. Used by the CLI and tests."""

    def __init__(self, root: str | Path):
        self.root = Path(root)

    def _path(self, path: str) -> Path:
        target = (self.root / path).resolve()
        if not target.is_relative_to(self.root.resolve()):
            raise StorageError("Invalid storage path")
        return target

    def upload(self, path: str, data: bytes, content_type: str = "audio/wav") -> str:
        target = self._path(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)
        return self.public_url(path)

    def download(self, path: str) -> bytes:
        try:
            return self._path(path).read_bytes()
        except FileNotFoundError as exc:
            raise StorageError("Stored audio not found") from exc

    def public_url(self, path: str) -> str:
        return self._path(path).as_uri()

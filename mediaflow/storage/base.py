"""
Artifact Store interface.
The only resource shared across jobs; every call is an idempotent
"upload blob -> get URL" operation.
"""
import hashlib
import mimetypes
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

HASH_CHUNK_BYTES = 1024 * 1024


def content_key(path: str) -> str:
    """Content-addressed key: sha256 of the bytes plus the file suffix."""
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(HASH_CHUNK_BYTES), b""):
            digest.update(chunk)
    return f"{digest.hexdigest()}{Path(path).suffix.lower()}"


def guess_content_type(path: str) -> str:
    return mimetypes.guess_type(str(path))[0] or "application/octet-stream"


class ArtifactStore(ABC):
    """Object storage boundary."""

    @property
    @abstractmethod
    def name(self) -> str:
        pass

    @abstractmethod
    def put(self, path: str, key: str, content_type: str) -> None:
        """Store the file under key. Storing the same key twice is harmless."""
        pass

    @abstractmethod
    def signed_url(self, key: str, ttl_seconds: Optional[int] = None) -> str:
        pass

    def key_for(self, path: str) -> str:
        return content_key(path)

    def upload(
        self,
        path: str,
        key: Optional[str] = None,
        content_type: Optional[str] = None,
        ttl_seconds: Optional[int] = None,
    ) -> str:
        """
        Upload a local file and return a signed URL for it.

        Args:
            path: Local file
            key: Object key (content hash when omitted)
            content_type: MIME type (guessed from the suffix when omitted)
            ttl_seconds: Lifetime of the returned URL
        """
        key = key or self.key_for(path)
        self.put(path, key, content_type or guess_content_type(path))
        return self.signed_url(key, ttl_seconds)

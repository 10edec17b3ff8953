"""
Local filesystem artifact store.
Objects live under a root directory; URLs are HMAC-signed and served by
GET /artifacts/{key}.
"""
import hmac
import time
import shutil
import hashlib
import logging
from pathlib import Path
from typing import Optional
from urllib.parse import quote, urlencode

from mediaflow.config import config
from .base import ArtifactStore

logger = logging.getLogger(__name__)


class InvalidArtifactKey(ValueError):
    pass


class LocalArtifactStore(ArtifactStore):

    def __init__(
        self,
        root: Optional[Path] = None,
        public_base_url: Optional[str] = None,
        signing_secret: Optional[str] = None,
        default_ttl_seconds: Optional[int] = None,
    ):
        self.root = Path(root or config.storage.local_root)
        self.root.mkdir(parents=True, exist_ok=True)
        self.public_base_url = (public_base_url or config.storage.public_base_url).rstrip("/")
        self.signing_secret = signing_secret if signing_secret is not None else config.storage.signing_secret
        self.default_ttl_seconds = default_ttl_seconds or config.storage.default_ttl_seconds

    @property
    def name(self) -> str:
        return "local"

    def path_for(self, key: str) -> Path:
        """Resolve a key inside the root; keys may not escape it."""
        if not key or key.startswith("/") or "\\" in key:
            raise InvalidArtifactKey(f"Invalid artifact key: {key!r}")
        path = (self.root / key).resolve()
        if self.root.resolve() not in path.parents:
            raise InvalidArtifactKey(f"Invalid artifact key: {key!r}")
        return path

    def put(self, path: str, key: str, content_type: str) -> None:
        dest = self.path_for(key)
        if dest.exists() and dest.stat().st_size == Path(path).stat().st_size:
            logger.debug(f"[STORE] {key} already stored")
            return

        dest.parent.mkdir(parents=True, exist_ok=True)
        tmp = dest.with_name(f".{dest.name}.part")
        shutil.copyfile(path, tmp)
        tmp.replace(dest)
        logger.info(f"[STORE] Stored {key} ({dest.stat().st_size} bytes)")

    def _signature(self, key: str, expires: int) -> str:
        message = f"{key}:{expires}".encode()
        return hmac.new(self.signing_secret.encode(), message, hashlib.sha256).hexdigest()

    def signed_url(self, key: str, ttl_seconds: Optional[int] = None) -> str:
        self.path_for(key)
        expires = int(time.time()) + (ttl_seconds or self.default_ttl_seconds)
        query = urlencode({"expires": expires, "sig": self._signature(key, expires)})
        return f"{self.public_base_url}/{quote(key)}?{query}"

    def verify(self, key: str, expires: int, signature: str) -> bool:
        """Check a signed URL's parameters."""
        if expires < int(time.time()):
            return False
        return hmac.compare_digest(self._signature(key, expires), signature)

"""
Artifact storage.
Backend selected via ARTIFACT_BACKEND (local | s3).
"""
import logging
from typing import Optional

from mediaflow.config import config
from .base import ArtifactStore, content_key
from .local import InvalidArtifactKey, LocalArtifactStore

logger = logging.getLogger(__name__)

# Signed URL lifetimes
FINAL_ARTIFACT_TTL_SECONDS = 7 * 24 * 3600
INTERMEDIATE_TTL_SECONDS = 3600

_store: Optional[ArtifactStore] = None


def get_artifact_store() -> ArtifactStore:
    """Get or create the artifact store singleton."""
    global _store

    if _store is None:
        if config.storage.backend == "s3":
            from .s3 import S3ArtifactStore
            _store = S3ArtifactStore()
        else:
            _store = LocalArtifactStore()
        logger.info(f"Using {_store.name} artifact store")

    return _store


def set_artifact_store(store: Optional[ArtifactStore]) -> None:
    """Replace the store singleton (for testing)."""
    global _store
    _store = store


def reset_artifact_store() -> None:
    """Reset store singleton (for testing)."""
    set_artifact_store(None)


__all__ = [
    "ArtifactStore",
    "LocalArtifactStore",
    "InvalidArtifactKey",
    "content_key",
    "get_artifact_store",
    "set_artifact_store",
    "reset_artifact_store",
    "FINAL_ARTIFACT_TTL_SECONDS",
    "INTERMEDIATE_TTL_SECONDS",
]

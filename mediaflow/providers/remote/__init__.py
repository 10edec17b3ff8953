"""
Remote AI processing service clients.
"""
from .base import BaseRemoteClient, RemoteStatusReport
from .http import RemoteProcessingClient, normalize_status


def get_remote_client() -> BaseRemoteClient:
    """Client for the configured remote AI service."""
    return RemoteProcessingClient()


__all__ = [
    "BaseRemoteClient",
    "RemoteStatusReport",
    "RemoteProcessingClient",
    "normalize_status",
    "get_remote_client",
]

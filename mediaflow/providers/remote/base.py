"""
Base class for remote AI processing clients.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Optional

from mediaflow.pipeline.models import RemoteJobStatus, StageKind


@dataclass
class RemoteStatusReport:
    """Normalized answer to one status query."""
    status: RemoteJobStatus
    result_ref: Optional[str] = None
    result_text: Optional[str] = None
    error: Optional[str] = None


class BaseRemoteClient(ABC):
    """Submit/poll contract of the remote AI processing service."""

    @property
    @abstractmethod
    def name(self) -> str:
        pass

    @abstractmethod
    async def submit(self, kind: StageKind, payload: Dict[str, Any]) -> str:
        """
        Submit a stage.

        Returns:
            The external job id used for polling.
        """
        pass

    @abstractmethod
    async def get_status(self, external_job_id: str) -> RemoteStatusReport:
        pass

    async def close(self) -> None:
        pass

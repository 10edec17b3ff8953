"""
HTTP client for the remote AI processing service.

Uses the async task API:
1. POST /v1/jobs -> job id
2. GET /v1/jobs/{id} until a terminal state
"""
import json
import logging
from typing import Any, Dict, Optional

import httpx

from mediaflow.config import config
from mediaflow.pipeline.models import RemoteJobStatus, StageKind
from ..exceptions import ProviderError, ProviderUnavailable
from .base import BaseRemoteClient, RemoteStatusReport

logger = logging.getLogger(__name__)

COMPLETED_STATES = {
    "succeeded", "success", "completed", "complete", "done",
    "text_success", "first_success",
}
FAILED_STATES = {
    "failed", "failure", "error", "canceled", "cancelled",
    "create_task_failed", "generate_audio_failed", "sensitive_word_error",
}


def normalize_status(raw: Optional[str]) -> RemoteJobStatus:
    """Map a vendor status string onto RemoteJobStatus."""
    state = (raw or "").strip().lower()
    if state in COMPLETED_STATES:
        return RemoteJobStatus.COMPLETED
    if state in FAILED_STATES:
        return RemoteJobStatus.FAILED
    return RemoteJobStatus.PROCESSING


def extract_result_ref(data: Dict[str, Any]) -> Optional[str]:
    """Find the output URL in the handful of shapes vendors return."""
    result_json = data.get("resultJson")
    if isinstance(result_json, str) and result_json:
        try:
            urls = json.loads(result_json).get("resultUrls") or []
            if urls:
                return urls[0]
        except (json.JSONDecodeError, AttributeError):
            pass

    for key in ("result_url", "resultUrl", "output_url", "audio_url", "video_url", "url"):
        if data.get(key):
            return data[key]

    output = data.get("output")
    if isinstance(output, str) and output.startswith("http"):
        return output
    if isinstance(output, dict):
        return output.get("url") or output.get("video_url") or output.get("audio_url")
    if isinstance(output, list) and output:
        first = output[0]
        if isinstance(first, str):
            return first
        if isinstance(first, dict):
            return first.get("url") or first.get("audio_url")
    return None


def extract_result_text(data: Dict[str, Any]) -> Optional[str]:
    for key in ("srt", "captions", "text", "transcript"):
        value = data.get(key)
        if isinstance(value, str) and value.strip():
            return value
    return None


class RemoteProcessingClient(BaseRemoteClient):
    """
    Async httpx client for the remote AI service.
    The service itself is a black box; only the submit/poll contract matters.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = (base_url or config.remote.base_url).rstrip("/")
        self.api_key = api_key if api_key is not None else (config.remote.api_key or "")
        self.client = httpx.AsyncClient(
            timeout=timeout or config.remote.request_timeout_seconds,
            transport=transport,
        )

        if not self.api_key:
            logger.warning("[REMOTE] No API key configured - remote stages will fail")

    @property
    def name(self) -> str:
        return "remote-ai"

    def _get_headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    async def submit(self, kind: StageKind, payload: Dict[str, Any]) -> str:
        if not self.api_key:
            raise ProviderUnavailable(self.name, "missing API key")

        try:
            response = await self.client.post(
                f"{self.base_url}/v1/jobs",
                headers=self._get_headers(),
                json={"kind": kind.value, "input": payload},
            )
        except httpx.HTTPError as e:
            raise ProviderError(self.name, f"submit failed: {e}") from e

        if response.status_code in (401, 403):
            raise ProviderUnavailable(self.name, "invalid API key", response.status_code)
        if response.status_code >= 400:
            raise ProviderError(
                self.name,
                f"submit rejected (HTTP {response.status_code}): {response.text[:200]}",
                response.status_code,
            )

        body = response.json()
        data = body.get("data") if isinstance(body.get("data"), dict) else body
        external_id = data.get("id") or data.get("job_id") or data.get("taskId") or data.get("task_id")
        if not external_id:
            raise ProviderError(self.name, f"no job id in submit response: {str(body)[:200]}")

        logger.info(f"[REMOTE] Submitted {kind.value}: {external_id}")
        return str(external_id)

    async def get_status(self, external_job_id: str) -> RemoteStatusReport:
        try:
            response = await self.client.get(
                f"{self.base_url}/v1/jobs/{external_job_id}",
                headers=self._get_headers(),
            )
        except httpx.HTTPError as e:
            raise ProviderError(self.name, f"status query failed: {e}") from e

        if response.status_code in (401, 403):
            raise ProviderUnavailable(self.name, "invalid API key", response.status_code)
        if response.status_code >= 400:
            raise ProviderError(self.name, f"status query rejected (HTTP {response.status_code})", response.status_code)

        body = response.json()
        data = body.get("data") if isinstance(body.get("data"), dict) else body
        status = normalize_status(data.get("status") or data.get("state"))

        if status == RemoteJobStatus.COMPLETED:
            return RemoteStatusReport(
                status=status,
                result_ref=extract_result_ref(data),
                result_text=extract_result_text(data),
            )
        if status == RemoteJobStatus.FAILED:
            error = data.get("error") or data.get("failMsg") or data.get("errorMessage") or "remote job failed"
            return RemoteStatusReport(status=status, error=str(error))
        return RemoteStatusReport(status=status)

    async def close(self) -> None:
        await self.client.aclose()

"""
Remote Job Orchestrator.

Submits AI stages to the remote processing service and polls them to a
terminal state. Three independent lanes run concurrently:

    text:  subtitles -> text_to_speech (speech is synthesized from captions)
    video: face_substitution -> object_removal, one remote job per segment
    music: song_generation

A failing stage never aborts a sibling stage.
"""
import asyncio
import logging
import re
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

import httpx

from mediaflow.config import config
from mediaflow.providers.exceptions import ProviderError
from mediaflow.providers.remote.base import BaseRemoteClient, RemoteStatusReport
from .errors import RemoteStageError
from .models import (
    ErrorInfo,
    MediaJob,
    RemoteJob,
    RemoteJobStatus,
    REMOTE_TERMINAL_STATUSES,
    StageKind,
)

logger = logging.getLogger(__name__)

MAX_SPEECH_TEXT_CHARS = 4000

SRT_INDEX_LINE = re.compile(r"^\d+$")

StopCheck = Callable[[], bool]


def captions_to_speech_text(captions: str, limit: int = MAX_SPEECH_TEXT_CHARS) -> str:
    """
    Turn an SRT (or plain) caption track into narration text.
    Drops cue numbers and timecode lines, joins the rest.
    """
    lines = []
    for raw in captions.splitlines():
        line = raw.strip()
        if not line or SRT_INDEX_LINE.match(line) or "-->" in line:
            continue
        lines.append(line)
    return " ".join(lines)[:limit]


class TerminalResultCache:
    """Bounded LRU of terminal poll results keyed by external job id."""

    def __init__(self, max_size: int = 256):
        if max_size <= 0:
            raise ValueError("max_size must be positive")
        self.max_size = max_size
        self._entries: "OrderedDict[str, RemoteStatusReport]" = OrderedDict()

    def get(self, external_job_id: str) -> Optional[RemoteStatusReport]:
        report = self._entries.get(external_job_id)
        if report is not None:
            self._entries.move_to_end(external_job_id)
        return report

    def put(self, external_job_id: str, report: RemoteStatusReport) -> None:
        if report.status not in REMOTE_TERMINAL_STATUSES:
            return
        self._entries[external_job_id] = report
        self._entries.move_to_end(external_job_id)
        while len(self._entries) > self.max_size:
            self._entries.popitem(last=False)

    def __contains__(self, external_job_id: str) -> bool:
        return external_job_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)


class RemoteJobOrchestrator:
    """Submit/poll loop around a BaseRemoteClient."""

    def __init__(
        self,
        client: BaseRemoteClient,
        poll_interval: Optional[float] = None,
        max_attempts: Optional[int] = None,
        cache_size: Optional[int] = None,
    ):
        self.client = client
        self.poll_interval = config.remote.poll_interval_seconds if poll_interval is None else poll_interval
        self.max_attempts = max_attempts
        self.cache = TerminalResultCache(cache_size or config.remote.result_cache_size)
        self.submit_count = 0

    def attempts_for(self, kind: StageKind) -> int:
        if self.max_attempts is not None:
            return self.max_attempts
        return config.remote.attempts_for(kind.value)

    async def submit(
        self,
        kind: StageKind,
        inputs: Dict[str, object],
        segment_index: Optional[int] = None,
    ) -> RemoteJob:
        """
        Submit one stage. A rejected submission yields a RemoteJob that is
        already Failed; it is never retried.
        """
        job = RemoteJob(kind=kind, segment_index=segment_index)
        self.submit_count += 1
        try:
            job.external_job_id = await self.client.submit(kind, inputs)
        except ProviderError as e:
            logger.error(f"[REMOTE] Submit failed for {kind.value}: {e}")
            job.finish(RemoteJobStatus.FAILED, error_message=str(e))
        return job

    async def poll(self, external_job_id: str) -> RemoteStatusReport:
        """
        One status query. Terminal results are served from the cache without
        touching the network.
        """
        cached = self.cache.get(external_job_id)
        if cached is not None:
            return cached

        report = await self.client.get_status(external_job_id)
        self.cache.put(external_job_id, report)
        return report

    async def await_completion(self, job: RemoteJob, should_stop: Optional[StopCheck] = None) -> RemoteJob:
        """
        Poll until the job is terminal, the attempt bound is reached, or
        should_stop() turns true. Returns the same RemoteJob.
        """
        if job.is_terminal:
            return job

        max_attempts = self.attempts_for(job.kind)
        label = self._label(job)

        for i in range(max_attempts):
            if should_stop and should_stop():
                logger.info(f"[REMOTE] Stopping {label} - job stopped")
                job.finish(RemoteJobStatus.FAILED, error_message="stopped before completion")
                return job

            job.attempts = i + 1
            try:
                report = await self.poll(job.external_job_id)
            except ProviderError as e:
                logger.warning(f"[REMOTE] Poll error for {label} (attempt {i + 1}): {e}")
                report = None

            if report is not None:
                if report.status == RemoteJobStatus.COMPLETED:
                    if not (report.result_ref or report.result_text):
                        job.finish(RemoteJobStatus.FAILED, error_message="completed without a result")
                    else:
                        job.finish(
                            RemoteJobStatus.COMPLETED,
                            result_ref=report.result_ref,
                            result_text=report.result_text,
                        )
                        logger.info(f"[REMOTE] {label} completed after {job.attempts} polls")
                    return job
                if report.status in (RemoteJobStatus.FAILED, RemoteJobStatus.TIMED_OUT):
                    job.finish(RemoteJobStatus.FAILED, error_message=report.error or "remote job failed")
                    logger.warning(f"[REMOTE] {label} failed: {job.error_message}")
                    return job
                job.mark_processing()
                logger.debug(f"[REMOTE] Polling {label}: {report.status.value} (attempt {i + 1})")

            if i + 1 < max_attempts:
                await asyncio.sleep(self.poll_interval)

        job.finish(
            RemoteJobStatus.TIMED_OUT,
            error_message=f"no terminal status after {max_attempts} polls",
        )
        logger.warning(f"[REMOTE] {label} timed out after {max_attempts} polls")
        return job

    async def run_stage(
        self,
        kind: StageKind,
        inputs: Dict[str, object],
        segment_index: Optional[int] = None,
        should_stop: Optional[StopCheck] = None,
    ) -> RemoteJob:
        job = await self.submit(kind, inputs, segment_index=segment_index)
        return await self.await_completion(job, should_stop)

    @staticmethod
    def _label(job: RemoteJob) -> str:
        if job.segment_index is None:
            return job.kind.value
        return f"{job.kind.value}[{job.segment_index}]"


# ============================================================
# Lanes
# ============================================================

@dataclass
class RemoteOutcome:
    """What the remote stages produced for the composer."""
    completed_stages: List[StageKind] = field(default_factory=list)
    remote_jobs: List[RemoteJob] = field(default_factory=list)
    errors: List[ErrorInfo] = field(default_factory=list)
    captions_text: Optional[str] = None
    speech_ref: Optional[str] = None
    song_ref: Optional[str] = None
    # segment index -> remote video that replaces the local segment
    segment_refs: Dict[int, str] = field(default_factory=dict)

    @property
    def synthesized_audio_refs(self) -> List[str]:
        return [ref for ref in (self.speech_ref, self.song_ref) if ref]


class RemoteStageRunner:
    """
    Runs the selected remote stages of a job.

    Args:
        orchestrator: Submit/poll loop
        source_url: URL of the whole (locally processed) video
        segment_urls: URL per segment index, in order
        should_stop: Cancellation/timeout check
        on_stage_done: Called with each remote stage kind once it is terminal
        on_submitted: Called with each RemoteJob right after submission
    """

    def __init__(
        self,
        orchestrator: RemoteJobOrchestrator,
        job: MediaJob,
        source_url: str,
        segment_urls: List[str],
        should_stop: Optional[StopCheck] = None,
        on_stage_done: Optional[Callable[[StageKind], None]] = None,
        on_submitted: Optional[Callable[[RemoteJob], None]] = None,
    ):
        self.orchestrator = orchestrator
        self.job = job
        self.source_url = source_url
        self.segment_urls = segment_urls
        self.should_stop = should_stop
        self.on_stage_done = on_stage_done
        self.on_submitted = on_submitted
        self.outcome = RemoteOutcome()

    def _selected(self, kind: StageKind) -> bool:
        return kind in self.job.selected_stages

    def _stopped(self) -> bool:
        return bool(self.should_stop and self.should_stop())

    def _fail(self, kind: StageKind, jobs: List[RemoteJob], message: Optional[str] = None) -> None:
        timed_out = any(j.status == RemoteJobStatus.TIMED_OUT for j in jobs)
        reason = message or next((j.error_message for j in jobs if j.error_message), "remote stage failed")
        error = RemoteStageError(f"{kind.value}: {reason}", kind=kind.value, timed_out=timed_out)
        self.outcome.errors.append(error.to_error_info())
        self._notify(kind)

    def _succeed(self, kind: StageKind) -> None:
        self.outcome.completed_stages.append(kind)
        self._notify(kind)

    def _notify(self, kind: StageKind) -> None:
        if self.on_stage_done:
            self.on_stage_done(kind)

    async def run(self) -> RemoteOutcome:
        lanes = []
        if self._selected(StageKind.SUBTITLES) or self._selected(StageKind.TEXT_TO_SPEECH):
            lanes.append(self._text_lane())
        if self._selected(StageKind.FACE_SUBSTITUTION) or self._selected(StageKind.OBJECT_REMOVAL):
            lanes.append(self._video_lane())
        if self._selected(StageKind.SONG_GENERATION):
            lanes.append(self._music_lane())

        if lanes:
            await asyncio.gather(*lanes)

        # Keep completion order stable regardless of which lane finished first
        order = {kind: i for i, kind in enumerate(self.job.selected_stages)}
        self.outcome.completed_stages.sort(key=lambda k: order.get(k, len(order)))
        return self.outcome

    async def _run_one(self, kind: StageKind, inputs: Dict[str, object], segment_index: Optional[int] = None) -> RemoteJob:
        remote_job = await self.orchestrator.submit(kind, inputs, segment_index=segment_index)
        # Recorded before polling starts
        self.outcome.remote_jobs.append(remote_job)
        if self.on_submitted:
            self.on_submitted(remote_job)
        return await self.orchestrator.await_completion(remote_job, self.should_stop)

    # ---------- text lane ----------

    async def _text_lane(self) -> None:
        captions: Optional[str] = None

        if self._selected(StageKind.SUBTITLES):
            params = self.job.params_for(StageKind.SUBTITLES)
            remote_job = await self._run_one(StageKind.SUBTITLES, {
                "video_url": self.source_url,
                "source_language": params.source_language,
                "target_language": params.target_language,
            })
            if remote_job.status == RemoteJobStatus.COMPLETED:
                captions = remote_job.result_text or await self._fetch_text(remote_job.result_ref)
                if captions and captions.strip():
                    self.outcome.captions_text = captions
                    self._succeed(StageKind.SUBTITLES)
                else:
                    captions = None
                    self._fail(StageKind.SUBTITLES, [remote_job], "caption track was empty")
            else:
                self._fail(StageKind.SUBTITLES, [remote_job])

        if not self._selected(StageKind.TEXT_TO_SPEECH):
            return

        params = self.job.params_for(StageKind.TEXT_TO_SPEECH)
        if self._selected(StageKind.SUBTITLES):
            text = captions_to_speech_text(captions) if captions else ""
        else:
            text = (params.text or "")[:MAX_SPEECH_TEXT_CHARS]

        if not text.strip():
            self._fail(StageKind.TEXT_TO_SPEECH, [], "no caption text to synthesize")
            return
        if self._stopped():
            self._fail(StageKind.TEXT_TO_SPEECH, [], "stopped before submission")
            return

        remote_job = await self._run_one(StageKind.TEXT_TO_SPEECH, {
            "text": text,
            "voice": params.voice,
            "language": params.language,
        })
        if remote_job.status == RemoteJobStatus.COMPLETED and remote_job.result_ref:
            self.outcome.speech_ref = remote_job.result_ref
            self._succeed(StageKind.TEXT_TO_SPEECH)
        else:
            self._fail(StageKind.TEXT_TO_SPEECH, [remote_job])

    async def _fetch_text(self, url: Optional[str]) -> Optional[str]:
        if not url:
            return None
        try:
            async with httpx.AsyncClient(timeout=config.remote.request_timeout_seconds) as client:
                response = await client.get(url, follow_redirects=True)
                response.raise_for_status()
                return response.text
        except httpx.HTTPError as e:
            logger.warning(f"[REMOTE] Could not download caption track: {e}")
            return None

    # ---------- video lane ----------

    async def _video_lane(self) -> None:
        current = list(self.segment_urls)

        for kind in (StageKind.FACE_SUBSTITUTION, StageKind.OBJECT_REMOVAL):
            if not self._selected(kind):
                continue
            if self._stopped():
                self._fail(kind, [], "stopped before submission")
                continue

            params = self.job.params_for(kind)
            extra = params.model_dump() if params is not None else {}
            jobs = await asyncio.gather(*[
                self._run_one(kind, {"video_url": url, **extra}, segment_index=index)
                for index, url in enumerate(current)
            ])

            if all(j.status == RemoteJobStatus.COMPLETED and j.result_ref for j in jobs):
                current = [j.result_ref for j in sorted(jobs, key=lambda j: j.segment_index)]
                self._succeed(kind)
            else:
                self._fail(kind, list(jobs))

        changed = {i: url for i, url in enumerate(current) if url != self.segment_urls[i]}
        self.outcome.segment_refs = changed

    # ---------- music lane ----------

    async def _music_lane(self) -> None:
        params = self.job.params_for(StageKind.SONG_GENERATION)
        remote_job = await self._run_one(StageKind.SONG_GENERATION, {
            "prompt": params.prompt,
            "style": params.style,
            "instrumental": params.instrumental,
            "duration_seconds": self.job.duration_seconds,
        })
        if remote_job.status == RemoteJobStatus.COMPLETED and remote_job.result_ref:
            self.outcome.song_ref = remote_job.result_ref
            self._succeed(StageKind.SONG_GENERATION)
        else:
            self._fail(StageKind.SONG_GENERATION, [remote_job])

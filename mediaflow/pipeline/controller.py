"""
Pipeline Controller.

Owns the MediaJob state machine:

    created -> acquiring -> segmenting -> local_processing -> remote_pending
            -> composing -> uploading -> completed | partially_completed | failed

Validation and acquisition failures fail the job with zero charge. Every
later failure falls back to the best artifact built so far. Settlement runs
before the output reference is published.
"""
import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import List, Optional, Tuple

from mediaflow.auth.models import User
from mediaflow.config import config
from mediaflow.credits.service import CreditService, get_credit_service
from mediaflow.persistence import (
    BaseMediaJobRepository,
    get_media_job_repository,
    get_settlement_issue_repository,
)
from mediaflow.providers.remote import BaseRemoteClient, get_remote_client
from mediaflow.storage import (
    ArtifactStore,
    FINAL_ARTIFACT_TTL_SECONDS,
    INTERMEDIATE_TTL_SECONDS,
    get_artifact_store,
)
from .acquirer import MediaAcquirer, AcquiredMedia, UPLOAD_SCHEME, resolve_upload_ref, validate_remote_url
from .composer import Composer
from .cost import CostMeter
from .engine import engine_session
from .errors import (
    AcquisitionError,
    ComposeError,
    EngineError,
    JobCancelled,
    JobTimedOut,
    PipelineError,
    RemoteStageError,
    SegmentationError,
    SettlementInconsistency,
    ValidationError,
)
from .ffmpeg import FFmpegRunner
from .filters import FilterChain, build_filter_chain
from .models import (
    JobSpec,
    JobStatus,
    MediaJob,
    PER_SEGMENT_STAGES,
    RemoteJob,
    RemoteJobStatus,
    Segment,
    SourceMode,
    StageKind,
)
from .progress import ProgressTracker
from .remote import RemoteJobOrchestrator, RemoteOutcome, RemoteStageRunner
from .segmenter import Segmenter

logger = logging.getLogger(__name__)

# Phases bounded by one engine call each: acquire, segment, local, compose (x2), upload
ENGINE_BOUND_PHASES = 6


@dataclass
class JobRun:
    """Mutable state of one run; survives a timeout so the fallback can use it."""
    job: MediaJob
    deadline: float
    work_dir: Path
    cancel_check: object = None
    best_artifact: Optional[str] = None
    best_stages: List[StageKind] = field(default_factory=list)
    media: Optional[AcquiredMedia] = None

    def remember(self, artifact: str, stages: List[StageKind]) -> None:
        self.best_artifact = artifact
        self.best_stages = list(stages)

    def cancelled(self) -> bool:
        return bool(self.cancel_check and self.cancel_check(self.job.id))

    def timed_out(self) -> bool:
        return time.monotonic() >= self.deadline


class PipelineController:
    """Submit, run, observe and cancel media jobs."""

    def __init__(
        self,
        repository: Optional[BaseMediaJobRepository] = None,
        acquirer: Optional[MediaAcquirer] = None,
        runner: Optional[FFmpegRunner] = None,
        remote_client: Optional[BaseRemoteClient] = None,
        orchestrator: Optional[RemoteJobOrchestrator] = None,
        store: Optional[ArtifactStore] = None,
        cost_meter: Optional[CostMeter] = None,
        credit_service: Optional[CreditService] = None,
        settlement_issues=None,
        work_root: Optional[Path] = None,
        segment_threshold_seconds: Optional[float] = None,
        job_timeout_seconds: Optional[float] = None,
    ):
        self.repository = repository or get_media_job_repository()
        self.runner = runner or FFmpegRunner()
        self.acquirer = acquirer or MediaAcquirer(runner=self.runner)
        self._remote_client = remote_client
        self._orchestrator = orchestrator
        self._store = store
        self.credits = credit_service or get_credit_service()
        self.cost_meter = cost_meter or CostMeter(credit_service=self.credits)
        self.settlement_issues = settlement_issues or get_settlement_issue_repository()
        self.work_root = Path(work_root or config.paths.work_dir)
        self.segment_threshold = segment_threshold_seconds or config.pipeline.segment_threshold_seconds
        self.job_timeout_seconds = job_timeout_seconds or config.pipeline.job_timeout_seconds
        self.segmenter = Segmenter()

    @property
    def orchestrator(self) -> RemoteJobOrchestrator:
        if self._orchestrator is None:
            self._orchestrator = RemoteJobOrchestrator(self._remote_client or get_remote_client())
        return self._orchestrator

    @property
    def store(self) -> ArtifactStore:
        if self._store is None:
            self._store = get_artifact_store()
        return self._store

    # ============================================================
    # Submit / status / cancel
    # ============================================================

    def submit(self, spec: JobSpec, user: User) -> str:
        """
        Validate, quote and persist a job.

        Returns:
            Job id (the existing one when the idempotency key was seen before)

        Raises:
            ValidationError: Bad source or duration above the cap
            AcquisitionError: Uploaded file cannot be decoded
            InsufficientBalance: Balance does not cover the quote
        """
        if spec.idempotency_key:
            existing = self.repository.get_by_idempotency_key(user.user_id, spec.idempotency_key)
            if existing:
                logger.info(f"Idempotent submit: returning job {existing.id}")
                return existing.id

        duration = self._admission_duration(spec)
        cap = config.pipeline.max_source_duration_seconds
        if duration is not None and duration > cap:
            raise ValidationError(
                f"Source is {duration:.1f}s, limit is {cap:.0f}s",
                code="DURATION_TOO_LONG",
            )

        estimate = self.cost_meter.estimate(spec.selected_stages, duration or cap)
        self.credits.ensure_balance(user, estimate.total)

        job = MediaJob.from_spec(
            spec,
            user.user_id,
            cost_estimate=estimate.total,
            cost_breakdown=estimate.breakdown,
        )
        self.repository.create(job)
        logger.info(
            f"Job {job.id} submitted by {user.user_id}: "
            f"stages={[k.value for k in job.selected_stages]} estimate={estimate.total}"
        )
        return job.id

    def _admission_duration(self, spec: JobSpec) -> Optional[float]:
        """Duration known at submission: probed for uploads, declared for URLs."""
        if spec.source_mode == SourceMode.DIRECT_UPLOAD:
            path = resolve_upload_ref(spec.source_ref, self.acquirer.uploads_dir)
            if not path.is_file():
                raise ValidationError(f"Upload not found: {spec.source_ref}", code="UPLOAD_NOT_FOUND")
            self.acquirer.validate_upload(path.name, path.stat().st_size)
            return self.acquirer.probe(str(path)).duration_seconds

        validate_remote_url(spec.source_ref)
        return spec.declared_duration_seconds

    def get_status(self, job_id: str) -> Optional[MediaJob]:
        return self.repository.get(job_id)

    def list_jobs(self, user_id: str, limit: int = 50) -> List[MediaJob]:
        return self.repository.list_for_user(user_id, limit)

    def cancel(self, job_id: str) -> bool:
        """
        Request cancellation. The running pipeline stops at its next
        checkpoint. Returns False for unknown or finished jobs.
        """
        job = self.repository.get(job_id)
        if job is None or job.is_terminal:
            return False
        accepted = self.repository.request_cancel(job_id)
        if accepted:
            logger.info(f"Cancel requested for job {job_id}")
        return accepted

    def timeout_for(self, job: MediaJob) -> float:
        """Global backstop: configured value or the sum of per-stage bounds."""
        if self.job_timeout_seconds:
            return float(self.job_timeout_seconds)
        remote = sum(
            self.orchestrator.attempts_for(kind) * self.orchestrator.poll_interval
            for kind in job.stages_where(lambda k: k.is_remote)
        )
        return config.pipeline.engine_timeout_seconds * ENGINE_BOUND_PHASES + remote

    # ============================================================
    # Run
    # ============================================================

    async def run(self, job_id: str) -> Optional[MediaJob]:
        """Drive a job to a terminal state."""
        job = self.repository.get(job_id)
        if job is None:
            logger.error(f"Job {job_id} not found")
            return None
        if job.is_terminal:
            logger.info(f"Job {job_id} already {job.status.value}")
            return job

        timeout = self.timeout_for(job)
        run = JobRun(
            job=job,
            deadline=time.monotonic() + timeout,
            work_dir=self.work_root / job.id,
            cancel_check=self.repository.is_cancel_requested,
        )

        try:
            await asyncio.wait_for(self._drive(run), timeout=timeout)
        except (asyncio.TimeoutError, JobTimedOut):
            logger.warning(f"Job {job.id} timed out after {timeout:.0f}s")
            await self._fall_back(run, JobTimedOut(job.id, timeout))
        except JobCancelled as e:
            logger.info(f"Job {job.id} cancelled")
            await self._fall_back(run, e)
        except (ValidationError, AcquisitionError) as e:
            self._fail(run, e)
        except Exception as e:
            logger.exception(f"Job {job.id} crashed: {e}")
            await self._fall_back(run, PipelineError(f"Unexpected error: {e}", code="INTERNAL_ERROR"))

        return job

    def _checkpoint(self, run: JobRun) -> None:
        if run.cancelled():
            raise JobCancelled(run.job.id)
        if run.timed_out():
            raise JobTimedOut(run.job.id, self.timeout_for(run.job))

    def _enter(self, run: JobRun, status: JobStatus) -> None:
        self._checkpoint(run)
        run.job.status = status
        self.repository.save(run.job)
        logger.info(f"Job {run.job.id}: {status.value}")

    async def _drive(self, run: JobRun) -> None:
        job = run.job
        tracker = ProgressTracker(job)
        job.started_at = datetime.utcnow()

        # ---- acquire ----
        self._enter(run, JobStatus.ACQUIRING)
        media = await asyncio.to_thread(self.acquirer.acquire, job.source_mode, job.source_ref, run.work_dir)
        self._accept_media(run, media)
        tracker.complete("acquire")

        # ---- segment ----
        self._enter(run, JobStatus.SEGMENTING)
        segments = await asyncio.to_thread(self._split, run)
        job.segments = segments if len(segments) > 1 else []
        tracker.complete("segment")

        # ---- local ----
        local_stages = job.stages_where(lambda k: k.is_local)
        local_applied: List[StageKind] = []
        if local_stages:
            self._enter(run, JobStatus.LOCAL_PROCESSING)
            segments, local_applied = await self._process_local(run, segments, local_stages)
            if len(segments) == 1:
                run.remember(segments[0].blob_ref, local_applied)
        tracker.complete("local")

        # ---- remote ----
        outcome = RemoteOutcome()
        if job.stages_where(lambda k: k.is_remote):
            self._enter(run, JobStatus.REMOTE_PENDING)
            outcome = await self._process_remote(run, segments, tracker)
        tracker.complete("remote")

        # ---- compose ----
        self._enter(run, JobStatus.COMPOSING)
        artifact, applied, partial = await self._compose(run, segments, outcome, local_applied)
        run.remember(artifact, applied)
        tracker.complete("compose")

        # ---- upload + settle ----
        self._enter(run, JobStatus.UPLOADING)
        await self._deliver(run, artifact, applied, partial)

    def _accept_media(self, run: JobRun, media: AcquiredMedia) -> None:
        job = run.job
        cap = config.pipeline.max_source_duration_seconds
        if media.duration_seconds > cap:
            raise ValidationError(
                f"Source is {media.duration_seconds:.1f}s, limit is {cap:.0f}s",
                code="DURATION_TOO_LONG",
            )

        job.duration_seconds = media.duration_seconds
        job.size_bytes = media.size_bytes
        job.has_audio = media.has_audio

        # Re-quote on the real duration; never above what the caller agreed to
        actual = self.cost_meter.estimate(job.selected_stages, media.duration_seconds)
        if actual.total <= job.cost_estimate:
            job.cost_estimate = actual.total
            job.cost_breakdown = actual.breakdown

        run.media = media
        run.remember(media.blob_path, [])

    def _split(self, run: JobRun) -> List[Segment]:
        media = run.media
        with engine_session(run.work_dir, runner=self.runner) as engine:
            try:
                return self.segmenter.split(engine, media.blob_path, media.duration_seconds, self.segment_threshold)
            except SegmentationError as e:
                logger.warning(f"Job {run.job.id}: segmentation failed, continuing unsegmented: {e.message}")
                run.job.record_error(e.to_error_info())
                return [Segment(
                    index=0,
                    start_offset_seconds=0.0,
                    duration_seconds=media.duration_seconds,
                    blob_ref=media.blob_path,
                )]

    def _apply_local(self, run: JobRun, segment: Segment, chain: FilterChain) -> Segment:
        media = run.media
        with engine_session(run.work_dir, runner=self.runner) as engine:
            blob = engine.apply(segment.blob_ref, chain, (media.width, media.height))
        return segment.model_copy(update={"blob_ref": blob})

    async def _process_local(
        self,
        run: JobRun,
        segments: List[Segment],
        local_stages: List[StageKind],
    ) -> Tuple[List[Segment], List[StageKind]]:
        """
        Apply local effects to every segment, one disposable engine each.
        Any failure drops all local effects.
        """
        job = run.job
        chain = build_filter_chain((kind, job.params_for(kind)) for kind in local_stages)

        self._checkpoint(run)
        try:
            processed = await asyncio.gather(*[
                asyncio.to_thread(self._apply_local, run, segment, chain)
                for segment in segments
            ])
        except EngineError as e:
            logger.warning(f"Job {job.id}: local effects dropped: {e.message}")
            job.record_error(e.to_error_info())
            return segments, []
        self._checkpoint(run)

        processed = sorted(processed, key=lambda s: s.index)
        return processed, chain.stage_kinds

    async def _process_remote(self, run: JobRun, segments: List[Segment], tracker: ProgressTracker) -> RemoteOutcome:
        job = run.job
        try:
            if len(segments) == 1:
                source_url = await asyncio.to_thread(self._publish_intermediate, segments[0].blob_ref)
            else:
                source_url = await asyncio.to_thread(self._publish_intermediate, run.media.blob_path)

            segment_urls = [source_url] if len(segments) == 1 else []
            if job.stages_where(lambda k: k in PER_SEGMENT_STAGES) and len(segments) > 1:
                segment_urls = [
                    await asyncio.to_thread(self._publish_intermediate, segment.blob_ref)
                    for segment in segments
                ]
        except Exception as e:
            logger.error(f"Job {job.id}: could not publish media for remote stages: {e}")
            error = PipelineError(f"Intermediate upload failed: {e}", code="INTERMEDIATE_UPLOAD_FAILED", stage="remote")
            job.record_error(error.to_error_info())
            return RemoteOutcome()

        stage_runner = RemoteStageRunner(
            self.orchestrator,
            job,
            source_url=source_url,
            segment_urls=segment_urls,
            # the global timeout cancels polling through wait_for
            should_stop=run.cancelled,
            on_stage_done=tracker.complete_remote_stage,
            on_submitted=lambda remote_job: self._track_remote(run, remote_job),
        )
        outcome = await stage_runner.run()

        for error in outcome.errors:
            job.record_error(error)
        self.repository.save(job)
        self._checkpoint(run)
        return outcome

    def _track_remote(self, run: JobRun, remote_job: RemoteJob) -> None:
        run.job.remote_jobs.append(remote_job)
        self.repository.save(run.job)

    def _close_remote_jobs(self, run: JobRun, error: PipelineError) -> None:
        """Give every RemoteJob left polling by an interrupted run its terminal state."""
        job = run.job
        timed_out = isinstance(error, JobTimedOut)
        status = RemoteJobStatus.TIMED_OUT if timed_out else RemoteJobStatus.FAILED

        for remote_job in job.remote_jobs:
            if not remote_job.finish(status, error_message=f"abandoned: {error.code}"):
                continue
            logger.warning(f"[REMOTE] Job {job.id}: {remote_job.kind.value} closed as {status.value}")
            stage_error = RemoteStageError(
                f"{remote_job.kind.value}: {remote_job.error_message}",
                kind=remote_job.kind.value,
                timed_out=timed_out,
            )
            job.record_error(stage_error.to_error_info())

    def _publish_intermediate(self, path: str) -> str:
        return self.store.upload(path, ttl_seconds=INTERMEDIATE_TTL_SECONDS)

    def _clip_ref(self, job: MediaJob, kind: StageKind) -> Optional[str]:
        params = job.params_for(kind)
        if params is None:
            return None
        if params.clip_ref.startswith(UPLOAD_SCHEME):
            return str(resolve_upload_ref(params.clip_ref, self.acquirer.uploads_dir))
        return params.clip_ref

    async def _compose(
        self,
        run: JobRun,
        segments: List[Segment],
        outcome: RemoteOutcome,
        local_applied: List[StageKind],
    ) -> Tuple[str, List[StageKind], bool]:
        """
        Returns (artifact, stages whose effect it carries, partial).

        A failed join falls back to the best artifact built so far. For an
        unsegmented job that is the locally processed blob. A segmented job
        has no single processed blob without the join, so it falls back to
        the acquired source and is charged for no stages.
        """
        job = run.job
        media = run.media

        audio_refs = []
        if outcome.speech_ref:
            audio_refs.append((StageKind.TEXT_TO_SPEECH, outcome.speech_ref))
        if outcome.song_ref:
            audio_refs.append((StageKind.SONG_GENERATION, outcome.song_ref))

        composer = Composer(self.runner, run.work_dir)
        try:
            result = await asyncio.to_thread(
                composer.compose,
                [(s.index, outcome.segment_refs.get(s.index, s.blob_ref)) for s in segments],
                media.duration_seconds,
                media.has_audio,
                outcome.captions_text,
                job.params_for(StageKind.SUBTITLES),
                audio_refs,
                self._clip_ref(job, StageKind.INTRO),
                self._clip_ref(job, StageKind.OUTRO),
                (media.width, media.height),
            )
        except ComposeError as e:
            logger.warning(f"Job {job.id}: compose failed, delivering best available artifact: {e.message}")
            job.record_error(e.to_error_info())
            return run.best_artifact, run.best_stages, True

        for error in result.errors:
            job.record_error(error)

        video_stages = [k for k in outcome.completed_stages if k in PER_SEGMENT_STAGES]
        applied = local_applied + video_stages + result.applied_stages
        partial = result.partial or set(applied) != set(job.selected_stages)
        return result.blob_path, applied, partial

    # ============================================================
    # Terminal transitions
    # ============================================================

    async def _deliver(self, run: JobRun, artifact: str, applied: List[StageKind], partial: bool) -> None:
        """Upload, settle, then publish. The output reference is never visible before the charge."""
        job = run.job
        key = f"jobs/{job.id}/output{Path(artifact).suffix or '.mp4'}"

        try:
            url = await asyncio.to_thread(self.store.upload, artifact, key, "video/mp4", FINAL_ARTIFACT_TTL_SECONDS)
        except Exception as e:
            logger.error(f"Job {job.id}: final upload failed: {e}")
            self._fail(run, PipelineError(f"Artifact upload failed: {e}", code="UPLOAD_FAILED", stage="upload"))
            return

        status = JobStatus.PARTIALLY_COMPLETED if partial else JobStatus.COMPLETED
        job.completed_stages = list(applied)
        job.partial = partial

        try:
            self.cost_meter.settle(job, applied, delivered=True)
        except SettlementInconsistency as e:
            self._hold(run, url, e)
            return

        job.status = status
        job.output_ref = url
        job.finished_at = datetime.utcnow()
        job.advance_progress(100.0)
        self.repository.save(job)
        logger.info(f"Job {job.id} {status.value}: charged {job.cost_charged}, stages={[k.value for k in applied]}")

    def _hold(self, run: JobRun, url: str, error: SettlementInconsistency) -> None:
        """Artifact exists but the debit failed: keep it back and flag it for an operator."""
        job = run.job
        job.status = JobStatus.FAILED
        job.held_output_ref = url
        job.cost_charged = 0
        job.finished_at = datetime.utcnow()
        job.record_error(error.to_error_info(), override=True)
        self.repository.save(job)
        self.settlement_issues.record(
            job_id=job.id,
            user_id=job.user_id,
            amount=error.amount,
            held_output_ref=url,
            message=error.message,
        )

    def _fail(self, run: JobRun, error: PipelineError, record: bool = True) -> None:
        """Terminal failure with nothing delivered and nothing charged."""
        job = run.job
        logger.warning(f"Job {job.id} failed: [{error.code}] {error.message}")
        if record:
            job.record_error(error.to_error_info(), override=True)
        job.status = JobStatus.FAILED
        job.output_ref = None
        self.cost_meter.settle(job, [], delivered=False)
        job.finished_at = datetime.utcnow()
        self.repository.save(job)

    async def _fall_back(self, run: JobRun, error: PipelineError) -> None:
        """Deliver the best artifact built so far, or fail if there is none."""
        job = run.job
        self._close_remote_jobs(run, error)
        job.record_error(error.to_error_info(), override=True)

        if run.best_artifact is None:
            self._fail(run, error, record=False)
            return

        logger.info(f"Job {job.id}: falling back to {Path(run.best_artifact).name}")
        job.status = JobStatus.UPLOADING
        self.repository.save(job)
        await self._deliver(run, run.best_artifact, run.best_stages, partial=True)

    # ============================================================
    # Operator actions
    # ============================================================

    def resolve_settlement(self, job_id: str) -> MediaJob:
        """
        Retry the debit of a held job and publish its artifact on success.

        Raises:
            ValueError: Job has no open settlement issue
            SettlementInconsistency: The debit was refused again
        """
        job = self.repository.get(job_id)
        issue = self.settlement_issues.get_open_for_job(job_id)
        if job is None or issue is None or job.held_output_ref is None:
            raise ValueError(f"No open settlement issue for job {job_id}")

        self.cost_meter.settle(job, job.completed_stages, delivered=True)

        job.status = JobStatus.PARTIALLY_COMPLETED if job.partial else JobStatus.COMPLETED
        job.output_ref = job.held_output_ref
        job.held_output_ref = None
        self.repository.save(job)
        self.settlement_issues.mark_resolved(job_id)
        logger.info(f"[SETTLEMENT] Job {job_id} resolved: charged {job.cost_charged}")
        return job

    def reap_stale_jobs(self, grace_seconds: float = 300.0) -> List[str]:
        """
        Fail jobs stuck in a non-terminal status past the global timeout
        (worker crash). Nothing is charged.
        """
        reaped = []
        for job in self.repository.list_stale(datetime.utcnow() - timedelta(seconds=grace_seconds)):
            limit = self.timeout_for(job) + grace_seconds
            if job.updated_at > datetime.utcnow() - timedelta(seconds=limit):
                continue
            run = JobRun(job=job, deadline=0.0, work_dir=self.work_root / job.id)
            self._fail(run, JobTimedOut(job.id, limit))
            reaped.append(job.id)

        if reaped:
            logger.warning(f"Reaped {len(reaped)} stale job(s): {reaped}")
        return reaped


_controller: Optional[PipelineController] = None


def get_pipeline_controller() -> PipelineController:
    """Get or create the controller singleton."""
    global _controller
    if _controller is None:
        _controller = PipelineController()
    return _controller


def reset_pipeline_controller() -> None:
    """Reset controller singleton (for testing)."""
    global _controller
    _controller = None

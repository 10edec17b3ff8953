"""
Pytest configuration and fixtures for mediaflow tests.
"""
import os
import tempfile
from pathlib import Path
from typing import Dict, List, Optional, Set

import pytest

# Set test environment before importing mediaflow modules
_TEST_DATA_DIR = tempfile.mkdtemp(prefix="mediaflow_test_")
os.environ["STORAGE_BACKEND"] = "memory"
os.environ["DATA_DIR"] = _TEST_DATA_DIR
os.environ["ARTIFACT_SIGNING_SECRET"] = "test-signing-secret"
os.environ["ADMIN_SECRET"] = "test-admin-secret-for-testing-only-32chars"
os.environ["REMOTE_AI_API_KEY"] = "test-remote-key"
os.environ["REMOTE_POLL_INTERVAL_SECONDS"] = "0"
os.environ["DEBUG"] = "true"

from mediaflow.pipeline.acquirer import FetchService
from mediaflow.pipeline.errors import EngineError
from mediaflow.pipeline.ffmpeg import ProbeResult
from mediaflow.pipeline.models import RemoteJobStatus, StageKind
from mediaflow.providers.exceptions import ProviderError
from mediaflow.providers.remote.base import BaseRemoteClient, RemoteStatusReport
from mediaflow.storage.base import ArtifactStore

SAMPLE_SRT = (
    "1\n00:00:00,000 --> 00:00:02,000\nHello world\n\n"
    "2\n00:00:02,000 --> 00:00:04,000\nSecond line\n"
)


def make_probe(duration: float = 125.0, has_audio: bool = True, width: int = 1280, height: int = 720) -> ProbeResult:
    return ProbeResult(
        duration_seconds=duration,
        size_bytes=4096,
        has_audio=has_audio,
        width=width,
        height=height,
        format_name="mov,mp4,m4a,3gp,3g2,mj2",
    )


class FakeRunner:
    """
    Stands in for FFmpegRunner. Every ffmpeg call writes a small file at its
    output path (the last argument) and is recorded.
    """

    def __init__(self, probe: Optional[ProbeResult] = None, fail_when=None):
        self.calls: List[List[str]] = []
        self.probe_result = probe or make_probe()
        self.probes: Dict[str, ProbeResult] = {}
        self.fail_when = fail_when
        self.probe_error: Optional[EngineError] = None

    def run(self, args, timeout=None) -> None:
        args = [str(a) for a in args]
        self.calls.append(args)
        if self.fail_when and self.fail_when(args):
            raise EngineError("ffmpeg exited with code 1", stderr_tail="simulated failure")
        output = Path(args[-1])
        output.parent.mkdir(parents=True, exist_ok=True)
        output.write_bytes(b"\x00" * 64)

    def probe(self, path, timeout: int = 30) -> ProbeResult:
        if self.probe_error:
            raise self.probe_error
        return self.probes.get(Path(path).name, self.probe_result)

    def calls_with(self, token: str) -> List[List[str]]:
        return [c for c in self.calls if any(token in a for a in c)]


class FakeFetchService(FetchService):
    """Writes a placeholder source file instead of downloading."""

    def __init__(self, error: Optional[Exception] = None):
        self.error = error
        self.urls: List[str] = []

    def fetch(self, url: str, dest_dir: Path) -> str:
        self.urls.append(url)
        if self.error:
            raise self.error
        dest = Path(dest_dir) / "source.mp4"
        dest.write_bytes(b"\x01" * 1024)
        return str(dest)


class FakeRemoteClient(BaseRemoteClient):
    """
    Scripted remote AI service.

    Args:
        polls_before_done: PROCESSING answers before the terminal one
        failures: Kinds that end FAILED
        never_finish: Kinds that stay PROCESSING forever
        submit_errors: Kinds whose submission is rejected
        failing_urls: Inputs whose video_url ends FAILED
    """

    def __init__(
        self,
        polls_before_done: int = 0,
        failures: Optional[Set[StageKind]] = None,
        never_finish: Optional[Set[StageKind]] = None,
        submit_errors: Optional[Set[StageKind]] = None,
        failing_urls: Optional[Set[str]] = None,
        captions: str = SAMPLE_SRT,
    ):
        self.polls_before_done = polls_before_done
        self.failures = failures or set()
        self.never_finish = never_finish or set()
        self.submit_errors = submit_errors or set()
        self.failing_urls = failing_urls or set()
        self.captions = captions
        self.submissions: List[tuple] = []
        self.status_calls = 0
        self._pending: Dict[str, list] = {}

    @property
    def name(self) -> str:
        return "fake-remote"

    async def submit(self, kind, payload) -> str:
        if kind in self.submit_errors:
            raise ProviderError(self.name, f"{kind.value} rejected")
        external_id = f"ext-{len(self.submissions) + 1}"
        self.submissions.append((kind, dict(payload), external_id))
        failing = payload.get("video_url") in self.failing_urls
        self._pending[external_id] = [kind, self.polls_before_done, failing]
        return external_id

    async def get_status(self, external_job_id: str) -> RemoteStatusReport:
        self.status_calls += 1
        kind, remaining, failing = self._pending[external_job_id]
        if kind in self.never_finish:
            return RemoteStatusReport(status=RemoteJobStatus.PROCESSING)
        if remaining > 0:
            self._pending[external_job_id][1] -= 1
            return RemoteStatusReport(status=RemoteJobStatus.PROCESSING)
        if kind in self.failures or failing:
            return RemoteStatusReport(status=RemoteJobStatus.FAILED, error="model error")
        return self.result_for(kind, external_job_id)

    def result_for(self, kind: StageKind, external_job_id: str) -> RemoteStatusReport:
        if kind == StageKind.SUBTITLES:
            return RemoteStatusReport(status=RemoteJobStatus.COMPLETED, result_text=self.captions)
        suffix = "mp3" if kind in (StageKind.TEXT_TO_SPEECH, StageKind.SONG_GENERATION) else "mp4"
        return RemoteStatusReport(
            status=RemoteJobStatus.COMPLETED,
            result_ref=f"https://remote.test/{external_job_id}.{suffix}",
        )

    def submitted(self, kind: StageKind) -> List[dict]:
        return [payload for k, payload, _ in self.submissions if k == kind]

    def submitted_kinds(self) -> List[StageKind]:
        return [k for k, _, _ in self.submissions]


class FakeStore(ArtifactStore):
    """Records uploads in memory and hands out predictable URLs."""

    def __init__(self, fail_on_key_prefix: Optional[str] = None):
        self.objects: Dict[str, int] = {}
        self.ttls: Dict[str, int] = {}
        self.fail_on_key_prefix = fail_on_key_prefix

    @property
    def name(self) -> str:
        return "fake"

    def put(self, path: str, key: str, content_type: str) -> None:
        if self.fail_on_key_prefix and key.startswith(self.fail_on_key_prefix):
            raise OSError(f"store unavailable for {key}")
        self.objects[key] = Path(path).stat().st_size

    def signed_url(self, key: str, ttl_seconds: Optional[int] = None) -> str:
        self.ttls[key] = ttl_seconds
        return f"https://store.test/{key}?ttl={ttl_seconds}"


@pytest.fixture(autouse=True)
def reset_singletons():
    """Fresh in-memory repositories and services for every test."""
    from mediaflow.auth.repository import reset_repository
    from mediaflow.credits.service import reset_credit_service
    from mediaflow.persistence import (
        reset_ledger_repository,
        reset_media_job_repository,
        reset_settlement_issue_repository,
    )
    from mediaflow.pipeline.controller import reset_pipeline_controller
    from mediaflow.storage import reset_artifact_store

    def reset():
        reset_repository()
        reset_ledger_repository()
        reset_media_job_repository()
        reset_settlement_issue_repository()
        reset_credit_service()
        reset_pipeline_controller()
        reset_artifact_store()

    reset()
    yield
    reset()


@pytest.fixture
def temp_dir():
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def fake_runner():
    return FakeRunner()


@pytest.fixture
def fake_remote():
    return FakeRemoteClient()


@pytest.fixture
def fake_fetch():
    return FakeFetchService()


@pytest.fixture
def fake_store():
    return FakeStore()


@pytest.fixture
def mock_user():
    """Free-plan user with 100 credits, stored in the repository."""
    from mediaflow.auth.repository import get_user_repository

    repo = get_user_repository()
    user = repo.get_or_create("test-user-123")
    user.credits = 100
    return repo.save(user)


@pytest.fixture
def mock_unlimited_user():
    """Enterprise user with unlimited credits."""
    from mediaflow.auth.models import Plan
    from mediaflow.auth.repository import get_user_repository

    repo = get_user_repository()
    return repo.get_or_create("test-unlimited-user", plan=Plan.ENTERPRISE)


@pytest.fixture
def make_controller(temp_dir, fake_runner, fake_remote, fake_fetch, fake_store):
    """Factory for a PipelineController wired to fakes; keyword overrides replace any part."""
    from mediaflow.pipeline.acquirer import MediaAcquirer
    from mediaflow.pipeline.controller import PipelineController
    from mediaflow.pipeline.remote import RemoteJobOrchestrator

    uploads_dir = temp_dir / "uploads"
    uploads_dir.mkdir()

    def _make(
        runner=None,
        remote_client=None,
        fetch_service=None,
        store=None,
        max_attempts: int = 5,
        poll_interval: float = 0.0,
        job_timeout_seconds: Optional[float] = None,
    ):
        runner = runner or fake_runner
        client = remote_client or fake_remote
        acquirer = MediaAcquirer(
            fetch_service=fetch_service or fake_fetch,
            runner=runner,
            uploads_dir=uploads_dir,
        )
        orchestrator = RemoteJobOrchestrator(client, poll_interval=poll_interval, max_attempts=max_attempts)
        return PipelineController(
            acquirer=acquirer,
            runner=runner,
            remote_client=client,
            orchestrator=orchestrator,
            store=store or fake_store,
            work_root=temp_dir / "work",
            segment_threshold_seconds=60.0,
            job_timeout_seconds=job_timeout_seconds,
        )

    return _make


def job_spec(*stages, source_ref: str = "https://cdn.test/clip.mp4", declared: Optional[float] = 125.0, **extra):
    """Build a JobSpec from (kind, params) pairs or bare kinds."""
    from mediaflow.pipeline.models import JobSpec

    selections = []
    for stage in stages:
        kind, params = stage if isinstance(stage, tuple) else (stage, {})
        selections.append({"kind": kind, "params": params})

    return JobSpec.model_validate({
        "source_mode": extra.pop("source_mode", "remote_url"),
        "source_ref": source_ref,
        "stages": selections,
        "declared_duration_seconds": declared,
        **extra,
    })


@pytest.fixture
def build_spec():
    return job_spec


@pytest.fixture
def runner_factory():
    return FakeRunner


@pytest.fixture
def remote_factory():
    return FakeRemoteClient


@pytest.fixture
def fetch_factory():
    return FakeFetchService


@pytest.fixture
def sample_srt():
    return SAMPLE_SRT


@pytest.fixture
def probe_factory():
    return make_probe

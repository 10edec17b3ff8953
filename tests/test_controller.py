"""
End-to-end tests for the pipeline controller with fake engine, remote
service, fetcher and store.
"""
import asyncio
from datetime import datetime, timedelta
from pathlib import Path

import pytest


def _submit_and_run(controller, spec, user):
    job_id = controller.submit(spec, user)
    return asyncio.run(controller.run(job_id))


class TestHappyPath:

    def test_long_source_with_subtitles_and_speech(self, make_controller, build_spec, mock_user, fake_runner, fake_remote, fake_store):
        """125 s source: three segments, captions, narration, 17 credits."""
        from mediaflow.credits.service import get_credit_service
        from mediaflow.pipeline.models import JobStatus, StageKind

        controller = make_controller()
        spec = build_spec(StageKind.SUBTITLES, StageKind.TEXT_TO_SPEECH)

        job = _submit_and_run(controller, spec, mock_user)

        assert job.status == JobStatus.COMPLETED
        assert [s.duration_seconds for s in job.segments] == [60.0, 60.0, 5.0]
        assert job.completed_stages == [StageKind.SUBTITLES, StageKind.TEXT_TO_SPEECH]
        assert job.cost_estimate == 17
        assert job.cost_charged == 17
        assert job.progress_percent == 100.0
        assert job.output_ref == f"https://store.test/jobs/{job.id}/output.mp4?ttl={7 * 24 * 3600}"
        assert get_credit_service().get_balance(mock_user.user_id) == 83

        concat = fake_runner.calls_with("concat")[0]
        listed = Path(concat[concat.index("-i") + 1]).read_text()
        assert listed.index("seg000") < listed.index("seg001") < listed.index("seg002")

        assert fake_remote.submitted_kinds() == [StageKind.SUBTITLES, StageKind.TEXT_TO_SPEECH]
        assert {r.kind for r in job.remote_jobs} == {StageKind.SUBTITLES, StageKind.TEXT_TO_SPEECH}
        # Intermediate URLs are short-lived
        assert 3600 in fake_store.ttls.values()

    def test_stored_job_matches_returned_job(self, make_controller, build_spec, mock_user):
        from mediaflow.pipeline.models import StageKind

        controller = make_controller()
        job = _submit_and_run(controller, build_spec(StageKind.SUBTITLES), mock_user)

        stored = controller.get_status(job.id)
        assert stored.status == job.status
        assert stored.output_ref == job.output_ref
        assert stored.settled is True

    def test_video_stages_replace_every_segment(self, make_controller, build_spec, mock_user, fake_remote, fake_runner):
        from mediaflow.pipeline.models import JobStatus, StageKind

        controller = make_controller()
        job = _submit_and_run(controller, build_spec((StageKind.OBJECT_REMOVAL, {})), mock_user)

        assert job.status == JobStatus.COMPLETED
        assert len(fake_remote.submitted(StageKind.OBJECT_REMOVAL)) == 3
        concat = fake_runner.calls_with("concat")[0]
        listed = Path(concat[concat.index("-i") + 1]).read_text()
        assert listed.count("https://remote.test/") == 3

    def test_short_source_is_not_segmented(self, make_controller, build_spec, mock_user, runner_factory, probe_factory):
        from mediaflow.pipeline.models import JobStatus, StageKind

        runner = runner_factory(probe=probe_factory(duration=30.0))
        controller = make_controller(runner=runner)

        job = _submit_and_run(controller, build_spec(StageKind.FLIP, declared=30.0), mock_user)

        assert job.status == JobStatus.COMPLETED
        assert job.segments == []
        assert runner.calls_with("-ss") == []
        assert job.cost_charged == 5

    def test_unlimited_user_is_never_blocked(self, make_controller, build_spec, mock_unlimited_user):
        from mediaflow.pipeline.models import JobStatus, StageKind

        controller = make_controller()
        job = _submit_and_run(
            controller,
            build_spec(StageKind.SUBTITLES, (StageKind.SONG_GENERATION, {"prompt": "x"})),
            mock_unlimited_user,
        )

        assert job.status == JobStatus.COMPLETED


class TestSubmit:

    def test_idempotency_key_returns_same_job(self, make_controller, build_spec, mock_user):
        from mediaflow.pipeline.models import StageKind

        controller = make_controller()
        spec = build_spec(StageKind.FLIP, idempotency_key="abc")

        first = controller.submit(spec, mock_user)
        second = controller.submit(spec, mock_user)

        assert first == second
        assert len(controller.list_jobs(mock_user.user_id)) == 1

    def test_declared_duration_above_cap(self, make_controller, build_spec, mock_user):
        from mediaflow.pipeline.errors import ValidationError
        from mediaflow.pipeline.models import StageKind

        controller = make_controller()

        with pytest.raises(ValidationError) as exc_info:
            controller.submit(build_spec(StageKind.FLIP, declared=200.0), mock_user)

        assert exc_info.value.code == "DURATION_TOO_LONG"

    def test_quote_must_be_covered(self, make_controller, build_spec, mock_user):
        from mediaflow.credits.exceptions import InsufficientBalance
        from mediaflow.pipeline.models import StageKind

        mock_user.credits = 5
        controller = make_controller()

        with pytest.raises(InsufficientBalance) as exc_info:
            controller.submit(build_spec(StageKind.SUBTITLES), mock_user)

        assert exc_info.value.required == 14

    def test_unknown_duration_is_quoted_at_cap(self, make_controller, build_spec, mock_user):
        from mediaflow.pipeline.models import StageKind

        controller = make_controller()
        job_id = controller.submit(build_spec(StageKind.FLIP, declared=None), mock_user)

        assert controller.get_status(job_id).cost_estimate == 13

    def test_quote_is_lowered_to_real_duration(self, make_controller, build_spec, mock_user, runner_factory, probe_factory):
        from mediaflow.pipeline.models import StageKind

        controller = make_controller(runner=runner_factory(probe=probe_factory(duration=30.0)))

        job = _submit_and_run(controller, build_spec(StageKind.FLIP, declared=None), mock_user)

        assert job.cost_estimate == 5
        assert job.cost_charged == 5

    def test_upload_must_exist(self, make_controller, build_spec, mock_user):
        from mediaflow.pipeline.errors import ValidationError
        from mediaflow.pipeline.models import StageKind

        controller = make_controller()
        spec = build_spec(StageKind.FLIP, source_mode="direct_upload", source_ref="upload://missing.mp4")

        with pytest.raises(ValidationError) as exc_info:
            controller.submit(spec, mock_user)

        assert exc_info.value.code == "UPLOAD_NOT_FOUND"

    def test_upload_is_probed_at_submission(self, make_controller, build_spec, mock_user, runner_factory, probe_factory):
        from mediaflow.pipeline.models import JobStatus, StageKind

        controller = make_controller(runner=runner_factory(probe=probe_factory(duration=30.0)))
        (controller.acquirer.uploads_dir / "clip.mp4").write_bytes(b"\x00" * 256)
        spec = build_spec(StageKind.FLIP, source_mode="direct_upload", source_ref="upload://clip.mp4", declared=None)

        job = _submit_and_run(controller, spec, mock_user)

        assert job.cost_estimate == 5
        assert job.status == JobStatus.COMPLETED


class TestFallbacks:

    def test_acquisition_failure_charges_nothing(self, make_controller, build_spec, mock_user, fetch_factory):
        from mediaflow.credits.service import get_credit_service
        from mediaflow.pipeline.errors import AcquisitionError
        from mediaflow.pipeline.models import JobStatus, StageKind

        fetch = fetch_factory(error=AcquisitionError("HTTP 404", code="SOURCE_NOT_FOUND"))
        controller = make_controller(fetch_service=fetch)

        job = _submit_and_run(controller, build_spec(StageKind.FLIP), mock_user)

        assert job.status == JobStatus.FAILED
        assert job.cost_charged == 0
        assert job.output_ref is None
        assert job.last_error.code == "SOURCE_NOT_FOUND"
        assert get_credit_service().get_balance(mock_user.user_id) == 100

    def test_compose_failure_delivers_source(self, make_controller, build_spec, mock_user, runner_factory):
        from mediaflow.pipeline.models import JobStatus, StageKind

        runner = runner_factory(fail_when=lambda args: "concat" in args)
        controller = make_controller(runner=runner)

        job = _submit_and_run(controller, build_spec(StageKind.SUBTITLES, StageKind.TEXT_TO_SPEECH), mock_user)

        assert job.status == JobStatus.PARTIALLY_COMPLETED
        assert job.partial is True
        assert job.completed_stages == []
        assert job.cost_charged == 12
        assert job.last_error.code == "COMPOSE_ERROR"
        assert job.output_ref is not None

    def test_remote_stage_failure_is_isolated(self, make_controller, build_spec, mock_user, runner_factory, probe_factory, remote_factory):
        from mediaflow.pipeline.models import JobStatus, StageKind

        remote = remote_factory(failures={StageKind.SONG_GENERATION})
        controller = make_controller(
            runner=runner_factory(probe=probe_factory(duration=30.0)),
            remote_client=remote,
        )
        spec = build_spec(
            StageKind.SUBTITLES,
            StageKind.TEXT_TO_SPEECH,
            (StageKind.SONG_GENERATION, {"prompt": "upbeat"}),
            declared=30.0,
        )

        job = _submit_and_run(controller, spec, mock_user)

        assert job.status == JobStatus.PARTIALLY_COMPLETED
        assert job.completed_stages == [StageKind.SUBTITLES, StageKind.TEXT_TO_SPEECH]
        assert job.cost_estimate == 17
        assert job.cost_charged == 9
        assert job.last_error.stage == "song_generation"

    def test_local_failure_keeps_the_source(self, make_controller, build_spec, mock_user, runner_factory, probe_factory):
        from mediaflow.pipeline.models import JobStatus, StageKind

        runner = runner_factory(
            probe=probe_factory(duration=30.0),
            fail_when=lambda args: any("hflip" in a for a in args),
        )
        controller = make_controller(runner=runner)

        job = _submit_and_run(controller, build_spec(StageKind.FLIP, declared=30.0), mock_user)

        assert job.status == JobStatus.PARTIALLY_COMPLETED
        assert job.completed_stages == []
        assert job.cost_charged == 4
        assert job.last_error.code == "ENGINE_ERROR"

    def test_segmentation_failure_continues_unsegmented(self, make_controller, build_spec, mock_user, runner_factory):
        from mediaflow.pipeline.models import JobStatus, StageKind

        runner = runner_factory(fail_when=lambda args: "-ss" in args)
        controller = make_controller(runner=runner)

        job = _submit_and_run(controller, build_spec(StageKind.SUBTITLES), mock_user)

        assert job.status == JobStatus.COMPLETED
        assert job.segments == []
        assert job.cost_charged == 14
        assert "SEGMENTATION_ERROR" in [e.code for e in job.stage_errors]

    def test_timeout_delivers_best_artifact(self, make_controller, build_spec, mock_user, runner_factory, probe_factory, remote_factory):
        from mediaflow.pipeline.models import JobStatus, StageKind

        remote = remote_factory(never_finish={StageKind.SUBTITLES})
        controller = make_controller(
            runner=runner_factory(probe=probe_factory(duration=30.0)),
            remote_client=remote,
            max_attempts=100000,
            poll_interval=0.01,
            job_timeout_seconds=1.0,
        )

        job = _submit_and_run(controller, build_spec(StageKind.FLIP, StageKind.SUBTITLES, declared=30.0), mock_user)

        assert job.status == JobStatus.PARTIALLY_COMPLETED
        assert job.completed_stages == [StageKind.FLIP]
        assert job.cost_charged == 5
        assert job.last_error.code == "JOB_TIMED_OUT"

    def test_global_timeout_closes_in_flight_remote_jobs(self, make_controller, build_spec, mock_user, runner_factory, probe_factory, remote_factory):
        from mediaflow.pipeline.models import RemoteJobStatus, StageKind

        remote = remote_factory(never_finish={StageKind.SUBTITLES})
        controller = make_controller(
            runner=runner_factory(probe=probe_factory(duration=30.0)),
            remote_client=remote,
            max_attempts=100000,
            poll_interval=0.01,
            job_timeout_seconds=1.0,
        )

        job = _submit_and_run(controller, build_spec(StageKind.FLIP, StageKind.SUBTITLES, declared=30.0), mock_user)

        assert len(remote.submissions) == 1
        assert [(r.kind, r.status) for r in job.remote_jobs] == [(StageKind.SUBTITLES, RemoteJobStatus.TIMED_OUT)]
        assert job.remote_jobs[0].finished_at is not None
        assert ("REMOTE_STAGE_TIMED_OUT", "subtitles") in [(e.code, e.stage) for e in job.stage_errors]
        assert job.last_error.code == "JOB_TIMED_OUT"

        stored = controller.get_status(job.id)
        assert [r.status for r in stored.remote_jobs] == [RemoteJobStatus.TIMED_OUT]

    def test_stage_timeout_charges_nothing_and_spares_siblings(self, make_controller, build_spec, mock_user, runner_factory, probe_factory, remote_factory):
        """Subtitles exhaust their poll budget while the song completes."""
        from mediaflow.pipeline.models import JobStatus, RemoteJobStatus, StageKind

        remote = remote_factory(never_finish={StageKind.SUBTITLES})
        controller = make_controller(
            runner=runner_factory(probe=probe_factory(duration=30.0)),
            remote_client=remote,
            max_attempts=3,
        )
        spec = build_spec(StageKind.SUBTITLES, (StageKind.SONG_GENERATION, {"prompt": "lofi"}), declared=30.0)

        job = _submit_and_run(controller, spec, mock_user)

        assert job.status == JobStatus.PARTIALLY_COMPLETED
        assert job.completed_stages == [StageKind.SONG_GENERATION]
        assert job.cost_estimate == 14
        # base 4 + song 8, nothing for subtitles
        assert job.cost_charged == 12
        subtitles = job.remote_jobs_for(StageKind.SUBTITLES)
        assert [(r.status, r.attempts) for r in subtitles] == [(RemoteJobStatus.TIMED_OUT, 3)]
        assert job.remote_jobs_for(StageKind.SONG_GENERATION)[0].status == RemoteJobStatus.COMPLETED
        assert ("REMOTE_STAGE_TIMED_OUT", "subtitles") in [(e.code, e.stage) for e in job.stage_errors]


class TestCancel:

    def test_cancel_before_run(self, make_controller, build_spec, mock_user):
        from mediaflow.pipeline.models import JobStatus, StageKind

        controller = make_controller()
        job_id = controller.submit(build_spec(StageKind.FLIP), mock_user)

        assert controller.cancel(job_id) is True
        job = asyncio.run(controller.run(job_id))

        assert job.status == JobStatus.FAILED
        assert job.cost_charged == 0
        assert job.last_error.code == "JOB_CANCELLED"

    def test_cancel_during_remote_polling(self, make_controller, build_spec, mock_user, runner_factory, probe_factory, remote_factory):
        """Polling stops at the next check; the interrupted stage is not charged."""
        from mediaflow.credits.service import get_credit_service
        from mediaflow.pipeline.models import JobStatus, RemoteJobStatus, StageKind

        remote = remote_factory(never_finish={StageKind.SUBTITLES})
        controller = make_controller(
            runner=runner_factory(probe=probe_factory(duration=30.0)),
            remote_client=remote,
            max_attempts=50,
        )
        job_id = controller.submit(build_spec(StageKind.FLIP, StageKind.SUBTITLES, declared=30.0), mock_user)
        get_status = remote.get_status

        async def get_status_then_cancel(external_job_id):
            controller.cancel(job_id)
            return await get_status(external_job_id)

        remote.get_status = get_status_then_cancel

        job = asyncio.run(controller.run(job_id))

        assert remote.status_calls == 1
        assert job.status == JobStatus.PARTIALLY_COMPLETED
        assert job.completed_stages == [StageKind.FLIP]
        assert job.cost_charged == 5
        assert job.last_error.code == "JOB_CANCELLED"
        assert [(r.kind, r.status, r.attempts) for r in job.remote_jobs] == [
            (StageKind.SUBTITLES, RemoteJobStatus.FAILED, 1),
        ]
        assert get_credit_service().get_balance(mock_user.user_id) == 95

    def test_cancel_finished_job_is_refused(self, make_controller, build_spec, mock_user):
        from mediaflow.pipeline.models import StageKind

        controller = make_controller()
        job = _submit_and_run(controller, build_spec(StageKind.FLIP), mock_user)

        assert controller.cancel(job.id) is False
        assert controller.cancel("missing") is False

    def test_running_terminal_job_is_a_no_op(self, make_controller, build_spec, mock_user, fake_runner):
        from mediaflow.pipeline.models import StageKind

        controller = make_controller()
        job = _submit_and_run(controller, build_spec(StageKind.FLIP), mock_user)
        calls = len(fake_runner.calls)

        again = asyncio.run(controller.run(job.id))

        assert again.cost_charged == job.cost_charged
        assert len(fake_runner.calls) == calls


class TestSettlement:

    def test_refused_debit_holds_artifact_until_resolved(self, make_controller, build_spec, mock_user):
        from mediaflow.auth.repository import get_user_repository
        from mediaflow.credits.service import get_credit_service
        from mediaflow.pipeline.models import JobStatus, StageKind

        controller = make_controller()
        job_id = controller.submit(build_spec(StageKind.SUBTITLES, StageKind.TEXT_TO_SPEECH), mock_user)

        # Balance spent elsewhere between admission and settlement
        mock_user.credits = 0
        get_user_repository().save(mock_user)

        job = asyncio.run(controller.run(job_id))

        assert job.status == JobStatus.FAILED
        assert job.output_ref is None
        assert job.held_output_ref is not None
        assert job.cost_charged == 0
        assert job.last_error.code == "SETTLEMENT_INCONSISTENCY"
        assert [i.job_id for i in controller.settlement_issues.list_open()] == [job_id]

        get_credit_service().add_credits(mock_user.user_id, 50)
        resolved = controller.resolve_settlement(job_id)

        assert resolved.status == JobStatus.COMPLETED
        assert resolved.cost_charged == 17
        assert resolved.output_ref is not None
        assert resolved.held_output_ref is None
        assert controller.settlement_issues.list_open() == []
        assert get_credit_service().get_balance(mock_user.user_id) == 33

    def test_resolve_without_issue(self, make_controller):
        controller = make_controller()

        with pytest.raises(ValueError):
            controller.resolve_settlement("missing")


class TestReaper:

    def test_stale_job_is_failed_without_charge(self, make_controller, build_spec, mock_user):
        from mediaflow.pipeline.models import JobStatus, StageKind

        controller = make_controller()
        job_id = controller.submit(build_spec(StageKind.FLIP), mock_user)
        controller.repository._jobs[job_id].updated_at = datetime.utcnow() - timedelta(days=1)

        reaped = controller.reap_stale_jobs()

        job = controller.get_status(job_id)
        assert reaped == [job_id]
        assert job.status == JobStatus.FAILED
        assert job.cost_charged == 0
        assert job.last_error.code == "JOB_TIMED_OUT"

    def test_recent_job_is_left_alone(self, make_controller, build_spec, mock_user):
        from mediaflow.pipeline.models import StageKind

        controller = make_controller()
        controller.submit(build_spec(StageKind.FLIP), mock_user)

        assert controller.reap_stale_jobs() == []

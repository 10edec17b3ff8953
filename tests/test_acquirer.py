"""
Tests for the Media Acquirer.
"""
import pytest


@pytest.fixture
def acquirer(temp_dir, fake_runner, fake_fetch):
    from mediaflow.pipeline.acquirer import MediaAcquirer

    uploads = temp_dir / "uploads"
    uploads.mkdir()
    return MediaAcquirer(
        fetch_service=fake_fetch,
        runner=fake_runner,
        uploads_dir=uploads,
        max_upload_bytes=10_000,
        allowed_extensions=("mp4", "mov"),
    )


class TestUploadValidation:

    def test_oversized_upload_is_rejected(self, acquirer):
        from mediaflow.pipeline.errors import ValidationError

        with pytest.raises(ValidationError) as exc_info:
            acquirer.validate_upload("clip.mp4", 10_001)

        assert exc_info.value.code == "UPLOAD_TOO_LARGE"

    def test_unknown_extension_is_rejected(self, acquirer):
        from mediaflow.pipeline.errors import ValidationError

        with pytest.raises(ValidationError) as exc_info:
            acquirer.validate_upload("clip.exe", 100)

        assert exc_info.value.code == "UNSUPPORTED_CONTAINER"

    def test_extension_check_is_case_insensitive(self, acquirer):
        acquirer.validate_upload("CLIP.MOV", 100)

    @pytest.mark.parametrize("ref", ["upload://../etc/passwd", "upload://a/b.mp4", "upload://", "upload://.hidden"])
    def test_upload_ref_traversal_is_rejected(self, temp_dir, ref):
        from mediaflow.pipeline.acquirer import resolve_upload_ref
        from mediaflow.pipeline.errors import ValidationError

        with pytest.raises(ValidationError):
            resolve_upload_ref(ref, temp_dir)

    @pytest.mark.parametrize("url", ["ftp://host/clip.mp4", "file:///etc/passwd", "not a url"])
    def test_non_http_url_is_rejected(self, url):
        from mediaflow.pipeline.acquirer import validate_remote_url
        from mediaflow.pipeline.errors import ValidationError

        with pytest.raises(ValidationError):
            validate_remote_url(url)


class TestAcquire:

    def test_remote_url_is_fetched_and_probed(self, acquirer, fake_fetch, temp_dir):
        from mediaflow.pipeline.models import SourceMode

        media = acquirer.acquire(SourceMode.REMOTE_URL, "https://cdn.test/clip.mp4", temp_dir / "job")

        assert fake_fetch.urls == ["https://cdn.test/clip.mp4"]
        assert media.duration_seconds == 125.0
        assert media.size_bytes == 4096
        assert media.has_audio is True
        assert (media.width, media.height) == (1280, 720)

    def test_upload_is_copied_into_work_dir(self, acquirer, temp_dir):
        from mediaflow.pipeline.models import SourceMode

        (acquirer.uploads_dir / "abc.mp4").write_bytes(b"\x01" * 500)

        media = acquirer.acquire(SourceMode.DIRECT_UPLOAD, "upload://abc.mp4", temp_dir / "job")

        assert media.blob_path == str(temp_dir / "job" / "source.mp4")
        assert (acquirer.uploads_dir / "abc.mp4").exists()

    def test_missing_upload_is_an_acquisition_error(self, acquirer, temp_dir):
        from mediaflow.pipeline.errors import AcquisitionError
        from mediaflow.pipeline.models import SourceMode

        with pytest.raises(AcquisitionError) as exc_info:
            acquirer.acquire(SourceMode.DIRECT_UPLOAD, "upload://missing.mp4", temp_dir / "job")

        assert exc_info.value.code == "UPLOAD_NOT_FOUND"

    def test_undecodable_source(self, acquirer, fake_runner, temp_dir):
        from mediaflow.pipeline.errors import AcquisitionError, EngineError
        from mediaflow.pipeline.models import SourceMode

        fake_runner.probe_error = EngineError("ffprobe failed", code="PROBE_FAILED")

        with pytest.raises(AcquisitionError) as exc_info:
            acquirer.acquire(SourceMode.REMOTE_URL, "https://cdn.test/clip.mp4", temp_dir / "job")

        assert exc_info.value.code == "SOURCE_UNDECODABLE"

    def test_audio_only_file_is_rejected(self, acquirer, fake_runner, temp_dir):
        from mediaflow.pipeline.errors import AcquisitionError
        from mediaflow.pipeline.ffmpeg import ProbeResult
        from mediaflow.pipeline.models import SourceMode

        fake_runner.probe_result = ProbeResult(
            duration_seconds=30.0, size_bytes=100, has_audio=True,
            width=None, height=None, format_name="mp3",
        )

        with pytest.raises(AcquisitionError):
            acquirer.acquire(SourceMode.REMOTE_URL, "https://cdn.test/song.mp3", temp_dir / "job")

    def test_unknown_duration_is_rejected(self, acquirer, fake_runner, temp_dir):
        from mediaflow.pipeline.errors import AcquisitionError
        from mediaflow.pipeline.ffmpeg import ProbeResult
        from mediaflow.pipeline.models import SourceMode

        fake_runner.probe_result = ProbeResult(
            duration_seconds=None, size_bytes=100, has_audio=False,
            width=640, height=360, format_name="mov,mp4,m4a",
        )

        with pytest.raises(AcquisitionError) as exc_info:
            acquirer.acquire(SourceMode.REMOTE_URL, "https://cdn.test/live.mp4", temp_dir / "job")

        assert exc_info.value.code == "UNKNOWN_DURATION"


class TestFetchRouting:

    def test_platform_links_use_the_platform_fetcher(self, temp_dir, fetch_factory):
        from mediaflow.pipeline.acquirer import AutoFetchService

        platform, direct = fetch_factory(), fetch_factory()
        service = AutoFetchService(platform=platform, direct=direct)

        service.fetch("https://www.youtube.com/watch?v=abc", temp_dir)
        service.fetch("https://cdn.example.com/clip.mp4", temp_dir)

        assert platform.urls == ["https://www.youtube.com/watch?v=abc"]
        assert direct.urls == ["https://cdn.example.com/clip.mp4"]

    @pytest.mark.parametrize("message,code", [
        ("ERROR: Private video. Sign in if you've been granted access", "SOURCE_PRIVATE"),
        ("ERROR: Unsupported URL: https://example.com", "SOURCE_UNSUPPORTED"),
        ("ERROR: Video unavailable", "SOURCE_UNAVAILABLE"),
    ])
    def test_classify_download_error(self, message, code):
        from mediaflow.pipeline.acquirer import classify_download_error

        assert classify_download_error(message)[1] == code

"""
Tests for configuration management.
"""
import os


class TestPathsConfig:
    """Tests for PathsConfig auto-detection."""

    def test_custom_data_dir_from_env(self, temp_dir, monkeypatch):
        """DATA_DIR env var should override default."""
        monkeypatch.setenv("DATA_DIR", str(temp_dir))
        monkeypatch.delenv("WORK_DIR", raising=False)
        monkeypatch.delenv("UPLOADS_DIR", raising=False)

        from mediaflow.config import PathsConfig

        paths = PathsConfig.detect()
        assert paths.data_dir == temp_dir
        assert paths.work_dir == temp_dir / "work"
        assert paths.uploads_dir.exists()

    def test_ffmpeg_path_detection(self):
        """FFmpeg path should be detected or fall back to the bare name."""
        from mediaflow.config import PathsConfig

        path = PathsConfig._find_binary("FFMPEG_PATH_UNSET_FOR_TEST", "ffmpeg")
        assert path == "ffmpeg" or os.path.exists(path)

    def test_explicit_binary_path(self, temp_dir, monkeypatch):
        from mediaflow.config import PathsConfig

        binary = temp_dir / "ffprobe"
        binary.write_text("")
        monkeypatch.setenv("FFPROBE_PATH", str(binary))

        assert PathsConfig._find_binary("FFPROBE_PATH", "ffprobe") == str(binary)


class TestLoadConfig:

    def test_defaults(self, monkeypatch):
        for name in ("SEGMENT_THRESHOLD_SECONDS", "MAX_SOURCE_DURATION_SECONDS", "MAX_UPLOAD_MB", "JOB_TIMEOUT_SECONDS"):
            monkeypatch.delenv(name, raising=False)

        from mediaflow.config import load_config

        config = load_config()
        assert config.pipeline.segment_threshold_seconds == 60.0
        assert config.pipeline.max_source_duration_seconds == 180.0
        assert config.pipeline.max_upload_bytes == 25 * 1024 * 1024
        assert config.pipeline.job_timeout_seconds is None

    def test_env_overrides(self, monkeypatch):
        monkeypatch.setenv("SEGMENT_THRESHOLD_SECONDS", "30")
        monkeypatch.setenv("MAX_UPLOAD_MB", "5")
        monkeypatch.setenv("JOB_TIMEOUT_SECONDS", "900")
        monkeypatch.setenv("REMOTE_MAX_POLL_ATTEMPTS", "7")

        from mediaflow.config import load_config

        config = load_config()
        assert config.pipeline.segment_threshold_seconds == 30.0
        assert config.pipeline.max_upload_bytes == 5 * 1024 * 1024
        assert config.pipeline.job_timeout_seconds == 900
        assert config.remote.max_poll_attempts == 7

    def test_non_positive_threshold_is_rejected(self, monkeypatch):
        import pytest

        monkeypatch.setenv("SEGMENT_THRESHOLD_SECONDS", "0")

        from mediaflow.config import load_config

        with pytest.raises(ValueError):
            load_config()

    def test_validate_hides_keys(self):
        from mediaflow.config import load_config

        status = load_config().validate()
        assert status["remote"]["api_key_configured"] is True
        assert "test-remote-key" not in str(status)
        assert status["database"]["backend"] == "memory"


class TestRemoteConfig:

    def test_placeholder_key_is_not_configured(self):
        from mediaflow.config import RemoteConfig

        assert RemoteConfig(api_key="PASTE_YOUR_KEY").has_api_key is False
        assert RemoteConfig(api_key=None).has_api_key is False
        assert RemoteConfig(api_key="abc").has_api_key is True

    def test_slow_stages_get_more_attempts(self):
        from mediaflow.config import RemoteConfig

        remote = RemoteConfig(max_poll_attempts=10)
        assert remote.attempts_for("subtitles") == 10
        assert remote.attempts_for("song_generation") == 180

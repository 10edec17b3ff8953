"""
Application Configuration - Environment Variable Management.
Loads and validates configuration from .env file.
"""
import os
import shutil
import logging
from pathlib import Path
from dataclasses import dataclass, field
from typing import Optional, Dict

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

# Load .env from project root
PROJECT_ROOT = Path(__file__).parent.parent
ENV_FILE = PROJECT_ROOT / ".env"

if ENV_FILE.exists():
    load_dotenv(ENV_FILE)
    logger.info(f"Loaded environment from {ENV_FILE}")


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return int(value)


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return float(value)


@dataclass
class PipelineConfig:
    """Limits and tuning for the media pipeline."""
    segment_threshold_seconds: float = 60.0
    max_source_duration_seconds: float = 180.0
    max_upload_bytes: int = 25 * 1024 * 1024
    max_download_bytes: int = 500 * 1024 * 1024
    engine_max_input_bytes: int = 200 * 1024 * 1024
    engine_memory_limit_mb: int = 2048
    engine_timeout_seconds: int = 600
    job_timeout_seconds: Optional[int] = None
    allowed_containers: tuple = ("mp4", "mov", "m4v", "webm", "mkv", "avi")
    output_width: int = 1280
    output_height: int = 720
    output_fps: int = 30


@dataclass
class RemoteConfig:
    """Remote AI processing service configuration."""
    base_url: str = "http://localhost:8700"
    api_key: Optional[str] = None
    poll_interval_seconds: float = 5.0
    max_poll_attempts: int = 120
    request_timeout_seconds: float = 60.0
    stage_max_attempts: Dict[str, int] = field(default_factory=lambda: {
        "song_generation": 180,
        "face_substitution": 180,
    })
    result_cache_size: int = 256

    @property
    def has_api_key(self) -> bool:
        return bool(self.api_key and not self.api_key.startswith("PASTE_"))

    def attempts_for(self, kind: str) -> int:
        """Max poll attempts for a stage kind."""
        return self.stage_max_attempts.get(kind, self.max_poll_attempts)


@dataclass
class StorageConfig:
    """Artifact storage configuration."""
    backend: str = "local"
    local_root: Path = field(default_factory=lambda: PROJECT_ROOT / "data" / "artifacts")
    public_base_url: str = "http://localhost:8000/artifacts"
    signing_secret: str = ""
    default_ttl_seconds: int = 86400 * 7
    s3_bucket: Optional[str] = None
    s3_endpoint_url: Optional[str] = None
    s3_region: Optional[str] = None
    s3_access_key: Optional[str] = None
    s3_secret_key: Optional[str] = None


@dataclass
class PathsConfig:
    """File system paths configuration."""
    data_dir: Path
    work_dir: Path
    uploads_dir: Path
    ffmpeg_path: str
    ffprobe_path: str

    @classmethod
    def detect(cls) -> "PathsConfig":
        """Auto-detect paths based on environment and system."""
        data_dir = Path(os.getenv("DATA_DIR", str(PROJECT_ROOT / "data")))
        data_dir.mkdir(parents=True, exist_ok=True)

        work_dir = Path(os.getenv("WORK_DIR", str(data_dir / "work")))
        work_dir.mkdir(parents=True, exist_ok=True)

        uploads_dir = Path(os.getenv("UPLOADS_DIR", str(data_dir / "uploads")))
        uploads_dir.mkdir(parents=True, exist_ok=True)

        return cls(
            data_dir=data_dir,
            work_dir=work_dir,
            uploads_dir=uploads_dir,
            ffmpeg_path=cls._find_binary("FFMPEG_PATH", "ffmpeg"),
            ffprobe_path=cls._find_binary("FFPROBE_PATH", "ffprobe"),
        )

    @staticmethod
    def _find_binary(env_var: str, name: str) -> str:
        """Find an FFmpeg-family executable."""
        env_path = os.getenv(env_var)
        if env_path and os.path.exists(env_path):
            return env_path

        for path in (f"/usr/bin/{name}", f"/usr/local/bin/{name}", f"/opt/homebrew/bin/{name}"):
            if os.path.exists(path):
                return path

        # Fallback to system PATH
        return shutil.which(name) or name


@dataclass
class AppConfig:
    """Main Application Configuration."""
    pipeline: PipelineConfig
    remote: RemoteConfig
    storage: StorageConfig
    paths: PathsConfig
    storage_backend: str = "sqlite"
    database_path: str = "data/mediaflow.db"
    broker_url: str = "redis://localhost:6379/0"
    result_backend: str = "redis://localhost:6379/1"
    debug: bool = False

    def __post_init__(self):
        """Validate critical configuration."""
        if not self.storage.signing_secret:
            logger.warning("ARTIFACT_SIGNING_SECRET not set - signed artifact URLs use an empty key")
        if self.pipeline.segment_threshold_seconds <= 0:
            raise ValueError("SEGMENT_THRESHOLD_SECONDS must be positive")

    def validate(self) -> dict:
        """Validate configuration and return status."""
        return {
            "remote": {
                "base_url": self.remote.base_url,
                "api_key_configured": self.remote.has_api_key,
            },
            "storage": {
                "artifact_backend": self.storage.backend,
                "signing_configured": bool(self.storage.signing_secret),
            },
            "database": {
                "backend": self.storage_backend,
                "path": self.database_path,
            },
        }

    def log_status(self):
        """Log configuration status (without exposing keys)."""
        status = self.validate()

        logger.info("=" * 50)
        logger.info("Configuration Status:")
        logger.info(f"  Remote AI service: {status['remote']['base_url']}")
        logger.info(f"  Remote API key: {'OK' if status['remote']['api_key_configured'] else 'NOT CONFIGURED'}")
        logger.info(f"  Artifact store: {status['storage']['artifact_backend']}")
        logger.info(f"  Database: {status['database']['backend']}")
        logger.info(f"  Work Dir: {self.paths.work_dir}")
        logger.info(f"  FFmpeg: {self.paths.ffmpeg_path}")
        logger.info(f"  Segment threshold: {self.pipeline.segment_threshold_seconds}s")
        logger.info("=" * 50)

        if not status["remote"]["api_key_configured"]:
            logger.warning("No remote API key configured - remote AI stages will fail and fall back")


def load_config() -> AppConfig:
    """Load configuration from environment variables."""
    timeout = os.getenv("JOB_TIMEOUT_SECONDS")

    pipeline = PipelineConfig(
        segment_threshold_seconds=_env_float("SEGMENT_THRESHOLD_SECONDS", 60.0),
        max_source_duration_seconds=_env_float("MAX_SOURCE_DURATION_SECONDS", 180.0),
        max_upload_bytes=_env_int("MAX_UPLOAD_MB", 25) * 1024 * 1024,
        max_download_bytes=_env_int("MAX_DOWNLOAD_MB", 500) * 1024 * 1024,
        engine_max_input_bytes=_env_int("ENGINE_MAX_INPUT_MB", 200) * 1024 * 1024,
        engine_memory_limit_mb=_env_int("ENGINE_MEMORY_LIMIT_MB", 2048),
        engine_timeout_seconds=_env_int("ENGINE_TIMEOUT_SECONDS", 600),
        job_timeout_seconds=int(timeout) if timeout else None,
    )

    remote = RemoteConfig(
        base_url=os.getenv("REMOTE_AI_BASE_URL", "http://localhost:8700"),
        api_key=os.getenv("REMOTE_AI_API_KEY"),
        poll_interval_seconds=_env_float("REMOTE_POLL_INTERVAL_SECONDS", 5.0),
        max_poll_attempts=_env_int("REMOTE_MAX_POLL_ATTEMPTS", 120),
        request_timeout_seconds=_env_float("REMOTE_REQUEST_TIMEOUT_SECONDS", 60.0),
    )

    paths = PathsConfig.detect()

    storage = StorageConfig(
        backend=os.getenv("ARTIFACT_BACKEND", "local").lower(),
        local_root=Path(os.getenv("ARTIFACT_ROOT", str(paths.data_dir / "artifacts"))),
        public_base_url=os.getenv("ARTIFACT_PUBLIC_URL", "http://localhost:8000/artifacts"),
        signing_secret=os.getenv("ARTIFACT_SIGNING_SECRET", ""),
        s3_bucket=os.getenv("S3_BUCKET"),
        s3_endpoint_url=os.getenv("S3_ENDPOINT_URL"),
        s3_region=os.getenv("S3_REGION"),
        s3_access_key=os.getenv("S3_ACCESS_KEY"),
        s3_secret_key=os.getenv("S3_SECRET_KEY"),
    )

    return AppConfig(
        pipeline=pipeline,
        remote=remote,
        storage=storage,
        paths=paths,
        storage_backend=os.getenv("STORAGE_BACKEND", "sqlite"),
        database_path=os.getenv("DATABASE_PATH", "data/mediaflow.db"),
        broker_url=os.getenv("CELERY_BROKER_URL", "redis://localhost:6379/0"),
        result_backend=os.getenv("CELERY_RESULT_BACKEND", "redis://localhost:6379/1"),
        debug=os.getenv("DEBUG", "false").lower() == "true",
    )


# Global config instance
config = load_config()

"""
Pydantic models for the media pipeline.
MediaJob is the root aggregate; Segments and RemoteJobs live inside it.
"""
import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Self, Union

from pydantic import BaseModel, Field, model_validator


HEX_COLOR_PATTERN = r"^#[0-9A-Fa-f]{6}$"


class SourceMode(str, Enum):
    REMOTE_URL = "remote_url"
    DIRECT_UPLOAD = "direct_upload"


class StageKind(str, Enum):
    # Local (engine) stages
    FLIP = "flip"
    ASPECT_CROP = "aspect_crop"
    COLOR_GRADE = "color_grade"
    UNIQUENESS = "uniqueness"
    WATERMARK = "watermark"
    LOGO_OVERLAY = "logo_overlay"
    CHARACTER_OVERLAY = "character_overlay"
    VOLUME = "volume"
    # Remote AI stages
    SUBTITLES = "subtitles"
    TEXT_TO_SPEECH = "text_to_speech"
    OBJECT_REMOVAL = "object_removal"
    FACE_SUBSTITUTION = "face_substitution"
    SONG_GENERATION = "song_generation"
    # Composition stages
    INTRO = "intro"
    OUTRO = "outro"

    @property
    def is_local(self) -> bool:
        return self in LOCAL_STAGES

    @property
    def is_remote(self) -> bool:
        return self in REMOTE_STAGES

    @property
    def is_composition(self) -> bool:
        return self in COMPOSITION_STAGES


LOCAL_STAGES = frozenset({
    StageKind.FLIP,
    StageKind.ASPECT_CROP,
    StageKind.COLOR_GRADE,
    StageKind.UNIQUENESS,
    StageKind.WATERMARK,
    StageKind.LOGO_OVERLAY,
    StageKind.CHARACTER_OVERLAY,
    StageKind.VOLUME,
})

REMOTE_STAGES = frozenset({
    StageKind.SUBTITLES,
    StageKind.TEXT_TO_SPEECH,
    StageKind.OBJECT_REMOVAL,
    StageKind.FACE_SUBSTITUTION,
    StageKind.SONG_GENERATION,
})

COMPOSITION_STAGES = frozenset({StageKind.INTRO, StageKind.OUTRO})

# Remote stages that run once per segment on the video itself
PER_SEGMENT_STAGES = frozenset({StageKind.OBJECT_REMOVAL, StageKind.FACE_SUBSTITUTION})


class AnchorPosition(str, Enum):
    TOP_LEFT = "top-left"
    TOP_RIGHT = "top-right"
    BOTTOM_LEFT = "bottom-left"
    BOTTOM_RIGHT = "bottom-right"
    CENTER = "center"


class AspectRatio(str, Enum):
    PORTRAIT = "9:16"
    LANDSCAPE = "16:9"
    SQUARE = "1:1"

    @property
    def ratio(self) -> tuple[int, int]:
        w, h = self.value.split(":")
        return int(w), int(h)


# ============================================================
# Per-stage parameter models
# ============================================================

class FlipParams(BaseModel):
    horizontal: bool = True
    vertical: bool = False

    @model_validator(mode="after")
    def validate_axis(self) -> Self:
        if not (self.horizontal or self.vertical):
            raise ValueError("flip needs at least one axis")
        return self


class AspectCropParams(BaseModel):
    aspect_ratio: AspectRatio = AspectRatio.PORTRAIT


class ColorGradeParams(BaseModel):
    brightness: float = Field(default=0.03, ge=-1.0, le=1.0)
    contrast: float = Field(default=1.1, ge=0.0, le=3.0)
    saturation: float = Field(default=1.25, ge=0.0, le=3.0)


class UniquenessParams(BaseModel):
    """Fixed micro-scale plus hue shift."""
    scale: float = Field(default=1.02, ge=1.0, le=1.2)
    hue_shift_degrees: float = Field(default=4.0, ge=-30.0, le=30.0)


class TextOverlayParams(BaseModel):
    text: str = Field(..., min_length=1, max_length=120)
    position: AnchorPosition = AnchorPosition.BOTTOM_RIGHT
    font_size: int = Field(default=28, ge=8, le=200)
    color: str = Field(default="#FFFFFF", pattern=HEX_COLOR_PATTERN)
    opacity: float = Field(default=0.8, ge=0.0, le=1.0)


class ImageOverlayParams(BaseModel):
    image_ref: str = Field(..., min_length=1)
    position: AnchorPosition = AnchorPosition.TOP_RIGHT
    scale_percent: int = Field(default=15, ge=1, le=100, description="Overlay width as % of video width")
    opacity: float = Field(default=1.0, ge=0.0, le=1.0)


class VolumeParams(BaseModel):
    gain: float = Field(default=1.0, ge=0.0, le=4.0)


class SubtitlesParams(BaseModel):
    source_language: Optional[str] = Field(default=None, description="None lets the service detect it")
    target_language: str = Field(default="en", min_length=2, max_length=8)
    color: str = Field(default="#FFFFFF", pattern=HEX_COLOR_PATTERN)
    font_size: int = Field(default=24, ge=8, le=96)


class TextToSpeechParams(BaseModel):
    voice: str = Field(default="ai_narrator", min_length=1)
    language: str = Field(default="en", min_length=2, max_length=8)
    text: Optional[str] = Field(default=None, description="Used only when no Subtitles stage is selected")


class ObjectRemovalParams(BaseModel):
    target: str = Field(default="watermark", min_length=1, description="What to remove")


class FaceSubstitutionParams(BaseModel):
    face_image_ref: str = Field(..., min_length=1)


class SongGenerationParams(BaseModel):
    prompt: str = Field(..., min_length=1, max_length=2000)
    style: Optional[str] = None
    instrumental: bool = False


class ClipParams(BaseModel):
    clip_ref: str = Field(..., min_length=1)


StageParams = Union[
    FlipParams,
    AspectCropParams,
    ColorGradeParams,
    UniquenessParams,
    TextOverlayParams,
    ImageOverlayParams,
    VolumeParams,
    SubtitlesParams,
    TextToSpeechParams,
    ObjectRemovalParams,
    FaceSubstitutionParams,
    SongGenerationParams,
    ClipParams,
]

STAGE_PARAM_TYPES: Dict[StageKind, type] = {
    StageKind.FLIP: FlipParams,
    StageKind.ASPECT_CROP: AspectCropParams,
    StageKind.COLOR_GRADE: ColorGradeParams,
    StageKind.UNIQUENESS: UniquenessParams,
    StageKind.WATERMARK: TextOverlayParams,
    StageKind.LOGO_OVERLAY: ImageOverlayParams,
    StageKind.CHARACTER_OVERLAY: ImageOverlayParams,
    StageKind.VOLUME: VolumeParams,
    StageKind.SUBTITLES: SubtitlesParams,
    StageKind.TEXT_TO_SPEECH: TextToSpeechParams,
    StageKind.OBJECT_REMOVAL: ObjectRemovalParams,
    StageKind.FACE_SUBSTITUTION: FaceSubstitutionParams,
    StageKind.SONG_GENERATION: SongGenerationParams,
    StageKind.INTRO: ClipParams,
    StageKind.OUTRO: ClipParams,
}


class StageSelection(BaseModel):
    """
    One enabled stage with its typed parameters.
    The params model is chosen by kind, so a mismatched option bag is
    rejected at submission instead of failing mid-run.
    """
    kind: StageKind
    params: StageParams

    @model_validator(mode="before")
    @classmethod
    def coerce_params(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        kind = StageKind(data.get("kind"))
        raw = data.get("params") or {}
        if isinstance(raw, BaseModel):
            raw = raw.model_dump()
        return {**data, "kind": kind, "params": STAGE_PARAM_TYPES[kind].model_validate(raw)}


class JobSpec(BaseModel):
    """What the caller submits."""
    source_mode: SourceMode
    source_ref: str = Field(..., min_length=1)
    stages: List[StageSelection] = Field(default_factory=list)
    idempotency_key: Optional[str] = Field(default=None, max_length=128)
    declared_duration_seconds: Optional[float] = Field(default=None, gt=0)

    @model_validator(mode="after")
    def validate_stages(self) -> Self:
        kinds = [s.kind for s in self.stages]
        if len(kinds) != len(set(kinds)):
            raise ValueError("each stage kind may be selected once")
        if StageKind.TEXT_TO_SPEECH in kinds and StageKind.SUBTITLES not in kinds:
            tts = self.params_for(StageKind.TEXT_TO_SPEECH)
            if not tts.text:
                raise ValueError("text_to_speech needs the subtitles stage or explicit text")
        if not self.source_ref.strip():
            raise ValueError("source_ref must not be blank")
        return self

    @property
    def selected_stages(self) -> List[StageKind]:
        return [s.kind for s in self.stages]

    def params_for(self, kind: StageKind) -> Optional[StageParams]:
        for selection in self.stages:
            if selection.kind == kind:
                return selection.params
        return None


class JobStatus(str, Enum):
    CREATED = "created"
    ACQUIRING = "acquiring"
    SEGMENTING = "segmenting"
    LOCAL_PROCESSING = "local_processing"
    REMOTE_PENDING = "remote_pending"
    COMPOSING = "composing"
    UPLOADING = "uploading"
    COMPLETED = "completed"
    FAILED = "failed"
    PARTIALLY_COMPLETED = "partially_completed"


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.PARTIALLY_COMPLETED})
DELIVERED_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.PARTIALLY_COMPLETED})


class Segment(BaseModel):
    index: int = Field(..., ge=0)
    start_offset_seconds: float = Field(..., ge=0)
    duration_seconds: float = Field(..., gt=0)
    blob_ref: str = Field(..., min_length=1)


class RemoteJobStatus(str, Enum):
    SUBMITTED = "submitted"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


REMOTE_TERMINAL_STATUSES = frozenset({
    RemoteJobStatus.COMPLETED,
    RemoteJobStatus.FAILED,
    RemoteJobStatus.TIMED_OUT,
})


class RemoteJob(BaseModel):
    """One delegated asynchronous AI stage (or one segment of it)."""
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    kind: StageKind
    status: RemoteJobStatus = RemoteJobStatus.SUBMITTED
    external_job_id: Optional[str] = None
    segment_index: Optional[int] = Field(default=None, ge=0)
    result_ref: Optional[str] = None
    result_text: Optional[str] = None
    error_message: Optional[str] = None
    attempts: int = Field(default=0, ge=0)
    submitted_at: datetime = Field(default_factory=datetime.utcnow)
    finished_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in REMOTE_TERMINAL_STATUSES

    def mark_processing(self) -> None:
        if not self.is_terminal:
            self.status = RemoteJobStatus.PROCESSING

    def finish(
        self,
        status: RemoteJobStatus,
        result_ref: Optional[str] = None,
        result_text: Optional[str] = None,
        error_message: Optional[str] = None,
    ) -> bool:
        """
        Single terminal transition.
        Returns False (and changes nothing) if already terminal.
        """
        if status not in REMOTE_TERMINAL_STATUSES:
            raise ValueError(f"{status} is not a terminal status")
        if self.is_terminal:
            return False
        self.status = status
        if status == RemoteJobStatus.COMPLETED:
            self.result_ref = result_ref
            self.result_text = result_text
        else:
            self.error_message = error_message or status.value
        self.finished_at = datetime.utcnow()
        return True


class ErrorInfo(BaseModel):
    """Structured error cause kept on the job."""
    code: str
    message: str
    stage: Optional[str] = None
    occurred_at: datetime = Field(default_factory=datetime.utcnow)


class MediaJob(BaseModel):
    """Root aggregate for one pipeline run."""
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    user_id: str = Field(..., min_length=1)
    source_mode: SourceMode
    source_ref: str
    selected_stages: List[StageKind] = Field(default_factory=list)
    stage_params: Dict[str, Dict[str, Any]] = Field(default_factory=dict)
    idempotency_key: Optional[str] = None

    status: JobStatus = JobStatus.CREATED
    progress_percent: float = Field(default=0.0, ge=0, le=100)

    segments: List[Segment] = Field(default_factory=list)
    remote_jobs: List[RemoteJob] = Field(default_factory=list)

    cost_estimate: int = Field(default=0, ge=0)
    cost_breakdown: Dict[str, int] = Field(default_factory=dict)
    cost_charged: int = Field(default=0, ge=0)
    settled: bool = False
    completed_stages: List[StageKind] = Field(default_factory=list)

    output_ref: Optional[str] = None
    held_output_ref: Optional[str] = None
    partial: bool = False
    last_error: Optional[ErrorInfo] = None
    stage_errors: List[ErrorInfo] = Field(default_factory=list)
    cancel_requested: bool = False

    duration_seconds: Optional[float] = Field(default=None, ge=0)
    size_bytes: Optional[int] = Field(default=None, ge=0)
    has_audio: Optional[bool] = None

    task_id: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @model_validator(mode="after")
    def validate_invariants(self) -> Self:
        if self.cost_charged > self.cost_estimate:
            raise ValueError("cost_charged must not exceed cost_estimate")
        if self.output_ref is not None and self.status not in DELIVERED_STATUSES:
            raise ValueError("output_ref is only set on delivered jobs")
        return self

    @classmethod
    def from_spec(cls, spec: JobSpec, user_id: str, **kwargs) -> "MediaJob":
        return cls(
            user_id=user_id,
            source_mode=spec.source_mode,
            source_ref=spec.source_ref,
            selected_stages=spec.selected_stages,
            stage_params={s.kind.value: s.params.model_dump() for s in spec.stages},
            idempotency_key=spec.idempotency_key,
            **kwargs,
        )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def params_for(self, kind: StageKind) -> Optional[StageParams]:
        """Typed parameters for a selected stage."""
        raw = self.stage_params.get(kind.value)
        if raw is None:
            return None
        return STAGE_PARAM_TYPES[kind].model_validate(raw)

    def stages_where(self, predicate) -> List[StageKind]:
        return [k for k in self.selected_stages if predicate(k)]

    def advance_progress(self, percent: float) -> None:
        """Progress never goes backwards."""
        self.progress_percent = max(self.progress_percent, min(100.0, round(percent, 2)))

    def record_error(self, error: ErrorInfo, override: bool = False) -> None:
        """Keep the first root cause unless told to override it."""
        self.stage_errors.append(error)
        if self.last_error is None or override:
            self.last_error = error

    def remote_jobs_for(self, kind: StageKind) -> List[RemoteJob]:
        return [r for r in self.remote_jobs if r.kind == kind]

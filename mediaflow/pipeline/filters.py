"""
Declarative filter chain for the local transcoding engine.

Operations are plain dataclasses; FilterChain orders them (geometry, then
color, then overlays, then audio) and compiles them to ffmpeg arguments.
"""
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Iterable, List, Optional, Tuple

from .models import (
    AnchorPosition,
    AspectRatio,
    StageKind,
    FlipParams,
    AspectCropParams,
    ColorGradeParams,
    UniquenessParams,
    TextOverlayParams,
    ImageOverlayParams,
    VolumeParams,
)

EDGE_MARGIN = 20

VIDEO_ENCODE_ARGS = ["-c:v", "libx264", "-preset", "veryfast", "-crf", "23", "-pix_fmt", "yuv420p"]
AUDIO_ENCODE_ARGS = ["-c:a", "aac", "-b:a", "128k"]


class Phase(IntEnum):
    GEOMETRY = 0
    COLOR = 1
    OVERLAY = 2
    AUDIO = 3


FrameSize = Tuple[int, int]


def _even(value: float) -> int:
    return max(2, int(value) // 2 * 2)


def overlay_position(anchor: AnchorPosition) -> str:
    """x:y expression for the overlay filter."""
    m = EDGE_MARGIN
    return {
        AnchorPosition.TOP_LEFT: f"{m}:{m}",
        AnchorPosition.TOP_RIGHT: f"W-w-{m}:{m}",
        AnchorPosition.BOTTOM_LEFT: f"{m}:H-h-{m}",
        AnchorPosition.BOTTOM_RIGHT: f"W-w-{m}:H-h-{m}",
        AnchorPosition.CENTER: "(W-w)/2:(H-h)/2",
    }[anchor]


def drawtext_position(anchor: AnchorPosition) -> str:
    """x=..:y=.. expression for drawtext."""
    m = EDGE_MARGIN
    return {
        AnchorPosition.TOP_LEFT: f"x={m}:y={m}",
        AnchorPosition.TOP_RIGHT: f"x=w-tw-{m}:y={m}",
        AnchorPosition.BOTTOM_LEFT: f"x={m}:y=h-th-{m}",
        AnchorPosition.BOTTOM_RIGHT: f"x=w-tw-{m}:y=h-th-{m}",
        AnchorPosition.CENTER: "x=(w-tw)/2:y=(h-th)/2",
    }[anchor]


def escape_drawtext(text: str) -> str:
    """Escape text for a single-quoted drawtext value."""
    return (
        text.replace("\\", "\\\\")
        .replace("'", "’")
        .replace(":", "\\:")
        .replace("\n", " ")
    )


def hex_to_ffmpeg_color(color: str, opacity: float = 1.0) -> str:
    """#RRGGBB -> 0xRRGGBB@opacity"""
    return f"0x{color.lstrip('#').upper()}@{opacity:g}"


@dataclass
class FilterOp:
    """Base operation. Subclasses set phase and render their filter text."""
    stage: Optional[StageKind] = field(default=None, kw_only=True)
    phase = Phase.GEOMETRY

    def output_size(self, size: FrameSize) -> FrameSize:
        return size

    def video_filter(self, size: FrameSize) -> str:
        raise NotImplementedError


@dataclass
class Mirror(FilterOp):
    horizontal: bool = True
    vertical: bool = False
    phase = Phase.GEOMETRY

    def video_filter(self, size: FrameSize) -> str:
        parts = []
        if self.horizontal:
            parts.append("hflip")
        if self.vertical:
            parts.append("vflip")
        return ",".join(parts)


@dataclass
class CropToAspect(FilterOp):
    aspect_ratio: AspectRatio = AspectRatio.PORTRAIT
    phase = Phase.GEOMETRY

    def output_size(self, size: FrameSize) -> FrameSize:
        w, h = size
        a, b = self.aspect_ratio.ratio
        if w / h > a / b:
            return _even(h * a / b), _even(h)
        return _even(w), _even(w * b / a)

    def video_filter(self, size: FrameSize) -> str:
        a, b = self.aspect_ratio.ratio
        wide = f"gt(iw/ih,{a}/{b})"
        out_w, out_h = self.output_size(size)
        return (
            f"crop=w='if({wide},ih*{a}/{b},iw)':h='if({wide},ih,iw*{b}/{a})',"
            f"scale={out_w}:{out_h}"
        )


@dataclass
class ColorAdjust(FilterOp):
    brightness: float = 0.0
    contrast: float = 1.0
    saturation: float = 1.0
    phase = Phase.COLOR

    def video_filter(self, size: FrameSize) -> str:
        return f"eq=brightness={self.brightness:g}:contrast={self.contrast:g}:saturation={self.saturation:g}"


@dataclass
class UniquenessTransform(FilterOp):
    """Scale up slightly, crop back to the original frame, shift hue."""
    scale: float = 1.02
    hue_shift_degrees: float = 4.0
    phase = Phase.COLOR

    def video_filter(self, size: FrameSize) -> str:
        w, h = size
        return (
            f"scale={_even(w * self.scale)}:{_even(h * self.scale)},"
            f"crop={w}:{h},"
            f"hue=h={self.hue_shift_degrees:g}"
        )


@dataclass
class TextOverlay(FilterOp):
    text: str = ""
    position: AnchorPosition = AnchorPosition.BOTTOM_RIGHT
    font_size: int = 28
    color: str = "#FFFFFF"
    opacity: float = 0.8
    phase = Phase.OVERLAY

    def video_filter(self, size: FrameSize) -> str:
        return (
            f"drawtext=text='{escape_drawtext(self.text)}':expansion=none:"
            f"fontsize={self.font_size}:fontcolor={hex_to_ffmpeg_color(self.color, self.opacity)}:"
            f"{drawtext_position(self.position)}"
        )


@dataclass
class ImageOverlay(FilterOp):
    """Needs its own ffmpeg input; compiled by FilterChain."""
    image_ref: str = ""
    position: AnchorPosition = AnchorPosition.TOP_RIGHT
    scale_percent: int = 15
    opacity: float = 1.0
    phase = Phase.OVERLAY

    def scaled_width(self, size: FrameSize) -> int:
        return _even(size[0] * self.scale_percent / 100)

    def image_filter(self, size: FrameSize) -> str:
        chain = f"scale={self.scaled_width(size)}:-2,format=rgba"
        if self.opacity < 1.0:
            chain += f",colorchannelmixer=aa={self.opacity:g}"
        return chain


@dataclass
class VolumeMix(FilterOp):
    gain: float = 1.0
    phase = Phase.AUDIO

    def audio_filter(self) -> str:
        return f"volume={self.gain:g}"


class FilterChain:
    """
    Ordered list of operations.
    Sorting is stable, so ops within a phase keep their selection order.
    """

    def __init__(self, ops: Optional[Iterable[FilterOp]] = None):
        self._ops: List[FilterOp] = sorted(ops or [], key=lambda op: op.phase)

    @property
    def ops(self) -> List[FilterOp]:
        return list(self._ops)

    @property
    def stage_kinds(self) -> List[StageKind]:
        kinds = []
        for op in self._ops:
            if op.stage is not None and op.stage not in kinds:
                kinds.append(op.stage)
        return kinds

    @property
    def is_empty(self) -> bool:
        return not self._ops

    @property
    def has_video_ops(self) -> bool:
        return any(op.phase != Phase.AUDIO for op in self._ops)

    def compile(self, input_path: str, output_path: str, frame_size: FrameSize) -> List[str]:
        """Build the ffmpeg argument list (without the binary)."""
        inputs = ["-i", str(input_path)]
        statements: List[str] = []
        audio_filters: List[str] = []
        current = "0:v"
        size = frame_size
        extra_input = 1

        for n, op in enumerate(self._ops):
            if isinstance(op, VolumeMix):
                audio_filters.append(op.audio_filter())
            elif isinstance(op, ImageOverlay):
                inputs += ["-i", op.image_ref]
                statements.append(f"[{extra_input}:v]{op.image_filter(size)}[ov{n}]")
                statements.append(f"[{current}][ov{n}]overlay={overlay_position(op.position)}:format=auto[v{n}]")
                current = f"v{n}"
                extra_input += 1
            else:
                statements.append(f"[{current}]{op.video_filter(size)}[v{n}]")
                size = op.output_size(size)
                current = f"v{n}"

        args = list(inputs)
        if statements:
            args += ["-filter_complex", ";".join(statements), "-map", f"[{current}]"]
            args += VIDEO_ENCODE_ARGS
        else:
            args += ["-map", "0:v", "-c:v", "copy"]

        args += ["-map", "0:a?"]
        if audio_filters:
            args += ["-af", ",".join(audio_filters)]
        args += AUDIO_ENCODE_ARGS
        args += ["-movflags", "+faststart", str(output_path)]
        return args


def build_filter_chain(stages: Iterable[Tuple[StageKind, object]]) -> FilterChain:
    """Map selected local stages (kind, typed params) to operations."""
    ops: List[FilterOp] = []
    for kind, params in stages:
        if kind == StageKind.FLIP:
            p = params or FlipParams()
            ops.append(Mirror(horizontal=p.horizontal, vertical=p.vertical, stage=kind))
        elif kind == StageKind.ASPECT_CROP:
            p = params or AspectCropParams()
            ops.append(CropToAspect(aspect_ratio=p.aspect_ratio, stage=kind))
        elif kind == StageKind.COLOR_GRADE:
            p = params or ColorGradeParams()
            ops.append(ColorAdjust(
                brightness=p.brightness, contrast=p.contrast, saturation=p.saturation, stage=kind,
            ))
        elif kind == StageKind.UNIQUENESS:
            p = params or UniquenessParams()
            ops.append(UniquenessTransform(scale=p.scale, hue_shift_degrees=p.hue_shift_degrees, stage=kind))
        elif kind == StageKind.WATERMARK:
            p: TextOverlayParams = params
            ops.append(TextOverlay(
                text=p.text, position=p.position, font_size=p.font_size,
                color=p.color, opacity=p.opacity, stage=kind,
            ))
        elif kind in (StageKind.LOGO_OVERLAY, StageKind.CHARACTER_OVERLAY):
            p: ImageOverlayParams = params
            ops.append(ImageOverlay(
                image_ref=p.image_ref, position=p.position,
                scale_percent=p.scale_percent, opacity=p.opacity, stage=kind,
            ))
        elif kind == StageKind.VOLUME:
            p = params or VolumeParams()
            ops.append(VolumeMix(gain=p.gain, stage=kind))
        else:
            raise ValueError(f"{kind.value} is not a local stage")
    return FilterChain(ops)

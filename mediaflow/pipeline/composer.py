"""
Composer.
Joins processed segments in index order, burns captions, mixes synthesized
audio and wraps the result with normalized intro/outro clips.

Only failing to join the main segments is fatal (ComposeError). Every
decoration failure degrades to what was already built and flags the result
as partial.
"""
import uuid
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

from mediaflow.config import config
from .errors import ComposeError, EngineError
from .ffmpeg import FFmpegRunner
from .filters import AUDIO_ENCODE_ARGS, VIDEO_ENCODE_ARGS, FrameSize, _even
from .models import ErrorInfo, StageKind, SubtitlesParams

logger = logging.getLogger(__name__)

ORIGINAL_AUDIO_LEVEL = 0.3
SYNTH_AUDIO_LEVEL = 1.0
AUDIO_SAMPLE_RATE = 44100

PROTOCOL_WHITELIST = "file,http,https,tcp,tls,crypto"


@dataclass
class ComposeResult:
    blob_path: str
    partial: bool = False
    applied_stages: List[StageKind] = field(default_factory=list)
    errors: List[ErrorInfo] = field(default_factory=list)


def hex_to_ass_color(color: str) -> str:
    """#RRGGBB -> &H00BBGGRR (ASS colour order)."""
    value = color.lstrip("#")
    r, g, b = value[0:2], value[2:4], value[4:6]
    return f"&H00{b}{g}{r}".upper()


def _escape_filter_path(path: str) -> str:
    return path.replace("\\", "/").replace(":", "\\:").replace("'", "\\'")


def _srt_time(seconds: float) -> str:
    ms = int(round(seconds * 1000))
    hours, ms = divmod(ms, 3_600_000)
    minutes, ms = divmod(ms, 60_000)
    secs, ms = divmod(ms, 1000)
    return f"{hours:02d}:{minutes:02d}:{secs:02d},{ms:03d}"


def captions_to_srt(captions: str, duration_seconds: float) -> str:
    """
    Return an SRT document. Text that is already SRT passes through; plain
    lines are spread evenly over the video duration.
    """
    if "-->" in captions:
        return captions.strip() + "\n"

    lines = [line.strip() for line in captions.splitlines() if line.strip()]
    if not lines:
        return ""

    step = duration_seconds / len(lines)
    cues = []
    for i, line in enumerate(lines):
        start = i * step
        end = min(duration_seconds, start + step)
        cues.append(f"{i + 1}\n{_srt_time(start)} --> {_srt_time(end)}\n{line}\n")
    return "\n".join(cues)


class Composer:
    """Builds the final artifact from segments and remote results."""

    def __init__(self, runner: Optional[FFmpegRunner] = None, work_dir: Optional[Path] = None):
        self.runner = runner or FFmpegRunner()
        self.work_dir = Path(work_dir or config.paths.work_dir)
        self.work_dir.mkdir(parents=True, exist_ok=True)

    def _out(self, label: str, suffix: str = ".mp4") -> Path:
        return self.work_dir / f"{label}_{uuid.uuid4().hex[:8]}{suffix}"

    def compose(
        self,
        segments: Sequence[Tuple[int, str]],
        duration_seconds: float,
        has_audio: bool,
        captions_text: Optional[str] = None,
        subtitle_style: Optional[SubtitlesParams] = None,
        audio_refs: Sequence[Tuple[StageKind, str]] = (),
        intro_ref: Optional[str] = None,
        outro_ref: Optional[str] = None,
        frame_size: Optional[FrameSize] = None,
    ) -> ComposeResult:
        """
        Args:
            segments: (index, blob_ref) pairs in any order
            duration_seconds: Length of the main video
            has_audio: Whether the main video carries an audio stream
            captions_text: Caption track to burn in
            audio_refs: (stage kind, audio ref) pairs to mix over the original
            intro_ref / outro_ref: Clips placed around the main video
            frame_size: Target size for intro/outro normalization
        """
        main = self.join_segments(segments)
        result = ComposeResult(blob_path=main)

        if captions_text:
            try:
                result.blob_path = self.burn_captions(
                    result.blob_path, captions_text, duration_seconds, subtitle_style or SubtitlesParams(),
                )
                result.applied_stages.append(StageKind.SUBTITLES)
            except EngineError as e:
                self._degrade(result, StageKind.SUBTITLES, e)

        if audio_refs:
            try:
                result.blob_path = self.mix_audio(result.blob_path, [ref for _, ref in audio_refs], has_audio)
                result.applied_stages.extend(kind for kind, _ in audio_refs)
                has_audio = True
            except EngineError as e:
                for kind, _ in audio_refs:
                    self._degrade(result, kind, e)

        if intro_ref or outro_ref:
            result.blob_path = self.wrap(result, intro_ref, outro_ref, has_audio, frame_size)

        logger.info(
            f"[COMPOSE] Done: {Path(result.blob_path).name} "
            f"applied={[k.value for k in result.applied_stages]} partial={result.partial}"
        )
        return result

    def _degrade(self, result: ComposeResult, kind: StageKind, error: EngineError) -> None:
        logger.warning(f"[COMPOSE] {kind.value} skipped: {error.message}")
        result.partial = True
        result.errors.append(ErrorInfo(
            code="COMPOSE_DEGRADED",
            message=f"{kind.value}: {error.message}",
            stage=kind.value,
        ))

    # ---------- main ----------

    def join_segments(self, segments: Sequence[Tuple[int, str]]) -> str:
        """Concatenate segments in index order with stream copy."""
        if not segments:
            raise ComposeError("No segments to compose")

        ordered = [ref for _, ref in sorted(segments, key=lambda s: s[0])]

        if len(ordered) == 1 and not _is_url(ordered[0]):
            return ordered[0]

        output = self._out("main")
        try:
            if len(ordered) == 1:
                self.runner.run([
                    "-protocol_whitelist", PROTOCOL_WHITELIST,
                    "-i", ordered[0],
                    "-map", "0", "-c", "copy",
                    str(output),
                ])
            else:
                self.runner.run(self._concat_args(ordered, output))
        except EngineError as e:
            raise ComposeError(f"Could not join {len(ordered)} segments: {e.message}") from e

        logger.info(f"[COMPOSE] Joined {len(ordered)} segments")
        return str(output)

    def _concat_args(self, refs: Sequence[str], output: Path) -> List[str]:
        list_path = self._out("concat", ".txt")
        with open(list_path, "w", encoding="utf-8") as f:
            for ref in refs:
                escaped = ref.replace("'", "'\\''")
                f.write(f"file '{escaped}'\n")

        return [
            "-f", "concat",
            "-safe", "0",
            "-protocol_whitelist", PROTOCOL_WHITELIST,
            "-i", str(list_path),
            "-c", "copy",
            "-movflags", "+faststart",
            str(output),
        ]

    # ---------- decorations ----------

    def burn_captions(
        self,
        video_path: str,
        captions_text: str,
        duration_seconds: float,
        style: SubtitlesParams,
    ) -> str:
        srt = captions_to_srt(captions_text, duration_seconds)
        if not srt:
            raise EngineError("Caption track is empty", code="EMPTY_CAPTIONS")

        srt_path = self._out("captions", ".srt")
        srt_path.write_text(srt, encoding="utf-8")

        force_style = f"PrimaryColour={hex_to_ass_color(style.color)},FontSize={style.font_size},Outline=2"
        output = self._out("captioned")
        self.runner.run([
            "-i", video_path,
            "-vf", f"subtitles=filename='{_escape_filter_path(str(srt_path))}':force_style='{force_style}'",
            *VIDEO_ENCODE_ARGS,
            "-c:a", "copy",
            "-movflags", "+faststart",
            str(output),
        ])
        return str(output)

    def mix_audio(self, video_path: str, audio_refs: Sequence[str], has_audio: bool) -> str:
        """
        Mix synthesized tracks over the original audio (original 30%,
        synthesized 100%). The output never runs past the video.
        """
        args = ["-protocol_whitelist", PROTOCOL_WHITELIST, "-i", video_path]
        for ref in audio_refs:
            args += ["-i", ref]

        statements = []
        labels = []
        if has_audio:
            statements.append(f"[0:a]volume={ORIGINAL_AUDIO_LEVEL}[a0]")
            labels.append("[a0]")
        for n, _ in enumerate(audio_refs, start=1):
            statements.append(f"[{n}:a]volume={SYNTH_AUDIO_LEVEL},apad[a{n}]")
            labels.append(f"[a{n}]")

        if len(labels) == 1:
            statements.append(f"{labels[0]}anull[aout]")
        else:
            statements.append(
                f"{''.join(labels)}amix=inputs={len(labels)}:duration=shortest:normalize=0[aout]"
            )

        output = self._out("mixed")
        args += [
            "-filter_complex", ";".join(statements),
            "-map", "0:v", "-map", "[aout]",
            "-c:v", "copy",
            *AUDIO_ENCODE_ARGS,
            "-shortest",
            "-movflags", "+faststart",
            str(output),
        ]
        self.runner.run(args)
        logger.info(f"[COMPOSE] Mixed {len(audio_refs)} audio track(s)")
        return str(output)

    # ---------- intro / outro ----------

    def wrap(
        self,
        result: ComposeResult,
        intro_ref: Optional[str],
        outro_ref: Optional[str],
        has_audio: bool,
        frame_size: Optional[FrameSize],
    ) -> str:
        """
        Normalize intro, main and outro to one format and concatenate them.
        Returns the main blob unchanged if wrapping fails.
        """
        main_path = result.blob_path
        size = frame_size or self._frame_size(main_path)

        try:
            main_norm = self.normalize(main_path, size, has_audio)
        except EngineError as e:
            for kind, ref in ((StageKind.INTRO, intro_ref), (StageKind.OUTRO, outro_ref)):
                if ref:
                    self._degrade(result, kind, e)
            return main_path

        clips = {}
        for kind, ref in ((StageKind.INTRO, intro_ref), (StageKind.OUTRO, outro_ref)):
            if not ref:
                continue
            try:
                clip_has_audio = self.runner.probe(ref).has_audio
                clips[kind] = self.normalize(ref, size, clip_has_audio)
            except EngineError as e:
                self._degrade(result, kind, e)

        if not clips:
            return main_path

        applied = list(clips)
        parts = [p for p in (clips.get(StageKind.INTRO), main_norm, clips.get(StageKind.OUTRO)) if p]

        output = self._out("final")
        try:
            self.runner.run(self._concat_args(parts, output))
        except EngineError as e:
            for kind in applied:
                self._degrade(result, kind, e)
            return main_path

        result.applied_stages.extend(applied)
        return str(output)

    def normalize(self, clip_ref: str, frame_size: FrameSize, has_audio: bool) -> str:
        """Re-encode to the common resolution, fps, codec and audio layout."""
        width, height = frame_size
        fps = config.pipeline.output_fps
        vf = (
            f"scale={width}:{height}:force_original_aspect_ratio=decrease,"
            f"pad={width}:{height}:(ow-iw)/2:(oh-ih)/2,setsar=1,fps={fps}"
        )

        args = ["-protocol_whitelist", PROTOCOL_WHITELIST, "-i", clip_ref]
        if has_audio:
            args += ["-map", "0:v", "-map", "0:a"]
        else:
            args += [
                "-f", "lavfi", "-i", f"anullsrc=channel_layout=stereo:sample_rate={AUDIO_SAMPLE_RATE}",
                "-map", "0:v", "-map", "1:a", "-shortest",
            ]

        output = self._out("norm")
        args += [
            "-vf", vf,
            *VIDEO_ENCODE_ARGS,
            *AUDIO_ENCODE_ARGS,
            "-ar", str(AUDIO_SAMPLE_RATE), "-ac", "2",
            "-movflags", "+faststart",
            str(output),
        ]
        self.runner.run(args)
        return str(output)

    def _frame_size(self, path: str) -> FrameSize:
        try:
            probe = self.runner.probe(path)
        except EngineError:
            probe = None
        if probe and probe.width and probe.height:
            return _even(probe.width), _even(probe.height)
        return config.pipeline.output_width, config.pipeline.output_height


def _is_url(ref: str) -> bool:
    return ref.startswith(("http://", "https://"))

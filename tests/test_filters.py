"""
Tests for the declarative filter chain.
"""
import pytest


class TestFilterChainOrdering:

    def test_ops_are_ordered_by_phase(self):
        """Geometry first, then color, overlays and audio regardless of selection order."""
        from mediaflow.pipeline.filters import build_filter_chain
        from mediaflow.pipeline.models import StageKind, TextOverlayParams

        chain = build_filter_chain([
            (StageKind.VOLUME, None),
            (StageKind.WATERMARK, TextOverlayParams(text="@me")),
            (StageKind.COLOR_GRADE, None),
            (StageKind.FLIP, None),
        ])

        assert chain.stage_kinds == [
            StageKind.FLIP,
            StageKind.COLOR_GRADE,
            StageKind.WATERMARK,
            StageKind.VOLUME,
        ]

    def test_non_local_stage_is_rejected(self):
        from mediaflow.pipeline.filters import build_filter_chain
        from mediaflow.pipeline.models import StageKind

        with pytest.raises(ValueError):
            build_filter_chain([(StageKind.SUBTITLES, None)])


class TestFilterChainCompile:

    def test_compile_video_and_audio_filters(self):
        from mediaflow.pipeline.filters import build_filter_chain
        from mediaflow.pipeline.models import StageKind, VolumeParams

        chain = build_filter_chain([
            (StageKind.FLIP, None),
            (StageKind.VOLUME, VolumeParams(gain=1.5)),
        ])
        args = chain.compile("in.mp4", "out.mp4", (1280, 720))

        graph = args[args.index("-filter_complex") + 1]
        assert "hflip" in graph
        assert args[args.index("-af") + 1] == "volume=1.5"
        assert "0:a?" in args
        assert args[-1] == "out.mp4"

    def test_audio_only_chain_copies_video(self):
        from mediaflow.pipeline.filters import build_filter_chain
        from mediaflow.pipeline.models import StageKind

        args = build_filter_chain([(StageKind.VOLUME, None)]).compile("in.mp4", "out.mp4", (640, 360))

        assert "-filter_complex" not in args
        assert args[args.index("-c:v") + 1] == "copy"

    def test_image_overlay_adds_an_input(self):
        from mediaflow.pipeline.filters import build_filter_chain
        from mediaflow.pipeline.models import ImageOverlayParams, StageKind

        chain = build_filter_chain([
            (StageKind.LOGO_OVERLAY, ImageOverlayParams(image_ref="/assets/logo.png", scale_percent=10)),
        ])
        args = chain.compile("in.mp4", "out.mp4", (1280, 720))

        assert args.count("-i") == 2
        assert "/assets/logo.png" in args
        graph = args[args.index("-filter_complex") + 1]
        assert "[1:v]scale=128:-2" in graph
        assert "overlay=W-w-20:20" in graph

    def test_overlay_after_crop_uses_cropped_size(self):
        """Overlay scaling follows the frame size produced by earlier geometry ops."""
        from mediaflow.pipeline.filters import build_filter_chain
        from mediaflow.pipeline.models import AspectCropParams, ImageOverlayParams, StageKind

        chain = build_filter_chain([
            (StageKind.LOGO_OVERLAY, ImageOverlayParams(image_ref="logo.png", scale_percent=50)),
            (StageKind.ASPECT_CROP, AspectCropParams(aspect_ratio="9:16")),
        ])
        graph = chain.compile("in.mp4", "out.mp4", (1280, 720))
        graph = graph[graph.index("-filter_complex") + 1]

        # 720 * 9/16 = 405 -> 404 (even); half of that is 202
        assert "scale=404:720" in graph
        assert "scale=202:-2" in graph

    def test_watermark_text_is_escaped(self):
        from mediaflow.pipeline.filters import build_filter_chain
        from mediaflow.pipeline.models import StageKind, TextOverlayParams

        chain = build_filter_chain([(StageKind.WATERMARK, TextOverlayParams(text="it's 10:30"))])
        graph = chain.compile("in.mp4", "out.mp4", (1280, 720))
        graph = graph[graph.index("-filter_complex") + 1]

        assert "10\\:30" in graph
        assert "it's" not in graph


class TestCropToAspect:

    @pytest.mark.parametrize("size,ratio,expected", [
        ((1280, 720), "9:16", (404, 720)),
        ((720, 1280), "16:9", (720, 404)),
        ((1280, 720), "1:1", (720, 720)),
    ])
    def test_output_size(self, size, ratio, expected):
        from mediaflow.pipeline.filters import CropToAspect
        from mediaflow.pipeline.models import AspectRatio

        assert CropToAspect(aspect_ratio=AspectRatio(ratio)).output_size(size) == expected

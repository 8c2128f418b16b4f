"""Build strategies for descriptor sections.

The set of strategies is closed: ``create_segment`` picks one by
``section.type`` and returns None for anything else. Every strategy renders
H.264 video at the project frame size plus an AAC audio track, so the
rendered segments can be concatenated with stream copy.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import ClassVar

from mediacompose.config import Settings
from mediacompose.exceptions import SegmentBuildError
from mediacompose.schemas.descriptor import Section, TemplateDescriptor
from mediacompose.schemas.project import ProjectConfig
from mediacompose.utils.interpolation import interpolate

logger = logging.getLogger(__name__)

FRAME_SIZES = {
    "landscape": (1920, 1080),
    "portrait": (1080, 1920),
    "square": (1080, 1080),
}

CHANNEL_COUNTS = {"mono": 1, "stereo": 2, "5.1": 6}


def atempo_chain(speed: float) -> list[str]:
    """atempo filters for a speed factor, chained to stay within 0.5-2.0 per filter."""
    filters = []
    if speed == 1.0:
        return filters
    while speed > 2.0:
        filters.append("atempo=2.0")
        speed /= 2.0
    while speed < 0.5:
        filters.append("atempo=0.5")
        speed /= 0.5
    filters.append(f"atempo={speed}")
    return filters


def _parse_scale(scale: str) -> tuple[int, int] | None:
    parts = scale.lower().replace(":", "x").split("x")
    if len(parts) != 2:
        return None
    try:
        return int(parts[0]), int(parts[1])
    except ValueError:
        return None


@dataclass(frozen=True)
class RenderContext:
    """Compile-wide render parameters shared by every strategy."""

    build_dir: str
    assets_dir: str
    width: int = 1920
    height: int = 1080
    fps: int = 30
    setsar: str = "1"
    video_codec: str = "libx264"
    audio_codec: str = "aac"
    preset: str = "medium"
    crf: int = 20
    audio_bitrate: str = "192k"
    sample_rate: int = 48000
    channel_layout: str = "stereo"
    hwaccel: str | None = None
    variables: tuple[dict, ...] = field(default_factory=tuple)

    @classmethod
    def from_project(
        cls, config: ProjectConfig, descriptor: TemplateDescriptor, settings: Settings
    ) -> "RenderContext":
        orientation = config.video_config.orientation or descriptor.global_.orientation
        width, height = FRAME_SIZES.get(orientation, FRAME_SIZES["landscape"])
        if config.video_config.scale:
            parsed = _parse_scale(config.video_config.scale)
            if parsed:
                width, height = parsed
            else:
                logger.warning(f"[Render] Ignoring invalid scale '{config.video_config.scale}'")

        return cls(
            build_dir=config.build_dir or settings.default_build_dir,
            assets_dir=config.assets_dir or settings.default_assets_dir,
            width=width,
            height=height,
            fps=settings.render_fps,
            setsar=config.video_config.setsar or "1",
            video_codec=config.codec_config.video_codec or settings.render_video_codec,
            audio_codec=config.codec_config.audio_codec or "aac",
            preset=config.hardware_config.preset or settings.render_preset,
            crf=settings.render_crf,
            audio_bitrate=settings.render_audio_bitrate,
            sample_rate=config.audio_config.sample_rate or settings.render_audio_sample_rate,
            channel_layout=config.audio_config.channel_layout or settings.render_channel_layout,
            hwaccel=config.hardware_config.hwaccel,
            variables=(dict(descriptor.global_.variables), dict(config.field_values)),
        )

    def resolve(self, value: str | None) -> str | None:
        if value is None:
            return None
        return interpolate(value, *self.variables)

    @property
    def channels(self) -> int:
        return CHANNEL_COUNTS.get(self.channel_layout, 2)

    def silence_input(self, duration: float) -> list[str]:
        return [
            "-f", "lavfi",
            "-t", str(duration),
            "-i", f"anullsrc=channel_layout={self.channel_layout}:sample_rate={self.sample_rate}",
        ]


# =============================================================================
# Strategies
# =============================================================================


@dataclass
class SegmentStrategy(ABC):
    """Base strategy: subclasses provide inputs and source handling."""

    type_name: ClassVar[str] = ""
    # Duration must be measured on the source when True
    probe_duration: ClassVar[bool] = False

    section: Section
    ctx: RenderContext
    duration: float = 0.0

    @property
    def name(self) -> str:
        return self.section.name

    @property
    def output_path(self) -> str:
        return str(Path(self.ctx.build_dir) / f"{self.name}_output.mp4")

    @property
    def extracted_audio_path(self) -> str:
        return str(Path(self.ctx.build_dir) / "audios" / f"{self.name}_audio.m4a")

    @property
    def needs_probe(self) -> bool:
        return self.probe_duration

    def source(self) -> str | None:
        return None

    def uses_source_audio(self) -> bool:
        return False

    def should_extract_audio(self) -> bool:
        return self.uses_source_audio()

    def validate(self) -> None:
        if self.duration <= 0:
            raise SegmentBuildError(
                f"Section '{self.name}' has no usable duration", section=self.name
            )

    # -------------------------------------------------------------------------
    # Commands
    # -------------------------------------------------------------------------

    @abstractmethod
    def input_args(self) -> list[str]:
        """ffmpeg input arguments for this section."""

    def video_filters(self) -> list[str]:
        w, h = self.ctx.width, self.ctx.height
        if self.section.options.force_aspect_ratio:
            filters = [f"scale={w}:{h}"]
        else:
            filters = [
                f"scale={w}:{h}:force_original_aspect_ratio=decrease",
                f"pad={w}:{h}:(ow-iw)/2:(oh-ih)/2:color=black",
            ]
        filters += [f"setsar={self.ctx.setsar}", f"fps={self.ctx.fps}"]
        speed = self.section.options.speed
        if speed != 1.0:
            filters.append(f"setpts=PTS/{speed}")
        filters += [f.to_ffmpeg() for f in self.section.filters]
        return filters

    def audio_filters(self) -> list[str]:
        if self.uses_source_audio():
            return atempo_chain(self.section.options.speed)
        return []

    def audio_map(self) -> str:
        # Silence is always the last input when source audio is unused
        return "0:a:0" if self.uses_source_audio() else "1:a:0"

    def encode_args(self) -> list[str]:
        return [
            "-c:v", self.ctx.video_codec,
            "-preset", self.ctx.preset,
            "-crf", str(self.ctx.crf),
            "-pix_fmt", "yuv420p",
            "-c:a", self.ctx.audio_codec,
            "-b:a", self.ctx.audio_bitrate,
            "-ar", str(self.ctx.sample_rate),
            "-ac", str(self.ctx.channels),
            "-movflags", "+faststart",
        ]

    def command(self) -> list[str]:
        args = []
        if self.ctx.hwaccel:
            args += ["-hwaccel", self.ctx.hwaccel]
        args += self.input_args()
        args += ["-vf", ",".join(self.video_filters())]
        audio_filters = self.audio_filters()
        if audio_filters:
            args += ["-af", ",".join(audio_filters)]
        args += ["-map", "0:v:0", "-map", self.audio_map()]
        args += self.encode_args()
        args += ["-t", str(self.duration), self.output_path]
        return args

    def audio_command(self) -> list[str]:
        return [
            "-i", self.source(),
            "-vn",
            "-c:a", self.ctx.audio_codec,
            "-b:a", self.ctx.audio_bitrate,
            "-ar", str(self.ctx.sample_rate),
            "-t", str(self.duration),
            self.extracted_audio_path,
        ]


@dataclass
class VideoSegment(SegmentStrategy):
    """Clip from an external video (``options.videoUrl``)."""

    type_name: ClassVar[str] = "video"

    @property
    def needs_probe(self) -> bool:
        return self.section.options.duration is None

    def source(self) -> str | None:
        return self.ctx.resolve(self.section.options.video_url)

    def uses_source_audio(self) -> bool:
        options = self.section.options
        return options.use_audio and not options.mute_section

    def validate(self) -> None:
        if not self.source():
            raise SegmentBuildError(f"Section '{self.name}' has no videoUrl", section=self.name)
        super().validate()

    def input_args(self) -> list[str]:
        args = ["-i", self.source()]
        if not self.uses_source_audio():
            args += self.ctx.silence_input(self.duration)
        return args


@dataclass
class ProjectVideoSegment(SegmentStrategy):
    """Pre-recorded project video stored at ``<assetsDir>/videos/<name>.mp4``."""

    type_name: ClassVar[str] = "project_video"
    probe_duration: ClassVar[bool] = True

    def source(self) -> str | None:
        return str(Path(self.ctx.assets_dir) / "videos" / f"{self.name}.mp4")

    def uses_source_audio(self) -> bool:
        return not self.section.options.mute_section

    def input_args(self) -> list[str]:
        args = ["-i", self.source()]
        if not self.uses_source_audio():
            args += self.ctx.silence_input(self.duration)
        return args


@dataclass
class ImageSegment(SegmentStrategy):
    """Still image (``options.backgroundUrl``) held for the section duration."""

    type_name: ClassVar[str] = "image"

    def source(self) -> str | None:
        return self.ctx.resolve(self.section.options.background_url)

    def validate(self) -> None:
        if not self.source():
            raise SegmentBuildError(f"Section '{self.name}' has no backgroundUrl", section=self.name)
        super().validate()

    def input_args(self) -> list[str]:
        return [
            "-loop", "1",
            "-t", str(self.duration),
            "-i", self.source(),
            *self.ctx.silence_input(self.duration),
        ]


@dataclass
class ColorSegment(SegmentStrategy):
    """Solid color card (``options.backgroundColor``)."""

    type_name: ClassVar[str] = "color"

    def color(self) -> str:
        return self.ctx.resolve(self.section.options.background_color) or "black"

    def input_args(self) -> list[str]:
        size = f"{self.ctx.width}x{self.ctx.height}"
        return [
            "-f", "lavfi",
            "-i", f"color=c={self.color()}:s={size}:r={self.ctx.fps}:d={self.duration}",
            *self.ctx.silence_input(self.duration),
        ]


Segment = VideoSegment | ProjectVideoSegment | ImageSegment | ColorSegment

SEGMENT_TYPES: dict[str, type[SegmentStrategy]] = {
    cls.type_name: cls for cls in (VideoSegment, ProjectVideoSegment, ImageSegment, ColorSegment)
}


def create_segment(section: Section, ctx: RenderContext, duration: float = 0.0) -> Segment | None:
    """Select the build strategy for a section, or None if its type is unknown."""
    strategy_cls = SEGMENT_TYPES.get(section.type)
    if strategy_cls is None:
        return None
    return strategy_cls(section=section, ctx=ctx, duration=duration)

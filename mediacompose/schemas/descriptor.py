from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator, model_validator

VIDEO_SEGMENT = "video_segment"

# Tolerance for the end == start + duration check on timed media
TIMING_TOLERANCE_S = 1e-3


# =============================================================================
# Shared references
# =============================================================================


class MediaRef(BaseModel):
    """A named remote or local media file (music bed, background audio)."""

    model_config = ConfigDict(populate_by_name=True, frozen=True, extra="ignore")

    name: str
    url: str | None = None
    path: str | None = None
    extension: str | None = None


class FontRef(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    name: str
    url: str | None = None


class SubtitleConfig(BaseModel):
    """Subtitle (.ass) asset and the fonts it needs."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    name: str
    url: str | None = None
    fonts: list[FontRef] = Field(default_factory=list)

    @field_validator("fonts", mode="before")
    @classmethod
    def _fonts_from_names(cls, value: Any) -> Any:
        if not value:
            return []
        return [{"name": font} if isinstance(font, str) else font for font in value]


# =============================================================================
# Global options
# =============================================================================


class TemplateGlobal(BaseModel):
    """Feature toggles and template-wide references."""

    model_config = ConfigDict(populate_by_name=True, frozen=True, extra="ignore")

    variables: dict[str, str | list[str]] = Field(default_factory=dict)
    orientation: Literal["landscape", "portrait", "square"] = "landscape"
    colors_list: list[str] = Field(default_factory=list, alias="colorsList")
    music_enabled: bool = Field(default=False, alias="musicEnabled")
    audio_enabled: bool = Field(default=False, alias="audioEnabled")
    subtitles_enabled: bool = Field(default=False, alias="subtitlesEnabled")
    blur_enabled: bool = Field(default=False, alias="blurEnabled")
    audio_volume_level: float | None = Field(default=None, alias="audioVolumeLevel", ge=0)
    transition_duration: float = Field(default=0, alias="transitionDuration", ge=0)
    music: MediaRef | None = None
    audio: MediaRef | None = None
    subtitles: SubtitleConfig | None = None


# =============================================================================
# Sections
# =============================================================================


class Filter(BaseModel):
    """One ffmpeg video filter appended to a section's filter chain."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    type: str
    value: str | float | None = None
    values: dict[str, Any] | None = None
    range: str | None = None

    def to_ffmpeg(self) -> str:
        if self.values:
            args = ":".join(f"{key}={val}" for key, val in self.values.items() if val is not None)
            return f"{self.type}={args}" if args else self.type
        if self.value is not None:
            return f"{self.type}={self.value}"
        return self.type


class SectionOptions(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True, extra="allow")

    duration: float | None = Field(default=None, ge=0)
    video_url: str | None = Field(default=None, alias="videoUrl")
    background_url: str | None = Field(default=None, alias="backgroundUrl")
    background_color: str | None = Field(default=None, alias="backgroundColor")
    logo_url: str | None = Field(default=None, alias="logoUrl")
    extension: str | None = None
    use_audio: bool = Field(default=False, alias="useAudio")
    mute_section: bool = Field(default=False, alias="muteSection")
    speed: float = Field(default=1.0, gt=0)
    music_volume_level: float | None = Field(default=None, alias="musicVolumeLevel", ge=0)
    force_aspect_ratio: bool = Field(default=False, alias="forceAspectRatio")


class Section(BaseModel):
    """One named unit of video content."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    name: str = Field(min_length=1)
    type: str
    visibility: list[str] = Field(default_factory=list)
    options: SectionOptions = Field(default_factory=SectionOptions)
    filters: list[Filter] = Field(default_factory=list)

    @property
    def is_video_segment(self) -> bool:
        return VIDEO_SEGMENT in self.visibility


# =============================================================================
# Timed audio clips
# =============================================================================


class TimedMediaOptions(BaseModel):
    """Clip placement on the audio timeline, in seconds."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    start: float = Field(default=0, ge=0)
    end: float | None = None
    duration: float | None = Field(default=None, ge=0)
    volume: float | None = Field(default=None, ge=0)

    @model_validator(mode="before")
    @classmethod
    def _derive_timing(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        start = data.get("start") or 0
        if data.get("duration") is None and data.get("end") is not None:
            data["duration"] = data["end"] - start
        elif data.get("end") is None and data.get("duration") is not None:
            data["end"] = start + data["duration"]
        return data

    @model_validator(mode="after")
    def _check_timing(self) -> "TimedMediaOptions":
        if self.duration is None or self.end is None:
            raise ValueError("timed media needs 'duration' or 'end'")
        if abs(self.end - (self.start + self.duration)) > TIMING_TOLERANCE_S:
            raise ValueError(
                f"end ({self.end}) must equal start + duration ({self.start} + {self.duration})"
            )
        return self


class TimedMedia(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    name: str
    url: str | None = None
    path: str | None = None
    extension: str | None = None
    options: TimedMediaOptions


# =============================================================================
# Overlays
# =============================================================================


class OverlayOptions(BaseModel):
    """Box geometry. Validated when the overlay is applied, not when parsed."""

    model_config = ConfigDict(populate_by_name=True, frozen=True, extra="ignore")

    x: float = 0
    y: float = 0
    width: float = 0
    height: float = 0
    blur_strength: float = Field(default=10, alias="blurStrength")
    color: str | None = None


class Overlay(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    name: str
    type: Literal["color", "blur"]
    options: OverlayOptions = Field(default_factory=OverlayOptions)


# =============================================================================
# Descriptor
# =============================================================================


class TemplateDescriptor(BaseModel):
    """Immutable input of one compile."""

    model_config = ConfigDict(populate_by_name=True, frozen=True, extra="ignore")

    global_: TemplateGlobal = Field(default_factory=TemplateGlobal, alias="global")
    sections: list[Section] = Field(default_factory=list)
    audios: list[TimedMedia] = Field(default_factory=list)
    overlays: list[Overlay] = Field(default_factory=list)

    @field_validator("global_", "sections", "audios", "overlays", mode="before")
    @classmethod
    def _null_as_default(cls, value: Any, info: ValidationInfo) -> Any:
        if value is None:
            return {} if info.field_name == "global_" else []
        return value

    @model_validator(mode="after")
    def _unique_section_names(self) -> "TemplateDescriptor":
        seen: set[str] = set()
        for section in self.sections:
            if section.name in seen:
                raise ValueError(f"duplicate section name: {section.name}")
            seen.add(section.name)
        return self

    def video_sections(self) -> list[Section]:
        """Sections visible as video segments, in declaration order."""
        return [section for section in self.sections if section.is_video_segment]

    def first_overlay(self, overlay_type: str) -> Overlay | None:
        return next((o for o in self.overlays if o.type == overlay_type), None)

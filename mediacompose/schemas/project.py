from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field

from mediacompose.config import Settings
from mediacompose.schemas.descriptor import MediaRef, SubtitleConfig


class AudioConfig(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    sample_rate: int | None = Field(default=None, alias="sampleRate", gt=0)
    channel_layout: str | None = Field(default=None, alias="channelLayout")


class VideoConfig(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    orientation: str | None = None
    # "WxH" frame size overriding the orientation default
    scale: str | None = None
    setsar: str | None = None


class CodecConfig(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    video_codec: str | None = Field(default=None, alias="videoCodec")
    audio_codec: str | None = Field(default=None, alias="audioCodec")


class HardwareConfig(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    hwaccel: str | None = None
    preset: str | None = None


class ProjectConfig(BaseModel):
    """Per-compile configuration supplied by the caller.

    Accepts both snake_case and camelCase input.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    build_dir: str | None = Field(default=None, alias="buildDir")
    temp_dir: str | None = Field(default=None, alias="tempDir")
    assets_dir: str | None = Field(default=None, alias="assetsDir")
    output_dir: str | None = Field(default=None, alias="outputDir")
    audio_config: AudioConfig = Field(default_factory=AudioConfig, alias="audioConfig")
    video_config: VideoConfig = Field(default_factory=VideoConfig, alias="videoConfig")
    codec_config: CodecConfig = Field(default_factory=CodecConfig, alias="codecConfig")
    hardware_config: HardwareConfig = Field(default_factory=HardwareConfig, alias="hardwareConfig")
    subtitles: SubtitleConfig | None = None
    music: MediaRef | None = None
    field_values: dict[str, str] = Field(default_factory=dict, alias="fields")
    current_locale: str | None = Field(default=None, alias="currentLocale")

    def apply_defaults(self, settings: Settings) -> "ProjectConfig":
        """Return a copy with every directory and audio setting filled in."""
        build_dir = self.build_dir or settings.default_build_dir
        audio_config = AudioConfig(
            sample_rate=self.audio_config.sample_rate or settings.render_audio_sample_rate,
            channel_layout=self.audio_config.channel_layout or settings.render_channel_layout,
        )
        return self.model_copy(
            update={
                "build_dir": build_dir,
                "temp_dir": self.temp_dir or str(Path(build_dir) / "temp"),
                "assets_dir": self.assets_dir or settings.default_assets_dir,
                "audio_config": audio_config,
            }
        )

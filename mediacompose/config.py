from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Application
    app_name: str = "mediacompose"
    app_version: str = "0.1.0"
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    # FFmpeg
    ffmpeg_path: str = "ffmpeg"
    ffprobe_path: str = "ffprobe"
    ffmpeg_log_level: str = "error"

    # Directories (used when the project config does not set them)
    default_build_dir: str = "build"
    default_assets_dir: str = "assets"

    # Segment scheduling: each in-flight build spawns one ffmpeg process
    max_concurrent_segments: int = Field(default=2, ge=1)

    # Remote assets
    fetch_timeout_s: float = 120.0
    # e.g. "https://example.com/fonts/{name}.ttf"; fonts without a URL are cache-only when unset
    font_url_template: str | None = None

    # Render settings
    render_fps: int = 30
    render_video_codec: str = "libx264"
    render_preset: str = "medium"
    render_crf: int = 20
    render_audio_bitrate: str = "192k"
    render_audio_sample_rate: int = 48000
    render_channel_layout: str = "stereo"


@lru_cache
def get_settings() -> Settings:
    return Settings()

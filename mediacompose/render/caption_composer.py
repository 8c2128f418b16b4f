"""Subtitle loading and burn-in."""

import logging
from dataclasses import dataclass, field

from mediacompose.exceptions import (
    AssetResolutionError,
    CaptionAssetMissingError,
    ComposeError,
    SubtitleAssetMissingError,
)
from mediacompose.schemas.descriptor import FontRef, SubtitleConfig, TemplateDescriptor
from mediacompose.schemas.project import ProjectConfig
from mediacompose.services.asset_cache import AssetCache
from mediacompose.services.storage_service import LocalStorageService
from mediacompose.utils.ffmpeg_adapter import FFmpegAdapter

logger = logging.getLogger(__name__)

DEFAULT_BURN_PRESET = "fast"


@dataclass
class LoadedSubtitles:
    path: str | None = None
    # font name -> cached file
    fonts: dict[str, str] = field(default_factory=dict)


class CaptionComposer:
    def __init__(
        self,
        config: ProjectConfig,
        descriptor: TemplateDescriptor,
        ffmpeg: FFmpegAdapter,
        storage: LocalStorageService,
        cache: AssetCache,
        font_url_template: str | None = None,
    ):
        self.config = config
        self.descriptor = descriptor
        self.ffmpeg = ffmpeg
        self.storage = storage
        self.cache = cache
        self.font_url_template = font_url_template

    @property
    def fonts_dir(self) -> str:
        return self.cache.kind_dir("font")

    def active_subtitles(self) -> SubtitleConfig | None:
        """Project override first, then the template's global subtitles."""
        return self.config.subtitles or self.descriptor.global_.subtitles

    def _font_url(self, font: FontRef) -> str | None:
        if font.url:
            return font.url
        if self.font_url_template:
            return self.font_url_template.format(name=font.name)
        return None

    async def load_subtitles(self) -> LoadedSubtitles:
        """Resolve the active subtitle file and its fonts through the cache.

        Missing assets are logged and skipped here; the burn step decides
        whether their absence is fatal.
        """
        logger.info("[Captions] Loading subtitles...")
        loaded = LoadedSubtitles()

        subtitles = self.active_subtitles()
        if subtitles is None:
            logger.info("[Captions] No subtitles configured. Skipping.")
            return loaded

        try:
            loaded.path = await self.cache.resolve(subtitles.name, "subtitle", subtitles.url, ".ass")
        except AssetResolutionError as e:
            logger.info(f"[Captions] {e.message}")

        for font in subtitles.fonts:
            logger.info(f"[Captions] Fetching font {font.name}")
            try:
                loaded.fonts[font.name] = await self.cache.resolve(font.name, "font", self._font_url(font))
            except AssetResolutionError as e:
                logger.warning(f"[Captions] Font {font.name} unavailable: {e.message}")

        return loaded

    def build_burn_command(
        self,
        video_path: str,
        subtitle_path: str,
        destination: str,
        scale: str = "",
        preset: str = DEFAULT_BURN_PRESET,
    ) -> list[str]:
        # e.g. scale="scale=1280:-1," to resize before drawing
        vf = f"{scale}ass={subtitle_path}:fontsdir={self.fonts_dir}".rstrip(", ")
        return [
            "-i", video_path,
            "-vf", vf,
            "-max_muxing_queue_size", "1024",
            "-c:a", "copy",
            "-preset", preset,
            destination,
        ]

    async def burn_captions(
        self,
        final_video: str,
        subtitle_path: str | None,
        scale: str = "",
        preset: str = DEFAULT_BURN_PRESET,
    ) -> None:
        """Burn the subtitle file into the final video, in place."""
        logger.info("[Captions] Burning subtitles...")
        if not subtitle_path:
            logger.info("[Captions] No subtitles to burn. Skipping.")
            return

        if not self.storage.stat(final_video):
            raise CaptionAssetMissingError(f"Input video file does not exist: {final_video}")
        if not self.storage.stat(subtitle_path):
            raise SubtitleAssetMissingError(f"Subtitle file does not exist: {subtitle_path}")

        self.storage.ensure_dir(self.fonts_dir)
        temp = self.storage.temp_video_path(self.config.temp_dir)
        self.storage.move(final_video, temp)

        result = await self.ffmpeg.execute(
            self.build_burn_command(temp, subtitle_path, final_video, scale, preset)
        )
        logger.info(f"[Captions] ffmpeg process exited with rc {result.returncode}")

        if not result.ok:
            raise ComposeError("Error burning subtitles into the video", code="CAPTION_BURN_FAILED")

        logger.info(f"[Captions] Cleaning up temporary file {temp}")
        self.storage.unlink(temp)

"""Background music bed: load, loop to the video length, mix in."""

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

from mediacompose.exceptions import AssetResolutionError, AudioComposeError
from mediacompose.schemas.descriptor import MediaRef, Section, TemplateDescriptor
from mediacompose.schemas.project import ProjectConfig
from mediacompose.services.asset_cache import AssetCache
from mediacompose.services.storage_service import LocalStorageService
from mediacompose.utils.ffmpeg_adapter import FFmpegAdapter

logger = logging.getLogger(__name__)

DEFAULT_MUSIC_VOLUME = 0.2


@dataclass(frozen=True)
class VolumeWindow:
    start: float
    end: float
    volume: float


def build_volume_expr(windows: Sequence[VolumeWindow], base: float = DEFAULT_MUSIC_VOLUME) -> str:
    """Nested ``if(between(t,a,b),v,...)`` expression for the volume filter."""
    expr = str(base)
    for window in reversed(windows):
        expr = f"if(between(t,{window.start},{window.end}),{window.volume},{expr})"
    return expr


class MusicComposer:
    def __init__(
        self,
        config: ProjectConfig,
        descriptor: TemplateDescriptor,
        ffmpeg: FFmpegAdapter,
        storage: LocalStorageService,
        cache: AssetCache,
    ):
        self.config = config
        self.descriptor = descriptor
        self.ffmpeg = ffmpeg
        self.storage = storage
        self.cache = cache
        self.audios_dir = str(Path(config.build_dir) / "audios")

    def active_music(self) -> MediaRef | None:
        return self.config.music or self.descriptor.global_.music

    async def load_music(self) -> tuple[str, str] | None:
        """Resolve the music bed. Returns (name, path) or None when unavailable."""
        music = self.active_music()
        if music is None:
            logger.info("[Music] No music configured. Skipping.")
            return None

        if music.path and self.storage.stat(music.path):
            return music.name, music.path
        try:
            path = await self.cache.resolve(music.name, "music", music.url, music.extension)
        except AssetResolutionError as e:
            logger.error(f"[Music] Failed to load {music.name}: {e.message}")
            return None

        logger.info(f"[Music] Loaded {music.name}")
        return music.name, path

    def volume_windows(self, sections: Sequence[Section], durations: dict[str, float]) -> list[VolumeWindow]:
        """Per-section music volume as time windows on the concatenated video."""
        windows = []
        position = 0.0
        for section in sections:
            duration = durations.get(section.name, 0.0)
            level = section.options.music_volume_level
            if level is not None and duration > 0:
                windows.append(VolumeWindow(start=position, end=position + duration, volume=level))
            position += duration
        return windows

    async def loop_music(self, music_path: str, total_length: float) -> str:
        """Loop the music to ``total_length`` seconds."""
        self.storage.ensure_dir(self.audios_dir)
        destination = str(Path(self.audios_dir) / "music_loop.m4a")
        command = [
            "-stream_loop", "-1",
            "-i", music_path,
            "-t", str(total_length),
            "-c:a", "aac",
            destination,
        ]

        logger.info(f"[Music] Looping music to {total_length}s")
        result = await self.ffmpeg.execute(command)
        logger.info(f"[Music] ffmpeg process exited with rc {result.returncode}")
        if not result.ok:
            raise AudioComposeError("Error looping music")
        return destination

    def build_append_music_command(
        self, video_path: str, music_path: str, destination: str, windows: Sequence[VolumeWindow]
    ) -> list[str]:
        filter_complex = "; ".join(
            [
                f"[1:a]volume='{build_volume_expr(windows)}':eval=frame[music]",
                "[0:a][music]amix=inputs=2:duration=first:normalize=0[aout]",
            ]
        )
        return [
            "-i", video_path,
            "-i", music_path,
            "-filter_complex", filter_complex,
            "-map", "0:v",
            "-map", "[aout]",
            "-c:v", "copy",
            "-c:a", "aac",
            destination,
        ]

    async def append_music(self, final_video: str, music_path: str, windows: Sequence[VolumeWindow]) -> None:
        logger.info("[Music] Appending music to the video")
        temp = self.storage.temp_video_path(self.config.temp_dir)
        self.storage.move(final_video, temp)

        result = await self.ffmpeg.execute(
            self.build_append_music_command(temp, music_path, final_video, windows)
        )
        logger.info(f"[Music] ffmpeg process exited with rc {result.returncode}")
        if not result.ok:
            raise AudioComposeError("Error on music appending")

        logger.info(f"[Music] Cleaning up temporary file {temp}")
        self.storage.unlink(temp)

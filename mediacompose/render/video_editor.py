"""Segment concatenation and the finalize pipeline.

Finalize order is fixed: append audio -> blur overlay -> burn captions ->
relocate. Each stage rewrites the current final video in place.
"""

import logging
from pathlib import Path

from mediacompose.exceptions import ConcatError
from mediacompose.render.audio_composer import AudioComposer
from mediacompose.render.caption_composer import CaptionComposer
from mediacompose.render.events import CompileEvent, CompileEventChannel, CompileEventType
from mediacompose.render.overlay_composer import OverlayComposer
from mediacompose.render.state import BuildStateAggregator, Project, parse_manifest
from mediacompose.schemas.descriptor import TemplateDescriptor
from mediacompose.services.storage_service import LocalStorageService
from mediacompose.utils.ffmpeg_adapter import FFmpegAdapter

logger = logging.getLogger(__name__)

OUTPUT_FILENAME = "output.mp4"


class VideoEditor:
    def __init__(
        self,
        project: Project,
        descriptor: TemplateDescriptor,
        aggregator: BuildStateAggregator,
        ffmpeg: FFmpegAdapter,
        storage: LocalStorageService,
        events: CompileEventChannel,
        audio_composer: AudioComposer,
        caption_composer: CaptionComposer,
        overlay_composer: OverlayComposer,
    ):
        self.project = project
        self.descriptor = descriptor
        self.aggregator = aggregator
        self.ffmpeg = ffmpeg
        self.storage = storage
        self.events = events
        self.audio_composer = audio_composer
        self.caption_composer = caption_composer
        self.overlay_composer = overlay_composer

    @property
    def build_dir(self) -> str:
        return self.project.config.build_dir

    def build_concat_command(self, manifest_path: str, destination: str) -> list[str]:
        return [
            "-f", "concat",
            "-safe", "0",
            "-auto_convert", "1",
            "-i", manifest_path,
            "-c", "copy",
            "-movflags", "+faststart",
            destination,
        ]

    async def concat(self) -> str:
        """Concatenate the manifest into ``<buildDir>/output.mp4``."""
        logger.info("[Concat] Starting concatenation process")
        manifest_path = self.aggregator.state.file_concat_path
        files = parse_manifest(self.storage.read(manifest_path))
        final_video = str(Path(self.build_dir) / OUTPUT_FILENAME)
        self.project.final_video = final_video

        if not files:
            self.aggregator.record_error("concat")
            raise ConcatError("No segments to concatenate")

        if len(files) == 1:
            logger.info(f"[Concat] Single file detected: {files[0]} -> {final_video}")
            self.storage.copy(files[0], final_video)
            return final_video

        result = await self.ffmpeg.execute(self.build_concat_command(manifest_path, final_video))
        logger.info(f"[Concat] ffmpeg process exited with rc {result.returncode}")

        if not result.ok:
            self.aggregator.record_error("concat")
            raise ConcatError()
        return final_video

    async def finalize(self) -> None:
        """Run the enabled finalize stages, then publish and clean up."""
        logger.info("[End] Finalizing project")
        settings = self.descriptor.global_
        state = self.aggregator.state

        if settings.audio_enabled:
            await self.audio_composer.append_audio(self.project.final_video, state.audio_path)

        if settings.blur_enabled:
            logger.info("[End] Applying blur overlay")
            await self.overlay_composer.apply_blur_box(self.project.final_video)

        if settings.subtitles_enabled:
            logger.info("[End] Burning captions")
            await self.caption_composer.burn_captions(self.project.final_video, state.subtitle_path)

        output_dir = self.project.config.output_dir
        if output_dir:
            out_path = str(Path(output_dir) / OUTPUT_FILENAME)
            logger.info(f"[End] Moving final video to {out_path}")
            self.storage.move(self.project.final_video, out_path)
            self.project.final_video = out_path

        if self.project.errors:
            return

        self.events.emit(
            CompileEvent(
                type=CompileEventType.FINALIZED,
                progress=1.0,
                payload={
                    "video_source": self.project.final_video,
                    "template_assets": self.project.assets.to_dict(),
                },
            )
        )
        self.clean_temp()
        self.events.progress(self.aggregator.set_progress(1.0))
        logger.info("[End] project cleaned")
        self.project.clean()

    def clean_temp(self) -> None:
        """Purge the build directory, unless the final video still lives in it."""
        build_dir = Path(self.build_dir).resolve()
        final_video = Path(self.project.final_video).resolve()
        if build_dir in final_video.parents:
            logger.info(f"[Clean] Final video is inside {build_dir}; purging temp files only")
            self.storage.clean_directory(self.project.config.temp_dir)
            return

        logger.info("[Clean] Cleaning temporary files")
        self.storage.clean_directory(str(build_dir))

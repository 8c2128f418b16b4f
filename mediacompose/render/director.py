"""Template director: the compile state machine.

configure -> construct (init -> video segments -> audio -> finalize).
``construct()`` never raises; it returns the finished Project or None.
"""

import asyncio
import logging
from enum import Enum
from pathlib import Path

from mediacompose.config import Settings, get_settings
from mediacompose.exceptions import (
    CompileCancelledError,
    ComposeError,
    DirectorStateError,
    ProbeError,
    SegmentBuildError,
)
from mediacompose.render.audio_composer import AudioComposer
from mediacompose.render.caption_composer import CaptionComposer
from mediacompose.render.events import (
    CancellationToken,
    CompileEvent,
    CompileEventChannel,
    CompileEventType,
)
from mediacompose.render.music_composer import MusicComposer
from mediacompose.render.overlay_composer import OverlayComposer
from mediacompose.render.segment_builder import SegmentBuilder
from mediacompose.render.segments import RenderContext, create_segment
from mediacompose.render.state import BuildStateAggregator, Project, SegmentResult
from mediacompose.render.video_editor import VideoEditor
from mediacompose.schemas.descriptor import Section, TemplateDescriptor
from mediacompose.schemas.project import ProjectConfig
from mediacompose.services.asset_cache import AssetCache
from mediacompose.services.storage_service import LocalStorageService
from mediacompose.utils.ffmpeg_adapter import FFmpegAdapter

logger = logging.getLogger(__name__)

MANIFEST_FILENAME = "segments.list"


class CompileState(str, Enum):
    IDLE = "idle"
    CONFIGURED = "configured"
    INITIALIZING = "initializing"
    BUILDING_SEGMENTS = "building_segments"
    COMPOSING_AUDIO = "composing_audio"
    FINALIZING = "finalizing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class TemplateDirector:
    """Drives one compile. Create a new director per request."""

    def __init__(
        self,
        ffmpeg: FFmpegAdapter | None = None,
        storage: LocalStorageService | None = None,
        cache: AssetCache | None = None,
        events: CompileEventChannel | None = None,
        cancel_token: CancellationToken | None = None,
        settings: Settings | None = None,
        max_concurrent_segments: int | None = None,
    ):
        self.settings = settings or get_settings()
        self.ffmpeg = ffmpeg or FFmpegAdapter(self.settings)
        self.storage = storage or LocalStorageService()
        self.cache = cache
        self.events = events or CompileEventChannel()
        self.cancel_token = cancel_token or CancellationToken()
        self.max_concurrent_segments = max_concurrent_segments or self.settings.max_concurrent_segments

        self.state = CompileState.IDLE
        self.project: Project | None = None
        self.descriptor: TemplateDescriptor | None = None
        self._stop_build = False

    # =========================================================================
    # Configuration
    # =========================================================================

    def configure(self, project_config: ProjectConfig, descriptor: TemplateDescriptor) -> "TemplateDirector":
        """Resolve directories, apply defaults and wire the stage components."""
        if self.state is not CompileState.IDLE:
            raise DirectorStateError(f"configure() called in state {self.state.value}")

        config = project_config.apply_defaults(self.settings)
        self.descriptor = descriptor
        self.project = Project(config=config)

        if self.cache is None:
            self.cache = AssetCache(config.assets_dir, self.storage)

        self.ctx = RenderContext.from_project(config, descriptor, self.settings)
        self.aggregator = BuildStateAggregator(self.project, self.storage)
        self.builder = SegmentBuilder(self.ffmpeg, self.storage, self.ctx)

        components = (config, descriptor, self.ffmpeg, self.storage, self.cache)
        self.audio_composer = AudioComposer(*components)
        self.music_composer = MusicComposer(*components)
        self.caption_composer = CaptionComposer(*components, font_url_template=self.settings.font_url_template)
        self.overlay_composer = OverlayComposer(descriptor, self.ffmpeg, self.storage, temp_dir=config.temp_dir)
        self.video_editor = VideoEditor(
            self.project,
            descriptor,
            self.aggregator,
            self.ffmpeg,
            self.storage,
            self.events,
            self.audio_composer,
            self.caption_composer,
            self.overlay_composer,
        )

        self.state = CompileState.CONFIGURED
        logger.info(f"[TemplateDirector] Configured (build dir {config.build_dir})")
        return self

    # =========================================================================
    # Construction
    # =========================================================================

    async def construct(self) -> Project | None:
        """Run the compile. Returns the Project on success, None otherwise."""
        if self.state is not CompileState.CONFIGURED:
            error = DirectorStateError(f"construct() called in state {self.state.value}")
            logger.error(f"[TemplateDirector][Error] {error.to_dict()}")
            return None

        try:
            self.state = CompileState.INITIALIZING
            await self.init()
            self._check_cancelled()

            self.state = CompileState.BUILDING_SEGMENTS
            await self.compile_video_segments()
            self._check_cancelled()

            if self.descriptor.global_.audio_enabled and not self._stop_build:
                self.state = CompileState.COMPOSING_AUDIO
                await self.compile_audio_segments()
                self._check_cancelled()

            if self.project.errors:
                raise SegmentBuildError(f"Errors recorded before finalize: {self.project.errors}")

            self.state = CompileState.FINALIZING
            await self.video_editor.finalize()
        except CompileCancelledError:
            self._on_cancelled()
            return None
        except Exception as err:
            self.fire_error(err)
            return None
        finally:
            self.storage.clean_directory(self.project.config.temp_dir)

        self.state = CompileState.COMPLETED
        logger.info(f"[TemplateDirector] Completed: {self.project.final_video}")
        return self.project

    async def init(self) -> None:
        """Prepare the manifest and load audio, music and caption assets."""
        build_dir = self.storage.ensure_dir(self.project.config.build_dir)
        manifest_path = str(Path(build_dir) / MANIFEST_FILENAME)
        self.aggregator.update(file_concat_path=manifest_path)

        audio_segments = await self.audio_composer.load_audios()
        background = await self.audio_composer.load_background_audio()
        self.aggregator.update(audio_segments=audio_segments, background_audio_path=background)

        music = await self.music_composer.load_music()
        if music:
            name, path = music
            self.aggregator.update(music_path=path)
            self.project.assets.musics[name] = path

        subtitles = await self.caption_composer.load_subtitles()
        self.aggregator.update(subtitle_path=subtitles.path)
        self.project.assets.fonts.update(subtitles.fonts)

        self.storage.write(manifest_path)
        logger.info(f"[Init] Segment file saved to {manifest_path}")

    async def compile_video_segments(self) -> None:
        logger.info("[TemplateDirector] Compiling video segments")
        sections = self.descriptor.video_sections()

        plan = await self.calculate_total_length(sections)
        logger.info(f"[TemplateDirector] Length: {self.aggregator.state.total_length}")

        await self.process_video_segments(sections, plan)

        if not self._should_stop():
            await self.finalize_compilation(sections)
        logger.info("[TemplateDirector] Compilation done")

    async def compile_audio_segments(self) -> None:
        state = self.aggregator.state
        audio_path = await self.audio_composer.compose_audio(state.audio_segments, state.audio_bed_path())
        self.aggregator.update(audio_path=audio_path)

    # =========================================================================
    # Video segments
    # =========================================================================

    async def calculate_total_length(self, sections: list[Section]) -> list[float]:
        """Duration of every video section, probing sources where required."""
        durations = []
        for section in sections:
            try:
                duration = await self.section_duration(section)
            except Exception:
                # Lookup failures of any kind are attributed to the section
                self.aggregator.record_error(section.name)
                raise
            durations.append(duration)

        self.aggregator.plan(list(zip([s.name for s in sections], durations)))
        return durations

    async def section_duration(self, section: Section) -> float:
        segment = create_segment(section, self.ctx)
        if segment is None or not segment.needs_probe:
            return section.options.duration or 0.0

        source = segment.source()
        logger.info(f"[{section.name}][Editing] fetching infos")
        if not source:
            raise ProbeError(f"No source to probe for {section.name}", section=section.name)

        info = await self.ffmpeg.probe(source)
        if info.duration is None:
            raise ProbeError(f"Duration not found for {section.name}", section=section.name)
        return info.duration

    async def process_video_segments(self, sections: list[Section], durations: list[float]) -> None:
        """Build sections with at most ``max_concurrent_segments`` in flight.

        Results are applied here, one at a time, as they arrive. Nothing new is
        scheduled once the stop flag is set.
        """
        slots = asyncio.Semaphore(self.max_concurrent_segments)
        results: asyncio.Queue[SegmentResult] = asyncio.Queue()
        tasks = []
        applied = 0

        for index, (section, duration) in enumerate(zip(sections, durations)):
            await slots.acquire()
            applied += self._drain(results)
            if self._should_stop():
                slots.release()
                logger.info(f"[TemplateDirector] Stop requested; not scheduling {section.name}")
                break
            tasks.append(asyncio.create_task(self._build_segment(slots, section, index, duration, results)))

        while applied < len(tasks):
            self._apply(await results.get())
            applied += 1

        await asyncio.gather(*tasks)

    async def _build_segment(
        self,
        slots: asyncio.Semaphore,
        section: Section,
        index: int,
        duration: float,
        results: asyncio.Queue,
    ) -> None:
        try:
            if self._should_stop():
                result = SegmentResult(section=section.name, index=index, duration=duration, skipped=True)
            else:
                logger.info(f"[{section.name}][Editing] started")
                result = await self.builder.build(section, index, duration)
        except Exception as err:
            # Segment failures stop at this boundary and are recorded
            logger.exception(f"[{section.name}][Editing] failed: {err}")
            result = SegmentResult(section=section.name, index=index, duration=duration, errors=[section.name])

        # Queue before freeing the slot so the scheduler sees this result first
        results.put_nowait(result)
        slots.release()

    def _drain(self, results: asyncio.Queue) -> int:
        count = 0
        while not results.empty():
            self._apply(results.get_nowait())
            count += 1
        return count

    def _apply(self, result: SegmentResult) -> None:
        progress = self.aggregator.apply_segment(result)
        if result.skipped:
            return
        if result.errors:
            logger.error(f"[{result.section}][Editing] failed")
            self._stop_build = True
            return
        self.events.progress(progress)
        logger.info(f"[{result.section}][Editing] finalized ({round(progress * 100)}%)")

    async def finalize_compilation(self, sections: list[Section]) -> None:
        """Concatenate the segments and lay the music bed when enabled."""
        final_video = await self.video_editor.concat()

        state = self.aggregator.state
        if self.descriptor.global_.music_enabled and state.music_path:
            looped = await self.music_composer.loop_music(state.music_path, state.total_length)
            windows = self.music_composer.volume_windows(sections, state.durations)
            await self.music_composer.append_music(final_video, looped, windows)

    # =========================================================================
    # Stop handling
    # =========================================================================

    def cancel(self) -> None:
        self.cancel_token.cancel()

    def _should_stop(self) -> bool:
        return self._stop_build or self.cancel_token.cancelled or bool(self.project.errors)

    def _check_cancelled(self) -> None:
        if self.cancel_token.cancelled:
            raise CompileCancelledError()

    def _on_cancelled(self) -> None:
        logger.info("[TemplateDirector] Compile cancelled")
        self._stop_build = True
        self.state = CompileState.CANCELLED
        self.aggregator.delete_manifest()
        self.events.emit(
            CompileEvent(
                type=CompileEventType.CANCELLED,
                progress=self.project.progress,
                error=CompileCancelledError().to_dict(),
            )
        )

    def fire_error(self, error: BaseException) -> None:
        """Log, stop the build, delete the manifest and publish the failure."""
        if isinstance(error, ComposeError):
            details = error.to_dict()
        else:
            details = {"code": "INTERNAL_ERROR", "message": str(error)}
        logger.error(f"[TemplateDirector][Error] {details}", exc_info=error)

        self._stop_build = True
        self.state = CompileState.FAILED
        self.aggregator.delete_manifest()
        self.events.emit(
            CompileEvent(
                type=CompileEventType.FAILED,
                progress=self.project.progress,
                payload={"errors": list(self.project.errors)},
                error=details,
            )
        )

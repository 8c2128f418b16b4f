"""Per-section build protocol: build_part -> prepare_part -> render_part.

A builder holds no per-section state, so one instance can build independent
sections concurrently. Each build reports a ``SegmentResult``; nothing here
touches the shared build state.
"""

import logging
from pathlib import Path

from mediacompose.render.segments import RenderContext, Segment, create_segment
from mediacompose.render.state import SegmentResult
from mediacompose.schemas.descriptor import Section
from mediacompose.services.storage_service import LocalStorageService
from mediacompose.utils.ffmpeg_adapter import FFmpegAdapter

logger = logging.getLogger(__name__)


class SegmentBuilder:
    def __init__(self, ffmpeg: FFmpegAdapter, storage: LocalStorageService, ctx: RenderContext):
        self.ffmpeg = ffmpeg
        self.storage = storage
        self.ctx = ctx

    def build_part(self, section: Section, duration: float) -> Segment | None:
        """Select the strategy and validate its inputs.

        Returns None (logged) when the section type is unknown. Invalid inputs
        of a known type raise SegmentBuildError.
        """
        segment = create_segment(section, self.ctx, duration)
        if segment is None:
            logger.error(f"[{section.name}][BuildPart] unknown section type '{section.type}'")
            return None

        segment.validate()
        self.storage.ensure_dir(str(Path(segment.output_path).parent))
        logger.info(f"[{section.name}][BuildPart] init ({segment.type_name}, {duration}s)")
        return segment

    async def prepare_part(self, segment: Segment, result: SegmentResult) -> None:
        """Extract the source audio track when the strategy uses it."""
        logger.info(f"[{segment.name}][PreparePart] start")

        if segment.should_extract_audio():
            self.storage.ensure_dir(str(Path(segment.extracted_audio_path).parent))
            logger.info(f"[{segment.name}][PreparePart] extracting audio")
            exec_result = await self.ffmpeg.execute(segment.audio_command())
            logger.info(f"[{segment.name}][PreparePart] ffmpeg process exited with rc {exec_result.returncode}")

            if exec_result.ok:
                result.extracted_audio_path = segment.extracted_audio_path
                logger.info(f"[{segment.name}][PreparePart] audio extracted {segment.extracted_audio_path}")
            else:
                result.errors.append(segment.name)

        logger.info(f"[{segment.name}][PreparePart] finalized")

    async def render_part(self, segment: Segment, result: SegmentResult) -> None:
        """Run the strategy's ffmpeg command. Any nonzero rc fails the section."""
        exec_result = await self.ffmpeg.execute(segment.command())
        logger.info(f"[{segment.name}][RenderPart] ffmpeg process exited with rc {exec_result.returncode}")

        if not exec_result.ok:
            if segment.name not in result.errors:
                result.errors.append(segment.name)
            return

        result.output_path = segment.output_path
        logger.info(f"[{segment.name}][RenderPart] finalized")

    async def build(self, section: Section, index: int, duration: float) -> SegmentResult:
        """Run the three steps for one section."""
        result = SegmentResult(section=section.name, index=index, duration=duration)

        segment = self.build_part(section, duration)
        if segment is None:
            result.errors.append(section.name)
            return result
        result.input_source = segment.source()

        await self.prepare_part(segment, result)
        await self.render_part(segment, result)
        return result

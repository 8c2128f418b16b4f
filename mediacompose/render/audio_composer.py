"""Audio timeline composition.

Loads the timed audio clips, mixes them over a background bed (configured
background audio, extracted section audio, or synthesized silence) and
finally replaces the audio stream of the assembled video with the mix.
"""

import logging
import math
from collections.abc import Sequence
from pathlib import Path

from mediacompose.exceptions import AssetResolutionError, AudioComposeError, ProbeError
from mediacompose.render.state import AudioSegment
from mediacompose.schemas.descriptor import TemplateDescriptor
from mediacompose.schemas.project import ProjectConfig
from mediacompose.services.asset_cache import AssetCache
from mediacompose.services.storage_service import LocalStorageService
from mediacompose.utils.ffmpeg_adapter import FFmpegAdapter

logger = logging.getLogger(__name__)

BACKGROUND_VOLUME = 0.2
NOISE_REDUCTION = "afftdn=nr=20:nf=-20"

# Composed track encoding
COMPOSED_SAMPLE_RATE = 48000
COMPOSED_BITRATE = "192k"


def calculate_covering_duration(segments: Sequence[AudioSegment]) -> float:
    """Length of the timeline covered by the clips, gaps included.

    Overlapping intervals are merged and gaps between them are kept as their
    own intervals, so the sum telescopes to ``max(end) - min(start)``.
    """
    if not segments:
        return 0.0

    intervals = sorted(([s.start, s.end] for s in segments), key=lambda i: i[0])

    merged = []
    current = intervals[0]
    for start, end in intervals[1:]:
        if current[1] >= start:
            current[1] = max(current[1], end)
        else:
            merged.append(current)
            # Gap between two clips
            merged.append([current[1], start])
            current = [start, end]
    merged.append(current)

    return sum(end - start for start, end in merged)


def _format_number(value: float) -> str:
    return str(int(value)) if float(value).is_integer() else str(value)


class AudioComposer:
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

    # =========================================================================
    # Loading
    # =========================================================================

    async def load_audios(self) -> list[AudioSegment]:
        """Resolve every timed clip to a local file. Unresolvable clips are skipped."""
        audios = self.descriptor.audios
        logger.info("[Audio] Loading audios...")
        if not audios:
            logger.info("[Audio] No audio configured. Skipping.")
            return []

        segments = []
        for audio in audios:
            logger.info(f"[Audio] Loading {audio.name}")
            if audio.path and self.storage.stat(audio.path):
                path = audio.path
            else:
                try:
                    path = await self.cache.resolve(audio.name, "audio", audio.url, audio.extension)
                except AssetResolutionError as e:
                    logger.error(f"[Audio] Failed to load {audio.name}: {e.message}")
                    continue

            options = audio.options
            segments.append(
                AudioSegment(
                    name=audio.name,
                    path=path,
                    start=options.start,
                    duration=options.duration,
                    volume=options.volume,
                )
            )

        logger.info(f"[Audio] Loaded all audios {len(segments)}")
        return segments

    async def load_background_audio(self) -> str | None:
        background = self.descriptor.global_.audio
        if background is None:
            return None

        logger.info("[Audio] Loading background audio")
        if background.path and self.storage.stat(background.path):
            return background.path
        try:
            path = await self.cache.resolve(
                f"audio_{background.name}", "audio", background.url, background.extension or ".mp4"
            )
        except AssetResolutionError as e:
            logger.error(f"[Audio] Failed to load background audio {background.name}: {e.message}")
            return None

        logger.info(f"[Audio] Loaded background audio {background.name}")
        return path

    # =========================================================================
    # Composition
    # =========================================================================

    async def compose_audio(self, segments: Sequence[AudioSegment], bed_path: str | None) -> str | None:
        """Mix the clips over the background bed into ``<buildDir>/audios/audio.m4a``.

        Returns:
            The composed track, or None when there is nothing to compose
        """
        logger.info("[Audio] Composing audio segments...")
        if not segments:
            logger.info("[Audio] No audio segments to compose. Skipping.")
            return None

        self.storage.ensure_dir(self.audios_dir)
        destination = str(Path(self.audios_dir) / "audio.m4a")

        if bed_path is None:
            logger.info("[Audio] No background audio found. Adding blank audio as base.")
            duration = calculate_covering_duration(segments)
            blank_path = str(Path(self.audios_dir) / "blank.m4a")
            await self.create_blank_audio(duration, blank_path)
            bed = AudioSegment(name="blank", path=blank_path, start=0, duration=duration)
        else:
            logger.info("[Audio] Adding background audio as the first segment")
            probe = await self.ffmpeg.probe(bed_path)
            if probe.duration is None:
                raise ProbeError(f"Duration not found for {bed_path}")
            bed = AudioSegment(
                name="background",
                path=bed_path,
                start=0,
                duration=probe.duration,
                volume=BACKGROUND_VOLUME,
            )

        command = self.build_compose_audio_command([bed, *segments], destination)

        logger.info(f"[Audio] Composing audio to {destination}")
        result = await self.ffmpeg.execute(command)
        logger.info(f"[Audio] ffmpeg process exited with rc {result.returncode}")
        if not result.ok:
            raise AudioComposeError("Error on audio composition")

        logger.info("[Audio] Composed audio")
        return destination

    def silence_source(self) -> str:
        audio_config = self.config.audio_config
        return (
            f"anullsrc=channel_layout={audio_config.channel_layout}"
            f":sample_rate={audio_config.sample_rate}"
        )

    async def create_blank_audio(self, duration: float, destination: str) -> None:
        if math.isnan(duration) or duration <= 0:
            logger.error(f"[Audio] Invalid duration {duration}")
            raise AudioComposeError(f"Invalid blank audio duration: {duration}")

        logger.info(f"[Audio] Creating blank audio for {duration} seconds")
        command = [
            "-f", "lavfi",
            "-i", self.silence_source(),
            "-t", str(duration),
            "-c:a", "aac",
            destination,
        ]
        result = await self.ffmpeg.execute(command)
        if not result.ok:
            raise AudioComposeError("Error creating blank audio")
        logger.info(f"[Audio] Created blank audio for {duration} seconds")

    @staticmethod
    def build_segment_filter(segment: AudioSegment, index: int) -> str:
        delay_ms = _format_number(round(segment.start * 1000, 3))
        volume = segment.volume if segment.volume is not None else 1.0
        return f"[{index}:a]adelay={delay_ms}:all=1,volume={volume}[a{index}]"

    def build_compose_audio_command(self, segments: Sequence[AudioSegment], destination: str) -> list[str]:
        inputs = []
        filters = []
        labels = []
        for index, segment in enumerate(segments):
            inputs += ["-i", segment.path]
            filters.append(self.build_segment_filter(segment, index))
            labels.append(f"[a{index}]")

        filter_complex = "; ".join(
            [
                "; ".join(filters),
                f"{''.join(labels)}amix=inputs={len(segments)}[mixed]",
                "[mixed]loudnorm[out]",
            ]
        )

        return [
            *inputs,
            "-filter_complex", filter_complex,
            "-map", "[out]",
            "-c:a", "aac",
            "-ar", str(COMPOSED_SAMPLE_RATE),
            "-b:a", COMPOSED_BITRATE,
            destination,
        ]

    # =========================================================================
    # Final audio replacement
    # =========================================================================

    def build_append_audio_command(self, video_path: str, audio_path: str, destination: str) -> list[str]:
        volume = self.descriptor.global_.audio_volume_level or 1
        sample_rate = self.config.audio_config.sample_rate
        channel_config = f"aformat=sample_fmts=fltp:sample_rates={sample_rate}:channel_layouts=stereo"

        filter_complex = "; ".join(
            [
                f"[0:a]{channel_config},volume={volume},{NOISE_REDUCTION},apad[audio_formatted]",
                f"[1:a]{channel_config}[music_formatted]",
                "[audio_formatted][music_formatted]amix=inputs=2[final]",
            ]
        )
        return [
            "-i", video_path,
            "-i", audio_path,
            "-filter_complex", filter_complex,
            "-map", "0:v",
            "-map", "[final]",
            "-c:v", "copy",
            "-c:a", "aac",
            "-ac", "2",
            "-shortest",
            destination,
        ]

    async def append_audio(self, final_video: str, audio_path: str | None) -> None:
        """Mix the composed track into the video audio; the video stream is copied."""
        logger.info("[Audio] Appending audio to the video")
        if not audio_path:
            logger.info("[Audio] No composed audio. Keeping the video audio.")
            return

        temp = self.storage.temp_video_path(self.config.temp_dir)
        self.storage.move(final_video, temp)

        result = await self.ffmpeg.execute(self.build_append_audio_command(temp, audio_path, final_video))
        logger.info(f"[Audio] ffmpeg process exited with rc {result.returncode}")
        if not result.ok:
            raise AudioComposeError("Error on audio appending")

        logger.info(f"[Audio] Cleaning up temporary file {temp}")
        self.storage.unlink(temp)

"""Build state of one compile and its single writer.

Stages never mutate ``BuildState`` directly while segments are in flight:
they return results, and ``BuildStateAggregator`` applies them one at a time.
"""

import logging
from dataclasses import dataclass, field
from typing import Any

from mediacompose.schemas.project import ProjectConfig
from mediacompose.services.storage_service import LocalStorageService

logger = logging.getLogger(__name__)


# =============================================================================
# Concat manifest format
# =============================================================================


def format_manifest_line(path: str) -> str:
    # ffmpeg concat demuxer quoting
    escaped = path.replace("'", "'\\''")
    return f"file '{escaped}'\n"


def parse_manifest(text: str) -> list[str]:
    """Return the file paths listed in a concat manifest, in order."""
    paths = []
    for line in text.splitlines():
        line = line.strip()
        if not line.startswith("file "):
            continue
        value = line[len("file "):].strip()
        if len(value) >= 2 and value[0] == "'" and value[-1] == "'":
            value = value[1:-1].replace("'\\''", "'")
        paths.append(value)
    return paths


# =============================================================================
# Data
# =============================================================================


@dataclass(frozen=True)
class AudioSegment:
    """A timed audio clip resolved to a local file."""

    name: str
    path: str
    start: float = 0.0
    duration: float = 0.0
    volume: float | None = None

    @property
    def end(self) -> float:
        return self.start + self.duration


@dataclass
class TemplateAssets:
    """Assets a compile used, reported with the finalize event."""

    fonts: dict[str, str] = field(default_factory=dict)
    musics: dict[str, str] = field(default_factory=dict)
    inputs: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"fonts": dict(self.fonts), "musics": dict(self.musics), "inputs": list(self.inputs)}


@dataclass
class SegmentResult:
    """Outcome of one section's build, applied by the aggregator."""

    section: str
    index: int
    output_path: str | None = None
    duration: float = 0.0
    input_source: str | None = None
    extracted_audio_path: str | None = None
    errors: list[str] = field(default_factory=list)
    skipped: bool = False

    @property
    def ok(self) -> bool:
        return not self.skipped and not self.errors and self.output_path is not None


@dataclass
class BuildState:
    total_segments: int = 0
    total_length: float = 0.0
    current_progress: float = 0.0
    durations: dict[str, float] = field(default_factory=dict)
    # One slot per video segment, in declaration order
    video_inputs: list[str | None] = field(default_factory=list)
    audio_segments: list[AudioSegment] = field(default_factory=list)
    audio_path: str | None = None
    background_audio_path: str | None = None
    # Segment index -> extracted source audio
    extracted_audio: dict[int, str] = field(default_factory=dict)
    input_sources: dict[int, str] = field(default_factory=dict)
    subtitle_path: str | None = None
    music_path: str | None = None
    file_concat_path: str | None = None
    errors: list[str] = field(default_factory=list)

    def audio_bed_path(self) -> str | None:
        """Background track for the audio mix: configured one first, then the earliest extracted."""
        if self.background_audio_path:
            return self.background_audio_path
        if self.extracted_audio:
            return self.extracted_audio[min(self.extracted_audio)]
        return None


@dataclass
class Project:
    """Composition root of one compile request. Never reused across requests."""

    config: ProjectConfig
    build: BuildState = field(default_factory=BuildState)
    final_video: str | None = None
    assets: TemplateAssets = field(default_factory=TemplateAssets)

    @property
    def progress(self) -> float:
        return self.build.current_progress

    @property
    def errors(self) -> list[str]:
        return self.build.errors

    def clean(self) -> None:
        """Drop intermediate build state; the final video and asset manifest stay."""
        self.build = BuildState(current_progress=self.build.current_progress)


# =============================================================================
# Aggregator
# =============================================================================


class BuildStateAggregator:
    """Only writer of a project's BuildState."""

    def __init__(self, project: Project, storage: LocalStorageService):
        self.project = project
        self.storage = storage

    @property
    def state(self) -> BuildState:
        return self.project.build

    def plan(self, durations: list[tuple[str, float]]) -> None:
        """Size the build from the ordered (section, duration) list."""
        state = self.state
        state.total_segments = len(durations)
        state.durations = dict(durations)
        state.total_length = sum(duration for _, duration in durations)
        state.video_inputs = [None] * len(durations)

    def update(self, **fields: Any) -> None:
        """Apply the output of a sequential stage (asset loading, audio compose)."""
        for key, value in fields.items():
            if not hasattr(self.state, key):
                raise AttributeError(f"BuildState has no field '{key}'")
            setattr(self.state, key, value)

    def record_error(self, name: str) -> None:
        if name not in self.state.errors:
            self.state.errors.append(name)

    def set_progress(self, value: float) -> float:
        # Monotonic and clamped to [0, 1]
        state = self.state
        state.current_progress = max(state.current_progress, min(1.0, max(0.0, value)))
        return state.current_progress

    def apply_segment(self, result: SegmentResult) -> float:
        """Apply one finished build and return the new progress."""
        state = self.state
        if result.skipped:
            return state.current_progress

        for name in result.errors:
            self.record_error(name)
        if result.errors or result.output_path is None:
            return state.current_progress

        state.video_inputs[result.index] = result.output_path
        if result.extracted_audio_path:
            state.extracted_audio[result.index] = result.extracted_audio_path
        if result.input_source:
            state.input_sources[result.index] = result.input_source
            self.project.assets.inputs = [state.input_sources[i] for i in sorted(state.input_sources)]

        if state.total_length > 0:
            increment = result.duration / state.total_length
        else:
            increment = 1 / max(state.total_segments, 1)
        progress = self.set_progress(state.current_progress + increment)

        self.write_manifest()
        return progress

    def ordered_inputs(self) -> list[str]:
        return [path for path in self.state.video_inputs if path]

    def write_manifest(self) -> None:
        path = self.state.file_concat_path
        if not path:
            return
        self.storage.write(path, "".join(format_manifest_line(p) for p in self.ordered_inputs()))

    def delete_manifest(self) -> None:
        path = self.state.file_concat_path
        if path and self.storage.unlink(path):
            logger.info(f"[Manifest] Deleted {path}")

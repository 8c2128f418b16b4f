from mediacompose.render.audio_composer import AudioComposer, calculate_covering_duration
from mediacompose.render.caption_composer import CaptionComposer
from mediacompose.render.director import CompileState, TemplateDirector
from mediacompose.render.music_composer import MusicComposer
from mediacompose.render.overlay_composer import OverlayComposer
from mediacompose.render.segment_builder import SegmentBuilder
from mediacompose.render.state import BuildState, BuildStateAggregator, Project, TemplateAssets
from mediacompose.render.video_editor import VideoEditor

__all__ = [
    "TemplateDirector",
    "CompileState",
    "SegmentBuilder",
    "AudioComposer",
    "CaptionComposer",
    "OverlayComposer",
    "MusicComposer",
    "VideoEditor",
    "BuildState",
    "BuildStateAggregator",
    "Project",
    "TemplateAssets",
    "calculate_covering_duration",
]

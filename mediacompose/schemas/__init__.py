from mediacompose.schemas.descriptor import (
    VIDEO_SEGMENT,
    Filter,
    FontRef,
    MediaRef,
    Overlay,
    OverlayOptions,
    Section,
    SectionOptions,
    SubtitleConfig,
    TemplateDescriptor,
    TemplateGlobal,
    TimedMedia,
    TimedMediaOptions,
)
from mediacompose.schemas.project import AudioConfig, ProjectConfig, VideoConfig

__all__ = [
    "VIDEO_SEGMENT",
    "TemplateDescriptor",
    "TemplateGlobal",
    "Section",
    "SectionOptions",
    "Filter",
    "TimedMedia",
    "TimedMediaOptions",
    "Overlay",
    "OverlayOptions",
    "MediaRef",
    "FontRef",
    "SubtitleConfig",
    "ProjectConfig",
    "AudioConfig",
    "VideoConfig",
]

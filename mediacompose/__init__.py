"""mediacompose: compile declarative media templates into a video with ffmpeg."""

from mediacompose.compiler import compile_template, load_descriptor, load_project_config
from mediacompose.render.events import CancellationToken, CompileEvent, CompileEventChannel, CompileEventType
from mediacompose.schemas.descriptor import TemplateDescriptor
from mediacompose.schemas.project import ProjectConfig

__all__ = [
    "compile_template",
    "load_descriptor",
    "load_project_config",
    "CancellationToken",
    "CompileEvent",
    "CompileEventChannel",
    "CompileEventType",
    "ProjectConfig",
    "TemplateDescriptor",
]

"""Composition root.

Builds the object graph of one compile (ffmpeg adapter, storage, asset
cache, director) and runs it.

Usage:
    from mediacompose.compiler import compile_template, load_descriptor

    project = await compile_template(
        ProjectConfig(output_dir="out"),
        load_descriptor("template.json"),
    )
    if project is None:
        ...  # failed or cancelled
"""

import json
import logging
from pathlib import Path
from typing import Any

from mediacompose.config import Settings, get_settings
from mediacompose.render.director import TemplateDirector
from mediacompose.render.events import CancellationToken, CompileEventChannel
from mediacompose.render.state import Project
from mediacompose.schemas.descriptor import TemplateDescriptor
from mediacompose.schemas.project import ProjectConfig
from mediacompose.services.asset_cache import AssetCache
from mediacompose.services.storage_service import LocalStorageService
from mediacompose.utils.ffmpeg_adapter import FFmpegAdapter

logger = logging.getLogger(__name__)


def _read_json(source: str | Path | dict[str, Any]) -> dict[str, Any]:
    if isinstance(source, dict):
        return source
    with open(source, encoding="utf-8") as f:
        return json.load(f)


def load_descriptor(source: str | Path | dict[str, Any]) -> TemplateDescriptor:
    """Parse a template descriptor from a JSON file or an already-loaded dict."""
    return TemplateDescriptor.model_validate(_read_json(source))


def load_project_config(source: str | Path | dict[str, Any] | None) -> ProjectConfig:
    if source is None:
        return ProjectConfig()
    return ProjectConfig.model_validate(_read_json(source))


async def compile_template(
    project_config: ProjectConfig,
    descriptor: TemplateDescriptor,
    *,
    events: CompileEventChannel | None = None,
    cancel_token: CancellationToken | None = None,
    ffmpeg: FFmpegAdapter | None = None,
    storage: LocalStorageService | None = None,
    cache: AssetCache | None = None,
    settings: Settings | None = None,
    max_concurrent_segments: int | None = None,
) -> Project | None:
    """Compile one template. Returns the Project, or None on failure or cancellation."""
    settings = settings or get_settings()
    director = TemplateDirector(
        ffmpeg=ffmpeg or FFmpegAdapter(settings),
        storage=storage or LocalStorageService(),
        cache=cache,
        events=events,
        cancel_token=cancel_token,
        settings=settings,
        max_concurrent_segments=max_concurrent_segments,
    )
    return await director.configure(project_config, descriptor).construct()

"""Custom exceptions for the compile engine.

Every failure category of a compile maps to one class here, with a
machine-readable code. None of them cross the Director's ``construct()``
boundary: the Director logs them and returns an absent result.
"""

from typing import Any


class ComposeError(Exception):
    """Base exception for all compile errors."""

    code: str = "INTERNAL_ERROR"
    message: str = "An unexpected error occurred"

    def __init__(
        self,
        message: str | None = None,
        *,
        code: str | None = None,
        section: str | None = None,
    ):
        self.message = message or self.__class__.message
        if code:
            self.code = code
        self.section = section
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        """Serialize for logs and failure events."""
        data: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.section:
            data["section"] = self.section
        return data


class DirectorStateError(ComposeError):
    """Director used outside its configure -> construct lifecycle."""

    code = "INVALID_STATE"
    message = "Director is not in a state that allows this operation"


class CompileCancelledError(ComposeError):
    """Cancellation token observed between stages."""

    code = "CANCELLED"
    message = "Compile cancelled"


# =============================================================================
# Segment construction
# =============================================================================


class SegmentBuildError(ComposeError):
    """External tool failed while preparing or rendering a section."""

    code = "SEGMENT_BUILD_FAILED"
    message = "Segment build failed"


class ProbeError(ComposeError):
    """Duration or codec metadata absent when required."""

    code = "PROBE_FAILED"
    message = "Media probe returned no usable metadata"


# =============================================================================
# Assets
# =============================================================================


class AssetResolutionError(ComposeError):
    """Neither a cached copy nor a source URL exists for an asset.

    Non-fatal: loaders log it and skip the asset.
    """

    code = "ASSET_RESOLUTION_FAILED"
    message = "Asset could not be resolved"


class CaptionAssetMissingError(ComposeError):
    """An input of the caption burn step is missing at execution time."""

    code = "CAPTION_ASSET_MISSING"
    message = "Caption input is missing"


class SubtitleAssetMissingError(CaptionAssetMissingError):
    """The resolved subtitle file is missing at burn time."""

    code = "SUBTITLE_ASSET_MISSING"
    message = "Subtitle file is missing"


# =============================================================================
# Finalize pipeline
# =============================================================================


class InvalidOverlayGeometryError(ComposeError):
    """Blur overlay box has negative coordinates or non-positive size/strength."""

    code = "INVALID_OVERLAY_GEOMETRY"
    message = "Invalid box dimensions, coordinates, or blur strength"


class AudioComposeError(ComposeError):
    """Audio composition, music mixing or final audio replacement failed."""

    code = "AUDIO_COMPOSE_FAILED"
    message = "Audio composition failed"


class ConcatError(ComposeError):
    """Concatenation of the rendered segments failed."""

    code = "CONCAT_FAILED"
    message = "Errors on concatenation"

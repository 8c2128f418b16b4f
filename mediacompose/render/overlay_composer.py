"""Blur box overlay."""

import logging

from mediacompose.exceptions import ComposeError, InvalidOverlayGeometryError
from mediacompose.schemas.descriptor import OverlayOptions, TemplateDescriptor
from mediacompose.services.storage_service import LocalStorageService
from mediacompose.utils.ffmpeg_adapter import FFmpegAdapter

logger = logging.getLogger(__name__)


def _num(value: float) -> str:
    return str(int(value)) if float(value).is_integer() else str(value)


def validate_blur_box(options: OverlayOptions) -> None:
    """x, y must be >= 0; width, height and blur strength > 0."""
    if (
        options.x < 0
        or options.y < 0
        or options.width <= 0
        or options.height <= 0
        or options.blur_strength <= 0
    ):
        raise InvalidOverlayGeometryError(
            f"Invalid box dimensions, coordinates, or blur strength: "
            f"x={options.x} y={options.y} width={options.width} "
            f"height={options.height} strength={options.blur_strength}"
        )


def build_blur_box_command(input_path: str, output_path: str, options: OverlayOptions) -> list[str]:
    """crop -> avgblur -> overlay back at the same position; audio copied."""
    validate_blur_box(options)
    x, y = _num(options.x), _num(options.y)
    width, height = _num(options.width), _num(options.height)

    filter_complex = (
        f"[0:v]crop={width}:{height}:{x}:{y},avgblur={_num(options.blur_strength)}[fg];"
        f"[0:v][fg]overlay={x}:{y}[v]"
    )
    return [
        "-i", input_path,
        "-filter_complex", filter_complex,
        "-map", "[v]",
        "-map", "0:a",
        "-c:v", "libx264",
        "-c:a", "copy",
        "-movflags", "+faststart",
        output_path,
    ]


class OverlayComposer:
    def __init__(
        self,
        descriptor: TemplateDescriptor,
        ffmpeg: FFmpegAdapter,
        storage: LocalStorageService,
        temp_dir: str | None = None,
    ):
        self.descriptor = descriptor
        self.ffmpeg = ffmpeg
        self.storage = storage
        # Per-compile directory for the renamed input
        self.temp_dir = temp_dir

    async def apply_blur_box(self, final_video: str) -> None:
        """Blur the box of the first ``blur`` overlay, in place. No overlay is a no-op."""
        overlay = self.descriptor.first_overlay("blur")
        if overlay is None:
            logger.info("[BlurBox] No blur overlay found in template descriptor")
            return

        options = overlay.options
        logger.info(
            f"[BlurBox] Applying blur overlay at x:{options.x}, y:{options.y}, "
            f"width:{options.width}, height:{options.height}, strength:{options.blur_strength}"
        )
        validate_blur_box(options)

        temp = self.storage.temp_video_path(self.temp_dir)
        self.storage.move(final_video, temp)

        result = await self.ffmpeg.execute(build_blur_box_command(temp, final_video, options))
        logger.info(f"[BlurBox] ffmpeg process exited with rc {result.returncode}")

        if not result.ok:
            raise ComposeError("Errors on box blur", code="OVERLAY_FAILED")

        logger.info(f"[BlurBox] Cleaning up temporary file {temp}")
        self.storage.unlink(temp)

"""Media file information utilities using FFprobe."""

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProbeResult:
    """Probe contract: every field is None when it cannot be determined."""

    duration: float | None = None
    video_codec: str | None = None
    audio_codec: str | None = None
    sample_rate: int | None = None


def _to_float(value: Any) -> float | None:
    try:
        result = float(value)
    except (TypeError, ValueError):
        return None
    return result if result > 0 else None


def parse_probe_output(data: dict[str, Any]) -> ProbeResult:
    """Build a ProbeResult from ffprobe ``-show_streams -show_format`` JSON.

    Duration prefers the video stream, then the audio stream, then the
    container.
    """
    streams = data.get("streams", [])
    video = next((s for s in streams if s.get("codec_type") == "video"), None)
    audio = next((s for s in streams if s.get("codec_type") == "audio"), None)

    duration = (
        (_to_float(video.get("duration")) if video else None)
        or (_to_float(audio.get("duration")) if audio else None)
        or _to_float(data.get("format", {}).get("duration"))
    )

    sample_rate = None
    if audio and audio.get("sample_rate"):
        try:
            sample_rate = int(audio["sample_rate"])
        except (TypeError, ValueError):
            sample_rate = None

    return ProbeResult(
        duration=duration,
        video_codec=video.get("codec_name") if video else None,
        audio_codec=audio.get("codec_name") if audio else None,
        sample_rate=sample_rate,
    )


async def probe_media(source: str, ffprobe_path: str = "ffprobe") -> ProbeResult:
    """Run ffprobe on a file or URL."""
    cmd = [
        ffprobe_path,
        "-v", "quiet",
        "-print_format", "json",
        "-show_streams",
        "-show_format",
        source,
    ]
    process = await asyncio.create_subprocess_exec(
        *cmd,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    stdout, stderr = await process.communicate()

    if process.returncode != 0:
        logger.warning(f"[Probe] ffprobe failed for {source}: {stderr.decode(errors='replace')[-500:]}")
        return ProbeResult()

    try:
        return parse_probe_output(json.loads(stdout.decode()))
    except json.JSONDecodeError:
        logger.warning(f"[Probe] Failed to parse ffprobe output for {source}")
        return ProbeResult()

"""FFmpeg process adapter.

The engine only talks to ffmpeg through ``execute(args) -> ExecResult`` and
``probe(source) -> ProbeResult``. Arguments never include the binary itself.
"""

import asyncio
import logging
import shlex
from collections.abc import Sequence
from dataclasses import dataclass

from mediacompose.config import Settings, get_settings
from mediacompose.utils.media_info import ProbeResult, probe_media

logger = logging.getLogger(__name__)

# How much of stderr ends up in the error log
STDERR_TAIL_CHARS = 2000


@dataclass(frozen=True)
class ExecResult:
    returncode: int
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class FFmpegAdapter:
    """Runs ffmpeg/ffprobe as asyncio subprocesses."""

    def __init__(self, settings: Settings | None = None):
        settings = settings or get_settings()
        self.ffmpeg_path = settings.ffmpeg_path
        self.ffprobe_path = settings.ffprobe_path
        self.log_level = settings.ffmpeg_log_level

    def build_command(self, args: Sequence[str]) -> list[str]:
        args = list(args)
        if "-y" not in args:
            args.insert(0, "-y")
        return [self.ffmpeg_path, "-hide_banner", "-loglevel", self.log_level, *args]

    async def execute(self, args: Sequence[str]) -> ExecResult:
        cmd = self.build_command(args)
        logger.debug(f"[FFmpeg][Command] {shlex.join(cmd)}")

        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.PIPE,
        )
        _, stderr = await process.communicate()
        stderr_text = stderr.decode("utf-8", errors="replace")

        if process.returncode != 0:
            logger.error(
                f"[FFmpeg] process exited with rc {process.returncode}: {stderr_text[-STDERR_TAIL_CHARS:]}"
            )
        return ExecResult(returncode=process.returncode, stderr=stderr_text)

    async def probe(self, source: str) -> ProbeResult:
        return await probe_media(source, self.ffprobe_path)

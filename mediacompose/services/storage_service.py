import logging
import os
import shutil
import tempfile
import time
from pathlib import Path
from urllib.parse import unquote, urlparse

import httpx

from mediacompose.config import get_settings

logger = logging.getLogger(__name__)

# Streamed download chunk size
CHUNK_SIZE = 1024 * 1024


class LocalStorageService:
    """Local filesystem storage with HTTP(S) fetch for remote assets."""

    def __init__(self, temp_dir: str | None = None, timeout_s: float | None = None) -> None:
        settings = get_settings()
        self.temp_dir = Path(temp_dir or tempfile.gettempdir())
        self.timeout_s = timeout_s if timeout_s is not None else settings.fetch_timeout_s

    def _temp_path(self, source: str) -> Path:
        self.temp_dir.mkdir(parents=True, exist_ok=True)
        suffix = Path(urlparse(source).path).suffix
        fd, path = tempfile.mkstemp(prefix="fetch_", suffix=suffix, dir=self.temp_dir)
        os.close(fd)
        return Path(path)

    def temp_video_path(self, temp_dir: str | None = None) -> str:
        """Fresh temp path for the rename-then-write pattern.

        Compiles sharing this service pass their own ``temp_dir``; the
        service-wide one is only the fallback.
        """
        directory = Path(temp_dir) if temp_dir else self.temp_dir
        directory.mkdir(parents=True, exist_ok=True)
        return str(directory / f"tmp_video_{time.time_ns()}.mp4")

    async def fetch(self, url: str) -> str:
        """Download (or copy, for local sources) to a fresh temp file and return its path."""
        local_path = self._temp_path(url)
        parsed = urlparse(url)

        try:
            if parsed.scheme in ("http", "https"):
                async with httpx.AsyncClient(timeout=self.timeout_s, follow_redirects=True) as client:
                    async with client.stream("GET", url) as response:
                        response.raise_for_status()
                        with open(local_path, "wb") as f:
                            async for chunk in response.aiter_bytes(CHUNK_SIZE):
                                f.write(chunk)
            else:
                source = unquote(parsed.path) if parsed.scheme == "file" else url
                shutil.copyfile(source, local_path)
        except BaseException:
            local_path.unlink(missing_ok=True)
            raise

        logger.info(f"[Storage] Fetched {url} -> {local_path}")
        return str(local_path)

    def move(self, source: str, destination: str) -> str:
        """Move a file into place, atomically when both paths share a filesystem."""
        Path(destination).parent.mkdir(parents=True, exist_ok=True)
        try:
            os.replace(source, destination)
        except OSError:
            shutil.move(source, destination)
        return destination

    def copy(self, source: str, destination: str) -> str:
        Path(destination).parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(source, destination)
        return destination

    def stat(self, path: str) -> bool:
        """Check if a file exists."""
        return Path(path).is_file()

    def read(self, path: str) -> str:
        return Path(path).read_text(encoding="utf-8")

    def write(self, path: str, content: str = "") -> None:
        full_path = Path(path)
        full_path.parent.mkdir(parents=True, exist_ok=True)
        full_path.write_text(content, encoding="utf-8")

    def append(self, path: str, content: str) -> None:
        with open(path, "a", encoding="utf-8") as f:
            f.write(content)

    def unlink(self, path: str) -> bool:
        """Delete file. Missing files are not an error."""
        full_path = Path(path)
        if full_path.exists():
            full_path.unlink()
            return True
        return False

    def ensure_dir(self, path: str) -> str:
        Path(path).mkdir(parents=True, exist_ok=True)
        return path

    def clean_directory(self, path: str) -> None:
        """Remove a directory tree."""
        shutil.rmtree(path, ignore_errors=True)

"""Asset cache.

Resolves a logical asset name to a canonical file under the assets
directory (``<assetsDir>/<kind>s/<file>``) and fetches it at most once.
The cache outlives a single compile. Locks are keyed by destination path
and shared process-wide, so concurrent compiles fetch each asset once.
"""

import asyncio
import logging
import re
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from pathlib import Path

import httpx

from mediacompose.exceptions import AssetResolutionError
from mediacompose.services.storage_service import LocalStorageService

logger = logging.getLogger(__name__)

ASSET_KINDS = ("audio", "font", "subtitle", "music", "video")

DEFAULT_EXTENSIONS = {
    "audio": ".mp3",
    "font": ".ttf",
    "subtitle": ".ass",
    "music": ".mp3",
    "video": ".mp4",
}

# Kinds whose logical names are user-facing labels rather than file names
NORMALIZED_KINDS = {"font", "subtitle"}

_UNSAFE_CHARS = re.compile(r"[:.' ]")


def normalize_asset_name(name: str) -> str:
    """Lowercase, drop the file extension, and replace ``: . '`` and spaces with ``_``.

    >>> normalize_asset_name("My Subs: Part.1.ass")
    'my_subs__part_1'
    """
    stem = name[: name.rfind(".")] if "." in name else name
    return _UNSAFE_CHARS.sub("_", stem).lower()


def _as_suffix(extension: str) -> str:
    return extension if extension.startswith(".") else f".{extension}"


@dataclass
class _PathLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    # Holders plus waiters; the entry is dropped when this reaches zero
    users: int = 0


# Canonical path -> lock, shared by every AssetCache in the process
_path_locks: dict[str, _PathLock] = {}


@asynccontextmanager
async def _path_lock(path: str) -> AsyncIterator[None]:
    """Serialize stat -> fetch -> move for one destination across compiles."""
    key = str(Path(path).resolve())
    entry = _path_locks.get(key)
    if entry is None:
        entry = _path_locks[key] = _PathLock()
    entry.users += 1
    try:
        async with entry.lock:
            yield
    finally:
        entry.users -= 1
        if entry.users == 0:
            del _path_locks[key]


class AssetCache:
    """Cache-aware resolver for fonts, subtitles, music and audio files."""

    def __init__(self, assets_dir: str, storage: LocalStorageService):
        self.assets_dir = assets_dir
        self.storage = storage

    def kind_dir(self, kind: str) -> str:
        if kind not in ASSET_KINDS:
            raise ValueError(f"Unknown asset kind: {kind}")
        return str(Path(self.assets_dir) / f"{kind}s")

    def filename_for(self, name: str, kind: str, extension: str | None = None) -> str:
        if kind in NORMALIZED_KINDS:
            suffix = extension or Path(name).suffix or DEFAULT_EXTENSIONS[kind]
            return f"{normalize_asset_name(name)}{_as_suffix(suffix)}"
        suffix = _as_suffix(extension) if extension else DEFAULT_EXTENSIONS[kind]
        if name.endswith(suffix):
            return name
        return f"{name}{suffix}"

    def path_for(self, name: str, kind: str, extension: str | None = None) -> str:
        """Canonical cache path of an asset."""
        return str(Path(self.kind_dir(kind)) / self.filename_for(name, kind, extension))

    async def resolve(
        self,
        name: str,
        kind: str,
        url: str | None = None,
        extension: str | None = None,
    ) -> str:
        """Return the cached path of an asset, fetching it on a miss.

        Raises:
            AssetResolutionError: no cached copy and no URL, or the fetch failed
        """
        destination = self.path_for(name, kind, extension)

        async with _path_lock(destination):
            if self.storage.stat(destination):
                logger.info(f"[Assets] Loaded {kind} from cache {destination}")
                return destination

            if not url:
                raise AssetResolutionError(f"No cached copy and no URL for {kind} '{name}'")

            logger.info(f"[Assets] Fetching {kind} '{name}' from {url}")
            try:
                fetched = await self.storage.fetch(url)
            except (httpx.HTTPError, OSError) as e:
                raise AssetResolutionError(f"Failed to fetch {kind} '{name}': {e}") from e

            # Move, never copy: readers must not see a partially written file
            self.storage.move(fetched, destination)
            logger.info(f"[Assets] Stored {kind} '{name}' at {destination}")
            return destination

    def purge(self, kind: str | None = None) -> None:
        """Remove cached assets of one kind, or the whole cache."""
        target = self.kind_dir(kind) if kind else self.assets_dir
        logger.info(f"[Assets] Purging {target}")
        self.storage.clean_directory(target)

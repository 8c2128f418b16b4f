"""
Pytest fixtures for mediacompose tests.

No real ffmpeg is needed: ``FakeFFmpeg`` implements the execute/probe
contract, records every command and creates the file named by the last
argument. Remote fetches go through ``CountingStorage``, which writes a
small file instead of touching the network.
"""

import asyncio
import tempfile
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

from mediacompose.config import Settings
from mediacompose.render.events import CancellationToken, CompileEventChannel
from mediacompose.schemas.descriptor import TemplateDescriptor
from mediacompose.schemas.project import ProjectConfig
from mediacompose.services.storage_service import LocalStorageService
from mediacompose.utils.ffmpeg_adapter import ExecResult
from mediacompose.utils.media_info import ProbeResult


class FakeFFmpeg:
    """Recording stand-in for FFmpegAdapter."""

    def __init__(self) -> None:
        self.calls: list[list[str]] = []
        self.probes: list[str] = []
        self.probe_results: dict[str, ProbeResult] = {}
        # (substring of the joined command, return code)
        self.rules: list[tuple[str, int]] = []
        # substring -> seconds to sleep before returning
        self.delays: dict[str, float] = {}
        self.on_execute: Callable[[list[str]], Any] | None = None
        # Concat manifests as read at concat time
        self.manifests: list[list[str]] = []
        self.in_flight = 0
        self.max_in_flight = 0

    def fail_on(self, substring: str, returncode: int = 1) -> None:
        self.rules.append((substring, returncode))

    def _returncode(self, joined: str) -> int:
        for substring, returncode in self.rules:
            if substring in joined:
                return returncode
        return 0

    async def execute(self, args: list[str]) -> ExecResult:
        args = list(args)
        joined = " ".join(args)
        self.calls.append(args)

        if "concat" in args:
            manifest = Path(args[args.index("-i") + 1])
            self.manifests.append(manifest.read_text().splitlines())

        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            delay = next((d for s, d in self.delays.items() if s in joined), 0)
            await asyncio.sleep(delay)
        finally:
            self.in_flight -= 1

        if self.on_execute:
            self.on_execute(args)

        returncode = self._returncode(joined)
        if returncode == 0:
            output = Path(args[-1])
            output.parent.mkdir(parents=True, exist_ok=True)
            output.write_bytes(f"rendered:{output.name}".encode())
        return ExecResult(returncode=returncode, stderr="" if returncode == 0 else "boom")

    async def probe(self, source: str) -> ProbeResult:
        self.probes.append(source)
        return self.probe_results.get(source, ProbeResult())

    def calls_matching(self, substring: str) -> list[list[str]]:
        return [call for call in self.calls if substring in " ".join(call)]

    def index_of(self, substring: str) -> int:
        for i, call in enumerate(self.calls):
            if substring in " ".join(call):
                return i
        raise AssertionError(f"no ffmpeg call contains {substring!r}")


class CountingStorage(LocalStorageService):
    """Storage whose fetch writes a placeholder file and counts calls."""

    def __init__(self, temp_dir: str | None = None) -> None:
        super().__init__(temp_dir=temp_dir, timeout_s=1)
        self.fetched: list[str] = []

    async def fetch(self, url: str) -> str:
        self.fetched.append(url)
        path = self._temp_path(url)
        path.write_text(f"fetched:{url}")
        await asyncio.sleep(0)
        return str(path)


@pytest.fixture
def temp_output_dir():
    """Temporary directory for test outputs."""
    with tempfile.TemporaryDirectory(prefix="mediacompose_test_") as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def settings(temp_output_dir: Path) -> Settings:
    return Settings(
        default_build_dir=str(temp_output_dir / "build"),
        default_assets_dir=str(temp_output_dir / "assets"),
        max_concurrent_segments=2,
    )


@pytest.fixture
def fake_ffmpeg() -> FakeFFmpeg:
    return FakeFFmpeg()


@pytest.fixture
def storage(temp_output_dir: Path) -> CountingStorage:
    return CountingStorage(temp_dir=str(temp_output_dir / "build" / "temp"))


@pytest.fixture
def events() -> CompileEventChannel:
    return CompileEventChannel()


@pytest.fixture
def cancel_token() -> CancellationToken:
    return CancellationToken()


@pytest.fixture
def project_config(temp_output_dir: Path) -> ProjectConfig:
    return ProjectConfig(
        build_dir=str(temp_output_dir / "build"),
        assets_dir=str(temp_output_dir / "assets"),
        output_dir=str(temp_output_dir / "out"),
    )


@pytest.fixture
def resolved_config(project_config: ProjectConfig, settings: Settings) -> ProjectConfig:
    """Project config with every default applied."""
    return project_config.apply_defaults(settings)


def video_section(name: str, duration: float = 2.0, **options: Any) -> dict[str, Any]:
    return {
        "name": name,
        "type": "video",
        "visibility": ["video_segment"],
        "options": {"duration": duration, "videoUrl": f"https://cdn.example.com/{name}.mp4", **options},
    }


def make_descriptor(
    sections: list[dict[str, Any]] | None = None,
    global_: dict[str, Any] | None = None,
    audios: list[dict[str, Any]] | None = None,
    overlays: list[dict[str, Any]] | None = None,
) -> TemplateDescriptor:
    return TemplateDescriptor.model_validate(
        {
            "global": global_ or {},
            "sections": sections if sections is not None else [video_section("intro")],
            "audios": audios or [],
            "overlays": overlays or [],
        }
    )

"""
Tests for the template director state machine.

Covers:
1. End-to-end single section compile
2. Progress monotonicity
3. Failure propagation (rc 1 and other nonzero codes)
4. Cancellation before and during the segment build
5. Bounded concurrency and declaration-order manifest
6. Concurrent compiles sharing storage and assets
"""

import asyncio
from pathlib import Path

import pytest
from conftest import make_descriptor, video_section

from mediacompose.compiler import compile_template
from mediacompose.render.director import CompileState, TemplateDirector
from mediacompose.render.events import CompileEventType
from mediacompose.render.state import SegmentResult
from mediacompose.schemas.project import ProjectConfig
from mediacompose.utils.media_info import ProbeResult


def _director(fake_ffmpeg, storage, events, cancel_token, settings, **kwargs) -> TemplateDirector:
    return TemplateDirector(
        ffmpeg=fake_ffmpeg,
        storage=storage,
        events=events,
        cancel_token=cancel_token,
        settings=settings,
        **kwargs,
    )


class TestEndToEnd:
    """Single section template with every feature disabled."""

    @pytest.mark.asyncio
    async def test_single_section_compile(
        self, fake_ffmpeg, storage, events, cancel_token, settings, project_config, temp_output_dir
    ):
        descriptor = make_descriptor(sections=[video_section("intro", duration=3.672)])
        director = _director(fake_ffmpeg, storage, events, cancel_token, settings)

        project = await director.configure(project_config, descriptor).construct()

        assert project is not None
        expected = temp_output_dir / "out" / "output.mp4"
        assert project.final_video == str(expected)
        assert expected.exists()
        assert project.progress == pytest.approx(1.0)
        assert director.state is CompileState.COMPLETED

        # Only the section render ran: single-file concat is a copy
        assert len(fake_ffmpeg.calls) == 1
        assert fake_ffmpeg.calls[0][-1].endswith("intro_output.mp4")
        assert "-t" in fake_ffmpeg.calls[0]
        assert fake_ffmpeg.calls[0][fake_ffmpeg.calls[0].index("-t") + 1] == "3.672"
        for marker in ("amix", "avgblur", "ass=", "concat"):
            assert not fake_ffmpeg.calls_matching(marker)

        finalized = events.events_of(CompileEventType.FINALIZED)
        assert len(finalized) == 1
        assert finalized[0].payload["video_source"] == str(expected)
        assert finalized[0].payload["template_assets"]["inputs"] == ["https://cdn.example.com/intro.mp4"]

        # Build directory purged after success
        assert not (temp_output_dir / "build").exists()

    @pytest.mark.asyncio
    async def test_multiple_sections_use_stream_concat(
        self, fake_ffmpeg, storage, events, cancel_token, settings, project_config
    ):
        descriptor = make_descriptor(sections=[video_section("a"), video_section("b")])
        director = _director(fake_ffmpeg, storage, events, cancel_token, settings)

        project = await director.configure(project_config, descriptor).construct()

        assert project is not None
        concat = fake_ffmpeg.calls_matching("concat")
        assert len(concat) == 1
        assert "-c" in concat[0] and "copy" in concat[0]
        assert "+faststart" in concat[0]

    @pytest.mark.asyncio
    async def test_hidden_sections_are_not_built(
        self, fake_ffmpeg, storage, events, cancel_token, settings, project_config
    ):
        hidden = {**video_section("thumb"), "visibility": ["thumbnail"]}
        descriptor = make_descriptor(sections=[hidden, video_section("main")])
        director = _director(fake_ffmpeg, storage, events, cancel_token, settings)

        project = await director.configure(project_config, descriptor).construct()

        assert project is not None
        assert not fake_ffmpeg.calls_matching("thumb_output.mp4")

    @pytest.mark.asyncio
    async def test_audio_enabled_runs_compose_then_append(
        self, fake_ffmpeg, storage, events, cancel_token, settings, project_config, temp_output_dir
    ):
        voice = temp_output_dir / "voice.mp3"
        voice.write_bytes(b"voice")
        descriptor = make_descriptor(
            global_={"audioEnabled": True},
            audios=[{"name": "voice", "path": str(voice), "options": {"start": 1, "duration": 2}}],
        )
        director = _director(fake_ffmpeg, storage, events, cancel_token, settings)

        project = await director.configure(project_config, descriptor).construct()

        assert project is not None
        blank = fake_ffmpeg.index_of("anullsrc=channel_layout=stereo:sample_rate=48000 -t 2")
        compose = fake_ffmpeg.index_of("amix=inputs=2[mixed]")
        append = fake_ffmpeg.index_of("afftdn")
        assert blank < compose < append


class TestFinalizeOrder:
    """Finalize stages run as audio -> blur -> captions -> relocate."""

    @pytest.mark.asyncio
    async def test_all_stages_in_order(
        self, fake_ffmpeg, storage, events, cancel_token, settings, project_config, temp_output_dir
    ):
        subtitles_dir = temp_output_dir / "assets" / "subtitles"
        subtitles_dir.mkdir(parents=True)
        (subtitles_dir / "subs.ass").write_text("[Script Info]")
        voice = temp_output_dir / "voice.mp3"
        voice.write_bytes(b"voice")

        descriptor = make_descriptor(
            global_={
                "audioEnabled": True,
                "blurEnabled": True,
                "subtitlesEnabled": True,
                "subtitles": {"name": "subs.ass"},
            },
            audios=[{"name": "voice", "path": str(voice), "options": {"start": 0, "end": 2}}],
            overlays=[{"name": "box", "type": "blur", "options": {"x": 10, "y": 20, "width": 100, "height": 50}}],
        )
        director = _director(fake_ffmpeg, storage, events, cancel_token, settings)

        project = await director.configure(project_config, descriptor).construct()

        assert project is not None
        append = fake_ffmpeg.index_of("afftdn")
        blur = fake_ffmpeg.index_of("avgblur")
        burn = fake_ffmpeg.index_of("ass=")
        assert append < blur < burn
        assert Path(project.final_video).exists()


class TestProgress:
    """Progress is monotonic and ends at 1.0."""

    @pytest.mark.asyncio
    async def test_progress_monotonic(self, fake_ffmpeg, storage, events, cancel_token, settings, project_config):
        descriptor = make_descriptor(
            sections=[video_section("a", 1.0), video_section("b", 2.0), video_section("c", 3.0)]
        )
        director = _director(fake_ffmpeg, storage, events, cancel_token, settings)

        await director.configure(project_config, descriptor).construct()

        values = [event.progress for event in events.events_of(CompileEventType.PROGRESS)]
        assert values, "progress should be reported"
        assert all(0 <= v <= 1.0 for v in values)
        assert values == sorted(values)
        assert values[-1] == pytest.approx(1.0)

    @pytest.mark.asyncio
    async def test_zero_length_sections_still_progress(
        self, fake_ffmpeg, storage, events, cancel_token, settings, project_config
    ):
        descriptor = make_descriptor(sections=[video_section("a", 1.0)])
        director = _director(fake_ffmpeg, storage, events, cancel_token, settings)
        director.configure(project_config, descriptor)
        director.aggregator.plan([("a", 0.0), ("b", 0.0)])

        first = director.aggregator.apply_segment(SegmentResult(section="a", index=0, output_path="a.mp4"))
        second = director.aggregator.apply_segment(SegmentResult(section="b", index=1, output_path="b.mp4"))

        assert first == pytest.approx(0.5)
        assert second == pytest.approx(1.0)


class TestFailure:
    """Segment failures are recorded and abort the compile."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("returncode", [1, 2, 255])
    async def test_render_failure(
        self, returncode, fake_ffmpeg, storage, events, cancel_token, settings, project_config, temp_output_dir
    ):
        fake_ffmpeg.fail_on("bad_output.mp4", returncode)
        descriptor = make_descriptor(
            sections=[video_section("good"), video_section("bad"), video_section("late")]
        )
        director = _director(fake_ffmpeg, storage, events, cancel_token, settings, max_concurrent_segments=1)

        project = await director.configure(project_config, descriptor).construct()

        assert project is None
        assert director.state is CompileState.FAILED
        assert "bad" in director.project.errors
        # Nothing new scheduled after the failure, finalize never ran
        assert not fake_ffmpeg.calls_matching("late_output.mp4")
        assert not fake_ffmpeg.calls_matching("concat")
        assert not events.events_of(CompileEventType.FINALIZED)
        assert len(events.events_of(CompileEventType.FAILED)) == 1
        assert not (temp_output_dir / "build" / "segments.list").exists()

    @pytest.mark.asyncio
    async def test_unknown_section_type(self, fake_ffmpeg, storage, events, cancel_token, settings, project_config):
        section = {"name": "odd", "type": "hologram", "visibility": ["video_segment"], "options": {"duration": 1}}
        director = _director(fake_ffmpeg, storage, events, cancel_token, settings)

        project = await director.configure(project_config, make_descriptor(sections=[section])).construct()

        assert project is None
        assert director.project.errors == ["odd"]
        assert fake_ffmpeg.calls == []

    @pytest.mark.asyncio
    async def test_concat_failure(self, fake_ffmpeg, storage, events, cancel_token, settings, project_config):
        fake_ffmpeg.fail_on("concat")
        descriptor = make_descriptor(sections=[video_section("a"), video_section("b")])
        director = _director(fake_ffmpeg, storage, events, cancel_token, settings)

        project = await director.configure(project_config, descriptor).construct()

        assert project is None
        assert "concat" in director.project.errors
        failed = events.events_of(CompileEventType.FAILED)
        assert failed[0].error["code"] == "CONCAT_FAILED"

    @pytest.mark.asyncio
    async def test_probe_duration_missing(
        self, fake_ffmpeg, storage, events, cancel_token, settings, project_config
    ):
        section = {"name": "demo", "type": "project_video", "visibility": ["video_segment"]}
        director = _director(fake_ffmpeg, storage, events, cancel_token, settings)

        project = await director.configure(project_config, make_descriptor(sections=[section])).construct()

        assert project is None
        assert director.project.errors == ["demo"]
        assert events.events_of(CompileEventType.FAILED)[0].error["code"] == "PROBE_FAILED"

    @pytest.mark.asyncio
    async def test_duration_lookup_os_error_attributed_to_section(
        self, fake_ffmpeg, storage, events, cancel_token, settings, project_config
    ):
        async def missing_source(source):
            raise FileNotFoundError(source)

        fake_ffmpeg.probe = missing_source
        section = {"name": "demo", "type": "project_video", "visibility": ["video_segment"]}
        director = _director(fake_ffmpeg, storage, events, cancel_token, settings)

        project = await director.configure(project_config, make_descriptor(sections=[section])).construct()

        assert project is None
        assert director.state is CompileState.FAILED
        assert director.project.errors == ["demo"]
        failed = events.events_of(CompileEventType.FAILED)
        assert failed[0].error["code"] == "INTERNAL_ERROR"
        assert failed[0].payload["errors"] == ["demo"]

    @pytest.mark.asyncio
    async def test_probed_duration_used(
        self, fake_ffmpeg, storage, events, cancel_token, settings, project_config, temp_output_dir
    ):
        source = str(temp_output_dir / "assets" / "videos" / "demo.mp4")
        fake_ffmpeg.probe_results[source] = ProbeResult(duration=4.5)
        section = {"name": "demo", "type": "project_video", "visibility": ["video_segment"]}
        director = _director(fake_ffmpeg, storage, events, cancel_token, settings)

        project = await director.configure(project_config, make_descriptor(sections=[section])).construct()

        assert project is not None
        assert fake_ffmpeg.probes == [source]
        render = fake_ffmpeg.calls_matching("demo_output.mp4")[0]
        assert render[render.index("-t") + 1] == "4.5"


class TestCancellation:
    """Cancellation stops scheduling and skips finalize."""

    @pytest.mark.asyncio
    async def test_cancel_before_construct(
        self, fake_ffmpeg, storage, events, cancel_token, settings, project_config, temp_output_dir
    ):
        director = _director(fake_ffmpeg, storage, events, cancel_token, settings)
        director.configure(project_config, make_descriptor())
        director.cancel()

        project = await director.construct()

        assert project is None
        assert director.state is CompileState.CANCELLED
        assert fake_ffmpeg.calls == []
        assert len(events.events_of(CompileEventType.CANCELLED)) == 1
        assert not (temp_output_dir / "build" / "segments.list").exists()

    @pytest.mark.asyncio
    async def test_cancel_mid_build(
        self, fake_ffmpeg, storage, events, cancel_token, settings, project_config, temp_output_dir
    ):
        def cancel_after_first(args):
            if args[-1].endswith("s0_output.mp4"):
                cancel_token.cancel()

        fake_ffmpeg.on_execute = cancel_after_first
        descriptor = make_descriptor(sections=[video_section(f"s{i}") for i in range(3)])
        director = _director(fake_ffmpeg, storage, events, cancel_token, settings, max_concurrent_segments=1)

        project = await director.configure(project_config, descriptor).construct()

        assert project is None
        assert director.state is CompileState.CANCELLED
        # The dispatched segment finished, nothing else started
        assert len(fake_ffmpeg.calls) == 1
        assert not fake_ffmpeg.calls_matching("concat")
        assert not events.events_of(CompileEventType.FINALIZED)
        assert not (temp_output_dir / "build" / "segments.list").exists()


class TestConcurrency:
    """Segment builds are bounded and the manifest keeps declaration order."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("limit", [1, 2])
    async def test_in_flight_bound(self, limit, fake_ffmpeg, storage, events, cancel_token, settings, project_config):
        fake_ffmpeg.delays = {"_output.mp4": 0.02}
        descriptor = make_descriptor(sections=[video_section(f"s{i}") for i in range(4)])
        director = _director(fake_ffmpeg, storage, events, cancel_token, settings, max_concurrent_segments=limit)

        project = await director.configure(project_config, descriptor).construct()

        assert project is not None
        assert fake_ffmpeg.max_in_flight == limit

    @pytest.mark.asyncio
    async def test_manifest_declaration_order(
        self, fake_ffmpeg, storage, events, cancel_token, settings, project_config
    ):
        # Later sections finish first
        fake_ffmpeg.delays = {"a_output.mp4": 0.06, "b_output.mp4": 0.03}
        descriptor = make_descriptor(sections=[video_section("a"), video_section("b"), video_section("c")])
        director = _director(fake_ffmpeg, storage, events, cancel_token, settings, max_concurrent_segments=3)

        project = await director.configure(project_config, descriptor).construct()

        assert project is not None
        manifest = fake_ffmpeg.manifests[0]
        assert [Path(line.split("'")[1]).name for line in manifest] == [
            "a_output.mp4",
            "b_output.mp4",
            "c_output.mp4",
        ]


class TestLifecycle:
    """Director refuses calls outside configure -> construct."""

    @pytest.mark.asyncio
    async def test_construct_without_configure(self, fake_ffmpeg, storage, events, cancel_token, settings):
        director = _director(fake_ffmpeg, storage, events, cancel_token, settings)
        assert await director.construct() is None

    @pytest.mark.asyncio
    async def test_director_not_reusable(self, fake_ffmpeg, storage, events, cancel_token, settings, project_config):
        director = _director(fake_ffmpeg, storage, events, cancel_token, settings)
        director.configure(project_config, make_descriptor())

        assert await director.construct() is not None
        calls = len(fake_ffmpeg.calls)
        assert await director.construct() is None
        assert len(fake_ffmpeg.calls) == calls


class TestSharedServices:
    """Concurrent compiles may share one storage service and assets dir."""

    @staticmethod
    def _config(root: Path, assets_dir: Path) -> ProjectConfig:
        return ProjectConfig(
            build_dir=str(root / "build"),
            assets_dir=str(assets_dir),
            output_dir=str(root / "out"),
        )

    @pytest.mark.asyncio
    async def test_temp_files_stay_in_own_compile(self, fake_ffmpeg, storage, settings, temp_output_dir):
        voice = temp_output_dir / "voice.mp3"
        voice.write_bytes(b"voice")
        descriptor = make_descriptor(
            global_={"audioEnabled": True},
            audios=[{"name": "voice", "path": str(voice), "options": {"start": 0, "duration": 2}}],
        )
        assets_dir = temp_output_dir / "assets"
        roots = {name: temp_output_dir / name for name in ("first", "second")}

        # The first compile runs slower, so the second finishes and purges its build dir mid-flight
        fake_ffmpeg.delays[str(roots["first"])] = 0.05
        appended = []

        def record_append_input(args):
            if "afftdn" in " ".join(args):
                renamed = Path(args[args.index("-i") + 1])
                appended.append((renamed, renamed.exists()))

        fake_ffmpeg.on_execute = record_append_input

        directors = [
            TemplateDirector(ffmpeg=fake_ffmpeg, storage=storage, settings=settings).configure(
                self._config(root, assets_dir), descriptor
            )
            for root in roots.values()
        ]
        projects = await asyncio.gather(*(director.construct() for director in directors))

        assert all(project is not None for project in projects)
        assert len(appended) == 2
        for renamed, existed in appended:
            assert existed
        parents = {renamed.parent for renamed, _ in appended}
        assert parents == {root / "build" / "temp" for root in roots.values()}

    @pytest.mark.asyncio
    async def test_concurrent_compiles_fetch_music_once(self, fake_ffmpeg, storage, settings, temp_output_dir):
        descriptor = make_descriptor(
            global_={"musicEnabled": True, "music": {"name": "bed", "url": "https://cdn.example.com/bed.mp3"}},
        )
        assets_dir = temp_output_dir / "assets"

        projects = await asyncio.gather(
            *(
                compile_template(
                    self._config(temp_output_dir / name, assets_dir),
                    descriptor,
                    ffmpeg=fake_ffmpeg,
                    storage=storage,
                    settings=settings,
                )
                for name in ("first", "second")
            )
        )

        assert all(project is not None for project in projects)
        assert storage.fetched == ["https://cdn.example.com/bed.mp3"]
        assert (assets_dir / "musics" / "bed.mp3").exists()

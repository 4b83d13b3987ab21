"""
End-to-end tests through the Orchestrator facade.

FFmpeg is replaced by the fake_ffmpeg script via EngineSettings.ffmpeg_path,
so the whole path (validate, build, schedule, run, parse progress) is real.
"""

import threading

import pytest

from encodeflow.commands.errors import BuildError, MappingUnresolved
from encodeflow.commands.models import OutputTarget, Overrides
from encodeflow.jobs import (
    FailureKind,
    JobState,
    SchedulerClosedError,
    SubmissionRejected,
)
from encodeflow.orchestrator import Orchestrator
from encodeflow.presets import PresetValidationError
from encodeflow.settings import EngineSettings

pytestmark = pytest.mark.integration


class StubProbe:
    def __init__(self, source):
        self.source = source
        self.calls = []

    def probe(self, path):
        self.calls.append(path)
        return self.source.model_copy(update={"path": path})


@pytest.fixture
def make_orchestrator(fake_ffmpeg, source):
    created = []

    def _make(**setting_updates) -> Orchestrator:
        settings = EngineSettings(ffmpeg_path=fake_ffmpeg, terminate_grace_seconds=2.0).with_updates(
            **setting_updates
        )
        orchestrator = Orchestrator(settings, probe=StubProbe(source))
        created.append(orchestrator)
        return orchestrator

    yield _make
    for orchestrator in created:
        orchestrator.shutdown(timeout=5.0)


def _final(orchestrator, job_id):
    snapshots = list(orchestrator.subscribe(job_id))
    assert snapshots[-1].is_terminal
    return snapshots[-1]


class TestSubmission:
    def test_encode_succeeds(self, make_orchestrator, make_preset, source, tmp_path):
        orchestrator = make_orchestrator()
        output = tmp_path / "out" / "movie.mp4"
        output.parent.mkdir()
        job_id = orchestrator.submit(make_preset(), source, None, OutputTarget(path=str(output)))

        snapshot = _final(orchestrator, job_id)
        assert snapshot.state == JobState.SUCCEEDED
        assert snapshot.progress == 1.0
        assert snapshot.output_path == str(output)
        assert output.read_bytes() == b"fake"

    def test_two_pass_encode(self, make_orchestrator, make_preset, source, tmp_path):
        orchestrator = make_orchestrator()
        preset = make_preset(video={
            "rate_control": "bitrate", "quality": None, "bitrate": "2M", "two_pass": True,
        })
        output = tmp_path / "movie.mp4"
        job_id = orchestrator.submit(preset, source, None, OutputTarget(path=str(output)))

        snapshot = _final(orchestrator, job_id)
        assert snapshot.state == JobState.SUCCEEDED
        assert snapshot.pass_count == 2
        assert output.exists()

    def test_failure_is_retried_then_reported(self, make_orchestrator, make_preset, source, tmp_path):
        orchestrator = make_orchestrator(retry_cap=1)
        overrides = Overrides(extra_args=("-fake_exit", "1"))
        job_id = orchestrator.submit(
            make_preset(), source, overrides, OutputTarget(path=str(tmp_path / "bad.mp4"))
        )

        snapshot = _final(orchestrator, job_id)
        assert snapshot.state == JobState.FAILED
        assert snapshot.retry_count == 1
        assert snapshot.error.kind == FailureKind.EXIT_FAILURE
        assert "Conversion failed!" in snapshot.error.diagnostic_tail

    def test_missing_ffmpeg(self, make_orchestrator, make_preset, source, tmp_path):
        orchestrator = make_orchestrator(ffmpeg_path=str(tmp_path / "no-such-ffmpeg"))
        job_id = orchestrator.submit(make_preset(), source, None, OutputTarget(path=str(tmp_path / "a.mp4")))
        snapshot = _final(orchestrator, job_id)
        assert snapshot.state == JobState.FAILED
        assert snapshot.error.kind == FailureKind.START_FAILURE

    def test_submit_path_names_output(self, make_orchestrator, make_preset, tmp_path):
        orchestrator = make_orchestrator()
        job_id = orchestrator.submit_path(
            make_preset(), "/media/in/Episode 01.mkv", str(tmp_path), suffix="_web"
        )
        snapshot = _final(orchestrator, job_id)
        assert snapshot.output_path == str(tmp_path / "Episode 01_web.mp4")
        assert snapshot.source_path == "/media/in/Episode 01.mkv"
        assert orchestrator.probe.calls == ["/media/in/Episode 01.mkv"]


class TestSynchronousRejection:
    """Problems found before scheduling raise and create no job."""

    def test_invalid_preset(self, make_orchestrator, make_preset, source):
        orchestrator = make_orchestrator()
        with pytest.raises(PresetValidationError):
            orchestrator.submit(make_preset(video={"quality": None}), source, None, OutputTarget(path="/out/a.mp4"))
        assert orchestrator.list_jobs() == []

    def test_unresolvable_mapping(self, make_orchestrator, make_preset, source):
        orchestrator = make_orchestrator()
        preset = make_preset(mapping={"streams": ["0:v:0", "0:a:7"]})
        with pytest.raises(MappingUnresolved):
            orchestrator.submit(preset, source, None, OutputTarget(path="/out/a.mp4"))
        assert orchestrator.list_jobs() == []

    def test_override_for_inactive_mode(self, make_orchestrator, make_preset, source):
        orchestrator = make_orchestrator()
        with pytest.raises(BuildError):
            orchestrator.submit(make_preset(), source, Overrides(bitrate="3M"), OutputTarget(path="/out/a.mp4"))

    def test_pre_submit_rejection(self, make_orchestrator, make_preset, source):
        orchestrator = make_orchestrator()

        class NoArchive:
            name = "no-archive"

            def before_submit(self, request):
                if request.target.path.startswith("/archive"):
                    raise SubmissionRejected("archive is read-only", handler=self.name)
                return request

        orchestrator.hooks.add_pre_submit(NoArchive())
        with pytest.raises(SubmissionRejected):
            orchestrator.submit(make_preset(), source, None, OutputTarget(path="/archive/a.mp4"))
        assert orchestrator.list_jobs() == []

    def test_pre_submit_cannot_smuggle_invalid_preset(self, make_orchestrator, make_preset, source):
        orchestrator = make_orchestrator()
        broken = make_preset(container="webm")

        class Swap:
            def before_submit(self, request):
                return request.model_copy(update={"preset": broken})

        orchestrator.hooks.add_pre_submit(Swap())
        with pytest.raises(PresetValidationError):
            orchestrator.submit(make_preset(), source, None, OutputTarget(path="/out/a.mp4"))

    def test_closed_orchestrator(self, make_orchestrator, make_preset, source):
        orchestrator = make_orchestrator()
        orchestrator.shutdown()
        with pytest.raises(SchedulerClosedError):
            orchestrator.submit(make_preset(), source, None, OutputTarget(path="/out/a.mp4"))


class TestHooksAndControl:
    def test_pre_submit_adjustment_applies(self, make_orchestrator, make_preset, source, tmp_path):
        orchestrator = make_orchestrator()

        class Prioritise:
            def before_submit(self, request):
                return request.model_copy(update={"priority": 9, "concurrency_group": "fast-disk"})

        orchestrator.hooks.add_pre_submit(Prioritise())
        job_id = orchestrator.submit(make_preset(), source, None, OutputTarget(path=str(tmp_path / "a.mp4")))
        snapshot = orchestrator.get_job(job_id)
        assert snapshot.priority == 9
        assert snapshot.concurrency_group == "fast-disk"

    def test_post_success_notice(self, make_orchestrator, make_preset, source, tmp_path):
        orchestrator = make_orchestrator()
        received = []
        done = threading.Event()

        class Placement:
            def after_success(self, notice):
                received.append(notice)
                done.set()

        orchestrator.hooks.add_post_success(Placement())
        output = str(tmp_path / "a.mp4")
        job_id = orchestrator.submit(make_preset(), source, None, OutputTarget(path=output))
        assert done.wait(20)
        assert received[0].job_id == job_id
        assert received[0].output_path == output
        assert received[0].preset.key == "web-h264@1"

    def test_preview_uses_configured_binary(self, make_orchestrator, make_preset, source, fake_ffmpeg):
        orchestrator = make_orchestrator()
        commands = orchestrator.preview_commands(make_preset(), source, None, OutputTarget(path="/out/a.mp4"))
        assert commands[0].args[0] == fake_ffmpeg
        assert orchestrator.list_jobs() == []

    def test_concurrency_limit(self, make_orchestrator):
        orchestrator = make_orchestrator(max_concurrent_jobs=2)
        assert orchestrator.concurrency_limit == 2
        orchestrator.set_concurrency_limit(5)
        assert orchestrator.concurrency_limit == 5

    def test_cancel_slow_job(self, make_orchestrator, make_preset, source, tmp_path, wait_for):
        orchestrator = make_orchestrator()
        overrides = Overrides(extra_args=("-fake_steps", "100", "-fake_delay", "0.2"))
        job_id = orchestrator.submit(make_preset(), source, overrides, OutputTarget(path=str(tmp_path / "a.mp4")))
        assert wait_for(lambda: orchestrator.get_job(job_id).state == JobState.RUNNING)
        orchestrator.cancel(job_id)
        assert _final(orchestrator, job_id).state == JobState.CANCELED
        assert not (tmp_path / "a.mp4").exists()

"""
HTTP control surface tests (FastAPI TestClient over a real orchestrator).
"""

import pytest
from fastapi.testclient import TestClient

from encodeflow.main import create_app
from encodeflow.orchestrator import Orchestrator
from encodeflow.settings import EngineSettings

pytestmark = pytest.mark.integration


class StubProbe:
    def __init__(self, source):
        self.source = source

    def probe(self, path):
        return self.source.model_copy(update={"path": path})


@pytest.fixture
def orchestrator(fake_ffmpeg, source):
    settings = EngineSettings(ffmpeg_path=fake_ffmpeg, terminate_grace_seconds=2.0, retry_cap=0)
    orchestrator = Orchestrator(settings, probe=StubProbe(source))
    yield orchestrator
    orchestrator.shutdown(timeout=5.0)


@pytest.fixture
def client(orchestrator):
    with TestClient(create_app(orchestrator)) as client:
        yield client


@pytest.fixture
def job_body(preset_data, source, tmp_path):
    def _make(**updates):
        body = {
            "preset": preset_data(),
            "source": source.model_dump(mode="json"),
            "output_path": str(tmp_path / "movie.mp4"),
        }
        body.update(updates)
        return body

    return _make


def _wait_terminal(client, job_id, wait_for):
    assert wait_for(lambda: client.get(f"/control/jobs/{job_id}").json()["state"] in
                    ("succeeded", "failed", "canceled"), timeout=20)
    return client.get(f"/control/jobs/{job_id}").json()


class TestService:
    def test_root(self, client):
        assert client.get("/").json() == {"service": "encodeflow", "status": "running"}

    def test_health(self, client):
        body = client.get("/health").json()
        assert body["status"] == "ok"
        assert body["jobs"] == 0
        assert body["concurrency_limit"] == 2


class TestJobs:
    def test_submit_and_complete(self, client, job_body, wait_for):
        response = client.post("/control/jobs", json=job_body(priority=3))
        assert response.status_code == 201
        job_id = response.json()["job_id"]

        job = _wait_terminal(client, job_id, wait_for)
        assert job["state"] == "succeeded"
        assert job["progress"] == 1.0
        assert job["priority"] == 3
        assert [j["job_id"] for j in client.get("/control/jobs").json()["jobs"]] == [job_id]

    def test_unknown_job(self, client):
        assert client.get("/control/jobs/nope").status_code == 404
        for action in ("pause", "resume", "cancel"):
            assert client.post(f"/control/jobs/nope/{action}").status_code == 404

    def test_invalid_preset_lists_issues(self, client, job_body, preset_data):
        body = job_body(preset=preset_data(video={"quality": 70}))
        response = client.post("/control/jobs", json=body)
        assert response.status_code == 422
        issues = response.json()["detail"]["issues"]
        assert any(issue["field"] == "video.quality" for issue in issues)
        assert client.get("/control/jobs").json()["jobs"] == []

    def test_unbuildable_command(self, client, job_body, preset_data):
        body = job_body(preset=preset_data(mapping={"streams": ["0:v:0", "0:a:9"]}))
        response = client.post("/control/jobs", json=body)
        assert response.status_code == 422
        assert "0:a:9" in response.json()["detail"]

    def test_preset_and_preset_id_are_exclusive(self, client, job_body):
        response = client.post("/control/jobs", json=job_body(preset_id="web-h264"))
        assert response.status_code == 422

    def test_source_required(self, client, job_body):
        body = job_body()
        del body["source"]
        assert client.post("/control/jobs", json=body).status_code == 422

    def test_source_path_with_output_dir(self, client, job_body, tmp_path, wait_for):
        body = job_body(source_path="/media/in/pilot.mkv", output_dir=str(tmp_path))
        del body["source"]
        del body["output_path"]
        response = client.post("/control/jobs", json=body)
        assert response.status_code == 201
        job = _wait_terminal(client, response.json()["job_id"], wait_for)
        assert job["output_path"] == str(tmp_path / "pilot.mp4")

    def test_cancel_then_conflict(self, client, job_body, wait_for):
        body = job_body(overrides={"extra_args": ["-fake_steps", "100", "-fake_delay", "0.2"]})
        job_id = client.post("/control/jobs", json=body).json()["job_id"]
        assert wait_for(lambda: client.get(f"/control/jobs/{job_id}").json()["state"] == "running")

        assert client.post(f"/control/jobs/{job_id}/resume").status_code == 409
        response = client.post(f"/control/jobs/{job_id}/cancel")
        assert response.status_code == 200
        assert response.json() == {"success": True, "message": f"Cancel requested for job {job_id}"}

        assert _wait_terminal(client, job_id, wait_for)["state"] == "canceled"
        assert client.post(f"/control/jobs/{job_id}/cancel").status_code == 409

    def test_pause_and_resume(self, client, job_body, wait_for):
        body = job_body(overrides={"extra_args": ["-fake_steps", "100", "-fake_delay", "0.2"]})
        job_id = client.post("/control/jobs", json=body).json()["job_id"]
        assert wait_for(lambda: client.get(f"/control/jobs/{job_id}").json()["state"] == "running")

        assert client.post(f"/control/jobs/{job_id}/pause").status_code == 200
        assert wait_for(lambda: client.get(f"/control/jobs/{job_id}").json()["state"] == "paused")
        assert client.post(f"/control/jobs/{job_id}/resume").status_code == 200
        assert wait_for(lambda: client.get(f"/control/jobs/{job_id}").json()["state"] == "running")
        client.post(f"/control/jobs/{job_id}/cancel")

    def test_closed_engine(self, client, orchestrator, job_body):
        orchestrator.shutdown()
        assert client.post("/control/jobs", json=job_body()).status_code == 503


class TestConcurrency:
    def test_get_and_set(self, client):
        assert client.get("/control/settings/concurrency").json() == {"limit": 2}
        response = client.put("/control/settings/concurrency", json={"limit": 4})
        assert response.json() == {"limit": 4}
        assert client.get("/health").json()["concurrency_limit"] == 4

    def test_limit_must_be_positive(self, client):
        assert client.put("/control/settings/concurrency", json={"limit": 0}).status_code == 422


class TestPresetsAndPreview:
    def test_register_and_list(self, client, preset_data):
        response = client.post("/control/presets", json=preset_data())
        assert response.status_code == 201
        assert response.json()["encoder"] == "libx264"
        client.post("/control/presets", json=preset_data(id="archive", container="mkv"))

        presets = client.get("/control/presets").json()["presets"]
        assert [p["id"] for p in presets] == ["archive", "web-h264"]

    def test_duplicate_version(self, client, preset_data):
        client.post("/control/presets", json=preset_data())
        assert client.post("/control/presets", json=preset_data()).status_code == 409

    def test_invalid_preset(self, client, preset_data):
        response = client.post("/control/presets", json=preset_data(container="avi"))
        assert response.status_code == 422

    def test_submit_by_preset_id(self, client, preset_data, job_body, wait_for):
        client.post("/control/presets", json=preset_data())
        client.post("/control/presets", json=preset_data(version=2))
        body = job_body(preset_id="web-h264")
        del body["preset"]
        response = client.post("/control/jobs", json=body)
        assert response.status_code == 201
        job = _wait_terminal(client, response.json()["job_id"], wait_for)
        assert job["preset_key"] == "web-h264@2"

    def test_unknown_preset_id(self, client, job_body):
        body = job_body(preset_id="missing")
        del body["preset"]
        assert client.post("/control/jobs", json=body).status_code == 404

    def test_preview(self, client, preset_data, source, fake_ffmpeg):
        body = {
            "preset": preset_data(video={
                "rate_control": "bitrate", "quality": None, "bitrate": "3M", "two_pass": True,
            }),
            "source": source.model_dump(mode="json"),
            "output_path": "/out/movie.mp4",
        }
        response = client.post("/control/commands/preview", json=body)
        assert response.status_code == 200
        commands = response.json()["commands"]
        assert [c["pass_index"] for c in commands] == [1, 2]
        assert commands[0]["args"][0] == fake_ffmpeg
        assert commands[1]["outputs"] == ["/out/movie.mp4"]
        assert client.get("/control/jobs").json()["jobs"] == []

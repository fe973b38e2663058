import asyncio
import dataclasses
from unittest import mock

import pytest
from fastapi.testclient import TestClient

from avatar_worker.main import create_app

from conftest import veo_success


@pytest.fixture
def client(settings, services):
    return TestClient(create_app(settings, services))


@pytest.fixture
def started(client, db):
    db.set_balance("user-1", 10)
    response = client.post("/generate", json={
        "model": "veo3_fast",
        "user_id": "user-1",
        "image_url": "https://img.test/avatar.png",
        "scene_prompts": [{"prompt": "Intro"}, {"prompt": "Outro"}],
    })
    assert response.status_code == 200
    return response.json()


class TestGenerate:
    def test_success(self, started):
        assert started["success"]
        assert started["model_used"] == "veo3_fast"
        assert started["task_id"] == "task-1"

    def test_credit_exhausted_is_402(self, client, db):
        db.set_balance("user-1", 0)
        response = client.post("/generate", json={"user_id": "user-1", "prompt": "Hi"})
        assert response.status_code == 402
        assert response.json()["error_type"] == "CREDIT_EXHAUSTED"

    def test_unknown_model_is_400(self, client):
        response = client.post("/generate", json={"model": "nope", "prompt": "Hi"})
        assert response.status_code == 400

    def test_get_generation(self, client, started):
        response = client.get(f"/generations/{started['generation_id']}")
        assert response.status_code == 200
        assert response.json()["initial_status"] == "generating"
        assert client.get("/generations/missing").status_code == 404


class TestCallbacks:
    def test_ack_and_advance(self, client, started, services):
        response = client.post("/callbacks/kie", json=veo_success("task-1", "https://cdn/1.mp4"))

        assert response.status_code == 200
        assert response.json() == {
            "success": True,
            "generation_id": started["generation_id"],
            "applied": True,
            "next_step": "advance",
        }
        assert services.store.get(started["generation_id"]).current_scene == 2

    def test_duplicate_is_acked(self, client, started):
        payload = veo_success("task-1", "https://cdn/1.mp4")
        client.post("/callbacks/kie", json=payload)
        response = client.post("/callbacks/kie", json=payload)
        assert response.status_code == 200
        assert response.json()["applied"] is False

    def test_stale_scene_callback_is_acked(self, client, started, services):
        client.post("/callbacks/kie", json=veo_success("task-1", "https://cdn/1.mp4"))
        scene2_task = services.store.get(started["generation_id"]).extended_task_id
        client.post("/callbacks/kie", json=veo_success(scene2_task, "https://cdn/2.mp4"))

        response = client.post("/callbacks/kie", json=veo_success(scene2_task, "https://cdn/2.mp4"))

        assert response.status_code == 200
        assert response.json()["generation_id"] == started["generation_id"]
        assert response.json()["applied"] is False

    def test_work_runs_off_the_event_loop(self, client, started, services):
        seen = []

        def where():
            try:
                asyncio.get_running_loop()
                return "event loop"
            except RuntimeError:
                return "worker thread"

        orchestrator = services.orchestrator
        handle_callback = orchestrator.handle_callback
        run_next_step = orchestrator.run_next_step

        def handle(*args, **kwargs):
            seen.append(("callback", where()))
            return handle_callback(*args, **kwargs)

        def step(*args, **kwargs):
            seen.append(("step", where()))
            return run_next_step(*args, **kwargs)

        with mock.patch.object(orchestrator, "handle_callback", side_effect=handle), \
                mock.patch.object(orchestrator, "run_next_step", side_effect=step):
            response = client.post("/callbacks/kie", json=veo_success("task-1", "https://cdn/1.mp4"))

        assert response.json()["next_step"] == "advance"
        assert seen == [("callback", "worker thread"), ("step", "worker thread")]
        assert services.store.get(started["generation_id"]).current_scene == 2

    def test_not_json(self, client):
        response = client.post("/callbacks/kie", content=b"not json", headers={"Content-Type": "application/json"})
        assert response.status_code == 400

    def test_not_an_object(self, client):
        assert client.post("/callbacks/kie", json=["x"]).status_code == 400

    def test_no_task_id(self, client):
        assert client.post("/callbacks/kie", json={"code": 200, "data": {}}).status_code == 400

    def test_unknown_provider(self, client):
        assert client.post("/callbacks/pika", json={"taskId": "x"}).status_code == 400

    def test_unknown_task(self, client):
        response = client.post("/callbacks/kie", json=veo_success("nobody", "https://cdn/x.mp4"))
        assert response.status_code == 404


class TestOperatorRoutes:
    def test_poll(self, client, started, kie_session):
        response = client.post(f"/generations/{started['generation_id']}/poll")
        assert response.status_code == 200
        assert response.json()["generation_id"] == started["generation_id"]

    def test_retry_without_failure_is_409(self, client, started):
        response = client.post(f"/generations/{started['generation_id']}/retry", json={})
        assert response.status_code == 409

    def test_cancel(self, client, started):
        response = client.post(f"/generations/{started['generation_id']}/cancel")
        assert response.json()["cancelled"] is True

    def test_stitch_incomplete_is_502(self, client, started):
        response = client.post(f"/generations/{started['generation_id']}/stitch")
        assert response.status_code == 502

    def test_retroactive_charge(self, client, db):
        response = client.post("/billing/retroactive-charge", json={})
        assert response.status_code == 200
        assert response.json()["checked"] == 0

    def test_health_and_metrics(self, client):
        assert client.get("/health").json()["cloudinary_configured"] is True
        client.post("/callbacks/pika", json={})
        assert "counters" in client.get("/metrics").json()


class TestWorkerAuth:
    @pytest.fixture
    def secured(self, settings, services):
        secured_settings = dataclasses.replace(settings, worker_secret="s3cret", environment="production")
        return TestClient(create_app(secured_settings, services))

    def test_requires_secret(self, secured):
        response = secured.get("/generations/anything")
        assert response.status_code == 401

    def test_accepts_secret(self, secured):
        response = secured.get("/generations/anything", headers={"X-Worker-Secret": "s3cret"})
        assert response.status_code == 404

    def test_callbacks_and_health_are_public(self, secured):
        assert secured.get("/health").status_code == 200
        assert secured.post("/callbacks/kie", json=veo_success("nobody", "u")).status_code == 404

    def test_unconfigured_secret_in_production(self, settings, services):
        app = create_app(dataclasses.replace(settings, environment="production"), services)
        response = TestClient(app).get("/generations/anything")
        assert response.status_code == 500

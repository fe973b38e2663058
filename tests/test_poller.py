import pytest

from avatar_worker.pipeline.errors import GenerationNotFound
from avatar_worker.pipeline.models import PhaseStatus

from conftest import FakeHTTPResponse, veo_success


def _record_info(task_id, url=None, flag=None):
    data = {"taskId": task_id}
    if flag is not None:
        data["successFlag"] = flag
    if url:
        data["response"] = {"resultUrls": [url]}
    return FakeHTTPResponse(200, {"code": 200, "msg": "success", "data": data})


@pytest.fixture
def generating(make_record):
    return make_record(
        number_of_scenes=2,
        is_multi_scene=True,
        scene_prompts=[{"prompt": "One"}, {"prompt": "Two"}],
        initial_status="generating",
        initial_task_id="t-init",
    )


class TestStatusPoller:
    def test_poll_applies_result_and_advances(self, services, kie_session, generating):
        kie_session.queue("veo/record-info", _record_info("t-init", "https://cdn/1.mp4", flag=1))
        kie_session.queue("veo/record-info", _record_info("task-1", flag=0))

        result = services.poller.poll(generating.id)

        assert result["updated"]
        assert result["segments"] == 1
        assert result["current_scene"] == 2
        assert result["phases"] == {"initial": "completed", "extended": "generating", "final": "pending"}
        assert result["errors"] == {}
        assert len(kie_session.calls_to("veo/extend")) == 1

    def test_poll_after_callback_changes_nothing(self, services, kie_session, generating):
        services.orchestrator.handle_callback("kie", veo_success("t-init", "https://cdn/1.mp4"))
        kie_session.queue("veo/record-info", _record_info("task-1", flag=0))

        result = services.poller.poll(generating.id)

        assert not result["updated"]
        assert result["segments"] == 1
        assert len(kie_session.calls_to("veo/extend")) == 1
        assert [c.params for c in kie_session.calls_to("veo/record-info")] == [{"taskId": "task-1"}]

    def test_repeated_polls_are_idempotent(self, services, kie_session, generating):
        kie_session.queue("veo/record-info", _record_info("t-init", "https://cdn/1.mp4", flag=1))
        kie_session.queue("veo/record-info", _record_info("task-1", flag=0))
        kie_session.queue("veo/record-info", _record_info("task-1", flag=0))

        services.poller.poll(generating.id)
        second = services.poller.poll(generating.id)

        assert not second["updated"]
        assert second["segments"] == 1

    def test_status_error_is_reported(self, services, kie_session, generating):
        kie_session.queue("veo/record-info", FakeHTTPResponse(401, text="unauthorized"))

        result = services.poller.poll(generating.id)

        assert not result["updated"]
        assert result["errors"]["initial"] == "Invalid or expired Kie.ai API token."
        assert services.store.get(generating.id).initial_status == PhaseStatus.GENERATING

    def test_status_without_task_id_uses_polled_task(self, services, kie_session, generating):
        kie_session.queue("veo/record-info", FakeHTTPResponse(200, {
            "code": 200, "data": {"successFlag": 1, "response": {"resultUrls": ["https://cdn/1.mp4"]}},
        }))

        result = services.poller.poll(generating.id)

        assert result["segments"] == 1

    def test_nothing_in_flight(self, services, kie_session, make_record):
        record = make_record()
        result = services.poller.poll(record.id)
        assert not result["updated"]
        assert kie_session.calls == []

    def test_unknown_generation(self, services):
        with pytest.raises(GenerationNotFound):
            services.poller.poll("missing")

import pytest
from fastapi.testclient import TestClient

from promptsmith.api.main import app
from promptsmith.api.routers.sessions import _run_guarded
from promptsmith.api.session_registry import SessionRegistry, set_session_registry
from promptsmith.core.state_machine import PipelineStage
from promptsmith.domain.artifacts import PipelineArtifacts
from promptsmith.infrastructure.prompt_library import InMemoryPromptLibrary
from promptsmith.services.chat_client import StreamingChatClient

from conftest import ScriptedTransport, TransportQueue


client = TestClient(app)


@pytest.fixture
def install(config, provider_registry):
    """Install a session registry whose provider calls replay scripted transports."""

    def _install(*transports):
        queue = TransportQueue(list(transports))
        registry = SessionRegistry(
            config,
            provider_registry,
            StreamingChatClient(config, transport_factory=queue),
            library=InMemoryPromptLibrary(),
        )
        set_session_registry(registry)
        return registry

    yield _install
    set_session_registry(None)


def _new_session(**body):
    r = client.post("/sessions", json=body)
    assert r.status_code == 201
    return r.json()["session_id"]


def test_health_endpoint():
    resp = client.get("/health")
    assert resp.status_code == 200
    data = resp.json()
    assert data["status"] == "ok"
    assert "components" in data


def test_providers_hide_credentials(install):
    install()
    r = client.get("/providers")
    assert r.status_code == 200
    providers = r.json()
    assert providers == [
        {
            "id": "test",
            "name": "Test Provider",
            "type": "openai",
            "enabled": True,
            "models": [{"id": "test-model", "name": "Test Model", "api_type": None}],
        }
    ]


def test_session_lifecycle_and_api_prefix(install):
    install()
    sid = _new_session(provider="test")

    r = client.get(f"/api/sessions/{sid}")
    assert r.status_code == 200
    state = r.json()
    assert state["stage"] == "none"
    assert state["provider"] == "test"
    assert state["model"] == "test-model"
    assert state["final_view"] == {"format": "markdown", "language": "zh"}

    assert client.delete(f"/sessions/{sid}").status_code == 204
    assert client.get(f"/sessions/{sid}").status_code == 404
    assert client.delete(f"/sessions/{sid}").status_code == 404


def test_full_flow_through_the_api(install):
    registry = install(
        ScriptedTransport(["请问目标用户是谁？"]),
        ScriptedTransport(["# 需求报告\n受众：高中生"]),
        ScriptedTransport(["- Be concise\n- Use markdown"]),
        ScriptedTransport(["# Role\nTutor"]),
        ScriptedTransport(['["Add examples"]']),
        ScriptedTransport(["```markdown\n# Role\nPatient tutor\n```"]),
        ScriptedTransport(text="<role>Patient tutor</role>"),
    )
    sid = _new_session()

    r = client.post(f"/sessions/{sid}/messages", json={"content": "我需要一个数学辅导提示词"})
    assert r.status_code == 202
    assert r.json() == {"status": "accepted", "session_id": sid, "operation": "send_message"}
    turns = client.get(f"/sessions/{sid}").json()["turns"]
    assert [t["role"] for t in turns] == ["user", "assistant"]
    assert turns[1]["content"] == "请问目标用户是谁？"

    assert client.post(f"/sessions/{sid}/pipeline").status_code == 202
    state = client.get(f"/sessions/{sid}").json()
    assert state["stage"] == "none"
    assert state["is_generating"] is False
    assert state["artifacts"]["thinking_points"] == ["Be concise", "Use markdown"]
    assert state["artifacts"]["advice"] == ["Add examples"]
    assert state["artifacts"]["final_text"] == "# Role\nPatient tutor"
    assert state["notifications"][-1]["kind"] == "success"

    assert client.post(f"/sessions/{sid}/final/format").status_code == 202
    state = client.get(f"/sessions/{sid}").json()
    assert state["final_view"]["format"] == "xml"
    assert state["artifacts"]["final_text"] == "<role>Patient tutor</role>"
    assert state["artifacts"]["final_prompt"]["kind"] == "matrix"

    first = client.post(f"/sessions/{sid}/save", json={"title": "Math tutor", "tags": ["edu"]})
    assert first.status_code == 200
    second = client.post(f"/sessions/{sid}/save", json={"title": "Math tutor"})
    assert second.json() == {"id": first.json()["id"], "version": 2}

    handle = registry.get(sid)
    assert handle.orchestrator.saved_prompt_id == first.json()["id"]


def test_unknown_session_is_404(install):
    install()
    assert client.get("/sessions/missing").status_code == 404
    assert client.post("/sessions/missing/messages", json={"content": "hi"}).status_code == 404


def test_validation_errors_are_422(install):
    install()
    sid = _new_session()
    r = client.post(f"/sessions/{sid}/messages", json={"content": "   "})
    assert r.status_code == 422

    r = client.post(f"/sessions/{sid}/stages/advice")
    assert r.status_code == 422
    assert r.json()["detail"] == "请先生成初始提示词"

    assert client.post(f"/sessions/{sid}/stages/none").status_code == 422
    assert client.post(f"/sessions/{sid}/stages/bogus").status_code == 422

    r = client.post(f"/sessions/{sid}/save", json={"title": "Empty"})
    assert r.status_code == 422
    assert r.json()["detail"] == "没有可保存的提示词内容"


def test_unknown_model_is_400(install):
    install()
    sid = _new_session()
    r = client.post(f"/sessions/{sid}/model", json={"provider": "test", "model": "gpt-9"})
    assert r.status_code == 400
    assert "gpt-9" in r.json()["detail"]

    r = client.post(f"/sessions/{sid}/model", json={"provider": "test", "model": "test-model"})
    assert r.status_code == 200
    assert r.json()["model"] == "test-model"


def test_busy_session_rejects_new_work(install):
    registry = install()
    sid = _new_session()
    orch = registry.get(sid).orchestrator
    orch.conversation.append("user", "describe a tutor")
    orch._is_generating = True

    r = client.post(f"/sessions/{sid}/pipeline")
    assert r.status_code == 409

    r = client.post(f"/sessions/{sid}/interrupt")
    assert r.status_code == 200
    assert r.json() == {"aborted": False}
    assert orch.busy is False


@pytest.mark.asyncio
async def test_background_run_that_loses_the_race_is_reported(install):
    registry = install()
    handle = registry.create()
    orch = handle.orchestrator
    orch._artifacts = PipelineArtifacts(requirement_report="# report")
    # Another run started between the 202 response and this task.
    orch._is_generating = True

    await _run_guarded(handle, "run_stage:thinking", orch.run_stage, PipelineStage.THINKING)

    notes = handle.notifications.items()
    assert [n.kind for n in notes] == ["warning"]
    assert "still active" in notes[0].message
    assert orch.artifacts.thinking_points is None


def test_message_edit_endpoints(install):
    registry = install()
    sid = _new_session()
    turn_id = registry.get(sid).orchestrator.conversation.append("user", "first draft")

    r = client.post(f"/sessions/{sid}/messages/{turn_id}/edit")
    assert r.json()["turns"][0]["is_being_edited"] is True
    r = client.post(f"/sessions/{sid}/messages/{turn_id}/edit/cancel")
    assert r.json()["turns"][0]["content"] == "first draft"

    client.post(f"/sessions/{sid}/messages/{turn_id}/edit")
    r = client.put(f"/sessions/{sid}/messages/{turn_id}", json={"content": " second draft "})
    assert r.json()["turns"][0]["content"] == "second draft"

    assert client.delete(f"/sessions/{sid}/messages/{turn_id}").status_code == 204
    assert client.get(f"/sessions/{sid}").json()["turns"][0]["is_deleted"] is True

    assert client.post(f"/sessions/{sid}/messages/{turn_id}/regenerate").status_code == 404


def test_clear_and_restore_without_store(install):
    registry = install()
    sid = _new_session()
    registry.get(sid).orchestrator.conversation.append("user", "hi")

    assert client.post(f"/sessions/{sid}/clear").status_code == 204
    assert client.get(f"/sessions/{sid}").json()["turns"] == []
    assert client.post(f"/sessions/{sid}/restore").json() == {"restored": False}

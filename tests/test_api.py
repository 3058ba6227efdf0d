"""HTTP surface over the assistant service."""

from typing import (
    Any,
    Iterator,
)

import pytest
from fastapi.testclient import TestClient

from conftest import (
    ScriptedPlanner,
    call_execute,
    final,
)
from opsbridge.agent.agent_loop import AskLoop
from opsbridge.agent.assistant_service import (
    CANCEL_MESSAGE,
    AssistantService,
)
from opsbridge.api.app import (
    app,
    get_assistant_service,
)
from opsbridge.memory.memory_store import ConversationStore

ALICE = {"X-Actor-Id": "alice"}
BOB = {"X-Actor-Id": "bob"}


@pytest.fixture
def planner(config: Any) -> ScriptedPlanner:
    return ScriptedPlanner(
        [call_execute("AdminPostProducts", body={"title": "Hat"}), final("## Created\n\nHat is live.")],
        config=config,
    )


@pytest.fixture
def client(planner: ScriptedPlanner, gateway: Any, validation_manager: Any, config: Any) -> Iterator[TestClient]:
    store = ConversationStore(config=config)
    store.init()
    loop = AskLoop(planner, gateway, validation_manager, config=config)
    service = AssistantService(loop, validation_manager, store, config=config)
    app.dependency_overrides[get_assistant_service] = lambda: service
    yield TestClient(app)
    app.dependency_overrides.clear()


def test_health(client: TestClient) -> None:
    """Liveness check answers without an actor."""
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}


def test_missing_actor_is_bad_request(client: TestClient) -> None:
    """Requests without an actor header are rejected."""
    resp = client.post("/assistant", json={"prompt": "hi"})
    assert resp.status_code == 400


def test_approval_round_trip(client: TestClient, gateway: Any) -> None:
    """A destructive turn suspends, shows up as pending, and finishes on approval."""
    resp = client.post("/assistant", json={"prompt": "create a hat"}, headers=ALICE)
    assert resp.status_code == 200
    body = resp.json()
    request = body["validation_request"]
    assert request["operation_id"] == "AdminPostProducts"
    assert body["answer"].startswith("## 🔐 Pending Approval")

    pending = client.get("/assistant/validation", headers=ALICE).json()["validations"]
    assert [v["id"] for v in pending] == [request["id"]]
    assert client.get("/assistant/validation", headers=BOB).json()["validations"] == []

    denied = client.post("/assistant/validation", json={"id": request["id"], "approved": True}, headers=BOB)
    assert denied.status_code == 403

    done = client.post("/assistant/validation", json={"id": request["id"], "approved": True}, headers=ALICE)
    assert done.status_code == 200
    assert done.json()["answer"] == "## Created\n\nHat is live."
    assert len(gateway.calls_for("AdminPostProducts")) == 1

    session = client.get(f"/sessions/{body['session_id']}", headers=ALICE).json()
    assert session["title"] == "create a hat"
    assert len(session["history"]) == 4


def test_rejection(client: TestClient, gateway: Any) -> None:
    """Rejecting returns the cancellation notice."""
    body = client.post("/assistant", json={"prompt": "create a hat"}, headers=ALICE).json()
    resp = client.post(
        "/assistant/validation",
        json={"id": body["validation_request"]["id"], "approved": False},
        headers=ALICE,
    )
    assert resp.status_code == 200
    assert resp.json()["answer"] == CANCEL_MESSAGE
    assert gateway.calls_for("AdminPostProducts") == []


def test_unknown_validation_and_session(client: TestClient) -> None:
    """Unknown ids map to 404."""
    resp = client.post("/assistant/validation", json={"id": "val_missing", "approved": True}, headers=ALICE)
    assert resp.status_code == 404
    assert client.get("/sessions/sess_missing", headers=ALICE).status_code == 404
    assert client.post("/assistant", json={"prompt": "hi", "session_id": "sess_missing"}, headers=ALICE).status_code == 404


def test_sessions_listing_and_cancel(client: TestClient) -> None:
    """Sessions are listed per actor; cancelling with nothing in flight flags nothing."""
    client.post("/assistant", json={"prompt": "create a hat"}, headers=ALICE)
    sessions = client.get("/sessions", headers=ALICE).json()
    assert [s["title"] for s in sessions] == ["create a hat"]
    assert client.get("/sessions", headers=BOB).json() == []
    assert client.post("/assistant/cancel", json={}, headers=ALICE).json() == {"cancelled": 0}

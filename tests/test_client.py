"""CLI client helpers."""

import httpx

from opsbridge.client.cli import call_api
from opsbridge.common import (
    AnsiColors,
    describe_validation_request,
    paint,
)


def _client(handler) -> httpx.Client:
    return httpx.Client(transport=httpx.MockTransport(handler))


def test_call_api_sends_actor_header() -> None:
    """The actor travels in ``X-Actor-Id`` and the JSON body is returned."""
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["actor"] = request.headers.get("X-Actor-Id")
        seen["path"] = request.url.path
        return httpx.Response(200, json={"answer": "## Hi", "session_id": "sess_1"})

    response = call_api("/assistant", {"prompt": "hi"}, "alice", client=_client(handler))
    assert response == {"answer": "## Hi", "session_id": "sess_1"}
    assert seen == {"actor": "alice", "path": "/assistant"}


def test_call_api_reports_http_errors() -> None:
    """Error details from the API become the answer text."""

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(403, json={"detail": "Validation does not belong to this actor"})

    response = call_api("/assistant/validation", {"id": "x", "approved": True}, "bob", client=_client(handler))
    assert response == {"answer": "API error: Validation does not belong to this actor"}


def test_call_api_gives_up_after_retries(monkeypatch) -> None:
    """Connection failures are retried with backoff, then reported."""
    monkeypatch.setattr("opsbridge.client.cli.time.sleep", lambda _: None)
    attempts = []

    def handler(request: httpx.Request) -> httpx.Response:
        attempts.append(1)
        raise httpx.ConnectError("refused", request=request)

    response = call_api("/assistant", {"prompt": "hi"}, "alice", max_retries=3, client=_client(handler))
    assert len(attempts) == 3
    assert response == {"answer": "Failed to connect to API after 3 attempts"}


def test_terminal_helpers() -> None:
    """Approval labels read naturally and painting can be switched off."""
    request = {"method": "delete", "path": "/admin/products/p1", "operation_id": "AdminDeleteProductsId"}
    assert describe_validation_request(request) == "DELETE /admin/products/p1 (AdminDeleteProductsId)"
    assert describe_validation_request({}) == "? ? (?)"
    assert paint("hi", AnsiColors.RED) == "\033[91mhi\033[0m"
    assert paint("hi", AnsiColors.RED, enabled=False) == "hi"

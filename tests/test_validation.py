"""Validation manager registry and the approval summary text."""

from datetime import (
    datetime,
    timedelta,
    timezone,
)
from typing import List

import pytest

from opsbridge.agent.validation import (
    PendingContext,
    ValidationManager,
    ValidationNotFoundError,
)
from opsbridge.agent.validation_summary import (
    build_validation_summary,
    collect_diff_notes,
    format_operation_title,
    friendly_key,
)
from opsbridge.core.schema import (
    HistoryEntry,
    ValidationDecision,
    ValidationRequest,
)


class FakeClock:
    def __init__(self) -> None:
        self.now = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now


def _create(manager: ValidationManager, operation_id: str = "AdminPostProducts") -> ValidationRequest:
    return manager.create_validation_request(operation_id, "POST", "/admin/products", {"body": {}})


def test_respond_removes_request() -> None:
    """A decision resolves the request exactly once."""
    manager = ValidationManager(ttl_seconds=60)
    request = _create(manager)
    assert manager.has_pending_validation(request.id)

    pending = manager.respond_to_validation(ValidationDecision(id=request.id, approved=True))
    assert pending.request.id == request.id
    assert not manager.has_pending_validation(request.id)
    with pytest.raises(ValidationNotFoundError, match="not found or expired"):
        manager.respond_to_validation(ValidationDecision(id=request.id, approved=True))


def test_requests_expire_after_ttl() -> None:
    """Requests older than the TTL are purged on access."""
    clock = FakeClock()
    manager = ValidationManager(ttl_seconds=60, clock=clock)
    request = _create(manager)
    clock.now += timedelta(seconds=61)
    assert manager.get_pending_validation(request.id) is None
    assert len(manager) == 0


def test_attach_context_to_unknown_id_fails() -> None:
    """Context can only be bound to a live request."""
    manager = ValidationManager(ttl_seconds=60)
    with pytest.raises(ValidationNotFoundError):
        manager.attach_context("missing", PendingContext(actor_id="a", session_id="s"))


def test_latest_and_pending_for_actor() -> None:
    """Requests are filtered by the actor of their bound context."""
    clock = FakeClock()
    manager = ValidationManager(ttl_seconds=600, clock=clock)
    first = _create(manager)
    clock.now += timedelta(seconds=1)
    second = _create(manager, "AdminDeleteProductsId")
    other = _create(manager)
    manager.attach_context(first.id, PendingContext(actor_id="alice", session_id="s1"))
    manager.attach_context(second.id, PendingContext(actor_id="alice", session_id="s1"))
    manager.attach_context(other.id, PendingContext(actor_id="bob", session_id="s2"))

    latest = manager.latest_for_actor("alice")
    assert latest is not None and latest.request.id == second.id
    assert {r.id for r in manager.pending_requests("alice")} == {first.id, second.id}
    assert len(manager.pending_requests()) == 3
    assert manager.latest_for_actor("  ") is None
    manager.clear()
    assert len(manager) == 0


def test_summary_for_create() -> None:
    """The summary names the action, the resource and the payload."""
    request = ValidationRequest(
        id="1",
        operation_id="AdminPostProducts",
        method="POST",
        path="/admin/products",
        args={"body": {"title": "Winter Hat", "status": "draft"}},
    )
    text = build_validation_summary(request, [], execute_tool_name="openapi.execute")
    assert text.startswith("## 🔐 Pending Approval")
    assert "I'm ready to create **Winter Hat**." in text
    assert "- Operation: Create Products" in text
    assert "- Endpoint: `POST /admin/products`" in text
    assert "**Request Payload**" in text
    assert "Nothing has been executed yet." in text


def test_summary_explains_retry_after_failure() -> None:
    """A failed previous attempt of the same operation adds a What Changed section."""
    history: List[HistoryEntry] = [
        HistoryEntry(
            tool_name="openapi.execute",
            tool_args={"operationId": "AdminPostProductsId", "body": {"title": "Hat", "price": 5}},
            tool_result={"error": True, "message": "price must be an integer in cents"},
        )
    ]
    request = ValidationRequest(
        id="2",
        operation_id="AdminPostProductsId",
        method="POST",
        path="/admin/products/{id}",
        args={"body": {"title": "Hat", "price": 500}, "pathParams": {"id": "prod_1"}},
    )
    text = build_validation_summary(request, history, execute_tool_name="openapi.execute")
    assert "**What Changed**" in text
    assert "Last attempt failed: price must be an integer in cents" in text
    assert "Updated `body.price` from 5 to 500" in text
    assert "Added `pathParams` =" in text
    assert "**Path Parameters**" in text


def test_diff_notes_capped() -> None:
    """At most six differences are reported."""
    previous = {"body": {f"k{i}": i for i in range(10)}}
    current = {"body": {f"k{i}": i + 1 for i in range(10)}}
    assert len(collect_diff_notes(previous, current)) == 6


def test_label_helpers() -> None:
    """Operation ids and keys read naturally."""
    assert format_operation_title("AdminDeleteProductsId") == "Delete Products Id"
    assert friendly_key("variant_sku") == "Variant SKU"
    assert friendly_key("productId") == "Product ID"

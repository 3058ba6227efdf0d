"""
Pydantic models for opsbridge API requests and responses.
This module defines the request and response schemas used by the opsbridge API.
"""

from datetime import datetime
from typing import (
    Any,
    Dict,
    List,
    Optional,
)

from pydantic import (
    BaseModel,
    Field,
)

from opsbridge.core.schema import (
    ConversationMessage,
    ValidationRequest,
)


# ---------------------------------------------------------------------------
# Pydantic request / response schema
# ---------------------------------------------------------------------------
class PromptRequest(BaseModel):
    """Incoming operator prompt."""

    prompt: str = Field(..., description="What the operator wants done")
    session_id: Optional[str] = Field(None, description="Session ID for conversation context")


class ValidationResponseRequest(BaseModel):
    """The operator's decision on a pending approval."""

    id: str = Field(..., description="Validation request ID")
    approved: bool
    edited_data: Optional[Dict[str, Any]] = Field(
        None, description="Argument edits deep-merged into the held call"
    )


class CancelRequest(BaseModel):
    """Cancel in-flight turns; all of the actor's turns when no session is given."""

    session_id: Optional[str] = None


class AssistantResponse(BaseModel):
    """API response returned to the caller."""

    answer: str
    session_id: str
    history: List[ConversationMessage] = Field(default_factory=list)
    data: Any = None
    validation_request: Optional[ValidationRequest] = None
    updated_at: datetime


class PendingValidationsResponse(BaseModel):
    """Pending approvals owned by the caller."""

    validations: List[ValidationRequest]


class CancelResponse(BaseModel):
    cancelled: int


class SessionResponse(BaseModel):
    """A conversation with its messages."""

    session_id: str
    title: str
    history: List[ConversationMessage]
    updated_at: datetime

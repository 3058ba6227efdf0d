"""
Schema definitions for planner <-> agent loop <-> tool gateway messages.

These data models serve as the contract between the planner LLM, the orchestration loop, the
approval workflow and the quality scoring pipeline.  We keep them separate from runtime logic so
they can be imported anywhere without side-effects.
"""

from datetime import (
    datetime,
    timezone,
)
from enum import Enum
from typing import (
    Any,
    Callable,
    Dict,
    List,
    Literal,
    Optional,
    Union,
)

from pydantic import (
    BaseModel,
    Field,
    PrivateAttr,
)


# ---------------------------------------------------------------------------
# Tool catalog
# ---------------------------------------------------------------------------
class ToolDescriptor(BaseModel):
    """A tool advertised by the gateway."""

    name: str
    description: Optional[str] = None
    input_schema: Optional[Dict[str, Any]] = None


class InitialOperation(BaseModel):
    """An operation suggested up-front by the search tool."""

    operation_id: str
    method: str
    path: str
    summary: Optional[str] = None
    tags: Optional[List[str]] = None


# ---------------------------------------------------------------------------
# Plans
# ---------------------------------------------------------------------------
class FinalAnswer(BaseModel):
    """The planner is done and wants to answer the operator."""

    action: Literal["final_answer"] = "final_answer"
    answer: Optional[str] = None
    raw: Any = None


class CallTool(BaseModel):
    """The planner wants the loop to invoke a tool."""

    action: Literal["call_tool"] = "call_tool"
    tool_name: str
    tool_args: Dict[str, Any] = Field(default_factory=dict)
    raw: Any = None


Plan = Union[FinalAnswer, CallTool]


# ---------------------------------------------------------------------------
# History
# ---------------------------------------------------------------------------
class ToolMeta(BaseModel):
    """Timing information captured around a gateway call."""

    duration_ms: Optional[int] = None
    started_at_ms: Optional[int] = None
    finished_at_ms: Optional[int] = None


class HistoryEntry(BaseModel):
    """One tool invocation (or synthetic note) inside a turn."""

    tool_name: str
    tool_args: Any = None
    tool_result: Any = None
    tool_meta: Optional[ToolMeta] = None


# ---------------------------------------------------------------------------
# Payload summaries
# ---------------------------------------------------------------------------
class CountEntry(BaseModel):
    """How often a normalized scalar value occurred at a path."""

    value: str
    count: int


class CountSummary(BaseModel):
    """Frequency aggregate for one field path of a tool payload."""

    path: str
    total: int
    unique: int
    counts: List[CountEntry]
    top: Optional[CountEntry] = None


class AssistantSummary(BaseModel):
    """All aggregates computed for one payload."""

    aggregates: List[CountSummary]


# ---------------------------------------------------------------------------
# Human approval
# ---------------------------------------------------------------------------
def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ValidationRequest(BaseModel):
    """A destructive call waiting for an operator decision."""

    id: str
    operation_id: str
    method: str
    path: str
    args: Dict[str, Any] = Field(default_factory=dict)
    body_field_enums: Optional[Dict[str, List[Any]]] = None
    body_field_read_only: Optional[List[str]] = None
    resource_preview: Optional[Dict[str, Any]] = None
    timestamp: datetime = Field(default_factory=_utcnow)


class ValidationDecision(BaseModel):
    """The operator's answer to a validation request."""

    id: str
    approved: bool
    edited_data: Optional[Dict[str, Any]] = None


class ResumeToken(BaseModel):
    """
    Everything the loop needs to continue after an approval.

    The token is plain data so it can be stored next to the pending request (or serialized
    elsewhere) instead of holding on to a live coroutine.
    """

    validation_id: str
    prompt: str
    tool_name: str
    tool_args: Dict[str, Any] = Field(default_factory=dict)
    cacheable: bool = False
    next_step: int
    history: List[HistoryEntry] = Field(default_factory=list)
    initial_operations: List[InitialOperation] = Field(default_factory=list)
    pending_answer: Optional[str] = None
    ground_truth: Dict[str, float] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Loop results
# ---------------------------------------------------------------------------
class LoopState(str, Enum):
    """States of the ask loop state machine."""

    RUNNING = "running"
    SUSPENDED = "suspended"
    FINISHED = "finished"
    FAILED = "failed"


class LoopResult(BaseModel):
    """What a run (or a resumed run) of the ask loop hands back to its caller."""

    state: LoopState
    answer: Optional[str] = None
    data: Any = None
    history: List[HistoryEntry] = Field(default_factory=list)
    validation_request: Optional[ValidationRequest] = None
    resume_token: Optional[ResumeToken] = None
    next_step: Optional[int] = None
    error: Optional[str] = None
    ground_truth: Dict[str, float] = Field(default_factory=dict)

    _continuation: Optional[Callable[..., Any]] = PrivateAttr(default=None)

    @property
    def continuation(self) -> Optional[Callable[..., Any]]:
        """Coroutine function ``(approved, edited_data=None) -> LoopResult`` when suspended."""
        return self._continuation

    def bind_continuation(self, handler: Callable[..., Any]) -> "LoopResult":
        """Attach the resume handler and return *self*."""
        self._continuation = handler
        return self


# ---------------------------------------------------------------------------
# Agent NPS
# ---------------------------------------------------------------------------
class AgentNpsEvaluation(BaseModel):
    """Heuristic quality score for one operation."""

    model_config = {"frozen": True}

    score: int = Field(..., ge=0, le=10)
    error_flag: bool
    error_summary: Optional[str] = None
    attempts: int
    errors: int
    duration_ms: int
    feedback_note: str


class StatusDigest(BaseModel):
    """HTTP-like outcome of one past call of an operation."""

    status_code: Optional[int] = None
    message: Optional[str] = None
    operation_summary: Optional[str] = None


class QualitativeFeedback(BaseModel):
    """LLM-authored review of an operation or a whole turn."""

    summary: str
    positives: List[str] = Field(default_factory=list)
    suggestions: List[str] = Field(default_factory=list)


class ExecutedOperation(BaseModel):
    """An operation invoked through the execute tool during a turn."""

    operation_id: str
    task_label: Optional[str] = None


# ---------------------------------------------------------------------------
# Conversations
# ---------------------------------------------------------------------------
class ConversationMessage(BaseModel):
    """One message shown to the operator."""

    id: str
    role: Literal["user", "assistant"]
    content: str
    created_at: datetime = Field(default_factory=_utcnow)


class ConversationSession(BaseModel):
    """A conversation owned by one actor."""

    id: str
    actor_id: str
    title: str = "New Conversation"
    messages: List[ConversationMessage] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


class AssistantReply(BaseModel):
    """What the assistant service returns for a prompt or a validation decision."""

    answer: str
    session_id: str
    messages: List[ConversationMessage] = Field(default_factory=list)
    data: Any = None
    validation_request: Optional[ValidationRequest] = None
    updated_at: datetime = Field(default_factory=_utcnow)

"""
Registry of destructive tool calls awaiting a human decision.

A :class:`ValidationManager` is shared by every turn served by one process (or one tenant): it
is created once and injected into the ask loop and the assistant service.  Entries expire after
``VALIDATION_TTL_SECONDS``; expired and unknown ids are both reported as
:class:`ValidationNotFoundError`.
"""

import logging
import threading
import uuid
from dataclasses import dataclass
from datetime import (
    datetime,
    timedelta,
    timezone,
)
from typing import (
    Any,
    Callable,
    Dict,
    List,
    Optional,
)

from pydantic import (
    BaseModel,
    Field,
)

from opsbridge.config import (
    Settings,
    settings,
)
from opsbridge.core.schema import (
    ResumeToken,
    ValidationDecision,
    ValidationRequest,
)

logger = logging.getLogger(__name__)


class ValidationNotFoundError(KeyError):
    """Raised when a validation id is unknown, already resolved or expired."""

    def __init__(self, validation_id: str) -> None:
        super().__init__(validation_id)
        self.validation_id = validation_id

    def __str__(self) -> str:
        return f"Validation request '{self.validation_id}' not found or expired"


class PendingContext(BaseModel):
    """Turn context bound to a pending request so the turn can be resumed later."""

    actor_id: str
    session_id: str
    message_id: Optional[str] = None
    prompt: str = ""
    resume_token: Optional[ResumeToken] = None
    next_step: Optional[int] = None
    turn_started_at_ms: Optional[int] = None
    user_wait_ms: int = 0
    metadata: Dict[str, Any] = Field(default_factory=dict)


@dataclass
class PendingValidation:
    """A request plus, once attached, its turn context and optional in-process continuation."""

    request: ValidationRequest
    context: Optional[PendingContext] = None
    continuation: Optional[Callable[..., Any]] = None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ValidationManager:
    """Thread-safe, TTL-bounded store of :class:`PendingValidation` keyed by request id."""

    def __init__(
        self,
        ttl_seconds: int | None = None,
        config: Settings | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        cfg = config or settings
        self.ttl = timedelta(seconds=ttl_seconds if ttl_seconds is not None else cfg.VALIDATION_TTL_SECONDS)
        self._clock = clock
        self._pending: Dict[str, PendingValidation] = {}
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _purge_expired(self) -> None:
        """Drop expired entries; caller holds the lock."""
        cutoff = self._clock() - self.ttl
        expired = [key for key, item in self._pending.items() if item.request.timestamp < cutoff]
        for key in expired:
            logger.info("Validation request %s expired", key)
            del self._pending[key]

    @staticmethod
    def _new_id(now: datetime) -> str:
        return f"{int(now.timestamp() * 1000)}-{uuid.uuid4().hex[:7]}"

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def create_validation_request(
        self,
        operation_id: str,
        method: str,
        path: str,
        args: Dict[str, Any],
        body_field_enums: Optional[Dict[str, List[Any]]] = None,
        body_field_read_only: Optional[List[str]] = None,
        resource_preview: Optional[Dict[str, Any]] = None,
    ) -> ValidationRequest:
        """Register a new pending request and return it."""
        now = self._clock()
        request = ValidationRequest(
            id=self._new_id(now),
            operation_id=operation_id,
            method=method,
            path=path,
            args=args,
            body_field_enums=body_field_enums,
            body_field_read_only=body_field_read_only,
            resource_preview=resource_preview,
            timestamp=now,
        )
        with self._lock:
            self._purge_expired()
            self._pending[request.id] = PendingValidation(request=request)
        logger.debug("Created validation request %s for %s", request.id, operation_id)
        return request

    def attach_context(
        self,
        validation_id: str,
        context: PendingContext,
        continuation: Optional[Callable[..., Any]] = None,
    ) -> None:
        """Bind turn context (and optionally a live continuation) to a pending request."""
        with self._lock:
            self._purge_expired()
            pending = self._pending.get(validation_id)
            if pending is None:
                raise ValidationNotFoundError(validation_id)
            pending.context = context
            if continuation is not None:
                pending.continuation = continuation

    def get_pending_validation(self, validation_id: str) -> Optional[PendingValidation]:
        with self._lock:
            self._purge_expired()
            return self._pending.get(validation_id)

    def has_pending_validation(self, validation_id: str) -> bool:
        return self.get_pending_validation(validation_id) is not None

    def respond_to_validation(self, decision: ValidationDecision) -> PendingValidation:
        """
        Resolve a pending request and remove it from the registry.

        Raises
        ------
        ValidationNotFoundError
            If the id is unknown, already resolved or expired.
        """
        with self._lock:
            self._purge_expired()
            pending = self._pending.pop(decision.id, None)
        if pending is None:
            raise ValidationNotFoundError(decision.id)
        logger.info(
            "Validation %s %s", decision.id, "approved" if decision.approved else "rejected"
        )
        return pending

    def latest_for_actor(self, actor_id: str) -> Optional[PendingValidation]:
        """Most recent pending request whose context belongs to *actor_id*."""
        actor = (actor_id or "").strip()
        if not actor:
            return None
        with self._lock:
            self._purge_expired()
            owned = [
                item
                for item in self._pending.values()
                if item.context is not None and item.context.actor_id == actor
            ]
        if not owned:
            return None
        return max(owned, key=lambda item: item.request.timestamp)

    def pending_requests(self, actor_id: Optional[str] = None) -> List[ValidationRequest]:
        """All live requests, optionally only those owned by *actor_id*."""
        with self._lock:
            self._purge_expired()
            items = list(self._pending.values())
        if actor_id is not None:
            items = [item for item in items if item.context and item.context.actor_id == actor_id]
        return [item.request for item in items]

    def clear(self) -> None:
        with self._lock:
            self._pending.clear()

    def __len__(self) -> int:
        with self._lock:
            self._purge_expired()
            return len(self._pending)

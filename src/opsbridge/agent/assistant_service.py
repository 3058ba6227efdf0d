"""
Turn orchestration on top of :class:`~opsbridge.agent.agent_loop.AskLoop`.

The service owns the per-actor concerns the loop does not know about: sessions and messages,
binding a suspended turn to its pending approval, measuring how long the operator kept the turn
waiting, cancelling in-flight turns and handing finished turns to the ANPS pipeline.
"""

import logging
import threading
import time
from datetime import (
    datetime,
    timezone,
)
from typing import (
    Any,
    Dict,
    List,
    Optional,
)

from opsbridge.agent.agent_loop import (
    CANCELLED_ERROR,
    AskLoop,
    CancellationToken,
)
from opsbridge.agent.validation import (
    PendingContext,
    ValidationManager,
    ValidationNotFoundError,
)
from opsbridge.anps.service import AnpsService
from opsbridge.config import (
    Settings,
    settings,
)
from opsbridge.core.schema import (
    AssistantReply,
    ConversationSession,
    LoopResult,
    LoopState,
    ValidationDecision,
    ValidationRequest,
)
from opsbridge.memory.memory_store import ConversationStore

logger = logging.getLogger(__name__)

DEFAULT_FAILURE_MESSAGE = "Sorry, I could not find an answer to your question."
APPROVED_MESSAGE = "✓ Approved"
CANCEL_MESSAGE = (
    "## ❌ Action Cancelled\n\n"
    "No changes were made. The operation has been cancelled as requested.\n\n"
    "Feel free to ask me to do something else!"
)


class AssistantError(Exception):
    """A user-visible failure carrying an HTTP-like status code."""

    def __init__(self, message: str, status_code: int = 500) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code


def _now_ms() -> int:
    return int(time.time() * 1000)


def _require(value: Optional[str], what: str) -> str:
    cleaned = (value or "").strip()
    if not cleaned:
        raise AssistantError(f"Missing {what}", status_code=400)
    return cleaned


class AssistantService:
    """
    Entry point used by the HTTP API and tests.

    Parameters
    ----------
    loop:
        The ask loop that runs turns.
    validation_manager:
        Registry of pending approvals; must be the same instance the loop's executor uses.
    store:
        Conversation store.
    anps_service:
        Optional scorer; when ``None`` finished turns are not scored.
    """

    def __init__(
        self,
        loop: AskLoop,
        validation_manager: ValidationManager,
        store: ConversationStore,
        anps_service: Optional[AnpsService] = None,
        config: Settings | None = None,
    ) -> None:
        self.loop = loop
        self.validation_manager = validation_manager
        self.store = store
        self.anps_service = anps_service
        self.config = config or settings
        self._cancel_tokens: Dict[str, CancellationToken] = {}
        self._session_owner: Dict[str, str] = {}
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _open_token(self, actor_id: str, session_id: str) -> CancellationToken:
        token = CancellationToken()
        with self._lock:
            self._cancel_tokens[session_id] = token
            self._session_owner[session_id] = actor_id
        return token

    def _close_token(self, session_id: str, token: CancellationToken) -> None:
        with self._lock:
            if self._cancel_tokens.get(session_id) is token:
                del self._cancel_tokens[session_id]
                self._session_owner.pop(session_id, None)

    def _raise_for_failure(self, result: LoopResult) -> None:
        if result.state != LoopState.FAILED:
            return
        error = result.error or DEFAULT_FAILURE_MESSAGE
        if error == CANCELLED_ERROR:
            raise AssistantError(error, status_code=409)
        raise AssistantError(error, status_code=500)

    def _reply(
        self,
        session_id: str,
        answer: str,
        data: Any = None,
        validation_request: Optional[ValidationRequest] = None,
    ) -> AssistantReply:
        session = self.store.get_session(session_id)
        return AssistantReply(
            answer=answer,
            session_id=session_id,
            messages=session.messages if session else [],
            data=data,
            validation_request=validation_request,
            updated_at=session.updated_at if session else datetime.now(timezone.utc),
        )

    def _schedule_anps(
        self,
        actor_id: str,
        session_id: str,
        result: LoopResult,
        started_at_ms: Optional[int],
        user_wait_ms: int,
        answer: str,
        prompt: str,
    ) -> None:
        if self.anps_service is None:
            return
        duration_ms = max(0, _now_ms() - started_at_ms) if started_at_ms else 0
        try:
            self.anps_service.schedule_submission(
                actor_id,
                session_id,
                result.history,
                duration_ms,
                agent_compute_ms=max(0, duration_ms - user_wait_ms),
                answer=answer,
                prompt=prompt,
            )
        except Exception:  # pylint: disable=broad-except
            logger.exception("Failed to schedule ANPS submission for session %s", session_id)

    def _settle(
        self,
        actor_id: str,
        session: ConversationSession,
        prompt: str,
        result: LoopResult,
        started_at_ms: int,
        user_wait_ms: int,
    ) -> AssistantReply:
        """Store the answer, then either park the turn behind its approval or close it out."""
        answer = result.answer if result.answer and result.answer.strip() else DEFAULT_FAILURE_MESSAGE
        message_id = self.store.add_message(session.id, "assistant", answer)

        if result.state == LoopState.SUSPENDED and result.validation_request is not None:
            context = PendingContext(
                actor_id=actor_id,
                session_id=session.id,
                message_id=message_id,
                prompt=prompt,
                resume_token=result.resume_token,
                next_step=result.next_step,
                turn_started_at_ms=started_at_ms,
                user_wait_ms=user_wait_ms,
            )
            self.validation_manager.attach_context(
                result.validation_request.id, context, result.continuation
            )
            return self._reply(session.id, answer, result.data, result.validation_request)

        self.store.save_turn(session.id, actor_id, prompt, answer, result.history)
        self._schedule_anps(actor_id, session.id, result, started_at_ms, user_wait_ms, answer, prompt)
        return self._reply(session.id, answer, result.data)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    async def prompt(
        self, actor_id: str, prompt: str, session_id: Optional[str] = None
    ) -> AssistantReply:
        """
        Run a new turn.

        Raises
        ------
        AssistantError
            400 for a blank prompt or actor, 404 for an unknown session, 409 when cancelled and
            500 when the loop fails.
        """
        actor_id = _require(actor_id, "actor identifier")
        prompt = _require(prompt, "prompt")

        if session_id:
            session = self.store.get_session(session_id, actor_id)
            if session is None:
                raise AssistantError(f"Session '{session_id}' not found", status_code=404)
        else:
            session = self.store.create_session(actor_id)

        prior_history = self.store.agent_history(session.id)
        self.store.add_message(session.id, "user", prompt)

        started_at_ms = _now_ms()
        token = self._open_token(actor_id, session.id)
        try:
            result = await self.loop.run(prompt, prior_history, cancel_token=token)
        finally:
            self._close_token(session.id, token)

        self._raise_for_failure(result)
        return self._settle(actor_id, session, prompt, result, started_at_ms, 0)

    async def respond_to_validation(
        self,
        actor_id: str,
        validation_id: str,
        approved: bool,
        edited_data: Optional[Dict[str, Any]] = None,
    ) -> AssistantReply:
        """
        Apply the operator's decision to a suspended turn.

        Raises
        ------
        AssistantError
            400 for blank ids, 404 when the request is unknown or expired, 403 when it belongs to
            another actor, 409 when no turn is bound to it.
        """
        actor_id = _require(actor_id, "actor identifier")
        validation_id = _require(validation_id, "validation id")

        pending = self.validation_manager.get_pending_validation(validation_id)
        if pending is None:
            raise AssistantError(str(ValidationNotFoundError(validation_id)), status_code=404)
        context = pending.context
        if context is None:
            raise AssistantError("No continuation context available for this validation", status_code=409)
        if context.actor_id != actor_id:
            raise AssistantError("Validation does not belong to this actor", status_code=403)

        waited_ms = max(0, int((datetime.now(timezone.utc) - pending.request.timestamp).total_seconds() * 1000))
        user_wait_ms = context.user_wait_ms + waited_ms

        try:
            self.validation_manager.respond_to_validation(
                ValidationDecision(id=validation_id, approved=approved, edited_data=edited_data)
            )
        except ValidationNotFoundError as exc:
            raise AssistantError(str(exc), status_code=404) from exc

        session = self.store.get_session(context.session_id, actor_id)
        if session is None:
            raise AssistantError(f"Session '{context.session_id}' not found", status_code=404)

        if not approved:
            if context.message_id:
                self.store.update_message(session.id, context.message_id, CANCEL_MESSAGE)
            return self._reply(session.id, CANCEL_MESSAGE)

        self.store.add_message(session.id, "user", APPROVED_MESSAGE)

        token = self._open_token(actor_id, session.id)
        try:
            if context.resume_token is not None:
                result = await self.loop.resume(
                    context.resume_token, True, edited_data, cancel_token=token
                )
            elif pending.continuation is not None:
                result = await pending.continuation(True, edited_data)
            else:
                raise AssistantError("No continuation handler registered for validation", status_code=409)
        finally:
            self._close_token(session.id, token)

        self._raise_for_failure(result)
        return self._settle(
            actor_id, session, context.prompt, result, context.turn_started_at_ms or 0, user_wait_ms
        )

    def cancel(self, actor_id: str, session_id: Optional[str] = None) -> int:
        """Flag the actor's in-flight turns (or one session's turn); returns how many were flagged."""
        actor_id = _require(actor_id, "actor identifier")
        with self._lock:
            if session_id is not None:
                targets = [session_id] if self._session_owner.get(session_id) == actor_id else []
            else:
                targets = [sid for sid, owner in self._session_owner.items() if owner == actor_id]
            tokens = [self._cancel_tokens[sid] for sid in targets if sid in self._cancel_tokens]
        for token in tokens:
            token.cancel()
        if tokens:
            logger.info("Cancelled %d in-flight turn(s) for actor %s", len(tokens), actor_id)
        return len(tokens)

    def pending_validations(self, actor_id: str) -> List[ValidationRequest]:
        return self.validation_manager.pending_requests(_require(actor_id, "actor identifier"))

    def get_session(self, actor_id: str, session_id: str) -> ConversationSession:
        session = self.store.get_session(session_id, _require(actor_id, "actor identifier"))
        if session is None:
            raise AssistantError(f"Session '{session_id}' not found", status_code=404)
        return session

    def list_sessions(self, actor_id: str) -> List[ConversationSession]:
        return self.store.list_sessions(_require(actor_id, "actor identifier"))

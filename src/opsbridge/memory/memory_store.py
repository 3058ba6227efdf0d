"""Conversation sessions kept in memory plus a lightweight JSON-lines audit log."""

import json
import logging
import threading
import time
import uuid
from datetime import (
    datetime,
    timezone,
)
from pathlib import Path
from typing import (
    Any,
    Dict,
    List,
    Optional,
)

from opsbridge.config import (
    Settings,
    settings,
)
from opsbridge.core.schema import (
    ConversationMessage,
    ConversationSession,
    HistoryEntry,
)

logger = logging.getLogger(__name__)

CONVERSATION_TOOL = "conversation"
DEFAULT_TITLE = "New Conversation"
TITLE_MAX_CHARS = 50
AUDIT_LOG_NAME = "opsbridge_turns.jsonl"


def generate_id(prefix: str) -> str:
    """``<prefix>_<epoch ms>_<random>`` identifiers, sortable by creation time."""
    return f"{prefix}_{int(time.time() * 1000)}_{uuid.uuid4().hex[:13]}"


def generate_title(content: str) -> str:
    content = content.strip()
    if not content:
        return DEFAULT_TITLE
    return content[:TITLE_MAX_CHARS] + "..." if len(content) > TITLE_MAX_CHARS else content


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SessionNotFoundError(KeyError):
    """Raised when a session id is unknown or owned by another actor."""

    def __str__(self) -> str:
        return f"Session '{self.args[0]}' not found"


class ConversationStore:
    """
    Thread-safe in-memory store of :class:`ConversationSession` objects.

    Completed turns are also appended to ``<DATA_DIR>/opsbridge_turns.jsonl`` so an audit trail
    survives restarts even though sessions do not.
    """

    def __init__(self, config: Settings | None = None, log_path: Path | None = None) -> None:
        self.config = config or settings
        self.log_path = log_path or Path(self.config.DATA_DIR) / AUDIT_LOG_NAME
        self._sessions: Dict[str, ConversationSession] = {}
        self._lock = threading.Lock()

    def init(self) -> None:
        """
        Initialize the store by ensuring the audit log exists.
        This is called at application startup to prepare the environment.
        """
        self.log_path.parent.mkdir(parents=True, exist_ok=True)
        if not self.log_path.exists():
            self.log_path.touch()

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------
    def create_session(self, actor_id: str, title: Optional[str] = None) -> ConversationSession:
        session = ConversationSession(
            id=generate_id("sess"), actor_id=actor_id, title=title or DEFAULT_TITLE
        )
        with self._lock:
            self._sessions[session.id] = session
        logger.debug("Created session %s for actor %s", session.id, actor_id)
        return session.model_copy(deep=True)

    def get_session(self, session_id: str, actor_id: Optional[str] = None) -> Optional[ConversationSession]:
        """A copy of the session, or ``None`` when unknown or owned by someone else."""
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None or (actor_id is not None and session.actor_id != actor_id):
                return None
            return session.model_copy(deep=True)

    def latest_session(self, actor_id: str) -> Optional[ConversationSession]:
        with self._lock:
            owned = [s for s in self._sessions.values() if s.actor_id == actor_id]
            if not owned:
                return None
            return max(owned, key=lambda s: s.updated_at).model_copy(deep=True)

    def list_sessions(self, actor_id: str) -> List[ConversationSession]:
        """The actor's sessions, most recently updated first."""
        with self._lock:
            owned = [s.model_copy(deep=True) for s in self._sessions.values() if s.actor_id == actor_id]
        return sorted(owned, key=lambda s: s.updated_at, reverse=True)

    def delete_session(self, actor_id: str, session_id: str) -> bool:
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None or session.actor_id != actor_id:
                return False
            del self._sessions[session_id]
            return True

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------
    def add_message(
        self, session_id: str, role: str, content: str, created_at: Optional[datetime] = None
    ) -> str:
        """Append a message and return its id."""
        timestamp = created_at or _utcnow()
        message = ConversationMessage(
            id=generate_id("msg"), role=role, content=content, created_at=timestamp
        )
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                raise SessionNotFoundError(session_id)
            if role == "user" and session.title == DEFAULT_TITLE and not session.messages:
                session.title = generate_title(content)
            session.messages.append(message)
            session.updated_at = timestamp
        return message.id

    def update_message(
        self, session_id: str, message_id: str, content: str, updated_at: Optional[datetime] = None
    ) -> bool:
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                raise SessionNotFoundError(session_id)
            for message in session.messages:
                if message.id == message_id:
                    message.content = content
                    session.updated_at = updated_at or _utcnow()
                    return True
        return False

    def agent_history(self, session_id: str) -> List[HistoryEntry]:
        """Prior messages as ``conversation`` history entries the planner can read."""
        session = self.get_session(session_id)
        if session is None:
            return []
        return [
            HistoryEntry(
                tool_name=CONVERSATION_TOOL,
                tool_args={"role": message.role},
                tool_result={"content": message.content},
            )
            for message in session.messages
        ]

    # ------------------------------------------------------------------
    # Audit
    # ------------------------------------------------------------------
    def save_turn(
        self,
        session_id: str,
        actor_id: str,
        prompt: str,
        answer: str,
        history: Optional[List[HistoryEntry]] = None,
        extra: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Append one completed turn to the JSON-lines audit log."""
        record = {
            "session_id": session_id,
            "actor_id": actor_id,
            "prompt": prompt,
            "reply": answer,
            "history": [entry.model_dump(mode="json") for entry in history or []],
            "saved_at": _utcnow().isoformat(),
        }
        if extra:
            record.update(extra)
        try:
            self.log_path.parent.mkdir(parents=True, exist_ok=True)
            with self.log_path.open("a", encoding="utf-8") as f:
                f.write(json.dumps(record, default=str) + "\n")
        except OSError as exc:
            logger.error("Failed to write audit log %s: %s", self.log_path, exc)

"""
Local ``agent_nps.submit`` tool.

When no remote gateway is configured, ANPS records are validated and appended to a JSON-lines
file under ``DATA_DIR``.  The tool answers ``{"ok": true, "id": ...}`` on success and
``{"ok": false, "message": ...}`` otherwise, like the remote sink does.
"""

import json
import logging
import uuid
from pathlib import Path
from typing import (
    Any,
    Dict,
    List,
    Literal,
    Optional,
    Union,
)

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
)

from opsbridge.config import settings
from opsbridge.tools import (
    TOOL_REGISTRY,
    ToolRegistry,
)

logger = logging.getLogger(__name__)


class AnpsSubmission(BaseModel):
    """Shape accepted by the submission sink."""

    model_config = ConfigDict(extra="forbid")

    score: int = Field(..., ge=0, le=10)
    sessionId: str = Field(..., min_length=1)
    agentId: str = Field(..., min_length=1)
    agentVersion: Optional[str] = None
    userId: Optional[str] = None
    taskLabel: Optional[str] = None
    operationId: Optional[str] = None
    toolsUsed: List[Union[Dict[str, Any], str]] = Field(default_factory=list)
    durationMs: Optional[int] = Field(None, ge=0)
    errorFlag: bool = False
    errorSummary: Optional[str] = Field(None, max_length=240)
    userPermission: Literal[True]
    clientMetadata: Optional[Dict[str, Any]] = None


def submissions_path() -> Path:
    return Path(settings.DATA_DIR) / "anps_submissions.jsonl"


def submit_anps(**raw: Any) -> Dict[str, Any]:
    """Persist a Net Promoter Score for the current assistant session after user permission."""
    try:
        record = AnpsSubmission.model_validate(raw)
    except ValidationError as exc:
        reason = exc.errors()[0].get("msg", "Invalid input") if exc.errors() else "Invalid input"
        logger.warning("ANPS submission rejected: %s", reason)
        return {"ok": False, "message": reason}

    data = record.model_dump()
    data["toolsUsed"] = [
        {"name": entry} if isinstance(entry, str) else entry for entry in record.toolsUsed
    ]
    data["id"] = f"anps_{uuid.uuid4().hex[:12]}"

    path = submissions_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("a", encoding="utf-8") as f:
        f.write(json.dumps(data, default=str) + "\n")

    logger.info("ANPS record %s stored (score=%d, task=%s)", data["id"], record.score, record.taskLabel)
    return {"ok": True, "id": data["id"]}


def register_anps_sink(registry: ToolRegistry | None = None, name: str | None = None) -> None:
    """Register :func:`submit_anps` under the configured submit tool name, once."""
    target = registry if registry is not None else TOOL_REGISTRY
    tool_name = name or settings.SUBMIT_TOOL_NAME
    if tool_name not in target:
        target.register(tool_name)(submit_anps)

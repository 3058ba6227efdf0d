"""
Core API backend for opsbridge.

It exposes the following endpoints (the caller identifies itself with the ``X-Actor-Id`` header):
- **GET /health** - liveness check for load balancers and orchestrators.
- **POST /assistant** - run a turn: {"prompt": "...", "session_id": "..."}
- **GET /assistant/validation** - list the caller's pending approvals.
- **POST /assistant/validation** - approve or reject: {"id": "...", "approved": true}
- **POST /assistant/cancel** - cancel in-flight turns: {"session_id": "..."}
- **GET /sessions** - list the caller's sessions.
- **GET /sessions/{session_id}** - one session with its messages.
"""

import logging
from contextlib import asynccontextmanager
from typing import (
    AsyncIterator,
    List,
    Optional,
)

from fastapi import (
    Depends,
    FastAPI,
    Header,
    HTTPException,
)

from opsbridge.agent.agent_loop import AskLoop
from opsbridge.agent.assistant_service import (
    AssistantError,
    AssistantService,
)
from opsbridge.agent.planner_interface import load_planner
from opsbridge.agent.validation import ValidationManager
from opsbridge.anps.feedback import FeedbackGenerator
from opsbridge.anps.service import AnpsService
from opsbridge.api.models import (
    AssistantResponse,
    CancelRequest,
    CancelResponse,
    PendingValidationsResponse,
    PromptRequest,
    SessionResponse,
    ValidationResponseRequest,
)
from opsbridge.common import (
    AnsiColors,
    colored_print,
)
from opsbridge.config import (
    Settings,
    settings,
)
from opsbridge.core.schema import (
    AssistantReply,
    ConversationSession,
)
from opsbridge.memory.memory_store import ConversationStore
from opsbridge.tools import (
    LocalToolGateway,
    ToolGateway,
)
from opsbridge.tools.anps_sink import register_anps_sink
from opsbridge.tools.http_gateway import HttpToolGateway

logger = logging.getLogger(__name__)

_service: Optional[AssistantService] = None


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------
def build_gateway(config: Settings) -> ToolGateway:
    """Remote gateway when ``GATEWAY_URL`` is set, otherwise the in-process registry."""
    if config.GATEWAY_URL:
        logger.info("Using HTTP tool gateway at %s", config.GATEWAY_URL)
        return HttpToolGateway(config=config)
    register_anps_sink(name=config.SUBMIT_TOOL_NAME)
    logger.info("Using in-process tool registry")
    return LocalToolGateway()


def build_assistant_service(config: Settings | None = None) -> AssistantService:
    cfg = config or settings
    gateway = build_gateway(cfg)
    validations = ValidationManager(config=cfg)
    loop = AskLoop(load_planner(config=cfg), gateway, validations, config=cfg)
    feedback = FeedbackGenerator(load_planner(config=cfg, model=cfg.FEEDBACK_MODEL))
    store = ConversationStore(config=cfg)
    store.init()
    return AssistantService(
        loop, validations, store, anps_service=AnpsService(gateway, feedback, config=cfg), config=cfg
    )


def get_assistant_service() -> AssistantService:
    """FastAPI dependency returning the process-wide service, built on first use."""
    global _service  # pylint: disable=global-statement
    if _service is None:
        _service = build_assistant_service()
    return _service


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
    yield
    if _service is not None and _service.anps_service is not None:
        await _service.anps_service.drain()
    if _service is not None and isinstance(_service.loop.gateway, HttpToolGateway):
        await _service.loop.gateway.aclose()


app = FastAPI(
    title="opsbridge API",
    version="0.1.0",
    description="opsbridge operations assistant API",
    lifespan=lifespan,
)


# ---------------------------------------------------------------------------
# Helper functions
# ---------------------------------------------------------------------------
def _http_error(exc: AssistantError) -> HTTPException:
    if exc.status_code >= 500:
        logger.error("Assistant failure: %s", exc.message)
    else:
        logger.warning("Assistant request rejected (%d): %s", exc.status_code, exc.message)
    return HTTPException(status_code=exc.status_code, detail=exc.message)


def _to_response(reply: AssistantReply) -> AssistantResponse:
    return AssistantResponse(
        answer=reply.answer,
        session_id=reply.session_id,
        history=reply.messages,
        data=reply.data,
        validation_request=reply.validation_request,
        updated_at=reply.updated_at,
    )


def _to_session(session: ConversationSession) -> SessionResponse:
    return SessionResponse(
        session_id=session.id,
        title=session.title,
        history=session.messages,
        updated_at=session.updated_at,
    )


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------
@app.get("/health", summary="Health check")
async def health() -> dict[str, str]:
    """Return a simple liveness payload."""
    return {"status": "ok"}


@app.post("/assistant", response_model=AssistantResponse, summary="Run an assistant turn")
async def assistant_endpoint(
    req: PromptRequest,
    x_actor_id: str = Header("", alias="X-Actor-Id"),
    service: AssistantService = Depends(get_assistant_service),
) -> AssistantResponse:
    """Run a turn; the response carries a validation request when the turn needs approval."""
    try:
        reply = await service.prompt(x_actor_id, req.prompt, req.session_id)
    except AssistantError as exc:
        raise _http_error(exc) from exc
    return _to_response(reply)


@app.get(
    "/assistant/validation",
    response_model=PendingValidationsResponse,
    summary="List pending approvals",
)
async def list_validations(
    x_actor_id: str = Header("", alias="X-Actor-Id"),
    service: AssistantService = Depends(get_assistant_service),
) -> PendingValidationsResponse:
    try:
        return PendingValidationsResponse(validations=service.pending_validations(x_actor_id))
    except AssistantError as exc:
        raise _http_error(exc) from exc


@app.post(
    "/assistant/validation",
    response_model=AssistantResponse,
    summary="Approve or reject a pending operation",
)
async def respond_to_validation(
    req: ValidationResponseRequest,
    x_actor_id: str = Header("", alias="X-Actor-Id"),
    service: AssistantService = Depends(get_assistant_service),
) -> AssistantResponse:
    try:
        reply = await service.respond_to_validation(x_actor_id, req.id, req.approved, req.edited_data)
    except AssistantError as exc:
        raise _http_error(exc) from exc
    return _to_response(reply)


@app.post("/assistant/cancel", response_model=CancelResponse, summary="Cancel in-flight turns")
async def cancel_endpoint(
    req: CancelRequest,
    x_actor_id: str = Header("", alias="X-Actor-Id"),
    service: AssistantService = Depends(get_assistant_service),
) -> CancelResponse:
    try:
        return CancelResponse(cancelled=service.cancel(x_actor_id, req.session_id))
    except AssistantError as exc:
        raise _http_error(exc) from exc


@app.get("/sessions", response_model=List[SessionResponse], summary="List sessions")
async def list_sessions(
    x_actor_id: str = Header("", alias="X-Actor-Id"),
    service: AssistantService = Depends(get_assistant_service),
) -> List[SessionResponse]:
    try:
        return [_to_session(session) for session in service.list_sessions(x_actor_id)]
    except AssistantError as exc:
        raise _http_error(exc) from exc


@app.get("/sessions/{session_id}", response_model=SessionResponse, summary="Get a session")
async def get_session(
    session_id: str,
    x_actor_id: str = Header("", alias="X-Actor-Id"),
    service: AssistantService = Depends(get_assistant_service),
) -> SessionResponse:
    try:
        return _to_session(service.get_session(x_actor_id, session_id))
    except AssistantError as exc:
        raise _http_error(exc) from exc


# ---------------------------------------------------------------------------
# Public helper to launch the API (imported by main.py)
# ---------------------------------------------------------------------------
def run_api(
    host: str = "0.0.0.0", port: int = 8000, reload: bool = False, log_level: str | None = None
) -> None:
    """Start a uvicorn server hosting *app*.

    Parameters
    ----------
    host, port:
        Bind address for the HTTP server.
    reload:
        If *True*, enable auto-reload (useful in dev docker-compose).
    log_level:
        Logging level to use (default from settings if not provided).
    """

    # Lazy import - keeps uvicorn an optional dependency at pkg‑import time
    import uvicorn  # pylint: disable=import-outside-toplevel

    if log_level is None:
        log_level = settings.LOG_LEVEL

    logger.info(
        "Starting opsbridge API at %s:%d (reload=%s, log_level=%s)", host, port, reload, log_level
    )
    logger.debug("API settings: %s", settings.model_dump(exclude={"OPENAI_API_KEY", "ANTHROPIC_API_KEY"}))

    colored_print(f"🛠️ opsbridge API is running at http://localhost:{port}.", AnsiColors.GREEN)
    colored_print(f"Visit http://localhost:{port}/docs for API documentation.", AnsiColors.BLUE)
    uvicorn.run(
        "opsbridge.api.app:app",
        host=host,
        port=port,
        reload=reload,
        log_level=log_level,
    )


# ---------------------------------------------------------------------------
# `python -m opsbridge.api.app` helper
# ---------------------------------------------------------------------------
if __name__ == "__main__":
    run_api(reload=True)

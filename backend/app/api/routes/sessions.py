"""Session creation and validation routes."""
from __future__ import annotations

import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from app.api.schemas.session import (
    CreateSessionRequest,
    SessionErrorResponse,
    SessionResponse,
    ValidateSessionRequest,
)
from app.observability.metrics import log_metric
from app.observability.tracing import annotate, trace
from app.services.coverage_validator import ValidatedSession
from app.services.retry_orchestrator import AttemptEvent, SessionRetryOrchestrator
from app.services.session_errors import SessionError, StageResult
from app.services.session_generator import OpenAISessionGenerator, SessionGenerator
from app.services.session_pipeline import check_duration_ceiling, run_session_pipeline

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/tasks", tags=["sessions"])

ERROR_RESPONSES: Dict[int | str, Dict[str, Any]] = {
    400: {"model": SessionErrorResponse},
    500: {"model": SessionErrorResponse},
    529: {"model": SessionErrorResponse},
}


def get_session_generator() -> SessionGenerator:
    return OpenAISessionGenerator()


def _log_progress(event: AttemptEvent) -> None:
    logger.info(
        "Session attempt %s/%s %s%s",
        event.attempt,
        event.max_attempts,
        event.status,
        f" ({event.error_code})" if event.error_code else "",
    )


def get_session_orchestrator(
    generator: SessionGenerator = Depends(get_session_generator),
) -> SessionRetryOrchestrator:
    return SessionRetryOrchestrator(generator, on_progress=_log_progress)


def _error_response(error: SessionError) -> JSONResponse:
    return JSONResponse(status_code=error.status_code, content=error.to_dict())


def _session_response(result: StageResult[ValidatedSession]) -> SessionResponse:
    validated = result.value
    return SessionResponse(
        summary=validated.session.summary,
        story_blocks=validated.session.story_blocks,
        suggestions=validated.session.suggestions,
        stories=validated.stories,
    )


@router.post("/create-session", response_model=SessionResponse, responses=ERROR_RESPONSES)
def create_session(
    payload: CreateSessionRequest,
    http_request: Request,
    orchestrator: SessionRetryOrchestrator = Depends(get_session_orchestrator),
):
    """Generate a schedule for the given stories, retrying until it validates."""
    request_id = getattr(http_request.state, "request_id", None)
    metadata = {"route": "/tasks/create-session", "stories": len(payload.stories)}

    with trace("session.create", metadata=metadata, request_id=request_id) as span:
        result = orchestrator.run(payload.stories, payload.start_time, payload.story_mapping)
        annotate(span, error_code=result.error.code if result.error else None)

    if not result.ok:
        log_metric("session.create.failed", 1, {"code": result.error.code})
        return _error_response(result.error)
    log_metric("session.create.succeeded", 1, {"blocks": len(result.value.session.story_blocks)})
    return _session_response(result)


@router.post("/validate-session", response_model=SessionResponse, responses=ERROR_RESPONSES)
def validate_session(payload: ValidateSessionRequest, http_request: Request):
    """Run a single validation pass over a generator response supplied by the caller."""
    request_id = getattr(http_request.state, "request_id", None)
    metadata = {"route": "/tasks/validate-session", "stories": len(payload.stories)}

    with trace("session.validate_raw", metadata=metadata, request_id=request_id):
        ceiling = check_duration_ceiling(payload.stories)
        if not ceiling.ok:
            return _error_response(ceiling.error)
        result = run_session_pipeline(
            payload.raw_response,
            payload.stories,
            payload.start_time,
            payload.story_mapping,
        )

    if not result.ok:
        return _error_response(result.error)
    return _session_response(result)

"""FastAPI application factory and HTTP schemas for the bulk dispatch service.

This module provides the REST interface of the bulk dispatch engine:

- Pydantic models defining request/response schemas
- A factory function creating and configuring the FastAPI application
- Authentication via API token in the X-API-Token header
- Endpoints for bulk submission, job status, per-session listing and monitoring

The session precondition (the target session exists and is connected) is
checked here, before the engine is invoked.

Example:
    Creating and running the API application::

        from bulk_dispatch.engine import BulkDispatchEngine
        from bulk_dispatch.sessions import SessionRegistry
        from bulk_dispatch.api import create_app

        engine = BulkDispatchEngine()
        app = create_app(engine, SessionRegistry(), api_token="secret-token")

        uvicorn.run(app, host="0.0.0.0", port=8000)
"""

from typing import AsyncContextManager, Callable, List, Optional, Union
import logging

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response
from fastapi.security import APIKeyHeader
from pydantic import BaseModel, ConfigDict, Field, StrictInt

from .engine import BulkDispatchEngine
from .errors import (
    AdmissionLimitError,
    BulkDispatchError,
    BulkValidationError,
    SessionNotConnectedError,
    SessionNotFoundError,
)
from .models import JobRecord
from .sessions import SessionRegistry, is_connected

logger = logging.getLogger(__name__)

API_TOKEN_HEADER_NAME = "X-API-Token"
api_key_scheme = APIKeyHeader(name=API_TOKEN_HEADER_NAME, auto_error=False)

ERROR_STATUS = {
    BulkValidationError: status.HTTP_400_BAD_REQUEST,
    SessionNotConnectedError: status.HTTP_400_BAD_REQUEST,
    SessionNotFoundError: status.HTTP_404_NOT_FOUND,
    AdmissionLimitError: status.HTTP_429_TOO_MANY_REQUESTS,
}


async def require_token(request: Request, api_token: str | None = Depends(api_key_scheme)) -> None:
    """Validate the API token carried in the ``X-API-Token`` header.

    If a token has been configured through :func:`create_app` and a request
    provides either a missing or different value, a ``401`` error is raised.
    When no token is configured the dependency is effectively bypassed.
    """
    expected = getattr(request.app.state, "api_token", None)
    if expected is None:
        return
    if not api_token or api_token != expected:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Invalid or missing API token")


auth_dependency = Depends(require_token)


class CommandStatus(BaseModel):
    """Base schema shared by most responses produced by the service."""
    ok: bool
    error: Optional[str] = None


class BulkSendPayload(BaseModel):
    """Payload accepted by ``/chats/send-bulk``.

    Presence and bounds of ``recipients`` and ``message`` are checked by the
    engine so that every rejection carries the same 400 response. Integer
    recipients are accepted and converted to text by the engine.
    """
    model_config = ConfigDict(populate_by_name=True)
    session_id: Optional[str] = Field(default=None, alias="sessionId")
    recipients: Optional[List[Union[str, StrictInt]]] = None
    message: Optional[str] = None
    delay_between_messages: Optional[int] = Field(default=None, alias="delayBetweenMessages")
    typing_time: Optional[int] = Field(default=None, alias="typingTime")


class SessionPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)
    session_id: Optional[str] = Field(default=None, alias="sessionId")


class BulkSendResponse(CommandStatus):
    """Receipt returned as soon as a bulk job is accepted."""
    message: str = "Bulk message job started. Check status with jobId."
    job_id: str
    total: int
    status_url: str


class JobResponse(CommandStatus):
    job: JobRecord


class JobsResponse(CommandStatus):
    jobs: List[JobRecord]


class SessionInfo(BaseModel):
    session_id: str
    connection_status: str
    is_connected: bool


class SessionsResponse(CommandStatus):
    sessions: List[SessionInfo]


class StatusResponse(CommandStatus):
    stored_jobs: int
    active_jobs: int
    processing_jobs: int
    capacity: int


def _http_error(exc: BulkDispatchError) -> HTTPException:
    code = ERROR_STATUS.get(type(exc), status.HTTP_400_BAD_REQUEST)
    return HTTPException(status_code=code, detail=exc.message)


def create_app(
    engine: BulkDispatchEngine,
    sessions: SessionRegistry,
    api_token: str | None = None,
    lifespan: Callable[[FastAPI], AsyncContextManager] | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Parameters
    ----------
    engine:
        The :class:`~bulk_dispatch.engine.BulkDispatchEngine` owning the job
        store and the dispatch tasks.
    sessions:
        Registry resolving ``sessionId`` to a connected session.
    api_token:
        Optional secret used to protect every endpoint except ``/health``.
    lifespan:
        Optional lifespan context manager for startup/shutdown events.

    Returns
    -------
    FastAPI
        A configured application ready to be served by Uvicorn or any ASGI
        server.
    """
    api = FastAPI(title="Bulk Dispatch Service", lifespan=lifespan)
    api.state.api_token = api_token
    router = APIRouter(prefix="/chats", tags=["bulk"], dependencies=[auth_dependency])

    def _resolve_session_id(session_id: Optional[str]) -> str:
        if not session_id:
            raise HTTPException(status.HTTP_400_BAD_REQUEST, "Missing required field: sessionId")
        if sessions.get(session_id) is None:
            raise HTTPException(status.HTTP_404_NOT_FOUND, "Session not found")
        return session_id

    @api.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        """Log validation errors with full details."""
        body = await request.body()
        logger.error(f"Validation error on {request.method} {request.url.path}")
        logger.error(f"Request body: {body.decode('utf-8', errors='replace')}")
        logger.error(f"Validation errors: {exc.errors()}")
        return JSONResponse(
            status_code=422,
            content={"detail": exc.errors()}
        )

    @api.get("/health")
    async def health():
        """Health check endpoint for container monitoring (no authentication required)."""
        return {"status": "ok"}

    @api.get("/status", response_model=StatusResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def service_status():
        """Return job store and dispatch task counters."""
        return StatusResponse(ok=True, **engine.stats())

    @api.get("/metrics", dependencies=[auth_dependency])
    async def metrics():
        """Expose Prometheus metrics collected by the engine."""
        engine.metrics.set_stored(len(engine.store))
        return Response(content=engine.metrics.generate_latest(), media_type="text/plain; version=0.0.4")

    @api.get("/sessions", response_model=SessionsResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def list_sessions():
        """List the registered sessions with their connection state."""
        return SessionsResponse(
            ok=True,
            sessions=[
                SessionInfo(
                    session_id=s.session_id,
                    connection_status=s.connection_status,
                    is_connected=is_connected(s),
                )
                for s in sessions.list()
            ],
        )

    @api.get("/sessions/{session_id}/bulk-jobs", response_model=JobsResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def session_jobs(session_id: str, limit: Optional[int] = Query(default=None, ge=1)):
        """List a session's bulk jobs, newest first."""
        _resolve_session_id(session_id)
        return JobsResponse(ok=True, jobs=engine.list_jobs(session_id, limit))

    @router.post("/send-bulk", response_model=BulkSendResponse, response_model_exclude_none=True)
    async def send_bulk(payload: BulkSendPayload):
        """Accept a bulk send and return its job handle immediately."""
        try:
            session = sessions.require_connected(_resolve_session_id(payload.session_id))
            receipt = engine.submit(
                session,
                payload.recipients,
                payload.message,
                pacing_delay_ms=payload.delay_between_messages,
                typing_delay_ms=payload.typing_time,
            )
        except BulkDispatchError as exc:
            raise _http_error(exc) from exc
        return BulkSendResponse(ok=True, **receipt.model_dump())

    @router.get("/bulk-status/{job_id}", response_model=JobResponse, response_model_exclude_none=True)
    async def bulk_status(job_id: str):
        """Return the current record of a bulk job."""
        job = engine.get_job(job_id)
        if job is None:
            raise HTTPException(status.HTTP_404_NOT_FOUND, "Job not found")
        return JobResponse(ok=True, job=job)

    @router.post("/bulk-jobs", response_model=JobsResponse, response_model_exclude_none=True)
    async def bulk_jobs(payload: SessionPayload):
        """List the bulk jobs of the session named in the body, newest first."""
        session_id = _resolve_session_id(payload.session_id)
        return JobsResponse(ok=True, jobs=engine.list_jobs(session_id))

    api.include_router(router)
    return api

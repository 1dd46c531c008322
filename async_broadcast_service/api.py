"""
FastAPI application factory and HTTP schemas for the async broadcast service.

The module exposes a `create_app` function that builds the REST API used to
author broadcasts and operate the dispatcher, and defines the pydantic
payloads that document each operation. Authentication is enforced through a
configurable API token carried in the ``X-API-Token`` header.
"""

from typing import Optional, Dict, Any, List, Callable, AsyncContextManager
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, APIRouter, Depends, Query, status
from fastapi.responses import Response
from fastapi.security import APIKeyHeader
from pydantic import BaseModel, Field

from .core import BroadcastCore
from .models import AudienceTarget, DeliveryFilter, RunKind

app = FastAPI(title="Async Broadcast Service")
service: BroadcastCore | None = None
API_TOKEN_HEADER_NAME = "X-API-Token"
api_key_scheme = APIKeyHeader(name=API_TOKEN_HEADER_NAME, auto_error=False)
app.state.api_token = None

async def require_token(api_token: str | None = Depends(api_key_scheme)) -> None:
    """Validate the API token carried in the ``X-API-Token`` header.

    If a token has been configured through :func:`create_app` and a request
    provides either a missing or different value, a ``401`` error is raised.
    When no token is configured the dependency is effectively bypassed.
    """
    expected = getattr(app.state, "api_token", None)
    if expected is None:
        return
    if not api_token or api_token != expected:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Invalid or missing API token")

auth_dependency = Depends(require_token)


def service_lifespan(svc: BroadcastCore) -> Callable[[FastAPI], AsyncContextManager]:
    """Build a lifespan that starts the dispatcher with the app and stops it on shutdown."""

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        await svc.start()
        try:
            yield
        finally:
            await svc.stop()

    return lifespan


def _get_service() -> BroadcastCore:
    if not service:
        raise HTTPException(500, "Service not initialized")
    return service


def _ensure_ok(result: Dict[str, Any]) -> Dict[str, Any]:
    """Translate a failed command result into the matching HTTP error."""
    if isinstance(result, dict) and result.get("ok") is True:
        return result
    code = result.get("code") if isinstance(result, dict) else None
    error = result.get("error") if isinstance(result, dict) else "invalid response"
    status_code = status.HTTP_404_NOT_FOUND if code == "run_not_found" else status.HTTP_400_BAD_REQUEST
    raise HTTPException(status_code=status_code, detail={"error": error, "code": code})


class CommandStatus(BaseModel):
    """Base schema shared by most responses produced by the service."""
    ok: bool
    error: Optional[str] = None


class BasicOkResponse(CommandStatus):
    pass


class RunPayload(BaseModel):
    """Broadcast authored through ``POST /runs``."""
    message: str = Field(min_length=1, max_length=4000)
    kind: RunKind = RunKind.ANNOUNCEMENT
    target: AudienceTarget = AudienceTarget.ALL
    user_ids: Optional[List[int]] = Field(default=None, max_length=5000)
    image_paths: Optional[List[str]] = Field(default=None, max_length=3)
    requested_by: Optional[int] = None
    limit: Optional[int] = Field(default=None, ge=1, le=50000)


class SubscriberPayload(BaseModel):
    """Channel subscriber registered through ``POST /subscribers``."""
    address: str = Field(min_length=1)
    username: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None


class RepostPayload(BaseModel):
    """Optional body of ``POST /runs/{id}/repost``."""
    requested_by: Optional[int] = None


class UserPayload(BaseModel):
    """User added to the audience through ``POST /audience/users``."""
    address: str = Field(min_length=1)
    first_name: Optional[str] = None
    username: Optional[str] = None


class PageMeta(BaseModel):
    page: int
    limit: int
    total: int
    total_pages: int
    has_next: bool
    has_prev: bool


class RunRecord(BaseModel):
    """Stored broadcast run with its cached counters."""
    id: int
    status: str
    kind: str
    target: str
    target_user_ids: Optional[List[int]] = None
    message: str
    image_paths: Optional[List[str]] = None
    requested_by: Optional[int] = None
    total_recipients: int
    pending_count: int
    sent_count: int
    failed_count: int
    unknown_count: int
    lock_expires_at: Optional[int] = None
    last_heartbeat_at: Optional[int] = None
    created_at: int
    started_at: Optional[int] = None
    finished_at: Optional[int] = None
    delivery_summary: Optional[Dict[str, int]] = None


class RunResponse(CommandStatus):
    run: RunRecord


class RunsResponse(CommandStatus):
    runs: List[RunRecord]
    meta: PageMeta


class UserRecord(BaseModel):
    id: int
    address: str
    first_name: Optional[str] = None
    username: Optional[str] = None
    created_at: Optional[str] = None


class UserResponse(CommandStatus):
    user: UserRecord


class UsersResponse(CommandStatus):
    users: List[UserRecord]
    meta: PageMeta


class DeliveryRecord(BaseModel):
    """Delivery row joined with whatever is known about the recipient."""
    id: int
    status: str
    attempt_count: int
    address: str
    transport_message_id: Optional[str] = None
    sent_at: Optional[int] = None
    last_attempt_at: Optional[int] = None
    next_attempt_at: Optional[int] = None
    last_error: Optional[str] = None
    user_id: Optional[int] = None
    user_first_name: Optional[str] = None
    user_username: Optional[str] = None
    subscriber_first_name: Optional[str] = None
    subscriber_username: Optional[str] = None


class DeliveriesResponse(CommandStatus):
    deliveries: List[DeliveryRecord]
    meta: PageMeta


class RequeueResponse(CommandStatus):
    run_id: int
    requeued: int


class DeleteRunResponse(CommandStatus):
    run_id: int
    deleted: bool


class PurgeResponse(CommandStatus):
    removed: int


def create_app(
    svc: BroadcastCore,
    api_token: str | None = None,
    lifespan: Callable[[FastAPI], AsyncContextManager] | None = None
) -> FastAPI:
    """Create and configure the FastAPI application.

    Parameters
    ----------
    svc:
        Instance of :class:`async_broadcast_service.core.BroadcastCore` that
        implements the business logic for each command.
    api_token:
        Optional secret used to protect every endpoint. When provided, the
        ``X-API-Token`` header must match this value on every request.
    lifespan:
        Optional lifespan context manager for startup/shutdown events.

    Returns
    -------
    FastAPI
        A configured application ready to be served by Uvicorn or any ASGI
        server.
    """
    global service
    service = svc

    if lifespan is not None:
        api = FastAPI(title="Async Broadcast Service", lifespan=lifespan)
    else:
        api = app

    api.state.api_token = api_token
    app.state.api_token = api_token
    commands = APIRouter(prefix="/commands", tags=["commands"], dependencies=[auth_dependency])
    runs = APIRouter(prefix="/runs", tags=["runs"], dependencies=[auth_dependency])
    audience = APIRouter(prefix="/audience", tags=["audience"], dependencies=[auth_dependency])

    @api.get("/status", response_model=BasicOkResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def status_endpoint():
        """Return a simple health status payload."""
        return BasicOkResponse(ok=True)

    @commands.post("/run-now", response_model=BasicOkResponse, response_model_exclude_none=True)
    async def run_now():
        """Wake the dispatcher so the next tick runs immediately."""
        result = await _get_service().handle_command("run now", {})
        return BasicOkResponse.model_validate(result)

    @commands.post("/purge", response_model=PurgeResponse, response_model_exclude_none=True)
    async def purge():
        """Delete finished runs older than the retention window."""
        result = _ensure_ok(await _get_service().handle_command("purgeRuns", {}))
        return PurgeResponse.model_validate(result)

    @runs.post("", response_model=RunResponse, response_model_exclude_none=True)
    async def enqueue_run(payload: RunPayload):
        """Resolve the audience and queue a new broadcast run."""
        data = payload.model_dump(mode="json", exclude_none=True)
        result = _ensure_ok(await _get_service().handle_command("enqueueRun", data))
        return RunResponse.model_validate(result)

    @runs.get("", response_model=RunsResponse, response_model_exclude_none=True)
    async def list_runs(page: int = Query(1, ge=1), limit: int = Query(10, ge=1, le=100)):
        """List runs, newest first."""
        result = _ensure_ok(await _get_service().handle_command("listRuns", {"page": page, "limit": limit}))
        return RunsResponse.model_validate(result)

    @runs.get("/{run_id}", response_model=RunResponse, response_model_exclude_none=True)
    async def get_run(run_id: int):
        result = _ensure_ok(await _get_service().handle_command("getRun", {"id": run_id}))
        return RunResponse.model_validate(result)

    @runs.get("/{run_id}/deliveries", response_model=DeliveriesResponse, response_model_exclude_none=True)
    async def list_deliveries(
        run_id: int,
        status_filter: DeliveryFilter = Query(DeliveryFilter.ALL, alias="status"),
        page: int = Query(1, ge=1),
        limit: int = Query(10, ge=1, le=100),
    ):
        """List the deliveries of a run, newest first."""
        result = _ensure_ok(
            await _get_service().handle_command(
                "listDeliveries",
                {"id": run_id, "status": status_filter.value, "page": page, "limit": limit},
            )
        )
        return DeliveriesResponse.model_validate(result)

    @runs.post("/{run_id}/cancel", response_model=RunResponse, response_model_exclude_none=True)
    async def cancel_run(run_id: int):
        """Stop a run; in-flight deliveries become UNKNOWN."""
        result = _ensure_ok(await _get_service().handle_command("cancelRun", {"id": run_id}))
        return RunResponse.model_validate(result)

    @runs.post("/{run_id}/repost", response_model=RunResponse, response_model_exclude_none=True)
    async def repost_run(run_id: int, payload: Optional[RepostPayload] = None):
        """Queue a new run with the same content and audience."""
        data: Dict[str, Any] = {"id": run_id}
        if payload is not None and payload.requested_by is not None:
            data["requested_by"] = payload.requested_by
        result = _ensure_ok(await _get_service().handle_command("repostRun", data))
        return RunResponse.model_validate(result)

    @runs.post("/{run_id}/requeue-unknown", response_model=RequeueResponse, response_model_exclude_none=True)
    async def requeue_unknown(run_id: int):
        """Retry deliveries whose outcome is unknown."""
        result = _ensure_ok(await _get_service().handle_command("requeueUnknown", {"id": run_id}))
        return RequeueResponse.model_validate(result)

    @runs.delete("/{run_id}", response_model=DeleteRunResponse, response_model_exclude_none=True)
    async def delete_run(run_id: int):
        """Remove a finished run and its deliveries."""
        result = _ensure_ok(await _get_service().handle_command("deleteRun", {"id": run_id}))
        return DeleteRunResponse.model_validate(result)

    @api.post("/subscribers", response_model=BasicOkResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def register_subscriber(payload: SubscriberPayload):
        """Register or refresh a channel subscriber."""
        result = _ensure_ok(await _get_service().handle_command("registerSubscriber", payload.model_dump()))
        return BasicOkResponse.model_validate(result)

    @audience.get("/users", response_model=UsersResponse, response_model_exclude_none=True)
    async def list_users(
        search: Optional[str] = Query(None, max_length=200),
        page: int = Query(1, ge=1),
        limit: int = Query(10, ge=1, le=100),
    ):
        """List users reachable by ``users`` broadcasts, newest first."""
        result = _ensure_ok(
            await _get_service().handle_command("listUsers", {"search": search, "page": page, "limit": limit})
        )
        return UsersResponse.model_validate(result)

    @audience.post("/users", response_model=UserResponse, response_model_exclude_none=True)
    async def add_user(payload: UserPayload):
        result = _ensure_ok(await _get_service().handle_command("addUser", payload.model_dump()))
        return UserResponse.model_validate(result)

    @api.get("/metrics", dependencies=[auth_dependency])
    async def metrics():
        """Expose Prometheus metrics collected by the dispatcher."""
        return Response(content=_get_service().metrics.generate_latest(), media_type="text/plain; version=0.0.4")

    api.include_router(commands)
    api.include_router(runs)
    api.include_router(audience)
    return api

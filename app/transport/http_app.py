# app/transport/http_app.py
"""
HTTP surface of the broadcast service.

Security layers:
1. Public: /health (minimal status only)
2. Protected: every /tasks, /dashboard and /metrics route (Bearer API token
   plus the X-User-* principal headers set by the gateway)
3. No stack traces or internal messages in production responses

Routes stay thin: parse request -> call TaskService -> map DispatchError.
List and dashboard reads go through the freshness caches kept on
``app.state``; every write invalidates both.
"""
from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError as PydanticValidationError
from starlette.middleware.base import BaseHTTPMiddleware

from app.config import settings
from app.core.cache import BatchFreshnessCache, FreshnessCache
from app.core.dispatch.domain import Principal
from app.core.dispatch.engine import DispatchEngine
from app.core.dispatch.errors import DispatchError, ValidationError
from app.core.dispatch.lifecycle import TaskLifecycleStore
from app.core.dispatch.ports import DeliveryTransport, EndpointDirectory, TaskRepository
from app.core.dispatch.service import TaskService
from app.infra.db_async import check_health, close_pool, init_pool
from app.infra.http_client import close_all_sessions
from app.infra.logging_config import get_logger, setup_logging
from app.infra.memory_repos import InMemoryEndpointDirectory, InMemoryTaskRepository
from app.infra.metrics import get_metrics_collector
from app.infra.pg_endpoint_repo_async import AsyncPostgresEndpointDirectory
from app.infra.pg_task_repo_async import AsyncPostgresTaskRepository
from app.transport.middleware import (
    ErrorHandlingMiddleware,
    RequestIDMiddleware,
    RequestLoggingMiddleware,
)
from app.transport.relay_transport import RelayTransport
from app.transport.schemas import SubmitOut, TaskCreateIn, TaskOut, TaskUpdateIn
from app.transport.security import (
    SecurityHeaders,
    check_configured_tokens,
    get_principal,
    require_api_token,
    sanitize_error_message,
)
from app.transport.webhook_transport import WebhookTransport

# Initialize logging first
setup_logging(
    level=settings.log_level,
    use_json=settings.is_production
)

logger = get_logger(__name__)

DASHBOARD_TASKS = "tasks"
DASHBOARD_WEBHOOKS = "webhooks"


# ============================================================================
# WIRING
# ============================================================================

def build_transport() -> DeliveryTransport:
    if settings.delivery_mode == "relay":
        logger.info(f"Delivery mode: relay via {settings.relay_url}")
        return RelayTransport(settings.relay_url or "")
    logger.info("Delivery mode: direct webhook")
    return WebhookTransport()


def build_stores() -> tuple[TaskRepository, EndpointDirectory]:
    if settings.storage_backend == "postgres":
        return AsyncPostgresTaskRepository(), AsyncPostgresEndpointDirectory()

    if settings.memory_seed_path:
        directory = InMemoryEndpointDirectory.from_json_file(settings.memory_seed_path)
    else:
        directory = InMemoryEndpointDirectory()
    return InMemoryTaskRepository(), directory


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add security headers to all responses"""
    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        return SecurityHeaders.add_security_headers(response)


# ============================================================================
# DEPENDENCIES
# ============================================================================

def get_service(request: Request) -> TaskService:
    return request.app.state.task_service


def invalidate_read_caches(request: Request) -> None:
    request.app.state.task_list_cache.invalidate_all()
    request.app.state.dashboard_cache.invalidate_all()


def _parse(model, payload: dict):
    try:
        return model(**payload)
    except PydanticValidationError as e:
        fields = {".".join(str(p) for p in err["loc"]) or "body": err["msg"] for err in e.errors()}
        raise ValidationError(fields)


def _local_image(body):
    if body.image is None:
        return None
    try:
        return body.image.to_local_image()
    except ValueError as e:
        raise ValidationError({"image": str(e)})


# ============================================================================
# ROUTES
# ============================================================================

router = APIRouter(dependencies=[Depends(require_api_token)])


@router.post("/tasks", status_code=201)
async def create_task(
    payload: dict,
    request: Request,
    principal: Principal = Depends(get_principal),
    service: TaskService = Depends(get_service),
):
    """Create a task. Without ``scheduled_time`` it is dispatched right away."""
    body = _parse(TaskCreateIn, payload)
    result = await service.submit(
        principal,
        title=body.title,
        task_type=body.type,
        fields=body.content,
        selectors=body.group_selectors,
        scheduled_time=body.scheduled_time,
        image=_local_image(body),
    )
    invalidate_read_caches(request)
    return SubmitOut.from_result(result).model_dump(mode="json")


@router.get("/tasks")
async def list_tasks(
    request: Request,
    status: str | None = None,
    type: str | None = None,
    owner_id: str | None = None,
    limit: int | None = None,
    refresh: bool = False,
    principal: Principal = Depends(get_principal),
    service: TaskService = Depends(get_service),
):
    """
    Task list, served from the ``task_list`` cache.

    If a refetch fails while an older list is cached, that list is
    returned with ``stale: true``.
    """
    cache: FreshnessCache = request.app.state.task_list_cache
    key = f"tasks:{principal.id}:{principal.role}:{status}:{type}:{owner_id}:{limit}"

    async def fetch() -> list[dict[str, Any]]:
        tasks = await service.list_tasks(
            principal, status=status, task_type=type, owner_id=owner_id, limit=limit,
        )
        return [TaskOut.from_task(t).model_dump(mode="json") for t in tasks]

    resource = cache.resource(key, fetch)
    items = await resource.load(force_refresh=refresh)
    stale = False
    if resource.error is not None:
        if isinstance(resource.error.cause, DispatchError):
            raise resource.error.cause
        if items is None:
            raise HTTPException(status_code=503, detail="Task list unavailable")
        stale = True

    return {"tasks": items, "count": len(items), "stale": stale}


@router.get("/tasks/{task_id}")
async def get_task(
    task_id: str,
    principal: Principal = Depends(get_principal),
    service: TaskService = Depends(get_service),
):
    task = await service.get_task(principal, task_id)
    return TaskOut.from_task(task).model_dump(mode="json")


@router.put("/tasks/{task_id}")
async def update_task(
    task_id: str,
    payload: dict,
    request: Request,
    principal: Principal = Depends(get_principal),
    service: TaskService = Depends(get_service),
):
    """Edit a pending task."""
    body = _parse(TaskUpdateIn, payload)
    result = await service.edit_task(
        principal,
        task_id,
        title=body.title,
        task_type=body.type,
        fields=body.content,
        selectors=body.group_selectors,
        scheduled_time=body.scheduled_time,
        image=_local_image(body),
    )
    invalidate_read_caches(request)
    return SubmitOut.from_result(result).model_dump(mode="json")


@router.delete("/tasks/{task_id}")
async def delete_task(
    task_id: str,
    request: Request,
    principal: Principal = Depends(get_principal),
    service: TaskService = Depends(get_service),
):
    await service.delete_task(principal, task_id)
    invalidate_read_caches(request)
    return {"status": "deleted", "id": task_id}


@router.post("/tasks/{task_id}/send")
async def send_task_now(
    task_id: str,
    request: Request,
    principal: Principal = Depends(get_principal),
    service: TaskService = Depends(get_service),
):
    """Dispatch a saved task immediately, whatever its schedule."""
    result = await service.send_now(principal, task_id)
    invalidate_read_caches(request)
    return SubmitOut.from_result(result).model_dump(mode="json")


@router.get("/dashboard")
async def dashboard(
    request: Request,
    refresh: bool = False,
    principal: Principal = Depends(get_principal),
    service: TaskService = Depends(get_service),
):
    """
    Task and webhook counts in one batch read.

    A failing half comes back as ``null`` and is named in ``errors``;
    the other half is still served.
    """
    cache: BatchFreshnessCache = request.app.state.dashboard_cache
    owner = None if principal.is_admin else principal.id
    scope = owner or "all"

    resource = cache.resource([
        (f"{DASHBOARD_TASKS}:{scope}", lambda: service.store.counts(owner)),
        (f"{DASHBOARD_WEBHOOKS}:{scope}", lambda: service.directory.count_by_status(owner)),
    ])
    data = await resource.load(force_refresh=refresh)
    failures = cache.failures(resource.keys)

    return {
        "tasks": data.get(f"{DASHBOARD_TASKS}:{scope}"),
        "webhooks": data.get(f"{DASHBOARD_WEBHOOKS}:{scope}"),
        "errors": sorted(k.split(":", 1)[0] for k in failures),
    }


@router.get("/metrics")
def metrics():
    """In-process counters and histograms."""
    return get_metrics_collector().snapshot()


# ============================================================================
# CREATE APP
# ============================================================================

def create_app(
    *,
    task_repo: TaskRepository | None = None,
    directory: EndpointDirectory | None = None,
    transport: DeliveryTransport | None = None,
) -> FastAPI:
    """
    Build the FastAPI app. Anything not injected is built from settings;
    the Postgres pool is only opened when the Postgres stores are in use.
    """
    uses_pool = task_repo is None and settings.storage_backend == "postgres"
    if task_repo is None or directory is None:
        default_repo, default_directory = build_stores()
        task_repo = task_repo or default_repo
        directory = directory or default_directory

    @asynccontextmanager
    async def lifespan(fastapi_app: FastAPI):
        """Application lifecycle: startup and shutdown"""
        logger.info(
            f"Starting application: env={settings.app_env}, "
            f"storage={settings.storage_backend}, delivery={settings.delivery_mode}"
        )
        check_configured_tokens()

        if uses_pool:
            await init_pool()
            logger.info("Database pool initialized")

        logger.info("Application startup complete")

        yield

        logger.info("Shutting down application")
        await close_all_sessions()
        if uses_pool:
            await close_pool()
        logger.info("Application shutdown complete")

    fastapi_app = FastAPI(
        title="WeCast",
        description="Broadcast text, images and cards to group-bot webhooks",
        version="1.0.0",
        lifespan=lifespan,
        docs_url=None if settings.is_production else "/docs",
        redoc_url=None if settings.is_production else "/redoc",
        openapi_url=None if settings.is_production else "/openapi.json",
    )

    fastapi_app.state.task_service = TaskService(
        TaskLifecycleStore(task_repo),
        directory,
        DispatchEngine(transport or build_transport()),
        max_image_bytes=settings.image_max_file_size_bytes,
        list_limit=settings.task_list_limit,
    )
    fastapi_app.state.task_list_cache = FreshnessCache("task_list", default_ttl=settings.cache_ttl_seconds)
    fastapi_app.state.dashboard_cache = BatchFreshnessCache("dashboard", default_ttl=settings.cache_ttl_seconds)
    fastapi_app.state.storage_backend = "memory" if isinstance(task_repo, InMemoryTaskRepository) else "postgres"

    if settings.is_production:
        fastapi_app.add_middleware(
            CORSMiddleware,
            allow_origins=settings.allowed_origins if settings.allowed_origins != ["*"] else [],
            allow_credentials=False,
            allow_methods=["GET", "POST", "PUT", "DELETE"],
            allow_headers=["Content-Type", "Authorization", "X-User-Id", "X-User-Role", "X-User-Nickname"],
        )
    else:
        # More permissive in dev
        fastapi_app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    fastapi_app.add_middleware(SecurityHeadersMiddleware)
    fastapi_app.add_middleware(ErrorHandlingMiddleware)
    fastapi_app.add_middleware(RequestLoggingMiddleware, enabled=settings.enable_request_logging)
    fastapi_app.add_middleware(RequestIDMiddleware)

    # ------------------------------------------------------------------------
    # Exception handlers
    # ------------------------------------------------------------------------

    @fastapi_app.exception_handler(DispatchError)
    async def dispatch_error_handler(request: Request, exc: DispatchError):
        content: dict[str, Any] = {"error": exc.detail}
        if isinstance(exc, ValidationError) and exc.fields:
            content["fields"] = exc.fields
        if exc.status_code >= 500:
            logger.error(f"Task service error: {exc.detail}")
        return JSONResponse(status_code=exc.status_code, content=content)

    @fastapi_app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        """Handle HTTP exceptions with appropriate logging"""
        if exc.status_code >= 500:
            logger.error(f"Server error: {exc.detail}", extra={"status_code": exc.status_code})

        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.detail},
            headers=exc.headers,
        )

    @fastapi_app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception):
        """Handle unexpected exceptions"""
        logger.error(f"Unhandled exception: {exc.__class__.__name__}", exc_info=True)
        return JSONResponse(
            status_code=500,
            content={"error": sanitize_error_message(exc, settings.is_production)},
        )

    # ------------------------------------------------------------------------
    # Public
    # ------------------------------------------------------------------------

    @fastapi_app.get("/health")
    async def health(request: Request):
        """Basic health check for load balancers. Minimal information."""
        body: dict[str, Any] = {"status": "healthy", "storage": request.app.state.storage_backend}
        if uses_pool:
            db_ok = await check_health()
            body["database"] = "ok" if db_ok else "unavailable"
            if not db_ok:
                body["status"] = "degraded"
        return body

    fastapi_app.include_router(router)
    return fastapi_app


app = create_app()

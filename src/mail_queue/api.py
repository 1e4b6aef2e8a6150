# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""FastAPI application factory and HTTP schemas for the mail queue.

This module provides the REST interface of the queue:

- Pydantic models defining request/response schemas
- A factory function creating the FastAPI application around an EmailQueue
- Authentication via API token in the X-API-Token header
- Health check (no auth) and Prometheus metrics

Example:
    Creating and running the API application::

        from mail_queue import EmailQueue, load_config
        from mail_queue.api import create_app

        queue = EmailQueue(load_config())
        app = create_app(queue, api_token="secret-token")

        uvicorn.run(app, host="0.0.0.0", port=8000)
"""

from __future__ import annotations

import logging
from typing import Any, AsyncContextManager, Callable

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response
from fastapi.security import APIKeyHeader
from pydantic import BaseModel, Field

from .exceptions import MailQueueError, RateLimitExceeded, TaskNotFoundError, TaskValidationError
from .models import EmailTaskSpec, TaskStatus
from .queue import EmailQueue
from .verify_code import CodeType, VerifyCodeService

logger = logging.getLogger(__name__)

API_TOKEN_HEADER_NAME = "X-API-Token"
api_key_scheme = APIKeyHeader(name=API_TOKEN_HEADER_NAME, auto_error=False)

ERROR_STATUS = {
    TaskValidationError: status.HTTP_422_UNPROCESSABLE_ENTITY,
    RateLimitExceeded: status.HTTP_429_TOO_MANY_REQUESTS,
    TaskNotFoundError: status.HTTP_404_NOT_FOUND,
}


async def require_token(request: Request, api_token: str | None = Depends(api_key_scheme)) -> None:
    """Validate the API token carried in the ``X-API-Token`` header.

    When no token is configured through :func:`create_app` the dependency
    is bypassed; otherwise a missing or different value yields ``401``.
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
    error: str | None = None
    code: str | None = None


class QueueIdPayload(BaseModel):
    queue_id: str = Field(min_length=1)


class EnqueueResponse(CommandStatus):
    queue_id: str | None = None


class CancelResponse(CommandStatus):
    cancelled: bool = False


class RetryResponse(CommandStatus):
    retried: bool = False


class RunNowResponse(CommandStatus):
    retried: int = 0
    reclaimed: int | None = None
    pending: int = 0
    scheduled: int = 0


class PurgePayload(BaseModel):
    older_than_days: int = Field(default=30, ge=0)


class PurgeResponse(CommandStatus):
    removed: int = 0


class TaskInfo(BaseModel):
    """Stored task as returned by the task endpoints."""
    queue_id: str
    recipient_email: str
    recipient_name: str | None = None
    subject: str | None = None
    template_code: str | None = None
    origin: str | None = None
    status: TaskStatus
    priority: int
    retry_count: int
    max_retry: int
    schedule_ts: int | None = None
    next_retry_ts: int | None = None
    error_message: str | None = None
    sent_ts: int | None = None
    created_ts: int | None = None
    updated_ts: int | None = None


class AttemptInfo(BaseModel):
    """One delivery attempt from the send log."""
    attempt: int
    status: str
    error_message: str | None = None
    server: str | None = None
    duration_ms: int | None = None
    created_ts: int | None = None


class TaskResponse(CommandStatus):
    task: TaskInfo
    attempts: list[AttemptInfo] = []


class TaskListResponse(CommandStatus):
    tasks: list[TaskInfo]


class StatsResponse(CommandStatus):
    counts: dict[str, int]
    pending: int
    failed: int


class SendCodePayload(BaseModel):
    email: str
    code_type: CodeType = CodeType.NUMERIC


class VerifyCodePayload(BaseModel):
    email: str
    code: str = Field(min_length=1)


class VerifyCodeResponse(CommandStatus):
    valid: bool = False


def create_app(
    queue: EmailQueue,
    api_token: str | None = None,
    lifespan: Callable[[FastAPI], AsyncContextManager] | None = None,
    verify_service: VerifyCodeService | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Parameters
    ----------
    queue:
        The :class:`EmailQueue` serving every command.
    api_token:
        Optional secret protecting every endpoint except ``/health``.
    lifespan:
        Optional lifespan context manager for startup/shutdown events.
    verify_service:
        Verification-code service; built around ``queue`` when omitted.
    """
    api = FastAPI(title="Mail Queue", lifespan=lifespan)
    api.state.api_token = api_token
    api.state.queue = queue
    verify = verify_service or VerifyCodeService(queue)
    router = APIRouter(prefix="/commands", tags=["commands"], dependencies=[auth_dependency])

    @api.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        """Log validation errors with full details."""
        logger.error("Validation error on %s %s: %s", request.method, request.url.path, exc.errors())
        return JSONResponse(status_code=422, content={"detail": jsonable_errors(exc)})

    @api.exception_handler(MailQueueError)
    async def queue_error_handler(request: Request, exc: MailQueueError):
        status_code = next(
            (code for cls, code in ERROR_STATUS.items() if isinstance(exc, cls)),
            status.HTTP_500_INTERNAL_SERVER_ERROR,
        )
        if status_code >= 500:
            logger.error("Queue error on %s %s: %s", request.method, request.url.path, exc)
        return JSONResponse(
            status_code=status_code,
            content={"ok": False, "error": str(exc), "code": exc.code},
        )

    @api.get("/health")
    async def health():
        """Health check endpoint for container monitoring (no authentication required)."""
        return {"status": "ok"}

    @api.get("/metrics", dependencies=[auth_dependency])
    async def metrics():
        """Expose Prometheus metrics."""
        return Response(
            content=queue.metrics.generate_latest(),
            media_type="text/plain; version=0.0.4",
        )

    @router.post("/enqueue", response_model=EnqueueResponse, response_model_exclude_none=True)
    async def enqueue(payload: EmailTaskSpec):
        """Validate and store a new task; returns its queue id."""
        queue_id = await queue.enqueue(payload)
        return EnqueueResponse(ok=True, queue_id=queue_id)

    @router.post("/cancel", response_model=CancelResponse, response_model_exclude_none=True)
    async def cancel(payload: QueueIdPayload):
        """Cancel a PENDING task. ``cancelled`` is false once it is leased or finished."""
        return CancelResponse(ok=True, cancelled=await queue.cancel(payload.queue_id))

    @router.post("/retry", response_model=RetryResponse, response_model_exclude_none=True)
    async def retry(payload: QueueIdPayload):
        """Requeue a FAILED task with retries left."""
        return RetryResponse(ok=True, retried=await queue.retry(payload.queue_id))

    @router.post("/run-now", response_model=RunNowResponse, response_model_exclude_none=True)
    async def run_now():
        """Run one retry sweep and one dispatch cycle immediately."""
        return RunNowResponse(ok=True, **await queue.run_now())

    @router.post("/purge-sent", response_model=PurgeResponse, response_model_exclude_none=True)
    async def purge_sent(payload: PurgePayload):
        return PurgeResponse(ok=True, removed=await queue.purge_sent(payload.older_than_days))

    @router.post("/send-verify-code", response_model=EnqueueResponse, response_model_exclude_none=True)
    async def send_verify_code(payload: SendCodePayload, request: Request):
        """Send a verification code; the caller's IP feeds the per-IP limit."""
        await verify.install_template()
        client_ip = request.client.host if request.client else None
        queue_id = await verify.send_code(payload.email, client_ip=client_ip, code_type=payload.code_type)
        return EnqueueResponse(ok=True, queue_id=queue_id)

    @router.post("/check-verify-code", response_model=VerifyCodeResponse, response_model_exclude_none=True)
    async def check_verify_code(payload: VerifyCodePayload):
        return VerifyCodeResponse(ok=True, valid=await verify.verify(payload.email, payload.code))

    @api.get("/tasks", response_model=TaskListResponse, response_model_exclude_none=True,
             dependencies=[auth_dependency])
    async def list_tasks(
        status_filter: TaskStatus | None = Query(default=None, alias="status"),
        limit: int = Query(default=100, ge=1, le=1000),
    ):
        tasks = await queue.list_tasks(status_filter, limit)
        return TaskListResponse(ok=True, tasks=[TaskInfo(**t.to_dict()) for t in tasks])

    @api.get("/tasks/{queue_id}", response_model=TaskResponse, response_model_exclude_none=True,
             dependencies=[auth_dependency])
    async def get_task(queue_id: str):
        task = await queue.get_task(queue_id)
        attempts = await queue.get_attempts(queue_id)
        return TaskResponse(
            ok=True,
            task=TaskInfo(**task.to_dict()),
            attempts=[AttemptInfo(**a) for a in attempts],
        )

    @api.get("/stats", response_model=StatsResponse, dependencies=[auth_dependency])
    async def stats():
        counts = await queue.stats()
        return StatsResponse(
            ok=True,
            counts=counts,
            pending=counts.get(TaskStatus.PENDING.value, 0),
            failed=counts.get(TaskStatus.FAILED.value, 0),
        )

    api.include_router(router)
    return api


def jsonable_errors(exc: RequestValidationError) -> list[dict[str, Any]]:
    """Validation errors without the raw input and exception objects."""
    return [
        {"loc": list(err.get("loc", ())), "msg": err.get("msg"), "type": err.get("type")}
        for err in exc.errors()
    ]


__all__ = ["API_TOKEN_HEADER_NAME", "create_app"]

"""FastAPI application exposing the workflow engine, approvals and n8n webhook."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, Literal, Optional

from fastapi import APIRouter, Body, FastAPI, Header, Request
from fastapi.responses import JSONResponse
from pydantic import Field, ValidationError

from .approvals import ApprovalService
from .config import CircleflowConfig, load_config
from .contracts import CamelModel
from .engine import WorkflowEngine
from .errors import CircleflowError, InvalidInputError
from .integrations import IntegrationRunner, N8nClient
from .persistence import CircleRepository, get_repository
from .webhooks import WebhookHandler, WebhookUnauthorized

logger = logging.getLogger(__name__)


class ExecuteRequest(CamelModel):
    action: Literal["start", "continue", "status"]
    workflow_id: str = Field(min_length=1)
    request_id: str = Field(min_length=1)
    request_data: Dict[str, Any] = Field(default_factory=dict)
    step_index: Optional[int] = None
    approved: Optional[bool] = None
    previous_results: Dict[str, Any] = Field(default_factory=dict)
    user_id: Optional[str] = None


class NotifyRequest(CamelModel):
    request_id: str = Field(min_length=1)
    approver_id: str = Field(min_length=1)


class ApprovalActionRequest(CamelModel):
    request_id: str = Field(min_length=1)
    step_id: str = Field(min_length=1)
    action: Literal["approve", "reject"]
    comment: Optional[str] = None


def _parse(model: type[CamelModel], payload: Any) -> Any:
    try:
        return model.model_validate(payload or {})
    except ValidationError as exc:
        fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in exc.errors())
        raise InvalidInputError(f"Missing or invalid fields: {fields}") from exc


router = APIRouter()


@router.get("/health")
async def health() -> Dict[str, str]:
    return {"status": "ok"}


@router.post("/api/workflows/execute")
async def execute_workflow(request: Request, payload: Any = Body(None)) -> Dict[str, Any]:
    body: ExecuteRequest = _parse(ExecuteRequest, payload)
    engine: WorkflowEngine = request.app.state.engine

    if body.action == "status":
        status = await engine.get_status(body.workflow_id, body.request_id)
        return status.model_dump(by_alias=True, mode="json")

    if body.action == "start":
        results = await engine.start_workflow(
            body.workflow_id, body.request_id, body.request_data, body.user_id
        )
        message = "Workflow started"
    else:
        if body.step_index is None or body.approved is None:
            raise InvalidInputError("stepIndex and approved are required to continue a workflow")
        results = await engine.continue_workflow(
            body.workflow_id,
            body.request_id,
            body.step_index,
            body.approved,
            body.request_data,
            body.previous_results,
            body.user_id,
        )
        message = "Workflow continued"

    return {
        "success": True,
        "results": [r.model_dump(by_alias=True, mode="json") for r in results],
        "message": message,
    }


@router.api_route("/api/webhooks/n8n", methods=["GET", "POST"])
async def n8n_webhook(request: Request) -> JSONResponse:
    if request.method == "GET":
        raw: Dict[str, Any] = dict(request.query_params)
    else:
        try:
            raw = await request.json()
        except ValueError:
            raw = {}
        if not isinstance(raw, dict):
            raw = {}

    handler: WebhookHandler = request.app.state.webhooks
    try:
        ack = await handler.handle(raw)
    except WebhookUnauthorized:
        return JSONResponse(status_code=401, content={"error": "Unauthorized"})
    return JSONResponse(content=ack.model_dump(by_alias=True))


@router.post("/api/approvals/notify")
async def notify_approver(request: Request, payload: Any = Body(None)) -> Dict[str, Any]:
    body: NotifyRequest = _parse(NotifyRequest, payload)
    approvals: ApprovalService = request.app.state.approvals
    outcome = await approvals.materialize_approval(body.request_id, body.approver_id)

    response: Dict[str, Any] = {
        "success": outcome.success,
        "message": outcome.message,
        "approverId": outcome.approver_id,
        "approverName": outcome.approver_name,
    }
    if outcome.idempotent:
        response["existingStepId"] = outcome.step.id
        response["idempotent"] = True
    else:
        response["stepId"] = outcome.step.id
    return response


@router.post("/api/approvals/action")
async def approval_action(
    request: Request,
    payload: Any = Body(None),
    x_user_id: Optional[str] = Header(None),
) -> Dict[str, Any]:
    body: ApprovalActionRequest = _parse(ApprovalActionRequest, payload)
    if not x_user_id:
        raise InvalidInputError("X-User-Id header is required")
    approvals: ApprovalService = request.app.state.approvals
    decision = "approved" if body.action == "approve" else "rejected"
    outcome = await approvals.record_decision(
        body.request_id, body.step_id, x_user_id, decision, body.comment
    )
    return {
        "success": outcome.success,
        "message": outcome.message,
        "decision": outcome.decision,
        "stepId": outcome.step.id,
    }


async def _circleflow_error(request: Request, exc: CircleflowError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message} ({exc.details})")
    content: Dict[str, Any] = {"error": exc.message}
    if exc.details:
        content["details"] = exc.details
    return JSONResponse(status_code=exc.status_code, content=content)


async def _unhandled_error(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(f"Unhandled error on {request.method} {request.url.path}")
    return JSONResponse(
        status_code=500,
        content={"error": "Internal server error", "details": str(exc) or type(exc).__name__},
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Map circleflow errors and any unhandled exception to JSON error bodies."""
    app.add_exception_handler(CircleflowError, _circleflow_error)
    app.add_exception_handler(Exception, _unhandled_error)


def create_app(
    config: Optional[CircleflowConfig] = None,
    repository: Optional[CircleRepository] = None,
    runner: Optional[IntegrationRunner] = None,
) -> FastAPI:
    """Build the API application.

    Args:
        config: Loaded configuration; read from ``load_config`` when omitted.
        repository: Persistence backend; built from ``config.database_url``
            when omitted.
        runner: Integration runner; defaults to one using ``config.n8n``.
    """
    config = config or load_config()
    repository = repository or get_repository(config=config)
    runner = runner or IntegrationRunner(
        n8n=N8nClient(config.n8n), timeout=config.n8n.timeout
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("circleflow API starting up")
        yield
        await repository.close()
        logger.info("circleflow API shut down")

    app = FastAPI(title=config.api.title, lifespan=lifespan)

    approvals = ApprovalService(repository)
    app.state.config = config
    app.state.repository = repository
    app.state.approvals = approvals
    app.state.engine = WorkflowEngine(repository, approvals=approvals, integrations=runner)
    app.state.webhooks = WebhookHandler(repository, config.n8n.webhook_secret)

    register_exception_handlers(app)
    app.include_router(router)
    return app


__all__ = ["create_app"]

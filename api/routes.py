"""
FastAPI Route Handlers
Review Insights Pipeline
"""

import hmac
import logging
import uuid
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Request
from fastapi.responses import JSONResponse

from api.schemas import (
    EnqueueRequest, EnqueueResponse, ErrorResponse, HealthResponse, TriggerResponse,
)
from config.settings import settings
from utils.pipeline import TriggerParams, TriggerPipeline

logger = logging.getLogger(__name__)

router = APIRouter()

_pipeline: Optional[TriggerPipeline] = None


def get_pipeline() -> TriggerPipeline:
    """Process-wide pipeline; per-run state lives inside each run."""
    global _pipeline
    if _pipeline is None:
        _pipeline = TriggerPipeline()
    return _pipeline


# ─── Auth ────────────────────────────────────────────────────────────────────

def _error(status_code: int, code: str, message: str, request_id: str) -> JSONResponse:
    body = ErrorResponse(error={"code": code, "message": message}, requestId=request_id)
    return JSONResponse(status_code=status_code, content=body.model_dump())


def _provided_secret(request: Request) -> str:
    for header in ("x-cron-secret", "x-cron-key"):
        value = request.headers.get(header)
        if value:
            return value.strip()
    auth = request.headers.get("authorization", "")
    if auth.lower().startswith("bearer "):
        return auth[7:].strip()
    return (request.query_params.get("secret") or "").strip()


def authorize(request: Request, request_id: str) -> Optional[JSONResponse]:
    """Configuration check, then constant-time secret comparison."""
    missing = settings.missing_secrets()
    if missing:
        logger.error(f"[{request_id}] Missing configuration: {', '.join(missing)}")
        return _error(500, "config_error", f"Missing required secrets: {', '.join(missing)}",
                      request_id)
    provided = _provided_secret(request)
    if not provided:
        return _error(401, "unauthorized", "Missing trigger secret", request_id)
    if not hmac.compare_digest(provided.encode("utf-8"), settings.CRON_SECRET.encode("utf-8")):
        logger.warning(f"[{request_id}] Rejected trigger with invalid secret")
        return _error(403, "forbidden", "Invalid trigger secret", request_id)
    return None


def _request_id() -> str:
    return uuid.uuid4().hex[:12]


# ─── Health ──────────────────────────────────────────────────────────────────

@router.get("/health", response_model=HealthResponse, tags=["System"])
async def health_check():
    return HealthResponse(
        status="ok",
        version=settings.APP_VERSION,
        timestamp=datetime.now(timezone.utc),
    )


# ─── Trigger ─────────────────────────────────────────────────────────────────

@router.get("/cron/reviews", tags=["Trigger"])
def trigger_healthcheck(request: Request):
    """Authenticated no-op, for scheduler probes."""
    request_id = _request_id()
    denied = authorize(request, request_id)
    if denied is not None:
        return denied
    return {"ok": True, "requestId": request_id, "status": "ready"}


@router.post("/cron/reviews", response_model=TriggerResponse, tags=["Trigger"])
def trigger_reviews(
    request: Request,
    background_tasks: BackgroundTasks,
    resource: Optional[str] = None,
    mode: str = "backlog",
    limit: Optional[int] = None,
    force: bool = False,
    sync: bool = True,
    debug: bool = False,
    pipeline: TriggerPipeline = Depends(get_pipeline),
):
    """
    Run one time-boxed pipeline pass:
    Sync → Analyse → Draft replies. The run record is finalized after the
    response is sent.
    """
    request_id = _request_id()
    denied = authorize(request, request_id)
    if denied is not None:
        return denied

    params = TriggerParams(resource=resource, mode=mode, limit=limit,
                           force=force, sync=sync, debug=debug)
    result = pipeline.run(params, request_id=request_id, finalize=False)
    background_tasks.add_task(pipeline.recorder.finish, result, params.scope)
    return TriggerResponse(**result.to_dict())


@router.post("/cron/jobs", response_model=EnqueueResponse, tags=["Trigger"])
def enqueue_jobs(
    body: EnqueueRequest,
    request: Request,
    pipeline: TriggerPipeline = Depends(get_pipeline),
):
    """Queue analysis jobs for reviews reported as new by an upstream notifier."""
    request_id = _request_id()
    denied = authorize(request, request_id)
    if denied is not None:
        return denied
    outcome = pipeline.enqueue_reviews(body.review_ids)
    logger.info(f"[{request_id}] Enqueued {outcome['enqueued']} job(s)")
    return EnqueueResponse(requestId=request_id, **outcome)


# ─── Run history ─────────────────────────────────────────────────────────────

@router.get("/cron/runs", tags=["Trigger"])
def recent_runs(
    request: Request,
    limit: int = 20,
    pipeline: TriggerPipeline = Depends(get_pipeline),
):
    """Latest run records, for backlog diagnosis."""
    request_id = _request_id()
    denied = authorize(request, request_id)
    if denied is not None:
        return denied
    return {
        "ok": True,
        "requestId": request_id,
        "runs": pipeline.recorder.recent(max(1, min(limit, 100))),
        "queue": pipeline.queue_status(),
    }

"""
Pydantic schemas for API request/response validation.
"""

from pydantic import BaseModel, Field
from typing import List, Optional, Dict, Any
from datetime import datetime


# ─── Request Schemas ─────────────────────────────────────────────────────────

class EnqueueRequest(BaseModel):
    review_ids: List[int] = Field(..., min_length=1, max_length=500)


# ─── Response Schemas ────────────────────────────────────────────────────────

class RunErrorResponse(BaseModel):
    scope: str
    id: Optional[str] = None
    message: str


class StatsResponse(BaseModel):
    reviewsScanned: int = 0
    reviewsProcessed: int = 0
    tagsUpserted: int = 0
    candidatesFound: int = 0
    reviewsSynced: int = 0
    pagesFetched: int = 0
    repliesGenerated: int = 0
    repliesSkipped: int = 0
    jobsProcessed: int = 0
    jobsErrors: int = 0
    errors: List[RunErrorResponse] = []


class TriggerResponse(BaseModel):
    ok: bool
    requestId: str
    runId: Optional[int] = None
    mode: str
    aborted: bool
    skipReason: Optional[str] = None
    stats: StatsResponse
    debug: Optional[Dict[str, Any]] = None


class EnqueueResponse(BaseModel):
    ok: bool = True
    requestId: str
    enqueued: int
    jobIds: List[int]
    missing: List[int]


class ErrorDetail(BaseModel):
    code: str
    message: str


class ErrorResponse(BaseModel):
    ok: bool = False
    error: ErrorDetail
    requestId: str


class HealthResponse(BaseModel):
    status: str
    version: str
    timestamp: datetime

"""
Core data models / schemas for the Review Insights pipeline.

Plain dataclasses passed between the queue, the workers and the trigger.
ORM rows never leave a session; these do.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import List, Optional, Dict, Any
from datetime import datetime


# ---------------------------------------------------------------------------
# Work units
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ResourceRef:
    owner_id: str
    resource_name: str
    parent: str = ""                 # upstream path, e.g. "accounts/1/locations/2"

    @property
    def key(self) -> str:
        return f"{self.owner_id}:{self.resource_name}"


@dataclass(frozen=True)
class ReviewRef:
    review_id: int
    owner_id: str
    resource_name: str

    def payload(self) -> Dict[str, Any]:
        return {
            "review_id": self.review_id,
            "owner_id": self.owner_id,
            "resource_name": self.resource_name,
        }


@dataclass
class ClaimedJob:
    job_id: int
    review_id: int
    owner_id: str
    resource_name: str
    attempts: int = 1
    payload: Dict[str, Any] = field(default_factory=dict)

    @property
    def ref(self) -> ReviewRef:
        return ReviewRef(self.review_id, self.owner_id, self.resource_name)


@dataclass
class Candidate:
    """A review selected for analysis, optionally backed by a claimed job."""
    ref: ReviewRef
    job_id: Optional[int] = None


# ---------------------------------------------------------------------------
# Upstream rows
# ---------------------------------------------------------------------------

@dataclass
class ReviewRecord:
    """One review as mapped from the upstream API."""
    external_review_id: str
    review_name: Optional[str]
    author_name: Optional[str]
    rating: Optional[int]                   # 1–5, None when unspecified
    comment: Optional[str]
    create_time: Optional[datetime]
    update_time: Optional[datetime]
    reply_text: Optional[str] = None
    replied_at: Optional[datetime] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def source_time(self) -> Optional[datetime]:
        return self.update_time or self.create_time


@dataclass
class ReviewPage:
    reviews: List[ReviewRecord]
    next_page_token: Optional[str] = None


# ---------------------------------------------------------------------------
# Run summary
# ---------------------------------------------------------------------------

@dataclass
class RunError:
    scope: str               # "resource" | "review" | "job" | "stage" | "run"
    id: Optional[str]
    message: str

    def to_dict(self) -> Dict[str, Any]:
        return {"scope": self.scope, "id": self.id, "message": self.message}


@dataclass
class RunStats:
    reviews_scanned: int = 0
    reviews_processed: int = 0
    tags_upserted: int = 0
    candidates_found: int = 0
    reviews_synced: int = 0
    pages_fetched: int = 0
    replies_generated: int = 0
    replies_skipped: int = 0
    jobs_processed: int = 0
    jobs_errors: int = 0
    errors: List[RunError] = field(default_factory=list)

    def add_error(self, scope: str, id: Optional[Any], message: str) -> None:
        self.errors.append(RunError(scope, None if id is None else str(id), message))

    @property
    def last_error(self) -> Optional[str]:
        return self.errors[-1].message if self.errors else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "reviewsScanned": self.reviews_scanned,
            "reviewsProcessed": self.reviews_processed,
            "tagsUpserted": self.tags_upserted,
            "candidatesFound": self.candidates_found,
            "reviewsSynced": self.reviews_synced,
            "pagesFetched": self.pages_fetched,
            "repliesGenerated": self.replies_generated,
            "repliesSkipped": self.replies_skipped,
            "jobsProcessed": self.jobs_processed,
            "jobsErrors": self.jobs_errors,
            "errors": [e.to_dict() for e in self.errors],
        }


@dataclass
class TriggerResult:
    request_id: str
    mode: str
    run_id: Optional[int] = None
    aborted: bool = False
    skip_reason: Optional[str] = None   # "locked" | "no_resources" | "no_candidates"
    stats: RunStats = field(default_factory=RunStats)
    debug: Optional[Dict[str, Any]] = None
    meta: Dict[str, Any] = field(default_factory=dict)
    duration_ms: int = 0

    def to_dict(self) -> Dict[str, Any]:
        body = {
            "ok": True,
            "requestId": self.request_id,
            "runId": self.run_id,
            "mode": self.mode,
            "aborted": self.aborted,
            "skipReason": self.skip_reason,
            "stats": self.stats.to_dict(),
        }
        if self.debug is not None:
            body["debug"] = self.debug
        return body

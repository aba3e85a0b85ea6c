"""
Trigger runner: one time-boxed invocation of the review pipeline.

Architecture:
  open run record -> maintenance (stale locks, stale jobs) -> resolve
  resources -> acquire locks -> SyncAgent -> AnalysisAgent -> release locks
  -> finalize run record
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import asdict, dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from agents.analysis import MODES, AnalysisAgent
from agents.base import Agent, Orchestrator, RunContext
from agents.sync import SyncAgent
from config.settings import settings
from db.database import SessionFactory, SessionLocal, session_scope
from db.history import RunHistoryRecorder
from db.jobs import JobQueue
from db.locks import LockManager
from db.models import Resource, Review
from models.schemas import ResourceRef, ReviewRef, TriggerResult
from services.llm import LlmClient
from services.replies import IdentityCache, IdentityResolver, ReplyGenerator
from services.review_api import ReviewApiClient
from utils.deadline import Deadline
from utils.retry import UpstreamError

logger = logging.getLogger(__name__)


@dataclass
class TriggerParams:
    resource: Optional[str] = None      # resource name, or None for every resource
    mode: str = "backlog"
    limit: Optional[int] = None
    force: bool = False
    sync: bool = True
    debug: bool = False

    def __post_init__(self):
        self.mode = (self.mode or "backlog").strip().lower()
        if self.mode not in MODES:
            logger.warning(f"Unknown mode {self.mode!r}, using backlog")
            self.mode = "backlog"
        if self.limit is not None and self.limit <= 0:
            self.limit = None

    @property
    def scope(self) -> str:
        return self.resource or "all"


class TriggerPipeline:
    def __init__(
        self,
        session_factory: SessionFactory = SessionLocal,
        review_client: Optional[ReviewApiClient] = None,
        llm: Optional[LlmClient] = None,
        locks: Optional[LockManager] = None,
        jobs: Optional[JobQueue] = None,
        recorder: Optional[RunHistoryRecorder] = None,
        budget_seconds: float = settings.CRON_MAX_SECONDS,
        clock: Optional[Callable[[], float]] = None,
        agent_options: Optional[Dict[str, Any]] = None,
    ):
        self.session_factory = session_factory
        self.review_client = review_client or ReviewApiClient()
        self.llm = llm or LlmClient()
        self.locks = locks or LockManager(session_factory)
        self.jobs = jobs or JobQueue(session_factory)
        self.recorder = recorder or RunHistoryRecorder(session_factory)
        self.budget_seconds = budget_seconds
        self.clock = clock
        self.agent_options = agent_options or {}

    # ── Building blocks ──────────────────────────────────────────────────

    def maintenance(self) -> Dict[str, int]:
        """Release leases and jobs left behind by crashed runs."""
        return {
            "locksReaped": self.locks.reap_stale(settings.STALE_SECONDS),
            "jobsRecovered": self.jobs.recover_stale(settings.STALE_SECONDS),
        }

    def select_resources(self, resource: Optional[str] = None) -> List[ResourceRef]:
        with session_scope(self.session_factory) as db:
            query = select(Resource).order_by(Resource.owner_id, Resource.resource_name)
            if resource:
                query = query.where(Resource.resource_name == resource)
            return [
                ResourceRef(row.owner_id, row.resource_name, row.parent)
                for row in db.execute(query).scalars()
            ]

    def build_stages(self, params: TriggerParams) -> List[Agent]:
        """Fresh agents per run; the identity cache lives exactly one run."""
        options = dict(self.agent_options)
        replies = ReplyGenerator(
            self.llm,
            IdentityResolver(self.session_factory, IdentityCache()),
            session_factory=self.session_factory,
            sleep=options.get("sleep"),
            base_delay=options.get("base_delay", settings.AI_RETRY_BASE_SECONDS),
        )
        stages: List[Agent] = []
        if params.sync:
            stages.append(SyncAgent(self.review_client, jobs=self.jobs,
                                    session_factory=self.session_factory))
        stages.append(AnalysisAgent(self.llm, replies, jobs=self.jobs,
                                    session_factory=self.session_factory, **options))
        return stages

    def enqueue_reviews(self, review_ids: Sequence[int]) -> Dict[str, Any]:
        """Queue analysis for known reviews (upstream 'new review' notifications)."""
        with session_scope(self.session_factory) as db:
            rows = db.execute(
                select(Review.review_id, Review.owner_id, Review.resource_name)
                .where(Review.review_id.in_(list(review_ids)))
            ).all()
        refs = [ReviewRef(r.review_id, r.owner_id, r.resource_name) for r in rows]
        job_ids = self.jobs.enqueue_many(refs)
        found = {ref.review_id for ref in refs}
        return {
            "enqueued": len(job_ids),
            "jobIds": job_ids,
            "missing": [rid for rid in review_ids if rid not in found],
        }

    def queue_status(self) -> Dict[str, Any]:
        return {"counts": self.jobs.status_counts(), "oldestPending": self.jobs.oldest_pending()}

    # ── Run ──────────────────────────────────────────────────────────────

    def run(self, params: TriggerParams, request_id: Optional[str] = None,
            finalize: bool = True) -> TriggerResult:
        """
        Execute one invocation. Never raises for item-level failures; they
        land in ``stats.errors``. With ``finalize=False`` the caller owns the
        ``recorder.finish`` call (e.g. as a background task).
        """
        request_id = request_id or uuid.uuid4().hex[:12]
        deadline = Deadline(self.budget_seconds, self.clock) if self.clock else Deadline(self.budget_seconds)
        result = TriggerResult(request_id=request_id, mode=params.mode)
        result.meta["params"] = asdict(params)
        result.run_id = self.recorder.start(request_id, params.scope, params.mode,
                                            meta={"params": asdict(params)})
        logger.info(f"[{request_id}] Trigger start: scope={params.scope} mode={params.mode} "
                    f"limit={params.limit} force={params.force} sync={params.sync}")
        ctx: Optional[RunContext] = None
        try:
            result.meta["maintenance"] = self.maintenance()
            resources = self.select_resources(params.resource)
            if not resources:
                result.skip_reason = "no_resources"
                return result

            locked = [r for r in resources if self.locks.acquire(r.key)]
            skipped = [r.resource_name for r in resources if r not in locked]
            if skipped:
                result.meta["lockedByOthers"] = skipped
            if not locked:
                result.skip_reason = "locked"
                return result

            try:
                ctx = RunContext(
                    request_id=request_id,
                    mode=params.mode,
                    deadline=deadline,
                    resources=locked,
                    limit=params.limit,
                    force=params.force,
                    stats=result.stats,
                )
                orchestrator = Orchestrator(self.build_stages(params), stop_on_failure=False)
                orchestrator.execute(ctx)
                for failure in orchestrator.failures:
                    result.stats.add_error("stage", failure.agent_name, failure.error or "failed")
                logger.info(orchestrator.summary())
            finally:
                for resource in locked:
                    self.locks.release(resource.key)

            result.aborted = ctx.aborted
            result.meta.update(ctx.meta)
            stats = result.stats
            if not (stats.candidates_found or stats.reviews_synced or stats.errors or result.aborted):
                result.skip_reason = "no_candidates"
        except (SQLAlchemyError, UpstreamError) as e:
            logger.error(f"[{request_id}] Trigger run failed: {e}")
            result.stats.add_error("run", None, str(e)[:500])
        finally:
            result.duration_ms = deadline.elapsed_ms
            if params.debug:
                result.debug = self._debug(result)
            if finalize:
                self.recorder.finish(result, params.scope)
            logger.info(
                f"[{request_id}] Trigger done in {result.duration_ms}ms: "
                f"processed={result.stats.reviews_processed} errors={len(result.stats.errors)} "
                f"aborted={result.aborted} skip={result.skip_reason}"
            )
        return result

    def _debug(self, result: TriggerResult) -> Dict[str, Any]:
        try:
            queue = self.queue_status()
        except SQLAlchemyError as e:
            queue = {"error": str(e)}
        return {"queue": queue, "meta": result.meta, "elapsedMs": result.duration_ms}

"""
Durable job queue for review analysis.

State machine::

    pending --claim--> processing --complete--> done
                                  --fail------> error
    processing --release/recover_stale--> pending
    error --retry_errors--> pending

A partial unique index keeps at most one pending/processing job per review,
so ``enqueue`` is idempotent. ``claim`` moves each row with a conditional
UPDATE (``WHERE status = 'pending'``); two callers racing for the same row
see exactly one ``rowcount == 1``.
"""

import logging
from datetime import timedelta
from typing import Callable, Dict, Iterable, List, Optional, Sequence

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.exc import IntegrityError

from config.settings import settings
from db.database import SessionFactory, SessionLocal, session_scope
from db.models import Job, Review, ReviewInsight, utcnow
from models.schemas import ClaimedJob, ResourceRef, ReviewRef
from utils.retry import with_retry

logger = logging.getLogger(__name__)

PENDING = "pending"
PROCESSING = "processing"
DONE = "done"
ERROR = "error"
ACTIVE_STATUSES = (PENDING, PROCESSING)

JOB_ERROR_MAX = 500


def _resource_filter(resources: Optional[Sequence[ResourceRef]]):
    if not resources:
        return None
    return or_(*[
        and_(Review.owner_id == r.owner_id, Review.resource_name == r.resource_name)
        for r in resources
    ])


class JobQueue:
    def __init__(self, session_factory: SessionFactory = SessionLocal, clock: Callable = utcnow):
        self.session_factory = session_factory
        self.clock = clock

    def _write(self, operation, label: str):
        return with_retry(operation, max_attempts=settings.RETRY_TRIES,
                          base_delay=settings.RETRY_BASE_SECONDS, label=label)

    # ── Producers ────────────────────────────────────────────────────────

    def _active_job_id(self, db, review_id: int) -> Optional[int]:
        return db.execute(
            select(Job.job_id).where(Job.review_id == review_id, Job.status.in_(ACTIVE_STATUSES))
        ).scalar()

    def enqueue(self, ref: ReviewRef) -> int:
        """Insert a pending job, or return the review's existing active job."""
        try:
            with session_scope(self.session_factory) as db:
                existing = self._active_job_id(db, ref.review_id)
                if existing is not None:
                    return existing
                job = Job(review_id=ref.review_id, status=PENDING, payload=ref.payload(),
                          attempts=0, created_at=self.clock())
                db.add(job)
                db.flush()
                return job.job_id
        except IntegrityError:
            # Another producer inserted the active job between our read and write.
            with session_scope(self.session_factory) as db:
                return self._active_job_id(db, ref.review_id)

    def enqueue_many(self, refs: Iterable[ReviewRef]) -> List[int]:
        return [self.enqueue(ref) for ref in refs]

    # ── Consumers ────────────────────────────────────────────────────────

    def claim(self, limit: int, resources: Optional[Sequence[ResourceRef]] = None) -> List[ClaimedJob]:
        """
        Atomically move up to ``limit`` of the oldest pending jobs to processing.

        Single-shot: a failed claim is not retried, since a replayed claim
        could double-count attempts. Rows taken by a concurrent claimer are
        skipped.
        """
        if limit <= 0:
            return []
        now = self.clock()
        claimed: List[ClaimedJob] = []
        with session_scope(self.session_factory) as db:
            query = (
                select(Job.job_id, Job.review_id, Job.payload, Job.attempts,
                       Review.owner_id, Review.resource_name)
                .join(Review, Review.review_id == Job.review_id)
                .where(Job.status == PENDING)
                .order_by(Job.created_at.asc(), Job.job_id.asc())
                .limit(limit)
                .with_for_update(skip_locked=True, of=Job)
            )
            scope = _resource_filter(resources)
            if scope is not None:
                query = query.where(scope)

            for row in db.execute(query).all():
                moved = db.execute(
                    update(Job)
                    .where(Job.job_id == row.job_id, Job.status == PENDING)
                    .values(status=PROCESSING, attempts=Job.attempts + 1,
                            started_at=now, finished_at=None, error=None)
                )
                if moved.rowcount != 1:
                    continue
                claimed.append(ClaimedJob(
                    job_id=row.job_id,
                    review_id=row.review_id,
                    owner_id=row.owner_id,
                    resource_name=row.resource_name,
                    attempts=(row.attempts or 0) + 1,
                    payload=row.payload or {},
                ))
        if claimed:
            logger.info(f"Claimed {len(claimed)} job(s)")
        return claimed

    def _finish(self, job_id: int, status: str, error: Optional[str]) -> bool:
        def _apply():
            with session_scope(self.session_factory) as db:
                return db.execute(
                    update(Job)
                    .where(Job.job_id == job_id, Job.status == PROCESSING)
                    .values(status=status, error=error, finished_at=self.clock())
                ).rowcount == 1

        moved = self._write(_apply, f"job.{status}[{job_id}]")
        if not moved:
            logger.warning(f"Job {job_id} was not processing; {status} ignored")
        return moved

    def complete(self, job_id: int) -> bool:
        return self._finish(job_id, DONE, None)

    def fail(self, job_id: int, reason: str) -> bool:
        return self._finish(job_id, ERROR, (reason or "error")[:JOB_ERROR_MAX])

    def release(self, job_ids: Sequence[int], reason: str = "aborted") -> int:
        """Hand claimed but unprocessed jobs back to the queue."""
        if not job_ids:
            return 0

        def _apply():
            with session_scope(self.session_factory) as db:
                return db.execute(
                    update(Job)
                    .where(Job.job_id.in_(list(job_ids)), Job.status == PROCESSING)
                    .values(status=PENDING, started_at=None, error=reason)
                ).rowcount

        released = self._write(_apply, "job.release")
        logger.info(f"Released {released} job(s) to pending ({reason})")
        return released

    # ── Maintenance ──────────────────────────────────────────────────────

    def recover_stale(self, stale_seconds: Optional[int] = None) -> int:
        """Reset jobs stuck in processing (crashed worker) to pending."""
        age = settings.STALE_SECONDS if stale_seconds is None else stale_seconds
        cutoff = self.clock() - timedelta(seconds=age)

        def _apply():
            with session_scope(self.session_factory) as db:
                return db.execute(
                    update(Job)
                    .where(Job.status == PROCESSING, Job.started_at < cutoff)
                    .values(status=PENDING, started_at=None, error="stale_recovered")
                ).rowcount

        recovered = self._write(_apply, "job.recover_stale")
        if recovered:
            logger.warning(f"Recovered {recovered} stale processing job(s)")
        return recovered

    def retry_errors(self, limit: int, resources: Optional[Sequence[ResourceRef]] = None) -> int:
        """Move up to ``limit`` errored jobs back to pending, oldest first."""
        moved = 0
        with session_scope(self.session_factory) as db:
            query = (
                select(Job.job_id, Job.review_id)
                .join(Review, Review.review_id == Job.review_id)
                .where(Job.status == ERROR)
                .order_by(Job.finished_at.asc(), Job.job_id.asc())
                .limit(limit)
            )
            scope = _resource_filter(resources)
            if scope is not None:
                query = query.where(scope)
            for row in db.execute(query).all():
                if self._active_job_id(db, row.review_id) is not None:
                    continue
                moved += db.execute(
                    update(Job)
                    .where(Job.job_id == row.job_id, Job.status == ERROR)
                    .values(status=PENDING, started_at=None, finished_at=None)
                ).rowcount
        if moved:
            logger.info(f"Re-queued {moved} errored job(s)")
        return moved

    # ── Introspection ────────────────────────────────────────────────────

    def status_counts(self) -> Dict[str, int]:
        with session_scope(self.session_factory) as db:
            rows = db.execute(select(Job.status, func.count()).group_by(Job.status)).all()
        counts = {status: 0 for status in (PENDING, PROCESSING, DONE, ERROR)}
        counts.update({status: count for status, count in rows})
        return counts

    def pending_count(self, resources: Optional[Sequence[ResourceRef]] = None) -> int:
        with session_scope(self.session_factory) as db:
            query = (
                select(func.count())
                .select_from(Job)
                .join(Review, Review.review_id == Job.review_id)
                .where(Job.status == PENDING)
            )
            scope = _resource_filter(resources)
            if scope is not None:
                query = query.where(scope)
            return db.execute(query).scalar() or 0

    def oldest_pending(self) -> Optional[dict]:
        with session_scope(self.session_factory) as db:
            job = db.execute(
                select(Job).where(Job.status == PENDING)
                .order_by(Job.created_at.asc(), Job.job_id.asc()).limit(1)
            ).scalar()
            if job is None:
                return None
            return {
                "job_id": job.job_id,
                "review_id": job.review_id,
                "created_at": job.created_at.isoformat() if job.created_at else None,
            }


class BacklogScanner:
    """
    Query-driven candidate discovery for reviews that never went through
    ``enqueue`` (historical imports, failed runs).

    Reviews are walked oldest first by ``(coalesce(update_time, create_time),
    review_id)`` in keyset pages; only those with text are kept.
    """

    def __init__(self, session_factory: SessionFactory = SessionLocal,
                 page_size: int = settings.BACKLOG_PAGE_SIZE,
                 max_pages: int = settings.BACKLOG_MAX_PAGES):
        self.session_factory = session_factory
        self.page_size = page_size
        self.max_pages = max_pages

    def _has_text(self):
        return and_(Review.comment.isnot(None), func.length(func.trim(Review.comment)) > 0)

    def _walk(self, resource: ResourceRef, extra, limit: int) -> List[ReviewRef]:
        source_time = func.coalesce(Review.update_time, Review.create_time)
        found: List[ReviewRef] = []
        last = None
        with session_scope(self.session_factory) as db:
            for _ in range(self.max_pages):
                query = (
                    select(Review.review_id, source_time.label("source_time"))
                    .outerjoin(ReviewInsight, ReviewInsight.review_id == Review.review_id)
                    .where(
                        Review.owner_id == resource.owner_id,
                        Review.resource_name == resource.resource_name,
                        self._has_text(),
                        extra,
                    )
                    .order_by(source_time.asc(), Review.review_id.asc())
                    .limit(self.page_size)
                )
                if last is not None:
                    last_time, last_id = last
                    query = query.where(or_(
                        source_time > last_time,
                        and_(source_time == last_time, Review.review_id > last_id),
                    ))
                rows = db.execute(query).all()
                for row in rows:
                    found.append(ReviewRef(row.review_id, resource.owner_id, resource.resource_name))
                    if len(found) >= limit:
                        return found
                if len(rows) < self.page_size:
                    break
                last = (rows[-1].source_time, rows[-1].review_id)
        return found

    def backlog(self, resource: ResourceRef, limit: int) -> List[ReviewRef]:
        """Reviews with text and no insight row."""
        return self._walk(resource, ReviewInsight.insight_id.is_(None), limit)

    def errored(self, resource: ResourceRef, limit: int) -> List[ReviewRef]:
        """Reviews whose last analysis recorded an error."""
        return self._walk(resource, ReviewInsight.error.isnot(None), limit)

    def recent(self, resource: ResourceRef, limit: int) -> List[ReviewRef]:
        """Newest reviews with text, analysed or not."""
        source_time = func.coalesce(Review.update_time, Review.create_time)
        with session_scope(self.session_factory) as db:
            rows = db.execute(
                select(Review.review_id)
                .where(
                    Review.owner_id == resource.owner_id,
                    Review.resource_name == resource.resource_name,
                    self._has_text(),
                )
                .order_by(source_time.desc(), Review.review_id.desc())
                .limit(limit)
            ).all()
        # Oldest first so the analysis cursor only moves forward.
        return [ReviewRef(r.review_id, resource.owner_id, resource.resource_name)
                for r in reversed(rows)]

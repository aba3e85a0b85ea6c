"""
Review Analysis Agent
----------------------
Annotates reviews with LLM-derived sentiment, summary and topic tags, then
drafts a reply when the review is not protected.

Candidate selection by mode:
  queue         claimed pending jobs
  backlog       queue first when jobs are pending, else reviews with text
                and no insight (query-driven discovery)
  recent        newest reviews with text, re-analysed
  retry_errors  errored jobs re-queued and claimed, plus reviews whose last
                analysis recorded an error

Every candidate is checked against the deadline and the review cap before it
starts. Claimed jobs the loop never reaches go back to pending.

Architecture:
  AnalysisAgent.run(RunContext) -> RunContext
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, List, Optional

import requests
from pydantic import ValidationError
from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from agents.base import Agent, RunContext
from config.settings import settings
from db.cursors import CursorPosition, CursorStore, analysis_stream_key
from db.database import SessionFactory, SessionLocal, session_scope
from db.jobs import BacklogScanner, JobQueue
from db.models import Review, ReviewInsight, ReviewTag, Tag, utcnow
from models.insights import (
    ANALYSIS_JSON_SCHEMA, NormalizedAnalysis, NormalizedTopic,
    normalize_analysis, parse_analysis,
)
from models.schemas import Candidate, ReviewRef
from services.llm import LlmClient, MalformedCompletionError
from services.replies import MissingIdentityError, ReplyGenerator
from utils.retry import Classification, UpstreamError, classify_error, with_retry

logger = logging.getLogger(__name__)

MODES = ("backlog", "queue", "recent", "retry_errors")
ERROR_MAX = 500

SYSTEM_PROMPT = (
    "You analyse customer reviews for a local business. "
    "Return ONLY valid JSON matching the schema. No prose. No markdown. "
    "sentiment_score is between -1 (very negative) and 1 (very positive). "
    "The summary is one short sentence. "
    "Topics are short tags (2 to 4 words, no emoji) in the review's language, each with "
    "a polarity between -1 and 1, a confidence between 0 and 1, a short verbatim evidence "
    "snippet and one category from the allowed list."
)


def classify_analysis_error(error: BaseException) -> Classification:
    """Malformed completions are worth another attempt; everything else as usual."""
    if isinstance(error, MalformedCompletionError):
        return Classification.TRANSIENT
    return classify_error(error)


@dataclass
class ReviewSnapshot:
    review_id: int
    external_review_id: str
    text: str
    source_time: Optional[datetime]


class AnalysisAgent(Agent):
    def __init__(
        self,
        llm: LlmClient,
        replies: Optional[ReplyGenerator] = None,
        jobs: Optional[JobQueue] = None,
        scanner: Optional[BacklogScanner] = None,
        cursors: Optional[CursorStore] = None,
        session_factory: SessionFactory = SessionLocal,
        max_reviews: int = settings.CRON_MAX_REVIEWS,
        queue_batch: int = settings.QUEUE_BATCH,
        max_attempts: int = settings.AI_RETRY_TRIES,
        base_delay: float = settings.AI_RETRY_BASE_SECONDS,
        sleep: Optional[Callable[[float], Any]] = None,
    ):
        super().__init__("analysis")
        self.llm = llm
        self.replies = replies
        self.session_factory = session_factory
        self.jobs = jobs or JobQueue(session_factory)
        self.scanner = scanner or BacklogScanner(session_factory)
        self.cursors = cursors or CursorStore(session_factory)
        self.max_reviews = max_reviews
        self.queue_batch = queue_batch
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.sleep = sleep

    # ── Stage entry ──────────────────────────────────────────────────────

    def run(self, ctx: RunContext) -> RunContext:
        if not ctx.resources:
            return ctx
        limit = ctx.limit if ctx.limit and ctx.limit > 0 else self.max_reviews

        candidates = self.select_candidates(ctx, limit)
        ctx.stats.candidates_found += len(candidates)
        if not candidates:
            self.logger.info(f"[{ctx.request_id}] No candidates ({ctx.meta.get('effective_mode')})")
            return ctx

        processed = 0
        reason = "crashed"
        try:
            for candidate in candidates:
                if ctx.check_deadline() or processed >= limit:
                    reason = "aborted" if ctx.aborted else "limit"
                    break
                self.process(ctx, candidate)
                processed += 1
            else:
                reason = None
        finally:
            # Claimed jobs the loop never finished go back to pending.
            leftover = [c.job_id for c in candidates[processed:] if c.job_id is not None]
            if reason and leftover:
                self.jobs.release(leftover, reason)
                ctx.meta["jobs_released"] = ctx.meta.get("jobs_released", 0) + len(leftover)
        return ctx

    def select_candidates(self, ctx: RunContext, limit: int) -> List[Candidate]:
        mode = ctx.mode if ctx.mode in MODES else "backlog"
        effective = mode
        if mode == "retry_errors":
            ctx.meta["jobs_requeued"] = self.jobs.retry_errors(settings.RETRY_ERRORS_LIMIT, ctx.resources)
        elif mode == "backlog" and self.jobs.pending_count(ctx.resources) > 0:
            effective = "queue"
        ctx.meta["effective_mode"] = effective

        candidates: List[Candidate] = []
        if effective in ("queue", "retry_errors"):
            claimed = self.jobs.claim(min(limit, self.queue_batch), ctx.resources)
            candidates.extend(Candidate(job.ref, job.job_id) for job in claimed)

        seen = {c.ref.review_id for c in candidates}

        def add(refs: List[ReviewRef]) -> None:
            for ref in refs:
                if len(candidates) >= limit:
                    return
                if ref.review_id not in seen:
                    seen.add(ref.review_id)
                    candidates.append(Candidate(ref))

        for resource in ctx.resources:
            room = limit - len(candidates)
            if room <= 0:
                break
            if effective == "backlog":
                add(self.scanner.backlog(resource, room))
            elif effective == "recent":
                add(self.scanner.recent(resource, min(room, settings.RECENT_LIMIT)))
            elif effective == "retry_errors":
                add(self.scanner.errored(resource, room))
        return candidates

    # ── Per review ───────────────────────────────────────────────────────

    def _snapshot(self, review_id: int) -> Optional[ReviewSnapshot]:
        with session_scope(self.session_factory) as db:
            review = db.get(Review, review_id)
            if review is None:
                return None
            return ReviewSnapshot(review.review_id, review.external_review_id,
                                  (review.comment or "").strip(), review.source_time)

    def process(self, ctx: RunContext, candidate: Candidate) -> bool:
        ref, job_id = candidate.ref, candidate.job_id
        try:
            snapshot = self._snapshot(ref.review_id)
        except SQLAlchemyError as e:
            self._fail(ctx, ref, job_id, f"load_failed: {e}")
            return False
        if snapshot is None:
            self._fail(ctx, ref, job_id, "review_not_found")
            return False
        if not snapshot.text:
            # Nothing to analyse: a rating without comment.
            self._complete(ctx, job_id)
            return False

        ctx.stats.reviews_scanned += 1
        try:
            analysis = self.analyse(snapshot.text)
        except (UpstreamError, requests.RequestException) as e:
            message = str(e)[:ERROR_MAX]
            self._record_failed_insight(ref, message)
            self._fail(ctx, ref, job_id, message)
            return False

        try:
            tag_ids = self._ensure_tags(analysis.topics)
            self._persist(ref, snapshot, analysis, tag_ids)
        except (SQLAlchemyError, UpstreamError) as e:
            self._fail(ctx, ref, job_id, f"persist_failed: {e}"[:ERROR_MAX])
            return False

        ctx.stats.reviews_processed += 1
        ctx.stats.tags_upserted += len(analysis.topics)
        self._draft(ctx, ref, analysis)

        self._complete(ctx, job_id)
        self._advance_cursor(ctx, ref, snapshot)
        return True

    def analyse(self, text: str) -> NormalizedAnalysis:
        """LLM call plus strict parse, retried together."""
        user = (
            "Analyse this customer review and produce the requested fields "
            "(sentiment, score, summary, topics). Base yourself only on this comment:\n\n" + text
        )

        def attempt():
            raw = self.llm.complete(SYSTEM_PROMPT, user, json_schema=ANALYSIS_JSON_SCHEMA,
                                    schema_name="review_insights")
            try:
                return parse_analysis(raw)
            except ValidationError as e:
                raise MalformedCompletionError(
                    f"completion does not match schema: {e.error_count()} error(s); "
                    f"preview={raw[:120]!r}"
                ) from e

        retry_kwargs = {"sleep": self.sleep} if self.sleep is not None else {}
        result = with_retry(
            attempt,
            classify=classify_analysis_error,
            max_attempts=self.max_attempts,
            base_delay=self.base_delay,
            label="llm.analyse",
            **retry_kwargs,
        )
        return normalize_analysis(result, self.llm.model)

    def _ensure_tags(self, topics: List[NormalizedTopic]) -> List[int]:
        """Upsert the tag vocabulary; returns tag ids aligned with ``topics``."""
        ids = []
        for topic in topics:
            for _ in range(2):
                try:
                    with session_scope(self.session_factory) as db:
                        tag = db.execute(select(Tag).where(Tag.tag == topic.tag)).scalar()
                        if tag is None:
                            tag = Tag(tag=topic.tag, label=topic.name, category=topic.category)
                            db.add(tag)
                            db.flush()
                        tag_id = tag.tag_id
                    ids.append(tag_id)
                    break
                except IntegrityError:
                    # Inserted concurrently; the second pass reads it.
                    continue
            else:
                raise UpstreamError(f"could not upsert tag {topic.tag!r}")
        return ids

    def _persist(self, ref: ReviewRef, snapshot: ReviewSnapshot,
                 analysis: NormalizedAnalysis, tag_ids: List[int]) -> None:
        """Overwrite the insight and replace the review's tag links in one transaction."""
        with session_scope(self.session_factory) as db:
            insight = db.execute(
                select(ReviewInsight).where(ReviewInsight.review_id == ref.review_id)
            ).scalar()
            if insight is None:
                insight = ReviewInsight(review_id=ref.review_id)
                db.add(insight)
            insight.owner_id = ref.owner_id
            insight.resource_name = ref.resource_name
            insight.sentiment = analysis.sentiment
            insight.sentiment_score = analysis.sentiment_score
            insight.summary = analysis.summary
            insight.topics = analysis.topics_json()
            insight.model = analysis.model
            insight.error = None
            insight.source_update_time = snapshot.source_time
            insight.processed_at = utcnow()

            db.execute(delete(ReviewTag).where(ReviewTag.review_id == ref.review_id))
            for topic, tag_id in zip(analysis.topics, tag_ids):
                db.add(ReviewTag(review_id=ref.review_id, tag_id=tag_id,
                                 polarity=topic.polarity, confidence=topic.confidence,
                                 evidence=topic.evidence))

    def _record_failed_insight(self, ref: ReviewRef, message: str) -> None:
        try:
            with session_scope(self.session_factory) as db:
                insight = db.execute(
                    select(ReviewInsight).where(ReviewInsight.review_id == ref.review_id)
                ).scalar()
                if insight is None:
                    insight = ReviewInsight(review_id=ref.review_id, owner_id=ref.owner_id,
                                            resource_name=ref.resource_name)
                    db.add(insight)
                insight.error = message
                insight.processed_at = utcnow()
        except SQLAlchemyError as e:
            self.logger.error(f"Could not record analysis error for review {ref.review_id}: {e}")

    def _fail(self, ctx: RunContext, ref: ReviewRef, job_id: Optional[int], message: str) -> None:
        self.logger.warning(f"[{ctx.request_id}] review {ref.review_id}: {message}")
        ctx.stats.add_error("review", ref.review_id, message)
        if job_id is None:
            return
        ctx.stats.jobs_errors += 1
        try:
            self.jobs.fail(job_id, message)
        except (UpstreamError, SQLAlchemyError) as e:
            # Left in processing; stale recovery hands it back later.
            self.logger.error(f"Could not mark job {job_id} as failed: {e}")

    def _complete(self, ctx: RunContext, job_id: Optional[int]) -> None:
        if job_id is None:
            return
        try:
            self.jobs.complete(job_id)
            ctx.stats.jobs_processed += 1
        except (UpstreamError, SQLAlchemyError) as e:
            self.logger.error(f"Could not complete job {job_id}: {e}")
            ctx.stats.add_error("job", job_id, str(e)[:ERROR_MAX])

    def _draft(self, ctx: RunContext, ref: ReviewRef, analysis: NormalizedAnalysis) -> None:
        if self.replies is None:
            return
        try:
            outcome = self.replies.draft_for_review(
                ref.review_id, summary=analysis.summary,
                tags=[t.name for t in analysis.topics],
            )
        except (UpstreamError, requests.RequestException, MissingIdentityError, SQLAlchemyError) as e:
            self.logger.warning(f"[{ctx.request_id}] reply draft for review {ref.review_id} failed: {e}")
            ctx.stats.add_error("reply", ref.review_id, str(e)[:ERROR_MAX])
            return
        if outcome.created:
            ctx.stats.replies_generated += 1
        else:
            ctx.stats.replies_skipped += 1
            reasons = ctx.meta.setdefault("reply_skips", {})
            reasons[outcome.skip_reason] = reasons.get(outcome.skip_reason, 0) + 1

    def _advance_cursor(self, ctx: RunContext, ref: ReviewRef, snapshot: ReviewSnapshot) -> None:
        if snapshot.source_time is None:
            return
        key = analysis_stream_key(ref.owner_id, ref.resource_name)
        try:
            self.cursors.advance(key, CursorPosition(snapshot.source_time, snapshot.external_review_id))
        except (UpstreamError, SQLAlchemyError) as e:
            ctx.stats.add_error("cursor", key, str(e)[:ERROR_MAX])

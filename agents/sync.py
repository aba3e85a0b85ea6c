"""
Review Sync Agent
------------------
Pulls reviews for every locked resource from the upstream API into local
storage.

Per resource:
  load cursor (reset on force) -> fetch page (resuming from the stored token)
  -> upsert rows above the cursor in one transaction -> enqueue analysis jobs
  -> advance cursor to the page max and store the next token

The cursor only moves after its page is committed, so a crash replays at most
one page, and the upsert makes that replay harmless.

Architecture:
  SyncAgent.run(RunContext) -> RunContext
"""

import logging
from typing import Dict, List, Optional

import requests
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from agents.base import Agent, RunContext
from config.settings import settings
from db.cursors import CursorPosition, CursorStore, sync_stream_key
from db.database import SessionFactory, SessionLocal, session_scope
from db.jobs import JobQueue
from db.models import Resource, Review, ReviewReply, utcnow
from models.schemas import ResourceRef, ReviewRecord, ReviewRef
from services.review_api import ResourceNotFoundError, ReviewApiClient
from utils.retry import UpstreamError

logger = logging.getLogger(__name__)


def _sort_key(record: ReviewRecord):
    return (record.source_time, record.external_review_id)


def _rejected_page_token(error: UpstreamError) -> bool:
    """A client error on a resumed fetch: the stored page token is no longer accepted."""
    if isinstance(error, ResourceNotFoundError) or error.status is None:
        return False
    return 400 <= error.status < 500 and error.status != 429


class SyncAgent(Agent):
    def __init__(
        self,
        client: ReviewApiClient,
        cursors: Optional[CursorStore] = None,
        jobs: Optional[JobQueue] = None,
        session_factory: SessionFactory = SessionLocal,
        max_rows: int = settings.SYNC_MAX_ROWS,
    ):
        super().__init__("sync")
        self.client = client
        self.session_factory = session_factory
        self.cursors = cursors or CursorStore(session_factory)
        self.jobs = jobs or JobQueue(session_factory)
        self.max_rows = max_rows

    # ── Stage entry ──────────────────────────────────────────────────────

    def run(self, ctx: RunContext) -> RunContext:
        rows_left = self.max_rows
        for resource in ctx.resources:
            if ctx.check_deadline() or rows_left <= 0:
                break
            meta = ctx.resource_meta(resource)
            try:
                synced = self.sync_resource(ctx, resource, rows_left)
                rows_left -= synced
                self._mark(resource, "done", None)
            except ResourceNotFoundError as e:
                self.logger.warning(f"[{ctx.request_id}] {resource.resource_name}: not found upstream")
                ctx.stats.add_error("resource", resource.resource_name, f"not_found: {e}")
                meta["sync_status"] = "not_found"
                self._mark(resource, "error", "not_found")
            except (UpstreamError, requests.RequestException, SQLAlchemyError) as e:
                self.logger.error(f"[{ctx.request_id}] {resource.resource_name}: sync failed: {e}")
                ctx.stats.add_error("resource", resource.resource_name, str(e)[:300])
                meta["sync_status"] = "error"
                self._mark(resource, "error", str(e)[:500])
        return ctx

    # ── Per resource ─────────────────────────────────────────────────────

    def sync_resource(self, ctx: RunContext, resource: ResourceRef, max_rows: int) -> int:
        key = sync_stream_key(resource.owner_id, resource.resource_name)
        if ctx.force:
            self.cursors.reset(key)
        cursor = self.cursors.load(key)
        meta = ctx.resource_meta(resource)
        meta["sync_cursor_in"] = cursor.to_dict()
        self._mark(resource, "running", None)

        page_token = cursor.page_token
        synced = 0
        pages = 0
        while True:
            if ctx.check_deadline():
                break
            if synced >= max_rows:
                self.logger.info(f"{resource.resource_name}: row cap {max_rows} reached")
                break

            try:
                page = self.client.fetch_page(resource.parent or resource.resource_name, page_token)
            except UpstreamError as e:
                if not page_token or not _rejected_page_token(e):
                    raise
                # Rows merged before are still skipped by the (time, id) cursor.
                self.logger.warning(f"{resource.resource_name}: page token rejected "
                                    f"(status={e.status}); restarting from the first page")
                cursor = self.cursors.advance(
                    key, CursorPosition(cursor.source_time, cursor.item_id, None)
                )
                meta["page_token_reset"] = True
                page_token = None
                continue
            pages += 1
            ctx.stats.pages_fetched += 1

            fresh = sorted(
                (r for r in page.reviews if not cursor.covers(r.source_time, r.external_review_id)),
                key=_sort_key,
            )
            to_analyse = self._merge(resource, fresh) if fresh else []
            if to_analyse:
                self.jobs.enqueue_many(to_analyse)
            synced += len(fresh)
            ctx.stats.reviews_synced += len(fresh)

            newest = fresh[-1] if fresh else None
            cursor = self.cursors.advance(key, CursorPosition(
                source_time=newest.source_time if newest else cursor.source_time,
                item_id=newest.external_review_id if newest else cursor.item_id,
                page_token=page.next_page_token,
            ))
            page_token = page.next_page_token
            if not page_token:
                break

        meta.update({"synced": synced, "pages": pages, "sync_cursor_out": cursor.to_dict()})
        self.logger.info(f"{resource.resource_name}: {synced} review(s) merged over {pages} page(s)")
        return synced

    def _merge(self, resource: ResourceRef, records: List[ReviewRecord]) -> List[ReviewRef]:
        """
        Upsert one page keyed on (owner, resource, external id), mirror owner
        replies, and return the reviews that need (re-)analysis.
        """
        by_id: Dict[str, ReviewRecord] = {r.external_review_id: r for r in records}
        now = utcnow()
        needs_analysis = []
        with session_scope(self.session_factory) as db:
            existing = {
                row.external_review_id: row
                for row in db.execute(
                    select(Review).where(
                        Review.owner_id == resource.owner_id,
                        Review.resource_name == resource.resource_name,
                        Review.external_review_id.in_(list(by_id)),
                    )
                ).scalars()
            }
            touched = []
            for external_id, record in by_id.items():
                row = existing.get(external_id)
                if row is None:
                    row = Review(owner_id=resource.owner_id, resource_name=resource.resource_name,
                                 external_review_id=external_id, status="new")
                    db.add(row)
                    changed = True
                else:
                    changed = (row.comment or "").strip() != (record.comment or "").strip()
                row.review_name = record.review_name
                row.author_name = record.author_name
                row.rating = record.rating
                row.comment = record.comment
                row.create_time = record.create_time
                row.update_time = record.update_time
                row.raw = record.raw
                row.last_synced_at = now
                touched.append((row, record, changed))
            db.flush()

            for row, record, changed in touched:
                if record.reply_text:
                    self._mirror_reply(db, row, record)
                if changed and (row.comment or "").strip():
                    needs_analysis.append(ReviewRef(row.review_id, row.owner_id, row.resource_name))
        return needs_analysis

    def _mirror_reply(self, db, row: Review, record: ReviewRecord) -> None:
        """Record a reply already published upstream; one 'sent' row per review."""
        row.reply_text = record.reply_text
        row.replied_at = record.replied_at
        row.status = "replied"
        mirrored = db.execute(
            select(ReviewReply).where(ReviewReply.review_id == row.review_id,
                                      ReviewReply.status == "sent")
        ).scalar()
        if mirrored is None:
            db.add(ReviewReply(review_id=row.review_id, owner_id=row.owner_id, source="platform",
                               reply_text=record.reply_text, status="sent",
                               sent_at=record.replied_at))
        elif mirrored.reply_text != record.reply_text or mirrored.sent_at != record.replied_at:
            mirrored.reply_text = record.reply_text
            mirrored.sent_at = record.replied_at

    def _mark(self, resource: ResourceRef, status: str, error: Optional[str]) -> None:
        try:
            with session_scope(self.session_factory) as db:
                row = db.execute(
                    select(Resource).where(Resource.owner_id == resource.owner_id,
                                           Resource.resource_name == resource.resource_name)
                ).scalar()
                if row is None:
                    return
                row.sync_status = status
                row.last_error = error
                if status == "done":
                    row.last_synced_at = utcnow()
        except SQLAlchemyError as e:
            self.logger.error(f"Could not update sync status for {resource.resource_name}: {e}")

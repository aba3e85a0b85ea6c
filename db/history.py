"""
Run history: one row per trigger invocation.

Recording is best-effort. A failure to write history is logged and never
changes the outcome of the run it describes.
"""

import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from db.database import SessionFactory, SessionLocal, session_scope
from db.models import RunRecord, utcnow
from models.schemas import TriggerResult

logger = logging.getLogger(__name__)

LAST_ERROR_MAX = 500


class RunHistoryRecorder:
    def __init__(self, session_factory: SessionFactory = SessionLocal):
        self.session_factory = session_factory

    def start(self, request_id: str, scope: str, mode: str,
              meta: Optional[Dict[str, Any]] = None) -> Optional[int]:
        try:
            with session_scope(self.session_factory) as db:
                record = RunRecord(request_id=request_id, scope=scope, mode=mode,
                                   started_at=utcnow(), meta=meta or {})
                db.add(record)
                db.flush()
                return record.run_id
        except SQLAlchemyError as e:
            logger.error(f"[{request_id}] Could not open run record: {e}")
            return None

    def finish(self, result: TriggerResult, scope: str = "all") -> Optional[int]:
        """Finalize the run row opened by ``start`` (or insert one if it never opened)."""
        stats = result.stats
        try:
            with session_scope(self.session_factory) as db:
                record = db.get(RunRecord, result.run_id) if result.run_id else None
                if record is None:
                    record = RunRecord(request_id=result.request_id, scope=scope,
                                       mode=result.mode, started_at=utcnow())
                    db.add(record)
                record.finished_at = utcnow()
                record.duration_ms = result.duration_ms
                record.processed = stats.reviews_processed
                record.tagged = stats.tags_upserted
                record.errors_count = len(stats.errors)
                record.aborted = result.aborted
                record.skip_reason = result.skip_reason
                record.last_error = stats.last_error[:LAST_ERROR_MAX] if stats.last_error else None
                record.meta = {**(record.meta or {}), **result.meta, "stats": stats.to_dict()}
                db.flush()
                logger.info(
                    f"[{result.request_id}] Run {record.run_id} recorded: "
                    f"processed={record.processed} errors={record.errors_count} "
                    f"aborted={record.aborted} skip={record.skip_reason}"
                )
                return record.run_id
        except SQLAlchemyError as e:
            logger.error(f"[{result.request_id}] Could not finalize run record: {e}")
            return None

    def recent(self, limit: int = 20) -> List[Dict[str, Any]]:
        with session_scope(self.session_factory) as db:
            rows = db.execute(
                select(RunRecord).order_by(RunRecord.started_at.desc(), RunRecord.run_id.desc())
                .limit(limit)
            ).scalars().all()
            return [
                {
                    "run_id": r.run_id,
                    "request_id": r.request_id,
                    "scope": r.scope,
                    "mode": r.mode,
                    "started_at": r.started_at.isoformat() if r.started_at else None,
                    "duration_ms": r.duration_ms,
                    "processed": r.processed,
                    "tagged": r.tagged,
                    "errors_count": r.errors_count,
                    "aborted": r.aborted,
                    "skip_reason": r.skip_reason,
                }
                for r in rows
            ]

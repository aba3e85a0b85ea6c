"""
Cursor store: durable per-stream checkpoints.

A cursor is the ``(last_source_time, last_item_id)`` pair of the newest item
that has been durably processed on a stream. ``advance`` never moves it
backwards; only ``reset`` does (force mode).
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Tuple

from config.settings import settings
from db.database import SessionFactory, SessionLocal, session_scope
from db.models import Cursor, utcnow
from utils.retry import with_retry

logger = logging.getLogger(__name__)

EPOCH = datetime(1970, 1, 1)


@dataclass(frozen=True)
class CursorPosition:
    source_time: Optional[datetime] = None
    item_id: Optional[str] = None
    page_token: Optional[str] = None

    @property
    def key(self) -> Tuple[datetime, str]:
        return (self.source_time or EPOCH, self.item_id or "")

    def is_after(self, other: "CursorPosition") -> bool:
        return self.key > other.key

    def covers(self, source_time: Optional[datetime], item_id: Optional[str]) -> bool:
        """True when ``(source_time, item_id)`` is at or below this position."""
        if self.source_time is None:
            return False
        return (source_time or EPOCH, item_id or "") <= self.key

    def to_dict(self) -> dict:
        return {
            "last_source_time": self.source_time.isoformat() if self.source_time else None,
            "last_item_id": self.item_id,
            "page_token": self.page_token,
        }


def sync_stream_key(owner_id: str, resource_name: str) -> str:
    return f"reviews_sync:{owner_id}:{resource_name}"


def analysis_stream_key(owner_id: str, resource_name: str) -> str:
    return f"ai_tag:{owner_id}:{resource_name}"


class CursorStore:
    def __init__(self, session_factory: SessionFactory = SessionLocal,
                 retry_tries: int = settings.RETRY_TRIES,
                 retry_base: float = settings.RETRY_BASE_SECONDS):
        self.session_factory = session_factory
        self.retry_tries = retry_tries
        self.retry_base = retry_base

    def _retry(self, operation, label: str):
        return with_retry(operation, max_attempts=self.retry_tries,
                          base_delay=self.retry_base, label=label)

    def load(self, stream_key: str) -> CursorPosition:
        def _load():
            with session_scope(self.session_factory) as db:
                row = db.get(Cursor, stream_key)
                if row is None:
                    return CursorPosition()
                return CursorPosition(row.last_source_time, row.last_item_id, row.page_token)

        return self._retry(_load, f"cursor.load[{stream_key}]")

    def advance(self, stream_key: str, position: CursorPosition) -> CursorPosition:
        """
        Move the cursor forward to ``position`` and store its page token.
        A position at or below the stored one leaves time/id untouched.
        """
        def _advance():
            with session_scope(self.session_factory) as db:
                row = db.get(Cursor, stream_key)
                if row is None:
                    row = Cursor(stream_key=stream_key)
                    db.add(row)
                current = CursorPosition(row.last_source_time, row.last_item_id)
                if position.source_time is not None and position.is_after(current):
                    row.last_source_time = position.source_time
                    row.last_item_id = position.item_id
                row.page_token = position.page_token
                row.updated_at = utcnow()
                return CursorPosition(row.last_source_time, row.last_item_id, row.page_token)

        saved = self._retry(_advance, f"cursor.advance[{stream_key}]")
        logger.debug(f"Cursor {stream_key} -> {saved.to_dict()}")
        return saved

    def reset(self, stream_key: str) -> None:
        def _reset():
            with session_scope(self.session_factory) as db:
                row = db.get(Cursor, stream_key)
                if row is not None:
                    db.delete(row)

        self._retry(_reset, f"cursor.reset[{stream_key}]")
        logger.info(f"Cursor {stream_key} reset")

"""
Lease-based lock manager.

One row per resource key. A lease older than its TTL is stale and can be
taken over by any worker. This is a best-effort lease rather than a
linearizable mutex: the work it guards is an idempotent upsert, so the lock
only exists to avoid wasted duplicate work and upstream rate-limit pressure.

Errors while acquiring or releasing are logged and reported as "not
acquired", so a resource is skipped rather than processed without a lease.
"""

import logging
import uuid
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy import delete, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from config.settings import settings
from db.database import SessionFactory, SessionLocal, session_scope
from db.models import Lock, utcnow

logger = logging.getLogger(__name__)


class LockManager:
    def __init__(
        self,
        session_factory: SessionFactory = SessionLocal,
        ttl_seconds: int = settings.LOCK_TTL_SECONDS,
        holder: Optional[str] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        self.ttl_seconds = ttl_seconds
        self.holder = holder or uuid.uuid4().hex
        self.clock = clock

    def acquire(self, resource_key: str, ttl_seconds: Optional[int] = None) -> bool:
        """Grant the lease when absent or stale. Returns False otherwise."""
        ttl = self.ttl_seconds if ttl_seconds is None else ttl_seconds
        now = self.clock()
        cutoff = now - timedelta(seconds=ttl)
        try:
            with session_scope(self.session_factory) as db:
                taken = db.execute(
                    update(Lock)
                    .where(Lock.resource_key == resource_key, Lock.acquired_at < cutoff)
                    .values(acquired_at=now, holder=self.holder)
                )
                if taken.rowcount == 1:
                    logger.info(f"Lock {resource_key}: reclaimed stale lease")
                    return True
                if db.get(Lock, resource_key) is not None:
                    logger.info(f"Lock {resource_key}: held by another worker")
                    return False
                db.add(Lock(resource_key=resource_key, acquired_at=now, holder=self.holder))
                db.flush()
                return True
        except IntegrityError:
            logger.info(f"Lock {resource_key}: lost insert race")
            return False
        except SQLAlchemyError as e:
            logger.error(f"Lock {resource_key}: acquire failed, skipping resource: {e}")
            return False

    def release(self, resource_key: str, only_own: bool = True) -> bool:
        try:
            with session_scope(self.session_factory) as db:
                stmt = delete(Lock).where(Lock.resource_key == resource_key)
                if only_own:
                    stmt = stmt.where(Lock.holder == self.holder)
                return db.execute(stmt).rowcount > 0
        except SQLAlchemyError as e:
            logger.error(f"Lock {resource_key}: release failed: {e}")
            return False

    def reap_stale(self, max_age_seconds: Optional[int] = None) -> int:
        """Delete leases older than ``max_age_seconds`` left by crashed holders."""
        age = settings.STALE_SECONDS if max_age_seconds is None else max_age_seconds
        cutoff = self.clock() - timedelta(seconds=age)
        try:
            with session_scope(self.session_factory) as db:
                removed = db.execute(delete(Lock).where(Lock.acquired_at < cutoff)).rowcount
        except SQLAlchemyError as e:
            logger.error(f"Stale lock sweep failed: {e}")
            return 0
        if removed:
            logger.warning(f"Released {removed} stale lock(s)")
        return removed

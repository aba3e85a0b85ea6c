"""
SQLAlchemy ORM Models
Review Insights Pipeline
"""

from sqlalchemy import (
    Column, Integer, Float, String, Text, Boolean,
    DateTime, ForeignKey, JSON, Index, UniqueConstraint, text
)
from sqlalchemy.orm import relationship, declarative_base
from datetime import datetime, timezone

Base = declarative_base()


def utcnow() -> datetime:
    """Naive UTC timestamp, the storage convention for every DateTime column."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Resource(Base):
    __tablename__ = "resources"

    resource_id = Column(Integer, primary_key=True, autoincrement=True)
    owner_id = Column(String(64), nullable=False)
    resource_name = Column(String(255), nullable=False)
    account_name = Column(String(255))
    title = Column(String(255))
    sync_status = Column(String(20), default="idle")  # idle | running | done | error
    last_error = Column(Text)
    last_synced_at = Column(DateTime)
    created_at = Column(DateTime, default=utcnow)

    __table_args__ = (
        UniqueConstraint("owner_id", "resource_name", name="uq_resource_owner_name"),
    )

    @property
    def parent(self) -> str:
        if self.resource_name.startswith("accounts/") or not self.account_name:
            return self.resource_name
        return f"{self.account_name}/{self.resource_name}"


class Review(Base):
    __tablename__ = "reviews"

    review_id = Column(Integer, primary_key=True, autoincrement=True)
    owner_id = Column(String(64), nullable=False)
    resource_name = Column(String(255), nullable=False)
    external_review_id = Column(String(255), nullable=False)
    review_name = Column(String(500))
    author_name = Column(String(255))
    rating = Column(Integer)
    comment = Column(Text)
    create_time = Column(DateTime)
    update_time = Column(DateTime)
    reply_text = Column(Text)
    replied_at = Column(DateTime)
    status = Column(String(20), default="new")  # new | replied
    raw = Column(JSON)
    last_synced_at = Column(DateTime, default=utcnow)

    insight = relationship("ReviewInsight", back_populates="review", uselist=False)
    draft = relationship("ReplyDraft", back_populates="review", uselist=False)

    __table_args__ = (
        UniqueConstraint(
            "owner_id", "resource_name", "external_review_id", name="uq_review_identity"
        ),
        Index("ix_review_resource_time", "owner_id", "resource_name", "update_time"),
    )

    @property
    def source_time(self):
        return self.update_time or self.create_time

    @property
    def has_manual_reply(self) -> bool:
        return bool((self.reply_text or "").strip())


class ReviewInsight(Base):
    __tablename__ = "review_insights"

    insight_id = Column(Integer, primary_key=True, autoincrement=True)
    review_id = Column(Integer, ForeignKey("reviews.review_id"), nullable=False, unique=True)
    owner_id = Column(String(64))
    resource_name = Column(String(255))
    sentiment = Column(String(20))
    sentiment_score = Column(Float)
    summary = Column(String(255))
    topics = Column(JSON)
    model = Column(String(100))
    error = Column(Text)
    source_update_time = Column(DateTime)
    processed_at = Column(DateTime, default=utcnow)

    review = relationship("Review", back_populates="insight")


class Tag(Base):
    __tablename__ = "tags"

    tag_id = Column(Integer, primary_key=True, autoincrement=True)
    tag = Column(String(255), nullable=False, unique=True)  # normalized form
    label = Column(String(255))
    category = Column(String(50))
    created_at = Column(DateTime, default=utcnow)


class ReviewTag(Base):
    __tablename__ = "review_tags"

    link_id = Column(Integer, primary_key=True, autoincrement=True)
    review_id = Column(Integer, ForeignKey("reviews.review_id"), nullable=False)
    tag_id = Column(Integer, ForeignKey("tags.tag_id"), nullable=False)
    polarity = Column(Float)
    confidence = Column(Float)
    evidence = Column(String(255))
    created_at = Column(DateTime, default=utcnow)

    tag = relationship("Tag")

    __table_args__ = (
        UniqueConstraint("review_id", "tag_id", name="uq_review_tag"),
    )


class ReplyDraft(Base):
    __tablename__ = "reply_drafts"

    draft_id = Column(Integer, primary_key=True, autoincrement=True)
    review_id = Column(Integer, ForeignKey("reviews.review_id"), nullable=False, unique=True)
    owner_id = Column(String(64))
    resource_name = Column(String(255))
    draft_text = Column(Text)
    mode = Column(String(20), default="draft")      # draft | automation | test
    status = Column(String(20), default="draft")    # draft | edited | sent
    tone = Column(String(50))
    identity_hash = Column(String(64))
    model = Column(String(100))
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    review = relationship("Review", back_populates="draft")


class ReviewReply(Base):
    __tablename__ = "review_replies"

    reply_id = Column(Integer, primary_key=True, autoincrement=True)
    review_id = Column(Integer, ForeignKey("reviews.review_id"), nullable=False)
    owner_id = Column(String(64))
    source = Column(String(50), default="platform")
    reply_text = Column(Text)
    status = Column(String(20), default="sent")
    sent_at = Column(DateTime)

    __table_args__ = (
        UniqueConstraint("review_id", "status", name="uq_review_reply_status"),
    )


class VoiceIdentity(Base):
    __tablename__ = "voice_identities"

    identity_id = Column(Integer, primary_key=True, autoincrement=True)
    owner_id = Column(String(64), nullable=False)
    resource_name = Column(String(255))  # NULL = owner default
    enabled = Column(Boolean, default=True)
    tone = Column(String(50))
    language_level = Column(String(20))
    context = Column(Text)
    use_emojis = Column(Boolean, default=False)
    forbidden_words = Column(JSON)
    signature = Column(String(255))
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("owner_id", "resource_name", name="uq_identity_scope"),
    )


class Job(Base):
    __tablename__ = "jobs"

    job_id = Column(Integer, primary_key=True, autoincrement=True)
    review_id = Column(Integer, ForeignKey("reviews.review_id"), nullable=False)
    status = Column(String(20), nullable=False, default="pending")  # pending | processing | done | error
    payload = Column(JSON)
    attempts = Column(Integer, default=0)
    error = Column(Text)
    created_at = Column(DateTime, default=utcnow)
    started_at = Column(DateTime)
    finished_at = Column(DateTime)

    __table_args__ = (
        Index("ix_jobs_status_created", "status", "created_at"),
        Index(
            "uq_jobs_active_review",
            "review_id",
            unique=True,
            sqlite_where=text("status IN ('pending', 'processing')"),
            postgresql_where=text("status IN ('pending', 'processing')"),
        ),
    )


class Cursor(Base):
    __tablename__ = "cursors"

    stream_key = Column(String(500), primary_key=True)
    last_source_time = Column(DateTime)
    last_item_id = Column(String(255))
    page_token = Column(String(1000))
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class Lock(Base):
    __tablename__ = "locks"

    resource_key = Column(String(500), primary_key=True)
    holder = Column(String(64))
    acquired_at = Column(DateTime, nullable=False)


class RunRecord(Base):
    __tablename__ = "run_history"

    run_id = Column(Integer, primary_key=True, autoincrement=True)
    request_id = Column(String(64))
    scope = Column(String(255), default="all")
    mode = Column(String(20))
    started_at = Column(DateTime, default=utcnow)
    finished_at = Column(DateTime)
    duration_ms = Column(Integer)
    processed = Column(Integer, default=0)
    tagged = Column(Integer, default=0)
    errors_count = Column(Integer, default=0)
    aborted = Column(Boolean, default=False)
    skip_reason = Column(String(100))
    last_error = Column(Text)
    meta = Column(JSON)

    __table_args__ = (Index("ix_run_history_started", "started_at"),)

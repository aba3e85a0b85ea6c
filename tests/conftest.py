"""
Shared fixtures: in-memory database, fake upstream APIs and clocks.
Run with: python -m pytest tests/ -v
"""

import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
os.environ.setdefault("DATABASE_URL", "sqlite://")

import json
from datetime import datetime, timedelta
from typing import Dict, List, Optional

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from db.database import init_db, session_scope
from db.models import Resource, Review
from models.schemas import ReviewPage
from services.review_api import ResourceNotFoundError, map_review


# ─── Clocks ──────────────────────────────────────────────────────────────────

class FakeClock:
    """Monotonic-style clock (seconds as float) advanced by hand."""

    def __init__(self, start: float = 0.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeWallClock:
    """Naive-UTC datetime clock advanced by hand; each read ticks one microsecond."""

    def __init__(self, start: datetime = datetime(2024, 5, 1, 12, 0, 0)):
        self.now = start

    def __call__(self) -> datetime:
        self.now += timedelta(microseconds=1)
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


# ─── Upstream fakes ──────────────────────────────────────────────────────────

def raw_review(review_id: str, update_time: str, comment: Optional[str] = "Great place",
               rating: str = "FIVE", reply: Optional[str] = None, **extra) -> dict:
    raw = {
        "name": f"accounts/1/locations/1/reviews/{review_id}",
        "reviewId": review_id,
        "reviewer": {"displayName": f"Author {review_id}"},
        "starRating": rating,
        "createTime": update_time,
        "updateTime": update_time,
    }
    if comment is not None:
        raw["comment"] = comment
    if reply:
        raw["reviewReply"] = {"comment": reply, "updateTime": update_time}
    raw.update(extra)
    return raw


class FakeReviewApi:
    """Serves pre-built pages per parent. Page tokens are page indexes."""

    def __init__(self, pages: Dict[str, List[List[dict]]], not_found=()):
        self.pages = pages
        self.not_found = set(not_found)
        self.calls = []

    def fetch_page(self, parent: str, page_token: Optional[str] = None) -> ReviewPage:
        self.calls.append((parent, page_token))
        if parent in self.not_found or parent not in self.pages:
            raise ResourceNotFoundError(f"Resource {parent} not found upstream", status=404)
        index = int(page_token or 0)
        pages = self.pages[parent]
        rows = pages[index] if index < len(pages) else []
        records = [r for r in (map_review(raw) for raw in rows) if r is not None]
        next_token = str(index + 1) if index + 1 < len(pages) else None
        return ReviewPage(reviews=records, next_page_token=next_token)


def analysis_json(sentiment="positive", score=0.8, summary="Happy customer",
                  topics=None) -> str:
    if topics is None:
        topics = [
            {"name": "Friendly staff", "polarity": 0.9, "confidence": 0.8,
             "evidence": "staff was lovely", "category": "service"},
            {"name": "Quick service", "polarity": 0.7, "confidence": 0.6,
             "evidence": "", "category": "waiting"},
        ]
    return json.dumps({"sentiment": sentiment, "sentiment_score": score,
                       "summary": summary, "topics": topics})


class FakeLlm:
    """
    Stand-in for LlmClient. Analysis requests (with a JSON schema) pop from
    ``analysis_outputs`` (str or exception) and fall back to ``analysis_json()``;
    reply requests return ``reply_text``.
    """

    model = "fake-model"

    def __init__(self, analysis_outputs=None, reply_text="Thank you for visiting us.",
                 clock: Optional[FakeClock] = None, seconds_per_analysis: float = 0.0):
        self.analysis_outputs = list(analysis_outputs or [])
        self.reply_text = reply_text
        self.clock = clock
        self.seconds_per_analysis = seconds_per_analysis
        self.analysis_calls = []
        self.reply_calls = []

    def complete(self, system, user, json_schema=None, schema_name="result", model=None):
        if json_schema is None:
            self.reply_calls.append((system, user))
            if isinstance(self.reply_text, Exception):
                raise self.reply_text
            return self.reply_text
        self.analysis_calls.append(user)
        if self.clock is not None:
            self.clock.advance(self.seconds_per_analysis)
        if self.analysis_outputs:
            out = self.analysis_outputs.pop(0)
            if isinstance(out, Exception):
                raise out
            return out
        return analysis_json()


def no_sleep(_seconds):
    return None


# ─── Database ────────────────────────────────────────────────────────────────

@pytest.fixture
def engine():
    eng = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(bind=eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autoflush=False, bind=engine)


@pytest.fixture
def wall_clock():
    return FakeWallClock()


@pytest.fixture
def clock():
    return FakeClock()


def add_resource(session_factory, name: str, owner: str = "owner-1") -> None:
    with session_scope(session_factory) as db:
        db.add(Resource(owner_id=owner, resource_name=name))


def add_review(session_factory, external_id: str, resource: str = "R1", owner: str = "owner-1",
               comment: Optional[str] = "Lovely staff, quick service",
               update_time: Optional[datetime] = None, rating: int = 5,
               reply_text: Optional[str] = None) -> int:
    when = update_time or datetime(2024, 1, 1, 10, 0, 0)
    with session_scope(session_factory) as db:
        review = Review(owner_id=owner, resource_name=resource, external_review_id=external_id,
                        comment=comment, rating=rating, create_time=when, update_time=when,
                        reply_text=reply_text)
        db.add(review)
        db.flush()
        return review.review_id

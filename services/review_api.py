"""
Review API client
------------------
Thin HTTP wrapper over the upstream review platform.

    GET {base}/{parent}/reviews?pageSize=&orderBy=updateTime asc&pageToken=
    -> {"reviews": [...], "nextPageToken": "..."}

Every page fetch runs under the shared retry executor. A 404 is surfaced as
``ResourceNotFoundError`` so the caller can mark the resource and move on.
"""

import logging
import re
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import requests

from config.settings import settings
from models.schemas import ReviewPage, ReviewRecord
from utils.retry import UpstreamError, with_retry

logger = logging.getLogger(__name__)

STAR_RATINGS = {"ONE": 1, "TWO": 2, "THREE": 3, "FOUR": 4, "FIVE": 5}

_FRACTION = re.compile(r"(\.\d{6})\d+")


class ResourceNotFoundError(UpstreamError):
    """The upstream API does not know this resource."""


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """RFC 3339 (``Z`` suffix, up to nanosecond precision) to naive UTC."""
    if not value or not isinstance(value, str):
        return None
    text = _FRACTION.sub(r"\1", value.strip())
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def map_rating(star_rating: Any) -> Optional[int]:
    if isinstance(star_rating, int) and 1 <= star_rating <= 5:
        return star_rating
    return STAR_RATINGS.get(str(star_rating or "").upper())


def _comment(raw: Dict[str, Any]) -> Optional[str]:
    # Prefer the untranslated text when the platform offers one.
    original = raw.get("comment_original")
    if isinstance(original, str) and original.strip():
        return original
    original_text = raw.get("originalText")
    if isinstance(original_text, dict) and isinstance(original_text.get("text"), str):
        return original_text["text"]
    comment = raw.get("comment")
    return comment if isinstance(comment, str) else None


def map_review(raw: Dict[str, Any]) -> Optional[ReviewRecord]:
    """Map one upstream review; returns None when it has no usable id or timestamp."""
    name = raw.get("name") or ""
    external_id = raw.get("reviewId") or (name.split("/")[-1] if name else "")
    if not external_id:
        return None
    create_time = parse_timestamp(raw.get("createTime"))
    update_time = parse_timestamp(raw.get("updateTime"))
    if create_time is None and update_time is None:
        return None

    reply = raw.get("reviewReply") or {}
    reply_text = reply.get("comment") if isinstance(reply, dict) else None
    return ReviewRecord(
        external_review_id=str(external_id),
        review_name=name or None,
        author_name=(raw.get("reviewer") or {}).get("displayName"),
        rating=map_rating(raw.get("starRating")),
        comment=_comment(raw),
        create_time=create_time,
        update_time=update_time,
        reply_text=reply_text if isinstance(reply_text, str) and reply_text.strip() else None,
        replied_at=parse_timestamp(reply.get("updateTime")) if isinstance(reply, dict) else None,
        raw=raw,
    )


class ReviewApiClient:
    def __init__(
        self,
        base_url: str = settings.REVIEW_API_BASE_URL,
        token: Optional[str] = settings.REVIEW_API_TOKEN,
        page_size: int = settings.REVIEW_PAGE_SIZE,
        timeout: float = settings.REQUEST_TIMEOUT,
        session: Optional[requests.Session] = None,
        max_attempts: int = settings.RETRY_TRIES,
        base_delay: float = settings.RETRY_BASE_SECONDS,
    ):
        self.base_url = base_url.rstrip("/")
        self.page_size = page_size
        self.timeout = timeout
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.session = session or requests.Session()
        if token:
            self.session.headers.update({"Authorization": f"Bearer {token}"})

    def _get(self, parent: str, page_token: Optional[str]) -> Dict[str, Any]:
        params = {"pageSize": self.page_size, "orderBy": "updateTime asc"}
        if page_token:
            params["pageToken"] = page_token
        url = f"{self.base_url}/{parent.strip('/')}/reviews"
        resp = self.session.get(url, params=params, timeout=self.timeout)
        content_type = resp.headers.get("content-type", "")

        if resp.status_code == 404:
            raise ResourceNotFoundError(
                f"Resource {parent} not found upstream", status=404,
                content_type=content_type, body=resp.text[:200],
            )
        if not resp.ok:
            raise UpstreamError(
                f"Review API error {resp.status_code}: {resp.text[:200]}",
                status=resp.status_code, content_type=content_type, body=resp.text[:200],
            )
        if "application/json" not in content_type.lower():
            raise UpstreamError(
                f"Review API returned {content_type or 'no content type'} instead of JSON",
                status=resp.status_code, content_type=content_type, body=resp.text[:200],
            )
        try:
            return resp.json()
        except ValueError as e:
            raise UpstreamError(f"Review API returned invalid JSON: {e}",
                                status=resp.status_code) from e

    def fetch_page(self, parent: str, page_token: Optional[str] = None) -> ReviewPage:
        payload = with_retry(
            lambda: self._get(parent, page_token),
            max_attempts=self.max_attempts,
            base_delay=self.base_delay,
            label=f"reviews.list[{parent}]",
        )
        raw_reviews = payload.get("reviews") or []
        records = [r for r in (map_review(raw) for raw in raw_reviews) if r is not None]
        dropped = len(raw_reviews) - len(records)
        if dropped:
            logger.debug(f"{parent}: dropped {dropped} review(s) without id or timestamp")
        return ReviewPage(reviews=records, next_page_token=payload.get("nextPageToken") or None)

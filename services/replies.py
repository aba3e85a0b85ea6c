"""
Reply Draft Generation
-----------------------
Resolves the voice identity for a review, asks the LLM for a short reply and
stores it as a draft.

Identity precedence:
  trusted override > per-resource record > per-owner record > built-in default

Drafts already touched by a human (status ``edited`` or ``sent``), drafts
with text, and reviews that already carry a reply on the platform are never
regenerated.
"""

import hashlib
import json
import logging
import re
from dataclasses import asdict, dataclass, field, replace
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from sqlalchemy import select

from config.settings import settings
from db.database import SessionFactory, SessionLocal, session_scope
from db.models import ReplyDraft, Review, VoiceIdentity, utcnow
from services.llm import LlmClient
from utils.retry import with_retry

logger = logging.getLogger(__name__)

TONES = ("professional", "friendly", "warm", "formal")
LANGUAGE_LEVELS = ("formal", "informal")
FALLBACK_REPLY = "Thank you for your review."
PROTECTED_STATUSES = ("edited", "sent")

_EMOJI = re.compile(
    "["
    "\U0001F1E6-\U0001F1FF"   # regional indicators (flags)
    "\U0001F300-\U0001FAFF"   # pictographs, emoticons, transport, supplemental symbols
    "\U00002600-\U000027BF"   # misc symbols, dingbats
    "\U00002B50\U00002B55\U0000231A\U0000231B\U000023E9-\U000023FA"
    "\U0000FE0F\U0000200D"    # variation selector, zero-width joiner
    "]+"
)


class MissingIdentityError(Exception):
    """Strict identity mode was requested and no identity record exists."""


class IdentityOverrideNotAllowed(Exception):
    """An identity override was supplied on an untrusted call path."""


# ─── Identity ────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class VoiceProfile:
    tone: str = "formal"
    language_level: str = "formal"
    context: Optional[str] = None
    use_emojis: bool = False
    forbidden_words: Tuple[str, ...] = field(default_factory=tuple)
    signature: Optional[str] = None
    source: str = "default"     # default | owner | resource | override

    @property
    def content_hash(self) -> str:
        """SHA-256 of the configuration that shapes a reply (``source`` excluded)."""
        data = asdict(self)
        data.pop("source")
        data["forbidden_words"] = list(self.forbidden_words)
        canonical = json.dumps(data, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()

    @classmethod
    def from_record(cls, record: VoiceIdentity, source: str) -> "VoiceProfile":
        tone = record.tone if record.tone in TONES else "formal"
        level = record.language_level if record.language_level in LANGUAGE_LEVELS else "formal"
        words = tuple(w.strip() for w in (record.forbidden_words or []) if w and w.strip())
        return cls(
            tone=tone,
            language_level=level,
            context=(record.context or "").strip() or None,
            use_emojis=bool(record.use_emojis),
            forbidden_words=words,
            signature=(record.signature or "").strip() or None,
            source=source,
        )


DEFAULT_PROFILE = VoiceProfile()


class IdentityCache:
    """Per-run memo of identity lookups. Create one per trigger run, then drop it."""

    def __init__(self):
        self._entries: Dict[Tuple[str, Optional[str]], Optional[VoiceProfile]] = {}
        self.hits = 0

    def get_or_load(self, key: Tuple[str, Optional[str]],
                    loader: Callable[[], Optional[VoiceProfile]]) -> Optional[VoiceProfile]:
        if key in self._entries:
            self.hits += 1
            return self._entries[key]
        value = loader()
        self._entries[key] = value
        return value

    def __len__(self):
        return len(self._entries)


class IdentityResolver:
    def __init__(self, session_factory: SessionFactory = SessionLocal,
                 cache: Optional[IdentityCache] = None):
        self.session_factory = session_factory
        self.cache = cache if cache is not None else IdentityCache()

    def _load(self, owner_id: str, resource_name: Optional[str]) -> Optional[VoiceProfile]:
        with session_scope(self.session_factory) as db:
            query = select(VoiceIdentity).where(VoiceIdentity.owner_id == owner_id)
            if resource_name is None:
                query = query.where(VoiceIdentity.resource_name.is_(None))
            else:
                query = query.where(VoiceIdentity.resource_name == resource_name)
            record = db.execute(query).scalar()
            if record is None or record.enabled is False:
                return None
            return VoiceProfile.from_record(record, "resource" if resource_name else "owner")

    def _lookup(self, owner_id: str, resource_name: Optional[str]) -> Optional[VoiceProfile]:
        return self.cache.get_or_load(
            (owner_id, resource_name), lambda: self._load(owner_id, resource_name)
        )

    def resolve(
        self,
        owner_id: str,
        resource_name: Optional[str] = None,
        override: Optional[VoiceProfile] = None,
        trusted: bool = False,
        strict: bool = False,
    ) -> VoiceProfile:
        if override is not None:
            if not trusted:
                raise IdentityOverrideNotAllowed(
                    "identity override is only accepted from trusted callers"
                )
            return replace(override, source="override")

        if resource_name:
            profile = self._lookup(owner_id, resource_name)
            if profile is not None:
                return profile
        profile = self._lookup(owner_id, None)
        if profile is not None:
            return profile
        if strict:
            raise MissingIdentityError(
                f"no voice identity configured for owner {owner_id}"
                + (f" / resource {resource_name}" if resource_name else "")
            )
        return DEFAULT_PROFILE


# ─── Text post-processing ────────────────────────────────────────────────────


def strip_emojis(text: str) -> str:
    return _EMOJI.sub("", text)


def remove_forbidden_words(text: str, words: Sequence[str]) -> str:
    """
    Case-insensitive removal. Words that start and end with a word character
    are matched whole-word; anything else (punctuation, symbols) as a substring.
    """
    for word in words:
        word = (word or "").strip()
        if not word:
            continue
        escaped = re.escape(word)
        if re.match(r"\w", word) and re.search(r"\w$", word):
            pattern = rf"\b{escaped}\b"
        else:
            pattern = escaped
        text = re.sub(pattern, "", text, flags=re.IGNORECASE)
    return text


def clean_reply(text: str, profile: VoiceProfile) -> str:
    reply = (text or "").strip()
    if not profile.use_emojis:
        reply = strip_emojis(reply)
    reply = remove_forbidden_words(reply, profile.forbidden_words)
    reply = re.sub(r"\s{2,}", " ", reply)
    reply = re.sub(r"\s+([,.!?;:])", r"\1", reply).strip()
    return reply or FALLBACK_REPLY


# ─── Prompting ───────────────────────────────────────────────────────────────


def build_system_prompt(profile: VoiceProfile) -> str:
    rules = [
        "You write replies to customer reviews on behalf of a local business.",
        "Never invent details that are not present in the review.",
        "No markdown, no lists, no bullet points.",
        "Reply in 2 to 4 sentences at most.",
        "Reply in the same language as the review.",
        "Address the customer formally." if profile.language_level == "formal"
        else "Address the customer informally.",
        "Emojis are allowed in moderation." if profile.use_emojis else "Do not use any emoji.",
    ]
    if profile.context:
        rules.append("Weave in the business context naturally, without quoting it verbatim.")
    if profile.signature:
        rules.append(f"End the reply with this signature: {profile.signature}")
    if profile.forbidden_words:
        rules.append(f"Never use these words: {', '.join(profile.forbidden_words)}.")
    return " ".join(rules)


def build_user_prompt(
    review_text: str,
    rating: Optional[int],
    profile: VoiceProfile,
    summary: Optional[str] = None,
    tags: Optional[List[str]] = None,
) -> str:
    parts = [
        f"Review: {review_text.strip() or 'Review without comment.'}",
        f"Rating: {rating if rating is not None else 'unknown'}",
        f"Tone: {profile.tone}",
    ]
    if profile.context:
        parts.append(f"Context: {profile.context}")
    if summary:
        parts.append(f"Analysis summary: {summary}")
    if tags:
        parts.append(f"Topics: {', '.join(tags)}")
    return "\n".join(parts)


# ─── Drafts ──────────────────────────────────────────────────────────────────


def draft_skip_reason(review: Review, draft: Optional[ReplyDraft]) -> Optional[str]:
    """Why a review must not get a (new) generated draft, or None."""
    if review.has_manual_reply:
        return "manual_reply"
    if draft is None:
        return None
    if draft.status in PROTECTED_STATUSES:
        return f"draft_{draft.status}"
    if (draft.draft_text or "").strip():
        return "draft_exists"
    return None


@dataclass
class DraftOutcome:
    created: bool
    skip_reason: Optional[str] = None
    identity_hash: Optional[str] = None


class ReplyGenerator:
    def __init__(
        self,
        llm: LlmClient,
        resolver: IdentityResolver,
        session_factory: SessionFactory = SessionLocal,
        model: Optional[str] = None,
        mode: str = settings.DRAFT_MODE,
        max_attempts: int = settings.AI_RETRY_TRIES,
        base_delay: float = settings.AI_RETRY_BASE_SECONDS,
        sleep: Optional[Callable[[float], object]] = None,
    ):
        self.llm = llm
        self.resolver = resolver
        self.session_factory = session_factory
        self.model = model or settings.reply_model
        self.mode = mode
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.sleep = sleep

    def generate(
        self,
        review_text: str,
        rating: Optional[int],
        profile: VoiceProfile,
        summary: Optional[str] = None,
        tags: Optional[List[str]] = None,
    ) -> str:
        system = build_system_prompt(profile)
        user = build_user_prompt(review_text, rating, profile, summary, tags)
        retry_kwargs = {"sleep": self.sleep} if self.sleep is not None else {}
        raw = with_retry(
            lambda: self.llm.complete(system, user, model=self.model),
            max_attempts=self.max_attempts,
            base_delay=self.base_delay,
            label="llm.reply",
            **retry_kwargs,
        )
        return clean_reply(raw, profile)

    def draft_for_review(
        self,
        review_id: int,
        summary: Optional[str] = None,
        tags: Optional[List[str]] = None,
        strict: bool = False,
    ) -> DraftOutcome:
        """Generate and store a draft unless the review is protected."""
        with session_scope(self.session_factory) as db:
            review = db.get(Review, review_id)
            if review is None:
                return DraftOutcome(created=False, skip_reason="review_not_found")
            reason = draft_skip_reason(review, review.draft)
            if reason:
                return DraftOutcome(created=False, skip_reason=reason)
            owner_id, resource_name = review.owner_id, review.resource_name
            text, rating = review.comment or "", review.rating

        profile = self.resolver.resolve(owner_id, resource_name, strict=strict)
        reply = self.generate(text, rating, profile, summary, tags)

        with session_scope(self.session_factory) as db:
            review = db.get(Review, review_id)
            draft = review.draft
            # Re-check: a human may have replied or edited while we were generating.
            reason = draft_skip_reason(review, draft)
            if reason:
                return DraftOutcome(created=False, skip_reason=reason)
            if draft is None:
                draft = ReplyDraft(review_id=review_id, owner_id=owner_id,
                                   resource_name=resource_name, created_at=utcnow())
                db.add(draft)
            draft.draft_text = reply
            draft.mode = self.mode
            draft.status = "draft"
            draft.tone = profile.tone
            draft.identity_hash = profile.content_hash
            draft.model = self.model
            draft.updated_at = utcnow()

        logger.info(f"Draft stored for review {review_id} (identity={profile.source})")
        return DraftOutcome(created=True, identity_hash=profile.content_hash)

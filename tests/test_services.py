"""
Upstream clients, insight normalisation and reply drafting tests.
"""

import json
from datetime import datetime

import pytest
from pydantic import ValidationError

from db.database import session_scope
from db.models import ReplyDraft, VoiceIdentity
from models.insights import (
    TopicResult, normalize_analysis, normalize_tag, normalize_topics, parse_analysis,
)
from services.llm import LlmClient, MalformedCompletionError, extract_output_text
from services.replies import (
    DEFAULT_PROFILE, FALLBACK_REPLY, IdentityCache, IdentityOverrideNotAllowed,
    IdentityResolver, MissingIdentityError, ReplyGenerator, VoiceProfile,
    clean_reply, remove_forbidden_words, strip_emojis,
)
from services.review_api import (
    ResourceNotFoundError, ReviewApiClient, map_review, parse_timestamp,
)
from utils.retry import RetryExhaustedError, UpstreamError

from conftest import FakeLlm, add_review, analysis_json, raw_review


# ─── HTTP doubles ────────────────────────────────────────────────────────────

class FakeResponse:
    def __init__(self, status_code=200, payload=None, content_type="application/json", text=None):
        self.status_code = status_code
        self._payload = payload
        self.headers = {"content-type": content_type}
        self.text = text if text is not None else json.dumps(payload)

    @property
    def ok(self):
        return 200 <= self.status_code < 400

    def json(self):
        if self._payload is None:
            raise ValueError("no json")
        return self._payload


class FakeSession:
    def __init__(self, responses):
        self.responses = list(responses)
        self.headers = {}
        self.requests = []

    def _next(self, method, url, **kwargs):
        self.requests.append((method, url, kwargs))
        return self.responses.pop(0)

    def get(self, url, **kwargs):
        return self._next("GET", url, **kwargs)

    def post(self, url, **kwargs):
        return self._next("POST", url, **kwargs)


# ─── Review API ──────────────────────────────────────────────────────────────

class TestReviewMapping:
    def test_parse_timestamp_nanoseconds(self):
        parsed = parse_timestamp("2024-03-05T10:11:12.123456789Z")
        assert parsed == datetime(2024, 3, 5, 10, 11, 12, 123456)
        assert parsed.tzinfo is None

    def test_parse_timestamp_offset_converted_to_utc(self):
        assert parse_timestamp("2024-03-05T12:00:00+02:00") == datetime(2024, 3, 5, 10, 0, 0)

    def test_parse_timestamp_invalid(self):
        assert parse_timestamp("yesterday") is None
        assert parse_timestamp(None) is None

    def test_map_review_fields(self):
        raw = raw_review("abc", "2024-01-01T10:00:00Z", comment="Translated",
                         rating="FOUR", reply="Thanks!",
                         originalText={"text": "Original"})
        record = map_review(raw)
        assert record.external_review_id == "abc"
        assert record.rating == 4
        assert record.comment == "Original"
        assert record.author_name == "Author abc"
        assert record.reply_text == "Thanks!"

    def test_map_review_id_from_name(self):
        raw = raw_review("xyz", "2024-01-01T10:00:00Z")
        del raw["reviewId"]
        assert map_review(raw).external_review_id == "xyz"

    def test_map_review_drops_rows_without_timestamp(self):
        raw = raw_review("abc", "2024-01-01T10:00:00Z")
        del raw["createTime"]
        del raw["updateTime"]
        assert map_review(raw) is None

    def test_unspecified_rating(self):
        assert map_review(raw_review("a", "2024-01-01T10:00:00Z", rating="STAR_RATING_UNSPECIFIED")).rating is None


class TestReviewApiClient:
    def _client(self, responses):
        session = FakeSession(responses)
        client = ReviewApiClient(base_url="https://api.test/v4", token="t", session=session,
                                 base_delay=0)
        return client, session

    def test_fetch_page(self):
        payload = {"reviews": [raw_review("a", "2024-01-01T10:00:00Z")], "nextPageToken": "n2"}
        client, session = self._client([FakeResponse(200, payload)])
        page = client.fetch_page("accounts/1/locations/2", "n1")
        assert [r.external_review_id for r in page.reviews] == ["a"]
        assert page.next_page_token == "n2"
        method, url, kwargs = session.requests[0]
        assert url == "https://api.test/v4/accounts/1/locations/2/reviews"
        assert kwargs["params"]["pageToken"] == "n1"
        assert kwargs["params"]["orderBy"] == "updateTime asc"
        assert session.headers["Authorization"] == "Bearer t"

    def test_404_is_not_retried(self):
        client, session = self._client([FakeResponse(404, {"error": "nope"})])
        with pytest.raises(ResourceNotFoundError):
            client.fetch_page("accounts/1/locations/404")
        assert len(session.requests) == 1

    def test_transient_then_success(self):
        client, session = self._client([
            FakeResponse(503, {"error": "busy"}),
            FakeResponse(200, None, content_type="text/html", text="<html>520</html>"),
            FakeResponse(200, {"reviews": []}),
        ])
        page = client.fetch_page("p")
        assert page.reviews == []
        assert page.next_page_token is None
        assert len(session.requests) == 3

    def test_exhausted(self):
        client, _ = self._client([FakeResponse(500, {"e": 1})] * 4)
        with pytest.raises(RetryExhaustedError) as exc_info:
            client.fetch_page("p")
        assert exc_info.value.attempts == 4


# ─── LLM client ──────────────────────────────────────────────────────────────

class TestLlmClient:
    def test_output_text_preferred(self):
        assert extract_output_text({"output_text": "hello", "output": []}) == "hello"

    def test_chunks_joined(self):
        payload = {"output": [{"content": [{"text": "a"}, {"type": "x"}]}, {"content": [{"text": "b"}]}]}
        assert extract_output_text(payload) == "a\nb"

    def test_unknown_shape(self):
        assert extract_output_text({"choices": []}) is None
        assert extract_output_text(["x"]) is None

    def test_complete_sends_schema(self):
        session = FakeSession([FakeResponse(200, {"id": "r1", "output_text": "{}"})])
        client = LlmClient(api_key="k", base_url="https://llm.test/v1", model="m", session=session)
        assert client.complete("sys", "user", json_schema={"type": "object"}, schema_name="s") == "{}"
        _, url, kwargs = session.requests[0]
        assert url == "https://llm.test/v1/responses"
        assert kwargs["json"]["text"]["format"]["strict"] is True
        assert kwargs["json"]["text"]["format"]["name"] == "s"

    def test_missing_text_is_malformed(self):
        session = FakeSession([FakeResponse(200, {"id": "r1", "output": []})])
        client = LlmClient(api_key="k", session=session)
        with pytest.raises(MalformedCompletionError):
            client.complete("sys", "user")

    def test_error_status(self):
        session = FakeSession([FakeResponse(429, {"error": "slow down"})])
        client = LlmClient(api_key="k", session=session)
        with pytest.raises(UpstreamError) as exc_info:
            client.complete("sys", "user")
        assert exc_info.value.status == 429


# ─── Insight normalisation ───────────────────────────────────────────────────

class TestInsights:
    def test_normalize_tag(self):
        assert normalize_tag("  Café   Crème ") == "cafe creme"
        assert normalize_tag("ÉQUIPE") == normalize_tag("equipe")

    def test_topics_deduplicated_clamped_and_capped(self):
        topics = [
            TopicResult(name="Friendly staff", polarity=3.0, confidence=-1, category="service",
                        evidence="x" * 200),
            TopicResult(name="friendly  STAFF", polarity=0.1),
            TopicResult(name="Prix élevé", polarity=-0.5, confidence=0.5, category="astrology"),
            TopicResult(name="   "),
            TopicResult(name="Parking"),
        ]
        result = normalize_topics(topics, max_topics=2, evidence_max=90)
        assert [t.name for t in result] == ["Friendly staff", "Prix élevé"]
        assert result[0].polarity == 1.0
        assert result[0].confidence == 0.0
        assert len(result[0].evidence) == 90
        assert result[1].category == "other"
        assert result[1].tag == "prix eleve"

    def test_analysis_clamped_and_truncated(self):
        parsed = parse_analysis(analysis_json(score=4.2, summary="s" * 400))
        analysis = normalize_analysis(parsed, "m")
        assert analysis.sentiment_score == 1.0
        assert len(analysis.summary) == 180
        assert analysis.model == "m"

    @pytest.mark.parametrize("text", [
        "not json",
        json.dumps({"sentiment": "ecstatic", "sentiment_score": 1, "summary": "", "topics": []}),
        json.dumps({"sentiment": "positive", "summary": "", "topics": []}),
        json.dumps({"sentiment": "positive", "sentiment_score": 1, "summary": "", "topics": [{"polarity": 1}]}),
    ])
    def test_malformed_rejected(self, text):
        with pytest.raises(ValidationError):
            parse_analysis(text)


# ─── Reply drafting ──────────────────────────────────────────────────────────

def _identity(session_factory, resource=None, owner="owner-1", **fields):
    with session_scope(session_factory) as db:
        db.add(VoiceIdentity(owner_id=owner, resource_name=resource, **fields))


class TestIdentityResolver:
    def test_default_when_nothing_configured(self, session_factory):
        profile = IdentityResolver(session_factory).resolve("owner-1", "R1")
        assert profile == DEFAULT_PROFILE
        assert profile.tone == "formal"
        assert profile.use_emojis is False
        assert profile.forbidden_words == ()

    def test_precedence(self, session_factory):
        _identity(session_factory, None, tone="friendly")
        _identity(session_factory, "R1", tone="warm")
        resolver = IdentityResolver(session_factory)
        assert resolver.resolve("owner-1", "R1").tone == "warm"
        assert resolver.resolve("owner-1", "R1").source == "resource"
        assert resolver.resolve("owner-1", "R2").tone == "friendly"
        override = VoiceProfile(tone="professional")
        assert resolver.resolve("owner-1", "R1", override=override, trusted=True).source == "override"

    def test_disabled_record_falls_through(self, session_factory):
        _identity(session_factory, "R1", tone="warm", enabled=False)
        _identity(session_factory, None, tone="friendly")
        assert IdentityResolver(session_factory).resolve("owner-1", "R1").tone == "friendly"

    def test_untrusted_override_rejected(self, session_factory):
        with pytest.raises(IdentityOverrideNotAllowed):
            IdentityResolver(session_factory).resolve("owner-1", "R1", override=VoiceProfile())

    def test_strict_without_record(self, session_factory):
        with pytest.raises(MissingIdentityError):
            IdentityResolver(session_factory).resolve("owner-1", "R1", strict=True)

    def test_cache_is_per_instance(self, session_factory):
        cache = IdentityCache()
        resolver = IdentityResolver(session_factory, cache)
        resolver.resolve("owner-1", "R1")
        resolver.resolve("owner-1", "R1")
        assert cache.hits == 2
        _identity(session_factory, "R1", tone="warm")
        assert resolver.resolve("owner-1", "R1").tone == "formal"
        assert IdentityResolver(session_factory, IdentityCache()).resolve("owner-1", "R1").tone == "warm"

    def test_content_hash(self):
        a = VoiceProfile(tone="warm", forbidden_words=("cheap",), source="owner")
        b = VoiceProfile(tone="warm", forbidden_words=("cheap",), source="resource")
        c = VoiceProfile(tone="friendly", forbidden_words=("cheap",))
        assert a.content_hash == b.content_hash
        assert a.content_hash != c.content_hash
        assert len(a.content_hash) == 64


class TestReplyCleaning:
    def test_strip_emojis(self):
        assert strip_emojis("Thanks \U0001F600\U0001F44D!") == "Thanks !"
        assert strip_emojis("Nice \U00002764\U0000FE0F") == "Nice "

    def test_forbidden_words_whole_word_case_insensitive(self):
        text = remove_forbidden_words("Cheap prices, not cheapskate. CHEAP!", ["cheap"])
        assert "cheapskate" in text
        assert "Cheap " not in text
        assert "CHEAP" not in text

    def test_forbidden_symbols_as_substring(self):
        assert "%" not in remove_forbidden_words("50% off", ["%"])

    def test_clean_reply(self):
        profile = VoiceProfile(forbidden_words=("cheap",))
        assert clean_reply("Thanks for the cheap \U0001F600 visit .", profile) == "Thanks for the visit."
        assert clean_reply("\U0001F600", profile) == FALLBACK_REPLY

    def test_emojis_kept_when_allowed(self):
        assert "\U0001F600" in clean_reply("Thanks \U0001F600", VoiceProfile(use_emojis=True))


class TestReplyGenerator:
    def _generator(self, session_factory, llm):
        return ReplyGenerator(llm, IdentityResolver(session_factory), session_factory=session_factory,
                              model="reply-model", base_delay=0, sleep=lambda s: None)

    def test_prompt_contents(self, session_factory):
        _identity(session_factory, "R1", tone="warm", context="Family bakery since 1950",
                  signature="The Bakery team", forbidden_words=["cheap"])
        llm = FakeLlm()
        generator = self._generator(session_factory, llm)
        profile = generator.resolver.resolve("owner-1", "R1")
        generator.generate("Bread was great", None, profile, summary="Loved bread", tags=["Bread"])
        system, user = llm.reply_calls[0]
        assert "2 to 4 sentences" in system
        assert "same language as the review" in system
        assert "Do not use any emoji" in system
        assert "cheap" in system
        assert "The Bakery team" in system
        assert "Rating: unknown" in user
        assert "Tone: warm" in user
        assert "Context: Family bakery since 1950" in user
        assert "Topics: Bread" in user

    def test_draft_created_with_identity_hash(self, session_factory):
        review_id = add_review(session_factory, "r1")
        generator = self._generator(session_factory, FakeLlm(reply_text="Thanks a lot \U0001F600"))
        outcome = generator.draft_for_review(review_id)
        assert outcome.created
        with session_scope(session_factory) as db:
            draft = db.query(ReplyDraft).filter_by(review_id=review_id).one()
            assert draft.draft_text == "Thanks a lot"
            assert draft.identity_hash == DEFAULT_PROFILE.content_hash
            assert draft.status == "draft"
            assert draft.model == "reply-model"

    @pytest.mark.parametrize("status,text", [("sent", "Sent reply"), ("edited", "Edited"), ("draft", "Existing")])
    def test_protected_drafts_untouched(self, session_factory, status, text):
        review_id = add_review(session_factory, "r1")
        with session_scope(session_factory) as db:
            db.add(ReplyDraft(review_id=review_id, draft_text=text, status=status))
        llm = FakeLlm()
        outcome = self._generator(session_factory, llm).draft_for_review(review_id)
        assert not outcome.created
        assert llm.reply_calls == []
        with session_scope(session_factory) as db:
            assert db.query(ReplyDraft).filter_by(review_id=review_id).one().draft_text == text

    def test_empty_draft_is_filled(self, session_factory):
        review_id = add_review(session_factory, "r1")
        with session_scope(session_factory) as db:
            db.add(ReplyDraft(review_id=review_id, draft_text="  ", status="draft"))
        outcome = self._generator(session_factory, FakeLlm()).draft_for_review(review_id)
        assert outcome.created
        with session_scope(session_factory) as db:
            assert db.query(ReplyDraft).count() == 1

    def test_manual_reply_skipped(self, session_factory):
        review_id = add_review(session_factory, "r1", reply_text="Thanks, the owner")
        outcome = self._generator(session_factory, FakeLlm()).draft_for_review(review_id)
        assert outcome.skip_reason == "manual_reply"

    def test_strict_mode(self, session_factory):
        review_id = add_review(session_factory, "r1")
        with pytest.raises(MissingIdentityError):
            self._generator(session_factory, FakeLlm()).draft_for_review(review_id, strict=True)

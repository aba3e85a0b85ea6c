"""
Structured AI analysis result.

The LLM is asked for JSON matching ``ANALYSIS_JSON_SCHEMA``; its text is then
validated into ``AnalysisResult``. Anything that does not validate is a
malformed completion, never a partially trusted one.
"""

from __future__ import annotations

import re
import unicodedata
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator

from config.settings import settings

SENTIMENTS = ("positive", "neutral", "negative", "mixed")

CATEGORIES = (
    "service",
    "product",
    "price",
    "waiting",
    "delivery",
    "cleanliness",
    "ambiance",
    "communication",
    "quality",
    "other",
)
DEFAULT_CATEGORY = "other"


ANALYSIS_JSON_SCHEMA = {
    "type": "object",
    "additionalProperties": False,
    "properties": {
        "sentiment": {"type": "string", "enum": list(SENTIMENTS)},
        "sentiment_score": {"type": "number"},
        "summary": {"type": "string"},
        "topics": {
            "type": "array",
            "items": {
                "type": "object",
                "additionalProperties": False,
                "properties": {
                    "name": {"type": "string"},
                    "polarity": {"type": "number"},
                    "confidence": {"type": "number"},
                    "evidence": {"type": "string"},
                    "category": {"type": "string", "enum": list(CATEGORIES)},
                },
                "required": ["name", "polarity", "confidence", "evidence", "category"],
            },
        },
    },
    "required": ["sentiment", "sentiment_score", "summary", "topics"],
}


def clamp(value: float, low: float, high: float) -> float:
    return min(high, max(low, value))


def normalize_tag(name: str) -> str:
    """Vocabulary key: accents stripped, case-folded, whitespace collapsed."""
    decomposed = unicodedata.normalize("NFKD", name or "")
    stripped = "".join(c for c in decomposed if not unicodedata.combining(c))
    return re.sub(r"\s+", " ", stripped.casefold()).strip()


class TopicResult(BaseModel):
    name: str
    polarity: Optional[float] = None
    confidence: Optional[float] = None
    evidence: Optional[str] = None
    category: Optional[str] = None


class AnalysisResult(BaseModel):
    sentiment: str
    sentiment_score: float
    summary: str = ""
    topics: List[TopicResult] = Field(default_factory=list)

    @field_validator("sentiment")
    @classmethod
    def _known_sentiment(cls, value: str) -> str:
        value = (value or "").strip().lower()
        if value not in SENTIMENTS:
            raise ValueError(f"unknown sentiment {value!r}")
        return value


class NormalizedTopic(BaseModel):
    name: str
    tag: str
    category: str = DEFAULT_CATEGORY
    polarity: Optional[float] = None
    confidence: Optional[float] = None
    evidence: Optional[str] = None


class NormalizedAnalysis(BaseModel):
    sentiment: str
    sentiment_score: float
    summary: str
    topics: List[NormalizedTopic]
    model: str

    def topics_json(self) -> list:
        return [t.model_dump() for t in self.topics]


def normalize_topics(topics: List[TopicResult],
                     max_topics: Optional[int] = None,
                     evidence_max: Optional[int] = None) -> List[NormalizedTopic]:
    """
    Deduplicate by normalized name (first occurrence wins), cap the count,
    clamp polarity to [-1, 1] and confidence to [0, 1], bound the evidence
    snippet and map unknown categories to ``other``.
    """
    cap = settings.AI_TAG_MAX_TOPICS if max_topics is None else max_topics
    evidence_cap = settings.EVIDENCE_MAX_CHARS if evidence_max is None else evidence_max
    seen = set()
    normalized: List[NormalizedTopic] = []
    for topic in topics or []:
        if len(normalized) >= cap:
            break
        name = re.sub(r"\s+", " ", (topic.name or "")).strip()
        tag = normalize_tag(name)
        if not tag or tag in seen:
            continue
        seen.add(tag)
        category = (topic.category or "").strip().lower()
        normalized.append(NormalizedTopic(
            name=name,
            tag=tag,
            category=category if category in CATEGORIES else DEFAULT_CATEGORY,
            polarity=None if topic.polarity is None else clamp(topic.polarity, -1.0, 1.0),
            confidence=None if topic.confidence is None else clamp(topic.confidence, 0.0, 1.0),
            evidence=topic.evidence.strip()[:evidence_cap] if topic.evidence and topic.evidence.strip() else None,
        ))
    return normalized


def normalize_analysis(result: AnalysisResult, model: str) -> NormalizedAnalysis:
    return NormalizedAnalysis(
        sentiment=result.sentiment,
        sentiment_score=clamp(result.sentiment_score, -1.0, 1.0),
        summary=(result.summary or "").strip()[:settings.SUMMARY_MAX_CHARS],
        topics=normalize_topics(result.topics),
        model=model,
    )


def parse_analysis(text: str) -> AnalysisResult:
    """Validate raw completion text. Raises ``ValidationError`` on any mismatch."""
    return AnalysisResult.model_validate_json(text)

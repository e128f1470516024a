#!/usr/bin/env python3
"""
Structured summary models and validation.

The generation service answers with free-form JSON. `parse_summary_response`
turns that text into a validated `Summary`, applying a small repair pass first
(confidence clamping, category normalisation). Anything that still fails
validation yields a degraded summary instead of an exception, so a malformed
response never leaves an item without a summary row.
"""

import json
import re
from typing import Any, Dict, List, Literal, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from config import get_logger
from utils import truncate_string

logger = get_logger("schema")

DEGRADED_HEADLINE = "Summary generation encountered an issue"
HEADLINE_MAX_LENGTH = 100
RELATED_IDEA_CATEGORIES = ("extension", "counterpoint", "application", "question")
DEFAULT_CONFIDENCE = 0.8
DERIVED_TAKEAWAY_CONFIDENCE = 0.7

_CODE_FENCE = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", re.DOTALL)


class _Model(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class KeyTakeaway(_Model):
    takeaway: str = Field(..., min_length=1)
    context: str = Field(..., min_length=1)
    actionable: Optional[str] = None
    confidence: float = Field(DEFAULT_CONFIDENCE, ge=0.0, le=1.0)
    source_quote: Optional[str] = Field(None, alias="sourceQuote")
    timestamp: Optional[str] = None


class RelatedIdea(_Model):
    idea: str = Field(..., min_length=1)
    connection: str = Field(..., min_length=1)
    category: Literal["extension", "counterpoint", "application", "question"]


class TriviaItem(_Model):
    fact: str = Field(..., min_length=1)
    relevance: str = Field(..., min_length=1)


class Speaker(_Model):
    name: str
    role: Optional[str] = None
    key_contributions: List[str] = Field(default_factory=list, alias="keyContributions")


class Summary(_Model):
    """The durable structured summary of one content item."""

    headline: str = Field(..., max_length=HEADLINE_MAX_LENGTH)
    tldr: str = Field(..., min_length=10)
    full_summary: str = Field(..., min_length=50, alias="fullSummary")
    key_points: List[str] = Field(default_factory=list, alias="keyPoints")
    key_takeaways: List[KeyTakeaway] = Field(default_factory=list, alias="keyTakeaways")
    related_ideas: List[RelatedIdea] = Field(default_factory=list, alias="relatedIdeas")
    allied_trivia: List[TriviaItem] = Field(default_factory=list, alias="alliedTrivia")
    speakers: Optional[List[Speaker]] = None
    topics_discussed: Optional[List[str]] = Field(None, alias="topicsDiscussed")

    def to_payload(self) -> Dict[str, Any]:
        """camelCase dict, the same shape the generation service is asked to produce."""
        return self.model_dump(by_alias=True, exclude_none=True)


def _clamp_confidence(value: Any) -> float:
    try:
        confidence = float(value)
    except (TypeError, ValueError):
        return DEFAULT_CONFIDENCE
    if confidence != confidence:  # NaN
        return DEFAULT_CONFIDENCE
    return min(max(confidence, 0.0), 1.0)


def repair_summary_data(data: Dict[str, Any]) -> Dict[str, Any]:
    """Fix the recoverable defects models commonly produce, leaving the rest to validation.

    - takeaway confidences are clamped into [0, 1]
    - related-idea categories are lower-cased; ideas with an unknown category are dropped
    - an over-long headline is shortened
    - non-string key points are discarded
    """
    repaired = dict(data)

    headline = repaired.get("headline")
    if isinstance(headline, str) and len(headline) > HEADLINE_MAX_LENGTH:
        repaired["headline"] = truncate_string(headline.strip(), HEADLINE_MAX_LENGTH)

    if isinstance(repaired.get("keyPoints"), list):
        repaired["keyPoints"] = [p for p in repaired["keyPoints"] if isinstance(p, str) and p.strip()]

    takeaways = repaired.get("keyTakeaways")
    if isinstance(takeaways, list):
        fixed = []
        for takeaway in takeaways:
            if isinstance(takeaway, dict):
                takeaway = dict(takeaway)
                if "confidence" in takeaway:
                    takeaway["confidence"] = _clamp_confidence(takeaway["confidence"])
            fixed.append(takeaway)
        repaired["keyTakeaways"] = fixed

    ideas = repaired.get("relatedIdeas")
    if isinstance(ideas, list):
        kept = []
        for idea in ideas:
            if isinstance(idea, dict) and isinstance(idea.get("category"), str):
                idea = dict(idea)
                idea["category"] = idea["category"].strip().lower()
                if idea["category"] not in RELATED_IDEA_CATEGORIES:
                    logger.debug(f"Dropping related idea with unknown category '{idea['category']}'")
                    continue
            kept.append(idea)
        repaired["relatedIdeas"] = kept

    return repaired


def validate_summary(data: Any) -> Tuple[Optional[Summary], List[str]]:
    """Validate a decoded payload. Returns (summary, []) or (None, errors)."""
    try:
        return Summary.model_validate(data), []
    except ValidationError as e:
        errors = [f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()]
        return None, errors


def create_degraded_summary(raw_text: str) -> Summary:
    """A schema-shaped summary that carries the raw response text."""
    raw_text = raw_text or ""
    body = raw_text if raw_text.strip() else "The generation service returned an empty response."
    return Summary.model_construct(
        headline=DEGRADED_HEADLINE,
        tldr=body[:500],
        full_summary=body,
        key_points=[],
        key_takeaways=[],
        related_ideas=[],
        allied_trivia=[],
        speakers=None,
        topics_discussed=None,
    )


def _strip_code_fence(text: str) -> str:
    text = text.strip()
    match = _CODE_FENCE.match(text)
    return match.group(1) if match else text


def parse_summary_response(raw_text: str) -> Tuple[Summary, bool]:
    """Parse generation output into a Summary.

    Returns:
        (summary, degraded) where degraded is True when the fallback summary was used.
    """
    try:
        data = json.loads(_strip_code_fence(raw_text or ""))
    except json.JSONDecodeError as e:
        logger.warning(f"Summary response is not valid JSON ({e}); using degraded summary")
        return create_degraded_summary(raw_text), True

    if not isinstance(data, dict):
        logger.warning(f"Summary response is a JSON {type(data).__name__}, not an object; using degraded summary")
        return create_degraded_summary(raw_text), True

    summary, errors = validate_summary(repair_summary_data(data))
    if summary is None:
        logger.warning(f"Summary response failed validation: {'; '.join(errors[:5])}")
        return create_degraded_summary(raw_text), True
    return summary, False


def ensure_minimum_takeaways(summary: Summary, min_count: int = 3) -> Summary:
    """Top up key takeaways from key points when the model returned too few."""
    missing = min_count - len(summary.key_takeaways)
    if missing <= 0:
        return summary
    derived = [
        KeyTakeaway(takeaway=point, context="Derived from key points", confidence=DERIVED_TAKEAWAY_CONFIDENCE)
        for point in summary.key_points[:missing]
    ]
    if not derived:
        return summary
    return summary.model_copy(update={"key_takeaways": summary.key_takeaways + derived})


QUALITY_WEIGHTS = {
    "headline": 10,
    "tldr": 15,
    "full_summary": 20,
    "key_points": 15,
    "key_takeaways": 25,
    "related_ideas": 10,
    "allied_trivia": 5,
}


def calculate_quality_score(summary: Summary) -> int:
    """Deterministic 0-100 score over presence and size of the summary fields."""
    w = QUALITY_WEIGHTS
    score = 0.0

    if 20 <= len(summary.headline) <= 100:
        score += w["headline"]
    elif summary.headline:
        score += w["headline"] * 0.5

    if 50 <= len(summary.tldr) <= 500:
        score += w["tldr"]
    elif summary.tldr:
        score += w["tldr"] * 0.5

    if len(summary.full_summary) >= 200:
        score += w["full_summary"]
    elif len(summary.full_summary) >= 100:
        score += w["full_summary"] * 0.7

    score += w["key_points"] * min(len(summary.key_points) / 5, 1)

    takeaways = summary.key_takeaways
    avg_confidence = sum(t.confidence for t in takeaways) / len(takeaways) if takeaways else 0.0
    score += w["key_takeaways"] * min(len(takeaways) / 3, 1) * (0.5 + avg_confidence * 0.5)

    score += w["related_ideas"] * min(len(summary.related_ideas) / 2, 1)
    score += w["allied_trivia"] * min(len(summary.allied_trivia) / 2, 1)

    # Round half up
    return int(score + 0.5)

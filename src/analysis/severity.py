"""
Severity normalization.

Maps the heterogeneous signals of each feedback source (star ratings,
upvotes, views, comment counts) onto one 0-100 scale:

    0-30:   Low      (nice-to-have, minor feedback)
    31-60:  Medium   (should address soon)
    61-80:  High     (prioritize this sprint)
    81-100: Critical (drop everything)

Scoring is a pure function of its inputs. The current time is taken as an
argument so that recency boosts can be computed deterministically.
"""

import math
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Mapping, Optional, Union

from src.analysis.keywords import keyword_boost
from src.models.schemas import (
    FeedbackSource,
    SourceMetadata,
    AppStoreMetadata,
    ProductHuntMetadata,
    RedditMetadata,
    StackOverflowMetadata,
    QuoraMetadata,
    ManualUploadMetadata,
    CustomMetadata,
)


SEVERITY_WEIGHTS: Dict[str, Dict[str, Any]] = {
    # Star ratings are inverted: 1 star = high severity, 5 stars = low
    "app_store": {
        "star_to_severity": {1: 95, 2: 75, 3: 50, 4: 25, 5: 10},
        "default_severity": 50,
    },
    # Upvoted complaints are urgent; a maker reply means it is being handled
    "product_hunt": {
        "base_severity": 40,
        "upvote_weight": 0.8,
        "max_upvote_contribution": 40,
        "maker_reply_reduction": 10,
    },
    # Score is log-scaled so that viral posts do not explode the scale
    "reddit": {
        "base_severity": 35,
        "score_multiplier": 8,
        "comment_weight": 0.3,
        "max_comment_contribution": 20,
        "subreddit_boosts": {
            "reactjs": 1.2,
            "webdev": 1.1,
            "programming": 1.0,
        },
    },
    # Many views on a question = many developers hitting the same problem
    "stack_overflow": {
        "base_severity": 30,
        "score_weight": 3,
        "view_weight": 0.005,
        "max_view_contribution": 30,
        "accepted_answer_reduction": 25,
    },
    "quora": {
        "base_severity": 35,
        "upvote_weight": 0.5,
        "max_upvote_contribution": 35,
        "follower_boost_threshold": 1000,
        "follower_boost": 10,
    },
    "manual_upload": {
        "default_severity": 50,
    },
    "global": {
        "default_severity": 50,
        "recency_24h_boost": 10,
        "recency_7d_boost": 5,
        "sentiment_multiplier": 15,
        "min_severity": 0,
        "max_severity": 100,
    },
}

METADATA_MODELS = {
    FeedbackSource.APP_STORE.value: AppStoreMetadata,
    FeedbackSource.PRODUCT_HUNT.value: ProductHuntMetadata,
    FeedbackSource.REDDIT.value: RedditMetadata,
    FeedbackSource.STACK_OVERFLOW.value: StackOverflowMetadata,
    FeedbackSource.QUORA.value: QuoraMetadata,
    FeedbackSource.MANUAL_UPLOAD.value: ManualUploadMetadata,
    FeedbackSource.CUSTOM.value: CustomMetadata,
}


def round_half_up(value: float) -> int:
    """Round to the nearest integer, halves going up (87.5 -> 88)."""
    return int(math.floor(value + 0.5))


def clamp_severity(value: float) -> int:
    weights = SEVERITY_WEIGHTS["global"]
    bounded = max(weights["min_severity"], min(weights["max_severity"], value))
    return round_half_up(bounded)


# ---------------------------------------------------------------------------
# Source-specific base scores
# ---------------------------------------------------------------------------

def _app_store_severity(meta: AppStoreMetadata) -> float:
    weights = SEVERITY_WEIGHTS["app_store"]
    rating = meta.star_rating
    if rating is not None and 1 <= rating <= 5:
        return weights["star_to_severity"][round_half_up(rating)]
    return weights["default_severity"]


def _product_hunt_severity(meta: ProductHuntMetadata) -> float:
    weights = SEVERITY_WEIGHTS["product_hunt"]
    severity = weights["base_severity"]
    severity += min(meta.upvotes * weights["upvote_weight"], weights["max_upvote_contribution"])
    if meta.maker_reply:
        severity -= weights["maker_reply_reduction"]
    return severity


def _reddit_severity(meta: RedditMetadata) -> float:
    weights = SEVERITY_WEIGHTS["reddit"]
    severity = weights["base_severity"]

    # Downvoted or zero-score posts add nothing (log10 is undefined below 1)
    if meta.reddit_score > 0:
        severity += math.log10(meta.reddit_score + 1) * weights["score_multiplier"]

    severity += min(meta.comment_count * weights["comment_weight"], weights["max_comment_contribution"])

    if meta.subreddit:
        severity *= weights["subreddit_boosts"].get(meta.subreddit.lower(), 1.0)
    return severity


def _stack_overflow_severity(meta: StackOverflowMetadata) -> float:
    weights = SEVERITY_WEIGHTS["stack_overflow"]
    severity = weights["base_severity"] + meta.so_score * weights["score_weight"]
    severity += min(meta.view_count * weights["view_weight"], weights["max_view_contribution"])
    if meta.is_accepted:
        severity -= weights["accepted_answer_reduction"]
    return severity


def _quora_severity(meta: QuoraMetadata) -> float:
    weights = SEVERITY_WEIGHTS["quora"]
    severity = weights["base_severity"]
    severity += min(meta.quora_upvotes * weights["upvote_weight"], weights["max_upvote_contribution"])
    if meta.follower_count >= weights["follower_boost_threshold"]:
        severity += weights["follower_boost"]
    return severity


def _manual_upload_severity(meta: ManualUploadMetadata) -> float:
    return SEVERITY_WEIGHTS["manual_upload"]["default_severity"]


BASE_SCORERS: Dict[str, Callable[[Any], float]] = {
    FeedbackSource.APP_STORE.value: _app_store_severity,
    FeedbackSource.PRODUCT_HUNT.value: _product_hunt_severity,
    FeedbackSource.REDDIT.value: _reddit_severity,
    FeedbackSource.STACK_OVERFLOW.value: _stack_overflow_severity,
    FeedbackSource.QUORA.value: _quora_severity,
    FeedbackSource.MANUAL_UPLOAD.value: _manual_upload_severity,
}


def _coerce_metadata(source: str, metadata: Union[SourceMetadata, Mapping[str, Any], None]) -> SourceMetadata:
    """Return the metadata variant matching source, with defaults when absent."""
    model = METADATA_MODELS.get(source, CustomMetadata)
    if isinstance(metadata, model):
        return metadata
    if metadata is None:
        return model()
    if isinstance(metadata, SourceMetadata):
        fields = metadata.model_dump(exclude={"source"})
    else:
        fields = {k: v for k, v in metadata.items() if k != "source"}
    return model(**fields)


# ---------------------------------------------------------------------------
# Global modifiers
# ---------------------------------------------------------------------------

def recency_boost(posted_at: Optional[datetime], now: Optional[datetime] = None) -> int:
    """Boost for feedback posted within the last day (10) or week (5)."""
    if posted_at is None:
        return 0

    weights = SEVERITY_WEIGHTS["global"]
    now = now or datetime.now(timezone.utc)
    if posted_at.tzinfo is None:
        posted_at = posted_at.replace(tzinfo=timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)

    hours_since_post = (now - posted_at).total_seconds() / 3600
    if hours_since_post <= 24:
        return weights["recency_24h_boost"]
    if hours_since_post <= 24 * 7:
        return weights["recency_7d_boost"]
    return 0


def sentiment_boost(sentiment_score: Optional[float]) -> float:
    """Convert sentiment (-1..1) to a boost: -1 -> +15, 0 -> +7.5, 1 -> 0."""
    if sentiment_score is None:
        return 0.0
    return (1 - sentiment_score) / 2 * SEVERITY_WEIGHTS["global"]["sentiment_multiplier"]


def normalize_severity(
    source: Union[FeedbackSource, str],
    metadata: Union[SourceMetadata, Mapping[str, Any], None] = None,
    sentiment_score: Optional[float] = None,
    posted_at: Optional[datetime] = None,
    content: Optional[str] = None,
    now: Optional[datetime] = None,
) -> int:
    """
    Compute the unified 0-100 severity of a piece of feedback.

    Args:
        source: Feedback source, selects the base formula
        metadata: Source metadata (model or plain dict)
        sentiment_score: Optional sentiment from -1 (very negative) to 1
        posted_at: When the feedback was posted, for the recency boost
        content: Raw text, for the keyword boost
        now: Reference time for recency (defaults to the current UTC time)

    Returns:
        Integer severity clamped to [0, 100]
    """
    source = getattr(source, "value", source)
    meta = _coerce_metadata(source, metadata)

    scorer = BASE_SCORERS.get(source)
    severity = scorer(meta) if scorer else SEVERITY_WEIGHTS["global"]["default_severity"]

    severity += recency_boost(posted_at, now)
    severity += sentiment_boost(sentiment_score)
    if content:
        severity += keyword_boost(content)

    return clamp_severity(severity)


def severity_label(severity: int) -> str:
    """Human-readable band for a severity score."""
    if severity >= 81:
        return "Critical"
    if severity >= 61:
        return "High"
    if severity >= 31:
        return "Medium"
    return "Low"
